import json
from typing import Optional

from sqlalchemy import text
from sqlalchemy.orm import Session

from ..core.schemas import UsageRecord


def record_usage(db: Session, record: UsageRecord) -> bool:
    """
    Idempotente por sesión: INSERT OR IGNORE en offer_usage (único por
    offer_id + table_session_id). Si insertó, suma +1 en offer.usage_count.
    Devuelve True si el uso es nuevo.
    """
    ins = db.execute(
        text(
            """
            INSERT OR IGNORE INTO offer_usage
                (offer_id, order_id, table_session_id, customer_phone, discount_amount, free_items, used_at)
            VALUES (:oid, :order_id, :sid, :phone, :disc, :free, datetime('now'))
        """
        ),
        {
            "oid": record.offer_id,
            "order_id": record.order_id,
            "sid": record.session_id,
            "phone": record.customer_phone,
            "disc": float(record.discount_amount),
            "free": json.dumps([fi.model_dump(mode="json") for fi in record.free_items]),
        },
    )
    inserted = bool(ins.rowcount and ins.rowcount > 0)
    if inserted:
        db.execute(
            text("UPDATE offer SET usage_count = COALESCE(usage_count,0) + 1 WHERE id = :oid"),
            {"oid": record.offer_id},
        )
    # commit lo hace el caller (finalización de orden)
    return inserted


def session_usage(db: Session, session_id: Optional[int]) -> Optional[dict]:
    if session_id is None:
        return None
    row = db.execute(
        text(
            """
            SELECT u.offer_id, o.name, u.discount_amount, u.order_id
            FROM offer_usage u LEFT JOIN offer o ON o.id = u.offer_id
            WHERE u.table_session_id = :sid
            ORDER BY u.id LIMIT 1
        """
        ),
        {"sid": session_id},
    ).fetchone()
    if not row:
        return None
    return {"offer_id": row[0], "name": row[1], "discount": row[2], "order_id": row[3]}


def session_has_usage(db: Session, session_id: Optional[int]) -> bool:
    return session_usage(db, session_id) is not None


def set_usage_discount(db: Session, offer_id: int, session_id: int, amount) -> None:
    """Monto final de una oferta cobrada al cierre de la sesión."""
    db.execute(
        text("UPDATE offer_usage SET discount_amount = :disc WHERE offer_id = :oid AND table_session_id = :sid"),
        {"disc": float(amount), "oid": offer_id, "sid": session_id},
    )

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import update
from sqlalchemy.orm import Session

from ..core.offer_types import OfferDefinition
from ..core.schemas import LockSnapshot, SessionOfferLock
from ..models.table_session import TableSession

logger = logging.getLogger("restopos.session_lock")


def snapshot_of(offer: OfferDefinition, at: datetime) -> LockSnapshot:
    return LockSnapshot(
        offer_id=offer.id,
        name=offer.name,
        offer_type=offer.offer_type,
        application_type=offer.application_type,
        conditions=offer.raw_conditions,
        benefits=offer.raw_benefits,
        items=[link.model_dump(exclude_none=True) for link in offer.items],
        locked_at=at,
    )


def offer_from_snapshot(snap: LockSnapshot) -> OfferDefinition:
    """Oferta reconstruida desde el bloqueo (si ya no está en el catálogo)."""
    return OfferDefinition.parse(
        {
            "id": snap.offer_id,
            "name": snap.name or f"offer-{snap.offer_id}",
            "offer_type": snap.offer_type,
            "application_type": snap.application_type,
            "conditions": snap.conditions,
            "benefits": snap.benefits,
            "items": snap.items,
        }
    )


class SessionLockStore:
    """Único punto de escritura del bloqueo de oferta de una sesión.

    ``bind_if_unset`` es un compare-and-set: un solo UPDATE condicionado a que
    ``locked_offer_id`` siga vacío. El primero que escribe gana.
    """

    def __init__(self, db: Session):
        self.db = db

    def read(self, session_id: Optional[int]) -> Optional[SessionOfferLock]:
        if session_id is None:
            return None
        row = (
            self.db.query(
                TableSession.locked_offer_id,
                TableSession.locked_offer_data,
                TableSession.offer_applied_at,
                TableSession.locked_by_guest,
            )
            .filter(TableSession.id == session_id)
            .first()
        )
        if row is None or row.locked_offer_id is None:
            return None
        data = dict(row.locked_offer_data or {})
        locked_at = row.offer_applied_at or data.get("locked_at") or datetime.utcnow()
        data.setdefault("offer_id", row.locked_offer_id)
        data.setdefault("name", "")
        data.setdefault("offer_type", "")
        data.setdefault("locked_at", locked_at)
        return SessionOfferLock(
            locked_offer_id=row.locked_offer_id,
            locked_offer_snapshot=LockSnapshot.model_validate(data),
            locked_at=locked_at,
            locked_by_guest=bool(row.locked_by_guest),
        )

    def bind_if_unset(
        self,
        session_id: int,
        offer: OfferDefinition,
        by_guest: bool,
        at: Optional[datetime] = None,
    ) -> bool:
        at = at or datetime.utcnow()
        snap = snapshot_of(offer, at)
        res = self.db.execute(
            update(TableSession)
            .where(
                TableSession.id == session_id,
                TableSession.status == "active",
                TableSession.locked_offer_id.is_(None),
            )
            .values(
                locked_offer_id=offer.id,
                locked_offer_data=snap.model_dump(mode="json"),
                offer_applied_at=at,
                locked_by_guest=by_guest,
            )
            .execution_options(synchronize_session=False)
        )
        self.db.commit()
        won = bool(res.rowcount)
        if won:
            logger.info(
                "session %s locked to offer %s by %s", session_id, offer.id, "guest" if by_guest else "staff"
            )
        else:
            logger.info("session %s lock for offer %s lost; already bound", session_id, offer.id)
        return won

    def clear(self, session_id: int) -> None:
        """Sólo al terminar la sesión."""
        self.db.execute(
            update(TableSession)
            .where(TableSession.id == session_id)
            .values(locked_offer_id=None, locked_offer_data=None, offer_applied_at=None, locked_by_guest=None)
            .execution_options(synchronize_session=False)
        )

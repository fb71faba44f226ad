from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from ..db import get_db
from ..models.order import PosOrder
from ..models.table_session import TableSession
from ..services.coordinator import OfferSelectionCoordinator
from ..services.customers import normalize_phone, register_visit
from ..services.offer_usage import session_usage
from ..services.orders import (
    MenuItemNotFound,
    OrderLine,
    build_coordinator,
    close_session,
    finalize_order,
    order_lines,
)
from ..services.session_lock import SessionLockStore
from .offers import find_session, get_active_session

router = APIRouter(tags=["sessions"])


class OpenIn(BaseModel):
    table_code: str = Field(min_length=1)
    customer_phone: Optional[str] = None


class OrderIn(BaseModel):
    items: List[OrderLine] = Field(default_factory=list)
    customer_phone: Optional[str] = None
    offer_id: Optional[int] = None
    free_item_id: Optional[int] = None
    promo_code: Optional[str] = None
    created_by_type: Literal["guest", "staff"] = "guest"


def session_view(db: Session, ses: TableSession) -> Dict[str, Any]:
    lock = SessionLockStore(db).read(ses.id)
    return {
        "id": ses.id,
        "table_code": ses.table_code,
        "status": ses.status,
        "customer_phone": ses.customer_phone,
        "session_started_at": ses.session_started_at,
        "session_ended_at": ses.session_ended_at,
        "total_orders": ses.total_orders or 0,
        "total_amount": ses.total_amount or 0,
        "offer_discount": ses.offer_discount or 0,
        "bill_total": ses.bill_total,
        "lock": lock.model_dump() if lock else None,
        "offer_used": session_usage(db, ses.id),
    }


def order_view(db: Session, order: PosOrder, st) -> Dict[str, Any]:
    return {
        "order_id": order.id,
        "order_no": order.order_no,
        "order_type": order.order_type,
        "session_id": order.table_session_id,
        "subtotal": order.subtotal,
        "discount_total": order.discount_total,
        "total": order.total,
        "offer_id": order.session_offer_id,
        "locked_offer_id": st.session_lock.locked_offer_id if st.session_lock else None,
        "message": st.message,
        "offer_withheld": st.withheld,
        "items": [
            {
                "menu_item_id": it.menu_item_id,
                "name": it.name,
                "quantity": it.quantity,
                "unit_price": it.unit_price,
                "total_price": it.total_price,
                "is_free": bool(it.is_free),
                "linked_offer_id": it.linked_offer_id,
            }
            for it in order_lines(db, order.id)
        ],
    }


async def _prepare(db: Session, body: OrderIn, **kwargs) -> OfferSelectionCoordinator:
    if not body.items:
        raise HTTPException(status_code=422, detail="EMPTY_CART")
    try:
        coordinator = await build_coordinator(
            db,
            body.items,
            promo_code=body.promo_code,
            by_guest=body.created_by_type == "guest",
            **kwargs,
        )
    except MenuItemNotFound as exc:
        raise HTTPException(status_code=404, detail="MENU_ITEM_NOT_FOUND") from exc
    if body.offer_id is not None:
        coordinator.select_offer(body.offer_id)
    if body.free_item_id is not None:
        coordinator.select_free_item(body.free_item_id)
    return coordinator


# ---------- OPEN ----------
@router.post("/sessions/open")
def open_session(body: OpenIn, db: Session = Depends(get_db)):
    """Abre sesión de mesa; si la mesa ya tiene una activa, la devuelve."""
    table_code = body.table_code.strip()
    phone = normalize_phone(body.customer_phone)
    ses = (
        db.query(TableSession)
        .filter(TableSession.table_code == table_code, TableSession.status == "active")
        .order_by(TableSession.id.desc())
        .first()
    )
    if ses is None:
        ses = TableSession(table_code=table_code, status="active", customer_phone=phone)
        db.add(ses)
        register_visit(db, phone)
        db.commit()
        db.refresh(ses)
    elif phone and not ses.customer_phone:
        ses.customer_phone = phone
        register_visit(db, phone)
        db.commit()
        db.refresh(ses)
    return session_view(db, ses)


@router.get("/sessions/{sid}")
def get_session(sid: int, db: Session = Depends(get_db)):
    return session_view(db, find_session(db, sid))


# ---------- ORDERS ----------
@router.post("/sessions/{sid}/orders")
async def place_session_order(sid: int, body: OrderIn, db: Session = Depends(get_db)):
    """Crea una orden de mesa. Acepta Idempotency-Key (ver middleware)."""
    ses = await run_in_threadpool(get_active_session, db, sid)
    coordinator = await _prepare(
        db,
        body,
        channel="dine_in",
        session_id=ses.id,
        phone=body.customer_phone or ses.customer_phone,
    )
    order = await run_in_threadpool(
        finalize_order, db, coordinator, session=ses, created_by_type=body.created_by_type
    )
    return await run_in_threadpool(order_view, db, order, coordinator.state)


@router.post("/takeaway/orders")
async def place_takeaway_order(body: OrderIn, db: Session = Depends(get_db)):
    coordinator = await _prepare(db, body, channel="takeaway", phone=body.customer_phone)
    order = await run_in_threadpool(finalize_order, db, coordinator, created_by_type=body.created_by_type)
    return await run_in_threadpool(order_view, db, order, coordinator.state)


# ---------- CLOSE (idempotente) ----------
@router.post("/sessions/{sid}/close")
async def close_table_session(sid: int, db: Session = Depends(get_db)):
    """Cierra la sesión y calcula la cuenta final (oferta session_level)."""
    ses = await run_in_threadpool(find_session, db, sid)
    if ses.status != "closed":
        ses = await close_session(db, ses)
    return await run_in_threadpool(session_view, db, ses)

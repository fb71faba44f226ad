from typing import Any, Dict, List, Literal, Optional

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from ..core.offer_types import OfferDefinition
from ..core.schemas import cart_total
from ..db import get_db
from ..models.table_session import TableSession
from ..services.catalog import OfferCatalog, promo_offer
from ..services.coordinator import OfferSelectionCoordinator
from ..services.customers import best_effort, db_visit_lookup, normalize_phone
from ..services.eligibility import EvaluationContext, evaluate
from ..services.orders import MenuItemNotFound, OrderLine, build_coordinator, load_catalog, resolve_cart

router = APIRouter(tags=["offers"])

Channel = Literal["dine_in", "takeaway"]


class CartIn(BaseModel):
    items: List[OrderLine] = Field(default_factory=list)
    customer_phone: Optional[str] = None
    channel: Channel = "dine_in"
    session_id: Optional[int] = None
    offer_id: Optional[int] = None
    free_item_id: Optional[int] = None
    promo_code: Optional[str] = None
    by_guest: bool = True


class PromoIn(BaseModel):
    code: Optional[str] = None
    items: List[OrderLine] = Field(default_factory=list)
    customer_phone: Optional[str] = None
    channel: Channel = "dine_in"


# ---------- vistas ----------
def offer_view(o: OfferDefinition) -> Dict[str, Any]:
    return {
        "id": o.id,
        "name": o.name,
        "description": o.description,
        "offer_type": o.offer_type,
        "priority": o.priority,
        "conditions": o.raw_conditions,
        "benefits": o.raw_benefits,
        "valid_hours_start": o.valid_hours_start,
        "valid_hours_end": o.valid_hours_end,
        "valid_days": o.valid_days,
        "target_customer_type": o.target_customer_type.value,
        "application_type": o.application_type,
        "usage_limit": o.usage_limit,
        "usage_count": o.usage_count,
        "config_error": o.config_error,
    }


def line_view(ln) -> Dict[str, Any]:
    return {
        "menu_item_id": ln.id,
        "name": ln.name,
        "quantity": ln.quantity,
        "unit_price": ln.price,
        "total_price": 0 if ln.is_free else ln.line_total,
        "is_free": ln.is_free,
        "linked_offer_id": ln.linked_offer_id,
    }


def state_view(coordinator: OfferSelectionCoordinator) -> Dict[str, Any]:
    st = coordinator.state
    suggestion = coordinator.suggestion()
    lock = st.session_lock
    return {
        "results": [
            {"offer_id": o.id, "name": o.name, **st.results[o.id].model_dump()}
            for o in st.offers
            if o.id in st.results
        ],
        "selected_offer_id": st.selected_offer_id,
        "applied": st.applied.model_dump() if st.applied else None,
        "cart": [line_view(ln) for ln in st.cart],
        "cart_total": st.cart_total,
        "discount": st.discount,
        "final_total": st.final_total,
        "selection_enabled": st.selection_enabled,
        "locked_offer_id": lock.locked_offer_id if lock else None,
        "message": st.message,
        "offer_withheld": st.withheld,
        "suggestion": suggestion.model_dump() if suggestion else None,
    }


def find_session(db: Session, session_id: int) -> TableSession:
    ses = db.query(TableSession).filter(TableSession.id == session_id).first()
    if not ses:
        raise HTTPException(status_code=404, detail="SESSION_NOT_FOUND")
    return ses


def get_active_session(db: Session, session_id: int) -> TableSession:
    ses = find_session(db, session_id)
    if ses.status != "active":
        raise HTTPException(status_code=409, detail="SESSION_CLOSED")
    return ses


# ---------- rutas ----------
@router.get("/offers")
def list_offers(channel: Channel = "dine_in", db: Session = Depends(get_db)):
    return [offer_view(o) for o in OfferCatalog(db).active(channel)]


@router.post("/offers/evaluate")
async def evaluate_cart(body: CartIn, db: Session = Depends(get_db)):
    phone = body.customer_phone
    if body.session_id is not None:
        ses = await run_in_threadpool(get_active_session, db, body.session_id)
        phone = phone or ses.customer_phone
    try:
        coordinator = await build_coordinator(
            db,
            body.items,
            channel=body.channel,
            session_id=body.session_id,
            phone=phone,
            promo_code=body.promo_code,
            by_guest=body.by_guest,
        )
    except MenuItemNotFound as exc:
        raise HTTPException(status_code=404, detail="MENU_ITEM_NOT_FOUND") from exc
    if body.offer_id is not None:
        coordinator.select_offer(body.offer_id)
    if body.free_item_id is not None:
        coordinator.select_free_item(body.free_item_id)
    return state_view(coordinator)


@router.post("/offers/promo/validate")
async def validate_promo(body: PromoIn, db: Session = Depends(get_db)):
    code = (body.code or "").strip()
    if not code:
        raise HTTPException(status_code=422, detail="PROMO_CODE_REQUIRED")
    offers, menu = await run_in_threadpool(load_catalog, db, body.channel)
    offer = promo_offer(offers, code)
    if offer is None:
        raise HTTPException(status_code=404, detail="PROMO_CODE_NOT_FOUND")
    try:
        cart = resolve_cart(menu, body.items)
    except MenuItemNotFound as exc:
        raise HTTPException(status_code=404, detail="MENU_ITEM_NOT_FOUND") from exc

    ctx = EvaluationContext(
        menu=menu,
        promo_code=code,
        visit_lookup=best_effort(db_visit_lookup(sessionmaker(bind=db.get_bind()))),
    )
    result = await evaluate(offer, cart, cart_total(cart), normalize_phone(body.customer_phone), context=ctx)
    return {
        "valid": result.is_eligible,
        "offer_id": offer.id,
        "name": offer.name,
        "code": code,
        "reason": result.reason,
        "discount": result.discount,
    }

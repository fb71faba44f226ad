import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Iterable, List, Optional, Tuple

from pydantic import BaseModel, Field
from sqlalchemy.orm import Session, sessionmaker
from starlette.concurrency import run_in_threadpool

from ..core.offer_types import OfferDefinition
from ..core.schemas import CartItem, SessionOfferLock, UsageFreeItem, UsageRecord, cart_total
from ..models.order import PosOrder, PosOrderItem
from ..models.table_session import TableSession
from .catalog import MenuIndex, OfferCatalog
from .coordinator import BENEFIT_USED_MSG, CartChanged, OfferSelectionCoordinator, PhoneChanged, PromoCodeChanged
from .customers import best_effort, db_visit_lookup
from .eligibility import EvaluationContext, evaluate
from .offer_usage import record_usage, session_has_usage, set_usage_discount
from .session_lock import SessionLockStore, offer_from_snapshot

logger = logging.getLogger("restopos.orders")

ZERO = Decimal("0")


class MenuItemNotFound(LookupError):
    def __init__(self, item_id: int):
        super().__init__(f"menu item {item_id} not found")
        self.item_id = item_id


class OrderLine(BaseModel):
    menu_item_id: int
    quantity: int = Field(gt=0)


def resolve_cart(menu: MenuIndex, lines: Iterable[OrderLine]) -> Tuple[CartItem, ...]:
    """Precios y categorías salen del menú, nunca del cliente."""
    cart = []
    for ln in lines:
        entry = menu.get(ln.menu_item_id)
        if entry is None or not entry.is_available:
            raise MenuItemNotFound(ln.menu_item_id)
        cart.append(
            CartItem(
                id=entry.id,
                name=entry.name,
                price=entry.price,
                quantity=ln.quantity,
                category_id=entry.category_id,
            )
        )
    return tuple(cart)


def load_catalog(db: Session, channel: str) -> Tuple[List[OfferDefinition], MenuIndex]:
    catalog = OfferCatalog(db)
    return catalog.active(channel), catalog.menu()


async def build_coordinator(
    db: Session,
    lines: Iterable[OrderLine],
    *,
    channel: str = "dine_in",
    session_id: Optional[int] = None,
    phone: Optional[str] = None,
    promo_code: Optional[str] = None,
    by_guest: bool = True,
) -> OfferSelectionCoordinator:
    offers, menu = await run_in_threadpool(load_catalog, db, channel)
    cart = resolve_cart(menu, lines)
    coordinator = OfferSelectionCoordinator(
        offers,
        menu,
        session_id=session_id,
        lock_store=SessionLockStore(db) if session_id is not None else None,
        usage_check=lambda sid: session_has_usage(db, sid),
        visit_lookup=db_visit_lookup(sessionmaker(bind=db.get_bind())),
        offer_loader=OfferCatalog(db).get,
        by_guest=by_guest,
    )
    await coordinator.recompute(CartChanged(items=cart), PhoneChanged(phone=phone), PromoCodeChanged(code=promo_code))
    return coordinator


def finalize_order(
    db: Session,
    coordinator: OfferSelectionCoordinator,
    *,
    session: Optional[TableSession] = None,
    created_by_type: str = "guest",
) -> PosOrder:
    """Crea la orden con el estado actual del coordinador.

    En mesa primero se liga la oferta a la sesión; si otro terminal ganó, la
    orden usa la oferta ya ligada. El beneficio se entrega una sola vez por
    sesión: si el uso ya estaba registrado, la orden conserva la oferta sin
    descuento ni líneas gratis. Hace I/O síncrona (llamar desde el threadpool).
    """
    st = coordinator.bind_on_finalize() if session is not None else coordinator.state
    offer = st.selected_offer
    order_type = "dine_in" if session is not None else "takeaway"
    # con bloqueo la orden siempre lleva la oferta ligada, aunque no descuente
    with_offer = offer is not None and (st.applied is not None or st.session_lock is not None)

    order = PosOrder(
        table_session_id=session.id if session is not None else None,
        order_type=order_type,
        customer_phone=st.customer_phone,
        session_offer_id=offer.id if with_offer else None,
        created_by_type=created_by_type,
        status="placed",
    )
    db.add(order)
    db.flush()
    order.order_no = f"{'DI' if session is not None else 'TA'}-{order.id:06d}"

    if order.session_offer_id is not None:
        applied = st.applied
        fresh = record_usage(
            db,
            UsageRecord(
                offer_id=offer.id,
                order_id=order.id,
                session_id=session.id if session is not None else None,
                customer_phone=st.customer_phone,
                discount_amount=applied.discount if applied is not None else ZERO,
                free_items=[
                    UsageFreeItem(id=ln.id, name=ln.name, quantity=ln.quantity, price=ln.price)
                    for ln in st.cart
                    if ln.is_free
                ],
            ),
        )
        if not fresh and applied is not None and session is not None:
            # otra orden de la sesión registró el uso primero
            st = coordinator.withhold(BENEFIT_USED_MSG)

    applied = st.applied
    subtotal = st.cart_total
    # las líneas gratis ya no suman al subtotal
    discount = ZERO if applied is None or applied.grants_free_items else applied.discount
    total = max(ZERO, subtotal - discount)
    order.subtotal = subtotal
    order.discount_total = discount
    order.total = total

    for ln in st.cart:
        db.add(
            PosOrderItem(
                order_id=order.id,
                menu_item_id=ln.id,
                name=ln.name,
                quantity=ln.quantity,
                unit_price=ln.price,
                total_price=ZERO if ln.is_free else ln.line_total,
                is_free=ln.is_free,
                linked_offer_id=ln.linked_offer_id,
            )
        )

    if session is not None:
        session.total_orders = (session.total_orders or 0) + 1
        session.total_amount = Decimal(str(session.total_amount or 0)) + total
        if st.customer_phone and not session.customer_phone:
            session.customer_phone = st.customer_phone

    db.commit()
    db.refresh(order)
    logger.info(
        "order %s placed: subtotal=%s discount=%s total=%s offer=%s",
        order.order_no,
        subtotal,
        discount,
        total,
        order.session_offer_id,
    )
    return order


def order_lines(db: Session, order_id: int):
    return db.query(PosOrderItem).filter(PosOrderItem.order_id == order_id).order_by(PosOrderItem.id).all()


# ---------- cierre y cuenta final ----------
def _bill_inputs(db: Session, session_id: int):
    lock = SessionLockStore(db).read(session_id)
    if lock is None:
        return None, None, None, ()
    catalog = OfferCatalog(db)
    offer = catalog.get(lock.locked_offer_id) or offer_from_snapshot(lock.locked_offer_snapshot)
    menu = catalog.menu()
    rows = (
        db.query(PosOrderItem)
        .join(PosOrder, PosOrder.id == PosOrderItem.order_id)
        .filter(
            PosOrder.table_session_id == session_id,
            PosOrder.status != "cancelled",
            PosOrderItem.is_free.isnot(True),
        )
        .order_by(PosOrderItem.id)
        .all()
    )
    cart = tuple(
        CartItem(
            id=it.menu_item_id,
            name=it.name or "",
            price=it.unit_price,
            quantity=it.quantity,
            category_id=getattr(menu.get(it.menu_item_id), "category_id", None),
        )
        for it in rows
    )
    return lock, offer, menu, cart


def _locked_at(lock: SessionOfferLock) -> datetime:
    # offer_applied_at se guarda en UTC sin tzinfo
    at = lock.locked_at
    return at.replace(tzinfo=timezone.utc) if at.tzinfo is None else at


async def session_bill_discount(db: Session, session: TableSession) -> Tuple[Optional[int], Decimal]:
    """Descuento de una oferta session_level sobre todas las órdenes de la sesión.

    Se evalúa una sola vez, con la hora en que se ligó la oferta. Devuelve
    ``(offer_id, descuento)``; ``(None, 0)`` si no hay oferta session_level.
    """
    lock, offer, menu, cart = await run_in_threadpool(_bill_inputs, db, session.id)
    if lock is None or offer is None or offer.application_type != "session_level":
        return None, ZERO
    ctx = EvaluationContext(
        now=_locked_at(lock),
        menu=menu,
        visit_lookup=best_effort(db_visit_lookup(sessionmaker(bind=db.get_bind()))),
        locked_offer_id=offer.id,
    )
    result = await evaluate(offer, cart, cart_total(cart), session.customer_phone, context=ctx)
    if not result.is_eligible or result.grants_free_items:
        logger.info("session %s bill: offer %s not applied: %s", session.id, offer.id, result.reason)
        return offer.id, ZERO
    return offer.id, result.discount


def _close(db: Session, session: TableSession, offer_id: Optional[int], discount: Decimal) -> TableSession:
    amount = Decimal(str(session.total_amount or 0))
    session.offer_discount = discount
    session.bill_total = max(ZERO, amount - discount)
    if offer_id is not None:
        set_usage_discount(db, offer_id, session.id, discount)
    SessionLockStore(db).clear(session.id)
    session.status = "closed"
    session.session_ended_at = datetime.utcnow()
    db.commit()
    db.refresh(session)
    logger.info(
        "session %s closed: amount=%s offer_discount=%s bill=%s", session.id, amount, discount, session.bill_total
    )
    return session


async def close_session(db: Session, session: TableSession) -> TableSession:
    """Cierra la sesión: cuenta final y liberación del bloqueo de oferta."""
    offer_id, discount = await session_bill_discount(db, session)
    return await run_in_threadpool(_close, db, session, offer_id, discount)

import logging
from datetime import datetime
from decimal import Decimal
from typing import Awaitable, Callable, Iterable, Optional, Sequence
from zoneinfo import ZoneInfo

from pydantic import BaseModel, ConfigDict, Field

from ..core.config import settings
from ..core.offer_types import CustomerType, OfferDefinition, OfferLink
from ..core.schemas import CartItem, EligibilityResult
from .catalog import MenuIndex
from .discounts import CALCULATORS, money_text

logger = logging.getLogger("restopos.offers")

VisitLookup = Callable[[str], Awaitable[Optional[int]]]


class EvaluationContext(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    now: datetime = Field(default_factory=lambda: local_now())
    menu: MenuIndex = Field(default_factory=MenuIndex)
    visit_lookup: Optional[VisitLookup] = None
    promo_code: Optional[str] = None
    # la sesión ya tiene esta oferta ligada: el tope de usos se revisó al ligarla
    locked_offer_id: Optional[int] = None


def local_now() -> datetime:
    return datetime.now(ZoneInfo(settings.timezone))


def _wall_clock(dt: datetime) -> datetime:
    """Hora local del restaurante sin tzinfo (las fechas de oferta se guardan así)."""
    if dt.tzinfo is not None:
        dt = dt.astimezone(ZoneInfo(settings.timezone)).replace(tzinfo=None)
    return dt


def format_12h(hhmm: str) -> str:
    h, m = hhmm[:5].split(":")
    hour = int(h)
    ampm = "PM" if hour >= 12 else "AM"
    display = hour - 12 if hour > 12 else (12 if hour == 0 else hour)
    return f"{display}:{m} {ampm}"


def in_hour_window(current: str, start: str, end: str) -> bool:
    start, end = start[:5], end[:5]
    if start <= end:
        return start <= current <= end
    # franja que cruza medianoche
    return current >= start or current <= end


def _check_window(offer: OfferDefinition, now: datetime) -> Optional[str]:
    if offer.start_date and _wall_clock(offer.start_date) > now:
        return "Offer not started yet"
    if offer.end_date and _wall_clock(offer.end_date) < now:
        return "Offer has expired"

    if offer.valid_hours_start and offer.valid_hours_end:
        current = now.strftime("%H:%M")
        if not in_hour_window(current, offer.valid_hours_start, offer.valid_hours_end):
            return (
                f"Available {format_12h(offer.valid_hours_start)} - "
                f"{format_12h(offer.valid_hours_end)}"
            )

    if offer.valid_days:
        today = now.strftime("%A").lower()
        if today not in offer.valid_days:
            days = ", ".join(d.capitalize() for d in offer.valid_days)
            return f"Valid only on {days}"
    return None


async def _check_segment(
    offer: OfferDefinition, customer_phone: Optional[str], ctx: EvaluationContext
) -> Optional[str]:
    segment = offer.target_customer_type
    if segment == CustomerType.ALL:
        return None
    if not customer_phone:
        return "Sign in to check eligibility"

    visits = None
    if ctx.visit_lookup is not None:
        try:
            visits = await ctx.visit_lookup(customer_phone)
        except Exception as exc:
            logger.warning("visit lookup failed for offer %s: %s", offer.id, exc)
            visits = None
    if visits is None:
        return "Sign in to check eligibility"

    if segment == CustomerType.FIRST_TIME and visits > 0:
        return "Only for first-time customers"
    if segment == CustomerType.RETURNING and visits == 0:
        return "Only for returning customers"
    if segment == CustomerType.LOYALTY:
        min_orders = (
            getattr(offer.conditions, "min_orders_count", None)
            or offer.min_orders_count
            or settings.loyalty_min_orders
        )
        if visits < min_orders:
            return f"Requires {min_orders}+ previous orders"
    return None


async def _evaluate(offer, cart, total, customer_phone, ctx) -> EligibilityResult:
    now = _wall_clock(ctx.now)

    reason = _check_window(offer, now)
    if reason:
        return EligibilityResult.ineligible(reason)

    if offer.config_error:
        return EligibilityResult.ineligible(offer.config_error)

    min_amount = getattr(offer.conditions, "min_amount", None)
    if min_amount and total < min_amount:
        return EligibilityResult.ineligible(f"Add {money_text(min_amount - total)} more to unlock")

    reason = await _check_segment(offer, customer_phone, ctx)
    if reason:
        return EligibilityResult.ineligible(reason)

    capped = offer.usage_limit and offer.usage_count >= offer.usage_limit
    if capped and offer.id != ctx.locked_offer_id:
        return EligibilityResult.ineligible("Usage limit reached")

    calculator = CALCULATORS.get(offer.kind)
    if calculator is None:
        return EligibilityResult.ineligible("Unknown offer type")
    return calculator(offer, cart, total, ctx)


async def evaluate(
    offer: OfferDefinition,
    cart_items: Sequence[CartItem],
    cart_total: Decimal,
    customer_phone: Optional[str] = None,
    offer_items: Optional[Iterable[OfferLink]] = None,
    *,
    context: Optional[EvaluationContext] = None,
) -> EligibilityResult:
    """Decide si ``offer`` aplica al carrito y calcula su descuento.

    Nunca lanza: cualquier falla termina en ``is_eligible=False`` con razón
    legible, para que una oferta rota no tumbe la evaluación del catálogo.
    """
    ctx = context or EvaluationContext()
    if offer_items is not None:
        offer = offer.model_copy(update={"items": list(offer_items)})
    total = cart_total if isinstance(cart_total, Decimal) else Decimal(str(cart_total))
    try:
        return await _evaluate(offer, list(cart_items), total, customer_phone, ctx)
    except Exception:
        logger.exception("offer %s could not be evaluated", getattr(offer, "id", None))
        return EligibilityResult.ineligible("Offer could not be evaluated")

"""Cálculo de descuento por tipo de oferta.

Cada calculadora recibe una oferta ya validada (payloads tipados) y devuelve un
``EligibilityResult``. Todos los montos se redondean a unidad entera (half-up)
y se acotan a ``[0, total del carrito]``.
"""
from decimal import ROUND_DOWN, ROUND_HALF_UP, Decimal
from typing import Callable, Dict, Iterable, List, Optional

from ..core.config import settings
from ..core.offer_types import OfferDefinition, OfferLink, OfferType
from ..core.schemas import CartItem, EligibilityResult, FreeItemOption

ZERO = Decimal("0")
HUNDRED = Decimal("100")
REWARD_LINKS = ("get_free", "addon", "free_threshold")


def whole(v) -> Decimal:
    v = v if isinstance(v, Decimal) else Decimal(str(v))
    return v.quantize(Decimal("1"), rounding=ROUND_HALF_UP)


def settle(discount: Decimal, total: Decimal) -> Decimal:
    """Redondea y acota el descuento a [0, total].

    El tope es el total truncado a unidades enteras: con centavos en el
    carrito el descuento sigue siendo entero y nunca supera el total.
    """
    d = whole(discount)
    if d < ZERO:
        return ZERO
    cap = max(total, ZERO)
    cap = cap if isinstance(cap, Decimal) else Decimal(str(cap))
    return min(d, cap.quantize(Decimal("1"), rounding=ROUND_DOWN))


def money_text(v: Decimal) -> str:
    v = v if isinstance(v, Decimal) else Decimal(str(v))
    if v == v.to_integral_value():
        return f"{settings.currency_symbol}{int(v)}"
    return f"{settings.currency_symbol}{v.quantize(Decimal('0.01'), rounding=ROUND_HALF_UP)}"


def paid_lines(cart: Iterable[CartItem]) -> List[CartItem]:
    return [ln for ln in cart if not ln.is_free]


def matches(line: CartItem, links: Iterable[OfferLink]) -> bool:
    for link in links:
        if link.menu_item_id is not None and link.menu_item_id == line.id:
            return True
        if link.menu_category_id is not None and line.category_id == link.menu_category_id:
            return True
    return False


def percentage_or_flat(base: Decimal, benefit) -> Decimal:
    pct = getattr(benefit, "discount_percentage", None)
    if pct:
        d = base * pct / HUNDRED
        cap = getattr(benefit, "max_discount_amount", None)
        if cap:
            d = min(d, cap)
        return d
    return min(getattr(benefit, "discount_amount", None) or ZERO, base)


def _eligible(discount: Decimal, total: Decimal, free_items: Optional[List[CartItem]] = None) -> EligibilityResult:
    return EligibilityResult(is_eligible=True, discount=settle(discount, total), free_items=free_items or None)


def _grant(offer: OfferDefinition, entry, quantity: int) -> CartItem:
    return CartItem(
        id=entry.id,
        name=entry.name,
        price=entry.price,
        quantity=quantity,
        category_id=entry.category_id,
        is_free=True,
        linked_offer_id=offer.id,
    )


# ---------- calculadoras ----------
def cart_percentage(offer, cart, total, ctx):
    return _eligible(percentage_or_flat(total, offer.benefits), total)


def cart_flat_amount(offer, cart, total, ctx):
    return _eligible(min(offer.benefits.discount_amount, total), total)


def min_order_discount(offer, cart, total, ctx):
    threshold = offer.conditions.threshold_amount
    if total < threshold:
        return EligibilityResult.ineligible(
            f"Spend {money_text(threshold)} to unlock ({money_text(threshold - total)} more needed)"
        )
    return _eligible(percentage_or_flat(total, offer.benefits), total)


def cart_threshold_item(offer, cart, total, ctx):
    threshold = offer.conditions.threshold_amount
    if total < threshold:
        return EligibilityResult.ineligible(f"Add {money_text(threshold - total)} more to unlock")

    benefit = offer.benefits
    links = offer.links("free_threshold")
    if not links and benefit.free_item_id is not None:
        links = [OfferLink(menu_item_id=benefit.free_item_id, item_type="free_threshold")]
    if not links:
        return EligibilityResult.ineligible("Free item not configured")

    cap = benefit.max_price
    candidates = [
        e for e in ctx.menu.resolve(links) if e.is_available and (cap is None or e.price <= cap)
    ]
    if not candidates:
        return EligibilityResult.ineligible("Free item not available")

    choice = next((e for e in candidates if e.id == benefit.free_item_id), None)
    if choice is None:
        choice = min(candidates, key=lambda e: (e.price, e.position))
    return _eligible(choice.price, total, [_grant(offer, choice, 1)])


def _buy_quantity(offer) -> int:
    return offer.conditions.buy_quantity or offer.benefits.buy_quantity or 2


def item_buy_get_free(offer, cart, total, ctx):
    if not offer.items:
        return EligibilityResult.ineligible("Qualifying items not configured")
    buy_links = offer.links("buy")
    if not buy_links:
        return EligibilityResult.ineligible("Buy items not configured")

    benefit = offer.benefits
    buy_qty = _buy_quantity(offer)
    get_qty = benefit.get_quantity
    matching = [ln for ln in paid_lines(cart) if matches(ln, buy_links)]
    have = sum(ln.quantity for ln in matching)
    if have < buy_qty:
        return EligibilityResult.ineligible(
            f"Buy {buy_qty} to get {get_qty} free ({buy_qty - have} more needed)"
        )

    if benefit.get_same_item:
        # más barato; empate -> primero en el carrito
        pick = min(enumerate(matching), key=lambda p: (p[1].price, p[0]))[1]
        grant = CartItem(
            id=pick.id,
            name=pick.name,
            price=pick.price,
            quantity=get_qty,
            category_id=pick.category_id,
            is_free=True,
            linked_offer_id=offer.id,
        )
        return _eligible(pick.price * get_qty, total, [grant])

    get_links = offer.links("get_free")
    if not get_links:
        return EligibilityResult.ineligible("Free items not configured")
    options = [e for e in ctx.menu.resolve(get_links) if e.is_available]
    if not options:
        return EligibilityResult.ineligible("Free item not available")
    pick = min(options, key=lambda e: (e.price, e.position))
    return _eligible(pick.price * get_qty, total, [_grant(offer, pick, get_qty)])


def _link_label(link: OfferLink, ctx) -> str:
    if link.menu_item_id is not None:
        entry = ctx.menu.get(link.menu_item_id)
        return entry.name if entry else "qualifying item"
    return ctx.menu.category_name(link.menu_category_id) or "qualifying category"


def addon_options(offer: OfferDefinition, ctx) -> List[FreeItemOption]:
    benefit = offer.benefits
    cap = benefit.max_free_price
    links = offer.links("addon") + [
        OfferLink(menu_item_id=ref.id, item_type="addon")
        if ref.type == "item"
        else OfferLink(menu_category_id=ref.id, item_type="addon")
        for ref in benefit.free_addon_items
    ]
    options: Dict[int, FreeItemOption] = {}
    for link in links:
        kind = "item" if link.menu_item_id is not None else "category"
        for entry in ctx.menu.resolve([link]):
            if not entry.is_available or (cap is not None and entry.price > cap):
                continue
            options.setdefault(
                entry.id, FreeItemOption(id=entry.id, name=entry.name, price=entry.price, type=kind)
            )
    return list(options.values())


def item_free_addon(offer, cart, total, ctx):
    main_links = offer.links("buy")
    if not main_links:
        return EligibilityResult.ineligible("Qualifying items not configured")
    if not any(matches(ln, main_links) for ln in paid_lines(cart)):
        return EligibilityResult.ineligible(f"Add {_link_label(main_links[0], ctx)} to unlock")

    if not offer.links("addon") and not offer.benefits.free_addon_items:
        return EligibilityResult.ineligible("Free add-on items not configured")
    available = addon_options(offer, ctx)
    if not available:
        return EligibilityResult.ineligible("No free add-on items available")
    return EligibilityResult(
        is_eligible=True,
        discount=ZERO,
        requires_user_action=True,
        action_type="select_free_item",
        available_free_items=available,
    )


def apply_free_item_choice(
    offer: OfferDefinition, result: EligibilityResult, item_id: int, total: Decimal
) -> Optional[EligibilityResult]:
    """Convierte la elección del cliente en una línea gratis; None si no es válida."""
    if not result.is_eligible or not result.requires_user_action:
        return None
    option = next((o for o in result.available_free_items or [] if o.id == item_id), None)
    if option is None:
        return None
    grant = CartItem(
        id=option.id,
        name=option.name,
        price=option.price,
        quantity=1,
        is_free=True,
        linked_offer_id=offer.id,
    )
    return _eligible(option.price, total, [grant])


def item_percentage(offer, cart, total, ctx):
    links = [oi for oi in offer.items if oi.item_type not in REWARD_LINKS]
    if not links:
        return EligibilityResult.ineligible("Qualifying items not configured")
    matching = [ln for ln in paid_lines(cart) if matches(ln, links)]
    if not matching:
        return EligibilityResult.ineligible("Add qualifying items to unlock")
    base = sum((ln.line_total for ln in matching), ZERO)
    return _eligible(base * offer.benefits.discount_percentage / HUNDRED, total)


def time_based(offer, cart, total, ctx):
    categories = offer.conditions.categories
    base = total
    if categories:
        base = sum((ln.line_total for ln in paid_lines(cart) if ln.category_id in categories), ZERO)
        if base <= ZERO:
            return EligibilityResult.ineligible("Add items from eligible categories to unlock")
    return _eligible(percentage_or_flat(base, offer.benefits), total)


def customer_based(offer, cart, total, ctx):
    return _eligible(percentage_or_flat(total, offer.benefits), total)


def combo_meal(offer, cart, total, ctx):
    components = offer.combo_components
    if not components:
        return EligibilityResult.ineligible("Combo not configured")
    combo_price = offer.benefits.combo_price
    if combo_price is None:
        combo_price = offer.combo_price
    if combo_price is None:
        return EligibilityResult.ineligible("Offer misconfigured: combo_price is required")

    required = [c for c in components if c.is_required] or list(components)
    lines = paid_lines(cart)
    missing = []
    regular = ZERO
    for comp in required:
        own = [ln for ln in lines if ln.id == comp.menu_item_id]
        if sum(ln.quantity for ln in own) < comp.quantity:
            entry = ctx.menu.get(comp.menu_item_id)
            missing.append(entry.name if entry else (own[0].name if own else "item"))
            continue
        regular += own[0].price * comp.quantity
    if missing:
        return EligibilityResult.ineligible(f"Add {', '.join(missing)} to complete combo")
    return _eligible(max(ZERO, regular - combo_price), total)


def promo_code(offer, cart, total, ctx):
    code = (ctx.promo_code or "").strip()
    if not code:
        return EligibilityResult.ineligible("Enter promo code to apply")
    if not offer.promo_code or code != offer.promo_code.strip():
        return EligibilityResult.ineligible("Invalid promo code")
    return _eligible(percentage_or_flat(total, offer.benefits), total)


CALCULATORS: Dict[OfferType, Callable] = {
    OfferType.CART_PERCENTAGE: cart_percentage,
    OfferType.CART_FLAT_AMOUNT: cart_flat_amount,
    OfferType.MIN_ORDER_DISCOUNT: min_order_discount,
    OfferType.CART_THRESHOLD_ITEM: cart_threshold_item,
    OfferType.ITEM_BUY_GET_FREE: item_buy_get_free,
    OfferType.ITEM_FREE_ADDON: item_free_addon,
    OfferType.ITEM_PERCENTAGE: item_percentage,
    OfferType.TIME_BASED: time_based,
    OfferType.CUSTOMER_BASED: customer_based,
    OfferType.COMBO_MEAL: combo_meal,
    OfferType.PROMO_CODE: promo_code,
}

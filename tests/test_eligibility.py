import asyncio
from datetime import datetime, timedelta
from decimal import Decimal

import pytest

from restopos.core.offer_types import OfferDefinition, OfferLink
from restopos.core.schemas import CartItem, cart_total
from restopos.services.catalog import MenuEntry, MenuIndex
from restopos.services.discounts import apply_free_item_choice
from restopos.services.eligibility import EvaluationContext, evaluate

# 2026-10-17 es sábado
SATURDAY_NOON = datetime(2026, 10, 17, 12, 0)

PANEER, FRIES, BURGER, DAL, JAMUN, BROWNIE, CHAI, COFFEE = range(1, 9)
STARTERS, MAINS, DESSERTS, BEVERAGES = range(1, 5)

MENU = MenuIndex(
    [
        MenuEntry(id=PANEER, name="Paneer Tikka", price=Decimal("150"), category_id=STARTERS, position=0),
        MenuEntry(id=FRIES, name="French Fries", price=Decimal("100"), category_id=STARTERS, position=1),
        MenuEntry(id=BURGER, name="Veg Burger", price=Decimal("200"), category_id=MAINS, position=2),
        MenuEntry(id=DAL, name="Dal Makhani", price=Decimal("280"), category_id=MAINS, position=3),
        MenuEntry(id=JAMUN, name="Gulab Jamun", price=Decimal("90"), category_id=DESSERTS, position=4),
        MenuEntry(id=BROWNIE, name="Chocolate Brownie", price=Decimal("150"), category_id=DESSERTS, position=5),
        MenuEntry(id=CHAI, name="Masala Chai", price=Decimal("60"), category_id=BEVERAGES, position=6),
        MenuEntry(id=COFFEE, name="Cold Coffee", price=Decimal("120"), category_id=BEVERAGES, position=7),
    ],
    {STARTERS: "Starters", MAINS: "Mains", DESSERTS: "Desserts", BEVERAGES: "Beverages"},
)


def _offer(offer_type, conditions=None, benefits=None, items=None, **kw):
    data = {
        "id": kw.pop("id", 1),
        "name": kw.pop("name", "Test offer"),
        "offer_type": offer_type,
        "conditions": conditions or {},
        "benefits": benefits or {},
        "items": items or [],
    }
    data.update(kw)
    return OfferDefinition.parse(data)


def _line(item_id, qty=1):
    e = MENU.get(item_id)
    return CartItem(id=e.id, name=e.name, price=e.price, quantity=qty, category_id=e.category_id)


def _eval(offer, cart, phone=None, lookup=None, now=SATURDAY_NOON, promo=None, **kw):
    ctx = EvaluationContext(now=now, menu=MENU, visit_lookup=lookup, promo_code=promo)
    return asyncio.run(evaluate(offer, cart, cart_total(cart), phone, context=ctx, **kw))


def _visits(n):
    async def lookup(phone):
        return n

    return lookup


# ---------- escenarios ----------
def test_cart_percentage_ten_percent_of_900():
    offer = _offer("cart_percentage", benefits={"discount_percentage": 10})
    cart = [_line(PANEER, 6)]
    res = _eval(offer, cart)
    assert res.is_eligible is True
    assert res.discount == Decimal("90")
    assert cart_total(cart) - res.discount == Decimal("810")


def test_threshold_item_reports_shortfall():
    offer = _offer(
        "cart_threshold_item",
        conditions={"min_amount": 500, "threshold_amount": 800},
        benefits={"max_price": 150},
        items=[{"menu_category_id": DESSERTS, "item_type": "free_threshold"}],
    )
    res = _eval(offer, [_line(PANEER, 5)])
    assert res.is_eligible is False
    assert res.reason == "Add ₹50 more to unlock"


def test_buy_two_get_one_same_item():
    offer = _offer(
        "item_buy_get_free",
        conditions={"buy_quantity": 2},
        benefits={"get_quantity": 1, "get_same_item": True},
        items=[{"menu_item_id": PANEER, "item_type": "buy"}],
    )
    res = _eval(offer, [_line(PANEER, 3)])
    assert res.is_eligible is True
    assert res.discount == Decimal("150")
    assert len(res.free_items) == 1
    free = res.free_items[0]
    assert free.id == PANEER and free.quantity == 1 and free.is_free is True


def test_future_start_date_never_eligible():
    offer = _offer(
        "cart_percentage",
        benefits={"discount_percentage": 10},
        start_date=SATURDAY_NOON + timedelta(days=1),
    )
    for cart in ([], [_line(PANEER)], [_line(DAL, 10)]):
        res = _eval(offer, cart)
        assert res.is_eligible is False
        assert res.reason == "Offer not started yet"


# ---------- ventanas ----------
def test_expired_offer():
    offer = _offer("cart_percentage", benefits={"discount_percentage": 10}, end_date=SATURDAY_NOON - timedelta(hours=1))
    assert _eval(offer, [_line(PANEER)]).reason == "Offer has expired"


def test_outside_hours_shows_12h_window():
    offer = _offer(
        "cart_percentage",
        benefits={"discount_percentage": 10},
        valid_hours_start="18:00",
        valid_hours_end="23:00",
    )
    res = _eval(offer, [_line(PANEER)])
    assert res.is_eligible is False
    assert res.reason == "Available 6:00 PM - 11:00 PM"


def test_overnight_window_wraps_midnight():
    offer = _offer(
        "cart_percentage",
        benefits={"discount_percentage": 10},
        valid_hours_start="22:00",
        valid_hours_end="02:00",
    )
    assert _eval(offer, [_line(PANEER)], now=datetime(2026, 10, 17, 1, 0)).is_eligible is True
    assert _eval(offer, [_line(PANEER)], now=datetime(2026, 10, 17, 23, 30)).is_eligible is True
    assert _eval(offer, [_line(PANEER)], now=SATURDAY_NOON).is_eligible is False


def test_valid_days():
    offer = _offer("cart_percentage", benefits={"discount_percentage": 10}, valid_days=["Monday", "Tuesday"])
    res = _eval(offer, [_line(PANEER)])
    assert res.reason == "Valid only on Monday, Tuesday"
    weekend = _offer("cart_percentage", benefits={"discount_percentage": 10}, valid_days=["saturday", "sunday"])
    assert _eval(weekend, [_line(PANEER)]).is_eligible is True


def test_min_amount_shortfall():
    offer = _offer("cart_percentage", conditions={"min_amount": 1000}, benefits={"discount_percentage": 10})
    res = _eval(offer, [_line(PANEER, 6)])
    assert res.reason == "Add ₹100 more to unlock"


def test_usage_limit_reached():
    offer = _offer("cart_percentage", benefits={"discount_percentage": 10}, usage_limit=10, usage_count=10)
    assert _eval(offer, [_line(PANEER)]).reason == "Usage limit reached"
    unlimited = _offer("cart_percentage", benefits={"discount_percentage": 10}, usage_limit=0, usage_count=10)
    assert _eval(unlimited, [_line(PANEER)]).is_eligible is True


# ---------- segmentos ----------
def test_segment_requires_phone():
    offer = _offer("customer_based", benefits={"discount_percentage": 15}, target_customer_type="first_time")
    assert _eval(offer, [_line(PANEER)]).reason == "Sign in to check eligibility"


def test_first_time_and_returning():
    first = _offer("customer_based", benefits={"discount_percentage": 10}, target_customer_type="first_time")
    back = _offer("customer_based", benefits={"discount_percentage": 10}, target_customer_type="returning")
    cart = [_line(PANEER, 2)]
    assert _eval(first, cart, phone="9000000001", lookup=_visits(0)).discount == Decimal("30")
    assert _eval(first, cart, phone="9000000001", lookup=_visits(3)).reason == "Only for first-time customers"
    assert _eval(back, cart, phone="9000000001", lookup=_visits(0)).reason == "Only for returning customers"
    assert _eval(back, cart, phone="9000000001", lookup=_visits(1)).is_eligible is True


def test_loyalty_alias_and_min_orders():
    offer = _offer(
        "customer_based",
        conditions={"min_orders_count": 5},
        benefits={"discount_amount": 100},
        target_customer_type="vip",
    )
    cart = [_line(DAL, 2)]
    assert _eval(offer, cart, phone="9000000002", lookup=_visits(2)).reason == "Requires 5+ previous orders"
    assert _eval(offer, cart, phone="9000000002", lookup=_visits(5)).discount == Decimal("100")


def test_lookup_failure_means_unidentified():
    async def broken(phone):
        raise ConnectionError("db down")

    offer = _offer("customer_based", benefits={"discount_percentage": 10}, target_customer_type="returning")
    res = _eval(offer, [_line(PANEER)], phone="9000000003", lookup=broken)
    assert res.is_eligible is False
    assert res.reason == "Sign in to check eligibility"


# ---------- configuración ----------
def test_unknown_offer_type():
    offer = _offer("mystery_box")
    assert _eval(offer, [_line(PANEER)]).reason == "Unknown offer type"


def test_missing_benefit_field_is_reported():
    offer = _offer("cart_percentage", benefits={})
    res = _eval(offer, [_line(PANEER)])
    assert res.is_eligible is False
    assert res.reason == "Offer misconfigured: discount_percentage is required"


def test_bad_segment_column_does_not_raise():
    offer = _offer("cart_percentage", benefits={"discount_percentage": 10}, target_customer_type="martians")
    res = _eval(offer, [_line(PANEER)])
    assert res.is_eligible is False
    assert res.reason.startswith("Offer misconfigured")


def test_combo_without_price_is_misconfigured():
    offer = _offer("combo_meal", combo_components=[{"menu_item_id": DAL}, {"menu_item_id": CHAI}])
    res = _eval(offer, [_line(DAL), _line(CHAI)])
    assert res.reason == "Offer misconfigured: combo_price is required"


# ---------- por tipo ----------
def test_percentage_cap_and_rounding():
    capped = _offer("cart_percentage", benefits={"discount_percentage": 50, "max_discount_amount": 100})
    assert _eval(capped, [_line(PANEER, 6)]).discount == Decimal("100")
    half = _offer("cart_percentage", benefits={"discount_percentage": 15})
    # 22.5 -> 23, 13.5 -> 14
    assert _eval(half, [_line(BROWNIE)]).discount == Decimal("23")
    assert _eval(half, [_line(JAMUN)]).discount == Decimal("14")


def test_flat_amount_clamped_to_total():
    offer = _offer("cart_flat_amount", benefits={"discount_amount": 500})
    assert _eval(offer, [_line(PANEER, 2)]).discount == Decimal("300")


def test_clamp_keeps_whole_units_when_total_has_paise():
    offer = _offer("cart_flat_amount", benefits={"discount_amount": 200})
    cart = [CartItem(id=99, name="Thali", price=Decimal("99.50"), quantity=1)]
    res = _eval(offer, cart)
    assert res.discount == Decimal("99")
    assert res.discount <= cart_total(cart)


def test_usage_cap_skipped_for_offer_locked_to_session():
    offer = _offer("cart_percentage", benefits={"discount_percentage": 10}, usage_limit=1, usage_count=1)
    cart = [_line(PANEER, 6)]
    assert _eval(offer, cart).reason == "Usage limit reached"

    ctx = EvaluationContext(now=SATURDAY_NOON, menu=MENU, locked_offer_id=offer.id)
    res = asyncio.run(evaluate(offer, cart, cart_total(cart), context=ctx))
    assert res.is_eligible is True
    assert res.discount == Decimal("90")


def test_min_order_discount():
    offer = _offer(
        "min_order_discount",
        conditions={"threshold_amount": 800},
        benefits={"discount_percentage": 10},
    )
    assert _eval(offer, [_line(PANEER, 5)]).reason == "Spend ₹800 to unlock (₹50 more needed)"
    assert _eval(offer, [_line(PANEER, 6)]).discount == Decimal("90")


def test_threshold_item_picks_cheapest_or_configured():
    links = [{"menu_category_id": DESSERTS, "item_type": "free_threshold"}]
    cheapest = _offer("cart_threshold_item", conditions={"threshold_amount": 800}, benefits={"max_price": 150}, items=links)
    res = _eval(cheapest, [_line(PANEER, 6)])
    assert res.is_eligible is True
    assert [f.id for f in res.free_items] == [JAMUN]
    assert res.discount == Decimal("90")

    preferred = _offer(
        "cart_threshold_item",
        conditions={"threshold_amount": 800},
        benefits={"max_price": 150, "free_item_id": BROWNIE},
        items=links,
    )
    res = _eval(preferred, [_line(PANEER, 6)])
    assert [f.id for f in res.free_items] == [BROWNIE]
    assert res.discount == Decimal("150")


def test_buy_get_needs_enough_units():
    offer = _offer(
        "item_buy_get_free",
        conditions={"buy_quantity": 2},
        benefits={"get_quantity": 1, "get_same_item": True},
        items=[{"menu_item_id": PANEER, "item_type": "buy"}],
    )
    res = _eval(offer, [_line(PANEER)])
    assert res.reason == "Buy 2 to get 1 free (1 more needed)"


def test_buy_get_other_item():
    offer = _offer(
        "item_buy_get_free",
        benefits={"buy_quantity": 2, "get_quantity": 1},
        items=[
            {"menu_item_id": BURGER, "item_type": "buy"},
            {"menu_category_id": BEVERAGES, "item_type": "get"},
        ],
    )
    res = _eval(offer, [_line(BURGER, 2)])
    assert res.is_eligible is True
    assert [f.id for f in res.free_items] == [CHAI]
    assert res.discount == Decimal("60")


def test_free_addon_requires_choice():
    offer = _offer(
        "item_free_addon",
        benefits={"max_free_price": 110},
        items=[
            {"menu_item_id": BURGER, "item_type": "buy"},
            {"menu_item_id": FRIES, "item_type": "addon"},
            {"menu_item_id": COFFEE, "item_type": "addon"},
        ],
    )
    assert _eval(offer, [_line(DAL)]).reason == "Add Veg Burger to unlock"

    cart = [_line(BURGER)]
    res = _eval(offer, cart)
    assert res.is_eligible is True
    assert res.requires_user_action is True
    assert res.action_type == "select_free_item"
    assert [o.id for o in res.available_free_items] == [FRIES]

    chosen = apply_free_item_choice(offer, res, FRIES, cart_total(cart))
    assert chosen.discount == Decimal("100")
    assert chosen.free_items[0].id == FRIES
    assert apply_free_item_choice(offer, res, COFFEE, cart_total(cart)) is None


def test_item_percentage_and_override():
    offer = _offer("item_percentage", benefits={"discount_percentage": 20})
    cart = [_line(PANEER, 2), _line(DAL)]
    assert _eval(offer, cart).reason == "Qualifying items not configured"
    res = _eval(offer, cart, offer_items=[OfferLink(menu_item_id=PANEER, item_type="discount")])
    assert res.discount == Decimal("60")
    assert _eval(offer, [_line(DAL)], offer_items=[OfferLink(menu_item_id=PANEER)]).reason == (
        "Add qualifying items to unlock"
    )


def test_time_based_category_discount():
    offer = _offer(
        "time_based",
        conditions={"categories": [BEVERAGES]},
        benefits={"discount_percentage": 20},
        valid_hours_start="11:00",
        valid_hours_end="16:00",
    )
    assert _eval(offer, [_line(CHAI), _line(PANEER)]).discount == Decimal("12")
    assert _eval(offer, [_line(PANEER)]).reason == "Add items from eligible categories to unlock"


def test_combo_meal():
    offer = _offer(
        "combo_meal",
        benefits={"combo_price": 299},
        combo_components=[{"menu_item_id": DAL, "quantity": 1}, {"menu_item_id": CHAI, "quantity": 1}],
    )
    assert _eval(offer, [_line(DAL), _line(CHAI)]).discount == Decimal("41")
    assert _eval(offer, [_line(DAL)]).reason == "Add Masala Chai to complete combo"


def test_promo_code():
    offer = _offer("promo_code", benefits={"discount_amount": 50}, promo_code="WELCOME50")
    cart = [_line(PANEER, 2)]
    assert _eval(offer, cart).reason == "Enter promo code to apply"
    assert _eval(offer, cart, promo="SAVE10").reason == "Invalid promo code"
    assert _eval(offer, cart, promo="welcome50").reason == "Invalid promo code"
    assert _eval(offer, cart, promo="  WELCOME50 ").discount == Decimal("50")


# ---------- propiedades ----------
OFFERS = [
    _offer("cart_percentage", benefits={"discount_percentage": 100}),
    _offer("cart_flat_amount", benefits={"discount_amount": 10000}),
    _offer("min_order_discount", conditions={"threshold_amount": 100}, benefits={"discount_amount": 5000}),
    _offer(
        "item_buy_get_free",
        benefits={"buy_quantity": 1, "get_quantity": 5, "get_same_item": True},
        items=[{"menu_item_id": DAL, "item_type": "buy"}],
    ),
    _offer("combo_meal", benefits={"combo_price": 0}, combo_components=[{"menu_item_id": DAL}]),
    _offer("customer_based", benefits={"discount_percentage": 99.5}),
]
CARTS = [
    [],
    [_line(CHAI)],
    [_line(DAL)],
    [_line(DAL, 3), _line(JAMUN)],
    [_line(PANEER, 7), _line(COFFEE, 2)],
]


@pytest.mark.parametrize("offer", OFFERS, ids=lambda o: o.offer_type)
def test_discount_always_within_cart_total(offer):
    for cart in CARTS:
        res = _eval(offer, cart)
        assert Decimal("0") <= res.discount <= cart_total(cart)


@pytest.mark.parametrize("offer", OFFERS, ids=lambda o: o.offer_type)
def test_evaluation_is_idempotent(offer):
    for cart in CARTS:
        assert _eval(offer, cart) == _eval(offer, cart)


def test_cart_level_discounts_are_monotonic():
    pct = _offer("cart_percentage", benefits={"discount_percentage": 12.5})
    flat = _offer("cart_flat_amount", benefits={"discount_amount": 250})
    for offer in (pct, flat):
        last = Decimal("-1")
        for qty in range(1, 12):
            d = _eval(offer, [_line(JAMUN, qty)]).discount
            assert d >= last
            last = d

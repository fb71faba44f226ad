from decimal import Decimal
from typing import Dict

from sqlalchemy.orm import Session

from .db import Base, SessionLocal, engine
from .models import customer as _customer_models  # noqa: F401
from .models import order as _order_models  # noqa: F401
from .models import table_session as _table_session_models  # noqa: F401
from .models.menu import MenuCategory, MenuItem
from .models.offer import ComboMeal, ComboMealItem, Offer, OfferItem

CATEGORIES = ["Starters", "Mains", "Desserts", "Beverages"]

MENU = [
    # (nombre, precio, categoría)
    ("Paneer Tikka", "150.00", "Starters"),
    ("Veg Spring Roll", "180.00", "Starters"),
    ("French Fries", "100.00", "Starters"),
    ("Butter Chicken", "350.00", "Mains"),
    ("Dal Makhani", "280.00", "Mains"),
    ("Veg Burger", "200.00", "Mains"),
    ("Gulab Jamun", "90.00", "Desserts"),
    ("Chocolate Brownie", "150.00", "Desserts"),
    ("Masala Chai", "60.00", "Beverages"),
    ("Cold Coffee", "120.00", "Beverages"),
]


def get_or_create(session: Session, model, defaults=None, **kwargs):
    inst = session.query(model).filter_by(**kwargs).first()
    if inst:
        return inst, False
    params = dict(kwargs)
    if defaults:
        params.update(defaults)
    inst = model(**params)
    session.add(inst)
    session.commit()
    session.refresh(inst)
    return inst, True


def _offers(cat: Dict[str, int], item: Dict[str, int]):
    """Ofertas demo: (campos de offer, ligas offer_item, combo)."""
    return [
        (
            dict(
                name="10% Off Everything",
                offer_type="cart_percentage",
                conditions={},
                benefits={"discount_percentage": 10},
                priority=10,
            ),
            [],
            None,
        ),
        (
            dict(
                name="Flat ₹100 Off Above ₹1500",
                offer_type="cart_flat_amount",
                conditions={"min_amount": 1500},
                benefits={"discount_amount": 100},
                priority=8,
                application_type="session_level",
            ),
            [],
            None,
        ),
        (
            dict(
                name="Free Dessert Above ₹800",
                offer_type="cart_threshold_item",
                conditions={"min_amount": 500, "threshold_amount": 800},
                benefits={"max_price": 150},
                priority=7,
            ),
            [dict(menu_category_id=cat["Desserts"], item_type="free_threshold")],
            None,
        ),
        (
            dict(
                name="Buy 2 Paneer Tikka Get 1 Free",
                offer_type="item_buy_get_free",
                conditions={"buy_quantity": 2},
                benefits={"get_quantity": 1, "get_same_item": True},
                priority=6,
            ),
            [dict(menu_item_id=item["Paneer Tikka"], item_type="buy")],
            None,
        ),
        (
            dict(
                name="Free Side With Burger",
                offer_type="item_free_addon",
                conditions={},
                benefits={"max_free_price": 120},
                priority=5,
            ),
            [
                dict(menu_item_id=item["Veg Burger"], item_type="buy"),
                dict(menu_item_id=item["French Fries"], item_type="addon"),
                dict(menu_item_id=item["Cold Coffee"], item_type="addon"),
            ],
            None,
        ),
        (
            dict(
                name="Lunch Combo",
                offer_type="combo_meal",
                conditions={},
                benefits={"combo_price": 299},
                priority=4,
            ),
            [],
            ("Dal Makhani + Chai", "299.00", [(item["Dal Makhani"], 1), (item["Masala Chai"], 1)]),
        ),
        (
            dict(
                name="Chai Time",
                offer_type="time_based",
                conditions={"categories": [cat["Beverages"]]},
                benefits={"discount_percentage": 20},
                valid_hours_start="15:00",
                valid_hours_end="18:00",
                priority=3,
            ),
            [],
            None,
        ),
        (
            dict(
                name="Welcome 15%",
                offer_type="customer_based",
                conditions={},
                benefits={"discount_percentage": 15, "max_discount_amount": 150},
                target_customer_type="first_time",
                priority=2,
            ),
            [],
            None,
        ),
        (
            dict(
                name="WELCOME50",
                offer_type="promo_code",
                conditions={},
                benefits={"discount_amount": 50},
                promo_code="WELCOME50",
                priority=1,
            ),
            [],
            None,
        ),
    ]


def seed(db: Session) -> Dict[str, Dict[str, int]]:
    """Carga menú y ofertas demo; idempotente por nombre."""
    cat: Dict[str, int] = {}
    for pos, name in enumerate(CATEGORIES):
        c, _ = get_or_create(db, MenuCategory, name=name, defaults={"display_order": pos, "is_active": True})
        cat[name] = c.id

    item: Dict[str, int] = {}
    for pos, (name, price, category) in enumerate(MENU):
        m, _ = get_or_create(
            db,
            MenuItem,
            name=name,
            defaults={"price": Decimal(price), "category_id": cat[category], "display_order": pos},
        )
        item[name] = m.id

    offers: Dict[str, int] = {}
    for fields, links, combo in _offers(cat, item):
        row = db.query(Offer).filter_by(name=fields["name"]).first()
        if row is None:
            row = Offer(is_active=True, **fields)
            row.items = [OfferItem(**link) for link in links]
            if combo:
                combo_name, combo_price, parts = combo
                row.combo_meals = [
                    ComboMeal(
                        name=combo_name,
                        combo_price=Decimal(combo_price),
                        items=[ComboMealItem(menu_item_id=mid, quantity=qty) for mid, qty in parts],
                    )
                ]
            db.add(row)
            db.commit()
            db.refresh(row)
        offers[row.name] = row.id
    return {"categories": cat, "menu": item, "offers": offers}


def main():
    Base.metadata.create_all(bind=engine)
    db: Session = SessionLocal()
    try:
        ids = seed(db)
        print(f"Seed OK | menu_items={len(ids['menu'])} offers={len(ids['offers'])}")
    finally:
        db.close()


if __name__ == "__main__":
    main()

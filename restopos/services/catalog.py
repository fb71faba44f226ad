import logging
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

from pydantic import BaseModel, ConfigDict
from sqlalchemy.orm import Session, selectinload

from ..core.offer_types import OfferDefinition, OfferLink
from ..models.menu import MenuCategory, MenuItem
from ..models.offer import ComboMeal, Offer

logger = logging.getLogger("restopos.catalog")

CHANNELS = ("dine_in", "takeaway")


class MenuEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    price: Decimal
    category_id: Optional[int] = None
    is_available: bool = True
    position: int = 0


class MenuIndex:
    """Vista de sólo lectura del menú, en orden de catálogo."""

    def __init__(self, entries: Iterable[MenuEntry] = (), categories: Optional[Dict[int, str]] = None):
        ordered = sorted(entries, key=lambda e: (e.position, e.id))
        self._by_id = {e.id: e for e in ordered}
        self._categories = dict(categories or {})

    def __len__(self):
        return len(self._by_id)

    def get(self, item_id: Optional[int]) -> Optional[MenuEntry]:
        if item_id is None:
            return None
        return self._by_id.get(item_id)

    def category_name(self, category_id: Optional[int]) -> Optional[str]:
        return self._categories.get(category_id)

    def in_category(self, category_id: int) -> List[MenuEntry]:
        return [e for e in self._by_id.values() if e.category_id == category_id and e.is_available]

    def resolve(self, links: Iterable[OfferLink]) -> List[MenuEntry]:
        """Expande ligas item/categoría a entradas del menú, sin duplicados."""
        out: Dict[int, MenuEntry] = {}
        for link in links:
            if link.menu_item_id is not None:
                entry = self.get(link.menu_item_id)
                if entry is not None:
                    out.setdefault(entry.id, entry)
            elif link.menu_category_id is not None:
                for entry in self.in_category(link.menu_category_id):
                    out.setdefault(entry.id, entry)
        return list(out.values())

    @classmethod
    def load(cls, db: Session) -> "MenuIndex":
        rows = (
            db.query(MenuItem)
            .order_by(MenuItem.display_order, MenuItem.id)
            .all()
        )
        entries = [
            MenuEntry(
                id=r.id,
                name=r.name,
                price=Decimal(str(r.price)),
                category_id=r.category_id,
                is_available=bool(r.is_available),
                position=pos,
            )
            for pos, r in enumerate(rows)
        ]
        cats = {c.id: c.name for c in db.query(MenuCategory).all()}
        return cls(entries, cats)


def offer_to_definition(row: Offer) -> OfferDefinition:
    combo: Optional[ComboMeal] = row.combo_meals[0] if row.combo_meals else None
    data = {
        "id": row.id,
        "name": row.name,
        "description": row.description,
        "offer_type": row.offer_type,
        "is_active": bool(row.is_active),
        "priority": row.priority,
        "start_date": row.start_date,
        "end_date": row.end_date,
        "valid_hours_start": row.valid_hours_start,
        "valid_hours_end": row.valid_hours_end,
        "valid_days": row.valid_days,
        "target_customer_type": row.target_customer_type,
        "min_orders_count": row.min_orders_count,
        "usage_limit": row.usage_limit,
        "usage_count": row.usage_count,
        "promo_code": row.promo_code,
        "enabled_for_dine_in": row.enabled_for_dine_in is not False,
        "enabled_for_takeaway": row.enabled_for_takeaway is not False,
        "application_type": row.application_type,
        "conditions": row.conditions,
        "benefits": row.benefits,
        "items": [
            {
                "menu_item_id": oi.menu_item_id,
                "menu_category_id": oi.menu_category_id,
                "item_type": oi.item_type,
                "quantity": oi.quantity,
            }
            for oi in sorted(row.items, key=lambda x: x.id)
        ],
        "combo_components": [
            {"menu_item_id": ci.menu_item_id, "quantity": ci.quantity, "is_required": ci.is_required is not False}
            for ci in (combo.items if combo else [])
        ],
        "combo_price": combo.combo_price if combo else None,
    }
    definition = OfferDefinition.parse(data)
    if definition.config_error:
        logger.warning("offer %s (%s) misconfigured: %s", row.id, row.offer_type, definition.config_error)
    return definition


def promo_offer(offers: Iterable[OfferDefinition], code: Optional[str]) -> Optional[OfferDefinition]:
    """Oferta promo_code por código exacto (sin espacios alrededor)."""
    code = (code or "").strip()
    if not code:
        return None
    for offer in offers:
        if offer.offer_type == "promo_code" and offer.promo_code and offer.promo_code.strip() == code:
            return offer
    return None


class OfferCatalog:
    """Ofertas activas por canal, ordenadas por prioridad (mayor primero)."""

    def __init__(self, db: Session):
        self.db = db

    def _query(self, active_only: bool = True):
        q = self.db.query(Offer).options(
            selectinload(Offer.items),
            selectinload(Offer.combo_meals).selectinload(ComboMeal.items),
        )
        return q.filter(Offer.is_active.is_(True)) if active_only else q

    def active(self, channel: str = "dine_in") -> List[OfferDefinition]:
        if channel not in CHANNELS:
            raise ValueError(f"unknown channel: {channel}")
        q = self._query()
        if channel == "dine_in":
            q = q.filter(Offer.enabled_for_dine_in.isnot(False))
        else:
            q = q.filter(Offer.enabled_for_takeaway.isnot(False))
        rows = q.order_by(Offer.priority.desc(), Offer.id).all()
        return [offer_to_definition(r) for r in rows]

    def get(self, offer_id: int) -> Optional[OfferDefinition]:
        row = self._query(active_only=False).filter(Offer.id == offer_id).first()
        return offer_to_definition(row) if row else None

    def menu(self) -> MenuIndex:
        return MenuIndex.load(self.db)

"""Tipos de oferta y sus payloads.

Cada ``offer_type`` tiene un par (condiciones, beneficios) fuertemente tipado.
El JSON libre de la tabla ``offer`` se valida aquí, al cargar el catálogo; una
oferta mal configurada se conserva con ``config_error`` para que la evaluación
la marque como no elegible sin afectar al resto del catálogo.
"""
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)


class OfferType(str, Enum):
    CART_PERCENTAGE = "cart_percentage"
    CART_FLAT_AMOUNT = "cart_flat_amount"
    MIN_ORDER_DISCOUNT = "min_order_discount"
    CART_THRESHOLD_ITEM = "cart_threshold_item"
    ITEM_BUY_GET_FREE = "item_buy_get_free"
    ITEM_FREE_ADDON = "item_free_addon"
    ITEM_PERCENTAGE = "item_percentage"
    TIME_BASED = "time_based"
    CUSTOMER_BASED = "customer_based"
    COMBO_MEAL = "combo_meal"
    PROMO_CODE = "promo_code"


class CustomerType(str, Enum):
    ALL = "all"
    FIRST_TIME = "first_time"
    RETURNING = "returning"
    LOYALTY = "loyalty"


# Segmentos sueltos que usa el formulario de admin
SEGMENT_ALIASES = {
    "new": CustomerType.FIRST_TIME,
    "repeat": CustomerType.RETURNING,
    "regular": CustomerType.RETURNING,
    "vip": CustomerType.LOYALTY,
}

ITEM_TYPES = ("buy", "get_free", "addon", "discount", "free_threshold")


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore", frozen=True)


# ---------- condiciones ----------
class BaseConditions(_Payload):
    min_orders_count: Optional[int] = Field(default=None, ge=0)


class CartConditions(BaseConditions):
    min_amount: Optional[Decimal] = Field(default=None, ge=0)


class MinOrderConditions(BaseConditions):
    threshold_amount: Decimal = Field(ge=0)


class ThresholdItemConditions(CartConditions):
    threshold_amount: Decimal = Field(ge=0)


class BuyGetConditions(CartConditions):
    buy_quantity: Optional[int] = Field(default=None, gt=0)


class TimeBasedConditions(CartConditions):
    categories: List[int] = Field(default_factory=list)


# ---------- beneficios ----------
class PercentageBenefit(_Payload):
    discount_percentage: Decimal = Field(ge=0, le=100)
    max_discount_amount: Optional[Decimal] = Field(default=None, ge=0)


class FlatBenefit(_Payload):
    discount_amount: Decimal = Field(ge=0)


class DiscountBenefit(_Payload):
    """Porcentaje o monto fijo; se usa el porcentaje si vienen ambos."""

    discount_percentage: Optional[Decimal] = Field(default=None, ge=0, le=100)
    discount_amount: Optional[Decimal] = Field(default=None, ge=0)
    max_discount_amount: Optional[Decimal] = Field(default=None, ge=0)

    @model_validator(mode="after")
    def _one_of(self):
        if not self.discount_percentage and not self.discount_amount:
            raise ValueError("discount_percentage or discount_amount is required")
        return self


class ThresholdItemBenefit(_Payload):
    max_price: Optional[Decimal] = Field(default=None, ge=0)
    free_item_id: Optional[int] = None


class BuyGetBenefit(_Payload):
    buy_quantity: Optional[int] = Field(default=None, gt=0)
    get_quantity: int = Field(default=1, gt=0)
    get_same_item: bool = False


class AddonRef(_Payload):
    id: int
    type: Literal["item", "category"] = "item"


class FreeAddonBenefit(_Payload):
    max_free_price: Optional[Decimal] = Field(
        default=None, ge=0, validation_alias=AliasChoices("max_free_price", "max_price")
    )
    free_addon_items: List[AddonRef] = Field(default_factory=list)


class ItemPercentageBenefit(_Payload):
    discount_percentage: Decimal = Field(ge=0, le=100)


class ComboBenefit(_Payload):
    combo_price: Optional[Decimal] = Field(default=None, ge=0)


PAYLOADS: Dict[OfferType, Tuple[type, type]] = {
    OfferType.CART_PERCENTAGE: (CartConditions, PercentageBenefit),
    OfferType.CART_FLAT_AMOUNT: (CartConditions, FlatBenefit),
    OfferType.MIN_ORDER_DISCOUNT: (MinOrderConditions, DiscountBenefit),
    OfferType.CART_THRESHOLD_ITEM: (ThresholdItemConditions, ThresholdItemBenefit),
    OfferType.ITEM_BUY_GET_FREE: (BuyGetConditions, BuyGetBenefit),
    OfferType.ITEM_FREE_ADDON: (CartConditions, FreeAddonBenefit),
    OfferType.ITEM_PERCENTAGE: (CartConditions, ItemPercentageBenefit),
    OfferType.TIME_BASED: (TimeBasedConditions, DiscountBenefit),
    OfferType.CUSTOMER_BASED: (CartConditions, DiscountBenefit),
    OfferType.COMBO_MEAL: (CartConditions, ComboBenefit),
    OfferType.PROMO_CODE: (CartConditions, DiscountBenefit),
}


class OfferLink(_Payload):
    menu_item_id: Optional[int] = None
    menu_category_id: Optional[int] = None
    item_type: Optional[str] = None
    quantity: Optional[int] = None

    @field_validator("item_type", mode="before")
    @classmethod
    def _legacy_get(cls, v):
        return "get_free" if v == "get" else v


class ComboComponent(_Payload):
    menu_item_id: int
    quantity: int = Field(default=1, gt=0)
    is_required: bool = True

    @field_validator("quantity", mode="before")
    @classmethod
    def _default_qty(cls, v):
        return v or 1


def describe_validation_error(exc: ValidationError) -> str:
    err = exc.errors()[0]
    field = ".".join(str(p) for p in err.get("loc") or ())
    if err.get("type") == "missing":
        return f"Offer misconfigured: {field} is required"
    msg = str(err.get("msg", "invalid value")).removeprefix("Value error, ")
    return f"Offer misconfigured: {field} {msg}" if field else f"Offer misconfigured: {msg}"


class OfferDefinition(BaseModel):
    model_config = ConfigDict(frozen=True, arbitrary_types_allowed=True)

    id: int
    name: str
    description: Optional[str] = None
    offer_type: str
    is_active: bool = True
    priority: int = 0
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    valid_hours_start: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}")
    valid_hours_end: Optional[str] = Field(default=None, pattern=r"^\d{2}:\d{2}")
    valid_days: Optional[List[str]] = None
    target_customer_type: CustomerType = CustomerType.ALL
    min_orders_count: Optional[int] = None
    usage_limit: Optional[int] = None
    usage_count: int = 0
    promo_code: Optional[str] = None
    enabled_for_dine_in: bool = True
    enabled_for_takeaway: bool = True
    application_type: Literal["session_level", "order_level"] = "order_level"
    items: List[OfferLink] = Field(default_factory=list)
    combo_components: List[ComboComponent] = Field(default_factory=list)
    combo_price: Optional[Decimal] = None

    conditions: Optional[Any] = None
    benefits: Optional[Any] = None
    raw_conditions: Dict[str, Any] = Field(default_factory=dict)
    raw_benefits: Dict[str, Any] = Field(default_factory=dict)
    config_error: Optional[str] = None

    @field_validator("valid_days", mode="before")
    @classmethod
    def _lower_days(cls, v):
        if not v:
            return None
        return [str(d).strip().lower() for d in v]

    @field_validator("target_customer_type", mode="before")
    @classmethod
    def _segment(cls, v):
        if not v:
            return CustomerType.ALL
        s = str(v).strip().lower()
        return SEGMENT_ALIASES.get(s, s)

    @field_validator("usage_count", "priority", mode="before")
    @classmethod
    def _none_to_zero(cls, v):
        return v or 0

    @field_validator("application_type", mode="before")
    @classmethod
    def _app_type(cls, v):
        return v or "order_level"

    @property
    def kind(self) -> Optional[OfferType]:
        try:
            return OfferType(self.offer_type)
        except ValueError:
            return None

    def links(self, *item_types: str) -> List[OfferLink]:
        if not item_types:
            return list(self.items)
        return [oi for oi in self.items if oi.item_type in item_types]

    @classmethod
    def parse(cls, data: Dict[str, Any]) -> "OfferDefinition":
        data = dict(data)
        raw_c = dict(data.pop("conditions", None) or {})
        raw_b = dict(data.pop("benefits", None) or {})
        conditions = benefits = None
        error = None
        try:
            kind = OfferType(data.get("offer_type"))
        except ValueError:
            error = "Unknown offer type"
        else:
            cond_model, ben_model = PAYLOADS[kind]
            try:
                conditions = cond_model.model_validate(raw_c)
                benefits = ben_model.model_validate(raw_b)
            except ValidationError as exc:
                error = describe_validation_error(exc)
        try:
            return cls(
                **data,
                conditions=conditions,
                benefits=benefits,
                raw_conditions=raw_c,
                raw_benefits=raw_b,
                config_error=error,
            )
        except ValidationError as exc:
            # columnas fuera de rango (segmento, horario...): se conserva sólo la identidad
            return cls(
                id=data["id"],
                name=data.get("name") or f"offer-{data['id']}",
                offer_type=str(data.get("offer_type")),
                priority=data.get("priority") or 0,
                raw_conditions=raw_c,
                raw_benefits=raw_b,
                config_error=error or describe_validation_error(exc),
            )

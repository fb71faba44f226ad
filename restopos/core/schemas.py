from datetime import datetime
from decimal import Decimal
from typing import List, Literal, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


def to_decimal(v):
    if v is None or isinstance(v, Decimal):
        return v
    return Decimal(str(v))


class CartItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    price: Decimal
    quantity: int = Field(gt=0)
    category_id: Optional[int] = None
    is_free: bool = False
    linked_offer_id: Optional[int] = None

    @field_validator("price", mode="before")
    @classmethod
    def _price_to_decimal(cls, v):
        return to_decimal(v)

    @property
    def line_total(self) -> Decimal:
        return self.price * self.quantity


class FreeItemOption(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: int
    name: str
    price: Decimal
    type: Literal["item", "category"] = "item"


class EligibilityResult(BaseModel):
    """Resultado inmutable de evaluar una oferta contra un carrito."""

    model_config = ConfigDict(frozen=True)

    is_eligible: bool
    reason: Optional[str] = None
    discount: Decimal = Decimal("0")
    free_items: Optional[List[CartItem]] = None
    requires_user_action: bool = False
    action_type: Optional[Literal["select_free_item"]] = None
    available_free_items: Optional[List[FreeItemOption]] = None

    @classmethod
    def ineligible(cls, reason: str) -> "EligibilityResult":
        return cls(is_eligible=False, reason=reason, discount=Decimal("0"))

    @property
    def grants_free_items(self) -> bool:
        return bool(self.free_items)


class LockSnapshot(BaseModel):
    model_config = ConfigDict(frozen=True)

    offer_id: int
    name: str
    offer_type: str
    application_type: str = "order_level"
    conditions: dict = Field(default_factory=dict)
    benefits: dict = Field(default_factory=dict)
    items: List[dict] = Field(default_factory=list)
    locked_at: datetime


class SessionOfferLock(BaseModel):
    model_config = ConfigDict(frozen=True)

    locked_offer_id: int
    locked_offer_snapshot: LockSnapshot
    locked_at: datetime
    locked_by_guest: bool


class UsageFreeItem(BaseModel):
    id: int
    name: str
    quantity: int
    price: Decimal


class UsageRecord(BaseModel):
    offer_id: int
    order_id: int
    session_id: Optional[int] = None
    customer_phone: Optional[str] = None
    discount_amount: Decimal
    free_items: List[UsageFreeItem] = Field(default_factory=list)


def cart_total(items) -> Decimal:
    """Total cobrable: las líneas gratis no suman."""
    return sum((it.line_total for it in items if not it.is_free), Decimal("0"))

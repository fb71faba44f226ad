from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from ..db import Base


class Offer(Base):
    __tablename__ = "offer"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    description = Column(String(255))
    offer_type = Column(String(40), nullable=False, index=True)
    conditions = Column(JSON)  # forma según offer_type
    benefits = Column(JSON)
    is_active = Column(Boolean, default=True)
    priority = Column(Integer, default=0)
    start_date = Column(DateTime)
    end_date = Column(DateTime)
    valid_hours_start = Column(String(5))  # 'HH:MM'
    valid_hours_end = Column(String(5))
    valid_days = Column(JSON)  # ["saturday", "sunday"]
    target_customer_type = Column(String(20), default="all")
    min_orders_count = Column(Integer)
    usage_limit = Column(Integer)
    usage_count = Column(Integer, default=0)
    promo_code = Column(String(40), index=True)
    enabled_for_dine_in = Column(Boolean, default=True)
    enabled_for_takeaway = Column(Boolean, default=True)
    application_type = Column(String(20), default="order_level")  # session_level | order_level
    created_at = Column(DateTime, default=datetime.utcnow)

    items = relationship("OfferItem", back_populates="offer", cascade="all, delete-orphan")
    combo_meals = relationship("ComboMeal", back_populates="offer", cascade="all, delete-orphan")


class OfferItem(Base):
    __tablename__ = "offer_item"
    id = Column(Integer, primary_key=True, index=True)
    offer_id = Column(Integer, ForeignKey("offer.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_item.id"))
    menu_category_id = Column(Integer, ForeignKey("menu_category.id"))
    item_type = Column(String(20))  # buy | get_free | addon | discount | free_threshold
    quantity = Column(Integer)

    offer = relationship("Offer", back_populates="items")


class ComboMeal(Base):
    __tablename__ = "combo_meal"
    id = Column(Integer, primary_key=True, index=True)
    offer_id = Column(Integer, ForeignKey("offer.id"), nullable=False, index=True)
    name = Column(String(120), nullable=False)
    combo_price = Column(Numeric(10, 2), nullable=False)
    is_customizable = Column(Boolean, default=False)

    offer = relationship("Offer", back_populates="combo_meals")
    items = relationship("ComboMealItem", back_populates="combo_meal", cascade="all, delete-orphan")


class ComboMealItem(Base):
    __tablename__ = "combo_meal_item"
    id = Column(Integer, primary_key=True, index=True)
    combo_meal_id = Column(Integer, ForeignKey("combo_meal.id"), nullable=False)
    menu_item_id = Column(Integer, ForeignKey("menu_item.id"), nullable=False)
    quantity = Column(Integer, default=1)
    is_required = Column(Boolean, default=True)

    combo_meal = relationship("ComboMeal", back_populates="items")


class OfferUsage(Base):
    __tablename__ = "offer_usage"
    id = Column(Integer, primary_key=True)
    offer_id = Column(Integer, ForeignKey("offer.id"), nullable=False, index=True)
    order_id = Column(Integer, ForeignKey("pos_order.id"))
    table_session_id = Column(Integer, ForeignKey("table_session.id"))
    customer_phone = Column(String(40))
    discount_amount = Column(Numeric(12, 2), default=0)
    free_items = Column(JSON)
    used_at = Column(DateTime, default=datetime.utcnow)

    # una oferta por sesión; en takeaway table_session_id es NULL y no choca
    __table_args__ = (UniqueConstraint("offer_id", "table_session_id", name="uq_offer_session"),)

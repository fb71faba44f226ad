from datetime import datetime

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, Numeric, String

from ..db import Base


class PosOrder(Base):
    __tablename__ = "pos_order"
    id = Column(Integer, primary_key=True)
    order_no = Column(String, unique=True, index=True)
    table_session_id = Column(Integer, ForeignKey("table_session.id"), nullable=True, index=True)
    order_type = Column(String(20), nullable=False)  # dine_in | takeaway
    customer_phone = Column(String(40))
    subtotal = Column(Numeric(12, 2), default=0)
    discount_total = Column(Numeric(12, 2), default=0)
    total = Column(Numeric(12, 2), default=0)
    session_offer_id = Column(Integer, ForeignKey("offer.id"), nullable=True)
    created_by_type = Column(String(20), default="guest")  # guest | staff
    status = Column(String, default="placed")  # placed | completed | cancelled
    created_at = Column(DateTime, default=datetime.utcnow)


class PosOrderItem(Base):
    __tablename__ = "pos_order_item"
    id = Column(Integer, primary_key=True)
    order_id = Column(Integer, ForeignKey("pos_order.id"), nullable=False, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_item.id"), nullable=False)
    name = Column(String(120))
    quantity = Column(Integer, nullable=False)
    unit_price = Column(Numeric(12, 2), nullable=False)
    total_price = Column(Numeric(12, 2), default=0)
    is_free = Column(Boolean, default=False)
    linked_offer_id = Column(Integer, ForeignKey("offer.id"), nullable=True)

from datetime import datetime

from sqlalchemy import JSON, Boolean, Column, DateTime, Integer, Numeric, String

from ..db import Base


class TableSession(Base):
    __tablename__ = "table_session"

    id = Column(Integer, primary_key=True, index=True)
    table_code = Column(String(20), nullable=False, index=True)
    status = Column(String(20), default="active")  # active | closed
    customer_phone = Column(String(40), nullable=True)
    session_started_at = Column(DateTime, default=datetime.utcnow)
    session_ended_at = Column(DateTime, nullable=True)
    total_orders = Column(Integer, default=0)
    total_amount = Column(Numeric(12, 2), default=0)
    # cuenta final: descuento de oferta session_level calculado al cerrar
    offer_discount = Column(Numeric(12, 2), default=0)
    bill_total = Column(Numeric(12, 2), nullable=True)

    # Bloqueo de oferta: se escribe una sola vez (UPDATE ... WHERE locked_offer_id IS NULL)
    locked_offer_id = Column(Integer, nullable=True)
    locked_offer_data = Column(JSON, nullable=True)
    offer_applied_at = Column(DateTime, nullable=True)
    locked_by_guest = Column(Boolean, nullable=True)

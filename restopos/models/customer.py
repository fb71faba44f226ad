from datetime import datetime

from sqlalchemy import Column, DateTime, Integer, String

from ..db import Base


class GuestUser(Base):
    __tablename__ = "guest_user"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=True)
    phone = Column(String(40), unique=True, index=True, nullable=False)
    visit_count = Column(Integer, default=0)
    last_visit_at = Column(DateTime, default=datetime.utcnow)

from sqlalchemy import Boolean, Column, ForeignKey, Integer, Numeric, String
from sqlalchemy.orm import relationship

from ..db import Base


class MenuCategory(Base):
    __tablename__ = "menu_category"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    display_order = Column(Integer, default=0)
    is_active = Column(Boolean, default=True)

    items = relationship("MenuItem", back_populates="category")


class MenuItem(Base):
    __tablename__ = "menu_item"
    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(120), nullable=False)
    price = Column(Numeric(10, 2), nullable=False)
    category_id = Column(Integer, ForeignKey("menu_category.id"), nullable=True, index=True)
    is_veg = Column(Boolean, default=True)
    is_available = Column(Boolean, default=True)
    display_order = Column(Integer, default=0)

    category = relationship("MenuCategory", back_populates="items")

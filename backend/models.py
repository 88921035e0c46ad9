import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, ForeignKey, Integer, String, Float, DateTime, Text, Numeric, CheckConstraint
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func
from database import Base


def utcnow():
    return datetime.now(timezone.utc)


def new_identity():
    return str(uuid.uuid4())


class User(Base):
    __tablename__ = "users"

    id = Column(String(36), primary_key=True, default=new_identity)
    email = Column(String(255), unique=True, index=True, nullable=False)
    password = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    profile = relationship("Profile", back_populates="user", uselist=False, cascade="all, delete-orphan")


class Profile(Base):
    __tablename__ = "profiles"

    id = Column(String(36), ForeignKey("users.id", ondelete="CASCADE"), primary_key=True)
    full_name = Column(String(100))
    role = Column(String(20), nullable=False, default="customer", index=True)
    phone = Column(String(30))
    lat = Column(Float)
    lon = Column(Float)
    is_online = Column(Boolean, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    user = relationship("User", back_populates="profile")


class MenuItem(Base):
    __tablename__ = "menu_items"
    __table_args__ = (CheckConstraint("price >= 0", name="ck_menu_items_price"),)

    id = Column(Integer, primary_key=True, index=True)
    name = Column(String(100), nullable=False)
    description = Column(Text)
    price = Column(Numeric(10, 2), nullable=False)
    image_url = Column(String(500))
    is_available = Column(Boolean, default=True, index=True)
    category = Column(String(60))
    preparation_time_minutes = Column(Integer, default=15)
    is_deleted = Column(Boolean, default=False)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (CheckConstraint("total_price >= 0", name="ck_orders_total_price"),)

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    delivery_boy_id = Column(String(36), ForeignKey("profiles.id", ondelete="SET NULL"), nullable=True, index=True)
    status = Column(String(20), nullable=False, default="pending", index=True)
    total_price = Column(Numeric(10, 2), nullable=False)
    order_type = Column(String(20), nullable=False, default="delivery")
    house_no = Column(String(100), nullable=False, default="")
    building_no = Column(String(100))
    landmark = Column(String(200))
    customer_phone = Column(String(30), nullable=False, default="")
    customer_lat = Column(Float)
    customer_lon = Column(Float)
    estimated_prep_time = Column(Integer)
    estimated_delivery_time = Column(Integer)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), index=True)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())

    customer = relationship("Profile", foreign_keys=[customer_id])
    delivery_boy = relationship("Profile", foreign_keys=[delivery_boy_id])
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    rating = relationship("OrderRating", back_populates="order", uselist=False, cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (
        CheckConstraint("quantity > 0", name="ck_order_items_quantity"),
        CheckConstraint("price >= 0", name="ck_order_items_price"),
    )

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    menu_item_id = Column(Integer, ForeignKey("menu_items.id", ondelete="RESTRICT"), nullable=False, index=True)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Numeric(10, 2), nullable=False)

    order = relationship("Order", back_populates="items")
    menu_item = relationship("MenuItem")


class OrderRating(Base):
    __tablename__ = "order_ratings"
    __table_args__ = (CheckConstraint("rating >= 1 AND rating <= 5", name="ck_order_ratings_rating"),)

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(Integer, ForeignKey("orders.id", ondelete="CASCADE"), unique=True, nullable=False)
    customer_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    rating = Column(Integer, nullable=False)
    review_message = Column(Text)
    improvement_suggestion = Column(Text)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

    order = relationship("Order", back_populates="rating")
    customer = relationship("Profile")


class CustomerSuggestion(Base):
    __tablename__ = "customer_suggestions"

    id = Column(Integer, primary_key=True, index=True)
    customer_id = Column(String(36), ForeignKey("profiles.id", ondelete="CASCADE"), nullable=False, index=True)
    suggestion_text = Column(Text, nullable=False)
    customer_name = Column(String(100))
    is_read = Column(Boolean, default=False, index=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now())

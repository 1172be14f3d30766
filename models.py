"""
Database models for the back-office.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import (
    Boolean, CheckConstraint, Column, DateTime, Float, ForeignKey, Integer, String, Text, create_engine,
)
from sqlalchemy.orm import declarative_base, relationship, sessionmaker

from utils import get_config, round_money

Base = declarative_base()

DATABASE_URL = get_config()["database_url"]
_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=_connect_args)
SessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ── Products ──────────────────────────────────────────────────────

class Product(Base):
    __tablename__ = "products"

    id = Column(String(36), primary_key=True, default=_uuid)
    slug = Column(String(200), unique=True, nullable=False)
    name = Column(String(200), nullable=False)
    description = Column(Text, nullable=True)
    price = Column(Float, nullable=False)
    image_url = Column(String(500), nullable=True)
    in_stock = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), default=utcnow)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)


# ── Shipping options ──────────────────────────────────────────────

class ShippingOption(Base):
    __tablename__ = "shipping_options"

    id = Column(String(36), primary_key=True, default=_uuid)
    name = Column(String(120), nullable=False)
    price = Column(Float, nullable=False, default=0.0)
    is_active = Column(Boolean, nullable=False, default=True)
    display_order = Column(Integer, nullable=False, default=0)


# ── Customers ─────────────────────────────────────────────────────

class Customer(Base):
    __tablename__ = "customers"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(255), unique=True, nullable=False)  # always lower-cased
    full_name = Column(String(200), nullable=True)
    phone = Column(String(50), nullable=True)
    total_orders = Column(Integer, nullable=False, default=0)
    total_spent = Column(Float, nullable=False, default=0.0)
    last_order_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)

    orders = relationship("Order", back_populates="customer")


# ── Coupons ───────────────────────────────────────────────────────

class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String(36), primary_key=True, default=_uuid)
    code = Column(String(50), unique=True, nullable=False)  # stored upper-cased
    discount_type = Column(String(10), nullable=False)  # percent, fixed
    discount_value = Column(Float, nullable=False)
    min_order_amount = Column(Float, nullable=False, default=0.0)  # 0 = no minimum
    max_uses = Column(Integer, nullable=True)  # NULL = unlimited
    usage_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)  # NULL = never
    is_active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ── Orders ────────────────────────────────────────────────────────

class Order(Base):
    __tablename__ = "orders"
    __table_args__ = (
        CheckConstraint("discount_amount <= products_total", name="ck_orders_discount_le_products"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    order_number = Column(Integer, unique=True, nullable=False, index=True)
    customer_id = Column(String(36), ForeignKey("customers.id"), nullable=True)
    customer_email = Column(String(255), nullable=False)

    recipient_name = Column(String(200), nullable=False)
    phone = Column(String(50), nullable=False)
    city = Column(String(120), nullable=False)
    street = Column(String(200), nullable=False)
    house_number = Column(String(20), nullable=False)
    apartment = Column(String(20), nullable=True)
    zip_code = Column(String(20), nullable=True)
    notes = Column(Text, nullable=True)

    shipping_option_id = Column(String(36), ForeignKey("shipping_options.id", ondelete="SET NULL"), nullable=True)
    products_total = Column(Float, nullable=False, default=0.0)
    shipping_cost = Column(Float, nullable=False, default=0.0)
    discount_amount = Column(Float, nullable=False, default=0.0)
    total_amount = Column(Float, nullable=False, default=0.0)
    coupon_code = Column(String(50), nullable=True)  # snapshot, not a FK

    status = Column(String(20), nullable=False, default="pending", index=True)
    payment_provider_id = Column(String(100), nullable=True)
    created_at = Column(DateTime(timezone=True), default=utcnow, index=True)
    updated_at = Column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    customer = relationship("Customer", back_populates="orders")
    shipping_option = relationship("ShippingOption")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"
    __table_args__ = (CheckConstraint("quantity > 0", name="ck_order_items_quantity_positive"),)

    id = Column(String(36), primary_key=True, default=_uuid)
    order_id = Column(String(36), ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = Column(String(36), ForeignKey("products.id", ondelete="SET NULL"), nullable=True)
    name = Column(String(200), nullable=False)
    price_at_purchase = Column(Float, nullable=False)
    quantity = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")

    @property
    def line_total(self) -> float:
        return round_money(self.quantity * self.price_at_purchase)


# ── Admin roles ───────────────────────────────────────────────────

class UserRole(Base):
    __tablename__ = "user_roles"

    id = Column(String(36), primary_key=True, default=_uuid)
    user_id = Column(String(36), unique=True, nullable=False)  # identity provider subject
    role = Column(String(20), nullable=False)  # admin, moderator
    created_at = Column(DateTime(timezone=True), default=utcnow)


# ── Create tables ─────────────────────────────────────────────────

def init_db():
    Base.metadata.create_all(bind=engine)

"""
Business logic for the storefront and back-office.

Handles:
  - Checkout: order placement with coupon and shipping
  - Customers keyed by e-mail
  - Product catalog and shipping options
  - Dashboard statistics
"""

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from coupons import validate_coupon
from models import Customer, Order, OrderItem, Product, ShippingOption, utcnow
from orders import OPEN_STATUSES, PAID, PENDING, compute_total
from store import get_or_raise, next_order_number, store_errors
from utils import as_utc, normalize_email, round_money, store_tz, to_decimal, validate_email

logger = logging.getLogger(__name__)

RECENT_ORDERS_LIMIT = 5


# ── Customers ─────────────────────────────────────────────────────

def get_customer_by_email(db: Session, email: str) -> Customer | None:
    with store_errors(db, "load customer by email"):
        return db.execute(
            select(Customer).where(Customer.email == normalize_email(email))
        ).scalar_one_or_none()


def find_or_create_customer(
    db: Session, email: str, name: str | None = None, phone: str | None = None,
) -> Customer:
    """Return the customer for ``email``, creating it on first order.

    Name and phone of an existing customer are refreshed when given.
    Does not commit.
    """
    customer = get_customer_by_email(db, email)
    if customer:
        if name and name != customer.full_name:
            customer.full_name = name
        if phone and phone != customer.phone:
            customer.phone = phone
        return customer

    customer = Customer(email=normalize_email(email), full_name=name or None, phone=phone or None)
    db.add(customer)
    return customer


def list_customers(db: Session) -> list[Customer]:
    with store_errors(db, "list customers"):
        return list(db.execute(select(Customer).order_by(Customer.created_at.desc())).scalars())


# ── Checkout ──────────────────────────────────────────────────────

def place_order(
    db: Session,
    customer_email: str,
    recipient: dict,
    items: list[dict],
    shipping_option_id: str | None = None,
    coupon_code: str | None = None,
) -> Order:
    """Create a pending order from the shopper's cart.

    Args:
        db: Database session.
        customer_email: Contact e-mail; the customer record is keyed by it.
        recipient: name, phone, city, street, house_number and optionally
            apartment, zip_code, notes.
        items: List of {"product_id": str, "quantity": int}.
        shipping_option_id: Active shipping option, if any.
        coupon_code: Optional coupon, validated against the products total.

    Returns:
        The created Order, in ``pending`` status.

    Raises:
        ValueError: Invalid e-mail, empty cart, unknown or out-of-stock
            product, inactive shipping option or ineligible coupon.
    """
    if not validate_email(customer_email):
        raise ValueError("Invalid e-mail address")
    if not items:
        raise ValueError("Cart is empty")

    order_items = []
    products_total = to_decimal(0)
    for item in items:
        quantity = int(item["quantity"])
        if quantity <= 0:
            raise ValueError("Quantity must be at least 1")
        with store_errors(db, "load product"):
            product = db.get(Product, item["product_id"])
        if not product:
            raise ValueError(f"Product {item['product_id']} not found")
        if not product.in_stock:
            raise ValueError(f"'{product.name}' is out of stock")

        products_total += to_decimal(product.price) * quantity
        order_items.append(OrderItem(
            product_id=product.id,
            name=product.name,
            price_at_purchase=product.price,
            quantity=quantity,
        ))
    products_total = round_money(products_total)

    shipping_cost = 0.0
    if shipping_option_id:
        with store_errors(db, "load shipping option"):
            option = db.get(ShippingOption, shipping_option_id)
        if not option or not option.is_active:
            raise ValueError("Shipping option is not available")
        shipping_cost = option.price

    discount_amount = 0.0
    applied_code = None
    if coupon_code:
        result = validate_coupon(db, coupon_code, products_total)
        if not result.valid:
            raise ValueError(result.error)
        discount_amount = result.discount_amount
        applied_code = result.coupon.code

    customer = find_or_create_customer(db, customer_email, recipient.get("name"), recipient.get("phone"))

    order = Order(
        order_number=next_order_number(db),
        customer=customer,
        customer_email=normalize_email(customer_email),
        recipient_name=recipient["name"],
        phone=recipient["phone"],
        city=recipient["city"],
        street=recipient["street"],
        house_number=recipient["house_number"],
        apartment=recipient.get("apartment") or None,
        zip_code=recipient.get("zip_code") or None,
        notes=recipient.get("notes") or None,
        shipping_option_id=shipping_option_id,
        products_total=products_total,
        shipping_cost=shipping_cost,
        discount_amount=discount_amount,
        total_amount=compute_total(products_total, shipping_cost, discount_amount),
        coupon_code=applied_code,
        status=PENDING,
        items=order_items,
    )
    with store_errors(db, "create order"):
        db.add(order)
        db.commit()
        db.refresh(order)

    logger.info("Order %s placed by %s, total %s", order.order_number, order.customer_email, order.total_amount)
    return order


# ── Products ──────────────────────────────────────────────────────

PRODUCT_FIELDS = ("slug", "name", "description", "price", "image_url", "in_stock", "display_order")

_SLUG_RE = re.compile(r"^[a-z0-9]+(?:-[a-z0-9]+)*$")


def _check_product_fields(data: dict):
    if "slug" in data and not _SLUG_RE.match(data["slug"] or ""):
        raise ValueError("Slug may contain only lowercase letters, digits and dashes")
    if "price" in data and (data["price"] is None or data["price"] < 0):
        raise ValueError("Price must be >= 0")


def list_products(db: Session, in_stock_only: bool = False) -> list[Product]:
    query = select(Product).order_by(Product.display_order, Product.name)
    if in_stock_only:
        query = query.where(Product.in_stock.is_(True))
    with store_errors(db, "list products"):
        return list(db.execute(query).scalars())


def get_product_by_slug(db: Session, slug: str) -> Product:
    with store_errors(db, f"load product {slug}"):
        return db.execute(select(Product).where(Product.slug == slug)).scalar_one()


def create_product(db: Session, data: dict) -> Product:
    _check_product_fields(data)
    product = Product(**{k: v for k, v in data.items() if k in PRODUCT_FIELDS})
    with store_errors(db, "create product"):
        db.add(product)
        db.commit()
        db.refresh(product)
    return product


def update_product(db: Session, product_id: str, data: dict) -> Product:
    _check_product_fields(data)
    product = get_or_raise(db, Product, product_id)
    with store_errors(db, f"update product {product_id}"):
        for key, value in data.items():
            if key in PRODUCT_FIELDS:
                setattr(product, key, value)
        db.commit()
        db.refresh(product)
    return product


def delete_product(db: Session, product_id: str) -> None:
    product = get_or_raise(db, Product, product_id)
    with store_errors(db, f"delete product {product_id}"):
        db.delete(product)
        db.commit()


# ── Shipping options ──────────────────────────────────────────────

SHIPPING_FIELDS = ("name", "price", "is_active", "display_order")


def list_shipping_options(db: Session, active_only: bool = False) -> list[ShippingOption]:
    query = select(ShippingOption).order_by(ShippingOption.display_order)
    if active_only:
        query = query.where(ShippingOption.is_active.is_(True))
    with store_errors(db, "list shipping options"):
        return list(db.execute(query).scalars())


def create_shipping_option(db: Session, name: str, price: float) -> ShippingOption:
    if not name or not name.strip():
        raise ValueError("Name is required")
    if price < 0:
        raise ValueError("Price must be >= 0")
    with store_errors(db, "create shipping option"):
        count = db.execute(select(func.count(ShippingOption.id))).scalar()
        option = ShippingOption(name=name.strip(), price=price, is_active=True, display_order=count)
        db.add(option)
        db.commit()
        db.refresh(option)
    return option


def update_shipping_option(db: Session, option_id: str, data: dict) -> ShippingOption:
    if data.get("price") is not None and data["price"] < 0:
        raise ValueError("Price must be >= 0")
    option = get_or_raise(db, ShippingOption, option_id)
    with store_errors(db, f"update shipping option {option_id}"):
        for key, value in data.items():
            if key in SHIPPING_FIELDS:
                setattr(option, key, value)
        db.commit()
        db.refresh(option)
    return option


def delete_shipping_option(db: Session, option_id: str) -> None:
    option = get_or_raise(db, ShippingOption, option_id)
    with store_errors(db, f"delete shipping option {option_id}"):
        db.delete(option)
        db.commit()


# ── Dashboard ─────────────────────────────────────────────────────

@dataclass
class DashboardStats:
    today_orders: int
    today_revenue: float
    monthly_revenue: float
    pending_orders: int
    recent_orders: list = field(default_factory=list)


def dashboard_stats(db: Session, now: datetime | None = None) -> DashboardStats:
    """Revenue of paid orders today and this month (store timezone), the
    number of paid or processing orders awaiting handling, and the latest
    orders."""
    now = (now or utcnow()).astimezone(store_tz())
    start_of_day = now.replace(hour=0, minute=0, second=0, microsecond=0)
    start_of_month = start_of_day.replace(day=1)

    with store_errors(db, "load dashboard"):
        paid = db.execute(
            select(Order.total_amount, Order.created_at).where(Order.status == PAID)
        ).all()
        pending = db.execute(
            select(func.count(Order.id)).where(Order.status.in_(OPEN_STATUSES))
        ).scalar()
        recent = list(db.execute(
            select(Order).order_by(Order.created_at.desc()).limit(RECENT_ORDERS_LIMIT)
        ).scalars())

    today = [total for total, created in paid if as_utc(created) >= start_of_day]
    month = [total for total, created in paid if as_utc(created) >= start_of_month]

    return DashboardStats(
        today_orders=len(today),
        today_revenue=round_money(sum(today)),
        monthly_revenue=round_money(sum(month)),
        pending_orders=pending or 0,
        recent_orders=recent,
    )

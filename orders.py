"""
Order statuses and order administration.

Admins may move an order to any status; there is no transition table for
manual writes and no side effects beyond the write itself (cancelling or
refunding does not roll back customer totals or coupon usage). The only
automated transition is pending -> paid, done once per order by the payment
webhook through ``mark_paid``.
"""

import logging

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from models import Order, utcnow
from store import get_or_raise, store_errors, transition_order_status
from utils import round_money, to_decimal

logger = logging.getLogger(__name__)

PENDING = "pending"
PAID = "paid"
PROCESSING = "processing"
SHIPPED = "shipped"
DELIVERED = "delivered"
CANCELLED = "cancelled"
REFUNDED = "refunded"

ORDER_STATUSES = (PENDING, PAID, PROCESSING, SHIPPED, DELIVERED, CANCELLED, REFUNDED)

ORDER_STATUS_LABELS = {
    PENDING: "ממתין לתשלום",
    PAID: "שולם",
    PROCESSING: "בטיפול",
    SHIPPED: "נשלח",
    DELIVERED: "נמסר",
    CANCELLED: "בוטל",
    REFUNDED: "הוחזר",
}

# Paid orders that still need handling by staff.
OPEN_STATUSES = (PAID, PROCESSING)


def compute_total(products_total: float, shipping_cost: float, discount_amount: float) -> float:
    return round_money(to_decimal(products_total) + to_decimal(shipping_cost) - to_decimal(discount_amount))


def mark_paid(db: Session, order: Order, payment_provider_id: str | None) -> bool:
    """pending -> paid. Returns False if the order had already left pending.

    The commit expires ``order``; its attributes reload on next access.
    """
    order_id, order_number = order.id, order.order_number
    changed = transition_order_status(
        db, order_id, PENDING, PAID, payment_provider_id=payment_provider_id,
    )
    if changed:
        logger.info("Order %s marked as paid (provider id %s)", order_number, payment_provider_id)
    return changed


def update_order_status(db: Session, order_id: str, status: str) -> Order:
    if status not in ORDER_STATUSES:
        raise ValueError(f"Unknown order status: {status}")

    order = get_or_raise(db, Order, order_id)
    previous = order.status
    with store_errors(db, f"update status of order {order_id}"):
        order.status = status
        order.updated_at = utcnow()
        db.commit()
        db.refresh(order)
    logger.info("Order %s status %s -> %s (admin)", order.order_number, previous, status)
    return order


def list_orders(db: Session, status: str | None = None, limit: int | None = None) -> list[Order]:
    query = select(Order).order_by(Order.created_at.desc(), Order.order_number.desc())
    if status and status != "all":
        if status not in ORDER_STATUSES:
            raise ValueError(f"Unknown order status: {status}")
        query = query.where(Order.status == status)
    if limit:
        query = query.limit(limit)
    with store_errors(db, "list orders"):
        return list(db.execute(query).scalars())


def get_order_details(db: Session, order_id: str) -> Order:
    """Order with items, customer and shipping option loaded."""
    query = (
        select(Order)
        .where(Order.id == order_id)
        .options(
            selectinload(Order.items),
            selectinload(Order.customer),
            selectinload(Order.shipping_option),
        )
    )
    with store_errors(db, f"load order {order_id}"):
        return db.execute(query).scalar_one()

"""
Coupon evaluation and coupon administration.

Coupon eligibility is checked against a specific order total at the moment
of validation and is never stored. Usage is counted only when a payment is
confirmed (see ``payments.reconcile_payment``).
"""

import logging
from dataclasses import dataclass
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.orm import Session

from models import Coupon, utcnow
from store import StoreError, get_coupon_by_code, get_or_raise, increment_coupon_usage, store_errors
from utils import as_utc, format_currency, round_money, to_decimal

logger = logging.getLogger(__name__)

DISCOUNT_TYPES = ("percent", "fixed")

ERR_NOT_FOUND = "קוד קופון לא נמצא"
ERR_INACTIVE = "הקופון אינו פעיל"
ERR_EXPIRED = "פג תוקף הקופון"
ERR_EXHAUSTED = "הקופון מוצה"
ERR_MIN_ORDER = "מינימום הזמנה לקופון: {minimum}"
ERR_LOOKUP_FAILED = "שגיאה באימות הקופון"

COUPON_STATUS_LABELS = {
    "active": "פעיל",
    "inactive": "מושבת",
    "expired": "פג תוקף",
    "exhausted": "מוצה",
}


@dataclass
class CouponValidation:
    valid: bool
    coupon: Coupon | None = None
    discount_amount: float | None = None
    error: str | None = None


def calculate_discount(coupon: Coupon, order_total: float) -> float:
    """Discount for ``order_total``; never more than the total itself."""
    if coupon.discount_type == "percent":
        return round_money(to_decimal(order_total) * to_decimal(coupon.discount_value) / 100)
    return float(min(coupon.discount_value, order_total))


def is_expired(coupon: Coupon, now: datetime | None = None) -> bool:
    if coupon.expires_at is None:
        return False
    return as_utc(coupon.expires_at) < (now or utcnow())


def is_exhausted(coupon: Coupon) -> bool:
    return coupon.max_uses is not None and coupon.usage_count >= coupon.max_uses


def validate_coupon(db: Session, code: str, order_total: float, now: datetime | None = None) -> CouponValidation:
    """Check whether ``code`` may be applied to an order of ``order_total``.

    Checks run in order and stop at the first failure: existence, active
    flag, expiry, usage limit, minimum order amount. Rejections come back
    as ``CouponValidation(valid=False, error=...)``, never as exceptions.
    """
    try:
        coupon = get_coupon_by_code(db, code or "")
    except StoreError as e:
        logger.error("Coupon lookup failed for %r: %s", code, e)
        return CouponValidation(valid=False, error=ERR_LOOKUP_FAILED)

    if coupon is None:
        return CouponValidation(valid=False, error=ERR_NOT_FOUND)
    if not coupon.is_active:
        return CouponValidation(valid=False, error=ERR_INACTIVE)
    if is_expired(coupon, now):
        return CouponValidation(valid=False, error=ERR_EXPIRED)
    if is_exhausted(coupon):
        return CouponValidation(valid=False, error=ERR_EXHAUSTED)
    if coupon.min_order_amount and order_total < coupon.min_order_amount:
        return CouponValidation(
            valid=False,
            error=ERR_MIN_ORDER.format(minimum=format_currency(coupon.min_order_amount)),
        )

    return CouponValidation(
        valid=True,
        coupon=coupon,
        discount_amount=calculate_discount(coupon, order_total),
    )


def increment_usage(db: Session, coupon_id: str) -> bool:
    return increment_coupon_usage(db, coupon_id=coupon_id)


# ── Administration ────────────────────────────────────────────────

def coupon_display_status(coupon: Coupon, now: datetime | None = None) -> str:
    if not coupon.is_active:
        return "inactive"
    if is_expired(coupon, now):
        return "expired"
    if is_exhausted(coupon):
        return "exhausted"
    return "active"


def list_coupons(db: Session) -> list[Coupon]:
    with store_errors(db, "list coupons"):
        return list(db.execute(select(Coupon).order_by(Coupon.created_at.desc())).scalars())


def create_coupon(
    db: Session,
    code: str,
    discount_type: str,
    discount_value: float,
    min_order_amount: float | None = None,
    max_uses: int | None = None,
    expires_at: datetime | None = None,
) -> Coupon:
    """Create an active coupon.

    Raises:
        ValueError: On an empty code, unknown discount type or bad value.
        StoreError: CONFLICT when the code is already taken.
    """
    code = (code or "").strip().upper()
    if not code:
        raise ValueError("Coupon code is required")
    if discount_type not in DISCOUNT_TYPES:
        raise ValueError(f"discount_type must be one of {', '.join(DISCOUNT_TYPES)}")
    if discount_value <= 0:
        raise ValueError("discount_value must be > 0")
    if discount_type == "percent" and discount_value > 100:
        raise ValueError("Percent discount cannot exceed 100")

    coupon = Coupon(
        code=code,
        discount_type=discount_type,
        discount_value=discount_value,
        min_order_amount=min_order_amount or 0.0,
        max_uses=max_uses or None,
        expires_at=as_utc(expires_at),
        is_active=True,
        usage_count=0,
    )
    with store_errors(db, f"create coupon {code}"):
        db.add(coupon)
        db.commit()
        db.refresh(coupon)
    logger.info("Coupon %s created (%s %s)", code, discount_type, discount_value)
    return coupon


def delete_coupon(db: Session, coupon_id: str) -> None:
    coupon = get_or_raise(db, Coupon, coupon_id)
    with store_errors(db, f"delete coupon {coupon_id}"):
        db.delete(coupon)
        db.commit()


def set_coupon_active(db: Session, coupon_id: str, is_active: bool) -> Coupon:
    coupon = get_or_raise(db, Coupon, coupon_id)
    with store_errors(db, f"toggle coupon {coupon_id}"):
        coupon.is_active = is_active
        db.commit()
        db.refresh(coupon)
    return coupon

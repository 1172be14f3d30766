"""
Payment webhook reconciliation (YaadPay).

Handles:
  - Parsing the gateway callback from form data, JSON or the query string
  - Rejecting declined, malformed, unknown-order and wrong-amount callbacks
  - The pending -> paid transition (once per order)
  - Best-effort customer totals, coupon usage and notifications
"""

import json
import logging
from dataclasses import dataclass, field
from decimal import Decimal
from urllib.parse import parse_qsl

from sqlalchemy.orm import Session

from models import utcnow
from notifications import submit_order_notifications
from orders import mark_paid
from store import StoreError, get_order_by_number, increment_coupon_usage, increment_customer_stats
from utils import minor_to_major, to_decimal

logger = logging.getLogger(__name__)

SUCCESS_CODE = "0"
AMOUNT_TOLERANCE = Decimal("0.01")


# ── Errors ────────────────────────────────────────────────────────

class PaymentWebhookError(Exception):
    """A callback that must not change any order."""

    status_code = 500


class MalformedWebhookError(PaymentWebhookError):
    pass


class PaymentDeclinedError(PaymentWebhookError):
    status_code = 400

    def __init__(self, result_code: str):
        super().__init__("Payment failed")
        self.result_code = result_code


class OrderNotFoundError(PaymentWebhookError):
    def __init__(self, order_number: int):
        super().__init__(f"Order not found: {order_number}")
        self.order_number = order_number


class AmountMismatchError(PaymentWebhookError):
    def __init__(self, paid: Decimal, expected: float):
        super().__init__("Amount mismatch")
        self.paid = paid
        self.expected = expected


# ── Payload ───────────────────────────────────────────────────────

@dataclass
class PaymentPayload:
    result_code: str        # CCode, "0" = success
    order_number: int | None  # Fild1, None on a declined callback with a non-numeric value
    amount_minor: int       # Amount, in agorot
    transaction_id: str | None = None   # Id
    auth_code: str | None = None        # ACode
    currency: str | None = None         # Coin, "1" = ILS
    card_last4: str | None = None       # L4digit
    installments: str | None = None     # Hesh
    raw: dict = field(default_factory=dict, repr=False)

    @property
    def amount(self) -> Decimal:
        return minor_to_major(self.amount_minor)


def _decode_body(content_type: str, body: bytes, query: dict) -> dict:
    content_type = (content_type or "").lower()
    if "application/x-www-form-urlencoded" in content_type:
        try:
            text = body.decode("utf-8")
        except UnicodeDecodeError as e:
            raise MalformedWebhookError(f"Invalid form body: {e}") from e
        return dict(parse_qsl(text, keep_blank_values=True))
    if "application/json" in content_type:
        try:
            data = json.loads(body or b"{}")
        except ValueError as e:
            raise MalformedWebhookError(f"Invalid JSON body: {e}") from e
        if not isinstance(data, dict):
            raise MalformedWebhookError("JSON body must be an object")
        return data
    return dict(query)


def _text(data: dict, key: str) -> str:
    # JSON callbacks may carry numbers; CCode 0 must not read as missing.
    value = data.get(key)
    return "" if value is None else str(value).strip()


def parse_payment_payload(content_type: str, body: bytes, query: dict) -> PaymentPayload:
    """Normalise the gateway callback, whatever transport encoding it used.

    Raises:
        MalformedWebhookError: Missing result code or order number, or a
            non-numeric order number or amount on a success code.
    """
    data = _decode_body(content_type, body, query)
    result_code = _text(data, "CCode")
    order_field = _text(data, "Fild1")
    if not result_code or not order_field:
        raise MalformedWebhookError("Missing required fields")

    amount_field = _text(data, "Amount")
    if result_code == SUCCESS_CODE:
        try:
            order_number = int(order_field)
        except ValueError:
            raise MalformedWebhookError(f"Invalid order number: {order_field!r}")
        try:
            amount_minor = int(amount_field)
        except ValueError:
            raise MalformedWebhookError(f"Invalid amount: {amount_field!r}")
    else:
        # Declined callbacks are rejected before the order or amount matter.
        order_number = int(order_field) if order_field.isdecimal() else None
        amount_minor = int(amount_field) if amount_field.isdecimal() else 0

    def opt(key):
        value = data.get(key)
        return str(value) if value not in (None, "") else None

    return PaymentPayload(
        result_code=result_code,
        order_number=order_number,
        amount_minor=amount_minor,
        transaction_id=opt("Id"),
        auth_code=opt("ACode"),
        currency=opt("Coin"),
        card_last4=opt("L4digit"),
        installments=opt("Hesh"),
        raw=data,
    )


# ── Reconciliation ────────────────────────────────────────────────

@dataclass(frozen=True)
class _PaidOrder:
    id: str
    order_number: int
    customer_id: str | None
    coupon_code: str | None
    recipient_name: str
    total_amount: float


@dataclass
class ReconciliationResult:
    order_number: int
    already_processed: bool = False


def reconcile_payment(db: Session, payload: PaymentPayload, tasks) -> ReconciliationResult:
    """Confirm an order from a successful gateway callback.

    Steps up to and including the status write are all-or-nothing: any
    failure before it leaves the order untouched. After the write, the
    customer totals, coupon usage and notifications are best effort and
    never turn the result into a failure.

    A callback for an order that is no longer pending (gateway retry or
    duplicate delivery) writes nothing and schedules nothing.

    Raises:
        PaymentDeclinedError, OrderNotFoundError, AmountMismatchError,
        StoreError (if the status write itself fails).
    """
    if payload.result_code != SUCCESS_CODE:
        logger.info("Payment for order %s declined with code %s", payload.order_number, payload.result_code)
        raise PaymentDeclinedError(payload.result_code)

    order = get_order_by_number(db, payload.order_number)
    if order is None:
        logger.error("Order not found: %s", payload.order_number)
        raise OrderNotFoundError(payload.order_number)

    paid = payload.amount
    if abs(paid - to_decimal(order.total_amount)) > AMOUNT_TOLERANCE:
        logger.error(
            "Amount mismatch for order %s: paid %s, expected %s",
            order.order_number, paid, order.total_amount,
        )
        raise AmountMismatchError(paid, order.total_amount)

    # The commit in mark_paid expires the order; later steps read this snapshot.
    paid_order = _PaidOrder(
        id=order.id,
        order_number=order.order_number,
        customer_id=order.customer_id,
        coupon_code=order.coupon_code,
        recipient_name=order.recipient_name,
        total_amount=order.total_amount,
    )

    if not mark_paid(db, order, payload.transaction_id):
        logger.warning(
            "Duplicate payment callback for order %s (no longer pending), ignoring",
            paid_order.order_number,
        )
        return ReconciliationResult(order_number=paid_order.order_number, already_processed=True)

    if paid_order.customer_id:
        try:
            increment_customer_stats(db, paid_order.customer_id, paid_order.total_amount, utcnow())
        except StoreError:
            logger.exception(
                "Failed to update customer %s stats for order %s", paid_order.customer_id, paid_order.order_number,
            )

    if paid_order.coupon_code:
        try:
            if not increment_coupon_usage(db, code=paid_order.coupon_code):
                logger.warning(
                    "Coupon %s of order %s no longer exists", paid_order.coupon_code, paid_order.order_number,
                )
        except StoreError:
            logger.exception("Failed to increment usage of coupon %s", paid_order.coupon_code)

    try:
        submit_order_notifications(
            tasks, paid_order.id, paid_order.order_number, paid_order.recipient_name, paid_order.total_amount,
        )
    except Exception:
        logger.exception("Failed to schedule notifications for order %s", paid_order.order_number)

    logger.info("Payment processed successfully for order %s", paid_order.order_number)
    return ReconciliationResult(order_number=paid_order.order_number)

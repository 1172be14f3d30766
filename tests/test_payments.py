"""
Tests for the payment webhook reconciliation: parsing, rejection paths and
the pending -> paid transition with its side effects.
"""

import json

import pytest
from fastapi import BackgroundTasks
from sqlalchemy.exc import OperationalError

import payments
from models import Order
from notifications import trigger_order_email, trigger_telegram_notification
from payments import (
    AmountMismatchError, MalformedWebhookError, OrderNotFoundError, PaymentDeclinedError,
    parse_payment_payload, reconcile_payment,
)
from store import StoreError, StoreErrorKind

FORM = "application/x-www-form-urlencoded"


def payload(order_number, amount_minor=12340, code="0", transaction_id="txn-1"):
    body = f"CCode={code}&Fild1={order_number}&Amount={amount_minor}&Id={transaction_id}".encode()
    return parse_payment_payload(FORM, body, {})


# ── Parsing ───────────────────────────────────────────────────────

def test_parse_form_body():
    body = b"CCode=0&Fild1=1001&Amount=12340&Id=5551&ACode=0012345&Coin=1&L4digit=4580&Hesh=1"
    parsed = parse_payment_payload(FORM, body, {})

    assert parsed.result_code == "0"
    assert parsed.order_number == 1001
    assert parsed.amount_minor == 12340
    assert str(parsed.amount) == "123.4"
    assert parsed.transaction_id == "5551"
    assert parsed.card_last4 == "4580"


def test_parse_json_body():
    body = json.dumps({"CCode": 0, "Fild1": "1001", "Amount": "5000"}).encode()
    parsed = parse_payment_payload("application/json; charset=utf-8", body, {})

    assert parsed.result_code == "0"
    assert parsed.order_number == 1001
    assert parsed.amount_minor == 5000
    assert parsed.transaction_id is None


def test_parse_query_string():
    parsed = parse_payment_payload("", b"", {"CCode": "0", "Fild1": "1002", "Amount": "100"})
    assert parsed.order_number == 1002


@pytest.mark.parametrize("content_type, body, query", [
    (FORM, b"Fild1=1001&Amount=100", {}),
    (FORM, b"CCode=0&Amount=100", {}),
    (FORM, b"CCode=0&Fild1=abc&Amount=100", {}),
    (FORM, b"CCode=0&Fild1=1001", {}),
    (FORM, b"CCode=0&Fild1=1001&Amount=12.5", {}),
    (FORM, b"CCode=0&Fild1=1001&Amount=12340&Id=\xff\xfe", {}),
    ("application/json", b"not json", {}),
    ("application/json", b"[1, 2]", {}),
    ("", b"", {}),
])
def test_malformed_callbacks(content_type, body, query):
    with pytest.raises(MalformedWebhookError):
        parse_payment_payload(content_type, body, query)


def test_declined_callback_needs_no_amount():
    parsed = parse_payment_payload(FORM, b"CCode=33&Fild1=1001", {})
    assert parsed.result_code == "33"
    assert parsed.amount_minor == 0


def test_declined_callback_with_non_numeric_order_number():
    parsed = parse_payment_payload("application/json", b'{"CCode": "6", "Fild1": "ORD-1"}', {})
    assert parsed.result_code == "6"
    assert parsed.order_number is None


# ── Rejections leave the order untouched ──────────────────────────

def test_declined_payment(db_session, make_order):
    order = make_order()
    tasks = BackgroundTasks()

    with pytest.raises(PaymentDeclinedError) as excinfo:
        reconcile_payment(db_session, payload(order.order_number, code="6"), tasks)

    assert excinfo.value.status_code == 400
    db_session.refresh(order)
    assert order.status == "pending"
    assert tasks.tasks == []


def test_declined_payment_with_non_numeric_order_number(db_session):
    parsed = parse_payment_payload("application/json", b'{"CCode": "6", "Fild1": "ORD-1"}', {})
    tasks = BackgroundTasks()

    with pytest.raises(PaymentDeclinedError):
        reconcile_payment(db_session, parsed, tasks)

    assert tasks.tasks == []


def test_unknown_order(db_session):
    with pytest.raises(OrderNotFoundError) as excinfo:
        reconcile_payment(db_session, payload(99999), BackgroundTasks())
    assert excinfo.value.status_code == 500


def test_amount_mismatch_changes_nothing(db_session, make_order, make_customer, make_coupon):
    customer = make_customer()
    coupon = make_coupon(code="SAVE10")
    order = make_order(total_amount=123.40, customer=customer, coupon_code="SAVE10")
    tasks = BackgroundTasks()

    with pytest.raises(AmountMismatchError):
        reconcile_payment(db_session, payload(order.order_number, amount_minor=9999), tasks)

    db_session.refresh(order)
    db_session.refresh(customer)
    db_session.refresh(coupon)
    assert order.status == "pending"
    assert order.payment_provider_id is None
    assert customer.total_orders == 0
    assert coupon.usage_count == 0
    assert tasks.tasks == []


def test_amount_within_one_agora_is_accepted(db_session, make_order):
    order = make_order(total_amount=123.40)
    result = reconcile_payment(db_session, payload(order.order_number, amount_minor=12341), BackgroundTasks())
    assert result.already_processed is False


def test_amount_beyond_one_agora_is_rejected(db_session, make_order):
    order = make_order(total_amount=123.40)
    with pytest.raises(AmountMismatchError):
        reconcile_payment(db_session, payload(order.order_number, amount_minor=12342), BackgroundTasks())


# ── Successful payment ────────────────────────────────────────────

def test_successful_payment_marks_order_paid(db_session, make_order):
    order = make_order(total_amount=123.40)

    result = reconcile_payment(db_session, payload(order.order_number, transaction_id="5551"), BackgroundTasks())

    assert result.order_number == order.order_number
    db_session.refresh(order)
    assert order.status == "paid"
    assert order.payment_provider_id == "5551"


def test_successful_payment_updates_customer_totals(db_session, make_order, make_customer):
    customer = make_customer(total_orders=2, total_spent=200.0)
    order = make_order(total_amount=123.40, customer=customer)

    reconcile_payment(db_session, payload(order.order_number), BackgroundTasks())

    db_session.refresh(customer)
    assert customer.total_orders == 3
    assert customer.total_spent == pytest.approx(323.40)
    assert customer.last_order_at is not None


def test_successful_payment_counts_coupon_use(db_session, make_order, make_coupon):
    coupon = make_coupon(code="SAVE10", usage_count=4)
    order = make_order(total_amount=123.40, products_total=137.11, discount_amount=13.71, coupon_code="SAVE10")

    reconcile_payment(db_session, payload(order.order_number), BackgroundTasks())

    db_session.refresh(coupon)
    assert coupon.usage_count == 5


def test_successful_payment_schedules_both_notifications(db_session, make_order):
    order = make_order(total_amount=123.40)
    tasks = BackgroundTasks()

    reconcile_payment(db_session, payload(order.order_number), tasks)

    assert [t.func for t in tasks.tasks] == [trigger_telegram_notification, trigger_order_email]
    assert tasks.tasks[0].args == (order.order_number, "Dana Levi", 123.40)
    assert tasks.tasks[1].args == (order.id,)


def test_duplicate_callback_is_a_no_op(db_session, make_order, make_customer, make_coupon):
    customer = make_customer()
    coupon = make_coupon(code="SAVE10")
    order = make_order(total_amount=123.40, customer=customer, coupon_code="SAVE10")

    first = reconcile_payment(db_session, payload(order.order_number, transaction_id="A"), BackgroundTasks())
    tasks = BackgroundTasks()
    second = reconcile_payment(db_session, payload(order.order_number, transaction_id="B"), tasks)

    assert first.already_processed is False
    assert second.already_processed is True
    assert tasks.tasks == []

    db_session.refresh(order)
    db_session.refresh(customer)
    db_session.refresh(coupon)
    assert order.payment_provider_id == "A"
    assert customer.total_orders == 1
    assert coupon.usage_count == 1


def test_callback_for_shipped_order_is_ignored(db_session, make_order):
    order = make_order(status="shipped")

    result = reconcile_payment(db_session, payload(order.order_number), BackgroundTasks())

    assert result.already_processed is True
    db_session.refresh(order)
    assert order.status == "shipped"


def test_side_effect_failures_do_not_fail_the_payment(db_session, make_order, make_customer, monkeypatch):
    order = make_order(total_amount=123.40, customer=make_customer(), coupon_code="SAVE10")

    def broken(*args, **kwargs):
        raise StoreError(StoreErrorKind.TRANSPORT, "connection reset")

    class BrokenTasks:
        def add_task(self, *args, **kwargs):
            raise RuntimeError("queue full")

    monkeypatch.setattr(payments, "increment_customer_stats", broken)
    monkeypatch.setattr(payments, "increment_coupon_usage", broken)

    result = reconcile_payment(db_session, payload(order.order_number), BrokenTasks())

    assert result.already_processed is False
    db_session.refresh(order)
    assert order.status == "paid"


def test_missing_coupon_is_tolerated(db_session, make_order):
    order = make_order(total_amount=123.40, coupon_code="GONE")
    result = reconcile_payment(db_session, payload(order.order_number), BackgroundTasks())
    assert result.already_processed is False


def test_payment_does_not_reload_the_order(db_session, make_order, make_customer, monkeypatch):
    order = make_order(total_amount=123.40, customer=make_customer())
    order_id, order_number = order.id, order.order_number
    tasks = BackgroundTasks()

    def no_reload(*args, **kwargs):
        raise OperationalError("SELECT orders", {}, Exception("connection reset"))

    monkeypatch.setattr(db_session, "refresh", no_reload)

    result = reconcile_payment(db_session, payload(order_number), tasks)

    assert result.already_processed is False
    assert result.order_number == order_number
    assert tasks.tasks[0].args == (order_number, "Dana Levi", 123.40)
    assert tasks.tasks[1].args == (order_id,)
    db_session.expire_all()
    assert db_session.get(Order, order_id).status == "paid"

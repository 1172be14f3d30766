"""
Webhook-style functions: the payment gateway callback and the two
notification functions it triggers.
"""

import logging

from fastapi import APIRouter, BackgroundTasks, Depends, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from sqlalchemy.orm import Session

from auth import require_service_key
from models import Order, get_db
from notifications import NotificationError, compose_order_email, compose_telegram_message, send_email, send_telegram
from orders import get_order_details
from payments import PaymentWebhookError, parse_payment_payload, reconcile_payment
from store import StoreError
from utils import get_config

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/functions")


class TelegramIn(BaseModel):
    order_number: int | None = None
    customer_name: str | None = None
    total_amount: float | None = None
    message: str | None = None


class OrderEmailIn(BaseModel):
    order_id: str


def _failure(error: str, status_code: int = 500) -> JSONResponse:
    return JSONResponse({"success": False, "error": error}, status_code=status_code)


@router.api_route("/handle-payment-webhook", methods=["GET", "POST"])
async def handle_payment_webhook(
    request: Request,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
):
    body = await request.body()
    try:
        payload = parse_payment_payload(request.headers.get("content-type", ""), body, request.query_params)
        logger.info("Received payment webhook: %s", payload)
        result = await run_in_threadpool(reconcile_payment, db, payload, background_tasks)
    except PaymentWebhookError as e:
        if e.status_code >= 500:
            logger.error("Webhook error: %s", e)
        return _failure(str(e), e.status_code)
    except StoreError as e:
        logger.error("Webhook error: %s", e)
        return _failure(str(e))

    return {"success": True, "order_number": result.order_number}


@router.post("/send-telegram", dependencies=[Depends(require_service_key)])
def send_telegram_notification(body: TelegramIn):
    if not body.message and (body.order_number is None or body.total_amount is None):
        return _failure("order_number and total_amount are required", 400)

    text = compose_telegram_message(
        body.order_number, body.customer_name or "", body.total_amount, message=body.message,
    )
    try:
        send_telegram(text)
    except NotificationError as e:
        logger.error("Telegram notification error: %s", e)
        return _failure(str(e))

    logger.info("Telegram notification sent for order: %s", body.order_number)
    return {"success": True}


@router.post("/send-order-email", dependencies=[Depends(require_service_key)])
def send_order_email(body: OrderEmailIn, db: Session = Depends(get_db)):
    try:
        order: Order = get_order_details(db, body.order_id)
    except StoreError as e:
        logger.error("Email error: order %s: %s", body.order_id, e)
        return _failure("Order not found")

    config = get_config()
    subject, html = compose_order_email(order, order.items, config["store_name"], config["support_email"])
    try:
        email_id = send_email(order.customer_email, subject, html)
    except NotificationError as e:
        logger.error("Email error: %s", e)
        return _failure(str(e))

    logger.info("Order confirmation email sent to: %s", order.customer_email)
    return {"success": True, "email_id": email_id}

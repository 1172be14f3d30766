"""
Order notifications: a Telegram message to staff and a confirmation email to
the customer.

The composers are pure. The senders talk to the Telegram Bot API and to
Resend and raise ``NotificationError`` on any failure; they never retry.
The trigger functions are what the payment webhook schedules as background
tasks: they call our own notification endpoints and only log failures.
"""

import logging
from datetime import datetime
from pathlib import Path

import requests
from jinja2 import Environment, FileSystemLoader, select_autoescape

from utils import format_currency, format_date, format_datetime, format_order_number, get_config

logger = logging.getLogger(__name__)

TEMPLATES_DIR = Path(__file__).parent / "templates"
TELEGRAM_API_URL = "https://api.telegram.org/bot{token}/sendMessage"
RESEND_API_URL = "https://api.resend.com/emails"

_env = Environment(
    loader=FileSystemLoader(TEMPLATES_DIR),
    autoescape=select_autoescape(["html"]),
)


class NotificationError(Exception):
    pass


# ── Composers ─────────────────────────────────────────────────────

def compose_telegram_message(
    order_number: int,
    customer_name: str,
    total_amount: float,
    message: str | None = None,
    now: datetime | None = None,
) -> str:
    """Staff summary of a new paid order; ``message`` replaces it verbatim."""
    if message:
        return message
    now = now or datetime.now().astimezone()
    return (
        "🛒 *הזמנה חדשה!*\n"
        "\n"
        f"📦 הזמנה: {format_order_number(order_number)}\n"
        f"👤 לקוח: {customer_name}\n"
        f"💰 סכום: {format_currency(total_amount)}\n"
        "\n"
        f"⏰ {format_datetime(now)}"
    )


def compose_order_email(order, items, store_name: str, support_email: str) -> tuple[str, str]:
    """Build ``(subject, html)`` for the order confirmation email."""
    subject = f"אישור הזמנה {format_order_number(order.order_number)} - {store_name}"
    template = _env.get_template("order_confirmation.html")
    html = template.render(
        store_name=store_name,
        support_email=support_email,
        year=(order.created_at or datetime.now()).year,
        order_number=format_order_number(order.order_number),
        order_date=format_date(order.created_at) if order.created_at else "",
        items=[
            {
                "name": item.name,
                "quantity": item.quantity,
                "unit_price": format_currency(item.price_at_purchase),
                "line_total": format_currency(item.quantity * item.price_at_purchase),
            }
            for item in items
        ],
        products_total=format_currency(order.products_total),
        shipping_cost=format_currency(order.shipping_cost),
        discount=format_currency(order.discount_amount) if order.discount_amount > 0 else None,
        coupon_code=order.coupon_code,
        total_amount=format_currency(order.total_amount),
        recipient_name=order.recipient_name,
        street=order.street,
        house_number=order.house_number,
        apartment=order.apartment,
        city=order.city,
        zip_code=order.zip_code,
        phone=order.phone,
    )
    return subject, html


# ── Senders ───────────────────────────────────────────────────────

def send_telegram(text: str) -> None:
    config = get_config()
    token, chat_id = config["telegram_bot_token"], config["telegram_chat_id"]
    if not token or not chat_id:
        raise NotificationError("Telegram not configured")

    try:
        response = requests.post(
            TELEGRAM_API_URL.format(token=token),
            json={"chat_id": chat_id, "text": text, "parse_mode": "Markdown"},
            timeout=config["http_timeout"],
        )
    except requests.RequestException as e:
        raise NotificationError(f"Telegram request failed: {e}") from e

    if not response.ok:
        try:
            description = response.json().get("description")
        except ValueError:
            description = None
        logger.error("Telegram API error %s: %s", response.status_code, response.text)
        raise NotificationError(description or "Telegram API error")


def send_email(to: str, subject: str, html: str) -> str:
    """Send through Resend, returning the provider's email id."""
    config = get_config()
    if not config["resend_api_key"]:
        raise NotificationError("Email not configured")

    try:
        response = requests.post(
            RESEND_API_URL,
            headers={"Authorization": f"Bearer {config['resend_api_key']}"},
            json={
                "from": f"{config['store_name']} <{config['from_email']}>",
                "to": to,
                "subject": subject,
                "html": html,
            },
            timeout=config["http_timeout"],
        )
    except requests.RequestException as e:
        raise NotificationError(f"Email request failed: {e}") from e

    try:
        result = response.json()
    except ValueError:
        result = {}
    if not response.ok:
        logger.error("Resend API error %s: %s", response.status_code, response.text)
        raise NotificationError(result.get("message") or "Failed to send email")
    return result.get("id", "")


# ── Triggers (run as background tasks) ────────────────────────────

def _post_internal(function: str, payload: dict) -> None:
    config = get_config()
    url = f"{config['functions_base_url'].rstrip('/')}/{function}"
    try:
        response = requests.post(
            url,
            json=payload,
            headers={"Authorization": f"Bearer {config['service_role_key']}"},
            timeout=config["http_timeout"],
        )
    except requests.RequestException as e:
        logger.error("Notification trigger %s failed: %s", function, e)
        return
    if not response.ok:
        logger.error("Notification trigger %s returned %s: %s", function, response.status_code, response.text)


def trigger_telegram_notification(order_number: int, customer_name: str, total_amount: float) -> None:
    _post_internal(
        "send-telegram",
        {"order_number": order_number, "customer_name": customer_name, "total_amount": total_amount},
    )


def trigger_order_email(order_id: str) -> None:
    _post_internal("send-order-email", {"order_id": order_id})


def submit_order_notifications(
    tasks, order_id: str, order_number: int, customer_name: str, total_amount: float,
) -> None:
    """Queue the staff and customer notifications for a freshly paid order.

    ``tasks`` is anything with ``add_task(func, *args)``, normally FastAPI's
    ``BackgroundTasks``; the tasks run after the webhook has answered.
    """
    tasks.add_task(trigger_telegram_notification, order_number, customer_name, total_amount)
    tasks.add_task(trigger_order_email, order_id)

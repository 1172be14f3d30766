"""
Utility functions shared across the back-office: configuration, money and
display formatting.
"""

import logging
import os
import re
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from zoneinfo import ZoneInfo

logger = logging.getLogger(__name__)

CURRENCY_SYMBOL = "₪"
ORDER_NUMBER_WIDTH = 5

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


def get_config() -> dict:
    """Load configuration from environment."""
    return {
        "debug": os.environ.get("DEBUG", "false").lower() == "true",
        "database_url": os.environ.get("DATABASE_URL", "sqlite:///./shop.db"),
        "jwt_secret": os.environ.get("JWT_SECRET", ""),
        "jwt_audience": os.environ.get("JWT_AUDIENCE", "authenticated"),
        "service_role_key": os.environ.get("SERVICE_ROLE_KEY", ""),
        "functions_base_url": os.environ.get("FUNCTIONS_BASE_URL", "http://localhost:8000/functions"),
        "telegram_bot_token": os.environ.get("TELEGRAM_BOT_TOKEN", ""),
        "telegram_chat_id": os.environ.get("TELEGRAM_CHAT_ID", ""),
        "resend_api_key": os.environ.get("RESEND_API_KEY", ""),
        "from_email": os.environ.get("FROM_EMAIL", "orders@nilperfumes.com"),
        "store_name": os.environ.get("STORE_NAME", "NIL Perfumes"),
        "support_email": os.environ.get("SUPPORT_EMAIL", "support@nilperfumes.com"),
        "store_timezone": os.environ.get("STORE_TIMEZONE", "Asia/Jerusalem"),
        "http_timeout": float(os.environ.get("HTTP_TIMEOUT", "10")),
    }


def validate_email(email: str) -> bool:
    return bool(email) and _EMAIL_RE.match(email.strip()) is not None


def normalize_email(email: str) -> str:
    return (email or "").strip().lower()


# ── Money ─────────────────────────────────────────────────────────

def to_decimal(value) -> Decimal:
    if isinstance(value, Decimal):
        return value
    try:
        return Decimal(str(value if value is not None else "0"))
    except InvalidOperation:
        raise ValueError(f"Not a number: {value!r}")


def round_money(value) -> float:
    """Round half-up to 2 decimal places (``round()`` rounds half-to-even)."""
    return float(to_decimal(value).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def minor_to_major(minor_units) -> Decimal:
    """Convert an amount in agorot (1/100 ILS) to shekels."""
    return Decimal(int(minor_units)) / Decimal(100)


# ── Display formatting ────────────────────────────────────────────

def format_amount(value) -> str:
    """Render with thousands separators and 0-2 decimal places."""
    amount = to_decimal(round_money(value))
    text = f"{amount:,.2f}"
    if "." in text:
        text = text.rstrip("0").rstrip(".")
    return text


def format_currency(value) -> str:
    return f"{CURRENCY_SYMBOL}{format_amount(value)}"


def format_order_number(number: int) -> str:
    return f"#{int(number):0{ORDER_NUMBER_WIDTH}d}"


def store_tz() -> ZoneInfo:
    return ZoneInfo(get_config()["store_timezone"])


def as_utc(value: datetime | None) -> datetime | None:
    """Treat naive datetimes (SQLite drops tzinfo) as UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def format_date(value: datetime | date) -> str:
    """he-IL short date, e.g. 18.10.2026."""
    if isinstance(value, datetime):
        value = as_utc(value).astimezone(store_tz())
    return f"{value.day}.{value.month}.{value.year}"


def format_datetime(value: datetime) -> str:
    """he-IL date and time in the store timezone, e.g. 18.10.2026, 14:05:09."""
    local = as_utc(value).astimezone(store_tz())
    return f"{format_date(local)}, {local:%H:%M:%S}"

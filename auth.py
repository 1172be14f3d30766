"""
Authentication for the admin API and the internal notification functions.

Admins sign in with the identity provider (e-mail OTP); we only verify the
bearer JWT it issues and look the subject up in ``user_roles``. Internal
calls between our own functions carry the service role key instead.
"""

import hmac
import logging
import time
from dataclasses import dataclass

import jwt
from fastapi import Depends, Header, HTTPException
from sqlalchemy import select
from sqlalchemy.orm import Session

from models import UserRole, get_db
from store import store_errors
from utils import get_config

logger = logging.getLogger(__name__)

TOKEN_EXPIRY_SECONDS = 60 * 60
ADMIN_ROLE = "admin"


@dataclass
class AdminUser:
    id: str
    email: str
    role: str


def create_token(user_id: str, email: str, expires_in: int = TOKEN_EXPIRY_SECONDS) -> str:
    """Issue a token shaped like the identity provider's (used by tests and local tooling)."""
    config = get_config()
    now = int(time.time())
    payload = {
        "sub": user_id,
        "email": email,
        "aud": config["jwt_audience"],
        "iat": now,
        "exp": now + expires_in,
    }
    return jwt.encode(payload, config["jwt_secret"], algorithm="HS256")


def decode_token(token: str) -> dict | None:
    """Decode and validate a JWT token."""
    config = get_config()
    if not config["jwt_secret"]:
        logger.error("JWT_SECRET is not configured, rejecting admin token")
        return None
    try:
        return jwt.decode(
            token,
            config["jwt_secret"],
            algorithms=["HS256"],
            audience=config["jwt_audience"],
        )
    except jwt.InvalidTokenError as e:
        logger.info("Rejected token: %s", e)
        return None


def _bearer(authorization: str | None) -> str:
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing Authorization header")
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        raise HTTPException(status_code=401, detail="Invalid token format")
    return token.strip()


def require_admin(
    authorization: str | None = Header(default=None),
    db: Session = Depends(get_db),
) -> AdminUser:
    payload = decode_token(_bearer(authorization))
    if not payload or not payload.get("sub"):
        raise HTTPException(status_code=401, detail="Invalid or expired token")

    with store_errors(db, "load user role"):
        role = db.execute(
            select(UserRole.role).where(UserRole.user_id == payload["sub"])
        ).scalar_one_or_none()
    if role != ADMIN_ROLE:
        raise HTTPException(status_code=403, detail="Admin access required")

    return AdminUser(id=payload["sub"], email=payload.get("email", ""), role=role)


def require_service_key(authorization: str | None = Header(default=None)) -> None:
    expected = get_config()["service_role_key"]
    token = _bearer(authorization)
    if not expected or not hmac.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid service key")

"""
Storage boundary.

Every SQLAlchemy failure is translated into a ``StoreError`` carrying one of
four kinds, so the business modules never look at driver-specific
exceptions. Counter updates are done as single ``UPDATE ... SET x = x + n``
statements instead of read-then-write.
"""

import enum
import logging
from contextlib import contextmanager
from datetime import datetime

from sqlalchemy import func, select, update
from sqlalchemy.exc import DataError, IntegrityError, MultipleResultsFound, NoResultFound, SQLAlchemyError
from sqlalchemy.orm import Session

from models import Coupon, Customer, Order, utcnow

logger = logging.getLogger(__name__)


class StoreErrorKind(str, enum.Enum):
    NOT_FOUND = "not_found"
    CONFLICT = "conflict"
    VALIDATION = "validation"
    TRANSPORT = "transport"


# Shown to admins as the inline error message.
ERROR_MESSAGES = {
    StoreErrorKind.NOT_FOUND: "הפריט המבוקש לא נמצא",
    StoreErrorKind.CONFLICT: "הרשומה כבר קיימת",
    StoreErrorKind.VALIDATION: "הנתונים שנשלחו אינם תקינים",
    StoreErrorKind.TRANSPORT: "שגיאה בתקשורת עם מסד הנתונים",
}

HTTP_STATUS = {
    StoreErrorKind.NOT_FOUND: 404,
    StoreErrorKind.CONFLICT: 409,
    StoreErrorKind.VALIDATION: 422,
    StoreErrorKind.TRANSPORT: 503,
}


class StoreError(Exception):
    def __init__(self, kind: StoreErrorKind, message: str = ""):
        super().__init__(message or kind.value)
        self.kind = kind

    @property
    def user_message(self) -> str:
        return ERROR_MESSAGES[self.kind]

    @property
    def status_code(self) -> int:
        return HTTP_STATUS[self.kind]


@contextmanager
def store_errors(db: Session, action: str):
    """Run a block of data access, mapping failures to ``StoreError``."""
    try:
        yield
    except StoreError:
        raise
    except NoResultFound as e:
        raise StoreError(StoreErrorKind.NOT_FOUND, f"{action}: {e}") from e
    except (IntegrityError, MultipleResultsFound) as e:
        db.rollback()
        raise StoreError(StoreErrorKind.CONFLICT, f"{action}: {e}") from e
    except DataError as e:
        db.rollback()
        raise StoreError(StoreErrorKind.VALIDATION, f"{action}: {e}") from e
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("Store failure during %s: %s", action, e)
        raise StoreError(StoreErrorKind.TRANSPORT, f"{action}: {e}") from e


def get_or_raise(db: Session, model, object_id: str):
    with store_errors(db, f"load {model.__tablename__}"):
        obj = db.get(model, object_id)
    if obj is None:
        raise StoreError(StoreErrorKind.NOT_FOUND, f"{model.__tablename__} {object_id} not found")
    return obj


def get_order_by_number(db: Session, order_number: int) -> Order | None:
    with store_errors(db, "load order by number"):
        return db.execute(select(Order).where(Order.order_number == order_number)).scalar_one_or_none()


def get_coupon_by_code(db: Session, code: str) -> Coupon | None:
    with store_errors(db, "load coupon by code"):
        return db.execute(select(Coupon).where(Coupon.code == code.strip().upper())).scalar_one_or_none()


def next_order_number(db: Session) -> int:
    # The unique constraint on order_number rejects a concurrent duplicate.
    with store_errors(db, "allocate order number"):
        current = db.execute(select(func.max(Order.order_number))).scalar()
    return (current or 0) + 1


def transition_order_status(
    db: Session, order_id: str, from_status: str, to_status: str, **values,
) -> bool:
    """Set ``to_status`` only if the order is currently in ``from_status``.

    Returns False when the order was not in ``from_status`` (nothing written).
    """
    stmt = (
        update(Order)
        .where(Order.id == order_id, Order.status == from_status)
        .values(status=to_status, updated_at=utcnow(), **values)
        .execution_options(synchronize_session=False)
    )
    with store_errors(db, f"transition order {order_id} {from_status}->{to_status}"):
        result = db.execute(stmt)
        db.commit()
    return result.rowcount == 1


def increment_customer_stats(db: Session, customer_id: str, amount: float, at: datetime | None = None) -> bool:
    stmt = (
        update(Customer)
        .where(Customer.id == customer_id)
        .values(
            total_orders=Customer.total_orders + 1,
            total_spent=Customer.total_spent + amount,
            last_order_at=at or utcnow(),
        )
        .execution_options(synchronize_session=False)
    )
    with store_errors(db, f"update stats of customer {customer_id}"):
        result = db.execute(stmt)
        db.commit()
    return result.rowcount == 1


def increment_coupon_usage(db: Session, *, coupon_id: str | None = None, code: str | None = None) -> bool:
    if coupon_id is None and code is None:
        raise ValueError("coupon_id or code is required")
    condition = Coupon.id == coupon_id if coupon_id is not None else Coupon.code == code.strip().upper()
    stmt = (
        update(Coupon)
        .where(condition)
        .values(usage_count=Coupon.usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    with store_errors(db, "increment coupon usage"):
        result = db.execute(stmt)
        db.commit()
    return result.rowcount == 1

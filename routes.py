"""
API routes: the storefront endpoints used at checkout and the admin API.
"""

from datetime import datetime
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, Response
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

import coupons
import orders
import services
from auth import require_admin
from models import Customer, get_db
from store import get_or_raise
from utils import format_order_number

router = APIRouter(prefix="/api")
admin_router = APIRouter(prefix="/api/admin", dependencies=[Depends(require_admin)])


# ── Pydantic schemas ─────────────────────────────────────────────

class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(ge=1)


class RecipientIn(BaseModel):
    name: str = Field(min_length=1)
    phone: str = Field(min_length=1)
    city: str = Field(min_length=1)
    street: str = Field(min_length=1)
    house_number: str = Field(min_length=1)
    apartment: str | None = None
    zip_code: str | None = None
    notes: str | None = None


class PlaceOrderIn(BaseModel):
    customer_email: str
    recipient: RecipientIn
    items: list[OrderItemIn]
    shipping_option_id: str | None = None
    coupon_code: str | None = None


class ValidateCouponIn(BaseModel):
    code: str
    order_total: float = Field(ge=0)


class CouponIn(BaseModel):
    code: str
    discount_type: Literal["percent", "fixed"]
    discount_value: float = Field(gt=0)
    min_order_amount: float | None = Field(default=None, ge=0)
    max_uses: int | None = Field(default=None, ge=1)
    expires_at: datetime | None = None


class ActiveIn(BaseModel):
    is_active: bool


class StatusIn(BaseModel):
    status: str


class ProductIn(BaseModel):
    slug: str
    name: str = Field(min_length=1)
    description: str | None = None
    price: float = Field(ge=0)
    image_url: str | None = None
    in_stock: bool = True
    display_order: int = 0


class ProductUpdateIn(BaseModel):
    slug: str | None = None
    name: str | None = Field(default=None, min_length=1)
    description: str | None = None
    price: float | None = Field(default=None, ge=0)
    image_url: str | None = None
    in_stock: bool | None = None
    display_order: int | None = None


class ShippingOptionIn(BaseModel):
    name: str
    price: float = Field(ge=0)


class ShippingOptionUpdateIn(BaseModel):
    name: str | None = None
    price: float | None = Field(default=None, ge=0)
    is_active: bool | None = None
    display_order: int | None = None


# ── Serialization ─────────────────────────────────────────────────

def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def _product(p):
    return {
        "id": p.id,
        "slug": p.slug,
        "name": p.name,
        "description": p.description,
        "price": p.price,
        "image_url": p.image_url,
        "in_stock": p.in_stock,
        "display_order": p.display_order,
    }


def _shipping_option(s):
    return {
        "id": s.id,
        "name": s.name,
        "price": s.price,
        "is_active": s.is_active,
        "display_order": s.display_order,
    }


def _customer(c):
    return {
        "id": c.id,
        "email": c.email,
        "full_name": c.full_name,
        "phone": c.phone,
        "total_orders": c.total_orders,
        "total_spent": c.total_spent,
        "last_order_at": _iso(c.last_order_at),
        "created_at": _iso(c.created_at),
    }


def _coupon(c):
    status = coupons.coupon_display_status(c)
    return {
        "id": c.id,
        "code": c.code,
        "discount_type": c.discount_type,
        "discount_value": c.discount_value,
        "min_order_amount": c.min_order_amount,
        "max_uses": c.max_uses,
        "usage_count": c.usage_count,
        "expires_at": _iso(c.expires_at),
        "is_active": c.is_active,
        "status": status,
        "status_label": coupons.COUPON_STATUS_LABELS[status],
        "created_at": _iso(c.created_at),
    }


def _order(o):
    return {
        "id": o.id,
        "order_number": o.order_number,
        "display_number": format_order_number(o.order_number),
        "customer_id": o.customer_id,
        "customer_email": o.customer_email,
        "recipient_name": o.recipient_name,
        "phone": o.phone,
        "city": o.city,
        "street": o.street,
        "house_number": o.house_number,
        "apartment": o.apartment,
        "zip_code": o.zip_code,
        "notes": o.notes,
        "shipping_option_id": o.shipping_option_id,
        "products_total": o.products_total,
        "shipping_cost": o.shipping_cost,
        "discount_amount": o.discount_amount,
        "coupon_code": o.coupon_code,
        "total_amount": o.total_amount,
        "status": o.status,
        "status_label": orders.ORDER_STATUS_LABELS.get(o.status, o.status),
        "payment_provider_id": o.payment_provider_id,
        "created_at": _iso(o.created_at),
        "updated_at": _iso(o.updated_at),
    }


def _order_with_items(o):
    return {
        **_order(o),
        "items": [
            {
                "id": item.id,
                "product_id": item.product_id,
                "name": item.name,
                "price_at_purchase": item.price_at_purchase,
                "quantity": item.quantity,
                "line_total": item.line_total,
            }
            for item in o.items
        ],
        "customer": _customer(o.customer) if o.customer else None,
        "shipping_option": _shipping_option(o.shipping_option) if o.shipping_option else None,
    }


# ── Storefront ────────────────────────────────────────────────────

@router.get("/products")
def list_products(db: Session = Depends(get_db)):
    return [_product(p) for p in services.list_products(db, in_stock_only=True)]


@router.get("/products/{slug}")
def get_product(slug: str, db: Session = Depends(get_db)):
    return _product(services.get_product_by_slug(db, slug))


@router.get("/shipping-options")
def list_shipping_options(db: Session = Depends(get_db)):
    return [_shipping_option(s) for s in services.list_shipping_options(db, active_only=True)]


@router.post("/coupons/validate")
def validate_coupon(body: ValidateCouponIn, db: Session = Depends(get_db)):
    result = coupons.validate_coupon(db, body.code, body.order_total)
    if not result.valid:
        return {"valid": False, "error": result.error}
    return {
        "valid": True,
        "coupon": {
            "code": result.coupon.code,
            "discount_type": result.coupon.discount_type,
            "discount_value": result.coupon.discount_value,
        },
        "discount_amount": result.discount_amount,
    }


@router.post("/orders", status_code=201)
def create_order(body: PlaceOrderIn, db: Session = Depends(get_db)):
    try:
        order = services.place_order(
            db=db,
            customer_email=body.customer_email,
            recipient=body.recipient.model_dump(),
            items=[item.model_dump() for item in body.items],
            shipping_option_id=body.shipping_option_id,
            coupon_code=body.coupon_code,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _order_with_items(order)


# ── Admin: dashboard ──────────────────────────────────────────────

@admin_router.get("/dashboard")
def dashboard(db: Session = Depends(get_db)):
    stats = services.dashboard_stats(db)
    return {
        "today_orders": stats.today_orders,
        "today_revenue": stats.today_revenue,
        "monthly_revenue": stats.monthly_revenue,
        "pending_orders": stats.pending_orders,
        "recent_orders": [_order(o) for o in stats.recent_orders],
    }


# ── Admin: orders ─────────────────────────────────────────────────

@admin_router.get("/orders")
def admin_list_orders(
    status: str = "all",
    limit: int | None = Query(default=None, ge=1, le=500),
    db: Session = Depends(get_db),
):
    try:
        found = orders.list_orders(db, status=status, limit=limit)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return [_order(o) for o in found]


@admin_router.get("/orders/{order_id}")
def admin_get_order(order_id: str, db: Session = Depends(get_db)):
    return _order_with_items(orders.get_order_details(db, order_id))


@admin_router.patch("/orders/{order_id}/status")
def admin_update_order_status(order_id: str, body: StatusIn, db: Session = Depends(get_db)):
    try:
        order = orders.update_order_status(db, order_id, body.status)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _order(order)


# ── Admin: customers ──────────────────────────────────────────────

@admin_router.get("/customers")
def admin_list_customers(db: Session = Depends(get_db)):
    return [_customer(c) for c in services.list_customers(db)]


@admin_router.get("/customers/{customer_id}")
def admin_get_customer(customer_id: str, db: Session = Depends(get_db)):
    return _customer(get_or_raise(db, Customer, customer_id))


# ── Admin: coupons ────────────────────────────────────────────────

@admin_router.get("/coupons")
def admin_list_coupons(db: Session = Depends(get_db)):
    return [_coupon(c) for c in coupons.list_coupons(db)]


@admin_router.post("/coupons", status_code=201)
def admin_create_coupon(body: CouponIn, db: Session = Depends(get_db)):
    try:
        coupon = coupons.create_coupon(db, **body.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _coupon(coupon)


@admin_router.patch("/coupons/{coupon_id}/active")
def admin_toggle_coupon(coupon_id: str, body: ActiveIn, db: Session = Depends(get_db)):
    return _coupon(coupons.set_coupon_active(db, coupon_id, body.is_active))


@admin_router.delete("/coupons/{coupon_id}", status_code=204)
def admin_delete_coupon(coupon_id: str, db: Session = Depends(get_db)):
    coupons.delete_coupon(db, coupon_id)
    return Response(status_code=204)


# ── Admin: products ───────────────────────────────────────────────

@admin_router.get("/products")
def admin_list_products(db: Session = Depends(get_db)):
    return [_product(p) for p in services.list_products(db)]


@admin_router.post("/products", status_code=201)
def admin_create_product(body: ProductIn, db: Session = Depends(get_db)):
    try:
        product = services.create_product(db, body.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _product(product)


@admin_router.patch("/products/{product_id}")
def admin_update_product(product_id: str, body: ProductUpdateIn, db: Session = Depends(get_db)):
    try:
        product = services.update_product(db, product_id, body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _product(product)


@admin_router.delete("/products/{product_id}", status_code=204)
def admin_delete_product(product_id: str, db: Session = Depends(get_db)):
    services.delete_product(db, product_id)
    return Response(status_code=204)


# ── Admin: shipping options ───────────────────────────────────────

@admin_router.get("/shipping-options")
def admin_list_shipping_options(db: Session = Depends(get_db)):
    return [_shipping_option(s) for s in services.list_shipping_options(db)]


@admin_router.post("/shipping-options", status_code=201)
def admin_create_shipping_option(body: ShippingOptionIn, db: Session = Depends(get_db)):
    try:
        option = services.create_shipping_option(db, body.name, body.price)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _shipping_option(option)


@admin_router.patch("/shipping-options/{option_id}")
def admin_update_shipping_option(option_id: str, body: ShippingOptionUpdateIn, db: Session = Depends(get_db)):
    try:
        option = services.update_shipping_option(db, option_id, body.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    return _shipping_option(option)


@admin_router.delete("/shipping-options/{option_id}", status_code=204)
def admin_delete_shipping_option(option_id: str, db: Session = Depends(get_db)):
    services.delete_shipping_option(db, option_id)
    return Response(status_code=204)

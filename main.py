"""
NIL Perfumes back-office API (FastAPI).

Run:
    pip install -e .
    python main.py
"""

import logging

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from models import SessionLocal, Coupon, Product, ShippingOption, init_db
from routes import admin_router, router
from store import StoreError
from utils import get_config
from webhooks import router as functions_router

logging.basicConfig(
    level=logging.DEBUG if get_config()["debug"] else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="NIL Perfumes Back-Office", version="0.1.0")
app.include_router(router)
app.include_router(admin_router)
app.include_router(functions_router)


@app.exception_handler(StoreError)
async def store_error_handler(request: Request, exc: StoreError):
    logger.warning("%s %s failed: %s", request.method, request.url.path, exc)
    return JSONResponse({"detail": exc.user_message, "kind": exc.kind.value}, status_code=exc.status_code)


@app.get("/health")
def health():
    return {"status": "ok"}


# ── Seed data ─────────────────────────────────────────────────────

def seed():
    """Insert demo catalog data if the database is empty (DEBUG only)."""
    db = SessionLocal()
    try:
        if db.query(Product).count() > 0:
            return  # already seeded

        db.add_all([
            Product(slug="oud-royal", name="Oud Royal", description="Eau de parfum, 100ml", price=420.0, display_order=0),
            Product(slug="amber-night", name="Amber Night", description="Eau de parfum, 50ml", price=289.9, display_order=1),
            Product(slug="white-musk", name="White Musk", description="Eau de toilette, 100ml", price=199.0, display_order=2),
        ])
        db.add_all([
            ShippingOption(name="משלוח עד הבית", price=35.0, display_order=0),
            ShippingOption(name="איסוף עצמי", price=0.0, display_order=1),
        ])
        db.add(Coupon(code="WELCOME10", discount_type="percent", discount_value=10.0, min_order_amount=0.0))

        db.commit()
        logger.info("Seeded database with demo products, shipping options and a coupon")
    finally:
        db.close()


# ── Startup ───────────────────────────────────────────────────────

@app.on_event("startup")
def on_startup():
    init_db()
    if get_config()["debug"]:
        seed()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("main:app", host="0.0.0.0", port=8000, reload=get_config()["debug"])

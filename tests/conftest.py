"""
Shared fixtures: an in-memory SQLite database and small factories.
"""

from datetime import datetime, timezone

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from auth import create_token
from models import Base, Coupon, Customer, Order, OrderItem, Product, ShippingOption, UserRole, get_db

JWT_SECRET = "test-jwt-secret"
SERVICE_KEY = "test-service-key"


@pytest.fixture(autouse=True)
def config_env(monkeypatch):
    """Deterministic configuration; no real credentials leak into tests."""
    monkeypatch.setenv("JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("SERVICE_ROLE_KEY", SERVICE_KEY)
    monkeypatch.setenv("FUNCTIONS_BASE_URL", "http://functions.test")
    monkeypatch.setenv("STORE_TIMEZONE", "Asia/Jerusalem")
    for name in ("TELEGRAM_BOT_TOKEN", "TELEGRAM_CHAT_ID", "RESEND_API_KEY"):
        monkeypatch.delenv(name, raising=False)


@pytest.fixture
def engine():
    # StaticPool: every connection (including TestClient threads) sees the same in-memory DB.
    engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def db_session(engine):
    """Create an in-memory SQLite database for testing."""
    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)
    session = TestingSessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(engine, db_session):
    from main import app

    TestingSessionLocal = sessionmaker(bind=engine, autoflush=False, autocommit=False)

    def override_get_db():
        db = TestingSessionLocal()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    try:
        yield TestClient(app)
    finally:
        app.dependency_overrides.clear()


@pytest.fixture
def admin_headers(db_session):
    db_session.add(UserRole(user_id="admin-1", role="admin"))
    db_session.commit()
    return {"Authorization": f"Bearer {create_token('admin-1', 'owner@nilperfumes.com')}"}


@pytest.fixture
def service_headers():
    return {"Authorization": f"Bearer {SERVICE_KEY}"}


# ── Factories ─────────────────────────────────────────────────────

@pytest.fixture
def make_product(db_session):
    def _make(slug="oud-royal", name="Oud Royal", price=100.0, in_stock=True):
        product = Product(slug=slug, name=name, price=price, in_stock=in_stock)
        db_session.add(product)
        db_session.commit()
        return product
    return _make


@pytest.fixture
def make_shipping(db_session):
    def _make(name="משלוח עד הבית", price=30.0, is_active=True):
        option = ShippingOption(name=name, price=price, is_active=is_active)
        db_session.add(option)
        db_session.commit()
        return option
    return _make


@pytest.fixture
def make_coupon(db_session):
    def _make(code="SAVE10", discount_type="percent", discount_value=10.0, **kwargs):
        coupon = Coupon(code=code, discount_type=discount_type, discount_value=discount_value, **kwargs)
        db_session.add(coupon)
        db_session.commit()
        return coupon
    return _make


@pytest.fixture
def make_customer(db_session):
    def _make(email="dana@example.com", **kwargs):
        customer = Customer(email=email, full_name=kwargs.pop("full_name", "Dana Levi"), **kwargs)
        db_session.add(customer)
        db_session.commit()
        return customer
    return _make


@pytest.fixture
def make_order(db_session):
    """Insert an order directly, bypassing checkout."""
    counter = {"n": 1000}

    def _make(
        total_amount=123.40,
        products_total=None,
        shipping_cost=0.0,
        discount_amount=0.0,
        status="pending",
        customer=None,
        coupon_code=None,
        created_at=None,
        items=None,
    ):
        counter["n"] += 1
        order = Order(
            order_number=counter["n"],
            customer=customer,
            customer_email=customer.email if customer else "guest@example.com",
            recipient_name="Dana Levi",
            phone="050-1234567",
            city="Tel Aviv",
            street="Dizengoff",
            house_number="100",
            products_total=products_total if products_total is not None else total_amount + discount_amount - shipping_cost,
            shipping_cost=shipping_cost,
            discount_amount=discount_amount,
            total_amount=total_amount,
            coupon_code=coupon_code,
            status=status,
            created_at=created_at or datetime.now(timezone.utc),
            items=items if items is not None else [
                OrderItem(name="Oud Royal", price_at_purchase=total_amount, quantity=1),
            ],
        )
        db_session.add(order)
        db_session.commit()
        return order
    return _make

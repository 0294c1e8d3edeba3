import os

# Must be set before the application modules are imported
os.environ["DATABASE_URL"] = "sqlite:///./test_storefront.db"
os.environ["GATEWAY_SECRET_KEY"] = "sk_test"
os.environ["GATEWAY_WEBHOOK_SECRET"] = "whsec_test"
os.environ["PLATFORM_RECIPIENT_ID"] = "rp_platform"
os.environ["JWT_SECRET"] = "jwt_test_secret"

from datetime import datetime, timedelta, timezone
from decimal import Decimal

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from storefront.database import Base
from storefront.gateway import GatewayTransaction, sign_payload
from storefront.main import app as fastapi_app
from storefront.models import (
    Affiliate,
    Coupon,
    Customer,
    Order,
    Price,
    Product,
    SplitConfiguration,
    SplitRecipient,
    User,
)

SQLALCHEMY_DATABASE_URL = "sqlite:///./test_storefront.db"
engine = create_engine(SQLALCHEMY_DATABASE_URL, connect_args={
                       "check_same_thread": False})
TestingSessionLocal = sessionmaker(
    autocommit=False, autoflush=False, bind=engine)


@pytest.fixture(autouse=True)
def setup_db():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def db():
    session = TestingSessionLocal()
    yield session
    session.close()


@pytest.fixture
def client(monkeypatch):
    monkeypatch.setattr("storefront.routes.SessionLocal", TestingSessionLocal)
    monkeypatch.setattr("storefront.main.SessionLocal", TestingSessionLocal)
    with TestClient(fastapi_app) as c:
        yield c
    fastapi_app.dependency_overrides.clear()


@pytest.fixture
def catalog(db):
    """
    Seed a small catalog:
    - "course": 10000, with an older active price and a newer inactive one
    - "bonus": add-on at 2500
    - "bundle": 30000 with a three-recipient split configuration
    - "retired": inactive product
    - affiliate "rp_affiliate" at 20% commission
    - coupon WELCOME10 on "course"
    """
    now = datetime.now(timezone.utc)

    course = Product(id="course", name="Trading Course", product_type="educational")
    course.prices = [
        Price(amount=9000, active=True, created_at=now - timedelta(days=30)),
        Price(amount=10000, active=True, created_at=now - timedelta(days=1)),
        Price(amount=12000, active=False, created_at=now),
    ]
    bonus = Product(id="bonus", name="Bonus Workbook", product_type="educational")
    bonus.prices = [Price(amount=2500, active=True, created_at=now)]

    configuration = SplitConfiguration(
        active=True,
        recipients=[
            SplitRecipient(position=0, recipient_id="rp_platform", percentage=Decimal("50"),
                           is_liable=True, charge_processing_fee=True, charge_remainder_fee=True),
            SplitRecipient(position=1, recipient_id="rp_author", percentage=Decimal("30")),
            SplitRecipient(position=2, recipient_id="rp_mentor", percentage=Decimal("20")),
        ],
    )
    bundle = Product(id="bundle", name="Complete Bundle", product_type="combo",
                     split_configuration=configuration)
    bundle.prices = [Price(amount=30000, active=True, created_at=now)]

    retired = Product(id="retired", name="Old Course", active=False)
    retired.prices = [Price(amount=5000, active=True, created_at=now)]

    user = User(id="user-aff", email="affiliate@example.com", name="Ana", role="affiliate")
    affiliate = Affiliate(id="aff-1", user=user, commission=20, active=True, recipient_id="rp_affiliate")

    coupon = Coupon(id="coupon-1", code="welcome10", discount_percentage=10, products=[course])

    db.add_all([course, bonus, bundle, retired, affiliate, coupon])
    db.commit()
    return {
        "course": course,
        "bonus": bonus,
        "bundle": bundle,
        "affiliate": affiliate,
        "coupon": coupon,
    }


@pytest.fixture
def make_order(db):
    """Insert an order for a fixed customer, bypassing the checkout flow."""
    def _make(status="pending", external_transaction_id="or_1", **fields):
        customer = db.query(Customer).filter_by(document="12345678909").first()
        if customer is None:
            customer = Customer(document="12345678909", name="Maria Silva", email="maria@example.com")
            db.add(customer)
            db.flush()
        fields.setdefault("amount", 10000)
        fields.setdefault("payment_method", "pix")
        order = Order(
            customer_id=customer.id,
            status=status,
            external_transaction_id=external_transaction_id,
            **fields,
        )
        db.add(order)
        db.commit()
        return order
    return _make


@pytest.fixture
def gateway_transaction():
    def _build(id="or_1", status="paid", charge_id="ch_1", pix=None):
        charge = {"id": charge_id, "status": status}
        if pix is not None:
            charge["payment_method"] = "pix"
            charge["last_transaction"] = pix
        return GatewayTransaction.model_validate({"id": id, "status": status, "charges": [charge]})
    return _build


@pytest.fixture
def sign():
    def _sign(body: bytes) -> str:
        return sign_payload(body, os.environ["GATEWAY_WEBHOOK_SECRET"])
    return _sign

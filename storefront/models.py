import uuid
from datetime import datetime, timezone
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    Numeric,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship, validates

from storefront.database import Base


def _uuid() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class OrderStatus(str, Enum):
    CREATING = "creating"      # local row written, gateway not answered yet
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


TERMINAL_STATUSES = frozenset({OrderStatus.PAID, OrderStatus.FAILED, OrderStatus.REFUNDED})


class PaymentMethod(str, Enum):
    CREDIT_CARD = "credit_card"
    PIX = "pix"


# Methods confirmed later through a webhook; the checkout response carries a QR payload
ASYNC_PAYMENT_METHODS = frozenset({PaymentMethod.PIX})


coupon_products = Table(
    "coupon_products",
    Base.metadata,
    Column("coupon_id", String, ForeignKey("coupons.id", ondelete="CASCADE"), primary_key=True),
    Column("product_id", String, ForeignKey("products.id", ondelete="CASCADE"), primary_key=True),
)


class User(Base):
    __tablename__ = "users"

    id = Column(String, primary_key=True, default=_uuid)
    email = Column(String, unique=True, index=True, nullable=False)
    name = Column(String)
    role = Column(String, nullable=False, default="customer")  # admin | affiliate | customer


class SplitConfiguration(Base):
    __tablename__ = "split_configurations"

    id = Column(String, primary_key=True, default=_uuid)
    active = Column(Boolean, nullable=False, default=True)

    recipients = relationship(
        "SplitRecipient",
        order_by="SplitRecipient.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )


class SplitRecipient(Base):
    __tablename__ = "split_recipients"

    id = Column(String, primary_key=True, default=_uuid)
    configuration_id = Column(
        String, ForeignKey("split_configurations.id", ondelete="CASCADE"), index=True, nullable=False
    )
    position = Column(Integer, nullable=False, default=0)
    recipient_id = Column(String, nullable=False)
    percentage = Column(Numeric(5, 2), nullable=False)
    is_liable = Column(Boolean, nullable=False, default=False)
    charge_processing_fee = Column(Boolean, nullable=False, default=False)
    charge_remainder_fee = Column(Boolean, nullable=False, default=False)


class Product(Base):
    __tablename__ = "products"

    id = Column(String, primary_key=True, default=_uuid)
    name = Column(String, nullable=False)
    description = Column(Text)
    active = Column(Boolean, nullable=False, default=True)
    product_type = Column(String)  # opaque, used by downstream provisioning
    split_configuration_id = Column(String, ForeignKey("split_configurations.id"), nullable=True)

    prices = relationship("Price", back_populates="product", cascade="all, delete-orphan")
    split_configuration = relationship("SplitConfiguration", lazy="joined")


class Price(Base):
    __tablename__ = "prices"

    id = Column(String, primary_key=True, default=_uuid)
    product_id = Column(String, ForeignKey("products.id", ondelete="CASCADE"), index=True, nullable=False)
    amount = Column(Integer, nullable=False)  # minor currency units
    active = Column(Boolean, nullable=False, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    product = relationship("Product", back_populates="prices")


class Coupon(Base):
    __tablename__ = "coupons"

    id = Column(String, primary_key=True, default=_uuid)
    code = Column(String, unique=True, index=True, nullable=False)
    active = Column(Boolean, nullable=False, default=True)
    discount_percentage = Column(Integer, nullable=False)
    max_uses = Column(Integer, nullable=True)
    usage_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)

    products = relationship("Product", secondary=coupon_products, lazy="selectin")

    @validates("code")
    def _normalize_code(self, key, value):
        return value.strip().upper()


class Affiliate(Base):
    __tablename__ = "affiliates"

    id = Column(String, primary_key=True, default=_uuid)
    user_id = Column(String, ForeignKey("users.id"), unique=True, nullable=False)
    commission = Column(Integer, nullable=False)  # percentage, 0-100
    active = Column(Boolean, nullable=False, default=True)
    recipient_id = Column(String, unique=True, index=True, nullable=True)  # gateway payout recipient
    earned_amount = Column(Integer, nullable=False, default=0)

    user = relationship("User")


class Customer(Base):
    __tablename__ = "customers"

    id = Column(String, primary_key=True, default=_uuid)
    document = Column(String, unique=True, index=True, nullable=False)  # digits only
    name = Column(String, nullable=False)
    email = Column(String, nullable=False)
    phone = Column(String)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)


class Order(Base):
    __tablename__ = "orders"

    id = Column(String, primary_key=True, default=_uuid)
    customer_id = Column(String, ForeignKey("customers.id"), index=True, nullable=False)
    status = Column(String, nullable=False)                 # creating | pending | paid | failed | refunded | gateway status
    amount = Column(Integer, nullable=False)
    payment_method = Column(String, nullable=False)
    installments = Column(Integer)
    external_transaction_id = Column(String, unique=True, index=True, nullable=True)
    external_charge_id = Column(String, nullable=True)
    checkout_id = Column(String, unique=True, index=True, nullable=True)
    affiliate_id = Column(String, ForeignKey("affiliates.id"), nullable=True)
    split_amount = Column(Integer, nullable=True)
    coupon_id = Column(String, ForeignKey("coupons.id"), nullable=True)
    gateway_response = Column(JSON, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    customer = relationship("Customer")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")


class OrderItem(Base):
    __tablename__ = "order_items"

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    product_id = Column(String, ForeignKey("products.id"), nullable=False)
    quantity = Column(Integer, nullable=False, default=1)
    price = Column(Integer, nullable=False)

    order = relationship("Order", back_populates="items")


class OrderTransition(Base):
    """Ledger row marking the first time an order reached a status."""

    __tablename__ = "order_transitions"
    __table_args__ = (UniqueConstraint("order_id", "status", name="uq_order_transition"),)

    id = Column(String, primary_key=True, default=_uuid)
    order_id = Column(String, ForeignKey("orders.id", ondelete="CASCADE"), index=True, nullable=False)
    status = Column(String, nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

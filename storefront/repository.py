"""
Order persistence.

Plain functions over a SQLAlchemy session. Writes that must stay correct
under concurrent requests (customer upsert, transition ledger, counters)
are single statements rather than read-then-write sequences.
"""

from typing import List, Optional, Tuple

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from storefront.gateway import GatewayTransaction
from storefront.models import (
    Affiliate,
    Coupon,
    Customer,
    Order,
    OrderItem,
    OrderStatus,
    OrderTransition,
    utcnow,
)

logger = structlog.get_logger(component="repository")


def _dialect_insert(db: Session):
    """Return the dialect's INSERT construct when it supports ON CONFLICT."""
    name = db.get_bind().dialect.name
    if name == "postgresql":
        from sqlalchemy.dialects.postgresql import insert
        return insert
    if name == "sqlite":
        from sqlalchemy.dialects.sqlite import insert
        return insert
    return None


def upsert_customer(db: Session, document: str, name: str, email: str, phone: Optional[str]) -> Customer:
    """Create the customer or refresh its contact data, keyed by document."""
    insert = _dialect_insert(db)
    now = utcnow()

    if insert is not None:
        stmt = insert(Customer).values(
            document=document, name=name, email=email, phone=phone, created_at=now, updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[Customer.document],
            set_={"name": name, "email": email, "phone": phone, "updated_at": now},
        )
        db.execute(stmt)
        db.commit()
    else:
        customer = db.execute(select(Customer).where(Customer.document == document)).scalars().first()
        if customer is None:
            db.add(Customer(document=document, name=name, email=email, phone=phone))
        else:
            customer.name, customer.email, customer.phone = name, email, phone
        db.commit()

    return db.execute(
        select(Customer).where(Customer.document == document).execution_options(populate_existing=True)
    ).scalars().one()


def ensure_customer(db: Session, document: str, name: str, email: str, phone: Optional[str]) -> Customer:
    """
    Return the customer for `document`, creating it when missing.

    An existing row keeps its contact data; the refresh happens through
    upsert_customer once the charge went through.
    """
    insert = _dialect_insert(db)

    if insert is not None:
        now = utcnow()
        stmt = insert(Customer).values(
            document=document, name=name, email=email, phone=phone, created_at=now, updated_at=now
        )
        db.execute(stmt.on_conflict_do_nothing(index_elements=[Customer.document]))
        db.commit()
    else:
        exists = db.execute(select(Customer.id).where(Customer.document == document)).first()
        if exists is None:
            db.add(Customer(document=document, name=name, email=email, phone=phone))
            db.commit()

    return db.execute(select(Customer).where(Customer.document == document)).scalars().one()


def find_order_by_checkout_id(db: Session, checkout_id: str) -> Optional[Order]:
    return db.execute(select(Order).where(Order.checkout_id == checkout_id)).scalars().first()


def create_order_draft(
    db: Session,
    customer_id: str,
    amount: int,
    payment_method: str,
    items: List[Tuple[str, int]],
    installments: Optional[int] = None,
    checkout_id: Optional[str] = None,
    coupon_id: Optional[str] = None,
    affiliate_id: Optional[str] = None,
    split_amount: Optional[int] = None,
) -> Order:
    """
    Persist an order in the `creating` state, before the gateway is called.

    `items` holds (product_id, charged_price) pairs. Raises IntegrityError
    when another request already claimed the same checkout id.
    """
    order = Order(
        customer_id=customer_id,
        status=OrderStatus.CREATING.value,
        amount=amount,
        payment_method=payment_method,
        installments=installments,
        checkout_id=checkout_id,
        coupon_id=coupon_id,
        affiliate_id=affiliate_id,
        split_amount=split_amount,
        items=[OrderItem(product_id=product_id, quantity=1, price=price) for product_id, price in items],
    )
    db.add(order)
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise
    db.refresh(order)
    return order


def finalize_order(db: Session, order: Order, transaction: GatewayTransaction) -> Order:
    """Attach the gateway transaction to a draft order."""
    order.external_transaction_id = transaction.id
    order.external_charge_id = transaction.charge_id
    order.gateway_response = transaction.model_dump(mode="json")
    db.flush()
    # a terminal webhook may already have settled the order; pending is still overwritable
    db.execute(
        update(Order)
        .where(
            Order.id == order.id,
            Order.status.in_([OrderStatus.CREATING.value, OrderStatus.PENDING.value]),
        )
        .values(status=transaction.status, updated_at=utcnow())
    )
    db.commit()
    db.refresh(order)
    return order


def discard_order(db: Session, order_id: str) -> None:
    """Delete a draft order whose charge was never created."""
    db.rollback()
    order = db.get(Order, order_id)
    if order is not None and order.status == OrderStatus.CREATING.value:
        db.delete(order)
        db.commit()


def get_order(db: Session, order_id: str) -> Optional[Order]:
    return db.get(Order, order_id)


def find_order_for_event(db: Session, gateway_order_id: str, gateway_code: Optional[str] = None) -> Optional[Order]:
    """
    Locate the order a gateway notification refers to.

    The external transaction id is the designed key. Matching the gateway's
    identifiers against the local primary key is a compatibility path for
    payloads that carry our own order id instead.
    """
    order = db.execute(
        select(Order).where(Order.external_transaction_id == gateway_order_id)
    ).scalars().first()
    if order is not None:
        return order

    for candidate in (gateway_order_id, gateway_code):
        if not candidate:
            continue
        order = db.get(Order, candidate)
        if order is not None:
            logger.warning("order_matched_by_primary_key", order_id=order.id, reference=candidate)
            return order
    return None


def record_transition(db: Session, order_id: str, status: str) -> bool:
    """
    Insert the (order, status) ledger row inside the caller's transaction.

    Returns True only for the first caller; a duplicate yields False.
    """
    insert = _dialect_insert(db)
    if insert is not None:
        stmt = insert(OrderTransition).values(order_id=order_id, status=status)
        stmt = stmt.on_conflict_do_nothing(index_elements=["order_id", "status"])
        result = db.execute(stmt)
        return result.rowcount == 1

    try:
        with db.begin_nested():
            db.add(OrderTransition(order_id=order_id, status=status))
    except IntegrityError:
        return False
    return True


def increment_coupon_usage(db: Session, coupon_id: str) -> None:
    db.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id)
        .values(usage_count=Coupon.usage_count + 1)
    )


def accrue_affiliate_commission(db: Session, affiliate_id: str, amount: int) -> None:
    db.execute(
        update(Affiliate)
        .where(Affiliate.id == affiliate_id)
        .values(earned_amount=Affiliate.earned_amount + amount)
    )

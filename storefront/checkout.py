"""
Checkout orchestration.

Validates a purchase against authoritative pricing, resolves the revenue
split, charges the payer through the gateway and records the order.

The order row is written in the `creating` state before the gateway call and
finalized with the gateway's transaction afterwards. A failure before the
gateway returns a usable transaction deletes the draft, so no order
survives a failed checkout. A failure while finalizing leaves the draft
behind as the only local trace of a charge that exists at the gateway.
"""

import json
import re
from dataclasses import dataclass
from typing import List, Optional, Tuple

import structlog
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from storefront import gateway, pricing, repository
from storefront.config import get_settings
from storefront.errors import CheckoutInProgress, MissingPaymentData
from storefront.gateway import CardDetails, GatewayTransaction, Payer, PayerPhone
from storefront.log import mask_document
from storefront.models import (
    ASYNC_PAYMENT_METHODS,
    Coupon,
    Order,
    OrderStatus,
    PaymentMethod,
    Price,
    Product,
)
from storefront.schemas import CardData, CheckoutRequest, CouponSelection, CustomerData
from storefront.splits import SplitDecision, resolve_split

logger = structlog.get_logger(component="checkout")

_NON_DIGITS = re.compile(r"\D")


@dataclass(frozen=True)
class CheckoutResult:
    order_id: str
    status: str
    payment_method: str
    transaction_id: Optional[str] = None
    qr_code: Optional[str] = None
    qr_code_url: Optional[str] = None
    expires_at: Optional[str] = None
    is_duplicate: bool = False


def digits_only(value: str) -> str:
    return _NON_DIGITS.sub("", value or "")


def normalize_payer(customer: CustomerData) -> Payer:
    """
    Shape customer data for the gateway.

    The first two phone digits are taken as the area code and the rest as the
    subscriber number. Malformed phones are passed through for the gateway to
    reject.
    """
    phone = digits_only(customer.phone)
    return Payer(
        name=customer.name,
        email=customer.email,
        document=digits_only(customer.document),
        phone=PayerPhone(area_code=phone[:2], number=phone[2:]),
    )


def parse_card(card_data: Optional[CardData]) -> CardDetails:
    if card_data is None or not all((
        card_data.card_number,
        card_data.card_holder,
        card_data.card_expiry,
        card_data.card_cvv,
    )):
        raise MissingPaymentData("Card data is required for credit card payments")

    try:
        month, year = card_data.card_expiry.split("/")
        exp_month = int(month)
        exp_year = int(year) if len(year.strip()) == 4 else 2000 + int(year)
    except ValueError:
        raise MissingPaymentData("Card expiry must be formatted as MM/YY")

    billing_address = None
    if card_data.billing_address is not None:
        billing_address = card_data.billing_address.model_dump(by_alias=False)

    return CardDetails(
        number=digits_only(card_data.card_number),
        holder_name=card_data.card_holder,
        exp_month=exp_month,
        exp_year=exp_year,
        cvv=card_data.card_cvv,
        billing_address=billing_address,
    )


def build_metadata(
    product: Product, affiliate_ref: Optional[str], addons: List[Tuple[Product, Price]]
) -> dict:
    """Reconciliation metadata forwarded to the gateway untouched."""
    order_bumps = None
    if addons:
        order_bumps = json.dumps({
            "ids": [addon.id for addon, _ in addons],
            "names": [addon.name for addon, _ in addons],
        })
    return {
        "product_id": product.id,
        "product_name": product.name,
        "product_type": product.product_type,
        "affiliate_id": affiliate_ref or None,
        "order_bumps": order_bumps,
        "has_order_bumps": bool(addons),
    }


def _resolve_coupon(db: Session, selection: Optional[CouponSelection], product_id: str) -> Optional[Coupon]:
    # The charged amount already includes any discount; the coupon is only linked for usage tracking
    if selection is None or not selection.code:
        return None
    try:
        coupon = pricing.find_applicable_coupon(db, selection.code, product_id)
    except SQLAlchemyError as e:
        db.rollback()
        logger.error("coupon_lookup_failed", code=selection.code, error=str(e))
        return None
    if coupon is None:
        logger.info(
            "coupon_not_applicable",
            code=selection.code,
            product_id=product_id,
            submitted_discount=selection.discount_percentage,
        )
    elif selection.discount_percentage is not None and selection.discount_percentage != coupon.discount_percentage:
        logger.warning(
            "coupon_discount_mismatch",
            code=coupon.code,
            submitted_discount=selection.discount_percentage,
            discount=coupon.discount_percentage,
        )
    return coupon


def result_from_order(order: Order, is_duplicate: bool = False) -> CheckoutResult:
    transaction = None
    if order.gateway_response:
        transaction = GatewayTransaction.model_validate(order.gateway_response)

    result = CheckoutResult(
        order_id=order.id,
        status=order.status,
        payment_method=order.payment_method,
        is_duplicate=is_duplicate,
    )
    if order.payment_method not in {method.value for method in ASYNC_PAYMENT_METHODS}:
        return result

    pix = transaction.pix if transaction else None
    return CheckoutResult(
        order_id=order.id,
        status=order.status,
        payment_method=order.payment_method,
        transaction_id=transaction.id if transaction else None,
        qr_code=pix.qr_code if pix else None,
        qr_code_url=pix.qr_code_url if pix else None,
        expires_at=pix.expires_at if pix else None,
        is_duplicate=is_duplicate,
    )


def _replay(order: Order) -> CheckoutResult:
    if order.status == OrderStatus.CREATING.value:
        raise CheckoutInProgress("A checkout with this id is still being processed")
    logger.info("checkout_duplicate", order_id=order.id, checkout_id=order.checkout_id)
    return result_from_order(order, is_duplicate=True)


def _charge(
    request: CheckoutRequest,
    amount: int,
    payer: Payer,
    card: Optional[CardDetails],
    product: Product,
    metadata: dict,
    split: SplitDecision,
    order_id: str,
) -> GatewayTransaction:
    if request.payment_method == PaymentMethod.CREDIT_CARD:
        return gateway.create_card_payment(
            amount=amount,
            payer=payer,
            card=card,
            installments=request.installments,
            item_description=product.name,
            metadata=metadata,
            split=split.to_payload(),
            code=order_id,
        )
    return gateway.create_pix_payment(
        amount=amount,
        payer=payer,
        item_description=product.name,
        metadata=metadata,
        split=split.to_payload(),
        expires_in=get_settings().pix_expires_in_seconds,
        code=order_id,
    )


def checkout(db: Session, request: CheckoutRequest) -> CheckoutResult:
    """
    Handle a purchase end to end.

    Raises a CheckoutError subclass on any terminal failure:
    InvalidProduct, MissingPaymentData, GatewayError and its subclasses,
    CheckoutInProgress.
    """
    log = logger.bind(
        product_id=request.product.id,
        payment_method=request.payment_method.value,
        checkout_id=request.checkout_id,
    )

    if request.checkout_id:
        existing = repository.find_order_by_checkout_id(db, request.checkout_id)
        if existing is not None:
            return _replay(existing)

    # 1. authoritative product and price
    product, price = pricing.resolve_product(db, request.product.id, request.product.price)
    addons = pricing.resolve_addons(db, request.selected_bumps)

    # 2. coupon, best effort
    coupon = _resolve_coupon(db, request.coupon, product.id)

    # 3. split
    split = resolve_split(db, product, request.affiliate_ref, get_settings().platform_recipient_id)

    # 4. payer and payment data
    payer = normalize_payer(request.customer)
    card = parse_card(request.card_data) if request.payment_method == PaymentMethod.CREDIT_CARD else None

    amount = request.total_amount or price.amount
    metadata = build_metadata(product, request.affiliate_ref, addons)
    items = [(product.id, price.amount)] + [(addon.id, addon_price.amount) for addon, addon_price in addons]

    contact = dict(
        document=payer.document,
        name=request.customer.name,
        email=request.customer.email,
        phone=request.customer.phone,
    )
    customer = repository.ensure_customer(db, **contact)
    log.info("customer_resolved", customer_id=customer.id, document=mask_document(payer.document))

    try:
        order = repository.create_order_draft(
            db,
            customer_id=customer.id,
            amount=amount,
            payment_method=request.payment_method.value,
            items=items,
            installments=request.installments if card is not None else None,
            checkout_id=request.checkout_id,
            coupon_id=coupon.id if coupon else None,
            affiliate_id=split.affiliate.id if split.affiliate else None,
            split_amount=split.affiliate_share(amount),
        )
    except IntegrityError:
        existing = repository.find_order_by_checkout_id(db, request.checkout_id) if request.checkout_id else None
        if existing is None:
            raise
        return _replay(existing)

    order_id = order.id
    log = log.bind(order_id=order_id)
    log.info("order_draft_created", amount=amount, items=len(items), split_rules=len(split.rules))

    # 5. charge
    try:
        transaction = _charge(request, amount, payer, card, product, metadata, split, order_id)
    except Exception:
        log.warning("order_draft_discarded")
        repository.discard_order(db, order_id)
        raise

    # 6. finalize; the charge exists at the gateway from here on
    try:
        repository.upsert_customer(db, **contact)
        order = repository.finalize_order(db, order, transaction)
    except SQLAlchemyError:
        db.rollback()
        log.error("order_finalize_failed", transaction_id=transaction.id, gateway_status=transaction.status)
        raise

    log.info("order_created", status=order.status, transaction_id=transaction.id)
    return result_from_order(order)

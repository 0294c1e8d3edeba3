from typing import Optional

import structlog
from fastapi import APIRouter, Depends, HTTPException, Query

from storefront.auth import verify_admin
from storefront.checkout import checkout
from storefront.database import SessionLocal
from storefront.errors import CheckoutError, GatewayError
from storefront.gateway import cancel_charge
from storefront.models import OrderStatus
from storefront.pricing import find_applicable_coupon
from storefront.repository import get_order
from storefront.schemas import (
    CheckoutRequest,
    CheckoutResponse,
    CouponValidationResponse,
    OrderStatusResponse,
    RefundResponse,
)
from storefront.settlement import apply_transition

logger = structlog.get_logger(component="routes")

router = APIRouter()


@router.post("/checkout", response_model=CheckoutResponse, response_model_exclude_none=True)
def create_checkout(request: CheckoutRequest):
    db = SessionLocal()
    try:
        result = checkout(db, request)
    except CheckoutError as e:
        raise HTTPException(status_code=e.status_code, detail=e.to_detail())
    finally:
        db.close()

    return CheckoutResponse(
        order_id=result.order_id,
        status=result.status,
        qr_code=result.qr_code,
        qr_code_url=result.qr_code_url,
        expires_at=result.expires_at,
        transaction_id=result.transaction_id,
        is_duplicate=result.is_duplicate or None,
    )


@router.get("/orders/{order_id}/status", response_model=OrderStatusResponse)
def order_status(order_id: str):
    db = SessionLocal()
    try:
        order = get_order(db, order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        return OrderStatusResponse(
            id=order.id,
            status=order.status,
            payment_method=order.payment_method,
            amount=order.amount,
            created_at=order.created_at,
        )
    finally:
        db.close()


@router.get("/coupons/validate", response_model=CouponValidationResponse)
def validate_coupon(
    code: Optional[str] = None,
    product_id: Optional[str] = Query(None, alias="productId"),
):
    if not code or not product_id:
        raise HTTPException(status_code=400, detail="Coupon code and product id are required")

    db = SessionLocal()
    try:
        coupon = find_applicable_coupon(db, code, product_id)
        if coupon is None:
            raise HTTPException(
                status_code=404,
                detail="Coupon is invalid, expired or not applicable to this product",
            )
        return CouponValidationResponse(code=coupon.code, discount_percentage=coupon.discount_percentage)
    finally:
        db.close()


@router.post("/orders/{order_id}/refund", response_model=RefundResponse)
def refund_order(order_id: str, claims=Depends(verify_admin)):
    db = SessionLocal()
    try:
        order = get_order(db, order_id)
        if order is None:
            raise HTTPException(status_code=404, detail="Order not found")
        if order.status != OrderStatus.PAID.value:
            raise HTTPException(
                status_code=400,
                detail=f'Cannot refund an order with status "{order.status}"; only paid orders can be refunded',
            )

        if not order.external_charge_id:
            logger.warning("refund_rejected", order_id=order_id, reason="missing_charge_id")
            raise HTTPException(
                status_code=409,
                detail="Order has no gateway charge to cancel; refund it at the gateway",
            )

        try:
            cancel_charge(order.external_charge_id)
        except GatewayError as e:
            raise HTTPException(status_code=e.status_code, detail=e.to_detail())

        transition = apply_transition(db, order, OrderStatus.REFUNDED)
        logger.info("order_refunded", order_id=order_id, admin=claims.get("sub"))
    finally:
        db.close()

    return RefundResponse(order_id=transition.order_id, status=transition.status)

"""
Order settlement from gateway notifications.

Status is last-write-wins for terminal targets. Financial side effects of
reaching `paid` (coupon usage, affiliate commission) are keyed on the
order_transitions ledger, so replays and concurrent deliveries apply them
once per order.
"""

import json
from dataclasses import dataclass
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict, ValidationError
from sqlalchemy.orm import Session

from storefront import gateway, repository
from storefront.errors import InvalidSignature, MalformedEvent
from storefront.models import TERMINAL_STATUSES, Order, OrderStatus

logger = structlog.get_logger(component="settlement")

_TERMINAL_VALUES = frozenset(status.value for status in TERMINAL_STATUSES)

EVENT_STATUS = {
    "order.paid": OrderStatus.PAID,
    "order.payment_failed": OrderStatus.FAILED,
    "order.refunded": OrderStatus.REFUNDED,
    "order.pending": OrderStatus.PENDING,
}


class GatewayEvent(BaseModel):
    model_config = ConfigDict(extra="allow")

    type: str
    data: dict = {}

    def order_reference(self) -> Optional[str]:
        nested = self.data.get("order")
        if isinstance(nested, dict) and nested.get("id"):
            return str(nested["id"])
        if self.data.get("id"):
            return str(self.data["id"])
        return None

    def order_code(self) -> Optional[str]:
        nested = self.data.get("order")
        if isinstance(nested, dict) and nested.get("code"):
            return str(nested["code"])
        code = self.data.get("code")
        return str(code) if code else None


@dataclass(frozen=True)
class TransitionResult:
    order_id: str
    previous_status: str
    status: str
    changed: bool
    side_effects_applied: bool


@dataclass(frozen=True)
class WebhookOutcome:
    event_type: str
    handled: bool
    transition: Optional[TransitionResult] = None


def parse_event(body: bytes) -> GatewayEvent:
    try:
        payload = json.loads(body)
    except ValueError:
        raise MalformedEvent("Body is not valid JSON")
    if not isinstance(payload, dict):
        raise MalformedEvent("Body must be a JSON object")
    try:
        return GatewayEvent.model_validate(payload)
    except ValidationError as e:
        raise MalformedEvent(f"Unexpected event shape: {e.error_count()} errors")


def _apply_paid_side_effects(db: Session, order: Order) -> None:
    if order.coupon_id:
        repository.increment_coupon_usage(db, order.coupon_id)
        logger.info("coupon_usage_incremented", order_id=order.id, coupon_id=order.coupon_id)
    if order.affiliate_id and order.split_amount:
        repository.accrue_affiliate_commission(db, order.affiliate_id, order.split_amount)
        logger.info(
            "affiliate_commission_accrued",
            order_id=order.id,
            affiliate_id=order.affiliate_id,
            amount=order.split_amount,
        )


def apply_transition(db: Session, order: Order, target: OrderStatus) -> TransitionResult:
    """
    Move an order to `target` and commit.

    `pending` never regresses an order that already moved on. Terminal
    targets overwrite the status; the `paid` side effects run only for the
    request that records the first (order, paid) ledger row.
    """
    previous = order.status

    if target == OrderStatus.PENDING and (previous in _TERMINAL_VALUES or previous == OrderStatus.PENDING.value):
        logger.info("pending_notification_ignored", order_id=order.id, status=previous)
        return TransitionResult(order.id, previous, previous, changed=False, side_effects_applied=False)

    order.status = target.value
    db.flush()

    first_time = True
    if target in TERMINAL_STATUSES:
        first_time = repository.record_transition(db, order.id, target.value)

    applied = False
    if target == OrderStatus.PAID and first_time:
        _apply_paid_side_effects(db, order)
        applied = True
    elif target == OrderStatus.PAID:
        logger.info("paid_side_effects_skipped", order_id=order.id, reason="already_settled")

    db.commit()
    logger.info(
        "order_status_updated",
        order_id=order.id,
        previous=previous,
        status=target.value,
        first_time=first_time,
    )
    return TransitionResult(
        order.id, previous, target.value, changed=previous != target.value, side_effects_applied=applied
    )


def process_webhook(db: Session, body: bytes, signature: Optional[str]) -> WebhookOutcome:
    """
    Authenticate, parse and route one gateway notification.

    Raises InvalidSignature (401), MalformedEvent (400) or
    WebhookNotConfigured (500). Unknown event types and unknown orders are
    acknowledged and dropped.
    """
    if not gateway.verify_signature(body, signature):
        logger.warning("webhook_signature_rejected", signature_present=bool(signature))
        raise InvalidSignature("Invalid webhook signature")

    event = parse_event(body)
    target = EVENT_STATUS.get(event.type)
    if target is None:
        logger.info("webhook_event_ignored", event_type=event.type)
        return WebhookOutcome(event_type=event.type, handled=False)

    reference = event.order_reference()
    if reference is None:
        raise MalformedEvent("Event does not reference an order")

    order = repository.find_order_for_event(db, reference, event.order_code())
    if order is None:
        logger.error("webhook_order_not_found", event_type=event.type, reference=reference)
        return WebhookOutcome(event_type=event.type, handled=False)

    transition = apply_transition(db, order, target)
    return WebhookOutcome(event_type=event.type, handled=True, transition=transition)

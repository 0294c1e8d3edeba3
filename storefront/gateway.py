"""
Payment gateway adapter.

Thin synchronous client over the gateway's REST API: create an order with a
single credit-card or PIX payment, cancel a charge, and verify webhook
signatures. Every HTTP failure surfaces as a GatewayError; nothing is retried.
"""

import hashlib
import hmac
from typing import Any, Dict, List, Optional

import httpx
import structlog
from pydantic import BaseModel, ConfigDict

from storefront.config import get_settings
from storefront.errors import (
    GatewayError,
    GatewayResponseIncomplete,
    GatewayValidationError,
    WebhookNotConfigured,
)

logger = structlog.get_logger(component="gateway")


class LastTransaction(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    status: Optional[str] = None
    qr_code: Optional[str] = None
    qr_code_url: Optional[str] = None
    expires_at: Optional[str] = None


class Charge(BaseModel):
    model_config = ConfigDict(extra="ignore")

    id: Optional[str] = None
    status: Optional[str] = None
    payment_method: Optional[str] = None
    last_transaction: Optional[LastTransaction] = None


class GatewayTransaction(BaseModel):
    model_config = ConfigDict(extra="allow")

    id: str
    status: str
    code: Optional[str] = None
    charges: List[Charge] = []

    @property
    def charge_id(self) -> Optional[str]:
        return self.charges[0].id if self.charges else None

    @property
    def pix(self) -> Optional[LastTransaction]:
        if not self.charges:
            return None
        return self.charges[0].last_transaction


class PayerPhone(BaseModel):
    country_code: str = "55"
    area_code: str
    number: str


class Payer(BaseModel):
    name: str
    email: str
    document: str
    type: str = "individual"
    phone: PayerPhone

    def to_payload(self) -> dict:
        return {
            "name": self.name,
            "email": self.email,
            "document": self.document,
            "type": self.type,
            "phones": {"mobile_phone": self.phone.model_dump()},
        }


class CardDetails(BaseModel):
    number: str
    holder_name: str
    exp_month: int
    exp_year: int
    cvv: str
    billing_address: Optional[Dict[str, str]] = None


# Substrings of gateway messages mapped to stable failure codes, first match wins
_VALIDATION_CODES = [
    ("card expired", "CARD_EXPIRED"),
    ("invalid card number", "INVALID_CARD_NUMBER"),
    ("invalid cvv", "INVALID_CVV"),
    ("invalid security code", "INVALID_CVV"),
    ("insufficient funds", "INSUFFICIENT_FUNDS"),
    ("invalid cpf", "INVALID_DOCUMENT"),
    ("invalid cnpj", "INVALID_DOCUMENT"),
    ("card", "CARD_ERROR"),
]


def classify_validation_errors(details: List[str]) -> str:
    joined = " ".join(details).lower()
    for needle, code in _VALIDATION_CODES:
        if needle in joined:
            return code
    return "VALIDATION_ERROR"


def _client() -> httpx.Client:
    settings = get_settings()
    if not settings.gateway_secret_key:
        raise GatewayError("GATEWAY_SECRET_KEY is not set")
    return httpx.Client(
        base_url=settings.gateway_api_url,
        auth=(settings.gateway_secret_key, ""),
        timeout=settings.gateway_timeout_seconds,
        headers={"Content-Type": "application/json"},
    )


def _raise_for_response(response: httpx.Response) -> None:
    if response.is_success:
        return

    message = f"Gateway request failed with status {response.status_code}"
    body: Any = None
    try:
        body = response.json()
    except ValueError:
        pass

    if isinstance(body, dict):
        message = body.get("message") or message
        errors = body.get("errors")
        if 400 <= response.status_code < 500 and isinstance(errors, dict):
            details = []
            for field, messages in errors.items():
                if isinstance(messages, list):
                    details.extend(f"{field}: {item}" for item in messages)
                else:
                    details.append(f"{field}: {messages}")
            code = classify_validation_errors(details + [message])
            logger.warning("gateway_validation_error", status=response.status_code, code=code, details=details)
            raise GatewayValidationError(message, code=code, details=details)

    logger.error("gateway_request_failed", status=response.status_code, message=message)
    raise GatewayError(message)


def _request(method: str, path: str, payload: Optional[dict] = None) -> dict:
    try:
        with _client() as client:
            response = client.request(method, path, json=payload)
    except httpx.TimeoutException as e:
        logger.error("gateway_timeout", path=path, error=str(e))
        raise GatewayError("Payment gateway timed out", code="GATEWAY_TIMEOUT")
    except httpx.HTTPError as e:
        logger.error("gateway_unreachable", path=path, error=str(e))
        raise GatewayError(f"Payment gateway unreachable: {e}")

    _raise_for_response(response)

    try:
        data = response.json()
    except ValueError:
        raise GatewayError("Invalid JSON response from payment gateway")
    if not isinstance(data, dict):
        raise GatewayError("Unexpected response from payment gateway")
    return data


def create_transaction(
    amount: int,
    payer: Payer,
    payment: dict,
    item_description: str,
    metadata: dict,
    split: Optional[List[dict]] = None,
    code: Optional[str] = None,
) -> GatewayTransaction:
    payload = {
        "items": [
            {
                "amount": amount,
                "description": item_description,
                "quantity": 1,
                "code": "PROD_1",
            }
        ],
        "customer": payer.to_payload(),
        "payments": [dict(payment, split=split) if split else payment],
        "metadata": metadata,
    }
    if code:
        payload["code"] = code

    logger.info(
        "gateway_create_order",
        amount=amount,
        payment_method=payment.get("payment_method"),
        split_rules=len(split or []),
        code=code,
    )
    data = _request("POST", "/orders", payload)
    try:
        transaction = GatewayTransaction.model_validate(data)
    except ValueError:
        raise GatewayError("Payment gateway returned a transaction without id or status")

    logger.info("gateway_order_created", transaction_id=transaction.id, status=transaction.status)
    return transaction


def create_card_payment(
    amount: int,
    payer: Payer,
    card: CardDetails,
    installments: int,
    item_description: str,
    metadata: dict,
    split: Optional[List[dict]] = None,
    code: Optional[str] = None,
) -> GatewayTransaction:
    card_payload = card.model_dump(exclude_none=True)
    payment = {
        "payment_method": "credit_card",
        "credit_card": {
            "installments": installments or 1,
            "statement_descriptor": get_settings().statement_descriptor,
            "card": card_payload,
        },
    }
    return create_transaction(amount, payer, payment, item_description, metadata, split, code)


def create_pix_payment(
    amount: int,
    payer: Payer,
    item_description: str,
    metadata: dict,
    split: Optional[List[dict]] = None,
    expires_in: Optional[int] = None,
    code: Optional[str] = None,
) -> GatewayTransaction:
    payment = {
        "payment_method": "pix",
        "pix": {
            "expires_in": expires_in or get_settings().pix_expires_in_seconds,
            "additional_information": [{"name": "Produto", "value": item_description}],
        },
    }
    transaction = create_transaction(amount, payer, payment, item_description, metadata, split, code)

    pix = transaction.pix
    if pix is None or not pix.qr_code or not pix.qr_code_url:
        logger.error("pix_payload_missing", transaction_id=transaction.id)
        raise GatewayResponseIncomplete("PIX QR code was not generated")
    return transaction


def cancel_charge(charge_id: str) -> dict:
    logger.info("gateway_cancel_charge", charge_id=charge_id)
    return _request("DELETE", f"/charges/{charge_id}")


def verify_signature(payload: bytes, signature: Optional[str]) -> bool:
    """Compare the hex HMAC-SHA256 of the raw body with the signature header."""
    secret = get_settings().gateway_webhook_secret
    if not secret:
        raise WebhookNotConfigured("GATEWAY_WEBHOOK_SECRET is not set")
    if not signature:
        return False

    expected = sign_payload(payload, secret)
    if signature.startswith("sha256="):
        signature = signature[len("sha256="):]
    return hmac.compare_digest(expected.encode(), signature.strip().encode())


def sign_payload(payload: bytes, secret: str) -> str:
    return hmac.new(secret.encode(), payload, hashlib.sha256).hexdigest()

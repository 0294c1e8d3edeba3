from typing import List, Optional


class CheckoutError(Exception):
    """Terminal failure of a checkout request. Never retried locally."""

    status_code = 400
    code = "CHECKOUT_ERROR"

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if code is not None:
            self.code = code

    def to_detail(self) -> dict:
        return {"code": self.code, "message": self.message}


class InvalidProduct(CheckoutError):
    code = "INVALID_PRODUCT"


class MissingPaymentData(CheckoutError):
    code = "MISSING_PAYMENT_DATA"


class CheckoutInProgress(CheckoutError):
    status_code = 409
    code = "CHECKOUT_IN_PROGRESS"


class GatewayError(CheckoutError):
    status_code = 500
    code = "GATEWAY_ERROR"


class GatewayValidationError(GatewayError):
    """The gateway refused the request data (bad card, bad document, ...)."""

    status_code = 400
    code = "VALIDATION_ERROR"

    def __init__(self, message: str, code: Optional[str] = None, details: Optional[List[str]] = None):
        super().__init__(message, code)
        self.details = details or []

    def to_detail(self) -> dict:
        detail = super().to_detail()
        detail["details"] = self.details
        return detail


class GatewayResponseIncomplete(GatewayError):
    code = "GATEWAY_RESPONSE_INCOMPLETE"


class InvalidSignature(Exception):
    pass


class MalformedEvent(Exception):
    pass


class WebhookNotConfigured(RuntimeError):
    pass

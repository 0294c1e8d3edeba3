from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from storefront.models import PaymentMethod


class ApiModel(BaseModel):
    # camelCase on the wire, snake_case in Python
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ProductSelection(ApiModel):
    id: str
    price: int


class CustomerData(ApiModel):
    name: str
    email: str
    document: str
    phone: str


class BillingAddress(ApiModel):
    line_1: str = Field(alias="line1")
    zip_code: str
    city: str
    state: str
    country: str = "BR"


class CardData(ApiModel):
    card_number: Optional[str] = None
    card_holder: Optional[str] = None
    card_expiry: Optional[str] = None  # MM/YY
    card_cvv: Optional[str] = None
    billing_address: Optional[BillingAddress] = None


class CouponSelection(ApiModel):
    code: str
    discount_percentage: Optional[int] = None


class CheckoutRequest(ApiModel):
    product: ProductSelection
    customer: CustomerData
    payment_method: PaymentMethod
    card_data: Optional[CardData] = None
    installments: int = Field(1, ge=1, le=12)
    affiliate_ref: Optional[str] = None
    selected_bumps: List[str] = []
    coupon: Optional[CouponSelection] = None
    total_amount: Optional[int] = Field(None, gt=0)
    checkout_id: Optional[str] = None


class CheckoutResponse(ApiModel):
    success: bool = True
    order_id: str
    status: str
    qr_code: Optional[str] = None
    qr_code_url: Optional[str] = None
    expires_at: Optional[str] = None
    transaction_id: Optional[str] = None
    is_duplicate: Optional[bool] = None


class OrderStatusResponse(ApiModel):
    id: str
    status: str
    payment_method: str
    amount: int
    created_at: datetime


class CouponValidationResponse(ApiModel):
    code: str
    discount_percentage: int


class RefundResponse(ApiModel):
    success: bool = True
    order_id: str
    status: str

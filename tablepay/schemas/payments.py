from datetime import datetime
from typing import List, Literal, Optional

from tablepay.models.core import PaymentMethod, PaymentStatus
from tablepay.schemas.common import CamelModel
from tablepay.schemas.orders import OrderOut

PaymentMethodLiteral = Literal["Cash", "CardRedirect", "HostedCheckout", "WebhookProcessor"]
CurrencyLiteral = Literal["USD", "VND", "RUB", "EUR"]


class PaymentCreate(CamelModel):
    payment_method: PaymentMethodLiteral
    return_url: Optional[str] = None
    currency: Optional[CurrencyLiteral] = None
    note: Optional[str] = None
    coupon_id: Optional[str] = None
    # only honoured for staff callers settling on behalf of a guest
    guest_id: Optional[str] = None


class PaymentOut(CamelModel):
    id: str
    guest_id: Optional[str] = None
    table_number: Optional[int] = None
    amount: int
    currency: str
    payment_method: PaymentMethod
    status: PaymentStatus
    transaction_ref: str
    external_transaction_id: Optional[str] = None
    external_session_id: Optional[str] = None
    external_customer_id: Optional[str] = None
    payment_url: Optional[str] = None
    response_code: Optional[str] = None
    response_message: Optional[str] = None
    bank_code: Optional[str] = None
    card_brand: Optional[str] = None
    last4_digits: Optional[str] = None
    coupon_id: Optional[str] = None
    discount_amount: Optional[int] = None
    description: Optional[str] = None
    note: Optional[str] = None
    payment_handler_id: Optional[str] = None
    paid_at: Optional[datetime] = None
    created_at: datetime
    updated_at: datetime


class PaymentDetailOut(PaymentOut):
    orders: List[OrderOut] = []


class CreatePaymentData(CamelModel):
    payment: PaymentOut
    payment_url: Optional[str] = None
    orders: List[OrderOut] = []


class CreatePaymentRes(CamelModel):
    message: str
    data: CreatePaymentData


class DispatchIn(CamelModel):
    return_url: Optional[str] = None

from typing import Mapping, Sequence

from tablepay.errors import SignatureInvalid
from tablepay.models.core import Order, Payment, PaymentMethod
from tablepay.providers.base import ChargeResult, PaymentAdapter, ProviderStatus, VerifiedResult


class CashAdapter(PaymentAdapter):
    """Cash is collected at the table by staff; nothing external to call."""
    method = PaymentMethod.CASH
    slug = "cash"
    accepts_callbacks = False

    def build_charge(self, payment: Payment, orders: Sequence[Order], return_url: str | None) -> ChargeResult:
        return ChargeResult(immediate_result=ProviderStatus.SUCCEEDED)

    def verify_return(self, query: Mapping[str, str]) -> VerifiedResult:
        raise SignatureInvalid("cash payments have no provider callbacks")

    def verify_webhook(self, raw_body: bytes, signature: str | None) -> VerifiedResult:
        raise SignatureInvalid("cash payments have no provider callbacks")

"""Contract every payment provider adapter implements.

Adapters are plain, immutable objects built once from settings. They never
touch the database: the orchestrator hands them a ``Payment`` to charge and
receives ``VerifiedResult`` objects back from callbacks.
"""
import hashlib
import hmac
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Optional, Sequence, Tuple

from tablepay.models.core import Order, Payment, PaymentMethod


class ProviderStatus(str, Enum):
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    PENDING = "pending"


class Ack(str, Enum):
    """How a callback was handled; each adapter maps it to its wire answer."""
    OK = "ok"
    ALREADY_CONFIRMED = "already_confirmed"
    UNKNOWN_REF = "unknown_ref"
    INVALID_SIGNATURE = "invalid_signature"
    INVALID_AMOUNT = "invalid_amount"
    IGNORED = "ignored"


@dataclass(frozen=True)
class ChargeResult:
    redirect_url: Optional[str] = None
    session_id: Optional[str] = None
    external_id: Optional[str] = None
    immediate_result: Optional[ProviderStatus] = None


@dataclass(frozen=True)
class VerifiedResult:
    transaction_ref: Optional[str]
    provider_status: ProviderStatus
    signature_valid: bool
    raw: Mapping[str, Any] = field(default_factory=dict)
    amount: Optional[int] = None
    # provider metadata copied onto the Payment: external_transaction_id,
    # external_customer_id, response_code, response_message, bank_code,
    # card_brand, last4_digits
    details: Mapping[str, Any] = field(default_factory=dict)


def hmac_hex(secret: str, message: bytes | str, digest=hashlib.sha256) -> str:
    if isinstance(message, str):
        message = message.encode("utf-8")
    return hmac.new(secret.encode("utf-8"), message, digest).hexdigest()


def as_dict(value: Any) -> dict:
    """Provider payloads are untrusted; anything that is not a JSON object reads as empty."""
    return value if isinstance(value, dict) else {}


def signatures_match(expected: str, given: str | None) -> bool:
    if not given or not expected:
        return False
    return hmac.compare_digest(expected.lower(), given.strip().lower())


class PaymentAdapter(ABC):
    method: PaymentMethod
    slug: str
    # None means any currency
    currencies: Optional[Tuple[str, ...]] = None
    accepts_callbacks = True
    # request header carrying the webhook signature, if any
    signature_header: Optional[str] = None

    def default_currency(self, fallback: str) -> str:
        return self.currencies[0] if self.currencies else fallback

    def supports_currency(self, currency: str) -> bool:
        return self.currencies is None or currency in self.currencies

    @abstractmethod
    def build_charge(self, payment: Payment, orders: Sequence[Order], return_url: str | None) -> ChargeResult:
        """Create the provider-side charge. Raises ProviderUnavailable on transport failure."""

    @abstractmethod
    def verify_return(self, query: Mapping[str, str]) -> VerifiedResult:
        ...

    @abstractmethod
    def verify_webhook(self, raw_body: bytes, signature: str | None) -> VerifiedResult:
        ...

    def poll(self, payment: Payment) -> Optional[VerifiedResult]:
        """Ask the provider for the current state; None when the provider has no status API."""
        return None

    def acknowledge(self, ack: Ack) -> Tuple[int, dict]:
        if ack == Ack.INVALID_SIGNATURE:
            return 400, {"status": ack.value}
        return 200, {"status": ack.value}

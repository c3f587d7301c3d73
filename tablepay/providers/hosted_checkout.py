"""Hosted checkout through Stripe Checkout Sessions.

Every SDK call passes ``api_key`` explicitly; the module-level
``stripe.api_key`` is never set.
"""
import json
import logging
import time
from typing import Any, Mapping, Optional, Sequence

import stripe

from tablepay.errors import ProviderRejected, ProviderUnavailable
from tablepay.models.core import Order, Payment, PaymentMethod
from tablepay.providers.base import (
    Ack, ChargeResult, PaymentAdapter, ProviderStatus, VerifiedResult, as_dict,
)

logger = logging.getLogger(__name__)

SESSION_TTL_S = 30 * 60
WEBHOOK_TOLERANCE_S = 300

SUCCEEDED_EVENTS = {
    "checkout.session.async_payment_succeeded",
    "payment_intent.succeeded",
}
FAILED_EVENTS = {
    "checkout.session.expired",
    "checkout.session.async_payment_failed",
    "payment_intent.payment_failed",
}


def _field(obj: Any, key: str, default=None):
    if obj is None:
        return default
    try:
        value = obj[key]
    except (KeyError, TypeError, IndexError):
        value = getattr(obj, key, default)
    return default if value is None else value


def _transient(exc: Exception) -> bool:
    return isinstance(exc, (stripe.APIConnectionError, stripe.RateLimitError, stripe.APIError))


def session_status(session: Any) -> ProviderStatus:
    if _field(session, "payment_status") in ("paid", "no_payment_required"):
        return ProviderStatus.SUCCEEDED
    if _field(session, "status") == "expired":
        return ProviderStatus.FAILED
    return ProviderStatus.PENDING


class HostedCheckoutAdapter(PaymentAdapter):
    method = PaymentMethod.HOSTED_CHECKOUT
    slug = "hosted-checkout"
    signature_header = "Stripe-Signature"

    def __init__(self, api_key: str, webhook_secret: str, return_url: str, clock=None):
        self._api_key = api_key
        self._webhook_secret = webhook_secret
        self._return_url = return_url
        self._clock = clock

    def build_charge(self, payment: Payment, orders: Sequence[Order], return_url: str | None) -> ChargeResult:
        base = return_url or self._return_url
        metadata = {"transactionRef": payment.transaction_ref, "source": "restaurant-order-system"}
        try:
            session = stripe.checkout.Session.create(
                api_key=self._api_key,
                idempotency_key=payment.transaction_ref,
                mode="payment",
                payment_method_types=["card"],
                line_items=[{
                    "quantity": 1,
                    "price_data": {
                        "currency": payment.currency.lower(),
                        "unit_amount": int(payment.amount),
                        "product_data": {
                            "name": "Restaurant Order Payment",
                            "description": payment.description or f"{len(orders)} orders",
                        },
                    },
                }],
                metadata=metadata,
                payment_intent_data={"metadata": metadata},
                success_url=f"{base}?session_id={{CHECKOUT_SESSION_ID}}&success=true",
                cancel_url=f"{base}?session_id={{CHECKOUT_SESSION_ID}}&success=false",
                expires_at=self._expires_at(),
            )
        except stripe.StripeError as e:
            if _transient(e):
                raise ProviderUnavailable(f"Stripe unavailable: {e}") from e
            raise ProviderRejected(f"Stripe rejected checkout session: {e}") from e
        return ChargeResult(
            redirect_url=_field(session, "url"),
            session_id=_field(session, "id"),
        )

    def _expires_at(self) -> int:
        now = self._clock() if self._clock else time.time()
        return int(now) + SESSION_TTL_S

    def _retrieve(self, session_id: str):
        try:
            return stripe.checkout.Session.retrieve(session_id, api_key=self._api_key)
        except stripe.StripeError as e:
            if _transient(e):
                raise ProviderUnavailable(f"Stripe unavailable: {e}") from e
            raise ProviderRejected(f"Stripe session lookup failed: {e}") from e

    def _from_session(self, session: Any) -> VerifiedResult:
        metadata = _field(session, "metadata", {})
        return VerifiedResult(
            transaction_ref=_field(metadata, "transactionRef"),
            provider_status=session_status(session),
            # fetched over an authenticated API call
            signature_valid=True,
            raw={
                "id": _field(session, "id"),
                "status": _field(session, "status"),
                "payment_status": _field(session, "payment_status"),
            },
            amount=_field(session, "amount_total"),
            details={
                "external_transaction_id": _field(session, "payment_intent"),
                "external_customer_id": _field(session, "customer"),
            },
        )

    def verify_return(self, query: Mapping[str, str]) -> VerifiedResult:
        session_id = query.get("session_id")
        if not session_id:
            return VerifiedResult(None, ProviderStatus.FAILED, signature_valid=False, raw=dict(query))
        return self._from_session(self._retrieve(session_id))

    def poll(self, payment: Payment) -> Optional[VerifiedResult]:
        if not payment.external_session_id:
            return None
        return self._from_session(self._retrieve(payment.external_session_id))

    def verify_webhook(self, raw_body: bytes, signature: str | None) -> VerifiedResult:
        payload = raw_body.decode("utf-8", errors="replace")
        try:
            event = json.loads(payload)
        except ValueError:
            event = None
        data = event.get("data") or {} if isinstance(event, dict) else None
        obj = data.get("object") or {} if isinstance(data, dict) else None
        metadata = obj.get("metadata") or {} if isinstance(obj, dict) else None
        if not isinstance(metadata, dict):
            logger.warning("stripe webhook body is not an event object")
            return VerifiedResult(None, ProviderStatus.FAILED, signature_valid=False)
        ref = metadata.get("transactionRef") if isinstance(metadata.get("transactionRef"), str) else None
        event_type = event.get("type") if isinstance(event.get("type"), str) else None
        amount = obj.get("amount_total", obj.get("amount"))

        try:
            stripe.WebhookSignature.verify_header(payload, signature or "", self._webhook_secret,
                                                  WEBHOOK_TOLERANCE_S)
            valid = True
        except stripe.SignatureVerificationError:
            logger.warning("stripe webhook signature rejected event=%s ref=%s", event.get("id"), ref)
            valid = False

        return VerifiedResult(
            transaction_ref=ref,
            provider_status=self._event_status(event_type, obj),
            signature_valid=valid,
            raw=event,
            amount=amount if isinstance(amount, int) else None,
            details=self._event_details(event_type, obj),
        )

    @staticmethod
    def _event_status(event_type: str | None, obj: Mapping[str, Any]) -> ProviderStatus:
        if event_type == "checkout.session.completed":
            return session_status(obj)
        if event_type in SUCCEEDED_EVENTS:
            return ProviderStatus.SUCCEEDED
        if event_type in FAILED_EVENTS:
            return ProviderStatus.FAILED
        return ProviderStatus.PENDING

    @staticmethod
    def _event_details(event_type: str | None, obj: Mapping[str, Any]) -> dict:
        if event_type and event_type.startswith("payment_intent."):
            err = as_dict(obj.get("last_payment_error"))
            card = as_dict(as_dict(err.get("payment_method")).get("card"))
            return {
                "external_transaction_id": obj.get("id"),
                "external_customer_id": obj.get("customer"),
                "response_code": err.get("code") or obj.get("status"),
                "response_message": err.get("message"),
                "card_brand": card.get("brand"),
                "last4_digits": card.get("last4"),
            }
        return {
            "external_transaction_id": obj.get("payment_intent"),
            "external_customer_id": obj.get("customer"),
            "response_code": obj.get("payment_status"),
        }

    def acknowledge(self, ack: Ack):
        if ack == Ack.INVALID_SIGNATURE:
            return 400, {"error": "Webhook signature verification failed"}
        return 200, {"received": True}

"""Webhook-driven processor (YooKassa-style REST API).

Charges are created with a POST carrying an ``Idempotence-Key``; the outcome
arrives later as a JSON notification signed with HMAC-SHA256 in the
``X-Webhook-Signature`` header.
"""
import json
import logging
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping, Optional, Sequence

import httpx

from tablepay.errors import ProviderRejected, ProviderUnavailable
from tablepay.models.core import Order, Payment, PaymentMethod
from tablepay.providers.base import (
    Ack, ChargeResult, PaymentAdapter, ProviderStatus, VerifiedResult, as_dict, hmac_hex, signatures_match,
)

logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Webhook-Signature"

EVENT_STATUS = {
    "payment.succeeded": ProviderStatus.SUCCEEDED,
    "payment.canceled": ProviderStatus.FAILED,
}
OBJECT_STATUS = {
    "succeeded": ProviderStatus.SUCCEEDED,
    "canceled": ProviderStatus.FAILED,
}


def to_major(amount: int) -> str:
    return str((Decimal(int(amount)) / 100).quantize(Decimal("0.01")))


def to_minor(value: Any) -> Optional[int]:
    try:
        return int((Decimal(str(value)) * 100).to_integral_value())
    except (InvalidOperation, TypeError, ValueError):
        return None


class WebhookProcessorAdapter(PaymentAdapter):
    method = PaymentMethod.WEBHOOK_PROCESSOR
    slug = "webhook-processor"
    currencies = ("RUB",)
    signature_header = SIGNATURE_HEADER

    def __init__(self, api_url: str, shop_id: str, secret_key: str, webhook_secret: str,
                 return_url: str, timeout: float = 10.0,
                 transport: httpx.BaseTransport | None = None):
        self._api_url = api_url.rstrip("/")
        self._auth = (shop_id, secret_key)
        self._webhook_secret = webhook_secret
        self._return_url = return_url
        self._timeout = timeout
        self._transport = transport

    def _client(self) -> httpx.Client:
        return httpx.Client(base_url=self._api_url, auth=self._auth, timeout=self._timeout,
                            transport=self._transport)

    def _send(self, method: str, path: str, **kwargs) -> dict:
        try:
            with self._client() as client:
                r = client.request(method, path, **kwargs)
        except httpx.TransportError as e:
            raise ProviderUnavailable(f"Processor unreachable: {e}") from e
        if r.status_code >= 500:
            raise ProviderUnavailable(f"Processor error {r.status_code}")
        if r.status_code >= 400:
            raise ProviderRejected(f"Processor refused request ({r.status_code}): {r.text[:200]}")
        return r.json()

    def build_charge(self, payment: Payment, orders: Sequence[Order], return_url: str | None) -> ChargeResult:
        body = {
            "amount": {"value": to_major(payment.amount), "currency": payment.currency},
            "capture": True,
            "confirmation": {
                "type": "redirect",
                "return_url": f"{return_url or self._return_url}?txnRef={payment.transaction_ref}",
            },
            "description": (payment.description or f"Payment {payment.transaction_ref}")[:128],
            "metadata": {"transactionRef": payment.transaction_ref, "orderCount": len(orders)},
        }
        data = self._send("POST", "/payments", json=body,
                          headers={"Idempotence-Key": payment.transaction_ref})
        return ChargeResult(
            redirect_url=(data.get("confirmation") or {}).get("confirmation_url"),
            external_id=data.get("id"),
        )

    def _from_object(self, obj: Mapping[str, Any], status: ProviderStatus, valid: bool,
                     raw: Mapping[str, Any]) -> VerifiedResult:
        card = as_dict(as_dict(obj.get("payment_method")).get("card"))
        cancellation = as_dict(obj.get("cancellation_details"))
        ref = as_dict(obj.get("metadata")).get("transactionRef")
        return VerifiedResult(
            transaction_ref=ref if isinstance(ref, str) else None,
            provider_status=status,
            signature_valid=valid,
            raw=raw,
            amount=to_minor(as_dict(obj.get("amount")).get("value")),
            details={
                "external_transaction_id": obj.get("id"),
                "response_code": obj.get("status"),
                "response_message": cancellation.get("reason"),
                "card_brand": card.get("card_type"),
                "last4_digits": card.get("last4"),
            },
        )

    def verify_webhook(self, raw_body: bytes, signature: str | None) -> VerifiedResult:
        valid = signatures_match(hmac_hex(self._webhook_secret, raw_body), signature)
        try:
            event = json.loads(raw_body)
        except ValueError:
            event = None
        obj = event.get("object") or {} if isinstance(event, dict) else None
        metadata = obj.get("metadata") or {} if isinstance(obj, dict) else None
        if not isinstance(metadata, dict):
            logger.warning("processor webhook body is not a notification object")
            return VerifiedResult(None, ProviderStatus.FAILED, signature_valid=False)
        if not valid:
            logger.warning("processor webhook signature rejected event=%s", event.get("event"))
        event_name = event.get("event")
        status = EVENT_STATUS.get(event_name, ProviderStatus.PENDING) if isinstance(event_name, str) \
            else ProviderStatus.PENDING
        return self._from_object(obj, status, valid, event)

    def verify_return(self, query: Mapping[str, str]) -> VerifiedResult:
        # the return leg carries nothing signed; the outcome comes from poll()
        return VerifiedResult(query.get("txnRef"), ProviderStatus.PENDING, signature_valid=True,
                              raw=dict(query))

    def poll(self, payment: Payment) -> Optional[VerifiedResult]:
        if not payment.external_transaction_id:
            return None
        obj = self._send("GET", f"/payments/{payment.external_transaction_id}")
        status = OBJECT_STATUS.get(obj.get("status"), ProviderStatus.PENDING)
        result = self._from_object(obj, status, True, obj)
        if result.transaction_ref is None:
            # metadata is optional on the processor side; the id lookup already ties it to us
            return VerifiedResult(payment.transaction_ref, result.provider_status, True,
                                  result.raw, result.amount, result.details)
        return result

    def acknowledge(self, ack: Ack):
        if ack == Ack.INVALID_SIGNATURE:
            return 400, {"status": "invalid_signature"}
        return 200, {"status": "ok"}

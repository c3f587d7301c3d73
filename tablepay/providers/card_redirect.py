"""Card-network redirect gateway (VNPay protocol, v2.1.0).

The guest is redirected to a URL whose query string is signed with
HMAC-SHA512; the gateway sends the guest back to our return URL and, server
to server, posts an IPN, both signed the same way over the ``vnp_*`` fields.
"""
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Callable, Mapping, Optional, Sequence
from urllib.parse import parse_qsl, quote_plus
from zoneinfo import ZoneInfo

from tablepay.models.core import Order, Payment, PaymentMethod
from tablepay.providers.base import (
    Ack, ChargeResult, PaymentAdapter, ProviderStatus, VerifiedResult, hmac_hex, signatures_match,
)

logger = logging.getLogger(__name__)

GATEWAY_TZ = ZoneInfo("Asia/Ho_Chi_Minh")
HASH_FIELDS = ("vnp_SecureHash", "vnp_SecureHashType")
EXPIRES_AFTER = timedelta(minutes=15)

# IPN acknowledgement codes the gateway understands
RSP_CODES = {
    Ack.OK: ("00", "Confirm Success"),
    Ack.UNKNOWN_REF: ("01", "Order not found"),
    Ack.ALREADY_CONFIRMED: ("02", "Order already confirmed"),
    Ack.INVALID_AMOUNT: ("04", "Invalid amount"),
    Ack.INVALID_SIGNATURE: ("97", "Invalid Signature"),
    Ack.IGNORED: ("00", "Confirm Success"),
}


def canonical_query(params: Mapping[str, str]) -> str:
    """Sorted, form-encoded ``k=v&...`` over the vnp_* fields, excluding the hash itself."""
    items = sorted(
        (k, str(v)) for k, v in params.items()
        if k.startswith("vnp_") and k not in HASH_FIELDS and v not in (None, "")
    )
    return "&".join(f"{k}={quote_plus(v)}" for k, v in items)


def sign(secret: str, params: Mapping[str, str]) -> str:
    return hmac_hex(secret, canonical_query(params), hashlib.sha512)


class CardRedirectAdapter(PaymentAdapter):
    method = PaymentMethod.CARD_REDIRECT
    slug = "card-redirect"
    currencies = ("VND",)

    def __init__(self, tmn_code: str, secret: str, ipn_secret: str, gateway_url: str,
                 return_url: str, clock: Callable[[], datetime] | None = None):
        self._tmn_code = tmn_code
        self._secret = secret
        self._ipn_secret = ipn_secret
        self._gateway_url = gateway_url
        self._return_url = return_url
        self._clock = clock or (lambda: datetime.now(GATEWAY_TZ))

    def build_charge(self, payment: Payment, orders: Sequence[Order], return_url: str | None) -> ChargeResult:
        now = self._clock()
        params = {
            "vnp_Version": "2.1.0",
            "vnp_Command": "pay",
            "vnp_TmnCode": self._tmn_code,
            # the gateway wants the amount multiplied by 100
            "vnp_Amount": str(int(payment.amount) * 100),
            "vnp_CurrCode": payment.currency,
            "vnp_TxnRef": payment.transaction_ref,
            "vnp_OrderInfo": payment.description or f"Payment {payment.transaction_ref}",
            "vnp_OrderType": "other",
            "vnp_Locale": "vn",
            "vnp_ReturnUrl": return_url or self._return_url,
            "vnp_IpAddr": "127.0.0.1",
            "vnp_CreateDate": now.strftime("%Y%m%d%H%M%S"),
            "vnp_ExpireDate": (now + EXPIRES_AFTER).strftime("%Y%m%d%H%M%S"),
        }
        query = canonical_query(params)
        url = f"{self._gateway_url}?{query}&vnp_SecureHash={sign(self._secret, params)}"
        return ChargeResult(redirect_url=url)

    def _verify(self, params: Mapping[str, str], secret: str) -> VerifiedResult:
        given = params.get("vnp_SecureHash")
        valid = signatures_match(sign(secret, params), given)
        response_code = params.get("vnp_ResponseCode")
        txn_status = params.get("vnp_TransactionStatus", response_code)
        succeeded = response_code == "00" and txn_status == "00"
        amount: Optional[int] = None
        try:
            amount = int(params["vnp_Amount"]) // 100
        except (KeyError, ValueError):
            amount = None
        if not valid:
            logger.warning("card-redirect signature mismatch txn_ref=%s", params.get("vnp_TxnRef"))
        return VerifiedResult(
            transaction_ref=params.get("vnp_TxnRef"),
            provider_status=ProviderStatus.SUCCEEDED if succeeded else ProviderStatus.FAILED,
            signature_valid=valid,
            raw=dict(params),
            amount=amount,
            details={
                "external_transaction_id": params.get("vnp_TransactionNo"),
                "response_code": response_code,
                "response_message": params.get("vnp_OrderInfo"),
                "bank_code": params.get("vnp_BankCode"),
                "card_brand": params.get("vnp_CardType"),
            },
        )

    def verify_return(self, query: Mapping[str, str]) -> VerifiedResult:
        return self._verify(query, self._secret)

    def verify_webhook(self, raw_body: bytes, signature: str | None) -> VerifiedResult:
        # IPN carries its hash inside the form body, not in a header
        params = dict(parse_qsl(raw_body.decode("utf-8", errors="replace"), keep_blank_values=True))
        return self._verify(params, self._ipn_secret)

    def acknowledge(self, ack: Ack):
        code, message = RSP_CODES.get(ack, ("99", "Unknown error"))
        return 200, {"RspCode": code, "Message": message}

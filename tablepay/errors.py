"""Settlement error taxonomy.

Every error carries the HTTP status and a stable ``code`` so the API boundary
can render a structured body. Callback routes never surface these to a
provider as 5xx; they translate them into provider acknowledgements.
"""


class SettlementError(Exception):
    status_code = 400
    code = "SETTLEMENT_ERROR"
    retryable = False

    def __init__(self, message: str | None = None):
        super().__init__(message or self.__class__.__name__)
        self.message = message or self.__class__.__name__

    def to_dict(self) -> dict:
        body = {"message": self.message, "code": self.code}
        if self.retryable:
            body["retryable"] = True
        return body


class ValidationError(SettlementError):
    status_code = 422
    code = "VALIDATION_ERROR"


class NothingToPay(SettlementError):
    code = "NOTHING_TO_PAY"

    def __init__(self, message: str = "No orders need to be paid"):
        super().__init__(message)


class CouponInvalid(SettlementError):
    code = "COUPON_INVALID"

    def __init__(self, reason: str):
        super().__init__(reason)
        self.reason = reason

    def to_dict(self) -> dict:
        return {**super().to_dict(), "reason": self.reason}


class CouponExhausted(SettlementError):
    status_code = 409
    code = "COUPON_EXHAUSTED"

    def __init__(self, message: str = "Coupon usage limit reached"):
        super().__init__(message)


class ProviderUnavailable(SettlementError):
    status_code = 503
    code = "PROVIDER_UNAVAILABLE"
    retryable = True


class SignatureInvalid(SettlementError):
    code = "SIGNATURE_INVALID"


class UnknownTransactionRef(SettlementError):
    status_code = 404
    code = "UNKNOWN_TRANSACTION_REF"

    def __init__(self, transaction_ref: str | None):
        super().__init__(f"Unknown transaction reference: {transaction_ref!r}")
        self.transaction_ref = transaction_ref


class PaymentNotFound(SettlementError):
    status_code = 404
    code = "PAYMENT_NOT_FOUND"


class InvalidTransition(SettlementError):
    status_code = 409
    code = "INVALID_TRANSITION"


class ProviderRejected(SettlementError):
    """The provider answered but refused the charge request (bad credentials, bad params)."""
    status_code = 502
    code = "PROVIDER_REJECTED"


class PaymentInProgress(InvalidTransition):
    """The orders already belong to a Pending payment; resume or cancel that one first."""
    code = "PAYMENT_IN_PROGRESS"

    def __init__(self, payment_id: str):
        super().__init__(f"Payment {payment_id} is still pending; resume it with "
                         f"POST /payments/{payment_id}/dispatch or have staff cancel it")
        self.payment_id = payment_id

    def to_dict(self) -> dict:
        return {**super().to_dict(), "paymentId": self.payment_id}

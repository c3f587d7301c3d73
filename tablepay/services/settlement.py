"""Settlement orchestrator.

Turns a guest's unpaid orders into one Payment, dispatches it to the
provider adapter for its method, and folds provider callbacks back into
Payment, Order and coupon state.

    Initiated ──build_charge──▶ Dispatched ──callback──▶ Confirmed | Rejected

Every state change happens in a single ``session_scope`` transaction. No
transaction is open while a provider is being called.
"""
import logging
import secrets
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Callable, List, Mapping, Optional

from tablepay import repository as repo
from tablepay.db import session_scope
from tablepay.errors import (
    CouponExhausted, CouponInvalid, InvalidTransition, NothingToPay, PaymentInProgress, PaymentNotFound,
    ProviderRejected, ProviderUnavailable, UnknownTransactionRef, ValidationError,
)
from tablepay.models.common import utcnow
from tablepay.models.core import (
    Coupon, Guest, OrderStatus, Payment, PaymentMethod, PaymentStatus, TERMINAL_PAYMENT_STATUSES,
)
from tablepay.providers import adapter_for_slug
from tablepay.providers.base import Ack, ChargeResult, PaymentAdapter, ProviderStatus, VerifiedResult
from tablepay.schemas.orders import OrderOut
from tablepay.schemas.payments import PaymentCreate, PaymentOut
from tablepay.services import coupons
from tablepay.services.notifier import Notifier
from tablepay.services.snapshots import order_total, ordered_dish_ids
from tablepay.util.audit import audit

logger = logging.getLogger(__name__)

PAYMENT_EVENT = "payment"

# provider metadata a VerifiedResult may carry onto the Payment row
DETAIL_FIELDS = (
    "external_transaction_id", "external_customer_id", "response_code",
    "response_message", "bank_code", "card_brand", "last4_digits",
)


class SettlementState(str, Enum):
    INITIATED = "Initiated"
    DISPATCHED = "Dispatched"
    CONFIRMED = "Confirmed"
    REJECTED = "Rejected"


def state_of(payment: Payment) -> SettlementState:
    if payment.status == PaymentStatus.SUCCESS:
        return SettlementState.CONFIRMED
    if payment.status in TERMINAL_PAYMENT_STATUSES:
        return SettlementState.REJECTED
    if payment.payment_url or payment.external_session_id or payment.external_transaction_id:
        return SettlementState.DISPATCHED
    return SettlementState.INITIATED


@dataclass
class SettlementResult:
    payment: PaymentOut
    orders: List[OrderOut] = field(default_factory=list)
    payment_url: Optional[str] = None
    state: SettlementState = SettlementState.INITIATED
    # True when a callback hit an already-terminal payment and nothing was written
    replayed: bool = False
    ack: Ack = Ack.OK


def new_transaction_ref() -> str:
    # sortable prefix for humans reading provider dashboards, random tail for uniqueness
    return f"TP{int(time.time() * 1000)}{secrets.token_hex(6).upper()}"


def _details(verified: VerifiedResult) -> dict:
    out = {}
    for key in DETAIL_FIELDS:
        value = verified.details.get(key) if verified.details else None
        if value is None:
            continue
        value = str(value)
        if key == "last4_digits":
            value = value[-4:]
        out[key] = value
    return out


class SettlementOrchestrator:
    def __init__(self, adapters: Mapping[PaymentMethod, PaymentAdapter], notifier: Notifier,
                 session_factory=None, staff_room: str = "ManagerRoom",
                 default_currency: str = "USD", retries: int = 2, backoff_s: float = 0.2,
                 clock: Callable[[], datetime] = utcnow):
        self._adapters = adapters
        self._notifier = notifier
        self._session_factory = session_factory
        self._staff_room = staff_room
        self._default_currency = default_currency
        self._retries = max(0, retries)
        self._backoff_s = backoff_s
        self._clock = clock

    def _scope(self):
        if self._session_factory is None:
            return session_scope()
        return session_scope(self._session_factory)

    def adapter_by_slug(self, slug: str) -> Optional[PaymentAdapter]:
        return adapter_for_slug(self._adapters, slug)

    def adapter(self, method: PaymentMethod) -> PaymentAdapter:
        try:
            return self._adapters[method]
        except KeyError:
            raise ValidationError(f"Payment method {method.value} is not enabled")

    # ── Initiated ───────────────────────────────────────────────────────────
    def initiate(self, caller, req: PaymentCreate) -> SettlementResult:
        method = PaymentMethod(req.payment_method)
        adapter = self.adapter(method)
        currency = req.currency or adapter.default_currency(self._default_currency)
        if not adapter.supports_currency(currency):
            raise ValidationError(f"{method.value} does not accept {currency}")

        if caller.is_staff:
            if not req.guest_id:
                raise ValidationError("guestId is required when staff settle for a guest")
            guest_id, handler_id = req.guest_id, caller.id
        else:
            guest_id, handler_id = caller.id, None

        with self._scope() as db:
            # serializes concurrent settlements of the same guest
            if not db.get(Guest, guest_id, with_for_update=True):
                raise ValidationError("Guest not found")
            orders = repo.find_unpaid_orders(db, guest_id)
            if not orders:
                raise NothingToPay()
            open_payment = repo.find_pending_payment_for_orders(db, [o.id for o in orders])
            if open_payment:
                logger.info("settlement refused guest=%s: payment %s still pending", guest_id, open_payment.id)
                raise PaymentInProgress(open_payment.id)
            total = order_total(orders)

            discount, coupon_id = None, None
            if req.coupon_id:
                coupon = db.get(Coupon, req.coupon_id)
                if not coupon:
                    raise CouponInvalid("Coupon does not exist")
                check = coupons.validate(db, coupon.code, total, ordered_dish_ids(orders), guest_id,
                                         now=self._clock())
                if not check.valid:
                    if check.exhausted:
                        raise CouponExhausted()
                    raise CouponInvalid(check.reason)
                if not coupons.redeem_if_within_limit(db, coupon.id):
                    raise CouponExhausted()
                discount, coupon_id = check.discount_amount, coupon.id

            table = orders[0].table_number
            payment = repo.create_payment(
                db, [o.id for o in orders],
                guest_id=guest_id,
                table_number=table,
                amount=total - (discount or 0),
                currency=currency,
                payment_method=method,
                transaction_ref=new_transaction_ref(),
                coupon_id=coupon_id,
                discount_amount=discount,
                description=f"Payment for {len(orders)} orders at table {table}",
                note=req.note,
                payment_handler_id=handler_id,
            )
            audit(db, handler_id, "payment", payment.id, "create",
                  after={"amount": payment.amount, "method": method.value,
                         "transaction_ref": payment.transaction_ref, "orders": [o.id for o in orders]})
            payment_id = payment.id
            logger.info("payment created id=%s ref=%s method=%s amount=%s discount=%s",
                        payment.id, payment.transaction_ref, method.value, payment.amount, discount)

        return self._dispatch(payment_id, req.return_url, handler_id)

    # ── Dispatched ──────────────────────────────────────────────────────────
    def resume(self, payment_id: str, caller, return_url: str | None = None) -> SettlementResult:
        """Dispatch again a Pending payment whose provider call never went through."""
        with self._scope() as db:
            payment = self._visible_payment(db, payment_id, caller)
            if payment.status != PaymentStatus.PENDING:
                raise InvalidTransition(f"Payment is {payment.status.value}, not Pending")
            if state_of(payment) == SettlementState.DISPATCHED:
                return self._result(db, payment)
        return self._dispatch(payment_id, return_url, caller.id if caller.is_staff else None)

    def _dispatch(self, payment_id: str, return_url: str | None, handler_id: str | None) -> SettlementResult:
        with self._scope() as db:
            payment = repo.find_payment(db, payment_id)
            orders = repo.find_orders_for_payment(db, payment_id)
        adapter = self.adapter(payment.payment_method)

        try:
            charge = self._charge(adapter, payment, orders, return_url)
        except ProviderRejected as e:
            self._fail_dispatch(payment, str(e))
            raise

        if charge.immediate_result is not None:
            verified = VerifiedResult(payment.transaction_ref, charge.immediate_result,
                                      signature_valid=True, amount=payment.amount)
            return self.confirm(payment.payment_method, verified, handler_id=handler_id)

        fields = {
            "payment_url": charge.redirect_url,
            "external_session_id": charge.session_id,
            "external_transaction_id": charge.external_id,
        }
        with self._scope() as db:
            repo.update_payment_fields(db, payment_id, **{k: v for k, v in fields.items() if v is not None})
            payment = repo.lock_payment_by_ref(db, payment.transaction_ref)
            logger.info("payment dispatched id=%s ref=%s url=%s", payment.id, payment.transaction_ref,
                        bool(charge.redirect_url))
            return self._result(db, payment)

    def _charge(self, adapter: PaymentAdapter, payment: Payment, orders, return_url) -> ChargeResult:
        last: ProviderUnavailable | None = None
        for attempt in range(self._retries + 1):
            try:
                return adapter.build_charge(payment, orders, return_url)
            except ProviderUnavailable as e:
                last = e
                logger.warning("build_charge failed ref=%s attempt=%d/%d: %s", payment.transaction_ref,
                               attempt + 1, self._retries + 1, e)
                if attempt < self._retries and self._backoff_s:
                    time.sleep(self._backoff_s * (2 ** attempt))
        # payment stays Pending; POST /payments/{id}/dispatch picks it up again
        raise last

    def _fail_dispatch(self, payment: Payment, message: str) -> None:
        with self._scope() as db:
            if repo.update_payment_status(db, payment.id, PaymentStatus.FAILED,
                                          response_message=message[:500]):
                if payment.coupon_id:
                    coupons.release(db, payment.coupon_id)
                audit(db, None, "payment", payment.id, "dispatch_rejected", after={"message": message})
        logger.error("provider refused charge ref=%s: %s", payment.transaction_ref, message)

    # ── Confirmed / Rejected ────────────────────────────────────────────────
    def handle_return(self, adapter: PaymentAdapter, query: Mapping[str, str]) -> SettlementResult:
        verified = adapter.verify_return(query)
        if verified.signature_valid and verified.provider_status == ProviderStatus.PENDING \
                and verified.transaction_ref:
            with self._scope() as db:
                payment = repo.find_payment_by_ref(db, verified.transaction_ref)
            if payment and payment.status == PaymentStatus.PENDING:
                polled = adapter.poll(payment)
                if polled is not None:
                    verified = polled
        return self.confirm(adapter.method, verified)

    def handle_webhook(self, adapter: PaymentAdapter, raw_body: bytes, signature: str | None) -> SettlementResult:
        return self.confirm(adapter.method, adapter.verify_webhook(raw_body, signature))

    def confirm(self, method: PaymentMethod, verified: VerifiedResult,
                handler_id: str | None = None) -> SettlementResult:
        ref = verified.transaction_ref
        if not ref:
            logger.warning("callback without transaction ref method=%s", method.value)
            raise UnknownTransactionRef(ref)

        with self._scope() as db:
            payment = repo.lock_payment_by_ref(db, ref)
            if payment is None or payment.payment_method != method:
                logger.warning("callback for unknown transaction ref=%s method=%s", ref, method.value)
                raise UnknownTransactionRef(ref)

            if payment.status in TERMINAL_PAYMENT_STATUSES:
                logger.info("callback replay ref=%s status=%s", ref, payment.status.value)
                return self._result(db, payment, replayed=True, ack=Ack.ALREADY_CONFIRMED)

            fields = _details(verified)
            if not verified.signature_valid:
                new_status, ack = PaymentStatus.REJECTED, Ack.INVALID_SIGNATURE
                fields["response_message"] = "Signature verification failed"
            elif verified.amount is not None and int(verified.amount) != int(payment.amount):
                new_status, ack = PaymentStatus.REJECTED, Ack.INVALID_AMOUNT
                fields["response_message"] = f"Amount mismatch: expected {payment.amount}, got {verified.amount}"
            elif verified.provider_status == ProviderStatus.SUCCEEDED:
                new_status, ack = PaymentStatus.SUCCESS, Ack.OK
                fields["paid_at"] = self._clock()
            elif verified.provider_status == ProviderStatus.FAILED:
                new_status, ack = PaymentStatus.FAILED, Ack.OK
            else:
                return self._result(db, payment, ack=Ack.IGNORED)

            if handler_id:
                fields["payment_handler_id"] = handler_id
            if not repo.update_payment_status(db, payment.id, new_status, **fields):
                # lost the race to a concurrent callback
                payment = repo.lock_payment_by_ref(db, ref)
                return self._result(db, payment, replayed=True, ack=Ack.ALREADY_CONFIRMED)

            order_ids = repo.find_order_ids_for_payment(db, payment.id)
            if new_status == PaymentStatus.SUCCESS:
                moved = repo.update_orders_status(db, order_ids, OrderStatus.PAID, payment_id=payment.id,
                                                  order_handler_id=handler_id)
                if moved != len(order_ids):
                    logger.warning("payment %s settled %d of %d orders; others were no longer payable",
                                   payment.id, moved, len(order_ids))
                if payment.coupon_id:
                    coupons.record_usage(db, payment.coupon_id, payment.guest_id, payment.id,
                                         payment.discount_amount or 0)
            elif payment.coupon_id:
                coupons.release(db, payment.coupon_id)

            audit(db, handler_id, "payment", payment.id, new_status.value.lower(),
                  before={"status": PaymentStatus.PENDING.value},
                  after={"status": new_status.value, **{k: v for k, v in fields.items() if k != "paid_at"}})
            payment = repo.lock_payment_by_ref(db, ref)
            result = self._result(db, payment, ack=ack)
            socket_id = repo.find_socket_id(db, payment.guest_id)

        log = logger.info if new_status == PaymentStatus.SUCCESS else logger.warning
        log("payment %s ref=%s -> %s", payment.id, ref, new_status.value)
        self._publish(result, socket_id)
        return result

    # ── Operator actions ────────────────────────────────────────────────────
    def cancel(self, payment_id: str, staff) -> SettlementResult:
        with self._scope() as db:
            payment = repo.find_payment(db, payment_id)
            if not payment:
                raise PaymentNotFound("Payment not found")
            payment = repo.lock_payment_by_ref(db, payment.transaction_ref)
            if payment.status != PaymentStatus.PENDING or not repo.update_payment_status(
                    db, payment.id, PaymentStatus.CANCELLED, payment_handler_id=staff.id):
                raise InvalidTransition(f"Payment is {payment.status.value}, not Pending")
            if payment.coupon_id:
                coupons.release(db, payment.coupon_id)
            audit(db, staff.id, "payment", payment.id, "cancel",
                  before={"status": PaymentStatus.PENDING.value},
                  after={"status": PaymentStatus.CANCELLED.value})
            payment = repo.lock_payment_by_ref(db, payment.transaction_ref)
            result = self._result(db, payment)
            socket_id = repo.find_socket_id(db, payment.guest_id)
        logger.info("payment %s cancelled by %s", payment_id, staff.id)
        self._publish(result, socket_id)
        return result

    # ── Queries ─────────────────────────────────────────────────────────────
    def list_payments(self, from_date=None, to_date=None, status=None, method=None) -> List[PaymentOut]:
        with self._scope() as db:
            rows = repo.list_payments(db, from_date, to_date, status, method)
            return [PaymentOut.model_validate(p) for p in rows]

    def guest_payments(self, guest_id: str) -> List[PaymentOut]:
        with self._scope() as db:
            return [PaymentOut.model_validate(p) for p in repo.list_payments(db, guest_id=guest_id)]

    def get_payment(self, payment_id: str, caller) -> SettlementResult:
        with self._scope() as db:
            return self._result(db, self._visible_payment(db, payment_id, caller))

    def _visible_payment(self, db, payment_id: str, caller) -> Payment:
        payment = repo.find_payment(db, payment_id)
        # guests only ever see their own payments
        if not payment or (not caller.is_staff and payment.guest_id != caller.id):
            raise PaymentNotFound("Payment not found")
        return payment

    # ── helpers ─────────────────────────────────────────────────────────────
    def _result(self, db, payment: Payment, replayed: bool = False, ack: Ack = Ack.OK) -> SettlementResult:
        orders = repo.find_orders_for_payment(db, payment.id)
        return SettlementResult(
            payment=PaymentOut.model_validate(payment),
            orders=[OrderOut.model_validate(o) for o in orders],
            payment_url=payment.payment_url,
            state=state_of(payment),
            replayed=replayed,
            ack=ack,
        )

    def _publish(self, result: SettlementResult, socket_id: str | None) -> None:
        payload = [o.model_dump(mode="json", by_alias=True) for o in result.orders]
        if socket_id:
            self._notifier.publish(PAYMENT_EVENT, socket_id, payload)
        self._notifier.publish(PAYMENT_EVENT, self._staff_room, payload)

# conftest.py
import os
import tempfile

# settings are read at import time; point them at a throwaway database first
_TMP = tempfile.mkdtemp(prefix="tablepay-tests-")
os.environ["DB_URL"] = f"sqlite:///{os.path.join(_TMP, 'tablepay.db')}"
os.environ.setdefault("APP_SECRET", "test-secret-key")
os.environ.pop("REDIS_URL", None)

import json
from datetime import datetime, timedelta, timezone
from types import MappingProxyType

import httpx
import pytest
from fastapi.testclient import TestClient

from tablepay.db import Base, engine, session_scope
from tablepay.errors import ProviderUnavailable
from tablepay.main import app
from tablepay.models.core import (
    Coupon, CouponDiscountType, CouponStatus, Dish, DishStatus, Guest, GuestSocket, PaymentMethod,
)
from tablepay.providers.base import ChargeResult, PaymentAdapter, ProviderStatus, VerifiedResult
from tablepay.providers.card_redirect import GATEWAY_TZ, CardRedirectAdapter
from tablepay.providers.cash import CashAdapter
from tablepay.providers.webhook_processor import WebhookProcessorAdapter
from tablepay.schemas.orders import OrderLineIn
from tablepay.services.settlement import SettlementOrchestrator
from tablepay.services.snapshots import place_orders
from tablepay.util.security import create_token

CARD_SECRET = "card-return-secret"
CARD_IPN_SECRET = "card-ipn-secret"
PROCESSOR_WEBHOOK_SECRET = "processor-webhook-secret"


class RecordingNotifier:
    def __init__(self):
        self.events = []

    def publish(self, event, room, payload):
        self.events.append((event, room, payload))


class FakeCheckout(PaymentAdapter):
    """Stands in for the hosted checkout; callbacks are JSON signed with the literal 'good'."""
    method = PaymentMethod.HOSTED_CHECKOUT
    slug = "hosted-checkout"
    signature_header = "X-Test-Signature"

    def __init__(self):
        self.calls = 0
        self.fail_times = 0

    def build_charge(self, payment, orders, return_url):
        self.calls += 1
        if self.fail_times:
            self.fail_times -= 1
            raise ProviderUnavailable("checkout timed out")
        return ChargeResult(redirect_url=f"https://checkout.test/{payment.transaction_ref}",
                            session_id=f"cs_{payment.transaction_ref}")

    def _result(self, data, valid):
        return VerifiedResult(
            transaction_ref=data.get("ref"),
            provider_status=ProviderStatus(data.get("status", "pending")),
            signature_valid=valid,
            raw=dict(data),
            amount=int(data["amount"]) if data.get("amount") is not None else None,
            details={"external_transaction_id": data.get("pi"), "last4_digits": data.get("last4")},
        )

    def verify_return(self, query):
        return self._result(query, query.get("sig") == "good")

    def verify_webhook(self, raw_body, signature):
        return self._result(json.loads(raw_body), signature == "good")


class ProcessorStub:
    """In-memory processor API behind an httpx.MockTransport."""

    def __init__(self):
        self.payments = {}
        self.requests = []
        self.fail_with = None
        self.transport = httpx.MockTransport(self.handle)

    def handle(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with:
            return httpx.Response(self.fail_with, json={"type": "error", "code": "stub_failure"})
        if request.method == "POST" and request.url.path.endswith("/payments"):
            body = json.loads(request.content)
            pid = f"proc-{len(self.payments) + 1}"
            obj = {
                "id": pid,
                "status": "pending",
                "amount": body["amount"],
                "metadata": body["metadata"],
                "confirmation": {"type": "redirect", "confirmation_url": f"https://processor.test/pay/{pid}"},
            }
            self.payments[pid] = obj
            return httpx.Response(200, json=obj)
        pid = request.url.path.rsplit("/", 1)[-1]
        if request.method == "GET" and pid in self.payments:
            return httpx.Response(200, json=self.payments[pid])
        return httpx.Response(404, json={"type": "error", "code": "not_found"})

    def settle(self, pid, status="succeeded", last4="4242"):
        self.payments[pid]["status"] = status
        self.payments[pid]["payment_method"] = {"type": "bank_card", "card": {"last4": last4, "card_type": "Visa"}}


class Seeder:
    def guest(self, name="Guest", table_number=5):
        with session_scope() as s:
            g = Guest(name=name, table_number=table_number)
            s.add(g)
            s.flush()
            return g.id

    def dish(self, name="Pho", price=100, status=DishStatus.AVAILABLE):
        with session_scope() as s:
            d = Dish(name=name, price=price, status=status)
            s.add(d)
            s.flush()
            return d.id

    def orders(self, guest_id, lines):
        """lines: [(dish_id, quantity), ...]"""
        with session_scope() as s:
            created = place_orders(s, s.get(Guest, guest_id),
                                   [OrderLineIn(dish_id=d, quantity=q) for d, q in lines])
            return [o.id for o in created]

    def unpaid(self, guest_id, prices):
        """Dishes at the given prices, one order of each."""
        return self.orders(guest_id, [(self.dish(name=f"Dish {p}", price=p), 1) for p in prices])

    def coupon(self, code="SAVE10", discount_type=CouponDiscountType.FIXED, discount_value=50, **kw):
        now = datetime.now(timezone.utc)
        fields = dict(start_date=now - timedelta(days=1), end_date=now + timedelta(days=30),
                      status=CouponStatus.ACTIVE)
        fields.update(kw)
        if isinstance(fields.get("applicable_dish_ids"), list):
            fields["applicable_dish_ids"] = json.dumps(fields["applicable_dish_ids"])
        with session_scope() as s:
            c = Coupon(code=code, discount_type=discount_type, discount_value=discount_value, **fields)
            s.add(c)
            s.flush()
            return c.id

    def socket(self, guest_id, socket_id):
        with session_scope() as s:
            s.add(GuestSocket(guest_id=guest_id, socket_id=socket_id))


@pytest.fixture(autouse=True)
def schema():
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    yield


@pytest.fixture
def seed():
    return Seeder()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def checkout():
    return FakeCheckout()


@pytest.fixture
def processor():
    return ProcessorStub()


@pytest.fixture
def card_adapter():
    return CardRedirectAdapter(
        tmn_code="TESTTMN1",
        secret=CARD_SECRET,
        ipn_secret=CARD_IPN_SECRET,
        gateway_url="https://gateway.test/paymentv2/vpcpay.html",
        return_url="http://testserver/payments/card-redirect/return",
        clock=lambda: datetime(2025, 1, 1, 12, 0, tzinfo=GATEWAY_TZ),
    )


@pytest.fixture
def processor_adapter(processor):
    return WebhookProcessorAdapter(
        api_url="https://processor.test/v3",
        shop_id="shop-1",
        secret_key="sk-test",
        webhook_secret=PROCESSOR_WEBHOOK_SECRET,
        return_url="http://testserver/payments/webhook-processor/return",
        transport=processor.transport,
    )


@pytest.fixture
def registry(card_adapter, checkout, processor_adapter):
    return MappingProxyType({
        PaymentMethod.CASH: CashAdapter(),
        PaymentMethod.CARD_REDIRECT: card_adapter,
        PaymentMethod.HOSTED_CHECKOUT: checkout,
        PaymentMethod.WEBHOOK_PROCESSOR: processor_adapter,
    })


@pytest.fixture
def orch(registry, notifier):
    return SettlementOrchestrator(registry, notifier, retries=2, backoff_s=0)


@pytest.fixture
def client(orch, notifier):
    with TestClient(app) as c:
        app.state.orchestrator = orch
        app.state.notifier = notifier
        yield c


@pytest.fixture
def auth():
    def _headers(sub, role="Guest", table_number=None):
        return {"Authorization": f"Bearer {create_token(sub, role, table_number)}"}
    return _headers


@pytest.fixture
def keys():
    return {
        "card": CARD_SECRET,
        "card_ipn": CARD_IPN_SECRET,
        "processor_webhook": PROCESSOR_WEBHOOK_SECRET,
    }

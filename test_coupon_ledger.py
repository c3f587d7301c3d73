# test_coupon_ledger.py
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from tablepay.db import session_scope
from tablepay.deps import Caller
from tablepay.errors import CouponExhausted
from tablepay.models.core import (
    Coupon, CouponDiscountType, CouponStatus, CouponUsage, Payment, PaymentStatus,
)
from tablepay.schemas.payments import PaymentCreate
from tablepay.services import coupons


def _validate(code, total, **kw):
    with session_scope() as s:
        return coupons.validate(s, code, total, **kw)


def test_fixed_discount_is_capped_at_total(seed):
    seed.coupon(code="BIG", discount_value=900)
    res = _validate("BIG", 500)
    assert res.valid
    assert res.discount_amount == 500
    assert res.final_amount == 0


def test_percentage_discount_rounds_half_up(seed):
    seed.coupon(code="TEN", discount_type=CouponDiscountType.PERCENTAGE, discount_value=10)
    res = _validate("TEN", 125)
    assert res.discount_amount == 13
    assert res.final_amount == 112


def test_discount_and_final_always_add_up_to_total(seed):
    seed.coupon(code="FIX", discount_value=75)
    seed.coupon(code="PCT", discount_type=CouponDiscountType.PERCENTAGE, discount_value=33)
    for total in (0, 1, 74, 75, 76, 333, 999, 10_001):
        for code in ("FIX", "PCT"):
            res = _validate(code, total)
            assert res.valid
            assert res.discount_amount + res.final_amount == total
            assert 0 <= res.discount_amount <= total


def test_code_lookup_is_case_and_space_insensitive(seed):
    seed.coupon(code="SAVE10")
    assert _validate("  save10 ", 500).valid


@pytest.mark.parametrize("kw,reason", [
    ({"status": CouponStatus.INACTIVE}, "not active"),
    ({"start_date": datetime.now(timezone.utc) + timedelta(days=1),
      "end_date": datetime.now(timezone.utc) + timedelta(days=2)}, "not yet valid"),
    ({"start_date": datetime.now(timezone.utc) - timedelta(days=5),
      "end_date": datetime.now(timezone.utc) - timedelta(days=1)}, "expired"),
    ({"min_order_amount": 1000}, "below minimum"),
    ({"max_total_usage": 2, "usage_count": 2}, "limit reached"),
])
def test_validation_failures_carry_a_reason(seed, kw, reason):
    seed.coupon(code="NOPE", **kw)
    res = _validate("NOPE", 500)
    assert not res.valid
    assert reason in res.reason


def test_unknown_code(seed):
    res = _validate("MISSING", 500)
    assert not res.valid
    assert res.coupon is None


def test_dish_allow_list_needs_one_matching_dish(seed):
    pho = seed.dish(name="Pho", price=100)
    tea = seed.dish(name="Tea", price=20)
    seed.coupon(code="PHO", applicable_dish_ids=[pho])
    assert _validate("PHO", 120, dish_ids=[pho, tea]).valid
    res = _validate("PHO", 20, dish_ids=[tea])
    assert not res.valid
    assert "ordered dishes" in res.reason


def test_per_guest_limit_counts_settled_and_pending_uses(seed, orch):
    guest = seed.guest()
    cid = seed.coupon(code="ONCE", max_usage_per_guest=1)
    seed.unpaid(guest, [300])
    orch.initiate(Caller(guest, "Guest"), PaymentCreate(payment_method="HostedCheckout", coupon_id=cid))

    # the pending checkout already holds this guest's single use
    res = _validate("ONCE", 300, guest_id=guest)
    assert not res.valid
    assert "maximum" in res.reason
    assert _validate("ONCE", 300, guest_id=seed.guest(name="Other")).valid


def test_redeem_stops_at_max_total_usage(seed):
    cid = seed.coupon(max_total_usage=2)
    outcomes = []
    for _ in range(4):
        with session_scope() as s:
            outcomes.append(coupons.redeem_if_within_limit(s, cid))
    assert outcomes == [True, True, False, False]
    with session_scope() as s:
        assert s.get(Coupon, cid).usage_count == 2


def test_redeem_refuses_inactive_coupon(seed):
    cid = seed.coupon(status=CouponStatus.INACTIVE)
    with session_scope() as s:
        assert coupons.redeem_if_within_limit(s, cid) is False


def test_release_never_goes_below_zero(seed):
    cid = seed.coupon(max_total_usage=1)
    with session_scope() as s:
        assert coupons.redeem_if_within_limit(s, cid)
    with session_scope() as s:
        assert coupons.release(s, cid)
    with session_scope() as s:
        assert coupons.release(s, cid) is False
    with session_scope() as s:
        assert s.get(Coupon, cid).usage_count == 0


def test_concurrent_settlements_never_exceed_coupon_limit(seed, orch):
    limit = 3
    cid = seed.coupon(code="RUSH", max_total_usage=limit)
    guests = [seed.guest(name=f"G{i}", table_number=i) for i in range(10)]
    for g in guests:
        seed.unpaid(g, [200])

    def settle(guest_id):
        try:
            orch.initiate(Caller(guest_id, "Guest"), PaymentCreate(payment_method="Cash", coupon_id=cid))
            return "ok"
        except CouponExhausted:
            return "exhausted"

    with ThreadPoolExecutor(max_workers=6) as pool:
        outcomes = list(pool.map(settle, guests))

    assert outcomes.count("ok") == limit
    assert outcomes.count("exhausted") == len(guests) - limit
    with session_scope() as s:
        assert s.get(Coupon, cid).usage_count == limit
        assert s.scalar(select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == cid)) == limit
        assert s.scalar(
            select(func.count(Payment.id))
            .where(Payment.coupon_id == cid, Payment.status == PaymentStatus.SUCCESS)
        ) == limit

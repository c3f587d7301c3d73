"""Coupon ledger: validation, race-safe redemption and usage bookkeeping.

The usage counter is only ever moved by single conditional UPDATE statements,
never by read-modify-write, so ``usage_count <= max_total_usage`` holds under
any number of concurrent settlements.
"""
import json
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal, ROUND_HALF_UP
from typing import Iterable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from tablepay.models.core import (
    Coupon, CouponDiscountType, CouponStatus, CouponUsage, Payment, PaymentStatus,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CouponValidation:
    valid: bool
    coupon: Optional[Coupon] = None
    discount_amount: int = 0
    final_amount: int = 0
    reason: Optional[str] = None
    # the global allowance is used up; settlement reports CouponExhausted
    exhausted: bool = False


def normalize_code(code: str) -> str:
    return (code or "").strip().upper()


def aware(dt: datetime) -> datetime:
    # SQLite hands timezone-aware columns back naive
    return dt if dt.tzinfo else dt.replace(tzinfo=timezone.utc)


def allowed_dish_ids(coupon: Coupon) -> list[str]:
    if not coupon.applicable_dish_ids:
        return []
    try:
        ids = json.loads(coupon.applicable_dish_ids)
    except ValueError:
        logger.warning("coupon %s has malformed applicable_dish_ids, ignoring restriction", coupon.id)
        return []
    return [str(i) for i in ids] if isinstance(ids, list) else []


def compute_discount(coupon: Coupon, order_total: int) -> int:
    if coupon.discount_type == CouponDiscountType.PERCENTAGE:
        raw = Decimal(order_total) * Decimal(coupon.discount_value) / Decimal(100)
        discount = int(raw.quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    else:
        discount = int(coupon.discount_value)
    return max(0, min(discount, order_total))


def guest_usage_count(db: Session, coupon_id: str, guest_id: str) -> int:
    """Settled uses plus in-flight Pending payments already holding a slot."""
    used = db.scalar(
        select(func.count(CouponUsage.id))
        .where(CouponUsage.coupon_id == coupon_id, CouponUsage.guest_id == guest_id)
    ) or 0
    pending = db.scalar(
        select(func.count(Payment.id))
        .where(Payment.coupon_id == coupon_id, Payment.guest_id == guest_id,
               Payment.status == PaymentStatus.PENDING)
    ) or 0
    return int(used) + int(pending)


def find_by_code(db: Session, code: str) -> Optional[Coupon]:
    return db.scalars(select(Coupon).where(Coupon.code == normalize_code(code))).first()


def validate(db: Session, code: str, order_total: int, dish_ids: Iterable[str] | None = None,
             guest_id: str | None = None, now: datetime | None = None) -> CouponValidation:
    """Check a coupon against an order total without consuming it."""
    coupon = find_by_code(db, code)
    if not coupon:
        return CouponValidation(False, reason="Coupon does not exist")
    if coupon.status != CouponStatus.ACTIVE:
        return CouponValidation(False, coupon, reason="Coupon is not active")

    now = now or datetime.now(timezone.utc)
    if now < aware(coupon.start_date):
        return CouponValidation(False, coupon, reason="Coupon is not yet valid")
    if now > aware(coupon.end_date):
        return CouponValidation(False, coupon, reason="Coupon has expired")

    if coupon.min_order_amount is not None and order_total < coupon.min_order_amount:
        return CouponValidation(False, coupon, reason=f"Order total below minimum of {coupon.min_order_amount}")

    allow = allowed_dish_ids(coupon)
    if allow:
        ordered = {str(d) for d in (dish_ids or [])}
        # ANY policy: one eligible dish in the order is enough
        if not ordered.intersection(allow):
            return CouponValidation(False, coupon, reason="Coupon does not apply to the ordered dishes")

    if coupon.max_usage_per_guest is not None and guest_id is not None:
        if guest_usage_count(db, coupon.id, guest_id) >= coupon.max_usage_per_guest:
            return CouponValidation(False, coupon, reason="Coupon already used the maximum number of times")

    if coupon.max_total_usage is not None and coupon.usage_count >= coupon.max_total_usage:
        return CouponValidation(False, coupon, reason="Coupon usage limit reached", exhausted=True)

    discount = compute_discount(coupon, order_total)
    note = None
    if coupon.max_usage_per_guest is not None and guest_id is None:
        note = f"Per-guest limit of {coupon.max_usage_per_guest} not checked: no guest given"
    return CouponValidation(True, coupon, discount_amount=discount, final_amount=order_total - discount,
                            reason=note)


def redeem_if_within_limit(db: Session, coupon_id: str) -> bool:
    """Consume one unit of allowance. Must run inside the payment-creation transaction."""
    res = db.execute(
        update(Coupon)
        .where(
            Coupon.id == coupon_id,
            Coupon.status == CouponStatus.ACTIVE,
            (Coupon.max_total_usage.is_(None)) | (Coupon.usage_count < Coupon.max_total_usage),
        )
        .values(usage_count=Coupon.usage_count + 1)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def release(db: Session, coupon_id: str) -> bool:
    """Give back a slot taken by a payment that will never succeed."""
    res = db.execute(
        update(Coupon)
        .where(Coupon.id == coupon_id, Coupon.usage_count > 0)
        .values(usage_count=Coupon.usage_count - 1)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        logger.warning("coupon %s release found no slot to give back", coupon_id)
        return False
    return True


def record_usage(db: Session, coupon_id: str, guest_id: str | None, payment_id: str,
                 discount_amount: int) -> CouponUsage:
    # written even for a zero discount so per-guest limits see it
    usage = CouponUsage(coupon_id=coupon_id, guest_id=guest_id, payment_id=payment_id,
                        discount_amount=discount_amount or 0)
    db.add(usage)
    return usage


def usage_total(db: Session, coupon_id: str) -> int:
    return int(db.scalar(select(func.count(CouponUsage.id)).where(CouponUsage.coupon_id == coupon_id)) or 0)

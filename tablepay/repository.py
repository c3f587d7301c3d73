"""Persistence operations the settlement engine relies on.

Every function takes the caller's ``Session``; the caller owns the
transaction boundary (see ``tablepay.db.session_scope``).
"""
from datetime import datetime
from typing import Iterable, List, Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from tablepay.models.core import (
    GuestSocket, Order, OrderStatus, PAYABLE_ORDER_STATUSES,
    Payment, PaymentMethod, PaymentOrder, PaymentStatus,
)


def find_unpaid_orders(db: Session, guest_id: str) -> List[Order]:
    q = (
        select(Order)
        .where(Order.guest_id == guest_id, Order.status.in_(PAYABLE_ORDER_STATUSES))
        .order_by(Order.created_at, Order.id)
    )
    return list(db.scalars(q).unique().all())


def create_payment(db: Session, order_ids: Iterable[str], **fields) -> Payment:
    p = Payment(status=PaymentStatus.PENDING, **fields)
    db.add(p)
    db.flush()
    for oid in order_ids:
        db.add(PaymentOrder(payment_id=p.id, order_id=oid))
    db.flush()
    return p


def find_pending_payment_for_orders(db: Session, order_ids: Iterable[str]) -> Optional[Payment]:
    """A Pending payment that already covers any of these orders."""
    q = (
        select(Payment)
        .join(PaymentOrder, PaymentOrder.payment_id == Payment.id)
        .where(PaymentOrder.order_id.in_(list(order_ids)), Payment.status == PaymentStatus.PENDING)
        .order_by(Payment.created_at.desc())
    )
    return db.scalars(q).first()


def find_payment(db: Session, payment_id: str) -> Optional[Payment]:
    return db.get(Payment, payment_id)


def find_payment_by_ref(db: Session, transaction_ref: str) -> Optional[Payment]:
    return db.scalars(select(Payment).where(Payment.transaction_ref == transaction_ref)).first()


def lock_payment_by_ref(db: Session, transaction_ref: str) -> Optional[Payment]:
    """Row-lock the payment for the rest of the transaction (no-op on SQLite)."""
    q = (
        select(Payment)
        .where(Payment.transaction_ref == transaction_ref)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return db.scalars(q).first()


def update_payment_status(db: Session, payment_id: str, new_status: PaymentStatus, **fields) -> bool:
    """Move a Pending payment to ``new_status``. False when it already left Pending."""
    res = db.execute(
        update(Payment)
        .where(Payment.id == payment_id, Payment.status == PaymentStatus.PENDING)
        .values(status=new_status, **fields)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount == 1


def update_payment_fields(db: Session, payment_id: str, **fields) -> None:
    db.execute(
        update(Payment)
        .where(Payment.id == payment_id)
        .values(**fields)
        .execution_options(synchronize_session=False)
    )


def update_orders_status(db: Session, order_ids: List[str], status: OrderStatus,
                         payment_id: str | None = None, order_handler_id: str | None = None) -> int:
    """Only orders that are still payable move; Paid orders are never touched again."""
    if not order_ids:
        return 0
    values = {"status": status}
    if payment_id is not None:
        values["payment_id"] = payment_id
    if order_handler_id is not None:
        values["order_handler_id"] = order_handler_id
    res = db.execute(
        update(Order)
        .where(Order.id.in_(order_ids), Order.status.in_(PAYABLE_ORDER_STATUSES))
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    return res.rowcount


def find_order_ids_for_payment(db: Session, payment_id: str) -> List[str]:
    return list(db.scalars(select(PaymentOrder.order_id).where(PaymentOrder.payment_id == payment_id)).all())


def find_orders_for_payment(db: Session, payment_id: str) -> List[Order]:
    q = (
        select(Order)
        .join(PaymentOrder, PaymentOrder.order_id == Order.id)
        .where(PaymentOrder.payment_id == payment_id)
        .order_by(Order.created_at, Order.id)
        .execution_options(populate_existing=True)
    )
    return list(db.scalars(q).unique().all())


def find_socket_id(db: Session, guest_id: str | None) -> Optional[str]:
    if not guest_id:
        return None
    row = db.get(GuestSocket, guest_id)
    return row.socket_id if row else None


def list_payments(db: Session, from_date: datetime | None = None, to_date: datetime | None = None,
                  status: PaymentStatus | None = None, method: PaymentMethod | None = None,
                  guest_id: str | None = None) -> List[Payment]:
    q = select(Payment)
    if from_date:
        q = q.where(Payment.created_at >= from_date)
    if to_date:
        q = q.where(Payment.created_at <= to_date)
    if status:
        q = q.where(Payment.status == status)
    if method:
        q = q.where(Payment.payment_method == method)
    if guest_id:
        q = q.where(Payment.guest_id == guest_id)
    return list(db.scalars(q.order_by(Payment.created_at.desc(), Payment.id)).all())

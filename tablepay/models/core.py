from sqlalchemy import (
    String, ForeignKey, Enum, Text, DateTime, Integer, UniqueConstraint
)
from sqlalchemy.orm import Mapped, mapped_column, relationship
from enum import Enum as PyEnum
from datetime import datetime
from tablepay.db import Base
from tablepay.models.common import IdMixin, TSMMixin

# ── Enums ───────────────────────────────────────────────────────────────────
class DishStatus(PyEnum):
    AVAILABLE = "Available"
    UNAVAILABLE = "Unavailable"
    HIDDEN = "Hidden"

class OrderStatus(PyEnum):
    PENDING = "Pending"
    PROCESSING = "Processing"
    DELIVERED = "Delivered"
    PAID = "Paid"
    REJECTED = "Rejected"

# orders a guest still owes money for
PAYABLE_ORDER_STATUSES = (OrderStatus.PENDING, OrderStatus.PROCESSING, OrderStatus.DELIVERED)

class PaymentMethod(PyEnum):
    CASH = "Cash"
    CARD_REDIRECT = "CardRedirect"
    HOSTED_CHECKOUT = "HostedCheckout"
    WEBHOOK_PROCESSOR = "WebhookProcessor"

class PaymentStatus(PyEnum):
    PENDING = "Pending"
    SUCCESS = "Success"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    REJECTED = "Rejected"  # callback failed signature/amount verification

TERMINAL_PAYMENT_STATUSES = (
    PaymentStatus.SUCCESS, PaymentStatus.FAILED, PaymentStatus.CANCELLED, PaymentStatus.REJECTED,
)

class CouponDiscountType(PyEnum):
    PERCENTAGE = "Percentage"
    FIXED = "Fixed"

class CouponStatus(PyEnum):
    ACTIVE = "Active"
    INACTIVE = "Inactive"
    EXPIRED = "Expired"

# ── Guests & realtime connections ───────────────────────────────────────────
class Guest(Base, IdMixin, TSMMixin):
    __tablename__ = "guest"
    name: Mapped[str] = mapped_column(String(160))
    table_number: Mapped[int | None] = mapped_column(Integer)

class GuestSocket(Base, TSMMixin):
    __tablename__ = "guest_socket"
    guest_id: Mapped[str] = mapped_column(String(36), ForeignKey("guest.id"), primary_key=True)
    socket_id: Mapped[str] = mapped_column(String(120))

# ── Dishes & snapshots ──────────────────────────────────────────────────────
class Dish(Base, IdMixin, TSMMixin):
    __tablename__ = "dish"
    name: Mapped[str] = mapped_column(String(160))
    price: Mapped[int] = mapped_column(Integer)  # minor units
    description: Mapped[str | None] = mapped_column(Text)
    image: Mapped[str | None] = mapped_column(String(400))
    status: Mapped[DishStatus] = mapped_column(Enum(DishStatus), default=DishStatus.AVAILABLE)

class DishSnapshot(Base, IdMixin, TSMMixin):
    __tablename__ = "dish_snapshot"
    dish_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("dish.id"))
    name: Mapped[str] = mapped_column(String(160))
    price: Mapped[int] = mapped_column(Integer)
    description: Mapped[str | None] = mapped_column(Text)
    image: Mapped[str | None] = mapped_column(String(400))
    status: Mapped[DishStatus] = mapped_column(Enum(DishStatus))

# ── Orders ──────────────────────────────────────────────────────────────────
class Order(Base, IdMixin, TSMMixin):
    __tablename__ = "order"
    guest_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("guest.id"))
    table_number: Mapped[int | None] = mapped_column(Integer)
    dish_snapshot_id: Mapped[str] = mapped_column(String(36), ForeignKey("dish_snapshot.id"), unique=True)
    quantity: Mapped[int] = mapped_column(Integer)
    status: Mapped[OrderStatus] = mapped_column(Enum(OrderStatus), default=OrderStatus.PENDING)
    order_handler_id: Mapped[str | None] = mapped_column(String(36))  # staff
    payment_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("payment.id"))  # set once Paid
    dish_snapshot: Mapped[DishSnapshot] = relationship(lazy="joined")

# ── Payments ────────────────────────────────────────────────────────────────
class Payment(Base, IdMixin, TSMMixin):
    __tablename__ = "payment"
    guest_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("guest.id"))
    table_number: Mapped[int | None] = mapped_column(Integer)
    amount: Mapped[int] = mapped_column(Integer)  # minor units, after discount
    currency: Mapped[str] = mapped_column(String(3))
    payment_method: Mapped[PaymentMethod] = mapped_column(Enum(PaymentMethod))
    status: Mapped[PaymentStatus] = mapped_column(Enum(PaymentStatus), default=PaymentStatus.PENDING)
    transaction_ref: Mapped[str] = mapped_column(String(64), unique=True)
    external_transaction_id: Mapped[str | None] = mapped_column(String(120))
    external_session_id: Mapped[str | None] = mapped_column(String(255))
    external_customer_id: Mapped[str | None] = mapped_column(String(120))
    payment_url: Mapped[str | None] = mapped_column(Text)
    response_code: Mapped[str | None] = mapped_column(String(60))
    response_message: Mapped[str | None] = mapped_column(Text)
    bank_code: Mapped[str | None] = mapped_column(String(40))
    card_brand: Mapped[str | None] = mapped_column(String(40))
    last4_digits: Mapped[str | None] = mapped_column(String(4))
    coupon_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("coupon.id"))
    discount_amount: Mapped[int | None] = mapped_column(Integer)
    description: Mapped[str | None] = mapped_column(Text)
    note: Mapped[str | None] = mapped_column(Text)
    payment_handler_id: Mapped[str | None] = mapped_column(String(36))  # staff
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))

class PaymentOrder(Base, TSMMixin):
    __tablename__ = "payment_order"
    payment_id: Mapped[str] = mapped_column(String(36), ForeignKey("payment.id"), primary_key=True)
    order_id: Mapped[str] = mapped_column(String(36), ForeignKey("order.id"), primary_key=True)

# ── Coupons ─────────────────────────────────────────────────────────────────
class Coupon(Base, IdMixin, TSMMixin):
    __tablename__ = "coupon"
    code: Mapped[str] = mapped_column(String(60), unique=True)  # upper-cased, trimmed
    discount_type: Mapped[CouponDiscountType] = mapped_column(Enum(CouponDiscountType))
    discount_value: Mapped[int] = mapped_column(Integer)  # percent, or minor units
    min_order_amount: Mapped[int | None] = mapped_column(Integer)
    applicable_dish_ids: Mapped[str | None] = mapped_column(Text)  # JSON list of dish ids
    max_total_usage: Mapped[int | None] = mapped_column(Integer)
    max_usage_per_guest: Mapped[int | None] = mapped_column(Integer)
    usage_count: Mapped[int] = mapped_column(Integer, default=0)
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    status: Mapped[CouponStatus] = mapped_column(Enum(CouponStatus), default=CouponStatus.ACTIVE)
    created_by_id: Mapped[str | None] = mapped_column(String(36))

class CouponUsage(Base, IdMixin, TSMMixin):
    __tablename__ = "coupon_usage"
    coupon_id: Mapped[str] = mapped_column(String(36), ForeignKey("coupon.id"))
    guest_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("guest.id"))
    payment_id: Mapped[str] = mapped_column(String(36), ForeignKey("payment.id"))
    discount_amount: Mapped[int] = mapped_column(Integer, default=0)
    __table_args__ = (
        UniqueConstraint("payment_id", name="uq_coupon_usage_payment"),
    )

# ── Audit ───────────────────────────────────────────────────────────────────
class AuditLog(Base, IdMixin, TSMMixin):
    __tablename__ = "audit_log"
    actor_user_id: Mapped[str | None] = mapped_column(String(36))  # None for provider callbacks
    entity: Mapped[str] = mapped_column(String(60))
    entity_id: Mapped[str] = mapped_column(String(36))
    action: Mapped[str] = mapped_column(String(60))
    before: Mapped[str | None] = mapped_column(Text)
    after: Mapped[str | None] = mapped_column(Text)

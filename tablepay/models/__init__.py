# Importing the module registers tables with Base for create_all()
from .core import (  # noqa: F401
    # Enums
    DishStatus, OrderStatus, PaymentMethod, PaymentStatus,
    CouponDiscountType, CouponStatus,
    PAYABLE_ORDER_STATUSES, TERMINAL_PAYMENT_STATUSES,

    # Guests
    Guest, GuestSocket,

    # Dishes & orders
    Dish, DishSnapshot, Order,

    # Payments & coupons
    Payment, PaymentOrder, Coupon, CouponUsage,

    # Audit
    AuditLog,
)

__all__ = [
    "DishStatus", "OrderStatus", "PaymentMethod", "PaymentStatus",
    "CouponDiscountType", "CouponStatus",
    "PAYABLE_ORDER_STATUSES", "TERMINAL_PAYMENT_STATUSES",
    "Guest", "GuestSocket",
    "Dish", "DishSnapshot", "Order",
    "Payment", "PaymentOrder", "Coupon", "CouponUsage",
    "AuditLog",
]

all_models = True

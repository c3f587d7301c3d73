"""Order snapshot store.

Orders never point at a live ``Dish``; they own a frozen ``DishSnapshot`` so
later menu edits cannot rewrite what a guest was charged for.
"""
from typing import List, Sequence

from sqlalchemy.orm import Session

from tablepay.errors import ValidationError
from tablepay.models.core import Dish, DishSnapshot, DishStatus, Guest, Order, OrderStatus
from tablepay.schemas.orders import OrderLineIn


def snapshot_dish(db: Session, dish: Dish) -> DishSnapshot:
    snap = DishSnapshot(
        dish_id=dish.id,
        name=dish.name,
        price=dish.price,
        description=dish.description,
        image=dish.image,
        status=dish.status,
    )
    db.add(snap)
    db.flush()
    return snap


def place_orders(db: Session, guest: Guest, lines: Sequence[OrderLineIn],
                 order_handler_id: str | None = None) -> List[Order]:
    created: List[Order] = []
    for line in lines:
        dish = db.get(Dish, line.dish_id)
        if not dish:
            raise ValidationError(f"Dish {line.dish_id} does not exist")
        if dish.status != DishStatus.AVAILABLE:
            raise ValidationError(f"Dish {dish.name} is not available")
        snap = snapshot_dish(db, dish)
        o = Order(
            guest_id=guest.id,
            table_number=guest.table_number,
            dish_snapshot_id=snap.id,
            dish_snapshot=snap,
            quantity=line.quantity,
            status=OrderStatus.PENDING,
            order_handler_id=order_handler_id,
        )
        db.add(o)
        created.append(o)
    db.flush()
    return created


def order_total(orders: Sequence[Order]) -> int:
    return sum(int(o.dish_snapshot.price) * int(o.quantity) for o in orders)


def ordered_dish_ids(orders: Sequence[Order]) -> List[str]:
    seen: List[str] = []
    for o in orders:
        dish_id = o.dish_snapshot.dish_id
        if dish_id and dish_id not in seen:
            seen.append(dish_id)
    return seen

from datetime import datetime
from typing import List, Optional

from pydantic import Field

from tablepay.models.core import DishStatus, OrderStatus
from tablepay.schemas.common import CamelModel


class OrderLineIn(CamelModel):
    dish_id: str
    quantity: int = Field(gt=0)


class OrdersCreate(CamelModel):
    orders: List[OrderLineIn] = Field(min_length=1)
    # staff placing orders on behalf of a guest
    guest_id: Optional[str] = None


class OrderStatusUpdate(CamelModel):
    status: OrderStatus


class DishSnapshotOut(CamelModel):
    id: str
    dish_id: Optional[str] = None
    name: str
    price: int
    description: Optional[str] = None
    image: Optional[str] = None
    status: DishStatus


class OrderOut(CamelModel):
    id: str
    guest_id: Optional[str] = None
    table_number: Optional[int] = None
    quantity: int
    status: OrderStatus
    order_handler_id: Optional[str] = None
    payment_id: Optional[str] = None
    dish_snapshot: DishSnapshotOut
    created_at: datetime
    updated_at: datetime

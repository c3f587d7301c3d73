from typing import List

from fastapi import APIRouter, Depends, HTTPException, Request
from sqlalchemy import update
from sqlalchemy.orm import Session

from tablepay.config import settings
from tablepay.db import get_db
from tablepay.deps import Caller, require_auth, require_staff
from tablepay.models.core import Guest, Order, OrderStatus
from tablepay.schemas.orders import OrderOut, OrdersCreate, OrderStatusUpdate
from tablepay.services.snapshots import place_orders
from tablepay.util.audit import audit

router = APIRouter(prefix="/orders", tags=["orders"])


def _broadcast(request: Request, event: str, orders: List[OrderOut]):
    notifier = request.app.state.notifier
    notifier.publish(event, settings.STAFF_ROOM, [o.model_dump(mode="json", by_alias=True) for o in orders])


@router.post("", response_model=List[OrderOut])
def create_orders(
    body: OrdersCreate,
    request: Request,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_auth),
):
    """
    Place one order per line. Each order gets its own frozen copy of the dish
    (name, price, image) taken at this moment.
    """
    guest_id = body.guest_id if caller.is_staff else caller.id
    if not guest_id:
        raise HTTPException(status_code=400, detail="guestId is required")
    guest = db.get(Guest, guest_id)
    if not guest:
        raise HTTPException(status_code=404, detail="Guest not found")

    try:
        created = place_orders(db, guest, body.orders, order_handler_id=caller.id if caller.is_staff else None)
        for o in created:
            audit(db, caller.id if caller.is_staff else None, "order", o.id, "create",
                  after={"dish": o.dish_snapshot.name, "quantity": o.quantity})
        db.commit()
    except Exception:
        db.rollback()
        raise

    out = [OrderOut.model_validate(o) for o in created]
    _broadcast(request, "new-order", out)
    return out


@router.get("", response_model=List[OrderOut])
def list_orders(
    guest_id: str | None = None,
    status: OrderStatus | None = None,
    table_number: int | None = None,
    db: Session = Depends(get_db),
    caller: Caller = Depends(require_auth),
):
    q = db.query(Order)
    # guests only see their own orders
    if not caller.is_staff:
        q = q.filter(Order.guest_id == caller.id)
    elif guest_id:
        q = q.filter(Order.guest_id == guest_id)
    if status:
        q = q.filter(Order.status == status)
    if table_number is not None:
        q = q.filter(Order.table_number == table_number)
    return [OrderOut.model_validate(o) for o in q.order_by(Order.created_at.desc()).all()]


@router.put("/{order_id}/status", response_model=OrderOut)
def update_order_status(
    order_id: str,
    body: OrderStatusUpdate,
    request: Request,
    db: Session = Depends(get_db),
    staff: Caller = Depends(require_staff),
):
    o = db.get(Order, order_id)
    if not o:
        raise HTTPException(status_code=404, detail="Order not found")
    if o.status == OrderStatus.PAID:
        raise HTTPException(status_code=409, detail="Paid orders cannot be changed")
    if body.status == OrderStatus.PAID:
        raise HTTPException(status_code=400, detail="Orders become Paid through settlement only")

    before = {"status": o.status.value}
    # settlement may have marked it Paid since we read it
    res = db.execute(
        update(Order)
        .where(Order.id == order_id, Order.status != OrderStatus.PAID)
        .values(status=body.status, order_handler_id=staff.id)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        raise HTTPException(status_code=409, detail="Paid orders cannot be changed")
    audit(db, staff.id, "order", o.id, "status", before=before, after={"status": body.status.value})
    db.commit()
    db.refresh(o)

    out = OrderOut.model_validate(o)
    _broadcast(request, "update-order", [out])
    return out

import json
from datetime import datetime, timezone
from typing import List

from fastapi import APIRouter, Depends, HTTPException, Query
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from tablepay.db import get_db
from tablepay.deps import Caller, require_auth, require_staff
from tablepay.models.core import Coupon, CouponDiscountType, CouponStatus
from tablepay.schemas.common import Msg
from tablepay.schemas.coupons import CouponIn, CouponOut, CouponUpdate, CouponValidateIn, CouponValidateOut
from tablepay.services import coupons
from tablepay.util.audit import audit

router = APIRouter(prefix="/coupons", tags=["coupons"])


def _get(db: Session, coupon_id: str) -> Coupon:
    c = db.get(Coupon, coupon_id)
    if not c:
        raise HTTPException(status_code=404, detail="Coupon not found")
    return c


@router.post("/validate", response_model=CouponValidateOut)
def validate_coupon(body: CouponValidateIn, db: Session = Depends(get_db), caller: Caller = Depends(require_auth)):
    """Preview a coupon against a total. Nothing is reserved."""
    res = coupons.validate(db, body.code, body.order_total, body.dish_ids,
                           guest_id=body.guest_id if caller.is_staff else caller.id)
    return CouponValidateOut(
        valid=res.valid,
        coupon_id=res.coupon.id if res.coupon else None,
        code=res.coupon.code if res.coupon else None,
        discount_amount=res.discount_amount if res.valid else None,
        final_amount=res.final_amount if res.valid else None,
        reason=res.reason,
    )


@router.post("", response_model=CouponOut)
def create_coupon(body: CouponIn, db: Session = Depends(get_db), staff: Caller = Depends(require_staff)):
    code = coupons.normalize_code(body.code)
    if coupons.find_by_code(db, code):
        raise HTTPException(status_code=409, detail="Coupon code already exists")
    c = Coupon(
        code=code,
        discount_type=body.discount_type,
        discount_value=body.discount_value,
        min_order_amount=body.min_order_amount,
        applicable_dish_ids=json.dumps(body.applicable_dish_ids) if body.applicable_dish_ids else None,
        max_total_usage=body.max_total_usage,
        max_usage_per_guest=body.max_usage_per_guest,
        start_date=body.start_date,
        end_date=body.end_date,
        status=body.status,
        created_by_id=staff.id,
    )
    db.add(c)
    try:
        db.flush()
        audit(db, staff.id, "coupon", c.id, "create", after={"code": code})
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Coupon code already exists")
    db.refresh(c)
    return c


@router.get("", response_model=List[CouponOut])
def list_coupons(
    status: CouponStatus | None = None,
    from_date: datetime | None = Query(default=None, alias="fromDate"),
    to_date: datetime | None = Query(default=None, alias="toDate"),
    db: Session = Depends(get_db),
    _: Caller = Depends(require_staff),
):
    q = db.query(Coupon)
    if status:
        q = q.filter(Coupon.status == status)
    # coupons whose validity window overlaps [fromDate, toDate]
    if from_date:
        q = q.filter(Coupon.end_date >= from_date)
    if to_date:
        q = q.filter(Coupon.start_date <= to_date)
    return q.order_by(Coupon.created_at.desc()).all()


@router.get("/{coupon_id}", response_model=CouponOut)
def get_coupon(coupon_id: str, db: Session = Depends(get_db), _: Caller = Depends(require_staff)):
    return _get(db, coupon_id)


@router.put("/{coupon_id}", response_model=CouponOut)
def update_coupon(coupon_id: str, body: CouponUpdate, db: Session = Depends(get_db),
                  staff: Caller = Depends(require_staff)):
    c = _get(db, coupon_id)
    data = body.model_dump(exclude_unset=True)
    before = {"code": c.code, "status": c.status.value, "usage_count": c.usage_count}

    if "code" in data:
        new_code = coupons.normalize_code(data.pop("code"))
        if new_code != c.code:
            if c.usage_count > 0:
                raise HTTPException(status_code=400, detail="Code cannot change once the coupon was used")
            if coupons.find_by_code(db, new_code):
                raise HTTPException(status_code=409, detail="Coupon code already exists")
            c.code = new_code
    if "applicable_dish_ids" in data:
        ids = data.pop("applicable_dish_ids")
        c.applicable_dish_ids = json.dumps(ids) if ids else None
    for k, v in data.items():
        setattr(c, k, v)

    start, end = coupons.aware(c.start_date), coupons.aware(c.end_date)
    if end <= start:
        raise HTTPException(status_code=400, detail="endDate must be after startDate")
    if c.discount_type == CouponDiscountType.PERCENTAGE and c.discount_value > 100:
        raise HTTPException(status_code=400, detail="percentage discount cannot exceed 100")
    if end < datetime.now(timezone.utc):
        c.status = CouponStatus.EXPIRED

    audit(db, staff.id, "coupon", c.id, "update", before=before,
          after={"code": c.code, "status": c.status.value})
    try:
        db.commit()
    except IntegrityError:
        db.rollback()
        raise HTTPException(status_code=409, detail="Coupon code already exists")
    db.refresh(c)
    return c


@router.delete("/{coupon_id}", response_model=Msg)
def delete_coupon(coupon_id: str, db: Session = Depends(get_db), staff: Caller = Depends(require_staff)):
    c = _get(db, coupon_id)
    if c.usage_count > 0 or coupons.usage_total(db, c.id) > 0:
        raise HTTPException(status_code=400, detail="Coupon was already used; deactivate it instead")
    audit(db, staff.id, "coupon", c.id, "delete", before={"code": c.code})
    db.delete(c)
    db.commit()
    return {"message": "Coupon deleted"}

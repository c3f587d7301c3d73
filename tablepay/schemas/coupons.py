import json
from datetime import datetime
from typing import List, Optional

from pydantic import Field, field_validator, model_validator

from tablepay.models.core import CouponDiscountType, CouponStatus
from tablepay.schemas.common import CamelModel


class CouponIn(CamelModel):
    code: str = Field(min_length=1, max_length=60)
    discount_type: CouponDiscountType
    discount_value: int = Field(gt=0)
    min_order_amount: Optional[int] = Field(default=None, ge=0)
    applicable_dish_ids: Optional[List[str]] = None
    max_total_usage: Optional[int] = Field(default=None, gt=0)
    max_usage_per_guest: Optional[int] = Field(default=None, gt=0)
    start_date: datetime
    end_date: datetime
    status: CouponStatus = CouponStatus.ACTIVE

    @model_validator(mode="after")
    def _check(self):
        if self.end_date <= self.start_date:
            raise ValueError("endDate must be after startDate")
        if self.discount_type == CouponDiscountType.PERCENTAGE and self.discount_value > 100:
            raise ValueError("percentage discount cannot exceed 100")
        return self


class CouponUpdate(CamelModel):
    code: Optional[str] = Field(default=None, min_length=1, max_length=60)
    discount_type: Optional[CouponDiscountType] = None
    discount_value: Optional[int] = Field(default=None, gt=0)
    min_order_amount: Optional[int] = Field(default=None, ge=0)
    applicable_dish_ids: Optional[List[str]] = None
    max_total_usage: Optional[int] = Field(default=None, gt=0)
    max_usage_per_guest: Optional[int] = Field(default=None, gt=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    status: Optional[CouponStatus] = None


class CouponOut(CamelModel):
    id: str
    code: str
    discount_type: CouponDiscountType
    discount_value: int
    min_order_amount: Optional[int] = None
    applicable_dish_ids: Optional[List[str]] = None
    max_total_usage: Optional[int] = None
    max_usage_per_guest: Optional[int] = None
    usage_count: int
    start_date: datetime
    end_date: datetime
    status: CouponStatus

    @field_validator("applicable_dish_ids", mode="before")
    @classmethod
    def _decode_dish_ids(cls, v):
        # stored as a JSON text column
        if isinstance(v, str):
            return json.loads(v) if v else None
        return v


class CouponValidateIn(CamelModel):
    code: str
    order_total: int = Field(ge=0)
    dish_ids: Optional[List[str]] = None
    # staff previewing for a specific guest; guests always preview for themselves
    guest_id: Optional[str] = None


class CouponValidateOut(CamelModel):
    valid: bool
    coupon_id: Optional[str] = None
    code: Optional[str] = None
    discount_amount: Optional[int] = None
    final_amount: Optional[int] = None
    reason: Optional[str] = None

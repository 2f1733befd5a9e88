from pydantic import BaseModel, Field, model_validator
from typing import Optional
from datetime import datetime
from enum import Enum


class DiscountType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class CouponCreate(BaseModel):
    code: str = Field(..., min_length=3, max_length=32)
    description: str
    discount_type: DiscountType
    discount_value: float = Field(..., ge=0)
    min_order_amount: float = Field(0, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    start_date: datetime
    end_date: datetime
    usage_limit: Optional[int] = Field(None, ge=1)
    per_user_limit: int = Field(1, ge=1)
    is_active: bool = True
    applicable_categories: list[str] = []
    excluded_products: list[str] = []

    @model_validator(mode="after")
    def check_window(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must be after start_date")
        return self


class CouponValidate(BaseModel):
    code: str
    order_amount: float = Field(..., ge=0)


class CouponUpdate(BaseModel):
    code: Optional[str] = Field(None, min_length=3, max_length=32)
    description: Optional[str] = None
    discount_type: Optional[DiscountType] = None
    discount_value: Optional[float] = Field(None, ge=0)
    min_order_amount: Optional[float] = Field(None, ge=0)
    max_discount_amount: Optional[float] = Field(None, ge=0)
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    usage_limit: Optional[int] = Field(None, ge=1)
    per_user_limit: Optional[int] = Field(None, ge=1)
    is_active: Optional[bool] = None
    applicable_categories: Optional[list[str]] = None
    excluded_products: Optional[list[str]] = None

from pydantic import BaseModel
from typing import Optional
from enum import Enum


class PayoutStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    PAID = "paid"
    FAILED = "failed"
    CANCELLED = "cancelled"


class RecipientType(str, Enum):
    SELLER = "seller"
    PROMOTOR = "promotor"


class CommissionType(str, Enum):
    PERCENTAGE = "percentage"
    FIXED = "fixed"


class PayoutBatchCreate(BaseModel):
    recipient_type: RecipientType
    recipient_id: str
    notes: Optional[str] = None


class DriverPayoutCreate(BaseModel):
    driver_id: str
    payout_method: Optional[str] = None
    notes: Optional[str] = None


class PayoutMarkPaid(BaseModel):
    payment_method: str
    transaction_id: Optional[str] = None
    notes: Optional[str] = None


class PayoutStatusUpdate(BaseModel):
    status: PayoutStatus
    notes: Optional[str] = None


class SellerPayoutRequest(BaseModel):
    payout_ids: Optional[list[str]] = None
    payout_method: Optional[str] = None
    notes: Optional[str] = None

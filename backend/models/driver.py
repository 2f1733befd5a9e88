from pydantic import BaseModel, Field
from typing import Literal, Optional
from enum import Enum


class DriverAvailability(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    ON_DELIVERY = "on-delivery"


class EarningType(str, Enum):
    DELIVERY = "delivery"
    BONUS = "bonus"
    PENALTY = "penalty"
    OTHER = "other"


class EarningStatus(str, Enum):
    EARNED = "earned"
    PAYOUT_PROCESSING = "payout_processing"
    PAYOUT_PAID = "payout_paid"
    CANCELLED = "cancelled"


class WithdrawStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"
    PAID = "paid"


class WithdrawMode(str, Enum):
    UPI = "upi"
    BANK_TRANSFER = "bank-transfer"
    CASH = "cash"


class BankDetails(BaseModel):
    account_holder_name: Optional[str] = None
    account_number: Optional[str] = None
    ifsc_code: Optional[str] = None
    bank_name: Optional[str] = None


class WithdrawRequest(BaseModel):
    amount: float = Field(..., gt=0)
    payment_mode: WithdrawMode = WithdrawMode.UPI
    upi_id: Optional[str] = None
    bank_details: Optional[BankDetails] = None


class WithdrawStatusUpdate(BaseModel):
    status: WithdrawStatus
    remarks: Optional[str] = None


class AvailabilityUpdate(BaseModel):
    availability: Literal["online", "offline"]


class EarningAdjustment(BaseModel):
    type: Literal["bonus", "penalty", "other"]
    amount: float = Field(..., gt=0)
    description: Optional[str] = None

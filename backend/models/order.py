from pydantic import BaseModel, Field
from typing import List, Optional
from enum import Enum


class OrderStatus(str, Enum):
    PENDING = "pending"
    ACCEPTED = "accepted"
    PICKED_UP = "picked-up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class PaymentMethod(str, Enum):
    COD = "cod"
    ONLINE = "online"


class PaymentStatus(str, Enum):
    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    REFUNDED = "refunded"


class TaxType(str, Enum):
    INCLUSIVE = "inclusive"
    EXCLUSIVE = "exclusive"


class OrderItemIn(BaseModel):
    product_id: str
    quantity: int = Field(..., ge=1)
    # price snapshot taken at add-to-cart time
    price: float = Field(..., ge=0)


class ShippingAddress(BaseModel):
    address_line: str
    city: str
    state: str
    pincode: str
    country: str = "India"
    phone: Optional[str] = None


class OrderCreate(BaseModel):
    items: List[OrderItemIn]
    shipping_address: ShippingAddress
    payment_method: PaymentMethod = PaymentMethod.COD
    use_wallet: bool = False
    coupon_code: Optional[str] = None


class SecretCodeVerify(BaseModel):
    secret_code: str


class DeliveryConfirm(BaseModel):
    paid_amount: Optional[float] = None


class PaymentOutcome(BaseModel):
    status: PaymentStatus
    transaction_id: Optional[str] = None


class OrderStatusOverride(BaseModel):
    status: OrderStatus
    reason: Optional[str] = None

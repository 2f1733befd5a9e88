from fastapi import APIRouter, Depends, Query
from typing import Optional

from database import get_db
from models.coupon import CouponValidate
from models.order import OrderCreate, OrderStatus
from utils.security import get_current_actor, require_role
from utils.order_service import create_order, get_order_for_actor, get_tax_invoice, list_user_orders
from utils.order_timeline import get_order_timeline
from utils.pricing import calculate_discount, compute_subtotal, list_active_coupons, validate_coupon
from utils.serializers import serialize_docs, serialize_order

router = APIRouter(
    prefix="/orders",
    tags=["Orders"]
)


# ======================================================
# CHECKOUT
# ======================================================

@router.post("/create")
async def place_order(
    data: OrderCreate,
    user=Depends(require_role("user")),
    db=Depends(get_db),
):
    items = [i.model_dump() for i in data.items]

    coupon = None
    if data.coupon_code:
        subtotal = compute_subtotal(items)
        coupon = await validate_coupon(db, data.coupon_code, user["_id"], subtotal)
        coupon = {**coupon, "discount": calculate_discount(coupon, subtotal)}

    order = await create_order(
        db,
        user,
        items=items,
        shipping_address=data.shipping_address.model_dump(),
        payment_method=data.payment_method.value,
        use_wallet=data.use_wallet,
        coupon=coupon,
    )

    return {
        "message": "Order placed successfully",
        # the buyer hands this code to the driver at the door
        "order": serialize_order(order, include_secret=True),
    }


@router.post("/coupon/validate")
async def check_coupon(
    data: CouponValidate,
    user=Depends(require_role("user")),
    db=Depends(get_db),
):
    coupon = await validate_coupon(db, data.code, user["_id"], data.order_amount)
    return {
        "valid": True,
        "code": coupon["code"],
        "discount": calculate_discount(coupon, data.order_amount),
    }


_PUBLIC_COUPON_FIELDS = (
    "code", "description", "discount_type", "discount_value",
    "min_order_amount", "max_discount_amount", "end_date",
)


@router.get("/coupons/active")
async def active_coupons(
    user=Depends(require_role("user")),
    db=Depends(get_db),
):
    coupons = await list_active_coupons(db)
    return serialize_docs([{k: c.get(k) for k in _PUBLIC_COUPON_FIELDS} for c in coupons])


# ======================================================
# BUYER READS
# ======================================================

@router.get("/my")
async def my_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    user=Depends(require_role("user")),
    db=Depends(get_db),
):
    return await list_user_orders(
        db,
        user["_id"],
        status=status.value if status else None,
        page=page,
        limit=limit,
    )


@router.get("/{order_id}")
async def order_detail(
    order_id: str,
    actor=Depends(get_current_actor),
    db=Depends(get_db),
):
    order = await get_order_for_actor(db, order_id, actor, actor["_role"])
    return serialize_order(order, include_secret=actor["_role"] == "user")


@router.get("/{order_id}/tax-invoice")
async def order_tax_invoice(
    order_id: str,
    actor=Depends(get_current_actor),
    db=Depends(get_db),
):
    order = await get_order_for_actor(db, order_id, actor, actor["_role"])
    return await get_tax_invoice(db, order)


@router.get("/{order_id}/timeline")
async def order_timeline(
    order_id: str,
    actor=Depends(get_current_actor),
    db=Depends(get_db),
):
    order = await get_order_for_actor(db, order_id, actor, actor["_role"])
    events = await get_order_timeline(db, order)
    return {
        "order_id": order.get("order_id"),
        "timeline": serialize_docs(events),
    }

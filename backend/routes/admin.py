from fastapi import APIRouter, Depends, Query
from datetime import datetime
from typing import Optional

from database import get_db
from models.coupon import CouponCreate, CouponUpdate
from models.driver import EarningAdjustment, EarningStatus, WithdrawStatus, WithdrawStatusUpdate
from models.order import OrderStatus, OrderStatusOverride, PaymentOutcome
from models.payout import (
    DriverPayoutCreate,
    PayoutBatchCreate,
    PayoutMarkPaid,
    PayoutStatus,
    PayoutStatusUpdate,
    RecipientType,
)
from utils.audit import log_audit
from utils.driver_wallet import record_adjustment, update_withdraw_status
from utils.order_service import list_orders, record_payment, update_order_status
from utils.payout_service import batcher_for, driver_batcher
from utils.pricing import create_coupon, list_coupons, toggle_coupon, update_coupon
from utils.reports import build_record_query, paginate, platform_settlement_summary
from utils.security import require_role
from utils.serializers import serialize_doc, serialize_docs, serialize_order
from utils.settlement_service import settle_order

router = APIRouter(
    prefix="/admin",
    tags=["Admin"]
)


# =====================================================
# ORDERS
# =====================================================

@router.get("/orders")
async def all_orders(
    status: Optional[OrderStatus] = None,
    seller_id: Optional[str] = None,
    driver_id: Optional[str] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await list_orders(
        db,
        status=status.value if status else None,
        seller_id=seller_id,
        driver_id=driver_id,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


@router.patch("/orders/{order_id}/status")
async def override_order_status(
    order_id: str,
    data: OrderStatusOverride,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    order = await update_order_status(db, order_id, status=data.status.value, admin=admin, reason=data.reason)
    return {"message": f"Order {order['status']}", "order": serialize_order(order)}


@router.post("/orders/{order_id}/payment")
async def order_payment_outcome(
    order_id: str,
    data: PaymentOutcome,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    result = await record_payment(
        db,
        order_id,
        status=data.status.value,
        transaction_id=data.transaction_id,
        admin=admin,
    )
    return {
        "message": "Payment recorded",
        "order": serialize_order(result["order"]),
        "settlement": result["settlement"],
    }


@router.post("/orders/{order_id}/settle")
async def settle(
    order_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    result = await settle_order(db, order_id, actor=admin, actor_role="admin")
    await log_audit(
        db,
        actor=admin,
        actor_role="admin",
        action="ORDER_SETTLEMENT_TRIGGERED",
        target_type="order",
        target_id=order_id,
        metadata={"net_amount": result["seller_payout"]["net_amount"]},
    )
    return {
        "message": "Order settled",
        "seller_payout": serialize_doc(result["seller_payout"]),
        "promotor_payout": serialize_doc(result["promotor_payout"]),
    }


# =====================================================
# SETTLEMENT RECORDS
# =====================================================

@router.get("/seller-payouts")
async def seller_payout_records(
    seller_id: Optional[str] = None,
    status: Optional[PayoutStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await batcher_for(RecipientType.SELLER).list_records(
        db,
        recipient_id=seller_id,
        status=status.value if status else None,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


@router.get("/promotor-payouts")
async def promotor_payout_records(
    promotor_id: Optional[str] = None,
    status: Optional[PayoutStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await batcher_for(RecipientType.PROMOTOR).list_records(
        db,
        recipient_id=promotor_id,
        status=status.value if status else None,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


@router.get("/settlement-summary")
async def settlement_summary(
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await platform_settlement_summary(db, date_from, date_to)


# =====================================================
# SELLER / PROMOTOR PAYOUT BATCHES
# =====================================================

@router.post("/payouts")
async def create_payout_batch(
    data: PayoutBatchCreate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    batch = await batcher_for(data.recipient_type).create_batch(
        db,
        data.recipient_id,
        notes=data.notes,
        actor=admin,
    )
    return {"message": "Payout batch created", "payout": serialize_doc(batch)}


@router.get("/payouts")
async def payout_batches(
    recipient_type: RecipientType,
    recipient_id: Optional[str] = None,
    status: Optional[PayoutStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await batcher_for(recipient_type).list_batches(
        db,
        recipient_id=recipient_id,
        status=status.value if status else None,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


@router.post("/payouts/{recipient_type}/{batch_id}/mark-paid")
async def mark_payout_paid(
    recipient_type: RecipientType,
    batch_id: str,
    data: PayoutMarkPaid,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    batch = await batcher_for(recipient_type).mark_paid(
        db,
        batch_id,
        payment_method=data.payment_method,
        transaction_id=data.transaction_id,
        notes=data.notes,
        admin=admin,
    )
    return {"message": "Payout marked as paid", "payout": serialize_doc(batch)}


@router.patch("/payouts/{recipient_type}/{batch_id}/status")
async def payout_status(
    recipient_type: RecipientType,
    batch_id: str,
    data: PayoutStatusUpdate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    batch = await batcher_for(recipient_type).update_status(
        db,
        batch_id,
        status=data.status.value,
        notes=data.notes,
        admin=admin,
    )
    return {"message": f"Payout {batch['status']}", "payout": serialize_doc(batch)}


# =====================================================
# DRIVER PAYOUTS
# =====================================================

@router.post("/driver-payouts")
async def create_driver_payout(
    data: DriverPayoutCreate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    batch = await driver_batcher.create_batch(
        db,
        data.driver_id,
        payout_method=data.payout_method,
        notes=data.notes,
        actor=admin,
    )
    return {"message": "Driver payout created", "payout": serialize_doc(batch)}


@router.get("/driver-payouts")
async def driver_payouts(
    driver_id: Optional[str] = None,
    status: Optional[PayoutStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await driver_batcher.list_batches(
        db,
        recipient_id=driver_id,
        status=status.value if status else None,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


@router.post("/driver-payouts/{batch_id}/mark-paid")
async def mark_driver_payout_paid(
    batch_id: str,
    data: PayoutMarkPaid,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    batch = await driver_batcher.mark_paid(
        db,
        batch_id,
        payment_method=data.payment_method,
        transaction_id=data.transaction_id,
        notes=data.notes,
        admin=admin,
    )
    return {"message": "Driver payout marked as paid", "payout": serialize_doc(batch)}


@router.patch("/driver-payouts/{batch_id}/status")
async def driver_payout_status(
    batch_id: str,
    data: PayoutStatusUpdate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    batch = await driver_batcher.update_status(
        db,
        batch_id,
        status=data.status.value,
        notes=data.notes,
        admin=admin,
    )
    return {"message": f"Driver payout {batch['status']}", "payout": serialize_doc(batch)}


# =====================================================
# DRIVER EARNINGS & WITHDRAWALS
# =====================================================

@router.get("/driver-earnings")
async def driver_earnings(
    driver_id: Optional[str] = None,
    status: Optional[EarningStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return await driver_batcher.list_records(
        db,
        recipient_id=driver_id,
        status=status.value if status else None,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


@router.post("/drivers/{driver_id}/adjustments")
async def driver_adjustment(
    driver_id: str,
    data: EarningAdjustment,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    earning = await record_adjustment(
        db,
        driver_id=driver_id,
        type=data.type,
        amount=data.amount,
        description=data.description,
        admin=admin,
    )
    return {"message": "Adjustment recorded", "earning": serialize_doc(earning)}


@router.get("/withdraws")
async def withdraws(
    driver_id: Optional[str] = None,
    status: Optional[WithdrawStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    query = build_record_query(
        recipient_field="driver_id",
        recipient_id=driver_id,
        status=status.value if status else None,
        date_from=date_from,
        date_to=date_to,
    )
    # encrypted account numbers never leave the service
    return await paginate(db.withdraws, query, page=page, limit=limit, hide=("bank_details",))


@router.patch("/withdraws/{withdraw_id}/status")
async def withdraw_status(
    withdraw_id: str,
    data: WithdrawStatusUpdate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    record = await update_withdraw_status(
        db,
        withdraw_id,
        status=data.status.value,
        remarks=data.remarks,
        admin=admin,
    )
    return {"message": f"Withdraw {record['status']}", "withdraw": serialize_doc(record, hide=("bank_details",))}


# =====================================================
# COUPONS
# =====================================================

@router.post("/coupons")
async def add_coupon(
    data: CouponCreate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    coupon = await create_coupon(db, data.model_dump())
    await log_audit(
        db,
        actor=admin,
        actor_role="admin",
        action="COUPON_CREATED",
        target_type="coupon",
        target_id=coupon["_id"],
        metadata={"code": coupon["code"]},
    )
    return {"message": "Coupon created", "coupon": serialize_doc(coupon)}


@router.get("/coupons")
async def all_coupons(
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    return serialize_docs(await list_coupons(db))


@router.put("/coupons/{coupon_id}")
async def edit_coupon(
    coupon_id: str,
    data: CouponUpdate,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    changes = data.model_dump(exclude_unset=True)
    coupon = await update_coupon(db, coupon_id, changes)
    await log_audit(
        db,
        actor=admin,
        actor_role="admin",
        action="COUPON_UPDATED",
        target_type="coupon",
        target_id=coupon["_id"],
        metadata={"code": coupon["code"], "fields": sorted(changes)},
    )
    return {"message": "Coupon updated", "coupon": serialize_doc(coupon)}


@router.patch("/coupons/{coupon_id}/toggle")
async def toggle_coupon_status(
    coupon_id: str,
    admin=Depends(require_role("admin")),
    db=Depends(get_db),
):
    coupon = await toggle_coupon(db, coupon_id)
    await log_audit(
        db,
        actor=admin,
        actor_role="admin",
        action="COUPON_ACTIVATED" if coupon["is_active"] else "COUPON_DEACTIVATED",
        target_type="coupon",
        target_id=coupon["_id"],
        metadata={"code": coupon["code"]},
    )
    state = "activated" if coupon["is_active"] else "deactivated"
    return {"message": f"Coupon {state}", "coupon": serialize_doc(coupon)}

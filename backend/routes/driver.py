from fastapi import APIRouter, Depends, Query
from typing import Optional

from database import get_db
from models.driver import AvailabilityUpdate, EarningStatus, WithdrawRequest, WithdrawStatus
from models.order import DeliveryConfirm, SecretCodeVerify
from models.payout import PayoutStatus
from utils.driver_wallet import get_wallet, request_withdraw
from utils.order_service import (
    accept_order,
    mark_delivered,
    mark_picked_up,
    ongoing_orders,
    pending_orders_feed,
    set_availability,
    verify_secret_code,
)
from utils.payout_service import driver_batcher
from utils.reports import build_record_query, paginate
from utils.security import require_role
from utils.serializers import serialize_doc, serialize_order

router = APIRouter(
    prefix="/driver",
    tags=["Driver"]
)

WITHDRAW_HIDDEN = ("bank_details",)


# ======================================================
# AVAILABILITY & FEEDS
# ======================================================

@router.patch("/availability")
async def update_availability(
    data: AvailabilityUpdate,
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    updated = await set_availability(db, driver, data.availability)
    return {
        "message": "Availability updated",
        "availability": updated["work_info"]["availability"],
    }


@router.get("/orders/pending")
async def pending_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    return await pending_orders_feed(db, page=page, limit=limit)


@router.get("/orders/ongoing")
async def my_ongoing_orders(
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    orders = await ongoing_orders(db, driver)
    return {
        "count": len(orders),
        "orders": [serialize_order(o) for o in orders],
    }


# ======================================================
# ORDER LIFECYCLE
# ======================================================

@router.post("/orders/{order_id}/accept")
async def accept(
    order_id: str,
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    order = await accept_order(db, order_id, driver)
    return {"message": "Order accepted", "order": serialize_order(order)}


@router.post("/orders/{order_id}/pickup")
async def pickup(
    order_id: str,
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    order = await mark_picked_up(db, order_id, driver)
    return {"message": "Order picked up", "order": serialize_order(order)}


@router.post("/orders/{order_id}/verify-code")
async def verify_code(
    order_id: str,
    data: SecretCodeVerify,
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    order = await verify_secret_code(db, order_id, driver, data.secret_code)
    return {"message": "Secret code verified", "order": serialize_order(order)}


@router.post("/orders/{order_id}/deliver")
async def deliver(
    order_id: str,
    data: DeliveryConfirm,
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    result = await mark_delivered(db, order_id, driver, data.paid_amount)
    return {
        "message": "Order delivered",
        "order": serialize_order(result["order"]),
        "earning": serialize_doc(result["earning"]),
        "settlement": result["settlement"],
    }


# ======================================================
# WALLET
# ======================================================

@router.get("/wallet")
async def wallet(
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    return serialize_doc(await get_wallet(db, driver["_id"]))


@router.get("/earnings")
async def earnings(
    status: Optional[EarningStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    return await driver_batcher.list_records(
        db,
        recipient_id=driver["_id"],
        status=status.value if status else None,
        page=page,
        limit=limit,
    )


@router.get("/payouts")
async def payouts(
    status: Optional[PayoutStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    return await driver_batcher.list_batches(
        db,
        recipient_id=driver["_id"],
        status=status.value if status else None,
        page=page,
        limit=limit,
    )


@router.post("/withdraw")
async def withdraw(
    data: WithdrawRequest,
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    record = await request_withdraw(
        db,
        driver,
        amount=data.amount,
        payment_mode=data.payment_mode.value,
        upi_id=data.upi_id,
        bank_details=data.bank_details.model_dump() if data.bank_details else None,
    )
    response = serialize_doc(record, hide=WITHDRAW_HIDDEN)
    if record.get("bank_details"):
        response["account_number"] = record["bank_details"]["account_number_masked"]
    return {"message": "Withdrawal requested", "withdraw": response}


@router.get("/withdraws")
async def my_withdraws(
    status: Optional[WithdrawStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    driver=Depends(require_role("driver")),
    db=Depends(get_db),
):
    query = build_record_query(
        recipient_field="driver_id",
        recipient_id=driver["_id"],
        status=status.value if status else None,
    )
    return await paginate(db.withdraws, query, page=page, limit=limit, hide=WITHDRAW_HIDDEN)

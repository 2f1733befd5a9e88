from fastapi import APIRouter, Depends, Query
from datetime import datetime
from typing import Optional

from database import get_db
from models.order import OrderStatus
from models.payout import PayoutStatus, SellerPayoutRequest
from utils.order_service import list_orders
from utils.payout_service import seller_batcher
from utils.security import require_role
from utils.serializers import serialize_doc

router = APIRouter(
    prefix="/seller",
    tags=["Seller"]
)


# ======================================================
# SELLER ORDERS
# ======================================================

@router.get("/orders")
async def seller_orders(
    status: Optional[OrderStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    return await list_orders(
        db,
        seller_id=seller["_id"],
        status=status.value if status else None,
        page=page,
        limit=limit,
    )


# ======================================================
# SETTLEMENTS
# ======================================================

@router.get("/payouts")
async def my_payout_records(
    status: Optional[PayoutStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    return await seller_batcher.list_records(
        db,
        recipient_id=seller["_id"],
        status=status.value if status else None,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


@router.get("/payouts/summary")
async def my_payout_summary(
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    summary = await seller_batcher.summary(db, seller["_id"])
    earnings = seller.get("earnings") or {}
    return {
        **summary,
        "pending_payout": earnings.get("pending_payout", 0),
        "total_earnings": earnings.get("total_earnings", 0),
        "total_payouts": earnings.get("total_payouts", 0),
    }


@router.get("/payout-batches")
async def my_payout_batches(
    status: Optional[PayoutStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    return await seller_batcher.list_batches(
        db,
        recipient_id=seller["_id"],
        status=status.value if status else None,
        page=page,
        limit=limit,
    )


@router.post("/payouts/request")
async def request_payout(
    data: SellerPayoutRequest,
    seller=Depends(require_role("seller")),
    db=Depends(get_db),
):
    batch = await seller_batcher.create_batch(
        db,
        seller["_id"],
        record_ids=data.payout_ids,
        payout_method=data.payout_method,
        notes=data.notes,
        actor=seller,
        actor_role="seller",
    )
    return {"message": "Payout requested", "payout": serialize_doc(batch)}

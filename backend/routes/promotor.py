from fastapi import APIRouter, Depends, Query
from datetime import datetime
from typing import Optional

from database import get_db
from models.payout import PayoutStatus
from utils.payout_service import promotor_batcher
from utils.security import require_role

router = APIRouter(
    prefix="/promotor",
    tags=["Promotor"]
)


@router.get("/commissions")
async def my_commissions(
    status: Optional[PayoutStatus] = None,
    date_from: Optional[datetime] = None,
    date_to: Optional[datetime] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    promotor=Depends(require_role("promotor")),
    db=Depends(get_db),
):
    return await promotor_batcher.list_records(
        db,
        recipient_id=promotor["_id"],
        status=status.value if status else None,
        date_from=date_from,
        date_to=date_to,
        page=page,
        limit=limit,
    )


@router.get("/commissions/summary")
async def my_commission_summary(
    promotor=Depends(require_role("promotor")),
    db=Depends(get_db),
):
    summary = await promotor_batcher.summary(db, promotor["_id"])
    earnings = promotor.get("earnings") or {}
    return {
        **summary,
        "commission_type": promotor.get("commission_type"),
        "commission_rate": promotor.get("commission_rate"),
        "pending_payout": earnings.get("pending_payout", 0),
        "total_earnings": earnings.get("total_earnings", 0),
    }


@router.get("/payout-batches")
async def my_payout_batches(
    status: Optional[PayoutStatus] = None,
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    promotor=Depends(require_role("promotor")),
    db=Depends(get_db),
):
    return await promotor_batcher.list_batches(
        db,
        recipient_id=promotor["_id"],
        status=status.value if status else None,
        page=page,
        limit=limit,
    )

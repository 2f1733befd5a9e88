import logging
from datetime import datetime

from bson import ObjectId
from pymongo.errors import DuplicateKeyError

from config.env import PLATFORM_FEE_GST_RATE, PLATFORM_FEE_PERCENT, PLATFORM_STATE, TDS_RATE
from models.order import OrderStatus, PaymentStatus
from models.payout import PayoutStatus
from utils.balances import increment_balances
from utils.commission import calculate_order_settlement
from utils.errors import DuplicateSettlementError, StateConflictError
from utils.guards import get_or_404, parse_object_id
from utils.mongo import unit_of_work
from utils.order_timeline import record_order_event

logger = logging.getLogger(__name__)


async def _insert_once(collection, doc: dict, uow, recipient: str):
    try:
        await collection.insert_one(doc, **uow.kw)
    except DuplicateKeyError:
        raise DuplicateSettlementError(
            f"{recipient.title()} payout already exists for this order",
            order_id=str(doc["order_id"]),
            recipient=recipient,
        )
    uow.on_rollback(collection.delete_one, {"_id": doc["_id"]})


async def settle_order(db, order_id, *, actor: dict | None = None, actor_role: str = "system") -> dict:
    """
    Create the seller payout (and promotor payout, when the seller has a
    promotor earning a non-zero commission) for a delivered + paid order.

    At most once per (order, recipient): a second attempt fails closed
    with DuplicateSettlementError and writes nothing.
    """
    order = await get_or_404(db.orders, parse_object_id(order_id, "order_id"), "Order")

    if order.get("status") != OrderStatus.DELIVERED.value or order.get("payment_status") != PaymentStatus.PAID.value:
        raise StateConflictError(
            "Only delivered and paid orders can be settled",
            code="ORDER_NOT_SETTLEABLE",
            order_id=str(order["_id"]),
            status=order.get("status"),
            payment_status=order.get("payment_status"),
        )

    seller = await get_or_404(db.sellers, order["seller_id"], "Seller")

    existing = await db.seller_payouts.find_one({"order_id": order["_id"], "seller_id": seller["_id"]})
    if existing:
        raise DuplicateSettlementError(
            "Seller payout already exists for this order",
            order_id=str(order["_id"]),
            recipient="seller",
            payout_id=str(existing["_id"]),
        )

    promotor = None
    if seller.get("promotor_id"):
        promotor = await db.promotors.find_one({"_id": seller["promotor_id"]})
        if not promotor:
            logger.warning("SETTLEMENT_PROMOTOR_MISSING seller=%s promotor=%s", seller["_id"], seller["promotor_id"])

    seller_state = (seller.get("address") or {}).get("state")
    calc = calculate_order_settlement(
        order["items"],
        promotor=promotor,
        seller_state=seller_state,
        platform_fee_percent=PLATFORM_FEE_PERCENT,
        gst_rate=PLATFORM_FEE_GST_RATE,
        tds_rate=TDS_RATE,
        platform_state=PLATFORM_STATE,
    )

    now = datetime.utcnow()
    seller_payout = {
        "_id": ObjectId(),
        "order_id": order["_id"],
        "order_ref": order.get("order_id"),
        "seller_id": seller["_id"],
        "promotor_id": promotor["_id"] if promotor else None,
        "order_amount": calc["order_amount"],
        "promotor_commission": calc["promotor_commission"],
        "seller_share": calc["seller_share"],
        "platform_fee_percent": calc["platform_fee_percent"],
        "platform_fee": calc["platform_fee"],
        "payable_amount": calc["payable_amount"],
        "gst_rate": calc["gst_rate"],
        "gst_on_platform_fee": calc["gst_on_platform_fee"],
        "cgst": calc["cgst"],
        "sgst": calc["sgst"],
        "igst": calc["igst"],
        "tds_rate": calc["tds_rate"],
        "tds_deduction": calc["tds_deduction"],
        "net_amount": calc["net_amount"],
        "lines": calc["lines"],
        "status": PayoutStatus.PENDING.value,
        "payout_batch_id": None,
        "created_at": now,
        "updated_at": now,
    }

    promotor_payout = None
    if promotor and calc["promotor_commission"] > 0:
        promotor_payout = {
            "_id": ObjectId(),
            "order_id": order["_id"],
            "order_ref": order.get("order_id"),
            "promotor_id": promotor["_id"],
            "seller_id": seller["_id"],
            "commission_type": calc["commission_type"],
            "commission_rate": calc["commission_rate"],
            "order_amount": calc["order_amount"],
            "quantity": calc["quantity"],
            "commission_amount": calc["promotor_commission"],
            "status": PayoutStatus.PENDING.value,
            "payout_batch_id": None,
            "created_at": now,
            "updated_at": now,
        }

    async with unit_of_work(db, "order settlement") as uow:
        await _insert_once(db.seller_payouts, seller_payout, uow, "seller")

        seller_amounts = {"pending_payout": calc["net_amount"], "total_earnings": calc["net_amount"]}
        await increment_balances(db, "sellers", seller["_id"], seller_amounts, session=uow.session)
        uow.on_rollback(
            increment_balances, db, "sellers", seller["_id"],
            {k: -v for k, v in seller_amounts.items()},
        )

        if promotor_payout:
            await _insert_once(db.promotor_payouts, promotor_payout, uow, "promotor")

            commission = promotor_payout["commission_amount"]
            promotor_amounts = {"pending_payout": commission, "total_earnings": commission}
            await increment_balances(db, "promotors", promotor["_id"], promotor_amounts, session=uow.session)
            uow.on_rollback(
                increment_balances, db, "promotors", promotor["_id"],
                {k: -v for k, v in promotor_amounts.items()},
            )

        await db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {
                "settlement": {
                    "status": "settled",
                    "settled_at": now,
                    "seller_payout_id": seller_payout["_id"],
                    "promotor_payout_id": promotor_payout["_id"] if promotor_payout else None,
                },
                "updated_at": now,
            }},
            **uow.kw,
        )

    await record_order_event(
        db,
        order,
        "ORDER_SETTLED",
        actor_role=actor_role,
        actor=actor,
        metadata={
            "net_amount": calc["net_amount"],
            "promotor_commission": calc["promotor_commission"],
            "platform_fee": calc["platform_fee"],
        },
    )
    logger.info(
        "SETTLEMENT_CREATED order=%s seller=%s net=%s commission=%s",
        order["_id"], seller["_id"], calc["net_amount"], calc["promotor_commission"],
    )

    return {"seller_payout": seller_payout, "promotor_payout": promotor_payout}

import logging
from datetime import datetime

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config.constants import DELIVERY_EARNING_AMOUNT, MINIMUM_WITHDRAWAL_AMOUNT
from models.driver import EarningStatus, EarningType, WithdrawMode, WithdrawStatus
from utils.audit import log_audit
from utils.balances import increment_balances, release_pending_payout
from utils.crypto import seal_bank_details
from utils.errors import (
    DuplicateSettlementError,
    InsufficientFundsError,
    InvalidTransitionError,
    NotFoundError,
    ValidationError,
)
from utils.guards import get_or_404, parse_object_id
from utils.money import round_money
from utils.mongo import unit_of_work
from utils.state_machine import WITHDRAW_TRANSITIONS, assert_transition
from utils.validators import validate_bank_details, validate_upi_id

logger = logging.getLogger(__name__)


def empty_driver_earnings() -> dict:
    return {
        "total_earnings": 0.0,
        "current_balance": 0.0,
        "pending_payout": 0.0,
        "today_earnings": 0.0,
        "total_payouts": 0.0,
        "total_withdrawn": 0.0,
        "last_payout_date": None,
    }


# ======================================================
# EARNINGS LEDGER
# ======================================================

async def credit_delivery_earning(db, uow, driver_id: ObjectId, order: dict) -> dict:
    """
    Exactly one delivery earning per order, credited to the driver
    wallet in the same unit of work as the order status flip.
    """
    now = datetime.utcnow()
    amount = round_money(DELIVERY_EARNING_AMOUNT)
    address = order.get("shipping_address") or {}

    earning = {
        "_id": ObjectId(),
        "driver_id": driver_id,
        "order_id": order["_id"],
        "order_ref": order.get("order_id"),
        "reference": f"delivery:{order['_id']}",
        "amount": amount,
        "type": EarningType.DELIVERY.value,
        "description": "Delivery completed",
        "status": EarningStatus.EARNED.value,
        "payout_batch_id": None,
        "customer_address": {
            "city": address.get("city"),
            "state": address.get("state"),
            "pincode": address.get("pincode"),
        },
        "transaction_date": now,
        "created_at": now,
        "updated_at": now,
    }

    try:
        await db.driver_earnings.insert_one(earning, **uow.kw)
    except DuplicateKeyError:
        raise DuplicateSettlementError(
            "Delivery earning already recorded for this order",
            order_id=str(order["_id"]),
        )
    uow.on_rollback(db.driver_earnings.delete_one, {"_id": earning["_id"]})

    credited = await increment_balances(
        db,
        "drivers",
        driver_id,
        {
            "total_earnings": amount,
            "current_balance": amount,
            "pending_payout": amount,
            "today_earnings": amount,
        },
        set_fields={
            "work_info.availability": "online",
            "work_info.current_order": None,
        },
        session=uow.session,
    )
    if not credited:
        raise NotFoundError("Driver not found", entity="driver", id=str(driver_id))

    return earning


async def record_adjustment(
    db,
    *,
    driver_id,
    type: str,
    amount: float,
    description: str | None = None,
    admin: dict | None = None,
) -> dict:
    """
    Bonus / penalty / other entry. Penalties are stored with a negative
    amount and may not push current_balance below zero.
    """
    driver_oid = parse_object_id(driver_id, "driver_id")
    await get_or_404(db.drivers, driver_oid, "Driver")

    try:
        earning_type = EarningType(type)
    except ValueError:
        raise ValidationError(f"Unknown earning type '{type}'", field="type")
    if earning_type == EarningType.DELIVERY:
        raise ValidationError("Delivery earnings are created by delivery confirmation", field="type")

    amount = round_money(amount)
    if amount <= 0:
        raise ValidationError("Adjustment amount must be positive", field="amount")

    signed = -amount if earning_type == EarningType.PENALTY else amount
    now = datetime.utcnow()
    earning_oid = ObjectId()
    earning = {
        "_id": earning_oid,
        "driver_id": driver_oid,
        "order_id": None,
        "reference": f"{earning_type.value}:{earning_oid}",
        "amount": signed,
        "type": earning_type.value,
        "description": description or earning_type.value.title(),
        "status": EarningStatus.EARNED.value,
        "payout_batch_id": None,
        "transaction_date": now,
        "created_at": now,
        "updated_at": now,
    }

    async with unit_of_work(db, "driver adjustment") as uow:
        if signed < 0:
            applied = await increment_balances(
                db,
                "drivers",
                driver_oid,
                {"total_earnings": signed, "current_balance": signed},
                require={"current_balance": amount},
                session=uow.session,
            )
            if not applied:
                raise InsufficientFundsError(
                    "Penalty exceeds driver's current balance",
                    driver_id=str(driver_oid),
                    requested=amount,
                )
            uow.on_rollback(
                increment_balances, db, "drivers", driver_oid,
                {"total_earnings": amount, "current_balance": amount},
            )
            await release_pending_payout(db, "drivers", driver_oid, amount, session=uow.session)
        else:
            await increment_balances(
                db,
                "drivers",
                driver_oid,
                {
                    "total_earnings": signed,
                    "current_balance": signed,
                    "pending_payout": signed,
                    "today_earnings": signed,
                },
                session=uow.session,
            )
            uow.on_rollback(
                increment_balances, db, "drivers", driver_oid,
                {
                    "total_earnings": -signed,
                    "current_balance": -signed,
                    "pending_payout": -signed,
                    "today_earnings": -signed,
                },
            )

        await db.driver_earnings.insert_one(earning, **uow.kw)

    await log_audit(
        db,
        actor=admin,
        actor_role="admin",
        action=f"DRIVER_{earning_type.value.upper()}_RECORDED",
        target_type="driver",
        target_id=driver_oid,
        metadata={"amount": signed, "earning_id": str(earning_oid)},
    )
    logger.info("DRIVER_ADJUSTMENT driver=%s type=%s amount=%s", driver_oid, earning_type.value, signed)
    return earning


async def get_wallet(db, driver_id) -> dict:
    driver = await get_or_404(db.drivers, parse_object_id(driver_id, "driver_id"), "Driver")
    earnings = {**empty_driver_earnings(), **(driver.get("earnings") or {})}
    return {
        "driver_id": str(driver["_id"]),
        "name": driver.get("name"),
        **earnings,
    }


# ======================================================
# WITHDRAWALS
# ======================================================

def _payment_details(payment_mode: WithdrawMode, upi_id: str | None, bank_details: dict | None) -> dict:
    if payment_mode == WithdrawMode.UPI:
        return {"upi_id": validate_upi_id(upi_id), "bank_details": None}

    if payment_mode == WithdrawMode.BANK_TRANSFER:
        return {"upi_id": None, "bank_details": seal_bank_details(validate_bank_details(bank_details))}

    return {"upi_id": None, "bank_details": None}


async def request_withdraw(
    db,
    driver: dict,
    *,
    amount: float,
    payment_mode: str,
    upi_id: str | None = None,
    bank_details: dict | None = None,
) -> dict:
    amount = float(amount)
    if amount < MINIMUM_WITHDRAWAL_AMOUNT:
        raise ValidationError(
            f"Minimum withdrawal amount is ₹{MINIMUM_WITHDRAWAL_AMOUNT:,.2f}",
            code="BELOW_MINIMUM_WITHDRAWAL",
            minimum=MINIMUM_WITHDRAWAL_AMOUNT,
            requested=amount,
        )

    driver = await get_or_404(db.drivers, driver["_id"], "Driver")
    earnings = driver.get("earnings") or {}

    if float(earnings.get("total_earnings") or 0) < MINIMUM_WITHDRAWAL_AMOUNT:
        raise ValidationError(
            f"Withdrawals unlock after ₹{MINIMUM_WITHDRAWAL_AMOUNT:,.2f} of lifetime earnings",
            code="WITHDRAWAL_NOT_ELIGIBLE",
            minimum=MINIMUM_WITHDRAWAL_AMOUNT,
            total_earnings=earnings.get("total_earnings", 0),
        )

    available = float(earnings.get("current_balance") or 0)
    if amount > available:
        raise InsufficientFundsError(
            "Insufficient wallet balance",
            available=available,
            requested=amount,
        )

    try:
        mode = WithdrawMode(payment_mode)
    except ValueError:
        raise ValidationError(f"Unknown payment mode '{payment_mode}'", field="payment_mode")

    details = _payment_details(mode, upi_id, bank_details)
    now = datetime.utcnow()
    withdraw = {
        "_id": ObjectId(),
        "driver_id": driver["_id"],
        "amount": amount,
        "status": WithdrawStatus.PENDING.value,
        "payment_mode": mode.value,
        **details,
        "remarks": "",
        "processed_at": None,
        "created_at": now,
        "updated_at": now,
    }

    async with unit_of_work(db, "withdraw request") as uow:
        reserved = await increment_balances(
            db,
            "drivers",
            driver["_id"],
            {"current_balance": -amount, "pending_payout": amount},
            require={"current_balance": amount},
            session=uow.session,
        )
        if not reserved:
            raise InsufficientFundsError(
                "Insufficient wallet balance",
                available=available,
                requested=amount,
            )
        uow.on_rollback(
            increment_balances, db, "drivers", driver["_id"],
            {"current_balance": amount, "pending_payout": -amount},
        )

        await db.withdraws.insert_one(withdraw, **uow.kw)

    logger.info("WITHDRAW_REQUESTED driver=%s amount=%s mode=%s", driver["_id"], amount, mode.value)
    return withdraw


async def update_withdraw_status(
    db,
    withdraw_id,
    *,
    status: str,
    remarks: str | None = None,
    admin: dict | None = None,
) -> dict:
    withdraw_oid = parse_object_id(withdraw_id, "withdraw_id")
    withdraw = await get_or_404(db.withdraws, withdraw_oid, "Withdraw request")

    current = withdraw["status"]
    assert_transition(WITHDRAW_TRANSITIONS, current, status, entity="withdraw")
    target = WithdrawStatus(status)
    now = datetime.utcnow()
    amount = float(withdraw["amount"])

    fields = {"status": target.value, "updated_at": now}
    if remarks is not None:
        fields["remarks"] = remarks
    if target in {WithdrawStatus.PAID, WithdrawStatus.REJECTED}:
        fields["processed_at"] = now

    async with unit_of_work(db, "withdraw status update") as uow:
        updated = await db.withdraws.find_one_and_update(
            {"_id": withdraw_oid, "status": current},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
            **uow.kw,
        )
        if not updated:
            raise InvalidTransitionError(
                "Withdraw request was modified concurrently",
                entity="withdraw",
                current=current,
                target=target.value,
            )
        uow.on_rollback(
            db.withdraws.update_one,
            {"_id": withdraw_oid},
            {"$set": {"status": current, "updated_at": withdraw.get("updated_at")}},
        )

        if target == WithdrawStatus.PAID:
            await release_pending_payout(
                db,
                "drivers",
                withdraw["driver_id"],
                amount,
                extra={"total_withdrawn": amount},
                set_fields={"earnings.last_payout_date": now},
                session=uow.session,
            )
        elif target == WithdrawStatus.REJECTED:
            # reserved funds go back to the wallet
            await increment_balances(
                db, "drivers", withdraw["driver_id"], {"current_balance": amount}, session=uow.session
            )
            uow.on_rollback(
                increment_balances, db, "drivers", withdraw["driver_id"], {"current_balance": -amount}
            )
            await release_pending_payout(db, "drivers", withdraw["driver_id"], amount, session=uow.session)

    await log_audit(
        db,
        actor=admin,
        actor_role="admin",
        action=f"WITHDRAW_{target.value.upper()}",
        target_type="withdraw",
        target_id=withdraw_oid,
        metadata={"driver_id": str(withdraw["driver_id"]), "amount": amount, "from": current},
    )
    logger.info("WITHDRAW_STATUS withdraw=%s %s->%s", withdraw_oid, current, target.value)
    return updated

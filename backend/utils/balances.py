from datetime import datetime

from utils.money import round_money
from utils.mongo import with_session

# ==============================
# Recipient balances
# ==============================
# Drivers, sellers and promotors carry an `earnings` sub-document.
# Balances only ever move through $inc against the stored value.


def _earnings_fields(amounts: dict) -> dict:
    return {f"earnings.{k}": round_money(v) for k, v in amounts.items() if v}


async def increment_balances(
    db,
    collection: str,
    oid,
    amounts: dict,
    *,
    require: dict | None = None,
    set_fields: dict | None = None,
    session=None,
) -> bool:
    """
    Atomically $inc earnings.<key> by each amount.

    `require` maps earnings keys to the minimum stored value needed
    for the update to apply (e.g. {"current_balance": 120}).
    Returns False when the record is missing or a minimum is not met.
    """
    query = {"_id": oid}
    for key, minimum in (require or {}).items():
        query[f"earnings.{key}"] = {"$gte": minimum}

    update = {"$set": {"updated_at": datetime.utcnow(), **(set_fields or {})}}
    inc = _earnings_fields(amounts)
    if inc:
        update["$inc"] = inc

    result = await db[collection].update_one(query, update, **with_session(session))
    return result.matched_count == 1


async def release_pending_payout(
    db,
    collection: str,
    oid,
    amount: float,
    *,
    extra: dict | None = None,
    set_fields: dict | None = None,
    session=None,
) -> None:
    """
    earnings.pending_payout -= amount, floored at zero.
    `extra` holds other earnings increments applied in the same write.
    """
    amount = round_money(amount)
    now = datetime.utcnow()
    extra_inc = _earnings_fields(extra or {})

    result = await db[collection].update_one(
        {"_id": oid, "earnings.pending_payout": {"$gte": amount}},
        {
            "$inc": {"earnings.pending_payout": -amount, **extra_inc},
            "$set": {"updated_at": now, **(set_fields or {})},
        },
        **with_session(session),
    )
    if result.matched_count:
        return

    update = {"$set": {"earnings.pending_payout": 0.0, "updated_at": now, **(set_fields or {})}}
    if extra_inc:
        update["$inc"] = extra_inc
    await db[collection].update_one(
        {"_id": oid, "earnings.pending_payout": {"$not": {"$gte": amount}}},
        update,
        **with_session(session),
    )

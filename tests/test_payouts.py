from datetime import datetime

import pytest
from bson import ObjectId

from utils.driver_wallet import record_adjustment, request_withdraw, update_withdraw_status
from utils.errors import (
    AlreadyPaidError,
    InsufficientFundsError,
    InvalidTransitionError,
    NoPendingFundsError,
    NotFoundError,
    StateConflictError,
    ValidationError,
)
from utils.payout_service import batcher_for, driver_batcher, promotor_batcher, seller_batcher


async def _seller_records(db, seller, amounts):
    now = datetime.utcnow()
    docs = [
        {
            "_id": ObjectId(),
            "order_id": ObjectId(),
            "seller_id": seller["_id"],
            "net_amount": amount,
            "status": "pending",
            "payout_batch_id": None,
            "created_at": now,
        }
        for amount in amounts
    ]
    await db.seller_payouts.insert_many(docs)
    await db.sellers.update_one(
        {"_id": seller["_id"]},
        {"$set": {"earnings.pending_payout": sum(amounts), "earnings.total_earnings": sum(amounts)}},
    )
    return docs


async def test_batch_total_equals_member_sum(db, seed):
    seller = await seed.seller()
    await _seller_records(db, seller, [829.35, 436.5, 100.15])

    batch = await seller_batcher.create_batch(db, seller["_id"])

    assert batch["total_amount"] == 1366.0
    assert batch["record_count"] == 3
    assert batch["status"] == "pending"
    assert batch["batch_id"].startswith("SPO-")

    members = await db.seller_payouts.find({"payout_batch_id": batch["_id"]}).to_list(None)
    assert {m["status"] for m in members} == {"processing"}
    assert sum(m["net_amount"] for m in members) == pytest.approx(batch["total_amount"])


async def test_records_belong_to_one_live_batch(db, seed):
    seller = await seed.seller()
    await _seller_records(db, seller, [100, 200])
    await seller_batcher.create_batch(db, seller["_id"])

    with pytest.raises(NoPendingFundsError):
        await seller_batcher.create_batch(db, seller["_id"])

    await _seller_records(db, seller, [50])
    second = await seller_batcher.create_batch(db, seller["_id"])
    assert second["record_count"] == 1
    assert second["total_amount"] == 50


async def test_empty_recipient_has_no_pending_funds(db, seed):
    seller = await seed.seller()

    with pytest.raises(NoPendingFundsError):
        await seller_batcher.create_batch(db, seller["_id"])
    assert await db.payouts.count_documents({}) == 0


async def test_mark_paid_settles_members_and_balances(db, seed):
    seller = await seed.seller()
    await _seller_records(db, seller, [300, 200])
    batch = await seller_batcher.create_batch(db, seller["_id"])

    paid = await seller_batcher.mark_paid(db, batch["_id"], payment_method="bank_transfer", transaction_id="UTR123")

    assert paid["status"] == "paid"
    assert paid["transaction_id"] == "UTR123"
    members = await db.seller_payouts.find({"payout_batch_id": batch["_id"]}).to_list(None)
    assert {m["status"] for m in members} == {"paid"}

    stored = await db.sellers.find_one({"_id": seller["_id"]})
    assert stored["earnings"]["pending_payout"] == 0
    assert stored["earnings"]["total_payouts"] == 500
    assert stored["earnings"]["last_payout_date"] is not None


async def test_marking_paid_twice_is_rejected_and_balances_unchanged(db, seed):
    seller = await seed.seller()
    await _seller_records(db, seller, [300, 125])
    batch = await seller_batcher.create_batch(db, seller["_id"])
    await seller_batcher.mark_paid(db, batch["_id"], payment_method="upi")
    before = (await db.sellers.find_one({"_id": seller["_id"]}))["earnings"]

    with pytest.raises(StateConflictError) as exc:
        await seller_batcher.mark_paid(db, batch["_id"], payment_method="upi")

    assert isinstance(exc.value, AlreadyPaidError)
    after = (await db.sellers.find_one({"_id": seller["_id"]}))["earnings"]
    assert after == before


async def test_unknown_payment_method_rejected(db, seed):
    seller = await seed.seller()
    await _seller_records(db, seller, [300])
    batch = await seller_batcher.create_batch(db, seller["_id"])

    with pytest.raises(ValidationError):
        await seller_batcher.mark_paid(db, batch["_id"], payment_method="bitcoin")


async def test_cancelled_batch_releases_members(db, seed):
    seller = await seed.seller()
    await _seller_records(db, seller, [300, 200])
    batch = await seller_batcher.create_batch(db, seller["_id"])

    cancelled = await seller_batcher.update_status(db, batch["_id"], status="cancelled", notes="wrong account")

    assert cancelled["status"] == "cancelled"
    released = await db.seller_payouts.find({"seller_id": seller["_id"]}).to_list(None)
    assert {r["status"] for r in released} == {"pending"}
    assert all(r["payout_batch_id"] is None for r in released)

    rebatched = await seller_batcher.create_batch(db, seller["_id"])
    assert rebatched["total_amount"] == 500


async def test_status_transitions_follow_table(db, seed):
    seller = await seed.seller()
    await _seller_records(db, seller, [300])
    batch = await seller_batcher.create_batch(db, seller["_id"])

    with pytest.raises(ValidationError) as exc:
        await seller_batcher.update_status(db, batch["_id"], status="paid")
    assert exc.value.code == "USE_MARK_PAID"

    await seller_batcher.update_status(db, batch["_id"], status="processing")
    with pytest.raises(InvalidTransitionError):
        await seller_batcher.update_status(db, batch["_id"], status="cancelled")

    await seller_batcher.update_status(db, batch["_id"], status="failed")
    with pytest.raises(InvalidTransitionError):
        await seller_batcher.mark_paid(db, batch["_id"], payment_method="upi")


async def test_promotor_commissions_are_batched(db, seed):
    promotor = await seed.promotor()
    seller = await seed.seller(promotor=promotor)
    product = await seed.product(seller, price=1000)
    user = await seed.user()
    for _ in range(2):
        order = await seed.order(user, product)
        await seed.delivered(order, await seed.driver(), paid_amount=1000)

    batch = await batcher_for("promotor").create_batch(db, promotor["_id"])
    assert batch["total_amount"] == 100
    assert len(batch["order_ids"]) == 2

    await promotor_batcher.mark_paid(db, batch["_id"], payment_method="upi")
    stored = await db.promotors.find_one({"_id": promotor["_id"]})
    assert stored["earnings"]["pending_payout"] == 0
    assert stored["earnings"]["total_payouts"] == 100


async def _promotor_batch(db, seed, amount=75.0):
    promotor = await seed.promotor()
    await db.promotor_payouts.insert_one({
        "_id": ObjectId(),
        "order_id": ObjectId(),
        "promotor_id": promotor["_id"],
        "commission_amount": amount,
        "status": "pending",
        "payout_batch_id": None,
        "created_at": datetime.utcnow(),
    })
    return promotor, await promotor_batcher.create_batch(db, promotor["_id"])


async def test_seller_batcher_cannot_settle_promotor_batch(db, seed):
    _, batch = await _promotor_batch(db, seed)

    with pytest.raises(NotFoundError):
        await seller_batcher.mark_paid(db, batch["_id"], payment_method="upi")
    with pytest.raises(NotFoundError):
        await seller_batcher.update_status(db, batch["_id"], status="cancelled")

    stored = await db.payouts.find_one({"_id": batch["_id"]})
    assert stored["status"] == "pending"
    members = await db.promotor_payouts.find({"payout_batch_id": batch["_id"]}).to_list(None)
    assert {m["status"] for m in members} == {"processing"}

    paid = await promotor_batcher.mark_paid(db, batch["_id"], payment_method="upi")
    assert paid["status"] == "paid"
    members = await db.promotor_payouts.find({"payout_batch_id": batch["_id"]}).to_list(None)
    assert {m["status"] for m in members} == {"paid"}



async def test_driver_batch_over_earnings(db, seed):
    driver = await seed.driver()
    await record_adjustment(db, driver_id=driver["_id"], type="bonus", amount=50)
    await record_adjustment(db, driver_id=driver["_id"], type="other", amount=30)

    batch = await driver_batcher.create_batch(db, driver["_id"], payout_method="upi")

    assert batch["batch_id"].startswith("DPO-")
    assert batch["total_amount"] == 80
    earnings = await db.driver_earnings.find({"driver_id": driver["_id"]}).to_list(None)
    assert {e["status"] for e in earnings} == {"payout_processing"}

    await driver_batcher.mark_paid(db, batch["_id"], payment_method="upi")

    stored = await db.drivers.find_one({"_id": driver["_id"]})
    assert stored["earnings"]["pending_payout"] == 0
    assert stored["earnings"]["total_payouts"] == 80
    assert stored["earnings"]["current_balance"] >= 0
    earnings = await db.driver_earnings.find({"driver_id": driver["_id"]}).to_list(None)
    assert {e["status"] for e in earnings} == {"payout_paid"}


async def _withdraw_and_pay(db, driver, amount):
    withdraw = await request_withdraw(db, driver, amount=amount, payment_mode="upi", upi_id="kiran@okbank")
    await update_withdraw_status(db, withdraw["_id"], status="approved")
    await update_withdraw_status(db, withdraw["_id"], status="paid")


async def test_withdrawn_earnings_cannot_be_batched_again(db, seed):
    driver = await seed.driver()
    await record_adjustment(db, driver_id=driver["_id"], type="bonus", amount=150)
    await _withdraw_and_pay(db, driver, 150)

    with pytest.raises(NoPendingFundsError):
        await driver_batcher.create_batch(db, driver["_id"], payout_method="upi")

    earnings = (await db.drivers.find_one({"_id": driver["_id"]}))["earnings"]
    assert earnings.get("total_withdrawn", 0) + earnings.get("total_payouts", 0) <= 150
    assert await db.driver_payouts.count_documents({}) == 0


async def test_driver_batch_only_takes_what_the_balance_covers(db, seed):
    driver = await seed.driver()
    await record_adjustment(db, driver_id=driver["_id"], type="bonus", amount=100)
    await record_adjustment(db, driver_id=driver["_id"], type="bonus", amount=80)
    await _withdraw_and_pay(db, driver, 100)

    batch = await driver_batcher.create_batch(db, driver["_id"], payout_method="upi")
    assert batch["total_amount"] == 80
    await driver_batcher.mark_paid(db, batch["_id"], payment_method="upi")

    earnings = (await db.drivers.find_one({"_id": driver["_id"]}))["earnings"]
    assert earnings["current_balance"] == 0
    assert earnings["total_withdrawn"] + earnings["total_payouts"] == 180


async def test_batched_balance_cannot_be_withdrawn_until_batch_is_cancelled(db, seed):
    driver = await seed.driver()
    await record_adjustment(db, driver_id=driver["_id"], type="bonus", amount=150)
    batch = await driver_batcher.create_batch(db, driver["_id"], payout_method="upi")

    assert (await db.drivers.find_one({"_id": driver["_id"]}))["earnings"]["current_balance"] == 0
    with pytest.raises(InsufficientFundsError):
        await request_withdraw(db, driver, amount=150, payment_mode="upi", upi_id="kiran@okbank")

    await driver_batcher.update_status(db, batch["_id"], status="cancelled")

    assert (await db.drivers.find_one({"_id": driver["_id"]}))["earnings"]["current_balance"] == 150
    withdraw = await request_withdraw(db, driver, amount=150, payment_mode="upi", upi_id="kiran@okbank")
    assert withdraw["status"] == "pending"



async def test_batch_listing_by_recipient(db, seed):
    seller, other = await seed.seller(), await seed.seller()
    await _seller_records(db, seller, [100])
    await _seller_records(db, other, [200])
    await seller_batcher.create_batch(db, seller["_id"])
    await seller_batcher.create_batch(db, other["_id"])

    page = await seller_batcher.list_batches(db, recipient_id=seller["_id"])

    assert page["total"] == 1
    assert page["items"][0]["recipient_id"] == str(seller["_id"])

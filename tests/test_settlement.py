import pytest
from pymongo.errors import DuplicateKeyError

from utils.errors import DuplicateSettlementError, StateConflictError
from utils.reports import platform_settlement_summary
from utils.settlement_service import settle_order


@pytest.fixture
async def promoted(seed):
    promotor = await seed.promotor(commission_type="percentage", commission_rate=5)
    seller = await seed.seller(promotor=promotor)
    product = await seed.product(seller, price=1000)
    return promotor, seller, product


async def test_delivery_settles_seller_and_promotor(db, seed, promoted):
    promotor, seller, product = promoted
    order = await seed.order(await seed.user(), product)

    await seed.delivered(order, await seed.driver(), paid_amount=1000)

    seller_payout = await db.seller_payouts.find_one({"order_id": order["_id"]})
    assert seller_payout["promotor_commission"] == 50
    assert seller_payout["platform_fee"] == 95
    assert seller_payout["payable_amount"] == 855
    assert seller_payout["gst_on_platform_fee"] == 17.1
    assert seller_payout["tds_deduction"] == 8.55
    assert seller_payout["net_amount"] == 829.35
    assert seller_payout["status"] == "pending"

    promotor_payout = await db.promotor_payouts.find_one({"order_id": order["_id"]})
    assert promotor_payout["commission_amount"] == 50
    assert promotor_payout["commission_type"] == "percentage"

    stored_seller = await db.sellers.find_one({"_id": seller["_id"]})
    assert stored_seller["earnings"]["pending_payout"] == 829.35
    stored_promotor = await db.promotors.find_one({"_id": promotor["_id"]})
    assert stored_promotor["earnings"]["pending_payout"] == 50

    stored_order = await db.orders.find_one({"_id": order["_id"]})
    assert stored_order["settlement"]["status"] == "settled"


async def test_second_settlement_fails_closed(db, seed, promoted):
    _, seller, product = promoted
    order = await seed.order(await seed.user(), product)
    await seed.delivered(order, await seed.driver(), paid_amount=1000)

    with pytest.raises(DuplicateSettlementError):
        await settle_order(db, order["_id"])

    assert await db.seller_payouts.count_documents({"order_id": order["_id"]}) == 1
    assert await db.promotor_payouts.count_documents({"order_id": order["_id"]}) == 1
    stored_seller = await db.sellers.find_one({"_id": seller["_id"]})
    assert stored_seller["earnings"]["pending_payout"] == 829.35


async def test_unique_pair_constraint_rejects_direct_duplicate(db, seed, promoted):
    _, seller, product = promoted
    order = await seed.order(await seed.user(), product)
    await seed.delivered(order, await seed.driver(), paid_amount=1000)

    with pytest.raises(DuplicateKeyError):
        await db.seller_payouts.insert_one({"order_id": order["_id"], "seller_id": seller["_id"]})


async def test_undelivered_order_is_not_settleable(db, seed, promoted):
    _, _, product = promoted
    order = await seed.order(await seed.user(), product)

    with pytest.raises(StateConflictError) as exc:
        await settle_order(db, order["_id"])
    assert exc.value.code == "ORDER_NOT_SETTLEABLE"


async def test_zero_commission_creates_no_promotor_payout(db, seed):
    promotor = await seed.promotor(commission_rate=0)
    seller = await seed.seller(promotor=promotor)
    product = await seed.product(seller, price=200)
    order = await seed.order(await seed.user(), product)

    await seed.delivered(order, await seed.driver(), paid_amount=200)

    assert await db.promotor_payouts.count_documents({}) == 0
    assert await db.seller_payouts.count_documents({}) == 1


async def test_misconfigured_commission_is_reported_not_settled(db, seed):
    promotor = await seed.promotor(commission_type="fixed", commission_rate=500)
    seller = await seed.seller(promotor=promotor)
    product = await seed.product(seller, price=100)
    order = await seed.order(await seed.user(), product)

    result = await seed.delivered(order, await seed.driver(), paid_amount=100)

    # the delivery stands; settlement is flagged for an admin
    assert result["order"]["status"] == "delivered"
    assert result["settlement"]["status"] == "failed"
    assert result["settlement"]["error"]["kind"] == "InsufficientFundsError"
    assert await db.seller_payouts.count_documents({}) == 0
    stored_seller = await db.sellers.find_one({"_id": seller["_id"]})
    assert stored_seller["earnings"]["pending_payout"] == 0


async def test_platform_summary(db, seed, promoted):
    _, _, product = promoted
    user = await seed.user()
    for _ in range(2):
        order = await seed.order(user, product)
        await seed.delivered(order, await seed.driver(), paid_amount=1000)

    summary = await platform_settlement_summary(db)

    assert summary["orders"] == 2
    assert summary["platform_fee"] == 190
    assert summary["promotor_commission"] == 100
    assert summary["tds_deduction"] == 17.1
    assert summary["driver_earnings"] == 36

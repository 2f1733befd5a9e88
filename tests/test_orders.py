import asyncio

import pytest
from pymongo.errors import PyMongoError

from utils import order_service
from utils.errors import (
    AlreadyAssignedError,
    AmountMismatchError,
    InternalError,
    InvalidTransitionError,
    NonServiceableError,
    NotFoundError,
    PermissionDeniedError,
    StateConflictError,
    ValidationError,
)
from utils.notifications import register_order_status_listener, unregister_order_status_listener
from utils.order_service import (
    accept_order,
    cancel_order,
    create_order,
    mark_delivered,
    mark_picked_up,
    record_payment,
    set_availability,
    update_order_status,
    verify_secret_code,
)
from utils.pricing import calculate_discount, validate_coupon

from conftest import ADDRESS


@pytest.fixture
async def catalog(seed):
    seller = await seed.seller()
    product = await seed.product(seller, price=500)
    return seller, product


async def _coupon_for(db, user, amount=1000):
    coupon = await validate_coupon(db, "SAVE100", user["_id"], amount)
    return {**coupon, "discount": calculate_discount(coupon, amount)}


# ======================================================
# CREATION
# ======================================================

async def test_partial_wallet_order(db, seed, catalog):
    _, product = catalog
    user = await seed.user(wallet=50)
    await seed.coupon()

    order = await seed.order(user, product, quantity=2, use_wallet=True, coupon=await _coupon_for(db, user))

    assert order["order_id"].startswith("FST")
    assert order["final_amount"] == 900
    assert order["wallet_deduction"] == 50
    assert order["cash_on_delivery"] == 850
    assert order["payment_status"] == "pending"
    assert order["coupon"] == {"code": "SAVE100", "discount": 100}
    assert len(order["secret_code"]) == 6

    user_after = await db.users.find_one({"_id": user["_id"]})
    assert user_after["wallet"] == 0
    coupon = await db.coupons.find_one({"code": "SAVE100"})
    assert coupon["used_count"] == 1


async def test_wallet_covered_order_is_paid(db, seed, catalog):
    _, product = catalog
    user = await seed.user(wallet=1000)
    await seed.coupon()

    order = await seed.order(user, product, quantity=2, use_wallet=True, coupon=await _coupon_for(db, user))

    assert order["wallet_deduction"] == 900
    assert order["cash_on_delivery"] == 0
    assert order["payment_status"] == "paid"
    assert (await db.users.find_one({"_id": user["_id"]}))["wallet"] == 100


async def test_order_ids_are_sequential(seed, catalog):
    _, product = catalog
    user = await seed.user()

    first = await seed.order(user, product)
    second = await seed.order(user, product)

    assert int(second["order_id"][3:]) == int(first["order_id"][3:]) + 1


async def test_non_serviceable_pincode_lists_every_product(db, seed):
    seller = await seed.seller()
    covered = await seed.product(seller, pincodes=["560001"], name="Covered")
    elsewhere = await seed.product(seller, pincodes=["560001"], name="Elsewhere")
    nowhere = await seed.product(seller, pincodes=[], name="Nowhere")
    user = await seed.user(wallet=500)

    with pytest.raises(NonServiceableError) as exc:
        await create_order(
            db,
            user,
            items=[
                {"product_id": str(p["_id"]), "quantity": 1, "price": 100}
                for p in (covered, elsewhere, nowhere)
            ],
            shipping_address={**ADDRESS, "pincode": "560002"},
            use_wallet=True,
        )

    failing = {p["product_id"] for p in exc.value.products}
    assert failing == {str(covered["_id"]), str(elsewhere["_id"]), str(nowhere["_id"])}
    assert exc.value.detail["pincode"] == "560002"
    assert await db.orders.count_documents({}) == 0
    assert (await db.users.find_one({"_id": user["_id"]}))["wallet"] == 500


async def test_missing_serviceability_list_is_not_serviceable(seed):
    seller = await seed.seller()
    product = await seed.product(seller, pincodes=None)
    user = await seed.user()

    with pytest.raises(NonServiceableError):
        await seed.order(user, product)


async def test_pincode_comparison_is_normalized(db, seed):
    seller = await seed.seller()
    product = await seed.product(seller, pincodes=[" ab12 "])
    user = await seed.user()

    order = await create_order(
        db,
        user,
        items=[{"product_id": str(product["_id"]), "quantity": 1, "price": 10}],
        shipping_address={**ADDRESS, "pincode": "AB12"},
    )
    assert order["status"] == "pending"


@pytest.mark.parametrize(
    "items, address",
    [
        ([], ADDRESS),
        ([{"product_id": "000000000000000000000000", "quantity": 1, "price": 1}], {**ADDRESS, "pincode": ""}),
    ],
)
async def test_missing_items_or_pincode(db, seed, items, address):
    user = await seed.user()

    with pytest.raises(ValidationError):
        await create_order(db, user, items=items, shipping_address=address)


async def test_unknown_product(db, seed):
    user = await seed.user()

    with pytest.raises(NotFoundError):
        await create_order(
            db,
            user,
            items=[{"product_id": "000000000000000000000000", "quantity": 1, "price": 1}],
            shipping_address=ADDRESS,
        )


async def test_items_from_two_sellers_rejected(db, seed):
    a = await seed.product(await seed.seller())
    b = await seed.product(await seed.seller())
    user = await seed.user()

    with pytest.raises(ValidationError) as exc:
        await create_order(
            db,
            user,
            items=[{"product_id": str(p["_id"]), "quantity": 1, "price": 10} for p in (a, b)],
            shipping_address=ADDRESS,
        )
    assert exc.value.code == "MULTIPLE_SELLERS"


async def test_storage_failure_rolls_back_wallet_and_coupon(db, seed, catalog, monkeypatch):
    _, product = catalog
    user = await seed.user(wallet=50)
    await seed.coupon(usage_limit=10)
    coupon = await _coupon_for(db, user)

    async def broken_sequence(*args, **kwargs):
        raise PyMongoError("connection reset")

    monkeypatch.setattr(order_service, "next_sequence", broken_sequence)

    with pytest.raises(InternalError):
        await seed.order(user, product, quantity=2, use_wallet=True, coupon=coupon)

    assert (await db.users.find_one({"_id": user["_id"]}))["wallet"] == 50
    assert (await db.coupons.find_one({"code": "SAVE100"}))["used_count"] == 0
    assert await db.coupon_redemptions.count_documents({}) == 0
    assert await db.orders.count_documents({}) == 0


async def test_per_user_coupon_limit_enforced_at_creation(db, seed, catalog):
    _, product = catalog
    user = await seed.user()
    await seed.coupon()
    coupon = await _coupon_for(db, user)

    await seed.order(user, product, quantity=2, coupon=coupon)

    # a stale pre-validation must not allow a second redemption
    with pytest.raises(ValidationError) as exc:
        await seed.order(user, product, quantity=2, coupon=coupon)
    assert exc.value.code == "COUPON_PER_USER_LIMIT"
    assert await db.orders.count_documents({}) == 1
    assert (await db.coupons.find_one({"code": "SAVE100"}))["used_count"] == 1


# ======================================================
# DRIVER FLOW
# ======================================================

async def test_only_one_driver_wins_acceptance(db, seed, catalog):
    _, product = catalog
    order = await seed.order(await seed.user(), product)
    first, second = await seed.driver(), await seed.driver()

    results = await asyncio.gather(
        accept_order(db, order["_id"], first),
        accept_order(db, order["_id"], second),
        return_exceptions=True,
    )

    winners = [r for r in results if isinstance(r, dict)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1 and isinstance(losers[0], AlreadyAssignedError)

    stored = await db.orders.find_one({"_id": order["_id"]})
    winner = await db.drivers.find_one({"_id": stored["driver_id"]})
    assert winner["work_info"]["availability"] == "on-delivery"
    assert winner["work_info"]["current_order"] == order["_id"]


async def test_offline_driver_cannot_accept(db, seed, catalog):
    _, product = catalog
    order = await seed.order(await seed.user(), product)
    driver = await seed.driver(availability="offline")

    with pytest.raises(StateConflictError) as exc:
        await accept_order(db, order["_id"], driver)
    assert exc.value.code == "DRIVER_NOT_AVAILABLE"


async def test_driver_on_delivery_cannot_go_offline(db, seed, catalog):
    _, product = catalog
    order = await seed.order(await seed.user(), product)
    driver = await seed.driver()
    await accept_order(db, order["_id"], driver)

    with pytest.raises(StateConflictError):
        await set_availability(db, driver, "offline")


async def test_only_assigned_driver_can_pick_up(db, seed, catalog):
    _, product = catalog
    order = await seed.order(await seed.user(), product)
    driver, other = await seed.driver(), await seed.driver()
    await accept_order(db, order["_id"], driver)

    with pytest.raises(PermissionDeniedError):
        await mark_picked_up(db, order["_id"], other)


async def test_wrong_secret_code(db, seed, catalog):
    _, product = catalog
    order = await seed.order(await seed.user(), product)
    driver = await seed.driver()
    await accept_order(db, order["_id"], driver)
    await mark_picked_up(db, order["_id"], driver)

    wrong = "000000" if order["secret_code"] != "000000" else "111111"
    with pytest.raises(ValidationError) as exc:
        await verify_secret_code(db, order["_id"], driver, wrong)
    assert exc.value.code == "INVALID_SECRET_CODE"


async def test_delivery_requires_verified_code(db, seed, catalog):
    _, product = catalog
    order = await seed.order(await seed.user(), product)
    driver = await seed.driver()
    await accept_order(db, order["_id"], driver)
    await mark_picked_up(db, order["_id"], driver)

    with pytest.raises(StateConflictError) as exc:
        await mark_delivered(db, order["_id"], driver, 500)
    assert exc.value.code == "SECRET_CODE_NOT_VERIFIED"


async def test_cod_amount_mismatch_is_rejected(db, seed, catalog):
    _, product = catalog
    order = await seed.order(await seed.user(), product)
    driver = await seed.driver()
    await seed.picked_up(order, driver)

    with pytest.raises(AmountMismatchError) as exc:
        await mark_delivered(db, order["_id"], driver, 499)

    detail = exc.value.detail
    assert detail["expected"] == 500
    assert detail["received"] == 499
    assert detail["difference"] == 1
    assert "expected ₹500.00, received ₹499.00" in detail["message"]

    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == "picked-up"
    assert await db.driver_earnings.count_documents({}) == 0


async def test_cod_delivery_credits_driver_and_settles(db, seed, catalog):
    seller, product = catalog
    order = await seed.order(await seed.user(), product)
    driver = await seed.driver()

    result = await seed.delivered(order, driver, paid_amount=500)

    assert result["order"]["status"] == "delivered"
    assert result["order"]["payment_status"] == "paid"
    assert result["earning"]["amount"] == 18
    assert result["earning"]["reference"] == f"delivery:{order['_id']}"
    assert result["settlement"]["status"] == "settled"

    stored_driver = await db.drivers.find_one({"_id": driver["_id"]})
    assert stored_driver["earnings"]["total_earnings"] == 18
    assert stored_driver["earnings"]["current_balance"] == 18
    assert stored_driver["earnings"]["pending_payout"] == 18
    assert stored_driver["earnings"]["today_earnings"] == 18
    assert stored_driver["work_info"]["availability"] == "online"
    assert stored_driver["work_info"]["current_order"] is None

    payout = await db.seller_payouts.find_one({"order_id": order["_id"]})
    assert payout["seller_id"] == seller["_id"]
    # 500 - 10% fee (50) - 18% GST on fee (9) - 1% TDS on 450 (4.5)
    assert payout["net_amount"] == 436.5


async def test_fully_wallet_paid_cod_needs_no_collection(db, seed, catalog):
    _, product = catalog
    user = await seed.user(wallet=600)
    order = await seed.order(user, product, use_wallet=True)
    driver = await seed.driver()
    await seed.picked_up(order, driver)

    result = await mark_delivered(db, order["_id"], driver)

    assert result["order"]["status"] == "delivered"


async def test_failed_earning_credit_rolls_back_delivery(db, seed, catalog, monkeypatch):
    _, product = catalog
    order = await seed.order(await seed.user(), product)
    driver = await seed.driver()
    await seed.picked_up(order, driver)

    async def broken_credit(*args, **kwargs):
        raise PyMongoError("connection reset")

    monkeypatch.setattr(order_service, "credit_delivery_earning", broken_credit)

    with pytest.raises(InternalError):
        await mark_delivered(db, order["_id"], driver, 500)

    stored = await db.orders.find_one({"_id": order["_id"]})
    assert stored["status"] == "picked-up"
    assert stored["payment_status"] == "pending"
    assert stored["paid_at"] is None
    assert stored["delivered_at"] is None



async def test_delivery_cannot_repeat(db, seed, catalog):
    _, product = catalog
    order = await seed.order(await seed.user(), product)
    driver = await seed.driver()
    await seed.delivered(order, driver)

    with pytest.raises(InvalidTransitionError):
        await mark_delivered(db, order["_id"], driver, 500)
    assert await db.driver_earnings.count_documents({"driver_id": driver["_id"]}) == 1


async def test_status_listener_receives_changes(db, seed, catalog):
    _, product = catalog
    seen = []

    async def listener(order_id, status):
        seen.append((order_id, status))

    async def broken(order_id, status):
        raise RuntimeError("push service down")

    register_order_status_listener(listener)
    register_order_status_listener(broken)
    try:
        order = await seed.order(await seed.user(), product)
        await accept_order(db, order["_id"], await seed.driver())
    finally:
        unregister_order_status_listener(listener)
        unregister_order_status_listener(broken)

    assert seen == [(str(order["_id"]), "pending"), (str(order["_id"]), "accepted")]


# ======================================================
# ADMIN
# ======================================================

async def test_online_payment_after_delivery_triggers_settlement(db, seed, catalog):
    _, product = catalog
    admin = await seed.admin()
    order = await seed.order(await seed.user(), product, payment_method="online")
    result = await seed.delivered(order, await seed.driver())
    assert result["settlement"]["status"] == "pending"

    paid = await record_payment(db, order["_id"], status="paid", transaction_id="pay_123", admin=admin)

    assert paid["order"]["payment_status"] == "paid"
    assert paid["settlement"]["status"] == "settled"
    assert await db.seller_payouts.count_documents({"order_id": order["_id"]}) == 1

    with pytest.raises(StateConflictError) as exc:
        await record_payment(db, order["_id"], status="paid", admin=admin)
    assert exc.value.code == "ALREADY_PAID"


async def test_payment_outcome_only_for_online_orders(db, seed, catalog):
    _, product = catalog
    order = await seed.order(await seed.user(), product)

    with pytest.raises(ValidationError):
        await record_payment(db, order["_id"], status="paid")


async def test_cancellation_refunds_wallet_and_releases_driver(db, seed, catalog):
    _, product = catalog
    admin = await seed.admin()
    user = await seed.user(wallet=50)
    order = await seed.order(user, product, use_wallet=True)
    driver = await seed.driver()
    await accept_order(db, order["_id"], driver)

    cancelled = await cancel_order(db, order["_id"], admin=admin, reason="customer request")

    assert cancelled["status"] == "cancelled"
    assert cancelled["refund_amount"] == 50
    assert cancelled["refund_status"] == "processed"
    assert (await db.users.find_one({"_id": user["_id"]}))["wallet"] == 50

    stored_driver = await db.drivers.find_one({"_id": driver["_id"]})
    assert stored_driver["work_info"]["availability"] == "online"
    assert await db.audit_logs.count_documents({"action": "ORDER_CANCELLED"}) == 1


async def test_cancellation_releases_coupon_redemption(db, seed, catalog):
    _, product = catalog
    user = await seed.user()
    await seed.coupon()

    order = await seed.order(user, product, quantity=2, coupon=await _coupon_for(db, user))
    await cancel_order(db, order["_id"], admin=await seed.admin())

    redemption = await db.coupon_redemptions.find_one({"order_id": order["_id"]})
    assert redemption["status"] == "released"
    assert redemption["released_at"] is not None
    assert (await db.coupons.find_one({"code": "SAVE100"}))["used_count"] == 0

    # the per-user allowance comes back with the cancelled order
    again = await seed.order(user, product, quantity=2, coupon=await _coupon_for(db, user))
    assert again["coupon"]["code"] == "SAVE100"
    assert (await db.coupons.find_one({"code": "SAVE100"}))["used_count"] == 1
    assert await db.coupon_redemptions.count_documents({"user_id": user["_id"], "status": "active"}) == 1



async def test_delivered_order_cannot_be_cancelled(db, seed, catalog):
    _, product = catalog
    order = await seed.order(await seed.user(), product)
    await seed.delivered(order, await seed.driver())

    with pytest.raises(InvalidTransitionError):
        await cancel_order(db, order["_id"])


async def test_admin_override_only_cancels(db, seed, catalog):
    _, product = catalog
    order = await seed.order(await seed.user(), product)

    with pytest.raises(InvalidTransitionError):
        await update_order_status(db, order["_id"], status="delivered")

    cancelled = await update_order_status(db, order["_id"], status="cancelled")
    assert cancelled["status"] == "cancelled"

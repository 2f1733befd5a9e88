import hmac
import logging
import secrets
from datetime import datetime

from bson import ObjectId
from pymongo import ReturnDocument
from pymongo.errors import DuplicateKeyError

from config.env import ORDER_ID_PREFIX
from models.driver import DriverAvailability
from models.order import OrderStatus, PaymentMethod, PaymentStatus
from utils.audit import log_audit
from utils.driver_wallet import credit_delivery_earning
from utils.errors import (
    AlreadyAssignedError,
    AlreadyPaidError,
    AmountMismatchError,
    InsufficientFundsError,
    InternalError,
    InvalidTransitionError,
    NonServiceableError,
    NotFoundError,
    PermissionDeniedError,
    SettlementError,
    StateConflictError,
    ValidationError,
)
from utils.guards import assert_assigned_driver, get_or_404, parse_object_id
from utils.mongo import next_sequence, unit_of_work
from utils.notifications import notify_order_status_changed
from utils.order_timeline import record_order_event
from utils.pricing import REDEMPTION_ACTIVE, REDEMPTION_RELEASED, price_order
from utils.reports import build_record_query, paginate
from utils.settlement_service import settle_order
from utils.state_machine import ORDER_TRANSITIONS, assert_transition
from utils.tax import build_tax_invoice
from utils.validators import is_serviceable, normalize_pincode

logger = logging.getLogger(__name__)

ACTIVE_STATUSES = [OrderStatus.ACCEPTED.value, OrderStatus.PICKED_UP.value]


def generate_secret_code() -> str:
    return f"{secrets.randbelow(10 ** 6):06d}"


async def _status_changed(db, order: dict, event: str, actor_role: str, actor=None, metadata=None):
    await record_order_event(db, order, event, actor_role=actor_role, actor=actor, metadata=metadata)
    await notify_order_status_changed(order["_id"], order["status"])


# ======================================================
# CREATE
# ======================================================

async def _load_products(db, items: list[dict]) -> dict:
    product_ids = [parse_object_id(i["product_id"], "product_id") for i in items]
    products = await db.products.find({"_id": {"$in": product_ids}}).to_list(None)
    by_id = {p["_id"]: p for p in products}

    missing = [str(pid) for pid in product_ids if pid not in by_id]
    if missing:
        raise NotFoundError("Product not found", entity="product", product_ids=missing)

    return by_id


async def _resolve_seller_id(db, products: list[dict]):
    seller_ids = set()
    for product in products:
        seller_id = product.get("seller_id")
        if seller_id is None:
            seller = await db.sellers.find_one({"products": product["_id"]}, {"_id": 1})
            seller_id = seller["_id"] if seller else None
        if seller_id is None:
            raise NotFoundError("Seller not found for product", entity="seller", product_id=str(product["_id"]))
        seller_ids.add(seller_id)

    if len(seller_ids) > 1:
        raise ValidationError(
            "All items of an order must belong to one seller",
            code="MULTIPLE_SELLERS",
            seller_ids=[str(s) for s in seller_ids],
        )
    return seller_ids.pop()


async def _reserve_coupon(db, uow, coupon: dict, user_id, order_oid):
    per_user_limit = int(coupon.get("per_user_limit") or 1)
    mine = {"coupon_id": coupon["_id"], "user_id": user_id}
    # released rows keep their sequence so numbering never repeats
    issued = await db.coupon_redemptions.count_documents(mine, **uow.kw)
    used = await db.coupon_redemptions.count_documents({**mine, "status": {"$ne": REDEMPTION_RELEASED}}, **uow.kw)
    if used >= per_user_limit:
        raise ValidationError(
            "You have already used this coupon",
            code="COUPON_PER_USER_LIMIT",
            coupon_code=coupon["code"],
        )

    redemption = {
        "_id": ObjectId(),
        "coupon_id": coupon["_id"],
        "code": coupon["code"],
        "user_id": user_id,
        # unique (coupon, user, sequence) rejects a concurrent redemption
        "sequence": issued + 1,
        "order_id": order_oid,
        "status": REDEMPTION_ACTIVE,
        "discount": coupon["discount"],
        "created_at": datetime.utcnow(),
    }
    try:
        await db.coupon_redemptions.insert_one(redemption, **uow.kw)
    except DuplicateKeyError:
        raise StateConflictError(
            "Coupon is being redeemed by another order",
            code="COUPON_REDEMPTION_CONFLICT",
            coupon_code=coupon["code"],
        )
    uow.on_rollback(db.coupon_redemptions.delete_one, {"_id": redemption["_id"]})

    query = {"_id": coupon["_id"]}
    if coupon.get("usage_limit") is not None:
        query["used_count"] = {"$lt": coupon["usage_limit"]}
    result = await db.coupons.update_one(query, {"$inc": {"used_count": 1}}, **uow.kw)
    if result.matched_count == 0:
        raise ValidationError("Coupon usage limit reached", code="COUPON_EXHAUSTED", coupon_code=coupon["code"])
    uow.on_rollback(db.coupons.update_one, {"_id": coupon["_id"]}, {"$inc": {"used_count": -1}})


async def _release_coupon(db, uow, order_oid, now):
    redemption = await db.coupon_redemptions.find_one_and_update(
        {"order_id": order_oid, "status": {"$ne": REDEMPTION_RELEASED}},
        {"$set": {"status": REDEMPTION_RELEASED, "released_at": now}},
        **uow.kw,
    )
    if not redemption:
        return None
    uow.on_rollback(
        db.coupon_redemptions.update_one,
        {"_id": redemption["_id"]},
        {"$set": {"status": redemption.get("status", REDEMPTION_ACTIVE), "released_at": None}},
    )

    result = await db.coupons.update_one(
        {"_id": redemption["coupon_id"], "used_count": {"$gt": 0}},
        {"$inc": {"used_count": -1}},
        **uow.kw,
    )
    if result.modified_count:
        uow.on_rollback(db.coupons.update_one, {"_id": redemption["coupon_id"]}, {"$inc": {"used_count": 1}})
    return redemption["code"]


async def create_order(
    db,
    user: dict,
    *,
    items: list[dict],
    shipping_address: dict,
    payment_method: str = PaymentMethod.COD.value,
    use_wallet: bool = False,
    coupon: dict | None = None,
) -> dict:
    """
    Creates one order for one seller.

    `coupon` is a coupon record already validated by the caller,
    carrying the computed `discount`. The wallet debit, coupon
    redemption and order insert persist together or not at all.
    """
    if not items:
        raise ValidationError("Order must contain at least one item", field="items")

    shipping_address = dict(shipping_address or {})
    pincode = normalize_pincode(shipping_address.get("pincode"))
    if not pincode:
        raise ValidationError("Shipping address must include a pincode", field="shipping_address.pincode")

    try:
        payment_method = PaymentMethod(payment_method).value
    except ValueError:
        raise ValidationError(f"Unknown payment method '{payment_method}'", field="payment_method")

    user = await get_or_404(db.users, parse_object_id(user["_id"], "user_id"), "User")
    products = await _load_products(db, items)

    failing = []
    for item in items:
        product = products[parse_object_id(item["product_id"], "product_id")]
        if not is_serviceable(product, pincode):
            failing.append({"product_id": str(product["_id"]), "name": product.get("name")})
    if failing:
        # deduplicate while keeping order
        failing = list({p["product_id"]: p for p in failing}.values())
        raise NonServiceableError(shipping_address["pincode"], failing)

    seller_id = await _resolve_seller_id(db, list(products.values()))

    lines = [
        {
            "product_id": parse_object_id(i["product_id"], "product_id"),
            "name": products[parse_object_id(i["product_id"], "product_id")].get("name"),
            "quantity": int(i["quantity"]),
            "price": float(i["price"]),
        }
        for i in items
    ]

    pricing = price_order(
        lines,
        coupon_discount=coupon["discount"] if coupon else None,
        wallet_balance=float(user.get("wallet") or 0),
        use_wallet=use_wallet,
    )

    now = datetime.utcnow()
    order = {
        "_id": ObjectId(),
        "user_id": user["_id"],
        "seller_id": seller_id,
        "driver_id": None,
        "items": lines,
        "subtotal": pricing["subtotal"],
        "coupon": {"code": coupon["code"], "discount": pricing["discount"]} if coupon else None,
        "discount": pricing["discount"],
        "final_amount": pricing["final_amount"],
        "wallet_deduction": pricing["wallet_deduction"],
        "cash_on_delivery": pricing["cash_on_delivery"],
        "payment_method": payment_method,
        "payment_status": pricing["payment_status"],
        "transaction_id": None,
        "status": OrderStatus.PENDING.value,
        "shipping_address": shipping_address,
        "secret_code": generate_secret_code(),
        "is_secret_code_verified": False,
        "driver_paid_amount": None,
        "settlement": {"status": "pending"},
        "refund_amount": 0.0,
        "refund_status": None,
        "created_at": now,
        "updated_at": now,
        "accepted_at": None,
        "picked_up_at": None,
        "delivered_at": None,
        "cancelled_at": None,
        "cancellation_reason": None,
    }

    async with unit_of_work(db, "order creation") as uow:
        wallet_deduction = pricing["wallet_deduction"]
        if wallet_deduction > 0:
            result = await db.users.update_one(
                {"_id": user["_id"], "wallet": {"$gte": wallet_deduction}},
                {"$inc": {"wallet": -wallet_deduction}},
                **uow.kw,
            )
            if result.matched_count == 0:
                raise InsufficientFundsError(
                    "Wallet balance changed; please retry",
                    available=user.get("wallet"),
                    requested=wallet_deduction,
                )
            uow.on_rollback(db.users.update_one, {"_id": user["_id"]}, {"$inc": {"wallet": wallet_deduction}})

        if coupon:
            await _reserve_coupon(db, uow, {**coupon, "discount": pricing["discount"]}, user["_id"], order["_id"])

        seq = await next_sequence(db, "order_id", session=uow.session)
        order["order_id"] = f"{ORDER_ID_PREFIX}{seq:03d}"

        await db.orders.insert_one(order, **uow.kw)

    await _status_changed(
        db,
        order,
        "ORDER_CREATED",
        "user",
        user,
        {"final_amount": order["final_amount"], "payment_method": payment_method},
    )
    logger.info(
        "ORDER_CREATED order=%s user=%s final=%s wallet=%s cod=%s",
        order["order_id"], user["_id"], order["final_amount"],
        order["wallet_deduction"], order["cash_on_delivery"],
    )
    return order


# ======================================================
# DRIVER FLOW
# ======================================================

async def set_availability(db, driver: dict, availability: str) -> dict:
    """
    online <-> offline. on-delivery is managed by acceptance and
    delivery confirmation only.
    """
    availability = getattr(availability, "value", availability)
    if availability not in {DriverAvailability.ONLINE.value, DriverAvailability.OFFLINE.value}:
        raise ValidationError("Availability must be online or offline", field="availability")

    updated = await db.drivers.find_one_and_update(
        {"_id": driver["_id"], "work_info.availability": {"$ne": DriverAvailability.ON_DELIVERY.value}},
        {"$set": {"work_info.availability": availability, "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        await get_or_404(db.drivers, driver["_id"], "Driver")
        raise StateConflictError(
            "Finish the current delivery before changing availability",
            code="DRIVER_ON_DELIVERY",
        )
    return updated


async def accept_order(db, order_id, driver: dict) -> dict:
    order_oid = parse_object_id(order_id, "order_id")
    driver = await get_or_404(db.drivers, driver["_id"], "Driver")

    availability = (driver.get("work_info") or {}).get("availability")
    if availability != DriverAvailability.ONLINE.value:
        raise StateConflictError(
            "Driver must be online to accept orders",
            code="DRIVER_NOT_AVAILABLE",
            availability=availability,
        )

    now = datetime.utcnow()
    async with unit_of_work(db, "order acceptance") as uow:
        # the driver check is re-validated at write time
        order = await db.orders.find_one_and_update(
            {"_id": order_oid, "status": OrderStatus.PENDING.value, "driver_id": None},
            {"$set": {
                "driver_id": driver["_id"],
                "status": OrderStatus.ACCEPTED.value,
                "accepted_at": now,
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER,
            **uow.kw,
        )
        if not order:
            existing = await get_or_404(db.orders, order_oid, "Order")
            if existing.get("driver_id") is not None:
                raise AlreadyAssignedError(
                    "Order already accepted by another driver",
                    order_id=str(order_oid),
                )
            assert_transition(ORDER_TRANSITIONS, existing["status"], OrderStatus.ACCEPTED, entity="order")
            raise InvalidTransitionError(
                "Order cannot be accepted",
                entity="order",
                current=existing["status"],
                target=OrderStatus.ACCEPTED.value,
            )
        uow.on_rollback(
            db.orders.update_one,
            {"_id": order_oid, "driver_id": driver["_id"]},
            {"$set": {"driver_id": None, "status": OrderStatus.PENDING.value, "accepted_at": None}},
        )

        result = await db.drivers.update_one(
            {"_id": driver["_id"], "work_info.availability": DriverAvailability.ONLINE.value},
            {"$set": {
                "work_info.availability": DriverAvailability.ON_DELIVERY.value,
                "work_info.current_order": order_oid,
                "updated_at": now,
            }},
            **uow.kw,
        )
        if result.matched_count == 0:
            raise StateConflictError(
                "Driver is no longer available",
                code="DRIVER_NOT_AVAILABLE",
            )

    await _status_changed(db, order, "ORDER_ACCEPTED", "driver", driver)
    logger.info("ORDER_ACCEPTED order=%s driver=%s", order.get("order_id"), driver["_id"])
    return order


async def mark_picked_up(db, order_id, driver: dict) -> dict:
    order = await get_or_404(db.orders, parse_object_id(order_id, "order_id"), "Order")
    assert_assigned_driver(order, driver)
    assert_transition(ORDER_TRANSITIONS, order["status"], OrderStatus.PICKED_UP, entity="order")

    now = datetime.utcnow()
    updated = await db.orders.find_one_and_update(
        {"_id": order["_id"], "status": OrderStatus.ACCEPTED.value, "driver_id": driver["_id"]},
        {"$set": {"status": OrderStatus.PICKED_UP.value, "picked_up_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise InvalidTransitionError(
            "Order was modified concurrently",
            entity="order",
            current=order["status"],
            target=OrderStatus.PICKED_UP.value,
        )

    await _status_changed(db, updated, "ORDER_PICKED_UP", "driver", driver)
    return updated


async def verify_secret_code(db, order_id, driver: dict, secret_code: str) -> dict:
    order = await get_or_404(db.orders, parse_object_id(order_id, "order_id"), "Order")
    assert_assigned_driver(order, driver)

    if order["status"] != OrderStatus.PICKED_UP.value:
        raise InvalidTransitionError(
            "Secret code can only be verified after pickup",
            entity="order",
            current=order["status"],
            target=OrderStatus.DELIVERED.value,
        )

    if order.get("is_secret_code_verified"):
        return order

    submitted = str(secret_code or "").strip()
    if not hmac.compare_digest(submitted, str(order.get("secret_code") or "")):
        logger.warning("SECRET_CODE_MISMATCH order=%s driver=%s", order.get("order_id"), driver["_id"])
        raise ValidationError("Invalid secret code", code="INVALID_SECRET_CODE", field="secret_code")

    now = datetime.utcnow()
    updated = await db.orders.find_one_and_update(
        {"_id": order["_id"], "status": OrderStatus.PICKED_UP.value},
        {"$set": {"is_secret_code_verified": True, "secret_code_verified_at": now, "updated_at": now}},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise StateConflictError("Order is no longer out for delivery", code="ORDER_STATE_CHANGED")
    await record_order_event(db, updated, "SECRET_CODE_VERIFIED", actor_role="driver", actor=driver)
    return updated


async def _settle_after_payment(db, order: dict) -> dict:
    """
    Settlement failures are reported, never undo the delivery or
    payment that triggered them; an admin can re-trigger settlement.
    """
    try:
        result = await settle_order(db, order["_id"])
    except SettlementError as e:
        logger.exception("AUTO_SETTLEMENT_FAILED order=%s", order.get("order_id"))
        await db.orders.update_one(
            {"_id": order["_id"]},
            {"$set": {"settlement.status": "failed", "settlement.error": e.detail}},
        )
        return {"status": "failed", "error": e.detail}

    return {
        "status": "settled",
        "seller_payout_id": str(result["seller_payout"]["_id"]),
        "promotor_payout_id": str(result["promotor_payout"]["_id"]) if result["promotor_payout"] else None,
    }


async def mark_delivered(db, order_id, driver: dict, paid_amount: float | None = None) -> dict:
    order = await get_or_404(db.orders, parse_object_id(order_id, "order_id"), "Order")
    assert_assigned_driver(order, driver)
    assert_transition(ORDER_TRANSITIONS, order["status"], OrderStatus.DELIVERED, entity="order")

    if not order.get("is_secret_code_verified"):
        raise StateConflictError(
            "Secret code must be verified before delivery",
            code="SECRET_CODE_NOT_VERIFIED",
            order_id=str(order["_id"]),
        )

    is_cod = order.get("payment_method") == PaymentMethod.COD.value
    collect = float(order.get("cash_on_delivery") or 0) if is_cod else 0.0
    if collect > 0:
        if paid_amount is None:
            raise ValidationError("Collected amount is required for COD orders", field="paid_amount")
        if float(paid_amount) != collect:
            raise AmountMismatchError(collect, float(paid_amount))

    now = datetime.utcnow()
    fields = {
        "status": OrderStatus.DELIVERED.value,
        "delivered_at": now,
        "updated_at": now,
        "driver_paid_amount": float(paid_amount) if paid_amount is not None else None,
    }
    if is_cod:
        fields["payment_status"] = PaymentStatus.PAID.value
        fields["paid_at"] = now

    async with unit_of_work(db, "delivery confirmation") as uow:
        updated = await db.orders.find_one_and_update(
            {
                "_id": order["_id"],
                "status": OrderStatus.PICKED_UP.value,
                "driver_id": driver["_id"],
                "is_secret_code_verified": True,
            },
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
            **uow.kw,
        )
        if not updated:
            raise InvalidTransitionError(
                "Order was modified concurrently",
                entity="order",
                current=order["status"],
                target=OrderStatus.DELIVERED.value,
            )
        uow.on_rollback(
            db.orders.update_one,
            {"_id": order["_id"]},
            {"$set": {
                "status": order["status"],
                "delivered_at": None,
                "driver_paid_amount": None,
                "payment_status": order["payment_status"],
                "paid_at": order.get("paid_at"),
                "updated_at": order.get("updated_at"),
            }},
        )

        earning = await credit_delivery_earning(db, uow, driver["_id"], updated)

    await _status_changed(
        db,
        updated,
        "ORDER_DELIVERED",
        "driver",
        driver,
        {"paid_amount": fields["driver_paid_amount"], "earning": earning["amount"]},
    )
    logger.info("ORDER_DELIVERED order=%s driver=%s earning=%s", updated.get("order_id"), driver["_id"], earning["amount"])

    settlement = {"status": "pending"}
    if updated["payment_status"] == PaymentStatus.PAID.value:
        settlement = await _settle_after_payment(db, updated)

    return {"order": updated, "earning": earning, "settlement": settlement}


# ======================================================
# ADMIN
# ======================================================

async def record_payment(
    db,
    order_id,
    *,
    status: str,
    transaction_id: str | None = None,
    admin: dict | None = None,
) -> dict:
    order = await get_or_404(db.orders, parse_object_id(order_id, "order_id"), "Order")

    if order.get("payment_method") != PaymentMethod.ONLINE.value:
        raise ValidationError(
            "Payment outcomes are recorded only for online orders",
            code="PAYMENT_METHOD_MISMATCH",
            payment_method=order.get("payment_method"),
        )
    if order.get("payment_status") == PaymentStatus.PAID.value:
        raise AlreadyPaidError("Order is already paid", order_id=str(order["_id"]))

    status = getattr(status, "value", status)
    if status not in {PaymentStatus.PAID.value, PaymentStatus.FAILED.value}:
        raise ValidationError("Payment outcome must be paid or failed", field="status")

    now = datetime.utcnow()
    fields = {"payment_status": status, "transaction_id": transaction_id, "updated_at": now}
    if status == PaymentStatus.PAID.value:
        fields["paid_at"] = now

    updated = await db.orders.find_one_and_update(
        {"_id": order["_id"], "payment_status": {"$ne": PaymentStatus.PAID.value}},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )
    if not updated:
        raise AlreadyPaidError("Order is already paid", order_id=str(order["_id"]))

    await record_order_event(
        db,
        updated,
        f"PAYMENT_{status.upper()}",
        actor_role="admin",
        actor=admin,
        metadata={"transaction_id": transaction_id},
    )
    await log_audit(
        db,
        actor=admin,
        actor_role="admin",
        action="ORDER_PAYMENT_RECORDED",
        target_type="order",
        target_id=order["_id"],
        metadata={"status": status, "transaction_id": transaction_id},
    )

    settlement = None
    if status == PaymentStatus.PAID.value and updated["status"] == OrderStatus.DELIVERED.value:
        settlement = await _settle_after_payment(db, updated)

    return {"order": updated, "settlement": settlement}


async def cancel_order(db, order_id, *, admin: dict | None = None, reason: str | None = None) -> dict:
    order = await get_or_404(db.orders, parse_object_id(order_id, "order_id"), "Order")
    current = order["status"]
    assert_transition(ORDER_TRANSITIONS, current, OrderStatus.CANCELLED, entity="order")

    refund = float(order.get("wallet_deduction") or 0)
    now = datetime.utcnow()

    async with unit_of_work(db, "order cancellation") as uow:
        updated = await db.orders.find_one_and_update(
            {"_id": order["_id"], "status": current},
            {"$set": {
                "status": OrderStatus.CANCELLED.value,
                "cancelled_at": now,
                "cancellation_reason": reason,
                "refund_amount": refund,
                "refund_status": "processed" if refund > 0 else None,
                "updated_at": now,
            }},
            return_document=ReturnDocument.AFTER,
            **uow.kw,
        )
        if not updated:
            raise InvalidTransitionError(
                "Order was modified concurrently",
                entity="order",
                current=current,
                target=OrderStatus.CANCELLED.value,
            )
        uow.on_rollback(
            db.orders.update_one,
            {"_id": order["_id"]},
            {"$set": {
                "status": current,
                "cancelled_at": None,
                "cancellation_reason": None,
                "refund_amount": 0.0,
                "refund_status": None,
            }},
        )

        if refund > 0:
            result = await db.users.update_one(
                {"_id": order["user_id"]},
                {"$inc": {"wallet": refund}, "$set": {"updated_at": now}},
                **uow.kw,
            )
            if result.matched_count == 0:
                raise InternalError("Wallet refund failed", code="REFUND_FAILED", order_id=str(order["_id"]))
            uow.on_rollback(db.users.update_one, {"_id": order["user_id"]}, {"$inc": {"wallet": -refund}})

        released_coupon = await _release_coupon(db, uow, order["_id"], now)

        if order.get("driver_id"):
            await db.drivers.update_one(
                {"_id": order["driver_id"], "work_info.current_order": order["_id"]},
                {"$set": {
                    "work_info.availability": DriverAvailability.ONLINE.value,
                    "work_info.current_order": None,
                    "updated_at": now,
                }},
                **uow.kw,
            )

    await _status_changed(
        db,
        updated,
        "ORDER_CANCELLED",
        "admin",
        admin,
        {"reason": reason, "refund_amount": refund},
    )
    await log_audit(
        db,
        actor=admin,
        actor_role="admin",
        action="ORDER_CANCELLED",
        target_type="order",
        target_id=order["_id"],
        metadata={"from": current, "refund_amount": refund, "reason": reason, "released_coupon": released_coupon},
    )
    logger.info("ORDER_CANCELLED order=%s refund=%s", order.get("order_id"), refund)
    return updated


async def update_order_status(db, order_id, *, status: str, admin: dict | None = None, reason: str | None = None) -> dict:
    """
    Admin override. Forward transitions belong to the assigned driver,
    so cancellation is the only status an admin may set.
    """
    target = getattr(status, "value", status)
    if target != OrderStatus.CANCELLED.value:
        order = await get_or_404(db.orders, parse_object_id(order_id, "order_id"), "Order")
        raise InvalidTransitionError(
            "Admins may only cancel orders",
            entity="order",
            current=order["status"],
            target=target,
        )
    return await cancel_order(db, order_id, admin=admin, reason=reason)


# ======================================================
# READS
# ======================================================

async def get_order_for_actor(db, order_id, actor: dict, role: str) -> dict:
    order = await get_or_404(db.orders, parse_object_id(order_id, "order_id"), "Order")

    owner_field = {"user": "user_id", "driver": "driver_id", "seller": "seller_id"}.get(role)
    if role != "admin" and (owner_field is None or order.get(owner_field) != actor["_id"]):
        raise PermissionDeniedError("You cannot access this order", order_id=str(order["_id"]))
    return order


async def list_user_orders(db, user_id, *, status=None, page=1, limit=20) -> dict:
    query = build_record_query(recipient_field="user_id", recipient_id=user_id, status=status)
    return await paginate(db.orders, query, page=page, limit=limit)


async def list_orders(db, *, status=None, seller_id=None, driver_id=None, date_from=None, date_to=None, page=1, limit=20) -> dict:
    extra = {}
    if seller_id:
        extra["seller_id"] = parse_object_id(seller_id, "seller_id")
    if driver_id:
        extra["driver_id"] = parse_object_id(driver_id, "driver_id")
    query = build_record_query(status=status, date_from=date_from, date_to=date_to, extra=extra)
    return await paginate(db.orders, query, page=page, limit=limit, hide=("secret_code",))


async def pending_orders_feed(db, *, page=1, limit=20) -> dict:
    query = {"status": OrderStatus.PENDING.value, "driver_id": None}
    return await paginate(db.orders, query, page=page, limit=limit, hide=("secret_code",))


async def ongoing_orders(db, driver: dict) -> list[dict]:
    return await db.orders.find({
        "driver_id": driver["_id"],
        "status": {"$in": ACTIVE_STATUSES},
    }).sort("accepted_at", -1).to_list(None)


async def get_tax_invoice(db, order: dict) -> dict:
    product_ids = [i["product_id"] for i in order["items"]]
    products = await db.products.find({"_id": {"$in": product_ids}}).to_list(None)
    seller = await db.sellers.find_one({"_id": order["seller_id"]}) or {}
    return build_tax_invoice(order, {str(p["_id"]): p for p in products}, seller)

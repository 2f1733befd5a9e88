from datetime import datetime, timezone

from pymongo import ReturnDocument

from models.coupon import DiscountType
from models.order import PaymentStatus
from utils.errors import NotFoundError, ValidationError
from utils.guards import get_or_404, parse_object_id
from utils.money import round_money


# ===============================
# ORDER PRICING (PURE)
# ===============================

def compute_subtotal(items: list[dict]) -> float:
    return round_money(sum(float(i["price"]) * int(i["quantity"]) for i in items))


def cap_discount(discount: float | None, subtotal: float) -> float:
    if not discount or discount < 0:
        return 0.0
    return round_money(min(float(discount), subtotal))


def split_wallet_payment(final_amount: float, wallet_balance: float, use_wallet: bool) -> dict:
    wallet_deduction = 0.0
    if use_wallet and wallet_balance and wallet_balance > 0:
        wallet_deduction = round_money(min(float(wallet_balance), final_amount))

    cash_on_delivery = round_money(final_amount - wallet_deduction)
    return {
        "wallet_deduction": wallet_deduction,
        "cash_on_delivery": cash_on_delivery,
        "payment_status": (
            PaymentStatus.PAID.value if cash_on_delivery == 0 else PaymentStatus.PENDING.value
        ),
    }


def price_order(
    items: list[dict],
    *,
    coupon_discount: float | None = None,
    wallet_balance: float = 0,
    use_wallet: bool = False,
) -> dict:
    """
    subtotal -> capped discount -> final amount -> wallet / cash split.
    wallet_deduction + cash_on_delivery == final_amount always holds.
    """
    subtotal = compute_subtotal(items)
    discount = cap_discount(coupon_discount, subtotal)
    final_amount = round_money(subtotal - discount)

    return {
        "subtotal": subtotal,
        "discount": discount,
        "final_amount": final_amount,
        **split_wallet_payment(final_amount, wallet_balance, use_wallet),
    }


# ===============================
# COUPONS
# ===============================

REDEMPTION_ACTIVE = "active"
REDEMPTION_RELEASED = "released"


def normalize_coupon_code(code: str) -> str:
    return (code or "").strip().upper()


def to_naive_utc(value: datetime) -> datetime:
    if value.tzinfo is not None:
        return value.astimezone(timezone.utc).replace(tzinfo=None)
    return value


def calculate_discount(coupon: dict, order_amount: float) -> float:
    value = float(coupon.get("discount_value") or 0)

    if coupon.get("discount_type") == DiscountType.PERCENTAGE.value:
        discount = order_amount * value / 100
        max_discount = coupon.get("max_discount_amount")
        if max_discount is not None and discount > max_discount:
            discount = float(max_discount)
    else:
        discount = value

    return round_money(max(0.0, min(discount, order_amount)))


async def validate_coupon(db, code: str, user_id, order_amount: float, now: datetime | None = None) -> dict:
    """
    Checks, in order: exists and active, validity window, global usage
    cap, minimum order amount, then this user's prior redemptions.

    The per-user count here is advisory. The binding check is the
    redemption reservation made inside order creation.
    """
    now = now or datetime.utcnow()
    code = normalize_coupon_code(code)
    if not code:
        raise ValidationError("Coupon code is required", field="coupon_code")

    coupon = await db.coupons.find_one({"code": code, "is_active": True})
    if not coupon:
        raise NotFoundError("Invalid coupon code", code="COUPON_NOT_FOUND", coupon_code=code)

    if now < coupon["start_date"] or now > coupon["end_date"]:
        raise ValidationError("Coupon is expired or not yet active", code="COUPON_EXPIRED", coupon_code=code)

    usage_limit = coupon.get("usage_limit")
    if usage_limit is not None and coupon.get("used_count", 0) >= usage_limit:
        raise ValidationError("Coupon usage limit reached", code="COUPON_EXHAUSTED", coupon_code=code)

    min_order_amount = float(coupon.get("min_order_amount") or 0)
    if order_amount < min_order_amount:
        raise ValidationError(
            f"Minimum order amount should be ₹{min_order_amount:,.2f}",
            code="COUPON_MIN_ORDER",
            coupon_code=code,
            min_order_amount=min_order_amount,
            order_amount=order_amount,
        )

    if user_id is not None:
        used = await count_user_redemptions(db, coupon["_id"], user_id)
        if used >= int(coupon.get("per_user_limit") or 1):
            raise ValidationError(
                "You have already used this coupon",
                code="COUPON_PER_USER_LIMIT",
                coupon_code=code,
            )

    return coupon


async def count_user_redemptions(db, coupon_id, user_id) -> int:
    return await db.coupon_redemptions.count_documents({
        "coupon_id": coupon_id,
        "user_id": user_id,
        "status": {"$ne": REDEMPTION_RELEASED},
    })


async def create_coupon(db, data: dict) -> dict:
    now = datetime.utcnow()
    coupon = {
        **data,
        "code": normalize_coupon_code(data["code"]),
        "discount_type": DiscountType(data["discount_type"]).value,
        "start_date": to_naive_utc(data["start_date"]),
        "end_date": to_naive_utc(data["end_date"]),
        "used_count": 0,
        "created_at": now,
        "updated_at": now,
    }
    existing = await db.coupons.find_one({"code": coupon["code"]})
    if existing:
        raise ValidationError("Coupon code already exists", code="COUPON_EXISTS", coupon_code=existing["code"])

    await db.coupons.insert_one(coupon)
    return coupon


# an explicit null clears these caps
_NULLABLE_COUPON_FIELDS = {"max_discount_amount", "usage_limit"}


async def list_coupons(db) -> list[dict]:
    return await db.coupons.find().sort("created_at", -1).to_list(None)


async def update_coupon(db, coupon_id, changes: dict) -> dict:
    """
    Partial update. `changes` holds only the fields the admin sent;
    the merged record must still have a valid window and a unique code.
    """
    coupon = await get_or_404(db.coupons, parse_object_id(coupon_id, "coupon_id"), "Coupon")

    fields = {k: v for k, v in changes.items() if v is not None or k in _NULLABLE_COUPON_FIELDS}
    if "code" in fields:
        fields["code"] = normalize_coupon_code(fields["code"])
        clash = await db.coupons.find_one({"code": fields["code"], "_id": {"$ne": coupon["_id"]}})
        if clash:
            raise ValidationError("Coupon code already exists", code="COUPON_EXISTS", coupon_code=fields["code"])
    if "discount_type" in fields:
        fields["discount_type"] = DiscountType(fields["discount_type"]).value
    for key in ("start_date", "end_date"):
        if fields.get(key) is not None:
            fields[key] = to_naive_utc(fields[key])

    start = fields.get("start_date", coupon["start_date"])
    end = fields.get("end_date", coupon["end_date"])
    if end < start:
        raise ValidationError("end_date must be after start_date", field="end_date")

    fields["updated_at"] = datetime.utcnow()
    return await db.coupons.find_one_and_update(
        {"_id": coupon["_id"]},
        {"$set": fields},
        return_document=ReturnDocument.AFTER,
    )


async def toggle_coupon(db, coupon_id) -> dict:
    coupon = await get_or_404(db.coupons, parse_object_id(coupon_id, "coupon_id"), "Coupon")
    return await db.coupons.find_one_and_update(
        {"_id": coupon["_id"]},
        {"$set": {"is_active": not coupon.get("is_active", False), "updated_at": datetime.utcnow()}},
        return_document=ReturnDocument.AFTER,
    )


async def list_active_coupons(db, now: datetime | None = None) -> list[dict]:
    """Coupons a buyer can apply right now: active, in window and not used up."""
    now = now or datetime.utcnow()
    coupons = await db.coupons.find({
        "is_active": True,
        "start_date": {"$lte": now},
        "end_date": {"$gte": now},
    }).sort("end_date", 1).to_list(None)
    return [
        c for c in coupons
        if c.get("usage_limit") is None or c.get("used_count", 0) < c["usage_limit"]
    ]

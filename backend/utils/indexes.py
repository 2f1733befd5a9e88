import logging

from pymongo import ASCENDING, DESCENDING
from pymongo.errors import OperationFailure

logger = logging.getLogger(__name__)

# IndexOptionsConflict / IndexKeySpecsConflict
_CONFLICT_CODES = {85, 86}


def _unique(collection: str, *fields: str) -> tuple:
    name = f"{collection}_{'_'.join(f.split('.')[-1] for f in fields)}_unique"
    return collection, [(f, ASCENDING) for f in fields], {"name": name, "unique": True}


def _by_recipient(collection: str, recipient_field: str) -> list[tuple]:
    return [
        (
            collection,
            [(recipient_field, ASCENDING), ("status", ASCENDING)],
            {"name": f"{collection}_recipient_status_idx"},
        ),
        (
            collection,
            [("status", ASCENDING), ("created_at", DESCENDING)],
            {"name": f"{collection}_status_created_at_idx"},
        ),
    ]


# The unique indexes are what make settlement, earning credits and
# coupon redemptions happen at most once; queries rely on the rest.
SETTLEMENT_INDEXES = [
    _unique("orders", "order_id"),
    ("orders", [("user_id", ASCENDING), ("created_at", DESCENDING)], {"name": "orders_user_created_at_idx"}),
    ("orders", [("status", ASCENDING), ("driver_id", ASCENDING)], {"name": "orders_status_driver_idx"}),
    (
        "orders",
        [("seller_id", ASCENDING), ("status", ASCENDING), ("created_at", DESCENDING)],
        {"name": "orders_seller_status_created_at_idx"},
    ),
    (
        "order_timeline",
        [("order_id", ASCENDING), ("created_at", ASCENDING)],
        {"name": "order_timeline_order_created_idx"},
    ),
    _unique("coupons", "code"),
    _unique("coupon_redemptions", "coupon_id", "user_id", "sequence"),
    _unique("seller_payouts", "order_id", "seller_id"),
    *_by_recipient("seller_payouts", "seller_id"),
    _unique("promotor_payouts", "order_id", "promotor_id"),
    *_by_recipient("promotor_payouts", "promotor_id"),
    *_by_recipient("payouts", "recipient_id"),
    _unique("driver_earnings", "reference"),
    *_by_recipient("driver_earnings", "driver_id"),
    *_by_recipient("driver_payouts", "driver_id"),
    *_by_recipient("withdraws", "driver_id"),
    ("audit_logs", [("action", ASCENDING), ("created_at", DESCENDING)], {"name": "audit_logs_action_created_at_idx"}),
]


async def _drop_same_key_indexes(collection, keys: list, keep_name: str):
    async for existing in collection.list_indexes():
        if list(existing.get("key", {}).items()) == keys and existing.get("name") != keep_name:
            logger.warning("Dropping index %s.%s to apply new options", collection.name, existing["name"])
            await collection.drop_index(existing["name"])


async def ensure_index(collection, keys: list, options: dict):
    """
    Create an index; an older index on the same keys but with other
    options (e.g. not unique yet) is dropped and replaced.
    """
    try:
        await collection.create_index(keys, **options)
    except OperationFailure as e:
        if e.code not in _CONFLICT_CODES:
            raise
        await _drop_same_key_indexes(collection, keys, options.get("name"))
        await collection.create_index(keys, **options)


async def ensure_indexes(db):
    for collection, keys, options in SETTLEMENT_INDEXES:
        await ensure_index(db[collection], keys, options)

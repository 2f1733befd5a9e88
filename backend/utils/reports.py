from datetime import datetime

from config.constants import DEFAULT_PAGE_SIZE, MAX_PAGE_SIZE
from utils.guards import parse_object_id
from utils.money import round_money
from utils.serializers import serialize_docs

# ==============================
# Reporting reads
# ==============================
# Dashboards are pure readers; every outbound record type is listable
# by recipient, status and created_at range.


def page_window(page: int = 1, limit: int = DEFAULT_PAGE_SIZE) -> tuple[int, int]:
    page = max(int(page or 1), 1)
    limit = min(max(int(limit or DEFAULT_PAGE_SIZE), 1), MAX_PAGE_SIZE)
    return page, limit


def build_record_query(
    *,
    recipient_field: str | None = None,
    recipient_id=None,
    status: str | list[str] | None = None,
    date_from: datetime | None = None,
    date_to: datetime | None = None,
    extra: dict | None = None,
) -> dict:
    query = dict(extra or {})

    if recipient_field and recipient_id is not None:
        query[recipient_field] = parse_object_id(recipient_id, recipient_field)

    if isinstance(status, (list, tuple, set)):
        query["status"] = {"$in": list(status)}
    elif status:
        query["status"] = status

    created = {}
    if date_from:
        created["$gte"] = date_from
    if date_to:
        created["$lte"] = date_to
    if created:
        query["created_at"] = created

    return query


async def paginate(
    collection,
    query: dict,
    *,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    sort_field: str = "created_at",
    hide: tuple = (),
) -> dict:
    page, limit = page_window(page, limit)
    total = await collection.count_documents(query)
    cursor = collection.find(query).sort(sort_field, -1).skip((page - 1) * limit).limit(limit)
    docs = await cursor.to_list(length=limit)

    return {
        "items": serialize_docs(docs, hide=hide),
        "page": page,
        "limit": limit,
        "total": total,
        "pages": (total + limit - 1) // limit,
    }


async def sum_by_status(collection, query: dict, amount_field: str) -> dict:
    """
    {status: {"count", "amount"}} for the matching records.
    """
    pipeline = [
        {"$match": query},
        {"$group": {
            "_id": "$status",
            "count": {"$sum": 1},
            "amount": {"$sum": f"${amount_field}"},
        }},
    ]
    summary = {}
    async for row in collection.aggregate(pipeline):
        summary[row["_id"]] = {"count": row["count"], "amount": round_money(row["amount"])}
    return summary


async def recipient_summary(db, collection: str, recipient_field: str, recipient_id, amount_field: str) -> dict:
    recipient_oid = parse_object_id(recipient_id, recipient_field)
    by_status = await sum_by_status(db[collection], {recipient_field: recipient_oid}, amount_field)

    def amount(*statuses):
        return round_money(sum(by_status.get(s, {}).get("amount", 0) for s in statuses))

    return {
        recipient_field: str(recipient_oid),
        "by_status": by_status,
        "pending_amount": amount("pending", "earned"),
        "processing_amount": amount("processing", "payout_processing"),
        "paid_amount": amount("paid", "payout_paid"),
    }


async def platform_settlement_summary(db, date_from: datetime | None = None, date_to: datetime | None = None) -> dict:
    """
    Platform-wide totals over seller settlement records: fee, GST on
    fee, TDS withheld and promotor commissions.
    """
    query = build_record_query(date_from=date_from, date_to=date_to)
    fields = (
        "order_amount",
        "promotor_commission",
        "platform_fee",
        "gst_on_platform_fee",
        "tds_deduction",
        "net_amount",
    )
    pipeline = [
        {"$match": query},
        {"$group": {
            "_id": None,
            "orders": {"$sum": 1},
            **{f: {"$sum": f"${f}"} for f in fields},
        }},
    ]
    rows = await db.seller_payouts.aggregate(pipeline).to_list(length=1)
    row = rows[0] if rows else {}

    totals = {f: round_money(row.get(f, 0)) for f in fields}
    totals["orders"] = row.get("orders", 0)

    driver_rows = await db.driver_earnings.aggregate([
        {"$match": query},
        {"$group": {"_id": None, "amount": {"$sum": "$amount"}}},
    ]).to_list(length=1)
    totals["driver_earnings"] = round_money(driver_rows[0]["amount"]) if driver_rows else 0.0

    return totals

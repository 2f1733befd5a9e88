import logging
from datetime import datetime

logger = logging.getLogger(__name__)


async def record_order_event(
    db,
    order: dict,
    event: str,
    *,
    actor_role: str,
    actor: dict | None = None,
    metadata: dict | None = None,
):
    """
    Append an event to an order's timeline, tagged with the order status
    at the time of writing. Runs after the money write has committed, so
    a failed append is logged and the caller carries on.
    """
    entry = {
        "order_id": order["_id"],
        "order_number": order.get("order_id"),
        "status": order.get("status"),
        "event": event,
        "actor_role": actor_role,
        "actor_id": actor["_id"] if actor else None,
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    }

    try:
        await db.order_timeline.insert_one(entry)
    except Exception:
        logger.exception("TIMELINE_ERROR order=%s event=%s", order["_id"], event)


async def get_order_timeline(db, order: dict) -> list[dict]:
    cursor = db.order_timeline.find({"order_id": order["_id"]}, {"_id": 0})
    return await cursor.sort("created_at", 1).to_list(None)

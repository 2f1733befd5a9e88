import logging
from datetime import datetime

logger = logging.getLogger("fastkart.audit")


def _actor_ref(actor: dict | None, actor_role: str | None) -> dict:
    if not actor:
        return {"actor_id": None, "actor_role": actor_role or "system"}
    return {"actor_id": str(actor["_id"]), "actor_role": actor_role or actor.get("_role") or "admin"}


async def log_audit(
    db,
    *,
    action: str,
    actor: dict | None = None,
    actor_role: str | None = None,
    target_type: str | None = None,
    target_id=None,
    metadata: dict | None = None,
):
    """Back-office money actions: batches, withdrawals, adjustments, overrides."""
    entry = {
        **_actor_ref(actor, actor_role),
        "action": action,
        "target_type": target_type,
        "target_id": None if target_id is None else str(target_id),
        "metadata": metadata or {},
        "created_at": datetime.utcnow(),
    }
    await db.audit_logs.insert_one(entry)
    logger.info("%s by %s:%s %s=%s", action, entry["actor_role"], entry["actor_id"], target_type, entry["target_id"])

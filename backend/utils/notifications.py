import logging
from typing import Awaitable, Callable

logger = logging.getLogger(__name__)

# ==============================
# Order status change trigger point
# ==============================
# The dispatcher that actually sends push/email lives outside the
# engine; it registers a listener and receives (order_id, status).

OrderStatusListener = Callable[[str, str], Awaitable[None]]

_listeners: list[OrderStatusListener] = []


def register_order_status_listener(listener: OrderStatusListener) -> None:
    if listener not in _listeners:
        _listeners.append(listener)


def unregister_order_status_listener(listener: OrderStatusListener) -> None:
    if listener in _listeners:
        _listeners.remove(listener)


async def notify_order_status_changed(order_id, status: str) -> None:
    for listener in list(_listeners):
        try:
            await listener(str(order_id), status)
        except Exception:
            # Notification must NEVER break the order flow
            logger.exception("NOTIFY_ERROR order=%s status=%s", order_id, status)

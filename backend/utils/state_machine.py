from enum import Enum

from models.order import OrderStatus
from models.payout import PayoutStatus
from models.driver import WithdrawStatus
from utils.errors import InvalidTransitionError

# ============================================================
# TRANSITION TABLES (SINGLE SOURCE OF TRUTH)
# ============================================================
# Anything not listed here is rejected.

ORDER_TRANSITIONS = {
    OrderStatus.PENDING: {OrderStatus.ACCEPTED, OrderStatus.CANCELLED},
    OrderStatus.ACCEPTED: {OrderStatus.PICKED_UP, OrderStatus.CANCELLED},
    OrderStatus.PICKED_UP: {OrderStatus.DELIVERED},
    OrderStatus.DELIVERED: set(),
    OrderStatus.CANCELLED: set(),
}

PAYOUT_TRANSITIONS = {
    PayoutStatus.PENDING: {
        PayoutStatus.PROCESSING,
        PayoutStatus.PAID,
        PayoutStatus.FAILED,
        PayoutStatus.CANCELLED,
    },
    PayoutStatus.PROCESSING: {PayoutStatus.PAID, PayoutStatus.FAILED},
    PayoutStatus.PAID: set(),
    PayoutStatus.FAILED: set(),
    PayoutStatus.CANCELLED: set(),
}

WITHDRAW_TRANSITIONS = {
    WithdrawStatus.PENDING: {WithdrawStatus.APPROVED, WithdrawStatus.REJECTED},
    WithdrawStatus.APPROVED: {WithdrawStatus.PAID, WithdrawStatus.REJECTED},
    WithdrawStatus.REJECTED: set(),
    WithdrawStatus.PAID: set(),
}


def can_transition(table: dict, current, target) -> bool:
    try:
        current = type(next(iter(table)))(current)
        target = type(current)(target)
    except ValueError:
        return False
    return target in table.get(current, set())


def assert_transition(table: dict, current, target, *, entity: str):
    if not can_transition(table, current, target):
        raise InvalidTransitionError(
            f"{entity} cannot move from '{_value(current)}' to '{_value(target)}'",
            entity=entity,
            current=_value(current),
            target=_value(target),
        )


def _value(status):
    return status.value if isinstance(status, Enum) else status

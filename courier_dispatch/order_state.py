"""
Order lifecycle state machine. Valid transitions enforce business rules.
"""
from enum import Enum

from courier_dispatch.errors import InvalidTransition


class OrderStatus(str, Enum):
    PENDING_ADMIN_REVIEW = "pending_admin_review"
    APPROVED_PENDING_PAYMENT = "approved_pending_payment"
    READY_FOR_DISPATCH = "ready_for_dispatch"
    ASSIGNED = "assigned"
    EN_ROUTE = "en_route"
    COMPLETED = "completed"
    REJECTED = "rejected"

    @classmethod
    def parse(cls, value: "str | OrderStatus") -> "OrderStatus":
        """Accepts the `paid` alias for ready_for_dispatch."""
        if value == "paid":
            return cls.READY_FOR_DISPATCH
        return cls(value)


class PaymentStatus(str, Enum):
    UNPAID = "unpaid"
    PAID = "paid"


TERMINAL_STATES = frozenset({OrderStatus.COMPLETED, OrderStatus.REJECTED})

# Current state -> allowed next states
VALID_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING_ADMIN_REVIEW: frozenset({OrderStatus.APPROVED_PENDING_PAYMENT, OrderStatus.REJECTED}),
    OrderStatus.APPROVED_PENDING_PAYMENT: frozenset({OrderStatus.READY_FOR_DISPATCH, OrderStatus.REJECTED}),
    OrderStatus.READY_FOR_DISPATCH: frozenset({OrderStatus.ASSIGNED}),
    OrderStatus.ASSIGNED: frozenset({OrderStatus.EN_ROUTE}),
    OrderStatus.EN_ROUTE: frozenset({OrderStatus.COMPLETED}),
    OrderStatus.COMPLETED: frozenset(),  # terminal
    OrderStatus.REJECTED: frozenset(),  # terminal
}


def allowed_transitions(current: str | OrderStatus) -> list[str]:
    """Sorted next states reachable from current (empty for terminal or unknown states)."""
    try:
        state = OrderStatus.parse(current)
    except ValueError:
        return []
    return sorted(s.value for s in VALID_TRANSITIONS[state])


def is_valid_transition(current: str | OrderStatus, requested: str | OrderStatus) -> bool:
    """True if requested is reachable from current in one step."""
    try:
        state = OrderStatus.parse(current)
        target = OrderStatus.parse(requested)
    except ValueError:
        return False
    return target in VALID_TRANSITIONS[state]


def check_transition(current: str | OrderStatus, requested: str | OrderStatus) -> OrderStatus:
    """Return the parsed target state or raise InvalidTransition carrying the allowed set."""
    if not is_valid_transition(current, requested):
        raise InvalidTransition(
            current=str(getattr(current, "value", current)),
            requested=str(getattr(requested, "value", requested)),
            allowed=allowed_transitions(current),
        )
    return OrderStatus.parse(requested)

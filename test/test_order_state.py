"""
Order lifecycle state machine: the transition table, the `paid` alias and the shape of rejections.
"""
import pytest

from courier_dispatch.errors import InvalidTransition
from courier_dispatch.order_state import (
    TERMINAL_STATES,
    VALID_TRANSITIONS,
    OrderStatus,
    allowed_transitions,
    check_transition,
    is_valid_transition,
)

HAPPY_PATH = [
    OrderStatus.PENDING_ADMIN_REVIEW,
    OrderStatus.APPROVED_PENDING_PAYMENT,
    OrderStatus.READY_FOR_DISPATCH,
    OrderStatus.ASSIGNED,
    OrderStatus.EN_ROUTE,
    OrderStatus.COMPLETED,
]


def test_happy_path_is_a_chain_of_single_steps():
    for current, nxt in zip(HAPPY_PATH, HAPPY_PATH[1:]):
        assert is_valid_transition(current, nxt)
        assert check_transition(current, nxt) is nxt


def test_every_state_has_a_table_entry():
    assert set(VALID_TRANSITIONS) == set(OrderStatus)


@pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
def test_terminal_states_have_no_exits(terminal):
    assert allowed_transitions(terminal) == []
    for target in OrderStatus:
        assert not is_valid_transition(terminal, target)


def test_reject_only_before_payment():
    assert is_valid_transition("pending_admin_review", "rejected")
    assert is_valid_transition("approved_pending_payment", "rejected")
    for status in ("ready_for_dispatch", "assigned", "en_route"):
        assert not is_valid_transition(status, "rejected")


def test_steps_cannot_be_skipped_or_reversed():
    assert not is_valid_transition("pending_admin_review", "ready_for_dispatch")
    assert not is_valid_transition("assigned", "completed")
    assert not is_valid_transition("en_route", "assigned")
    assert not is_valid_transition("assigned", "assigned")


def test_paid_alias_reads_as_ready_for_dispatch():
    assert OrderStatus.parse("paid") is OrderStatus.READY_FOR_DISPATCH
    assert is_valid_transition("approved_pending_payment", "paid")
    assert is_valid_transition("paid", "assigned")
    assert allowed_transitions("paid") == ["assigned"]


def test_allowed_transitions_are_sorted_values():
    assert allowed_transitions(OrderStatus.PENDING_ADMIN_REVIEW) == ["approved_pending_payment", "rejected"]
    assert allowed_transitions("approved_pending_payment") == ["ready_for_dispatch", "rejected"]


def test_unknown_status_has_no_transitions():
    assert allowed_transitions("shipped") == []
    assert not is_valid_transition("shipped", "completed")
    assert not is_valid_transition("assigned", "shipped")


def test_invalid_transition_reports_current_and_allowed():
    with pytest.raises(InvalidTransition) as exc_info:
        check_transition("ready_for_dispatch", OrderStatus.COMPLETED)
    err = exc_info.value
    assert err.current == "ready_for_dispatch"
    assert err.requested == "completed"
    assert err.allowed == ["assigned"]
    assert err.status_code == 400
    body = err.to_dict()
    assert body["error"] == "invalid_transition"
    assert body["allowed_transitions"] == ["assigned"]
    assert body["current_status"] == "ready_for_dispatch"

"""Tests for the order status state machine."""
import itertools

import pytest

from errors import StatusTransitionError
from order_status import (
    ORDER_STATUSES,
    StatusTransition,
    is_valid_transition,
    transition_error_message,
    valid_next_statuses,
    validate_bulk_transitions,
    validate_transition,
)

ALLOWED = {
    ("pending", "completed"),
    ("pending", "cancelled"),
    ("pending_inventory", "completed"),
    ("pending_inventory", "cancelled"),
    ("completed", "refunded"),
    ("cancelled", "pending"),
}


class TestTransitionTable:
    @pytest.mark.parametrize("from_status,to_status", list(itertools.product(ORDER_STATUSES, repeat=2)))
    def test_every_pair_matches_table(self, from_status, to_status):
        assert is_valid_transition(from_status, to_status) is ((from_status, to_status) in ALLOWED)

    def test_refunded_is_terminal(self):
        assert valid_next_statuses("refunded") == []
        assert transition_error_message("refunded", "pending") == (
            "Order status 'refunded' is final and cannot be changed"
        )

    def test_unknown_status_has_no_transitions(self):
        assert valid_next_statuses("shipped") == []
        assert not is_valid_transition("shipped", "completed")

    def test_next_statuses_sorted(self):
        assert valid_next_statuses("pending") == ["cancelled", "completed"]


class TestMessages:
    @pytest.mark.parametrize("from_status,to_status,message", [
        ("completed", "cancelled", "Cannot cancel an order that has already been completed"),
        ("refunded", "completed", "Cannot mark a refunded order as completed"),
        ("refunded", "cancelled", "Cannot cancel an order that has already been refunded"),
        ("cancelled", "refunded", "Cannot refund an order that was never completed"),
        ("cancelled", "completed", "A cancelled order must be reactivated to pending status first"),
        ("pending", "refunded", "Can only refund completed orders"),
    ])
    def test_business_rule_messages(self, from_status, to_status, message):
        assert transition_error_message(from_status, to_status) == message
        with pytest.raises(StatusTransitionError) as exc_info:
            validate_transition(from_status, to_status)
        assert exc_info.value.message == message
        assert exc_info.value.status_code == 400

    def test_generic_message_lists_valid_targets(self):
        assert transition_error_message("completed", "pending") == (
            "Invalid status transition from 'completed' to 'pending'. Valid transitions: refunded"
        )

    def test_valid_transition_does_not_raise(self):
        validate_transition("pending", "completed")


def test_bulk_partitions_valid_and_invalid():
    result = validate_bulk_transitions([
        StatusTransition(order_id="a", from_status="pending", to_status="completed"),
        StatusTransition(order_id="b", from_status="refunded", to_status="completed"),
        StatusTransition(order_id="c", from_status="completed", to_status="refunded"),
    ])
    assert [t.order_id for t in result.valid] == ["a", "c"]
    assert len(result.invalid) == 1
    assert result.invalid[0].order_id == "b"
    assert result.invalid[0].error == "Cannot mark a refunded order as completed"

"""
Order status state machine.

Pure checks only: nothing here reads or writes an order.
"""
from typing import Dict, FrozenSet, List, Optional, Tuple

from pydantic import BaseModel

from errors import StatusTransitionError

ORDER_STATUSES = ("pending", "pending_inventory", "completed", "cancelled", "refunded")

VALID_TRANSITIONS: Dict[str, FrozenSet[str]] = {
    "pending": frozenset({"completed", "cancelled"}),
    "pending_inventory": frozenset({"completed", "cancelled"}),
    "completed": frozenset({"refunded"}),
    "cancelled": frozenset({"pending"}),
    "refunded": frozenset(),
}

BUSINESS_RULES: Dict[Tuple[str, str], str] = {
    ("completed", "cancelled"): "Cannot cancel an order that has already been completed",
    ("refunded", "completed"): "Cannot mark a refunded order as completed",
    ("refunded", "cancelled"): "Cannot cancel an order that has already been refunded",
    ("cancelled", "refunded"): "Cannot refund an order that was never completed",
    ("cancelled", "completed"): "A cancelled order must be reactivated to pending status first",
    ("pending", "refunded"): "Can only refund completed orders",
}


class StatusTransition(BaseModel):
    from_status: str
    to_status: str
    order_id: Optional[str] = None
    actor_id: Optional[str] = None
    reason: Optional[str] = None


class InvalidTransition(StatusTransition):
    error: str


class BulkTransitionResult(BaseModel):
    valid: List[StatusTransition] = []
    invalid: List[InvalidTransition] = []


def valid_next_statuses(status: str) -> List[str]:
    # sorted so messages are stable
    return sorted(VALID_TRANSITIONS.get(status, frozenset()))


def is_valid_transition(from_status: str, to_status: str) -> bool:
    return to_status in VALID_TRANSITIONS.get(from_status, frozenset())


def transition_error_message(from_status: str, to_status: str) -> str:
    rule = BUSINESS_RULES.get((from_status, to_status))
    if rule:
        return rule
    if from_status not in VALID_TRANSITIONS:
        return f"Unknown order status '{from_status}'"
    allowed = valid_next_statuses(from_status)
    if not allowed:
        return f"Order status '{from_status}' is final and cannot be changed"
    return (
        f"Invalid status transition from '{from_status}' to '{to_status}'. "
        f"Valid transitions: {', '.join(allowed)}"
    )


def validate_transition(from_status: str, to_status: str) -> None:
    if not is_valid_transition(from_status, to_status):
        raise StatusTransitionError(transition_error_message(from_status, to_status), from_status, to_status)


def validate_bulk_transitions(transitions: List[StatusTransition]) -> BulkTransitionResult:
    result = BulkTransitionResult()
    for t in transitions:
        if is_valid_transition(t.from_status, t.to_status):
            result.valid.append(t)
        else:
            result.invalid.append(
                InvalidTransition(**t.model_dump(), error=transition_error_message(t.from_status, t.to_status))
            )
    return result

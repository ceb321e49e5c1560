"""Outreach state machines — validate status transitions for review requests,
nurture sequences and human handoffs.

Status columns are plain strings in the store; every write goes through
``apply`` so an illegal move (e.g. reviewed -> sent) is rejected here
instead of relying on caller discipline.
"""

from enum import Enum
from typing import Type

from outreach_engine.domain.enums import (
    HandoffStatus,
    NurtureStatus,
    ReviewRequestStatus,
)


class InvalidTransitionError(Exception):
    """Raised when a status transition is not allowed."""

    status_code = 409

    def __init__(self, current_status: Enum, target_status: Enum, reason: str):
        self.current_status = current_status
        self.target_status = target_status
        self.reason = reason
        super().__init__(
            f"Invalid transition from {current_status.value} to {target_status.value}: {reason}"
        )


# ---------------------------------------------------------------------------
# Transition maps: from_status -> set of allowed to_status
# ---------------------------------------------------------------------------

R = ReviewRequestStatus

REVIEW_TRANSITIONS: dict[ReviewRequestStatus, set[ReviewRequestStatus]] = {
    R.PENDING: {R.SENT, R.FAILED},
    R.SENT: {R.DELIVERED, R.CLICKED, R.REVIEWED, R.FAILED},
    R.DELIVERED: {R.CLICKED, R.REVIEWED, R.FAILED},
    R.CLICKED: {R.REVIEWED, R.FAILED},
}

N = NurtureStatus

NURTURE_TRANSITIONS: dict[NurtureStatus, set[NurtureStatus]] = {
    N.ACTIVE: {N.COMPLETED, N.CONVERTED, N.OPTED_OUT, N.FAILED},
}

H = HandoffStatus

HANDOFF_TRANSITIONS: dict[HandoffStatus, set[HandoffStatus]] = {
    H.PENDING: {H.CLAIMED, H.ESCALATED, H.RESOLVED},
    H.CLAIMED: {H.ESCALATED, H.RESOLVED},
    H.ESCALATED: {H.CLAIMED, H.RESOLVED},
}

# Anything without an entry in its map is terminal
REVIEW_TERMINAL_STATES = {s for s in ReviewRequestStatus if s not in REVIEW_TRANSITIONS}
NURTURE_TERMINAL_STATES = {s for s in NurtureStatus if s not in NURTURE_TRANSITIONS}
HANDOFF_TERMINAL_STATES = {s for s in HandoffStatus if s not in HANDOFF_TRANSITIONS}

# Handoffs in these states block automated replies on their conversation
OPEN_HANDOFF_STATES = {H.PENDING.value, H.CLAIMED.value, H.ESCALATED.value}


class OutreachStateMachine:
    """Validates transitions for one status enum against its transition map."""

    def __init__(self, status_enum: Type[Enum], transitions: dict):
        self.status_enum = status_enum
        self.transitions = transitions

    def _coerce(self, status):
        return status if isinstance(status, self.status_enum) else self.status_enum(status)

    def is_terminal(self, status) -> bool:
        return self._coerce(status) not in self.transitions

    def validate_transition(self, current_status, target_status) -> bool:
        """Return True if the transition is valid. Raise InvalidTransitionError if not."""
        current = self._coerce(current_status)
        target = self._coerce(target_status)

        allowed_targets = self.transitions.get(current)
        if allowed_targets is None:
            raise InvalidTransitionError(
                current, target, f"{current.value} is a terminal state"
            )
        if target not in allowed_targets:
            raise InvalidTransitionError(
                current,
                target,
                f"Transition from {current.value} to {target.value} is not allowed",
            )
        return True

    def get_allowed_transitions(self, current_status) -> list:
        """Return list of valid next states from the current status."""
        current = self._coerce(current_status)
        return sorted(self.transitions.get(current, set()), key=lambda s: s.value)

    def apply(self, record, target_status):
        """Validate and set ``record.status``. Returns the record."""
        target = self._coerce(target_status)
        self.validate_transition(record.status, target)
        record.status = target.value
        return record


review_state_machine = OutreachStateMachine(ReviewRequestStatus, REVIEW_TRANSITIONS)
nurture_state_machine = OutreachStateMachine(NurtureStatus, NURTURE_TRANSITIONS)
handoff_state_machine = OutreachStateMachine(HandoffStatus, HANDOFF_TRANSITIONS)

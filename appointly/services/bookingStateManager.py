"""
Booking State Manager
=====================

Finite state machine governing all valid booking status transitions. Every
status change MUST go through ``validate_transition`` before being persisted.

State machine overview::

    requested --> accepted --> in_progress --> completed

    requested | accepted | in_progress --> cancelled
    accepted --> no_show

    completed, cancelled, no_show are terminal.

Who may trigger an action is decided by the guard chains in
``bookingService``; this module only answers "is this move legal".
"""

from __future__ import annotations

import enum
from dataclasses import dataclass

from appointly.core.exceptions import InvalidStateTransitionError
from appointly.models.booking import BookingStatus


# ---------------------------------------------------------------------------
# Actions
# ---------------------------------------------------------------------------

class BookingAction(str, enum.Enum):
    ACCEPT = "accept"
    START = "start"
    COMPLETE = "complete"
    CANCEL = "cancel"
    NO_SHOW = "no_show"


ACTION_TARGETS: dict[BookingAction, BookingStatus] = {
    BookingAction.ACCEPT: BookingStatus.ACCEPTED,
    BookingAction.START: BookingStatus.IN_PROGRESS,
    BookingAction.COMPLETE: BookingStatus.COMPLETED,
    BookingAction.CANCEL: BookingStatus.CANCELLED,
    BookingAction.NO_SHOW: BookingStatus.NO_SHOW,
}


# ---------------------------------------------------------------------------
# Transition result
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class TransitionResult:
    """Result of a transition validation attempt."""
    allowed: bool
    reason: str | None = None


# ---------------------------------------------------------------------------
# Transition definitions
# ---------------------------------------------------------------------------

VALID_TRANSITIONS: dict[BookingStatus, set[BookingStatus]] = {
    BookingStatus.REQUESTED: {
        BookingStatus.ACCEPTED,
        BookingStatus.CANCELLED,
    },
    BookingStatus.ACCEPTED: {
        BookingStatus.IN_PROGRESS,
        BookingStatus.CANCELLED,
        BookingStatus.NO_SHOW,
    },
    BookingStatus.IN_PROGRESS: {
        BookingStatus.COMPLETED,
        BookingStatus.CANCELLED,
    },
    # Terminal
    BookingStatus.COMPLETED: set(),
    BookingStatus.CANCELLED: set(),
    BookingStatus.NO_SHOW: set(),
}


def is_terminal(status: BookingStatus) -> bool:
    return not VALID_TRANSITIONS.get(status)


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------

def validate_transition(
    current_status: BookingStatus,
    new_status: BookingStatus,
) -> TransitionResult:
    """Check whether ``current_status -> new_status`` is in the table."""
    allowed_targets = VALID_TRANSITIONS.get(current_status, set())
    if new_status in allowed_targets:
        return TransitionResult(allowed=True)
    return TransitionResult(
        allowed=False,
        reason=(
            f"Invalid transition: '{current_status.value}' -> '{new_status.value}'. "
            f"Allowed transitions from '{current_status.value}': "
            f"{', '.join(s.value for s in sorted(allowed_targets, key=lambda s: s.value)) or 'none'}."
        ),
    )


def apply_action(current_status: BookingStatus, action: BookingAction) -> BookingStatus:
    """Return the status ``action`` leads to, or raise InvalidStateTransitionError."""
    target = ACTION_TARGETS[action]
    result = validate_transition(current_status, target)
    if not result.allowed:
        raise InvalidStateTransitionError(
            result.reason or "Transition not allowed.",
            current=current_status.value,
            target=target.value,
        )
    return target


def get_valid_actions(current_status: BookingStatus) -> list[BookingAction]:
    """Actions that are structurally possible from ``current_status``.

    Useful for UI hints (e.g. which buttons to show on a booking).
    """
    return [
        action
        for action, target in ACTION_TARGETS.items()
        if validate_transition(current_status, target).allowed
    ]

"""
Session status state machine.

Defines allowed status transitions and validation logic.
"""

from typing import Set

from .models import SessionStatus
from .exceptions import InvalidTransitionError


# State machine: allowed transitions from each status
ALLOWED_TRANSITIONS: dict[SessionStatus, Set[SessionStatus]] = {
    SessionStatus.PENDING: {
        SessionStatus.AWAITING_CODE,
        SessionStatus.CONNECTED,
        SessionStatus.ERROR,
        SessionStatus.CLOSED,
    },
    SessionStatus.AWAITING_CODE: {
        SessionStatus.AWAITING_LINK,
        SessionStatus.CONNECTED,
        SessionStatus.PENDING,
        SessionStatus.ERROR,
        SessionStatus.CLOSED,
    },
    SessionStatus.AWAITING_LINK: {
        SessionStatus.CONNECTED,
        SessionStatus.PENDING,
        SessionStatus.ERROR,
        SessionStatus.CLOSED,
    },
    SessionStatus.CONNECTED: {
        SessionStatus.PENDING,
        SessionStatus.ERROR,
        SessionStatus.CLOSED,
    },
    SessionStatus.ERROR: {
        SessionStatus.PENDING,
        SessionStatus.CONNECTED,
        SessionStatus.CLOSED,
    },
    SessionStatus.CLOSED: set(),  # Terminal state
}

# Statuses whose pairing code is no longer usable
CODE_INVALIDATING = {SessionStatus.CONNECTED, SessionStatus.ERROR, SessionStatus.CLOSED}


def validate_transition(from_status: SessionStatus, to_status: SessionStatus) -> None:
    """
    Validate that a status transition is allowed by the state machine.

    Args:
        from_status: Current status
        to_status: Target status

    Raises:
        InvalidTransitionError: If transition is not allowed

    Example:
        >>> validate_transition(SessionStatus.PENDING, SessionStatus.AWAITING_CODE)  # OK
        >>> validate_transition(SessionStatus.CLOSED, SessionStatus.PENDING)  # Raises
    """
    allowed = ALLOWED_TRANSITIONS.get(from_status, set())
    if to_status not in allowed:
        raise InvalidTransitionError(
            f"Invalid transition: {from_status.value} → {to_status.value}"
        )


def is_terminal(status: SessionStatus) -> bool:
    """
    Check if a status is terminal (no outgoing transitions).

    Args:
        status: Status to check

    Returns:
        True if status is terminal (CLOSED)
    """
    return len(ALLOWED_TRANSITIONS.get(status, set())) == 0


def transition(record, to_status: SessionStatus) -> None:
    """Move ``record`` to ``to_status``, clearing the pairing code when it dies.

    A no-op when the record already has ``to_status``.
    """
    if record.status == to_status:
        return
    validate_transition(record.status, to_status)
    record.status = to_status
    if to_status in CODE_INVALIDATING:
        record.pairing_code = None

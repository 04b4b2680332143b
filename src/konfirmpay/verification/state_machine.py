"""Verification session state machine with transition validation."""

from __future__ import annotations

from enum import Enum


class SessionState(str, Enum):
    """Verification session states."""

    PENDING = "PENDING"
    PAID = "PAID"
    FAILED = "FAILED"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str, reason: str | None = None):
        self.from_state = from_state
        self.to_state = to_state
        self.reason = reason
        msg = f"Invalid transition from '{from_state}' to '{to_state}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class SessionStateMachine:
    """State machine for verification sessions and merchant payment attempts.

    Allowed transitions:
    - PENDING → PAID
    - PENDING → FAILED

    PAID and FAILED are terminal. Nothing returns to PENDING.
    """

    VALID_TRANSITIONS: dict[str, list[str]] = {
        SessionState.PENDING: [SessionState.PAID, SessionState.FAILED],
        SessionState.PAID: [],
        SessionState.FAILED: [],
    }

    TERMINAL = {SessionState.PAID, SessionState.FAILED}

    @classmethod
    def can_transition(cls, from_state: str, to_state: str) -> bool:
        """Check if a transition is valid."""
        allowed = cls.VALID_TRANSITIONS.get(from_state, [])
        return to_state in allowed

    @classmethod
    def validate_transition(cls, from_state: str, to_state: str) -> None:
        """Validate a transition, raising InvalidTransitionError if invalid."""
        if not cls.can_transition(from_state, to_state):
            reason = "terminal state" if cls.is_terminal(from_state) else None
            raise InvalidTransitionError(from_state, to_state, reason)

    @classmethod
    def is_terminal(cls, state: str) -> bool:
        """Check if no further transitions are possible."""
        return state in cls.TERMINAL

    @classmethod
    def allows_disclosure(cls, state: str) -> bool:
        """Merchant details are visible only for PAID sessions."""
        return state == SessionState.PAID

"""Session status state machine.

This module exposes:

- ``SessionStatus``      — enum of the three session states.
- ``SessionEvent``       — enum of events that drive status transitions.
- ``VALID_TRANSITIONS``  — frozenset of (from, to) pairs.
- ``validate_transition`` — pure guard evaluator.
- ``apply_event``        — pure function: status x event → next status.
- ``SessionStateMachine`` — stateful wrapper owned by one executor.

``TERMINATED`` is absorbing: no transition leaves it.  All guards are pure
functions; the same inputs always produce the same output.
"""

from __future__ import annotations

from enum import StrEnum

from chatflow.exceptions import SessionStateError

# ---------------------------------------------------------------------------
# State and event enumerations
# ---------------------------------------------------------------------------


class SessionStatus(StrEnum):
    """Lifecycle status of a chat session."""

    RUNNING = "running"
    AWAITING_INPUT = "awaiting_input"
    TERMINATED = "terminated"


class SessionEvent(StrEnum):
    """Events that drive session status transitions."""

    SUSPEND = "SUSPEND"
    """An input node was reached.  RUNNING → AWAITING_INPUT."""

    RESUME = "RESUME"
    """A matching inbound event arrived.  AWAITING_INPUT → RUNNING."""

    FINISH = "FINISH"
    """The flow ran out of nodes and edges, hit a dead end, or failed.
    RUNNING → TERMINATED."""

    CANCEL_RUNNING = "CANCEL_RUNNING"
    """Operator cancellation while running (e.g. awaiting an I/O result).
    RUNNING → TERMINATED."""

    CANCEL_AWAITING = "CANCEL_AWAITING"
    """Operator cancellation while waiting for the user.
    AWAITING_INPUT → TERMINATED."""


# ---------------------------------------------------------------------------
# Transition tables
# ---------------------------------------------------------------------------

#: All valid (from_status, to_status) pairs.
VALID_TRANSITIONS: frozenset[tuple[SessionStatus, SessionStatus]] = frozenset(
    {
        (SessionStatus.RUNNING, SessionStatus.AWAITING_INPUT),
        (SessionStatus.AWAITING_INPUT, SessionStatus.RUNNING),
        (SessionStatus.RUNNING, SessionStatus.TERMINATED),
        (SessionStatus.AWAITING_INPUT, SessionStatus.TERMINATED),
    }
)

#: Each event maps to exactly one (required_from, next_status) pair.
_EVENT_TRANSITION: dict[SessionEvent, tuple[SessionStatus, SessionStatus]] = {
    SessionEvent.SUSPEND: (SessionStatus.RUNNING, SessionStatus.AWAITING_INPUT),
    SessionEvent.RESUME: (SessionStatus.AWAITING_INPUT, SessionStatus.RUNNING),
    SessionEvent.FINISH: (SessionStatus.RUNNING, SessionStatus.TERMINATED),
    SessionEvent.CANCEL_RUNNING: (SessionStatus.RUNNING, SessionStatus.TERMINATED),
    SessionEvent.CANCEL_AWAITING: (
        SessionStatus.AWAITING_INPUT,
        SessionStatus.TERMINATED,
    ),
}


def cancel_event_for(status: SessionStatus) -> SessionEvent | None:
    """Cancellation event applicable from *status* (``None`` once terminated)."""
    if status is SessionStatus.RUNNING:
        return SessionEvent.CANCEL_RUNNING
    if status is SessionStatus.AWAITING_INPUT:
        return SessionEvent.CANCEL_AWAITING
    return None


# ---------------------------------------------------------------------------
# Pure guard functions
# ---------------------------------------------------------------------------


def validate_transition(
    from_status: SessionStatus,
    to_status: SessionStatus,
) -> bool:
    """Return ``True`` iff ``from_status → to_status`` is a valid transition.

    Raises
    ------
    SessionStateError
        If the transition is not in ``VALID_TRANSITIONS``.  The message
        names the invalid pair and lists the valid successors.
    """
    if (from_status, to_status) in VALID_TRANSITIONS:
        return True
    valid_successors = sorted(
        t.value for f, t in VALID_TRANSITIONS if f == from_status
    )
    raise SessionStateError(
        invariant="status_transition",
        detail=(
            f"Invalid session transition "
            f"{from_status.value!r} → {to_status.value!r}.  "
            f"Valid successors of {from_status.value!r}: {valid_successors}"
        ),
    )


def apply_event(status: SessionStatus, event: SessionEvent) -> SessionStatus:
    """Apply *event* to *status* and return the resulting status.

    Raises
    ------
    SessionStateError
        If *event* is not applicable from *status*.
    """
    required_from, next_status = _EVENT_TRANSITION[event]
    if status != required_from:
        raise SessionStateError(
            invariant="status_transition",
            detail=(
                f"Event {event.value!r} requires status "
                f"{required_from.value!r}, but current status is "
                f"{status.value!r}"
            ),
        )
    return next_status


# ---------------------------------------------------------------------------
# Stateful wrapper
# ---------------------------------------------------------------------------


class SessionStateMachine:
    """Tracks one session's status and validates every change.

    Invariants
    ----------
    * ``self.status`` is always a member of ``SessionStatus``.
    * ``self.status`` evolves only via ``advance()``; the property has no
      setter.

    Usage::

        machine = SessionStateMachine()
        machine.advance(SessionEvent.SUSPEND)   # RUNNING → AWAITING_INPUT
        machine.advance(SessionEvent.RESUME)    # AWAITING_INPUT → RUNNING
        machine.advance(SessionEvent.FINISH)    # RUNNING → TERMINATED
    """

    __slots__ = ("_status",)

    def __init__(self, status: SessionStatus = SessionStatus.RUNNING) -> None:
        self._status = status

    @property
    def status(self) -> SessionStatus:
        return self._status

    @property
    def is_terminated(self) -> bool:
        return self._status is SessionStatus.TERMINATED

    def advance(self, event: SessionEvent) -> SessionStatus:
        """Apply *event*; an invalid event leaves the status unchanged."""
        next_status = apply_event(self._status, event)
        validate_transition(self._status, next_status)
        self._status = next_status
        return self._status

    def __repr__(self) -> str:
        return f"SessionStateMachine(status={self._status.value!r})"

"""Chatflow exception hierarchy.

All package exceptions inherit from ``ChatflowError`` so that drivers can
catch everything raised by the engine with a single ``except`` clause.

Runtime failures inside a session (dead ends, I/O failures, cancellation)
are *not* raised; the executor turns them into a ``terminated`` outbound
event.  The exceptions below cover compile-time failures and caller
(driver) usage errors.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum


class ChatflowError(Exception):
    """Base exception for all chatflow failures."""

    __slots__ = ()


# ── Compile-time ─────────────────────────────────────


class ViolationCode(StrEnum):
    """Machine-readable codes for workspace invariant violations."""

    SCHEMA = "schema"
    DUPLICATE_CONTAINER_ID = "duplicate_container_id"
    DUPLICATE_NODE_ID = "duplicate_node_id"
    MISSING_START = "missing_start"
    MULTIPLE_START = "multiple_start"
    START_NOT_FIRST = "start_not_first"
    EMPTY_CONTAINER = "empty_container"
    UNKNOWN_EDGE_SOURCE = "unknown_edge_source"
    UNKNOWN_EDGE_TARGET = "unknown_edge_target"
    UNRESOLVED_SOURCE_HANDLE = "unresolved_source_handle"
    DUPLICATE_BRANCH_ID = "duplicate_branch_id"


@dataclass(slots=True, frozen=True)
class Violation:
    """A single invariant violation found while compiling a workspace.

    Attributes
    ----------
    code : ViolationCode
        Violation category.
    message : str
        Human-readable description, suitable for the editor.
    location : str
        Dotted path of the offending element (``containers[2].nodes[0]``,
        ``edges[e1]``); empty when the violation is workspace-wide.
    """

    code: ViolationCode
    message: str
    location: str = ""

    def __str__(self) -> str:
        if self.location:
            return f"[{self.code.value}] {self.location}: {self.message}"
        return f"[{self.code.value}] {self.message}"


class GraphValidationError(ChatflowError):
    """Raised when a workspace document violates one or more graph invariants.

    Attributes
    ----------
    violations : list[Violation]
        Every violation found, in discovery order.  Never empty.
    """

    __slots__ = ("violations",)

    def __init__(self, violations: list[Violation]) -> None:
        n = len(violations)
        summary = f"{n} violation{'s' if n != 1 else ''}"
        super().__init__(f"workspace validation failed: {summary}")
        self.violations = violations

    @property
    def codes(self) -> set[ViolationCode]:
        return {v.code for v in self.violations}


# ── Session state machine ────────────────────────────


class SessionStateError(ChatflowError):
    """Raised when a session status transition is not permitted.

    Attributes
    ----------
    invariant : str
        Short identifier for the invariant that was violated
        (e.g. ``"status_transition"``).
    """

    __slots__ = ("invariant",)

    def __init__(self, invariant: str, detail: str = "") -> None:
        msg = f"Session invariant {invariant!r} violated"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
        self.invariant = invariant


class UnexpectedEventError(ChatflowError):
    """Raised when an inbound event does not match what the session awaits."""

    __slots__ = ("detail", "session_id")

    def __init__(self, session_id: str, detail: str) -> None:
        super().__init__(f"Session {session_id!r} rejected event: {detail}")
        self.session_id = session_id
        self.detail = detail


# ── Driver usage errors ──────────────────────────────


class SessionTerminatedError(ChatflowError):
    """Raised when an event is addressed to a terminated session."""

    __slots__ = ("session_id",)

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id!r} is terminated")
        self.session_id = session_id


class SessionNotFoundError(ChatflowError):
    """Raised when a session id is unknown to the runtime and its repository."""

    __slots__ = ("session_id",)

    def __init__(self, session_id: str) -> None:
        super().__init__(f"Session {session_id!r} not found")
        self.session_id = session_id


class WorkspaceMismatchError(ChatflowError):
    """Raised when a persisted session belongs to another workspace version."""

    __slots__ = ("actual", "expected")

    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f"Session was persisted against workspace {actual[:12]!r}, "
            f"runtime is serving {expected[:12]!r}"
        )
        self.expected = expected
        self.actual = actual


class WebhookAuthError(ChatflowError):
    """Raised when an inbound webhook payload fails authentication."""

    __slots__ = ("detail",)

    def __init__(self, detail: str) -> None:
        super().__init__(f"Webhook authentication failed: {detail}")
        self.detail = detail

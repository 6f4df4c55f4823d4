"""Execution engine for compiled chat flows.

Provides the per-session state machine and the pieces it drives: variable
store, text interpolation, condition evaluation, I/O delegation and the
multi-session runtime.
"""

from __future__ import annotations

from .conditions import (
    compile_pattern,
    evaluate_comparison,
    evaluate_group,
    first_matching_group,
)
from .events import (
    InboundEvent,
    InboundKind,
    OutboundEvent,
    OutboundKind,
    TerminationReason,
)
from .executor import FlowExecutor
from .interpolation import (
    RenderedSegment,
    Segment,
    SegmentKind,
    normalize_url,
    parse_segments,
    render,
    render_segments,
)
from .io import (
    HttpRequestHandler,
    IOCollaborator,
    IORequest,
    IOResult,
    IORouter,
    WebhookInbox,
)
from .runtime import FlowRuntime, InMemorySessionRepository, SessionRepository
from .session import Position, Session, SessionSnapshot
from .state_machine import SessionEvent, SessionStateMachine, SessionStatus
from .variables import VariableStore, discover_variable_names, normalize_name

__all__ = [
    "FlowExecutor",
    "FlowRuntime",
    "HttpRequestHandler",
    "IOCollaborator",
    "IORequest",
    "IOResult",
    "IORouter",
    "InMemorySessionRepository",
    "InboundEvent",
    "InboundKind",
    "OutboundEvent",
    "OutboundKind",
    "Position",
    "RenderedSegment",
    "Segment",
    "SegmentKind",
    "Session",
    "SessionEvent",
    "SessionRepository",
    "SessionSnapshot",
    "SessionStateMachine",
    "SessionStatus",
    "TerminationReason",
    "VariableStore",
    "WebhookInbox",
    "compile_pattern",
    "discover_variable_names",
    "evaluate_comparison",
    "evaluate_group",
    "first_matching_group",
    "normalize_name",
    "normalize_url",
    "parse_segments",
    "render",
    "render_segments",
]

"""Inbound and outbound session events.

Inbound events are what a driver feeds into a session::

    {sessionId, kind: reply | selection | webhookPayload, value}

Outbound events are what a session produces::

    {sessionId, kind: render | prompt | buttonPrompt | ioRequest | terminated,
     payload}

Both serialize with the camelCase keys above (``model_dump(by_alias=True)``).
"""

from __future__ import annotations

from enum import StrEnum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

__all__ = [
    "InboundEvent",
    "InboundKind",
    "OutboundEvent",
    "OutboundKind",
    "TerminationReason",
]


class InboundKind(StrEnum):
    REPLY = "reply"
    SELECTION = "selection"
    WEBHOOK_PAYLOAD = "webhookPayload"


class OutboundKind(StrEnum):
    RENDER = "render"
    PROMPT = "prompt"
    BUTTON_PROMPT = "buttonPrompt"
    IO_REQUEST = "ioRequest"
    TERMINATED = "terminated"


class TerminationReason(StrEnum):
    """Why a session reached ``terminated``."""

    COMPLETED = "completed"
    DEAD_END = "dead_end"
    IO_FAILURE = "io_failure"
    CANCELLED = "cancelled"
    STEP_LIMIT = "step_limit"


class InboundEvent(BaseModel):
    """An event delivered to one session.

    ``value`` is the reply text for ``reply``, one button id or a list of
    button ids for ``selection``, and any JSON-compatible payload for
    ``webhookPayload``.  ``headers`` carries request headers of a webhook
    delivery (used for authentication).
    """

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    kind: InboundKind
    value: Any = None
    headers: dict[str, str] = Field(default_factory=dict)

    @classmethod
    def reply(cls, session_id: str, text: str) -> InboundEvent:
        return cls(session_id=session_id, kind=InboundKind.REPLY, value=text)

    @classmethod
    def selection(cls, session_id: str, *button_ids: str) -> InboundEvent:
        value: Any = button_ids[0] if len(button_ids) == 1 else list(button_ids)
        return cls(session_id=session_id, kind=InboundKind.SELECTION, value=value)

    @classmethod
    def webhook_payload(
        cls,
        session_id: str,
        payload: Any,
        headers: dict[str, str] | None = None,
    ) -> InboundEvent:
        return cls(
            session_id=session_id,
            kind=InboundKind.WEBHOOK_PAYLOAD,
            value=payload,
            headers=headers or {},
        )

    def selected_ids(self) -> list[str]:
        """Button ids carried by a ``selection`` event."""
        if self.value is None:
            return []
        if isinstance(self.value, (list, tuple)):
            return [str(v) for v in self.value]
        return [str(self.value)]


class OutboundEvent(BaseModel):
    """An event produced by one session for its driver."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    kind: OutboundKind
    payload: dict[str, Any] = Field(default_factory=dict)

    @property
    def text(self) -> str:
        """Rendered text of a ``render`` or ``prompt`` event ("" otherwise)."""
        return str(self.payload.get("text", ""))

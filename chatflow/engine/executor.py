"""Per-session flow executor.

``FlowExecutor`` walks one session through a ``CompiledGraph``.  It is a
cooperative state machine: each public call processes exactly one unit of
work to completion and returns the outbound events it produced.

- ``start()``   runs a ``running`` session until it suspends or terminates.
- ``handle()``  applies one inbound event to an ``awaiting_input`` session
  and keeps running.
- ``terminate()`` forces ``terminated`` from any state, including while an
  I/O result is pending; that result is discarded when it arrives.

Node dispatch while running:

============== ==========================================================
start          no-op, advance
bubble-*       render through the interpolator, emit ``render``, advance
input-*        emit ``prompt`` / ``buttonPrompt``, suspend
set-variable   write the store, advance
condition      first true group's edge, else the default edge, else a
               dead end
webhook,       delegate to the I/O collaborator; success stores the
http-request,  result and advances, failure follows the node's failure
script         edge or terminates
============== ==========================================================

Reaching the end of a container follows its unconditional exit edge or
completes the session.  Time and randomness come only from the injected
``clock`` and ``token_factory``, so identical inputs produce identical
output.
"""

from __future__ import annotations

import logging
import secrets
from collections.abc import Callable
from datetime import UTC, datetime, timedelta
from typing import Any

from chatflow.config import EngineSettings, get_settings
from chatflow.engine.conditions import first_matching_group
from chatflow.engine.events import (
    InboundEvent,
    InboundKind,
    OutboundEvent,
    OutboundKind,
    TerminationReason,
)
from chatflow.engine.interpolation import render, render_segments
from chatflow.engine.io import (
    IOCollaborator,
    IORequest,
    IOResult,
    IORouter,
    payload_text,
    timeout_for,
)
from chatflow.engine.session import Position, Session
from chatflow.engine.state_machine import (
    SessionEvent,
    SessionStatus,
    cancel_event_for,
)
from chatflow.engine.variables import normalize_name, to_text
from chatflow.exceptions import (
    SessionStateError,
    SessionTerminatedError,
    UnexpectedEventError,
)
from chatflow.graph.compiler import (
    DEFAULT_KEY,
    ELSE_KEY,
    FAILURE_KEY,
    CompiledGraph,
    button_key,
    condition_key,
)
from chatflow.graph.schema import (
    BubbleAudioNode,
    BubbleDocumentNode,
    BubbleImageNode,
    BubbleNumberNode,
    BubbleTextNode,
    BubbleVideoNode,
    ButtonsInputNode,
    ConditionNode,
    Edge,
    InputNode,
    Node,
    NodeKind,
    NumberInputNode,
    SetValueType,
    SetVariableNode,
    WebhookNode,
)

log = logging.getLogger(__name__)

__all__ = ["Clock", "FlowExecutor", "TokenFactory"]

Clock = Callable[[], datetime]
TokenFactory = Callable[[], str]


def utc_now() -> datetime:
    return datetime.now(UTC)


def random_token() -> str:
    return secrets.token_hex(8)


class FlowExecutor:
    """Drives one ``Session`` through one ``CompiledGraph``.

    Parameters
    ----------
    graph : CompiledGraph
        Shared, read-only graph.
    session : Session
        State exclusively owned by this executor.
    io : IOCollaborator, optional
        Performs I/O nodes.  Defaults to ``IORouter.default()``.
    settings : EngineSettings, optional
        Defaults to ``get_settings()``.
    clock : Clock, optional
        Source of "now" for ``set-variable`` date values.
    token_factory : TokenFactory, optional
        Source of ``set-variable`` random values.
    """

    def __init__(
        self,
        graph: CompiledGraph,
        session: Session,
        *,
        io: IOCollaborator | None = None,
        settings: EngineSettings | None = None,
        clock: Clock = utc_now,
        token_factory: TokenFactory = random_token,
    ) -> None:
        self._graph = graph
        self._session = session
        self._settings = settings or get_settings()
        self._io = io if io is not None else IORouter.default(settings=self._settings)
        self._clock = clock
        self._token_factory = token_factory

    @property
    def graph(self) -> CompiledGraph:
        return self._graph

    @property
    def session(self) -> Session:
        return self._session

    @property
    def status(self) -> SessionStatus:
        return self._session.status

    @property
    def current_node(self) -> Node | None:
        position = self._session.position
        if not self._graph.has_container(position.container_id):
            return None
        return self._graph.node_at(position.container_id, position.node_index)

    # ── Public operations ────────────────────────────

    async def start(self) -> list[OutboundEvent]:
        """Run from the current position until suspension or termination.

        Raises
        ------
        SessionTerminatedError
            If the session is already terminated.
        SessionStateError
            If the session is awaiting input.
        """
        self._ensure_live()
        if self.status is not SessionStatus.RUNNING:
            raise SessionStateError(
                invariant="start",
                detail=f"session {self._session.session_id!r} is {self.status.value}",
            )
        return await self._run([])

    async def handle(self, event: InboundEvent) -> list[OutboundEvent]:
        """Apply *event* to a session awaiting input, then keep running.

        The event is validated completely before anything changes; a
        rejected event leaves the session untouched.

        Raises
        ------
        SessionTerminatedError
            If the session is terminated.
        UnexpectedEventError
            If the session is not awaiting input, the event kind does not
            match the awaited input, or a selection names unknown buttons.
        """
        self._ensure_live()
        sid = self._session.session_id
        if event.session_id != sid:
            raise UnexpectedEventError(sid, f"event addressed to {event.session_id!r}")
        if self.status is not SessionStatus.AWAITING_INPUT:
            raise UnexpectedEventError(sid, "session is not awaiting input")

        node = self.current_node
        if isinstance(node, ButtonsInputNode):
            self._accept_selection(node, event)
        elif isinstance(node, (InputNode, NumberInputNode)):
            self._accept_reply(node, event)
        else:
            raise SessionStateError(
                invariant="position",
                detail=f"session {sid!r} awaits input on a non-input position",
            )
        return await self._run([])

    def terminate(self, detail: str = "terminated by operator") -> list[OutboundEvent]:
        """Force ``terminated``.  Idempotent; returns ``[]`` if already ended."""
        cancel = cancel_event_for(self.status)
        if cancel is None:
            return []
        out: list[OutboundEvent] = []
        self._end(out, TerminationReason.CANCELLED, detail, cancel)
        return out

    def pending_prompt(self) -> OutboundEvent | None:
        """The prompt an ``awaiting_input`` session is waiting on."""
        if self.status is not SessionStatus.AWAITING_INPUT:
            return None
        node = self.current_node
        if isinstance(node, ButtonsInputNode):
            return self._button_prompt(node)
        if isinstance(node, (InputNode, NumberInputNode)):
            return self._prompt(node)
        return None

    # ── Inbound handling ─────────────────────────────

    def _ensure_live(self) -> None:
        if self._session.is_terminated:
            raise SessionTerminatedError(self._session.session_id)

    def _accept_reply(self, node: InputNode | NumberInputNode, event: InboundEvent) -> None:
        sid = self._session.session_id
        if event.kind is not InboundKind.REPLY:
            raise UnexpectedEventError(
                sid, f"node {node.id!r} awaits a reply, got {event.kind.value!r}"
            )
        if node.config.save_variable.strip():
            self._session.store.set(node.config.save_variable, to_text(event.value))
        self._session.machine.advance(SessionEvent.RESUME)
        self._session.position = self._session.position.next()

    def _accept_selection(self, node: ButtonsInputNode, event: InboundEvent) -> None:
        sid = self._session.session_id
        config = node.config
        if event.kind is not InboundKind.SELECTION:
            raise UnexpectedEventError(
                sid, f"node {node.id!r} awaits a selection, got {event.kind.value!r}"
            )
        ids = list(dict.fromkeys(event.selected_ids()))
        if not ids:
            raise UnexpectedEventError(sid, "selection names no button")
        buttons = {b.id: b for b in config.buttons}
        unknown = [i for i in ids if i not in buttons]
        if unknown:
            raise UnexpectedEventError(
                sid, f"unknown button id(s) {unknown} for node {node.id!r}"
            )
        if len(ids) > 1 and not config.is_multiple_choice:
            raise UnexpectedEventError(
                sid, f"node {node.id!r} accepts a single choice, got {len(ids)}"
            )

        selected = [buttons[i] for i in ids]
        store = self._session.store
        for button in selected:
            if button.save_variable.strip():
                store.set(button.save_variable, button.stored_value)
        if config.save_variable.strip():
            store.set(config.save_variable, ", ".join(b.stored_value for b in selected))
        self._session.machine.advance(SessionEvent.RESUME)

        edge = None
        for button in selected:
            edge = self._graph.branch_edge(node.id, button_key(button.id))
            if edge is not None:
                break
        if edge is None:
            edge = self._graph.branch_edge(node.id, DEFAULT_KEY)
        if edge is not None:
            self._jump(edge)
        else:
            self._session.position = self._session.position.next()

    # ── Step loop ────────────────────────────────────

    async def _run(self, out: list[OutboundEvent]) -> list[OutboundEvent]:
        limit = self._settings.max_steps_per_event
        steps = 0
        while self.status is SessionStatus.RUNNING:
            if steps >= limit:
                self._finish(
                    out,
                    TerminationReason.STEP_LIMIT,
                    f"more than {limit} steps without waiting for input",
                )
                break
            steps += 1
            node = self.current_node
            if node is None:
                self._leave_container(out)
            else:
                await self._step(node, out)
        return out

    async def _step(self, node: Node, out: list[OutboundEvent]) -> None:
        log.debug(
            "session %s: %s %s",
            self._session.session_id,
            node.kind.value,
            node.id,
        )
        kind = node.kind
        if kind is NodeKind.START:
            self._advance()
        elif kind.is_bubble:
            payload = self._bubble_payload(node)
            if payload is None:
                log.debug("skipping empty bubble %s", node.id)
            else:
                out.append(self._event(OutboundKind.RENDER, payload))
            self._advance()
        elif isinstance(node, ButtonsInputNode):
            out.append(self._button_prompt(node))
            self._session.machine.advance(SessionEvent.SUSPEND)
        elif isinstance(node, (InputNode, NumberInputNode)):
            out.append(self._prompt(node))
            self._session.machine.advance(SessionEvent.SUSPEND)
        elif isinstance(node, SetVariableNode):
            self._set_variable(node)
            self._advance()
        elif isinstance(node, ConditionNode):
            self._branch(node, out)
        elif kind.is_io:
            await self._perform_io(node, out)
        else:
            raise TypeError(f"no step handler for node kind {kind!r}")

    def _advance(self) -> None:
        self._session.position = self._session.position.next()

    def _jump(self, edge: Edge) -> None:
        self._session.position = Position(edge.target, 0)

    def _leave_container(self, out: list[OutboundEvent]) -> None:
        container_id = self._session.position.container_id
        edge = self._graph.exit_edge(container_id)
        if edge is None:
            self._finish(out, TerminationReason.COMPLETED, "end of flow")
        else:
            self._jump(edge)

    # ── Node behaviour ───────────────────────────────

    def _bubble_payload(self, node: Node) -> dict[str, Any] | None:
        store = self._session.store
        payload: dict[str, Any] = {"nodeId": node.id, "nodeType": node.kind.value}
        if isinstance(node, BubbleTextNode):
            text = render(node.config.message, store)
            if not text.strip():
                return None
            payload["text"] = text
            payload["segments"] = [
                s.to_dict() for s in render_segments(node.config.message, store)
            ]
        elif isinstance(node, BubbleNumberNode):
            text = render(node.config.number, store).strip()
            if not text:
                return None
            payload["text"] = text
        else:
            url = render(node.config.url, store).strip()
            if not url:
                return None
            payload["url"] = url
            if isinstance(node, (BubbleImageNode, BubbleVideoNode)):
                payload["alt"] = render(node.config.alt, store)
            elif isinstance(node, BubbleAudioNode):
                payload["autoplay"] = node.config.autoplay
            elif isinstance(node, BubbleDocumentNode):
                payload["fileName"] = render(node.config.file_name, store)
        return payload

    def _prompt(self, node: InputNode | NumberInputNode) -> OutboundEvent:
        store = self._session.store
        config = node.config
        payload: dict[str, Any] = {
            "nodeId": node.id,
            "nodeType": node.kind.value,
            "inputType": node.kind.value.removeprefix("input-"),
            "variable": normalize_name(config.save_variable),
            "placeholder": render(config.placeholder, store),
            "buttonLabel": render(config.button_label, store),
        }
        if isinstance(node, NumberInputNode):
            payload["min"] = config.min
            payload["max"] = config.max
        return self._event(OutboundKind.PROMPT, payload)

    def _button_prompt(self, node: ButtonsInputNode) -> OutboundEvent:
        store = self._session.store
        config = node.config
        buttons = []
        for button in config.buttons:
            entry = {
                "id": button.id,
                "label": render(button.label, store),
                "value": button.stored_value,
            }
            if button.description:
                entry["description"] = render(button.description, store)
            if button.redirect_url:
                entry["redirectUrl"] = render(button.redirect_url, store)
            buttons.append(entry)
        payload = {
            "nodeId": node.id,
            "nodeType": node.kind.value,
            "variable": normalize_name(config.save_variable),
            "buttons": buttons,
            "multipleChoice": config.is_multiple_choice,
            "searchable": config.is_searchable,
            "submitLabel": config.submit_label,
        }
        return self._event(OutboundKind.BUTTON_PROMPT, payload)

    def _set_variable(self, node: SetVariableNode) -> None:
        config = node.config
        if not normalize_name(config.variable_name):
            log.warning("set-variable %s has no variable name; skipped", node.id)
            return
        value_type = config.value_type
        if value_type is SetValueType.CUSTOM:
            value = render(config.template, self._session.store)
        elif value_type is SetValueType.EMPTY:
            value = ""
        elif value_type is SetValueType.NOW:
            value = self._clock().isoformat()
        elif value_type is SetValueType.RANDOM:
            value = self._token_factory()
        else:
            offset = {
                SetValueType.TODAY: 0,
                SetValueType.YESTERDAY: -1,
                SetValueType.TOMORROW: 1,
            }[value_type]
            value = (self._clock().date() + timedelta(days=offset)).isoformat()
        self._session.store.set(config.variable_name, value)

    def _branch(self, node: ConditionNode, out: list[OutboundEvent]) -> None:
        group = first_matching_group(node.config.conditions, self._session.store)
        if group is not None:
            edge = self._graph.branch_edge(node.id, condition_key(group.id))
            if edge is not None:
                self._jump(edge)
            else:
                self._advance()
            return
        edge = self._graph.branch_edge(node.id, ELSE_KEY)
        if edge is not None:
            self._jump(edge)
            return
        self._finish(
            out,
            TerminationReason.DEAD_END,
            f"no condition matched in node {node.id!r} and it has no default edge",
        )

    async def _perform_io(self, node: Any, out: list[OutboundEvent]) -> None:
        sid = self._session.session_id
        request = IORequest(
            session_id=sid,
            node=node,
            variables=self._session.store.snapshot(),
            timeout=timeout_for(node, self._settings),
        )
        out.append(self._event(OutboundKind.IO_REQUEST, request.describe()))
        try:
            result = await self._io.perform(request)
        except Exception as exc:
            log.error("I/O collaborator failed on node %s: %s", node.id, exc)
            result = IOResult.failure(f"{type(exc).__name__}: {exc}")

        if self._session.is_terminated:
            log.warning(
                "discarding %s result of node %s: session %s is terminated",
                node.kind.value,
                node.id,
                sid,
            )
            return

        if result.ok:
            self._store_result(node, result.payload)
            self._advance()
            return
        edge = self._graph.branch_edge(node.id, FAILURE_KEY)
        if edge is not None:
            log.info("node %s failed (%s); following failure edge", node.id, result.error)
            self._jump(edge)
            return
        self._finish(out, TerminationReason.IO_FAILURE, result.error)

    def _store_result(self, node: Any, payload: Any) -> None:
        store = self._session.store
        if isinstance(node, WebhookNode) and isinstance(payload, dict):
            for key, value in payload.items():
                if normalize_name(str(key)):
                    store.set(str(key), value)
        name = node.config.response_variable
        if name.strip():
            store.set(name, payload_text(payload))

    # ── Termination ──────────────────────────────────

    def _finish(self, out: list[OutboundEvent], reason: TerminationReason, detail: str) -> None:
        self._end(out, reason, detail, SessionEvent.FINISH)

    def _end(
        self,
        out: list[OutboundEvent],
        reason: TerminationReason,
        detail: str,
        transition: SessionEvent,
    ) -> None:
        self._session.machine.advance(transition)
        self._session.termination = reason
        level = logging.INFO
        if reason in (
            TerminationReason.DEAD_END,
            TerminationReason.STEP_LIMIT,
            TerminationReason.IO_FAILURE,
        ):
            level = logging.WARNING
        log.log(
            level,
            "session %s terminated (%s): %s",
            self._session.session_id,
            reason.value,
            detail,
        )
        out.append(
            self._event(
                OutboundKind.TERMINATED,
                {"reason": reason.value, "detail": detail},
            )
        )

    def _event(self, kind: OutboundKind, payload: dict[str, Any]) -> OutboundEvent:
        return OutboundEvent(session_id=self._session.session_id, kind=kind, payload=payload)

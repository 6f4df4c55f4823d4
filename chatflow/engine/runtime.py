"""Multi-session driver.

``FlowRuntime`` serves many independent sessions over one compiled graph.
Sessions share nothing but the read-only graph.  Each session has its own
executor and ``asyncio.Lock``, so events for one session are processed one
at a time while different sessions advance concurrently.

After every processed event the session's snapshot is saved to a
``SessionRepository``.  A terminated session is archived: its final
snapshot stays in the repository, its executor is dropped, and any further
event addressed to it raises ``SessionTerminatedError``.

``webhookPayload`` events do not take the session lock.  The session that
reached the webhook node is already holding it while it waits; the payload
is handed to the ``WebhookInbox`` and the waiting call continues and
returns the resulting outbound events to *its* caller.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from collections.abc import Callable, Mapping
from typing import Any, Protocol, runtime_checkable

from chatflow.config import EngineSettings, get_settings
from chatflow.engine.events import InboundEvent, InboundKind, OutboundEvent
from chatflow.engine.executor import (
    Clock,
    FlowExecutor,
    TokenFactory,
    random_token,
    utc_now,
)
from chatflow.engine.io import IOCollaborator, IORouter, WebhookInbox
from chatflow.engine.session import Session, SessionSnapshot
from chatflow.engine.state_machine import SessionStatus
from chatflow.exceptions import (
    SessionNotFoundError,
    SessionStateError,
    SessionTerminatedError,
)
from chatflow.graph.compiler import CompiledGraph

log = logging.getLogger(__name__)

__all__ = ["FlowRuntime", "InMemorySessionRepository", "SessionRepository"]


@runtime_checkable
class SessionRepository(Protocol):
    """Durable store for session snapshots."""

    async def save(self, snapshot: SessionSnapshot) -> None:
        """Insert or replace the snapshot of ``snapshot.session_id``."""
        ...

    async def load(self, session_id: str) -> SessionSnapshot | None:
        """Latest snapshot of *session_id*, or ``None``."""
        ...

    async def delete(self, session_id: str) -> bool:
        """Remove *session_id*; ``True`` if it existed."""
        ...


class InMemorySessionRepository:
    """Process-local repository, for tests and single-process drivers."""

    def __init__(self) -> None:
        self._snapshots: dict[str, SessionSnapshot] = {}

    async def save(self, snapshot: SessionSnapshot) -> None:
        self._snapshots[snapshot.session_id] = snapshot

    async def load(self, session_id: str) -> SessionSnapshot | None:
        return self._snapshots.get(session_id)

    async def delete(self, session_id: str) -> bool:
        return self._snapshots.pop(session_id, None) is not None

    def __len__(self) -> int:
        return len(self._snapshots)

    def __contains__(self, session_id: object) -> bool:
        return session_id in self._snapshots


def _new_session_id() -> str:
    return uuid.uuid4().hex


class FlowRuntime:
    """Runs sessions of one ``CompiledGraph``.

    Parameters
    ----------
    graph : CompiledGraph
        The flow every session runs.
    repository : SessionRepository, optional
        Where snapshots are saved; in-memory by default.
    io : IOCollaborator, optional
        Shared I/O collaborator.  Defaults to ``IORouter.default`` wired to
        this runtime's inbox.
    inbox : WebhookInbox, optional
        Receives ``webhookPayload`` events.  Pass the same inbox that a
        custom ``io`` collaborator waits on.
    """

    def __init__(
        self,
        graph: CompiledGraph,
        *,
        repository: SessionRepository | None = None,
        io: IOCollaborator | None = None,
        inbox: WebhookInbox | None = None,
        settings: EngineSettings | None = None,
        clock: Clock = utc_now,
        token_factory: TokenFactory = random_token,
        id_factory: Callable[[], str] = _new_session_id,
    ) -> None:
        self._graph = graph
        self._settings = settings or get_settings()
        self._repository: SessionRepository = (
            repository if repository is not None else InMemorySessionRepository()
        )
        self._inbox = inbox if inbox is not None else WebhookInbox()
        self._io = io if io is not None else IORouter.default(
            settings=self._settings, inbox=self._inbox
        )
        self._clock = clock
        self._token_factory = token_factory
        self._id_factory = id_factory
        self._executors: dict[str, FlowExecutor] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._archived: set[str] = set()

    @property
    def graph(self) -> CompiledGraph:
        return self._graph

    @property
    def repository(self) -> SessionRepository:
        return self._repository

    @property
    def inbox(self) -> WebhookInbox:
        return self._inbox

    def active_sessions(self) -> list[str]:
        return list(self._executors)

    def status(self, session_id: str) -> SessionStatus:
        if session_id in self._archived:
            return SessionStatus.TERMINATED
        executor = self._executors.get(session_id)
        if executor is None:
            raise SessionNotFoundError(session_id)
        return executor.status

    # ── Session lifecycle ────────────────────────────

    async def open_session(
        self,
        initial_variables: Mapping[str, Any] | None = None,
        *,
        session_id: str | None = None,
    ) -> tuple[str, list[OutboundEvent]]:
        """Create a session and run it to its first suspension.

        Returns the session id and the outbound events produced.
        """
        sid = session_id or self._id_factory()
        if sid in self._executors or sid in self._archived:
            raise SessionStateError(invariant="unique_session", detail=f"{sid!r} exists")
        session = Session.create(self._graph, sid, initial_variables)
        executor = self._attach(session)
        log.info("session %s opened on workspace %r", sid, self._graph.name)
        async with self._locks[sid]:
            try:
                return sid, await executor.start()
            finally:
                await self._persist(executor)

    async def dispatch(self, event: InboundEvent) -> list[OutboundEvent]:
        """Deliver *event* to its session and return the outbound events.

        Raises
        ------
        SessionTerminatedError
            If the session has terminated.
        SessionNotFoundError
            If the session id is unknown here and in the repository.
        UnexpectedEventError
            If the session is not waiting for this kind of event.
        WebhookAuthError
            If a webhook payload fails authentication.
        """
        sid = event.session_id
        executor = await self._executor(sid)
        if event.kind is InboundKind.WEBHOOK_PAYLOAD:
            self._inbox.deliver(sid, event.value, event.headers)
            return []
        async with self._locks[sid]:
            if executor.session.is_terminated:
                raise SessionTerminatedError(sid)
            try:
                return await executor.handle(event)
            finally:
                await self._persist(executor)

    async def terminate(
        self, session_id: str, detail: str = "terminated by operator"
    ) -> list[OutboundEvent]:
        """Force *session_id* to ``terminated``.

        Safe while the session is waiting on I/O: the pending result is
        discarded when it arrives.  A session known only from the
        repository is cancelled from its stored snapshot, whatever its
        status, and no node is executed.  Returns ``[]`` for a session that
        has already terminated.

        Raises
        ------
        SessionNotFoundError
            If the session id is unknown here and in the repository.
        WorkspaceMismatchError
            If the stored snapshot belongs to another workspace version.
        """
        if session_id in self._archived:
            return []
        executor = self._executors.get(session_id)
        if executor is None:
            stored = await self._load(session_id)
            if stored.status is SessionStatus.TERMINATED:
                return []
            executor = self._attach(Session.from_snapshot(stored, self._graph))
        events = executor.terminate(detail)
        self._inbox.cancel(session_id)
        lock = self._locks[session_id]
        if not lock.locked():
            async with lock:
                await self._persist(executor)
        return events

    async def snapshot(self, session_id: str) -> SessionSnapshot:
        """Current snapshot of a live session, or the archived one."""
        executor = self._executors.get(session_id)
        if executor is not None:
            return executor.session.to_snapshot()
        stored = await self._repository.load(session_id)
        if stored is None:
            raise SessionNotFoundError(session_id)
        return stored

    async def restore(self, snapshot: SessionSnapshot) -> list[OutboundEvent]:
        """Resume a persisted session in this runtime.

        An ``awaiting_input`` session returns its pending prompt again.  A
        ``running`` session re-executes the node at its position, so an
        interrupted I/O node is retried.  A terminated session is archived.

        Raises
        ------
        WorkspaceMismatchError
            If the snapshot belongs to another workspace version.
        """
        session = Session.from_snapshot(snapshot, self._graph)
        sid = session.session_id
        if session.is_terminated:
            self._archived.add(sid)
            await self._repository.save(snapshot)
            return []
        executor = self._attach(session)
        log.info("session %s resumed (%s)", sid, session.status.value)
        async with self._locks[sid]:
            try:
                if session.status is SessionStatus.RUNNING:
                    return await executor.start()
                prompt = executor.pending_prompt()
                return [prompt] if prompt is not None else []
            finally:
                await self._persist(executor)

    async def close(self) -> None:
        """Terminate every live session."""
        for sid in list(self._executors):
            await self.terminate(sid, "runtime closed")

    # ── Internals ────────────────────────────────────

    def _attach(self, session: Session) -> FlowExecutor:
        executor = FlowExecutor(
            self._graph,
            session,
            io=self._io,
            settings=self._settings,
            clock=self._clock,
            token_factory=self._token_factory,
        )
        self._archived.discard(session.session_id)
        self._executors[session.session_id] = executor
        self._locks.setdefault(session.session_id, asyncio.Lock())
        return executor

    async def _executor(self, session_id: str) -> FlowExecutor:
        executor = self._executors.get(session_id)
        if executor is not None:
            return executor
        if session_id in self._archived:
            raise SessionTerminatedError(session_id)
        stored = await self._load(session_id)
        if stored.status is SessionStatus.TERMINATED:
            raise SessionTerminatedError(session_id)
        if stored.status is SessionStatus.RUNNING:
            raise SessionStateError(
                invariant="resume",
                detail=f"session {session_id!r} was interrupted while running; restore it first",
            )
        return self._attach(Session.from_snapshot(stored, self._graph))

    async def _load(self, session_id: str) -> SessionSnapshot:
        stored = await self._repository.load(session_id)
        if stored is None:
            raise SessionNotFoundError(session_id)
        if stored.status is SessionStatus.TERMINATED:
            self._archived.add(session_id)
        return stored

    async def _persist(self, executor: FlowExecutor) -> None:
        session = executor.session
        await self._repository.save(session.to_snapshot())
        if session.is_terminated:
            sid = session.session_id
            self._executors.pop(sid, None)
            self._locks.pop(sid, None)
            self._archived.add(sid)
            log.info("session %s archived", sid)

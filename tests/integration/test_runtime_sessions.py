"""Integration tests for FlowRuntime: conversations, persistence and resume."""

from __future__ import annotations

import asyncio
import itertools
from typing import Any

import pytest

from chatflow.config import EngineSettings
from chatflow.engine import (
    FlowRuntime,
    InboundEvent,
    InMemorySessionRepository,
    OutboundEvent,
    OutboundKind,
    SessionStatus,
)
from chatflow.exceptions import (
    SessionNotFoundError,
    SessionStateError,
    SessionTerminatedError,
    UnexpectedEventError,
    WorkspaceMismatchError,
)
from chatflow.graph.compiler import CompiledGraph, compile_workspace

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def sequential_ids(prefix: str = "s") -> Any:
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter)}"


def rendered(events: list[OutboundEvent]) -> list[str]:
    return [e.text for e in events if e.kind is OutboundKind.RENDER]


def make_runtime(graph: CompiledGraph, settings: EngineSettings, **kwargs: Any) -> FlowRuntime:
    kwargs.setdefault("id_factory", sequential_ids())
    return FlowRuntime(graph, settings=settings, **kwargs)


# ---------------------------------------------------------------------------
# Conversations
# ---------------------------------------------------------------------------


class TestConversation:
    @pytest.mark.asyncio
    async def test_bob_branch(self, greeting_graph: CompiledGraph, settings: EngineSettings) -> None:
        runtime = make_runtime(greeting_graph, settings)
        sid, events = await runtime.open_session()
        assert sid == "s1"
        assert rendered(events) == ["Hi "]
        assert events[-1].kind is OutboundKind.PROMPT
        assert runtime.status(sid) is SessionStatus.AWAITING_INPUT

        events = await runtime.dispatch(InboundEvent.reply(sid, "Bob"))
        assert rendered(events) == ["Bob detected"]
        assert events[-1].payload["reason"] == "completed"
        assert runtime.status(sid) is SessionStatus.TERMINATED
        assert runtime.active_sessions() == []

    @pytest.mark.asyncio
    async def test_alice_takes_default_branch(self, greeting_graph: CompiledGraph, settings: EngineSettings) -> None:
        runtime = make_runtime(greeting_graph, settings)
        sid, _ = await runtime.open_session()
        events = await runtime.dispatch(InboundEvent.reply(sid, "Alice"))
        assert rendered(events) == ["Unknown"]

    @pytest.mark.asyncio
    async def test_padded_reply_does_not_equal_condition_value(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        runtime = make_runtime(greeting_graph, settings)
        sid, _ = await runtime.open_session()
        events = await runtime.dispatch(InboundEvent.reply(sid, " Bob "))
        assert rendered(events) == ["Unknown"]
        assert (await runtime.snapshot(sid)).store_snapshot == {"name": " Bob "}

    @pytest.mark.asyncio
    async def test_dead_end_then_rejects_events(
        self, dead_end_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        repository = InMemorySessionRepository()
        runtime = make_runtime(dead_end_graph, settings, repository=repository)
        sid, _ = await runtime.open_session()
        events = await runtime.dispatch(InboundEvent.reply(sid, "Alice"))
        assert [e.kind for e in events] == [OutboundKind.TERMINATED]
        assert events[0].payload["reason"] == "dead_end"
        with pytest.raises(SessionTerminatedError):
            await runtime.dispatch(InboundEvent.reply(sid, "Bob"))
        assert (await repository.load(sid)).status is SessionStatus.TERMINATED

    @pytest.mark.asyncio
    async def test_sessions_are_isolated(self, greeting_graph: CompiledGraph, settings: EngineSettings) -> None:
        runtime = make_runtime(greeting_graph, settings)
        first, _ = await runtime.open_session()
        second, _ = await runtime.open_session({"name": "preset"})
        bob, alice = await asyncio.gather(
            runtime.dispatch(InboundEvent.reply(first, "Bob")),
            runtime.dispatch(InboundEvent.reply(second, "Alice")),
        )
        assert rendered(bob) == ["Bob detected"]
        assert rendered(alice) == ["Unknown"]
        assert (await runtime.snapshot(first)).store_snapshot == {"name": "Bob"}
        assert (await runtime.snapshot(second)).store_snapshot == {"name": "Alice"}

    @pytest.mark.asyncio
    async def test_rejected_event_keeps_session_waiting(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        runtime = make_runtime(greeting_graph, settings)
        sid, _ = await runtime.open_session()
        with pytest.raises(UnexpectedEventError):
            await runtime.dispatch(InboundEvent.selection(sid, "b1"))
        events = await runtime.dispatch(InboundEvent.reply(sid, "Bob"))
        assert rendered(events) == ["Bob detected"]

    @pytest.mark.asyncio
    async def test_duplicate_session_id(self, greeting_graph: CompiledGraph, settings: EngineSettings) -> None:
        runtime = make_runtime(greeting_graph, settings)
        await runtime.open_session(session_id="fixed")
        with pytest.raises(SessionStateError):
            await runtime.open_session(session_id="fixed")

    @pytest.mark.asyncio
    async def test_unknown_session(self, greeting_graph: CompiledGraph, settings: EngineSettings) -> None:
        runtime = make_runtime(greeting_graph, settings)
        with pytest.raises(SessionNotFoundError):
            await runtime.dispatch(InboundEvent.reply("ghost", "hi"))

    @pytest.mark.asyncio
    async def test_button_menu(self, menu_doc: dict[str, Any], settings: EngineSettings) -> None:
        runtime = make_runtime(compile_workspace(menu_doc), settings)
        sid, events = await runtime.open_session()
        assert rendered(events) == ["Pick one"]
        assert events[-1].kind is OutboundKind.BUTTON_PROMPT
        events = await runtime.dispatch(InboundEvent.selection(sid, "b_other"))
        assert rendered(events) == ["Fallback: Other"]


# ---------------------------------------------------------------------------
# Persistence and resume
# ---------------------------------------------------------------------------


class TestPersistence:
    @pytest.mark.asyncio
    async def test_empty_repository_is_used_as_given(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        repository = InMemorySessionRepository()
        assert len(repository) == 0
        runtime = make_runtime(greeting_graph, settings, repository=repository)
        assert runtime.repository is repository
        sid, _ = await runtime.open_session()
        assert sid in repository
        assert len(repository) == 1

    @pytest.mark.asyncio
    async def test_snapshot_saved_after_every_event(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        repository = InMemorySessionRepository()
        runtime = make_runtime(greeting_graph, settings, repository=repository)
        sid, _ = await runtime.open_session()
        stored = await repository.load(sid)
        assert stored.status is SessionStatus.AWAITING_INPUT
        assert stored.position.node_index == 2
        assert stored.workspace_version == greeting_graph.version

    @pytest.mark.asyncio
    async def test_new_runtime_resumes_lazily(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        repository = InMemorySessionRepository()
        first = make_runtime(greeting_graph, settings, repository=repository)
        sid, _ = await first.open_session()

        second = make_runtime(greeting_graph, settings, repository=repository)
        events = await second.dispatch(InboundEvent.reply(sid, "Bob"))
        assert rendered(events) == ["Bob detected"]
        assert (await repository.load(sid)).status is SessionStatus.TERMINATED

    @pytest.mark.asyncio
    async def test_restore_awaiting_replays_prompt(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        first = make_runtime(greeting_graph, settings)
        sid, events = await first.open_session({"name": "Ana"})
        snapshot = await first.snapshot(sid)

        second = make_runtime(greeting_graph, settings)
        replay = await second.restore(snapshot)
        assert replay == [events[-1]]
        assert second.status(sid) is SessionStatus.AWAITING_INPUT

    @pytest.mark.asyncio
    async def test_restore_running_reexecutes(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        runtime = make_runtime(greeting_graph, settings)
        sid, _ = await runtime.open_session()
        interrupted = (await runtime.snapshot(sid)).model_copy(
            update={"status": SessionStatus.RUNNING, "session_id": "crashed"}
        )
        interrupted = interrupted.model_copy(
            update={"position": interrupted.position.model_copy(update={"node_index": 1})}
        )
        events = await runtime.restore(interrupted)
        assert rendered(events) == ["Hi "]
        assert runtime.status("crashed") is SessionStatus.AWAITING_INPUT

    @pytest.mark.asyncio
    async def test_lazy_load_refuses_running_snapshot(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        repository = InMemorySessionRepository()
        runtime = make_runtime(greeting_graph, settings, repository=repository)
        sid, _ = await runtime.open_session()
        stored = await repository.load(sid)
        await repository.save(stored.model_copy(update={"status": SessionStatus.RUNNING}))

        fresh = make_runtime(greeting_graph, settings, repository=repository)
        with pytest.raises(SessionStateError, match="restore"):
            await fresh.dispatch(InboundEvent.reply(sid, "Bob"))

    @pytest.mark.asyncio
    async def test_restore_against_changed_workspace(
        self, greeting_doc: dict[str, Any], settings: EngineSettings
    ) -> None:
        runtime = make_runtime(compile_workspace(greeting_doc), settings)
        sid, _ = await runtime.open_session()
        snapshot = await runtime.snapshot(sid)

        greeting_doc["containers"][0]["nodes"][1]["config"]["message"] = "Hello {{name}}"
        changed = make_runtime(compile_workspace(greeting_doc), settings)
        with pytest.raises(WorkspaceMismatchError):
            await changed.restore(snapshot)

    @pytest.mark.asyncio
    async def test_restore_terminated_archives(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        runtime = make_runtime(greeting_graph, settings)
        sid, _ = await runtime.open_session()
        await runtime.dispatch(InboundEvent.reply(sid, "Bob"))
        final = await runtime.snapshot(sid)

        other = make_runtime(greeting_graph, settings)
        assert await other.restore(final) == []
        assert other.status(sid) is SessionStatus.TERMINATED
        with pytest.raises(SessionTerminatedError):
            await other.dispatch(InboundEvent.reply(sid, "again"))


class TestTerminate:
    @pytest.mark.asyncio
    async def test_terminate_awaiting_session(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        repository = InMemorySessionRepository()
        runtime = make_runtime(greeting_graph, settings, repository=repository)
        sid, _ = await runtime.open_session()
        events = await runtime.terminate(sid, "user left")
        assert events[0].payload == {"reason": "cancelled", "detail": "user left"}
        assert await runtime.terminate(sid) == []
        assert (await repository.load(sid)).status is SessionStatus.TERMINATED

    @pytest.mark.asyncio
    async def test_terminate_stored_running_session_without_executing(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        repository = InMemorySessionRepository()
        first = make_runtime(greeting_graph, settings, repository=repository)
        sid, _ = await first.open_session({"name": "Ana"})
        stored = await repository.load(sid)
        await repository.save(
            stored.model_copy(
                update={
                    "status": SessionStatus.RUNNING,
                    "position": stored.position.model_copy(update={"node_index": 1}),
                }
            )
        )

        fresh = make_runtime(greeting_graph, settings, repository=repository)
        events = await fresh.terminate(sid, "operator stop")
        assert [e.kind for e in events] == [OutboundKind.TERMINATED]
        assert events[0].payload == {"reason": "cancelled", "detail": "operator stop"}
        assert fresh.status(sid) is SessionStatus.TERMINATED
        assert fresh.active_sessions() == []

        final = await repository.load(sid)
        assert final.status is SessionStatus.TERMINATED
        assert final.position.node_index == 1
        assert final.store_snapshot == {"name": "Ana"}
        with pytest.raises(SessionTerminatedError):
            await fresh.dispatch(InboundEvent.reply(sid, "Bob"))

    @pytest.mark.asyncio
    async def test_terminate_stored_awaiting_session(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        repository = InMemorySessionRepository()
        first = make_runtime(greeting_graph, settings, repository=repository)
        sid, _ = await first.open_session()

        fresh = make_runtime(greeting_graph, settings, repository=repository)
        events = await fresh.terminate(sid)
        assert events[0].payload["reason"] == "cancelled"
        assert (await repository.load(sid)).status is SessionStatus.TERMINATED
        assert await fresh.terminate(sid) == []

    @pytest.mark.asyncio
    async def test_terminate_stored_terminated_session_is_noop(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        repository = InMemorySessionRepository()
        first = make_runtime(greeting_graph, settings, repository=repository)
        sid, _ = await first.open_session()
        await first.dispatch(InboundEvent.reply(sid, "Bob"))

        fresh = make_runtime(greeting_graph, settings, repository=repository)
        assert await fresh.terminate(sid) == []
        assert fresh.status(sid) is SessionStatus.TERMINATED

    @pytest.mark.asyncio
    async def test_terminate_unknown_session(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        runtime = make_runtime(greeting_graph, settings)
        with pytest.raises(SessionNotFoundError):
            await runtime.terminate("ghost")

    @pytest.mark.asyncio
    async def test_close_terminates_everything(
        self, greeting_graph: CompiledGraph, settings: EngineSettings
    ) -> None:
        runtime = make_runtime(greeting_graph, settings)
        a, _ = await runtime.open_session()
        b, _ = await runtime.open_session()
        await runtime.close()
        assert runtime.active_sessions() == []
        assert runtime.status(a) is runtime.status(b) is SessionStatus.TERMINATED

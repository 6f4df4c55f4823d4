"""Session state and its persisted form.

A session's durable state is the tuple
``(workspace version, store contents, position, status)``.  Everything
else the executor needs (which variable an awaited reply fills, which
buttons were offered) is derived from the node at ``position``, so a
``SessionSnapshot`` is enough to resume after a restart.
"""

from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from pydantic import BaseModel, ConfigDict, Field

from chatflow.engine.events import TerminationReason
from chatflow.engine.state_machine import SessionStateMachine, SessionStatus
from chatflow.engine.variables import VariableStore
from chatflow.exceptions import SessionStateError, WorkspaceMismatchError
from chatflow.graph.compiler import CompiledGraph

log = logging.getLogger(__name__)

__all__ = ["Position", "PositionModel", "Session", "SessionSnapshot"]


@dataclass(slots=True, frozen=True)
class Position:
    """Execution cursor: a container and a node index inside it."""

    container_id: str
    node_index: int = 0

    def next(self) -> Position:
        return Position(self.container_id, self.node_index + 1)


# ── Persisted form ───────────────────────────────────


class PositionModel(BaseModel):
    model_config = ConfigDict(frozen=True, populate_by_name=True)

    container_id: str = Field(alias="containerId")
    node_index: int = Field(alias="nodeIndex", ge=0)


class SessionSnapshot(BaseModel):
    """Everything required to resume a session."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    session_id: str = Field(alias="sessionId")
    workspace_version: str = Field(alias="workspaceVersion")
    store_snapshot: dict[str, str] = Field(default_factory=dict, alias="storeSnapshot")
    position: PositionModel
    status: SessionStatus


# ── Live session ─────────────────────────────────────


@dataclass(slots=True)
class Session:
    """Mutable per-session state, owned by exactly one executor."""

    session_id: str
    workspace_version: str
    store: VariableStore
    position: Position
    machine: SessionStateMachine = field(default_factory=SessionStateMachine)
    termination: TerminationReason | None = None

    @property
    def status(self) -> SessionStatus:
        return self.machine.status

    @property
    def is_terminated(self) -> bool:
        return self.machine.is_terminated

    @classmethod
    def create(
        cls,
        graph: CompiledGraph,
        session_id: str,
        initial_variables: Mapping[str, Any] | None = None,
    ) -> Session:
        """New session positioned on the start node.

        The store is seeded from the start node's declared defaults, then
        *initial_variables*, then every other variable the graph can produce
        (empty, never overwriting).
        """
        store = VariableStore()
        for variable in graph.start_node.config.initial_variables:
            if variable.name.strip():
                store.set(variable.name, variable.default_value)
        for name, value in (initial_variables or {}).items():
            store.set(name, value)
        store.sync_from_graph(graph)
        return cls(
            session_id=session_id,
            workspace_version=graph.version,
            store=store,
            position=Position(graph.start_container_id, 0),
        )

    def to_snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            session_id=self.session_id,
            workspace_version=self.workspace_version,
            store_snapshot=self.store.snapshot(),
            position=PositionModel(
                container_id=self.position.container_id,
                node_index=self.position.node_index,
            ),
            status=self.status,
        )

    @classmethod
    def from_snapshot(cls, snapshot: SessionSnapshot, graph: CompiledGraph) -> Session:
        """Rebuild a session from *snapshot* against *graph*.

        Raises
        ------
        WorkspaceMismatchError
            If the snapshot was taken against another workspace version.
        SessionStateError
            If the position does not exist in *graph*.
        """
        if snapshot.workspace_version != graph.version:
            raise WorkspaceMismatchError(graph.version, snapshot.workspace_version)
        position = Position(snapshot.position.container_id, snapshot.position.node_index)
        if snapshot.status is not SessionStatus.TERMINATED:
            if not graph.has_container(position.container_id):
                raise SessionStateError(
                    invariant="position",
                    detail=f"unknown container {position.container_id!r}",
                )
            if snapshot.status is SessionStatus.AWAITING_INPUT:
                node = graph.node_at(position.container_id, position.node_index)
                if node is None or not node.kind.is_input:
                    raise SessionStateError(
                        invariant="position",
                        detail=(
                            f"awaiting session must rest on an input node, "
                            f"found {node.kind.value if node else 'nothing'!r}"
                        ),
                    )
        session = cls(
            session_id=snapshot.session_id,
            workspace_version=snapshot.workspace_version,
            store=VariableStore(snapshot.store_snapshot),
            position=position,
            machine=SessionStateMachine(snapshot.status),
        )
        log.debug(
            "restored session %s at %s[%d] (%s)",
            session.session_id,
            position.container_id,
            position.node_index,
            snapshot.status.value,
        )
        return session

"""Workspace compiler: validates a flow document and indexes it for execution.

``compile_workspace`` is the only way to obtain a ``CompiledGraph``.  It
checks every graph invariant and reports *all* violations in a single
``GraphValidationError`` so the editor can show them together:

- unique container ids and node ids
- exactly one ``start`` node, placed first in its container
- no empty containers
- every edge source/target names an existing container
- every ``sourceHandle`` resolves to a branch of a node in the source container
- branch ids (condition groups, buttons) unique within their node

Unreachable containers are not errors; they are reported as warnings.

Branch handles
--------------
A handle names one outgoing branch of a node.  For node ``n`` the accepted
forms are:

- ``n-cond-<groupId>`` or the bare ``<groupId>``  (condition group)
- ``n-else``                                       (condition default)
- ``n-btn-<buttonId>`` or the bare ``<buttonId>`` (button choice)
- ``n-default``                                    (button fallback)
- ``n-failure``                                    (I/O failure)

Internally each branch is keyed by ``(node_id, key)`` where ``key`` is one
of ``cond-<groupId>``, ``else``, ``btn-<buttonId>``, ``default``, ``failure``.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections import deque
from collections.abc import Mapping
from dataclasses import dataclass, field
from enum import StrEnum
from types import MappingProxyType
from typing import Any

import pydantic

from chatflow.exceptions import GraphValidationError, Violation, ViolationCode
from chatflow.graph.schema import (
    ButtonsInputNode,
    ConditionNode,
    Container,
    Edge,
    Node,
    NodeKind,
    StartNode,
    Workspace,
)

log = logging.getLogger(__name__)

__all__ = [
    "DEFAULT_KEY",
    "ELSE_KEY",
    "FAILURE_KEY",
    "CompiledGraph",
    "Diagnostic",
    "NodeRef",
    "WarningCode",
    "button_key",
    "compile_workspace",
    "condition_key",
    "workspace_version",
]

ELSE_KEY = "else"
DEFAULT_KEY = "default"
FAILURE_KEY = "failure"


def condition_key(group_id: str) -> str:
    return f"cond-{group_id}"


def button_key(button_id: str) -> str:
    return f"btn-{button_id}"


# ── Compiled form ────────────────────────────────────


class WarningCode(StrEnum):
    DEAD_CONTAINER = "dead_container"
    AMBIGUOUS_EXIT = "ambiguous_exit"


@dataclass(slots=True, frozen=True)
class Diagnostic:
    """Non-fatal compile finding."""

    code: WarningCode
    message: str
    location: str = ""

    def __str__(self) -> str:
        if self.location:
            return f"[{self.code.value}] {self.location}: {self.message}"
        return f"[{self.code.value}] {self.message}"


@dataclass(slots=True, frozen=True)
class NodeRef:
    """Where a node lives: its container and index within it."""

    container_id: str
    index: int
    node: Node


@dataclass(slots=True, frozen=True)
class CompiledGraph:
    """Validated, indexed and immutable form of a workspace.

    Attributes
    ----------
    workspace : Workspace
        The parsed document (frozen).
    version : str
        SHA-256 of the canonical document; identifies the graph for
        session persistence.
    start_container_id : str
        Container holding the ``start`` node (always at index 0).
    dead_containers : frozenset[str]
        Containers not reachable from the start container.
    warnings : tuple[Diagnostic, ...]
        Non-fatal findings (dead code, ambiguous exits).
    """

    workspace: Workspace
    version: str
    start_container_id: str
    dead_containers: frozenset[str]
    warnings: tuple[Diagnostic, ...]
    _containers: Mapping[str, Container] = field(repr=False)
    _nodes: Mapping[str, NodeRef] = field(repr=False)
    _exit_edges: Mapping[str, Edge] = field(repr=False)
    _branch_edges: Mapping[tuple[str, str], Edge] = field(repr=False)

    @property
    def name(self) -> str:
        return self.workspace.name

    @property
    def start_node(self) -> StartNode:
        node = self._containers[self.start_container_id].nodes[0]
        if not isinstance(node, StartNode):
            raise TypeError(
                f"container {self.start_container_id!r} does not begin with a start node"
            )
        return node

    @property
    def container_ids(self) -> tuple[str, ...]:
        return tuple(self._containers)

    def container(self, container_id: str) -> Container:
        """Return the container with *container_id* (``KeyError`` if unknown)."""
        return self._containers[container_id]

    def has_container(self, container_id: str) -> bool:
        return container_id in self._containers

    def node(self, node_id: str) -> NodeRef:
        """Return the location of *node_id* (``KeyError`` if unknown)."""
        return self._nodes[node_id]

    def node_at(self, container_id: str, index: int) -> Node | None:
        """Node at *index* in *container_id*, or ``None`` past the end."""
        nodes = self._containers[container_id].nodes
        if 0 <= index < len(nodes):
            return nodes[index]
        return None

    def exit_edge(self, container_id: str) -> Edge | None:
        """Unconditional edge leaving *container_id*, if any."""
        return self._exit_edges.get(container_id)

    def branch_edge(self, node_id: str, key: str) -> Edge | None:
        """Edge attached to branch *key* of *node_id*, if any."""
        return self._branch_edges.get((node_id, key))


# ── Helpers ──────────────────────────────────────────


def workspace_version(workspace: Workspace) -> str:
    """Content hash of the canonical JSON form of *workspace*."""
    canonical = json.dumps(
        workspace.model_dump(mode="json", by_alias=True),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
    )
    return hashlib.sha256(canonical.encode("utf-8")).hexdigest()


def _node_handles(node: Node) -> dict[str, str]:
    """Map every accepted handle string of *node* to its branch key."""
    handles: dict[str, str] = {}
    if isinstance(node, ConditionNode):
        for group in node.config.conditions:
            key = condition_key(group.id)
            handles[f"{node.id}-{key}"] = key
            handles.setdefault(group.id, key)
        handles[f"{node.id}-{ELSE_KEY}"] = ELSE_KEY
    elif isinstance(node, ButtonsInputNode):
        for button in node.config.buttons:
            key = button_key(button.id)
            handles[f"{node.id}-{key}"] = key
            handles.setdefault(button.id, key)
        handles[f"{node.id}-{DEFAULT_KEY}"] = DEFAULT_KEY
    elif node.kind.is_io:
        handles[f"{node.id}-{FAILURE_KEY}"] = FAILURE_KEY
    return handles


def _container_handles(container: Container) -> dict[str, tuple[str, str]]:
    """Map handle strings to ``(node_id, key)`` for all nodes of *container*.

    Node-qualified handles are registered before bare ids so a bare id can
    never shadow a qualified one.
    """
    qualified: dict[str, tuple[str, str]] = {}
    bare: dict[str, tuple[str, str]] = {}
    for node in container.nodes:
        for handle, key in _node_handles(node).items():
            if handle.startswith(f"{node.id}-"):
                qualified[handle] = (node.id, key)
            else:
                bare.setdefault(handle, (node.id, key))
    for handle, target in bare.items():
        qualified.setdefault(handle, target)
    return qualified


def _duplicate_branch_ids(node: Node) -> list[str]:
    ids: list[str] = []
    if isinstance(node, ConditionNode):
        ids = [g.id for g in node.config.conditions]
    elif isinstance(node, ButtonsInputNode):
        ids = [b.id for b in node.config.buttons]
    seen: set[str] = set()
    dupes: list[str] = []
    for branch_id in ids:
        if branch_id in seen and branch_id not in dupes:
            dupes.append(branch_id)
        seen.add(branch_id)
    return dupes


def _schema_violations(exc: pydantic.ValidationError) -> list[Violation]:
    violations = []
    for err in exc.errors():
        location = ".".join(str(part) for part in err.get("loc", ()))
        violations.append(
            Violation(ViolationCode.SCHEMA, err.get("msg", "invalid value"), location)
        )
    return violations


def _parse(document: Workspace | Mapping[str, Any]) -> Workspace:
    if isinstance(document, Workspace):
        return document
    try:
        return Workspace.model_validate(document)
    except pydantic.ValidationError as exc:
        raise GraphValidationError(_schema_violations(exc)) from exc


# ── Validation ───────────────────────────────────────


def _check_structure(workspace: Workspace) -> list[Violation]:
    violations: list[Violation] = []

    containers: dict[str, Container] = {}
    for container in workspace.containers:
        location = f"containers[{container.id}]"
        if container.id in containers:
            violations.append(
                Violation(
                    ViolationCode.DUPLICATE_CONTAINER_ID,
                    f"container id {container.id!r} is used more than once",
                    location,
                )
            )
        else:
            containers[container.id] = container
        if not container.nodes:
            violations.append(
                Violation(
                    ViolationCode.EMPTY_CONTAINER,
                    "container has no nodes",
                    location,
                )
            )

    seen_nodes: set[str] = set()
    starts: list[tuple[Container, int, Node]] = []
    for container, index, node in workspace.iter_nodes():
        location = f"containers[{container.id}].nodes[{index}]"
        if node.id in seen_nodes:
            violations.append(
                Violation(
                    ViolationCode.DUPLICATE_NODE_ID,
                    f"node id {node.id!r} is used more than once",
                    location,
                )
            )
        seen_nodes.add(node.id)
        if node.kind is NodeKind.START:
            starts.append((container, index, node))
        for branch_id in _duplicate_branch_ids(node):
            violations.append(
                Violation(
                    ViolationCode.DUPLICATE_BRANCH_ID,
                    f"branch id {branch_id!r} appears more than once in node {node.id!r}",
                    location,
                )
            )

    if not starts:
        violations.append(
            Violation(ViolationCode.MISSING_START, "workspace has no start node")
        )
    elif len(starts) > 1:
        ids = ", ".join(repr(n.id) for _, _, n in starts)
        violations.append(
            Violation(
                ViolationCode.MULTIPLE_START,
                f"workspace has {len(starts)} start nodes ({ids}); exactly one is allowed",
            )
        )
    for container, index, node in starts:
        if index != 0:
            violations.append(
                Violation(
                    ViolationCode.START_NOT_FIRST,
                    f"start node {node.id!r} must be the first node of its container",
                    f"containers[{container.id}].nodes[{index}]",
                )
            )

    handle_maps = {cid: _container_handles(c) for cid, c in containers.items()}
    for position, edge in enumerate(workspace.edges):
        location = f"edges[{edge.id or position}]"
        if edge.source not in containers:
            violations.append(
                Violation(
                    ViolationCode.UNKNOWN_EDGE_SOURCE,
                    f"edge source {edge.source!r} is not a container",
                    location,
                )
            )
        elif edge.source_handle and edge.source_handle not in handle_maps[edge.source]:
            violations.append(
                Violation(
                    ViolationCode.UNRESOLVED_SOURCE_HANDLE,
                    f"source handle {edge.source_handle!r} does not name a branch "
                    f"of any node in container {edge.source!r}",
                    location,
                )
            )
        if edge.target not in containers:
            violations.append(
                Violation(
                    ViolationCode.UNKNOWN_EDGE_TARGET,
                    f"edge target {edge.target!r} is not a container",
                    location,
                )
            )

    return violations


# ── Compilation ──────────────────────────────────────


def _reachable(start: str, adjacency: Mapping[str, set[str]]) -> set[str]:
    seen = {start}
    queue = deque([start])
    while queue:
        current = queue.popleft()
        for nxt in adjacency.get(current, ()):
            if nxt not in seen:
                seen.add(nxt)
                queue.append(nxt)
    return seen


def compile_workspace(document: Workspace | Mapping[str, Any]) -> CompiledGraph:
    """Validate *document* and build its immutable execution index.

    Parameters
    ----------
    document : Workspace | Mapping[str, Any]
        A parsed ``Workspace`` or a raw ``{name, containers, edges}`` mapping.

    Returns
    -------
    CompiledGraph
        The compiled graph, safe to share across sessions.

    Raises
    ------
    GraphValidationError
        Listing every schema or invariant violation found.
    """
    workspace = _parse(document)
    violations = _check_structure(workspace)
    if violations:
        log.info(
            "workspace %r rejected with %d violation(s)",
            workspace.name,
            len(violations),
        )
        raise GraphValidationError(violations)

    containers = {c.id: c for c in workspace.containers}
    nodes: dict[str, NodeRef] = {}
    start_container_id = ""
    for container, index, node in workspace.iter_nodes():
        nodes[node.id] = NodeRef(container.id, index, node)
        if node.kind is NodeKind.START:
            start_container_id = container.id

    warnings: list[Diagnostic] = []
    handle_maps = {cid: _container_handles(c) for cid, c in containers.items()}
    exit_edges: dict[str, Edge] = {}
    branch_edges: dict[tuple[str, str], Edge] = {}
    adjacency: dict[str, set[str]] = {}
    for position, edge in enumerate(workspace.edges):
        adjacency.setdefault(edge.source, set()).add(edge.target)
        if edge.source_handle:
            branch = handle_maps[edge.source][edge.source_handle]
            branch_edges.setdefault(branch, edge)
        elif edge.source in exit_edges:
            warnings.append(
                Diagnostic(
                    WarningCode.AMBIGUOUS_EXIT,
                    f"container {edge.source!r} has more than one unconditional "
                    f"edge; {exit_edges[edge.source].target!r} is used",
                    f"edges[{edge.id or position}]",
                )
            )
        else:
            exit_edges[edge.source] = edge

    reachable = _reachable(start_container_id, adjacency)
    dead = frozenset(cid for cid in containers if cid not in reachable)
    for cid in containers:
        if cid in dead:
            warnings.append(
                Diagnostic(
                    WarningCode.DEAD_CONTAINER,
                    "container is not reachable from the start node",
                    f"containers[{cid}]",
                )
            )

    graph = CompiledGraph(
        workspace=workspace,
        version=workspace_version(workspace),
        start_container_id=start_container_id,
        dead_containers=dead,
        warnings=tuple(warnings),
        _containers=MappingProxyType(containers),
        _nodes=MappingProxyType(nodes),
        _exit_edges=MappingProxyType(exit_edges),
        _branch_edges=MappingProxyType(branch_edges),
    )
    log.info(
        "compiled workspace %r: %d containers, %d nodes, %d edges, %d dead",
        workspace.name,
        len(containers),
        len(nodes),
        len(workspace.edges),
        len(dead),
    )
    return graph

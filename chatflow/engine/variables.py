"""Per-session variable store.

Values are always strings; other types are stored in their string form.
Names are normalized before every read and write: surrounding whitespace is
trimmed and any enclosing ``{{ }}`` wrapper is stripped, repeatedly, until
the name no longer changes.  Normalization is therefore idempotent.

Lookups are case-sensitive exact matches on the normalized name.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Iterator, Mapping
from typing import TYPE_CHECKING, Any

from chatflow.graph.schema import (
    ButtonsInputNode,
    NodeKind,
    SetVariableNode,
    Workspace,
)

if TYPE_CHECKING:
    from chatflow.graph.compiler import CompiledGraph

log = logging.getLogger(__name__)

__all__ = ["VariableStore", "discover_variable_names", "normalize_name", "to_text"]


def normalize_name(name: str) -> str:
    """Trim *name* and strip enclosing ``{{ }}`` wrappers until stable."""
    current = name
    while True:
        stripped = current.strip()
        if len(stripped) >= 4 and stripped.startswith("{{") and stripped.endswith("}}"):
            stripped = stripped[2:-2]
        if stripped == current:
            return current
        current = stripped


def to_text(value: Any) -> str:
    """String form of *value* as stored in a variable."""
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, (int, float)):
        return str(value)
    return json.dumps(value, ensure_ascii=False, default=str)


def discover_variable_names(workspace: Workspace) -> list[str]:
    """Variable names produced by nodes of *workspace*, in document order.

    Sources: ``set-variable.variableName``, every ``input-*.saveVariable``
    and each button's ``saveVariable`` inside ``input-buttons`` nodes.
    """
    found: list[str] = []

    def _add(raw: str) -> None:
        name = normalize_name(raw)
        if name and name not in found:
            found.append(name)

    for _, _, node in workspace.iter_nodes():
        if isinstance(node, SetVariableNode):
            _add(node.config.variable_name)
        elif node.kind.is_input:
            _add(node.config.save_variable)
            if isinstance(node, ButtonsInputNode):
                for button in node.config.buttons:
                    _add(button.save_variable)
        elif node.kind is NodeKind.START:
            for variable in node.config.initial_variables:
                _add(variable.name)
    return found


class VariableStore:
    """Mutable mapping of normalized variable name to string value.

    One store belongs to exactly one session; it is never shared.
    """

    __slots__ = ("_values",)

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._values: dict[str, str] = {}
        if initial:
            for name, value in initial.items():
                self.set(name, value)

    def set(self, name: str, value: Any) -> None:
        """Assign *value* (as text) to *name*.

        Raises
        ------
        ValueError
            If *name* normalizes to the empty string.
        """
        key = normalize_name(name)
        if not key:
            raise ValueError(f"variable name {name!r} is empty after normalization")
        self._values[key] = to_text(value)

    def get(self, name: str) -> str | None:
        """Value of *name*, or ``None`` when absent."""
        return self._values.get(normalize_name(name))

    def names(self) -> set[str]:
        return set(self._values)

    def ensure_declared(self, name: str) -> bool:
        """Declare *name* with an empty value unless it already exists.

        Never overwrites.  Returns ``True`` if the name was added.
        """
        key = normalize_name(name)
        if not key or key in self._values:
            return False
        self._values[key] = ""
        return True

    def sync_from_graph(self, graph: CompiledGraph | Workspace) -> list[str]:
        """Pre-register every variable name the graph can produce.

        Returns the names that were newly declared.
        """
        workspace = graph if isinstance(graph, Workspace) else graph.workspace
        added = [n for n in discover_variable_names(workspace) if self.ensure_declared(n)]
        if added:
            log.debug("declared %d variable(s): %s", len(added), ", ".join(added))
        return added

    def snapshot(self) -> dict[str, str]:
        """A copy of the current contents."""
        return dict(self._values)

    def items(self) -> Iterator[tuple[str, str]]:
        return iter(self._values.items())

    def __contains__(self, name: object) -> bool:
        return isinstance(name, str) and normalize_name(name) in self._values

    def __len__(self) -> int:
        return len(self._values)

    def __repr__(self) -> str:
        return f"VariableStore({self._values!r})"

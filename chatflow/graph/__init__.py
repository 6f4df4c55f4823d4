"""Flow graph model: document schema, compiler and loaders.

Public API:
    - Workspace / Container / Edge / Node  — frozen document models
    - compile_workspace    — validate and index a workspace
    - CompiledGraph        — immutable execution index, shared by sessions
    - load_workspace       — compile from a mapping (bare or enveloped)
    - load_workspace_file  — compile from a .json / .yaml file
    - export_workspace     — produce the editor's export envelope
"""

from __future__ import annotations

from chatflow.graph.compiler import (
    DEFAULT_KEY,
    ELSE_KEY,
    FAILURE_KEY,
    CompiledGraph,
    Diagnostic,
    NodeRef,
    WarningCode,
    button_key,
    compile_workspace,
    condition_key,
)
from chatflow.graph.loader import (
    export_workspace,
    load_workspace,
    load_workspace_file,
)
from chatflow.graph.schema import (
    ComparisonOperator,
    ConditionComparison,
    ConditionGroup,
    Container,
    Edge,
    LogicalOperator,
    Node,
    NodeKind,
    Workspace,
)

__all__ = [
    "DEFAULT_KEY",
    "ELSE_KEY",
    "FAILURE_KEY",
    "CompiledGraph",
    "ComparisonOperator",
    "ConditionComparison",
    "ConditionGroup",
    "Container",
    "Diagnostic",
    "Edge",
    "LogicalOperator",
    "Node",
    "NodeKind",
    "NodeRef",
    "WarningCode",
    "Workspace",
    "button_key",
    "compile_workspace",
    "condition_key",
    "export_workspace",
    "load_workspace",
    "load_workspace_file",
]

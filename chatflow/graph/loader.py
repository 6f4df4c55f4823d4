"""Load and export workspace documents.

Accepted inputs are the bare document ``{name, containers, edges}`` or the
editor's export envelope ``{"version": "1.0", "flow": {...}}``, either as a
mapping or as a ``.json`` / ``.yaml`` / ``.yml`` file.
"""

from __future__ import annotations

import json
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml

from chatflow.exceptions import GraphValidationError, Violation, ViolationCode
from chatflow.graph.compiler import CompiledGraph, compile_workspace
from chatflow.graph.schema import FlowExport, Workspace

EXPORT_VERSION = "1.0"


def unwrap_document(data: Mapping[str, Any]) -> Mapping[str, Any]:
    """Return the bare workspace mapping, unwrapping an export envelope."""
    flow = data.get("flow")
    if isinstance(flow, Mapping) and "containers" not in data:
        return flow
    return data


def read_document(path: Path) -> Mapping[str, Any]:
    """Read a JSON or YAML flow file into a mapping."""
    text = path.read_text(encoding="utf-8")
    try:
        if path.suffix.lower() in (".yaml", ".yml"):
            data = yaml.safe_load(text)
        else:
            data = json.loads(text)
    except (json.JSONDecodeError, yaml.YAMLError) as exc:
        raise GraphValidationError(
            [Violation(ViolationCode.SCHEMA, f"unreadable document: {exc}", str(path))]
        ) from exc
    if not isinstance(data, Mapping):
        raise GraphValidationError(
            [Violation(ViolationCode.SCHEMA, "document root must be an object", str(path))]
        )
    return data


def load_workspace(data: Mapping[str, Any]) -> CompiledGraph:
    """Compile a workspace from a (possibly enveloped) mapping."""
    return compile_workspace(unwrap_document(data))


def load_workspace_file(path: str | Path) -> CompiledGraph:
    """Compile a workspace from a JSON or YAML file."""
    return load_workspace(read_document(Path(path)))


def export_workspace(workspace: Workspace | CompiledGraph) -> dict[str, Any]:
    """Wrap *workspace* in the export envelope, using the editor's key names."""
    if isinstance(workspace, CompiledGraph):
        workspace = workspace.workspace
    envelope = FlowExport(version=EXPORT_VERSION, flow=workspace)
    return envelope.model_dump(mode="json", by_alias=True)

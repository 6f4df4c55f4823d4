"""Chatflow: compile chatbot flow graphs and run them as resumable sessions."""

from __future__ import annotations

from chatflow.exceptions import ChatflowError, GraphValidationError
from chatflow.graph import CompiledGraph, compile_workspace, load_workspace, load_workspace_file
from chatflow.version import __version__

__all__ = [
    "ChatflowError",
    "CompiledGraph",
    "GraphValidationError",
    "__version__",
    "compile_workspace",
    "load_workspace",
    "load_workspace_file",
]

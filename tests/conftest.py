"""Shared test fixtures for chatflow."""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any

import pytest

from chatflow.config import EngineSettings
from chatflow.graph.compiler import CompiledGraph, compile_workspace
from flowdocs import ask, condition, container, edge, group, start, text, workspace

FIXED_NOW = datetime(2024, 3, 15, 9, 30, tzinfo=UTC)


@pytest.fixture
def settings() -> EngineSettings:
    """Engine settings with a small step limit."""
    return EngineSettings(max_steps_per_event=50, io_timeout_seconds=1.0, webhook_timeout_seconds=1.0)


@pytest.fixture
def fixed_clock():
    return lambda: FIXED_NOW


@pytest.fixture
def greeting_doc() -> dict[str, Any]:
    """start → "Hi {{name}}" → ask name → name == Bob ? "Bob detected" : "Unknown"."""
    return workspace(
        container(
            "main",
            start(),
            text("hello", "Hi {{name}}"),
            ask("ask_name", "name"),
            condition("is_bob", group("bob", ("name", "equals", "Bob"))),
        ),
        container("bob", text("bob_msg", "Bob detected")),
        container("unknown", text("unknown_msg", "Unknown")),
        edges=[
            edge("main", "bob", "is_bob-cond-bob"),
            edge("main", "unknown", "is_bob-else"),
        ],
        name="greeting",
    )


@pytest.fixture
def greeting_graph(greeting_doc: dict[str, Any]) -> CompiledGraph:
    return compile_workspace(greeting_doc)


@pytest.fixture
def dead_end_graph() -> CompiledGraph:
    """Condition with no default edge: any non-Bob reply is a dead end."""
    return compile_workspace(
        workspace(
            container(
                "main",
                start(),
                ask("ask_name", "name"),
                condition("is_bob", group("bob", ("name", "equals", "Bob"))),
                text("after", "never shown"),
            ),
            container("bob", text("bob_msg", "Bob detected")),
            edges=[edge("main", "bob", "is_bob-cond-bob")],
        )
    )


@pytest.fixture
def menu_doc() -> dict[str, Any]:
    """Button menu with per-button routes and a fallback."""
    buttons = {
        "id": "menu",
        "type": "input-buttons",
        "config": {
            "saveVariable": "choice",
            "buttons": [
                {"id": "b_book", "label": "Book", "value": "book", "saveVariable": "wants_booking"},
                {"id": "b_info", "label": "Info"},
                {"id": "b_other", "label": "Other"},
            ],
        },
    }
    return workspace(
        container("main", start(), text("welcome", "Pick one"), buttons),
        container("book", text("book_msg", "Booking {{choice}}")),
        container("info", text("info_msg", "Info it is")),
        container("fallback", text("fallback_msg", "Fallback: {{choice}}")),
        edges=[
            edge("main", "book", "menu-btn-b_book"),
            edge("main", "info", "b_info"),
            edge("main", "fallback", "menu-default"),
        ],
        name="menu",
    )

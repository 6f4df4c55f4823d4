"""Command-line tools for flow documents.

Usage:
    python -m chatflow validate flows/booking.json        # violations + warnings
    python -m chatflow validate flows/booking.json --strict
    python -m chatflow variables flows/booking.yaml       # declared variables
    python -m chatflow export flows/booking.yaml -o booking.json
    python -m chatflow run flows/booking.json --var name=Ana   # console chat
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from pathlib import Path
from typing import Any

from chatflow.config import EngineSettings, get_settings
from chatflow.engine.events import InboundEvent, OutboundEvent, OutboundKind
from chatflow.engine.io import IORequest, IOResult, IORouter
from chatflow.engine.runtime import FlowRuntime
from chatflow.engine.state_machine import SessionStatus
from chatflow.engine.variables import discover_variable_names
from chatflow.exceptions import GraphValidationError, UnexpectedEventError
from chatflow.graph.compiler import CompiledGraph
from chatflow.graph.loader import export_workspace, load_workspace_file
from chatflow.graph.schema import NodeKind, WebhookNode


def _load(path_arg: str) -> CompiledGraph:
    path = Path(path_arg)
    if not path.exists():
        print(f"ERROR: flow file not found: {path}", file=sys.stderr)
        sys.exit(1)
    try:
        return load_workspace_file(path)
    except GraphValidationError as exc:
        print(f"ERROR: {path}: {exc}", file=sys.stderr)
        for violation in exc.violations:
            print(f"  {violation}", file=sys.stderr)
        sys.exit(1)


def cmd_validate(args: argparse.Namespace) -> None:
    """Compile a flow and report violations and warnings."""
    graph = _load(args.flow)
    nodes = sum(len(graph.container(cid).nodes) for cid in graph.container_ids)
    print(
        f"OK: {graph.name or Path(args.flow).stem} "
        f"({len(graph.container_ids)} containers, {nodes} nodes, "
        f"{len(graph.workspace.edges)} edges)"
    )
    print(f"  version: {graph.version[:12]}")
    for warning in graph.warnings:
        print(f"  WARNING {warning}")
    if args.strict and graph.warnings:
        sys.exit(1)


def cmd_variables(args: argparse.Namespace) -> None:
    """List every variable the flow declares or produces."""
    graph = _load(args.flow)
    defaults = {
        v.name.strip(): v.default_value
        for v in graph.start_node.config.initial_variables
        if v.name.strip()
    }
    for name in discover_variable_names(graph.workspace):
        if name in defaults and defaults[name]:
            print(f"{name} = {defaults[name]!r}")
        else:
            print(name)


def cmd_export(args: argparse.Namespace) -> None:
    """Write the flow in the editor's export envelope."""
    graph = _load(args.flow)
    text = json.dumps(export_workspace(graph), indent=2, ensure_ascii=False)
    if args.output:
        Path(args.output).write_text(text + "\n", encoding="utf-8")
        print(f"Wrote {args.output}")
    else:
        print(text)


# ── Console chat ─────────────────────────────────────


def _parse_vars(pairs: list[str]) -> dict[str, str]:
    variables: dict[str, str] = {}
    for pair in pairs:
        name, sep, value = pair.partition("=")
        if not sep or not name.strip():
            print(f"ERROR: --var expects NAME=VALUE, got {pair!r}", file=sys.stderr)
            sys.exit(2)
        variables[name.strip()] = value
    return variables


async def _console_webhook(request: IORequest) -> IOResult:
    node = request.node
    assert isinstance(node, WebhookNode)
    print(f"[webhook {node.config.method.upper()} {node.config.path or node.id}] paste a JSON payload:")
    line = await asyncio.to_thread(input, "webhook> ")
    try:
        return IOResult.success(json.loads(line))
    except json.JSONDecodeError:
        return IOResult.success(line)


def _show(events: list[OutboundEvent]) -> OutboundEvent | None:
    """Print *events*; return the prompt the session now waits on, if any."""
    pending = None
    for event in events:
        payload = event.payload
        if event.kind is OutboundKind.RENDER:
            if "text" in payload:
                print(f"bot: {payload['text']}")
            else:
                print(f"bot: [{payload['nodeType']}] {payload['url']}")
        elif event.kind is OutboundKind.PROMPT:
            hint = payload.get("placeholder") or payload.get("inputType", "")
            print(f"     ({hint})")
            pending = event
        elif event.kind is OutboundKind.BUTTON_PROMPT:
            for number, button in enumerate(payload["buttons"], start=1):
                print(f"     {number}) {button['label']}")
            pending = event
        elif event.kind is OutboundKind.IO_REQUEST:
            target = payload.get("url") or payload.get("path") or ""
            print(f"     ... {payload['nodeType']} {payload.get('method', '')} {target}".rstrip())
        elif event.kind is OutboundKind.TERMINATED:
            print(f"-- session ended ({payload['reason']}): {payload['detail']}")
    return pending


def _choose(buttons: list[dict[str, Any]], line: str) -> list[str]:
    chosen = []
    for token in (t.strip() for t in line.split(",")):
        if not token:
            continue
        if token.isdigit() and 1 <= int(token) <= len(buttons):
            chosen.append(buttons[int(token) - 1]["id"])
            continue
        match = next(
            (
                b["id"]
                for b in buttons
                if token == b["id"] or token.casefold() == str(b["label"]).casefold()
            ),
            token,
        )
        chosen.append(match)
    return chosen


async def _chat(graph: CompiledGraph, variables: dict[str, str], settings: EngineSettings) -> None:
    router = IORouter.default(settings=settings)
    router.register(NodeKind.WEBHOOK, _console_webhook)
    runtime = FlowRuntime(graph, io=router, settings=settings)
    sid, events = await runtime.open_session(variables)
    pending = _show(events)
    while runtime.status(sid) is not SessionStatus.TERMINATED and pending is not None:
        try:
            line = await asyncio.to_thread(input, "you> ")
        except EOFError:
            _show(await runtime.terminate(sid, "console closed"))
            return
        if pending.kind is OutboundKind.BUTTON_PROMPT:
            event = InboundEvent.selection(sid, *_choose(pending.payload["buttons"], line))
        else:
            event = InboundEvent.reply(sid, line)
        try:
            events = await runtime.dispatch(event)
        except UnexpectedEventError as exc:
            print(f"!! {exc.detail}")
            continue
        pending = _show(events)


def cmd_run(args: argparse.Namespace) -> None:
    """Chat with a flow in the console."""
    graph = _load(args.flow)
    asyncio.run(_chat(graph, _parse_vars(args.var), get_settings()))


def main(argv: list[str] | None = None) -> None:
    parser = argparse.ArgumentParser(
        prog="chatflow",
        description="Chat flow compiler and console runner",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")
    sub = parser.add_subparsers(dest="command", required=True)

    # validate
    p_validate = sub.add_parser("validate", help="Compile a flow and report problems")
    p_validate.add_argument("flow", help="Path to a .json or .yaml flow document")
    p_validate.add_argument("--strict", action="store_true", help="Fail on warnings too")
    p_validate.set_defaults(func=cmd_validate)

    # variables
    p_vars = sub.add_parser("variables", help="List variables declared by a flow")
    p_vars.add_argument("flow", help="Path to a .json or .yaml flow document")
    p_vars.set_defaults(func=cmd_variables)

    # export
    p_export = sub.add_parser("export", help="Write the flow as an export envelope")
    p_export.add_argument("flow", help="Path to a .json or .yaml flow document")
    p_export.add_argument("-o", "--output", help="Output JSON path (stdout if omitted)")
    p_export.set_defaults(func=cmd_export)

    # run
    p_run = sub.add_parser("run", help="Chat with a flow in the console")
    p_run.add_argument("flow", help="Path to a .json or .yaml flow document")
    p_run.add_argument(
        "--var", action="append", default=[], metavar="NAME=VALUE", help="Initial variable"
    )
    p_run.set_defaults(func=cmd_run)

    args = parser.parse_args(argv)
    level = logging.DEBUG if args.verbose else get_settings().log_level.upper()
    logging.basicConfig(level=level, format="%(levelname)s %(name)s: %(message)s")
    args.func(args)


if __name__ == "__main__":
    main()

"""Tests for chatflow.engine.io — router, HTTP handler and webhook inbox."""

from __future__ import annotations

import asyncio
import base64
import json
from typing import Any

import httpx
import pytest

from chatflow.config import EngineSettings
from chatflow.engine.io import (
    HttpRequestHandler,
    IORequest,
    IOResult,
    IORouter,
    WebhookInbox,
    payload_text,
    timeout_for,
    verify_webhook_auth,
)
from chatflow.exceptions import UnexpectedEventError, WebhookAuthError
from chatflow.graph.schema import (
    HttpRequestNode,
    NodeKind,
    ScriptNode,
    WebhookNode,
)
from flowdocs import http, webhook


def http_node(url: str = "https://api.test/items", **config: Any) -> HttpRequestNode:
    return HttpRequestNode.model_validate(http("call", url, **config))


def webhook_node(**config: Any) -> WebhookNode:
    return WebhookNode.model_validate(webhook("hook", path="/in", **config))


def request_for(node: Any, variables: dict[str, str] | None = None, timeout: float = 1.0) -> IORequest:
    return IORequest(session_id="s1", node=node, variables=variables or {}, timeout=timeout)


def mock_handler(responder: Any, settings: EngineSettings) -> tuple[HttpRequestHandler, list[httpx.Request]]:
    seen: list[httpx.Request] = []

    def handle(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responder(request)

    client = httpx.AsyncClient(transport=httpx.MockTransport(handle))
    return HttpRequestHandler(client, settings=settings), seen


# ---------------------------------------------------------------------------
# Request building
# ---------------------------------------------------------------------------


class TestBuildRequest:
    def test_interpolates_url_params_and_headers(self, settings: EngineSettings) -> None:
        node = http_node(
            "https://api.test/users/{{uid}}",
            queryParams=[{"name": "lang", "value": "{{lang}}"}],
            headers={"X-Trace": "t-{{uid}}"},
        )
        handler = HttpRequestHandler(settings=settings)
        built = handler.build_request(node.config, {"uid": "42", "lang": "pt"})
        assert built.method == "GET"
        assert str(built.url) == "https://api.test/users/42?lang=pt"
        assert built.headers["X-Trace"] == "t-42"
        assert built.headers["User-Agent"] == settings.http_user_agent

    def test_bearer_auth(self, settings: EngineSettings) -> None:
        node = http_node(authType="bearer", authCredentials={"token": "{{tok}}"})
        built = HttpRequestHandler(settings=settings).build_request(node.config, {"tok": "abc"})
        assert built.headers["Authorization"] == "Bearer abc"

    def test_basic_auth(self, settings: EngineSettings) -> None:
        node = http_node(authType="basic", authCredentials={"username": "ana", "password": "pw"})
        built = HttpRequestHandler(settings=settings).build_request(node.config, {})
        expected = base64.b64encode(b"ana:pw").decode("ascii")
        assert built.headers["Authorization"] == f"Basic {expected}"

    def test_api_key_in_query(self, settings: EngineSettings) -> None:
        node = http_node(
            authType="apiKey",
            authCredentials={"apiKeyName": "key", "apiKeyValue": "s3cret", "apiKeyLocation": "query"},
        )
        built = HttpRequestHandler(settings=settings).build_request(node.config, {})
        assert built.url.params["key"] == "s3cret"
        assert "key" not in built.headers

    def test_custom_header_auth(self, settings: EngineSettings) -> None:
        node = http_node(authType="header", authCredentials={"headerName": "X-Api", "headerValue": "v"})
        built = HttpRequestHandler(settings=settings).build_request(node.config, {})
        assert built.headers["X-Api"] == "v"

    def test_json_body(self, settings: EngineSettings) -> None:
        node = http_node(method="post", sendBody=True, bodyJson='{"name": "{{name}}"}')
        built = HttpRequestHandler(settings=settings).build_request(node.config, {"name": "Bob"})
        assert built.method == "POST"
        assert json.loads(built.content) == {"name": "Bob"}
        assert built.headers["Content-Type"] == "application/json"

    def test_form_body(self, settings: EngineSettings) -> None:
        node = http_node(
            method="POST",
            sendBody=True,
            bodyContentType="form",
            bodyParams=[{"name": "q", "value": "{{term}}"}],
        )
        built = HttpRequestHandler(settings=settings).build_request(node.config, {"term": "tea"})
        assert built.content == b"q=tea"

    def test_get_never_sends_body(self, settings: EngineSettings) -> None:
        node = http_node(sendBody=True, bodyJson='{"a": 1}')
        built = HttpRequestHandler(settings=settings).build_request(node.config, {})
        assert built.content == b""


# ---------------------------------------------------------------------------
# HTTP calls
# ---------------------------------------------------------------------------


class TestHttpRequestHandler:
    @pytest.mark.asyncio
    async def test_json_response(self, settings: EngineSettings) -> None:
        handler, seen = mock_handler(lambda r: httpx.Response(200, json={"ok": True}), settings)
        result = await handler(request_for(http_node()))
        assert result == IOResult.success({"ok": True})
        assert len(seen) == 1

    @pytest.mark.asyncio
    async def test_non_json_body_falls_back_to_text(self, settings: EngineSettings) -> None:
        handler, _ = mock_handler(lambda r: httpx.Response(200, text="plain"), settings)
        result = await handler(request_for(http_node()))
        assert result.payload == "plain"

    @pytest.mark.asyncio
    async def test_text_format(self, settings: EngineSettings) -> None:
        handler, _ = mock_handler(lambda r: httpx.Response(200, json=[1]), settings)
        result = await handler(request_for(http_node(responseFormat="text")))
        assert result.payload == "[1]"

    @pytest.mark.asyncio
    async def test_error_status_is_failure(self, settings: EngineSettings) -> None:
        handler, _ = mock_handler(lambda r: httpx.Response(503), settings)
        result = await handler(request_for(http_node()))
        assert not result.ok
        assert "HTTP 503" in result.error

    @pytest.mark.asyncio
    async def test_transport_error_is_failure(self, settings: EngineSettings) -> None:
        def refuse(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        handler, _ = mock_handler(refuse, settings)
        result = await handler(request_for(http_node()))
        assert not result.ok
        assert result.error.startswith("ConnectError")


# ---------------------------------------------------------------------------
# Router
# ---------------------------------------------------------------------------


class TestIORouter:
    @pytest.mark.asyncio
    async def test_dispatches_by_kind(self) -> None:
        async def script(request: IORequest) -> IOResult:
            return IOResult.success("ran")

        router = IORouter()
        router.register(NodeKind.SCRIPT, script)
        node = ScriptNode.model_validate({"id": "js", "type": "script"})
        assert await router.perform(request_for(node)) == IOResult.success("ran")

    @pytest.mark.asyncio
    async def test_missing_handler_is_failure(self) -> None:
        node = ScriptNode.model_validate({"id": "js", "type": "script"})
        result = await IORouter.default().perform(request_for(node))
        assert not result.ok
        assert "no handler" in result.error

    @pytest.mark.asyncio
    async def test_timeout_is_failure(self) -> None:
        async def slow(request: IORequest) -> IOResult:
            await asyncio.sleep(5)
            return IOResult.success()

        router = IORouter({NodeKind.HTTP_REQUEST: slow})
        result = await router.perform(request_for(http_node(), timeout=0.01))
        assert not result.ok
        assert "timed out" in result.error

    @pytest.mark.asyncio
    async def test_handler_exception_is_failure(self) -> None:
        async def broken(request: IORequest) -> IOResult:
            raise KeyError("missing")

        router = IORouter({NodeKind.HTTP_REQUEST: broken})
        result = await router.perform(request_for(http_node()))
        assert result.error.startswith("KeyError")

    def test_register_rejects_non_io_kinds(self) -> None:
        with pytest.raises(ValueError):
            IORouter().register(NodeKind.BUBBLE_TEXT, lambda r: None)  # type: ignore[arg-type,return-value]

    def test_timeouts_per_kind(self, settings: EngineSettings) -> None:
        assert timeout_for(http_node(timeout=2500), settings) == 2.5
        assert timeout_for(webhook_node(), settings) == settings.webhook_timeout_seconds
        script = ScriptNode.model_validate({"id": "js", "type": "script"})
        assert timeout_for(script, settings) == settings.io_timeout_seconds


# ---------------------------------------------------------------------------
# Webhooks
# ---------------------------------------------------------------------------


class TestWebhookAuth:
    def test_none_accepts_anything(self) -> None:
        verify_webhook_auth(webhook_node().config, {})

    def test_header_auth(self) -> None:
        config = webhook_node(
            authentication="header",
            authCredentials={"headerName": "X-Token", "headerValue": "t0k"},
        ).config
        verify_webhook_auth(config, {"x-token": "t0k"})
        with pytest.raises(WebhookAuthError):
            verify_webhook_auth(config, {"X-Token": "wrong"})
        with pytest.raises(WebhookAuthError):
            verify_webhook_auth(config, {})

    def test_basic_auth(self) -> None:
        config = webhook_node(
            authentication="basic",
            authCredentials={"username": "hook", "password": "pw"},
        ).config
        good = base64.b64encode(b"hook:pw").decode("ascii")
        verify_webhook_auth(config, {"Authorization": f"Basic {good}"})
        bad = base64.b64encode(b"hook:nope").decode("ascii")
        with pytest.raises(WebhookAuthError):
            verify_webhook_auth(config, {"Authorization": f"Basic {bad}"})
        with pytest.raises(WebhookAuthError, match="malformed"):
            verify_webhook_auth(config, {"Authorization": "Basic !!!"})


class TestWebhookInbox:
    @pytest.mark.asyncio
    async def test_deliver_resolves_waiting_call(self) -> None:
        inbox = WebhookInbox()
        waiting = asyncio.create_task(inbox(request_for(webhook_node())))
        await asyncio.sleep(0)
        assert inbox.is_waiting("s1")
        inbox.deliver("s1", {"order": 1})
        assert await waiting == IOResult.success({"order": 1})
        assert not inbox.is_waiting("s1")

    def test_deliver_without_waiter(self) -> None:
        with pytest.raises(UnexpectedEventError):
            WebhookInbox().deliver("s1", {})

    @pytest.mark.asyncio
    async def test_rejected_auth_keeps_waiting(self) -> None:
        inbox = WebhookInbox()
        node = webhook_node(
            authentication="header",
            authCredentials={"headerName": "X-Token", "headerValue": "t0k"},
        )
        waiting = asyncio.create_task(inbox(request_for(node)))
        await asyncio.sleep(0)
        with pytest.raises(WebhookAuthError):
            inbox.deliver("s1", {}, {"X-Token": "bad"})
        assert inbox.is_waiting("s1")
        inbox.deliver("s1", "ok", {"X-Token": "t0k"})
        assert (await waiting).payload == "ok"

    @pytest.mark.asyncio
    async def test_cancel_fails_the_waiting_call(self) -> None:
        inbox = WebhookInbox()
        waiting = asyncio.create_task(inbox(request_for(webhook_node())))
        await asyncio.sleep(0)
        assert inbox.cancel("s1") is True
        result = await waiting
        assert not result.ok
        assert "cancelled" in result.error
        assert inbox.cancel("s1") is False


@pytest.mark.parametrize(
    ("payload", "expected"),
    [(None, ""), ("raw", "raw"), ({"a": "é"}, '{"a": "é"}'), ([1, 2], "[1, 2]")],
)
def test_payload_text(payload: Any, expected: str) -> None:
    assert payload_text(payload) == expected

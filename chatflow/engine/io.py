"""I/O collaborators for ``webhook``, ``http-request`` and ``script`` nodes.

The executor never performs I/O itself.  For an I/O node it builds an
``IORequest`` (the node, a snapshot of the session variables and a timeout)
and awaits ``IOCollaborator.perform``, which returns an ``IOResult``:
either a success payload or a failure reason.  The executor does not
retry; retry policy belongs to the collaborator.

``IORouter`` is the default collaborator.  It dispatches on node kind to a
handler and owns the timeout:

- ``http-request`` → ``HttpRequestHandler`` (httpx)
- ``webhook``      → ``WebhookInbox`` (waits for a delivered payload)
- ``script``       → no default handler; register one to enable scripts

Handler exceptions and timeouts become failures; they never propagate.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import hmac
import json
import logging
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass
from typing import Any, Protocol, runtime_checkable

import httpx

from chatflow.config import EngineSettings, get_settings
from chatflow.engine.interpolation import render
from chatflow.exceptions import UnexpectedEventError, WebhookAuthError
from chatflow.graph.schema import (
    BodyContentType,
    HttpAuthType,
    HttpRequestConfig,
    HttpRequestNode,
    IONode,
    NodeKind,
    ResponseFormat,
    WebhookAuthType,
    WebhookConfig,
    WebhookNode,
)

log = logging.getLogger(__name__)

__all__ = [
    "HttpRequestHandler",
    "IOCollaborator",
    "IOHandler",
    "IORequest",
    "IOResult",
    "IORouter",
    "WebhookInbox",
    "payload_text",
    "timeout_for",
    "verify_webhook_auth",
]


# ── Contract ─────────────────────────────────────────


@dataclass(slots=True, frozen=True)
class IORequest:
    """What an I/O node asks its collaborator to do.

    Attributes
    ----------
    session_id : str
        Session the node belongs to.
    node : IONode
        The webhook, http-request or script node being executed.
    variables : Mapping[str, str]
        Snapshot of the session store at the time of the request.
    timeout : float
        Seconds the collaborator may take before the call counts as failed.
    """

    session_id: str
    node: IONode
    variables: Mapping[str, str]
    timeout: float

    @property
    def kind(self) -> NodeKind:
        return self.node.kind

    def describe(self) -> dict[str, Any]:
        """Summary for the ``ioRequest`` outbound event."""
        info: dict[str, Any] = {"nodeId": self.node.id, "nodeType": self.kind.value}
        if isinstance(self.node, HttpRequestNode):
            info["method"] = self.node.config.method.upper()
            info["url"] = render(self.node.config.url, self.variables)
        elif isinstance(self.node, WebhookNode):
            info["method"] = self.node.config.method.upper()
            info["path"] = self.node.config.path
        return info


@dataclass(slots=True, frozen=True)
class IOResult:
    """Outcome of one I/O call."""

    ok: bool
    payload: Any = None
    error: str = ""

    @classmethod
    def success(cls, payload: Any = None) -> IOResult:
        return cls(ok=True, payload=payload)

    @classmethod
    def failure(cls, error: str) -> IOResult:
        return cls(ok=False, error=error)


@runtime_checkable
class IOCollaborator(Protocol):
    """Anything that can carry out an ``IORequest``."""

    async def perform(self, request: IORequest) -> IOResult: ...


IOHandler = Callable[[IORequest], Awaitable[IOResult]]


def timeout_for(node: IONode, settings: EngineSettings) -> float:
    """Timeout in seconds granted to *node*."""
    if isinstance(node, HttpRequestNode):
        return node.config.timeout_ms / 1000.0
    if isinstance(node, WebhookNode):
        return settings.webhook_timeout_seconds
    return settings.io_timeout_seconds


# ── Router ───────────────────────────────────────────


class IORouter:
    """Dispatches requests to per-kind handlers under a timeout."""

    def __init__(self, handlers: Mapping[NodeKind, IOHandler] | None = None) -> None:
        self._handlers: dict[NodeKind, IOHandler] = dict(handlers or {})

    @classmethod
    def default(
        cls,
        *,
        settings: EngineSettings | None = None,
        client: httpx.AsyncClient | None = None,
        inbox: WebhookInbox | None = None,
    ) -> IORouter:
        """Router with the HTTP handler and a webhook inbox registered."""
        return cls(
            {
                NodeKind.HTTP_REQUEST: HttpRequestHandler(client, settings=settings),
                NodeKind.WEBHOOK: inbox if inbox is not None else WebhookInbox(),
            }
        )

    def register(self, kind: NodeKind, handler: IOHandler) -> None:
        if not kind.is_io:
            raise ValueError(f"{kind.value!r} is not an I/O node kind")
        self._handlers[kind] = handler

    def handler_for(self, kind: NodeKind) -> IOHandler | None:
        return self._handlers.get(kind)

    async def perform(self, request: IORequest) -> IOResult:
        handler = self._handlers.get(request.kind)
        if handler is None:
            return IOResult.failure(f"no handler registered for {request.kind.value!r} nodes")
        try:
            return await asyncio.wait_for(handler(request), timeout=request.timeout)
        except TimeoutError:
            return IOResult.failure(
                f"{request.kind.value} node {request.node.id!r} timed out "
                f"after {request.timeout:g}s"
            )
        except Exception as exc:
            log.error(
                "I/O handler for node %s raised %s: %s",
                request.node.id,
                type(exc).__name__,
                exc,
            )
            return IOResult.failure(f"{type(exc).__name__}: {exc}")


# ── HTTP ─────────────────────────────────────────────


def _pairs(items: Any, variables: Mapping[str, str]) -> dict[str, str]:
    return {
        render(item.name, variables).strip(): render(item.value, variables)
        for item in items
        if item.name.strip()
    }


class HttpRequestHandler:
    """Performs ``http-request`` nodes with httpx.

    URL, query parameters, headers, credentials and body are interpolated
    against the request's variable snapshot.  A non-2xx status is a
    failure.  The payload is the decoded JSON body (``responseFormat:
    json``, falling back to text when the body is not JSON) or the text
    body.

    An injected ``client`` is reused for every call (and never closed
    here); otherwise a client is opened per call so ``ignoreSSL`` can be
    honoured.
    """

    def __init__(
        self,
        client: httpx.AsyncClient | None = None,
        *,
        settings: EngineSettings | None = None,
    ) -> None:
        self._client = client
        self._settings = settings or get_settings()

    def build_request(
        self, config: HttpRequestConfig, variables: Mapping[str, str]
    ) -> httpx.Request:
        url = render(config.url, variables).strip()
        params = _pairs(config.query_params, variables)
        headers = {"User-Agent": self._settings.http_user_agent}
        headers.update(_pairs(config.headers, variables))
        creds = config.auth_credentials

        if config.auth_type is HttpAuthType.BEARER:
            headers["Authorization"] = f"Bearer {render(creds.token, variables)}"
        elif config.auth_type is HttpAuthType.HEADER and creds.header_name:
            headers[creds.header_name] = render(creds.header_value, variables)
        elif config.auth_type is HttpAuthType.API_KEY and creds.api_key_name:
            key = render(creds.api_key_value, variables)
            if creds.api_key_location == "query":
                params[creds.api_key_name] = key
            else:
                headers[creds.api_key_name] = key
        elif config.auth_type is HttpAuthType.BASIC:
            raw = f"{render(creds.username, variables)}:{render(creds.password, variables)}"
            token = base64.b64encode(raw.encode("utf-8")).decode("ascii")
            headers["Authorization"] = f"Basic {token}"

        content: str | None = None
        data: dict[str, str] | None = None
        method = config.method.upper() or "GET"
        if config.send_body and method not in ("GET", "HEAD"):
            if config.body_content_type is BodyContentType.JSON:
                content = render(config.body_json, variables)
                headers.setdefault("Content-Type", "application/json")
            elif config.body_content_type is BodyContentType.FORM:
                data = _pairs(config.body_params, variables)
            else:
                content = render(config.body_raw, variables)
                headers.setdefault("Content-Type", "text/plain")

        return httpx.Request(
            method,
            url,
            params=params or None,
            headers=headers,
            content=content,
            data=data,
        )

    @staticmethod
    def decode(response: httpx.Response, fmt: ResponseFormat) -> Any:
        if fmt is ResponseFormat.JSON:
            try:
                return response.json()
            except ValueError:
                return response.text
        return response.text

    async def __call__(self, request: IORequest) -> IOResult:
        node = request.node
        assert isinstance(node, HttpRequestNode)
        config = node.config
        try:
            http_request = self.build_request(config, request.variables)
        except (httpx.InvalidURL, httpx.UnsupportedProtocol) as exc:
            return IOResult.failure(f"invalid request: {exc}")

        log.debug("http-request %s %s %s", node.id, http_request.method, http_request.url)
        try:
            if self._client is not None:
                response = await self._client.send(
                    http_request, follow_redirects=config.follow_redirects
                )
            else:
                async with httpx.AsyncClient(
                    verify=not config.ignore_ssl,
                    timeout=request.timeout,
                ) as client:
                    response = await client.send(
                        http_request, follow_redirects=config.follow_redirects
                    )
        except httpx.HTTPError as exc:
            return IOResult.failure(f"{type(exc).__name__}: {exc}")

        if not response.is_success:
            return IOResult.failure(
                f"HTTP {response.status_code} from {http_request.method} {http_request.url}"
            )
        return IOResult.success(self.decode(response, config.response_format))


# ── Webhook ──────────────────────────────────────────


def _header(headers: Mapping[str, str], name: str) -> str | None:
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def _same(a: str, b: str) -> bool:
    return hmac.compare_digest(a.encode("utf-8"), b.encode("utf-8"))


def verify_webhook_auth(config: WebhookConfig, headers: Mapping[str, str]) -> None:
    """Check *headers* against the webhook's authentication settings.

    Raises
    ------
    WebhookAuthError
        If credentials are missing or wrong.
    """
    creds = config.auth_credentials
    if config.authentication is WebhookAuthType.NONE:
        return
    if config.authentication is WebhookAuthType.HEADER:
        presented = _header(headers, creds.header_name) if creds.header_name else None
        if presented is None or not _same(presented, creds.header_value):
            raise WebhookAuthError(f"header {creds.header_name!r} missing or invalid")
        return

    authorization = _header(headers, "Authorization") or ""
    scheme, _, encoded = authorization.partition(" ")
    if scheme.lower() != "basic" or not encoded:
        raise WebhookAuthError("basic credentials required")
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError) as exc:
        raise WebhookAuthError("malformed basic credentials") from exc
    username, _, password = decoded.partition(":")
    if not (_same(username, creds.username) and _same(password, creds.password)):
        raise WebhookAuthError("invalid basic credentials")


_CANCELLED = object()


class WebhookInbox:
    """Parks ``webhook`` nodes until their payload is delivered.

    ``__call__`` (the handler) registers a future for the session and waits
    on it; ``deliver`` authenticates an inbound payload and resolves the
    future.  At most one webhook is pending per session.
    """

    def __init__(self) -> None:
        self._pending: dict[str, tuple[WebhookNode, asyncio.Future[Any]]] = {}

    def is_waiting(self, session_id: str) -> bool:
        return session_id in self._pending

    async def __call__(self, request: IORequest) -> IOResult:
        node = request.node
        assert isinstance(node, WebhookNode)
        future: asyncio.Future[Any] = asyncio.get_running_loop().create_future()
        self._pending[request.session_id] = (node, future)
        log.debug("session %s waiting for webhook %s", request.session_id, node.id)
        try:
            payload = await future
        finally:
            entry = self._pending.get(request.session_id)
            if entry is not None and entry[1] is future:
                del self._pending[request.session_id]
        if payload is _CANCELLED:
            return IOResult.failure(f"webhook {node.id!r} was cancelled")
        return IOResult.success(payload)

    def deliver(
        self,
        session_id: str,
        payload: Any,
        headers: Mapping[str, str] | None = None,
    ) -> None:
        """Resolve the webhook pending for *session_id* with *payload*.

        Raises
        ------
        UnexpectedEventError
            If the session is not waiting for a webhook.
        WebhookAuthError
            If the payload fails the node's authentication.
        """
        entry = self._pending.get(session_id)
        if entry is None:
            raise UnexpectedEventError(session_id, "no webhook is waiting for a payload")
        node, future = entry
        verify_webhook_auth(node.config, headers or {})
        if not future.done():
            future.set_result(payload)

    def cancel(self, session_id: str) -> bool:
        """Abandon the webhook pending for *session_id*, if any."""
        entry = self._pending.pop(session_id, None)
        if entry is None:
            return False
        if not entry[1].done():
            entry[1].set_result(_CANCELLED)
        return True


def payload_text(payload: Any) -> str:
    """String stored in a response variable for *payload*."""
    if payload is None:
        return ""
    if isinstance(payload, str):
        return payload
    return json.dumps(payload, ensure_ascii=False, default=str)

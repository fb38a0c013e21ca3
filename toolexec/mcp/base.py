"""MCP connection contract and data model.

Defines the dataclasses that describe a server (config, state, tools,
init results) and the :class:`Connection` base class.  Every transport
speaks JSON-RPC 2.0; the base class owns the MCP handshake, tool
discovery and ``tools/call`` result conversion, and each subclass only
moves messages:

- :meth:`Connection._open` / :meth:`Connection._close`
- :meth:`Connection._send_request` (returns the matching response)
- :meth:`Connection._send_notification`
"""

from __future__ import annotations

import itertools
import json
import logging
import threading
import time
from abc import ABC, abstractmethod
from concurrent.futures import Future, TimeoutError as FutureTimeoutError
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from toolexec.errors import (
    MCPConnectionError,
    MCPProtocolError,
    MCPTimeoutError,
    ToolCancelledError,
    ToolHandlerError,
)

if TYPE_CHECKING:
    from toolexec.cancellation import CancellationToken

PROTOCOL_VERSION = "2024-11-05"
NO_OUTPUT_MESSAGE = "Tool executed successfully (no output)"

_WAIT_SLICE = 0.1


# -------------------------------------------------------------------- #
# Data model
# -------------------------------------------------------------------- #


@dataclass
class MCPClientInfo:
    """Client identity sent during the ``initialize`` handshake."""

    name: str = "toolexec"
    version: str = "1.0.0"

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "version": self.version}


class Transport(str, Enum):
    STDIO = "stdio"
    HTTP = "http"
    WEBSOCKET = "websocket"


class ServerStatus(str, Enum):
    PENDING = "pending"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    FAILED = "failed"


@dataclass
class MCPServerConfig:
    """One MCP server as configured by the user or a project file."""

    name: str
    transport: str = "stdio"
    command: str | None = None
    args: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    url: str | None = None
    headers: dict[str, str] = field(default_factory=dict)
    timeout: float | None = None  # connection timeout, seconds
    tags: list[str] = field(default_factory=list)
    always_allow: list[str] = field(default_factory=list)
    description: str | None = None
    enabled: bool = True
    source: str = "runtime"  # "runtime" | "user" | "project"

    @classmethod
    def from_dict(cls, data: dict, *, name: str | None = None, source: str = "runtime") -> "MCPServerConfig":
        """Build from a config-file dict.  Accepts camelCase ``alwaysAllow``.

        A missing ``transport`` is inferred: ``url`` with a ws(s) scheme
        means websocket, any other ``url`` means http, otherwise stdio.
        """
        url = data.get("url")
        transport = data.get("transport") or data.get("type")
        if not transport:
            if url and str(url).startswith(("ws://", "wss://")):
                transport = Transport.WEBSOCKET.value
            elif url:
                transport = Transport.HTTP.value
            else:
                transport = Transport.STDIO.value
        if transport in ("sse", "streamable-http", "streamableHttp"):
            transport = Transport.HTTP.value
        if transport == "ws":
            transport = Transport.WEBSOCKET.value

        return cls(
            name=name or data.get("name", ""),
            transport=str(transport),
            command=data.get("command"),
            args=[str(a) for a in data.get("args") or []],
            env={str(k): str(v) for k, v in (data.get("env") or {}).items()},
            url=url,
            headers={str(k): str(v) for k, v in (data.get("headers") or {}).items()},
            timeout=data.get("timeout"),
            tags=list(data.get("tags") or []),
            always_allow=list(data.get("alwaysAllow") or data.get("always_allow") or []),
            description=data.get("description"),
            enabled=bool(data.get("enabled", True)),
            source=source,
        )


@dataclass
class MCPToolDefinition:
    """A tool advertised by a server in ``tools/list``."""

    name: str
    description: str
    input_schema: dict
    server_name: str
    annotations: dict[str, Any] = field(default_factory=dict)

    @property
    def read_only(self) -> bool:
        return bool(self.annotations.get("readOnlyHint"))


@dataclass
class MCPServerConnection:
    """Manager-side state for one server."""

    name: str
    transport: str
    status: ServerStatus = ServerStatus.PENDING
    error_message: str | None = None
    tools_offered: list[str] = field(default_factory=list)
    description: str | None = None
    tags: list[str] = field(default_factory=list)


@dataclass
class MCPInitResult:
    """Outcome of connecting to one server, delivered to progress callbacks."""

    server_name: str
    success: bool
    tool_count: int = 0
    error: str | None = None


# -------------------------------------------------------------------- #
# Content conversion
# -------------------------------------------------------------------- #


def content_to_text(result: dict | None) -> str:
    """Flatten a ``tools/call`` result to text.

    The first text part wins; otherwise the first part is JSON-encoded.
    Falls back to ``structuredContent`` and then to a fixed message.
    """
    result = result or {}
    parts = result.get("content") or []
    for part in parts:
        if isinstance(part, dict) and part.get("type") == "text":
            return str(part.get("text", ""))
    if parts:
        return json.dumps(parts[0], ensure_ascii=False)
    if result.get("structuredContent") is not None:
        return json.dumps(result["structuredContent"], ensure_ascii=False)
    return NO_OUTPUT_MESSAGE


# -------------------------------------------------------------------- #
# Response routing for streaming transports
# -------------------------------------------------------------------- #


class ResponseRouter:
    """Pairs JSON-RPC responses read on a background thread with requests.

    Each outstanding request owns a :class:`~concurrent.futures.Future`
    keyed by its id.  When the stream ends every outstanding future fails
    so no caller waits out its full timeout.
    """

    def __init__(self, server_name: str):
        self.server_name = server_name
        self._pending: dict[Any, Future] = {}
        self._lock = threading.Lock()
        self._closed_error: Exception | None = None

    def register(self, request_id: Any) -> Future:
        future: Future = Future()
        with self._lock:
            if self._closed_error is not None:
                future.set_exception(self._closed_error)
                return future
            self._pending[request_id] = future
        return future

    def discard(self, request_id: Any) -> None:
        with self._lock:
            self._pending.pop(request_id, None)

    def deliver(self, message: dict) -> bool:
        """Resolve the future waiting on ``message["id"]``."""
        with self._lock:
            future = self._pending.pop(message.get("id"), None)
        if future is None:
            return False
        future.set_result(message)
        return True

    def fail_all(self, error: Exception) -> None:
        with self._lock:
            self._closed_error = error
            pending = list(self._pending.values())
            self._pending.clear()
        for future in pending:
            if not future.done():
                future.set_exception(error)


def wait_for_response(
    future: Future,
    timeout: float | None,
    token: "CancellationToken | None",
    describe: str,
    server_name: str,
) -> dict:
    """Block on *future*, honouring both *timeout* and *token*."""
    deadline = None if timeout is None else time.monotonic() + timeout
    while True:
        if token is not None and token.cancelled:
            raise ToolCancelledError()
        remaining = None if deadline is None else deadline - time.monotonic()
        if remaining is not None and remaining <= 0:
            raise MCPTimeoutError(f"{describe} timed out after {timeout:g}s", server_name)
        wait = _WAIT_SLICE if remaining is None else min(_WAIT_SLICE, remaining)
        try:
            return future.result(timeout=wait)
        except FutureTimeoutError:
            continue


# -------------------------------------------------------------------- #
# Abstract contract
# -------------------------------------------------------------------- #


class Connection(ABC):
    """One live link to an MCP server.

    Lifecycle: :meth:`connect` (open transport, ``initialize``,
    ``notifications/initialized``, ``tools/list``), any number of
    :meth:`call_tool`, then :meth:`close`.  ``close`` is idempotent and a
    closed connection rejects further calls with
    :class:`MCPConnectionError`.
    """

    transport: str = ""

    def __init__(
        self,
        config: MCPServerConfig,
        *,
        client_info: MCPClientInfo | None = None,
        call_timeout: float = 60,
    ):
        self.config = config
        self.name = config.name
        self.client_info = client_info or MCPClientInfo()
        self.call_timeout = call_timeout
        self.logger = logging.getLogger(f"mcp.{self.name}")
        self.server_info: dict[str, Any] = {}
        self.server_capabilities: dict[str, Any] = {}
        self.protocol_version: str | None = None
        self._tools: list[MCPToolDefinition] = []
        self._ids = itertools.count(1)
        self._connected = False
        self._closed = False

    @property
    def connected(self) -> bool:
        return self._connected and not self._closed

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def connect(self, timeout: float = 30) -> None:
        """Open the transport, run the handshake and discover tools.

        *timeout* bounds the whole sequence, not each round trip.
        """
        self.logger.info("Connecting to MCP server '%s' (%s)", self.name, self.transport)
        deadline = time.monotonic() + timeout
        self._open(timeout)

        init_result = self.request("initialize", {
            "protocolVersion": PROTOCOL_VERSION,
            "capabilities": {},
            "clientInfo": self.client_info.to_dict(),
        }, timeout=self._remaining(deadline, timeout, "initialize"))
        self.server_info = init_result.get("serverInfo") or {}
        self.server_capabilities = init_result.get("capabilities") or {}
        self.protocol_version = init_result.get("protocolVersion")

        self.notify("notifications/initialized", {})
        self._tools = self._discover_tools(deadline, timeout)
        self._connected = True
        self.logger.info("MCP server '%s' connected with %d tools", self.name, len(self._tools))

    def list_tools(self) -> list[MCPToolDefinition]:
        return list(self._tools)

    def call_tool(
        self,
        name: str,
        arguments: dict,
        token: "CancellationToken | None" = None,
        timeout: float | None = None,
    ) -> str:
        """Invoke *name* on the server and return its output as text.

        Raises:
            MCPConnectionError: the connection is closed or broke.
            MCPTimeoutError: no response within the call timeout.
            ToolHandlerError: the server reported ``isError``.
            ToolCancelledError: *token* fired while waiting.
        """
        if self._closed or not self._connected:
            raise MCPConnectionError(f"MCP server '{self.name}' is not connected", self.name)

        self.logger.debug("Calling tool %s with args %s", name, arguments)
        result = self.request(
            "tools/call",
            {"name": name, "arguments": arguments},
            timeout=timeout or self.call_timeout,
            token=token,
        )
        text = content_to_text(result)
        if result.get("isError"):
            raise ToolHandlerError(text)
        return text

    def close(self) -> None:
        """Shut the transport down.  Safe to call more than once."""
        if self._closed:
            return
        self._closed = True
        self._connected = False
        try:
            self._close()
        except Exception as exc:
            self.logger.warning("Error closing MCP server '%s': %s", self.name, exc)
        self.logger.info("Disconnected from MCP server '%s'", self.name)

    # ------------------------------------------------------------------ #
    # JSON-RPC
    # ------------------------------------------------------------------ #

    def request(
        self,
        method: str,
        params: dict,
        timeout: float | None = None,
        token: "CancellationToken | None" = None,
    ) -> dict:
        """Send a request and return its ``result`` object."""
        if self._closed:
            raise MCPConnectionError(f"MCP server '{self.name}' is closed", self.name)
        message = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params,
        }
        response = self._send_request(message, timeout, token)
        if "error" in response and response["error"] is not None:
            error = response["error"]
            if isinstance(error, dict):
                raise MCPProtocolError(
                    f"{method} failed: {error.get('message', 'unknown error')}",
                    self.name,
                    code=error.get("code"),
                )
            raise MCPProtocolError(f"{method} failed: {error}", self.name)
        return response.get("result") or {}

    def notify(self, method: str, params: dict) -> None:
        self._send_notification({"jsonrpc": "2.0", "method": method, "params": params})

    def handle_server_request(self, message: dict) -> dict:
        """Answer a request the server sent us (``ping``, ``roots/list``)."""
        method = message.get("method")
        if method == "ping":
            return {"jsonrpc": "2.0", "id": message.get("id"), "result": {}}
        if method == "roots/list":
            return {"jsonrpc": "2.0", "id": message.get("id"), "result": {"roots": []}}
        return {
            "jsonrpc": "2.0",
            "id": message.get("id"),
            "error": {"code": -32601, "message": f"Method not found: {method}"},
        }

    # ------------------------------------------------------------------ #
    # Transport hooks
    # ------------------------------------------------------------------ #

    @abstractmethod
    def _open(self, timeout: float) -> None:
        """Establish the transport (spawn, socket, HTTP session)."""

    @abstractmethod
    def _send_request(
        self,
        message: dict,
        timeout: float | None,
        token: "CancellationToken | None",
    ) -> dict:
        """Send *message* and return the JSON-RPC response with its id."""

    @abstractmethod
    def _send_notification(self, message: dict) -> None:
        """Send a message that has no response."""

    @abstractmethod
    def _close(self) -> None:
        """Release transport resources."""

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _remaining(self, deadline: float, timeout: float, describe: str) -> float:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            raise MCPTimeoutError(f"Connection timed out after {timeout:g}s during {describe}", self.name)
        return remaining

    def _discover_tools(self, deadline: float, timeout: float) -> list[MCPToolDefinition]:
        tools: list[MCPToolDefinition] = []
        cursor = None
        while True:
            params = {"cursor": cursor} if cursor else {}
            result = self.request("tools/list", params, timeout=self._remaining(deadline, timeout, "tools/list"))
            for raw in result.get("tools") or []:
                tools.append(MCPToolDefinition(
                    name=raw["name"],
                    description=raw.get("description", ""),
                    input_schema=raw.get("inputSchema") or {"type": "object", "properties": {}},
                    server_name=self.name,
                    annotations=raw.get("annotations") or {},
                ))
            cursor = result.get("nextCursor")
            if not cursor:
                return tools


ConnectionFactory = Callable[[MCPServerConfig], Connection]

"""HTTP transport: JSON-RPC over POST (streamable HTTP).

Responses come back either as a JSON body or as a ``text/event-stream``
whose ``data:`` events carry JSON-RPC messages.  The ``Mcp-Session-Id``
header issued by the server on ``initialize`` is echoed on every later
request and used to end the session on close.
"""

from __future__ import annotations

import json
import threading
from concurrent.futures import Future
from typing import TYPE_CHECKING

import requests

from toolexec.errors import MCPConnectionError, MCPTimeoutError, ToolCancelledError
from toolexec.mcp.base import Connection, Transport, wait_for_response

if TYPE_CHECKING:
    from toolexec.cancellation import CancellationToken

SESSION_HEADER = "Mcp-Session-Id"


def parse_sse_messages(text: str) -> list[dict]:
    """Extract JSON-RPC messages from an SSE body."""
    messages: list[dict] = []
    data_lines: list[str] = []

    def _flush() -> None:
        if not data_lines:
            return
        payload = "\n".join(data_lines)
        data_lines.clear()
        try:
            message = json.loads(payload)
        except ValueError:
            return
        if isinstance(message, list):
            messages.extend(m for m in message if isinstance(m, dict))
        elif isinstance(message, dict):
            messages.append(message)

    for line in text.splitlines():
        if not line.strip():
            _flush()
        elif line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    _flush()
    return messages


class HTTPConnection(Connection):
    """MCP over HTTP POST using a :class:`requests.Session`."""

    transport = Transport.HTTP.value

    def __init__(self, config, *, session: requests.Session | None = None, **kwargs):
        super().__init__(config, **kwargs)
        self._session = session
        self._session_id: str | None = None
        self._lock = threading.Lock()

    @property
    def session_id(self) -> str | None:
        return self._session_id

    def _open(self, timeout: float) -> None:
        if not self.config.url:
            raise MCPConnectionError("http transport requires a url", self.name)
        if self._session is None:
            self._session = requests.Session()
        self._session.headers.update({
            "Content-Type": "application/json",
            "Accept": "application/json, text/event-stream",
        })
        self._session.headers.update(self.config.headers)

    def _send_request(self, message: dict, timeout: float | None, token: "CancellationToken | None") -> dict:
        if token is not None and token.cancelled:
            raise ToolCancelledError()

        if token is None:
            resp = self._post(message, timeout)
        else:
            resp = self._post_cancellable(message, timeout, token)

        content_type = resp.headers.get("Content-Type", "")
        try:
            if "text/event-stream" in content_type:
                candidates = parse_sse_messages(resp.text)
            else:
                data = resp.json()
                candidates = data if isinstance(data, list) else [data]
        except ValueError as exc:
            raise MCPConnectionError(f"Invalid response from MCP server '{self.name}': {exc}", self.name) from exc

        for candidate in candidates:
            if isinstance(candidate, dict) and candidate.get("id") == message["id"]:
                return candidate
        raise MCPConnectionError(
            f"No response for {message['method']} from MCP server '{self.name}'",
            self.name,
        )

    def _send_notification(self, message: dict) -> None:
        self._post(message, timeout=10)

    def _close(self) -> None:
        session = self._session
        if session is None:
            return
        if self._session_id:
            try:
                session.delete(self.config.url, headers={SESSION_HEADER: self._session_id}, timeout=5)
            except requests.RequestException as exc:
                self.logger.debug("Session termination failed: %s", exc)
        session.close()
        self._session = None

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _post(self, message: dict, timeout: float | None) -> requests.Response:
        session = self._session
        if session is None:
            raise MCPConnectionError(f"MCP server '{self.name}' is closed", self.name)

        headers = {SESSION_HEADER: self._session_id} if self._session_id else {}
        describe = message.get("method", "request")
        try:
            resp = session.post(self.config.url, json=message, headers=headers, timeout=timeout)
            resp.raise_for_status()
        except requests.Timeout as exc:
            suffix = f" after {timeout:g}s" if timeout else ""
            raise MCPTimeoutError(f"{describe} timed out{suffix}", self.name) from exc
        except requests.RequestException as exc:
            raise MCPConnectionError(f"HTTP request to MCP server '{self.name}' failed: {exc}", self.name) from exc

        session_id = resp.headers.get(SESSION_HEADER)
        if session_id:
            with self._lock:
                self._session_id = session_id
        return resp

    def _post_cancellable(
        self,
        message: dict,
        timeout: float | None,
        token: "CancellationToken",
    ) -> requests.Response:
        """POST on a worker thread so *token* is honoured while the request is in flight.

        The HTTP timeout still bounds the worker; a cancelled request is
        abandoned and its response discarded.
        """
        future: Future = Future()

        def _run() -> None:
            try:
                future.set_result(self._post(message, timeout))
            except Exception as exc:
                future.set_exception(exc)

        threading.Thread(target=_run, name=f"mcp-http-{self.name}", daemon=True).start()
        return wait_for_response(future, None, token, message.get("method", "request"), self.name)

"""WebSocket transport: one JSON-RPC message per text frame."""

from __future__ import annotations

import json
import threading
from typing import TYPE_CHECKING, Callable

import websocket

from toolexec.errors import MCPConnectionError, MCPTimeoutError
from toolexec.mcp.base import Connection, ResponseRouter, Transport, wait_for_response

if TYPE_CHECKING:
    from toolexec.cancellation import CancellationToken

MCP_SUBPROTOCOL = "mcp"


class WebSocketConnection(Connection):
    """MCP over a persistent WebSocket using ``websocket-client``.

    A reader thread blocks on ``recv`` and routes responses; closing the
    socket from another thread ends it.
    """

    transport = Transport.WEBSOCKET.value

    def __init__(self, config, *, connect_fn: Callable[..., websocket.WebSocket] | None = None, **kwargs):
        super().__init__(config, **kwargs)
        self._connect_fn = connect_fn or websocket.create_connection
        self._ws: websocket.WebSocket | None = None
        self._router = ResponseRouter(self.name)
        self._send_lock = threading.Lock()
        self._reader: threading.Thread | None = None

    def _open(self, timeout: float) -> None:
        if not self.config.url:
            raise MCPConnectionError("websocket transport requires a url", self.name)
        header = [f"{key}: {value}" for key, value in self.config.headers.items()]
        try:
            self._ws = self._connect_fn(
                self.config.url,
                timeout=timeout,
                header=header,
                subprotocols=[MCP_SUBPROTOCOL],
            )
        except websocket.WebSocketTimeoutException as exc:
            raise MCPTimeoutError(f"WebSocket connect timed out after {timeout:g}s", self.name) from exc
        except (websocket.WebSocketException, OSError) as exc:
            raise MCPConnectionError(f"WebSocket connect to '{self.config.url}' failed: {exc}", self.name) from exc

        # Blocking reads from here on; request timeouts are enforced by the waiter.
        self._ws.settimeout(None)
        self._reader = threading.Thread(target=self._read_loop, name=f"mcp-{self.name}-ws", daemon=True)
        self._reader.start()

    def _send_request(self, message: dict, timeout: float | None, token: "CancellationToken | None") -> dict:
        future = self._router.register(message["id"])
        try:
            self._send(message)
            return wait_for_response(future, timeout, token, message["method"], self.name)
        finally:
            self._router.discard(message["id"])

    def _send_notification(self, message: dict) -> None:
        self._send(message)

    def _close(self) -> None:
        self._router.fail_all(MCPConnectionError(f"MCP server '{self.name}' is closed", self.name))
        if self._ws is not None:
            self._ws.close()
            self._ws = None

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _send(self, message: dict) -> None:
        ws = self._ws
        if ws is None:
            raise MCPConnectionError(f"MCP server '{self.name}' is closed", self.name)
        with self._send_lock:
            try:
                ws.send(json.dumps(message, ensure_ascii=False))
            except (websocket.WebSocketException, OSError) as exc:
                raise MCPConnectionError(f"WebSocket send to '{self.name}' failed: {exc}", self.name) from exc

    def _read_loop(self) -> None:
        ws = self._ws
        try:
            while ws is not None:
                frame = ws.recv()
                if frame is None or frame == "":
                    break
                try:
                    message = json.loads(frame)
                except ValueError:
                    self.logger.debug("Ignoring non-JSON frame")
                    continue
                self._dispatch(message)
        except (websocket.WebSocketException, OSError) as exc:
            self.logger.debug("WebSocket reader stopped: %s", exc)
        finally:
            self._router.fail_all(MCPConnectionError(f"WebSocket to MCP server '{self.name}' closed", self.name))

    def _dispatch(self, message: dict) -> None:
        if not isinstance(message, dict):
            return
        if "method" in message:
            if "id" in message:
                try:
                    self._send(self.handle_server_request(message))
                except MCPConnectionError as exc:
                    self.logger.debug("Could not answer %s: %s", message.get("method"), exc)
            return
        self._router.deliver(message)

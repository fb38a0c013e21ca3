"""Tests for the stdio, HTTP and WebSocket MCP transports."""

import json
import os
import queue
import sys
import threading
from unittest.mock import MagicMock

import pytest
import requests
import websocket

from toolexec.cancellation import CancellationToken
from toolexec.errors import MCPConnectionError, MCPTimeoutError, ToolCancelledError, ToolHandlerError
from toolexec.mcp.base import MCPServerConfig
from toolexec.mcp.http_transport import SESSION_HEADER, HTTPConnection, parse_sse_messages
from toolexec.mcp.stdio_transport import StdioConnection
from toolexec.mcp.websocket_transport import MCP_SUBPROTOCOL, WebSocketConnection

FAKE_SERVER = os.path.join(os.path.dirname(__file__), "fake_mcp_server.py")


def _rpc(message, result):
    return {"jsonrpc": "2.0", "id": message["id"], "result": result}


_INIT_RESULT = {"protocolVersion": "2024-11-05", "serverInfo": {"name": "remote"}, "capabilities": {}}
_TOOLS_RESULT = {"tools": [{"name": "search", "description": "Search", "inputSchema": {"type": "object"}}]}


# ======================================================================
# stdio
# ======================================================================


@pytest.fixture
def stdio_server():
    config = MCPServerConfig(
        name="fake",
        command=sys.executable,
        args=[FAKE_SERVER],
        env={"FAKE_MCP_GREETING": "hello from env"},
    )
    connection = StdioConnection(config, call_timeout=10)
    connection.connect(timeout=10)
    yield connection
    connection.close()


class TestStdioTransport:
    def test_handshake(self, stdio_server):
        assert stdio_server.connected
        assert stdio_server.server_info["name"] == "fake"
        assert [t.name for t in stdio_server.list_tools()] == ["echo", "fail", "env", "crash", "sleep"]
        assert stdio_server.list_tools()[0].read_only

    def test_call(self, stdio_server):
        assert stdio_server.call_tool("echo", {"text": "ping"}) == "ping"

    def test_env_passed_to_process(self, stdio_server):
        assert stdio_server.call_tool("env", {}) == "hello from env"

    def test_tool_error(self, stdio_server):
        with pytest.raises(ToolHandlerError, match="tool failed on purpose"):
            stdio_server.call_tool("fail", {})

    def test_concurrent_calls_are_correlated(self, stdio_server):
        results = {}

        def run(i):
            results[i] = stdio_server.call_tool("echo", {"text": f"msg-{i}"})

        threads = [threading.Thread(target=run, args=(i,)) for i in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results == {i: f"msg-{i}" for i in range(8)}

    def test_call_timeout(self, stdio_server):
        with pytest.raises(MCPTimeoutError):
            stdio_server.call_tool("sleep", {"seconds": 3}, timeout=0.2)

    def test_cancellation(self, stdio_server):
        token = CancellationToken()
        threading.Timer(0.1, token.cancel).start()
        with pytest.raises(ToolCancelledError):
            stdio_server.call_tool("sleep", {"seconds": 3}, token=token)

    def test_server_exit_fails_pending_call(self, stdio_server):
        with pytest.raises(MCPConnectionError, match="exited"):
            stdio_server.call_tool("crash", {})

    def test_close_stops_process(self):
        config = MCPServerConfig(name="fake", command=sys.executable, args=[FAKE_SERVER])
        connection = StdioConnection(config)
        connection.connect(timeout=10)
        process = connection._process

        connection.close()

        assert process.poll() is not None
        with pytest.raises(MCPConnectionError):
            connection.call_tool("echo", {"text": "late"})

    def test_bad_command(self):
        config = MCPServerConfig(name="ghost", command="/nonexistent/mcp-server")
        with pytest.raises(MCPConnectionError, match="Failed to start"):
            StdioConnection(config).connect(timeout=1)


# ======================================================================
# HTTP
# ======================================================================


def _json_response(payload, headers=None):
    resp = MagicMock()
    resp.headers = {"Content-Type": "application/json", **(headers or {})}
    resp.json.return_value = payload
    return resp


def _sse_response(*messages):
    resp = MagicMock()
    resp.headers = {"Content-Type": "text/event-stream"}
    resp.text = "".join(f"event: message\ndata: {json.dumps(m)}\n\n" for m in messages)
    return resp


class FakeHTTPServer:
    """Stands in for ``requests.Session``; answers by JSON-RPC method."""

    def __init__(self, call_reply=None):
        self.session = MagicMock()
        self.session.headers = {}
        self.session.post.side_effect = self._post
        self.posted = []
        self.call_reply = call_reply

    def _post(self, url, json=None, headers=None, timeout=None):
        self.posted.append({"url": url, "message": json, "headers": headers, "timeout": timeout})
        method = json.get("method")
        if "id" not in json:
            return _json_response(None)
        if method == "initialize":
            return _json_response(_rpc(json, _INIT_RESULT), headers={SESSION_HEADER: "sess-1"})
        if method == "tools/list":
            return _sse_response(_rpc(json, _TOOLS_RESULT))
        return self.call_reply(json)


@pytest.fixture
def http_server():
    return FakeHTTPServer()


def _http_connection(server, **config):
    config.setdefault("url", "https://mcp.example.com/mcp")
    connection = HTTPConnection(MCPServerConfig(name="remote", transport="http", **config), session=server.session)
    connection.connect(timeout=5)
    return connection


class TestHTTPTransport:
    def test_connect(self, http_server):
        connection = _http_connection(http_server, headers={"Authorization": "Bearer t"})

        assert connection.server_info == {"name": "remote"}
        assert connection.session_id == "sess-1"
        assert [t.name for t in connection.list_tools()] == ["search"]
        assert http_server.session.headers["Accept"] == "application/json, text/event-stream"
        assert http_server.session.headers["Authorization"] == "Bearer t"

        assert http_server.posted[0]["headers"] == {}
        assert http_server.posted[1]["message"]["method"] == "notifications/initialized"
        assert http_server.posted[1]["headers"] == {SESSION_HEADER: "sess-1"}

    def test_call_via_sse_skips_other_messages(self, http_server):
        http_server.call_reply = lambda message: _sse_response(
            {"jsonrpc": "2.0", "method": "notifications/progress", "params": {"progress": 1}},
            _rpc(message, {"content": [{"type": "text", "text": "3 results"}]}),
        )
        connection = _http_connection(http_server)

        assert connection.call_tool("search", {"q": "x"}) == "3 results"

    def test_call_via_json(self, http_server):
        http_server.call_reply = lambda message: _json_response(
            _rpc(message, {"content": [{"type": "text", "text": "ok"}]})
        )
        assert _http_connection(http_server).call_tool("search", {}) == "ok"

    def test_response_without_matching_id(self, http_server):
        http_server.call_reply = lambda message: _json_response({"jsonrpc": "2.0", "id": 999, "result": {}})
        connection = _http_connection(http_server)

        with pytest.raises(MCPConnectionError, match="No response for tools/call"):
            connection.call_tool("search", {})

    def test_invalid_body(self, http_server):
        def reply(message):
            resp = _json_response(None)
            resp.json.side_effect = ValueError("not json")
            return resp

        http_server.call_reply = reply
        with pytest.raises(MCPConnectionError, match="Invalid response"):
            _http_connection(http_server).call_tool("search", {})

    def test_timeout(self, http_server):
        connection = _http_connection(http_server)
        http_server.session.post.side_effect = requests.Timeout("slow")

        with pytest.raises(MCPTimeoutError, match="tools/call timed out after 2s"):
            connection.call_tool("search", {}, timeout=2)

    def test_http_error(self, http_server):
        connection = _http_connection(http_server)
        http_server.session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(MCPConnectionError, match="HTTP request to MCP server 'remote' failed"):
            connection.call_tool("search", {})

    def test_cancelled_before_send(self, http_server):
        connection = _http_connection(http_server)
        token = CancellationToken()
        token.cancel()
        posted = len(http_server.posted)

        with pytest.raises(ToolCancelledError):
            connection.call_tool("search", {}, token=token)
        assert len(http_server.posted) == posted

    def test_cancelled_while_request_in_flight(self, http_server):
        release = threading.Event()

        def reply(message):
            release.wait(5)
            return _json_response(_rpc(message, {"content": [{"type": "text", "text": "late"}]}))

        http_server.call_reply = reply
        connection = _http_connection(http_server)
        token = CancellationToken()
        threading.Timer(0.2, token.cancel).start()

        try:
            with pytest.raises(ToolCancelledError):
                connection.call_tool("search", {}, token=token, timeout=30)
        finally:
            release.set()

    def test_request_error_surfaces_with_token(self, http_server):
        connection = _http_connection(http_server)
        http_server.session.post.side_effect = requests.ConnectionError("refused")

        with pytest.raises(MCPConnectionError, match="HTTP request to MCP server 'remote' failed"):
            connection.call_tool("search", {}, token=CancellationToken())

    def test_close_ends_session(self, http_server):
        connection = _http_connection(http_server)
        connection.close()

        http_server.session.delete.assert_called_once_with(
            "https://mcp.example.com/mcp", headers={SESSION_HEADER: "sess-1"}, timeout=5,
        )
        http_server.session.close.assert_called_once()

    def test_parse_sse_messages(self):
        text = (
            "event: message\n"
            'data: {"id": 1,\n'
            'data:  "result": {}}\n'
            "\n"
            ": keep-alive comment\n"
            "data: not json\n"
            "\n"
            'data: [{"id": 2}, {"id": 3}, 4]\n'
        )
        assert parse_sse_messages(text) == [{"id": 1, "result": {}}, {"id": 2}, {"id": 3}]


# ======================================================================
# WebSocket
# ======================================================================


class FakeWebSocket:
    """In-memory socket: ``send`` runs a responder, ``recv`` reads its replies."""

    def __init__(self, responder):
        self.responder = responder
        self.inbox = queue.Queue()
        self.sent = []
        self.closed = False
        self.timeout = "unset"

    def settimeout(self, timeout):
        self.timeout = timeout

    def send(self, text):
        message = json.loads(text)
        self.sent.append(message)
        for reply in self.responder(self, message):
            self.inbox.put(json.dumps(reply))

    def recv(self):
        return self.inbox.get()

    def close(self):
        self.closed = True
        self.inbox.put("")


def _ws_responder(call_handler=None):
    def responder(ws, message):
        method = message.get("method")
        if "id" not in message or method is None:
            return []
        if method == "initialize":
            return [_rpc(message, _INIT_RESULT)]
        if method == "tools/list":
            return [_rpc(message, _TOOLS_RESULT)]
        return call_handler(ws, message) if call_handler else []

    return responder


def _ws_connection(responder, **config):
    sockets = []
    captured = {}

    def connect_fn(url, **kwargs):
        captured.update(kwargs, url=url)
        ws = FakeWebSocket(responder)
        sockets.append(ws)
        return ws

    config.setdefault("url", "wss://mcp.example.com/ws")
    connection = WebSocketConnection(
        MCPServerConfig(name="sock", transport="websocket", **config), connect_fn=connect_fn,
    )
    connection.connect(timeout=5)
    return connection, sockets[0], captured


class TestWebSocketTransport:
    def test_connect(self):
        connection, ws, captured = _ws_connection(_ws_responder(), headers={"Authorization": "Bearer t"})

        assert captured["url"] == "wss://mcp.example.com/ws"
        assert captured["timeout"] == 5
        assert captured["header"] == ["Authorization: Bearer t"]
        assert captured["subprotocols"] == [MCP_SUBPROTOCOL]
        assert ws.timeout is None
        assert [t.name for t in connection.list_tools()] == ["search"]
        connection.close()

    def test_call_answers_server_ping(self):
        def call_handler(ws, message):
            return [
                {"jsonrpc": "2.0", "id": "srv-1", "method": "ping"},
                _rpc(message, {"content": [{"type": "text", "text": "pong received"}]}),
            ]

        connection, ws, _ = _ws_connection(_ws_responder(call_handler))

        assert connection.call_tool("search", {}) == "pong received"
        ping_reply = [m for m in ws.sent if m.get("id") == "srv-1"]
        assert ping_reply == [{"jsonrpc": "2.0", "id": "srv-1", "result": {}}]
        connection.close()

    def test_call_timeout(self):
        connection, _, _ = _ws_connection(_ws_responder())
        with pytest.raises(MCPTimeoutError):
            connection.call_tool("search", {}, timeout=0.1)
        connection.close()

    def test_socket_closed_mid_call(self):
        def call_handler(ws, message):
            ws.inbox.put("")
            return []

        connection, _, _ = _ws_connection(_ws_responder(call_handler))
        with pytest.raises(MCPConnectionError, match="closed"):
            connection.call_tool("search", {}, timeout=5)
        connection.close()

    def test_close(self):
        connection, ws, _ = _ws_connection(_ws_responder())
        connection.close()

        assert ws.closed
        with pytest.raises(MCPConnectionError):
            connection.call_tool("search", {})

    @pytest.mark.parametrize("raised, expected", [
        (websocket.WebSocketTimeoutException("slow"), MCPTimeoutError),
        (ConnectionRefusedError("refused"), MCPConnectionError),
    ])
    def test_connect_failures(self, raised, expected):
        def connect_fn(url, **kwargs):
            raise raised

        connection = WebSocketConnection(
            MCPServerConfig(name="sock", transport="websocket", url="ws://localhost:1"), connect_fn=connect_fn,
        )
        with pytest.raises(expected):
            connection.connect(timeout=1)

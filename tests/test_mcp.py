"""Tests for the MCP connection contract, config validation and manager."""

import sys
import threading
import time
from concurrent.futures import Future
from unittest.mock import MagicMock

import pytest

from toolexec.approval import ApprovalPolicy
from toolexec.cancellation import CancellationToken
from toolexec.errors import (
    MCPConnectionError,
    MCPProtocolError,
    MCPTimeoutError,
    ToolCancelledError,
    ToolHandlerError,
)
from toolexec.execution.coordinator import ExecutionCoordinator
from toolexec.mcp.base import (
    NO_OUTPUT_MESSAGE,
    PROTOCOL_VERSION,
    Connection,
    MCPServerConfig,
    MCPToolDefinition,
    ResponseRouter,
    ServerStatus,
    content_to_text,
    wait_for_response,
)
from toolexec.mcp.factory import create_connection, validate_server_config
from toolexec.mcp.http_transport import HTTPConnection
from toolexec.mcp.manager import MCPConnectionManager
from toolexec.mcp.websocket_transport import WebSocketConnection
from toolexec.tool_calling.models import ToolCall
from toolexec.tools.base import invoke_handler


# -------------------------------------------------------------------- #
# Scripted connection: canned JSON-RPC replies per method
# -------------------------------------------------------------------- #


class ScriptedConnection(Connection):
    """Replies to each method from a script; a list is consumed in order."""

    transport = "scripted"

    def __init__(self, config, script, **kwargs):
        super().__init__(config, **kwargs)
        self.script = script
        self.sent = []
        self.notifications = []
        self.close_count = 0

    def _open(self, timeout):
        pass

    def _send_request(self, message, timeout, token):
        self.sent.append(message)
        reply = self.script[message["method"]]
        if isinstance(reply, list):
            reply = reply.pop(0)
        return {"jsonrpc": "2.0", "id": message["id"], **reply}

    def _send_notification(self, message):
        self.notifications.append(message)

    def _close(self):
        self.close_count += 1


class SlowScriptedConnection(ScriptedConnection):
    """Takes *delay* seconds per request and records the timeout it was given."""

    def __init__(self, config, script, delay, **kwargs):
        super().__init__(config, script, **kwargs)
        self.delay = delay
        self.timeouts = []

    def _send_request(self, message, timeout, token):
        self.timeouts.append(timeout)
        time.sleep(self.delay)
        return super()._send_request(message, timeout, token)


def _handshake_script(**extra):
    script = {
        "initialize": {"result": {
            "protocolVersion": PROTOCOL_VERSION,
            "serverInfo": {"name": "demo", "version": "2.0"},
            "capabilities": {"tools": {}},
        }},
        "tools/list": {"result": {"tools": [
            {"name": "search", "description": "Search things", "inputSchema": {"type": "object"}},
        ]}},
    }
    script.update(extra)
    return script


# ======================================================================
# Connection contract
# ======================================================================


class TestConnection:
    def test_handshake_and_discovery(self):
        conn = ScriptedConnection(MCPServerConfig(name="demo"), _handshake_script())
        conn.connect(timeout=5)

        assert conn.connected
        assert conn.server_info == {"name": "demo", "version": "2.0"}
        assert conn.protocol_version == PROTOCOL_VERSION
        init = conn.sent[0]
        assert init["method"] == "initialize"
        assert init["params"]["clientInfo"] == {"name": "toolexec", "version": "1.0.0"}
        assert [n["method"] for n in conn.notifications] == ["notifications/initialized"]
        assert [t.name for t in conn.list_tools()] == ["search"]
        assert conn.list_tools()[0].server_name == "demo"

    def test_discovery_follows_cursor(self):
        script = _handshake_script(**{"tools/list": [
            {"result": {"tools": [{"name": "a"}], "nextCursor": "page2"}},
            {"result": {"tools": [{"name": "b", "annotations": {"readOnlyHint": True}}]}},
        ]})
        conn = ScriptedConnection(MCPServerConfig(name="demo"), script)
        conn.connect()

        tools = conn.list_tools()
        assert [t.name for t in tools] == ["a", "b"]
        assert [t.read_only for t in tools] == [False, True]
        assert conn.sent[2]["params"] == {"cursor": "page2"}

    def test_one_deadline_bounds_the_whole_handshake(self):
        script = _handshake_script(**{"tools/list": [
            {"result": {"tools": [{"name": "a"}], "nextCursor": "2"}},
            {"result": {"tools": [{"name": "b"}], "nextCursor": "3"}},
            {"result": {"tools": [{"name": "c"}]}},
        ]})
        conn = SlowScriptedConnection(MCPServerConfig(name="demo"), script, delay=0.3)

        with pytest.raises(MCPTimeoutError, match=r"Connection timed out after 0\.5s during tools/list"):
            conn.connect(timeout=0.5)

        assert [m["method"] for m in conn.sent] == ["initialize", "tools/list"]
        assert conn.timeouts[0] <= 0.5
        assert conn.timeouts[1] < conn.timeouts[0]
        assert not conn.connected

    def test_call_tool_returns_text(self):
        script = _handshake_script(**{"tools/call": {"result": {"content": [{"type": "text", "text": "found 3"}]}}})
        conn = ScriptedConnection(MCPServerConfig(name="demo"), script)
        conn.connect()

        assert conn.call_tool("search", {"q": "x"}) == "found 3"
        assert conn.sent[-1]["params"] == {"name": "search", "arguments": {"q": "x"}}

    def test_call_tool_is_error(self):
        script = _handshake_script(**{"tools/call": {"result": {
            "isError": True, "content": [{"type": "text", "text": "no such repo"}],
        }}})
        conn = ScriptedConnection(MCPServerConfig(name="demo"), script)
        conn.connect()

        with pytest.raises(ToolHandlerError, match="no such repo"):
            conn.call_tool("search", {})

    def test_protocol_error(self):
        script = _handshake_script(**{"tools/call": {"error": {"code": -32602, "message": "bad params"}}})
        conn = ScriptedConnection(MCPServerConfig(name="demo"), script)
        conn.connect()

        with pytest.raises(MCPProtocolError) as exc_info:
            conn.call_tool("search", {})
        assert exc_info.value.code == -32602
        assert "bad params" in str(exc_info.value)

    def test_call_before_connect(self):
        conn = ScriptedConnection(MCPServerConfig(name="demo"), {})
        with pytest.raises(MCPConnectionError, match="not connected"):
            conn.call_tool("search", {})

    def test_close_is_idempotent_and_final(self):
        conn = ScriptedConnection(MCPServerConfig(name="demo"), _handshake_script())
        conn.connect()
        conn.close()
        conn.close()

        assert conn.close_count == 1
        assert not conn.connected
        with pytest.raises(MCPConnectionError):
            conn.call_tool("search", {})

    def test_server_requests(self):
        conn = ScriptedConnection(MCPServerConfig(name="demo"), {})

        assert conn.handle_server_request({"id": 1, "method": "ping"})["result"] == {}
        assert conn.handle_server_request({"id": 2, "method": "roots/list"})["result"] == {"roots": []}
        assert conn.handle_server_request({"id": 3, "method": "sampling/createMessage"})["error"]["code"] == -32601


class TestContentToText:
    def test_first_text_part(self):
        result = {"content": [{"type": "image", "data": "..."}, {"type": "text", "text": "hello"}]}
        assert content_to_text(result) == "hello"

    def test_non_text_part_json_encoded(self):
        assert content_to_text({"content": [{"type": "image", "data": "x"}]}) == '{"type": "image", "data": "x"}'

    def test_structured_content(self):
        assert content_to_text({"content": [], "structuredContent": {"n": 1}}) == '{"n": 1}'

    @pytest.mark.parametrize("result", [None, {}, {"content": []}])
    def test_no_output(self, result):
        assert content_to_text(result) == NO_OUTPUT_MESSAGE


class TestResponseRouting:
    def test_deliver(self):
        router = ResponseRouter("demo")
        future = router.register(1)

        assert router.deliver({"id": 1, "result": {}})
        assert not router.deliver({"id": 99, "result": {}})
        assert future.result(timeout=1) == {"id": 1, "result": {}}

    def test_fail_all(self):
        router = ResponseRouter("demo")
        future = router.register(1)
        router.fail_all(MCPConnectionError("gone", "demo"))

        with pytest.raises(MCPConnectionError):
            future.result(timeout=1)
        with pytest.raises(MCPConnectionError):
            router.register(2).result(timeout=1)

    def test_wait_timeout(self):
        with pytest.raises(MCPTimeoutError, match="tools/call timed out"):
            wait_for_response(Future(), 0.05, None, "tools/call", "demo")

    def test_wait_cancelled(self):
        token = CancellationToken()
        threading.Timer(0.05, token.cancel).start()
        with pytest.raises(ToolCancelledError):
            wait_for_response(Future(), None, token, "tools/call", "demo")


# ======================================================================
# Config parsing and validation
# ======================================================================


class TestServerConfig:
    def test_from_dict_infers_transport(self):
        assert MCPServerConfig.from_dict({"command": "npx"}, name="a").transport == "stdio"
        assert MCPServerConfig.from_dict({"url": "https://x/mcp"}, name="a").transport == "http"
        assert MCPServerConfig.from_dict({"url": "wss://x/mcp"}, name="a").transport == "websocket"

    def test_from_dict_aliases(self):
        assert MCPServerConfig.from_dict({"type": "sse", "url": "http://x"}, name="a").transport == "http"
        assert MCPServerConfig.from_dict({"transport": "ws", "url": "ws://x"}, name="a").transport == "websocket"

    def test_from_dict_fields(self):
        config = MCPServerConfig.from_dict({
            "name": "github",
            "command": "npx",
            "args": ["-y", "server", 3],
            "env": {"TOKEN": "abc", "PORT": 8080},
            "alwaysAllow": ["search"],
            "timeout": 10,
            "tags": ["vcs"],
            "enabled": False,
        }, source="project")

        assert config.name == "github"
        assert config.args == ["-y", "server", "3"]
        assert config.env == {"TOKEN": "abc", "PORT": "8080"}
        assert config.always_allow == ["search"]
        assert config.timeout == 10
        assert config.tags == ["vcs"]
        assert config.enabled is False
        assert config.source == "project"


class TestValidateServerConfig:
    def test_valid_http(self, server_config):
        assert validate_server_config(server_config("a")) == []

    def test_missing_name(self):
        errors = validate_server_config(MCPServerConfig(name="", transport="http", url="http://x"))
        assert "Server name is required" in errors

    def test_unsupported_transport(self):
        errors = validate_server_config(MCPServerConfig(name="a", transport="carrier-pigeon"))
        assert errors[0].startswith("Unsupported transport 'carrier-pigeon'")

    def test_stdio_requires_command(self):
        assert validate_server_config(MCPServerConfig(name="a")) == ["stdio transport requires 'command'"]

    def test_missing_command(self):
        errors = validate_server_config(MCPServerConfig(name="a", command="no-such-binary-xyz"))
        assert errors == ["Command not found: no-such-binary-xyz"]

    def test_project_stdio_needs_trust(self):
        config = MCPServerConfig(name="a", command=sys.executable, source="project")

        errors = validate_server_config(config)
        assert len(errors) == 1
        assert "mcp.trusted_projects" in errors[0]

        assert validate_server_config(config, allow_project_servers=True) == []

    def test_trusted_flag_in_project_entry_ignored(self):
        config = MCPServerConfig.from_dict({"name": "a", "command": sys.executable, "trusted": True}, source="project")

        assert not hasattr(config, "trusted")
        assert len(validate_server_config(config)) == 1

    def test_user_stdio_needs_no_trust(self):
        assert validate_server_config(MCPServerConfig(name="a", command=sys.executable, source="user")) == []

    @pytest.mark.parametrize("transport, url, fragment", [
        ("http", "ftp://x", "Invalid http URL"),
        ("http", None, "http transport requires 'url'"),
        ("websocket", "http://x", "Invalid websocket URL"),
    ])
    def test_bad_urls(self, transport, url, fragment):
        errors = validate_server_config(MCPServerConfig(name="a", transport=transport, url=url))
        assert fragment in errors[0]

    @pytest.mark.parametrize("timeout, message", [(0, "timeout must be positive"), ("soon", "Invalid timeout: 'soon'")])
    def test_bad_timeout(self, server_config, timeout, message):
        assert validate_server_config(server_config("a", timeout=timeout)) == [message]

    def test_create_connection(self, server_config):
        assert isinstance(create_connection(server_config("a")), HTTPConnection)
        ws = create_connection(server_config("b", transport="websocket", url="ws://x"))
        assert isinstance(ws, WebSocketConnection)

        with pytest.raises(MCPConnectionError, match="Unsupported transport"):
            create_connection(MCPServerConfig(name="c", transport="smoke-signal"))


# ======================================================================
# MCPConnectionManager
# ======================================================================


@pytest.fixture
def manager(registry, fake_servers):
    mgr = MCPConnectionManager(registry, connection_factory=fake_servers, default_timeout=5)
    yield mgr
    mgr.shutdown()


class TestManagerInitialize:
    def test_one_fails_one_connects(self, manager, registry, fake_servers, server_config):
        fake_servers.add("github", tools=["search_code", "open_issue"])
        fake_servers.add("broken", fail_with=MCPConnectionError("connection refused", "broken"))
        progress = []

        results = manager.initialize([server_config("github"), server_config("broken")], progress.append)

        assert [(r.server_name, r.success) for r in results] == [("github", True), ("broken", False)]
        assert results[0].tool_count == 2
        assert results[1].error == "connection refused"
        assert sorted(p.server_name for p in progress) == ["broken", "github"]

        statuses = {s.name: s for s in manager.get_statuses()}
        assert statuses["github"].status is ServerStatus.CONNECTED
        assert statuses["github"].tools_offered == ["search_code", "open_issue"]
        assert statuses["broken"].status is ServerStatus.FAILED
        assert statuses["broken"].error_message == "connection refused"

        assert registry.has_tool("search_code")
        entry = registry.get_entry("search_code")
        assert entry.is_remote
        assert entry.source == "github"
        assert entry.description == "[MCP:github] search_code tool"
        assert fake_servers.latest("broken").closed_count == 1

    def test_invalid_config_reported_without_connecting(self, manager, fake_servers):
        progress = []
        results = manager.initialize([MCPServerConfig(name="bad", transport="carrier-pigeon")], progress.append)

        assert not results[0].success
        assert "Unsupported transport" in results[0].error
        assert progress == results
        assert fake_servers.built == []

    def test_disabled_servers_skipped(self, manager, server_config):
        results = manager.initialize([server_config("off", enabled=False)])
        assert results == []
        assert manager.get_statuses() == []

    def test_progress_callback_failure_tolerated(self, manager, fake_servers, server_config):
        fake_servers.add("a", tools=["t_a"])

        def broken(result):
            raise RuntimeError("ui crashed")

        results = manager.initialize([server_config("a")], broken)
        assert results[0].success

    def test_slow_server_times_out(self, registry, fake_servers, server_config):
        fake_servers.add("fast", tools=["fast_tool"])
        fake_servers.add("slow", tools=["slow_tool"], delay=1.0)
        manager = MCPConnectionManager(registry, connection_factory=fake_servers, default_timeout=0.1)

        results = manager.initialize([server_config("fast"), server_config("slow")])

        assert [r.success for r in results] == [True, False]
        assert results[1].error == "Connection timed out after 0.1s"
        assert registry.has_tool("fast_tool")
        assert not registry.has_tool("slow_tool")

        slow = fake_servers.latest("slow")
        deadline = time.monotonic() + 5
        while slow.closed_count == 0 and time.monotonic() < deadline:
            time.sleep(0.05)
        assert slow.closed_count == 1
        manager.shutdown()

    def test_tools_usable_before_slow_server_resolves(self, manager, registry, fake_servers, server_config):
        fake_servers.add("fast", tools=["fast_tool"])
        fake_servers.add("slow", tools=["slow_tool"], delay=1.0)
        seen = {}

        def on_progress(result):
            seen[result.server_name] = (registry.has_tool("fast_tool"), manager.get_connected_servers())

        manager.initialize([server_config("fast"), server_config("slow")], on_progress)

        fast_registered, connected_then = seen["fast"]
        assert fast_registered
        assert connected_then == ["fast"]

    def test_collisions_resolve_in_config_order(self, manager, registry, fake_servers, server_config):
        fake_servers.add("a", tools=["search"])
        fake_servers.add("b", tools=["search"], delay=0.1)

        manager.initialize([server_config("b"), server_config("a")])
        assert registry.get_entry("search").source == "a"

    def test_server_tool_shadows_builtin_until_shutdown(self, manager, registry, fake_servers, server_config,
                                                       entry_factory):
        builtin = entry_factory("read_file", read_only=True)
        registry.register(builtin)
        fake_servers.add("fs", tools=["read_file"])

        manager.initialize([server_config("fs")])
        assert registry.get_entry("read_file").source == "fs"

        manager.shutdown()
        assert registry.get_entry("read_file") is builtin

    def test_console_notified(self, registry, fake_servers, server_config):
        console = MagicMock()
        fake_servers.add("a", tools=["t_a"])
        fake_servers.add("b", fail_with=RuntimeError("boom"))
        manager = MCPConnectionManager(registry, connection_factory=fake_servers, console=console)

        manager.initialize([server_config("a"), server_config("b")])

        console.print_success.assert_called_once()
        console.print_warning.assert_called_once()
        manager.shutdown()


class TestManagerTools:
    def test_remote_call_routes_to_connection(self, manager, registry, fake_servers, server_config):
        fake_servers.add("github", tools=["search"])
        manager.initialize([server_config("github", always_allow=["search"])])
        coordinator = ExecutionCoordinator(registry, ApprovalPolicy())

        result = coordinator.process_tool_call(ToolCall(id="1", name="search", arguments={"q": "x"}))

        assert result.content == "github:search:{'q': 'x'}"
        assert fake_servers.latest("github").calls == [("search", {"q": "x"})]

    def test_remote_tools_need_approval_by_default(self, manager, registry, fake_servers, server_config):
        fake_servers.add("github", tools=["search"])
        manager.initialize([server_config("github")])
        policy = ApprovalPolicy()

        assert policy.requires_approval(registry.get_entry("search"), {})

    def test_read_views(self, manager, fake_servers, server_config):
        fake_servers.add("github", tools=["search", "issue"])
        manager.initialize([server_config("github", description="GitHub", tags=["vcs"])])

        assert manager.get_connected_servers() == ["github"]
        assert [t.name for t in manager.get_server_tools("github")] == ["search", "issue"]
        assert manager.get_server_tools("missing") == []
        assert manager.get_tool_mapping() == {"search": "github", "issue": "github"}

        info = manager.get_server_info("github")
        assert info["status"] == "connected"
        assert info["tool_count"] == 2
        assert info["description"] == "GitHub"
        assert info["tags"] == ["vcs"]
        assert info["url"] == "http://localhost/github"
        assert manager.get_server_info("missing") is None

    def test_statuses_are_copies(self, manager, fake_servers, server_config):
        fake_servers.add("a", tools=["t_a"])
        manager.initialize([server_config("a")])

        manager.get_statuses()[0].tools_offered.append("injected")
        assert manager.get_statuses()[0].tools_offered == ["t_a"]


class TestManagerLifecycle:
    def test_reinitialize_replaces_connections(self, manager, registry, fake_servers, server_config):
        fake_servers.add("github", tools=["search"])
        manager.initialize([server_config("github")])
        old_connection = fake_servers.latest("github")
        old_handler = registry.get_handler("search")

        results = manager.reinitialize()

        assert results[0].success
        assert old_connection.closed_count == 1
        assert fake_servers.latest("github") is not old_connection
        assert registry.get_handler("search") is not old_handler

        outcome = invoke_handler(old_handler, {})
        assert isinstance(outcome.error, MCPConnectionError)

    def test_reinitialize_with_new_configs_drops_removed_servers(self, manager, registry, fake_servers,
                                                                server_config):
        fake_servers.add("a", tools=["t_a"])
        fake_servers.add("b", tools=["t_b"])
        manager.initialize([server_config("a"), server_config("b")])

        manager.reinitialize([server_config("b")])

        assert not registry.has_tool("t_a")
        assert registry.has_tool("t_b")
        assert [s.name for s in manager.get_statuses()] == ["b"]

    def test_shutdown(self, manager, registry, fake_servers, server_config):
        fake_servers.add("a", tools=["t_a"])
        manager.initialize([server_config("a")])

        manager.shutdown()
        manager.shutdown()

        assert registry.get_tool_count() == 0
        assert manager.get_statuses() == []
        assert fake_servers.latest("a").closed_count == 1

    def test_context_manager(self, registry, fake_servers, server_config):
        fake_servers.add("a", tools=["t_a"])
        with MCPConnectionManager(registry, connection_factory=fake_servers) as manager:
            manager.initialize([server_config("a")])
            assert registry.has_tool("t_a")
        assert not registry.has_tool("t_a")


class TestToolDefinition:
    def test_read_only_hint(self):
        tool = MCPToolDefinition(name="t", description="", input_schema={}, server_name="s",
                                 annotations={"readOnlyHint": True})
        assert tool.read_only

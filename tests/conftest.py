"""Shared test fixtures for toolexec tests."""

import time

import pytest

from toolexec.approval import ApprovalPolicy, mutating_approval, read_only_approval
from toolexec.config import USER_CONFIG_DIR_ENV
from toolexec.errors import MCPConnectionError
from toolexec.execution.coordinator import ExecutionCoordinator
from toolexec.mcp.base import Connection, MCPServerConfig, MCPToolDefinition
from toolexec.tools.base import LocalHandler, ToolEntry
from toolexec.tools.registry import ToolRegistry


def make_entry(name, func=None, *, read_only=False, **kwargs):
    """Convenience factory for ToolEntry -- reduces boilerplate in tests."""
    if func is None:
        func = lambda arguments, token: f"{name} ok"  # noqa: E731
    kwargs.setdefault("needs_approval", read_only_approval if read_only else mutating_approval)
    return ToolEntry(name=name, handler=LocalHandler(func), read_only=read_only, **kwargs)


class FakeConnection(Connection):
    """In-process connection: no transport, canned tools, echo calls."""

    transport = "stdio"

    def __init__(self, config, tools=None, fail_with=None, delay=0.0, **kwargs):
        super().__init__(config, **kwargs)
        self._canned = tools or []
        self._fail_with = fail_with
        self._delay = delay
        self.calls = []
        self.closed_count = 0

    def connect(self, timeout=30):
        if self._delay:
            time.sleep(self._delay)
        if self._fail_with is not None:
            raise self._fail_with
        self._tools = [
            MCPToolDefinition(
                name=name,
                description=f"{name} tool",
                input_schema={"type": "object", "properties": {}},
                server_name=self.name,
            )
            for name in self._canned
        ]
        self._connected = True

    def call_tool(self, name, arguments, token=None, timeout=None):
        if self._closed or not self._connected:
            raise MCPConnectionError(f"MCP server '{self.name}' is not connected", self.name)
        self.calls.append((name, arguments))
        return f"{self.name}:{name}:{arguments}"

    def _open(self, timeout):
        pass

    def _send_request(self, message, timeout, token):
        return {"jsonrpc": "2.0", "id": message["id"], "result": {}}

    def _send_notification(self, message):
        pass

    def _close(self):
        self.closed_count += 1


@pytest.fixture(autouse=True)
def user_config_home(tmp_path, monkeypatch):
    """Point the user config directory away from the real home."""
    user_dir = tmp_path / "user_config"
    monkeypatch.setenv(USER_CONFIG_DIR_ENV, str(user_dir))
    return user_dir


@pytest.fixture
def policy():
    return ApprovalPolicy()


@pytest.fixture
def registry():
    return ToolRegistry()


@pytest.fixture
def coordinator(registry, policy):
    return ExecutionCoordinator(registry, policy)


@pytest.fixture
def tmp_project(tmp_path):
    """A project directory with a couple of files."""
    project_dir = tmp_path / "project"
    (project_dir / "src").mkdir(parents=True)
    (project_dir / "a.txt").write_text("hello", encoding="utf-8")
    (project_dir / "src" / "app.py").write_text("print('hi')\n", encoding="utf-8")
    return project_dir


@pytest.fixture
def server_config():
    def _make(name, **kwargs):
        kwargs.setdefault("transport", "http")
        kwargs.setdefault("url", f"http://localhost/{name}")
        return MCPServerConfig(name=name, **kwargs)

    return _make


class FakeServerFactory:
    """Connection factory keyed by server name; remembers what it built."""

    def __init__(self):
        self.behaviours = {}
        self.built = []

    def add(self, name, tools=(), fail_with=None, delay=0.0):
        self.behaviours[name] = {"tools": list(tools), "fail_with": fail_with, "delay": delay}

    def __call__(self, config):
        connection = FakeConnection(config, **self.behaviours.get(config.name, {}))
        self.built.append(connection)
        return connection

    def latest(self, name):
        return [c for c in self.built if c.name == name][-1]


@pytest.fixture
def entry_factory():
    return make_entry


@pytest.fixture
def fake_servers():
    return FakeServerFactory()

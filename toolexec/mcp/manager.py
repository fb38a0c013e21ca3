"""MCP connection manager -- fan-out connect, status tracking, tool feed.

The manager is the rest of the package's only interface to MCP servers.
It provides:

- Concurrent connection with per-server timeouts and live progress
- A ``pending -> connecting -> connected | failed`` record per server
- Registration of each connected server's tools into the ToolRegistry
- Reinitialization without restarting the host
- Context manager: clean shutdown when the session ends
"""

from __future__ import annotations

import dataclasses
import logging
import threading
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FuturesTimeoutError, as_completed
from typing import TYPE_CHECKING, Any, Callable, Iterable

from toolexec.approval import remote_approval
from toolexec.errors import MCPTimeoutError
from toolexec.mcp.base import (
    Connection,
    MCPClientInfo,
    MCPInitResult,
    MCPServerConfig,
    MCPServerConnection,
    MCPToolDefinition,
    ServerStatus,
)
from toolexec.mcp.factory import create_connection, validate_server_config
from toolexec.tools.base import RemoteHandler, ToolEntry

if TYPE_CHECKING:
    from toolexec.tools.registry import ToolRegistry
    from toolexec.ui.console import Console

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[MCPInitResult], None]

# Connections enforce their own deadline; the fan-out allows this much
# extra for thread start-up and teardown before marking a server failed.
_FAN_OUT_GRACE = 0.5


class MCPConnectionManager:
    """Lifecycle manager for MCP server connections.

    Thread-safe: status reads may run while (re)initialization is in
    progress on another thread.
    """

    def __init__(
        self,
        registry: "ToolRegistry",
        *,
        connection_factory: Callable[[MCPServerConfig], Connection] | None = None,
        default_timeout: float = 30,
        call_timeout: float = 60,
        allow_project_servers: bool = False,
        max_workers: int = 8,
        console: "Console | None" = None,
    ):
        self._registry = registry
        self._client_info = MCPClientInfo()
        self._factory = connection_factory or self._default_factory
        self._default_timeout = default_timeout
        self._call_timeout = call_timeout
        self._allow_project_servers = allow_project_servers
        self._max_workers = max_workers
        self._console = console
        self._configs: list[MCPServerConfig] = []
        self._states: dict[str, MCPServerConnection] = {}
        self._connections: dict[str, Connection] = {}
        self._lock = threading.Lock()
        self._init_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Initialization
    # ------------------------------------------------------------------ #

    def initialize(
        self,
        configs: Iterable[MCPServerConfig],
        on_progress: ProgressCallback | None = None,
    ) -> list[MCPInitResult]:
        """Connect to every enabled server concurrently.

        *on_progress* fires once per server the moment it resolves.  A
        failing server never affects the others.  Returns one
        :class:`MCPInitResult` per enabled server, in config order.
        """
        with self._init_lock:
            self._teardown()
            self._configs = list(configs)
            enabled = [c for c in self._configs if c.enabled]
            results: dict[str, MCPInitResult] = {}

            with self._lock:
                self._states = {
                    c.name: MCPServerConnection(
                        name=c.name,
                        transport=c.transport,
                        description=c.description,
                        tags=list(c.tags),
                    )
                    for c in enabled
                }

            try:
                self._run_fan_out(enabled, results, on_progress)
            except Exception as exc:
                logger.error("MCP initialization aborted: %s", exc)
                for config in enabled:
                    if config.name not in results:
                        results[config.name] = self._fail(config.name, str(exc))

            ordered = [results[c.name] for c in enabled if c.name in results]
            connected = sum(1 for r in ordered if r.success)
            logger.info("MCP initialization finished: %d/%d servers connected", connected, len(ordered))
            return ordered

    def reinitialize(
        self,
        configs: Iterable[MCPServerConfig] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[MCPInitResult]:
        """Close every connection, withdraw its tools, and connect again.

        Handlers captured before the reload keep a reference to their old
        connection and fail with a connection error once it is closed.
        """
        logger.info("Reinitializing MCP servers")
        next_configs = list(configs) if configs is not None else list(self._configs)
        return self.initialize(next_configs, on_progress)

    # ------------------------------------------------------------------ #
    # Read views
    # ------------------------------------------------------------------ #

    def get_statuses(self) -> list[MCPServerConnection]:
        with self._lock:
            return [
                dataclasses.replace(s, tools_offered=list(s.tools_offered), tags=list(s.tags))
                for s in self._states.values()
            ]

    def get_connected_servers(self) -> list[str]:
        with self._lock:
            return [name for name, s in self._states.items() if s.status is ServerStatus.CONNECTED]

    def get_server_tools(self, server_name: str) -> list[MCPToolDefinition]:
        with self._lock:
            connection = self._connections.get(server_name)
        return connection.list_tools() if connection else []

    def get_server_info(self, server_name: str) -> dict[str, Any] | None:
        with self._lock:
            state = self._states.get(server_name)
            connection = self._connections.get(server_name)
        if state is None:
            return None
        config = next((c for c in self._configs if c.name == server_name), None)
        return {
            "name": state.name,
            "transport": state.transport,
            "status": state.status.value,
            "error": state.error_message,
            "tool_count": len(state.tools_offered),
            "tools": list(state.tools_offered),
            "description": state.description,
            "tags": list(state.tags),
            "url": config.url if config else None,
            "command": config.command if config else None,
            "server_info": dict(connection.server_info) if connection else {},
            "protocol_version": connection.protocol_version if connection else None,
        }

    def get_tool_mapping(self) -> dict[str, str]:
        """Tool name -> owning server, for MCP tools currently registered."""
        with self._lock:
            servers = list(self._connections)
        mapping: dict[str, str] = {}
        for server_name in servers:
            for entry in self._registry.get_server_entries(server_name):
                mapping[entry.name] = server_name
        return mapping

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def shutdown(self) -> None:
        """Close every connection and withdraw its tools."""
        with self._init_lock:
            self._teardown()
            with self._lock:
                self._states.clear()

    def __enter__(self) -> MCPConnectionManager:
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown()

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _default_factory(self, config: MCPServerConfig) -> Connection:
        return create_connection(config, client_info=self._client_info, call_timeout=self._call_timeout)

    def _timeout_for(self, config: MCPServerConfig) -> float:
        return float(config.timeout or self._default_timeout)

    def _run_fan_out(
        self,
        configs: list[MCPServerConfig],
        results: dict[str, MCPInitResult],
        on_progress: ProgressCallback | None,
    ) -> None:
        to_connect: list[MCPServerConfig] = []
        for config in configs:
            errors = validate_server_config(config, allow_project_servers=self._allow_project_servers)
            if errors:
                logger.warning("MCP server '%s' rejected: %s", config.name, "; ".join(errors))
                results[config.name] = self._fail(config.name, "; ".join(errors))
                self._emit(on_progress, results[config.name])
            else:
                to_connect.append(config)

        if not to_connect:
            return

        connected: dict[str, Connection] = {}
        overall = max(self._timeout_for(c) for c in to_connect) + _FAN_OUT_GRACE
        executor = ThreadPoolExecutor(max_workers=min(self._max_workers, len(to_connect)))
        try:
            futures = {executor.submit(self._connect_one, config): config for config in to_connect}
            try:
                for future in as_completed(futures, timeout=overall):
                    config = futures[future]
                    try:
                        connection = future.result()
                    except Exception as exc:
                        logger.warning("Failed to connect MCP server '%s': %s", config.name, exc)
                        results[config.name] = self._fail(config.name, str(exc) or type(exc).__name__)
                    else:
                        connected[config.name] = connection
                        self._registry.replace_server_tools(config.name, self._build_entries(config, connection))
                        results[config.name] = self._succeed(config, connection)
                    self._emit(on_progress, results[config.name])
            except FuturesTimeoutError:
                for future, config in futures.items():
                    if config.name in results:
                        continue
                    future.add_done_callback(_close_late_connection)
                    error = MCPTimeoutError(f"Connection timed out after {self._timeout_for(config):g}s", config.name)
                    results[config.name] = self._fail(config.name, str(error))
                    self._emit(on_progress, results[config.name])
        finally:
            executor.shutdown(wait=False)

        self._settle_collisions(to_connect, connected)

    def _connect_one(self, config: MCPServerConfig) -> Connection:
        self._set_status(config.name, ServerStatus.CONNECTING)
        connection = self._factory(config)
        try:
            connection.connect(timeout=self._timeout_for(config))
        except Exception:
            connection.close()
            raise
        return connection

    def _settle_collisions(self, configs: list[MCPServerConfig], connected: dict[str, Connection]) -> None:
        """Re-register servers that share tool names, in config order.

        Tools go live as each server connects, so the arrival order
        decides clashes until this runs; afterwards the server listed
        last in the config owns the name on every run.
        """
        owners: dict[str, list[str]] = {}
        for config in configs:
            connection = connected.get(config.name)
            if connection is None:
                continue
            for tool in connection.list_tools():
                owners.setdefault(tool.name, []).append(config.name)

        clashing = {server for servers in owners.values() if len(servers) > 1 for server in servers}
        for config in configs:
            if config.name in clashing:
                self._registry.replace_server_tools(config.name, self._build_entries(config, connected[config.name]))

    def _build_entries(self, config: MCPServerConfig, connection: Connection) -> list[ToolEntry]:
        return [
            ToolEntry(
                name=tool.name,
                handler=RemoteHandler(
                    server_name=config.name,
                    remote_name=tool.name,
                    invoke=connection.call_tool,
                ),
                input_schema=tool.input_schema,
                description=f"[MCP:{config.name}] {tool.description}".rstrip(),
                needs_approval=remote_approval(tool.name, config.always_allow),
                read_only=tool.read_only,
                source=config.name,
            )
            for tool in connection.list_tools()
        ]

    def _succeed(self, config: MCPServerConfig, connection: Connection) -> MCPInitResult:
        tools = connection.list_tools()
        with self._lock:
            self._connections[config.name] = connection
            state = self._states.get(config.name)
            if state is not None:
                state.status = ServerStatus.CONNECTED
                state.error_message = None
                state.tools_offered = [t.name for t in tools]
        if self._console:
            self._console.print_success(f"MCP server '{config.name}' connected ({len(tools)} tools)")
        return MCPInitResult(server_name=config.name, success=True, tool_count=len(tools))

    def _fail(self, server_name: str, error: str) -> MCPInitResult:
        with self._lock:
            state = self._states.get(server_name)
            if state is not None:
                state.status = ServerStatus.FAILED
                state.error_message = error
                state.tools_offered = []
        if self._console:
            self._console.print_warning(f"MCP server '{server_name}' failed: {error}")
        return MCPInitResult(server_name=server_name, success=False, error=error)

    def _set_status(self, server_name: str, status: ServerStatus) -> None:
        with self._lock:
            state = self._states.get(server_name)
            if state is not None and state.status is ServerStatus.PENDING:
                state.status = status

    def _emit(self, on_progress: ProgressCallback | None, result: MCPInitResult) -> None:
        if on_progress is None:
            return
        try:
            on_progress(result)
        except Exception as exc:
            logger.warning("MCP progress callback failed for '%s': %s", result.server_name, exc)

    def _teardown(self) -> None:
        with self._lock:
            connections = dict(self._connections)
            self._connections.clear()
        for name, connection in connections.items():
            self._registry.replace_server_tools(name, [])
            connection.close()


def _close_late_connection(future) -> None:
    """Close a connection that finished after its server was marked failed."""
    if future.cancelled() or future.exception() is not None:
        return
    future.result().close()

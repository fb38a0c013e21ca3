"""Server config validation and transport selection."""

from __future__ import annotations

import logging
from typing import Any

from toolexec.errors import MCPConnectionError
from toolexec.mcp.base import Connection, MCPClientInfo, MCPServerConfig, Transport
from toolexec.mcp.http_transport import HTTPConnection
from toolexec.mcp.stdio_transport import StdioConnection
from toolexec.mcp.websocket_transport import WebSocketConnection
from toolexec.process import find_command, missing_command_message

logger = logging.getLogger(__name__)

_TRANSPORTS: dict[str, type[Connection]] = {
    Transport.STDIO.value: StdioConnection,
    Transport.HTTP.value: HTTPConnection,
    Transport.WEBSOCKET.value: WebSocketConnection,
}


def validate_server_config(config: MCPServerConfig, *, allow_project_servers: bool = False) -> list[str]:
    """Return the problems that stop *config* from connecting.

    Project-sourced stdio servers run arbitrary local commands, so they
    start only when the user trusted the project in their own config
    (``mcp.trusted_projects`` or ``mcp.allow_project_servers``).  Nothing
    in the project's files can grant that.
    """
    errors: list[str] = []
    if not config.name:
        errors.append("Server name is required")

    transport = config.transport
    if transport not in _TRANSPORTS:
        errors.append(
            f"Unsupported transport '{transport}'. "
            f"Use one of: {', '.join(sorted(_TRANSPORTS))}"
        )
        return errors

    if transport == Transport.STDIO.value:
        if not config.command:
            errors.append("stdio transport requires 'command'")
        else:
            if config.source == "project" and not allow_project_servers:
                errors.append(
                    "stdio servers from project config files need the project to be trusted: "
                    "add it to mcp.trusted_projects in your user toolexec.yaml"
                )
            if find_command(config.command) is None:
                errors.append(missing_command_message(config.command))
    else:
        url = config.url or ""
        if not url:
            errors.append(f"{transport} transport requires 'url'")
        elif transport == Transport.HTTP.value and not url.startswith(("http://", "https://")):
            errors.append(f"Invalid http URL '{url}': must start with http:// or https://")
        elif transport == Transport.WEBSOCKET.value and not url.startswith(("ws://", "wss://")):
            errors.append(f"Invalid websocket URL '{url}': must start with ws:// or wss://")

    if config.timeout is not None:
        try:
            if float(config.timeout) <= 0:
                errors.append("timeout must be positive")
        except (TypeError, ValueError):
            errors.append(f"Invalid timeout: {config.timeout!r}")

    return errors


def create_connection(
    config: MCPServerConfig,
    *,
    client_info: MCPClientInfo | None = None,
    call_timeout: float = 60,
    **kwargs: Any,
) -> Connection:
    """Instantiate the connection class for ``config.transport``."""
    connection_cls = _TRANSPORTS.get(config.transport)
    if connection_cls is None:
        raise MCPConnectionError(f"Unsupported transport '{config.transport}'", config.name)
    return connection_cls(config, client_info=client_info, call_timeout=call_timeout, **kwargs)

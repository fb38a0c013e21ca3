"""MCP (Model Context Protocol) server connections.

Public API:
    MCPConnectionManager  -- connect, track and reload servers
    MCPServerConfig       -- one server's configuration
    Connection            -- transport contract (stdio, http, websocket)
"""

from toolexec.mcp.base import (
    Connection,
    MCPClientInfo,
    MCPInitResult,
    MCPServerConfig,
    MCPServerConnection,
    MCPToolDefinition,
    ServerStatus,
    Transport,
    content_to_text,
)
from toolexec.mcp.factory import create_connection, validate_server_config
from toolexec.mcp.http_transport import HTTPConnection
from toolexec.mcp.manager import MCPConnectionManager
from toolexec.mcp.stdio_transport import StdioConnection
from toolexec.mcp.websocket_transport import WebSocketConnection

__all__ = [
    "Connection",
    "HTTPConnection",
    "MCPClientInfo",
    "MCPConnectionManager",
    "MCPInitResult",
    "MCPServerConfig",
    "MCPServerConnection",
    "MCPToolDefinition",
    "ServerStatus",
    "StdioConnection",
    "Transport",
    "WebSocketConnection",
    "content_to_text",
    "create_connection",
    "validate_server_config",
]

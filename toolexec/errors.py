"""Error taxonomy for tool parsing, validation, execution, and MCP.

Every category except :class:`RegistryCorruptionError` terminates as a
textual tool result at the coordinator boundary.  The exceptions here are
raised internally so that each layer can signal *what* went wrong; the
coordinator decides how the model sees it.
"""

from __future__ import annotations


class ToolExecError(Exception):
    """Base class for all toolexec errors."""


class UnknownToolError(ToolExecError):
    """The requested tool name is not present in the registry."""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class ToolValidationError(ToolExecError):
    """A pre-execution check failed; the handler is never invoked."""


class ToolHandlerError(ToolExecError):
    """Wraps a value raised by a tool implementation."""

    def __init__(self, message: str, original: object = None):
        self.original = original
        super().__init__(message)


class ToolCancelledError(ToolExecError):
    """Raised by a handler that observed the cancellation token."""

    def __init__(self, message: str = "Tool execution was cancelled by the user."):
        super().__init__(message)


class MCPConnectionError(ToolExecError):
    """An MCP server failed to connect or to answer a request."""

    def __init__(self, message: str, server_name: str | None = None):
        self.server_name = server_name
        super().__init__(message)


class MCPTimeoutError(MCPConnectionError):
    """An MCP request or connection attempt exceeded its timeout."""


class MCPProtocolError(MCPConnectionError):
    """The server answered with a JSON-RPC error object."""

    def __init__(self, message: str, server_name: str | None = None, code: int | None = None):
        self.code = code
        super().__init__(message, server_name)


class RegistryCorruptionError(ToolExecError):
    """The tool registry is in an inconsistent state.

    This is the only error the coordinator lets propagate: it means the
    turn cannot be completed safely.
    """

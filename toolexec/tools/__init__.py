"""Tool entries, handlers and the tool registry."""

from toolexec.tools.base import (
    HandlerOutcome,
    LocalHandler,
    RemoteHandler,
    ToolEntry,
    ToolHandler,
    ValidationResult,
    invoke_handler,
)
from toolexec.tools.registry import ToolRegistry

__all__ = [
    "HandlerOutcome",
    "LocalHandler",
    "RemoteHandler",
    "ToolEntry",
    "ToolHandler",
    "ToolRegistry",
    "ValidationResult",
    "invoke_handler",
]

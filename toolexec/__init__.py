"""toolexec -- tool-call extraction, approval, MCP connections and execution."""

from toolexec.approval import ApprovalMode, ApprovalPolicy
from toolexec.cancellation import CancellationToken
from toolexec.core import ToolExecutionCore, TurnOutcome
from toolexec.tool_calling import ToolCall, ToolResult, extract_tool_calls
from toolexec.tools import LocalHandler, RemoteHandler, ToolEntry, ToolRegistry

__version__ = "0.1.0"

__all__ = [
    "ApprovalMode",
    "ApprovalPolicy",
    "CancellationToken",
    "LocalHandler",
    "RemoteHandler",
    "ToolCall",
    "ToolEntry",
    "ToolExecutionCore",
    "ToolRegistry",
    "ToolResult",
    "TurnOutcome",
    "extract_tool_calls",
]

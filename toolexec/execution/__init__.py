"""Batch execution of tool calls."""

from toolexec.execution.conversation import ConversationSnapshot, assistant_message
from toolexec.execution.coordinator import (
    PARSE_ERROR_TOOL_NAME,
    ApprovalDecision,
    ApprovalRequest,
    BatchOutcome,
    ExecutionCoordinator,
    parse_error_result,
)
from toolexec.execution.formatting import format_error

__all__ = [
    "PARSE_ERROR_TOOL_NAME",
    "ApprovalDecision",
    "ApprovalRequest",
    "BatchOutcome",
    "ConversationSnapshot",
    "ExecutionCoordinator",
    "assistant_message",
    "format_error",
    "parse_error_result",
]

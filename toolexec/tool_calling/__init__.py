"""Tool-call extraction from model output.

Public API:
    extract_tool_calls      -- native or fallback extraction with cleaning
    deduplicate_tool_calls  -- collapse identical (name, arguments) calls
    parse_tool_arguments    -- lenient/strict JSON argument decoding
    ToolCall, ToolResult    -- call/result records
    ParseError              -- non-fatal malformed-call report
    ExtractionResult        -- calls + cleaned text + optional ParseError
"""

from toolexec.tool_calling.arguments import parse_tool_arguments
from toolexec.tool_calling.extractor import deduplicate_tool_calls, extract_tool_calls
from toolexec.tool_calling.models import (
    CANCELLED_MESSAGE,
    REJECTED_MESSAGE,
    ExtractionResult,
    ParseError,
    ToolCall,
    ToolResult,
    create_cancellation_results,
)

__all__ = [
    "CANCELLED_MESSAGE",
    "REJECTED_MESSAGE",
    "ExtractionResult",
    "ParseError",
    "ToolCall",
    "ToolResult",
    "create_cancellation_results",
    "deduplicate_tool_calls",
    "extract_tool_calls",
    "parse_tool_arguments",
]

"""Data model shared by the extractor and the execution coordinator."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any

CANCELLED_MESSAGE = "Tool execution was cancelled by the user."
REJECTED_MESSAGE = "Tool execution was rejected by the user."


@dataclass
class ToolCall:
    """A tool call extracted from model output (or supplied natively)."""

    id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)

    def to_openai(self) -> dict:
        """Serialise in the OpenAI ``tool_calls`` shape for history."""
        return {
            "id": self.id,
            "type": "function",
            "function": {
                "name": self.name,
                "arguments": json.dumps(self.arguments, ensure_ascii=False),
            },
        }


@dataclass
class ToolResult:
    """The single result correlated with one :class:`ToolCall`.

    ``content`` is ``None`` only for a genuinely void result.
    """

    tool_call_id: str
    name: str
    content: str | None = None
    role: str = "tool"
    is_error: bool = False
    cancelled: bool = False

    def to_message(self) -> dict[str, Any]:
        """Wire shape appended to conversation history."""
        message: dict[str, Any] = {
            "tool_call_id": self.tool_call_id,
            "role": self.role,
            "name": self.name,
        }
        if self.content is not None:
            message["content"] = self.content
        return message


@dataclass
class ParseError:
    """A malformed tool-call attempt detected in model output.

    Not an exception: it is surfaced to the model as a failed tool result
    so the model can correct itself on the next turn.
    """

    error: str
    examples: str

    def to_content(self) -> str:
        return f"{self.error}\n\n{self.examples}"


@dataclass
class ExtractionResult:
    """Output of :func:`toolexec.tool_calling.extract_tool_calls`."""

    tool_calls: list[ToolCall] = field(default_factory=list)
    cleaned_content: str = ""
    parse_error: ParseError | None = None

    @property
    def success(self) -> bool:
        return self.parse_error is None


def create_cancellation_results(calls: list[ToolCall]) -> list[ToolResult]:
    """Build one uniform cancellation result per call, in order."""
    return [
        ToolResult(
            tool_call_id=call.id,
            name=call.name,
            content=CANCELLED_MESSAGE,
            cancelled=True,
        )
        for call in calls
    ]

"""Conversation history around one tool batch."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from toolexec.tool_calling.models import ToolCall, ToolResult


def assistant_message(content: str | None, calls: list[ToolCall]) -> dict[str, Any]:
    """The assistant turn that issued *calls*, in OpenAI message shape."""
    message: dict[str, Any] = {"role": "assistant", "content": content or ""}
    if calls:
        message["tool_calls"] = [call.to_openai() for call in calls]
    return message


@dataclass
class ConversationSnapshot:
    """History as it stood before a tool batch, plus the issuing message.

    ``messages`` is copied on creation so later edits to the live history
    cannot leak in.  :meth:`with_results` appends the assistant message
    and the batch's results together, which keeps every ``tool_call_id``
    paired even when the batch was cancelled part way.
    """

    messages: list[dict[str, Any]] = field(default_factory=list)
    assistant_message: dict[str, Any] | None = None

    def __post_init__(self):
        self.messages = copy.deepcopy(self.messages)

    @classmethod
    def capture(
        cls,
        messages: list[dict[str, Any]],
        content: str | None,
        calls: list[ToolCall],
    ) -> "ConversationSnapshot":
        return cls(messages=messages, assistant_message=assistant_message(content, calls))

    def with_results(self, results: list[ToolResult]) -> list[dict[str, Any]]:
        history = copy.deepcopy(self.messages)
        if self.assistant_message is not None:
            history.append(copy.deepcopy(self.assistant_message))
        history.extend(result.to_message() for result in results)
        return history

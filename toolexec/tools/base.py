"""Tool entry contract and the handler invocation boundary.

A tool is a :class:`ToolEntry` pairing a JSON schema with a handler.  The
handler is one of two variants:

- :class:`LocalHandler` wraps an in-process function
  ``func(arguments, token) -> value``.
- :class:`RemoteHandler` forwards to a tool advertised by an MCP server
  through that server's connection.

:func:`invoke_handler` is the only place a handler runs.  It never
raises: whatever the handler returns or raises is folded into a
:class:`HandlerOutcome`, which the coordinator turns into text.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Callable, Union

from toolexec.errors import ToolCancelledError, ToolHandlerError

if TYPE_CHECKING:
    from toolexec.approval import ApprovalMode
    from toolexec.cancellation import CancellationToken

logger = logging.getLogger(__name__)


# -------------------------------------------------------------------- #
# Data model
# -------------------------------------------------------------------- #


@dataclass(frozen=True)
class LocalHandler:
    """An in-process tool implementation."""

    func: Callable[[dict, "CancellationToken"], Any]


@dataclass(frozen=True)
class RemoteHandler:
    """A tool served by an MCP server.

    ``invoke`` is bound to the connection that advertised the tool and is
    called as ``invoke(remote_name, arguments, token)``.  It keeps working
    against that connection (or fails with a connection error once it is
    closed) even after the registry has moved on to a new one.
    """

    server_name: str
    remote_name: str
    invoke: Callable[[str, dict, "CancellationToken | None"], Any]


ToolHandler = Union[LocalHandler, RemoteHandler]

ApprovalPredicate = Callable[[dict, "ApprovalMode"], bool]
Formatter = Callable[[dict, "str | None"], str]


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    error: str | None = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def fail(cls, error: str) -> "ValidationResult":
        return cls(valid=False, error=error)


Validator = Callable[[dict], ValidationResult]


@dataclass(frozen=True)
class ToolEntry:
    """A registered tool.  Immutable: updates replace the whole entry."""

    name: str
    handler: ToolHandler
    input_schema: dict = field(default_factory=lambda: {"type": "object", "properties": {}})
    description: str = ""
    needs_approval: "bool | ApprovalPredicate" = True
    formatter: Formatter | None = None
    validator: Validator | None = None
    read_only: bool = False
    source: str = "builtin"  # "builtin" or the owning MCP server name

    @property
    def is_remote(self) -> bool:
        return isinstance(self.handler, RemoteHandler)

    def to_openai_schema(self) -> dict:
        """Function-calling definition for the model API."""
        return {
            "type": "function",
            "function": {
                "name": self.name,
                "description": self.description,
                "parameters": self.input_schema or {"type": "object", "properties": {}},
            },
        }


@dataclass
class HandlerOutcome:
    """What came back from a handler: a value, an error, or a cancellation."""

    ok: bool
    value: Any = None
    error: Any = None
    cancelled: bool = False

    @classmethod
    def success(cls, value: Any) -> "HandlerOutcome":
        return cls(ok=True, value=value)

    @classmethod
    def failure(cls, error: Any) -> "HandlerOutcome":
        return cls(ok=False, error=error)

    @classmethod
    def cancellation(cls) -> "HandlerOutcome":
        return cls(ok=False, cancelled=True)


# -------------------------------------------------------------------- #
# Invocation boundary
# -------------------------------------------------------------------- #


def invoke_handler(
    handler: ToolHandler,
    arguments: dict,
    token: "CancellationToken | None" = None,
) -> HandlerOutcome:
    """Run *handler* and capture its result.

    A handler that raises :class:`ToolCancelledError`, or returns after
    the token fired, produces a cancellation outcome.  A
    :class:`ToolHandlerError` contributes its ``original`` value (which
    may be a plain string or object) as the error.
    """
    try:
        if isinstance(handler, LocalHandler):
            value = handler.func(arguments, token)
        elif isinstance(handler, RemoteHandler):
            value = handler.invoke(handler.remote_name, arguments, token)
        else:
            raise TypeError(f"Unsupported tool handler: {type(handler).__name__}")
    except ToolCancelledError:
        return HandlerOutcome.cancellation()
    except ToolHandlerError as exc:
        if token is not None and token.cancelled:
            return HandlerOutcome.cancellation()
        return HandlerOutcome.failure(exc.original if exc.original is not None else exc)
    except Exception as exc:
        if token is not None and token.cancelled:
            return HandlerOutcome.cancellation()
        logger.debug("Tool handler raised %s: %s", type(exc).__name__, exc)
        return HandlerOutcome.failure(exc)

    if token is not None and token.cancelled:
        return HandlerOutcome.cancellation()
    return HandlerOutcome.success(value)

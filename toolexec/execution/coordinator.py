"""Execution coordinator -- resolve, validate, gate and run tool calls.

Given the calls from one model turn, the coordinator produces exactly one
:class:`ToolResult` per call, in issue order, and never raises past its
boundary.  Every failure (unknown tool, bad arguments, validator,
rejection, handler error, cancellation) becomes result text the model
can read on its next turn.  The one exception is
:class:`RegistryCorruptionError`, which means the turn cannot continue.

Approval is the only point of human interaction: when a call needs
confirmation the coordinator hands an :class:`ApprovalRequest` to the
registered callback and waits for it to be resolved, either inside the
callback or later from another thread.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable

from toolexec.errors import RegistryCorruptionError, ToolValidationError, UnknownToolError
from toolexec.execution.conversation import ConversationSnapshot
from toolexec.execution.formatting import error_content, format_error, stringify_result
from toolexec.tool_calling.models import (
    CANCELLED_MESSAGE,
    REJECTED_MESSAGE,
    ParseError,
    ToolCall,
    ToolResult,
    create_cancellation_results,
)
from toolexec.tools.base import ToolEntry, ValidationResult, invoke_handler

if TYPE_CHECKING:
    from toolexec.approval import ApprovalMode, ApprovalPolicy
    from toolexec.cancellation import CancellationToken
    from toolexec.tools.registry import ToolRegistry
    from toolexec.ui.console import Console

logger = logging.getLogger(__name__)

PARSE_ERROR_TOOL_NAME = "invalid_tool_call"

_APPROVAL_POLL = 0.1


# -------------------------------------------------------------------- #
# Approval hand-off
# -------------------------------------------------------------------- #


class ApprovalDecision(str, Enum):
    APPROVE = "approve"
    REJECT = "reject"
    APPROVE_ALL = "approve_all"
    REJECT_ALL = "reject_all"


class ApprovalRequest:
    """A call waiting for the user, plus the calls queued behind it.

    Resolve it exactly once with :meth:`approve`, :meth:`reject`,
    :meth:`approve_all` or :meth:`reject_all`.  The ``*_all`` forms apply
    to every remaining call in the batch that would otherwise ask.
    """

    def __init__(self, call: ToolCall, entry: ToolEntry, pending: list[ToolCall], mode: "ApprovalMode"):
        self.call = call
        self.entry = entry
        self.pending = tuple(pending)
        self.mode = mode
        self.display: str | None = None
        self._decision: ApprovalDecision | None = None
        self._event = threading.Event()
        self._lock = threading.Lock()

    @property
    def decision(self) -> ApprovalDecision | None:
        return self._decision

    @property
    def resolved(self) -> bool:
        return self._event.is_set()

    def approve(self) -> None:
        self._resolve(ApprovalDecision.APPROVE)

    def reject(self) -> None:
        self._resolve(ApprovalDecision.REJECT)

    def approve_all(self) -> None:
        self._resolve(ApprovalDecision.APPROVE_ALL)

    def reject_all(self) -> None:
        self._resolve(ApprovalDecision.REJECT_ALL)

    def wait(self, token: "CancellationToken | None" = None) -> ApprovalDecision | None:
        """Block until resolved.  Returns None if *token* fires first."""
        while not self._event.wait(_APPROVAL_POLL):
            if token is not None and token.cancelled:
                return None
        return self._decision

    def _resolve(self, decision: ApprovalDecision) -> None:
        with self._lock:
            if self._event.is_set():
                raise RuntimeError(f"Approval for '{self.call.name}' was already resolved")
            self._decision = decision
            self._event.set()


ApprovalCallback = Callable[[ApprovalRequest], None]
ResultListener = Callable[[ToolResult, "str | None"], None]


# -------------------------------------------------------------------- #
# Results
# -------------------------------------------------------------------- #


@dataclass
class BatchOutcome:
    """Results of one batch, in issue order."""

    results: list[ToolResult] = field(default_factory=list)
    cancelled: bool = False
    messages: list[dict[str, Any]] | None = None  # rebuilt history when a snapshot was given


@dataclass
class _BatchState:
    blanket: ApprovalDecision | None = None


def parse_error_result(error: ParseError, call_id: str | None = None) -> ToolResult:
    """Surface a malformed tool-call attempt as a failed tool result."""
    return ToolResult(
        tool_call_id=call_id or f"parse_error_{int(time.time() * 1000)}",
        name=PARSE_ERROR_TOOL_NAME,
        content=error_content(error.to_content()),
        is_error=True,
    )


# -------------------------------------------------------------------- #
# Coordinator
# -------------------------------------------------------------------- #


class ExecutionCoordinator:
    """Runs tool calls against a registry under an approval policy."""

    def __init__(
        self,
        registry: "ToolRegistry",
        policy: "ApprovalPolicy",
        *,
        approval_callback: ApprovalCallback | None = None,
        on_result: ResultListener | None = None,
        console: "Console | None" = None,
    ):
        self._registry = registry
        self._policy = policy
        self._approval_callback = approval_callback
        self._on_result = on_result
        self._console = console

    def set_approval_callback(self, callback: ApprovalCallback | None) -> None:
        self._approval_callback = callback

    # ------------------------------------------------------------------ #
    # Public API
    # ------------------------------------------------------------------ #

    def process_tool_call(self, call: ToolCall, token: "CancellationToken | None" = None) -> ToolResult:
        """Run a single call.  Always returns a result for ``call.id``."""
        return self._process(call, token, _BatchState(), pending=[])

    def run_batch(
        self,
        calls: list[ToolCall],
        token: "CancellationToken | None" = None,
        snapshot: ConversationSnapshot | None = None,
    ) -> BatchOutcome:
        """Run *calls* one at a time, in order.

        When *token* fires, the in-flight call and every call not yet
        started get the cancellation result.  With a *snapshot*, the
        outcome also carries the rebuilt history (snapshot messages, the
        issuing assistant message, then every result).
        """
        results: list[ToolResult] = []
        state = _BatchState()

        for index, call in enumerate(calls):
            if token is not None and token.cancelled:
                remaining = create_cancellation_results(calls[index:])
                for result in remaining:
                    self._emit(result, None)
                results.extend(remaining)
                break
            results.append(self._process(call, token, state, pending=calls[index + 1:]))

        cancelled = bool(token is not None and token.cancelled)
        if cancelled:
            logger.info("Tool batch cancelled after %d of %d call(s)", sum(1 for r in results if not r.cancelled), len(calls))

        messages = snapshot.with_results(results) if snapshot is not None else None
        return BatchOutcome(results=results, cancelled=cancelled, messages=messages)

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _process(
        self,
        call: ToolCall,
        token: "CancellationToken | None",
        state: _BatchState,
        pending: list[ToolCall],
    ) -> ToolResult:
        display = None
        try:
            result, display = self._execute(call, token, state, pending)
        except RegistryCorruptionError:
            raise
        except Exception as exc:
            logger.exception("Unexpected failure while running tool '%s'", call.name)
            result = self._error(call, exc)
        self._emit(result, display)
        return result

    def _execute(
        self,
        call: ToolCall,
        token: "CancellationToken | None",
        state: _BatchState,
        pending: list[ToolCall],
    ) -> tuple[ToolResult, str | None]:
        if token is not None and token.cancelled:
            return self._cancelled(call), None

        entry = self._registry.get_entry(call.name)
        if entry is None:
            logger.warning("Model requested unknown tool: %s", call.name)
            return self._error(call, UnknownToolError(call.name)), None

        arguments = call.arguments
        if not isinstance(arguments, dict):
            return self._error(call, ToolValidationError(
                f"Invalid arguments for '{call.name}': expected a JSON object"
            )), None

        failure = self._validate(entry, arguments)
        if failure is not None:
            return self._error(call, failure), None

        if self._policy.requires_approval(entry, arguments):
            decision = self._request_approval(call, entry, arguments, state, pending, token)
            if decision is None:
                return self._cancelled(call), None
            if decision in (ApprovalDecision.REJECT, ApprovalDecision.REJECT_ALL):
                logger.info("Tool call rejected by user: %s", call.name)
                return ToolResult(tool_call_id=call.id, name=call.name, content=REJECTED_MESSAGE), None

        outcome = invoke_handler(entry.handler, arguments, token)
        if outcome.cancelled:
            return self._cancelled(call), None
        if not outcome.ok:
            return self._error(call, outcome.error), self._display(entry, arguments, None)

        content = stringify_result(outcome.value)
        result = ToolResult(tool_call_id=call.id, name=call.name, content=content)
        return result, self._display(entry, arguments, content)

    def _validate(self, entry: ToolEntry, arguments: dict) -> str | None:
        """Run the entry's validator; return the error message, if any."""
        if entry.validator is None:
            return None
        try:
            verdict = entry.validator(arguments)
        except ToolValidationError as exc:
            return str(exc)
        except Exception as exc:
            return f"Validation error: {format_error(exc)}"

        if isinstance(verdict, ValidationResult):
            return None if verdict.valid else (verdict.error or "Validation failed")
        return None if verdict else "Validation failed"

    def _request_approval(
        self,
        call: ToolCall,
        entry: ToolEntry,
        arguments: dict,
        state: _BatchState,
        pending: list[ToolCall],
        token: "CancellationToken | None",
    ) -> ApprovalDecision | None:
        if state.blanket is not None:
            return state.blanket
        if self._approval_callback is None:
            logger.info("No approval handler registered; rejecting '%s'", call.name)
            return ApprovalDecision.REJECT

        request = ApprovalRequest(call, entry, pending, self._policy.get_mode())
        request.display = self._display(entry, arguments, None)
        self._approval_callback(request)
        decision = request.wait(token)
        if decision in (ApprovalDecision.APPROVE_ALL, ApprovalDecision.REJECT_ALL):
            state.blanket = decision
        return decision

    def _display(self, entry: ToolEntry, arguments: dict, content: str | None) -> str | None:
        if entry.formatter is None:
            return None
        try:
            return entry.formatter(arguments, content)
        except Exception as exc:
            logger.warning("Formatter for '%s' failed: %s", entry.name, exc)
            return None

    def _emit(self, result: ToolResult, display: str | None) -> None:
        try:
            if self._console is not None:
                self._console.print_tool_result(result, display)
            if self._on_result is not None:
                self._on_result(result, display)
        except Exception as exc:
            logger.warning("Result listener failed: %s", exc)

    @staticmethod
    def _error(call: ToolCall, value: Any) -> ToolResult:
        return ToolResult(tool_call_id=call.id, name=call.name, content=error_content(value), is_error=True)

    @staticmethod
    def _cancelled(call: ToolCall) -> ToolResult:
        return ToolResult(tool_call_id=call.id, name=call.name, content=CANCELLED_MESSAGE, cancelled=True)

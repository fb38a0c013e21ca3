"""Host-facing facade over extraction, approval, registry, MCP and execution.

A host application builds one :class:`ToolExecutionCore` per session::

    with ToolExecutionCore(project_dir) as core:
        core.initialize_mcp_servers(on_progress=console.print_init_result)
        turn = core.handle_model_output(text, native_calls, history)
        history = turn.messages
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable

from toolexec.approval import ApprovalMode, ApprovalPolicy
from toolexec.cancellation import CancellationToken
from toolexec.config import RuntimeConfig
from toolexec.config.mcp_servers import load_mcp_configs
from toolexec.execution.conversation import ConversationSnapshot, assistant_message
from toolexec.execution.coordinator import (
    PARSE_ERROR_TOOL_NAME,
    ApprovalCallback,
    ExecutionCoordinator,
    parse_error_result,
)
from toolexec.mcp.base import Connection, MCPInitResult, MCPServerConfig
from toolexec.mcp.manager import MCPConnectionManager, ProgressCallback
from toolexec.tool_calling import extract_tool_calls
from toolexec.tool_calling.models import ParseError, ToolCall, ToolResult
from toolexec.tools.base import ToolEntry
from toolexec.tools.builtin import create_builtin_tools
from toolexec.tools.registry import ToolRegistry
from toolexec.ui.console import Console

logger = logging.getLogger(__name__)


@dataclass
class TurnOutcome:
    """Everything one model turn produced."""

    cleaned_content: str
    tool_calls: list[ToolCall] = field(default_factory=list)
    results: list[ToolResult] = field(default_factory=list)
    messages: list[dict[str, Any]] = field(default_factory=list)
    parse_error: ParseError | None = None
    cancelled: bool = False

    @property
    def needs_followup(self) -> bool:
        """True when the model should be called again with the results."""
        return bool(self.results) and not self.cancelled


class ToolExecutionCore:
    """The execution core's programmatic surface."""

    def __init__(
        self,
        project_dir: str | Path = ".",
        *,
        config: RuntimeConfig | None = None,
        policy: ApprovalPolicy | None = None,
        registry: ToolRegistry | None = None,
        approval_callback: ApprovalCallback | None = None,
        console: Console | None = None,
        connection_factory: Callable[[MCPServerConfig], Connection] | None = None,
        builtin_tools: bool = True,
    ):
        self.project_dir = Path(project_dir)
        if config is None:
            config = RuntimeConfig(self.project_dir)
            config.load()
        self.config = config
        self.policy = policy or ApprovalPolicy(config.approval_mode())
        self.registry = registry if registry is not None else ToolRegistry()
        self.console = console

        if builtin_tools:
            self.registry.register_many(create_builtin_tools(
                self.project_dir,
                self.policy,
                bash_timeout=config.get("tools.bash_timeout", 120),
                max_read_bytes=config.get("tools.max_read_bytes", 262144),
            ))

        self.mcp = MCPConnectionManager(
            self.registry,
            connection_factory=connection_factory,
            default_timeout=config.get("mcp.timeout", 30),
            call_timeout=config.get("mcp.call_timeout", 60),
            allow_project_servers=config.allows_project_servers(),
            console=console,
        )
        self.coordinator = ExecutionCoordinator(
            self.registry,
            self.policy,
            approval_callback=approval_callback,
            console=console,
        )
        self._token: CancellationToken | None = None
        self._token_lock = threading.Lock()

    # ------------------------------------------------------------------ #
    # Tools and approval
    # ------------------------------------------------------------------ #

    def register_tools(self, entries: Iterable[ToolEntry]) -> None:
        self.registry.register_many(entries)

    def process_tool_call(self, call: ToolCall, token: CancellationToken | None = None) -> ToolResult:
        return self.coordinator.process_tool_call(call, token)

    def set_approval_mode(self, mode: ApprovalMode | str) -> ApprovalMode:
        """Switch modes; returns the previous one."""
        return self.policy.set_mode(mode)

    def get_approval_mode(self) -> ApprovalMode:
        return self.policy.get_mode()

    def cycle_approval_mode(self) -> ApprovalMode:
        return self.policy.cycle_mode()

    def set_approval_callback(self, callback: ApprovalCallback | None) -> None:
        self.coordinator.set_approval_callback(callback)

    # ------------------------------------------------------------------ #
    # MCP
    # ------------------------------------------------------------------ #

    def initialize_mcp_servers(
        self,
        configs: Iterable[MCPServerConfig] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[MCPInitResult]:
        """Connect to *configs*, or to the servers found in the config files."""
        if configs is None:
            configs = load_mcp_configs(self.project_dir, self.config.user_dir)
        return self.mcp.initialize(configs, on_progress)

    def reinitialize_mcp_servers(
        self,
        configs: Iterable[MCPServerConfig] | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> list[MCPInitResult]:
        return self.mcp.reinitialize(configs, on_progress)

    # ------------------------------------------------------------------ #
    # Cancellation
    # ------------------------------------------------------------------ #

    def new_batch_token(self) -> CancellationToken:
        """Token for the next model call and tool batch."""
        with self._token_lock:
            self._token = CancellationToken()
            return self._token

    def cancel_batch(self, reason: str | None = None) -> bool:
        """Cancel the running batch.  Returns False if nothing is running."""
        with self._token_lock:
            token = self._token
        if token is None or token.cancelled:
            return False
        logger.info("Cancelling tool batch%s", f": {reason}" if reason else "")
        token.cancel(reason)
        return True

    # ------------------------------------------------------------------ #
    # One model turn
    # ------------------------------------------------------------------ #

    def handle_model_output(
        self,
        content: str | None,
        native_calls: Iterable[Any] | None = None,
        history: list[dict[str, Any]] | None = None,
        token: CancellationToken | None = None,
    ) -> TurnOutcome:
        """Extract calls from one model response and run them.

        ``messages`` on the outcome is *history* followed by the assistant
        message and one tool message per call, ready for the next request.
        """
        history = history or []
        extraction = extract_tool_calls(content, native_calls)
        calls = extraction.tool_calls

        if not calls and extraction.parse_error is not None:
            call_id = f"parse_error_{int(time.time() * 1000)}"
            synthetic = ToolCall(id=call_id, name=PARSE_ERROR_TOOL_NAME, arguments={})
            result = parse_error_result(extraction.parse_error, call_id)
            snapshot = ConversationSnapshot.capture(history, extraction.cleaned_content, [synthetic])
            return TurnOutcome(
                cleaned_content=extraction.cleaned_content,
                tool_calls=[synthetic],
                results=[result],
                messages=snapshot.with_results([result]),
                parse_error=extraction.parse_error,
            )

        if not calls:
            return TurnOutcome(
                cleaned_content=extraction.cleaned_content,
                messages=[*history, assistant_message(extraction.cleaned_content, [])],
            )

        if token is None:
            token = self.new_batch_token()
        else:
            with self._token_lock:
                self._token = token

        snapshot = ConversationSnapshot.capture(history, extraction.cleaned_content, calls)
        try:
            batch = self.coordinator.run_batch(calls, token, snapshot)
        finally:
            with self._token_lock:
                if self._token is token:
                    self._token = None

        return TurnOutcome(
            cleaned_content=extraction.cleaned_content,
            tool_calls=calls,
            results=batch.results,
            messages=batch.messages or [],
            parse_error=extraction.parse_error,
            cancelled=batch.cancelled,
        )

    # ------------------------------------------------------------------ #
    # Lifecycle
    # ------------------------------------------------------------------ #

    def shutdown(self) -> None:
        self.mcp.shutdown()

    def __enter__(self) -> ToolExecutionCore:
        return self

    def __exit__(self, *args: Any) -> None:
        self.shutdown()

"""Rich-based console output for a terminal host.

Renders MCP server status, tool results and approval prompts.  Nothing
in the execution core requires it: the coordinator and the MCP manager
only call it when one is passed in.
"""

from __future__ import annotations

import json
from typing import TYPE_CHECKING, Iterable

from prompt_toolkit import PromptSession
from prompt_toolkit.styles import Style as PTStyle
from rich.console import Console as RichConsole
from rich.markup import escape
from rich.panel import Panel
from rich.theme import Theme

from toolexec.tool_calling.models import REJECTED_MESSAGE

if TYPE_CHECKING:
    from toolexec.approval import ApprovalMode
    from toolexec.execution.coordinator import ApprovalRequest
    from toolexec.mcp.base import MCPInitResult, MCPServerConnection
    from toolexec.tool_calling.models import ToolResult

# -------------------------------------------------------------------- #
# Color scheme
# -------------------------------------------------------------------- #

THEME = Theme({
    "dim": "#888888",
    "muted": "#666666",
    "content": "bright_white",
    "success": "bright_green",
    "error": "bright_red",
    "warning": "bright_yellow",
    "info": "bright_cyan",
    "accent": "bright_magenta",
    "cancelled": "yellow",
    "tool": "bright_magenta bold",
    "prompt.border": "#555555",
})

PT_STYLE = PTStyle.from_dict({
    "prompt": "#888888",
    "": "#ffffff",
})

_STATUS_MARKERS = {
    "connected": ("success", "✓"),
    "failed": ("error", "✗"),
    "connecting": ("info", "→"),
    "pending": ("dim", "·"),
}

# Result bodies longer than this are cut in the console only.
_PREVIEW_CHARS = 800


class Console:
    """Styled console output.

    Provides:
    - Semantic message styles (success, error, warning, info)
    - Per-server MCP status lines
    - Tool results with distinct success, error and cancelled markers
    """

    def __init__(self, rich_console: RichConsole | None = None):
        self._console = rich_console or RichConsole(theme=THEME, highlight=False)

    # ------------------------------------------------------------------ #
    # Basic output
    # ------------------------------------------------------------------ #

    def print(self, message: str = "", style: str | None = None, **kwargs):
        self._console.print(message, style=style, **kwargs)

    def print_dim(self, message: str):
        self._console.print(message, style="dim")

    def print_success(self, message: str):
        self._console.print(f"[success]✓[/success] {escape(message)}")

    def print_error(self, message: str):
        self._console.print(f"[error]✗[/error] {escape(message)}")

    def print_warning(self, message: str):
        self._console.print(f"[warning]![/warning] {escape(message)}")

    def print_info(self, message: str):
        self._console.print(f"[info]→[/info] {escape(message)}")

    def print_header(self, title: str):
        self._console.print()
        self._console.print(f"[accent bold]{escape(title)}[/accent bold]")
        self._console.print()

    # ------------------------------------------------------------------ #
    # MCP status
    # ------------------------------------------------------------------ #

    def print_init_result(self, result: "MCPInitResult"):
        """One line per server as it finishes connecting."""
        if result.success:
            self.print_success(f"{result.server_name}: connected ({result.tool_count} tools)")
        else:
            self.print_error(f"{result.server_name}: {result.error or 'failed'}")

    def print_mcp_status(self, statuses: Iterable["MCPServerConnection"]):
        statuses = list(statuses)
        if not statuses:
            self.print_dim("No MCP servers configured.")
            return
        for state in statuses:
            status = getattr(state.status, "value", state.status)
            style, marker = _STATUS_MARKERS.get(status, ("dim", "?"))
            line = f"  [{style}]{marker}[/{style}] {escape(state.name)} [muted]({state.transport})[/muted]"
            if status == "connected":
                line += f" [dim]{len(state.tools_offered)} tools[/dim]"
            elif state.error_message:
                line += f" [error]{escape(state.error_message)}[/error]"
            self._console.print(line)

    # ------------------------------------------------------------------ #
    # Tool results
    # ------------------------------------------------------------------ #

    def print_tool_result(self, result: "ToolResult", display: str | None = None):
        """Render a result.  Cancelled and rejected get their own markers."""
        title = escape(display or result.name)
        if result.cancelled:
            self._console.print(f"[cancelled]⊘[/cancelled] [tool]{title}[/tool] [cancelled]cancelled[/cancelled]")
            return
        if result.content == REJECTED_MESSAGE:
            self._console.print(f"[warning]![/warning] [tool]{title}[/tool] [warning]rejected[/warning]")
            return
        if result.is_error:
            self._console.print(f"[error]✗[/error] [tool]{title}[/tool]")
            self._console.print(f"    [error]{escape(result.content or '')}[/error]")
            return

        self._console.print(f"[success]✓[/success] [tool]{title}[/tool]")
        body = result.content or ""
        if body.strip():
            if len(body) > _PREVIEW_CHARS:
                body = body[:_PREVIEW_CHARS] + "\n...(truncated)"
            self._console.print(f"[dim]{escape(body)}[/dim]")

    def print_mode(self, mode: "ApprovalMode"):
        self.print_info(f"Approval mode: {mode.value}")

    def panel(self, content: str, title: str | None = None, border_style: str = "prompt.border"):
        self._console.print(Panel(content, title=title, border_style=border_style, padding=(0, 1)))

    @property
    def raw(self) -> RichConsole:
        """Access the underlying Rich console for advanced usage."""
        return self._console


class ApprovalPrompt:
    """Interactive confirmation for calls the approval policy holds back.

    Pass :meth:`__call__` (or the instance) as the coordinator's approval
    callback.  Answers: ``y`` approve, ``n`` reject, ``a`` approve all
    remaining, ``r`` reject all remaining.  EOF and Ctrl+C reject.
    """

    QUESTION = "Run this tool? [y]es / [n]o / [a]ll / [r]eject all: "

    def __init__(self, console: Console | None = None, session: PromptSession | None = None):
        self._console = console or Console()
        self._session = session or PromptSession(style=PT_STYLE)

    def __call__(self, request: "ApprovalRequest") -> None:
        self._render(request)
        while True:
            try:
                answer = self._session.prompt(self.QUESTION).strip().lower()
            except (EOFError, KeyboardInterrupt):
                request.reject()
                return
            if answer in ("y", "yes"):
                request.approve()
            elif answer in ("n", "no", ""):
                request.reject()
            elif answer in ("a", "all"):
                request.approve_all()
            elif answer in ("r", "reject all"):
                request.reject_all()
            else:
                self._console.print_warning("Please answer y, n, a or r.")
                continue
            return

    def _render(self, request: "ApprovalRequest"):
        args = json.dumps(request.call.arguments, indent=2, ensure_ascii=False, default=str)
        body = escape(request.display) + "\n\n" if request.display else ""
        body += escape(args)
        title = f"{request.call.name} [dim]({request.mode.value} mode)[/dim]"
        self._console.panel(body, title=title)
        if request.pending:
            self._console.print_dim(f"{len(request.pending)} more call(s) queued in this batch.")

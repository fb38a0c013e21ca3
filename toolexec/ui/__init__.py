"""Terminal UI for toolexec hosts.

Provides Rich-based console output with:
- Per-server MCP status lines
- Tool results with success, error and cancelled markers
- An interactive approval prompt (prompt_toolkit)
"""

from toolexec.ui.console import ApprovalPrompt, Console

__all__ = ["ApprovalPrompt", "Console"]

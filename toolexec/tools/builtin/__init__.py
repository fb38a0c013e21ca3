"""Built-in tools shipped with toolexec."""

from __future__ import annotations

from pathlib import Path

from toolexec.approval import ApprovalPolicy
from toolexec.tools.base import ToolEntry
from toolexec.tools.builtin.bash import BashTool
from toolexec.tools.builtin.file_tools import FileTools
from toolexec.tools.builtin.switch_mode import create_switch_mode_tool


def create_builtin_tools(
    project_dir: str | Path,
    policy: ApprovalPolicy,
    bash_timeout: float = 120,
    max_read_bytes: int = 256 * 1024,
) -> list[ToolEntry]:
    """Every built-in tool, bound to *project_dir* and *policy*."""
    return [
        *FileTools(project_dir, max_read_bytes=max_read_bytes).entries(),
        BashTool(project_dir, default_timeout=bash_timeout).entry(),
        create_switch_mode_tool(policy),
    ]


__all__ = [
    "BashTool",
    "FileTools",
    "create_builtin_tools",
    "create_switch_mode_tool",
]

"""Built-in ``execute_bash`` tool.

The command runs in the project directory.  While it runs the handler
polls the cancellation token; on cancellation or timeout the whole
process tree is killed with psutil so no grandchild outlives the call.
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from toolexec.approval import mutating_approval
from toolexec.errors import ToolCancelledError, ToolHandlerError
from toolexec.process import kill_process_tree
from toolexec.tools.base import LocalHandler, ToolEntry, ValidationResult

logger = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1
_MAX_OUTPUT_CHARS = 30_000


class BashTool:
    """Shell command execution bound to a working directory."""

    def __init__(self, cwd: str | Path, default_timeout: float = 120):
        self.cwd = Path(cwd)
        self.default_timeout = default_timeout

    def execute(self, arguments: dict, token=None) -> str:
        command = arguments.get("command", "")
        timeout = float(arguments.get("timeout") or self.default_timeout)

        logger.debug("Running command: %s", command)
        proc = subprocess.Popen(
            command,
            shell=True,
            cwd=str(self.cwd),
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            stdin=subprocess.DEVNULL,
            text=True,
            errors="replace",
        )

        elapsed = 0.0
        while True:
            try:
                stdout, _ = proc.communicate(timeout=_POLL_INTERVAL)
                break
            except subprocess.TimeoutExpired:
                elapsed += _POLL_INTERVAL
                if token is not None and token.cancelled:
                    logger.info("Command cancelled, killing process tree %d", proc.pid)
                    kill_process_tree(proc.pid)
                    proc.communicate()
                    raise ToolCancelledError()
                if elapsed >= timeout:
                    kill_process_tree(proc.pid)
                    proc.communicate()
                    raise ToolHandlerError(f"Command timed out after {timeout:g}s")

        output = stdout or ""
        if len(output) > _MAX_OUTPUT_CHARS:
            output = output[:_MAX_OUTPUT_CHARS] + "\n...(truncated)"
        if proc.returncode != 0:
            return f"{output.rstrip()}\n[exit code {proc.returncode}]".lstrip()
        return output

    @staticmethod
    def validate(arguments: dict) -> ValidationResult:
        command = arguments.get("command")
        if not isinstance(command, str) or not command.strip():
            return ValidationResult.fail("Missing required argument: command")
        return ValidationResult.ok()

    def entry(self) -> ToolEntry:
        return ToolEntry(
            name="execute_bash",
            handler=LocalHandler(self.execute),
            description="Run a shell command in the project directory and return its output.",
            input_schema={
                "type": "object",
                "properties": {
                    "command": {"type": "string", "description": "The command to run"},
                    "timeout": {"type": "number", "description": "Timeout in seconds"},
                },
                "required": ["command"],
            },
            needs_approval=mutating_approval,
            formatter=lambda arguments, result: f"$ {arguments.get('command', '')}",
            validator=self.validate,
        )

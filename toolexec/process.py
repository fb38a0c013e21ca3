"""Subprocess helpers shared by execute_bash and stdio MCP servers."""

from __future__ import annotations

import logging
import shutil

import psutil

logger = logging.getLogger(__name__)

# Shown when a stdio server's launcher is not on PATH.
INSTALL_HINTS = {
    "npx": "Install Node.js (which provides npx) from https://nodejs.org/",
    "node": "Install Node.js from https://nodejs.org/",
    "bunx": "Install Bun from https://bun.sh/",
    "deno": "Install Deno from https://deno.com/",
    "uvx": "Install uv (which provides uvx) from https://docs.astral.sh/uv/",
    "uv": "Install uv from https://docs.astral.sh/uv/",
    "pipx": "Install pipx with 'python -m pip install --user pipx'",
    "python": "Install Python from https://www.python.org/",
    "python3": "Install Python from https://www.python.org/",
    "docker": "Install Docker from https://docs.docker.com/get-docker/",
}


def kill_process_tree(pid: int, timeout: float = 5) -> None:
    """Kill *pid* and all of its descendants, then reap them."""
    try:
        parent = psutil.Process(pid)
        procs = parent.children(recursive=True) + [parent]
    except psutil.NoSuchProcess:
        return
    for proc in procs:
        try:
            proc.kill()
        except psutil.NoSuchProcess:
            continue
    _gone, alive = psutil.wait_procs(procs, timeout=timeout)
    if alive:
        logger.warning("Processes still alive after kill: %s", [p.pid for p in alive])


def find_command(command: str) -> str | None:
    """Locate *command* on PATH (or as a path)."""
    return shutil.which(command)


def missing_command_message(command: str) -> str:
    message = f"Command not found: {command}"
    hint = INSTALL_HINTS.get(command)
    if hint:
        message += f". {hint}"
    return message

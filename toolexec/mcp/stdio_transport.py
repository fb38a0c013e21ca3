"""stdio transport: a subprocess speaking newline-delimited JSON-RPC."""

from __future__ import annotations

import json
import os
import subprocess
import threading
from typing import TYPE_CHECKING

from toolexec.errors import MCPConnectionError
from toolexec.mcp.base import Connection, ResponseRouter, Transport, wait_for_response
from toolexec.process import kill_process_tree

if TYPE_CHECKING:
    from toolexec.cancellation import CancellationToken

# Seconds to wait for a clean exit after stdin closes.
_EXIT_GRACE = 2.0


class StdioConnection(Connection):
    """Spawns the server and talks to it over stdin/stdout.

    A reader thread routes responses to waiting callers and answers
    server-initiated requests; a second thread drains stderr into the
    server's logger.
    """

    transport = Transport.STDIO.value

    def __init__(self, config, **kwargs):
        super().__init__(config, **kwargs)
        self._process: subprocess.Popen | None = None
        self._router = ResponseRouter(self.name)
        self._write_lock = threading.Lock()
        self._reader: threading.Thread | None = None
        self._stderr_reader: threading.Thread | None = None

    def _open(self, timeout: float) -> None:
        if not self.config.command:
            raise MCPConnectionError("stdio transport requires a command", self.name)

        env = {**os.environ, **self.config.env}
        try:
            self._process = subprocess.Popen(
                [self.config.command, *self.config.args],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=env,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
            )
        except OSError as exc:
            raise MCPConnectionError(f"Failed to start '{self.config.command}': {exc}", self.name) from exc

        self._reader = threading.Thread(target=self._read_stdout, name=f"mcp-{self.name}-stdout", daemon=True)
        self._stderr_reader = threading.Thread(target=self._read_stderr, name=f"mcp-{self.name}-stderr", daemon=True)
        self._reader.start()
        self._stderr_reader.start()

    def _send_request(self, message: dict, timeout: float | None, token: "CancellationToken | None") -> dict:
        future = self._router.register(message["id"])
        try:
            self._write(message)
            return wait_for_response(future, timeout, token, message["method"], self.name)
        finally:
            self._router.discard(message["id"])

    def _send_notification(self, message: dict) -> None:
        self._write(message)

    def _close(self) -> None:
        process = self._process
        self._router.fail_all(MCPConnectionError(f"MCP server '{self.name}' is closed", self.name))
        if process is None:
            return
        try:
            if process.stdin:
                process.stdin.close()
        except OSError:
            pass
        try:
            process.wait(timeout=_EXIT_GRACE)
        except subprocess.TimeoutExpired:
            self.logger.debug("Server did not exit, killing process tree %d", process.pid)
            kill_process_tree(process.pid)
        for stream in (process.stdout, process.stderr):
            if stream:
                stream.close()

    # ------------------------------------------------------------------ #
    # Internal
    # ------------------------------------------------------------------ #

    def _write(self, message: dict) -> None:
        process = self._process
        if process is None or process.stdin is None or process.poll() is not None:
            raise MCPConnectionError(f"MCP server '{self.name}' process is not running", self.name)
        line = json.dumps(message, ensure_ascii=False) + "\n"
        with self._write_lock:
            try:
                process.stdin.write(line)
                process.stdin.flush()
            except (BrokenPipeError, OSError, ValueError) as exc:
                raise MCPConnectionError(f"Failed to write to MCP server '{self.name}': {exc}", self.name) from exc

    def _read_stdout(self) -> None:
        process = self._process
        try:
            for line in process.stdout:
                line = line.strip()
                if not line:
                    continue
                try:
                    message = json.loads(line)
                except ValueError:
                    self.logger.debug("Ignoring non-JSON output: %s", line[:200])
                    continue
                self._dispatch(message)
        except (OSError, ValueError) as exc:
            self.logger.debug("stdout reader stopped: %s", exc)
        finally:
            code = process.poll()
            self._router.fail_all(MCPConnectionError(
                f"MCP server '{self.name}' exited" + (f" with code {code}" if code is not None else ""),
                self.name,
            ))

    def _read_stderr(self) -> None:
        try:
            for line in self._process.stderr:
                if line.strip():
                    self.logger.debug("stderr: %s", line.rstrip())
        except (OSError, ValueError):
            return

    def _dispatch(self, message: dict) -> None:
        if not isinstance(message, dict):
            return
        if "method" in message:
            if "id" in message:
                try:
                    self._write(self.handle_server_request(message))
                except MCPConnectionError as exc:
                    self.logger.debug("Could not answer %s: %s", message.get("method"), exc)
            else:
                self.logger.debug("Notification from server: %s", message.get("method"))
            return
        if not self._router.deliver(message):
            self.logger.debug("Dropping response for unknown request id %s", message.get("id"))

"""Approval mode state machine.

One :class:`ApprovalPolicy` instance is shared by the coordinator, the
``switch_mode`` tool and the MCP approval predicates.  Writes are applied
under a lock before any listener runs, so an approval check issued right
after :meth:`ApprovalPolicy.set_mode` returns always sees the new mode.

Modes:

- ``normal``      -- a tool asks for confirmation when its own
  ``needs_approval`` says so.
- ``auto-accept`` -- nothing asks for confirmation.
- ``plan``        -- read-only tools run freely; every mutating tool asks,
  whatever its own predicate says.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import TYPE_CHECKING, Any, Callable, Iterable

from knack.util import CLIError

if TYPE_CHECKING:
    from toolexec.tools.base import ToolEntry

logger = logging.getLogger(__name__)


class ApprovalMode(str, Enum):
    NORMAL = "normal"
    AUTO_ACCEPT = "auto-accept"
    PLAN = "plan"

    @classmethod
    def parse(cls, value: "ApprovalMode | str") -> "ApprovalMode":
        """Coerce a user-supplied string (``auto_accept`` is accepted too)."""
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("_", "-")
        for mode in cls:
            if mode.value == normalized:
                return mode
        raise CLIError(
            f"Unknown approval mode: '{value}'.\n"
            f"Supported modes: {', '.join(m.value for m in cls)}"
        )


_CYCLE = {
    ApprovalMode.NORMAL: ApprovalMode.AUTO_ACCEPT,
    ApprovalMode.AUTO_ACCEPT: ApprovalMode.PLAN,
    ApprovalMode.PLAN: ApprovalMode.NORMAL,
}

ModeListener = Callable[[ApprovalMode, ApprovalMode], None]


class ApprovalPolicy:
    """Process-wide approval mode with synchronous reads and writes."""

    def __init__(self, mode: ApprovalMode | str = ApprovalMode.NORMAL):
        self._mode = ApprovalMode.parse(mode)
        self._lock = threading.Lock()
        self._listeners: list[ModeListener] = []

    # ------------------------------------------------------------------ #
    # Mode state
    # ------------------------------------------------------------------ #

    def get_mode(self) -> ApprovalMode:
        with self._lock:
            return self._mode

    @property
    def mode(self) -> ApprovalMode:
        return self.get_mode()

    def set_mode(self, mode: ApprovalMode | str) -> ApprovalMode:
        """Switch modes.  Returns the previous mode.

        Listeners are notified after the write is visible, with
        ``(old, new)``.  A listener that raises is logged and skipped.
        """
        new_mode = ApprovalMode.parse(mode)
        with self._lock:
            old_mode = self._mode
            self._mode = new_mode
            listeners = list(self._listeners)

        if old_mode != new_mode:
            logger.info("Approval mode changed: %s -> %s", old_mode.value, new_mode.value)
            for listener in listeners:
                try:
                    listener(old_mode, new_mode)
                except Exception as exc:
                    logger.warning("Approval mode listener failed: %s", exc)
        return old_mode

    def cycle_mode(self) -> ApprovalMode:
        """Advance ``normal -> auto-accept -> plan -> normal``.  Returns the new mode."""
        with self._lock:
            next_mode = _CYCLE[self._mode]
        self.set_mode(next_mode)
        return next_mode

    def subscribe(self, listener: ModeListener) -> Callable[[], None]:
        """Register a mode-change listener.  Returns an unsubscribe function."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------ #
    # Approval checks
    # ------------------------------------------------------------------ #

    def requires_approval(self, entry: "ToolEntry", arguments: dict[str, Any] | None = None) -> bool:
        """Whether *entry* must be confirmed before running with *arguments*."""
        mode = self.get_mode()
        if mode is ApprovalMode.AUTO_ACCEPT:
            return False
        if mode is ApprovalMode.PLAN and not entry.read_only:
            return True

        needs_approval = entry.needs_approval
        if callable(needs_approval):
            return bool(needs_approval(arguments or {}, mode))
        return bool(needs_approval)


# ------------------------------------------------------------------ #
# needs_approval predicates for tool entries
# ------------------------------------------------------------------ #


def read_only_approval(arguments: dict[str, Any], mode: ApprovalMode) -> bool:
    return False


def mutating_approval(arguments: dict[str, Any], mode: ApprovalMode) -> bool:
    return mode is not ApprovalMode.AUTO_ACCEPT


def remote_approval(remote_name: str, always_allow: Iterable[str] = ()) -> Callable[[dict, ApprovalMode], bool]:
    """Predicate for an MCP tool, honouring the server's ``alwaysAllow`` list."""
    allowed = remote_name in set(always_allow)

    def _needs_approval(arguments: dict[str, Any], mode: ApprovalMode) -> bool:
        if allowed:
            return False
        return mode is not ApprovalMode.AUTO_ACCEPT

    return _needs_approval

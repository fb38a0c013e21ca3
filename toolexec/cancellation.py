"""Cooperative cancellation shared by the model call and every tool handler."""

from __future__ import annotations

import logging
import threading
from typing import Callable

from toolexec.errors import ToolCancelledError

logger = logging.getLogger(__name__)


class CancellationToken:
    """A one-shot cancellation signal.

    Wraps a :class:`threading.Event`.  Handlers either poll
    :attr:`cancelled`, block on :meth:`wait`, or register a callback via
    :meth:`on_cancel` to tear down resources (e.g. kill a subprocess) the
    moment the user aborts.
    """

    def __init__(self):
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: list[Callable[[], None]] = []
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str | None = None) -> None:
        """Fire the signal.  Idempotent; callbacks run once."""
        with self._lock:
            if self._event.is_set():
                return
            self.reason = reason
            self._event.set()
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        for callback in callbacks:
            try:
                callback()
            except Exception as exc:
                logger.warning("Cancellation callback failed: %s", exc)

    def on_cancel(self, callback: Callable[[], None]) -> Callable[[], None]:
        """Register *callback* to run on cancellation.

        If the token is already cancelled the callback runs immediately.
        Returns a function that unregisters the callback.
        """
        with self._lock:
            if not self._event.is_set():
                self._callbacks.append(callback)

                def _remove() -> None:
                    with self._lock:
                        if callback in self._callbacks:
                            self._callbacks.remove(callback)

                return _remove

        callback()
        return lambda: None

    def wait(self, timeout: float | None = None) -> bool:
        """Block until cancelled or *timeout* elapses.  Returns ``cancelled``."""
        return self._event.wait(timeout)

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise ToolCancelledError()

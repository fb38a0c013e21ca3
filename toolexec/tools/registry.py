"""Tool registry -- one name-keyed table for built-in and MCP tools.

Entries are immutable, and every mutation swaps entry objects under a
lock, so a reader sees either the old or the new entry for a name and
never a mix.  Name collisions resolve last-registered-wins; when the
winner comes from a different source the loser is kept aside and comes
back if the winner's server later withdraws its tools.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterable, Mapping

from toolexec.errors import RegistryCorruptionError
from toolexec.tools.base import (
    Formatter,
    LocalHandler,
    RemoteHandler,
    ToolEntry,
    ToolHandler,
    Validator,
)

logger = logging.getLogger(__name__)


class ToolRegistry:
    """Thread-safe table of :class:`ToolEntry` keyed by tool name."""

    def __init__(self, entries: Iterable[ToolEntry] | None = None):
        self._entries: dict[str, ToolEntry] = {}
        self._shadowed: dict[str, ToolEntry] = {}
        self._lock = threading.RLock()
        if entries:
            self.register_many(entries)

    @classmethod
    def from_registries(
        cls,
        handlers: Mapping[str, "ToolHandler | Callable"],
        tools: Mapping[str, dict],
        formatters: Mapping[str, Formatter] | None = None,
        validators: Mapping[str, Validator] | None = None,
    ) -> "ToolRegistry":
        """Build a registry from parallel name-keyed maps.

        *tools* maps names to descriptors (``description``,
        ``input_schema`` or ``parameters``, ``needs_approval``,
        ``read_only``).  A descriptor without a matching handler is
        skipped.  Plain callables in *handlers* become :class:`LocalHandler`.
        """
        formatters = formatters or {}
        validators = validators or {}
        entries: list[ToolEntry] = []

        for name, descriptor in tools.items():
            handler = handlers.get(name)
            if handler is None:
                logger.debug("Skipping tool '%s': no handler registered", name)
                continue
            if not isinstance(handler, (LocalHandler, RemoteHandler)):
                handler = LocalHandler(handler)
            descriptor = descriptor or {}
            entries.append(ToolEntry(
                name=name,
                handler=handler,
                input_schema=descriptor.get("input_schema")
                or descriptor.get("parameters")
                or {"type": "object", "properties": {}},
                description=descriptor.get("description", ""),
                needs_approval=descriptor.get("needs_approval", True),
                formatter=formatters.get(name),
                validator=validators.get(name),
                read_only=bool(descriptor.get("read_only", False)),
            ))

        return cls(entries)

    # ------------------------------------------------------------------ #
    # Mutation
    # ------------------------------------------------------------------ #

    def register(self, entry: ToolEntry) -> None:
        """Add *entry*, replacing any entry with the same name."""
        _check_entry(entry)
        with self._lock:
            self._put(entry)

    def register_many(self, entries: Iterable[ToolEntry]) -> None:
        """Add several entries at once.

        All entries are checked before any is applied; an invalid entry
        leaves the registry untouched.
        """
        batch = list(entries)
        for entry in batch:
            _check_entry(entry)
        with self._lock:
            for entry in batch:
                self._put(entry)

    def unregister(self, name: str) -> bool:
        """Remove *name*.  Returns True if it was registered."""
        with self._lock:
            self._shadowed.pop(name, None)
            removed = self._entries.pop(name, None)
        if removed is not None:
            logger.debug("Unregistered tool: %s", name)
        return removed is not None

    def unregister_many(self, names: Iterable[str]) -> int:
        """Remove several names.  Returns how many were registered."""
        with self._lock:
            return sum(1 for name in list(names) if self.unregister(name))

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
            self._shadowed.clear()

    def replace_server_tools(self, server_name: str, entries: Iterable[ToolEntry]) -> None:
        """Swap every entry owned by *server_name* for *entries* in one step.

        Passing no entries simply withdraws the server's tools, restoring
        whatever they had shadowed.
        """
        batch = list(entries)
        for entry in batch:
            _check_entry(entry)
            if entry.source != server_name:
                raise ValueError(
                    f"Tool '{entry.name}' belongs to '{entry.source}', not '{server_name}'"
                )

        with self._lock:
            self._drop_source(server_name)
            for entry in batch:
                self._put(entry)

        logger.debug("Registered %d tool(s) for MCP server '%s'", len(batch), server_name)

    # ------------------------------------------------------------------ #
    # Reads
    # ------------------------------------------------------------------ #

    def get_entry(self, name: str) -> ToolEntry | None:
        with self._lock:
            entry = self._entries.get(name)
        if entry is not None and entry.name != name:
            raise RegistryCorruptionError(
                f"Registry slot '{name}' holds an entry named '{entry.name}'"
            )
        return entry

    def get_handler(self, name: str) -> ToolHandler | None:
        entry = self.get_entry(name)
        return entry.handler if entry else None

    def get_formatter(self, name: str) -> Formatter | None:
        entry = self.get_entry(name)
        return entry.formatter if entry else None

    def get_validator(self, name: str) -> Validator | None:
        entry = self.get_entry(name)
        return entry.validator if entry else None

    def has_tool(self, name: str) -> bool:
        with self._lock:
            return name in self._entries

    def get_all_entries(self) -> list[ToolEntry]:
        with self._lock:
            return list(self._entries.values())

    def get_tool_names(self) -> list[str]:
        with self._lock:
            return list(self._entries)

    def get_tool_count(self) -> int:
        with self._lock:
            return len(self._entries)

    def get_handlers(self) -> dict[str, ToolHandler]:
        with self._lock:
            return {name: e.handler for name, e in self._entries.items()}

    def get_formatters(self) -> dict[str, Formatter]:
        with self._lock:
            return {name: e.formatter for name, e in self._entries.items() if e.formatter}

    def get_validators(self) -> dict[str, Validator]:
        with self._lock:
            return {name: e.validator for name, e in self._entries.items() if e.validator}

    def get_server_entries(self, server_name: str) -> list[ToolEntry]:
        with self._lock:
            return [e for e in self._entries.values() if e.source == server_name]

    def to_openai_schema(self) -> list[dict]:
        """All tools as OpenAI function-calling definitions."""
        return [entry.to_openai_schema() for entry in self.get_all_entries()]

    def __len__(self) -> int:
        return self.get_tool_count()

    def __contains__(self, name: Any) -> bool:
        return self.has_tool(name)

    # ------------------------------------------------------------------ #
    # Internal (caller holds the lock)
    # ------------------------------------------------------------------ #

    def _put(self, entry: ToolEntry) -> None:
        existing = self._entries.get(entry.name)
        if existing is not None and existing.source != entry.source:
            logger.warning(
                "Tool name collision: '%s' from '%s' replaces the one from '%s'",
                entry.name, entry.source, existing.source,
            )
            self._shadowed[entry.name] = existing
        self._entries[entry.name] = entry

    def _drop_source(self, source: str) -> None:
        for name in [n for n, e in self._shadowed.items() if e.source == source]:
            del self._shadowed[name]
        for name in [n for n, e in self._entries.items() if e.source == source]:
            del self._entries[name]
            restored = self._shadowed.pop(name, None)
            if restored is not None:
                logger.debug("Restoring tool '%s' from '%s'", name, restored.source)
                self._entries[name] = restored


def _check_entry(entry: Any) -> None:
    if not isinstance(entry, ToolEntry):
        raise TypeError(f"Expected ToolEntry, got {type(entry).__name__}")
    if not entry.name:
        raise ValueError("Tool entry must have a name")
    if not isinstance(entry.handler, (LocalHandler, RemoteHandler)):
        raise TypeError(f"Tool '{entry.name}' has no invocable handler")

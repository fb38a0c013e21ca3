"""Normalise tool-call arguments that may arrive as JSON strings."""

from __future__ import annotations

import json
from typing import Any


def parse_tool_arguments(arguments: Any, *, strict: bool = False) -> Any:
    """Return *arguments* as a Python value.

    Native function-calling APIs deliver arguments as a JSON string while
    text-extracted calls already carry a dict.  In lenient mode (default)
    a string that fails to parse is returned unchanged; in strict mode a
    :class:`ValueError` is raised instead.
    """
    if not isinstance(arguments, str):
        return arguments
    try:
        return json.loads(arguments)
    except json.JSONDecodeError as exc:
        if strict:
            raise ValueError(f"Failed to parse tool arguments: {exc.msg}") from exc
        return arguments


def canonical_arguments(arguments: Any) -> str:
    """Stable serialisation used for call deduplication."""
    try:
        return json.dumps(arguments, sort_keys=True, ensure_ascii=False, separators=(",", ":"))
    except (TypeError, ValueError):
        return repr(arguments)

"""Turn handler return values and raised values into result text."""

from __future__ import annotations

import json
from typing import Any

from toolexec.errors import ToolHandlerError

ERROR_PREFIX = "Error: "


def format_error(value: Any) -> str:
    """Best-effort message for anything a handler raised or reported.

    Exceptions give their message (or class name when empty), strings
    pass through, containers are JSON-encoded and other objects use
    ``str``.  Never raises.
    """
    try:
        if isinstance(value, ToolHandlerError) and value.original is not None:
            return format_error(value.original)
        if isinstance(value, BaseException):
            return str(value) or type(value).__name__
        if value is None:
            return "Unknown error"
        if isinstance(value, str):
            return value or "Unknown error"
        if isinstance(value, (dict, list, tuple)):
            if isinstance(value, dict) and isinstance(value.get("message"), str):
                return value["message"]
            return json.dumps(value, ensure_ascii=False, default=str)
        return str(value)
    except Exception:
        return f"<unprintable {type(value).__name__}>"


def error_content(value: Any) -> str:
    return ERROR_PREFIX + format_error(value)


def stringify_result(value: Any) -> str | None:
    """Result content for a successful handler return.

    ``None`` stays ``None`` (a void result); strings pass through;
    containers are JSON-encoded.
    """
    if value is None or isinstance(value, str):
        return value
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    if isinstance(value, (dict, list, tuple, int, float, bool)):
        return json.dumps(value, ensure_ascii=False, default=str)
    return str(value)

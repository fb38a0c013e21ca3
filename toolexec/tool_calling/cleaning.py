"""Helpers for removing parsed tool calls from display text."""

from __future__ import annotations

import re
from typing import Callable

# A fenced block with an optional info-string.  Group 1 is the body.
FENCE_RE = re.compile(r"```[\w+-]*[ \t]*\n?(.*?)\n?[ \t]*```", re.DOTALL)

_TRAILING_WS_RE = re.compile(r"[ \t]+$", re.MULTILINE)
_BLANK_RUN_RE = re.compile(r"\n{3,}")


def remove_spans(content: str, spans: list[tuple[int, int]]) -> str:
    """Delete the ``(start, end)`` ranges from *content*.

    Spans may be given in any order; overlapping spans are merged.
    """
    if not spans:
        return content
    pieces: list[str] = []
    cursor = 0
    for start, end in sorted(spans):
        if end <= cursor:
            continue
        start = max(start, cursor)
        pieces.append(content[cursor:start])
        cursor = end
    pieces.append(content[cursor:])
    return "".join(pieces)


def strip_call_only_fences(content: str, strip_calls: Callable[[str], str]) -> str:
    """Drop fenced blocks whose body consists only of tool calls.

    *strip_calls* removes the tool calls from a fence body.  A fence is
    dropped when the body had content and nothing but whitespace remains
    after stripping; every other fence is kept verbatim.
    """

    def _replace(match: re.Match) -> str:
        body = match.group(1)
        if body.strip() and not strip_calls(body).strip():
            return ""
        return match.group(0)

    return FENCE_RE.sub(_replace, content)


def tidy_whitespace(content: str) -> str:
    """Normalise whitespace left behind by removed calls.

    Trailing per-line whitespace is trimmed, runs of three or more
    newlines collapse to a single blank line, and the result is stripped.
    """
    cleaned = _TRAILING_WS_RE.sub("", content)
    cleaned = _BLANK_RUN_RE.sub("\n\n", cleaned)
    return cleaned.strip()

"""Parse JSON-encoded tool calls of the shape ``{"name": ..., "arguments": {...}}``.

Candidates are checked in order of how explicit the model was:

1. the entire trimmed content is one JSON object,
2. the body of a Markdown code fence,
3. multi-line JSON objects embedded in prose,
4. single-line (inline) JSON objects embedded in prose.

Objects are located with :meth:`json.JSONDecoder.raw_decode` so nested
argument objects and braces inside strings parse correctly, unlike a
regex over ``{...}``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Iterator

from toolexec.tool_calling.cleaning import FENCE_RE, remove_spans, strip_call_only_fences, tidy_whitespace
from toolexec.tool_calling.models import ParseError

logger = logging.getLogger(__name__)

_decoder = json.JSONDecoder()

# Keys a tool-call-shaped object may carry.  Objects with other keys are
# ordinary data, not near-miss calls.
_CALL_KEYS = frozenset({"name", "arguments", "id", "type"})

JSON_FORMAT_EXAMPLES = (
    "Correct format:\n"
    '{"name": "read_file", "arguments": {"path": "src/app.py"}}\n'
    '"name" must be the tool name and "arguments" must be an object '
    "mapping parameter names to values."
)


@dataclass
class JsonMatch:
    """A JSON tool call and its span in the original content."""

    name: str
    arguments: dict[str, Any]
    start: int
    end: int
    source: str  # "content" | "fence" | "multiline" | "inline"


def iter_json_objects(text: str, offset: int = 0) -> Iterator[tuple[int, int, dict]]:
    """Yield ``(start, end, obj)`` for each top-level JSON object in *text*.

    Positions are shifted by *offset*.  Text between objects is skipped;
    a ``{`` that does not begin a valid object is ignored.
    """
    pos = 0
    while True:
        start = text.find("{", pos)
        if start < 0:
            return
        try:
            obj, end = _decoder.raw_decode(text, start)
        except ValueError:
            pos = start + 1
            continue
        if isinstance(obj, dict):
            yield offset + start, offset + end, obj
            pos = end
        else:
            pos = start + 1


def is_tool_call(obj: Any) -> bool:
    return (
        isinstance(obj, dict)
        and isinstance(obj.get("name"), str)
        and bool(obj["name"])
        and isinstance(obj.get("arguments"), dict)
    )


def find_json_calls(content: str) -> list[JsonMatch]:
    """Return JSON tool calls in *content*, ordered by position."""
    trimmed = content.strip()
    if trimmed.startswith("{") and trimmed.endswith("}"):
        try:
            whole = json.loads(trimmed)
        except ValueError:
            whole = None
        if is_tool_call(whole):
            start = content.index(trimmed)
            return [_match(whole, start, start + len(trimmed), "content")]

    matches: list[JsonMatch] = []
    fenced: list[tuple[int, int]] = []

    for fence in FENCE_RE.finditer(content):
        fenced.append((fence.start(), fence.end()))
        for start, end, obj in iter_json_objects(fence.group(1), fence.start(1)):
            if is_tool_call(obj):
                matches.append(_match(obj, start, end, "fence"))

    prose_spans = _complement(fenced, len(content))
    for prose_start, prose_end in prose_spans:
        for start, end, obj in iter_json_objects(content[prose_start:prose_end], prose_start):
            if not is_tool_call(obj):
                continue
            source = "multiline" if "\n" in content[start:end] else "inline"
            matches.append(_match(obj, start, end, source))

    matches.sort(key=lambda m: m.start)
    return matches


def remove_json_calls(content: str) -> str:
    """Strip JSON calls and call-only fences, then tidy whitespace."""
    text = strip_call_only_fences(content, _strip_calls)
    text = _strip_calls(text)
    return tidy_whitespace(text)


def detect_malformed_json_call(content: str) -> ParseError | None:
    """Spot call-shaped JSON objects that are missing pieces."""
    for _start, _end, obj in iter_json_objects(content):
        if not set(obj) <= _CALL_KEYS:
            continue
        has_name = "name" in obj
        has_arguments = "arguments" in obj
        if has_name and not has_arguments:
            error = 'Invalid tool call: missing "arguments" field'
        elif has_arguments and not has_name:
            error = 'Invalid tool call: missing "name" field'
        elif has_arguments and isinstance(obj["arguments"], str):
            error = 'Invalid tool call: "arguments" must be an object, not a string'
        else:
            continue
        logger.debug("Malformed JSON tool call detected: %s", error)
        return ParseError(error=error, examples=JSON_FORMAT_EXAMPLES)
    return None


# ------------------------------------------------------------------ #
# Internal
# ------------------------------------------------------------------ #


def _match(obj: dict, start: int, end: int, source: str) -> JsonMatch:
    return JsonMatch(name=obj["name"], arguments=obj["arguments"], start=start, end=end, source=source)


def _strip_calls(text: str) -> str:
    spans = [(start, end) for start, end, obj in iter_json_objects(text) if is_tool_call(obj)]
    return remove_spans(text, spans)


def _complement(spans: list[tuple[int, int]], length: int) -> list[tuple[int, int]]:
    """Ranges of ``[0, length)`` not covered by *spans*."""
    result: list[tuple[int, int]] = []
    cursor = 0
    for start, end in sorted(spans):
        if start > cursor:
            result.append((cursor, start))
        cursor = max(cursor, end)
    if cursor < length:
        result.append((cursor, length))
    return result

"""Parse tag-delimited tool calls from models without native function calling.

Expected format::

    <tool_name>
      <param1>value1</param1>
      <param2>value2</param2>
    </tool_name>

Calls may sit inside a Markdown code fence and may be wrapped in
``<tool_call>`` tags.  Parameter values are JSON-decoded when possible
(numbers, booleans, arrays, objects) and otherwise kept as trimmed
strings with their internal whitespace preserved.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from toolexec.tool_calling.cleaning import remove_spans, strip_call_only_fences, tidy_whitespace
from toolexec.tool_calling.models import ParseError

logger = logging.getLogger(__name__)

_TAG_RE = re.compile(r"<([A-Za-z_]\w*)>(.*?)</\1>", re.DOTALL)
_WRAPPER_RE = re.compile(r"</?tool_call>")
_ATTRIBUTE_TAG_RE = re.compile(r"<\w+=")
_NESTED_TAG_RE = re.compile(r"<\w+>")

# Tags that show up in ordinary model prose and are never tool names.
_HTML_TAGS = frozenset({
    "a", "article", "aside", "b", "blockquote", "br", "code", "div", "em",
    "footer", "h1", "h2", "h3", "h4", "h5", "h6", "header", "hr", "i", "img",
    "li", "nav", "ol", "p", "pre", "section", "span", "strong", "table",
    "tbody", "td", "th", "thead", "tr", "u", "ul",
})

_MALFORMED_PATTERNS = [
    (
        re.compile(r"\[(?:tool_use|Tool):\s*(\w+)\]", re.IGNORECASE),
        "Invalid syntax: [tool_use: name] or [Tool: name] format is not supported",
    ),
    (
        re.compile(r"<function=(\w+)>"),
        "Invalid syntax: <function=name> is not supported",
    ),
    (
        re.compile(r"<parameter=(\w+)>"),
        "Invalid syntax: <parameter=name> is not supported",
    ),
]

TAG_FORMAT_EXAMPLES = (
    "Please use the native tool calling format provided by the system, or the tag format:\n"
    "<read_file>\n"
    "  <path>src/app.py</path>\n"
    "</read_file>\n"
    "Each parameter is its own named tag inside the tool tag. "
    "Do not use <function=...> or <parameter=...> attributes."
)


@dataclass
class TagMatch:
    """A validated tag-delimited call and where it sits in the text."""

    name: str
    parameters: dict[str, Any]
    start: int
    end: int


def unwrap(content: str) -> str:
    """Remove ``<tool_call>`` wrapper tags."""
    return _WRAPPER_RE.sub("", content)


def find_tag_calls(content: str) -> list[TagMatch]:
    """Return every valid tag call in *content* (already unwrapped)."""
    matches: list[TagMatch] = []
    for m in _TAG_RE.finditer(content):
        name, inner = m.group(1), m.group(2)
        if not _is_valid_call(name, inner):
            continue
        matches.append(TagMatch(
            name=name,
            parameters=_parse_parameters(inner),
            start=m.start(),
            end=m.end(),
        ))
    return matches


def has_tag_calls(content: str) -> bool:
    return bool(find_tag_calls(unwrap(content)))


def remove_tag_calls(content: str) -> str:
    """Strip tag calls, call-only fences and wrappers, then tidy whitespace."""
    text = unwrap(content)
    text = strip_call_only_fences(text, _strip_calls)
    text = _strip_calls(text)
    return tidy_whitespace(text)


def detect_malformed_tag_call(content: str) -> ParseError | None:
    """Spot attribute-style or bracket-style near misses."""
    for pattern, message in _MALFORMED_PATTERNS:
        if pattern.search(content):
            logger.debug("Malformed tag call detected: %s", message)
            return ParseError(error=message, examples=TAG_FORMAT_EXAMPLES)
    return None


# ------------------------------------------------------------------ #
# Internal
# ------------------------------------------------------------------ #


def _strip_calls(text: str) -> str:
    return remove_spans(text, [(m.start, m.end) for m in find_tag_calls(text)])


def _is_valid_call(name: str, inner: str) -> bool:
    if name == "tool_call" or name.lower() in _HTML_TAGS:
        return False
    if _ATTRIBUTE_TAG_RE.search(inner):
        return False
    # A bare <path>x</path> is a parameter, not a call: real calls carry
    # nested parameter tags or follow the snake_case tool naming convention.
    return bool(_NESTED_TAG_RE.search(inner)) or "_" in name


def _parse_parameters(inner: str) -> dict[str, Any]:
    parameters: dict[str, Any] = {}
    for m in _TAG_RE.finditer(inner):
        value = m.group(2).strip()
        try:
            parameters[m.group(1)] = json.loads(value)
        except ValueError:
            parameters[m.group(1)] = value
    return parameters

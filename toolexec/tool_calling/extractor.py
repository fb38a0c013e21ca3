"""Turn model output into an ordered, de-duplicated list of tool calls.

Two paths:

- **Native** -- the model API already returned structured calls.  They are
  used verbatim and the text is not scanned.
- **Fallback** -- for models without native function calling, the text is
  scanned for tag-delimited calls first, then JSON calls.  When neither
  yields a call, near-miss shapes are reported as a :class:`ParseError`
  so the model can correct itself instead of the turn silently dropping
  the attempt.
"""

from __future__ import annotations

import itertools
import logging
import time
from typing import Any, Iterable

from toolexec.tool_calling import json_parser, xml_parser
from toolexec.tool_calling.arguments import canonical_arguments, parse_tool_arguments
from toolexec.tool_calling.models import ExtractionResult, ParseError, ToolCall

logger = logging.getLogger(__name__)

# Disambiguates IDs minted within the same millisecond across turns.
_turn_counter = itertools.count(1)


def extract_tool_calls(
    content: str | None,
    native_calls: Iterable[Any] | None = None,
) -> ExtractionResult:
    """Extract tool calls from *content*.

    Parameters
    ----------
    content:
        Raw model output text.
    native_calls:
        Calls already provided in structured form by the model API, as
        :class:`ToolCall` objects or OpenAI-style dicts.  When non-empty
        the text is not scanned.

    Returns
    -------
    ExtractionResult
        The ordered calls, the display text with call substrings removed,
        and a :class:`ParseError` when only malformed attempts were found.
    """
    content = content or ""
    native = list(native_calls or [])
    if native:
        return _extract_native(native, content)

    if not content.strip():
        return ExtractionResult(cleaned_content="")

    turn = f"{int(time.time() * 1000)}_{next(_turn_counter)}"

    unwrapped = xml_parser.unwrap(content)
    tag_matches = xml_parser.find_tag_calls(unwrapped)
    if tag_matches:
        calls = [
            ToolCall(id=f"xml_call_{turn}_{index}", name=m.name, arguments=m.parameters)
            for index, m in enumerate(tag_matches)
        ]
        calls = deduplicate_tool_calls(calls)
        logger.debug("Extracted %d tag-delimited tool call(s)", len(calls))
        return ExtractionResult(tool_calls=calls, cleaned_content=xml_parser.remove_tag_calls(content))

    json_matches = json_parser.find_json_calls(content)
    if json_matches:
        calls = [
            ToolCall(id=f"call_{turn}_{index}", name=m.name, arguments=m.arguments)
            for index, m in enumerate(json_matches)
        ]
        calls = deduplicate_tool_calls(calls)
        logger.debug("Extracted %d JSON tool call(s)", len(calls))
        return ExtractionResult(tool_calls=calls, cleaned_content=json_parser.remove_json_calls(content))

    parse_error = xml_parser.detect_malformed_tag_call(content) or json_parser.detect_malformed_json_call(content)
    if parse_error:
        logger.info("Malformed tool call in model output: %s", parse_error.error)
    return ExtractionResult(cleaned_content=content, parse_error=parse_error)


def _extract_native(native: list[Any], content: str) -> ExtractionResult:
    calls: list[ToolCall] = []
    problems: list[str] = []
    for index, raw in enumerate(native):
        try:
            calls.append(normalize_native_call(raw, index))
        except TypeError as exc:
            logger.warning("Dropping native tool call %d: %s", index, exc)
            problems.append(str(exc))

    parse_error = None
    if problems:
        parse_error = ParseError(
            error=f"Invalid tool call: {'; '.join(problems)}",
            examples=json_parser.JSON_FORMAT_EXAMPLES,
        )
    logger.debug("Using %d native tool call(s)", len(calls))
    return ExtractionResult(tool_calls=calls, cleaned_content=content, parse_error=parse_error)


def deduplicate_tool_calls(calls: list[ToolCall]) -> list[ToolCall]:
    """Collapse calls with identical name and arguments, keeping the first."""
    seen: set[tuple[str, str]] = set()
    unique: list[ToolCall] = []
    for call in calls:
        key = (call.name, canonical_arguments(call.arguments))
        if key in seen:
            logger.debug("Dropping duplicate tool call: %s", call.name)
            continue
        seen.add(key)
        unique.append(call)
    return unique


def normalize_native_call(raw: Any, index: int = 0) -> ToolCall:
    """Coerce a natively supplied call into a :class:`ToolCall`.

    Accepts a :class:`ToolCall`, an OpenAI ``{"id", "function": {...}}``
    dict, or a flat ``{"id", "name", "arguments"}`` dict.  String
    arguments are parsed leniently.
    """
    if isinstance(raw, ToolCall):
        return ToolCall(id=raw.id, name=raw.name, arguments=parse_tool_arguments(raw.arguments))

    if not isinstance(raw, dict):
        raise TypeError(f"Unsupported native tool call type: {type(raw).__name__}")

    function = raw.get("function") if isinstance(raw.get("function"), dict) else raw
    arguments = parse_tool_arguments(function.get("arguments", {}))
    if arguments is None:
        arguments = {}
    call_id = str(raw.get("id") or f"call_{int(time.time() * 1000)}_{index}")
    return ToolCall(id=call_id, name=str(function.get("name") or ""), arguments=arguments)

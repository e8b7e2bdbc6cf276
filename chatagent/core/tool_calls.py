"""Tool-call detection in model output (native fields and prompt-embedded JSON)."""

from __future__ import annotations

import json
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional

logger = logging.getLogger(__name__)

# Start of a ``{"tool_call": ...}`` envelope, tolerant of whitespace.
_ENVELOPE_START = re.compile(r'\{\s*"tool_call"\s*:')

# Share of the response's keys that must belong to a tool's schema for the
# key-overlap heuristic to pick that tool.
KEY_OVERLAP_THRESHOLD = 0.7


def new_call_id() -> str:
    """Short random identifier for a model-side tool call."""
    return f"call_{uuid.uuid4().hex[:8]}"


@dataclass
class DetectedToolCall:
    """A tool invocation requested by the model."""

    name: str
    parameters: Dict[str, Any] = field(default_factory=dict)
    call_id: str = field(default_factory=new_call_id)
    heuristic: bool = False


def extract_balanced_json(text: str, start: int) -> Optional[str]:
    """
    Return the JSON object that opens at ``text[start]``.

    Scans forward counting brace depth until the matching closing brace.
    Braces inside string literals are ignored. Returns ``None`` when the
    object is never closed.
    """
    if start < 0 or start >= len(text) or text[start] != "{":
        return None

    depth = 0
    in_string = False
    escaped = False
    for pos in range(start, len(text)):
        ch = text[pos]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start:pos + 1]
    return None


def _schema_keys(parameters: Any) -> List[str]:
    """Parameter names of a tool, from a JSON schema or a flat key map."""
    if not isinstance(parameters, Mapping):
        return []
    properties = parameters.get("properties")
    if parameters.get("type") == "object" and isinstance(properties, Mapping):
        return list(properties.keys())
    return list(parameters.keys())


def _find_envelope(response: str) -> Optional[DetectedToolCall]:
    for match in _ENVELOPE_START.finditer(response):
        candidate = extract_balanced_json(response, match.start())
        if candidate is None:
            logger.debug("Unterminated tool_call envelope at position %d", match.start())
            continue
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError as exc:
            logger.debug("Tool call envelope is not valid JSON: %s", exc)
            continue
        tool_call = payload.get("tool_call") if isinstance(payload, dict) else None
        if not isinstance(tool_call, dict):
            continue
        name = tool_call.get("name")
        if isinstance(name, str) and name:
            parameters = tool_call.get("parameters")
            return DetectedToolCall(name=name, parameters=parameters if isinstance(parameters, dict) else {})
    return None


def _match_bare_json(response: str, tools: Iterable[Mapping[str, Any]]) -> Optional[DetectedToolCall]:
    trimmed = response.strip()
    if not (trimmed.startswith("{") and trimmed.endswith("}")):
        return None
    try:
        payload = json.loads(trimmed)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict) or not payload:
        return None

    # Envelope without the "tool_call" wrapper.
    if "name" in payload and "parameters" in payload:
        name = payload.get("name")
        if isinstance(name, str) and name:
            logger.warning("Heuristic match: tool call without wrapper for '%s'", name)
            parameters = payload.get("parameters")
            return DetectedToolCall(
                name=name,
                parameters=parameters if isinstance(parameters, dict) else {},
                heuristic=True,
            )

    # Bare arguments: pick the first tool whose schema covers enough keys.
    # Ties resolve to registration order; there is no stronger guarantee.
    response_keys = list(payload.keys())
    for tool in tools:
        tool_keys = set(_schema_keys(tool.get("parameters")))
        matched = sum(1 for key in response_keys if key in tool_keys)
        if matched > 0 and matched >= len(response_keys) * KEY_OVERLAP_THRESHOLD:
            name = str(tool.get("name", ""))
            if not name:
                continue
            logger.warning(
                "Heuristic match: malformed tool call for '%s' (matched %d/%d params)",
                name, matched, len(response_keys),
            )
            return DetectedToolCall(name=name, parameters=payload, heuristic=True)

    logger.debug("Could not match JSON parameters to any known tool")
    return None


def find_prompt_tool_call(response: str, tools: Iterable[Mapping[str, Any]] = ()) -> Optional[DetectedToolCall]:
    """
    Recover a tool call from a fully assembled prompt-based response.

    1. A ``{"tool_call": {"name": ..., "parameters": {...}}}`` envelope
       anywhere in the text, extracted by brace matching.
    2. Only when no envelope start is present: the whole response parsed as
       JSON, either ``{"name", "parameters"}`` or bare arguments matched
       against the tools' parameter keys.
    """
    if not response:
        return None
    if _ENVELOPE_START.search(response):
        return _find_envelope(response)
    return _match_bare_json(response, list(tools))


def _decode_arguments(raw: Any) -> Dict[str, Any]:
    if isinstance(raw, dict):
        return raw
    if isinstance(raw, str):
        if not raw.strip():
            return {}
        try:
            decoded = json.loads(raw)
        except json.JSONDecodeError as exc:
            logger.warning("Failed to parse native tool call arguments: %s", exc)
            return {}
        if isinstance(decoded, dict):
            return decoded
        logger.warning("Native tool call arguments are not an object: %r", raw[:100])
    return {}


def parse_native_tool_calls(message: Mapping[str, Any]) -> List[DetectedToolCall]:
    """
    Read ``message.tool_calls`` from a native chat fragment.

    Each entry looks like ``{"id"?, "type": "function", "function": {"name",
    "arguments"}}`` where ``arguments`` is a JSON string or an object.
    """
    entries = message.get("tool_calls")
    if not isinstance(entries, list):
        return []

    calls: List[DetectedToolCall] = []
    for entry in entries:
        function = entry.get("function") if isinstance(entry, dict) else None
        if not isinstance(function, dict):
            logger.warning("Native tool call missing 'function' field: %r", entry)
            continue
        name = function.get("name")
        if not isinstance(name, str) or not name:
            logger.warning("Native tool call has empty function name")
            continue
        call_id = entry.get("id") or new_call_id()
        calls.append(DetectedToolCall(
            name=name,
            parameters=_decode_arguments(function.get("arguments")),
            call_id=str(call_id),
        ))
    return calls

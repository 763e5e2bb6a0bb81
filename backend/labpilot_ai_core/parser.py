"""Lenient JSON recovery for model output.

Models are asked for JSON only, but responses still arrive wrapped in code
fences, preceded by a sentence of prose, or cut off mid-array when the output
token limit is hit. ``parse_lenient`` recovers as much structure as it can
and returns ``None`` when nothing usable is left. It never raises.
"""
from __future__ import annotations

import json
import logging
import re
from collections import deque
from typing import Any

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```[A-Za-z0-9_+-]*")
_OPENERS = {"{": "}", "[": "]"}
_CLOSERS = {"}": "{", "]": "["}
_MAX_REPAIR_ATTEMPTS = 64
# Deeper nesting than this is not model output worth repairing.
_MAX_REPAIR_DEPTH = 128

# Pathologically nested input exhausts the decoder's recursion limit.
_DECODE_ERRORS = (json.JSONDecodeError, RecursionError)

_decoder = json.JSONDecoder()


def strip_fences(text: str) -> str:
    return _FENCE_RE.sub("", text).strip()


def _first_structure_index(text: str) -> int:
    positions = [idx for idx in (text.find("{"), text.find("[")) if idx != -1]
    return min(positions) if positions else -1


def _cut_points(text: str) -> list[tuple[int, tuple[str, ...]]]:
    """Positions just after each closing bracket outside a string, with the brackets still open there."""
    points: deque[tuple[int, tuple[str, ...]]] = deque(maxlen=_MAX_REPAIR_ATTEMPTS)
    stack: list[str] = []
    in_string = False
    escaped = False
    for idx, char in enumerate(text):
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in _OPENERS:
            stack.append(char)
            if len(stack) > _MAX_REPAIR_DEPTH:
                return []
        elif char in _CLOSERS:
            if not stack or stack[-1] != _CLOSERS[char]:
                break
            stack.pop()
            if not stack:
                # A complete top-level value; nothing after it needs repair.
                points.append((idx + 1, ()))
                break
            points.append((idx + 1, tuple(stack)))
    return list(points)


def repair_truncated(text: str) -> Any | None:
    """Close a truncated object/array at the last complete element that still parses."""
    points = _cut_points(text)
    for end, still_open in reversed(points):
        candidate = text[:end].rstrip().rstrip(",")
        candidate += "".join(_OPENERS[opener] for opener in reversed(still_open))
        try:
            return json.loads(candidate)
        except _DECODE_ERRORS:
            continue
    return None


def parse_lenient(text: str | None) -> Any | None:
    if text is None:
        return None
    cleaned = strip_fences(str(text))
    if not cleaned:
        return None

    try:
        return json.loads(cleaned)
    except _DECODE_ERRORS:
        pass

    start = _first_structure_index(cleaned)
    if start == -1:
        logger.debug("model output has no JSON structure (%d chars)", len(cleaned))
        return None
    candidate = cleaned[start:]
    try:
        return json.loads(candidate)
    except _DECODE_ERRORS:
        pass
    try:
        value, _ = _decoder.raw_decode(candidate)
        return value
    except _DECODE_ERRORS:
        pass

    repaired = repair_truncated(candidate)
    if repaired is not None:
        logger.info("recovered truncated model output (%d chars)", len(candidate))
        return repaired
    logger.debug("model output could not be parsed (%d chars)", len(cleaned))
    return None


def parse_lenient_object(text: str | None) -> dict[str, Any] | None:
    payload = parse_lenient(text)
    if isinstance(payload, dict):
        return payload
    return None

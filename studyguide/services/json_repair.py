"""Coerce unreliable model output into JSON.

All heuristics live behind :func:`parse_jsonish` (one object expected) and
:func:`parse_jsonish_array` (a list of objects expected).  Both return a
tagged result instead of raising, so callers decide what a failure means.

Strategies, first success wins:

1. strip markdown fences and parse directly;
2. repair truncated output (title + complete subpoint strings);
3. first balanced ``{...}`` span;
4. first balanced ``[...]`` span holding objects;
5. (arrays only) every complete top-level ``{...}`` object in the text.
"""

import json
import re
from dataclasses import dataclass
from typing import Any

from studyguide.errors import preview_of

_FENCE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?(.*?)\n?\s*```\s*$", re.DOTALL)
_OPEN_FENCE = re.compile(r"^\s*```[A-Za-z0-9_-]*\s*\n?")
_TITLE = re.compile(r'"title"\s*:\s*"((?:[^"\\]|\\.)*)"', re.DOTALL)
_SUBPOINTS = re.compile(r'"subpoints"\s*:\s*\[')

ARRAY_KEYS = ("slides", "results", "items", "topics", "data")


@dataclass(frozen=True)
class ParseSuccess:
    value: Any
    strategy: str


@dataclass(frozen=True)
class ParseFailure:
    reason: str
    preview: str


ParseResult = ParseSuccess | ParseFailure


# ---------------------------------------------------------------------------
# Scanning helpers
# ---------------------------------------------------------------------------


def strip_fences(text: str) -> str:
    """Remove a surrounding ```json ... ``` wrapper (or an unclosed opening one)."""
    match = _FENCE.match(text)
    if match:
        return match.group(1).strip()
    return _OPEN_FENCE.sub("", text, count=1).strip()


def _try_json(text: str) -> tuple[bool, Any]:
    try:
        return True, json.loads(text)
    except (json.JSONDecodeError, ValueError):
        return False, None


def looks_truncated(text: str) -> bool:
    """True when *text* ends inside a string, an open bracket, or on a comma."""
    stripped = text.rstrip()
    if not stripped:
        return False
    if stripped.endswith(","):
        return True
    depth = 0
    in_string = False
    escaped = False
    for ch in stripped:
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
        elif ch == '"':
            in_string = True
        elif ch in "{[":
            depth += 1
        elif ch in "}]":
            depth -= 1
    return in_string or depth > 0


def balanced_span(text: str, open_char: str, close_char: str, start: int = 0) -> tuple[int, int] | None:
    """Locate the first balanced ``open_char ... close_char`` span at or after *start*.

    Brackets inside quoted strings are ignored and backslash escapes are
    honoured.  Returns ``(begin, end)`` with *end* exclusive, or ``None``.
    """
    begin = text.find(open_char, start)
    if begin < 0:
        return None
    depth = 0
    in_string = False
    escaped = False
    for i in range(begin, len(text)):
        ch = text[i]
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
        elif ch == open_char:
            depth += 1
        elif ch == close_char:
            depth -= 1
            if depth == 0:
                return begin, i + 1
    return None


def _complete_strings(text: str, start: int) -> list[str]:
    """JSON strings that close properly, from *start* up to an unquoted ``]``."""
    values: list[str] = []
    i = start
    while i < len(text):
        ch = text[i]
        if ch == "]":
            break
        if ch != '"':
            i += 1
            continue
        j = i + 1
        escaped = False
        while j < len(text):
            if escaped:
                escaped = False
            elif text[j] == "\\":
                escaped = True
            elif text[j] == '"':
                break
            j += 1
        if j >= len(text):
            break  # unterminated: the truncated tail
        ok, value = _try_json(text[i : j + 1])
        if ok and isinstance(value, str):
            values.append(value)
        i = j + 1
    return values


def _repair_truncated(text: str) -> dict | None:
    result: dict = {}
    title = _TITLE.search(text)
    if title:
        ok, value = _try_json(f'"{title.group(1)}"')
        result["title"] = value if ok else title.group(1)
    subpoints = _SUBPOINTS.search(text)
    if subpoints:
        result["subpoints"] = _complete_strings(text, subpoints.end())
    if not result.get("title") and not result.get("subpoints"):
        return None
    result.setdefault("subpoints", [])
    return result


def _parse_span(text: str, open_char: str, close_char: str) -> Any:
    span = balanced_span(text, open_char, close_char)
    if span is None:
        return None
    ok, value = _try_json(text[span[0] : span[1]])
    return value if ok else None


def _all_objects(text: str) -> list[dict]:
    objects: list[dict] = []
    pos = 0
    while True:
        span = balanced_span(text, "{", "}", pos)
        if span is None:
            return objects
        ok, value = _try_json(text[span[0] : span[1]])
        if ok and isinstance(value, dict):
            objects.append(value)
            pos = span[1]
        else:
            pos = span[0] + 1  # maybe a nested object parses on its own


def _unwrap_array(value: Any) -> list[dict] | None:
    if isinstance(value, list):
        objects = [v for v in value if isinstance(v, dict)]
        return objects if objects or not value else None
    if isinstance(value, dict):
        for key in ARRAY_KEYS:
            if isinstance(value.get(key), list):
                return [v for v in value[key] if isinstance(v, dict)]
        return [value]
    return None


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def parse_jsonish(text: str | None) -> ParseResult:
    """Parse model output expected to hold one JSON object."""
    if not text or not text.strip():
        return ParseFailure(reason="empty response", preview="")

    body = strip_fences(text)
    ok, value = _try_json(body)
    if ok and isinstance(value, dict):
        return ParseSuccess(value, "direct")
    if ok and isinstance(value, list) and value and isinstance(value[0], dict):
        return ParseSuccess(value[0], "direct")

    if looks_truncated(body):
        repaired = _repair_truncated(body)
        if repaired is not None:
            return ParseSuccess(repaired, "truncation_repair")

    value = _parse_span(body, "{", "}")
    if isinstance(value, dict):
        return ParseSuccess(value, "object_span")

    value = _parse_span(body, "[", "]")
    if isinstance(value, list) and value and isinstance(value[0], dict):
        return ParseSuccess(value[0], "array_span")

    return ParseFailure(reason="no JSON object found", preview=preview_of(text))


def parse_jsonish_array(text: str | None) -> ParseResult:
    """Parse model output expected to hold a JSON array of objects."""
    if not text or not text.strip():
        return ParseFailure(reason="empty response", preview="")

    body = strip_fences(text)
    ok, value = _try_json(body)
    if ok:
        items = _unwrap_array(value)
        if items is not None:
            return ParseSuccess(items, "direct")

    value = _parse_span(body, "[", "]")
    if isinstance(value, list):
        items = [v for v in value if isinstance(v, dict)]
        if items:
            return ParseSuccess(items, "array_span")

    objects = _all_objects(body)
    if objects:
        return ParseSuccess(objects, "object_scan")

    return ParseFailure(reason="no JSON array found", preview=preview_of(text))

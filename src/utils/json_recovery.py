"""Recover JSON from free-form, possibly truncated model output.

Extraction models are asked for "JSON only" but regularly wrap it in a
markdown fence, prepend a sentence, or run out of tokens halfway through
an array.  :func:`recover_json` tries progressively more forgiving
strategies and returns the first value that parses:

    1. strip a leading (and optional trailing) code fence
    2. direct ``json.loads``
    3. the largest bracket-delimited substring (array or object)
    4. bracket-balance repair of a truncated document
    5. scan for individually well-formed part-shaped ``{...}`` objects

Everything here is a pure function: deterministic, no I/O, no logging.
Values right at a truncation point are best-effort; callers should expect
partial recovery there, not exact values.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from typing import Any

# Complete fence: ```json ... ``` (language tag optional).
_FENCE_RE = re.compile(r"```(?:json|JSON)?[ \t]*\n?(.*?)\n?\s*```", re.DOTALL)
# Opening fence only -- the closing one was lost to truncation.
_OPEN_FENCE_RE = re.compile(r"^\s*```(?:json|JSON)?[ \t]*\n?")

_ARRAY_RE = re.compile(r"\[[\s\S]*\]")
_OBJECT_RE = re.compile(r"\{[\s\S]*\}")

# Objects with at most one level of nesting, e.g. {"l":1,"edges":{"L1":true}}.
_FLAT_OBJECT_RE = re.compile(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}")

# Literals cut off mid-word after a colon: "grain": tr
_PARTIAL_LITERAL_RE = re.compile(r":\s*(?:t|tr|tru|f|fa|fal|fals|n|nu|nul)$")
# Number cut off after the decimal point or sign: "w": 40.  /  "w": -
_PARTIAL_NUMBER_RE = re.compile(r"(?:(?<=\d)\.|(?<=:)\s*-|(?<=\[)\s*-|(?<=,)\s*-)$")

# Key sets that make an object "part-shaped".
_PART_KEY_SETS: tuple[frozenset[str], ...] = (
    frozenset({"length", "width"}),
    frozenset({"l", "w"}),
    frozenset({"row"}),
)

_FAILED = object()


@dataclass
class _ScanState:
    """Result of a single left-to-right structural scan."""

    stack: list[str]
    in_string: bool
    escape_pending: bool
    last_string_start: int
    char_before_last_string: str


def recover_json(text: str | None) -> Any | None:
    """Recover a JSON value from model output.

    Parameters
    ----------
    text:
        Raw model text.  May contain prose, code fences, or be truncated.

    Returns
    -------
    Any or None
        The first value any strategy could parse, or ``None`` if every
        strategy failed.
    """
    if not text or not text.strip():
        return None

    cleaned = strip_code_fence(text)

    value = _try_parse(cleaned)
    if value is not _FAILED:
        return value

    start = _first_opener(cleaned)
    if start >= 0:
        # Prefer the container kind the document actually opens with.
        patterns = (_ARRAY_RE, _OBJECT_RE) if cleaned[start] == "[" else (_OBJECT_RE, _ARRAY_RE)
        for index, pattern in enumerate(patterns):
            match = pattern.search(cleaned, start)
            if match is None:
                continue
            # A fragment of the other kind inside a truncated outer
            # container is left to the repair pass.
            if index == 1 and match.start() > start:
                continue
            value = _try_parse(match.group(0))
            if value is not _FAILED:
                return value

        value = _try_parse(repair_truncated_json(cleaned[start:]))
        if value is not _FAILED:
            return value

    objects = extract_part_objects(cleaned)
    return objects or None


def strip_code_fence(text: str) -> str:
    """Remove a surrounding markdown code fence, complete or opening-only."""
    match = _FENCE_RE.search(text)
    if match:
        return match.group(1).strip()
    if _OPEN_FENCE_RE.match(text):
        stripped = _OPEN_FENCE_RE.sub("", text, count=1)
        return stripped.rstrip().removesuffix("```").strip()
    return text.strip()


def repair_truncated_json(text: str) -> str:
    """Close whatever a truncated JSON document left open.

    Walks the text once, tracking string and escape state, then:

    * closes an unterminated string,
    * drops a dangling object key (or trailing comma) that has no value,
    * substitutes ``null`` for a ``key:`` with nothing after it,
    * appends ``}`` / ``]`` for unmatched openers in nesting order.

    The output is not guaranteed to parse; :func:`recover_json` checks.
    """
    state = _scan(text)
    repaired = text

    if state.in_string:
        if state.escape_pending:
            repaired = repaired[:-1]
        repaired += '"'

    repaired = _fix_tail(repaired.rstrip(), state)

    closers = "".join("}" if opener == "{" else "]" for opener in reversed(state.stack))
    return repaired + closers


def extract_part_objects(text: str) -> list[dict[str, Any]]:
    """Collect every well-formed, part-shaped ``{...}`` object in *text*."""
    objects: list[dict[str, Any]] = []
    for match in _FLAT_OBJECT_RE.finditer(text):
        value = _try_parse(match.group(0))
        if isinstance(value, dict) and is_part_shaped(value):
            objects.append(value)
    return objects


def is_part_shaped(value: dict[str, Any]) -> bool:
    """Return ``True`` if *value* has the keys of a part record."""
    keys = {str(key).lower() for key in value}
    return any(required <= keys for required in _PART_KEY_SETS)


def extract_parts_payload(value: Any) -> list[dict[str, Any]] | None:
    """Unwrap the list of part dicts from a recovered value.

    Accepts a bare list, ``{"parts": [...]}``, or a single part-shaped
    object.  Returns ``None`` when *value* holds no part list at all.
    """
    if isinstance(value, list):
        return [item for item in value if isinstance(item, dict)]
    if isinstance(value, dict):
        parts = value.get("parts")
        if isinstance(parts, list):
            return [item for item in parts if isinstance(item, dict)]
        if is_part_shaped(value):
            return [value]
    return None


def looks_truncated(text: str) -> bool:
    """Return ``True`` if the JSON in *text* has unclosed strings or brackets."""
    cleaned = strip_code_fence(text)
    start = _first_opener(cleaned)
    if start < 0:
        return False
    state = _scan(cleaned[start:])
    return state.in_string or bool(state.stack)


# ---------------------------------------------------------------------------
# Private helpers
# ---------------------------------------------------------------------------


def _try_parse(candidate: str) -> Any:
    try:
        return json.loads(candidate)
    except (json.JSONDecodeError, ValueError):
        return _FAILED


def _first_opener(text: str) -> int:
    positions = [pos for pos in (text.find("["), text.find("{")) if pos >= 0]
    return min(positions) if positions else -1


def _scan(text: str) -> _ScanState:
    stack: list[str] = []
    in_string = False
    escape = False
    last_string_start = -1
    char_before = ""
    prev_significant = ""

    for index, ch in enumerate(text):
        if in_string:
            if escape:
                escape = False
            elif ch == "\\":
                escape = True
            elif ch == '"':
                in_string = False
                prev_significant = '"'
            continue

        if ch == '"':
            in_string = True
            last_string_start = index
            char_before = prev_significant
        elif ch in "{[":
            stack.append(ch)
        elif ch in "}]":
            if stack:
                stack.pop()

        if not ch.isspace() and ch != '"':
            prev_significant = ch

    return _ScanState(
        stack=stack,
        in_string=in_string,
        escape_pending=escape,
        last_string_start=last_string_start,
        char_before_last_string=char_before,
    )


def _fix_tail(text: str, state: _ScanState) -> str:
    """Repair the last, incomplete token of a truncated document."""
    inside_object = bool(state.stack) and state.stack[-1] == "{"

    # A key with no colon: {"l":300,"w   or   {"l":300,"w"
    if (
        inside_object
        and state.last_string_start >= 0
        and text.endswith('"')
        and state.char_before_last_string in ("{", ",")
    ):
        text = text[: state.last_string_start].rstrip()

    if _PARTIAL_LITERAL_RE.search(text):
        text = _PARTIAL_LITERAL_RE.sub(": null", text)
    text = _PARTIAL_NUMBER_RE.sub("", text).rstrip()

    if text.endswith(":"):
        return text + " null"
    if text.endswith(","):
        return text[:-1].rstrip()
    return text

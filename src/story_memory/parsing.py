"""Defensive decoding of language-model JSON output.

Every LLM-assisted service funnels the raw completion text through
``decode_model``. The result is tagged: ``Ok`` carries the validated payload,
``ParseError`` carries the reason, and each call site maps ``ParseError`` to
its own fallback value. Nothing in this module raises on bad model output.
"""

from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass
from typing import Any, Generic, TypeVar, Union

from pydantic import BaseModel, ValidationError

T = TypeVar("T")
M = TypeVar("M", bound=BaseModel)

_FENCE_OPEN = re.compile(r"^```[a-zA-Z]*\s*")
_FENCE_CLOSE = re.compile(r"\s*```$")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


def _loads(text: str) -> Any:
    # NaN and Infinity are valid to json.loads but not to JSON; read them as null
    return json.loads(text, parse_constant=lambda _: None)


@dataclass(frozen=True)
class Ok(Generic[T]):
    value: T


@dataclass(frozen=True)
class ParseError:
    reason: str
    raw: str = ""


ParseResult = Union[Ok[T], ParseError]


def strip_code_fences(text: str) -> str:
    """Remove a surrounding markdown code fence, if any."""
    text = text.strip()
    text = _FENCE_OPEN.sub("", text, count=1)
    text = _FENCE_CLOSE.sub("", text, count=1)
    return text.strip()


def extract_json_object(text: str) -> str | None:
    """Return the first balanced ``{...}`` span in text.

    Braces inside string literals are ignored. A truncated object (the model
    ran out of tokens) is closed with the missing brackets.
    """
    start = text.find("{")
    if start == -1:
        return None

    stack: list[str] = []
    in_string = False
    escape = False
    for pos in range(start, len(text)):
        ch = text[pos]
        if escape:
            escape = False
            continue
        if ch == "\\":
            escape = True
            continue
        if ch == '"':
            in_string = not in_string
            continue
        if in_string:
            continue
        if ch in "{[":
            stack.append("}" if ch == "{" else "]")
        elif ch in "}]" and stack:
            stack.pop()
            if not stack:
                return text[start : pos + 1]

    # Truncated: close the open string and brackets, innermost first
    fragment = text[start:].rstrip().rstrip(",")
    if in_string:
        fragment += '"'
    return fragment + "".join(reversed(stack))


def decode_json(text: str | None) -> ParseResult[dict]:
    """Decode a JSON object out of raw completion text."""
    if not text or not text.strip():
        return ParseError("empty response", text or "")

    candidate = strip_code_fences(text)
    try:
        value = _loads(candidate)
    except json.JSONDecodeError:
        span = extract_json_object(candidate)
        if span is None:
            return ParseError("no JSON object found", text)
        try:
            value = _loads(_TRAILING_COMMA.sub(r"\1", span))
        except json.JSONDecodeError as e:
            return ParseError(f"invalid JSON: {e}", text)

    if not isinstance(value, dict):
        return ParseError(f"expected a JSON object, got {type(value).__name__}", text)
    return Ok(value)


def decode_model(text: str | None, model: type[M]) -> ParseResult[M]:
    """Decode and validate completion text into a pydantic payload model."""
    decoded = decode_json(text)
    if isinstance(decoded, ParseError):
        return decoded
    try:
        return Ok(model.model_validate(decoded.value))
    except ValidationError as e:
        return ParseError(f"schema mismatch: {e.error_count()} error(s)", text or "")


def valid_items(items: Any, model: type[M]) -> list[M]:
    """Validate list items one by one, dropping the malformed ones."""
    if not isinstance(items, list):
        return []
    result = []
    for item in items:
        if isinstance(item, model):
            result.append(item)
            continue
        try:
            result.append(model.model_validate(item))
        except ValidationError:
            continue
    return result


def coerce_int(value: Any) -> int | None:
    """Best-effort integer conversion for model-supplied numbers."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        match = re.search(r"-?\d+", value)
        if match:
            return int(match.group())
    return None


def string_list(value: Any) -> list[str]:
    """Keep the non-blank strings of a model-supplied list."""
    if isinstance(value, str):
        value = [value]
    if not isinstance(value, list):
        return []
    return [str(v).strip() for v in value if isinstance(v, (str, int, float)) and str(v).strip()]

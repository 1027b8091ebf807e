"""
Recovery of JSON payloads from loosely formatted model responses.

Some routed models wrap their answer in reasoning blocks, markdown fences or
prose. The helpers here peel those layers off in a fixed order and raise
`ParseError` when nothing parseable remains.
"""

from __future__ import annotations

import json
import re
from typing import Any, Optional, Tuple

from models.errors import ParseError

MAX_RESPONSE_CHARS = 10 * 1024 * 1024

_REASONING_TAGS = re.compile(
    r"^\s*<(think|thinking|reasoning|reflection)>.*?</\1>\s*",
    re.IGNORECASE | re.DOTALL,
)
_REASONING_FENCE = re.compile(
    r"^\s*```(?:think|thinking|reasoning)\s*\n.*?```\s*",
    re.IGNORECASE | re.DOTALL,
)
_CODE_FENCE = re.compile(r"```(?:json|JSON)?\s*\n?(.*?)\n?```", re.DOTALL)
_CLOSERS = {"{": "}", "[": "]"}


def strip_reasoning_blocks(text: str) -> str:
    """Remove leading thinking/reasoning sections delimited by tags or fences."""
    previous = None
    while previous != text:
        previous = text
        text = _REASONING_TAGS.sub("", text, count=1)
        text = _REASONING_FENCE.sub("", text, count=1)
    return text


def unwrap_code_fence(text: str) -> str:
    match = _CODE_FENCE.search(text)
    if match and match.group(1).strip():
        return match.group(1).strip()
    return text


def extract_balanced_json(text: str) -> Optional[str]:
    """
    Return the first balanced JSON object or array in `text`.

    The scan is string-aware and escape-aware, so braces inside string literals
    do not affect nesting. Returns None when no balanced span exists.
    """
    start = -1
    for index, char in enumerate(text):
        if char in _CLOSERS:
            start = index
            break
    if start < 0:
        return None

    stack = [_CLOSERS[text[start]]]
    in_string = False
    escaped = False
    for index in range(start + 1, len(text)):
        char = text[index]
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
        elif char in _CLOSERS:
            stack.append(_CLOSERS[char])
        elif char in ("}", "]"):
            if not stack or stack[-1] != char:
                return None
            stack.pop()
            if not stack:
                return text[start:index + 1]
    return None


def strip_line_comments(text: str) -> str:
    """Drop `//` comments that appear outside string literals."""
    output = []
    in_string = False
    escaped = False
    index = 0
    length = len(text)
    while index < length:
        char = text[index]
        if in_string:
            output.append(char)
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            index += 1
            continue
        if char == '"':
            in_string = True
            output.append(char)
            index += 1
            continue
        if char == "/" and index + 1 < length and text[index + 1] == "/":
            newline = text.find("\n", index)
            if newline < 0:
                break
            index = newline
            continue
        output.append(char)
        index += 1
    return "".join(output)


def recover_json(text: str, *, provider: str | None = None) -> Tuple[str, Any]:
    """
    Clean a raw response and return `(json_text, parsed_value)`.

    Raises ParseError when the cleaned text still is not valid JSON.
    """
    if text is None:
        raise ParseError("Empty response", provider=provider)
    if len(text) > MAX_RESPONSE_CHARS:
        raise ParseError(
            f"JSON response too large: {len(text)} chars (max: {MAX_RESPONSE_CHARS})",
            provider=provider,
        )
    cleaned = strip_reasoning_blocks(text.strip())
    cleaned = unwrap_code_fence(cleaned).strip()
    try:
        return cleaned, json.loads(cleaned)
    except json.JSONDecodeError:
        pass

    span = extract_balanced_json(cleaned)
    if span is not None:
        cleaned = span
    cleaned = strip_line_comments(cleaned).strip()
    try:
        parsed = json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ParseError(
            f"Response is not valid JSON: {cleaned[:200]}",
            provider=provider,
        ) from exc
    return cleaned, parsed


def parse_strict_json(text: str, *, provider: str | None = None) -> Tuple[str, Any]:
    """Parse text that the provider guarantees to be JSON, without repairs."""
    cleaned = (text or "").strip()
    if not cleaned:
        raise ParseError("Empty response", provider=provider)
    try:
        return cleaned, json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise ParseError(f"Response is not valid JSON: {cleaned[:200]}", provider=provider) from exc

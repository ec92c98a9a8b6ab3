from __future__ import annotations

import json
import re
from typing import Any, Mapping

_ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    '"': '"',
    "'": "'",
    "\\": "\\",
    "/": "/",
}
_ESCAPE_PATTERN = re.compile(r"\\(.)", re.DOTALL)
_CLOSERS = {"{": "}", "[": "]"}


def strip_code_fence(content: str) -> str:
    """Remove a surrounding ``` / ```json fence from model output."""

    raw = str(content or "").strip()
    if raw.startswith("```"):
        raw = re.sub(r"^```(?:json)?\s*", "", raw, flags=re.IGNORECASE)
        raw = re.sub(r"\s*```$", "", raw)
    return raw.strip()


def unescape_json_string(value: str) -> str:
    """Decode the common backslash escapes of a captured JSON string body."""

    return _ESCAPE_PATTERN.sub(
        lambda match: _ESCAPES.get(match.group(1), match.group(0)), value
    )


def extract_json_object(content: str) -> str:
    """Return the outermost `{...}` span of the content, or an empty string."""

    start = content.find("{")
    end = content.rfind("}")
    if start == -1 or end == -1 or end <= start:
        return ""
    return content[start : end + 1].strip()


def repair_json_object(content: str) -> str:
    """Drop trailing commas and quote bare object keys."""

    text = str(content or "")
    text = re.sub(r",\s*([}\]])", r"\1", text)
    text = re.sub(
        r'([,{]\s*)([A-Za-z_][A-Za-z0-9_]*)"\s*:',
        r'\1"\2":',
        text,
    )
    text = re.sub(
        r'([,{]\s*)([A-Za-z_][A-Za-z0-9_]*)\s*:',
        r'\1"\2":',
        text,
    )
    return text


def close_unterminated(content: str) -> str:
    """Terminate an open string and close any brackets left open.

    Output cut off by a token limit usually ends inside a string value; the
    document is completed so that the text received so far can still be parsed.
    """

    stack: list[str] = []
    in_string = False
    escaped = False
    for char in content:
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
        elif char in "}]" and stack and stack[-1] == char:
            stack.pop()

    text = content
    if escaped:
        text = text[:-1]
    if in_string:
        text += '"'
    return text + "".join(reversed(stack))


def load_json_mapping(content: str) -> Mapping[str, Any] | None:
    """Parse a JSON object, retrying with the repair heuristics."""

    for candidate in _json_repair_candidates(content):
        try:
            payload = json.loads(candidate)
        except json.JSONDecodeError:
            continue
        if isinstance(payload, Mapping):
            return payload
    return None


def _json_repair_candidates(content: str) -> list[str]:
    candidates = [content]
    repaired = repair_json_object(content)
    if repaired != content:
        candidates.append(repaired)
    closed = repair_json_object(close_unterminated(content))
    if closed not in candidates:
        candidates.append(closed)
    return candidates

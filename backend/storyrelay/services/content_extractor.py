from __future__ import annotations

import re
from typing import Any, Mapping

from storyrelay.services.json_repair import (
    load_json_mapping,
    strip_code_fence,
    unescape_json_string,
)

NARRATIVE_FIELDS = ("story", "nextStory", "nextStrory", "next_story", "output_schema")

_FIELD_NAMES = "|".join(NARRATIVE_FIELDS)
_MARKER_PATTERN = re.compile(rf'"(?:{_FIELD_NAMES})"\s*:')
# The value group stops at the closing quote or at the end of a cut-off document.
_VALUE_PATTERN = re.compile(rf'"(?:{_FIELD_NAMES})"\s*:\s*"((?:[^"\\]|\\.)*)', re.DOTALL)


def extract_narrative(raw: Any) -> str:
    """Return the narrative text carried by a model reply.

    Replies are either plain prose or a JSON document whose narrative lives in
    one of NARRATIVE_FIELDS. Extraction is repeated until the text stops
    changing, so applying it to its own output is a no-op. Never raises.
    """

    current = "" if raw is None else str(raw)
    while True:
        extracted = _extract_once(current)
        if extracted == current:
            return current
        current = extracted


def _extract_once(text: str) -> str:
    normalized = strip_code_fence(text.replace("&lt;", "<").replace("&gt;", ">"))
    if not normalized.startswith("{") or not _MARKER_PATTERN.search(normalized):
        return normalized

    match = _VALUE_PATTERN.search(normalized)
    if match:
        return unescape_json_string(match.group(1))

    payload = load_json_mapping(normalized)
    if payload is not None:
        value = _narrative_field(payload)
        if value is not None:
            return value
    return normalized


def _narrative_field(payload: Mapping[str, Any]) -> str | None:
    for field in NARRATIVE_FIELDS:
        value = payload.get(field)
        if isinstance(value, str):
            return value
    nested = payload.get("output_schema")
    if isinstance(nested, Mapping):
        for field in NARRATIVE_FIELDS:
            value = nested.get(field)
            if isinstance(value, str):
                return value
    return None

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field, replace
from typing import Any, Iterable, List, Protocol, Sequence

from storyrelay.providers.base import LLMAdapter, ProviderRuntimeConfig
from storyrelay.services.json_repair import (
    extract_json_object,
    load_json_mapping,
    strip_code_fence,
    unescape_json_string,
)

logger = logging.getLogger(__name__)

DEFAULT_MAX_PLOT_POINTS = 20

_SUMMARY_PATTERN = re.compile(r'"summary"\s*:\s*"((?:[^"\\]|\\.)*)', re.DOTALL)
_POINTS_PATTERN = re.compile(
    r'"(?:keyPlotPoints|key_plot_points|plotPoints)"\s*:\s*\[(.*?)(?:\]|$)', re.DOTALL
)
_STRING_PATTERN = re.compile(r'"((?:[^"\\]|\\.)*)"', re.DOTALL)


class TurnLike(Protocol):
    role: str
    text: str


@dataclass
class PriorMemory:
    """Memory state as it was before a compaction run."""

    summary: str = ""
    plot_points: List[str] = field(default_factory=list)


@dataclass
class MemoryUpdate:
    """New memory produced by a compaction run."""

    summary: str
    plot_points: List[str]


@dataclass
class SummaryReply:
    summary: str
    plot_points: List[str]


def split_archived_points(
    points: Sequence[str], max_points: int = DEFAULT_MAX_PLOT_POINTS
) -> tuple[List[str], List[str]]:
    """Split plot points into (archived overflow, newest max_points kept)."""

    cleaned = [point for point in points if point and point.strip()]
    if max_points < 1:
        return cleaned, []
    overflow = max(0, len(cleaned) - max_points)
    return cleaned[:overflow], cleaned[overflow:]


def build_summary_prompt(
    narration: Sequence[str],
    prior: PriorMemory,
    *,
    kept_points: Sequence[str],
    archived_points: Sequence[str],
    template: str = "",
) -> str:
    """Render the compaction prompt for the given assistant narration."""

    narration_text = "\n\n".join(narration)
    points_text = _bullet_list(kept_points)
    archived_text = _bullet_list(archived_points)
    if template.strip():
        return (
            template.replace("{existingSummary}", prior.summary or "")
            .replace("{messageCount}", str(len(narration)))
            .replace("{aiMessages}", narration_text)
            .replace("{plotPoints}", points_text)
            .replace("{archivedPlotPoints}", archived_text)
        )

    parts = [
        "You maintain the long-term memory of an interactive story.",
        "Update the memory from the newest narration below and follow these rules:",
        "1. summary: rewrite the running summary so it includes the new events. "
        "Stay under 500 characters.",
        "2. keyPlotPoints: list only the NEW key plot points of the narration, "
        "one short line each. Skip anything already in the current plot points.",
        "3. Keep facts from the existing summary unless the story contradicts them.",
        '4. Reply with a single JSON object and nothing else: '
        '{"summary": "...", "keyPlotPoints": ["..."]}',
        "",
    ]
    if prior.summary:
        parts.extend(["[Existing summary]", prior.summary, ""])
    if kept_points:
        parts.extend(["[Current plot points]", points_text, ""])
    if archived_points:
        parts.extend(
            [
                "[Archived plot points] (no longer tracked as a list; fold them into the summary)",
                archived_text,
                "",
            ]
        )
    parts.extend([f"[Latest narration: {len(narration)} turns]", narration_text])
    return "\n".join(parts)


def parse_summary_reply(reply: Any) -> SummaryReply:
    """Parse a summarizer reply, degrading to the raw text. Never raises."""

    text = strip_code_fence("" if reply is None else str(reply))
    for candidate in _mapping_candidates(text):
        payload = load_json_mapping(candidate)
        if payload is None:
            continue
        summary = payload.get("summary")
        points = _coerce_points(
            payload.get("keyPlotPoints")
            or payload.get("key_plot_points")
            or payload.get("plotPoints")
        )
        if isinstance(summary, str) or points:
            return SummaryReply(
                summary=summary.strip() if isinstance(summary, str) else "",
                plot_points=points,
            )

    summary_match = _SUMMARY_PATTERN.search(text)
    points_match = _POINTS_PATTERN.search(text)
    if summary_match or points_match:
        summary = unescape_json_string(summary_match.group(1)).strip() if summary_match else ""
        points: List[str] = []
        if points_match:
            points = _coerce_points(
                unescape_json_string(item)
                for item in _STRING_PATTERN.findall(points_match.group(1))
            )
        return SummaryReply(summary=summary, plot_points=points)

    return SummaryReply(summary=text.strip(), plot_points=[])


def merge_plot_points(
    existing: Sequence[str],
    new_points: Iterable[str],
    max_points: int = DEFAULT_MAX_PLOT_POINTS,
) -> List[str]:
    """Append new plot points that are not already covered, keeping the newest max_points."""

    merged = [point.strip() for point in existing if point and point.strip()]
    keys = [_point_key(point) for point in merged]
    for point in new_points:
        text = str(point or "").strip()
        key = _point_key(text)
        if not key:
            continue
        if any(key in known or known in key for known in keys):
            continue
        merged.append(text)
        keys.append(key)
    if max_points < 1:
        return []
    return merged[-max_points:]


class MemorySummarizer:
    """Fold recent assistant turns into the rolling memory through an LLM."""

    def __init__(
        self,
        max_plot_points: int = DEFAULT_MAX_PLOT_POINTS,
        prompt_template: str = "",
        max_output_tokens: int = 2048,
    ) -> None:
        self._max_plot_points = max_plot_points
        self._prompt_template = prompt_template
        self._max_output_tokens = max_output_tokens

    async def summarize(
        self,
        turns: Sequence[TurnLike],
        prior: PriorMemory,
        adapter: LLMAdapter,
        cfg: ProviderRuntimeConfig,
    ) -> MemoryUpdate:
        """Summarize the assistant turns on top of the prior memory.

        Provider failures propagate as ProviderError; the caller decides what
        a failed run means for the stored state.
        """

        narration = [turn.text for turn in turns if turn.role == "assistant" and turn.text]
        if not narration:
            raise ValueError("No assistant turns to summarize.")

        archived, kept = split_archived_points(prior.plot_points, self._max_plot_points)
        prompt = build_summary_prompt(
            narration,
            prior,
            kept_points=kept,
            archived_points=archived,
            template=self._prompt_template,
        )
        runtime_cfg = replace(cfg, max_output_tokens=self._max_output_tokens)
        result = await adapter.generate(runtime_cfg, [{"role": "user", "content": prompt}])
        reply = parse_summary_reply(result.content)
        if not reply.plot_points and reply.summary == strip_code_fence(result.content).strip():
            logger.warning(
                "Summary reply was not structured; storing raw text provider=%s model=%s",
                cfg.provider,
                cfg.model_name,
            )
        return MemoryUpdate(
            summary=reply.summary or prior.summary,
            plot_points=merge_plot_points(kept, reply.plot_points, self._max_plot_points),
        )


def _mapping_candidates(text: str) -> List[str]:
    candidates = [text]
    embedded = extract_json_object(text)
    if embedded and embedded not in candidates:
        candidates.append(embedded)
    start = text.find("{")
    if start > 0:
        candidates.append(text[start:])
    return candidates


def _coerce_points(value: Any) -> List[str]:
    if value is None or isinstance(value, (str, bytes)):
        return []
    try:
        items = list(value)
    except TypeError:
        return []
    return [str(item).strip() for item in items if isinstance(item, str) and item.strip()]


def _point_key(point: str) -> str:
    return " ".join(point.lower().split())


def _bullet_list(points: Sequence[str]) -> str:
    if not points:
        return "(none)"
    return "\n".join(f"- {point}" for point in points)

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence

from storyrelay.db.models import Turn


class PromptBuilder:
    """Compose provider messages for a story turn."""

    def __init__(self, max_history: int = 20) -> None:
        self._max_history = max(0, max_history)

    @property
    def max_history(self) -> int:
        return self._max_history

    def build_messages(
        self,
        system_prompt: str,
        history: Iterable[Turn],
        user_message: str,
        summary: str = "",
        plot_points: Sequence[str] = (),
        speaker: Optional[str] = None,
    ) -> List[dict]:
        """Create the message list for an LLM provider."""

        messages: List[dict] = []
        memory_section = self._memory_section(summary, plot_points)
        system_text = "\n\n".join(part for part in (system_prompt.strip(), memory_section) if part)
        if system_text:
            messages.append({"role": "system", "content": system_text})

        turns = list(history)
        if self._max_history:
            for turn in turns[-self._max_history :]:
                if turn.role == "assistant":
                    messages.append({"role": "assistant", "content": turn.text})
                else:
                    content = self._speaker_line(turn.text, turn.speaker)
                    messages.append({"role": "user", "content": content})

        messages.append({"role": "user", "content": self._speaker_line(user_message, speaker)})
        return messages

    @staticmethod
    def _memory_section(summary: str, plot_points: Sequence[str]) -> str:
        lines: List[str] = []
        if summary.strip():
            lines.extend(["[Story so far]", summary.strip()])
        if plot_points:
            if lines:
                lines.append("")
            lines.append("[Key plot points]")
            lines.extend(f"- {point}" for point in plot_points)
        return "\n".join(lines)

    @staticmethod
    def _speaker_line(text: str, speaker: Optional[str]) -> str:
        if speaker and speaker.strip():
            return f"{speaker.strip()}: {text}"
        return text

from __future__ import annotations

from storyrelay.providers.openai_adapter import OpenAIAdapter


class GrokAdapter(OpenAIAdapter):
    """Adapter for the xAI Grok API (OpenAI-compatible wire format)."""

    provider_label = "Grok"
    max_tokens_field = "max_tokens"

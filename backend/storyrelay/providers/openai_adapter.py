from __future__ import annotations

from typing import Any, Optional

from storyrelay.providers.base import (
    HTTPProviderAdapter,
    LLMResult,
    ProviderError,
    ProviderRuntimeConfig,
    StreamDelta,
    build_payload_error,
    empty_completion_error,
    require_api_key,
)


class OpenAIAdapter(HTTPProviderAdapter):
    """Adapter for the OpenAI chat completions API."""

    provider_label = "OpenAI"
    length_finish_reasons = frozenset({"length"})
    max_tokens_field = "max_completion_tokens"

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        url = self._join_url(cfg.base_url, "/v1/models")
        data = await self._request_json("GET", url, headers=self._auth_headers(cfg.api_key))
        models = [item.get("id") for item in data.get("data", []) if item.get("id")]
        if not models:
            raise ProviderError("PROVIDER_NO_MODELS", "No models returned by provider.")
        return models

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        url = self._join_url(cfg.base_url, "/v1/chat/completions")
        payload = self._build_payload(cfg, messages, stream=False)
        data = await self._request_json(
            "POST", url, headers=self._auth_headers(cfg.api_key), json=payload
        )
        choices = data.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            raise ProviderError("PROVIDER_PARSE_ERROR", "No choices returned by provider.")
        choice = choices[0]
        content = (choice.get("message") or {}).get("content")
        finish_reason = choice.get("finish_reason")
        if not isinstance(content, str) or not content.strip():
            raise empty_completion_error(finish_reason, self.length_finish_reasons)
        usage = data.get("usage") or {}
        return LLMResult(
            content=content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=self._get_int(usage, "prompt_tokens"),
            token_out=self._get_int(usage, "completion_tokens"),
            finish_reason=finish_reason,
        )

    def decode_stream_payload(self, payload: dict[str, Any]) -> Optional[StreamDelta]:
        if payload.get("error"):
            raise build_payload_error(payload["error"])
        choices = payload.get("choices") or []
        if not choices or not isinstance(choices[0], dict):
            # Usage-only trailer records carry no choices.
            return None
        choice = choices[0]
        text = (choice.get("delta") or {}).get("content")
        return StreamDelta(
            text=text if isinstance(text, str) else "",
            finish_reason=choice.get("finish_reason"),
        )

    def _stream_request(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = self._join_url(cfg.base_url, "/v1/chat/completions")
        return url, self._auth_headers(cfg.api_key), self._build_payload(cfg, messages, stream=True)

    def _build_payload(
        self, cfg: ProviderRuntimeConfig, messages: list[dict], stream: bool
    ) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "model": cfg.model_name,
            "messages": [
                {"role": message.get("role", "user"), "content": message.get("content", "")}
                for message in messages
            ],
            "stream": stream,
        }
        if cfg.max_output_tokens:
            payload[self.max_tokens_field] = cfg.max_output_tokens
        return payload

    def _auth_headers(self, api_key: Optional[str]) -> dict[str, str]:
        key = require_api_key(api_key, self.provider_label)
        return {"Authorization": f"Bearer {key}"}

from __future__ import annotations

from typing import Any, Optional

import httpx

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

DEFAULT_MAX_TOKENS = 4096


class ClaudeAdapter(HTTPProviderAdapter):
    """Adapter for the Anthropic Messages API."""

    provider_label = "Claude"
    length_finish_reasons = frozenset({"max_tokens"})

    def __init__(
        self,
        timeout_sec: float = 90,
        http_client: Optional[httpx.AsyncClient] = None,
        api_version: str = "2023-06-01",
    ) -> None:
        super().__init__(timeout_sec=timeout_sec, http_client=http_client)
        self._api_version = api_version

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        url = self._join_url(cfg.base_url, "/v1/models")
        data = await self._request_json("GET", url, headers=self._headers(cfg.api_key))
        models = [item.get("id") for item in data.get("data", []) if item.get("id")]
        if not models:
            raise ProviderError("PROVIDER_NO_MODELS", "No models returned by provider.")
        return models

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        url = self._join_url(cfg.base_url, "/v1/messages")
        payload = self._build_payload(cfg, messages, stream=False)
        data = await self._request_json("POST", url, headers=self._headers(cfg.api_key), json=payload)
        blocks = data.get("content")
        if not isinstance(blocks, list):
            raise ProviderError("PROVIDER_PARSE_ERROR", "No content returned by provider.")
        content = "".join(
            block.get("text") or ""
            for block in blocks
            if isinstance(block, dict) and block.get("type") == "text"
        )
        stop_reason = data.get("stop_reason")
        if not content.strip():
            raise empty_completion_error(stop_reason, self.length_finish_reasons)
        usage = data.get("usage") or {}
        return LLMResult(
            content=content,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=self._get_int(usage, "input_tokens"),
            token_out=self._get_int(usage, "output_tokens"),
            finish_reason=stop_reason,
        )

    def decode_stream_payload(self, payload: dict[str, Any]) -> Optional[StreamDelta]:
        kind = payload.get("type")
        if kind == "error":
            raise build_payload_error(payload.get("error"))
        if kind == "content_block_delta":
            delta = payload.get("delta") or {}
            if delta.get("type") != "text_delta":
                return None
            text = delta.get("text")
            return StreamDelta(text=text if isinstance(text, str) else "")
        if kind == "message_delta":
            return StreamDelta(finish_reason=(payload.get("delta") or {}).get("stop_reason"))
        return None

    def _stream_request(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        url = self._join_url(cfg.base_url, "/v1/messages")
        return url, self._headers(cfg.api_key), self._build_payload(cfg, messages, stream=True)

    @staticmethod
    def _build_payload(
        cfg: ProviderRuntimeConfig, messages: list[dict], stream: bool
    ) -> dict[str, Any]:
        system_parts: list[str] = []
        turns: list[dict[str, Any]] = []
        for message in messages:
            role = message.get("role")
            text = message.get("content", "")
            if role == "system":
                if text:
                    system_parts.append(text)
                continue
            claude_role = "assistant" if role == "assistant" else "user"
            # The Messages API rejects two consecutive turns with the same role.
            if turns and turns[-1]["role"] == claude_role:
                turns[-1]["content"] = f"{turns[-1]['content']}\n\n{text}"
                continue
            turns.append({"role": claude_role, "content": text})
        if not turns or turns[0]["role"] != "user":
            turns.insert(0, {"role": "user", "content": "(continue)"})
        payload: dict[str, Any] = {
            "model": cfg.model_name,
            "max_tokens": cfg.max_output_tokens or DEFAULT_MAX_TOKENS,
            "messages": turns,
            "stream": stream,
        }
        if system_parts:
            payload["system"] = "\n\n".join(system_parts)
        return payload

    def _headers(self, api_key: Optional[str]) -> dict[str, str]:
        key = require_api_key(api_key, self.provider_label)
        return {"x-api-key": key, "anthropic-version": self._api_version}

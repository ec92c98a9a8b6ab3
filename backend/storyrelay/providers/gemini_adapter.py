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


class GeminiAdapter(HTTPProviderAdapter):
    """Adapter for the Google Gemini API."""

    provider_label = "Gemini"
    length_finish_reasons = frozenset({"MAX_TOKENS"})

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        url = self._join_url(cfg.base_url, "/v1beta/models")
        data = await self._request_json("GET", url, headers=self._auth_headers(cfg.api_key))
        models = [item.get("name") for item in data.get("models", []) if item.get("name")]
        if not models:
            raise ProviderError("PROVIDER_NO_MODELS", "No models returned by provider.")
        return models

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        model_name = self._normalize_model(cfg.model_name)
        url = self._join_url(cfg.base_url, f"/v1beta/{model_name}:generateContent")
        payload = self._build_payload(messages, cfg.model_name, cfg.max_output_tokens)
        data = await self._request_json(
            "POST", url, headers=self._auth_headers(cfg.api_key), json=payload
        )
        if data.get("error"):
            raise build_payload_error(data["error"])
        delta = self.decode_stream_payload(data)
        finish_reason = delta.finish_reason if delta else None
        if delta is None or not delta.text.strip():
            raise empty_completion_error(finish_reason, self.length_finish_reasons)
        usage = data.get("usageMetadata") or {}
        return LLMResult(
            content=delta.text,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=self._get_int(usage, "promptTokenCount"),
            token_out=self._get_int(usage, "candidatesTokenCount"),
            finish_reason=finish_reason,
        )

    def decode_stream_payload(self, payload: dict[str, Any]) -> Optional[StreamDelta]:
        if payload.get("error"):
            raise build_payload_error(payload["error"])
        candidates = payload.get("candidates") or []
        if not candidates or not isinstance(candidates[0], dict):
            block_reason = (payload.get("promptFeedback") or {}).get("blockReason")
            return StreamDelta(finish_reason=block_reason) if block_reason else None
        candidate = candidates[0]
        parts = (candidate.get("content") or {}).get("parts") or []
        # Thought summaries are flagged parts and never part of the narrative.
        text = "".join(
            part.get("text") or ""
            for part in parts
            if isinstance(part, dict) and not part.get("thought")
        )
        return StreamDelta(text=text, finish_reason=candidate.get("finishReason"))

    def _stream_request(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        model_name = self._normalize_model(cfg.model_name)
        url = self._join_url(cfg.base_url, f"/v1beta/{model_name}:streamGenerateContent")
        payload = self._build_payload(messages, cfg.model_name, cfg.max_output_tokens)
        return f"{url}?alt=sse", self._auth_headers(cfg.api_key), payload

    @staticmethod
    def _normalize_model(model_name: str) -> str:
        if model_name.startswith("models/"):
            return model_name
        return f"models/{model_name}"

    @staticmethod
    def _generation_config(model_name: str, max_output_tokens: Optional[int]) -> dict[str, Any]:
        config: dict[str, Any] = {}
        if max_output_tokens:
            config["maxOutputTokens"] = max_output_tokens
        if "gemini-3" in model_name:
            config["thinkingConfig"] = {"thinkingLevel": "low"}
        elif "gemini-2.5" in model_name:
            config["thinkingConfig"] = {"thinkingBudget": 1024}
        return config

    @classmethod
    def _build_payload(
        cls, messages: list[dict], model_name: str, max_output_tokens: Optional[int]
    ) -> dict[str, Any]:
        system_parts: list[str] = []
        contents: list[dict[str, Any]] = []
        for message in messages:
            role = message.get("role")
            text = message.get("content", "")
            if role == "system":
                if text:
                    system_parts.append(text)
                continue
            gemini_role = "user" if role == "user" else "model"
            contents.append({"role": gemini_role, "parts": [{"text": text}]})
        payload: dict[str, Any] = {
            "contents": contents or [{"role": "user", "parts": [{"text": ""}]}]
        }
        if system_parts:
            payload["system_instruction"] = {"parts": [{"text": "\n\n".join(system_parts)}]}
        generation_config = cls._generation_config(model_name, max_output_tokens)
        if generation_config:
            payload["generationConfig"] = generation_config
        return payload

    def _auth_headers(self, api_key: Optional[str]) -> dict[str, str]:
        key = require_api_key(api_key, self.provider_label)
        return {"x-goog-api-key": key}

from __future__ import annotations

import json
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, AsyncIterator, Optional, Protocol

import httpx


@dataclass
class ProviderRuntimeConfig:
    """Runtime configuration needed by an LLM adapter."""

    provider: str
    model_name: str
    base_url: str | None = None
    api_key: str | None = None
    max_output_tokens: int | None = None


@dataclass
class LLMResult:
    """Result returned from a non-streaming generation call."""

    content: str
    model_provider: str
    model_name: str
    token_in: int | None = None
    token_out: int | None = None
    finish_reason: str | None = None


@dataclass
class StreamDelta:
    """One decoded provider stream record."""

    text: str = ""
    finish_reason: str | None = None


class LLMAdapter(Protocol):
    """Adapter interface for LLM providers."""

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        """List available models for the provider."""

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        """Generate a complete response from the provider."""

    def stream(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> AsyncIterator[str]:
        """Stream normalized text deltas from the provider."""


class ProviderError(RuntimeError):
    """Raised when a provider operation fails."""

    def __init__(
        self,
        code: str,
        message: str,
        retryable: bool = False,
        status_code: int | None = None,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.retryable = retryable
        self.status_code = status_code


_AUTH_HINTS = ("auth", "api_key", "api key", "permission", "forbidden", "401", "403")
_RATE_HINTS = ("rate_limit", "rate limit", "quota", "resource_exhausted", "429")


def build_status_error(response: httpx.Response) -> ProviderError:
    """Build a normalized provider error from an HTTP response."""

    status = response.status_code
    message = _extract_response_message(response)
    formatted = f"Provider returned {status}: {message}"
    if status in {401, 403}:
        return ProviderError("PROVIDER_AUTH", formatted, status_code=status)
    if status in {408, 429}:
        code = "PROVIDER_TIMEOUT" if status == 408 else "PROVIDER_RATE_LIMIT"
        return ProviderError(code, formatted, retryable=True, status_code=status)
    if status >= 500:
        return ProviderError(
            "PROVIDER_UPSTREAM",
            formatted,
            retryable=True,
            status_code=status,
        )
    return ProviderError("PROVIDER_BAD_STATUS", formatted, status_code=status)


def build_payload_error(error: Any) -> ProviderError:
    """Normalize an error record delivered inside a provider stream."""

    if isinstance(error, dict):
        message = error.get("message") or error.get("status") or error.get("type")
        kind = " ".join(
            str(error.get(key) or "") for key in ("type", "code", "status")
        ).lower()
    else:
        message = error
        kind = str(error or "").lower()
    text = str(message or "").strip() or "Provider reported an error."
    if any(hint in kind for hint in _AUTH_HINTS):
        return ProviderError("PROVIDER_AUTH", text)
    if any(hint in kind for hint in _RATE_HINTS):
        return ProviderError("PROVIDER_RATE_LIMIT", text, retryable=True)
    return ProviderError("PROVIDER_UPSTREAM", text, retryable=True)


def empty_completion_error(
    finish_reason: Optional[str], length_finish_reasons: frozenset[str]
) -> ProviderError:
    """Build the error for a completion that carried no text."""

    if finish_reason and finish_reason in length_finish_reasons:
        return ProviderError(
            "EMPTY_COMPLETION_LENGTH",
            "The model reached its output length limit before writing any text. "
            "Try a different model.",
        )
    detail = f" (finish reason: {finish_reason})" if finish_reason else ""
    return ProviderError("EMPTY_COMPLETION", f"The model returned an empty response{detail}.")


def require_api_key(api_key: Optional[str], provider_name: str) -> str:
    """Return an API key or raise a normalized configuration error."""

    if api_key:
        return api_key
    raise ProviderError("API_KEY_REQUIRED", f"API key is required for {provider_name}.")


def _extract_response_message(response: httpx.Response) -> str:
    """Extract a concise error message from provider JSON/text payloads."""

    try:
        payload: Any = response.json()
    except ValueError:
        return (response.text or "Unknown error from provider.").strip()

    if isinstance(payload, list) and payload and isinstance(payload[0], dict):
        payload = payload[0]
    if isinstance(payload, dict):
        error = payload.get("error")
        if isinstance(error, dict):
            detail = error.get("message") or error.get("code")
            if isinstance(detail, str) and detail.strip():
                return detail.strip()
        if isinstance(error, str) and error.strip():
            return error.strip()
        message = payload.get("message")
        if isinstance(message, str) and message.strip():
            return message.strip()
    return (response.text or "Unknown error from provider.").strip()


class HTTPProviderAdapter:
    """Shared HTTP behavior for provider adapters."""

    provider_label = "provider"
    length_finish_reasons: frozenset[str] = frozenset()

    def __init__(
        self, timeout_sec: float = 90, http_client: Optional[httpx.AsyncClient] = None
    ) -> None:
        self._timeout = timeout_sec
        self._client = http_client

    async def stream(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> AsyncIterator[str]:
        url, headers, payload = self._stream_request(cfg, messages)
        produced = False
        finish_reason: Optional[str] = None
        async for data in self._iter_sse("POST", url, headers=headers, json=payload):
            delta = self._decode_stream_data(data)
            if delta is None:
                continue
            if delta.finish_reason:
                finish_reason = delta.finish_reason
            if delta.text:
                produced = True
                yield delta.text
        if not produced:
            raise empty_completion_error(finish_reason, self.length_finish_reasons)

    def decode_stream_payload(self, payload: dict[str, Any]) -> Optional[StreamDelta]:
        """Map one provider-native stream record onto a text delta."""

        raise NotImplementedError

    def _stream_request(
        self, cfg: ProviderRuntimeConfig, messages: list[dict]
    ) -> tuple[str, dict[str, str], dict[str, Any]]:
        raise NotImplementedError

    def _decode_stream_data(self, data: str) -> Optional[StreamDelta]:
        if data == "[DONE]":
            return None
        try:
            payload = json.loads(data)
        except json.JSONDecodeError as exc:
            raise ProviderError(
                "PROVIDER_PARSE_ERROR", "Malformed stream record from provider."
            ) from exc
        if not isinstance(payload, dict):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider stream record is not an object.")
        return self.decode_stream_payload(payload)

    async def _iter_sse(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> AsyncIterator[str]:
        """Yield the payload of each `data:` line of an event stream."""

        try:
            async with self._open_stream(method, url, headers=headers, json=json) as response:
                if response.status_code >= 400:
                    await response.aread()
                    raise build_status_error(response)
                async for line in response.aiter_lines():
                    if not line.startswith("data:"):
                        continue
                    data = line[len("data:"):].strip()
                    if data:
                        yield data
        except httpx.TimeoutException as exc:
            raise ProviderError(
                "PROVIDER_TIMEOUT", "Provider stream timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                "PROVIDER_CONNECTION_ERROR",
                "Provider connection dropped.",
                retryable=True,
            ) from exc

    @asynccontextmanager
    async def _open_stream(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> AsyncIterator[httpx.Response]:
        if self._client:
            async with self._client.stream(
                method, url, headers=headers, json=json, timeout=self._timeout
            ) as response:
                yield response
            return
        async with httpx.AsyncClient(timeout=self._timeout) as client:
            async with client.stream(method, url, headers=headers, json=json) as response:
                yield response

    async def _request_json(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        response = await self._request(method, url, headers=headers, json=json)
        try:
            payload = response.json()
        except ValueError as exc:
            raise ProviderError("PROVIDER_PARSE_ERROR", "Invalid JSON from provider.") from exc
        if not isinstance(payload, dict):
            raise ProviderError("PROVIDER_PARSE_ERROR", "Provider returned invalid JSON payload.")
        return payload

    async def _request(
        self,
        method: str,
        url: str,
        headers: Optional[dict[str, str]] = None,
        json: Optional[dict[str, Any]] = None,
    ) -> httpx.Response:
        try:
            if self._client:
                response = await self._client.request(
                    method, url, headers=headers, json=json, timeout=self._timeout
                )
            else:
                async with httpx.AsyncClient(timeout=self._timeout) as client:
                    response = await client.request(method, url, headers=headers, json=json)
        except httpx.TimeoutException as exc:
            raise ProviderError(
                "PROVIDER_TIMEOUT", "Provider request timed out.", retryable=True
            ) from exc
        except httpx.RequestError as exc:
            raise ProviderError(
                "PROVIDER_CONNECTION_ERROR",
                "Provider connection failed.",
                retryable=True,
            ) from exc
        if response.status_code >= 400:
            raise build_status_error(response)
        return response

    def _join_url(self, base_url: Optional[str], path: str) -> str:
        if not base_url:
            raise ProviderError(
                "PROVIDER_BASE_URL_MISSING", f"Base URL is required for {self.provider_label}."
            )
        base = base_url.rstrip("/")
        prefix = "/" + path.lstrip("/").split("/", 1)[0]
        if base.endswith(prefix) and path.startswith(prefix + "/"):
            return base + path[len(prefix):]
        return base + path

    @staticmethod
    def _get_int(data: dict[str, Any], key: str) -> Optional[int]:
        value = data.get(key)
        return int(value) if isinstance(value, int) else None

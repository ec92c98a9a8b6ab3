from __future__ import annotations

import json

import httpx
import pytest

from storyrelay.providers.base import ProviderError, ProviderRuntimeConfig
from storyrelay.providers.claude_adapter import ClaudeAdapter
from storyrelay.providers.gemini_adapter import GeminiAdapter
from storyrelay.providers.grok_adapter import GrokAdapter
from storyrelay.providers.openai_adapter import OpenAIAdapter

MESSAGES = [
    {"role": "system", "content": "You narrate."},
    {"role": "user", "content": "Open the gate."},
]


def _sse(*records: object) -> bytes:
    lines = []
    for record in records:
        payload = record if isinstance(record, str) else json.dumps(record)
        lines.append(f"data: {payload}\n\n")
    return "".join(lines).encode("utf-8")


def _event_stream(body: bytes) -> httpx.Response:
    return httpx.Response(200, content=body, headers={"content-type": "text/event-stream"})


async def _collect(adapter, cfg: ProviderRuntimeConfig) -> list[str]:
    return [delta async for delta in adapter.stream(cfg, MESSAGES)]


def _cfg(provider: str, model: str, base_url: str, api_key: str | None = "sk-test") -> ProviderRuntimeConfig:
    return ProviderRuntimeConfig(
        provider=provider,
        model_name=model,
        base_url=base_url,
        api_key=api_key,
        max_output_tokens=512,
    )


@pytest.mark.anyio
async def test_openai_adapter_streams_deltas():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["auth"] = request.headers.get("authorization")
        seen["payload"] = json.loads(request.content)
        return _event_stream(
            _sse(
                {"choices": [{"delta": {"role": "assistant"}, "finish_reason": None}]},
                {"choices": [{"delta": {"content": "Hel"}, "finish_reason": None}]},
                {"choices": [{"delta": {"content": "lo"}, "finish_reason": "stop"}]},
                {"choices": [], "usage": {"prompt_tokens": 3}},
                "[DONE]",
            )
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = OpenAIAdapter(http_client=client)
        deltas = await _collect(adapter, _cfg("chatgpt", "gpt-4o", "https://api.openai.com"))

    assert deltas == ["Hel", "lo"]
    assert seen["path"] == "/v1/chat/completions"
    assert seen["auth"] == "Bearer sk-test"
    assert seen["payload"]["stream"] is True
    assert seen["payload"]["max_completion_tokens"] == 512
    assert seen["payload"]["messages"][0] == {"role": "system", "content": "You narrate."}


@pytest.mark.anyio
async def test_openai_adapter_reports_length_limited_empty_completion():
    def handler(request: httpx.Request) -> httpx.Response:
        return _event_stream(
            _sse({"choices": [{"delta": {}, "finish_reason": "length"}]}, "[DONE]")
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = OpenAIAdapter(http_client=client)
        with pytest.raises(ProviderError) as excinfo:
            await _collect(adapter, _cfg("chatgpt", "gpt-4o", "https://api.openai.com"))

    assert excinfo.value.code == "EMPTY_COMPLETION_LENGTH"


@pytest.mark.anyio
async def test_openai_adapter_maps_in_band_rate_limit_error():
    def handler(request: httpx.Request) -> httpx.Response:
        return _event_stream(
            _sse({"error": {"message": "Rate limit reached", "type": "rate_limit_error"}})
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = OpenAIAdapter(http_client=client)
        with pytest.raises(ProviderError) as excinfo:
            await _collect(adapter, _cfg("chatgpt", "gpt-4o", "https://api.openai.com"))

    assert excinfo.value.code == "PROVIDER_RATE_LIMIT"
    assert excinfo.value.message == "Rate limit reached"


@pytest.mark.anyio
async def test_stream_status_errors_are_normalized():
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(401, json={"error": {"message": "Invalid API key"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = OpenAIAdapter(http_client=client)
        with pytest.raises(ProviderError) as excinfo:
            await _collect(adapter, _cfg("chatgpt", "gpt-4o", "https://api.openai.com"))

    assert excinfo.value.code == "PROVIDER_AUTH"
    assert "Invalid API key" in excinfo.value.message
    assert excinfo.value.status_code == 401


@pytest.mark.anyio
async def test_stream_timeout_and_malformed_records():
    def timeout_handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    async with httpx.AsyncClient(transport=httpx.MockTransport(timeout_handler)) as client:
        adapter = OpenAIAdapter(http_client=client)
        with pytest.raises(ProviderError) as excinfo:
            await _collect(adapter, _cfg("chatgpt", "gpt-4o", "https://api.openai.com"))
    assert excinfo.value.code == "PROVIDER_TIMEOUT"

    def malformed_handler(request: httpx.Request) -> httpx.Response:
        return _event_stream(b"data: {not json\n\n")

    async with httpx.AsyncClient(transport=httpx.MockTransport(malformed_handler)) as client:
        adapter = OpenAIAdapter(http_client=client)
        with pytest.raises(ProviderError) as excinfo:
            await _collect(adapter, _cfg("chatgpt", "gpt-4o", "https://api.openai.com"))
    assert excinfo.value.code == "PROVIDER_PARSE_ERROR"


@pytest.mark.anyio
async def test_missing_api_key_fails_before_network():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(500)

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = ClaudeAdapter(http_client=client)
        with pytest.raises(ProviderError) as excinfo:
            await _collect(adapter, _cfg("claude", "claude-test", "https://api.anthropic.com", None))

    assert excinfo.value.code == "API_KEY_REQUIRED"
    assert calls == []


@pytest.mark.anyio
async def test_grok_adapter_generate_uses_max_tokens():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["payload"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "choices": [{"message": {"content": "hello from grok"}, "finish_reason": "stop"}],
                "usage": {"prompt_tokens": 5, "completion_tokens": 7},
            },
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = GrokAdapter(http_client=client)
        result = await adapter.generate(
            _cfg("grok", "grok-beta", "https://api.x.ai", "xai-test"), MESSAGES
        )

    assert result.content == "hello from grok"
    assert result.token_in == 5
    assert result.token_out == 7
    assert seen["url"] == "https://api.x.ai/v1/chat/completions"
    assert seen["payload"]["max_tokens"] == 512
    assert seen["payload"]["stream"] is False


@pytest.mark.anyio
async def test_claude_adapter_streams_text_deltas():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["headers"] = request.headers
        seen["payload"] = json.loads(request.content)
        body = (
            "event: message_start\n"
            'data: {"type": "message_start", "message": {}}\n\n'
            "event: content_block_delta\n"
            'data: {"type": "content_block_delta", "index": 0, '
            '"delta": {"type": "text_delta", "text": "Once"}}\n\n'
            "event: ping\n"
            'data: {"type": "ping"}\n\n'
            "event: content_block_delta\n"
            'data: {"type": "content_block_delta", "index": 0, '
            '"delta": {"type": "text_delta", "text": " upon"}}\n\n'
            "event: message_delta\n"
            'data: {"type": "message_delta", "delta": {"stop_reason": "end_turn"}}\n\n'
            "event: message_stop\n"
            'data: {"type": "message_stop"}\n\n'
        )
        return _event_stream(body.encode("utf-8"))

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = ClaudeAdapter(http_client=client, api_version="2023-06-01")
        deltas = await _collect(
            adapter, _cfg("claude", "claude-test", "https://api.anthropic.com", "sk-ant-test")
        )

    assert deltas == ["Once", " upon"]
    assert seen["headers"]["x-api-key"] == "sk-ant-test"
    assert seen["headers"]["anthropic-version"] == "2023-06-01"
    assert seen["payload"]["system"] == "You narrate."
    assert seen["payload"]["messages"] == [{"role": "user", "content": "Open the gate."}]
    assert seen["payload"]["max_tokens"] == 512


@pytest.mark.anyio
async def test_claude_adapter_maps_overloaded_event():
    def handler(request: httpx.Request) -> httpx.Response:
        return _event_stream(
            _sse({"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}})
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = ClaudeAdapter(http_client=client)
        with pytest.raises(ProviderError) as excinfo:
            await _collect(
                adapter, _cfg("claude", "claude-test", "https://api.anthropic.com", "sk-ant-test")
            )

    assert excinfo.value.code == "PROVIDER_UPSTREAM"
    assert excinfo.value.retryable is True


@pytest.mark.anyio
async def test_claude_adapter_list_models():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.path == "/v1/models"
        return httpx.Response(200, json={"data": [{"id": "claude-a"}, {"id": "claude-b"}]})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = ClaudeAdapter(http_client=client)
        models = await adapter.list_models(
            _cfg("claude", "", "https://api.anthropic.com", "sk-ant-test")
        )

    assert models == ["claude-a", "claude-b"]


@pytest.mark.anyio
async def test_gemini_adapter_streams_and_skips_thoughts():
    seen: dict = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["path"] = request.url.path
        seen["alt"] = request.url.params.get("alt")
        seen["key_header"] = request.headers.get("x-goog-api-key")
        seen["query_key"] = request.url.params.get("key")
        seen["payload"] = json.loads(request.content)
        return _event_stream(
            _sse(
                {
                    "candidates": [
                        {
                            "content": {
                                "parts": [
                                    {"text": "planning...", "thought": True},
                                    {"text": "The moon"},
                                ]
                            }
                        }
                    ]
                },
                {
                    "candidates": [
                        {"content": {"parts": [{"text": " rises."}]}, "finishReason": "STOP"}
                    ]
                },
            )
        )

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = GeminiAdapter(http_client=client)
        deltas = await _collect(
            adapter,
            _cfg(
                "gemini",
                "gemini-2.5-flash",
                "https://generativelanguage.googleapis.com",
                "AIza-test",
            ),
        )

    assert deltas == ["The moon", " rises."]
    assert seen["path"] == "/v1beta/models/gemini-2.5-flash:streamGenerateContent"
    assert seen["alt"] == "sse"
    assert seen["key_header"] == "AIza-test"
    assert seen["query_key"] is None
    assert seen["payload"]["system_instruction"] == {"parts": [{"text": "You narrate."}]}
    assert seen["payload"]["generationConfig"]["thinkingConfig"] == {"thinkingBudget": 1024}
    assert seen["payload"]["generationConfig"]["maxOutputTokens"] == 512


@pytest.mark.anyio
async def test_gemini_adapter_reports_max_tokens_and_blocked_prompts():
    def length_handler(request: httpx.Request) -> httpx.Response:
        return _event_stream(
            _sse({"candidates": [{"content": {"parts": []}, "finishReason": "MAX_TOKENS"}]})
        )

    cfg = _cfg("gemini", "gemini-3-pro", "https://generativelanguage.googleapis.com", "AIza-test")
    async with httpx.AsyncClient(transport=httpx.MockTransport(length_handler)) as client:
        with pytest.raises(ProviderError) as excinfo:
            await _collect(GeminiAdapter(http_client=client), cfg)
    assert excinfo.value.code == "EMPTY_COMPLETION_LENGTH"

    def blocked_handler(request: httpx.Request) -> httpx.Response:
        return _event_stream(_sse({"promptFeedback": {"blockReason": "SAFETY"}}))

    async with httpx.AsyncClient(transport=httpx.MockTransport(blocked_handler)) as client:
        with pytest.raises(ProviderError) as excinfo:
            await _collect(GeminiAdapter(http_client=client), cfg)
    assert excinfo.value.code == "EMPTY_COMPLETION"
    assert "SAFETY" in excinfo.value.message


@pytest.mark.anyio
async def test_gemini_adapter_generate_and_list_models():
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path == "/v1beta/models":
            return httpx.Response(200, json={"models": [{"name": "models/gemini-test"}]})
        if request.url.path == "/v1beta/models/gemini-test:generateContent":
            payload = json.loads(request.content)
            assert "thinkingConfig" not in payload.get("generationConfig", {})
            return httpx.Response(
                200,
                json={
                    "candidates": [{"content": {"parts": [{"text": "hello from gemini"}]}}],
                    "usageMetadata": {"promptTokenCount": 2, "candidatesTokenCount": 3},
                },
            )
        return httpx.Response(404, json={"error": {"message": "not found"}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
        adapter = GeminiAdapter(http_client=client)
        cfg = _cfg("gemini", "gemini-test", "https://generativelanguage.googleapis.com", "AIza-test")
        assert await adapter.list_models(cfg) == ["models/gemini-test"]
        result = await adapter.generate(cfg, MESSAGES)

    assert result.content == "hello from gemini"
    assert result.token_in == 2
    assert result.token_out == 3

import asyncio
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

import httpx
import pytest

from storyrelay.core.config import get_settings
from storyrelay.db.base import init_db
from storyrelay.main import create_app
from storyrelay.providers.base import LLMResult, ProviderError, ProviderRuntimeConfig

ACCOUNT_KEY_VARS = ("GEMINI_API_KEY", "OPENAI_API_KEY", "ANTHROPIC_API_KEY", "XAI_API_KEY")


@pytest.fixture
def stub_adapter():
    return StubAdapter()


@pytest.fixture
def app(tmp_path, monkeypatch, stub_adapter):
    db_path = tmp_path / "test_storyrelay.db"
    monkeypatch.setenv("DB_URL", f"sqlite+aiosqlite:///{db_path}")
    monkeypatch.setenv("APP_SECRET_KEY", "test-secret")
    monkeypatch.setenv("DEFAULT_PROVIDER", "gemini")
    for name in ACCOUNT_KEY_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("GEMINI_API_KEY", "AIza-test-account-key")
    get_settings.cache_clear()
    app = create_app()
    app.state.provider_service.set_adapters({"gemini": stub_adapter, "claude": stub_adapter})
    return app


@pytest.fixture
async def client(app):
    await init_db(app.state.engine)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
    await app.state.compaction_scheduler.shutdown()
    await app.state.engine.dispose()
    get_settings.cache_clear()


@pytest.fixture
def anyio_backend():
    return "asyncio"


async def create_conversation(client, story_id: str = "story-1", system_prompt: str = "You narrate.") -> str:
    response = await client.post(
        "/api/conversation/create",
        json={"storyId": story_id, "title": "Test Story", "systemPrompt": system_prompt},
    )
    assert response.status_code == 200
    return response.json()["conversation"]["id"]


async def stream_turn(client, conversation_id: str, message: str = "Look around.", story_id: str = "story-1"):
    response = await client.post(
        "/api/chat/stream",
        json={"conversationId": conversation_id, "storyId": story_id, "userMessage": message},
    )
    return response, parse_events(response.text)


def parse_events(body: str) -> list[dict]:
    events = []
    for line in body.splitlines():
        if line.startswith("data: "):
            events.append(json.loads(line[len("data: "):]))
    return events


class StubAdapter:
    """Adapter stub used to avoid external API calls in tests."""

    def __init__(self) -> None:
        self.deltas: list[str] = ["The gate ", "creaks ", "open."]
        self.stream_error: ProviderError | None = None
        self.reply = '{"summary": "The hero entered the city.", "keyPlotPoints": ["Entered the city"]}'
        self.generate_error: ProviderError | None = None
        self.stream_calls: list[list[dict]] = []
        self.generate_calls: list[list[dict]] = []
        self.gate: asyncio.Event | None = None
        self.closed_early = 0

    async def list_models(self, cfg: ProviderRuntimeConfig) -> list[str]:
        return [cfg.model_name or "stub-model", "stub-model"]

    async def generate(self, cfg: ProviderRuntimeConfig, messages: list[dict]) -> LLMResult:
        self.generate_calls.append(messages)
        if self.generate_error:
            raise self.generate_error
        return LLMResult(
            content=self.reply,
            model_provider=cfg.provider,
            model_name=cfg.model_name,
            token_in=1,
            token_out=1,
        )

    async def stream(self, cfg: ProviderRuntimeConfig, messages: list[dict]):
        self.stream_calls.append(messages)
        try:
            if self.gate is not None:
                await self.gate.wait()
            for delta in self.deltas:
                yield delta
            if self.stream_error:
                raise self.stream_error
        except GeneratorExit:
            self.closed_early += 1
            raise

from __future__ import annotations

import pytest
from sqlalchemy import select

from conftest import create_conversation, stream_turn
from storyrelay.core.config import Settings
from storyrelay.db.models import ProviderConfig
from storyrelay.providers.base import ProviderError
from storyrelay.services.provider_service import ProviderService
from storyrelay.utils.crypto import CredentialCipher


def _settings(**values) -> Settings:
    values.setdefault("APP_SECRET_KEY", "test-secret")
    return Settings(_env_file=None, **values)


@pytest.mark.anyio
async def test_resolve_uses_default_provider_account_key(app, client):
    conversation_id = await create_conversation(client)

    _, cfg = await app.state.provider_service.resolve(conversation_id)

    assert cfg.provider == "gemini"
    assert cfg.api_key == "AIza-test-account-key"
    assert cfg.model_name
    assert cfg.base_url == "https://generativelanguage.googleapis.com"


@pytest.mark.anyio
async def test_conversation_override_stores_encrypted_key(app, client):
    conversation_id = await create_conversation(client)

    response = await client.post(
        f"/api/provider/{conversation_id}/set",
        json={"provider": "claude", "apiKey": "sk-ant-secret", "modelName": "claude-test"},
    )

    assert response.status_code == 200
    assert response.json() == {"provider": "claude", "modelName": "claude-test"}
    async with app.state.sessionmaker() as db:
        row = (await db.execute(select(ProviderConfig))).scalar_one()
    assert row.api_key_encrypted != "sk-ant-secret"
    assert CredentialCipher("test-secret").decrypt(row.api_key_encrypted) == "sk-ant-secret"

    _, cfg = await app.state.provider_service.resolve(conversation_id)
    assert (cfg.provider, cfg.model_name, cfg.api_key) == ("claude", "claude-test", "sk-ant-secret")

    _, events = await stream_turn(client, conversation_id)
    assert events[-1]["savedMessage"]["modelProvider"] == "claude"
    assert events[-1]["savedMessage"]["modelName"] == "claude-test"

    response = await client.get(f"/api/provider/{conversation_id}/models")
    assert response.json()["provider"] == "claude"
    assert "stub-model" in response.json()["models"]


@pytest.mark.anyio
async def test_override_without_any_key_is_rejected(app, client, stub_adapter):
    conversation_id = await create_conversation(client)
    app.state.provider_service.set_adapters({"gemini": stub_adapter, "grok": stub_adapter})

    response = await client.post(f"/api/provider/{conversation_id}/set", json={"provider": "grok"})

    assert response.status_code == 400
    assert response.json() == {"error": "API key is required for grok."}

    response = await client.post("/api/provider/missing/set", json={"provider": "gemini"})
    assert response.status_code == 404


@pytest.mark.anyio
async def test_override_rejects_unknown_model(app, client, stub_adapter):
    conversation_id = await create_conversation(client)

    async def list_models(cfg):
        return ["models/gemini-known"]

    stub_adapter.list_models = list_models

    response = await client.post(
        f"/api/provider/{conversation_id}/set",
        json={"provider": "gemini", "modelName": "gemini-unknown"},
    )
    assert response.status_code == 400

    response = await client.post(
        f"/api/provider/{conversation_id}/set",
        json={"provider": "gemini", "modelName": "gemini-known"},
    )
    assert response.status_code == 200


@pytest.mark.anyio
async def test_resolve_falls_back_to_other_account_key(app, client, stub_adapter):
    conversation_id = await create_conversation(client)
    service = ProviderService(
        app.state.sessionmaker,
        _settings(DEFAULT_PROVIDER="chatgpt", GEMINI_API_KEY="gemini-account"),
        adapters={"gemini": stub_adapter, "chatgpt": stub_adapter},
    )

    _, cfg = await service.resolve(conversation_id)

    assert (cfg.provider, cfg.api_key) == ("gemini", "gemini-account")


@pytest.mark.anyio
async def test_resolve_without_credentials_fails(app, client, stub_adapter):
    conversation_id = await create_conversation(client)
    service = ProviderService(
        app.state.sessionmaker,
        _settings(GEMINI_API_KEY=""),
        adapters={"gemini": stub_adapter, "claude": stub_adapter},
    )

    with pytest.raises(ProviderError) as exc_info:
        await service.resolve(conversation_id)

    assert exc_info.value.code == "CREDENTIAL_MISSING"


@pytest.mark.anyio
async def test_models_endpoint_for_explicit_provider(client):
    conversation_id = await create_conversation(client)

    response = await client.get(f"/api/provider/{conversation_id}/models?provider=gemini")
    assert response.status_code == 200
    assert response.json()["provider"] == "gemini"
    assert "stub-model" in response.json()["models"]

    response = await client.get(f"/api/provider/{conversation_id}/models?provider=claude")
    assert response.status_code == 400

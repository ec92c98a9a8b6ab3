from __future__ import annotations

import logging
import uuid
from typing import Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyrelay.core.config import Settings, get_settings
from storyrelay.db.models import ProviderConfig
from storyrelay.providers.base import LLMAdapter, ProviderError, ProviderRuntimeConfig
from storyrelay.providers.claude_adapter import ClaudeAdapter
from storyrelay.providers.gemini_adapter import GeminiAdapter
from storyrelay.providers.grok_adapter import GrokAdapter
from storyrelay.providers.openai_adapter import OpenAIAdapter
from storyrelay.repos.provider_repo import ProviderRepo
from storyrelay.utils.crypto import CredentialCipher

logger = logging.getLogger(__name__)

SUPPORTED_PROVIDERS = ("gemini", "chatgpt", "claude", "grok")


class ProviderService:
    """Resolve provider credentials and give access to adapters."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        settings: Optional[Settings] = None,
        adapters: Optional[dict[str, LLMAdapter]] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._settings = settings or get_settings()
        timeout = self._settings.provider_timeout_sec
        self._adapters = adapters or {
            "gemini": GeminiAdapter(timeout_sec=timeout),
            "chatgpt": OpenAIAdapter(timeout_sec=timeout),
            "claude": ClaudeAdapter(
                timeout_sec=timeout, api_version=self._settings.anthropic_version
            ),
            "grok": GrokAdapter(timeout_sec=timeout),
        }

    def set_adapters(self, adapters: dict[str, LLMAdapter]) -> None:
        """Override adapter registry (useful for tests)."""

        self._adapters = adapters

    async def resolve(self, conversation_id: str) -> tuple[LLMAdapter, ProviderRuntimeConfig]:
        """Return the adapter and credential to use for a conversation.

        Order: the conversation override, then the account key of the same
        provider, then the first other provider holding an account key.
        """

        async with self._sessionmaker() as db:
            override = await ProviderRepo(db).get_by_conversation(conversation_id)

        if override and override.provider in self._adapters:
            api_key = self._decrypt_key(override.api_key_encrypted) or self._settings.account_api_key(
                override.provider
            )
            if api_key:
                return self._adapters[override.provider], self._runtime_config(
                    override.provider,
                    api_key,
                    model_name=override.model_name,
                    base_url=override.base_url,
                )

        preferred = override.provider if override else self._settings.default_provider.strip().lower()
        order = [preferred] + [name for name in SUPPORTED_PROVIDERS if name != preferred]
        for provider in order:
            if provider not in self._adapters:
                continue
            api_key = self._settings.account_api_key(provider)
            if api_key:
                if override and provider != override.provider:
                    logger.info(
                        "Falling back to account credential conversation=%s provider=%s",
                        conversation_id,
                        provider,
                    )
                return self._adapters[provider], self._runtime_config(provider, api_key)

        raise ProviderError(
            "CREDENTIAL_MISSING", "No API key is configured for any supported provider."
        )

    async def set_provider(
        self,
        conversation_id: str,
        provider: str,
        api_key: Optional[str],
        base_url: Optional[str],
        model_name: Optional[str],
    ) -> ProviderConfig:
        """Store a conversation override after validating it against the provider."""

        provider = self._normalize_provider(provider)
        adapter = self._get_adapter(provider)
        async with self._sessionmaker() as db:
            repo = ProviderRepo(db)
            existing = await repo.get_by_conversation(conversation_id)
            encrypted_key = self._resolve_api_key(provider, api_key, existing)
            runtime_cfg = self._runtime_config(
                provider,
                self._decrypt_key(encrypted_key) or self._settings.account_api_key(provider),
                model_name=model_name,
                base_url=base_url,
            )
            if model_name:
                models = self._normalize_models(await adapter.list_models(runtime_cfg))
                if not self._model_available(model_name, models):
                    raise ProviderError(
                        "PROVIDER_MODEL_INVALID", "Selected model is not available."
                    )

            config = await repo.upsert_config(
                config_id=existing.id if existing else uuid.uuid4().hex,
                conversation_id=conversation_id,
                provider=provider,
                base_url=base_url or None,
                api_key_encrypted=encrypted_key,
                model_name=model_name or None,
            )
            await db.commit()
            return config

    async def list_models(self, conversation_id: str, provider: Optional[str] = None) -> list[str]:
        """Fetch available models for a provider using the conversation credential."""

        async with self._sessionmaker() as db:
            override = await ProviderRepo(db).get_by_conversation(conversation_id)

        name = self._normalize_provider(provider) if provider else self._selected(override)
        adapter = self._get_adapter(name)

        api_key: Optional[str] = None
        base_url: Optional[str] = None
        if override and override.provider == name:
            api_key = self._decrypt_key(override.api_key_encrypted)
            base_url = override.base_url
        api_key = api_key or self._settings.account_api_key(name)
        if not api_key:
            raise ProviderError("CREDENTIAL_MISSING", f"No API key is configured for {name}.")
        runtime_cfg = self._runtime_config(name, api_key, base_url=base_url)
        return self._normalize_models(await adapter.list_models(runtime_cfg))

    async def selected_provider(self, conversation_id: str) -> str:
        """Return the provider a conversation is configured for."""

        async with self._sessionmaker() as db:
            override = await ProviderRepo(db).get_by_conversation(conversation_id)
        return self._selected(override)

    def _selected(self, override: Optional[ProviderConfig]) -> str:
        if override:
            return override.provider
        return self._normalize_provider(self._settings.default_provider)

    def _runtime_config(
        self,
        provider: str,
        api_key: Optional[str],
        model_name: Optional[str] = None,
        base_url: Optional[str] = None,
    ) -> ProviderRuntimeConfig:
        return ProviderRuntimeConfig(
            provider=provider,
            model_name=model_name or self._settings.default_model(provider),
            base_url=base_url or self._default_base_url(provider),
            api_key=api_key,
            max_output_tokens=self._settings.max_output_tokens,
        )

    def _get_adapter(self, provider: str) -> LLMAdapter:
        adapter = self._adapters.get(provider)
        if not adapter:
            raise ProviderError("PROVIDER_UNSUPPORTED", f"Unsupported provider: {provider}")
        return adapter

    def _default_base_url(self, provider: str) -> str:
        if provider == "gemini":
            return self._settings.gemini_base_url
        if provider == "chatgpt":
            return self._settings.openai_base_url
        if provider == "claude":
            return self._settings.anthropic_base_url
        if provider == "grok":
            return self._settings.xai_base_url
        raise ProviderError("PROVIDER_UNSUPPORTED", f"Unsupported provider: {provider}")

    @staticmethod
    def _normalize_provider(provider: str) -> str:
        normalized = provider.strip().lower()
        if normalized not in SUPPORTED_PROVIDERS:
            raise ProviderError("PROVIDER_UNSUPPORTED", f"Unsupported provider: {provider}")
        return normalized

    @staticmethod
    def _normalize_models(models: list[str]) -> list[str]:
        deduped: list[str] = []
        seen: set[str] = set()
        for model in models:
            candidate = model.strip()
            if not candidate or candidate in seen:
                continue
            seen.add(candidate)
            deduped.append(candidate)
        return deduped

    @staticmethod
    def _model_available(model_name: str, models: list[str]) -> bool:
        # Gemini lists models as "models/<id>" while users pick the bare id.
        return model_name in models or f"models/{model_name}" in models

    def _resolve_api_key(
        self,
        provider: str,
        api_key: Optional[str],
        existing: Optional[ProviderConfig],
    ) -> Optional[str]:
        if api_key:
            return self._encrypt_key(api_key)
        if existing and existing.provider == provider and existing.api_key_encrypted:
            return existing.api_key_encrypted
        if self._settings.account_api_key(provider):
            return None
        raise ProviderError("API_KEY_REQUIRED", f"API key is required for {provider}.")

    def _encrypt_key(self, api_key: str) -> str:
        try:
            cipher = CredentialCipher(self._settings.app_secret_key)
        except ValueError as exc:
            raise ProviderError(
                "APP_SECRET_MISSING", "APP_SECRET_KEY must be set to store API keys."
            ) from exc
        return cipher.encrypt(api_key)

    def _decrypt_key(self, encrypted: Optional[str]) -> Optional[str]:
        if not encrypted:
            return None
        try:
            cipher = CredentialCipher(self._settings.app_secret_key)
            return cipher.decrypt(encrypted)
        except ValueError as exc:
            raise ProviderError("APP_SECRET_MISSING", str(exc)) from exc


def get_provider_service(request: Request) -> ProviderService:
    """Dependency to access the provider service from app state."""

    return request.app.state.provider_service

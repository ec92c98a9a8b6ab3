from __future__ import annotations

from typing import Optional

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from storyrelay.db.models import ProviderConfig
from storyrelay.utils.time_utils import utc_now


class ProviderRepo:
    """Repository for conversation-level provider overrides."""

    def __init__(self, db: AsyncSession) -> None:
        self._db = db

    async def get_by_conversation(self, conversation_id: str) -> Optional[ProviderConfig]:
        """Fetch the provider override for a conversation."""

        result = await self._db.execute(
            select(ProviderConfig).where(ProviderConfig.conversation_id == conversation_id)
        )
        return result.scalar_one_or_none()

    async def upsert_config(
        self,
        config_id: str,
        conversation_id: str,
        provider: str,
        base_url: Optional[str],
        api_key_encrypted: Optional[str],
        model_name: Optional[str],
    ) -> ProviderConfig:
        """Insert or replace the provider override for a conversation."""

        existing = await self.get_by_conversation(conversation_id)
        if existing:
            existing.provider = provider
            existing.base_url = base_url
            existing.api_key_encrypted = api_key_encrypted
            existing.model_name = model_name
            existing.updated_at = utc_now()
            await self._db.flush()
            return existing

        config = ProviderConfig(
            id=config_id,
            conversation_id=conversation_id,
            provider=provider,
            base_url=base_url,
            api_key_encrypted=api_key_encrypted,
            model_name=model_name,
            updated_at=utc_now(),
        )
        self._db.add(config)
        await self._db.flush()
        return config

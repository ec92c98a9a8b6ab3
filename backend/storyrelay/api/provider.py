from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, HTTPException

from storyrelay.api.errors import conversation_status, provider_status
from storyrelay.providers.base import ProviderError
from storyrelay.schemas.provider import (
    ProviderModelsResponse,
    ProviderName,
    ProviderSetRequest,
    ProviderSetResponse,
)
from storyrelay.services.conversation_service import (
    ConversationOperationError,
    ConversationService,
    get_conversation_service,
)
from storyrelay.services.provider_service import ProviderService, get_provider_service

router = APIRouter(prefix="/api/provider", tags=["provider"])


@router.post("/{conversation_id}/set", response_model=ProviderSetResponse)
async def set_provider(
    conversation_id: str,
    payload: ProviderSetRequest,
    conversation_service: ConversationService = Depends(get_conversation_service),
    provider_service: ProviderService = Depends(get_provider_service),
) -> ProviderSetResponse:
    """Store a conversation provider override after validating it."""

    await _require_conversation(conversation_id, conversation_service)
    try:
        config = await provider_service.set_provider(
            conversation_id=conversation_id,
            provider=payload.provider,
            api_key=payload.api_key,
            base_url=payload.base_url,
            model_name=payload.model_name,
        )
    except ProviderError as exc:
        raise HTTPException(status_code=provider_status(exc.code), detail=exc.message) from exc
    return ProviderSetResponse(provider=config.provider, model_name=config.model_name)


@router.get("/{conversation_id}/models", response_model=ProviderModelsResponse)
async def list_models(
    conversation_id: str,
    provider: Optional[ProviderName] = None,
    conversation_service: ConversationService = Depends(get_conversation_service),
    provider_service: ProviderService = Depends(get_provider_service),
) -> ProviderModelsResponse:
    """List available models for a provider."""

    await _require_conversation(conversation_id, conversation_service)
    try:
        models = await provider_service.list_models(conversation_id, provider)
        resolved = provider or await provider_service.selected_provider(conversation_id)
    except ProviderError as exc:
        raise HTTPException(status_code=provider_status(exc.code), detail=exc.message) from exc
    return ProviderModelsResponse(provider=resolved, models=models)


async def _require_conversation(
    conversation_id: str, conversation_service: ConversationService
) -> None:
    try:
        await conversation_service.get_conversation(conversation_id)
    except ConversationOperationError as exc:
        raise HTTPException(status_code=conversation_status(exc.code), detail=exc.message) from exc

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from contextlib import aclosing
from dataclasses import dataclass
from enum import Enum
from typing import Any, AsyncIterator, Iterator, Optional

from fastapi import Request
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyrelay.core.config import Settings, get_settings
from storyrelay.db.models import Turn
from storyrelay.providers.base import (
    ProviderError,
    ProviderRuntimeConfig,
    empty_completion_error,
)
from storyrelay.repos.conversation_repo import ConversationRepo
from storyrelay.repos.memory_repo import MemoryRepo, load_plot_points
from storyrelay.repos.turn_repo import TurnRepo
from storyrelay.schemas.turns import TurnOut
from storyrelay.services.compaction_scheduler import CompactionScheduler
from storyrelay.services.content_extractor import extract_narrative
from storyrelay.services.conversation_service import ConversationOperationError
from storyrelay.services.prompt_builder import PromptBuilder
from storyrelay.services.provider_service import ProviderService
from storyrelay.services.turn_trigger import should_compact
from storyrelay.utils.time_utils import utc_now

logger = logging.getLogger(__name__)


class RelayState(str, Enum):
    """Lifecycle of one streamed turn."""

    IDLE = "idle"
    REQUESTING = "requesting"
    STREAMING = "streaming"
    FINALIZING = "finalizing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class ChatTurnRequest:
    """One user message to relay to the conversation's provider."""

    conversation_id: str
    story_id: str
    user_message: str
    speaker: Optional[str] = None


class ChatStreamService:
    """Relay provider token streams and persist finished exchanges."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        provider_service: ProviderService,
        prompt_builder: PromptBuilder,
        compaction_scheduler: CompactionScheduler,
        settings: Optional[Settings] = None,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._provider_service = provider_service
        self._prompt_builder = prompt_builder
        self._compaction_scheduler = compaction_scheduler
        self._settings = settings or get_settings()
        self._active: dict[str, int] = {}

    def is_streaming(self, conversation_id: str) -> bool:
        """Return True while a turn for the conversation is being relayed."""

        return self._active.get(conversation_id, 0) > 0

    async def stream_turn(self, request: ChatTurnRequest) -> AsyncIterator[dict[str, Any]]:
        """Yield partial events followed by exactly one terminal event.

        Nothing is persisted unless the upstream stream completes with text;
        every failure after this point becomes a terminal error event.
        """

        conversation_id = request.conversation_id
        state = RelayState.IDLE
        cfg: Optional[ProviderRuntimeConfig] = None
        started = time.perf_counter()
        self._active[conversation_id] = self._active.get(conversation_id, 0) + 1
        try:
            try:
                state = RelayState.REQUESTING
                adapter, cfg = await self._provider_service.resolve(conversation_id)
                messages = await self._build_messages(request)

                state = RelayState.STREAMING
                parts: list[str] = []
                async with aclosing(adapter.stream(cfg, messages)) as deltas:
                    async for delta in deltas:
                        if not delta:
                            continue
                        parts.append(delta)
                        for piece in self._split(delta):
                            yield {"text": piece, "done": False}

                state = RelayState.FINALIZING
                raw_text = "".join(parts)
                if not raw_text.strip():
                    raise empty_completion_error(None, frozenset())
                narrative = extract_narrative(raw_text) or raw_text.strip()
                saved = await self._persist(request, narrative, cfg)
                # The exchange is stored from here on, whatever happens to the client.
                state = RelayState.COMPLETED
            except ProviderError as exc:
                state = RelayState.FAILED
                self._log_failure(conversation_id, cfg, started, exc.code, exc.message)
                yield {"error": exc.message}
                return
            except ConversationOperationError as exc:
                state = RelayState.FAILED
                self._log_failure(conversation_id, cfg, started, exc.code, exc.message)
                yield {"error": exc.message}
                return
            except Exception:  # noqa: BLE001
                state = RelayState.FAILED
                logger.exception(
                    "Stream failed conversation=%s provider=%s model=%s elapsed=%.2fs",
                    conversation_id,
                    cfg.provider if cfg else None,
                    cfg.model_name if cfg else None,
                    time.perf_counter() - started,
                )
                yield {"error": "Failed to complete the turn."}
                return

            logger.info(
                "Stream completed conversation=%s provider=%s model=%s chars=%d elapsed=%.2fs",
                conversation_id,
                cfg.provider,
                cfg.model_name,
                len(narrative),
                time.perf_counter() - started,
            )
            yield {
                "text": "",
                "done": True,
                "fullText": raw_text,
                "savedMessage": TurnOut.model_validate(saved).model_dump(by_alias=True, mode="json"),
            }
        except (asyncio.CancelledError, GeneratorExit):
            if state is RelayState.COMPLETED:
                logger.info(
                    "Client left after the turn was saved conversation=%s provider=%s model=%s",
                    conversation_id,
                    cfg.provider if cfg else None,
                    cfg.model_name if cfg else None,
                )
            elif state is not RelayState.FAILED:
                state = RelayState.CANCELLED
                logger.info(
                    "Stream cancelled conversation=%s provider=%s model=%s elapsed=%.2fs",
                    conversation_id,
                    cfg.provider if cfg else None,
                    cfg.model_name if cfg else None,
                    time.perf_counter() - started,
                )
            raise
        finally:
            remaining = self._active.get(conversation_id, 1) - 1
            if remaining > 0:
                self._active[conversation_id] = remaining
            else:
                self._active.pop(conversation_id, None)

    async def _build_messages(self, request: ChatTurnRequest) -> list[dict]:
        async with self._sessionmaker() as db:
            conversation = await ConversationRepo(db).get_conversation(request.conversation_id)
            if not conversation or conversation.story_id != request.story_id:
                raise ConversationOperationError(
                    "CONVERSATION_NOT_FOUND", "Conversation not found."
                )
            memory = await MemoryRepo(db).get_state(request.conversation_id)
            history = await TurnRepo(db).list_recent(
                request.conversation_id, max(1, self._prompt_builder.max_history)
            )
        return self._prompt_builder.build_messages(
            system_prompt=conversation.system_prompt,
            history=history,
            user_message=request.user_message,
            summary=memory.summary_text if memory else "",
            plot_points=load_plot_points(memory) if memory else [],
            speaker=request.speaker,
        )

    async def _persist(
        self, request: ChatTurnRequest, narrative: str, cfg: ProviderRuntimeConfig
    ) -> Turn:
        conversation_id = request.conversation_id
        async with self._sessionmaker() as db:
            async with db.begin():
                conversation = await ConversationRepo(db).get_conversation(conversation_id)
                if not conversation:
                    raise ConversationOperationError(
                        "CONVERSATION_NOT_FOUND", "Conversation not found."
                    )
                turn_repo = TurnRepo(db)
                await turn_repo.add_turn(
                    turn_id=uuid.uuid4().hex,
                    conversation_id=conversation_id,
                    role="user",
                    text=request.user_message,
                    speaker=request.speaker,
                )
                saved = await turn_repo.add_turn(
                    turn_id=uuid.uuid4().hex,
                    conversation_id=conversation_id,
                    role="assistant",
                    text=narrative,
                    model_provider=cfg.provider,
                    model_name=cfg.model_name,
                )
                memory = await MemoryRepo(db).increment_completed(conversation_id)
                conversation.updated_at = utc_now()
            completed = memory.completed_turn_count
            last_compacted = memory.last_compacted_at_turn

        # The task only starts running once this generator yields the terminal event.
        if should_compact(completed, last_compacted, self._settings.compaction_interval):
            logger.info(
                "Compaction triggered conversation=%s completed=%d last_compacted=%d",
                conversation_id,
                completed,
                last_compacted,
            )
            self._compaction_scheduler.schedule(conversation_id)
        return saved

    def _split(self, delta: str) -> Iterator[str]:
        size = self._settings.stream_chunk_chars
        if size <= 0 or len(delta) <= size:
            yield delta
            return
        for start in range(0, len(delta), size):
            yield delta[start : start + size]

    @staticmethod
    def _log_failure(
        conversation_id: str,
        cfg: Optional[ProviderRuntimeConfig],
        started: float,
        code: str,
        message: str,
    ) -> None:
        logger.warning(
            "Stream failed conversation=%s provider=%s model=%s code=%s elapsed=%.2fs: %s",
            conversation_id,
            cfg.provider if cfg else None,
            cfg.model_name if cfg else None,
            code,
            time.perf_counter() - started,
            message,
        )


def get_chat_stream_service(request: Request) -> ChatStreamService:
    """Dependency to access the chat stream service from app state."""

    return request.app.state.chat_stream_service

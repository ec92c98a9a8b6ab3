from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import List

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from storyrelay.providers.base import ProviderError
from storyrelay.repos.conversation_repo import ConversationRepo
from storyrelay.repos.memory_repo import MemoryRepo, load_plot_points
from storyrelay.repos.turn_repo import TurnRepo
from storyrelay.services.conversation_service import ConversationOperationError
from storyrelay.services.memory_summarizer import MemorySummarizer, PriorMemory
from storyrelay.services.provider_service import ProviderService

logger = logging.getLogger(__name__)


@dataclass
class CompactionOutcome:
    """Result of one successful compaction run."""

    previous_summary: str
    summary: str
    plot_points: List[str]
    message_count: int
    compacted_at_turn: int


class CompactionService:
    """Fold un-summarized assistant turns into a conversation's memory."""

    def __init__(
        self,
        sessionmaker: async_sessionmaker[AsyncSession],
        provider_service: ProviderService,
        summarizer: MemorySummarizer,
    ) -> None:
        self._sessionmaker = sessionmaker
        self._provider_service = provider_service
        self._summarizer = summarizer

    async def compact(self, conversation_id: str) -> CompactionOutcome:
        """Run one compaction; on failure the stored memory is left untouched."""

        async with self._sessionmaker() as db:
            conversation = await ConversationRepo(db).get_conversation(conversation_id)
            if not conversation:
                raise ConversationOperationError(
                    "CONVERSATION_NOT_FOUND", "Conversation not found."
                )
            state = await MemoryRepo(db).get_state(conversation_id)
            completed = state.completed_turn_count if state else 0
            last_compacted = state.last_compacted_at_turn if state else 0
            pending = completed - last_compacted
            if pending <= 0:
                raise ConversationOperationError(
                    "NOTHING_TO_COMPACT", "No new turns to compact."
                )
            prior = PriorMemory(
                summary=state.summary_text if state else "",
                plot_points=load_plot_points(state) if state else [],
            )
            turns = await TurnRepo(db).list_assistant_turns(
                conversation_id, limit=pending if last_compacted else None
            )
        if not turns:
            raise ConversationOperationError("NOTHING_TO_COMPACT", "No new turns to compact.")

        started = time.perf_counter()
        adapter, cfg = await self._provider_service.resolve(conversation_id)
        try:
            update = await self._summarizer.summarize(turns, prior, adapter, cfg)
        except ProviderError as exc:
            logger.warning(
                "CompactionFailed conversation=%s provider=%s model=%s code=%s elapsed=%.2fs",
                conversation_id,
                cfg.provider,
                cfg.model_name,
                exc.code,
                time.perf_counter() - started,
            )
            raise

        async with self._sessionmaker() as db:
            async with db.begin():
                state = await MemoryRepo(db).commit_compaction(
                    conversation_id,
                    summary_text=update.summary,
                    plot_points=update.plot_points,
                    compacted_at_turn=completed,
                )
                compacted_at = state.last_compacted_at_turn

        logger.info(
            "Compacted memory conversation=%s provider=%s model=%s turns=%d points=%d elapsed=%.2fs",
            conversation_id,
            cfg.provider,
            cfg.model_name,
            len(turns),
            len(update.plot_points),
            time.perf_counter() - started,
        )
        return CompactionOutcome(
            previous_summary=prior.summary,
            summary=update.summary,
            plot_points=update.plot_points,
            message_count=len(turns),
            compacted_at_turn=compacted_at,
        )

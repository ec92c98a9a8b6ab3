from __future__ import annotations

import asyncio
import logging
from typing import Optional

from fastapi import Request

from storyrelay.providers.base import ProviderError
from storyrelay.services.compaction_service import CompactionOutcome, CompactionService
from storyrelay.services.conversation_service import ConversationOperationError

logger = logging.getLogger(__name__)


class CompactionScheduler:
    """Run compactions in background tasks, one at a time per conversation."""

    def __init__(self, compaction_service: CompactionService, max_concurrent: int = 4) -> None:
        self._compaction_service = compaction_service
        self._semaphore = asyncio.Semaphore(max(1, max_concurrent))
        self._locks: dict[str, asyncio.Lock] = {}
        # Runs holding or waiting on each conversation lock.
        self._holders: dict[str, int] = {}
        self._tasks: dict[str, asyncio.Task] = {}

    def is_compacting(self, conversation_id: str) -> bool:
        """Return True while a compaction for the conversation is queued or running."""

        return self._holders.get(conversation_id, 0) > 0

    def schedule(self, conversation_id: str) -> Optional[asyncio.Task]:
        """Start a background compaction unless one is already in flight."""

        if self.is_compacting(conversation_id):
            logger.info("Compaction already in flight conversation=%s", conversation_id)
            return None

        lock = self._acquire_slot(conversation_id)

        async def _runner() -> None:
            try:
                async with lock:
                    async with self._semaphore:
                        await self._compaction_service.compact(conversation_id)
            except ConversationOperationError as exc:
                logger.info(
                    "Background compaction skipped conversation=%s code=%s",
                    conversation_id,
                    exc.code,
                )
            except ProviderError as exc:
                logger.warning(
                    "Background compaction failed conversation=%s code=%s: %s",
                    conversation_id,
                    exc.code,
                    exc.message,
                )
            except Exception:  # noqa: BLE001
                logger.exception("Background compaction crashed conversation=%s", conversation_id)

        task = asyncio.create_task(_runner())
        self._tasks[conversation_id] = task
        # Released even when the task is cancelled before it starts.
        task.add_done_callback(lambda _: self._finish(conversation_id))
        return task

    async def run_now(self, conversation_id: str) -> CompactionOutcome:
        """Compact immediately, waiting for any in-flight run of the same conversation."""

        lock = self._acquire_slot(conversation_id)
        try:
            async with lock:
                return await self._compaction_service.compact(conversation_id)
        finally:
            self._release_slot(conversation_id)

    async def drain(self) -> None:
        """Wait until every background compaction has finished."""

        while self._tasks:
            await asyncio.gather(*list(self._tasks.values()), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel all background compactions."""

        tasks = list(self._tasks.values())
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._tasks.clear()

    def _finish(self, conversation_id: str) -> None:
        self._tasks.pop(conversation_id, None)
        self._release_slot(conversation_id)

    def _acquire_slot(self, conversation_id: str) -> asyncio.Lock:
        lock = self._locks.get(conversation_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[conversation_id] = lock
        self._holders[conversation_id] = self._holders.get(conversation_id, 0) + 1
        return lock

    def _release_slot(self, conversation_id: str) -> None:
        remaining = self._holders.get(conversation_id, 1) - 1
        if remaining > 0:
            self._holders[conversation_id] = remaining
            return
        self._holders.pop(conversation_id, None)
        self._locks.pop(conversation_id, None)


def get_compaction_scheduler(request: Request) -> CompactionScheduler:
    """Dependency to access the compaction scheduler from app state."""

    return request.app.state.compaction_scheduler

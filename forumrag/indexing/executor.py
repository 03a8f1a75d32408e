"""
ForumRAG Batch Executor
-----------------------
Per-board indexing state machine:

    Idle -> Queued -> Processing -> {Completed, CreditExhausted, Idle(stopped)}

Two callers drive it: the interactive poller and the fallback scheduler.
Both enter through ``drive_one_batch``; the batch lease guarantees a single
batch in flight per board. The queue is advanced only after the backend has
answered, so a crash replays the batch instead of losing it. Replays rely on
the backend's content-fingerprint dedup.
"""

from __future__ import annotations

import asyncio
import logging
from typing import List, Optional

from forumrag.backends.base import ImageFilter, IndexingBackend, TopicProvider
from forumrag.core.config import IndexingConfig
from forumrag.core.errors import BackendUnavailableError, NoCreditsError
from forumrag.core.types import (
    BatchError,
    BatchErrorCode,
    BatchResponse,
    BatchResult,
    BatchStatus,
    CallerKind,
    ClearResponse,
    IndexingSettings,
    ProgressResponse,
    StartIndexingRequest,
    StartResponse,
    StopResponse,
    TopicFilter,
)
from forumrag.indexing.scheduler import FallbackScheduler
from forumrag.store.lease import LeaseManager
from forumrag.store.queue_store import SQLiteQueueStore

logger = logging.getLogger("ForumRag.Executor")


class BatchExecutor:
    """
    Drives indexing runs for any number of boards.

    The executor owns no in-memory run state; everything it needs lives in
    the queue store, so any process sharing the database can continue a run.
    """

    def __init__(
        self,
        *,
        store: SQLiteQueueStore,
        lease: LeaseManager,
        scheduler: FallbackScheduler,
        backend: IndexingBackend,
        topics: TopicProvider,
        image_filter: Optional[ImageFilter] = None,
        config: Optional[IndexingConfig] = None,
    ) -> None:
        self._store = store
        self._lease = lease
        self._scheduler = scheduler
        self._backend = backend
        self._topics = topics
        self._image_filter = image_filter
        self._config = (config or IndexingConfig()).normalized()
        self._scheduler.attach(self.drive_fallback)

    # --- Run lifecycle ---

    async def start(self, board_id: int, request: Optional[StartIndexingRequest] = None) -> StartResponse:
        """
        Queue every indexable topic for the board and arm the fallback trigger.

        Raises ``NoCreditsError`` when the tenant has no credits; in that case
        nothing is written. A previous run for the board is replaced.
        """
        request = request or StartIndexingRequest()
        topic_ids = await self._select_topics(request.images_only)
        if not topic_ids:
            message = (
                "No topics with images found to index."
                if request.images_only
                else "No topics found to index."
            )
            return StartResponse(status="info", message=message)

        self._backend.clear_cached_status()
        credit_status = await self._backend.get_credit_status(force_refresh=True)
        credits_available = credit_status.credits_remaining
        if credits_available <= 0:
            raise NoCreditsError(
                "No credits available. Please wait for your monthly reset or purchase additional credits.",
                credits_available=credits_available,
            )

        settings = IndexingSettings.bounded(
            chunk_size=self._pick(request.chunk_size, self._config.chunk_size),
            overlap_percent=self._pick(request.overlap_percent, self._config.overlap_percent),
            batch_size=self._pick(request.batch_size, self._config.batch_size),
            total_items=len(topic_ids),
            images_only=request.images_only,
        )
        self._store.create(board_id, topic_ids, settings)
        self._lease.release(board_id)
        self._scheduler.disarm(board_id)
        self._scheduler.arm(board_id)

        credits_needed = len(topic_ids)
        will_complete = credits_available >= credits_needed
        label = "topics with images" if request.images_only else "topics"
        if will_complete:
            message = (
                f"Indexing started! {credits_needed} {label} will be processed in batches of "
                f"{settings.batch_size}. You have {credits_available} credits available."
            )
        else:
            message = (
                f"Indexing started! {credits_needed} {label} will be processed in batches of "
                f"{settings.batch_size}. Note: You have {credits_available} credits but need "
                f"{credits_needed}. Indexing will stop when credits run out."
            )
        logger.info(
            "Started run %s on board %d: %d topics, batch=%d, chunk=%d, overlap=%d%%, credits=%d",
            settings.run_id,
            board_id,
            credits_needed,
            settings.batch_size,
            settings.chunk_size,
            settings.overlap_percent,
            credits_available,
        )
        return StartResponse(
            status="started",
            total_items=credits_needed,
            batch_size=settings.batch_size,
            credits_available=credits_available,
            credits_needed=credits_needed,
            will_complete=will_complete,
            message=message,
        )

    def stop(self, board_id: int) -> StopResponse:
        """Drop the run for the board. Safe in any state."""
        cleared = self._store.clear(board_id)
        self._lease.release(board_id)
        self._scheduler.disarm(board_id)
        logger.info("Stopped indexing on board %d (%d topics dropped)", board_id, cleared)
        return StopResponse(
            cleared_count=cleared,
            message=f"Local indexing stopped. {cleared} topics removed from queue.",
        )

    async def resume(self, board_id: int) -> ProgressResponse:
        """Re-arm the fallback for a run that halted with its queue intact."""
        progress = self.get_progress(board_id)
        if not progress.active:
            return progress
        self._backend.clear_cached_status()
        credit_status = await self._backend.get_credit_status(force_refresh=True)
        if credit_status.credits_remaining <= 0:
            raise NoCreditsError(
                "No credits available. Please wait for your monthly reset or purchase additional credits.",
                credits_available=credit_status.credits_remaining,
            )
        self._scheduler.arm(board_id)
        logger.info("Resumed indexing on board %d (%d topics remaining)", board_id, progress.remaining)
        progress.message = f"Indexing resumed: {progress.processed} of {progress.total} topics processed"
        return progress

    def get_progress(self, board_id: int) -> ProgressResponse:
        settings = self._store.get_settings(board_id)
        if settings is None:
            return ProgressResponse(active=False, message="No indexing in progress.")
        remaining = self._store.size(board_id)
        processed = settings.total_items - remaining
        return ProgressResponse(
            active=True,
            processed=processed,
            remaining=remaining,
            total=settings.total_items,
            batch_size=settings.batch_size,
            started_at=settings.started_at,
            message=f"Indexing in progress: {processed} of {settings.total_items} topics processed",
        )

    async def clear_embeddings(self, board_id: int) -> ClearResponse:
        """Wipe the backend index, then drop any in-flight run for the board."""
        await self._backend.clear_all()
        self.stop(board_id)
        self._backend.clear_cached_status()
        logger.info("Cleared embeddings for board %d", board_id)
        return ClearResponse(status="success", message="Local embeddings cleared successfully.")

    # --- Batch driving ---

    async def drive_fallback(self, board_id: int) -> BatchResponse:
        """Scheduler entry point; a denied fallback tries again after the next delay."""
        response = await self.drive_one_batch(board_id, CallerKind.FALLBACK)
        if response.status == BatchStatus.WAIT:
            self._scheduler.arm(board_id)
        return response

    async def drive_one_batch(
        self,
        board_id: int,
        caller: CallerKind = CallerKind.INTERACTIVE,
    ) -> BatchResponse:
        settings = self._store.get_settings(board_id)
        if settings is None:
            self._lease.release(board_id)
            return BatchResponse(status=BatchStatus.IDLE, done=True, message="No indexing in progress.")

        if not self._lease.acquire(board_id, caller.value):
            remaining = self._store.size(board_id)
            return BatchResponse(
                status=BatchStatus.WAIT,
                processed=settings.total_items - remaining,
                remaining=remaining,
                total=settings.total_items,
                message="Another batch is in progress. Please wait.",
            )

        try:
            return await self._process_batch(board_id, caller, settings)
        except Exception as exc:
            logger.error(
                "Batch on board %d (run %s, caller %s) failed: %s",
                board_id,
                settings.run_id,
                caller.value,
                exc,
                exc_info=True,
            )
            self._lease.release(board_id)
            self._scheduler.disarm(board_id)
            remaining = self._store.size(board_id)
            return BatchResponse(
                status=BatchStatus.ERROR,
                processed=settings.total_items - remaining,
                remaining=remaining,
                total=settings.total_items,
                errors=[str(exc)],
                error_type=type(exc).__name__,
                message=f"Batch processing failed: {exc}",
            )

    async def _process_batch(
        self,
        board_id: int,
        caller: CallerKind,
        settings: IndexingSettings,
    ) -> BatchResponse:
        batch_start = self._store.head(board_id)
        items = self._store.peek_front(board_id, settings.batch_size)
        if not items:
            return await self._complete(board_id, settings, BatchResult())

        try:
            result = await asyncio.wait_for(
                self._backend.index_batch(items, settings.chunk_size, settings.overlap_percent),
                timeout=self._config.backend_timeout_seconds,
            )
        except asyncio.TimeoutError:
            return self._retry(
                board_id,
                caller,
                settings,
                f"Indexing backend did not answer within {self._config.backend_timeout_seconds:.0f}s",
            )
        except BackendUnavailableError as exc:
            return self._retry(board_id, caller, settings, str(exc))

        current = self._store.get_settings(board_id)
        if current is None or current.run_id != settings.run_id:
            return self._discard(board_id, settings)

        if result.credits_exhausted:
            return self._halt_for_credits(board_id, settings, result)

        remaining = self._store.advance(
            board_id,
            settings.batch_size,
            batch_start=batch_start,
            run_id=settings.run_id,
        )
        if remaining is None:
            return self._discard(board_id, settings)
        if remaining == 0:
            return await self._complete(board_id, settings, result)

        if caller == CallerKind.FALLBACK:
            self._lease.release(board_id)
        self._scheduler.arm(board_id)

        processed = settings.total_items - remaining
        self._backend.clear_cached_status()
        credits_remaining = await self._lookup_credits(board_id)
        logger.info(
            "Board %d: batch of %d done by %s (indexed=%d, skipped=%d, errors=%d), %d of %d processed",
            board_id,
            len(items),
            caller.value,
            result.indexed_count,
            result.skipped_count,
            len(result.errors),
            processed,
            settings.total_items,
        )
        return BatchResponse(
            status=BatchStatus.BATCH_PROCESSED,
            processed=processed,
            remaining=remaining,
            total=settings.total_items,
            batch_indexed=result.indexed_count,
            batch_skipped=result.skipped_count,
            credits_used=result.credits_used,
            credits_remaining=credits_remaining,
            errors=result.error_messages() or None,
            message=f"Processed {processed} of {settings.total_items} topics...",
        )

    async def _complete(self, board_id: int, settings: IndexingSettings, result: BatchResult) -> BatchResponse:
        self._store.clear(board_id)
        self._scheduler.disarm(board_id)
        self._lease.release(board_id)
        self._backend.clear_cached_status()
        indexed_total: Optional[int]
        try:
            indexed_total = await self._backend.get_indexed_total()
        except BackendUnavailableError as exc:
            logger.warning("Could not read indexed total for board %d: %s", board_id, exc)
            indexed_total = None
        logger.info("Run %s on board %d completed (%d topics)", settings.run_id, board_id, settings.total_items)
        return BatchResponse(
            status=BatchStatus.COMPLETED,
            done=True,
            processed=settings.total_items,
            remaining=0,
            total=settings.total_items,
            batch_indexed=result.indexed_count,
            batch_skipped=result.skipped_count,
            credits_used=result.credits_used,
            indexed_total=indexed_total,
            errors=result.error_messages() or None,
            message="Indexing complete!",
        )

    def _halt_for_credits(self, board_id: int, settings: IndexingSettings, result: BatchResult) -> BatchResponse:
        self._scheduler.disarm(board_id)
        self._lease.release(board_id)
        self._backend.clear_cached_status()
        remaining = self._store.size(board_id)
        logger.warning(
            "Board %d halted: credits exhausted with %d of %d topics remaining",
            board_id,
            remaining,
            settings.total_items,
        )
        return BatchResponse(
            status=BatchStatus.CREDITS_EXHAUSTED,
            done=True,
            processed=settings.total_items - remaining,
            remaining=remaining,
            total=settings.total_items,
            batch_indexed=result.indexed_count,
            batch_skipped=result.skipped_count,
            credits_used=result.credits_used,
            credits_remaining=0,
            errors=result.error_messages(),
            error_type=BatchErrorCode.CREDITS_EXHAUSTED.value,
            message=(
                "Indexing stopped: Insufficient credits. "
                "Please wait for your monthly reset or purchase additional credits."
            ),
        )

    def _retry(self, board_id: int, caller: CallerKind, settings: IndexingSettings, detail: str) -> BatchResponse:
        if caller == CallerKind.FALLBACK:
            self._lease.release(board_id)
        self._scheduler.arm(board_id)
        remaining = self._store.size(board_id)
        logger.warning("Board %d: indexing backend unavailable, batch will be retried: %s", board_id, detail)
        error = BatchError(code=BatchErrorCode.BACKEND_UNAVAILABLE, message=detail)
        return BatchResponse(
            status=BatchStatus.RETRY,
            processed=settings.total_items - remaining,
            remaining=remaining,
            total=settings.total_items,
            errors=[error.message],
            error_type=error.code.value,
            message="Indexing backend unavailable; the batch will be retried.",
        )

    def _discard(self, board_id: int, settings: IndexingSettings) -> BatchResponse:
        logger.info("Discarding late batch result for board %d: run %s is no longer active", board_id, settings.run_id)
        return BatchResponse(
            status=BatchStatus.STOPPED,
            done=True,
            message="Indexing was stopped; batch result discarded.",
        )

    # --- Helpers ---

    async def _select_topics(self, images_only: bool) -> List[int]:
        topic_ids = await self._topics.list_topic_ids(TopicFilter())
        if not images_only:
            return list(topic_ids)
        if self._image_filter is None:
            logger.warning("images_only requested but no image filter is configured")
            return []
        selected = []
        for topic_id in topic_ids:
            content = await self._topics.get_topic_first_post(topic_id)
            if content and self._image_filter.has_images(content):
                selected.append(topic_id)
        return selected

    async def _lookup_credits(self, board_id: int) -> Optional[int]:
        try:
            status = await self._backend.get_credit_status()
        except BackendUnavailableError as exc:
            logger.warning("Could not refresh credit status for board %d: %s", board_id, exc)
            return None
        return status.credits_remaining

    @staticmethod
    def _pick(value: Optional[int], default: int) -> int:
        return default if value is None else value

"""
Fallback trigger scheduler for ForumRAG indexing runs.

Each board has at most one pending activation. Its due time is persisted in
the queue store, so a restarted process re-creates the activation on
``start()``. When the activation fires it hands the board to the attached
runner (normally ``BatchExecutor.drive_fallback``), which decides whether to
arm again. The persisted due time is only cleared once the runner returns
without re-arming, so a crash or shutdown mid-batch leaves it in place.
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from forumrag.store.queue_store import SQLiteQueueStore

logger = logging.getLogger("ForumRag.Scheduler")

Runner = Callable[[int], Awaitable[Any]]


class FallbackScheduler:
    """
    Async at-most-one-pending-per-board deferred trigger.

    ``arm`` and ``disarm`` are idempotent. While the scheduler is not running
    ``arm`` only persists the due time; ``start`` picks it up.
    """

    def __init__(
        self,
        *,
        store: SQLiteQueueStore,
        delay_seconds: float = 60.0,
        now_fn: Callable[[], float] = time.time,
        sleep_fn: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self._store = store
        self._delay = delay_seconds
        self._now_fn = now_fn
        self._sleep_fn = sleep_fn
        self._runner: Optional[Runner] = None
        self._tasks: Dict[int, asyncio.Task] = {}
        self._firing: Dict[int, asyncio.Task] = {}
        self._rearmed: Set[int] = set()
        self._running = False

        self._fire_count = 0
        self._failure_count = 0
        self._last_fired_board: Optional[int] = None
        self._last_fired_at: Optional[float] = None
        self._last_error: Optional[str] = None

    def attach(self, runner: Runner) -> None:
        self._runner = runner

    @property
    def running(self) -> bool:
        return self._running

    @property
    def status(self) -> Dict[str, Any]:
        return {
            "running": self._running,
            "delay_seconds": self._delay,
            "pending": {board_id: due_at for board_id, due_at in self._store.pending_fallbacks()},
            "inflight_tasks": sorted(self._tasks),
            "firing": sorted(self._firing),
            "fire_count": self._fire_count,
            "failure_count": self._failure_count,
            "last_fired_board": self._last_fired_board,
            "last_fired_at": self._last_fired_at,
            "last_error": self._last_error,
        }

    async def start(self) -> int:
        """Begin serving activations, restoring any persisted ones. Returns how many were restored."""
        if self._running:
            return 0
        self._running = True
        restored = 0
        for board_id, due_at in self._store.pending_fallbacks():
            if board_id not in self._tasks:
                self._spawn(board_id, due_at)
                restored += 1
        logger.info("Fallback scheduler started (delay=%.1fs, restored=%d)", self._delay, restored)
        return restored

    async def shutdown(self) -> None:
        """
        Cancel in-memory activations and any runner still in flight.

        Persisted due times survive for the next start, including the one of
        a board whose fallback batch was interrupted.
        """
        self._running = False
        tasks = list(self._tasks.values()) + list(self._firing.values())
        self._tasks.clear()
        for task in tasks:
            task.cancel()
        for task in tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        logger.info("Fallback scheduler stopped")

    def arm(self, board_id: int) -> bool:
        """Schedule one activation for the board unless one is already pending."""
        if board_id in self._tasks:
            return False
        # The row of a firing activation is stale; replace it.
        due_at = None if board_id in self._firing else self._store.get_fallback_due(board_id)
        created = due_at is None
        if board_id in self._firing:
            self._rearmed.add(board_id)
        if created:
            due_at = self._now_fn() + self._delay
            self._store.set_fallback_due(board_id, due_at)
            logger.debug("Armed fallback for board %d at %.1f", board_id, due_at)
        if self._running:
            self._spawn(board_id, due_at)
        return created

    def disarm(self, board_id: int) -> bool:
        task = self._tasks.pop(board_id, None)
        if task is not None and task is not asyncio.current_task():
            task.cancel()
        removed = self._store.clear_fallback_due(board_id)
        if removed or task is not None:
            logger.debug("Disarmed fallback for board %d", board_id)
        return removed or task is not None

    def pending_due_at(self, board_id: int) -> Optional[float]:
        return self._store.get_fallback_due(board_id)

    def _spawn(self, board_id: int, due_at: float) -> None:
        self._tasks[board_id] = asyncio.create_task(
            self._fire_at(board_id, due_at),
            name=f"forumrag-fallback-{board_id}",
        )

    async def _fire_at(self, board_id: int, due_at: float) -> None:
        await self._sleep_fn(max(0.0, due_at - self._now_fn()))
        if self._tasks.get(board_id) is not asyncio.current_task():
            return
        # Free the slot so the runner can arm the next activation; the row stays until it returns.
        self._tasks.pop(board_id, None)
        self._firing[board_id] = asyncio.current_task()
        self._rearmed.discard(board_id)

        self._fire_count += 1
        self._last_fired_board = board_id
        self._last_fired_at = self._now_fn()
        try:
            if self._runner is None:
                logger.warning("Fallback for board %d fired with no runner attached", board_id)
            else:
                await self._runner(board_id)
                self._last_error = None
        except asyncio.CancelledError:
            logger.info("Fallback run for board %d interrupted; trigger kept for restart", board_id)
            raise
        except Exception as exc:
            self._failure_count += 1
            self._last_error = str(exc)
            logger.error("Fallback run for board %d failed: %s", board_id, exc, exc_info=True)
        finally:
            # A newer activation may have fired while the runner was awaiting; its row is not ours.
            owned = self._firing.get(board_id) is asyncio.current_task()
            rearmed = True
            if owned:
                self._firing.pop(board_id, None)
                rearmed = board_id in self._rearmed
                self._rearmed.discard(board_id)

        if not rearmed:
            self._store.clear_fallback_due(board_id)

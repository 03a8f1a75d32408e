"""
Read-only status view for a board: run progress plus credits, index size,
lease holder and the pending fallback due time.
"""

import logging

from forumrag.backends.base import IndexingBackend
from forumrag.core.errors import BackendUnavailableError
from forumrag.core.types import IndexingStatus
from forumrag.indexing.executor import BatchExecutor
from forumrag.indexing.scheduler import FallbackScheduler
from forumrag.store.lease import LeaseManager

logger = logging.getLogger("ForumRag.Progress")


class ProgressReporter:
    def __init__(
        self,
        *,
        executor: BatchExecutor,
        lease: LeaseManager,
        scheduler: FallbackScheduler,
        backend: IndexingBackend,
    ) -> None:
        self._executor = executor
        self._lease = lease
        self._scheduler = scheduler
        self._backend = backend

    async def status(self, board_id: int) -> IndexingStatus:
        """Never acquires the lease; backend lookup failures are reported in ``lookup_errors``."""
        status = IndexingStatus(
            board_id=board_id,
            progress=self._executor.get_progress(board_id),
            fallback_due_at=self._scheduler.pending_due_at(board_id),
        )
        lease = self._lease.current(board_id)
        if lease is not None:
            status.lease_holder = lease.holder
            status.lease_expires_at = lease.expires_at

        try:
            status.credits_remaining = (await self._backend.get_credit_status()).credits_remaining
        except BackendUnavailableError as exc:
            logger.warning("Credit lookup failed for board %d: %s", board_id, exc)
            status.lookup_errors.append(f"credits: {exc}")
        try:
            status.indexed_total = await self._backend.get_indexed_total()
        except BackendUnavailableError as exc:
            logger.warning("Indexed-total lookup failed for board %d: %s", board_id, exc)
            status.lookup_errors.append(f"indexed_total: {exc}")
        return status

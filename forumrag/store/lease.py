"""
ForumRAG Batch Lease
--------------------
Short-TTL mutual exclusion per board, so the interactive poller and the
fallback scheduler never process a batch at the same time.

Lease rows live in the queue store's SQLite database. Acquisition is one
``BEGIN IMMEDIATE`` transaction, which also makes it safe between processes.
An expired lease counts as absent, so a crashed holder heals itself.
"""

import logging
import time
from typing import Callable, Optional

from forumrag.core.types import IndexingLease
from forumrag.store.queue_store import SQLiteQueueStore

logger = logging.getLogger("ForumRag.Lease")

DEFAULT_LEASE_TTL_SECONDS = 300.0


class LeaseManager:
    """
    Grants per-board batch leases keyed by holder identity.

    A holder re-acquiring its own live lease refreshes the expiry; any other
    holder is denied until the lease is released or expires.
    """

    def __init__(
        self,
        store: SQLiteQueueStore,
        ttl_seconds: float = DEFAULT_LEASE_TTL_SECONDS,
        now_fn: Callable[[], float] = time.time,
    ) -> None:
        self._store = store
        self.ttl_seconds = ttl_seconds
        self._now_fn = now_fn

    def acquire(self, board_id: int, holder: str) -> bool:
        now = self._now_fn()
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT holder, expires_at FROM indexing_leases WHERE board_id = ?",
                (board_id,),
            ).fetchone()
            if row is not None and row["expires_at"] > now and row["holder"] != holder:
                logger.info(
                    "Lease for board %d denied to %s (held by %s for %.1fs more)",
                    board_id,
                    holder,
                    row["holder"],
                    row["expires_at"] - now,
                )
                return False
            conn.execute(
                "INSERT OR REPLACE INTO indexing_leases (board_id, holder, expires_at) VALUES (?, ?, ?)",
                (board_id, holder, now + self.ttl_seconds),
            )
        return True

    def release(self, board_id: int) -> None:
        with self._store.transaction() as conn:
            conn.execute("DELETE FROM indexing_leases WHERE board_id = ?", (board_id,))

    def current(self, board_id: int) -> Optional[IndexingLease]:
        """The live lease for the board, or None when absent or expired."""
        with self._store.transaction() as conn:
            row = conn.execute(
                "SELECT holder, expires_at FROM indexing_leases WHERE board_id = ?",
                (board_id,),
            ).fetchone()
        if row is None:
            return None
        lease = IndexingLease(board_id=board_id, holder=row["holder"], expires_at=row["expires_at"])
        return lease if lease.is_live(self._now_fn()) else None

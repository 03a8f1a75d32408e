"""
ForumRAG SQLite Queue Store
---------------------------
Durable per-board indexing state: the ordered queue of pending topic ids,
the run settings, the batch lease and the persisted fallback-trigger due
time. SQLite in WAL mode provides ACID guarantees across processes and
restarts; every multi-statement change runs in a ``BEGIN IMMEDIATE``
transaction.
"""

import contextlib
import json
import logging
import sqlite3
import threading
import time
from pathlib import Path
from typing import Iterator, List, Optional, Sequence, Tuple

from forumrag.core.types import IndexingSettings

logger = logging.getLogger("ForumRag.QueueStore")

SCHEMA_VERSION = 1

INDEXING_QUEUE = """
CREATE TABLE IF NOT EXISTS indexing_queue (
    board_id  INTEGER NOT NULL,
    position  INTEGER NOT NULL,
    item_id   INTEGER NOT NULL,
    PRIMARY KEY (board_id, position)
);
"""

INDEXING_SETTINGS = """
CREATE TABLE IF NOT EXISTS indexing_settings (
    board_id      INTEGER PRIMARY KEY,
    settings_json TEXT NOT NULL,
    updated_at    REAL NOT NULL
);
"""

INDEXING_LEASES = """
CREATE TABLE IF NOT EXISTS indexing_leases (
    board_id   INTEGER PRIMARY KEY,
    holder     TEXT NOT NULL,
    expires_at REAL NOT NULL
);
"""

FALLBACK_TRIGGERS = """
CREATE TABLE IF NOT EXISTS fallback_triggers (
    board_id INTEGER PRIMARY KEY,
    due_at   REAL NOT NULL,
    armed_at REAL NOT NULL
);
"""

SCHEMA_META = """
CREATE TABLE IF NOT EXISTS schema_meta (
    key   TEXT PRIMARY KEY,
    value TEXT
);
"""


class SQLiteQueueStore:
    """Per-board indexing queue and settings, plus the rows backing leases and fallback triggers."""

    def __init__(self, db_path):
        self.db_path = Path(db_path) if not isinstance(db_path, Path) else db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._conn: Optional[sqlite3.Connection] = None
        # One connection is shared by the event loop and worker threads.
        self._lock = threading.RLock()
        self._initialize()

    def _get_conn(self) -> sqlite3.Connection:
        if self._conn is None:
            self._conn = sqlite3.connect(
                str(self.db_path),
                check_same_thread=False,
                isolation_level=None,
                timeout=30.0,
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL;")
            self._conn.execute("PRAGMA synchronous=NORMAL;")
        return self._conn

    def _initialize(self) -> None:
        with self.transaction() as conn:
            conn.execute(INDEXING_QUEUE)
            conn.execute(INDEXING_SETTINGS)
            conn.execute(INDEXING_LEASES)
            conn.execute(FALLBACK_TRIGGERS)
            conn.execute(SCHEMA_META)
            conn.execute(
                "INSERT OR IGNORE INTO schema_meta (key, value) VALUES ('schema_version', ?)",
                (str(SCHEMA_VERSION),),
            )
        logger.info("Queue store initialized at %s", self.db_path)

    @contextlib.contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """Serialize a unit of work in this process and take the SQLite write lock up front."""
        with self._lock:
            conn = self._get_conn()
            conn.execute("BEGIN IMMEDIATE")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            conn.execute("COMMIT")

    def close(self) -> None:
        with self._lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    # --- Queue + settings ---

    def create(self, board_id: int, items: Sequence[int], settings: IndexingSettings) -> None:
        """Replace any queue/settings for the board with a fresh run."""
        with self.transaction() as conn:
            conn.execute("DELETE FROM indexing_queue WHERE board_id = ?", (board_id,))
            conn.executemany(
                "INSERT INTO indexing_queue (board_id, position, item_id) VALUES (?, ?, ?)",
                [(board_id, position, int(item_id)) for position, item_id in enumerate(items)],
            )
            conn.execute(
                "INSERT OR REPLACE INTO indexing_settings (board_id, settings_json, updated_at) "
                "VALUES (?, ?, ?)",
                (board_id, settings.model_dump_json(), time.time()),
            )
        logger.info("Queued %d items for board %d (run %s)", len(items), board_id, settings.run_id)

    def peek_front(self, board_id: int, n: int) -> List[int]:
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT item_id FROM indexing_queue WHERE board_id = ? ORDER BY position ASC LIMIT ?",
                (board_id, max(0, int(n))),
            ).fetchall()
        return [row["item_id"] for row in rows]

    def head(self, board_id: int) -> Optional[int]:
        """Position of the front item, or None when the queue is empty."""
        with self._lock:
            row = self._get_conn().execute(
                "SELECT MIN(position) AS head FROM indexing_queue WHERE board_id = ?",
                (board_id,),
            ).fetchone()
        return row["head"] if row is not None else None

    def advance(
        self,
        board_id: int,
        n: int,
        *,
        batch_start: Optional[int] = None,
        run_id: Optional[str] = None,
    ) -> Optional[int]:
        """
        Remove the first ``n`` items and return the remaining count.

        With ``batch_start`` only positions below ``batch_start + n`` are
        removed, so replaying the same advance is a no-op. With ``run_id``
        nothing is removed (and None returned) unless the stored run matches.
        """
        n = max(0, int(n))
        with self.transaction() as conn:
            if run_id is not None:
                current = self._read_settings(conn, board_id)
                if current is None or current.run_id != run_id:
                    return None
            start = batch_start
            if start is None:
                row = conn.execute(
                    "SELECT MIN(position) AS head FROM indexing_queue WHERE board_id = ?",
                    (board_id,),
                ).fetchone()
                start = row["head"]
            if start is not None:
                conn.execute(
                    "DELETE FROM indexing_queue WHERE board_id = ? AND position < ?",
                    (board_id, start + n),
                )
            remaining = conn.execute(
                "SELECT COUNT(*) AS c FROM indexing_queue WHERE board_id = ?",
                (board_id,),
            ).fetchone()["c"]
        return remaining

    def size(self, board_id: int) -> int:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT COUNT(*) AS c FROM indexing_queue WHERE board_id = ?",
                (board_id,),
            ).fetchone()
        return row["c"]

    def get_settings(self, board_id: int) -> Optional[IndexingSettings]:
        with self._lock:
            return self._read_settings(self._get_conn(), board_id)

    def clear(self, board_id: int) -> int:
        """Delete queue and settings together; returns how many items were still pending."""
        with self.transaction() as conn:
            pending = conn.execute(
                "SELECT COUNT(*) AS c FROM indexing_queue WHERE board_id = ?",
                (board_id,),
            ).fetchone()["c"]
            conn.execute("DELETE FROM indexing_queue WHERE board_id = ?", (board_id,))
            conn.execute("DELETE FROM indexing_settings WHERE board_id = ?", (board_id,))
        return pending

    def _read_settings(self, conn: sqlite3.Connection, board_id: int) -> Optional[IndexingSettings]:
        row = conn.execute(
            "SELECT settings_json FROM indexing_settings WHERE board_id = ?",
            (board_id,),
        ).fetchone()
        if row is None:
            return None
        return IndexingSettings(**json.loads(row["settings_json"]))

    # --- Fallback trigger persistence ---

    def set_fallback_due(self, board_id: int, due_at: float) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR REPLACE INTO fallback_triggers (board_id, due_at, armed_at) VALUES (?, ?, ?)",
                (board_id, due_at, time.time()),
            )

    def get_fallback_due(self, board_id: int) -> Optional[float]:
        with self._lock:
            row = self._get_conn().execute(
                "SELECT due_at FROM fallback_triggers WHERE board_id = ?",
                (board_id,),
            ).fetchone()
        return row["due_at"] if row is not None else None

    def clear_fallback_due(self, board_id: int) -> bool:
        with self.transaction() as conn:
            cursor = conn.execute("DELETE FROM fallback_triggers WHERE board_id = ?", (board_id,))
        return cursor.rowcount > 0

    def pending_fallbacks(self) -> List[Tuple[int, float]]:
        with self._lock:
            rows = self._get_conn().execute(
                "SELECT board_id, due_at FROM fallback_triggers ORDER BY due_at ASC"
            ).fetchall()
        return [(row["board_id"], row["due_at"]) for row in rows]

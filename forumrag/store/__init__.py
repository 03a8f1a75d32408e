from forumrag.store.queue_store import SQLiteQueueStore
from forumrag.store.lease import LeaseManager

__all__ = ["SQLiteQueueStore", "LeaseManager"]

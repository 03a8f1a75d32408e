from forumrag.core.errors import BackendUnavailableError, ForumRagError, NoCreditsError
from forumrag.core.types import BatchStatus, CallerKind, IndexingSettings

__all__ = [
    "ForumRagError",
    "NoCreditsError",
    "BackendUnavailableError",
    "BatchStatus",
    "CallerKind",
    "IndexingSettings",
]

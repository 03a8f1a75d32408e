"""
ForumRAG: resumable, credit-aware batch indexing of forum boards
"""

from forumrag.core.errors import BackendUnavailableError, ForumRagError, NoCreditsError
from forumrag.version import __version__

__all__ = [
    "__version__",
    "ForumRagError",
    "NoCreditsError",
    "BackendUnavailableError",
]

from forumrag.indexing.executor import BatchExecutor
from forumrag.indexing.progress import ProgressReporter
from forumrag.indexing.scheduler import FallbackScheduler

__all__ = ["BatchExecutor", "FallbackScheduler", "ProgressReporter"]

"""
ForumRAG Core Types
-------------------
Pydantic models and enums shared by the queue store, the batch executor,
the backend adapters and the HTTP surface.
"""

import time
import uuid
from enum import Enum
from typing import Optional, List

from pydantic import BaseModel, Field

from forumrag.core.config import (
    BATCH_SIZE_BOUNDS,
    CHUNK_SIZE_BOUNDS,
    OVERLAP_PERCENT_BOUNDS,
    clamp,
)


class CallerKind(str, Enum):
    """Who is driving a batch. Only the interactive holder keeps its lease between calls."""
    INTERACTIVE = "interactive"
    FALLBACK = "fallback"


class BatchErrorCode(str, Enum):
    CREDITS_EXHAUSTED = "credits_exhausted"
    BACKEND_UNAVAILABLE = "backend_unavailable"
    ITEM_FAILED = "item_failed"


class BatchStatus(str, Enum):
    BATCH_PROCESSED = "batch_processed"
    COMPLETED = "completed"
    CREDITS_EXHAUSTED = "credits_exhausted"
    WAIT = "wait"
    RETRY = "retry"
    STOPPED = "stopped"
    IDLE = "idle"
    ERROR = "error"


class BatchError(BaseModel):
    code: BatchErrorCode
    message: str
    item_id: Optional[int] = None


class BatchResult(BaseModel):
    """Outcome of one backend ``index_batch`` call. Never persisted."""
    indexed_count: int = 0
    skipped_count: int = 0
    credits_used: int = 0
    errors: List[BatchError] = Field(default_factory=list)

    @property
    def credits_exhausted(self) -> bool:
        return any(err.code == BatchErrorCode.CREDITS_EXHAUSTED for err in self.errors)

    def error_messages(self) -> List[str]:
        return [err.message for err in self.errors]


class CreditStatus(BaseModel):
    credits_remaining: int = 0
    plan: Optional[str] = None


class IndexingSettings(BaseModel):
    """Per-run settings, written together with the queue and read-only afterwards."""
    chunk_size: int = 512
    overlap_percent: int = 20
    batch_size: int = 5
    total_items: int = 0
    started_at: float = Field(default_factory=time.time)
    run_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    images_only: bool = False

    @classmethod
    def bounded(
        cls,
        *,
        chunk_size: int,
        overlap_percent: int,
        batch_size: int,
        total_items: int,
        images_only: bool = False,
    ) -> "IndexingSettings":
        return cls(
            chunk_size=clamp("chunk_size", chunk_size, CHUNK_SIZE_BOUNDS),
            overlap_percent=clamp("overlap_percent", overlap_percent, OVERLAP_PERCENT_BOUNDS),
            batch_size=clamp("batch_size", batch_size, BATCH_SIZE_BOUNDS),
            total_items=total_items,
            images_only=images_only,
        )


class IndexingLease(BaseModel):
    board_id: int
    holder: str
    expires_at: float

    def is_live(self, now: float) -> bool:
        return self.expires_at > now


# --- Forum data ---

class TopicFilter(BaseModel):
    """Selection passed to ``TopicProvider.list_topic_ids``; defaults to every approved topic."""
    status: int = 0
    forum_ids: Optional[List[int]] = None


class TopicPost(BaseModel):
    post_id: int
    user_id: int = 0
    body: str = ""
    is_first_post: bool = False


class TopicDocument(BaseModel):
    topic_id: int
    forum_id: int = 0
    title: str = ""
    private: bool = False
    approved: bool = True
    posts: List[TopicPost] = Field(default_factory=list)


# --- API Request/Response Models ---

class StartIndexingRequest(BaseModel):
    chunk_size: Optional[int] = None
    overlap_percent: Optional[int] = None
    batch_size: Optional[int] = None
    images_only: bool = False


class StartResponse(BaseModel):
    status: str
    total_items: int = 0
    batch_size: int = 0
    credits_available: int = 0
    credits_needed: int = 0
    will_complete: bool = False
    message: str


class BatchResponse(BaseModel):
    status: BatchStatus
    done: bool = False
    processed: int = 0
    remaining: int = 0
    total: int = 0
    batch_indexed: Optional[int] = None
    batch_skipped: Optional[int] = None
    credits_used: Optional[int] = None
    credits_remaining: Optional[int] = None
    indexed_total: Optional[int] = None
    errors: Optional[List[str]] = None
    error_type: Optional[str] = None
    message: str


class ProgressResponse(BaseModel):
    active: bool
    processed: Optional[int] = None
    remaining: Optional[int] = None
    total: Optional[int] = None
    batch_size: Optional[int] = None
    started_at: Optional[float] = None
    message: Optional[str] = None


class StopResponse(BaseModel):
    cleared_count: int
    message: str


class ClearResponse(BaseModel):
    status: str
    message: str


class IndexingStatus(BaseModel):
    """Progress plus the external lookups and coordination state for one board."""
    board_id: int
    progress: ProgressResponse
    credits_remaining: Optional[int] = None
    indexed_total: Optional[int] = None
    lease_holder: Optional[str] = None
    lease_expires_at: Optional[float] = None
    fallback_due_at: Optional[float] = None
    lookup_errors: List[str] = Field(default_factory=list)

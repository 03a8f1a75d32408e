"""
Collaborator interfaces consumed by the indexing coordinator.

Idempotency contract for ``IndexingBackend.index_batch``: the coordinator
only advances its queue after a batch returns, so a crash can replay a
batch. Backends must fingerprint each post's prepared content and count an
already-indexed, unchanged post as skipped without spending credits.
"""

from __future__ import annotations

from typing import List, Optional, Protocol, Sequence, runtime_checkable

from forumrag.core.types import BatchResult, CreditStatus, TopicDocument, TopicFilter


@runtime_checkable
class TopicProvider(Protocol):
    async def list_topic_ids(self, topic_filter: Optional[TopicFilter] = None) -> List[int]:
        ...

    async def get_topic_first_post(self, topic_id: int) -> str:
        ...

    async def get_topic(self, topic_id: int) -> Optional[TopicDocument]:
        ...


@runtime_checkable
class IndexingBackend(Protocol):
    async def index_batch(
        self,
        items: Sequence[int],
        chunk_size: int,
        overlap_percent: int,
    ) -> BatchResult:
        ...

    async def get_credit_status(self, force_refresh: bool = False) -> CreditStatus:
        ...

    async def get_indexed_total(self) -> int:
        ...

    async def clear_all(self) -> None:
        ...

    def clear_cached_status(self) -> None:
        ...


@runtime_checkable
class ImageFilter(Protocol):
    def has_images(self, content: str) -> bool:
        ...

    def extract_urls(self, content: str) -> List[str]:
        ...

"""
In-process reference collaborators.

``InMemoryIndexingBackend`` honours the idempotency contract from
``forumrag.backends.base``: posts are keyed by content fingerprint, and an
unchanged post is skipped without spending a credit. It is used by the test
suite and for local dry runs without a tenant API.
"""

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from forumrag.backends.base import ImageFilter, TopicProvider
from forumrag.backends.content import chunk_words, content_fingerprint, prepare_post_content
from forumrag.core.types import (
    BatchError,
    BatchErrorCode,
    BatchResult,
    CreditStatus,
    TopicDocument,
    TopicFilter,
)

logger = logging.getLogger("ForumRag.Backend.Memory")


class InMemoryTopicProvider:
    def __init__(self, topics: Iterable[TopicDocument] = ()):
        self._topics: Dict[int, TopicDocument] = {topic.topic_id: topic for topic in topics}

    def add(self, topic: TopicDocument) -> None:
        self._topics[topic.topic_id] = topic

    async def list_topic_ids(self, topic_filter: Optional[TopicFilter] = None) -> List[int]:
        topic_filter = topic_filter or TopicFilter()
        ids = []
        for topic in self._topics.values():
            if topic_filter.status == 0 and not topic.approved:
                continue
            if topic_filter.forum_ids is not None and topic.forum_id not in topic_filter.forum_ids:
                continue
            ids.append(topic.topic_id)
        return sorted(ids)

    async def get_topic_first_post(self, topic_id: int) -> str:
        topic = self._topics.get(topic_id)
        if topic is None:
            return ""
        for post in topic.posts:
            if post.is_first_post:
                return post.body
        return topic.posts[0].body if topic.posts else ""

    async def get_topic(self, topic_id: int) -> Optional[TopicDocument]:
        return self._topics.get(topic_id)


class InMemoryIndexingBackend:
    """Chunks posts into word windows and keeps them in a dict; one credit per newly indexed topic."""

    def __init__(
        self,
        topics: TopicProvider,
        *,
        credits: int = 1000,
        image_filter: Optional[ImageFilter] = None,
    ):
        self._topics = topics
        self._image_filter = image_filter
        self.credits = credits
        # post_id -> (topic_id, fingerprint, chunks)
        self._index: Dict[int, Tuple[int, str, List[str]]] = {}

    async def index_batch(
        self,
        items: Sequence[int],
        chunk_size: int,
        overlap_percent: int,
    ) -> BatchResult:
        result = BatchResult()
        for topic_id in items:
            topic = await self._topics.get_topic(topic_id)
            if topic is None:
                result.errors.append(
                    BatchError(code=BatchErrorCode.ITEM_FAILED, message=f"Topic {topic_id} not found", item_id=topic_id)
                )
                continue
            if topic.private or not topic.approved:
                result.skipped_count += 1
                continue

            pending = []
            for post in topic.posts:
                content = prepare_post_content(topic, post)
                images = len(self._image_filter.extract_urls(post.body)) if self._image_filter else 0
                fingerprint = content_fingerprint(content, images)
                existing = self._index.get(post.post_id)
                if existing is not None and existing[1] == fingerprint:
                    result.skipped_count += 1
                    continue
                pending.append((post.post_id, fingerprint, content))

            if not pending:
                continue
            if self.credits < 1:
                result.errors.append(
                    BatchError(
                        code=BatchErrorCode.CREDITS_EXHAUSTED,
                        message="Insufficient credits to index topic",
                        item_id=topic_id,
                    )
                )
                break
            for post_id, fingerprint, content in pending:
                self._index[post_id] = (topic_id, fingerprint, chunk_words(content, chunk_size, overlap_percent))
                result.indexed_count += 1
            self.credits -= 1
            result.credits_used += 1
        logger.debug(
            "Indexed batch of %d topics: indexed=%d skipped=%d errors=%d",
            len(items),
            result.indexed_count,
            result.skipped_count,
            len(result.errors),
        )
        return result

    async def get_credit_status(self, force_refresh: bool = False) -> CreditStatus:
        return CreditStatus(credits_remaining=self.credits)

    async def get_indexed_total(self) -> int:
        return len(self._index)

    async def clear_all(self) -> None:
        self._index.clear()

    def clear_cached_status(self) -> None:
        pass

    def chunks_for(self, post_id: int) -> List[str]:
        entry = self._index.get(post_id)
        return list(entry[2]) if entry else []

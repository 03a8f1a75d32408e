"""Tests for the in-memory collaborators and the backend dedup contract."""

import pytest

from forumrag.backends.base import ImageFilter, IndexingBackend, TopicProvider
from forumrag.backends.images import HtmlImageFilter
from forumrag.backends.memory import InMemoryIndexingBackend, InMemoryTopicProvider
from forumrag.core.types import BatchErrorCode, TopicDocument, TopicFilter, TopicPost


def _topic(topic_id, *, body="hello world", forum_id=1, private=False, approved=True, replies=0):
    posts = [TopicPost(post_id=topic_id * 100, body=body, is_first_post=True)]
    for n in range(replies):
        posts.append(TopicPost(post_id=topic_id * 100 + n + 1, body=f"reply {n}"))
    return TopicDocument(
        topic_id=topic_id,
        forum_id=forum_id,
        title=f"Topic {topic_id}",
        private=private,
        approved=approved,
        posts=posts,
    )


def test_adapters_satisfy_protocols():
    provider = InMemoryTopicProvider()
    assert isinstance(provider, TopicProvider)
    assert isinstance(InMemoryIndexingBackend(provider), IndexingBackend)
    assert isinstance(HtmlImageFilter(), ImageFilter)


class TestTopicProvider:
    @pytest.mark.asyncio
    async def test_lists_sorted_approved_ids(self):
        provider = InMemoryTopicProvider([_topic(3), _topic(1), _topic(2, approved=False)])
        assert await provider.list_topic_ids() == [1, 3]
        assert await provider.list_topic_ids(TopicFilter(status=1)) == [1, 2, 3]

    @pytest.mark.asyncio
    async def test_filters_by_forum(self):
        provider = InMemoryTopicProvider([_topic(1, forum_id=1), _topic(2, forum_id=2)])
        assert await provider.list_topic_ids(TopicFilter(forum_ids=[2])) == [2]

    @pytest.mark.asyncio
    async def test_first_post_or_empty(self):
        provider = InMemoryTopicProvider([_topic(1, body="first!", replies=2)])
        assert await provider.get_topic_first_post(1) == "first!"
        assert await provider.get_topic_first_post(99) == ""


class TestIndexingBackend:
    @pytest.mark.asyncio
    async def test_indexes_posts_and_spends_one_credit_per_topic(self):
        provider = InMemoryTopicProvider([_topic(1, replies=2), _topic(2)])
        backend = InMemoryIndexingBackend(provider, credits=10)

        result = await backend.index_batch([1, 2], 512, 20)

        assert result.indexed_count == 4
        assert result.credits_used == 2
        assert result.errors == []
        assert backend.credits == 8
        assert await backend.get_indexed_total() == 4

    @pytest.mark.asyncio
    async def test_replayed_batch_is_skipped_without_credits(self):
        provider = InMemoryTopicProvider([_topic(1), _topic(2)])
        backend = InMemoryIndexingBackend(provider, credits=10)
        await backend.index_batch([1, 2], 512, 20)

        replay = await backend.index_batch([1, 2], 512, 20)

        assert replay.indexed_count == 0
        assert replay.skipped_count == 2
        assert replay.credits_used == 0
        assert backend.credits == 8

    @pytest.mark.asyncio
    async def test_changed_post_is_reindexed(self):
        provider = InMemoryTopicProvider([_topic(1, body="before")])
        backend = InMemoryIndexingBackend(provider, credits=10)
        await backend.index_batch([1], 512, 20)

        provider.add(_topic(1, body="after the edit"))
        result = await backend.index_batch([1], 512, 20)

        assert result.indexed_count == 1
        assert "after the edit" in backend.chunks_for(100)[0]

    @pytest.mark.asyncio
    async def test_added_image_changes_fingerprint(self):
        provider = InMemoryTopicProvider([_topic(1, body="photo")])
        backend = InMemoryIndexingBackend(provider, credits=10, image_filter=HtmlImageFilter())
        await backend.index_batch([1], 512, 20)

        provider.add(_topic(1, body='photo <img src="https://x.test/a.jpg">'))
        result = await backend.index_batch([1], 512, 20)

        assert result.indexed_count == 1

    @pytest.mark.asyncio
    async def test_private_and_unapproved_topics_are_skipped(self):
        provider = InMemoryTopicProvider([_topic(1, private=True), _topic(2, approved=False)])
        backend = InMemoryIndexingBackend(provider, credits=10)

        result = await backend.index_batch([1, 2], 512, 20)

        assert result.skipped_count == 2
        assert result.credits_used == 0

    @pytest.mark.asyncio
    async def test_missing_topic_is_an_item_error(self):
        backend = InMemoryIndexingBackend(InMemoryTopicProvider([_topic(1)]), credits=10)

        result = await backend.index_batch([1, 404], 512, 20)

        assert result.indexed_count == 1
        assert [err.code for err in result.errors] == [BatchErrorCode.ITEM_FAILED]
        assert result.errors[0].item_id == 404
        assert result.credits_exhausted is False

    @pytest.mark.asyncio
    async def test_running_out_of_credits_reports_structured_error(self):
        provider = InMemoryTopicProvider([_topic(1), _topic(2), _topic(3)])
        backend = InMemoryIndexingBackend(provider, credits=1)

        result = await backend.index_batch([1, 2, 3], 512, 20)

        assert result.indexed_count == 1
        assert result.credits_exhausted is True
        assert result.errors[0].item_id == 2
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_clear_all_forgets_fingerprints(self):
        provider = InMemoryTopicProvider([_topic(1)])
        backend = InMemoryIndexingBackend(provider, credits=10)
        await backend.index_batch([1], 512, 20)

        await backend.clear_all()
        result = await backend.index_batch([1], 512, 20)

        assert result.indexed_count == 1
        assert (await backend.get_credit_status()).credits_remaining == 8

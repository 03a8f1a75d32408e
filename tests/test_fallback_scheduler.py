"""Tests for forumrag.indexing.scheduler: persisted fallback activations."""

import asyncio

import pytest

from forumrag.backends.memory import InMemoryIndexingBackend, InMemoryTopicProvider
from forumrag.core.types import StartIndexingRequest, TopicDocument, TopicPost
from forumrag.indexing.executor import BatchExecutor
from forumrag.indexing.scheduler import FallbackScheduler
from forumrag.store.lease import LeaseManager
from forumrag.store.queue_store import SQLiteQueueStore


class _Clock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _no_sleep(_seconds: float) -> None:
    await asyncio.sleep(0)


@pytest.fixture
def store(tmp_path):
    s = SQLiteQueueStore(tmp_path / "indexing.db")
    yield s
    s.close()


async def _drain() -> None:
    for _ in range(5):
        await asyncio.sleep(0)


@pytest.mark.asyncio
async def test_arm_persists_due_time_and_is_idempotent(store):
    clock = _Clock()
    scheduler = FallbackScheduler(store=store, delay_seconds=60, now_fn=clock)

    assert scheduler.arm(1) is True
    assert scheduler.arm(1) is False
    assert scheduler.pending_due_at(1) == 1060.0
    assert store.pending_fallbacks() == [(1, 1060.0)]


@pytest.mark.asyncio
async def test_disarm_cancels_and_clears(store):
    blocker = asyncio.Event()

    async def blocking_sleep(_seconds: float) -> None:
        await blocker.wait()

    scheduler = FallbackScheduler(store=store, sleep_fn=blocking_sleep)
    await scheduler.start()
    scheduler.arm(1)
    assert scheduler.status["inflight_tasks"] == [1]

    assert scheduler.disarm(1) is True
    assert scheduler.disarm(1) is False
    assert scheduler.pending_due_at(1) is None
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_fires_runner_once_and_consumes_trigger(store):
    calls = []

    async def runner(board_id: int):
        calls.append(board_id)

    scheduler = FallbackScheduler(store=store, sleep_fn=_no_sleep)
    scheduler.attach(runner)
    await scheduler.start()
    scheduler.arm(4)
    await _drain()

    assert calls == [4]
    assert scheduler.pending_due_at(4) is None
    assert scheduler.status["fire_count"] == 1
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_runner_can_rearm_itself(store):
    calls = []
    scheduler = FallbackScheduler(store=store, sleep_fn=_no_sleep)

    async def runner(board_id: int):
        calls.append(board_id)
        if len(calls) < 3:
            scheduler.arm(board_id)

    scheduler.attach(runner)
    await scheduler.start()
    scheduler.arm(2)
    await _drain()
    await _drain()

    assert calls == [2, 2, 2]
    assert scheduler.pending_due_at(2) is None
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_runner_failure_is_recorded(store):
    async def runner(board_id: int):
        raise RuntimeError("boom")

    scheduler = FallbackScheduler(store=store, sleep_fn=_no_sleep)
    scheduler.attach(runner)
    await scheduler.start()
    scheduler.arm(1)
    await _drain()

    status = scheduler.status
    assert status["failure_count"] == 1
    assert status["last_error"] == "boom"
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_persisted_trigger_restored_after_restart(tmp_path):
    path = tmp_path / "indexing.db"
    first_store = SQLiteQueueStore(path)
    first = FallbackScheduler(store=first_store)
    first.arm(9)  # not running: only persisted
    await first.shutdown()
    first_store.close()

    calls = []

    async def runner(board_id: int):
        calls.append(board_id)

    second_store = SQLiteQueueStore(path)
    try:
        second = FallbackScheduler(store=second_store, sleep_fn=_no_sleep)
        second.attach(runner)
        assert await second.start() == 1
        await _drain()
        assert calls == [9]
        await second.shutdown()
    finally:
        second_store.close()


@pytest.mark.asyncio
async def test_shutdown_keeps_persisted_due_time(store):
    blocker = asyncio.Event()

    async def blocking_sleep(_seconds: float) -> None:
        await blocker.wait()

    clock = _Clock()
    scheduler = FallbackScheduler(store=store, delay_seconds=60, now_fn=clock, sleep_fn=blocking_sleep)
    await scheduler.start()
    scheduler.arm(3)
    await scheduler.shutdown()

    assert scheduler.running is False
    assert scheduler.pending_due_at(3) == 1060.0


class _GatedBackend(InMemoryIndexingBackend):
    def __init__(self, topics, **kwargs) -> None:
        super().__init__(topics, **kwargs)
        self.entered = asyncio.Event()
        self.gate = asyncio.Event()

    async def index_batch(self, items, chunk_size, overlap_percent):
        self.entered.set()
        await self.gate.wait()
        return await super().index_batch(items, chunk_size, overlap_percent)


def _topics(count: int):
    return InMemoryTopicProvider(
        [
            TopicDocument(
                topic_id=topic_id,
                title=f"Topic {topic_id}",
                posts=[TopicPost(post_id=topic_id * 10, body=f"Body {topic_id}", is_first_post=True)],
            )
            for topic_id in range(1, count + 1)
        ]
    )


@pytest.mark.asyncio
async def test_shutdown_during_fallback_batch_keeps_trigger(tmp_path):
    path = tmp_path / "indexing.db"
    store = SQLiteQueueStore(path)
    topics = _topics(12)
    backend = _GatedBackend(topics, credits=100)
    scheduler = FallbackScheduler(store=store, sleep_fn=_no_sleep)
    executor = BatchExecutor(
        store=store,
        lease=LeaseManager(store, ttl_seconds=300),
        scheduler=scheduler,
        backend=backend,
        topics=topics,
    )
    try:
        await executor.start(1, StartIndexingRequest(batch_size=5))
        await scheduler.start()
        await asyncio.wait_for(backend.entered.wait(), timeout=5)

        await scheduler.shutdown()

        assert store.size(1) == 12
        assert [board_id for board_id, _ in store.pending_fallbacks()] == [1]
    finally:
        store.close()

    calls = []

    async def runner(board_id: int):
        calls.append(board_id)

    restarted_store = SQLiteQueueStore(path)
    try:
        restarted = FallbackScheduler(store=restarted_store, sleep_fn=_no_sleep)
        restarted.attach(runner)
        assert await restarted.start() == 1
        await _drain()
        assert calls == [1]
        await restarted.shutdown()
    finally:
        restarted_store.close()


@pytest.mark.asyncio
async def test_trigger_survives_until_runner_returns(store):
    seen = []
    release = asyncio.Event()

    async def runner(board_id: int):
        seen.append(store.get_fallback_due(board_id))
        await release.wait()

    clock = _Clock()
    scheduler = FallbackScheduler(store=store, delay_seconds=60, now_fn=clock, sleep_fn=_no_sleep)
    scheduler.attach(runner)
    await scheduler.start()
    scheduler.arm(5)
    await _drain()

    assert seen == [1060.0]
    assert scheduler.status["firing"] == [5]

    release.set()
    await _drain()

    assert scheduler.pending_due_at(5) is None
    assert scheduler.status["firing"] == []
    await scheduler.shutdown()


@pytest.mark.asyncio
async def test_rearm_while_firing_replaces_stale_due_time(store):
    blocker = asyncio.Event()
    sleeps = []

    async def sleep_fn(seconds: float) -> None:
        sleeps.append(seconds)
        if len(sleeps) > 1:
            await blocker.wait()

    clock = _Clock()
    scheduler = FallbackScheduler(store=store, delay_seconds=60, now_fn=clock, sleep_fn=sleep_fn)

    async def runner(board_id: int):
        clock.now += 100
        assert scheduler.arm(board_id) is True

    scheduler.attach(runner)
    await scheduler.start()
    scheduler.arm(7)
    await _drain()

    assert scheduler.pending_due_at(7) == 1160.0
    assert sleeps == [60.0, 60.0]
    await scheduler.shutdown()
    assert scheduler.pending_due_at(7) == 1160.0

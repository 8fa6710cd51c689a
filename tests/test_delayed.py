from datetime import datetime, timedelta, timezone

import pytest
from fakeredis import aioredis as fakeredis

from bandit_engine.cache.bandit_cache import RedisBanditCache
from bandit_engine.common.errors import TransientError
from bandit_engine.common.streams import pending_key
from bandit_engine.delayed.tracker import DelayedRewardTracker
from bandit_engine.storage.memory import InMemoryBanditStore


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


class RecordingBandit:
    def __init__(self, fail_for=()):
        self.updates = []
        self.fail_for = set(fail_for)

    async def update_reward(self, experiment_id, arm_id, reward):
        if arm_id in self.fail_for:
            raise TransientError("store unavailable")
        self.updates.append((experiment_id, arm_id, reward))


START = datetime(2024, 5, 1, 9, 0, tzinfo=timezone.utc)


def _tracker(bandit=None, cache=None):
    clock = FrozenClock(START)
    store = InMemoryBanditStore()
    tracker = DelayedRewardTracker(store, bandit or RecordingBandit(), cache, clock=clock)
    return store, tracker, clock


@pytest.mark.asyncio
async def test_conversion_links_pending_reward():
    store, tracker, clock = _tracker()
    pending = await tracker.record_pending_reward("exp", "arm-a", "user-1")
    assert pending.expires_at - pending.assigned_at == timedelta(days=7)

    clock.advance(hours=2)
    matched = await tracker.process_conversion("txn-1", "user-1", 9.99, "EUR")
    assert matched.id == pending.id

    stored = await store.get_pending_reward(pending.id)
    assert stored.converted
    assert stored.conversion_value == pytest.approx(9.99)
    assert stored.conversion_currency == "EUR"
    assert stored.converted_at == clock.now
    assert stored.processed_at == clock.now

    links = await tracker.get_conversion_links("txn-1")
    assert len(links) == 1
    assert links[0].pending_reward_id == pending.id

    assert await tracker.process_conversion("txn-2", "user-1", 5.0, "EUR") is None


@pytest.mark.asyncio
async def test_latest_assignment_wins_attribution():
    _, tracker, clock = _tracker()
    older = await tracker.record_pending_reward("exp", "arm-a", "user-1")
    clock.advance(minutes=5)
    newer = await tracker.record_pending_reward("exp", "arm-b", "user-1")
    clock.advance(minutes=5)
    await tracker.record_pending_reward("other", "arm-c", "user-1")

    matched = await tracker.process_conversion("txn", "user-1", 1.0, "USD", experiment_id="exp")
    assert matched.id == newer.id
    assert not (await tracker.get_pending_reward(older.id)).converted


@pytest.mark.asyncio
async def test_conversion_for_unknown_user_returns_none():
    store, tracker, _ = _tracker()
    assert await tracker.process_conversion("txn", "ghost", 1.0, "USD") is None
    assert store.links == []


@pytest.mark.asyncio
async def test_expired_pending_reward_counts_as_failure():
    bandit = RecordingBandit()
    store, tracker, clock = _tracker(bandit)
    pending = await tracker.record_pending_reward("exp", "arm-a", "user-1", ttl=timedelta(hours=1))

    clock.advance(minutes=59)
    assert await tracker.process_expired_rewards() == 0

    clock.advance(minutes=2)
    assert (await tracker.get_stats())["expired_unprocessed"] == 1
    assert await tracker.process_conversion("txn", "user-1", 3.0, "USD") is None
    assert await tracker.process_expired_rewards() == 1
    assert bandit.updates == [("exp", "arm-a", 0.0)]

    stored = await store.get_pending_reward(pending.id)
    assert stored.processed_at == clock.now
    assert not stored.converted
    assert await tracker.process_expired_rewards() == 0
    assert bandit.updates == [("exp", "arm-a", 0.0)]


@pytest.mark.asyncio
async def test_expiry_failures_are_isolated_per_record():
    bandit = RecordingBandit(fail_for={"arm-bad"})
    store, tracker, clock = _tracker(bandit)
    bad = await tracker.record_pending_reward("exp", "arm-bad", "user-1", ttl=timedelta(minutes=1))
    await tracker.record_pending_reward("exp", "arm-good", "user-2", ttl=timedelta(minutes=2))
    clock.advance(minutes=5)

    assert await tracker.process_expired_rewards() == 1
    assert bandit.updates == [("exp", "arm-good", 0.0)]
    assert (await store.get_pending_reward(bad.id)).processed_at is None


@pytest.mark.asyncio
async def test_expiry_respects_batch_size_oldest_first():
    bandit = RecordingBandit()
    _, tracker, clock = _tracker(bandit)
    for minutes, arm in ((3, "arm-c"), (1, "arm-a"), (2, "arm-b")):
        await tracker.record_pending_reward("exp", arm, f"user-{arm}", ttl=timedelta(minutes=minutes))
    clock.advance(minutes=10)

    assert await tracker.process_expired_rewards(batch_size=2) == 2
    assert [arm for _, arm, _ in bandit.updates] == ["arm-a", "arm-b"]


def test_ttl_rules():
    _, tracker, _ = _tracker()
    assert not tracker.set_default_ttl(timedelta(0))
    assert not tracker.set_default_ttl(timedelta(days=31))
    assert tracker.default_ttl == timedelta(days=7)
    assert tracker.set_default_ttl(timedelta(days=30))
    assert tracker.default_ttl == timedelta(days=30)


@pytest.mark.asyncio
async def test_out_of_range_ttl_uses_default():
    _, tracker, _ = _tracker()
    pending = await tracker.record_pending_reward("exp", "arm", "user", ttl=timedelta(days=90))
    assert pending.expires_at - pending.assigned_at == timedelta(days=7)


@pytest.mark.asyncio
async def test_pending_rewards_are_cached():
    redis = fakeredis.FakeRedis(decode_responses=True)
    store, tracker, _ = _tracker(cache=RedisBanditCache(redis))
    pending = await tracker.record_pending_reward("exp", "arm", "user-1")
    assert await redis.exists(pending_key(pending.id))

    store.pending.clear()
    cached = await tracker.get_pending_reward(pending.id)
    assert cached.arm_id == "arm"

    await store.save_pending_reward(cached)
    await tracker.process_conversion("txn", "user-1", 2.0, "USD")
    assert not await redis.exists(pending_key(pending.id))
    assert (await tracker.get_pending_reward(pending.id)).converted

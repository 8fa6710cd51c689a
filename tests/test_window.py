from datetime import datetime, timedelta, timezone

import pytest
from fakeredis import aioredis as fakeredis

from bandit_engine.common.errors import ValidationError
from bandit_engine.common.streams import window_key, window_stats_key
from bandit_engine.window.aggregator import SlidingWindowAggregator, stats_from_events
from bandit_engine.window.schemas import WindowConfig, WindowEvent


class FrozenClock:
    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


START = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


def _aggregator(config: WindowConfig, clock=None):
    redis = fakeredis.FakeRedis(decode_responses=True)
    return redis, SlidingWindowAggregator(redis, default_config=config, clock=clock or FrozenClock(START))


def test_window_config_validation():
    with pytest.raises(ValidationError):
        WindowConfig(type="sessions")
    with pytest.raises(ValidationError):
        WindowConfig(size=0)
    with pytest.raises(ValidationError):
        WindowConfig(min_samples=-1)


@pytest.mark.asyncio
async def test_event_window_keeps_newest_members():
    clock = FrozenClock(START)
    redis, window = _aggregator(WindowConfig(type="events", size=5, min_samples=3), clock)
    for i in range(8):
        clock.advance(seconds=1)
        await window.record_event("exp", "arm", 1.0 if i % 2 else 0.0, user_id=f"u{i}")

    assert await redis.zcard(window_key("exp", "arm")) == 5
    stats = await window.get_window_stats("exp", "arm")
    assert stats.samples == 5
    # events 3..7 survive: rewards 1, 0, 1, 0, 1
    assert stats.conversions == 3
    assert stats.revenue == pytest.approx(3.0)
    assert (stats.alpha, stats.beta) == (4.0, 3.0)
    assert stats.window_end - stats.window_start == timedelta(seconds=4)
    assert await window.get_utilization("exp", "arm") == 1.0


@pytest.mark.asyncio
async def test_identical_rewards_at_same_instant_are_distinct_members():
    redis, window = _aggregator(WindowConfig(size=10, min_samples=1))
    for _ in range(3):
        await window.record_event("exp", "arm", 0.0, user_id="same", ts=START)
    assert await redis.zcard(window_key("exp", "arm")) == 3


@pytest.mark.asyncio
async def test_time_window_drops_old_events():
    clock = FrozenClock(START)
    _, window = _aggregator(WindowConfig(type="time", size=60, min_samples=1), clock)
    await window.record_event("exp", "arm", 5.0)
    clock.advance(seconds=30)
    await window.record_event("exp", "arm", 0.0)
    clock.advance(seconds=45)

    stats = await window.get_window_stats("exp", "arm")
    assert stats.samples == 1
    assert stats.conversions == 0

    assert await window.trim_window("exp", "arm") == 1
    assert await window.get_utilization("exp", "arm") == 1.0


@pytest.mark.asyncio
async def test_stats_cache_invalidated_on_new_event():
    redis, window = _aggregator(WindowConfig(size=100, min_samples=1))
    await window.record_event("exp", "arm", 2.0)
    first = await window.get_window_stats("exp", "arm")
    assert await redis.exists(window_stats_key("exp", "arm"))
    assert first.samples == 1

    await window.record_event("exp", "arm", 0.0)
    assert not await redis.exists(window_stats_key("exp", "arm"))
    second = await window.get_window_stats("exp", "arm")
    assert second.samples == 2
    assert second.avg_reward == pytest.approx(1.0)


@pytest.mark.asyncio
async def test_windowed_stats_require_min_samples():
    _, window = _aggregator(WindowConfig(size=100, min_samples=3))
    for reward in (1.0, 0.0):
        await window.record_event("exp", "arm", reward)
    assert not await window.has_enough_samples("exp", "arm")
    assert await window.windowed_arm_stats("exp", "arm") is None

    await window.record_event("exp", "arm", 4.0)
    stats = await window.windowed_arm_stats("exp", "arm")
    assert stats is not None
    assert stats.samples == 3
    assert stats.conversions == 2
    assert stats.total_reward == pytest.approx(5.0)


@pytest.mark.asyncio
async def test_malformed_members_are_skipped():
    redis, window = _aggregator(WindowConfig(size=100, min_samples=1))
    await window.record_event("exp", "arm", 1.0)
    await redis.zadd(window_key("exp", "arm"), {"not-json": 1})
    stats = await window.get_window_stats("exp", "arm")
    assert stats.samples == 1


@pytest.mark.asyncio
async def test_per_experiment_config_and_info():
    _, window = _aggregator(WindowConfig(size=100, min_samples=10))
    window.update_config("exp", WindowConfig(type="events", size=4, min_samples=2))
    assert window.configured_experiments() == ["exp"]
    for reward in (1.0, 1.0):
        await window.record_event("exp", "arm", reward)
    info = await window.get_window_info("exp", "arm")
    assert info["config"] == {"type": "events", "size": 4, "min_samples": 2}
    assert info["samples"] == 2
    assert info["utilization"] == pytest.approx(0.5)
    assert info["has_enough_samples"] is True
    assert window.config_for("other").size == 100


@pytest.mark.asyncio
async def test_export_newest_first_and_clear():
    clock = FrozenClock(START)
    redis, window = _aggregator(WindowConfig(size=100, min_samples=1), clock)
    for reward in (1.0, 2.0, 3.0):
        clock.advance(seconds=1)
        await window.record_event("exp", "arm", reward, currency="EUR")

    events = await window.export_events("exp", "arm", limit=2)
    assert [event.reward for event in events] == [3.0, 2.0]
    assert events[0].currency == "EUR"
    assert await window.export_events("exp", "arm", limit=0) == []

    await window.clear_window("exp", "arm")
    assert not await redis.exists(window_key("exp", "arm"))
    assert (await window.get_window_stats("exp", "arm")).samples == 0


def test_stats_from_events_counts_positive_revenue_only():
    events = [WindowEvent(ts_ms=1_000, reward=3.0), WindowEvent(ts_ms=2_000, reward=-1.0)]
    stats = stats_from_events("arm", events)
    assert stats.samples == 2
    assert stats.conversions == 1
    assert stats.revenue == pytest.approx(3.0)

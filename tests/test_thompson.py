import asyncio
from datetime import timedelta

import pytest
from fakeredis import aioredis as fakeredis
from redis.exceptions import ConnectionError as RedisConnectionError

from bandit_engine.cache.bandit_cache import RedisBanditCache
from bandit_engine.common.clock import utcnow
from bandit_engine.common.errors import NotFoundError
from bandit_engine.sampler.beta import BetaSampler
from bandit_engine.storage.memory import InMemoryBanditStore
from bandit_engine.thompson.bandit import ThompsonSampling, credible_interval
from bandit_engine.thompson.schemas import Arm, ArmStats, Assignment


class ConstantSampler(BetaSampler):
    def sample(self, alpha, beta):
        return 0.5


class BrokenRedis:
    async def get(self, *args, **kwargs):
        raise RedisConnectionError("down")

    async def set(self, *args, **kwargs):
        raise RedisConnectionError("down")

    async def delete(self, *args, **kwargs):
        raise RedisConnectionError("down")

    def pipeline(self, *args, **kwargs):
        raise RedisConnectionError("down")


class LaggingCache(RedisBanditCache):
    def __init__(self, redis, delays):
        super().__init__(redis)
        self.delays = list(delays)

    async def set_arm_stats(self, stats):
        if self.delays:
            await asyncio.sleep(self.delays.pop(0))
        return await super().set_arm_stats(stats)


async def _store_with_arms(*names, experiment_id="exp-1"):
    store = InMemoryBanditStore()
    for name in names:
        await store.add_arm(Arm(id=f"{experiment_id}-{name}", experiment_id=experiment_id, name=name))
    return store


@pytest.mark.asyncio
async def test_update_reward_is_monotonic():
    store = await _store_with_arms("a")
    bandit = ThompsonSampling(store, sampler=BetaSampler(seed=1))

    first = await bandit.update_reward("exp-1", "exp-1-a", 9.99)
    assert (first.samples, first.conversions, first.alpha, first.beta) == (1, 1, 2.0, 1.0)
    assert first.avg_reward == pytest.approx(9.99)

    second = await bandit.update_reward("exp-1", "exp-1-a", 0.0)
    assert second.samples == first.samples + 1
    assert second.conversions == first.conversions
    assert second.beta == 2.0
    assert second.avg_reward == pytest.approx(9.99 / 2)


@pytest.mark.asyncio
async def test_sticky_assignment_within_ttl():
    store = await _store_with_arms("a", "b", "c")
    redis = fakeredis.FakeRedis(decode_responses=True)
    bandit = ThompsonSampling(store, RedisBanditCache(redis), sampler=BetaSampler(seed=3))

    chosen = await bandit.select_arm("exp-1", "user-1")
    for _ in range(20):
        assert await bandit.select_arm("exp-1", "user-1") == chosen
    assert ("exp-1", "user-1") in store.assignments
    assert await redis.exists("ab:assign:exp-1:user-1")


@pytest.mark.asyncio
async def test_concurrent_first_selection_creates_one_assignment():
    store = await _store_with_arms("a", "b")
    saved = []
    original = store.save_assignment

    async def tracking_save(assignment):
        saved.append(assignment)
        await original(assignment)

    store.save_assignment = tracking_save
    bandit = ThompsonSampling(store, sampler=BetaSampler(seed=4))
    results = await asyncio.gather(*(bandit.select_arm("exp-1", "user-9") for _ in range(10)))
    assert len(set(results)) == 1
    assert len(saved) == 1


@pytest.mark.asyncio
async def test_expired_assignment_is_superseded():
    store = await _store_with_arms("a", "b")
    past = utcnow() - timedelta(days=2)
    await store.save_assignment(Assignment.create("exp-1", "user-2", "exp-1-b", timedelta(hours=24), past))
    bandit = ThompsonSampling(store, sampler=ConstantSampler())

    assert await bandit.select_arm("exp-1", "user-2") == "exp-1-a"
    replacement = await store.get_assignment("exp-1", "user-2")
    assert replacement.arm_id == "exp-1-a"
    assert not replacement.is_expired()


@pytest.mark.asyncio
async def test_ties_go_to_first_listed_arm():
    store = await _store_with_arms("first", "second", "third")
    bandit = ThompsonSampling(store, sampler=ConstantSampler())
    for user in range(5):
        assert await bandit.select_arm("exp-1", f"user-{user}") == "exp-1-first"


@pytest.mark.asyncio
async def test_select_without_arms_raises_not_found():
    bandit = ThompsonSampling(InMemoryBanditStore())
    with pytest.raises(NotFoundError):
        await bandit.select_arm("missing", "user-1")


@pytest.mark.asyncio
async def test_strong_arm_dominates_selection_and_win_probability():
    store = await _store_with_arms("weak", "strong")
    await store.save_arm_stats(ArmStats(arm_id="exp-1-weak", alpha=5, beta=95, samples=98, conversions=4))
    await store.save_arm_stats(ArmStats(arm_id="exp-1-strong", alpha=40, beta=60, samples=98, conversions=39))
    bandit = ThompsonSampling(store, sampler=BetaSampler(seed=5))

    picks = [await bandit.select_arm("exp-1", f"u{i}") for i in range(200)]
    assert picks.count("exp-1-strong") > 190

    probs = await bandit.calculate_win_probability("exp-1", 2_000)
    assert sum(probs.values()) == pytest.approx(1.0)
    assert probs["exp-1-strong"] > 0.99


@pytest.mark.asyncio
async def test_stats_source_overrides_all_time_posterior():
    store = await _store_with_arms("a", "b")
    await store.save_arm_stats(ArmStats(arm_id="exp-1-a", alpha=500, beta=2))

    async def windowed(experiment_id, arm_id):
        if arm_id == "exp-1-a":
            return ArmStats(arm_id=arm_id, alpha=1, beta=500)
        return None

    bandit = ThompsonSampling(store, sampler=BetaSampler(seed=6), stats_source=windowed)
    picks = [await bandit.select_arm("exp-1", f"u{i}") for i in range(50)]
    assert picks.count("exp-1-b") > 45


@pytest.mark.asyncio
async def test_cache_failures_never_fail_updates():
    store = await _store_with_arms("a")
    bandit = ThompsonSampling(store, RedisBanditCache(BrokenRedis()), sampler=BetaSampler(seed=7))

    stats = await bandit.update_reward("exp-1", "exp-1-a", 1.0)
    assert stats.conversions == 1
    assert (await bandit.get_stats("exp-1-a")).samples == 1
    assert await bandit.select_arm("exp-1", "user-3") == "exp-1-a"


@pytest.mark.asyncio
async def test_concurrent_rewards_are_not_lost():
    store = await _store_with_arms("a")
    bandit = ThompsonSampling(store)
    await asyncio.gather(*(bandit.update_reward("exp-1", "exp-1-a", float(i % 2)) for i in range(100)))
    stats = await store.get_arm_stats("exp-1-a")
    assert stats.samples == 100
    assert stats.conversions == 50
    assert stats.alpha == 51.0
    assert stats.beta == 51.0


@pytest.mark.asyncio
async def test_arm_reports_carry_credible_interval():
    store = await _store_with_arms("a", "b")
    await store.save_arm_stats(ArmStats(arm_id="exp-1-a", alpha=31, beta=71, samples=100, conversions=30))
    bandit = ThompsonSampling(store, sampler=BetaSampler(seed=8))

    reports = await bandit.arm_reports("exp-1", simulations=500)
    assert [report.arm_id for report in reports] == ["exp-1-a", "exp-1-b"]
    first = reports[0]
    assert first.credible_low < first.posterior_mean < first.credible_high
    assert first.posterior_mean == pytest.approx(31 / 102)
    payload = first.to_dict()
    assert payload["samples"] == 100
    assert sum(r.win_probability for r in reports) == pytest.approx(1.0)


def test_credible_interval_uniform_prior():
    low, high = credible_interval(ArmStats(arm_id="x"))
    assert low == pytest.approx(0.025)
    assert high == pytest.approx(0.975)


@pytest.mark.asyncio
async def test_late_cache_write_cannot_roll_stats_back():
    store = await _store_with_arms("a")
    cache = LaggingCache(fakeredis.FakeRedis(decode_responses=True), delays=[0.05])
    bandit = ThompsonSampling(store, cache)

    await asyncio.gather(
        bandit.update_reward("exp-1", "exp-1-a", 1.0),
        bandit.update_reward("exp-1", "exp-1-a", 0.0),
    )
    assert (await store.get_arm_stats("exp-1-a")).samples == 2
    assert (await bandit.get_stats("exp-1-a")).samples == 2
    assert not await cache.set_arm_stats(ArmStats(arm_id="exp-1-a", samples=1))
    assert (await cache.get_arm_stats("exp-1-a")).samples == 2


@pytest.mark.asyncio
async def test_assignment_locks_are_released_after_selection():
    store = await _store_with_arms("a", "b")
    bandit = ThompsonSampling(store, sampler=BetaSampler(seed=5))
    await asyncio.gather(*(bandit.select_arm("exp-1", f"user-{i}") for i in range(500)))
    await asyncio.gather(*(bandit.select_arm("exp-1", "same-user") for _ in range(20)))
    assert len(bandit._assign_locks) == 0
    assert len(store.assignments) == 501

import asyncio
from datetime import datetime, timedelta, timezone

import numpy as np
import pytest
from fakeredis import FakeServer
from fakeredis import aioredis as fakeredis

from bandit_engine.common.errors import NotFoundError, UnsupportedError
from bandit_engine.contextual.linucb import LinUCBModel
from bandit_engine.delayed.schemas import ConversionLink, PendingReward
from bandit_engine.objectives.schemas import ArmObjectiveStats, ObjectiveType
from bandit_engine.objectives.scorer import ObjectiveScorer
from bandit_engine.storage.base import BanditStore
from bandit_engine.storage.redis_store import RedisBanditStore
from bandit_engine.thompson.bandit import ThompsonSampling
from bandit_engine.thompson.schemas import Arm, ArmStats, Assignment


def _store():
    return RedisBanditStore(fakeredis.FakeRedis(decode_responses=True))


@pytest.mark.asyncio
async def test_arms_keep_insertion_order_and_weights():
    store = _store()
    await store.add_arm(Arm(id="a", experiment_id="exp", name="control", is_control=True))
    await store.add_arm(Arm(id="b", experiment_id="exp", name="variant", weight=2.0))
    await store.add_arm(Arm(id="a", experiment_id="exp", name="control-renamed", is_control=True))

    arms = await store.get_arms("exp")
    assert [arm.id for arm in arms] == ["a", "b"]
    assert arms[0].is_control and arms[0].name == "control-renamed"
    assert arms[1].weight == 2.0
    assert await store.get_arms("missing") == []

    await store.update_arm_weight("b", 0.5)
    assert (await store.get_arms("exp"))[1].weight == 0.5
    with pytest.raises(NotFoundError):
        await store.update_arm_weight("nope", 1.0)


@pytest.mark.asyncio
async def test_apply_reward_is_atomic_under_concurrency():
    store = _store()
    rewards = [4.99 if i % 4 == 0 else 0.0 for i in range(200)]
    await asyncio.gather(*(store.apply_reward("arm", reward) for reward in rewards))

    stats = await store.get_arm_stats("arm")
    assert stats.samples == 200
    assert stats.conversions == 50
    assert stats.alpha == 51.0
    assert stats.beta == 151.0
    assert stats.total_reward == pytest.approx(50 * 4.99)
    assert stats.updated_at is not None


@pytest.mark.asyncio
async def test_saved_stats_round_trip():
    store = _store()
    assert await store.get_arm_stats("arm") is None
    await store.save_arm_stats(ArmStats(arm_id="arm", alpha=3, beta=5, samples=6, conversions=2, total_reward=7.5))
    stats = await store.apply_reward("arm", 1.0)
    assert (stats.alpha, stats.beta, stats.samples, stats.conversions) == (4.0, 5.0, 7, 3)
    assert stats.total_reward == pytest.approx(8.5)


@pytest.mark.asyncio
async def test_assignment_expires_with_ttl():
    store = _store()
    assignment = Assignment.create("exp", "user", "a", timedelta(hours=1))
    await store.save_assignment(assignment)
    loaded = await store.get_assignment("exp", "user")
    assert loaded.arm_id == "a"
    assert loaded.expires_at == assignment.expires_at
    ttl_ms = await store.redis.pttl("bandit:assignment:exp:user")
    assert 0 < ttl_ms <= 3_600_000
    assert await store.get_assignment("exp", "other") is None


@pytest.mark.asyncio
async def test_linucb_model_round_trip():
    store = _store()
    model = LinUCBModel.fresh("arm", dim=4)
    model.b = np.array([1.0, 2.0, 0.0, 0.5])
    model.samples = 3
    await store.save_linucb_model(model)
    loaded = await store.get_linucb_model("arm")
    assert loaded.samples == 3
    assert np.allclose(loaded.b, model.b)
    assert await store.get_linucb_model("missing") is None


@pytest.mark.asyncio
async def test_objective_stats_round_trip():
    store = _store()
    stats = ArmObjectiveStats(arm_id="arm", objective=ObjectiveType.LTV)
    stats.record(5.0, ltv=40.0)
    await store.save_objective_stats(stats)

    loaded = await store.get_objective_stats("arm", ObjectiveType.LTV)
    assert loaded.avg_ltv == 40.0
    assert loaded.conversions == 1
    assert await store.get_objective_stats("arm", ObjectiveType.REVENUE) is None
    assert list(await store.get_all_objective_stats("arm")) == [ObjectiveType.LTV]


@pytest.mark.asyncio
async def test_objective_rewards_survive_two_writers():
    server = FakeServer()
    stores = [RedisBanditStore(fakeredis.FakeRedis(server=server, decode_responses=True)) for _ in range(2)]
    scorers = [ObjectiveScorer(store, ThompsonSampling(store)) for store in stores]

    await asyncio.gather(
        *(
            scorer.record_objective_reward("arm", ObjectiveType.REVENUE, 2.0 if i % 2 else 0.0)
            for scorer in scorers
            for i in range(50)
        ),
        *(
            scorer.record_objective_reward("arm", ObjectiveType.LTV, 1.0, ltv=50.0)
            for scorer in scorers
            for _ in range(10)
        ),
    )

    revenue = await stores[0].get_objective_stats("arm", ObjectiveType.REVENUE)
    assert revenue.samples == 100
    assert revenue.conversions == 50
    assert (revenue.alpha, revenue.beta) == (51.0, 51.0)
    assert revenue.total_revenue == pytest.approx(100.0)
    ltv = await stores[1].get_objective_stats("arm", ObjectiveType.LTV)
    assert ltv.samples == 20
    assert ltv.avg_ltv == pytest.approx(50.0)


@pytest.mark.asyncio
async def test_objective_ltv_is_smoothed_in_place():
    store = _store()
    first = await store.apply_objective_reward("arm", ObjectiveType.LTV, 10.0, ltv=100.0)
    assert first.avg_ltv == 100.0
    second = await store.apply_objective_reward("arm", ObjectiveType.LTV, 0.0, ltv=200.0)
    assert second.avg_ltv == pytest.approx(110.0)
    third = await store.apply_objective_reward("arm", ObjectiveType.LTV, 0.0)
    assert third.avg_ltv == pytest.approx(110.0)
    assert (third.alpha, third.beta, third.samples, third.conversions) == (2.0, 3.0, 3, 1)


@pytest.mark.asyncio
async def test_pending_rewards_are_indexed_by_user_and_expiry():
    store = _store()
    assert store.supports_delayed
    start = datetime(2024, 3, 1, tzinfo=timezone.utc)
    older = PendingReward.create("exp", "a", "user", timedelta(days=1), start)
    newer = PendingReward.create("exp", "b", "user", timedelta(days=3), start + timedelta(hours=2))
    other = PendingReward.create("exp-2", "c", "user", timedelta(days=2), start + timedelta(hours=1))
    for pending in (older, newer, other):
        await store.save_pending_reward(pending)

    assert [p.id for p in await store.get_pending_rewards_by_user("user")] == [newer.id, other.id, older.id]
    assert [p.id for p in await store.get_pending_rewards_by_user("user", "exp")] == [newer.id, older.id]
    assert await store.get_pending_rewards_by_user("nobody") == []
    assert (await store.get_pending_reward(newer.id)).arm_id == "b"
    assert await store.get_pending_reward("missing") is None

    later = start + timedelta(days=5)
    assert await store.count_expired_pending_rewards(later) == 3
    assert [p.id for p in await store.get_expired_pending_rewards(later, 2)] == [older.id, other.id]
    assert await store.count_expired_pending_rewards(start + timedelta(days=1, hours=1)) == 1

    older.processed_at = later
    other.converted = True
    await store.save_pending_reward(older)
    await store.save_pending_reward(other)
    assert [p.id for p in await store.get_expired_pending_rewards(later, 10)] == [newer.id]
    assert (await store.get_pending_reward(older.id)).processed_at == later


@pytest.mark.asyncio
async def test_conversion_links_append_per_transaction():
    store = _store()
    linked_at = datetime(2024, 3, 2, tzinfo=timezone.utc)
    await store.save_conversion_link(ConversionLink(pending_reward_id="p1", transaction_id="txn", linked_at=linked_at))
    await store.save_conversion_link(ConversionLink(pending_reward_id="p2", transaction_id="txn", linked_at=linked_at))
    links = await store.get_conversion_links("txn")
    assert [link.pending_reward_id for link in links] == ["p1", "p2"]
    assert links[0].linked_at == linked_at
    assert await store.get_conversion_links("other") == []


@pytest.mark.asyncio
async def test_base_store_leaves_optional_features_unsupported():
    store = BanditStore()
    with pytest.raises(UnsupportedError):
        await store.save_pending_reward(PendingReward.create("exp", "arm", "user", timedelta(days=1)))
    with pytest.raises(UnsupportedError):
        await store.apply_objective_reward("arm", ObjectiveType.REVENUE, 1.0)

"""Redis hash-backed store.

Arm and objective statistics are updated with MULTI/EXEC pipelines of HINCRBY
and HINCRBYFLOAT so concurrent rewards for the same arm never overwrite each
other. The LTV moving average depends on the stored value, so that update
watches the hash and retries when another writer got there first.

Pending rewards are JSON strings indexed by two sorted sets: one per user
scored by assignment time, and one global set of open rewards scored by
expiry.
"""
from __future__ import annotations

import json
from datetime import datetime
from typing import Dict, List, Mapping, Optional

from redis.asyncio import Redis
from redis.exceptions import WatchError

from ..common.clock import parse_iso, to_millis, utcnow
from ..common.errors import NotFoundError
from ..contextual.linucb import LinUCBModel
from ..delayed.schemas import ConversionLink, PendingReward
from ..objectives.schemas import TRACKED_OBJECTIVES, ArmObjectiveStats, ObjectiveType, smoothed_ltv
from ..thompson.schemas import Arm, ArmStats, Assignment
from .base import BanditStore


def experiment_arms_key(experiment_id: str) -> str:
    return f"bandit:experiment:{experiment_id}:arms"


def arm_key(arm_id: str) -> str:
    return f"bandit:arm:{arm_id}"


def stats_key(arm_id: str) -> str:
    return f"bandit:stats:{arm_id}"


def stored_assignment_key(experiment_id: str, user_id: str) -> str:
    return f"bandit:assignment:{experiment_id}:{user_id}"


def model_key(arm_id: str) -> str:
    return f"linucb:model:{arm_id}"


def objective_key(arm_id: str, objective: ObjectiveType) -> str:
    return f"bandit:objective:{arm_id}:{objective.value}"


def stored_pending_key(pending_id: str) -> str:
    return f"bandit:reward:pending:{pending_id}"


def user_pending_key(user_id: str) -> str:
    return f"bandit:user:{user_id}:pending"


def conversion_links_key(transaction_id: str) -> str:
    return f"bandit:conversion:{transaction_id}:links"


OPEN_PENDING_KEY = "bandit:pending-open"


def _stats_from_hash(arm_id: str, data: Mapping[str, str]) -> ArmStats:
    return ArmStats(
        arm_id=arm_id,
        alpha=float(data.get("alpha", 1.0)),
        beta=float(data.get("beta", 1.0)),
        samples=int(data.get("samples", 0)),
        conversions=int(data.get("conversions", 0)),
        total_reward=float(data.get("total_reward", 0.0)),
        updated_at=parse_iso(data.get("updated_at")),
    )


class RedisBanditStore(BanditStore):
    supports_delayed = True
    supports_objectives = True

    def __init__(self, redis: Redis):
        self.redis = redis

    async def add_arm(self, arm: Arm) -> None:
        key = arm_key(arm.id)
        exists = await self.redis.exists(key)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hset(
                key,
                mapping={
                    "id": arm.id,
                    "experiment_id": arm.experiment_id,
                    "name": arm.name,
                    "is_control": "1" if arm.is_control else "0",
                    "weight": arm.weight,
                },
            )
            if not exists:
                pipe.rpush(experiment_arms_key(arm.experiment_id), arm.id)
            await pipe.execute()

    async def get_arms(self, experiment_id: str) -> List[Arm]:
        arm_ids = await self.redis.lrange(experiment_arms_key(experiment_id), 0, -1)
        arms: List[Arm] = []
        for arm_id in arm_ids:
            data = await self.redis.hgetall(arm_key(arm_id))
            if data:
                arms.append(Arm.from_dict(data))
        return arms

    async def update_arm_weight(self, arm_id: str, weight: float) -> None:
        if not await self.redis.exists(arm_key(arm_id)):
            raise NotFoundError(f"unknown arm {arm_id}")
        await self.redis.hset(arm_key(arm_id), "weight", weight)

    async def get_arm_stats(self, arm_id: str) -> Optional[ArmStats]:
        data = await self.redis.hgetall(stats_key(arm_id))
        if not data:
            return None
        return _stats_from_hash(arm_id, data)

    async def save_arm_stats(self, stats: ArmStats) -> None:
        mapping = {
            "alpha": stats.alpha,
            "beta": stats.beta,
            "samples": stats.samples,
            "conversions": stats.conversions,
            "total_reward": stats.total_reward,
        }
        if stats.updated_at is not None:
            mapping["updated_at"] = stats.updated_at.isoformat()
        await self.redis.hset(stats_key(stats.arm_id), mapping=mapping)

    async def apply_reward(self, arm_id: str, reward: float, ts: Optional[datetime] = None) -> ArmStats:
        key = stats_key(arm_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.hsetnx(key, "alpha", 1.0)
            pipe.hsetnx(key, "beta", 1.0)
            if reward > 0:
                pipe.hincrbyfloat(key, "alpha", 1.0)
                pipe.hincrby(key, "conversions", 1)
                pipe.hincrbyfloat(key, "total_reward", reward)
            else:
                pipe.hincrbyfloat(key, "beta", 1.0)
            pipe.hincrby(key, "samples", 1)
            pipe.hset(key, "updated_at", (ts or utcnow()).isoformat())
            pipe.hgetall(key)
            results = await pipe.execute()
        return _stats_from_hash(arm_id, results[-1])

    async def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        raw = await self.redis.get(stored_assignment_key(experiment_id, user_id))
        if raw is None:
            return None
        return Assignment.from_dict(json.loads(raw))

    async def save_assignment(self, assignment: Assignment) -> None:
        remaining_ms = int((assignment.expires_at - utcnow()).total_seconds() * 1000)
        await self.redis.set(
            stored_assignment_key(assignment.experiment_id, assignment.user_id),
            json.dumps(assignment.to_dict()),
            px=max(remaining_ms, 1),
        )

    async def get_linucb_model(self, arm_id: str) -> Optional[LinUCBModel]:
        raw = await self.redis.get(model_key(arm_id))
        if raw is None:
            return None
        return LinUCBModel.from_dict(json.loads(raw))

    async def save_linucb_model(self, model: LinUCBModel) -> None:
        await self.redis.set(model_key(model.arm_id), json.dumps(model.to_dict()))

    async def get_objective_stats(self, arm_id: str, objective: ObjectiveType) -> Optional[ArmObjectiveStats]:
        data = await self.redis.hgetall(objective_key(arm_id, objective))
        if not data:
            return None
        return ArmObjectiveStats.from_dict({**data, "arm_id": arm_id, "objective": objective.value})

    async def save_objective_stats(self, stats: ArmObjectiveStats) -> None:
        payload = stats.to_dict()
        payload.pop("arm_id")
        payload.pop("objective")
        await self.redis.hset(objective_key(stats.arm_id, stats.objective), mapping=payload)

    async def get_all_objective_stats(self, arm_id: str) -> Dict[ObjectiveType, ArmObjectiveStats]:
        result: Dict[ObjectiveType, ArmObjectiveStats] = {}
        for objective in TRACKED_OBJECTIVES:
            stats = await self.get_objective_stats(arm_id, objective)
            if stats is not None:
                result[objective] = stats
        return result

    async def apply_objective_reward(
        self,
        arm_id: str,
        objective: ObjectiveType,
        reward: float,
        ltv: Optional[float] = None,
    ) -> ArmObjectiveStats:
        key = objective_key(arm_id, objective)
        track_ltv = ltv is not None and ltv > 0
        async with self.redis.pipeline(transaction=True) as pipe:
            while True:
                try:
                    if track_ltv:
                        await pipe.watch(key)
                        current = float(await pipe.hget(key, "avg_ltv") or 0.0)
                        pipe.multi()
                        pipe.hset(key, "avg_ltv", smoothed_ltv(current, ltv))
                    pipe.hsetnx(key, "alpha", 1.0)
                    pipe.hsetnx(key, "beta", 1.0)
                    if reward > 0:
                        pipe.hincrbyfloat(key, "alpha", 1.0)
                        pipe.hincrby(key, "conversions", 1)
                        pipe.hincrbyfloat(key, "total_revenue", reward)
                    else:
                        pipe.hincrbyfloat(key, "beta", 1.0)
                    pipe.hincrby(key, "samples", 1)
                    pipe.hgetall(key)
                    results = await pipe.execute()
                    break
                except WatchError:
                    continue
        return ArmObjectiveStats.from_dict({**results[-1], "arm_id": arm_id, "objective": objective.value})

    async def _load_pending(self, pending_ids: List[str]) -> List[PendingReward]:
        if not pending_ids:
            return []
        raws = await self.redis.mget([stored_pending_key(pending_id) for pending_id in pending_ids])
        return [PendingReward.from_dict(json.loads(raw)) for raw in raws if raw]

    async def save_pending_reward(self, pending: PendingReward) -> None:
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.set(stored_pending_key(pending.id), json.dumps(pending.to_dict()))
            pipe.zadd(user_pending_key(pending.user_id), {pending.id: to_millis(pending.assigned_at)})
            if pending.converted or pending.processed_at is not None:
                pipe.zrem(OPEN_PENDING_KEY, pending.id)
            else:
                pipe.zadd(OPEN_PENDING_KEY, {pending.id: to_millis(pending.expires_at)})
            await pipe.execute()

    async def get_pending_reward(self, pending_id: str) -> Optional[PendingReward]:
        raw = await self.redis.get(stored_pending_key(pending_id))
        if raw is None:
            return None
        return PendingReward.from_dict(json.loads(raw))

    async def get_pending_rewards_by_user(
        self, user_id: str, experiment_id: Optional[str] = None
    ) -> List[PendingReward]:
        pending_ids = await self.redis.zrevrange(user_pending_key(user_id), 0, -1)
        return [
            pending
            for pending in await self._load_pending(pending_ids)
            if experiment_id is None or pending.experiment_id == experiment_id
        ]

    async def get_expired_pending_rewards(self, now: datetime, limit: int) -> List[PendingReward]:
        pending_ids = await self.redis.zrangebyscore(
            OPEN_PENDING_KEY, "-inf", f"({to_millis(now)}", start=0, num=limit
        )
        return await self._load_pending(pending_ids)

    async def count_expired_pending_rewards(self, now: datetime) -> int:
        return await self.redis.zcount(OPEN_PENDING_KEY, "-inf", f"({to_millis(now)}")

    async def save_conversion_link(self, link: ConversionLink) -> None:
        await self.redis.rpush(conversion_links_key(link.transaction_id), json.dumps(link.to_dict()))

    async def get_conversion_links(self, transaction_id: str) -> List[ConversionLink]:
        raws = await self.redis.lrange(conversion_links_key(transaction_id), 0, -1)
        return [ConversionLink.from_dict(json.loads(raw)) for raw in raws]

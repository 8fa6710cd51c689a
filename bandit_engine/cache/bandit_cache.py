"""Best-effort Redis cache for arm stats, assignments and pending rewards.

Reads that fail are misses and writes that fail return ``False``. Neither
ever raises into the caller. Arm stats only ever move forward: a snapshot
with no more samples than the cached one is dropped, so updates that finish
out of order cannot roll the posterior back.
"""
from __future__ import annotations

import json
import logging
from typing import Optional

from redis.asyncio import Redis
from redis.exceptions import WatchError

from ..common.errors import CACHE_ERRORS
from ..common.streams import arm_stats_key, assignment_key, pending_key
from ..delayed.schemas import PendingReward
from ..thompson.schemas import ArmStats, Assignment

logger = logging.getLogger(__name__)

DEFAULT_STATS_TTL_SECS = 86_400
DEFAULT_ASSIGNMENT_TTL_SECS = 86_400
DEFAULT_PENDING_TTL_SECS = 3_600


def _cached_samples(raw: Optional[str]) -> Optional[int]:
    if raw is None:
        return None
    try:
        return int(json.loads(raw).get("samples", 0))
    except (ValueError, TypeError, AttributeError):
        return None


class RedisBanditCache:
    def __init__(
        self,
        redis: Redis,
        *,
        stats_ttl_secs: int = DEFAULT_STATS_TTL_SECS,
        assignment_ttl_secs: int = DEFAULT_ASSIGNMENT_TTL_SECS,
        pending_ttl_secs: int = DEFAULT_PENDING_TTL_SECS,
    ):
        self.redis = redis
        self.stats_ttl_secs = stats_ttl_secs
        self.assignment_ttl_secs = assignment_ttl_secs
        self.pending_ttl_secs = pending_ttl_secs

    async def _get_json(self, key: str) -> Optional[dict]:
        try:
            raw = await self.redis.get(key)
        except CACHE_ERRORS as exc:
            logger.warning("cache read failed for %s: %s", key, exc)
            return None
        if raw is None:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError:
            logger.warning("discarding malformed cache entry %s", key)
            return None

    async def _set_json(self, key: str, payload: dict, ttl_secs: int) -> bool:
        try:
            await self.redis.set(key, json.dumps(payload, separators=(",", ":")), ex=max(int(ttl_secs), 1))
        except CACHE_ERRORS as exc:
            logger.warning("cache write failed for %s: %s", key, exc)
            return False
        return True

    async def _delete(self, key: str) -> bool:
        try:
            await self.redis.delete(key)
        except CACHE_ERRORS as exc:
            logger.warning("cache delete failed for %s: %s", key, exc)
            return False
        return True

    async def get_arm_stats(self, arm_id: str) -> Optional[ArmStats]:
        payload = await self._get_json(arm_stats_key(arm_id))
        return ArmStats.from_dict(payload) if payload else None

    async def set_arm_stats(self, stats: ArmStats) -> bool:
        key = arm_stats_key(stats.arm_id)
        payload = json.dumps(stats.to_dict(), separators=(",", ":"))
        try:
            async with self.redis.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        await pipe.watch(key)
                        cached = _cached_samples(await pipe.get(key))
                        if cached is not None and cached >= stats.samples:
                            return False
                        pipe.multi()
                        pipe.set(key, payload, ex=max(int(self.stats_ttl_secs), 1))
                        await pipe.execute()
                        return True
                    except WatchError:
                        continue
        except CACHE_ERRORS as exc:
            logger.warning("cache write failed for %s: %s", key, exc)
            return False

    async def delete_arm_stats(self, arm_id: str) -> bool:
        return await self._delete(arm_stats_key(arm_id))

    async def get_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        payload = await self._get_json(assignment_key(experiment_id, user_id))
        return Assignment.from_dict(payload) if payload else None

    async def set_assignment(self, assignment: Assignment) -> bool:
        return await self._set_json(
            assignment_key(assignment.experiment_id, assignment.user_id),
            assignment.to_dict(),
            self.assignment_ttl_secs,
        )

    async def get_pending(self, pending_id: str) -> Optional[PendingReward]:
        payload = await self._get_json(pending_key(pending_id))
        return PendingReward.from_dict(payload) if payload else None

    async def set_pending(self, pending: PendingReward) -> bool:
        return await self._set_json(pending_key(pending.id), pending.to_dict(), self.pending_ttl_secs)

    async def delete_pending(self, pending_id: str) -> bool:
        return await self._delete(pending_key(pending_id))

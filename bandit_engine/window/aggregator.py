"""Per-arm sliding windows stored in Redis sorted sets.

Members are JSON-encoded reward events scored by their millisecond timestamp.
Count windows keep the newest ``size`` members; time windows keep members no
older than ``size`` seconds. Derived statistics are cached for a few minutes
and dropped whenever a new event lands.
"""
from __future__ import annotations

import json
import logging
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from redis.asyncio import Redis

from ..common.clock import from_millis, to_millis, utcnow
from ..common.errors import CACHE_ERRORS
from ..common.streams import window_key, window_stats_key
from ..thompson.schemas import ArmStats
from .schemas import WINDOW_EVENTS, WINDOW_TIME, WindowConfig, WindowEvent, WindowStats

logger = logging.getLogger(__name__)

STATS_TTL_SECS = 300


class SlidingWindowAggregator:
    def __init__(
        self,
        redis: Redis,
        *,
        default_config: Optional[WindowConfig] = None,
        stats_ttl_secs: int = STATS_TTL_SECS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.redis = redis
        self.default_config = default_config or WindowConfig()
        self.stats_ttl_secs = stats_ttl_secs
        self._clock = clock
        self._configs: Dict[str, WindowConfig] = {}

    def config_for(self, experiment_id: str) -> WindowConfig:
        return self._configs.get(experiment_id, self.default_config)

    def update_config(self, experiment_id: str, config: WindowConfig) -> None:
        self._configs[experiment_id] = config
        logger.info("window config for %s set to %s", experiment_id, config.to_dict())

    def configured_experiments(self) -> List[str]:
        return list(self._configs)

    def _cutoff_ms(self, config: WindowConfig) -> int:
        return to_millis(self._clock()) - config.size * 1000

    async def record_event(
        self,
        experiment_id: str,
        arm_id: str,
        reward: float,
        *,
        user_id: str = "",
        currency: str = "USD",
        ts: Optional[datetime] = None,
    ) -> WindowEvent:
        config = self.config_for(experiment_id)
        event = WindowEvent(ts_ms=to_millis(ts or self._clock()), reward=reward, user_id=user_id, currency=currency)
        key = window_key(experiment_id, arm_id)
        async with self.redis.pipeline(transaction=True) as pipe:
            pipe.zadd(key, {event.to_member(): event.ts_ms})
            if config.type == WINDOW_EVENTS:
                pipe.zremrangebyrank(key, 0, -config.size - 1)
            else:
                pipe.zremrangebyscore(key, "-inf", f"({self._cutoff_ms(config)}")
            pipe.delete(window_stats_key(experiment_id, arm_id))
            await pipe.execute()
        logger.debug("window event for %s/%s reward=%.4f", experiment_id, arm_id, reward)
        return event

    async def _live_members(self, experiment_id: str, arm_id: str) -> List[Tuple[str, float]]:
        config = self.config_for(experiment_id)
        key = window_key(experiment_id, arm_id)
        if config.type == WINDOW_TIME:
            return await self.redis.zrangebyscore(key, self._cutoff_ms(config), "+inf", withscores=True)
        return await self.redis.zrange(key, -config.size, -1, withscores=True)

    async def _cached_stats(self, experiment_id: str, arm_id: str) -> Optional[WindowStats]:
        try:
            raw = await self.redis.get(window_stats_key(experiment_id, arm_id))
        except CACHE_ERRORS as exc:
            logger.warning("window stats cache read failed: %s", exc)
            return None
        return WindowStats.from_dict(json.loads(raw)) if raw else None

    async def get_window_stats(self, experiment_id: str, arm_id: str) -> WindowStats:
        cached = await self._cached_stats(experiment_id, arm_id)
        if cached is not None:
            return cached
        events: List[WindowEvent] = []
        for member, score in await self._live_members(experiment_id, arm_id):
            try:
                events.append(WindowEvent.from_member(member, score))
            except ValueError as exc:
                logger.warning("skipping malformed window member %r: %s", member, exc)
        stats = stats_from_events(arm_id, events)
        try:
            await self.redis.set(
                window_stats_key(experiment_id, arm_id),
                json.dumps(stats.to_dict()),
                ex=self.stats_ttl_secs,
            )
        except CACHE_ERRORS as exc:
            logger.warning("window stats cache write failed: %s", exc)
        return stats

    async def has_enough_samples(self, experiment_id: str, arm_id: str) -> bool:
        stats = await self.get_window_stats(experiment_id, arm_id)
        return stats.samples >= self.config_for(experiment_id).min_samples

    async def windowed_arm_stats(self, experiment_id: str, arm_id: str) -> Optional[ArmStats]:
        """Window posterior as ArmStats when the window is full enough, else None."""
        stats = await self.get_window_stats(experiment_id, arm_id)
        if stats.samples < self.config_for(experiment_id).min_samples:
            return None
        return ArmStats(
            arm_id=arm_id,
            alpha=stats.alpha,
            beta=stats.beta,
            samples=stats.samples,
            conversions=stats.conversions,
            total_reward=stats.revenue,
            updated_at=stats.window_end,
        )

    async def get_utilization(self, experiment_id: str, arm_id: str) -> float:
        config = self.config_for(experiment_id)
        if config.type == WINDOW_TIME:
            return 1.0
        count = await self.redis.zcard(window_key(experiment_id, arm_id))
        return min(count / config.size, 1.0)

    async def get_window_info(self, experiment_id: str, arm_id: str) -> Dict[str, object]:
        config = self.config_for(experiment_id)
        stats = await self.get_window_stats(experiment_id, arm_id)
        return {
            "experiment_id": experiment_id,
            "arm_id": arm_id,
            "config": config.to_dict(),
            "samples": stats.samples,
            "window_start": stats.window_start.isoformat() if stats.window_start else None,
            "window_end": stats.window_end.isoformat() if stats.window_end else None,
            "utilization": await self.get_utilization(experiment_id, arm_id),
            "has_enough_samples": stats.samples >= config.min_samples,
        }

    async def trim_window(self, experiment_id: str, arm_id: str) -> int:
        config = self.config_for(experiment_id)
        key = window_key(experiment_id, arm_id)
        if config.type == WINDOW_EVENTS:
            removed = await self.redis.zremrangebyrank(key, 0, -config.size - 1)
        else:
            removed = await self.redis.zremrangebyscore(key, "-inf", f"({self._cutoff_ms(config)}")
        if removed:
            await self.redis.delete(window_stats_key(experiment_id, arm_id))
        return int(removed)

    async def clear_window(self, experiment_id: str, arm_id: str) -> None:
        await self.redis.delete(window_key(experiment_id, arm_id), window_stats_key(experiment_id, arm_id))
        logger.info("cleared window %s/%s", experiment_id, arm_id)

    async def export_events(self, experiment_id: str, arm_id: str, limit: int = 100) -> List[WindowEvent]:
        """Newest events first."""
        if limit <= 0:
            return []
        members = await self.redis.zrevrange(window_key(experiment_id, arm_id), 0, limit - 1, withscores=True)
        return [WindowEvent.from_member(member, score) for member, score in members]


def stats_from_events(arm_id: str, events: List[WindowEvent]) -> WindowStats:
    stats = WindowStats(arm_id=arm_id)
    for event in events:
        stats.samples += 1
        if event.converted:
            stats.conversions += 1
            stats.revenue += event.reward
    stats.alpha = 1.0 + stats.conversions
    stats.beta = 1.0 + (stats.samples - stats.conversions)
    if events:
        stamps = [event.ts_ms for event in events]
        stats.window_start = from_millis(min(stamps))
        stats.window_end = from_millis(max(stamps))
    return stats

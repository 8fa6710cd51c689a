"""Pending rewards resolved by later conversions or expired as non-conversions."""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional

from ..common.clock import utcnow
from ..common.errors import CACHE_ERRORS, BanditError
from .schemas import ConversionLink, PendingReward

logger = logging.getLogger(__name__)

DEFAULT_TTL = timedelta(days=7)
MAX_TTL = timedelta(days=30)


class DelayedRewardTracker:
    """Attributes conversions to the user's most recent open pending reward.

    ``bandit`` only needs ``update_reward(experiment_id, arm_id, reward)``; it
    receives a zero reward for every pending reward that expires unconverted.
    """

    def __init__(
        self,
        store,
        bandit,
        cache=None,
        *,
        default_ttl: timedelta = DEFAULT_TTL,
        max_ttl: timedelta = MAX_TTL,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.store = store
        self.bandit = bandit
        self.cache = cache
        self.max_ttl = max_ttl
        self.default_ttl = default_ttl if timedelta(0) < default_ttl <= max_ttl else DEFAULT_TTL
        self._clock = clock

    def set_default_ttl(self, ttl: timedelta) -> bool:
        if ttl <= timedelta(0) or ttl > self.max_ttl:
            logger.warning("ignoring pending reward ttl %s (max %s)", ttl, self.max_ttl)
            return False
        self.default_ttl = ttl
        logger.info("pending reward ttl set to %s", ttl)
        return True

    async def record_pending_reward(
        self,
        experiment_id: str,
        arm_id: str,
        user_id: str,
        ttl: Optional[timedelta] = None,
    ) -> PendingReward:
        lifetime = self.default_ttl
        if ttl is not None and timedelta(0) < ttl <= self.max_ttl:
            lifetime = ttl
        pending = PendingReward.create(experiment_id, arm_id, user_id, lifetime, self._clock())
        await self.store.save_pending_reward(pending)
        if self.cache is not None:
            await self.cache.set_pending(pending)
        logger.info(
            "pending reward %s recorded for user %s on %s/%s (expires %s)",
            pending.id,
            user_id,
            experiment_id,
            arm_id,
            pending.expires_at.isoformat(),
        )
        return pending

    async def process_conversion(
        self,
        transaction_id: str,
        user_id: str,
        value: float,
        currency: str,
        *,
        experiment_id: Optional[str] = None,
    ) -> Optional[PendingReward]:
        """Mark the most recently assigned open pending reward converted.

        Returns None when the user has nothing open to attribute.
        """
        now = self._clock()
        candidates = await self.store.get_pending_rewards_by_user(user_id, experiment_id)
        match: Optional[PendingReward] = None
        for pending in candidates:
            if not pending.is_open(now):
                continue
            if match is None or pending.assigned_at > match.assigned_at:
                match = pending
        if match is None:
            logger.info("no open pending reward for user %s (transaction %s)", user_id, transaction_id)
            return None

        match.converted = True
        match.conversion_value = value
        match.conversion_currency = currency
        match.converted_at = now
        match.processed_at = now
        await self.store.save_pending_reward(match)
        await self.store.save_conversion_link(
            ConversionLink(pending_reward_id=match.id, transaction_id=transaction_id, linked_at=now)
        )
        if self.cache is not None:
            await self.cache.delete_pending(match.id)
        logger.info(
            "transaction %s linked to pending reward %s (arm %s, value %.2f %s)",
            transaction_id,
            match.id,
            match.arm_id,
            value,
            currency,
        )
        return match

    async def process_expired_rewards(self, batch_size: int = 100) -> int:
        now = self._clock()
        expired = await self.store.get_expired_pending_rewards(now, batch_size)
        processed = 0
        for pending in expired:
            try:
                await self.bandit.update_reward(pending.experiment_id, pending.arm_id, 0.0)
            except (BanditError, *CACHE_ERRORS) as exc:
                logger.error("failed to record expiry of pending reward %s: %s", pending.id, exc)
                continue
            pending.processed_at = now
            try:
                await self.store.save_pending_reward(pending)
            except (BanditError, *CACHE_ERRORS) as exc:
                logger.error("failed to mark pending reward %s processed: %s", pending.id, exc)
                continue
            if self.cache is not None:
                await self.cache.delete_pending(pending.id)
            processed += 1
        if processed:
            logger.info("processed %d expired pending rewards", processed)
        return processed

    async def get_pending_reward(self, pending_id: str) -> Optional[PendingReward]:
        if self.cache is not None:
            cached = await self.cache.get_pending(pending_id)
            if cached is not None:
                return cached
        pending = await self.store.get_pending_reward(pending_id)
        if pending is not None and self.cache is not None:
            await self.cache.set_pending(pending)
        return pending

    async def get_pending_rewards_by_user(
        self, user_id: str, experiment_id: Optional[str] = None
    ) -> List[PendingReward]:
        return await self.store.get_pending_rewards_by_user(user_id, experiment_id)

    async def get_conversion_links(self, transaction_id: str) -> List[ConversionLink]:
        return await self.store.get_conversion_links(transaction_id)

    async def get_stats(self) -> Dict[str, object]:
        expired = await self.store.count_expired_pending_rewards(self._clock())
        return {
            "expired_unprocessed": expired,
            "default_ttl_secs": int(self.default_ttl.total_seconds()),
            "max_ttl_secs": int(self.max_ttl.total_seconds()),
        }

"""Thompson Sampling over Beta-Bernoulli arm posteriors with sticky assignment."""
from __future__ import annotations

import logging
from datetime import timedelta
from typing import Awaitable, Callable, Dict, List, Optional, Sequence

from scipy import stats as sps

from ..common.clock import utcnow
from ..common.errors import CACHE_ERRORS, BanditError, NotFoundError, ValidationError
from ..common.locks import KeyedLocks
from ..sampler.beta import BetaSampler
from .schemas import Arm, ArmReport, ArmStats, Assignment

logger = logging.getLogger(__name__)

DEFAULT_ASSIGNMENT_TTL = timedelta(hours=24)
CREDIBLE_MASS = 0.95

# (experiment_id, arm_id) -> stats to sample from instead of the all-time record, or None.
StatsSource = Callable[[str, str], Awaitable[Optional[ArmStats]]]


class ThompsonSampling:
    def __init__(
        self,
        store,
        cache=None,
        *,
        sampler: Optional[BetaSampler] = None,
        assignment_ttl: timedelta = DEFAULT_ASSIGNMENT_TTL,
        stats_source: Optional[StatsSource] = None,
    ):
        self.store = store
        self.cache = cache
        self.sampler = sampler or BetaSampler()
        self.assignment_ttl = assignment_ttl
        self.stats_source = stats_source
        self._assign_locks = KeyedLocks()

    async def get_stats(self, arm_id: str) -> ArmStats:
        """Cache, then store, then the uniform prior."""
        if self.cache is not None:
            cached = await self.cache.get_arm_stats(arm_id)
            if cached is not None:
                return cached
        stats = await self.store.get_arm_stats(arm_id)
        if stats is None:
            return ArmStats(arm_id=arm_id)
        if self.cache is not None:
            await self.cache.set_arm_stats(stats)
        return stats

    async def _current_assignment(self, experiment_id: str, user_id: str) -> Optional[Assignment]:
        now = utcnow()
        if self.cache is not None:
            cached = await self.cache.get_assignment(experiment_id, user_id)
            if cached is not None and not cached.is_expired(now):
                return cached
        stored = await self.store.get_assignment(experiment_id, user_id)
        if stored is None or stored.is_expired(now):
            return None
        if self.cache is not None:
            await self.cache.set_assignment(stored)
        return stored

    async def select_arm(self, experiment_id: str, user_id: str) -> str:
        existing = await self._current_assignment(experiment_id, user_id)
        if existing is not None:
            return existing.arm_id
        async with self._assign_locks.hold((experiment_id, user_id)):
            existing = await self._current_assignment(experiment_id, user_id)
            if existing is not None:
                return existing.arm_id
            arms = await self.store.get_arms(experiment_id)
            if not arms:
                raise NotFoundError(f"no arms for experiment {experiment_id}")
            arm_id = await self.choose_arm(experiment_id, arms)
            assignment = Assignment.create(experiment_id, user_id, arm_id, self.assignment_ttl)
            await self.store.save_assignment(assignment)
            if self.cache is not None:
                await self.cache.set_assignment(assignment)
        return arm_id

    async def _selection_stats(self, experiment_id: str, arm_id: str) -> ArmStats:
        if self.stats_source is not None:
            override = await self.stats_source(experiment_id, arm_id)
            if override is not None:
                return override
        return await self.get_stats(arm_id)

    async def choose_arm(self, experiment_id: str, arms: Sequence[Arm]) -> str:
        """One posterior draw per arm; the first arm holding the maximum wins."""
        best_arm = arms[0].id
        best_sample = -1.0
        for arm in arms:
            stats = await self._selection_stats(experiment_id, arm.id)
            sample = self.sampler.sample(stats.alpha, stats.beta)
            logger.debug("arm %s sample=%.6f alpha=%.1f beta=%.1f", arm.id, sample, stats.alpha, stats.beta)
            if sample > best_sample:
                best_sample = sample
                best_arm = arm.id
        return best_arm

    async def update_reward(self, experiment_id: str, arm_id: str, reward: float) -> ArmStats:
        stats = await self.store.apply_reward(arm_id, reward, utcnow())
        if self.cache is not None:
            await self.cache.set_arm_stats(stats)
        logger.debug(
            "experiment %s arm %s updated: samples=%d conversions=%d",
            experiment_id,
            arm_id,
            stats.samples,
            stats.conversions,
        )
        return stats

    async def get_arm_statistics(self, experiment_id: str) -> Dict[str, ArmStats]:
        arms = await self.store.get_arms(experiment_id)
        if not arms:
            raise NotFoundError(f"no arms for experiment {experiment_id}")
        result: Dict[str, ArmStats] = {}
        for arm in arms:
            try:
                result[arm.id] = await self.get_stats(arm.id)
            except (BanditError, *CACHE_ERRORS) as exc:
                logger.warning("skipping stats for arm %s: %s", arm.id, exc)
        return result

    async def calculate_win_probability(self, experiment_id: str, simulations: int = 1000) -> Dict[str, float]:
        if simulations <= 0:
            raise ValidationError("simulations must be positive")
        arms = await self.store.get_arms(experiment_id)
        if not arms:
            raise NotFoundError(f"no arms for experiment {experiment_id}")
        posteriors = [(arm.id, await self.get_stats(arm.id)) for arm in arms]
        return self.simulate_wins(posteriors, simulations)

    def simulate_wins(self, posteriors: Sequence[tuple[str, ArmStats]], simulations: int) -> Dict[str, float]:
        wins = {arm_id: 0 for arm_id, _ in posteriors}
        for _ in range(simulations):
            winner = None
            best = -1.0
            for arm_id, stats in posteriors:
                sample = self.sampler.sample(stats.alpha, stats.beta)
                if sample > best:
                    best = sample
                    winner = arm_id
            wins[winner] += 1
        return {arm_id: count / simulations for arm_id, count in wins.items()}

    async def arm_reports(self, experiment_id: str, simulations: int = 1000) -> List[ArmReport]:
        arms = await self.store.get_arms(experiment_id)
        if not arms:
            raise NotFoundError(f"no arms for experiment {experiment_id}")
        stats = await self.get_arm_statistics(experiment_id)
        readable = [(arm.id, stats[arm.id]) for arm in arms if arm.id in stats]
        win_probs = self.simulate_wins(readable, simulations) if readable and simulations > 0 else {}
        reports: List[ArmReport] = []
        for arm in arms:
            arm_stats = stats.get(arm.id)
            if arm_stats is None:
                continue
            low, high = credible_interval(arm_stats)
            reports.append(
                ArmReport(
                    arm_id=arm.id,
                    name=arm.name,
                    stats=arm_stats,
                    posterior_mean=arm_stats.mean(),
                    credible_low=low,
                    credible_high=high,
                    win_probability=win_probs.get(arm.id),
                )
            )
        return reports


def credible_interval(stats: ArmStats, mass: float = CREDIBLE_MASS) -> tuple[float, float]:
    """Equal-tailed Beta posterior interval."""
    if stats.alpha <= 0 or stats.beta <= 0:
        return 0.0, 1.0
    low, high = sps.beta.interval(mass, stats.alpha, stats.beta)
    return float(low), float(high)

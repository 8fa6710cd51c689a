"""Conversion, LTV and revenue objectives blended into one arm score."""
from __future__ import annotations

import logging
import math
from typing import Dict, Mapping, Optional

from ..common.errors import CACHE_ERRORS, BanditError, UnsupportedError, ValidationError
from ..thompson.schemas import ArmStats
from .schemas import (
    TRACKED_OBJECTIVES,
    ArmObjectiveStats,
    ObjectiveScore,
    ObjectiveType,
)

logger = logging.getLogger(__name__)

WEIGHT_SUM_TOLERANCE = 0.01


def validate_weights(weights: Mapping[str, float]) -> None:
    if not weights:
        raise ValidationError("no objective weights provided")
    total = 0.0
    for name, weight in weights.items():
        if weight < 0 or math.isnan(weight):
            raise ValidationError(f"objective weight for {name!r} must be non-negative")
        total += weight
    if total <= 0:
        raise ValidationError("objective weights must sum to a positive value")
    if abs(total - 1.0) > WEIGHT_SUM_TOLERANCE:
        logger.warning("objective weights sum to %.3f and will be normalized", total)


def normalize_weights(weights: Mapping[str, float]) -> Dict[str, float]:
    total = sum(weights.values())
    if total == 0:
        return dict(weights)
    return {name: weight / total for name, weight in weights.items()}


def normalize_scores(scores: Mapping[str, float]) -> Dict[str, float]:
    """Min-max scale to [0, 1]; identical scores come back unchanged."""
    if not scores:
        return {}
    low = min(scores.values())
    high = max(scores.values())
    if low == high:
        return dict(scores)
    return {name: (score - low) / (high - low) for name, score in scores.items()}


class ObjectiveScorer:
    """Scores arms per objective.

    ``bandit`` supplies the all-time arm posterior (``get_stats``) and the Beta
    sampler; objective statistics come from the store when it tracks them.
    """

    def __init__(self, store, bandit):
        self.store = store
        self.bandit = bandit

    async def record_objective_reward(
        self,
        arm_id: str,
        objective: ObjectiveType,
        reward: float,
        ltv: Optional[float] = None,
    ) -> ArmObjectiveStats:
        if objective is ObjectiveType.HYBRID:
            raise ValidationError("hybrid is not a tracked objective")
        return await self.store.apply_objective_reward(arm_id, objective, reward, ltv)

    async def _objective_stats(self, arm_id: str, objective: ObjectiveType) -> Optional[ArmObjectiveStats]:
        try:
            return await self.store.get_objective_stats(arm_id, objective)
        except UnsupportedError:
            return None

    async def conversion_score(self, arm_id: str) -> float:
        stats = await self._objective_stats(arm_id, ObjectiveType.CONVERSION)
        if stats is None:
            base = await self.bandit.get_stats(arm_id)
            return self.bandit.sampler.sample(base.alpha, base.beta)
        return self.bandit.sampler.sample(stats.alpha, stats.beta)

    async def ltv_score(self, arm_id: str) -> float:
        stats = await self._objective_stats(arm_id, ObjectiveType.LTV)
        if stats is None:
            base = await self.bandit.get_stats(arm_id)
            return base.mean() * base.avg_reward
        return stats.conversion_probability() * stats.avg_ltv

    async def revenue_score(self, arm_id: str) -> float:
        stats = await self._objective_stats(arm_id, ObjectiveType.REVENUE)
        if stats is None:
            base = await self.bandit.get_stats(arm_id)
            return base.mean() * base.avg_reward
        if stats.samples == 0:
            return 0.0
        return stats.conversion_probability() * (stats.total_revenue / stats.samples)

    async def hybrid_score(self, arm_id: str, weights: Mapping[str, float]) -> float:
        scores: Dict[str, float] = {}
        total_weight = 0.0
        for name, weight in weights.items():
            if weight <= 0:
                continue
            try:
                objective = ObjectiveType(name)
            except ValueError:
                logger.warning("unknown objective %r in weights", name)
                continue
            if objective is ObjectiveType.HYBRID:
                continue
            try:
                scores[name] = await self.calculate_score(arm_id, objective)
            except (BanditError, *CACHE_ERRORS) as exc:
                logger.warning("objective %s unavailable for arm %s: %s", name, arm_id, exc)
                continue
            total_weight += weight
        if total_weight == 0:
            return await self.conversion_score(arm_id)
        normalized = normalize_scores(scores)
        return sum(score * weights[name] / total_weight for name, score in normalized.items())

    async def calculate_score(
        self,
        arm_id: str,
        objective: ObjectiveType,
        weights: Optional[Mapping[str, float]] = None,
    ) -> float:
        if objective is ObjectiveType.LTV:
            return await self.ltv_score(arm_id)
        if objective is ObjectiveType.REVENUE:
            return await self.revenue_score(arm_id)
        if objective is ObjectiveType.HYBRID:
            return await self.hybrid_score(arm_id, weights or {})
        return await self.conversion_score(arm_id)

    async def get_objective_scores(self, arm_id: str) -> Dict[ObjectiveType, ObjectiveScore]:
        base: ArmStats = await self.bandit.get_stats(arm_id)
        scores = {
            ObjectiveType.CONVERSION: ObjectiveScore(
                objective=ObjectiveType.CONVERSION,
                score=self.bandit.sampler.sample(base.alpha, base.beta),
                alpha=base.alpha,
                beta=base.beta,
                samples=base.samples,
                conversions=base.conversions,
                revenue=base.total_reward,
            )
        }
        try:
            tracked = await self.store.get_all_objective_stats(arm_id)
        except UnsupportedError:
            return scores
        for objective in TRACKED_OBJECTIVES:
            stats = tracked.get(objective)
            if stats is None or objective is ObjectiveType.CONVERSION:
                continue
            if objective is ObjectiveType.LTV:
                score = stats.conversion_probability() * stats.avg_ltv
            else:
                score = stats.conversion_probability() * (stats.total_revenue / stats.samples) if stats.samples else 0.0
            scores[objective] = ObjectiveScore(
                objective=objective,
                score=score,
                alpha=stats.alpha,
                beta=stats.beta,
                samples=stats.samples,
                conversions=stats.conversions,
                revenue=stats.total_revenue,
                avg_ltv=stats.avg_ltv,
            )
        return scores

"""Orchestrates selection, reward recording and maintenance across components."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Awaitable, Callable, Dict, List, Mapping, Optional, TypeVar

import numpy as np
from redis.asyncio import Redis

from ..cache.bandit_cache import RedisBanditCache
from ..common.clock import utcnow
from ..common.errors import CACHE_ERRORS, BanditError, NotFoundError, UnsupportedError, ValidationError
from ..contextual.context import UserContext
from ..contextual.linucb import LinUCBSelector
from ..currency.countries import BASE_CURRENCY, currency_for_country
from ..currency.normalizer import CurrencyNormalizer
from ..delayed.schemas import PendingReward
from ..delayed.tracker import DelayedRewardTracker
from ..objectives.schemas import DEFAULT_HYBRID_WEIGHTS, ObjectiveScore, ObjectiveType
from ..objectives.scorer import ObjectiveScorer, validate_weights
from ..sampler.beta import BetaSampler
from ..thompson.bandit import ThompsonSampling
from ..thompson.schemas import ArmReport, ArmStats
from ..window.aggregator import SlidingWindowAggregator
from ..window.schemas import WindowConfig
from .config import EngineConfig, ExperimentConfig
from .metrics import BanditMetrics, MaintenanceReport, balance_index

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Failures a secondary step may raise without aborting the surrounding operation.
SOFT_ERRORS = (BanditError, np.linalg.LinAlgError, ValueError, *CACHE_ERRORS)


class BanditEngine:
    def __init__(
        self,
        store,
        *,
        config: Optional[EngineConfig] = None,
        redis: Optional[Redis] = None,
        cache: Optional[RedisBanditCache] = None,
        sampler: Optional[BetaSampler] = None,
        rate_source=None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.config = config or EngineConfig()
        self.store = store
        self.redis = redis
        self._clock = clock
        if cache is None and redis is not None:
            cache = RedisBanditCache(
                redis,
                stats_ttl_secs=self.config.arm_stats_cache_ttl_secs,
                assignment_ttl_secs=self.config.assignment_ttl_secs,
            )
        self.cache = cache

        self.window: Optional[SlidingWindowAggregator] = None
        if self.config.enable_window:
            if redis is None:
                logger.warning("sliding windows need redis; window aggregation disabled")
            else:
                self.window = SlidingWindowAggregator(
                    redis,
                    default_config=self.config.default_experiment.window or WindowConfig(),
                    clock=clock,
                )
                for experiment_id, exp_cfg in self.config.experiments.items():
                    if exp_cfg.window is not None:
                        self.window.update_config(experiment_id, exp_cfg.window)

        self.bandit = ThompsonSampling(
            store,
            self.cache,
            sampler=sampler,
            assignment_ttl=timedelta(seconds=self.config.assignment_ttl_secs),
            stats_source=self._windowed_stats if self.window is not None else None,
        )
        self.contextual: Optional[LinUCBSelector] = None
        if self.config.enable_contextual:
            self.contextual = LinUCBSelector(store, alpha=self.config.default_experiment.exploration_alpha)
        self.delayed: Optional[DelayedRewardTracker] = None
        if self.config.enable_delayed:
            self.delayed = DelayedRewardTracker(
                store,
                self.bandit,
                self.cache,
                default_ttl=timedelta(seconds=self.config.delayed.default_ttl_secs),
                max_ttl=timedelta(seconds=self.config.delayed.max_ttl_secs),
                clock=clock,
            )
        self.objectives: Optional[ObjectiveScorer] = None
        if self.config.enable_hybrid:
            self.objectives = ObjectiveScorer(store, self.bandit)
        self.currency: Optional[CurrencyNormalizer] = None
        if self.config.enable_currency:
            self.currency = CurrencyNormalizer(
                rate_source,
                redis,
                fallback_rates=self.config.currency.fallback_rates,
                cache_ttl_secs=self.config.currency.cache_ttl_secs,
                lookup_timeout_secs=self.config.currency.lookup_timeout_secs,
                clock=clock,
            )

    def experiment_config(self, experiment_id: str) -> ExperimentConfig:
        return self.config.experiment(experiment_id)

    def _window_enabled(self, experiment_id: str) -> bool:
        return self.window is not None and self.experiment_config(experiment_id).window is not None

    async def _run(self, operation: Awaitable[T], timeout: Optional[float]) -> T:
        limit = self.config.operation_timeout_secs if timeout is None else timeout
        if limit is None or limit <= 0:
            return await operation
        return await asyncio.wait_for(operation, limit)

    async def _windowed_stats(self, experiment_id: str, arm_id: str) -> Optional[ArmStats]:
        if not self._window_enabled(experiment_id):
            return None
        try:
            return await self.window.windowed_arm_stats(experiment_id, arm_id)
        except CACHE_ERRORS as exc:
            logger.warning("window stats unavailable for %s/%s: %s", experiment_id, arm_id, exc)
            return None

    # selection

    async def select_arm(
        self,
        experiment_id: str,
        user_id: str,
        context: Optional[UserContext] = None,
        *,
        timeout: Optional[float] = None,
    ) -> str:
        return await self._run(self._select_arm(experiment_id, user_id, context), timeout)

    async def _select_arm(self, experiment_id: str, user_id: str, context: Optional[UserContext]) -> str:
        exp_cfg = self.experiment_config(experiment_id)
        arm_id: Optional[str] = None
        if self.contextual is not None and exp_cfg.enable_contextual:
            try:
                arm_id = await self.contextual.select_arm(
                    experiment_id, context or UserContext(), alpha=exp_cfg.exploration_alpha
                )
            except SOFT_ERRORS as exc:
                logger.warning("contextual selection failed for %s, using thompson: %s", experiment_id, exc)
        if arm_id is None:
            arm_id = await self.bandit.select_arm(experiment_id, user_id)

        if self.delayed is not None and exp_cfg.enable_delayed:
            try:
                await self.delayed.record_pending_reward(experiment_id, arm_id, user_id)
            except UnsupportedError as exc:
                logger.warning("delayed feedback skipped: %s", exc)
            except (BanditError, *CACHE_ERRORS) as exc:
                logger.warning("failed to record pending reward for %s: %s", user_id, exc)
        return arm_id

    # rewards

    async def record_reward(
        self,
        experiment_id: str,
        arm_id: str,
        user_id: str,
        reward: float,
        currency: str = "",
        context: Optional[UserContext] = None,
        *,
        ltv: Optional[float] = None,
        timeout: Optional[float] = None,
    ) -> float:
        """Feed one reward through every enabled component; returns the USD value used."""
        return await self._run(
            self._record_reward(experiment_id, arm_id, user_id, reward, currency, context, ltv),
            timeout,
        )

    def _reward_currency(self, currency: str, context: Optional[UserContext]) -> str:
        if currency:
            return currency.strip().upper()
        if context is not None:
            if context.currency:
                return context.currency
            if context.country:
                return currency_for_country(context.country)
        return BASE_CURRENCY

    async def _record_reward(
        self,
        experiment_id: str,
        arm_id: str,
        user_id: str,
        reward: float,
        currency: str,
        context: Optional[UserContext],
        ltv: Optional[float],
    ) -> float:
        exp_cfg = self.experiment_config(experiment_id)
        value = reward
        value_currency = self._reward_currency(currency, context)
        if self.currency is not None and exp_cfg.enable_currency and value_currency != BASE_CURRENCY:
            try:
                value = await self.currency.convert_to_usd(reward, value_currency)
                value_currency = BASE_CURRENCY
            except SOFT_ERRORS as exc:
                logger.warning("currency conversion from %s failed, using raw value: %s", value_currency, exc)

        await self.bandit.update_reward(experiment_id, arm_id, value)

        if self.contextual is not None and exp_cfg.enable_contextual:
            try:
                await self.contextual.update(arm_id, context or UserContext(), value)
            except SOFT_ERRORS as exc:
                logger.warning("linucb update failed for arm %s: %s", arm_id, exc)

        if self._window_enabled(experiment_id):
            try:
                await self.window.record_event(
                    experiment_id, arm_id, value, user_id=user_id, currency=value_currency
                )
            except SOFT_ERRORS as exc:
                logger.warning("window append failed for %s/%s: %s", experiment_id, arm_id, exc)

        if self.objectives is not None:
            objective_ltv = ltv if ltv is not None else (value if value > 0 else None)
            for objective in exp_cfg.tracked_objectives():
                try:
                    await self.objectives.record_objective_reward(arm_id, objective, value, objective_ltv)
                except UnsupportedError as exc:
                    logger.warning("objective tracking skipped: %s", exc)
                    break
                except SOFT_ERRORS as exc:
                    logger.warning("objective %s update failed for arm %s: %s", objective.value, arm_id, exc)
        return value

    async def process_conversion(
        self,
        transaction_id: str,
        user_id: str,
        value: float,
        currency: str,
        *,
        experiment_id: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> Optional[PendingReward]:
        """Attribute a purchase to the user's latest open pending reward and credit its arm."""
        if self.delayed is None:
            raise UnsupportedError("delayed feedback is not enabled")
        return await self._run(
            self._process_conversion(transaction_id, user_id, value, currency, experiment_id),
            timeout,
        )

    async def _process_conversion(
        self,
        transaction_id: str,
        user_id: str,
        value: float,
        currency: str,
        experiment_id: Optional[str],
    ) -> Optional[PendingReward]:
        matched = await self.delayed.process_conversion(
            transaction_id, user_id, value, currency, experiment_id=experiment_id
        )
        if matched is not None:
            await self._record_reward(
                matched.experiment_id, matched.arm_id, user_id, value, currency, None, None
            )
        return matched

    # reporting

    async def get_arm_statistics(self, experiment_id: str, *, timeout: Optional[float] = None) -> List[ArmReport]:
        return await self._run(
            self.bandit.arm_reports(experiment_id, self.config.win_probability_simulations),
            timeout,
        )

    async def get_objective_scores(
        self, experiment_id: str, *, timeout: Optional[float] = None
    ) -> Dict[str, Dict[str, ObjectiveScore]]:
        if self.objectives is None:
            raise UnsupportedError("hybrid objectives are not enabled")
        return await self._run(self._objective_scores(experiment_id), timeout)

    async def _objective_scores(self, experiment_id: str) -> Dict[str, Dict[str, ObjectiveScore]]:
        exp_cfg = self.experiment_config(experiment_id)
        arms = await self.store.get_arms(experiment_id)
        if not arms:
            raise NotFoundError(f"no arms for experiment {experiment_id}")
        result: Dict[str, Dict[str, ObjectiveScore]] = {}
        for arm in arms:
            try:
                scores = await self.objectives.get_objective_scores(arm.id)
                by_name = {objective.value: score for objective, score in scores.items()}
                if exp_cfg.objective_type is ObjectiveType.HYBRID:
                    base = scores[ObjectiveType.CONVERSION]
                    by_name[ObjectiveType.HYBRID.value] = replace(
                        base,
                        objective=ObjectiveType.HYBRID,
                        score=await self.objectives.hybrid_score(arm.id, exp_cfg.objective_weights),
                    )
            except SOFT_ERRORS as exc:
                logger.warning("objective scores unavailable for arm %s: %s", arm.id, exc)
                continue
            result[arm.id] = by_name
        return result

    async def get_metrics(self, experiment_id: str, *, timeout: Optional[float] = None) -> BanditMetrics:
        return await self._run(self._metrics(experiment_id), timeout)

    async def _metrics(self, experiment_id: str) -> BanditMetrics:
        stats = await self.bandit.get_arm_statistics(experiment_id)
        samples = [arm_stats.samples for arm_stats in stats.values()]
        metrics = BanditMetrics(
            experiment_id=experiment_id,
            balance_index=balance_index(samples),
            total_samples=sum(samples),
            arm_count=len(stats),
        )
        if stats and self.config.win_probability_simulations > 0:
            metrics.win_probabilities = self.bandit.simulate_wins(
                list(stats.items()), self.config.win_probability_simulations
            )
        if self._window_enabled(experiment_id) and stats:
            try:
                utilizations = [await self.window.get_utilization(experiment_id, arm_id) for arm_id in stats]
                metrics.window_utilization = sum(utilizations) / len(utilizations)
            except CACHE_ERRORS as exc:
                logger.warning("window utilization unavailable: %s", exc)
        if self.delayed is not None:
            try:
                delayed_stats = await self.delayed.get_stats()
                metrics.pending_rewards = int(delayed_stats["expired_unprocessed"])
            except (BanditError, *CACHE_ERRORS) as exc:
                logger.warning("pending reward stats unavailable: %s", exc)
        return metrics

    # configuration

    def set_objective_config(
        self,
        experiment_id: str,
        objective_type: ObjectiveType | str,
        weights: Optional[Mapping[str, float]] = None,
    ) -> ExperimentConfig:
        try:
            objective = ObjectiveType(objective_type)
        except ValueError as exc:
            raise ValidationError(f"unknown objective type {objective_type!r}") from exc
        current = self.experiment_config(experiment_id)
        if weights is not None:
            new_weights = {str(name): float(weight) for name, weight in weights.items()}
            validate_weights(new_weights)
        elif objective is ObjectiveType.HYBRID and not current.objective_weights:
            new_weights = dict(DEFAULT_HYBRID_WEIGHTS)
        else:
            new_weights = dict(current.objective_weights)
        updated = replace(current, objective_type=objective, objective_weights=new_weights)
        self.config.experiments[experiment_id] = updated
        logger.info("objective for %s set to %s %s", experiment_id, objective.value, new_weights)
        return updated

    def set_window_config(self, experiment_id: str, window: WindowConfig) -> ExperimentConfig:
        updated = replace(self.experiment_config(experiment_id), window=window)
        self.config.experiments[experiment_id] = updated
        if self.window is not None:
            self.window.update_config(experiment_id, window)
        return updated

    # maintenance

    async def run_maintenance(self, *, timeout: Optional[float] = None) -> MaintenanceReport:
        limit = self.config.maintenance_interval_secs if timeout is None else timeout
        return await self._run(self._maintenance(), limit)

    async def _maintenance(self) -> MaintenanceReport:
        report = MaintenanceReport(started_at=self._clock())
        if self.delayed is not None:
            try:
                report.expired_processed = await self.delayed.process_expired_rewards(self.config.expired_batch_size)
            except (BanditError, *CACHE_ERRORS) as exc:
                logger.error("expired reward sweep failed: %s", exc)
                report.errors.append(f"delayed: {exc}")
        if self.currency is not None:
            try:
                report.rates_refreshed = await self.currency.update_rates()
            except (BanditError, *CACHE_ERRORS) as exc:
                logger.warning("currency refresh failed: %s", exc)
                report.errors.append(f"currency: {exc}")
        if self.window is not None:
            for experiment_id, exp_cfg in list(self.config.experiments.items()):
                if exp_cfg.window is None:
                    continue
                try:
                    for arm in await self.store.get_arms(experiment_id):
                        report.windows_trimmed += await self.window.trim_window(experiment_id, arm.id)
                except (BanditError, *CACHE_ERRORS) as exc:
                    logger.error("window trim failed for %s: %s", experiment_id, exc)
                    report.errors.append(f"window {experiment_id}: {exc}")
        report.finished_at = self._clock()
        logger.info(
            "maintenance done: expired=%d rates=%d trimmed=%d errors=%d",
            report.expired_processed,
            report.rates_refreshed,
            report.windows_trimmed,
            len(report.errors),
        )
        return report

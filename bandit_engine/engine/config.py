"""Engine configuration loaded from YAML with environment overrides."""
from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml

from ..common.errors import ValidationError
from ..currency.ecb import ECB_DAILY_URL
from ..currency.normalizer import FALLBACK_RATES, LOOKUP_TIMEOUT_SECS, RATE_CACHE_TTL_SECS
from ..delayed.tracker import DEFAULT_TTL, MAX_TTL
from ..objectives.schemas import DEFAULT_HYBRID_WEIGHTS, ObjectiveType
from ..window.schemas import WindowConfig

DEFAULT_CONFIG_PATH = "config/bandit.yaml"


@dataclass
class ExperimentConfig:
    objective_type: ObjectiveType = ObjectiveType.CONVERSION
    objective_weights: Dict[str, float] = field(default_factory=dict)
    window: Optional[WindowConfig] = None
    enable_contextual: bool = False
    enable_delayed: bool = False
    enable_currency: bool = True
    exploration_alpha: float = 0.3

    def __post_init__(self) -> None:
        if self.objective_type is ObjectiveType.HYBRID and not self.objective_weights:
            self.objective_weights = dict(DEFAULT_HYBRID_WEIGHTS)

    def tracked_objectives(self) -> list[ObjectiveType]:
        """Objectives a reward updates: every weighted one in hybrid mode."""
        if self.objective_type is not ObjectiveType.HYBRID:
            return [self.objective_type]
        tracked = []
        for name, weight in self.objective_weights.items():
            try:
                objective = ObjectiveType(name)
            except ValueError:
                continue
            if objective is not ObjectiveType.HYBRID and weight > 0:
                tracked.append(objective)
        return tracked

    def to_dict(self) -> Dict[str, object]:
        return {
            "objective_type": self.objective_type.value,
            "objective_weights": dict(self.objective_weights),
            "window": self.window.to_dict() if self.window else None,
            "enable_contextual": self.enable_contextual,
            "enable_delayed": self.enable_delayed,
            "enable_currency": self.enable_currency,
            "exploration_alpha": self.exploration_alpha,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "ExperimentConfig":
        payload = payload or {}
        try:
            objective = ObjectiveType(str(payload.get("objective_type", ObjectiveType.CONVERSION.value)))
        except ValueError as exc:
            raise ValidationError(f"unknown objective type {payload.get('objective_type')!r}") from exc
        window = payload.get("window")
        return cls(
            objective_type=objective,
            objective_weights={str(k): float(v) for k, v in (payload.get("objective_weights") or {}).items()},
            window=WindowConfig.from_dict(window) if window else None,
            enable_contextual=bool(payload.get("enable_contextual", False)),
            enable_delayed=bool(payload.get("enable_delayed", False)),
            enable_currency=bool(payload.get("enable_currency", True)),
            exploration_alpha=float(payload.get("exploration_alpha", 0.3)),
        )


@dataclass
class CurrencyConfig:
    source_url: str = ECB_DAILY_URL
    request_timeout_secs: float = 5.0
    max_retries: int = 3
    retry_backoff_secs: float = 1.0
    cache_ttl_secs: int = RATE_CACHE_TTL_SECS
    lookup_timeout_secs: float = LOOKUP_TIMEOUT_SECS
    fallback_rates: Dict[str, float] = field(default_factory=lambda: dict(FALLBACK_RATES))

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "CurrencyConfig":
        payload = payload or {}
        fallback = dict(FALLBACK_RATES)
        fallback.update({str(k).upper(): float(v) for k, v in (payload.get("fallback_rates") or {}).items()})
        return cls(
            source_url=str(payload.get("source_url", ECB_DAILY_URL)),
            request_timeout_secs=float(payload.get("request_timeout_secs", 5.0)),
            max_retries=int(payload.get("max_retries", 3)),
            retry_backoff_secs=float(payload.get("retry_backoff_secs", 1.0)),
            cache_ttl_secs=int(payload.get("cache_ttl_secs", RATE_CACHE_TTL_SECS)),
            lookup_timeout_secs=float(payload.get("lookup_timeout_secs", LOOKUP_TIMEOUT_SECS)),
            fallback_rates=fallback,
        )


@dataclass
class DelayedConfig:
    default_ttl_secs: int = int(DEFAULT_TTL.total_seconds())
    max_ttl_secs: int = int(MAX_TTL.total_seconds())

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "DelayedConfig":
        payload = payload or {}
        return cls(
            default_ttl_secs=int(payload.get("default_ttl_secs", DEFAULT_TTL.total_seconds())),
            max_ttl_secs=int(payload.get("max_ttl_secs", MAX_TTL.total_seconds())),
        )


@dataclass
class EngineConfig:
    enable_currency: bool = True
    enable_contextual: bool = False
    enable_delayed: bool = False
    enable_window: bool = False
    enable_hybrid: bool = False
    maintenance_interval_secs: float = 300.0
    expired_batch_size: int = 100
    operation_timeout_secs: float = 5.0
    win_probability_simulations: int = 1000
    assignment_ttl_secs: int = 86_400
    arm_stats_cache_ttl_secs: int = 86_400
    default_experiment: ExperimentConfig = field(default_factory=ExperimentConfig)
    experiments: Dict[str, ExperimentConfig] = field(default_factory=dict)
    currency: CurrencyConfig = field(default_factory=CurrencyConfig)
    delayed: DelayedConfig = field(default_factory=DelayedConfig)

    def experiment(self, experiment_id: str) -> ExperimentConfig:
        return self.experiments.get(experiment_id, self.default_experiment)

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any] | None) -> "EngineConfig":
        payload = dict(payload or {})
        default_raw = dict(payload.get("default_experiment") or {})
        experiments = {
            str(exp_id): ExperimentConfig.from_dict({**default_raw, **(overrides or {})})
            for exp_id, overrides in (payload.get("experiments") or {}).items()
        }
        return cls(
            enable_currency=bool(payload.get("enable_currency", True)),
            enable_contextual=bool(payload.get("enable_contextual", False)),
            enable_delayed=bool(payload.get("enable_delayed", False)),
            enable_window=bool(payload.get("enable_window", False)),
            enable_hybrid=bool(payload.get("enable_hybrid", False)),
            maintenance_interval_secs=float(payload.get("maintenance_interval_secs", 300.0)),
            expired_batch_size=int(payload.get("expired_batch_size", 100)),
            operation_timeout_secs=float(payload.get("operation_timeout_secs", 5.0)),
            win_probability_simulations=int(payload.get("win_probability_simulations", 1000)),
            assignment_ttl_secs=int(payload.get("assignment_ttl_secs", 86_400)),
            arm_stats_cache_ttl_secs=int(payload.get("arm_stats_cache_ttl_secs", 86_400)),
            default_experiment=ExperimentConfig.from_dict(default_raw),
            experiments=experiments,
            currency=CurrencyConfig.from_dict(payload.get("currency")),
            delayed=DelayedConfig.from_dict(payload.get("delayed")),
        )


def load_engine_config(path: str | Path | None = None) -> EngineConfig:
    cfg_path = Path(path or os.environ.get("BANDIT_CONFIG_PATH", DEFAULT_CONFIG_PATH))
    data: Dict[str, Any] = {}
    if cfg_path.exists():
        data = yaml.safe_load(cfg_path.read_text(encoding="utf-8")) or {}
    interval = os.environ.get("BANDIT_MAINTENANCE_INTERVAL_SECS")
    if interval:
        data["maintenance_interval_secs"] = float(interval)
    fx_url = os.environ.get("BANDIT_FX_URL")
    if fx_url:
        data["currency"] = {**(data.get("currency") or {}), "source_url": fx_url}
    return EngineConfig.from_dict(data)

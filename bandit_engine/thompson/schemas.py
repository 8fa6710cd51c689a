"""Arm, arm statistics and assignment records."""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Mapping, Optional

from ..common.clock import isoformat, parse_iso, utcnow


@dataclass(slots=True)
class Arm:
    id: str
    experiment_id: str
    name: str
    is_control: bool = False
    weight: float = 1.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "experiment_id": self.experiment_id,
            "name": self.name,
            "is_control": self.is_control,
            "weight": self.weight,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "Arm":
        is_control = payload.get("is_control", False)
        if isinstance(is_control, str):
            is_control = is_control.lower() in {"1", "true", "yes"}
        return cls(
            id=str(payload["id"]),
            experiment_id=str(payload["experiment_id"]),
            name=str(payload.get("name", payload["id"])),
            is_control=bool(is_control),
            weight=float(payload.get("weight", 1.0)),
        )


@dataclass(slots=True)
class ArmStats:
    arm_id: str
    alpha: float = 1.0
    beta: float = 1.0
    samples: int = 0
    conversions: int = 0
    total_reward: float = 0.0
    updated_at: Optional[datetime] = None

    @property
    def avg_reward(self) -> float:
        return self.total_reward / self.samples if self.samples else 0.0

    @property
    def conversion_rate(self) -> float:
        return self.conversions / self.samples if self.samples else 0.0

    def mean(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    def record(self, reward: float, ts: Optional[datetime] = None) -> None:
        """Canonical Beta-Bernoulli update: any positive reward is a conversion."""
        if reward > 0:
            self.alpha += 1.0
            self.conversions += 1
            self.total_reward += reward
        else:
            self.beta += 1.0
        self.samples += 1
        self.updated_at = ts or utcnow()

    def copy(self) -> "ArmStats":
        return ArmStats(
            arm_id=self.arm_id,
            alpha=self.alpha,
            beta=self.beta,
            samples=self.samples,
            conversions=self.conversions,
            total_reward=self.total_reward,
            updated_at=self.updated_at,
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "arm_id": self.arm_id,
            "alpha": self.alpha,
            "beta": self.beta,
            "samples": self.samples,
            "conversions": self.conversions,
            "total_reward": self.total_reward,
            "avg_reward": self.avg_reward,
            "updated_at": isoformat(self.updated_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "ArmStats":
        return cls(
            arm_id=str(payload["arm_id"]),
            alpha=float(payload.get("alpha", 1.0)),
            beta=float(payload.get("beta", 1.0)),
            samples=int(float(payload.get("samples", 0))),
            conversions=int(float(payload.get("conversions", 0))),
            total_reward=float(payload.get("total_reward", 0.0)),
            updated_at=parse_iso(payload.get("updated_at")),
        )


@dataclass(slots=True)
class Assignment:
    experiment_id: str
    user_id: str
    arm_id: str
    assigned_at: datetime
    expires_at: datetime

    @classmethod
    def create(cls, experiment_id: str, user_id: str, arm_id: str, ttl: timedelta, now: Optional[datetime] = None) -> "Assignment":
        assigned_at = now or utcnow()
        return cls(experiment_id, user_id, arm_id, assigned_at, assigned_at + ttl)

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def to_dict(self) -> Dict[str, object]:
        return {
            "experiment_id": self.experiment_id,
            "user_id": self.user_id,
            "arm_id": self.arm_id,
            "assigned_at": self.assigned_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "Assignment":
        return cls(
            experiment_id=str(payload["experiment_id"]),
            user_id=str(payload["user_id"]),
            arm_id=str(payload["arm_id"]),
            assigned_at=parse_iso(payload["assigned_at"]),
            expires_at=parse_iso(payload["expires_at"]),
        )


@dataclass(slots=True)
class ArmReport:
    """Read-only view of an arm's posterior for reporting."""

    arm_id: str
    name: str
    stats: ArmStats
    posterior_mean: float
    credible_low: float
    credible_high: float
    win_probability: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "arm_id": self.arm_id,
            "name": self.name,
            "posterior_mean": self.posterior_mean,
            "credible_interval": [self.credible_low, self.credible_high],
            "win_probability": self.win_probability,
            **self.stats.to_dict(),
        }

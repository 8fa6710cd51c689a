"""Objective types and per-objective arm statistics."""
from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Mapping, Optional

LTV_SMOOTHING = 0.9


class ObjectiveType(str, Enum):
    CONVERSION = "conversion"
    LTV = "ltv"
    REVENUE = "revenue"
    HYBRID = "hybrid"


TRACKED_OBJECTIVES = (ObjectiveType.CONVERSION, ObjectiveType.LTV, ObjectiveType.REVENUE)


def smoothed_ltv(current: float, ltv: float) -> float:
    """Exponential moving average of LTV; the first observation is taken as is."""
    if current == 0:
        return ltv
    return LTV_SMOOTHING * current + (1.0 - LTV_SMOOTHING) * ltv


DEFAULT_HYBRID_WEIGHTS: Dict[str, float] = {
    ObjectiveType.CONVERSION.value: 0.5,
    ObjectiveType.LTV.value: 0.3,
    ObjectiveType.REVENUE.value: 0.2,
}


@dataclass(slots=True)
class ArmObjectiveStats:
    arm_id: str
    objective: ObjectiveType
    alpha: float = 1.0
    beta: float = 1.0
    samples: int = 0
    conversions: int = 0
    total_revenue: float = 0.0
    avg_ltv: float = 0.0

    def conversion_probability(self) -> float:
        return self.alpha / (self.alpha + self.beta)

    def record(self, reward: float, ltv: Optional[float] = None) -> None:
        self.samples += 1
        if reward > 0:
            self.alpha += 1.0
            self.conversions += 1
            self.total_revenue += reward
        else:
            self.beta += 1.0
        if ltv is not None and ltv > 0:
            self.avg_ltv = smoothed_ltv(self.avg_ltv, ltv)

    def to_dict(self) -> Dict[str, object]:
        return {
            "arm_id": self.arm_id,
            "objective": self.objective.value,
            "alpha": self.alpha,
            "beta": self.beta,
            "samples": self.samples,
            "conversions": self.conversions,
            "total_revenue": self.total_revenue,
            "avg_ltv": self.avg_ltv,
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "ArmObjectiveStats":
        return cls(
            arm_id=str(payload["arm_id"]),
            objective=ObjectiveType(str(payload["objective"])),
            alpha=float(payload.get("alpha", 1.0)),
            beta=float(payload.get("beta", 1.0)),
            samples=int(float(payload.get("samples", 0))),
            conversions=int(float(payload.get("conversions", 0))),
            total_revenue=float(payload.get("total_revenue", 0.0)),
            avg_ltv=float(payload.get("avg_ltv", 0.0)),
        )


@dataclass(slots=True)
class ObjectiveScore:
    objective: ObjectiveType
    score: float
    alpha: float
    beta: float
    samples: int
    conversions: int
    revenue: float = 0.0
    avg_ltv: float = 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "objective": self.objective.value,
            "score": self.score,
            "alpha": self.alpha,
            "beta": self.beta,
            "samples": self.samples,
            "conversions": self.conversions,
            "revenue": self.revenue,
            "avg_ltv": self.avg_ltv,
        }

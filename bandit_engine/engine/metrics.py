"""Experiment health metrics and maintenance reports."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence


def balance_index(samples: Sequence[int]) -> float:
    """1.0 for an even traffic split, 0.0 when every sample sits on one arm.

    Total absolute deviation from the even split peaks at
    ``2 * total * (n - 1) / n``, which is the normaliser used here.
    """
    arm_count = len(samples)
    total = sum(samples)
    if arm_count < 2 or total == 0:
        return 1.0
    expected = total / arm_count
    deviation = sum(abs(count - expected) for count in samples)
    max_deviation = total * (arm_count - 1) / arm_count
    index = 1.0 - deviation / (2.0 * max_deviation)
    return min(max(index, 0.0), 1.0)


@dataclass
class BanditMetrics:
    experiment_id: str
    balance_index: float
    total_samples: int
    arm_count: int
    win_probabilities: Dict[str, float] = field(default_factory=dict)
    window_utilization: Optional[float] = None
    pending_rewards: Optional[int] = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "experiment_id": self.experiment_id,
            "balance_index": self.balance_index,
            "total_samples": self.total_samples,
            "arm_count": self.arm_count,
            "win_probabilities": dict(self.win_probabilities),
            "window_utilization": self.window_utilization,
            "pending_rewards": self.pending_rewards,
        }


@dataclass
class MaintenanceReport:
    started_at: datetime
    finished_at: Optional[datetime] = None
    expired_processed: int = 0
    rates_refreshed: int = 0
    windows_trimmed: int = 0
    errors: List[str] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def to_dict(self) -> Dict[str, object]:
        return {
            "started_at": self.started_at.isoformat(),
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "expired_processed": self.expired_processed,
            "rates_refreshed": self.rates_refreshed,
            "windows_trimmed": self.windows_trimmed,
            "errors": list(self.errors),
            "ok": self.ok,
        }

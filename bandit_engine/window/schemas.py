"""Sliding window configuration, events and derived statistics."""
from __future__ import annotations

import json
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Mapping, Optional

from ..common.clock import from_millis, isoformat, parse_iso
from ..common.errors import ValidationError

WINDOW_EVENTS = "events"
WINDOW_TIME = "time"
WINDOW_TYPES = (WINDOW_EVENTS, WINDOW_TIME)


@dataclass(slots=True)
class WindowConfig:
    type: str = WINDOW_EVENTS
    size: int = 1000
    min_samples: int = 100

    def __post_init__(self) -> None:
        if self.type not in WINDOW_TYPES:
            raise ValidationError(f"unknown window type {self.type!r}")
        if self.size <= 0:
            raise ValidationError("window size must be positive")
        if self.min_samples < 0:
            raise ValidationError("window min_samples must be non-negative")

    def to_dict(self) -> Dict[str, object]:
        return {"type": self.type, "size": self.size, "min_samples": self.min_samples}

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "WindowConfig":
        return cls(
            type=str(payload.get("type", WINDOW_EVENTS)),
            size=int(payload.get("size", 1000)),
            min_samples=int(payload.get("min_samples", 100)),
        )


@dataclass(slots=True)
class WindowEvent:
    ts_ms: int
    reward: float
    user_id: str = ""
    currency: str = "USD"
    event_id: str = field(default_factory=lambda: uuid.uuid4().hex)

    @property
    def converted(self) -> bool:
        return self.reward > 0

    def to_member(self) -> str:
        return json.dumps(
            {"id": self.event_id, "u": self.user_id, "r": self.reward, "c": self.currency},
            separators=(",", ":"),
        )

    @classmethod
    def from_member(cls, member: str, score: float) -> "WindowEvent":
        payload = json.loads(member)
        return cls(
            ts_ms=int(score),
            reward=float(payload.get("r", 0.0)),
            user_id=str(payload.get("u", "")),
            currency=str(payload.get("c", "USD")),
            event_id=str(payload.get("id", "")),
        )

    def to_dict(self) -> Dict[str, object]:
        return {
            "event_id": self.event_id,
            "user_id": self.user_id,
            "reward": self.reward,
            "currency": self.currency,
            "timestamp": from_millis(self.ts_ms).isoformat(),
        }


@dataclass(slots=True)
class WindowStats:
    arm_id: str
    samples: int = 0
    conversions: int = 0
    revenue: float = 0.0
    alpha: float = 1.0
    beta: float = 1.0
    window_start: Optional[datetime] = None
    window_end: Optional[datetime] = None

    @property
    def avg_reward(self) -> float:
        return self.revenue / self.samples if self.samples else 0.0

    def to_dict(self) -> Dict[str, object]:
        return {
            "arm_id": self.arm_id,
            "samples": self.samples,
            "conversions": self.conversions,
            "revenue": self.revenue,
            "alpha": self.alpha,
            "beta": self.beta,
            "avg_reward": self.avg_reward,
            "window_start": isoformat(self.window_start),
            "window_end": isoformat(self.window_end),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "WindowStats":
        return cls(
            arm_id=str(payload["arm_id"]),
            samples=int(payload.get("samples", 0)),
            conversions=int(payload.get("conversions", 0)),
            revenue=float(payload.get("revenue", 0.0)),
            alpha=float(payload.get("alpha", 1.0)),
            beta=float(payload.get("beta", 1.0)),
            window_start=parse_iso(payload.get("window_start")),
            window_end=parse_iso(payload.get("window_end")),
        )

"""Pending reward and conversion link records."""
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Dict, Mapping, Optional

from ..common.clock import isoformat, parse_iso, utcnow


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass(slots=True)
class PendingReward:
    id: str
    experiment_id: str
    arm_id: str
    user_id: str
    assigned_at: datetime
    expires_at: datetime
    converted: bool = False
    conversion_value: Optional[float] = None
    conversion_currency: Optional[str] = None
    converted_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None

    @classmethod
    def create(
        cls,
        experiment_id: str,
        arm_id: str,
        user_id: str,
        ttl: timedelta,
        now: Optional[datetime] = None,
    ) -> "PendingReward":
        assigned_at = now or utcnow()
        return cls(
            id=new_id(),
            experiment_id=experiment_id,
            arm_id=arm_id,
            user_id=user_id,
            assigned_at=assigned_at,
            expires_at=assigned_at + ttl,
        )

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.expires_at

    def is_open(self, now: Optional[datetime] = None) -> bool:
        """Unconverted, unprocessed and still inside its attribution window."""
        return not self.converted and self.processed_at is None and not self.is_expired(now)

    def to_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "experiment_id": self.experiment_id,
            "arm_id": self.arm_id,
            "user_id": self.user_id,
            "assigned_at": self.assigned_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
            "converted": self.converted,
            "conversion_value": self.conversion_value,
            "conversion_currency": self.conversion_currency,
            "converted_at": isoformat(self.converted_at),
            "processed_at": isoformat(self.processed_at),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "PendingReward":
        value = payload.get("conversion_value")
        return cls(
            id=str(payload["id"]),
            experiment_id=str(payload["experiment_id"]),
            arm_id=str(payload["arm_id"]),
            user_id=str(payload["user_id"]),
            assigned_at=parse_iso(payload["assigned_at"]),
            expires_at=parse_iso(payload["expires_at"]),
            converted=bool(payload.get("converted", False)),
            conversion_value=float(value) if value is not None else None,
            conversion_currency=payload.get("conversion_currency"),
            converted_at=parse_iso(payload.get("converted_at")),
            processed_at=parse_iso(payload.get("processed_at")),
        )


@dataclass(slots=True)
class ConversionLink:
    pending_reward_id: str
    transaction_id: str
    linked_at: datetime

    def to_dict(self) -> Dict[str, object]:
        return {
            "pending_reward_id": self.pending_reward_id,
            "transaction_id": self.transaction_id,
            "linked_at": self.linked_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "ConversionLink":
        return cls(
            pending_reward_id=str(payload["pending_reward_id"]),
            transaction_id=str(payload["transaction_id"]),
            linked_at=parse_iso(payload["linked_at"]),
        )

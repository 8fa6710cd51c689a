"""User attributes available at selection time."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Mapping, Optional

from ..common.clock import isoformat, parse_iso


@dataclass(slots=True)
class UserContext:
    country: str = ""
    device: str = ""
    app_version: str = ""
    days_since_install: int = 0
    total_spent: float = 0.0
    last_purchase_at: Optional[datetime] = None
    custom_features: Dict[str, Any] = field(default_factory=dict)

    @property
    def currency(self) -> str:
        """Explicit currency carried in custom features, if any."""
        value = self.custom_features.get("currency")
        return str(value).upper() if value else ""

    def to_dict(self) -> Dict[str, object]:
        return {
            "country": self.country,
            "device": self.device,
            "app_version": self.app_version,
            "days_since_install": self.days_since_install,
            "total_spent": self.total_spent,
            "last_purchase_at": isoformat(self.last_purchase_at),
            "custom_features": dict(self.custom_features),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object] | None) -> "UserContext":
        if not payload:
            return cls()
        return cls(
            country=str(payload.get("country") or ""),
            device=str(payload.get("device") or ""),
            app_version=str(payload.get("app_version") or ""),
            days_since_install=int(payload.get("days_since_install") or 0),
            total_spent=float(payload.get("total_spent") or 0.0),
            last_purchase_at=parse_iso(payload.get("last_purchase_at")),
            custom_features=dict(payload.get("custom_features") or {}),
        )

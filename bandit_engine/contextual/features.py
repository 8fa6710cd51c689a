"""Fixed-width feature vector for the LinUCB selector."""
from __future__ import annotations

import math
from datetime import datetime
from typing import Optional

import numpy as np

from ..common.clock import parse_iso, utcnow
from .context import UserContext

COUNTRIES = ("US", "GB", "DE", "FR", "JP", "CA", "AU", "BR", "IN", "other")
DEVICES = ("ios", "android", "web", "tablet", "other")

COUNTRY_OFFSET = 0
DEVICE_OFFSET = len(COUNTRIES)
INSTALL_AGE_INDEX = DEVICE_OFFSET + len(DEVICES)
SPEND_INDEX = INSTALL_AGE_INDEX + 1
HAS_PURCHASED_INDEX = SPEND_INDEX + 1
RECENT_PURCHASE_INDEX = HAS_PURCHASED_INDEX + 1
BIAS_INDEX = RECENT_PURCHASE_INDEX + 1
FEATURE_DIM = BIAS_INDEX + 1

INSTALL_AGE_CAP_DAYS = 30.0
RECENT_PURCHASE_DAYS = 7


def _slot(value: str, choices: tuple[str, ...], *, upper: bool) -> int:
    key = value.upper() if upper else value.lower()
    try:
        return choices.index(key)
    except ValueError:
        return len(choices) - 1


def build_feature_vector(context: UserContext, now: Optional[datetime] = None) -> np.ndarray:
    x = np.zeros(FEATURE_DIM, dtype=float)
    x[COUNTRY_OFFSET + _slot(context.country, COUNTRIES, upper=True)] = 1.0
    x[DEVICE_OFFSET + _slot(context.device, DEVICES, upper=False)] = 1.0
    x[INSTALL_AGE_INDEX] = min(max(context.days_since_install, 0) / INSTALL_AGE_CAP_DAYS, 1.0)
    if context.total_spent > 0:
        x[SPEND_INDEX] = math.log1p(context.total_spent) / 10.0
        x[HAS_PURCHASED_INDEX] = 1.0
    if context.last_purchase_at is not None:
        # naive timestamps are read as UTC
        days = (parse_iso(now or utcnow()) - parse_iso(context.last_purchase_at)).days
        if days <= RECENT_PURCHASE_DAYS:
            x[RECENT_PURCHASE_INDEX] = 1.0
    x[BIAS_INDEX] = 1.0
    return x

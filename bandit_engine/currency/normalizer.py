"""Convert reward amounts to USD with cached live rates and static fallbacks."""
from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Mapping, Optional

from redis.asyncio import Redis

from ..common.clock import parse_iso, utcnow
from ..common.errors import CACHE_ERRORS, FxSourceError, InvalidCurrencyError, RateNotFoundError, ValidationError
from ..common.streams import currency_rate_key
from .countries import BASE_CURRENCY, currency_for_country

logger = logging.getLogger(__name__)

RATE_CACHE_TTL_SECS = 3_600
LOOKUP_TIMEOUT_SECS = 1.0
SOURCE_LIVE = "ecb"
SOURCE_FALLBACK = "fallback"

# USD per unit of currency.
FALLBACK_RATES: Dict[str, float] = {
    "EUR": 1.087,
    "GBP": 1.266,
    "JPY": 0.00669,
    "CAD": 0.735,
    "AUD": 0.654,
    "CHF": 1.136,
    "CNY": 0.139,
    "INR": 0.0120,
    "BRL": 0.201,
    "KRW": 0.000752,
}

_CODE = re.compile(r"^[A-Z]{3}$")


def _log_refresh_failure(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.warning("rate refresh failed: %s", task.exception())


def validate_currency(code: str) -> str:
    normalized = (code or "").strip().upper()
    if not _CODE.match(normalized):
        raise InvalidCurrencyError(f"invalid currency code {code!r}")
    return normalized


@dataclass(slots=True)
class CurrencyRate:
    currency: str
    rate: float
    source: str
    updated_at: datetime

    def to_dict(self) -> Dict[str, object]:
        return {
            "currency": self.currency,
            "rate": self.rate,
            "source": self.source,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, object]) -> "CurrencyRate":
        return cls(
            currency=str(payload["currency"]),
            rate=float(payload["rate"]),
            source=str(payload.get("source", SOURCE_LIVE)),
            updated_at=parse_iso(payload["updated_at"]),
        )


class CurrencyNormalizer:
    """Resolves rates from the in-process table, then Redis, then the live
    source, then the static fallback table.

    A lookup waits at most ``lookup_timeout_secs`` for the live source. Only one
    refresh runs at a time and a lookup that gives up leaves it running to fill
    the cache. Codes neither source knows are remembered as missing for the
    cache TTL so they do not start a refresh on every call.
    """

    def __init__(
        self,
        source=None,
        redis: Optional[Redis] = None,
        *,
        fallback_rates: Optional[Mapping[str, float]] = None,
        cache_ttl_secs: int = RATE_CACHE_TTL_SECS,
        lookup_timeout_secs: float = LOOKUP_TIMEOUT_SECS,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.source = source
        self.redis = redis
        self.fallback_rates: Dict[str, float] = dict(FALLBACK_RATES if fallback_rates is None else fallback_rates)
        self.cache_ttl = timedelta(seconds=cache_ttl_secs)
        self.lookup_timeout = lookup_timeout_secs
        self._clock = clock
        self._rates: Dict[str, CurrencyRate] = {}
        self._missing: Dict[str, datetime] = {}
        self._refresh_task: Optional[asyncio.Task] = None
        self.last_refresh: Optional[datetime] = None

    def _fresh(self, rate: CurrencyRate) -> bool:
        return self._clock() - rate.updated_at < self.cache_ttl

    async def _cached_rate(self, code: str) -> Optional[CurrencyRate]:
        local = self._rates.get(code)
        if local is not None and self._fresh(local):
            return local
        if self.redis is None:
            return None
        try:
            raw = await self.redis.get(currency_rate_key(code, BASE_CURRENCY))
        except CACHE_ERRORS as exc:
            logger.warning("rate cache read failed for %s: %s", code, exc)
            return None
        if not raw:
            return None
        try:
            rate = CurrencyRate.from_dict(json.loads(raw))
        except (ValueError, KeyError):
            logger.warning("discarding malformed cached rate for %s", code)
            return None
        self._rates[code] = rate
        return rate

    async def _cache_rate(self, rate: CurrencyRate) -> None:
        self._rates[rate.currency] = rate
        if self.redis is None:
            return
        try:
            await self.redis.set(
                currency_rate_key(rate.currency, BASE_CURRENCY),
                json.dumps(rate.to_dict()),
                ex=int(self.cache_ttl.total_seconds()),
            )
        except CACHE_ERRORS as exc:
            logger.warning("rate cache write failed for %s: %s", rate.currency, exc)

    async def _fetch_and_cache(self) -> int:
        rates = await self.source.fetch_rates(BASE_CURRENCY)
        now = self._clock()
        for code, value in rates.items():
            await self._cache_rate(CurrencyRate(code.upper(), float(value), SOURCE_LIVE, now))
        self.last_refresh = now
        logger.info("refreshed %d currency rates", len(rates))
        return len(rates)

    def _refresh(self) -> asyncio.Task:
        if self._refresh_task is None or self._refresh_task.done():
            self._refresh_task = asyncio.create_task(self._fetch_and_cache())
            self._refresh_task.add_done_callback(_log_refresh_failure)
        return self._refresh_task

    async def update_rates(self) -> int:
        """Refresh every rate from the live source. Raises FxSourceError on failure."""
        if self.source is None:
            return 0
        return await asyncio.shield(self._refresh())

    def _known_missing(self, code: str) -> bool:
        since = self._missing.get(code)
        if since is None:
            return False
        if self._clock() - since < self.cache_ttl:
            return True
        del self._missing[code]
        return False

    async def _live_rate(self, code: str) -> Optional[CurrencyRate]:
        try:
            await asyncio.wait_for(asyncio.shield(self._refresh()), self.lookup_timeout)
        except asyncio.TimeoutError:
            logger.warning("live rate lookup for %s exceeded %.1fs", code, self.lookup_timeout)
            return None
        except FxSourceError as exc:
            logger.warning("live rate source unavailable: %s", exc)
        else:
            live = self._rates.get(code)
            if live is not None and self._fresh(live):
                return live
        if code not in self.fallback_rates:
            self._missing[code] = self._clock()
        return None

    async def get_rate(self, currency: str) -> CurrencyRate:
        code = validate_currency(currency)
        if code == BASE_CURRENCY:
            return CurrencyRate(code, 1.0, SOURCE_LIVE, self._clock())
        cached = await self._cached_rate(code)
        if cached is not None:
            return cached
        if self.source is not None and not self._known_missing(code):
            live = await self._live_rate(code)
            if live is not None:
                return live
        fallback = self.fallback_rates.get(code)
        if fallback is None:
            raise RateNotFoundError(f"no exchange rate for {code}")
        rate = CurrencyRate(code, fallback, SOURCE_FALLBACK, self._clock())
        await self._cache_rate(rate)
        return rate

    async def convert_to_usd(self, amount: float, currency: str) -> float:
        if amount == 0:
            return 0.0
        code = (currency or "").strip().upper()
        if not code or code == BASE_CURRENCY:
            return float(amount)
        rate = await self.get_rate(code)
        return amount * rate.rate

    async def estimate_revenue_usd(
        self,
        amount: float,
        *,
        currency: Optional[str] = None,
        country: Optional[str] = None,
    ) -> float:
        code = currency or currency_for_country(country or "")
        return await self.convert_to_usd(amount, code)

    def currency_for_country(self, country: str) -> str:
        return currency_for_country(country)

    def set_fallback_rate(self, currency: str, rate: float) -> None:
        code = validate_currency(currency)
        if rate <= 0:
            raise ValidationError(f"fallback rate for {code} must be positive")
        self.fallback_rates[code] = rate

    def get_supported_currencies(self) -> List[str]:
        return sorted({BASE_CURRENCY, *self.fallback_rates, *self._rates})

    async def health_check(self) -> Dict[str, object]:
        status = "disabled"
        if self.source is not None:
            try:
                await self.update_rates()
                status = "ok"
            except FxSourceError as exc:
                logger.warning("rate source health check failed: %s", exc)
                status = "unavailable"
        return {
            "live_source": status,
            "cached_rates": len(self._rates),
            "fallback_rates": len(self.fallback_rates),
            "last_refresh": self.last_refresh.isoformat() if self.last_refresh else None,
        }

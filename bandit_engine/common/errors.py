"""Error taxonomy shared by every bandit component."""
from __future__ import annotations

import asyncio

from redis.exceptions import RedisError


class BanditError(RuntimeError):
    """Base class for bandit engine failures."""


class NotFoundError(BanditError):
    """No arms, experiment, pending reward or objective stats for the key."""


class UnsupportedError(BanditError):
    """The backing store does not implement an optional capability."""


class TransientError(BanditError):
    """Cache or rate source temporarily unavailable."""


class ValidationError(BanditError):
    """Caller supplied an invalid weight, TTL or currency."""


class RateNotFoundError(NotFoundError):
    """No live, cached or fallback exchange rate for a currency."""


class FxSourceError(TransientError):
    """The external exchange-rate feed failed or returned garbage."""


class InvalidCurrencyError(ValidationError):
    """Currency code is not a three-letter ISO 4217 code."""


# Errors raised by a Redis client that the cache layer treats as transient.
CACHE_ERRORS = (RedisError, OSError, asyncio.TimeoutError)

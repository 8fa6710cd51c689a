"""Async Redis client lifecycle and JSON-over-Streams messaging."""
from __future__ import annotations

import inspect
import json
import logging
import os
from typing import Any, Awaitable, Callable, Dict, List, Mapping

from redis.asyncio import Redis

logger = logging.getLogger(__name__)

DEFAULT_REDIS_URL = "redis://localhost:6379/0"
STREAM_MAXLEN = 10_000

Handler = Callable[[Dict[str, Any]], Any] | Callable[[Dict[str, Any]], Awaitable[Any]]


async def create_redis(url: str | None = None) -> Redis:
    """Connect with decoded responses; REDIS_URL when no url is given."""
    redis_url = url or os.environ.get("REDIS_URL", DEFAULT_REDIS_URL)
    client = Redis.from_url(redis_url, decode_responses=True)
    await client.ping()
    logger.info("connected to redis at %s", redis_url.rsplit("@", 1)[-1])
    return client


async def close_redis(client: Redis) -> None:
    await client.aclose()


async def publish_json(client: Redis, stream: str, payload: Mapping[str, Any], *, maxlen: int = STREAM_MAXLEN) -> str:
    """Append a JSON payload under the ``data`` field of a stream entry."""
    data = json.dumps(payload, separators=(",", ":"), default=str)
    return await client.xadd(stream, {"data": data}, maxlen=maxlen, approximate=True)


def _decode(entry_id: str, fields: Mapping[str, str]) -> Dict[str, Any] | None:
    try:
        payload = json.loads(fields.get("data", "{}"))
    except json.JSONDecodeError:
        logger.warning("skipping malformed stream entry %s", entry_id)
        return None
    if not isinstance(payload, dict):
        logger.warning("skipping non-object stream entry %s", entry_id)
        return None
    return payload


async def consume_stream(
    client: Redis,
    stream: str,
    handler: Handler,
    *,
    start: str = "0-0",
    block_ms: int = 1_000,
    batch_size: int = 100,
    stop: Callable[[], bool] | None = None,
) -> None:
    """Read a stream from ``start`` and hand each JSON payload to ``handler``
    until ``stop()`` turns true. Handlers may be plain or async callables.
    """
    last_id = start
    while stop is None or not stop():
        response = await client.xread({stream: last_id}, count=batch_size, block=block_ms)
        for _, entries in response or []:
            for entry_id, fields in entries:
                last_id = entry_id
                payload = _decode(entry_id, fields)
                if payload is None:
                    continue
                result = handler(payload)
                if inspect.isawaitable(result):
                    await result


async def read_stream_tail(client: Redis, stream: str, count: int = 10) -> List[Dict[str, Any]]:
    """Newest ``count`` payloads of a stream, oldest first."""
    entries = await client.xrevrange(stream, count=count)
    payloads = [_decode(entry_id, fields) for entry_id, fields in reversed(entries)]
    return [payload for payload in payloads if payload is not None]

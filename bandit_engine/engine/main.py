"""Bandit service entrypoint: reward/conversion stream consumers plus the maintenance loop."""
from __future__ import annotations

import asyncio
import logging
from typing import Mapping

from redis.asyncio import Redis

from ..common.errors import CACHE_ERRORS, BanditError
from ..common.logging import configure_logging
from ..common.redis import close_redis, consume_stream, create_redis, publish_json, read_stream_tail
from ..common.streams import CONVERSION_STREAM, MAINTENANCE_STREAM, REWARD_STREAM
from ..contextual.context import UserContext
from ..currency.ecb import EcbConfig, EcbRateSource
from ..storage.redis_store import RedisBanditStore
from .config import EngineConfig, load_engine_config
from .engine import BanditEngine

logger = logging.getLogger(__name__)


def build_engine(config: EngineConfig, redis: Redis, *, rate_source=None, store=None) -> BanditEngine:
    if rate_source is None and config.enable_currency:
        rate_source = EcbRateSource(
            EcbConfig(
                url=config.currency.source_url,
                request_timeout=config.currency.request_timeout_secs,
                max_retries=config.currency.max_retries,
                retry_backoff_secs=config.currency.retry_backoff_secs,
            )
        )
    return BanditEngine(
        store or RedisBanditStore(redis),
        config=config,
        redis=redis,
        rate_source=rate_source,
    )


async def handle_reward(engine: BanditEngine, payload: Mapping[str, object]) -> None:
    try:
        await engine.record_reward(
            str(payload["experiment_id"]),
            str(payload["arm_id"]),
            str(payload.get("user_id", "")),
            float(payload.get("reward", 0.0)),
            str(payload.get("currency") or ""),
            UserContext.from_dict(payload.get("context")),
            ltv=float(payload["ltv"]) if payload.get("ltv") is not None else None,
        )
    except (KeyError, ValueError, BanditError, *CACHE_ERRORS) as exc:
        logger.error("dropping reward message %s: %s", dict(payload), exc)


async def handle_conversion(engine: BanditEngine, payload: Mapping[str, object]) -> None:
    try:
        await engine.process_conversion(
            str(payload["transaction_id"]),
            str(payload["user_id"]),
            float(payload.get("value", 0.0)),
            str(payload.get("currency") or ""),
            experiment_id=str(payload["experiment_id"]) if payload.get("experiment_id") else None,
        )
    except (KeyError, ValueError, BanditError, *CACHE_ERRORS) as exc:
        logger.error("dropping conversion message %s: %s", dict(payload), exc)


async def run_maintenance_loop(
    engine: BanditEngine,
    redis: Redis,
    *,
    stop_event: asyncio.Event | None = None,
) -> None:
    interval = max(engine.config.maintenance_interval_secs, 1.0)
    while stop_event is None or not stop_event.is_set():
        try:
            report = await engine.run_maintenance()
        except asyncio.TimeoutError:
            logger.error("maintenance sweep exceeded %.0fs", interval)
        else:
            await publish_json(redis, MAINTENANCE_STREAM, report.to_dict())
        if stop_event is None:
            await asyncio.sleep(interval)
            continue
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=interval)
        except asyncio.TimeoutError:
            pass


async def latest_maintenance_report(redis: Redis) -> Mapping[str, object] | None:
    tail = await read_stream_tail(redis, MAINTENANCE_STREAM, count=1)
    return tail[-1] if tail else None


async def run_bandit_service(
    engine: BanditEngine,
    redis: Redis,
    *,
    stop_event: asyncio.Event | None = None,
) -> None:
    def should_stop() -> bool:
        return stop_event.is_set() if stop_event else False

    async def on_reward(payload: Mapping[str, object]) -> None:
        await handle_reward(engine, payload)

    async def on_conversion(payload: Mapping[str, object]) -> None:
        await handle_conversion(engine, payload)

    tasks = [
        asyncio.create_task(consume_stream(redis, REWARD_STREAM, on_reward, stop=should_stop)),
        asyncio.create_task(run_maintenance_loop(engine, redis, stop_event=stop_event)),
    ]
    if engine.delayed is not None:
        tasks.append(asyncio.create_task(consume_stream(redis, CONVERSION_STREAM, on_conversion, stop=should_stop)))
    try:
        await asyncio.gather(*tasks)
    except asyncio.CancelledError:
        for task in tasks:
            task.cancel()
        raise


async def main_async() -> None:
    configure_logging()
    config = load_engine_config()
    redis = await create_redis()
    engine = build_engine(config, redis)
    try:
        await run_bandit_service(engine, redis)
    finally:
        if engine.currency is not None and engine.currency.source is not None:
            await engine.currency.source.close()
        await close_redis(redis)


def main() -> None:
    asyncio.run(main_async())


if __name__ == "__main__":
    main()

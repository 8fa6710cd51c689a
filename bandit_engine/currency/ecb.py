"""European Central Bank daily reference rate client."""
from __future__ import annotations

import asyncio
import xml.etree.ElementTree as ET
from dataclasses import dataclass
from typing import Dict, Mapping, Optional

import aiohttp

from ..common.errors import FxSourceError

ECB_DAILY_URL = "https://www.ecb.europa.eu/stats/eurofxref/eurofxref-daily.xml"


@dataclass
class EcbConfig:
    url: str = ECB_DAILY_URL
    request_timeout: float = 5.0
    max_retries: int = 3
    retry_backoff_secs: float = 1.0


def parse_ecb_rates(document: str, base: str = "USD") -> Dict[str, float]:
    """Turn the EUR-quoted ECB feed into ``base`` per unit of each currency."""
    try:
        root = ET.fromstring(document)
    except ET.ParseError as exc:
        raise FxSourceError("malformed ECB rate document") from exc
    eur_quotes: Dict[str, float] = {"EUR": 1.0}
    for node in root.iter():
        if not node.tag.endswith("Cube"):
            continue
        currency = node.attrib.get("currency")
        rate = node.attrib.get("rate")
        if not currency or not rate:
            continue
        try:
            value = float(rate)
        except ValueError:
            continue
        if value > 0:
            eur_quotes[currency.upper()] = value
    if base not in eur_quotes:
        raise FxSourceError(f"ECB feed carries no {base} quote")
    base_per_eur = eur_quotes[base]
    return {currency: base_per_eur / quote for currency, quote in eur_quotes.items() if currency != base}


class EcbRateSource:
    def __init__(self, config: EcbConfig | None = None, *, session: Optional[aiohttp.ClientSession] = None):
        self.config = config or EcbConfig()
        self._session = session
        self._external_session = session is not None
        self._max_retries = max(self.config.max_retries, 1)
        self._backoff_secs = max(self.config.retry_backoff_secs, 0.1)

    def _ensure_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.config.request_timeout)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._external_session:
            await self._session.close()
            self._session = None

    async def _fetch_document(self) -> str:
        session = self._ensure_session()
        attempt = 0
        backoff = self._backoff_secs
        while True:
            try:
                async with session.get(self.config.url) as resp:
                    text = await resp.text()
                    if resp.status >= 400:
                        raise FxSourceError(f"ECB error {resp.status}")
                    return text
            except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
                attempt += 1
                if attempt >= self._max_retries:
                    raise FxSourceError("ECB request failed after retries") from exc
                await asyncio.sleep(backoff)
                backoff = min(backoff * 2, 30.0)

    async def fetch_rates(self, base: str = "USD") -> Dict[str, float]:
        return parse_ecb_rates(await self._fetch_document(), base)


class StaticRateSource:
    """Rate source serving a fixed table. Used in tests and offline runs."""

    def __init__(self, rates: Mapping[str, float]):
        self.rates = {code.upper(): float(value) for code, value in rates.items()}
        self.calls = 0

    async def fetch_rates(self, base: str = "USD") -> Dict[str, float]:
        self.calls += 1
        return dict(self.rates)

    async def close(self) -> None:
        return None

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

import aiohttp
from loguru import logger

from packages.common.constants import AVAILABLE_GRANULARITIES
from packages.common.datetime_utils import s_to_iso8601_minute
from packages.common.errors import ProviderHTTPError, ProviderResponseError, ProviderTransportError

from packages.backfill.types import Candle


def _parse_row(row: Any) -> Candle:
    # [time, low, high, open, close, volume]
    if not isinstance(row, (list, tuple)) or len(row) < 6:
        raise ProviderResponseError(f"Unexpected candle row: {row!r}")
    try:
        return Candle(
            ts_s=int(row[0]),
            low=float(row[1]),
            high=float(row[2]),
            open=float(row[3]),
            close=float(row[4]),
            volume=float(row[5]),
        )
    except (TypeError, ValueError) as e:
        raise ProviderResponseError(f"Unparseable candle row: {row!r}") from e


@dataclass
class CoinbaseCandleProvider:
    """
    Public /products/{id}/candles endpoint. No retries here: the import
    scheduler owns retry and rate limiting.
    """

    base_url: str = "https://api.pro.coinbase.com"
    request_timeout_s: float = 10.0
    user_agent: str = "CPTB Client"

    def _headers(self) -> dict[str, str]:
        return {
            "Content-type": "application/json",
            "Accept": "application/json",
            "Accept-Charset": "utf-8",
            "User-Agent": self.user_agent,
        }

    async def fetch_candles(
        self,
        product: str,
        start_s: int,
        end_s: int,
        granularity_s: int,
    ) -> list[Candle]:
        if granularity_s not in AVAILABLE_GRANULARITIES:
            raise ValueError(
                f"Unsupported granularity={granularity_s}. Supported: {list(AVAILABLE_GRANULARITIES)}"
            )

        url = f"{self.base_url.rstrip('/')}/products/{product}/candles"
        params = {
            "start": s_to_iso8601_minute(start_s),
            "end": s_to_iso8601_minute(end_s),
            "granularity": str(granularity_s),
        }
        timeout = aiohttp.ClientTimeout(total=self.request_timeout_s)

        try:
            async with aiohttp.ClientSession(timeout=timeout, headers=self._headers()) as sess:
                async with sess.get(url, params=params) as resp:
                    text = await resp.text()
                    if resp.status != 200:
                        logger.error("Candles request failed HTTP {}: {}", resp.status, text[:200])
                        raise ProviderHTTPError(resp.status, text)
                    try:
                        data = await resp.json(content_type=None)
                    except ValueError as e:
                        raise ProviderResponseError(f"Candles response is not JSON: {text[:200]}") from e
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise ProviderTransportError(f"Candles request failed for {product}: {e!r}") from e

        if not isinstance(data, list):
            raise ProviderResponseError(f"Candles response is not a list: {str(data)[:200]}")

        return [_parse_row(row) for row in data]

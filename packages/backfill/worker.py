from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Callable

from loguru import logger

from packages.common.config import RetryPolicy
from packages.common.datetime_utils import s_to_iso8601_minute
from packages.common.errors import (
    ProductNotFoundError,
    ProviderError,
    ProviderHTTPError,
    StorageError,
)

from packages.backfill.planner import split_range
from packages.backfill.sqlite_store import CandleStore
from packages.backfill.types import CandleProvider, DateRange


# Provider statuses with a dedicated recovery path. Everything else is transient.
STATUS_SPAN_TOO_LARGE = 400
STATUS_NOT_FOUND = 404

SPLIT_DIVISOR = 2

# (range, attempt) -> None; enqueues another worker pass for the same import.
Submit = Callable[[DateRange, int], None]


@dataclass
class ImportStats:
    fetches: int = 0
    splits: int = 0
    retries: int = 0
    abandoned: int = 0
    saved_rows: int = 0
    failed_writes: int = 0


def fmt_range(r: DateRange) -> str:
    return f"{s_to_iso8601_minute(r.start_s)} - {s_to_iso8601_minute(r.end_s)}"


class FetchAndPersistWorker:
    """
    One pass over one DateRange for one import.

    - rows fetched -> saved; a failed save is logged and the rows dropped
    - 400 (span too large) -> range cut in two, both halves resubmitted
    - 404 (unknown product) -> ProductNotFoundError, fatal to the run
    - anything else -> same range resubmitted with start/end swapped

    The swapped blind retry alternates fetch direction on every attempt. It is
    the retry policy, not an accident: a swapped range that the provider then
    rejects with 400 is re-split into ascending halves.
    """

    def __init__(
        self,
        *,
        import_id: int,
        product: str,
        provider: CandleProvider,
        store: CandleStore,
        submit: Submit,
        retry: RetryPolicy | None = None,
        stats: ImportStats | None = None,
    ):
        self.import_id = import_id
        self.product = product
        self._provider = provider
        self._store = store
        self._submit = submit
        self._retry = retry or RetryPolicy()
        self.stats = stats or ImportStats()

    async def process(self, r: DateRange, attempt: int = 0) -> None:
        try:
            rows = await self._provider.fetch_candles(self.product, r.start_s, r.end_s, r.granularity_s)
        except ProviderHTTPError as e:
            if e.status == STATUS_SPAN_TOO_LARGE:
                self._split(r)
                return
            if e.status == STATUS_NOT_FOUND:
                logger.error("Couldn't be found. Please make sure you add an available product: {}", self.product)
                raise ProductNotFoundError(self.product, e.body) from e
            await self._retry_swapped(r, attempt, e)
            return
        except (ProviderError, OSError, asyncio.TimeoutError) as e:
            await self._retry_swapped(r, attempt, e)
            return

        self.stats.fetches += 1
        logger.info("New data received range={} rows={}", fmt_range(r), len(rows))

        try:
            saved = await self._store.save_candles(self.import_id, self.product, rows)
        except StorageError as e:
            self.stats.failed_writes += 1
            logger.error("Saving range {} failed, {} rows dropped: {}", fmt_range(r), len(rows), e)
            return

        self.stats.saved_rows += saved
        logger.info("New data saved to database rows={}", saved)

    def _split(self, r: DateRange) -> None:
        pieces = split_range(r, SPLIT_DIVISOR)
        if len(pieces) < 2:
            self.stats.abandoned += 1
            logger.error("Range {} rejected as too large but holds a single bucket, giving up", fmt_range(r))
            return

        self.stats.splits += 1
        logger.info("Granularity too large for start and end date. Divide by {}", SPLIT_DIVISOR)
        for piece in pieces:
            self._submit(piece, 0)

    async def _retry_swapped(self, r: DateRange, attempt: int, err: BaseException) -> None:
        attempts_made = attempt + 1
        logger.warning("Importing data failed range={} attempt={}: {}", fmt_range(r), attempts_made, err)

        if self._retry.exhausted(attempts_made):
            self.stats.abandoned += 1
            logger.error("Range {} abandoned after {} attempts", fmt_range(r), attempts_made)
            return

        delay = self._retry.delay_for(attempts_made)
        if delay > 0:
            await asyncio.sleep(delay)

        self.stats.retries += 1
        self._submit(r.swapped(), attempts_made)

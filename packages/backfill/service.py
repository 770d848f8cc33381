from __future__ import annotations

import asyncio
from dataclasses import asdict, dataclass
from typing import List, Optional

from loguru import logger

from packages.common.config import LimiterConfig, RetryPolicy
from packages.common.constants import AVAILABLE_GRANULARITIES, MAX_DATAPOINTS_PER_REQUEST
from packages.common.datetime_utils import now_s
from packages.common.errors import (
    ConfigurationError,
    InvalidDatapointsError,
    InvalidGranularityError,
    InvalidNameError,
)

from packages.backfill.limiter import RateLimitedScheduler
from packages.backfill.planner import plan_initial_ranges
from packages.backfill.sqlite_store import CandleStore
from packages.backfill.types import CandleProvider, DateRange, ImportJob
from packages.backfill.worker import FetchAndPersistWorker, ImportStats, fmt_range


@dataclass(frozen=True)
class ImportRequest:
    name: str
    product: str
    datapoints: int
    granularity: int


@dataclass(frozen=True)
class ImportSummary:
    import_id: int
    name: str
    product: str
    fetches: int
    splits: int
    retries: int
    abandoned: int
    saved_rows: int
    failed_writes: int


def validate_request(req: ImportRequest) -> ImportRequest:
    if not isinstance(req.name, str) or not req.name.strip():
        raise InvalidNameError("No name specified for import")

    if not isinstance(req.product, str) or not req.product.strip():
        raise ConfigurationError("No product specified for import")

    # bool is an int subclass; True is not a datapoint count
    if isinstance(req.datapoints, bool) or not isinstance(req.datapoints, int):
        raise InvalidDatapointsError(
            f"Datapoints must be of type int. {type(req.datapoints).__name__} given"
        )
    if req.datapoints <= 0:
        raise InvalidDatapointsError(f"Datapoints must be positive (got {req.datapoints})")

    if req.granularity not in AVAILABLE_GRANULARITIES:
        raise InvalidGranularityError(
            f"Granularity must be one of: {', '.join(str(g) for g in AVAILABLE_GRANULARITIES)}"
        )

    return ImportRequest(
        name=req.name.strip(),
        product=req.product.strip(),
        datapoints=int(req.datapoints),
        granularity=int(req.granularity),
    )


class ImportRun:
    """
    Handle for one running import. `completion` resolves to an ImportSummary
    when the scheduler drains, or raises the first fatal job error after the
    scheduler has been stopped.
    """

    def __init__(
        self,
        *,
        job: ImportJob,
        provider: CandleProvider,
        store: CandleStore,
        scheduler: RateLimitedScheduler,
        retry: RetryPolicy,
    ):
        assert job.id is not None
        self.job = job
        self.scheduler = scheduler
        self.stats = ImportStats()
        self.worker = FetchAndPersistWorker(
            import_id=job.id,
            product=job.product,
            provider=provider,
            store=store,
            submit=self.submit,
            retry=retry,
            stats=self.stats,
        )
        self.completion: asyncio.Future = asyncio.get_running_loop().create_future()
        self._abort_task: Optional[asyncio.Task] = None

        scheduler.on_drained(self._on_drained)

    def submit(self, r: DateRange, attempt: int = 0) -> None:
        if self.completion.done() or self._abort_task is not None:
            logger.debug("Run finished, dropping range {}", fmt_range(r))
            return

        def job():
            logger.info("Current job count: {}", self.scheduler.counts().queued)
            logger.info("Added range {}", fmt_range(r))
            return self.worker.process(r, attempt)

        fut = self.scheduler.schedule(job)
        fut.add_done_callback(self._on_job_done)

    async def wait(self) -> ImportSummary:
        return await self.completion

    def summary(self) -> ImportSummary:
        assert self.job.id is not None
        return ImportSummary(
            import_id=self.job.id,
            name=self.job.name,
            product=self.job.product,
            **asdict(self.stats),
        )

    def _on_job_done(self, fut: asyncio.Future) -> None:
        if fut.cancelled():
            return
        exc = fut.exception()
        if exc is None:
            return
        logger.error("Import {} failed: {}", self.job.name, exc)
        if self._abort_task is None and not self.completion.done():
            # Halt now so the dispatch loop cannot release another range first.
            self.scheduler.halt()
            self._abort_task = asyncio.create_task(self._abort(exc))

    async def _abort(self, exc: BaseException) -> None:
        await self.scheduler.stop()
        if not self.completion.done():
            self.completion.set_exception(exc)

    def _on_drained(self) -> None:
        if self.completion.done() or self._abort_task is not None:
            return
        summary = self.summary()
        logger.info("Empty queue. Import {} complete: {}", self.job.name, summary)
        self.completion.set_result(summary)


class ImportService:
    def __init__(
        self,
        *,
        provider: CandleProvider,
        store: CandleStore,
        limiter: LimiterConfig | None = None,
        retry: RetryPolicy | None = None,
    ):
        self._provider = provider
        self._store = store
        self._limiter_cfg = limiter or LimiterConfig()
        self._retry = retry or RetryPolicy()

    async def start_import(self, req: ImportRequest, *, now: Optional[int] = None) -> ImportRun:
        req = validate_request(req)
        logger.info("Starting import")

        await self._store.ensure_schema()

        created_at = now_s() if now is None else int(now)
        job = ImportJob(
            name=req.name,
            product=req.product,
            datapoints=req.datapoints,
            granularity_s=req.granularity,
            created_at_s=created_at,
        )
        # DuplicateNameError propagates before anything is scheduled.
        import_id = await self._store.create_import(job)
        job = ImportJob(**{**asdict(job), "id": import_id})

        ranges: List[DateRange] = plan_initial_ranges(req.datapoints, req.granularity, now=now)

        logger.info("Importing data from Coinbase")
        logger.info("Import name: {}", job.name)
        logger.info("Import id: {}", import_id)
        logger.info("Product: {}", job.product)
        logger.info("Granularity: {} seconds", job.granularity_s)
        logger.info("Total datapoints: {}", job.datapoints)
        logger.info("Total requests: {} (max {} datapoints each)", len(ranges), MAX_DATAPOINTS_PER_REQUEST)

        run = ImportRun(
            job=job,
            provider=self._provider,
            store=self._store,
            scheduler=RateLimitedScheduler(self._limiter_cfg),
            retry=self._retry,
        )
        for r in ranges:
            run.submit(r)
        return run

    async def run_import(self, req: ImportRequest, *, now: Optional[int] = None) -> ImportSummary:
        run = await self.start_import(req, now=now)
        return await run.wait()

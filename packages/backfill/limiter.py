from __future__ import annotations

import asyncio
import time
from collections import deque
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Deque, List, Optional, Tuple

from loguru import logger

from packages.common.config import LimiterConfig


Job = Callable[[], Awaitable[Any]]


@dataclass
class SchedulerBudget:
    """Mutable admission state. Only RateLimitedScheduler reads or writes it."""

    available_slots: int
    max_slots: int
    refill_amount: int
    refill_interval_s: float
    max_concurrent: int
    min_spacing_s: float
    in_flight: int = 0
    last_dispatch: Optional[float] = None
    last_refill: float = 0.0


@dataclass(frozen=True)
class SchedulerCounts:
    queued: int
    running: int


class RateLimitedScheduler:
    """
    Flat admission-controlled queue in front of the candle provider.

    A job leaves the queue only when:
    - fewer than max_concurrent jobs are in flight
    - min_spacing_s has elapsed since the previous dispatch
    - the token bucket holds a permit (refill_amount added every
      refill_interval_s, never above max_slots)

    Jobs may be scheduled from inside running jobs. The drain signal fires once,
    the first time nothing is queued or in flight after work was submitted.
    """

    def __init__(
        self,
        cfg: LimiterConfig | None = None,
        *,
        clock: Callable[[], float] = time.monotonic,
    ):
        cfg = cfg or LimiterConfig()
        self._clock = clock
        self._budget = SchedulerBudget(
            available_slots=cfg.reservoir,
            max_slots=cfg.max_slots,
            refill_amount=cfg.refill_amount,
            refill_interval_s=cfg.refill_interval_s,
            max_concurrent=cfg.max_concurrent,
            min_spacing_s=cfg.min_spacing_s,
            last_refill=clock(),
        )

        self._queue: Deque[Tuple[Job, asyncio.Future]] = deque()
        self._running: set[asyncio.Task] = set()
        self._wakeup = asyncio.Event()
        self._loop_task: Optional[asyncio.Task] = None

        self._submitted = 0
        self._drained = False
        self._stopped = False
        self._drain_future: Optional[asyncio.Future] = None
        self._drain_listeners: List[Callable[[], None]] = []

    # -------------------------
    # public API
    # -------------------------

    def schedule(self, job: Job) -> asyncio.Future:
        """Enqueue job and return at once. The future carries the job's outcome."""
        if self._stopped:
            raise RuntimeError("scheduler is stopped")
        if self._drained:
            raise RuntimeError("scheduler already drained")

        loop = asyncio.get_running_loop()
        fut: asyncio.Future = loop.create_future()
        self._queue.append((job, fut))
        self._submitted += 1
        self._ensure_loop()
        self._wakeup.set()
        return fut

    def counts(self) -> SchedulerCounts:
        return SchedulerCounts(queued=len(self._queue), running=self._budget.in_flight)

    def on_drained(self, callback: Callable[[], None]) -> None:
        self._drain_listeners.append(callback)

    def when_drained(self) -> asyncio.Future:
        if self._drain_future is None:
            self._drain_future = asyncio.get_running_loop().create_future()
            if self._drained:
                self._drain_future.set_result(None)
        return self._drain_future

    @property
    def drained(self) -> bool:
        return self._drained

    def halt(self) -> None:
        """
        Synchronous half of stop(): nothing is dispatched after this returns.
        Queued futures are cancelled, running tasks get a cancel request.
        """
        if self._stopped:
            return
        self._stopped = True

        dropped = 0
        while self._queue:
            _, fut = self._queue.popleft()
            if not fut.done():
                fut.cancel()
            dropped += 1

        for task in self._running:
            task.cancel()
        if self._loop_task:
            self._loop_task.cancel()

        if self._drain_future is not None and not self._drain_future.done():
            self._drain_future.cancel()

        logger.info("Scheduler halted dropped_queued={} cancelled_running={}", dropped, len(self._running))

    async def stop(self) -> None:
        """Drop queued jobs, cancel running ones and wait for them. No drain signal afterwards."""
        self.halt()

        if self._loop_task:
            await asyncio.gather(self._loop_task, return_exceptions=True)
            self._loop_task = None

        running = list(self._running)
        if running:
            await asyncio.gather(*running, return_exceptions=True)

    # -------------------------
    # dispatch loop
    # -------------------------

    def _ensure_loop(self) -> None:
        if self._loop_task is None or self._loop_task.done():
            self._loop_task = asyncio.create_task(self._dispatch_loop())

    def _refill(self, now: float) -> None:
        b = self._budget
        while now - b.last_refill >= b.refill_interval_s:
            b.available_slots = min(b.max_slots, b.available_slots + b.refill_amount)
            b.last_refill += b.refill_interval_s

    async def _dispatch_loop(self) -> None:
        b = self._budget
        while not self._stopped:
            # Cleared before the checks; schedule() and job completion set it again.
            self._wakeup.clear()

            if not self._queue:
                await self._wakeup.wait()
                continue

            if b.in_flight >= b.max_concurrent:
                await self._wakeup.wait()
                continue

            now = self._clock()
            self._refill(now)

            if b.last_dispatch is not None:
                wait_s = b.last_dispatch + b.min_spacing_s - now
                if wait_s > 0:
                    await asyncio.sleep(wait_s)
                    continue

            if b.available_slots <= 0:
                wait_s = b.last_refill + b.refill_interval_s - now
                logger.debug("Bucket empty, waiting {:.2f}s for refill", wait_s)
                await asyncio.sleep(max(wait_s, 0.0))
                continue

            job, fut = self._queue.popleft()
            if fut.cancelled():
                asyncio.get_running_loop().call_soon(self._check_drained)
                continue

            b.available_slots -= 1
            b.in_flight += 1
            b.last_dispatch = now
            self._start(job, fut)

    def _start(self, job: Job, fut: asyncio.Future) -> None:
        try:
            task = asyncio.ensure_future(job())
        except Exception as e:
            # job() itself raised before producing an awaitable
            self._budget.in_flight -= 1
            if not fut.done():
                fut.set_exception(e)
            asyncio.get_running_loop().call_soon(self._check_drained)
            return

        self._running.add(task)
        task.add_done_callback(lambda t: self._finish(t, fut))

    def _finish(self, task: asyncio.Task, fut: asyncio.Future) -> None:
        self._running.discard(task)
        self._budget.in_flight -= 1

        if task.cancelled():
            if not fut.done():
                fut.cancel()
        else:
            exc = task.exception()
            if fut.done():
                pass
            elif exc is not None:
                fut.set_exception(exc)
            else:
                fut.set_result(task.result())

        self._wakeup.set()
        # After the job future's own callbacks, which were queued by set_result above.
        asyncio.get_running_loop().call_soon(self._check_drained)

    def _check_drained(self) -> None:
        if self._stopped or self._drained:
            return
        if self._submitted == 0 or self._queue or self._budget.in_flight > 0:
            return

        self._drained = True
        logger.info("Empty queue, {} jobs processed", self._submitted)

        if self._loop_task:
            self._loop_task.cancel()
            self._loop_task = None

        if self._drain_future is not None and not self._drain_future.done():
            self._drain_future.set_result(None)
        for cb in self._drain_listeners:
            cb()

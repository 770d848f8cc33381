# packages/backfill/tests/test_import_service.py

from __future__ import annotations

import asyncio
import os
import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Tuple

import pytest

from packages.common.config import LimiterConfig, RetryPolicy
from packages.common.errors import (
    DuplicateNameError,
    InvalidDatapointsError,
    InvalidGranularityError,
    InvalidNameError,
    ProductNotFoundError,
    ProviderHTTPError,
    ProviderTransportError,
    StorageError,
)
from packages.backfill.planner import backfill_anchor
from packages.backfill.service import ImportRequest, ImportService
from packages.backfill.sqlite_store import CandleStore
from packages.backfill.types import Candle

NOW = 1_700_000_000

FAST = LimiterConfig(
    reservoir=1000,
    max_slots=1000,
    refill_amount=1000,
    refill_interval_s=60.0,
    max_concurrent=1,
    min_spacing_s=0.0,
)


@dataclass
class DummyProvider:
    """
    Emits one candle per bucket in [lo, hi), capped at 300 like the real endpoint.
    `errors` is consumed one entry per call; None means answer normally.
    """

    errors: List[Optional[BaseException]] = field(default_factory=list)
    calls: List[Tuple[str, int, int, int]] = field(default_factory=list)

    async def fetch_candles(self, product: str, start_s: int, end_s: int, granularity_s: int):
        self.calls.append((product, start_s, end_s, granularity_s))
        if self.errors:
            err = self.errors.pop(0)
            if err is not None:
                raise err

        lo, hi = min(start_s, end_s), max(start_s, end_s)
        out = []
        ts = lo
        while ts < hi and len(out) < 300:
            out.append(Candle(ts_s=ts, low=1, high=2, open=1.5, close=1.6, volume=3))
            ts += granularity_s
        return out


class FailingStore(CandleStore):
    async def save_candles(self, import_id, product, rows):
        raise StorageError("disk full")


def _tmp_db() -> Path:
    with tempfile.NamedTemporaryFile(suffix=".sqlite", delete=False) as tmp:
        return Path(tmp.name)


async def _run(db_path: Path, provider: DummyProvider, req: ImportRequest, *, retry=None, store_cls=CandleStore):
    store = await store_cls.open(db_path)
    try:
        service = ImportService(provider=provider, store=store, limiter=FAST, retry=retry)
        summary = await service.run_import(req, now=NOW)
        rows = await store.count_candles(summary.import_id)
        return summary, rows
    finally:
        await store.close()


async def _total_rows(db_path: Path) -> int:
    store = await CandleStore.open(db_path)
    try:
        await store.ensure_schema()
        async with store.conn.execute("SELECT COUNT(*) FROM candles") as cur:
            row = await cur.fetchone()
        return int(row[0])
    finally:
        await store.close()


def test_two_chunks_import_600_rows():
    db_path = _tmp_db()
    try:
        provider = DummyProvider()
        req = ImportRequest(name="btc-test", product="BTC-EUR", datapoints=600, granularity=60)
        summary, rows = asyncio.run(_run(db_path, provider, req))

        assert len(provider.calls) == 2
        assert rows == 600
        assert summary.saved_rows == 600
        assert summary.fetches == 2
        assert summary.splits == summary.retries == summary.abandoned == 0

        anchor = backfill_anchor(NOW, 60)
        assert provider.calls[0] == ("BTC-EUR", anchor - 300 * 60, anchor, 60)
        assert provider.calls[1] == ("BTC-EUR", anchor - 600 * 60, anchor - 300 * 60, 60)
    finally:
        os.unlink(db_path)


def test_too_large_range_is_split_in_two():
    db_path = _tmp_db()
    try:
        provider = DummyProvider(errors=[ProviderHTTPError(400, "too many candles")])
        req = ImportRequest(name="split", product="BTC-EUR", datapoints=300, granularity=60)
        summary, rows = asyncio.run(_run(db_path, provider, req))

        assert len(provider.calls) == 3
        _, s0, e0, _ = provider.calls[0]
        halves = provider.calls[1:]
        for _, s, e, g in halves:
            assert g == 60
            assert e - s == 150 * 60
        assert sorted((s, e) for _, s, e, _ in halves) == [(s0, s0 + 150 * 60), (s0 + 150 * 60, e0)]

        assert summary.splits == 1
        assert rows == 300
    finally:
        os.unlink(db_path)


def test_unknown_product_is_fatal():
    db_path = _tmp_db()
    try:
        provider = DummyProvider(errors=[ProviderHTTPError(404, "NotFound")])
        req = ImportRequest(name="nope", product="NOPE-EUR", datapoints=600, granularity=60)

        with pytest.raises(ProductNotFoundError) as ei:
            asyncio.run(_run(db_path, provider, req))

        assert ei.value.product == "NOPE-EUR"
        # the second chunk never left the queue
        assert len(provider.calls) == 1
        assert asyncio.run(_total_rows(db_path)) == 0
    finally:
        os.unlink(db_path)


def test_transient_failure_retries_with_swapped_bounds():
    db_path = _tmp_db()
    try:
        provider = DummyProvider(errors=[ProviderTransportError("timeout"), ProviderHTTPError(503, "busy")])
        req = ImportRequest(name="retry", product="BTC-EUR", datapoints=300, granularity=60)
        summary, rows = asyncio.run(_run(db_path, provider, req))

        assert len(provider.calls) == 3
        _, s0, e0, _ = provider.calls[0]
        assert provider.calls[1][1:3] == (e0, s0)
        assert provider.calls[2][1:3] == (s0, e0)
        assert summary.retries == 2
        assert rows == 300
    finally:
        os.unlink(db_path)


def test_swapped_retry_rejected_as_too_large_is_resplit_ascending():
    db_path = _tmp_db()
    try:
        provider = DummyProvider(errors=[OSError("reset"), ProviderHTTPError(400, "bad range")])
        req = ImportRequest(name="swap-split", product="BTC-EUR", datapoints=300, granularity=60)
        summary, rows = asyncio.run(_run(db_path, provider, req))

        assert len(provider.calls) == 4
        for _, s, e, _ in provider.calls[2:]:
            assert s < e
        assert summary.retries == 1 and summary.splits == 1
        assert rows == 300
    finally:
        os.unlink(db_path)


def test_retry_cap_abandons_range_and_still_drains():
    db_path = _tmp_db()
    try:
        provider = DummyProvider(errors=[ProviderTransportError("down")] * 10)
        req = ImportRequest(name="capped", product="BTC-EUR", datapoints=300, granularity=60)
        summary, rows = asyncio.run(_run(db_path, provider, req, retry=RetryPolicy(max_attempts=3)))

        assert len(provider.calls) == 3
        assert summary.abandoned == 1
        assert summary.retries == 2
        assert rows == 0
    finally:
        os.unlink(db_path)


def test_write_failure_is_not_retried():
    db_path = _tmp_db()
    try:
        provider = DummyProvider()
        req = ImportRequest(name="nowrite", product="BTC-EUR", datapoints=300, granularity=60)
        summary, rows = asyncio.run(_run(db_path, provider, req, store_cls=FailingStore))

        assert len(provider.calls) == 1
        assert summary.failed_writes == 1
        assert summary.saved_rows == 0
        assert rows == 0
    finally:
        os.unlink(db_path)


def test_single_bucket_rejected_as_too_large_is_abandoned():
    db_path = _tmp_db()
    try:
        provider = DummyProvider(errors=[ProviderHTTPError(400, "too large")])
        req = ImportRequest(name="tiny", product="BTC-EUR", datapoints=1, granularity=60)
        summary, rows = asyncio.run(_run(db_path, provider, req))

        assert len(provider.calls) == 1
        assert summary.abandoned == 1
        assert rows == 0
    finally:
        os.unlink(db_path)


def test_duplicate_name_aborts_before_scheduling():
    db_path = _tmp_db()
    try:
        provider = DummyProvider()
        req = ImportRequest(name="btc-test", product="BTC-EUR", datapoints=300, granularity=60)
        asyncio.run(_run(db_path, provider, req))
        assert len(provider.calls) == 1

        with pytest.raises(DuplicateNameError):
            asyncio.run(_run(db_path, provider, req))

        assert len(provider.calls) == 1
        assert asyncio.run(_total_rows(db_path)) == 300
    finally:
        os.unlink(db_path)


@pytest.mark.parametrize(
    "req, err",
    [
        (ImportRequest(name="g", product="BTC-EUR", datapoints=300, granularity=120), InvalidGranularityError),
        (ImportRequest(name="d0", product="BTC-EUR", datapoints=0, granularity=60), InvalidDatapointsError),
        (ImportRequest(name="ds", product="BTC-EUR", datapoints="300", granularity=60), InvalidDatapointsError),
        (ImportRequest(name="db", product="BTC-EUR", datapoints=True, granularity=60), InvalidDatapointsError),
        (ImportRequest(name="  ", product="BTC-EUR", datapoints=300, granularity=60), InvalidNameError),
    ],
)
def test_invalid_parameters_create_nothing(req, err):
    db_path = _tmp_db()
    try:
        provider = DummyProvider()

        async def main():
            store = await CandleStore.open(db_path)
            try:
                service = ImportService(provider=provider, store=store, limiter=FAST)
                with pytest.raises(err):
                    await service.start_import(req, now=NOW)
                await store.ensure_schema()
                return await store.list_imports()
            finally:
                await store.close()

        assert asyncio.run(main()) == []
        assert provider.calls == []
    finally:
        os.unlink(db_path)

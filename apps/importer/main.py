# apps/importer/main.py

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from packages.adapters.coinbase.candles import CoinbaseCandleProvider
from packages.backfill.service import ImportRequest, ImportService
from packages.backfill.sqlite_store import CandleStore
from packages.common.config import CPTBConfig, load_cptb_config, normalize_product
from packages.common.datetime_utils import s_to_iso8601_z
from packages.common.errors import (
    ConfigurationError,
    DuplicateNameError,
    ProductNotFoundError,
    StorageError,
)


def _parse_args(argv: Optional[list[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(description="CPTB historical candle importer (run to completion, then exit)")

    # Config sources
    p.add_argument("--provider-path", default="config/provider.yaml", help="Provider yaml path")
    p.add_argument("--limiter-path", default="config/limiter.yaml", help="Limiter yaml path")
    p.add_argument("--importer-path", default="config/importer.yaml", help="Importer defaults yaml path")
    p.add_argument("--data-path", default="config/data.yaml", help="Data yaml path")
    p.add_argument("--db-path", default=None, help="SQLite path override")
    p.add_argument("--log-level", default="INFO", help="loguru level (DEBUG, INFO, ...)")

    sub = p.add_subparsers(dest="command", required=True)

    run = sub.add_parser("run", help="Import historical candles")
    run.add_argument("--name", required=True, help="Unique import name")
    run.add_argument("--product", default=None, help="Product override (e.g. BTC-EUR)")
    run.add_argument("--datapoints", type=int, default=None, help="Total candles to import")
    run.add_argument("--granularity", type=int, default=None, help="Candle width in seconds")

    sub.add_parser("list", help="List stored imports")

    return p.parse_args(argv)


def _configure_logging(level: str) -> None:
    logger.remove()
    logger.add(sys.stderr, level=level.upper())


def _build_request(cfg: CPTBConfig, args: argparse.Namespace) -> ImportRequest:
    product = cfg.importer.product
    if args.product is not None:
        try:
            product = normalize_product(args.product)
        except ValueError as e:
            raise ConfigurationError(str(e)) from e

    return ImportRequest(
        name=args.name,
        product=product,
        datapoints=args.datapoints if args.datapoints is not None else cfg.importer.datapoints,
        granularity=args.granularity if args.granularity is not None else cfg.importer.granularity,
    )


async def _run_import(cfg: CPTBConfig, db_path: Path, args: argparse.Namespace) -> None:
    req = _build_request(cfg, args)
    provider = CoinbaseCandleProvider(
        base_url=cfg.provider.base_url,
        request_timeout_s=cfg.provider.request_timeout_s,
        user_agent=cfg.provider.user_agent,
    )
    store = await CandleStore.open(db_path, dedupe_candles=cfg.data.dedupe_candles)
    try:
        service = ImportService(
            provider=provider,
            store=store,
            limiter=cfg.limiter,
            retry=cfg.importer.retry,
        )
        summary = await service.run_import(req)
        logger.info(
            "Import complete id={} rows={} fetches={} splits={} retries={} abandoned={} failed_writes={}",
            summary.import_id,
            summary.saved_rows,
            summary.fetches,
            summary.splits,
            summary.retries,
            summary.abandoned,
            summary.failed_writes,
        )
    finally:
        await store.close()


async def _list_imports(db_path: Path) -> None:
    store = await CandleStore.open(db_path)
    try:
        await store.ensure_schema()
        jobs = await store.list_imports()
        if not jobs:
            logger.info("No imports in {}", db_path)
            return
        for job in jobs:
            assert job.id is not None
            rows = await store.count_candles(job.id)
            logger.info(
                "id={} name={} product={} datapoints={} granularity={}s created={} candles={}",
                job.id,
                job.name,
                job.product,
                job.datapoints,
                job.granularity_s,
                s_to_iso8601_z(job.created_at_s),
                rows,
            )
    finally:
        await store.close()


async def main_async(argv: Optional[list[str]] = None) -> int:
    args = _parse_args(argv)
    _configure_logging(args.log_level)

    cfg = load_cptb_config(
        provider_path=Path(args.provider_path),
        limiter_path=Path(args.limiter_path),
        importer_path=Path(args.importer_path),
        data_path=Path(args.data_path),
    )
    db_path = Path(args.db_path or cfg.data.db_path)

    try:
        if args.command == "list":
            await _list_imports(db_path)
        else:
            await _run_import(cfg, db_path, args)
    except DuplicateNameError as e:
        logger.error("Import could not be done. Import name already exists: {}", e.name)
        return 1
    except ConfigurationError as e:
        logger.error("Import could not be done: {}", e)
        return 1
    except ProductNotFoundError as e:
        logger.error("Import aborted: {}", e)
        return 1
    except StorageError as e:
        logger.error("Database error: {}", e)
        return 1

    return 0


def main() -> None:
    try:
        code = asyncio.run(main_async())
    except KeyboardInterrupt:
        logger.info("Interrupted.")
        code = 130
    # Run-to-completion batch job: the queue drained (or failed), so exit.
    sys.exit(code)


if __name__ == "__main__":
    main()

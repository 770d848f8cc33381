# apps/importer/tests/test_importer_cli.py

from __future__ import annotations

import asyncio
import sqlite3
import tempfile
from pathlib import Path

from apps.importer.main import _build_request, _parse_args, main_async
from packages.common.config import CPTBConfig


def _args(root: Path, *rest: str) -> list[str]:
    return [
        "--provider-path", str(root / "provider.yaml"),
        "--limiter-path", str(root / "limiter.yaml"),
        "--importer-path", str(root / "importer.yaml"),
        "--data-path", str(root / "data.yaml"),
        "--db-path", str(root / "db.sqlite"),
        *rest,
    ]


def test_list_on_fresh_database_creates_schema():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d)
        assert asyncio.run(main_async(_args(root, "list"))) == 0

        conn = sqlite3.connect(root / "db.sqlite")
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        conn.close()
        assert {"imports", "candles"} <= tables


def test_invalid_granularity_exits_non_zero_without_import():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d)
        code = asyncio.run(main_async(_args(root, "run", "--name", "x", "--granularity", "120")))
        assert code == 1

        conn = sqlite3.connect(root / "db.sqlite")
        tables = {r[0] for r in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")}
        rows = conn.execute("SELECT COUNT(*) FROM imports").fetchone()[0] if "imports" in tables else 0
        conn.close()
        assert rows == 0


def test_product_flag_is_normalized_like_the_config_default():
    args = _parse_args(["run", "--name", "x", "--product", " btc-eur "])
    req = _build_request(CPTBConfig(), args)
    assert req.product == "BTC-EUR"

    req = _build_request(CPTBConfig(), _parse_args(["run", "--name", "x"]))
    assert req.product == CPTBConfig().importer.product


def test_malformed_product_flag_exits_non_zero_before_touching_the_database():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d)
        code = asyncio.run(main_async(_args(root, "run", "--name", "x", "--product", "btceur")))
        assert code == 1
        assert not (root / "db.sqlite").exists()

from __future__ import annotations

import asyncio
import sqlite3
from dataclasses import dataclass, field
from pathlib import Path
from typing import List, Optional, Sequence

import aiosqlite
from loguru import logger

from packages.common.errors import DuplicateNameError, StorageError
from packages.backfill.types import Candle, ImportJob


SCHEMA_SQL = """
CREATE TABLE IF NOT EXISTS imports (
  id INTEGER PRIMARY KEY,
  name TEXT UNIQUE,
  product TEXT,
  datapoints INTEGER,
  granularity INTEGER,
  timestamp INTEGER
);

CREATE TABLE IF NOT EXISTS candles (
  id INTEGER PRIMARY KEY,
  importId INTEGER NOT NULL,
  product TEXT,
  timestamp INTEGER,
  low REAL,
  high REAL,
  open REAL,
  close REAL,
  volume REAL
);

CREATE INDEX IF NOT EXISTS idx_candles_import_ts
  ON candles (importId, product, timestamp);
"""

# Opt-in exactly-once storage for candle rows.
DEDUPE_SQL = """
CREATE UNIQUE INDEX IF NOT EXISTS uq_candles_import_product_ts
  ON candles (importId, product, timestamp);
"""

INSERT_IMPORT_SQL = """
INSERT INTO imports (name, product, datapoints, granularity, timestamp)
VALUES (?, ?, ?, ?, ?)
"""

INSERT_CANDLE_SQL = """
INSERT INTO candles (importId, product, timestamp, low, high, open, close, volume)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""

INSERT_CANDLE_IGNORE_SQL = """
INSERT OR IGNORE INTO candles (importId, product, timestamp, low, high, open, close, volume)
VALUES (?, ?, ?, ?, ?, ?, ?, ?)
"""


def _is_name_conflict(e: sqlite3.IntegrityError) -> bool:
    return "imports.name" in str(e)


def _row_to_job(row: Sequence) -> ImportJob:
    return ImportJob(
        id=int(row[0]),
        name=str(row[1]),
        product=str(row[2]),
        datapoints=int(row[3]),
        granularity_s=int(row[4]),
        created_at_s=int(row[5]),
    )


@dataclass
class CandleStore:
    db_path: Path
    conn: aiosqlite.Connection
    dedupe_candles: bool = False
    # One writer at a time so a rollback never discards another batch.
    _write_lock: asyncio.Lock = field(default_factory=asyncio.Lock, repr=False)

    @classmethod
    async def open(cls, db_path: Path, *, dedupe_candles: bool = False) -> "CandleStore":
        try:
            db_path.parent.mkdir(parents=True, exist_ok=True)
            conn = await aiosqlite.connect(str(db_path))
        except (OSError, sqlite3.Error) as e:
            raise StorageError(f"Could not connect to database {db_path}: {e}") from e
        logger.info("Connected to database {}", db_path)
        return cls(db_path=db_path, conn=conn, dedupe_candles=dedupe_candles)

    async def close(self) -> None:
        await self.conn.close()
        logger.info("CandleStore closed")

    async def ensure_schema(self) -> None:
        try:
            await self.conn.executescript(SCHEMA_SQL)
            if self.dedupe_candles:
                await self.conn.executescript(DEDUPE_SQL)
            await self.conn.commit()
        except sqlite3.Error as e:
            raise StorageError(f"Schema setup failed: {e}") from e

    async def create_import(self, job: ImportJob) -> int:
        try:
            cur = await self.conn.execute(
                INSERT_IMPORT_SQL,
                (job.name, job.product, int(job.datapoints), int(job.granularity_s), int(job.created_at_s)),
            )
            await self.conn.commit()
        except sqlite3.IntegrityError as e:
            await self._rollback_quietly("import insert")
            if _is_name_conflict(e):
                raise DuplicateNameError(job.name) from e
            raise StorageError(f"Could not create import {job.name!r}: {e}") from e
        except sqlite3.Error as e:
            await self._rollback_quietly("import insert")
            raise StorageError(f"Could not create import {job.name!r}: {e}") from e

        import_id = cur.lastrowid
        if import_id is None:
            raise StorageError(f"No id returned for import {job.name!r}")
        return int(import_id)

    async def save_candles(self, import_id: int, product: str, rows: List[Candle]) -> int:
        """
        Insert one fetched batch in a single transaction and return the number
        of rows actually stored, which excludes rows skipped by dedupe. A
        failure rolls the whole batch back and is raised to the caller.
        """
        if not rows:
            return 0

        params = [
            (int(import_id), product, int(c.ts_s), float(c.low), float(c.high), float(c.open), float(c.close), float(c.volume))
            for c in rows
        ]
        sql = INSERT_CANDLE_IGNORE_SQL if self.dedupe_candles else INSERT_CANDLE_SQL
        async with self._write_lock:
            try:
                before = self.conn.total_changes
                await self.conn.executemany(sql, params)
                await self.conn.commit()
                stored = self.conn.total_changes - before
            except sqlite3.Error as e:
                await self._rollback_quietly("candle insert")
                raise StorageError(f"Could not save {len(rows)} candles for import {import_id}: {e}") from e
        return stored

    async def _rollback_quietly(self, what: str) -> None:
        try:
            await self.conn.rollback()
        except sqlite3.Error:
            logger.exception("Rollback failed after {} error", what)

    async def get_import(self, name: str) -> Optional[ImportJob]:
        try:
            async with self.conn.execute(
                "SELECT id, name, product, datapoints, granularity, timestamp FROM imports WHERE name=?",
                (name,),
            ) as cur:
                row = await cur.fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Could not read import {name!r}: {e}") from e
        return _row_to_job(row) if row else None

    async def list_imports(self) -> List[ImportJob]:
        try:
            async with self.conn.execute(
                "SELECT id, name, product, datapoints, granularity, timestamp FROM imports ORDER BY id"
            ) as cur:
                rows = await cur.fetchall()
        except sqlite3.Error as e:
            raise StorageError(f"Could not list imports: {e}") from e
        return [_row_to_job(r) for r in rows]

    async def count_candles(self, import_id: int) -> int:
        try:
            async with self.conn.execute("SELECT COUNT(*) FROM candles WHERE importId=?", (int(import_id),)) as cur:
                row = await cur.fetchone()
        except sqlite3.Error as e:
            raise StorageError(f"Could not count candles for import {import_id}: {e}") from e
        return int(row[0]) if row else 0

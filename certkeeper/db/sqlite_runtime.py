#!/usr/bin/env python3
#
# certkeeper/db/sqlite_runtime.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SQLite runtime helpers: adapters, connections, and transactions."""

from __future__ import annotations

import logging
import sqlite3
import time
from contextlib import asynccontextmanager, contextmanager
from datetime import datetime, timezone
from pathlib import Path
from typing import AsyncIterator

import aiosqlite

_log = logging.getLogger(__name__)

_BUSY_TIMEOUT_SECONDS = 30.0


def _adapt_datetime(value: datetime) -> str:
	if value.tzinfo is None:
		raise ValueError("Naive datetime not allowed in SQLite")
	return value.astimezone(timezone.utc).isoformat(timespec="microseconds").replace("+00:00", "Z")


def _convert_datetime(value: bytes) -> datetime:
	s = value.decode("utf-8")
	if s.endswith("Z"):
		s = s[:-1] + "+00:00"
	try:
		dt = datetime.fromisoformat(s)
		if dt.tzinfo is None:
			dt = dt.replace(tzinfo=timezone.utc)
		return dt.astimezone(timezone.utc)
	except ValueError:
		_log.error(
			"Corrupt timestamp in database: %r - returning epoch",
			value.decode("utf-8", errors="replace"),
		)
		return datetime(1970, 1, 1, tzinfo=timezone.utc)


# NOTE: sqlite3 adapter/converter registration is process-global and also
# applies to aiosqlite connections, which wrap sqlite3 in a worker thread.
sqlite3.register_adapter(datetime, _adapt_datetime)
sqlite3.register_converter("timestamp", _convert_datetime)


def connect(db_path: Path) -> sqlite3.Connection:
	"""Create a blocking SQLite connection (startup and maintenance only).

	Retries WAL mode activation if another worker holds the database lock.
	"""
	db_path.parent.mkdir(parents=True, exist_ok=True)
	conn = sqlite3.connect(
		str(db_path),
		detect_types=sqlite3.PARSE_DECLTYPES,
		check_same_thread=False,
		timeout=_BUSY_TIMEOUT_SECONDS,
	)
	conn.row_factory = sqlite3.Row

	max_retries = 5
	for attempt in range(max_retries):
		try:
			current_mode = conn.execute("PRAGMA journal_mode").fetchone()[0].upper()
			if current_mode != "WAL":
				conn.execute("PRAGMA journal_mode=WAL")
				_log.debug("Enabled WAL mode for database")
			break
		except sqlite3.OperationalError as e:
			if "locked" in str(e).lower() and attempt < max_retries - 1:
				wait = 0.1 * (2 ** attempt)
				_log.debug(
					"Database locked during WAL activation (attempt %d/%d), retrying in %.1fs",
					attempt + 1,
					max_retries,
					wait,
				)
				time.sleep(wait)
			else:
				conn.close()
				raise

	return conn


@asynccontextmanager
async def connect_async(db_path: Path) -> AsyncIterator[aiosqlite.Connection]:
	"""Open a short-lived aiosqlite connection for one store operation."""
	async with aiosqlite.connect(
		str(db_path),
		detect_types=sqlite3.PARSE_DECLTYPES,
		timeout=_BUSY_TIMEOUT_SECONDS,
	) as db:
		db.row_factory = aiosqlite.Row
		yield db


@contextmanager
def transaction(conn: sqlite3.Connection, *, immediate: bool = False):
	"""Transaction context manager that commits or rolls back on error.

	Nested use is a no-op; the outermost transaction controls commit.
	"""
	started_tx = False
	if not conn.in_transaction:
		conn.execute("BEGIN IMMEDIATE" if immediate else "BEGIN")
		started_tx = True
	try:
		yield
		if started_tx:
			conn.commit()
	except Exception:
		if started_tx and conn.in_transaction:
			conn.rollback()
		raise


def checkpoint_wal(db_path: Path, mode: str = "TRUNCATE") -> dict[str, int | str]:
	"""Run a WAL checkpoint using a dedicated short-lived connection.

	Returns SQLite's ``wal_checkpoint`` counters; -1 marks a failed run.
	"""
	mode_upper = mode.strip().upper()
	if mode_upper not in {"PASSIVE", "FULL", "RESTART", "TRUNCATE"}:
		mode_upper = "TRUNCATE"

	result: dict[str, int | str] = {
		"mode": mode_upper,
		"busy": -1,
		"log_frames": -1,
		"checkpointed_frames": -1,
	}
	conn: sqlite3.Connection | None = None
	try:
		conn = sqlite3.connect(str(db_path), timeout=_BUSY_TIMEOUT_SECONDS)
		row = conn.execute(f"PRAGMA wal_checkpoint({mode_upper})").fetchone()
		if row:
			result.update(busy=int(row[0]), log_frames=int(row[1]), checkpointed_frames=int(row[2]))
	except sqlite3.Error as e:
		_log.warning("WAL checkpoint failed (%s): %s", mode_upper, e)
	finally:
		if conn is not None:
			conn.close()
	return result

#!/usr/bin/env python3
#
# certkeeper/db/sqlite_schema.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SQLite schema initialization."""

from __future__ import annotations

import logging
import sqlite3
from pathlib import Path

from .sqlite_runtime import connect, transaction

_log = logging.getLogger(__name__)


def init_schema(conn: sqlite3.Connection) -> None:
	"""Create the required database schema (idempotent)."""
	with transaction(conn):
		# Outstanding HTTP-01 challenges; rows live for one challenge only
		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS key_authorization_tokens (
				token TEXT PRIMARY KEY,
				authorization_token TEXT NOT NULL,
				created_at timestamp NOT NULL
			)
			"""
		)
		conn.execute(
			"CREATE INDEX IF NOT EXISTS idx_key_authorization_tokens_created_at "
			"ON key_authorization_tokens(created_at)"
		)

		conn.execute(
			"""
			CREATE TABLE IF NOT EXISTS domain_ssl_details (
				domain TEXT PRIMARY KEY,
				creation_date timestamp NOT NULL
			)
			"""
		)


def init_database(db_path: Path) -> None:
	"""Open the database once, create the schema and close it again."""
	conn = connect(db_path)
	try:
		init_schema(conn)
	finally:
		conn.close()
	_log.debug("Database schema ready at %s", db_path)

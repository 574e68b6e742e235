#!/usr/bin/env python3
#
# certkeeper/db/token_store.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Persistence for challenge tokens and per-domain certificate metadata.

The solver reads tokens on the request path of the certificate authority's
validation probe, so every operation opens its own short-lived connection.
With WAL enabled, readers never wait for a writer working on another token.
Every write is committed before the coroutine returns; a caller that awaits
``put_token`` can rely on the next ``get_authorization`` observing it.
"""

from __future__ import annotations

import logging
import sqlite3
from datetime import datetime
from pathlib import Path
from typing import Optional, Protocol

from ..errors import LocalPersistenceError
from ..models.ssl import DomainSSLDetails, KeyAuthorizationToken
from ..utils.time import ensure_utc, utcnow
from .sqlite_runtime import connect_async

_log = logging.getLogger(__name__)

__all__ = ["TokenStore", "SQLiteTokenStore"]


class TokenStore(Protocol):
	"""Storage contract consumed by the issuance flow and the solver."""

	async def put_token(self, token: str, authorization_token: str) -> None: ...

	async def get_authorization(self, token: str) -> Optional[str]: ...

	async def delete_token(self, token: str) -> bool: ...

	async def upsert_domain_record(self, domain: str, creation_date: datetime) -> None: ...

	async def get_domain_record(self, domain: str) -> Optional[DomainSSLDetails]: ...


class SQLiteTokenStore:
	"""TokenStore backed by the application's SQLite database."""

	def __init__(self, db_path: Path) -> None:
		self.db_path = db_path

	# -----------------------------------------------------------------------
	# Challenge tokens
	# -----------------------------------------------------------------------

	async def put_token(self, token: str, authorization_token: str) -> None:
		"""Insert or replace the authorization value for ``token``."""
		try:
			async with connect_async(self.db_path) as db:
				await db.execute(
					"""
					INSERT INTO key_authorization_tokens (token, authorization_token, created_at)
					VALUES (?, ?, ?)
					ON CONFLICT(token) DO UPDATE SET
						authorization_token = excluded.authorization_token,
						created_at = excluded.created_at
					""",
					(token, authorization_token, utcnow()),
				)
				await db.commit()
		except sqlite3.Error as exc:
			raise LocalPersistenceError(f"Failed to store challenge token: {exc}") from exc

	async def get_token(self, token: str) -> Optional[KeyAuthorizationToken]:
		try:
			async with connect_async(self.db_path) as db:
				async with db.execute(
					"SELECT token, authorization_token, created_at FROM key_authorization_tokens WHERE token = ?",
					(token,),
				) as cur:
					row = await cur.fetchone()
		except sqlite3.Error as exc:
			raise LocalPersistenceError(f"Failed to read challenge token: {exc}") from exc
		if row is None:
			return None
		return KeyAuthorizationToken(
			token=row["token"],
			authorization_token=row["authorization_token"],
			created_at=row["created_at"],
		)

	async def get_authorization(self, token: str) -> Optional[str]:
		"""Return the stored authorization value, or None if unknown."""
		record = await self.get_token(token)
		return record.authorization_token if record else None

	async def delete_token(self, token: str) -> bool:
		"""Remove a token; returns False if it was already gone."""
		try:
			async with connect_async(self.db_path) as db:
				cur = await db.execute(
					"DELETE FROM key_authorization_tokens WHERE token = ?",
					(token,),
				)
				await db.commit()
				return cur.rowcount > 0
		except sqlite3.Error as exc:
			raise LocalPersistenceError(f"Failed to delete challenge token: {exc}") from exc

	async def purge_stale_tokens(self, older_than: datetime) -> int:
		"""Delete tokens created before ``older_than`` (orphans left by crashes)."""
		cutoff = ensure_utc(older_than)
		try:
			async with connect_async(self.db_path) as db:
				cur = await db.execute(
					"DELETE FROM key_authorization_tokens WHERE created_at < ?",
					(cutoff,),
				)
				await db.commit()
				removed = cur.rowcount
		except sqlite3.Error as exc:
			raise LocalPersistenceError(f"Failed to purge challenge tokens: {exc}") from exc
		if removed:
			_log.info("TOKEN_PURGE removed=%d cutoff=%s", removed, cutoff.isoformat())
		return removed

	# -----------------------------------------------------------------------
	# Domain records
	# -----------------------------------------------------------------------

	async def upsert_domain_record(self, domain: str, creation_date: datetime) -> None:
		"""Record a successful issuance; renewals overwrite the creation date."""
		try:
			async with connect_async(self.db_path) as db:
				await db.execute(
					"""
					INSERT INTO domain_ssl_details (domain, creation_date) VALUES (?, ?)
					ON CONFLICT(domain) DO UPDATE SET creation_date = excluded.creation_date
					""",
					(domain, ensure_utc(creation_date)),
				)
				await db.commit()
		except sqlite3.Error as exc:
			raise LocalPersistenceError(
				f"Failed to record issuance: {exc}", domain=domain,
			) from exc

	async def get_domain_record(self, domain: str) -> Optional[DomainSSLDetails]:
		try:
			async with connect_async(self.db_path) as db:
				async with db.execute(
					"SELECT domain, creation_date FROM domain_ssl_details WHERE domain = ?",
					(domain,),
				) as cur:
					row = await cur.fetchone()
		except sqlite3.Error as exc:
			raise LocalPersistenceError(f"Failed to read domain record: {exc}", domain=domain) from exc
		if row is None:
			return None
		return DomainSSLDetails(domain=row["domain"], creation_date=row["creation_date"])

	async def list_domain_records(self) -> list[DomainSSLDetails]:
		try:
			async with connect_async(self.db_path) as db:
				async with db.execute(
					"SELECT domain, creation_date FROM domain_ssl_details ORDER BY domain"
				) as cur:
					rows = await cur.fetchall()
		except sqlite3.Error as exc:
			raise LocalPersistenceError(f"Failed to list domain records: {exc}") from exc
		return [DomainSSLDetails(domain=r["domain"], creation_date=r["creation_date"]) for r in rows]

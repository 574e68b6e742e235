#!/usr/bin/env python3
#
# tests/test_token_store.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from certkeeper.db.token_store import SQLiteTokenStore
from certkeeper.errors import LocalPersistenceError
from certkeeper.utils.time import utcnow


@pytest.mark.anyio
async def test_put_then_get_is_visible(store: SQLiteTokenStore):
	"""A completed put is observed by the very next read"""
	await store.put_token("tok-1", "tok-1.thumb")
	assert await store.get_authorization("tok-1") == "tok-1.thumb"


@pytest.mark.anyio
async def test_put_token_is_idempotent_upsert(store: SQLiteTokenStore):
	await store.put_token("tok-1", "first")
	await store.put_token("tok-1", "second")

	record = await store.get_token("tok-1")
	assert record is not None
	assert record.authorization_token == "second"
	assert record.created_at.tzinfo is not None


@pytest.mark.anyio
async def test_unknown_token_is_none(store: SQLiteTokenStore):
	assert await store.get_authorization("never-stored") is None
	assert await store.get_token("never-stored") is None


@pytest.mark.anyio
async def test_delete_token(store: SQLiteTokenStore):
	await store.put_token("tok-1", "value")

	assert await store.delete_token("tok-1") is True
	assert await store.get_authorization("tok-1") is None
	# Second delete is a no-op
	assert await store.delete_token("tok-1") is False


@pytest.mark.anyio
async def test_tokens_are_independent(store: SQLiteTokenStore):
	await store.put_token("a", "a.value")
	await store.put_token("b", "b.value")
	await store.delete_token("a")

	assert await store.get_authorization("a") is None
	assert await store.get_authorization("b") == "b.value"


@pytest.mark.anyio
async def test_domain_record_upsert_keeps_one_row(store: SQLiteTokenStore):
	first = datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc)
	second = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)

	await store.upsert_domain_record("example.com", first)
	await store.upsert_domain_record("example.com", second)

	record = await store.get_domain_record("example.com")
	assert record is not None
	assert record.creation_date == second
	assert [r.domain for r in await store.list_domain_records()] == ["example.com"]


@pytest.mark.anyio
async def test_domain_record_missing(store: SQLiteTokenStore):
	assert await store.get_domain_record("example.org") is None
	assert await store.list_domain_records() == []


@pytest.mark.anyio
async def test_list_domain_records_sorted(store: SQLiteTokenStore):
	now = utcnow()
	for domain in ("b.example.com", "a.example.com", "c.example.com"):
		await store.upsert_domain_record(domain, now)

	assert [r.domain for r in await store.list_domain_records()] == [
		"a.example.com",
		"b.example.com",
		"c.example.com",
	]


@pytest.mark.anyio
async def test_upsert_rejects_naive_datetime(store: SQLiteTokenStore):
	with pytest.raises(ValueError):
		await store.upsert_domain_record("example.com", datetime(2026, 1, 1))


@pytest.mark.anyio
async def test_purge_stale_tokens(store: SQLiteTokenStore):
	await store.put_token("old", "old.value")
	await store.put_token("new", "new.value")

	assert await store.purge_stale_tokens(utcnow() - timedelta(hours=1)) == 0
	assert await store.get_authorization("old") == "old.value"

	assert await store.purge_stale_tokens(utcnow() + timedelta(seconds=1)) == 2
	assert await store.get_authorization("old") is None
	assert await store.get_authorization("new") is None


@pytest.mark.anyio
async def test_missing_schema_raises_persistence_error(tmp_path):
	store = SQLiteTokenStore(tmp_path / "empty.db")

	with pytest.raises(LocalPersistenceError):
		await store.put_token("tok", "value")
	with pytest.raises(LocalPersistenceError):
		await store.get_authorization("tok")

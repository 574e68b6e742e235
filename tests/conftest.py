#!/usr/bin/env python3
#
# tests/conftest.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

from __future__ import annotations

import httpx
import pytest

from certkeeper.acme.client import ACMEClient
from certkeeper.acme.solver import HTTP01Solver
from certkeeper.certs.keystore import KeyStore
from certkeeper.certs.manager import CertificateManager
from certkeeper.db.sqlite_schema import init_database
from certkeeper.db.token_store import SQLiteTokenStore
from certkeeper.utils.config import Config
from certkeeper.utils.rate_limit import limiter
from tests.fake_acme import DIRECTORY_URL, FakeACME, solver_probe

ADMIN_TOKEN = "test-admin-token"


@pytest.fixture
def anyio_backend():
	"""async backends to test against
	see: https://anyio.readthedocs.io/en/stable/testing.html"""
	return "asyncio"


@pytest.fixture(autouse=True)
def _reset_rate_limits():
	limiter.reset()
	yield


@pytest.fixture
def cfg(tmp_path) -> Config:
	data_dir = tmp_path / "data"
	return Config(
		email="hostmaster@example.com",
		account_key_path=tmp_path / "account" / "account.key",
		domain_key_dir=tmp_path / "certs" / "private",
		fullchain_dir=tmp_path / "certs" / "fullchain",
		data_dir=data_dir,
		db_path=data_dir / "certkeeper.db",
		acme_directory=DIRECTORY_URL,
		admin_token=ADMIN_TOKEN,
		renewal_days=30,
		validation_timeout=5.0,
	)


@pytest.fixture
def store(cfg: Config) -> SQLiteTokenStore:
	init_database(cfg.db_path)
	return SQLiteTokenStore(cfg.db_path)


@pytest.fixture
def keystore(cfg: Config) -> KeyStore:
	return KeyStore(cfg.domain_key_dir, cfg.fullchain_dir)


@pytest.fixture
def solver(store: SQLiteTokenStore) -> HTTP01Solver:
	return HTTP01Solver(store)


@pytest.fixture
def fake_ca(solver: HTTP01Solver) -> FakeACME:
	return FakeACME(probe=solver_probe(solver))


@pytest.fixture
async def acme_client(cfg: Config, fake_ca: FakeACME):
	async with httpx.AsyncClient(transport=fake_ca.transport) as http:
		client = ACMEClient(cfg.acme_directory, cfg.account_key_path, cfg.email, http_client=http)
		yield client
		await client.aclose()


@pytest.fixture
def manager(cfg: Config, acme_client: ACMEClient, store: SQLiteTokenStore, keystore: KeyStore) -> CertificateManager:
	return CertificateManager(
		acme_client,
		store,
		keystore,
		cfg.lock_dir,
		validation_timeout=cfg.validation_timeout,
		poll_interval=0.01,
		retry_backoff=0.0,
	)

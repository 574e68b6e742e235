#!/usr/bin/env python3
#
# tests/test_solver.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

from __future__ import annotations

import httpx
import pytest
from fastapi import FastAPI

from certkeeper.acme.solver import HTTP01Solver
from certkeeper.api import challenge as challenge_api
from certkeeper.db.token_store import SQLiteTokenStore
from certkeeper.errors import LocalPersistenceError


@pytest.fixture
def challenge_app(solver: HTTP01Solver) -> FastAPI:
	app = FastAPI()
	app.state.solver = solver
	app.include_router(challenge_api.router)
	return app


@pytest.fixture
async def http(challenge_app: FastAPI):
	transport = httpx.ASGITransport(app=challenge_app)
	async with httpx.AsyncClient(transport=transport, base_url="http://example.com") as client:
		yield client


@pytest.mark.anyio
async def test_solver_hit(store: SQLiteTokenStore, solver: HTTP01Solver):
	await store.put_token("abc_DEF-123", "abc_DEF-123.thumb")
	assert await solver.key_authorization("abc_DEF-123") == "abc_DEF-123.thumb"


@pytest.mark.anyio
@pytest.mark.parametrize("token", ["unknown", "bad token", "../../etc/passwd", "x" * 300, ""])
async def test_solver_miss(solver: HTTP01Solver, token: str):
	assert await solver.key_authorization(token) is None


@pytest.mark.anyio
async def test_route_serves_key_authorization(store: SQLiteTokenStore, http: httpx.AsyncClient):
	await store.put_token("tok123", "tok123.thumbprint")

	resp = await http.get("/.well-known/acme-challenge/tok123")
	assert resp.status_code == 200
	assert resp.headers["content-type"].startswith("text/plain")
	assert resp.text == "tok123.thumbprint"


@pytest.mark.anyio
async def test_route_unknown_token_is_404(http: httpx.AsyncClient):
	resp = await http.get("/.well-known/acme-challenge/not-stored")
	assert resp.status_code == 404
	assert "not-stored" not in resp.text


@pytest.mark.anyio
async def test_route_malformed_token_is_404(http: httpx.AsyncClient):
	resp = await http.get("/.well-known/acme-challenge/bad%20token")
	assert resp.status_code == 404


@pytest.mark.anyio
async def test_route_after_delete_is_404(store: SQLiteTokenStore, http: httpx.AsyncClient):
	await store.put_token("tok123", "tok123.thumbprint")
	await store.delete_token("tok123")

	resp = await http.get("/.well-known/acme-challenge/tok123")
	assert resp.status_code == 404


@pytest.mark.anyio
async def test_route_store_failure_is_503(challenge_app: FastAPI, http: httpx.AsyncClient):
	class BrokenStore:
		async def get_authorization(self, token):
			raise LocalPersistenceError("disk gone")

	challenge_app.state.solver = HTTP01Solver(BrokenStore())

	resp = await http.get("/.well-known/acme-challenge/tok123")
	assert resp.status_code == 503

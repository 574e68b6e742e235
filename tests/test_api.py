#!/usr/bin/env python3
#
# tests/test_api.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

from __future__ import annotations

import dataclasses
from datetime import timedelta

import httpx
import pytest

from certkeeper.certs.locks import DomainLock
from certkeeper.main import build_services, create_app
from certkeeper.utils.config import Config
from tests.conftest import ADMIN_TOKEN
from tests.fake_acme import FakeACME, asgi_probe

AUTH = {"Authorization": f"Bearer {ADMIN_TOKEN}"}


@dataclasses.dataclass
class Harness:
	app: object
	ca: FakeACME
	client: httpx.AsyncClient


async def _harness(cfg: Config):
	app = create_app(cfg)
	# The fake authority validates through the real challenge route
	ca = FakeACME(probe=asgi_probe(app))
	async with httpx.AsyncClient(transport=ca.transport) as acme_http:
		build_services(app, cfg, http_client=acme_http)
		app.state.manager.poll_interval = 0.01
		app.state.manager.retry_backoff = 0.0
		transport = httpx.ASGITransport(app=app)
		async with httpx.AsyncClient(transport=transport, base_url="http://testserver") as client:
			yield Harness(app, ca, client)


@pytest.fixture
async def api(cfg: Config):
	async for harness in _harness(cfg):
		yield harness


@pytest.mark.anyio
@pytest.mark.parametrize("headers", [{}, {"Authorization": "Bearer wrong"}, {"Authorization": "Basic abc"}])
async def test_admin_requires_token(api: Harness, headers: dict):
	resp = await api.client.get("/api/certificates", headers=headers)
	assert resp.status_code == 401


@pytest.mark.anyio
async def test_admin_disabled_without_token(cfg: Config):
	async for harness in _harness(dataclasses.replace(cfg, admin_token="")):
		resp = await harness.client.get("/api/certificates", headers=AUTH)
		assert resp.status_code == 403


@pytest.mark.anyio
async def test_challenge_route_is_public(api: Harness):
	await api.app.state.store.put_token("tok123", "tok123.thumb")

	resp = await api.client.get("/.well-known/acme-challenge/tok123")
	assert resp.status_code == 200
	assert resp.text == "tok123.thumb"


@pytest.mark.anyio
async def test_issue_then_inspect(api: Harness):
	resp = await api.client.post("/api/certificates/issue", json={"domain": "Example.com"}, headers=AUTH)
	assert resp.status_code == 200, resp.text
	body = resp.json()
	assert body["status"] == "ok"
	assert body["data"]["domain"] == "example.com"
	assert body["data"]["chain_path"].endswith("example.com.crt")
	assert body["data"]["attempts"] == 1

	resp = await api.client.get("/api/certificates", headers=AUTH)
	[info] = resp.json()["data"]
	assert info["domain"] == "example.com"
	assert info["exists"] is True
	assert info["needs_renewal"] is False
	assert info["issuer"] == "Fake ACME Test CA"
	assert 88 <= info["days_until_expiry"] <= 90

	resp = await api.client.get("/api/certificates/example.com", headers=AUTH)
	assert resp.status_code == 200
	assert resp.json()["data"]["serial"] == format(api.ca.issued[-1].serial_number, "x")


@pytest.mark.anyio
async def test_unknown_certificate_is_404(api: Harness):
	resp = await api.client.get("/api/certificates/example.org", headers=AUTH)
	assert resp.status_code == 404


@pytest.mark.anyio
@pytest.mark.parametrize("domain", ["", "bad domain", "-x.example.com", "a" * 254])
async def test_issue_invalid_domain(api: Harness, domain: str):
	resp = await api.client.post("/api/certificates/issue", json={"domain": domain}, headers=AUTH)
	assert resp.status_code == 422
	assert api.ca.calls == []


@pytest.mark.anyio
async def test_issue_validation_failure_is_422(api: Harness):
	api.ca.probe_token = "unstoredtoken"

	resp = await api.client.post("/api/certificates/issue", json={"domain": "example.com"}, headers=AUTH)
	assert resp.status_code == 422
	assert "unstoredtoken" in resp.json()["detail"]
	assert await api.app.state.store.get_domain_record("example.com") is None


@pytest.mark.anyio
async def test_issue_authority_down_is_503(api: Harness):
	for _ in range(3):
		api.ca.inject("new-order", 503, "serverInternal", retry_after="0")

	resp = await api.client.post("/api/certificates/issue", json={"domain": "example.com"}, headers=AUTH)
	assert resp.status_code == 503


@pytest.mark.anyio
async def test_issue_while_locked_is_409(api: Harness, cfg: Config):
	with DomainLock(cfg.lock_dir, "example.com"):
		resp = await api.client.post("/api/certificates/issue", json={"domain": "example.com"}, headers=AUTH)
	assert resp.status_code == 409


@pytest.mark.anyio
async def test_renew_respects_threshold_unless_forced(api: Harness):
	await api.client.post("/api/certificates/issue", json={"domain": "example.com"}, headers=AUTH)
	issued = len(api.ca.issued)

	resp = await api.client.post("/api/certificates/example.com/renew", headers=AUTH)
	assert resp.status_code == 200
	assert resp.json()["renewed"] is False
	assert len(api.ca.issued) == issued

	resp = await api.client.post("/api/certificates/example.com/renew?force=true", headers=AUTH)
	assert resp.status_code == 200
	assert resp.json()["renewed"] is True
	assert len(api.ca.issued) == issued + 1


@pytest.mark.anyio
async def test_renewal_check(api: Harness):
	api.ca.validity = timedelta(days=5)
	await api.client.post("/api/certificates/issue", json={"domain": "soon.example.com"}, headers=AUTH)
	api.ca.validity = timedelta(days=90)
	await api.client.post("/api/certificates/issue", json={"domain": "later.example.com"}, headers=AUTH)

	resp = await api.client.get("/api/certificates/renewal-check", headers=AUTH)
	assert resp.status_code == 200
	body = resp.json()
	assert body["count"] == 1
	assert body["renewal_days"] == 30
	assert [c["domain"] for c in body["data"]] == ["soon.example.com"]

	resp = await api.client.post("/api/certificates/soon.example.com/renew", headers=AUTH)
	assert resp.json()["renewed"] is True
	resp = await api.client.get("/api/certificates/renewal-check", headers=AUTH)
	assert resp.json()["count"] == 0


@pytest.mark.anyio
async def test_issue_is_rate_limited(api: Harness, cfg: Config):
	with DomainLock(cfg.lock_dir, "example.com"):
		statuses = [
			(await api.client.post("/api/certificates/issue", json={"domain": "example.com"}, headers=AUTH)).status_code
			for _ in range(11)
		]
	assert statuses[:10] == [409] * 10
	assert statuses[10] == 429

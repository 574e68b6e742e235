#!/usr/bin/env python3
#
# certkeeper/utils/deps.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI dependency helpers."""

from __future__ import annotations

import hmac
import logging

from fastapi import Depends, HTTPException, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from ..acme.solver import HTTP01Solver
from ..certs.manager import CertificateManager
from .config import Config

_log = logging.getLogger(__name__)

_bearer = HTTPBearer(auto_error=False)


def get_config(request: Request) -> Config:
	"""Get the application configuration from app state."""
	return request.app.state.cfg


def get_solver(request: Request) -> HTTP01Solver:
	return request.app.state.solver


def get_manager(request: Request) -> CertificateManager:
	return request.app.state.manager


def require_api_token(
	request: Request,
	credentials: HTTPAuthorizationCredentials | None = Depends(_bearer),
	cfg: Config = Depends(get_config),
) -> None:
	"""Enforce the static admin bearer token.

	With no token configured the admin API stays closed.
	"""
	if not cfg.admin_token:
		raise HTTPException(status_code=403, detail="Admin API disabled (no CERTKEEPER_ADMIN_TOKEN set)")
	if credentials is None or not hmac.compare_digest(
		credentials.credentials.encode("utf-8"),
		cfg.admin_token.encode("utf-8"),
	):
		client = request.client.host if request.client else "unknown"
		_log.warning("AUTH_FAILED ip=%s path=%s", client, request.url.path)
		raise HTTPException(
			status_code=401,
			detail="Invalid or missing bearer token",
			headers={"WWW-Authenticate": "Bearer"},
		)

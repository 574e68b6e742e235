#!/usr/bin/env python3
#
# certkeeper/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factory and startup lifecycle wiring."""

from __future__ import annotations

import logging
import sys
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

import httpx
from fastapi import FastAPI
from slowapi import _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded

from .acme.client import ACMEClient
from .acme.solver import HTTP01Solver
from .api import certificates as certificates_api
from .api import challenge as challenge_api
from .certs.keystore import KeyStore
from .certs.manager import CertificateManager
from .db.sqlite_runtime import checkpoint_wal
from .db.sqlite_schema import init_database
from .db.token_store import SQLiteTokenStore
from .tasks.renewal import register_jobs
from .utils.config import Config, load_config
from .utils.rate_limit import limiter
from .utils.scheduler import Scheduler

_log = logging.getLogger(__name__)

# ANSI color codes for log levels (if TTY)
_LOG_COLORS = {
	"DEBUG": "\033[36m",    # Cyan
	"INFO": "\033[32m",     # Green
	"WARNING": "\033[33m",  # Yellow
	"ERROR": "\033[31m",    # Red
	"CRITICAL": "\033[35m", # Magenta
}
_RESET = "\033[0m"
_ACME_HTTP_TIMEOUT_SECONDS = 30.0


class _ColoredFormatter(logging.Formatter):
	"""Custom formatter that adds color to log levels in TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		levelname = orig_levelname
		if levelname in _LOG_COLORS:
			record.levelname = f"{_LOG_COLORS[levelname]}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def _setup_logging(log_level: str) -> None:
	"""Configure unified logging for the entire application."""
	level = getattr(logging, log_level, logging.INFO)
	is_tty = sys.stdout.isatty()

	if is_tty:
		formatter = _ColoredFormatter(
			fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)
	else:
		formatter = logging.Formatter(
			fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
			datefmt="%Y-%m-%d %H:%M:%S",
		)

	# force=True removes any pre-existing handlers (e.g. from uvicorn)
	# so every logger inherits the same format.
	logging.basicConfig(
		level=level,
		handlers=[logging.StreamHandler(sys.stdout)],
		force=True,
	)

	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	# Make sure uvicorn loggers use the root handler & level
	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# Quiet down noisy third-party libraries
	for name in ("httpcore", "httpx", "aiosqlite"):
		logging.getLogger(name).setLevel(logging.WARNING)


def build_services(
	app: FastAPI,
	cfg: Config,
	*,
	http_client: Optional[httpx.AsyncClient] = None,
) -> None:
	"""Construct the certificate services once and attach them to ``app.state``.

	``http_client`` is handed to the ACME client as-is; when omitted the
	client opens (and later closes) its own.
	"""
	init_database(cfg.db_path)

	client = ACMEClient(
		cfg.acme_directory,
		cfg.account_key_path,
		cfg.email,
		http_client=http_client,
		timeout=_ACME_HTTP_TIMEOUT_SECONDS,
	)
	store = SQLiteTokenStore(cfg.db_path)
	keystore = KeyStore(cfg.domain_key_dir, cfg.fullchain_dir)

	app.state.acme_client = client
	app.state.store = store
	app.state.keystore = keystore
	app.state.solver = HTTP01Solver(store)
	app.state.manager = CertificateManager(
		client,
		store,
		keystore,
		cfg.lock_dir,
		validation_timeout=cfg.validation_timeout,
	)


@asynccontextmanager
async def _lifespan(app: FastAPI):
	"""Application lifespan manager."""
	cfg: Config = app.state.cfg

	# ─── BOOTSTRAP ───────────────────────────────────────────
	build_services(app, cfg)
	_log.info(
		"ACME directory=%s account_key=%s renewal_days=%d",
		cfg.acme_directory,
		cfg.account_key_path,
		cfg.renewal_days,
	)

	scheduler = Scheduler()
	register_jobs(
		scheduler,
		app.state.manager,
		app.state.store,
		renewal_threshold=timedelta(days=cfg.renewal_days),
	)
	await scheduler.start()
	app.state.scheduler = scheduler

	yield

	# ─── SHUTDOWN ────────────────────────────────────────────
	await scheduler.stop_graceful(timeout=5.0)
	await app.state.acme_client.aclose()

	checkpoint = checkpoint_wal(cfg.db_path, mode="TRUNCATE")
	_log.info(
		"SQLITE_SHUTDOWN checkpoint_mode=%s busy=%s log_frames=%s checkpointed_frames=%s",
		checkpoint.get("mode"),
		checkpoint.get("busy"),
		checkpoint.get("log_frames"),
		checkpoint.get("checkpointed_frames"),
	)
	_log.info("certkeeper shutdown complete")


def create_app(cfg: Config | None = None) -> FastAPI:
	"""Application factory for certkeeper."""
	if cfg is None:
		cfg = load_config()
		_setup_logging(cfg.log_level)

	app = FastAPI(
		title="certkeeper",
		description="ACME certificate lifecycle manager",
		version="0.1.0",
		lifespan=_lifespan,
		docs_url="/api/docs",
		redoc_url="/api/redoc",
	)

	app.state.cfg = cfg

	# Rate limiting
	app.state.limiter = limiter
	app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)

	# ─── ROUTES ──────────────────────────────────────────────
	# The challenge route must stay at the root; the CA probes it on port 80
	app.include_router(challenge_api.router)
	app.include_router(certificates_api.router, prefix="/api/certificates")

	return app

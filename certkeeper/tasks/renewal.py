#!/usr/bin/env python3
#
# certkeeper/tasks/renewal.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Periodic certificate renewal and challenge token cleanup."""

from __future__ import annotations

import logging
from datetime import timedelta

from ..certs.manager import CertificateManager
from ..db.token_store import SQLiteTokenStore
from ..utils.scheduler import Scheduler
from ..utils.time import utcnow

_log = logging.getLogger(__name__)

__all__ = ["TOKEN_TTL", "register_jobs", "cleanup_stale_tokens", "renew_due_certificates"]

# Well beyond any challenge's validation window
TOKEN_TTL = timedelta(hours=1)

RENEWAL_INTERVAL_SECONDS = 43200  # 12 h
TOKEN_CLEANUP_INTERVAL_SECONDS = 3600  # 1 h


async def renew_due_certificates(manager: CertificateManager, threshold: timedelta) -> dict[str, str]:
	"""Renew every recorded domain whose certificate is due."""
	outcomes = await manager.renew_due(threshold)
	for domain, outcome in outcomes.items():
		if outcome.startswith("failed"):
			_log.error("RENEWAL domain=%s %s", domain, outcome)
	return outcomes


async def cleanup_stale_tokens(store: SQLiteTokenStore, ttl: timedelta = TOKEN_TTL) -> int:
	"""Drop challenge tokens orphaned by crashed or cancelled flows."""
	return await store.purge_stale_tokens(utcnow() - ttl)


def register_jobs(
	scheduler: Scheduler,
	manager: CertificateManager,
	store: SQLiteTokenStore,
	renewal_threshold: timedelta,
) -> None:
	"""Attach the certificate jobs to ``scheduler``."""

	async def _renew() -> None:
		await renew_due_certificates(manager, renewal_threshold)

	async def _cleanup() -> None:
		await cleanup_stale_tokens(store)

	scheduler.add(
		"certificate-renewal",
		interval_seconds=RENEWAL_INTERVAL_SECONDS,
		func=_renew,
		run_on_start=True,
		initial_delay=30.0,  # let the solver route come up first
	)
	scheduler.add(
		"token-cleanup",
		interval_seconds=TOKEN_CLEANUP_INTERVAL_SECONDS,
		func=_cleanup,
		run_on_start=True,
		timeout=30.0,
	)

#!/usr/bin/env python3
#
# certkeeper/certs/manager.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate manager: issuance, renewal and the renewal decision."""

from __future__ import annotations

import asyncio
import dataclasses
import logging
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from ..acme.client import ACMEClient
from ..acme.issuance import IssuanceFlow
from ..db.token_store import SQLiteTokenStore
from ..errors import AuthorityUnavailableError, CertkeeperError, ConcurrentOperationError
from ..models.ssl import IssuanceResult, normalize_domain
from ..utils.time import ensure_utc, utcnow
from .keystore import KeyStore
from .locks import DomainLock

_log = logging.getLogger(__name__)

__all__ = ["CertificateManager", "renewal_due"]


def renewal_due(expiry: datetime, now: datetime, threshold: timedelta) -> bool:
	"""True when less than ``threshold`` of validity remains.

	Exactly ``threshold`` remaining is not yet due.
	"""
	return ensure_utc(expiry) - ensure_utc(now) < threshold


class CertificateManager:
	"""Drives issuance flows for domains, one at a time per domain.

	Only errors flagged ``retryable`` are retried, with exponential backoff,
	and each retry starts over from a fresh order.
	"""

	def __init__(
		self,
		client: ACMEClient,
		store: SQLiteTokenStore,
		keystore: KeyStore,
		lock_dir: Path,
		*,
		validation_timeout: float = 120.0,
		poll_interval: float = 1.0,
		max_attempts: int = 3,
		retry_backoff: float = 5.0,
		max_backoff: float = 300.0,
	) -> None:
		if max_attempts < 1:
			raise ValueError(f"max_attempts must be >= 1, got {max_attempts}")
		self.client = client
		self.store = store
		self.keystore = keystore
		self.lock_dir = lock_dir
		self.validation_timeout = validation_timeout
		self.poll_interval = poll_interval
		self.max_attempts = max_attempts
		self.retry_backoff = retry_backoff
		self.max_backoff = max_backoff

	async def issue(self, domain: str) -> IssuanceResult:
		"""Obtain a certificate for ``domain``; re-issuing is always allowed."""
		return await self._obtain(domain, "issue")

	async def renew(self, domain: str) -> IssuanceResult:
		"""Replace the certificate for ``domain`` with a freshly ordered one."""
		return await self._obtain(domain, "renew")

	async def _obtain(self, domain: str, reason: str) -> IssuanceResult:
		domain = normalize_domain(domain)
		lock = DomainLock(self.lock_dir, domain)
		lock.acquire()
		_log.info("CERT_%s domain=%s started", reason.upper(), domain)
		try:
			attempt = 0
			while True:
				attempt += 1
				flow = IssuanceFlow(
					self.client,
					self.store,
					self.keystore,
					domain,
					validation_timeout=self.validation_timeout,
					poll_interval=self.poll_interval,
				)
				try:
					result = await flow.run()
				except CertkeeperError as exc:
					if not exc.retryable or attempt >= self.max_attempts:
						_log.error(
							"CERT_%s domain=%s failed after %d attempt(s): %s",
							reason.upper(), domain, attempt, exc,
						)
						raise
					backoff = min(self.retry_backoff * 2 ** (attempt - 1), self.max_backoff)
					if isinstance(exc, AuthorityUnavailableError) and exc.retry_after:
						backoff = max(backoff, min(exc.retry_after, self.max_backoff))
					_log.warning(
						"CERT_%s domain=%s attempt %d/%d failed, retrying in %.1fs: %s",
						reason.upper(), domain, attempt, self.max_attempts, backoff, exc,
					)
					await asyncio.sleep(backoff)
					continue

				_log.info("CERT_%s domain=%s completed (attempt %d)", reason.upper(), domain, attempt)
				return dataclasses.replace(result, attempts=attempt)
		finally:
			lock.release()

	async def certificate_expiry(self, domain: str) -> Optional[datetime]:
		"""``notAfter`` of the stored leaf certificate, or None."""
		return await asyncio.to_thread(self.keystore.certificate_expiry, normalize_domain(domain))

	async def needs_renewal(
		self,
		domain: str,
		threshold: timedelta,
		now: Optional[datetime] = None,
	) -> bool:
		"""Whether ``domain`` should be (re-)issued now.

		A domain never issued, or whose chain is missing or unreadable, is
		always due.
		"""
		domain = normalize_domain(domain)
		if await self.store.get_domain_record(domain) is None:
			return True
		expiry = await asyncio.to_thread(self.keystore.certificate_expiry, domain)
		if expiry is None:
			return True
		return renewal_due(expiry, now or utcnow(), threshold)

	async def renew_due(self, threshold: timedelta) -> dict[str, str]:
		"""Renew every recorded domain that is due; returns an outcome per domain.

		A failure for one domain is reported and does not stop the sweep.
		"""
		outcomes: dict[str, str] = {}
		for record in await self.store.list_domain_records():
			domain = record.domain
			try:
				if not await self.needs_renewal(domain, threshold):
					outcomes[domain] = "not_due"
					continue
				await self.renew(domain)
				outcomes[domain] = "renewed"
			except ConcurrentOperationError:
				outcomes[domain] = "in_progress"
			except (CertkeeperError, ValueError) as exc:
				outcomes[domain] = f"failed: {exc}"
		_log.info(
			"RENEWAL_SWEEP domains=%d renewed=%d failed=%d",
			len(outcomes),
			sum(1 for o in outcomes.values() if o == "renewed"),
			sum(1 for o in outcomes.values() if o.startswith("failed")),
		)
		return outcomes

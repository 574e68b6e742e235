#!/usr/bin/env python3
#
# certkeeper/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Typed failures surfaced by issuance and renewal.

Callers decide retry policy from ``retryable`` alone; nothing below the
certificate manager retries on its own.
"""

from __future__ import annotations

from typing import Optional


class CertkeeperError(Exception):
	"""Base class for all certificate lifecycle failures."""

	retryable: bool = False

	def __init__(self, message: str, *, domain: Optional[str] = None) -> None:
		super().__init__(message)
		self.domain = domain


class AuthorityUnavailableError(CertkeeperError):
	"""The certificate authority could not be reached or asked us to back off.

	Covers transport errors, timeouts, HTTP 5xx and rate limiting.
	"""

	retryable = True

	def __init__(
		self,
		message: str,
		*,
		domain: Optional[str] = None,
		retry_after: Optional[float] = None,
	) -> None:
		super().__init__(message, domain=domain)
		self.retry_after = retry_after


class ValidationFailedError(CertkeeperError):
	"""The authority rejected the order or could not validate domain control.

	Not retryable until the cause (routing to the solver, DNS, policy) is
	fixed outside this service.
	"""


class LocalPersistenceError(CertkeeperError):
	"""Token store or key material could not be written.

	Retrying restarts from order creation; authority-side validation state
	is never assumed to be reusable.
	"""

	retryable = True


class ConcurrentOperationError(CertkeeperError):
	"""Another issuance or renewal for the same domain is in progress."""

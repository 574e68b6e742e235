#!/usr/bin/env python3
#
# certkeeper/models/ssl.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Plain records for challenge tokens, domain metadata and issuance results."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

# Domain name validation pattern (RFC 1123 hostname)
DOMAIN_PATTERN = r"^[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?(\.[a-zA-Z0-9]([a-zA-Z0-9\-]{0,61}[a-zA-Z0-9])?)*$"
_DOMAIN_RE = re.compile(DOMAIN_PATTERN)


def normalize_domain(domain: str) -> str:
	"""Lowercase and validate a hostname.

	The result is also used as a file name, so anything outside the RFC 1123
	alphabet is rejected.

	Raises:
		ValueError: If the value is not a valid hostname
	"""
	value = (domain or "").strip().lower().rstrip(".")
	if not value or len(value) > 253 or not _DOMAIN_RE.match(value):
		raise ValueError(f"Invalid domain name: {domain!r}")
	return value


@dataclass(frozen=True)
class KeyAuthorizationToken:
	"""An outstanding HTTP-01 challenge and the value the solver must return."""
	token: str
	authorization_token: str
	created_at: datetime


@dataclass(frozen=True)
class DomainSSLDetails:
	"""Provenance of the certificate currently issued for a domain."""
	domain: str
	creation_date: datetime


@dataclass(frozen=True)
class IssuanceResult:
	"""Outcome of a successful issuance or renewal."""
	domain: str
	key_path: Path
	chain_path: Path
	issued_at: datetime
	not_after: datetime
	attempts: int = 1

#!/usr/bin/env python3
#
# certkeeper/models/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate-related Pydantic models."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field, field_validator

from .ssl import DOMAIN_PATTERN, normalize_domain


class CertificateRequest(BaseModel):
	"""Request to issue a certificate for one domain."""
	domain: str = Field(..., min_length=1, max_length=253, pattern=DOMAIN_PATTERN)

	@field_validator("domain")
	@classmethod
	def normalize(cls, v: str) -> str:
		return normalize_domain(v)


class CertificateInfo(BaseModel):
	"""Stored certificate state for one domain."""
	domain: str
	creation_date: Optional[datetime] = None
	expires_at: Optional[datetime] = None
	issuer: Optional[str] = None
	serial: Optional[str] = None
	exists: bool = False
	days_until_expiry: Optional[int] = None
	needs_renewal: bool = False


class IssuanceResponse(BaseModel):
	"""Result of a successful issue or renew call."""
	domain: str
	key_path: str
	chain_path: str
	issued_at: datetime
	not_after: datetime
	attempts: int

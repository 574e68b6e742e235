#!/usr/bin/env python3
#
# certkeeper/models/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Records and Pydantic models for certkeeper."""

from .certificates import (
	CertificateInfo,
	CertificateRequest,
	IssuanceResponse,
)
from .ssl import (
	DomainSSLDetails,
	IssuanceResult,
	KeyAuthorizationToken,
	normalize_domain,
)

__all__ = [
	# API payloads
	"CertificateInfo",
	"CertificateRequest",
	"IssuanceResponse",
	# Records
	"DomainSSLDetails",
	"IssuanceResult",
	"KeyAuthorizationToken",
	"normalize_domain",
]

#!/usr/bin/env python3
#
# certkeeper/api/certificates.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Admin API for managed certificates.

Routes here are wrapped by the slowapi limiter, whose wrapper does not carry
this module's globals, so annotations must stay evaluated at definition time.
"""

import asyncio
import logging
from datetime import datetime, timedelta
from typing import Optional

from cryptography.x509.oid import NameOID
from fastapi import APIRouter, Depends, HTTPException, Path, Request

from ..certs.manager import CertificateManager, renewal_due
from ..errors import (
	AuthorityUnavailableError,
	CertkeeperError,
	ConcurrentOperationError,
	ValidationFailedError,
)
from ..models.certificates import CertificateInfo, CertificateRequest, IssuanceResponse
from ..models.ssl import DOMAIN_PATTERN, IssuanceResult, normalize_domain
from ..utils.config import Config
from ..utils.deps import get_config, get_manager, require_api_token
from ..utils.rate_limit import RATE_LIMIT_API, RATE_LIMIT_HEAVY, limiter
from ..utils.time import utcnow
from .response import ok_response

_log = logging.getLogger(__name__)

router = APIRouter(dependencies=[Depends(require_api_token)])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _to_http_exception(exc: CertkeeperError) -> HTTPException:
	"""Map a typed failure onto its HTTP status."""
	if isinstance(exc, ConcurrentOperationError):
		status = 409
	elif isinstance(exc, ValidationFailedError):
		status = 422
	elif isinstance(exc, AuthorityUnavailableError):
		headers = {"Retry-After": str(int(exc.retry_after))} if exc.retry_after else None
		return HTTPException(status_code=503, detail=str(exc), headers=headers)
	else:
		# LocalPersistenceError and anything unclassified
		status = 500
	return HTTPException(status_code=status, detail=str(exc))


def _threshold(cfg: Config) -> timedelta:
	return timedelta(days=cfg.renewal_days)


def _issuer_cn(name) -> Optional[str]:
	attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
	return attrs[0].value if attrs else None


async def _certificate_info(
	manager: CertificateManager,
	domain: str,
	threshold: timedelta,
	now: datetime,
) -> CertificateInfo:
	record = await manager.store.get_domain_record(domain)
	leaf = await asyncio.to_thread(manager.keystore.load_leaf, domain)
	if leaf is None:
		return CertificateInfo(
			domain=domain,
			creation_date=record.creation_date if record else None,
			exists=False,
			needs_renewal=True,
		)

	expires_at = leaf.not_valid_after_utc
	return CertificateInfo(
		domain=domain,
		creation_date=record.creation_date if record else None,
		expires_at=expires_at,
		issuer=_issuer_cn(leaf.issuer) or "Unknown",
		serial=format(leaf.serial_number, "x"),
		exists=True,
		days_until_expiry=(expires_at - now).days,
		needs_renewal=record is None or renewal_due(expires_at, now, threshold),
	)


def _issuance_response(result: IssuanceResult) -> IssuanceResponse:
	return IssuanceResponse(
		domain=result.domain,
		key_path=str(result.key_path),
		chain_path=str(result.chain_path),
		issued_at=result.issued_at,
		not_after=result.not_after,
		attempts=result.attempts,
	)


def _domain_param(domain: str) -> str:
	try:
		return normalize_domain(domain)
	except ValueError as exc:
		raise HTTPException(status_code=422, detail=str(exc)) from exc


# ---------------------------------------------------------------------------
# API Routes
# ---------------------------------------------------------------------------

@router.get("")
@limiter.limit(RATE_LIMIT_API)
async def list_certificates(
	request: Request,
	manager: CertificateManager = Depends(get_manager),
	cfg: Config = Depends(get_config),
) -> dict:
	"""List every domain with a recorded issuance."""
	now = utcnow()
	threshold = _threshold(cfg)
	certificates = [
		await _certificate_info(manager, record.domain, threshold, now)
		for record in await manager.store.list_domain_records()
	]
	return ok_response(data=certificates)


@router.post("/issue")
@limiter.limit(RATE_LIMIT_HEAVY)
async def issue_certificate(
	request: Request,
	req: CertificateRequest,
	manager: CertificateManager = Depends(get_manager),
) -> dict:
	"""
	Obtain a certificate for a domain.

	The domain must resolve to this host and port 80 must reach the
	``/.well-known/acme-challenge/`` route of this service.
	"""
	_log.info("CERT_API issue requested domain=%s", req.domain)
	try:
		result = await manager.issue(req.domain)
	except CertkeeperError as exc:
		raise _to_http_exception(exc) from exc

	return ok_response(
		message="Certificate issued successfully",
		data=_issuance_response(result),
	)


@router.get("/renewal-check")
@limiter.limit(RATE_LIMIT_API)
async def check_renewals(
	request: Request,
	manager: CertificateManager = Depends(get_manager),
	cfg: Config = Depends(get_config),
) -> dict:
	"""Report which recorded certificates are inside the renewal window."""
	now = utcnow()
	threshold = _threshold(cfg)
	due = []
	for record in await manager.store.list_domain_records():
		info = await _certificate_info(manager, record.domain, threshold, now)
		if info.needs_renewal:
			due.append(info)
	return ok_response(
		data=due,
		renewal_days=cfg.renewal_days,
		count=len(due),
	)


@router.post("/{domain}/renew")
@limiter.limit(RATE_LIMIT_HEAVY)
async def renew_certificate(
	request: Request,
	domain: str = Path(..., min_length=1, max_length=253, pattern=DOMAIN_PATTERN),
	force: bool = False,
	manager: CertificateManager = Depends(get_manager),
	cfg: Config = Depends(get_config),
) -> dict:
	"""Renew a certificate; without ``force`` a certificate not yet due is left alone."""
	domain = _domain_param(domain)
	if not force and not await manager.needs_renewal(domain, _threshold(cfg)):
		return ok_response(message="Certificate not due for renewal", renewed=False, domain=domain)

	try:
		result = await manager.renew(domain)
	except CertkeeperError as exc:
		raise _to_http_exception(exc) from exc

	return ok_response(
		message="Certificate renewed successfully",
		renewed=True,
		domain=domain,
		data=_issuance_response(result),
	)


@router.get("/{domain}")
@limiter.limit(RATE_LIMIT_API)
async def get_certificate(
	request: Request,
	domain: str = Path(..., min_length=1, max_length=253, pattern=DOMAIN_PATTERN),
	manager: CertificateManager = Depends(get_manager),
	cfg: Config = Depends(get_config),
) -> dict:
	"""Show the stored certificate state for one domain."""
	domain = _domain_param(domain)
	info = await _certificate_info(manager, domain, _threshold(cfg), utcnow())
	if not info.exists and info.creation_date is None:
		raise HTTPException(status_code=404, detail="Certificate not found")
	return ok_response(data=info)

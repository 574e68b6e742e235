#!/usr/bin/env python3
#
# certkeeper/api/challenge.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Public HTTP-01 challenge endpoint (no auth)."""

from __future__ import annotations

import logging

from fastapi import APIRouter, Depends
from fastapi.responses import PlainTextResponse

from ..acme.solver import CHALLENGE_PATH_PREFIX, HTTP01Solver
from ..errors import LocalPersistenceError
from ..utils.deps import get_solver

_log = logging.getLogger(__name__)

router = APIRouter()


@router.get(CHALLENGE_PATH_PREFIX + "{token}", response_class=PlainTextResponse)
async def acme_challenge(token: str, solver: HTTP01Solver = Depends(get_solver)):
	"""Serve the key authorization for ``token`` to the certificate authority."""
	try:
		key_auth = await solver.key_authorization(token)
	except LocalPersistenceError as exc:
		_log.error("SOLVER_ERROR token=%s: %s", token[:16], exc)
		return PlainTextResponse("Token store unavailable", status_code=503)

	if key_auth is None:
		return PlainTextResponse("Challenge not found", status_code=404)

	return PlainTextResponse(key_auth)

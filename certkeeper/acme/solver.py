#!/usr/bin/env python3
#
# certkeeper/acme/solver.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""HTTP-01 challenge solver."""

from __future__ import annotations

import logging
import re
from typing import Optional

from ..db.token_store import TokenStore

_log = logging.getLogger(__name__)

CHALLENGE_PATH_PREFIX = "/.well-known/acme-challenge/"

# ACME tokens are base64url (RFC 8555 8.3); anything else cannot be ours
_TOKEN_RE = re.compile(r"[A-Za-z0-9_\-]{1,256}")


class HTTP01Solver:
	"""Answers the authority's validation probes from the token store.

	A miss is the normal answer to stray probes and to probes that arrive
	after the challenge was cleaned up, so it is logged, never raised.
	"""

	def __init__(self, store: TokenStore) -> None:
		self.store = store

	async def key_authorization(self, token: str) -> Optional[str]:
		"""Return the authorization value for ``token`` or None."""
		if not _TOKEN_RE.fullmatch(token):
			_log.info("SOLVER_MISS token=<malformed>")
			return None

		value = await self.store.get_authorization(token)
		if value is None:
			_log.info("SOLVER_MISS token=%s", token[:16])
			return None

		_log.info("SOLVER_HIT token=%s", token[:16])
		return value

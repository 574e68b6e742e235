#!/usr/bin/env python3
#
# certkeeper/acme/issuance.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""One issuance attempt for one domain, driven end-to-end against the CA.

States::

	START -> ACCOUNT_READY -> ORDER_CREATED -> CHALLENGE_SOLVING
	      -> CHALLENGE_VALIDATED -> FINALIZING -> ISSUED

Any non-terminal state may move to FAILED. A flow never retries; the typed
error it raises tells the certificate manager whether a retry makes sense.
"""

from __future__ import annotations

import asyncio
import enum
import logging
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import rsa

from ..certs.keystore import KeyStore, split_pem_chain
from ..db.token_store import TokenStore
from ..errors import (
	AuthorityUnavailableError,
	CertkeeperError,
	LocalPersistenceError,
	ValidationFailedError,
)
from ..models.ssl import IssuanceResult
from ..utils.time import utcnow
from .client import ACMEClient, build_csr

_log = logging.getLogger(__name__)

__all__ = ["IssuanceFlow", "IssuanceState"]

# Time the authority gets to turn a finalized order into a certificate
_FINALIZE_TIMEOUT = 90.0


class IssuanceState(str, enum.Enum):
	START = "start"
	ACCOUNT_READY = "account_ready"
	ORDER_CREATED = "order_created"
	CHALLENGE_SOLVING = "challenge_solving"
	CHALLENGE_VALIDATED = "challenge_validated"
	FINALIZING = "finalizing"
	ISSUED = "issued"
	FAILED = "failed"


def _challenge_error(authorization: dict) -> str:
	"""Pull the authority's explanation out of a failed authorization."""
	for challenge in authorization.get("challenges", []):
		error = challenge.get("error")
		if isinstance(error, dict):
			return str(error.get("detail") or error.get("type") or "unknown error")
	return "no detail provided"


class IssuanceFlow:
	"""Single attempt to obtain a certificate for ``domain``."""

	def __init__(
		self,
		client: ACMEClient,
		store: TokenStore,
		keystore: KeyStore,
		domain: str,
		*,
		validation_timeout: float = 120.0,
		poll_interval: float = 1.0,
	) -> None:
		self.client = client
		self.store = store
		self.keystore = keystore
		self.domain = domain
		self.validation_timeout = validation_timeout
		self.poll_interval = poll_interval
		self.state = IssuanceState.START
		self.order_url: Optional[str] = None
		self._tokens: list[str] = []

	def _transition(self, state: IssuanceState) -> None:
		_log.debug("ISSUANCE domain=%s %s -> %s", self.domain, self.state.value, state.value)
		self.state = state

	async def run(self) -> IssuanceResult:
		try:
			return await self._run()
		except CertkeeperError as exc:
			exc.domain = exc.domain or self.domain
			_log.warning(
				"ISSUANCE_FAILED domain=%s state=%s retryable=%s error=%s",
				self.domain, self.state.value, exc.retryable, exc,
			)
			self.state = IssuanceState.FAILED
			raise
		except asyncio.CancelledError:
			_log.info("ISSUANCE_CANCELLED domain=%s state=%s", self.domain, self.state.value)
			self.state = IssuanceState.FAILED
			raise
		finally:
			await self._cleanup_tokens()

	async def _run(self) -> IssuanceResult:
		await self.client.ensure_account()
		self._transition(IssuanceState.ACCOUNT_READY)

		self.order_url, order = await self.client.new_order(self.domain)
		_log.info("ACME_ORDER domain=%s url=%s", self.domain, self.order_url)
		if order.get("status") == "invalid":
			raise ValidationFailedError("Authority created the order as invalid")
		self._transition(IssuanceState.ORDER_CREATED)

		pending = await self._present_challenges(order.get("authorizations", []))
		self._transition(IssuanceState.CHALLENGE_SOLVING)

		await self._await_validation(pending)
		self._transition(IssuanceState.CHALLENGE_VALIDATED)

		order = await self.client.poll(
			self.order_url,
			waiting=frozenset({"pending"}),
			timeout=self.validation_timeout,
			interval=self.poll_interval,
			action="Waiting for order",
		)
		if order.get("status") != "ready":
			raise ValidationFailedError(f"Order is {order.get('status')} after validation")
		self._transition(IssuanceState.FINALIZING)

		key_pem, chain_pem, leaf = await self._finalize(order)

		key_path, chain_path = await asyncio.to_thread(self.keystore.save, self.domain, key_pem, chain_pem)
		await self._cleanup_tokens()
		issued_at = utcnow()
		await self.store.upsert_domain_record(self.domain, issued_at)
		self._transition(IssuanceState.ISSUED)
		_log.info(
			"ISSUANCE_OK domain=%s not_after=%s serial=%x",
			self.domain, leaf.not_valid_after_utc.isoformat(), leaf.serial_number,
		)
		return IssuanceResult(
			domain=self.domain,
			key_path=key_path,
			chain_path=chain_path,
			issued_at=issued_at,
			not_after=leaf.not_valid_after_utc,
		)

	async def _present_challenges(self, auth_urls: list[str]) -> list[str]:
		"""Publish every HTTP-01 key authorization, then ask for validation.

		Returns the authorization URLs that still have to be validated.
		"""
		if not auth_urls:
			raise ValidationFailedError("No authorizations in order")

		pending: list[str] = []
		for auth_url in auth_urls:
			authorization = await self.client.get_authorization(auth_url)
			status = authorization.get("status")
			if status == "valid":
				_log.debug("Authorization %s already valid, skipping challenge", auth_url)
				continue
			if status != "pending":
				raise ValidationFailedError(f"Authorization is {status}: {_challenge_error(authorization)}")

			challenge = next(
				(c for c in authorization.get("challenges", []) if c.get("type") == "http-01"),
				None,
			)
			if challenge is None:
				raise ValidationFailedError("No HTTP-01 challenge offered")

			token = challenge["token"]
			# The write must be visible before the authority may probe
			await self.store.put_token(token, self.client.key_authorization(token))
			self._tokens.append(token)
			_log.info("ACME_CHALLENGE domain=%s token=%s", self.domain, token[:16])

			await self.client.respond_to_challenge(challenge["url"])
			pending.append(auth_url)
		return pending

	async def _await_validation(self, auth_urls: list[str]) -> None:
		loop = asyncio.get_running_loop()
		deadline = loop.time() + self.validation_timeout
		for auth_url in auth_urls:
			authorization = await self.client.poll(
				auth_url,
				waiting=frozenset({"pending"}),
				timeout=max(0.0, deadline - loop.time()),
				interval=self.poll_interval,
				action="Waiting for challenge validation",
			)
			status = authorization.get("status")
			if status != "valid":
				raise ValidationFailedError(
					f"Challenge validation {status}: {_challenge_error(authorization)}"
				)

	async def _finalize(self, order: dict) -> tuple[bytes, bytes, x509.Certificate]:
		domain_key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
		order = await self.client.finalize_order(order["finalize"], build_csr(self.domain, domain_key))
		if order.get("status") != "valid":
			order = await self.client.poll(
				self.order_url,
				waiting=frozenset({"ready", "processing"}),
				timeout=_FINALIZE_TIMEOUT,
				interval=self.poll_interval,
				action="Waiting for certificate",
				on_timeout=AuthorityUnavailableError,
			)
		if order.get("status") != "valid":
			raise ValidationFailedError(f"Order is {order.get('status')} after finalization")

		cert_url = order.get("certificate")
		if not cert_url:
			raise ValidationFailedError("No certificate URL in order")
		chain_pem = await self.client.download_certificate(cert_url)

		certs = split_pem_chain(chain_pem)
		if not certs:
			raise ValidationFailedError("Authority returned an empty certificate chain")
		try:
			leaf = x509.load_pem_x509_certificate(certs[0])
		except ValueError as exc:
			raise ValidationFailedError(f"Authority returned an unparseable certificate: {exc}") from exc

		key_pem = domain_key.private_bytes(
			encoding=serialization.Encoding.PEM,
			format=serialization.PrivateFormat.PKCS8,
			encryption_algorithm=serialization.NoEncryption(),
		)
		return key_pem, chain_pem, leaf

	async def _cleanup_tokens(self) -> None:
		"""Best-effort removal of every token this attempt published."""
		while self._tokens:
			token = self._tokens.pop()
			try:
				await self.store.delete_token(token)
			except LocalPersistenceError as exc:
				_log.warning("Failed to delete challenge token %s: %s", token[:16], exc)

#!/usr/bin/env python3
#
# certkeeper/acme/client.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight ACME v2 client (RFC 8555) speaking JWS/ES256 over httpx."""

from __future__ import annotations

import asyncio
import base64
import hashlib
import json
import logging
import os
from pathlib import Path
from typing import Optional

import httpx
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.hazmat.primitives.asymmetric.utils import decode_dss_signature
from cryptography.x509.oid import NameOID

from ..errors import (
	AuthorityUnavailableError,
	CertkeeperError,
	LocalPersistenceError,
	ValidationFailedError,
)
from ..utils.time import parse_retry_after

_log = logging.getLogger(__name__)

__all__ = ["ACMEClient", "build_csr", "jwk_thumbprint"]

_ACME_ERROR_PREFIX = "urn:ietf:params:acme:error:"
# Problem types that say "try again later" rather than "you are wrong"
_TRANSIENT_PROBLEMS = {"rateLimited", "serverInternal", "badNonce"}


def _b64url(data: bytes) -> str:
	"""Base64url encode without padding."""
	return base64.urlsafe_b64encode(data).rstrip(b"=").decode("ascii")


def jwk_thumbprint(jwk: dict) -> str:
	"""Calculate JWK thumbprint (RFC 7638)."""
	if jwk.get("kty") == "EC":
		canonical = {"crv": jwk["crv"], "kty": "EC", "x": jwk["x"], "y": jwk["y"]}
	elif jwk.get("kty") == "RSA":
		canonical = {"e": jwk["e"], "kty": "RSA", "n": jwk["n"]}
	else:
		raise ValueError(f"Unsupported key type: {jwk.get('kty')!r}")

	canonical_json = json.dumps(canonical, separators=(",", ":"), sort_keys=True)
	return _b64url(hashlib.sha256(canonical_json.encode("utf-8")).digest())


def build_csr(domain: str, key: rsa.RSAPrivateKey) -> bytes:
	"""Build a DER CSR with CN and SAN set to ``domain``."""
	csr = (
		x509.CertificateSigningRequestBuilder()
		.subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, domain)]))
		.add_extension(x509.SubjectAlternativeName([x509.DNSName(domain)]), critical=False)
		.sign(key, hashes.SHA256())
	)
	return csr.public_bytes(serialization.Encoding.DER)


def _problem(resp: httpx.Response) -> tuple[str, str]:
	"""Return (short problem type, detail) from an ACME error document."""
	try:
		error = resp.json()
	except ValueError:
		return "", resp.text.strip()
	if not isinstance(error, dict):
		return "", resp.text.strip()
	error_type = str(error.get("type", ""))
	if error_type.startswith(_ACME_ERROR_PREFIX):
		error_type = error_type[len(_ACME_ERROR_PREFIX):]
	return error_type, str(error.get("detail", "")) or resp.text.strip()


def _raise_for_status(resp: httpx.Response, action: str, ok: tuple[int, ...] = (200,)) -> None:
	"""Map a non-success ACME response onto the error taxonomy."""
	if resp.status_code in ok:
		return
	problem_type, detail = _problem(resp)
	message = f"{action} failed: HTTP {resp.status_code}"
	if detail:
		message += f": {detail}"
	if problem_type:
		message += f" ({problem_type})"

	if resp.status_code == 429 or resp.status_code >= 500 or problem_type in _TRANSIENT_PROBLEMS:
		raise AuthorityUnavailableError(
			message,
			retry_after=parse_retry_after(resp.headers.get("Retry-After")),
		)
	raise ValidationFailedError(message)


class ACMEClient:
	"""ACME v2 client bound to one account.

	The account is loaded from (or created at) ``account_key_path`` on first
	use and registered with the authority exactly once; the account URL and
	the key thumbprint it belongs to are kept in a JSON file next to the key.
	"""

	def __init__(
		self,
		directory_url: str,
		account_key_path: Path,
		email: str,
		*,
		http_client: Optional[httpx.AsyncClient] = None,
		timeout: float = 30.0,
	) -> None:
		self.directory_url = directory_url
		self.account_key_path = account_key_path
		self.account_meta_path = account_key_path.with_name(account_key_path.name + ".json")
		self.email = email
		self.directory: dict = {}
		self.nonce: Optional[str] = None
		self.account_key: Optional[ec.EllipticCurvePrivateKey] = None
		self.account_url: Optional[str] = None
		self._owns_http_client = http_client is None
		self.http_client = http_client or httpx.AsyncClient(timeout=timeout)
		self._account_lock = asyncio.Lock()

	async def __aenter__(self) -> "ACMEClient":
		return self

	async def __aexit__(self, *args) -> None:
		await self.aclose()

	async def aclose(self) -> None:
		if self._owns_http_client:
			await self.http_client.aclose()

	# -----------------------------------------------------------------------
	# Transport
	# -----------------------------------------------------------------------

	async def _send(self, method: str, url: str, **kwargs) -> httpx.Response:
		try:
			return await self.http_client.request(method, url, **kwargs)
		except httpx.TimeoutException as exc:
			raise AuthorityUnavailableError(f"Timeout talking to {url}: {exc}") from exc
		except httpx.HTTPError as exc:
			raise AuthorityUnavailableError(f"Cannot reach {url}: {exc}") from exc

	async def _fetch_directory(self) -> dict:
		if not self.directory:
			resp = await self._send("GET", self.directory_url)
			_raise_for_status(resp, "Fetching ACME directory")
			self.directory = resp.json()
		return self.directory

	async def _get_nonce(self) -> str:
		"""Use the last Replay-Nonce, or fetch a fresh one."""
		if self.nonce:
			nonce, self.nonce = self.nonce, None
			return nonce

		directory = await self._fetch_directory()
		resp = await self._send("HEAD", directory["newNonce"])
		if "Replay-Nonce" not in resp.headers:
			# Some servers only answer GET on newNonce
			resp = await self._send("GET", directory["newNonce"])
		if "Replay-Nonce" not in resp.headers:
			raise AuthorityUnavailableError("Failed to obtain ACME nonce")
		return resp.headers["Replay-Nonce"]

	def _get_jwk(self) -> dict:
		"""Get JWK representation of account key."""
		if not self.account_key:
			raise RuntimeError("Account key not loaded")

		numbers = self.account_key.public_key().public_numbers()
		return {
			"kty": "EC",
			"crv": "P-256",
			"x": _b64url(numbers.x.to_bytes(32, "big")),
			"y": _b64url(numbers.y.to_bytes(32, "big")),
		}

	def _sign(self, signing_input: bytes) -> bytes:
		"""ES256 signature in JWS form (r || s, 32 bytes each)."""
		if not self.account_key:
			raise RuntimeError("Account key not loaded")
		r, s = decode_dss_signature(self.account_key.sign(signing_input, ec.ECDSA(hashes.SHA256())))
		return r.to_bytes(32, "big") + s.to_bytes(32, "big")

	async def _post_jws(self, url: str, payload: Optional[dict]) -> httpx.Response:
		protected: dict = {
			"alg": "ES256",
			"nonce": await self._get_nonce(),
			"url": url,
		}
		if self.account_url:
			protected["kid"] = self.account_url
		else:
			protected["jwk"] = self._get_jwk()

		protected_b64 = _b64url(json.dumps(protected).encode("utf-8"))
		# POST-as-GET carries an empty payload, not "{}"
		payload_b64 = "" if payload is None else _b64url(json.dumps(payload).encode("utf-8"))
		signature = self._sign(f"{protected_b64}.{payload_b64}".encode("ascii"))

		resp = await self._send(
			"POST",
			url,
			json={"protected": protected_b64, "payload": payload_b64, "signature": _b64url(signature)},
			headers={"Content-Type": "application/jose+json"},
		)
		if "Replay-Nonce" in resp.headers:
			self.nonce = resp.headers["Replay-Nonce"]
		return resp

	async def _signed_request(self, url: str, payload: Optional[dict]) -> httpx.Response:
		"""Make a signed JWS request, re-signing once on ``badNonce``."""
		resp = await self._post_jws(url, payload)
		if resp.status_code == 400 and _problem(resp)[0] == "badNonce":
			_log.debug("ACME badNonce from %s, retrying with fresh nonce", url)
			resp = await self._post_jws(url, payload)
		return resp

	# -----------------------------------------------------------------------
	# Account
	# -----------------------------------------------------------------------

	def _load_or_create_account_key(self) -> ec.EllipticCurvePrivateKey:
		try:
			if self.account_key_path.exists():
				key = serialization.load_pem_private_key(self.account_key_path.read_bytes(), password=None)
				if not isinstance(key, ec.EllipticCurvePrivateKey):
					raise ValueError("Account key is not an EC key")
				return key

			key = ec.generate_private_key(ec.SECP256R1())
			key_pem = key.private_bytes(
				encoding=serialization.Encoding.PEM,
				format=serialization.PrivateFormat.PKCS8,
				encryption_algorithm=serialization.NoEncryption(),
			)
			self.account_key_path.parent.mkdir(parents=True, exist_ok=True)
			fd = os.open(self.account_key_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
			with os.fdopen(fd, "wb") as f:
				f.write(key_pem)
		except OSError as exc:
			raise LocalPersistenceError(f"Cannot access account key {self.account_key_path}: {exc}") from exc
		_log.info("Created new ACME account key at %s", self.account_key_path)
		return key

	def _read_account_meta(self) -> dict:
		if not self.account_meta_path.exists():
			return {}
		try:
			meta = json.loads(self.account_meta_path.read_text(encoding="utf-8"))
		except (OSError, ValueError) as exc:
			_log.warning("Ignoring unreadable account metadata %s: %s", self.account_meta_path, exc)
			return {}
		return meta if isinstance(meta, dict) else {}

	def _write_account_meta(self, meta: dict) -> None:
		try:
			self.account_meta_path.write_text(json.dumps(meta, indent=2), encoding="utf-8")
		except OSError as exc:
			raise LocalPersistenceError(f"Cannot write account metadata: {exc}") from exc

	async def ensure_account(self) -> str:
		"""Load or register the account and return its URL (memoized)."""
		async with self._account_lock:
			if self.account_url:
				return self.account_url

			directory = await self._fetch_directory()
			self.account_key = self._load_or_create_account_key()
			thumbprint = jwk_thumbprint(self._get_jwk())

			meta = self._read_account_meta()
			if meta.get("url") and meta.get("thumbprint") == thumbprint:
				self.account_url = meta["url"]
				if meta.get("email") != self.email:
					await self._update_contact()
					meta["email"] = self.email
					self._write_account_meta(meta)
				_log.info("Using existing ACME account: %s", self.account_url)
				return self.account_url
			if meta.get("url"):
				_log.warning("Account key changed (thumbprint mismatch), re-registering")

			resp = await self._signed_request(
				directory["newAccount"],
				{"termsOfServiceAgreed": True, "contact": [f"mailto:{self.email}"]},
			)
			_raise_for_status(resp, "Account registration", ok=(200, 201))
			account_url = resp.headers.get("Location")
			if not account_url:
				raise ValidationFailedError("No account URL in registration response")

			self._write_account_meta({"url": account_url, "thumbprint": thumbprint, "email": self.email})
			self.account_url = account_url
			_log.info("Registered new ACME account: %s", account_url)
			return account_url

	async def _update_contact(self) -> None:
		resp = await self._signed_request(self.account_url, {"contact": [f"mailto:{self.email}"]})
		_raise_for_status(resp, "Account contact update")
		_log.info("Updated ACME account contact to %s", self.email)

	def key_authorization(self, token: str) -> str:
		"""Value the HTTP-01 solver must serve for ``token`` (RFC 8555 8.1)."""
		return f"{token}.{jwk_thumbprint(self._get_jwk())}"

	# -----------------------------------------------------------------------
	# Orders, authorizations, challenges
	# -----------------------------------------------------------------------

	async def new_order(self, domain: str) -> tuple[str, dict]:
		"""Create a new certificate order; returns (order URL, order)."""
		directory = await self._fetch_directory()
		resp = await self._signed_request(
			directory["newOrder"],
			{"identifiers": [{"type": "dns", "value": domain}]},
		)
		_raise_for_status(resp, "Order creation", ok=(200, 201))
		order_url = resp.headers.get("Location")
		if not order_url:
			raise ValidationFailedError("No order URL in response")
		return order_url, resp.json()

	async def get_authorization(self, auth_url: str) -> dict:
		resp = await self._signed_request(auth_url, None)
		_raise_for_status(resp, "Fetching authorization")
		return resp.json()

	async def respond_to_challenge(self, challenge_url: str) -> dict:
		"""Tell the authority the challenge is ready to be validated."""
		resp = await self._signed_request(challenge_url, {})
		_raise_for_status(resp, "Challenge response", ok=(200, 202))
		return resp.json()

	async def finalize_order(self, finalize_url: str, csr_der: bytes) -> dict:
		resp = await self._signed_request(finalize_url, {"csr": _b64url(csr_der)})
		_raise_for_status(resp, "Order finalization", ok=(200, 201))
		return resp.json()

	async def download_certificate(self, cert_url: str) -> bytes:
		"""Download the PEM full chain (leaf first)."""
		resp = await self._signed_request(cert_url, None)
		_raise_for_status(resp, "Certificate download")
		return resp.content

	async def poll(
		self,
		url: str,
		*,
		waiting: frozenset[str],
		timeout: float,
		action: str,
		interval: float = 1.0,
		max_interval: float = 10.0,
		on_timeout: type[CertkeeperError] = ValidationFailedError,
	) -> dict:
		"""POST-as-GET ``url`` until its status leaves ``waiting``.

		Backs off exponentially up to ``max_interval`` (or the server's
		Retry-After) and raises ``on_timeout`` once ``timeout`` has elapsed.
		"""
		loop = asyncio.get_running_loop()
		deadline = loop.time() + timeout
		delay = interval
		while True:
			resp = await self._signed_request(url, None)
			_raise_for_status(resp, action)
			body = resp.json()
			if body.get("status") not in waiting:
				return body

			remaining = deadline - loop.time()
			if remaining <= 0:
				raise on_timeout(f"{action} timed out after {timeout:.0f}s (status={body.get('status')})")
			wait = parse_retry_after(resp.headers.get("Retry-After"))
			wait = delay if wait is None else min(wait, max_interval)
			await asyncio.sleep(min(wait, remaining))
			delay = min(delay * 2, max_interval)

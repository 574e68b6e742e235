#!/usr/bin/env python3
#
# certkeeper/certs/keystore.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""On-disk storage of issued private keys and full chains.

Keys live in ``{domain_key_dir}/{domain}.key`` and chains in
``{fullchain_dir}/{domain}.crt``. Both names are stable across renewals so
the proxy that consumes them never has to be reconfigured.
"""

from __future__ import annotations

import logging
import os
import tempfile
from datetime import datetime
from pathlib import Path
from typing import Optional

from cryptography import x509

from ..errors import LocalPersistenceError

_log = logging.getLogger(__name__)

_PEM_CERT_BEGIN = b"-----BEGIN CERTIFICATE-----"
_PEM_CERT_END = b"-----END CERTIFICATE-----"


def split_pem_chain(chain_pem: bytes) -> list[bytes]:
	"""Split a PEM bundle into individual certificate blocks."""
	certs = []
	pem_data = chain_pem
	while _PEM_CERT_BEGIN in pem_data:
		start = pem_data.find(_PEM_CERT_BEGIN)
		end = pem_data.find(_PEM_CERT_END, start)
		if end == -1:
			break
		end += len(_PEM_CERT_END)
		certs.append(pem_data[start:end])
		pem_data = pem_data[end:]
	return certs


def _write_temp(directory: Path, name: str, data: bytes, mode: int) -> str:
	"""Write ``data`` to a synced temp file next to its final location."""
	fd, tmp_path = tempfile.mkstemp(dir=str(directory), prefix=f".{name}.", suffix=".tmp")
	try:
		os.fchmod(fd, mode)
		with os.fdopen(fd, "wb") as f:
			f.write(data)
			f.flush()
			os.fsync(f.fileno())
	except BaseException:
		try:
			os.unlink(tmp_path)
		except FileNotFoundError:
			pass
		raise
	return tmp_path


class KeyStore:
	"""Filesystem layout for issued key material."""

	def __init__(self, domain_key_dir: Path, fullchain_dir: Path) -> None:
		self.domain_key_dir = domain_key_dir
		self.fullchain_dir = fullchain_dir

	def key_path(self, domain: str) -> Path:
		return self.domain_key_dir / f"{domain}.key"

	def chain_path(self, domain: str) -> Path:
		return self.fullchain_dir / f"{domain}.crt"

	def save(self, domain: str, key_pem: bytes, chain_pem: bytes) -> tuple[Path, Path]:
		"""Atomically replace the key and chain for ``domain``.

		Both files are staged first and only then moved into place, so a
		failed write never leaves a truncated key or chain behind. The old
		key is hard-linked aside before it is replaced; if the chain cannot
		be moved into place the old key is put back, so the pair on disk
		always matches.
		"""
		if not split_pem_chain(chain_pem):
			raise LocalPersistenceError("Refusing to store an empty certificate chain", domain=domain)

		key_path = self.key_path(domain)
		chain_path = self.chain_path(domain)
		backup = key_path.with_name(f".{key_path.name}.prev")
		has_backup = False
		key_replaced = False
		staged: list[str] = []
		try:
			self.domain_key_dir.mkdir(parents=True, exist_ok=True)
			self.fullchain_dir.mkdir(parents=True, exist_ok=True)
			tmp_key = _write_temp(self.domain_key_dir, key_path.name, key_pem, 0o600)
			staged.append(tmp_key)
			tmp_chain = _write_temp(self.fullchain_dir, chain_path.name, chain_pem, 0o644)
			staged.append(tmp_chain)

			backup.unlink(missing_ok=True)
			if key_path.exists():
				os.link(key_path, backup)
				has_backup = True

			os.replace(tmp_key, key_path)
			staged.remove(tmp_key)
			key_replaced = True
			os.replace(tmp_chain, chain_path)
			staged.remove(tmp_chain)
		except OSError as exc:
			if key_replaced:
				self._restore_key(domain, key_path, backup if has_backup else None)
			raise LocalPersistenceError(f"Failed to write key material: {exc}", domain=domain) from exc
		finally:
			if has_backup:
				staged.append(str(backup))
			for tmp in staged:
				try:
					os.unlink(tmp)
				except FileNotFoundError:
					pass
				except OSError:
					_log.debug("Could not remove staged file %s", tmp)

		_log.info("Saved certificate for %s (key=%s chain=%s)", domain, key_path, chain_path)
		return key_path, chain_path

	def _restore_key(self, domain: str, key_path: Path, backup: Optional[Path]) -> None:
		"""Undo a key replacement whose chain never made it to disk."""
		try:
			if backup is not None:
				os.replace(backup, key_path)
			else:
				key_path.unlink(missing_ok=True)
		except OSError as exc:
			_log.error("KEY_ROLLBACK_FAILED domain=%s key=%s: %s", domain, key_path, exc)
			return
		_log.warning("KEY_ROLLBACK domain=%s: chain write failed, previous key restored", domain)

	def load_leaf(self, domain: str) -> Optional[x509.Certificate]:
		"""Return the leaf certificate of the stored chain, or None."""
		chain_path = self.chain_path(domain)
		try:
			certs = split_pem_chain(chain_path.read_bytes())
		except FileNotFoundError:
			return None
		except OSError as exc:
			_log.warning("Cannot read certificate chain %s: %s", chain_path, exc)
			return None
		if not certs:
			return None
		try:
			return x509.load_pem_x509_certificate(certs[0])
		except ValueError as exc:
			_log.warning("Failed to parse certificate %s: %s", chain_path, exc)
			return None

	def certificate_expiry(self, domain: str) -> Optional[datetime]:
		leaf = self.load_leaf(domain)
		return leaf.not_valid_after_utc if leaf is not None else None

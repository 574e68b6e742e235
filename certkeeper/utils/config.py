#!/usr/bin/env python3
#
# certkeeper/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading and app-level defaults."""

from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass
from pathlib import Path

_log = logging.getLogger(__name__)


class ConfigValidationError(Exception):
	"""Raised when critical configuration is missing or invalid."""


# Let's Encrypt ACME endpoints
ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


@dataclass(frozen=True)
class Config:
	"""Resolved runtime configuration derived from env and defaults."""
	email: str
	account_key_path: Path
	domain_key_dir: Path
	fullchain_dir: Path
	data_dir: Path
	db_path: Path
	acme_directory: str = ACME_DIRECTORY_PROD
	admin_token: str = ""
	bind_host: str = "0.0.0.0"
	http_port: int = 80
	renewal_days: int = 30
	validation_timeout: float = 120.0
	log_level: str = "INFO"

	@property
	def lock_dir(self) -> Path:
		return self.data_dir / ".locks"


def _parse_value(raw: str) -> str:
	"""Extract value, respecting quotes and stripping inline comments."""
	raw = raw.strip()
	if raw and raw[0] in ('"', "'"):
		quote = raw[0]
		end = raw.find(quote, 1)
		if end != -1:
			return raw[1:end]
	if " #" in raw:
		raw = raw.split(" #", 1)[0]
	return raw.strip()


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Load simple KEY=VALUE pairs from settings.env.

	Blank lines, comments and ``export`` prefixes are handled. Variables
	already present in the environment are never overridden.
	"""
	project_root = Path(__file__).resolve().parents[2]
	dotenv_path = dotenv_path or (project_root / "settings.env")
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#") or "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		if key.startswith("export "):
			key = key[7:].strip()
		if not key:
			continue
		os.environ.setdefault(key, _parse_value(value))


def _env_bool(name: str, default: bool = False) -> bool:
	raw = os.getenv(name)
	if raw is None:
		return default
	return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_number(name: str, default: float, *, minimum: float, cast=int):
	raw = os.getenv(name)
	if raw is None or not raw.strip():
		return cast(default)
	try:
		value = cast(raw.strip())
	except ValueError as exc:
		raise ConfigValidationError(f"{name} must be a number, got {raw!r}") from exc
	if value < minimum:
		raise ConfigValidationError(f"{name} must be >= {minimum}, got {value}")
	return value


def _ensure_dir(path: Path) -> None:
	if path.exists() and not path.is_dir():
		raise ConfigValidationError(f"Path exists but is not a directory: {path}")
	try:
		path.mkdir(parents=True, exist_ok=True)
	except OSError as exc:
		raise ConfigValidationError(f"Cannot create directory {path}: {exc}") from exc


def load_config() -> Config:
	"""Load configuration from environment variables (optionally via settings.env)."""
	load_dotenv()
	project_root = Path(__file__).resolve().parents[2]

	data_dir = Path(os.getenv("CERTKEEPER_DATA_DIR", str(project_root / "data"))).resolve()

	email = os.getenv("CERTKEEPER_EMAIL", "").strip()
	if not email:
		raise ConfigValidationError(
			"CERTKEEPER_EMAIL is not set. "
			"The certificate authority requires a contact address for the account."
		)
	if not _EMAIL_RE.match(email):
		raise ConfigValidationError(f"CERTKEEPER_EMAIL is not a valid address: {email!r}")

	account_key_path = Path(
		os.getenv("CERTKEEPER_ACCOUNT_KEY_PATH", str(data_dir / "account" / "account.key"))
	).resolve()
	domain_key_dir = Path(
		os.getenv("CERTKEEPER_DOMAIN_KEY_DIR", str(data_dir / "certs" / "private"))
	).resolve()
	fullchain_dir = Path(
		os.getenv("CERTKEEPER_FULLCHAIN_DIR", str(data_dir / "certs" / "fullchain"))
	).resolve()

	for d in (data_dir, account_key_path.parent, domain_key_dir, fullchain_dir, data_dir / ".locks"):
		_ensure_dir(d)

	acme_directory = os.getenv("CERTKEEPER_ACME_DIRECTORY", "").strip()
	if not acme_directory:
		staging = _env_bool("CERTKEEPER_STAGING")
		acme_directory = ACME_DIRECTORY_STAGING if staging else ACME_DIRECTORY_PROD
	if not acme_directory.startswith(("https://", "http://")):
		raise ConfigValidationError(f"CERTKEEPER_ACME_DIRECTORY must be a URL, got {acme_directory!r}")

	allowed_levels = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}
	log_level = os.getenv("LOG_LEVEL", "INFO").upper()
	if log_level not in allowed_levels:
		log_level = "INFO"

	admin_token = os.getenv("CERTKEEPER_ADMIN_TOKEN", "")
	if not admin_token:
		_log.debug("CERTKEEPER_ADMIN_TOKEN not set, admin API disabled")

	return Config(
		email=email,
		account_key_path=account_key_path,
		domain_key_dir=domain_key_dir,
		fullchain_dir=fullchain_dir,
		data_dir=data_dir,
		db_path=(data_dir / "certkeeper.db").resolve(),
		acme_directory=acme_directory,
		admin_token=admin_token,
		bind_host=os.getenv("CERTKEEPER_BIND", "0.0.0.0"),
		http_port=_env_number("CERTKEEPER_HTTP_PORT", 80, minimum=1),
		renewal_days=_env_number("CERTKEEPER_RENEWAL_DAYS", 30, minimum=1),
		validation_timeout=_env_number("CERTKEEPER_VALIDATION_TIMEOUT", 120.0, minimum=1.0, cast=float),
		log_level=log_level,
	)


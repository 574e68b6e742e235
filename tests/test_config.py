#!/usr/bin/env python3
#
# tests/test_config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

from __future__ import annotations

import os

import pytest
from fastapi import Request

from certkeeper import create_app
from certkeeper.utils.config import (
	ACME_DIRECTORY_PROD,
	ACME_DIRECTORY_STAGING,
	ConfigValidationError,
	load_config,
	load_dotenv,
)
from certkeeper.utils.deps import get_config


@pytest.fixture
def env(tmp_path, monkeypatch):
	for key in list(os.environ):
		if key.startswith("CERTKEEPER_") or key == "LOG_LEVEL":
			monkeypatch.delenv(key)
	monkeypatch.setenv("CERTKEEPER_DATA_DIR", str(tmp_path / "data"))
	monkeypatch.setenv("CERTKEEPER_EMAIL", "hostmaster@example.com")
	return monkeypatch


def test_defaults(env, tmp_path):
	cfg = load_config()

	data_dir = (tmp_path / "data").resolve()
	assert cfg.email == "hostmaster@example.com"
	assert cfg.data_dir == data_dir
	assert cfg.db_path == data_dir / "certkeeper.db"
	assert cfg.account_key_path == data_dir / "account" / "account.key"
	assert cfg.domain_key_dir.is_dir()
	assert cfg.fullchain_dir.is_dir()
	assert cfg.lock_dir.is_dir()
	assert cfg.acme_directory == ACME_DIRECTORY_PROD
	assert cfg.admin_token == ""
	assert cfg.http_port == 80
	assert cfg.renewal_days == 30
	assert cfg.validation_timeout == 120.0
	assert cfg.log_level == "INFO"


def test_overrides(env, tmp_path):
	env.setenv("CERTKEEPER_ACCOUNT_KEY_PATH", str(tmp_path / "keys" / "acct.pem"))
	env.setenv("CERTKEEPER_DOMAIN_KEY_DIR", str(tmp_path / "private"))
	env.setenv("CERTKEEPER_FULLCHAIN_DIR", str(tmp_path / "chains"))
	env.setenv("CERTKEEPER_STAGING", "true")
	env.setenv("CERTKEEPER_HTTP_PORT", "8080")
	env.setenv("CERTKEEPER_RENEWAL_DAYS", "14")
	env.setenv("CERTKEEPER_VALIDATION_TIMEOUT", "45.5")
	env.setenv("LOG_LEVEL", "debug")

	cfg = load_config()

	assert cfg.account_key_path == (tmp_path / "keys" / "acct.pem").resolve()
	assert cfg.domain_key_dir == (tmp_path / "private").resolve()
	assert cfg.fullchain_dir == (tmp_path / "chains").resolve()
	assert cfg.acme_directory == ACME_DIRECTORY_STAGING
	assert cfg.http_port == 8080
	assert cfg.renewal_days == 14
	assert cfg.validation_timeout == 45.5
	assert cfg.log_level == "DEBUG"


def test_explicit_directory_wins_over_staging(env):
	env.setenv("CERTKEEPER_STAGING", "true")
	env.setenv("CERTKEEPER_ACME_DIRECTORY", "https://ca.internal/directory")
	assert load_config().acme_directory == "https://ca.internal/directory"


@pytest.mark.parametrize(
	"key,value",
	[
		("CERTKEEPER_EMAIL", ""),
		("CERTKEEPER_EMAIL", "not-an-address"),
		("CERTKEEPER_HTTP_PORT", "eighty"),
		("CERTKEEPER_RENEWAL_DAYS", "0"),
		("CERTKEEPER_ACME_DIRECTORY", "ftp://ca.example.com"),
	],
)
def test_invalid_values(env, key, value):
	env.setenv(key, value)
	with pytest.raises(ConfigValidationError):
		load_config()


def test_data_dir_must_be_directory(env, tmp_path):
	blocker = tmp_path / "file"
	blocker.write_text("")
	env.setenv("CERTKEEPER_DATA_DIR", str(blocker))
	with pytest.raises(ConfigValidationError):
		load_config()


def test_dotenv_never_overrides(env, tmp_path):
	dotenv = tmp_path / "settings.env"
	dotenv.write_text(
		"# comment\n"
		"export CERTKEEPER_EMAIL=file@example.com\n"
		"CERTKEEPER_TEST_DOTENV='quoted value' # trailing\n"
	)
	# Registered so teardown removes whatever load_dotenv sets
	env.setenv("CERTKEEPER_TEST_DOTENV", "placeholder")
	env.delenv("CERTKEEPER_TEST_DOTENV")

	load_dotenv(dotenv)

	assert os.environ["CERTKEEPER_EMAIL"] == "hostmaster@example.com"
	assert os.environ["CERTKEEPER_TEST_DOTENV"] == "quoted value"


def test_app_carries_injected_config(cfg):
	"""The application reads its settings from app.state, not a module global"""
	app = create_app(cfg)
	request = Request({"type": "http", "app": app})

	assert app.state.cfg is cfg
	assert get_config(request) is cfg

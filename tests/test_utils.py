#!/usr/bin/env python3
#
# tests/test_utils.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from certkeeper.api.response import ok_response
from certkeeper.models.certificates import CertificateRequest
from certkeeper.models.ssl import normalize_domain
from certkeeper.utils.time import ensure_utc, parse_retry_after


@pytest.mark.parametrize(
	"value,expected",
	[
		(None, None),
		("", None),
		("120", 120.0),
		(" 5 ", 5.0),
		("Wed, 21 Oct 2026 07:28:00 GMT", 60.0),
		("Wed, 21 Oct 2026 07:26:00 GMT", 0.0),
		("soon", None),
	],
)
def test_parse_retry_after(value, expected):
	now = datetime(2026, 10, 21, 7, 27, tzinfo=timezone.utc)
	assert parse_retry_after(value, now=now) == expected


def test_ensure_utc():
	assert ensure_utc(None) is None
	with pytest.raises(ValueError):
		ensure_utc(datetime(2026, 1, 1))


@pytest.mark.parametrize(
	"raw,expected",
	[("Example.COM", "example.com"), ("example.com.", "example.com"), (" a-b.example.org ", "a-b.example.org")],
)
def test_normalize_domain(raw, expected):
	assert normalize_domain(raw) == expected


@pytest.mark.parametrize("raw", ["", ".", "exa mple.com", "*.example.com", "example..com"])
def test_normalize_domain_rejects(raw):
	with pytest.raises(ValueError):
		normalize_domain(raw)


def test_certificate_request_normalizes():
	assert CertificateRequest(domain="WWW.Example.com").domain == "www.example.com"
	with pytest.raises(ValidationError):
		CertificateRequest(domain="*.example.com")


def test_ok_response():
	assert ok_response() == {"status": "ok"}
	assert ok_response(message="done", data=[1], count=1) == {
		"status": "ok",
		"message": "done",
		"data": [1],
		"count": 1,
	}

#!/usr/bin/env python3
#
# certkeeper/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Timezone-aware time utilities."""

from __future__ import annotations

from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Optional


def utcnow() -> datetime:
	"""Return the current UTC time as a timezone-aware datetime."""
	return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
	"""Ensure a datetime is timezone-aware and in UTC.

	Raises:
		ValueError: If the datetime is naive (no timezone info)
	"""
	if dt is None:
		return None
	if dt.tzinfo is None:
		raise ValueError("Naive datetime not allowed - must be timezone-aware")
	return dt.astimezone(timezone.utc)


def parse_retry_after(value: Optional[str], now: Optional[datetime] = None) -> Optional[float]:
	"""Parse an HTTP ``Retry-After`` header into seconds.

	Accepts both delta-seconds and HTTP-date forms. Returns None when the
	header is absent or unparseable; never returns a negative delay.
	"""
	if not value:
		return None
	value = value.strip()
	if value.isdigit():
		return float(value)
	try:
		when = parsedate_to_datetime(value)
	except (TypeError, ValueError):
		return None
	if when.tzinfo is None:
		when = when.replace(tzinfo=timezone.utc)
	delta = (when - (now or utcnow())).total_seconds()
	return max(0.0, delta)

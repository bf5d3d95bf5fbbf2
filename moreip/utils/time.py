#!/usr/bin/env python3
#
# moreip/utils/time.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Timezone-aware time utilities."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional


def utcnow() -> datetime:
	"""Return the current UTC time as a timezone-aware datetime."""
	return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
	"""Ensure a datetime is timezone-aware and in UTC.
	
	Args:
		dt: A datetime object (may be naive or timezone-aware)
	
	Returns:
		The datetime converted to UTC, or None if input was None
	
	Raises:
		ValueError: If the datetime is naive (no timezone info)
	"""
	if dt is None:
		return None
	if dt.tzinfo is None:
		raise ValueError("Naive datetime not allowed - must be timezone-aware")
	return dt.astimezone(timezone.utc)


def to_store_precision(dt: datetime) -> datetime:
	"""Normalize a timestamp to whole-second UTC.

	Object stores report last-modified with one-second resolution while local
	filesystems carry nanoseconds. Both sides of a comparison go through here.

	Raises:
		ValueError: If ``dt`` is None or naive
	"""
	if dt is None:
		raise ValueError("Timestamp required")
	utc = ensure_utc(dt)
	if utc is None:
		raise ValueError("Timestamp required")
	return utc.replace(microsecond=0)


def from_mtime(mtime: float) -> datetime:
	"""Convert a POSIX ``st_mtime`` to a store-precision UTC datetime."""
	return to_store_precision(datetime.fromtimestamp(mtime, tz=timezone.utc))

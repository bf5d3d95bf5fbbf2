#!/usr/bin/env python3
#
# moreip/utils/rate_limit.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Rate limiting configuration using slowapi."""

from __future__ import annotations

from slowapi import Limiter
from slowapi.util import get_remote_address

# Rate limit presets
RATE_LIMIT_DEFAULT = "120/minute"  # Address echo, keyed by caller address


def create_limiter(*default_limits: str) -> Limiter:
	"""Build a limiter applied to every route through SlowAPIMiddleware.

	A fresh instance per app keeps in-memory buckets separate between the
	service and tests.
	"""
	return Limiter(
		key_func=get_remote_address,
		default_limits=list(default_limits or (RATE_LIMIT_DEFAULT,)),
	)


__all__ = [
	"RATE_LIMIT_DEFAULT",
	"create_limiter",
]

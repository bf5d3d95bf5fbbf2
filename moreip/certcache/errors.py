#!/usr/bin/env python3
#
# moreip/certcache/errors.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Exception hierarchy for certificate cache synchronization."""

from __future__ import annotations

from pathlib import Path

from .models import SyncAction

__all__ = [
	"CertCacheError",
	"StoreError",
	"StoreUnavailable",
	"NotFound",
	"ObjectNotFound",
	"AccessDenied",
	"QuotaExceeded",
	"FilesystemError",
	"CredentialError",
	"SyncError",
]


class CertCacheError(Exception):
	"""Base class for all certificate cache errors."""


class StoreError(CertCacheError):
	"""A remote object store operation failed."""

	def __init__(self, message: str, *, key: str | None = None, cause: BaseException | None = None):
		super().__init__(message)
		self.key = key
		self.cause = cause


class StoreUnavailable(StoreError):
	"""Store could not be reached, timed out, or answered with a server error."""


class NotFound(StoreError):
	"""Bucket does not exist."""


class ObjectNotFound(StoreError):
	"""Object key does not exist."""


class AccessDenied(StoreError):
	"""Credentials were rejected or lack permission."""


class QuotaExceeded(StoreError):
	"""Store throttled the request or a storage quota was hit."""


class FilesystemError(CertCacheError):
	"""Local cache directory or file could not be read or written."""

	def __init__(self, message: str, *, path: Path | str | None = None, cause: BaseException | None = None):
		super().__init__(message)
		self.path = Path(path) if path is not None else None
		self.cause = cause


class CredentialError(CertCacheError):
	"""No usable credentials could be resolved."""


class SyncError(CertCacheError):
	"""Executing a single pull or push decision failed."""

	def __init__(self, kind: SyncAction, name: str, cause: BaseException):
		super().__init__(f"{kind.value} {name}: {cause}")
		self.kind = kind
		self.name = name
		self.cause = cause

#!/usr/bin/env python3
#
# moreip/certcache/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate cache synchronization between a local directory and S3."""

from .engine import CacheSyncEngine, PassMode, PassReport
from .errors import (
	AccessDenied,
	CertCacheError,
	CredentialError,
	FilesystemError,
	NotFound,
	ObjectNotFound,
	QuotaExceeded,
	StoreError,
	StoreUnavailable,
	SyncError,
)
from .models import CachedFile, RemoteObject, SyncAction, SyncDecision
from .reconcile import reconcile
from .scheduler import SyncPhase, SyncScheduler

__all__ = [
	# Engine
	"CacheSyncEngine",
	"PassMode",
	"PassReport",
	"SyncPhase",
	"SyncScheduler",
	"reconcile",
	# Models
	"CachedFile",
	"RemoteObject",
	"SyncAction",
	"SyncDecision",
	# Errors
	"AccessDenied",
	"CertCacheError",
	"CredentialError",
	"FilesystemError",
	"NotFound",
	"ObjectNotFound",
	"QuotaExceeded",
	"StoreError",
	"StoreUnavailable",
	"SyncError",
]

#!/usr/bin/env python3
#
# moreip/certcache/models.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Snapshot records, sync decisions and the object key layout."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

__all__ = [
	"CachedFile",
	"RemoteObject",
	"SyncAction",
	"SyncDecision",
	"normalize_prefix",
	"object_key",
	"name_for_key",
]


class SyncAction(str, Enum):
	"""What a reconciliation pass does with one cache entry."""
	PULL = "pull"
	PUSH = "push"
	NONE = "none"


@dataclass(frozen=True)
class CachedFile:
	"""A regular file present in the local cache directory."""
	name: str
	mod_time: datetime
	size: int = 0


@dataclass(frozen=True)
class RemoteObject:
	"""An object stored under the configured bucket prefix."""
	key: str
	mod_time: datetime
	size: int = 0


@dataclass(frozen=True)
class SyncDecision:
	"""Decision for a single cache entry, computed fresh every pass."""
	name: str
	action: SyncAction
	key: str
	local_mod_time: Optional[datetime] = None
	remote_mod_time: Optional[datetime] = None


# ---------------------------------------------------------------------------
# Key layout: object key = "<prefix>/<filename>", always
# ---------------------------------------------------------------------------

def normalize_prefix(prefix: str) -> str:
	"""Strip surrounding slashes so joins never produce ``//``."""
	return (prefix or "").strip("/")


def object_key(prefix: str, name: str) -> str:
	"""Map a cache filename to its object key."""
	clean = normalize_prefix(prefix)
	return f"{clean}/{name}" if clean else name


def name_for_key(prefix: str, key: str) -> str | None:
	"""Map an object key back to a cache filename.

	Returns None for keys outside the prefix, "directory" placeholders and
	anything nested deeper than one level (the cache directory is flat).
	"""
	clean = normalize_prefix(prefix)
	if clean:
		head = f"{clean}/"
		if not key.startswith(head):
			return None
		name = key[len(head):]
	else:
		name = key
	if not name or "/" in name:
		return None
	return name

#!/usr/bin/env python3
#
# moreip/certcache/inspector.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Local certificate cache directory snapshots."""

from __future__ import annotations

import logging
import os
from pathlib import Path

from ..utils.time import from_mtime
from .errors import FilesystemError
from .models import CachedFile

_log = logging.getLogger(__name__)

__all__ = ["ensure_cache_dir", "snapshot"]


def ensure_cache_dir(directory: Path) -> Path:
	"""Create the cache directory (owner rwx) if it is missing.

	Raises:
		FilesystemError: If the path exists but is not a directory, or
			cannot be created.
	"""
	try:
		if directory.exists() and not directory.is_dir():
			raise FilesystemError(f"Path exists but is not a directory: {directory}", path=directory)
		if not directory.exists():
			directory.mkdir(mode=0o700, parents=True, exist_ok=True)
			_log.info("CERT_CACHE created directory %s", directory)
	except OSError as exc:
		raise FilesystemError(f"Cannot create cache directory {directory}: {exc}", path=directory, cause=exc) from exc
	return directory


def snapshot(directory: Path) -> set[CachedFile]:
	"""List regular, non-hidden files in the cache directory.

	A missing directory is created and yields an empty snapshot; first-run
	bootstrap is not an error.

	Raises:
		FilesystemError: On permission or I/O failures.
	"""
	ensure_cache_dir(directory)
	files: set[CachedFile] = set()
	try:
		with os.scandir(directory) as entries:
			for entry in entries:
				if entry.name.startswith("."):
					continue
				try:
					if not entry.is_file(follow_symlinks=False):
						continue
					st = entry.stat(follow_symlinks=False)
				except FileNotFoundError:
					continue  # Concurrent deletion, harmless
				files.add(CachedFile(name=entry.name, mod_time=from_mtime(st.st_mtime), size=st.st_size))
	except OSError as exc:
		raise FilesystemError(f"Cannot read cache directory {directory}: {exc}", path=directory, cause=exc) from exc
	return files

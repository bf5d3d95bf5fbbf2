#!/usr/bin/env python3
#
# moreip/certcache/fileops.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Per-entry file locks and atomic writes for the certificate cache directory."""

from __future__ import annotations

import contextlib
import fcntl
import os
import tempfile
from collections.abc import Callable, Iterator
from datetime import datetime
from pathlib import Path
from typing import BinaryIO, Optional

__all__ = [
	"LOCK_DIR_NAME",
	"validate_name",
	"entry_lock",
	"atomic_write",
	"atomic_write_bytes",
]

# Lives inside the cache directory; hidden entries are never synchronized.
LOCK_DIR_NAME = ".locks"


def validate_name(name: str) -> str:
	"""Reject names that would escape the flat cache directory or collide with
	lock/temp files."""
	if not name or name in (".", "..") or name.startswith(".") or "/" in name or "\\" in name or "\x00" in name:
		raise ValueError(f"Invalid cache entry name: {name!r}")
	return name


@contextlib.contextmanager
def entry_lock(cache_dir: Path, name: str) -> Iterator[None]:
	"""Hold an exclusive lock on one cache entry.

	flock() locks belong to the open file description, so this excludes other
	threads of this process as well as other processes sharing the directory.
	Released on every exit path (closing the descriptor drops the lock).
	"""
	validate_name(name)
	lock_dir = cache_dir / LOCK_DIR_NAME
	lock_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
	fd = os.open(lock_dir / f"{name}.lock", os.O_CREAT | os.O_RDWR, 0o600)
	try:
		fcntl.flock(fd, fcntl.LOCK_EX)
		yield
	finally:
		try:
			fcntl.flock(fd, fcntl.LOCK_UN)
		finally:
			os.close(fd)


def atomic_write(
	path: Path,
	fill: Callable[[BinaryIO], None],
	*,
	mode: int = 0o600,
	mtime: Optional[datetime] = None,
) -> int:
	"""Write a file via a hidden temp file in the same directory + os.replace.

	``fill`` receives the open temp file. Readers see either the previous
	content or the complete new content, never a partial write. When ``mtime``
	is given it is applied before the rename. Returns the number of bytes
	written.
	"""
	path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
	fd, tmp_path = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.", suffix=".tmp")
	try:
		with os.fdopen(fd, "wb") as f:
			fill(f)
			f.flush()
			os.fsync(f.fileno())
			size = f.tell()
		os.chmod(tmp_path, mode)
		if mtime is not None:
			ts = mtime.timestamp()
			os.utime(tmp_path, (ts, ts))
		# os.replace is atomic on the same filesystem
		os.replace(tmp_path, path)
	finally:
		with contextlib.suppress(FileNotFoundError):
			os.unlink(tmp_path)
	return size


def atomic_write_bytes(path: Path, data: bytes, *, mode: int = 0o600, mtime: Optional[datetime] = None) -> int:
	"""Atomically replace ``path`` with ``data``."""
	return atomic_write(path, lambda f: f.write(data), mode=mode, mtime=mtime)

#!/usr/bin/env python3
#
# moreip/certcache/engine.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Execution of reconciliation passes between the cache directory and the store."""

from __future__ import annotations

import contextlib
import logging
import os
import shutil
import stat
import threading
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional

from ..utils.time import from_mtime
from .errors import FilesystemError, StoreError, SyncError
from .fileops import atomic_write, entry_lock, validate_name
from .inspector import snapshot
from .models import SyncAction, SyncDecision
from .reconcile import reconcile
from .store import ObjectStore

_log = logging.getLogger(__name__)

__all__ = ["PassMode", "PassReport", "CacheSyncEngine"]

_COPY_CHUNK = 64 * 1024


class PassMode(str, Enum):
	"""Bootstrap passes only pull; steady-state passes pull and push."""
	BOOTSTRAP = "bootstrap"
	STEADY = "steady"


@dataclass
class PassReport:
	"""Outcome of one reconciliation pass."""
	mode: PassMode
	decisions: list[SyncDecision] = field(default_factory=list)
	pulled: list[str] = field(default_factory=list)
	pushed: list[str] = field(default_factory=list)
	skipped: list[str] = field(default_factory=list)
	errors: list[SyncError] = field(default_factory=list)
	listing_error: Optional[Exception] = None
	overlapped: bool = False  # Another pass still held the engine
	interrupted: bool = False  # Stop requested before all decisions ran

	@property
	def ok(self) -> bool:
		return (
			not self.errors
			and self.listing_error is None
			and not self.overlapped
			and not self.interrupted
		)

	@property
	def operations(self) -> int:
		return len(self.pulled) + len(self.pushed)


class CacheSyncEngine:
	"""Snapshot, reconcile and execute decisions for one cache directory.

	Blocking; the scheduler runs passes in a worker thread. Every
	read-then-upload and download-then-write sequence holds the entry lock
	shared with the certificate manager.
	"""

	def __init__(self, store: ObjectStore, cache_dir: Path, *, bucket: str, prefix: str):
		self.store = store
		self.cache_dir = Path(cache_dir)
		self.bucket = bucket
		self.prefix = prefix
		self._pass_lock = threading.Lock()
		self._stop = threading.Event()
		self._warned_not_regular: set[str] = set()

	@property
	def stopping(self) -> bool:
		return self._stop.is_set()

	def request_stop(self) -> None:
		"""Make the running pass (if any) and all later passes return before
		their next decision. The decision in progress completes."""
		self._stop.set()

	def run_pass(self, mode: PassMode) -> PassReport:
		"""Run one pass. Never raises for store or filesystem failures."""
		report = PassReport(mode=mode)
		if self._stop.is_set():
			report.interrupted = True
			return report
		if not self._pass_lock.acquire(blocking=False):
			_log.warning("CERT_SYNC pass mode=%s skipped: previous pass still running", mode.value)
			report.overlapped = True
			return report
		try:
			self._run(report)
		finally:
			self._pass_lock.release()
		return report

	def _run(self, report: PassReport) -> None:
		try:
			local = snapshot(self.cache_dir)
			remote = self.store.list_objects(self.bucket, self.prefix)
		except (StoreError, FilesystemError) as exc:
			_log.error("CERT_SYNC pass mode=%s aborted, listing failed: %s", report.mode.value, exc)
			report.listing_error = exc
			return

		report.decisions = reconcile(local, remote, prefix=self.prefix)
		for decision in report.decisions:
			if decision.action is SyncAction.NONE:
				continue
			if self._stop.is_set():
				_log.warning(
					"CERT_SYNC pass mode=%s interrupted by shutdown before name=%s",
					report.mode.value, decision.name,
				)
				report.interrupted = True
				break
			if decision.action is SyncAction.PUSH and report.mode is PassMode.BOOTSTRAP:
				_log.debug("CERT_SYNC bootstrap not pushing name=%s", decision.name)
				report.skipped.append(decision.name)
				continue
			if decision.action is SyncAction.PULL and self._not_regular(decision.name):
				report.skipped.append(decision.name)
				continue
			try:
				if decision.action is SyncAction.PULL:
					done = self.pull(decision)
					(report.pulled if done else report.skipped).append(decision.name)
				else:
					done = self.push(decision)
					(report.pushed if done else report.skipped).append(decision.name)
			except SyncError as exc:
				_log.error("CERT_SYNC %s failed name=%s cause=%s", exc.kind.value, exc.name, exc.cause)
				report.errors.append(exc)

		_log.info(
			"CERT_SYNC pass mode=%s entries=%d pulled=%d pushed=%d skipped=%d failed=%d interrupted=%s",
			report.mode.value,
			len(report.decisions),
			len(report.pulled),
			len(report.pushed),
			len(report.skipped),
			len(report.errors),
			report.interrupted,
		)

	def pull(self, decision: SyncDecision) -> bool:
		"""Download one object into the cache directory.

		Returns False when the local entry changed since the snapshot and is
		now at least as new as the remote copy.

		Raises:
			SyncError: kind=PULL, wrapping the store or filesystem failure.
		"""
		name = decision.name
		try:
			validate_name(name)
			path = self.cache_dir / name
			with entry_lock(self.cache_dir, name):
				if self._local_is_current(path, decision):
					_log.info("CERT_SYNC pull skipped name=%s (local changed since snapshot)", name)
					return False
				stream = self.store.get_object(self.bucket, decision.key)
				with contextlib.closing(stream):
					size = atomic_write(
						path,
						lambda f: shutil.copyfileobj(stream, f, _COPY_CHUNK),
						mtime=decision.remote_mod_time,
					)
		except Exception as exc:
			raise SyncError(SyncAction.PULL, name, exc) from exc
		_log.info("CERT_SYNC pull name=%s key=%s bytes=%d", name, decision.key, size)
		return True

	def push(self, decision: SyncDecision) -> bool:
		"""Upload one cache file to ``<prefix>/<name>``.

		Returns False when the file disappeared since the snapshot.

		Raises:
			SyncError: kind=PUSH, wrapping the store or filesystem failure.
		"""
		name = decision.name
		try:
			validate_name(name)
			path = self.cache_dir / name
			with entry_lock(self.cache_dir, name):
				try:
					f = open(path, "rb")
				except FileNotFoundError:
					_log.info("CERT_SYNC push skipped name=%s (file removed since snapshot)", name)
					return False
				with f:
					size = os.fstat(f.fileno()).st_size
					self.store.put_object(self.bucket, decision.key, f)
		except Exception as exc:
			raise SyncError(SyncAction.PUSH, name, exc) from exc
		_log.info("CERT_SYNC push name=%s key=%s bytes=%d", name, decision.key, size)
		return True

	@staticmethod
	def _local_is_current(path: Path, decision: SyncDecision) -> bool:
		try:
			st = path.stat()
		except FileNotFoundError:
			return False
		if decision.remote_mod_time is None:
			return True
		return from_mtime(st.st_mtime) >= decision.remote_mod_time

	def _not_regular(self, name: str) -> bool:
		"""True when ``name`` exists in the cache but is not a regular file.

		Such an entry never shows up in the snapshot, so it would be pulled
		again on every pass and the rename over it would fail each time.
		Warns once per name; clears the mark once the entry is gone.
		"""
		try:
			st = os.lstat(self.cache_dir / name)
		except FileNotFoundError:
			self._warned_not_regular.discard(name)
			return False
		except OSError:
			return False
		if stat.S_ISREG(st.st_mode):
			self._warned_not_regular.discard(name)
			return False
		if name not in self._warned_not_regular:
			self._warned_not_regular.add(name)
			_log.warning("CERT_SYNC pull skipped name=%s: local entry is not a regular file", name)
		else:
			_log.debug("CERT_SYNC pull skipped name=%s: local entry is not a regular file", name)
		return True

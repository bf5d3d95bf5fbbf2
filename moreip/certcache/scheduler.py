#!/usr/bin/env python3
#
# moreip/certcache/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Bootstrap and steady-state scheduling of certificate cache sync passes."""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Optional

from ..utils.scheduler import JobStatus, Scheduler
from .engine import CacheSyncEngine, PassMode, PassReport

_log = logging.getLogger(__name__)

__all__ = ["SyncPhase", "SyncScheduler"]

DEFAULT_INTERVAL_SECONDS = 30.0


class SyncPhase(str, Enum):
	BOOTSTRAPPING = "bootstrapping"
	STEADY_STATE = "steady_state"
	STOPPED = "stopped"


class SyncScheduler:
	"""Runs the pull-only bootstrap pass once, then a full pass every interval.

	Usage::

		sync = SyncScheduler(engine, interval=30, timeout=60, scheduler=scheduler)
		await sync.bootstrap()   # before the TLS listener binds
		await sync.start()       # starts the shared scheduler
		...
		await sync.stop()

	Passes run in a worker thread; the event loop only waits on them, bounded
	by ``timeout``. A failing pass never ends the loop.
	"""

	JOB_NAME = "cert-sync"

	def __init__(
		self,
		engine: CacheSyncEngine,
		*,
		interval: float = DEFAULT_INTERVAL_SECONDS,
		timeout: Optional[float] = None,
		scheduler: Optional[Scheduler] = None,
	):
		self._engine = engine
		self._interval = interval
		self._timeout = timeout if timeout is not None else max(60.0, interval)
		self._scheduler = scheduler or Scheduler()
		self._phase = SyncPhase.BOOTSTRAPPING
		self._registered = False
		self.last_report: Optional[PassReport] = None

	@property
	def phase(self) -> SyncPhase:
		return self._phase

	@property
	def scheduler(self) -> Scheduler:
		return self._scheduler

	async def _run(self, mode: PassMode) -> PassReport:
		report = await asyncio.to_thread(self._engine.run_pass, mode)
		self.last_report = report
		return report

	async def bootstrap(self) -> Optional[PassReport]:
		"""Pull anything remote-only into the local cache. Runs once.

		Returns None when the pass did not finish within the timeout; the
		service then starts with whatever is on disk.
		"""
		if self._phase is not SyncPhase.BOOTSTRAPPING:
			raise RuntimeError(f"Bootstrap already done (phase={self._phase.value})")
		_log.info("CERT_SYNC bootstrap starting dir=%s", self._engine.cache_dir)
		report: Optional[PassReport] = None
		try:
			report = await asyncio.wait_for(self._run(PassMode.BOOTSTRAP), timeout=self._timeout)
		except asyncio.TimeoutError:
			_log.error("CERT_SYNC bootstrap timed out after %.1fs, serving local cache", self._timeout)
		self._phase = SyncPhase.STEADY_STATE
		if report is not None:
			_log.info(
				"CERT_SYNC bootstrap finished pulled=%d failed=%d",
				len(report.pulled), len(report.errors),
			)
		return report

	async def steady_pass(self) -> PassReport:
		"""Run one full pass (pull and push)."""
		if self._phase is SyncPhase.BOOTSTRAPPING:
			raise RuntimeError("Steady-state pass requested before bootstrap")
		return await self._run(PassMode.STEADY)

	async def _tick(self) -> None:
		await self.steady_pass()

	def register(self) -> None:
		"""Add the sync job to the underlying scheduler (idempotent)."""
		if self._registered:
			return
		self._scheduler.add(
			self.JOB_NAME,
			interval_seconds=self._interval,
			func=self._tick,
			timeout=self._timeout,
		)
		self._registered = True

	async def start(self) -> None:
		"""Start the poll loop. Requires a completed bootstrap."""
		if self._phase is not SyncPhase.STEADY_STATE:
			raise RuntimeError(f"Cannot start sync loop in phase {self._phase.value}")
		self.register()
		await self._scheduler.start()

	async def stop(self, timeout: float = 5.0) -> None:
		"""Stop the poll loop, cancelling an in-flight wait after ``timeout``.

		The engine is told to stop first: a pass running in its worker thread
		finishes the decision in progress and executes no further ones.
		"""
		self._engine.request_stop()
		await self._scheduler.stop_graceful(timeout=timeout)
		self._phase = SyncPhase.STOPPED

	def status(self) -> list[JobStatus]:
		return self._scheduler.get_status()

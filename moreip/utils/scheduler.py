#!/usr/bin/env python3
#
# moreip/utils/scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Lightweight async background scheduler for periodic tasks."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Awaitable, Callable, TypedDict

_log = logging.getLogger(__name__)

__all__ = ["Scheduler", "JobStatus"]

# Minimum allowed interval to prevent CPU-pinning tight loops
_MIN_INTERVAL = 1.0
_MAX_BACKOFF = 300.0


class JobStatus(TypedDict):
	"""Status information for a scheduled job."""
	name: str
	interval_seconds: float
	last_success: str | None  # ISO timestamp of last successful run
	last_attempt: str | None  # ISO timestamp of last attempt (success or failure)
	last_error: str | None
	is_running: bool  # Task is active and not done
	run_count: int
	fail_count: int


@dataclass
class _Job:
	"""A scheduled repeating job (internal implementation detail)."""
	name: str
	interval_seconds: float
	func: Callable[[], Awaitable[None]]
	run_on_start: bool = False
	initial_delay: float = 0.0
	timeout: float | None = None  # Per-job execution timeout (None = no limit)
	backoff: bool = False  # Stretch the cadence after consecutive failures
	last_success: datetime | None = None
	last_attempt: datetime | None = None
	last_error: str | None = None
	run_count: int = 0
	fail_count: int = 0


class Scheduler:
	"""Simple async scheduler that runs jobs at fixed intervals.

	Usage::

		scheduler = Scheduler()
		scheduler.add("cert-sync", 30, sync_pass, timeout=60)

		await scheduler.start()          # on startup (async)
		await scheduler.stop_graceful()  # on shutdown (async)

	A failed or timed-out run is logged and the job fires again at its next
	regular slot. Jobs registered with ``backoff=True`` instead skip slots
	after consecutive failures (2^n seconds, capped at 5 minutes).
	"""

	def __init__(self) -> None:
		self._jobs: dict[str, _Job] = {}
		self._tasks: dict[str, asyncio.Task] = {}
		self._stop_event: asyncio.Event | None = None
		self._started = False

	@property
	def running(self) -> bool:
		return self._started

	def add(
		self,
		name: str,
		interval_seconds: float,
		func: Callable[[], Awaitable[None]],
		*,
		run_on_start: bool = False,
		initial_delay: float = 0.0,
		timeout: float | None = None,
		backoff: bool = False,
	) -> None:
		"""Register a periodic job.
		
		Args:
			name: Unique identifier for the job
			interval_seconds: Seconds between executions (minimum 1.0)
			func: Async callable to execute
			run_on_start: Execute once immediately on start (after initial_delay)
			initial_delay: Seconds to wait before first execution (requires run_on_start=True)
			timeout: Per-execution timeout in seconds (None = no limit)
			backoff: Apply exponential backoff after consecutive failures
		
		Raises:
			RuntimeError: If scheduler is already running
			ValueError: If name is duplicate, interval is invalid, or initial_delay without run_on_start
		"""
		if self._started:
			raise RuntimeError(f"Cannot add job {name!r} while scheduler is running")
		
		if name in self._jobs:
			raise ValueError(f"Job {name!r} is already registered")
		
		if interval_seconds < _MIN_INTERVAL:
			raise ValueError(
				f"interval_seconds must be ≥ {_MIN_INTERVAL}, got {interval_seconds}"
			)
		
		if initial_delay < 0:
			raise ValueError(f"initial_delay must be ≥ 0, got {initial_delay}")
		
		if initial_delay > 0 and not run_on_start:
			raise ValueError("initial_delay requires run_on_start=True")
		
		self._jobs[name] = _Job(
			name=name,
			interval_seconds=interval_seconds,
			func=func,
			run_on_start=run_on_start,
			initial_delay=initial_delay,
			timeout=timeout,
			backoff=backoff,
		)

	async def start(self) -> None:
		"""Start all registered jobs as background tasks.
		
		Must be called from within an async context (running event loop).
		"""
		if self._started:
			return
		
		self._started = True
		self._stop_event = asyncio.Event()
		
		for job in self._jobs.values():
			self._tasks[job.name] = asyncio.create_task(self._run_loop(job), name=f"job-{job.name}")
			_log.info("SCHEDULER job=%s interval=%ds started", job.name, job.interval_seconds)

	async def stop_graceful(self, timeout: float = 5.0) -> None:
		"""Gracefully stop all jobs, waiting up to timeout for clean exit.
		
		Phase 1: Set stop event and wait for tasks to finish gracefully.
		Phase 2: Cancel any stubborn tasks that didn't stop in time.
		"""
		if not self._started:
			return
		
		self._started = False
		
		if self._stop_event is not None:
			self._stop_event.set()
		
		pending = [t for t in self._tasks.values() if not t.done()]
		if pending:
			_log.info("SCHEDULER waiting for %d tasks to finish gracefully", len(pending))
			_, not_done = await asyncio.wait(pending, timeout=timeout)
			
			if not_done:
				_log.warning("SCHEDULER %d tasks did not stop gracefully, forcing cancel", len(not_done))
				for task in not_done:
					task.cancel()
				# Await cancelled tasks to prevent 'Task was destroyed' warnings
				await asyncio.gather(*not_done, return_exceptions=True)
		
		self._tasks.clear()
		_log.info("SCHEDULER stopped")

	async def _wait(self, stop_event: asyncio.Event, delay: float) -> bool:
		"""Sleep up to ``delay`` seconds. Returns True if stop was signalled."""
		try:
			await asyncio.wait_for(stop_event.wait(), timeout=max(0.0, delay))
			return True
		except asyncio.TimeoutError:
			return False

	def _next_slot(self, job: _Job, next_run: float, now: float, success: bool, failures: int) -> float:
		"""Compute the next run time, keeping the original rhythm."""
		if success or not job.backoff:
			if next_run <= now:
				# Skip missed intervals (prevents burst execution after long jobs)
				skipped = int((now - next_run) / job.interval_seconds)
				if skipped > 0:
					_log.warning("SCHEDULER job=%s skipped %d intervals", job.name, skipped)
				return next_run + (skipped + 1) * job.interval_seconds
			return next_run

		backoff = min(2.0 ** failures, _MAX_BACKOFF)
		_log.error(
			"SCHEDULER job=%s failed (%d consecutive), backing off %.0fs",
			job.name, failures, backoff,
		)
		backoff_until = now + backoff
		while next_run < backoff_until:
			next_run += job.interval_seconds
		return next_run

	async def _run_loop(self, job: _Job) -> None:
		"""Internal loop that executes a job at its interval."""
		assert self._stop_event is not None, "Bug: _run_loop called without start()"
		stop_event = self._stop_event
		loop = asyncio.get_running_loop()
		
		failures = 0
		next_run = loop.time() + (job.initial_delay if job.run_on_start else job.interval_seconds)
		if job.run_on_start and job.initial_delay > 0:
			_log.debug("SCHEDULER job=%s waiting %.1fs before first run", job.name, job.initial_delay)
		
		try:
			while self._started and not stop_event.is_set():
				if await self._wait(stop_event, next_run - loop.time()):
					break
				if not self._started:
					break
				
				success = await self._execute(job)
				failures = 0 if success else failures + 1
				next_run = self._next_slot(job, next_run, loop.time(), success, failures)
		except asyncio.CancelledError:
			_log.debug("SCHEDULER job=%s cancelled", job.name)
		except Exception:
			_log.exception("SCHEDULER job=%s fatal error in run loop", job.name)

	async def _execute(self, job: _Job) -> bool:
		"""Execute a single job with error handling and optional timeout.
		
		Returns:
			True if execution succeeded, False if it failed or timed out
		"""
		job.last_attempt = datetime.now(timezone.utc)
		try:
			_log.debug("SCHEDULER job=%s executing", job.name)
			
			if job.timeout is not None:
				await asyncio.wait_for(job.func(), timeout=job.timeout)
			else:
				await job.func()
			
			job.last_success = datetime.now(timezone.utc)
			job.last_error = None
			job.run_count += 1
			_log.debug("SCHEDULER job=%s completed (run #%d)", job.name, job.run_count)
			return True
		except asyncio.TimeoutError:
			job.fail_count += 1
			job.last_error = f"timed out after {job.timeout:.1f}s"
			_log.error("SCHEDULER job=%s timed out after %.1fs (fail #%d)", job.name, job.timeout, job.fail_count)
			return False
		except Exception as exc:
			job.fail_count += 1
			job.last_error = f"{type(exc).__name__}: {exc}"
			_log.exception("SCHEDULER job=%s failed (fail #%d)", job.name, job.fail_count)
			return False

	def get_status(self) -> list[JobStatus]:
		"""Return status of all jobs (for monitoring/logs)."""
		return [
			{
				"name": job.name,
				"interval_seconds": job.interval_seconds,
				"last_success": job.last_success.isoformat() if job.last_success else None,
				"last_attempt": job.last_attempt.isoformat() if job.last_attempt else None,
				"last_error": job.last_error,
				"is_running": job.name in self._tasks and not self._tasks[job.name].done(),
				"run_count": job.run_count,
				"fail_count": job.fail_count,
			}
			for job in self._jobs.values()
		]

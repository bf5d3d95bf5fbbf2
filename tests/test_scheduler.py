#!/usr/bin/env python3
#
# tests/test_scheduler.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

from __future__ import annotations

import asyncio

import pytest

from moreip.utils import scheduler as scheduler_mod
from moreip.utils.scheduler import Scheduler, _Job


@pytest.fixture
def fast_intervals(monkeypatch):
	monkeypatch.setattr(scheduler_mod, "_MIN_INTERVAL", 0.01)


def test_add_validations():
	sched = Scheduler()

	async def job():
		pass

	with pytest.raises(ValueError):
		sched.add("too-fast", 0.1, job)
	with pytest.raises(ValueError):
		sched.add("delayed", 5, job, initial_delay=1.0)
	sched.add("ok", 5, job)
	with pytest.raises(ValueError):
		sched.add("ok", 5, job)


@pytest.mark.asyncio
async def test_add_while_running_is_rejected():
	sched = Scheduler()

	async def job():
		pass

	sched.add("a", 60, job)
	await sched.start()
	try:
		with pytest.raises(RuntimeError):
			sched.add("b", 60, job)
	finally:
		await sched.stop_graceful()
	assert not sched.running


@pytest.mark.asyncio
async def test_failing_job_keeps_firing(fast_intervals):
	sched = Scheduler()
	calls = 0

	async def flaky():
		nonlocal calls
		calls += 1
		if calls == 1:
			raise RuntimeError("store unreachable")

	sched.add("flaky", 0.05, flaky)
	await sched.start()
	await asyncio.sleep(0.4)
	await sched.stop_graceful()

	status = sched.get_status()[0]
	assert status["fail_count"] == 1
	assert status["run_count"] >= 2
	assert status["last_error"] is None
	assert status["is_running"] is False


@pytest.mark.asyncio
async def test_job_timeout_is_a_failure(fast_intervals):
	sched = Scheduler()

	async def hangs():
		await asyncio.sleep(10)

	sched.add("hangs", 0.05, hangs, run_on_start=True, timeout=0.05)
	await sched.start()
	await asyncio.sleep(0.2)
	await sched.stop_graceful()

	status = sched.get_status()[0]
	assert status["fail_count"] >= 1
	assert "timed out" in status["last_error"]


@pytest.mark.asyncio
async def test_stop_interrupts_wait():
	sched = Scheduler()
	ran = False

	async def job():
		nonlocal ran
		ran = True

	sched.add("hourly", 3600, job)
	await sched.start()
	loop = asyncio.get_running_loop()
	started = loop.time()
	await sched.stop_graceful(timeout=1.0)

	assert loop.time() - started < 1.0
	assert not ran


@pytest.mark.asyncio
async def test_stop_cancels_stuck_job(fast_intervals):
	sched = Scheduler()

	async def stuck():
		await asyncio.sleep(10)

	sched.add("stuck", 60, stuck, run_on_start=True)
	await sched.start()
	await asyncio.sleep(0.05)
	await sched.stop_graceful(timeout=0.1)

	assert sched.get_status()[0]["is_running"] is False


def test_next_slot_skips_missed_intervals():
	sched = Scheduler()
	job = _Job(name="sync", interval_seconds=30, func=None)  # type: ignore[arg-type]

	assert sched._next_slot(job, 100.0, 175.0, True, 0) == 190.0
	assert sched._next_slot(job, 100.0, 90.0, True, 0) == 100.0
	# Failures without backoff keep the fixed cadence
	assert sched._next_slot(job, 100.0, 101.0, False, 3) == 130.0


def test_next_slot_backs_off_when_enabled():
	sched = Scheduler()
	job = _Job(name="renew", interval_seconds=1, func=None, backoff=True)  # type: ignore[arg-type]

	assert sched._next_slot(job, 100.0, 100.5, False, 4) >= 116.5
	# Capped at five minutes
	assert sched._next_slot(job, 100.0, 100.5, False, 30) < 100.5 + 302

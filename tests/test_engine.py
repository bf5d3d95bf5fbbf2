#!/usr/bin/env python3
#
# tests/test_engine.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

from __future__ import annotations

import hashlib
import io
import logging
import threading
import time

from conftest import BUCKET, PREFIX, MemoryObjectStore, ago, write_cache_file

from moreip.certcache.engine import CacheSyncEngine, PassMode
from moreip.certcache.errors import StoreUnavailable, SyncError
from moreip.certcache.fileops import atomic_write_bytes, entry_lock
from moreip.certcache.models import SyncAction, SyncDecision
from moreip.utils.time import from_mtime


def _actions(report) -> dict[str, SyncAction]:
	return {d.name: d.action for d in report.decisions}


def test_bootstrap_only_pulls(engine, store, cache_dir):
	store.seed("certs/a", b"cert-a", ago(300))
	store.seed("certs/b", b"cert-b", ago(200))

	report = engine.run_pass(PassMode.BOOTSTRAP)

	assert sorted(report.pulled) == ["a", "b"]
	assert report.pushed == []
	assert (cache_dir / "a").read_bytes() == b"cert-a"
	assert (cache_dir / "b").read_bytes() == b"cert-b"

	again = engine.run_pass(PassMode.STEADY)
	assert again.operations == 0
	assert set(_actions(again).values()) == {SyncAction.NONE}


def test_bootstrap_never_pushes_local_only_files(engine, store, cache_dir):
	write_cache_file(cache_dir, "half-written", b"", ago(10))

	report = engine.run_pass(PassMode.BOOTSTRAP)

	assert report.skipped == ["half-written"]
	assert store.puts == []
	assert report.ok


def test_pull_applies_remote_mod_time(engine, store, cache_dir):
	remote_time = ago(3600)
	store.seed("certs/moreip.test", b"pem", remote_time)

	engine.run_pass(PassMode.STEADY)

	assert from_mtime((cache_dir / "moreip.test").stat().st_mtime) == remote_time


def test_steady_pass_is_idempotent(engine, store, cache_dir):
	write_cache_file(cache_dir, "local-new", b"local", ago(30))
	write_cache_file(cache_dir, "shared", b"newer-here", ago(20))
	store.seed("certs/shared", b"older-there", ago(500))
	store.seed("certs/remote-only", b"remote", ago(100))

	first = engine.run_pass(PassMode.STEADY)
	assert sorted(first.pushed) == ["local-new", "shared"]
	assert first.pulled == ["remote-only"]
	assert store.data("certs/shared") == b"newer-here"

	second = engine.run_pass(PassMode.STEADY)
	assert second.operations == 0
	assert set(_actions(second).values()) == {SyncAction.NONE}


def test_remote_newer_does_not_overwrite_local(engine, store, cache_dir):
	write_cache_file(cache_dir, "moreip.test", b"local", ago(500))
	store.seed("certs/moreip.test", b"remote", ago(10))

	report = engine.run_pass(PassMode.STEADY)

	assert report.operations == 0
	assert (cache_dir / "moreip.test").read_bytes() == b"local"


def test_two_instances_converge(tmp_path, store):
	dir_x = tmp_path / "x"
	dir_y = tmp_path / "y"
	x = CacheSyncEngine(store, dir_x, bucket=BUCKET, prefix=PREFIX)
	y = CacheSyncEngine(store, dir_y, bucket=BUCKET, prefix=PREFIX)
	write_cache_file(dir_x, "cert1", b"renewed certificate", ago(5))
	store.seed("certs/cert1", b"stale certificate", ago(86400))

	assert x.run_pass(PassMode.STEADY).pushed == ["cert1"]
	assert y.run_pass(PassMode.STEADY).pulled == ["cert1"]

	assert (dir_x / "cert1").read_bytes() == (dir_y / "cert1").read_bytes() == b"renewed certificate"
	assert x.run_pass(PassMode.STEADY).operations == 0
	assert y.run_pass(PassMode.STEADY).operations == 0


def test_put_failure_is_contained(engine, store, cache_dir, caplog):
	write_cache_file(cache_dir, "cert1", b"one", ago(50))
	write_cache_file(cache_dir, "cert2", b"two", ago(50))
	store.seed("certs/cert3", b"three", ago(50))
	store.fail_put["certs/cert1"] = StoreUnavailable("store is down", key="certs/cert1")

	with caplog.at_level(logging.ERROR, logger="moreip.certcache.engine"):
		report = engine.run_pass(PassMode.STEADY)

	assert report.pushed == ["cert2"]
	assert report.pulled == ["cert3"]
	assert len(report.errors) == 1
	error = report.errors[0]
	assert isinstance(error, SyncError)
	assert error.kind is SyncAction.PUSH
	assert error.name == "cert1"
	assert isinstance(error.cause, StoreUnavailable)
	assert "CERT_SYNC push failed name=cert1" in caplog.text

	# Retried on the next pass once the store recovers
	del store.fail_put["certs/cert1"]
	assert engine.run_pass(PassMode.STEADY).pushed == ["cert1"]


def test_get_failure_is_contained(engine, store, cache_dir):
	store.seed("certs/a", b"a", ago(50))
	store.seed("certs/b", b"b", ago(50))
	store.fail_get["certs/a"] = StoreUnavailable("timeout", key="certs/a")

	report = engine.run_pass(PassMode.STEADY)

	assert report.pulled == ["b"]
	assert [(e.kind, e.name) for e in report.errors] == [(SyncAction.PULL, "a")]
	assert not (cache_dir / "a").exists()


def test_listing_failure_is_reported_not_raised(engine, store):
	store.fail_list = StoreUnavailable("no route to host")

	report = engine.run_pass(PassMode.STEADY)

	assert isinstance(report.listing_error, StoreUnavailable)
	assert report.decisions == []
	assert not report.ok


def test_empty_store_and_cache(engine):
	report = engine.run_pass(PassMode.BOOTSTRAP)
	assert report.decisions == []
	assert report.ok


def test_pull_skipped_when_local_became_current(engine, store, cache_dir):
	remote_time = ago(600)
	store.seed("certs/moreip.test", b"remote", remote_time)
	write_cache_file(cache_dir, "moreip.test", b"just issued", ago(1))
	decision = SyncDecision("moreip.test", SyncAction.PULL, "certs/moreip.test", None, remote_time)

	assert engine.pull(decision) is False
	assert (cache_dir / "moreip.test").read_bytes() == b"just issued"
	assert store.gets == []


def test_push_skipped_when_file_removed(engine, store, cache_dir):
	decision = SyncDecision("gone", SyncAction.PUSH, "certs/gone", ago(5), None)

	assert engine.push(decision) is False
	assert store.puts == []


def test_overlapping_pass_is_skipped(engine):
	engine._pass_lock.acquire()
	try:
		report = engine.run_pass(PassMode.STEADY)
	finally:
		engine._pass_lock.release()
	assert report.overlapped
	assert not report.ok


class _SlowStream(io.BytesIO):
	def read(self, size=-1):
		time.sleep(0.002)
		return super().read(min(size, 4096) if size and size > 0 else 4096)


class _SlowStore(MemoryObjectStore):
	def get_object(self, bucket, key):
		return _SlowStream(super().get_object(bucket, key).read())


def test_concurrent_writer_never_mixes_versions(tmp_path):
	store = _SlowStore()
	cache_dir = tmp_path / "certs"
	engine = CacheSyncEngine(store, cache_dir, bucket=BUCKET, prefix=PREFIX)
	version_a = b"A" * 256 * 1024
	version_b = b"B" * 256 * 1024
	valid = {hashlib.sha256(version_a).digest(), hashlib.sha256(version_b).digest()}
	store.seed("certs/cert1", version_a, ago(60))
	path = cache_dir / "cert1"
	decision = SyncDecision("cert1", SyncAction.PULL, "certs/cert1", None, ago(60))
	cache_dir.mkdir()

	stop = threading.Event()
	seen: list[bytes] = []

	def writer():
		for _ in range(5):
			with entry_lock(cache_dir, "cert1"):
				atomic_write_bytes(path, version_b)
			time.sleep(0.01)

	def reader():
		while not stop.is_set():
			try:
				seen.append(hashlib.sha256(path.read_bytes()).digest())
			except FileNotFoundError:
				pass

	threads = [
		threading.Thread(target=engine.pull, args=(decision,)),
		threading.Thread(target=writer),
	]
	watcher = threading.Thread(target=reader)
	watcher.start()
	for t in threads:
		t.start()
	for t in threads:
		t.join()
	stop.set()
	watcher.join()

	assert hashlib.sha256(path.read_bytes()).digest() in valid
	assert set(seen) <= valid


class _StopDuringGetStore(MemoryObjectStore):
	def __init__(self):
		super().__init__()
		self.engine = None

	def get_object(self, bucket, key):
		stream = super().get_object(bucket, key)
		self.engine.request_stop()
		return stream


def test_request_stop_ends_pass_after_current_decision(tmp_path, caplog):
	store = _StopDuringGetStore()
	cache_dir = tmp_path / "certs"
	engine = CacheSyncEngine(store, cache_dir, bucket=BUCKET, prefix=PREFIX)
	store.engine = engine
	for i in range(5):
		store.seed(f"certs/cert{i}", b"pem", ago(60))

	with caplog.at_level(logging.WARNING, logger="moreip.certcache.engine"):
		report = engine.run_pass(PassMode.STEADY)

	assert report.pulled == ["cert0"]
	assert store.gets == ["certs/cert0"]
	assert report.interrupted
	assert not report.ok
	assert "interrupted by shutdown" in caplog.text
	# Later passes do nothing once stopped
	again = engine.run_pass(PassMode.STEADY)
	assert again.interrupted and again.decisions == []
	assert store.gets == ["certs/cert0"]


def test_directory_in_place_of_remote_object_is_skipped(engine, store, cache_dir, caplog):
	store.seed("certs/moreip.test", b"pem", ago(60))
	(cache_dir / "moreip.test").mkdir(parents=True)

	with caplog.at_level(logging.WARNING, logger="moreip.certcache.engine"):
		first = engine.run_pass(PassMode.STEADY)
		second = engine.run_pass(PassMode.STEADY)

	for report in (first, second):
		assert report.errors == []
		assert report.skipped == ["moreip.test"]
		assert report.pulled == []
	assert store.gets == []
	warnings = [r for r in caplog.records if "not a regular file" in r.getMessage()]
	assert len(warnings) == 1
	assert (cache_dir / "moreip.test").is_dir()


def test_symlink_in_place_of_remote_object_is_skipped(engine, store, cache_dir, tmp_path):
	target = tmp_path / "elsewhere.pem"
	target.write_bytes(b"local")
	cache_dir.mkdir(parents=True)
	(cache_dir / "moreip.test").symlink_to(target)
	store.seed("certs/moreip.test", b"pem", ago(60))

	report = engine.run_pass(PassMode.STEADY)

	assert report.errors == []
	assert report.skipped == ["moreip.test"]
	assert target.read_bytes() == b"local"
	assert (cache_dir / "moreip.test").is_symlink()


def test_non_regular_entry_replaced_by_file_syncs_again(engine, store, cache_dir):
	store.seed("certs/moreip.test", b"pem", ago(60))
	entry = cache_dir / "moreip.test"
	entry.mkdir(parents=True)
	assert engine.run_pass(PassMode.STEADY).skipped == ["moreip.test"]

	entry.rmdir()
	report = engine.run_pass(PassMode.STEADY)

	assert report.pulled == ["moreip.test"]
	assert entry.read_bytes() == b"pem"

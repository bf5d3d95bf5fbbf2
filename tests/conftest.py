#!/usr/bin/env python3
#
# tests/conftest.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Shared fixtures: in-memory object store, cache helpers, test certificates."""

from __future__ import annotations

import io
import os
import threading
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import IO, Optional

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

from moreip.certcache.engine import CacheSyncEngine
from moreip.certcache.errors import NotFound, ObjectNotFound
from moreip.certcache.models import RemoteObject, normalize_prefix
from moreip.certcache.store import ObjectStore
from moreip.utils.time import to_store_precision, utcnow

BUCKET = "certs.moreip.test"
PREFIX = "certs"


class MemoryObjectStore(ObjectStore):
	"""Object store double keyed by (bucket, key) with per-key fault injection."""

	def __init__(self, buckets: tuple[str, ...] = (BUCKET,)):
		self.buckets = set(buckets)
		self.objects: dict[tuple[str, str], tuple[bytes, datetime]] = {}
		self.fail_list: Optional[Exception] = None
		self.fail_get: dict[str, Exception] = {}
		self.fail_put: dict[str, Exception] = {}
		self.puts: list[str] = []
		self.gets: list[str] = []
		self._lock = threading.Lock()

	def seed(self, key: str, data: bytes, mod_time: datetime, bucket: str = BUCKET) -> None:
		self.objects[(bucket, key)] = (data, to_store_precision(mod_time))

	def data(self, key: str, bucket: str = BUCKET) -> bytes:
		return self.objects[(bucket, key)][0]

	def mod_time(self, key: str, bucket: str = BUCKET) -> datetime:
		return self.objects[(bucket, key)][1]

	def list_objects(self, bucket: str, prefix: str) -> set[RemoteObject]:
		if self.fail_list is not None:
			raise self.fail_list
		if bucket not in self.buckets:
			raise NotFound(f"no such bucket {bucket}")
		clean = normalize_prefix(prefix)
		head = f"{clean}/" if clean else ""
		with self._lock:
			return {
				RemoteObject(key=key, mod_time=mod_time, size=len(data))
				for (b, key), (data, mod_time) in self.objects.items()
				if b == bucket and key.startswith(head)
			}

	def get_object(self, bucket: str, key: str) -> IO[bytes]:
		self.gets.append(key)
		if key in self.fail_get:
			raise self.fail_get[key]
		with self._lock:
			try:
				data, _ = self.objects[(bucket, key)]
			except KeyError:
				raise ObjectNotFound(f"no such key {key}", key=key) from None
		return io.BytesIO(data)

	def put_object(self, bucket: str, key: str, body: IO[bytes]) -> None:
		self.puts.append(key)
		if key in self.fail_put:
			raise self.fail_put[key]
		data = body.read()
		with self._lock:
			self.objects[(bucket, key)] = (data, to_store_precision(utcnow()))


def write_cache_file(cache_dir: Path, name: str, data: bytes, mod_time: Optional[datetime] = None) -> Path:
	cache_dir.mkdir(parents=True, exist_ok=True)
	path = cache_dir / name
	path.write_bytes(data)
	if mod_time is not None:
		ts = mod_time.timestamp()
		os.utime(path, (ts, ts))
	return path


def ago(seconds: float) -> datetime:
	return to_store_precision(utcnow() - timedelta(seconds=seconds))


def make_certificate(
	hostname: str,
	*,
	days_valid: float = 90,
	serial: Optional[int] = None,
) -> tuple[bytes, bytes]:
	"""Self-signed EC certificate for ``hostname``; returns (cert PEM, key PEM)."""
	key = ec.generate_private_key(ec.SECP256R1())
	name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, hostname)])
	now = datetime.now(timezone.utc)
	not_after = now + timedelta(days=days_valid)
	not_before = min(now, not_after) - timedelta(days=1)
	cert = (
		x509.CertificateBuilder()
		.subject_name(name)
		.issuer_name(name)
		.public_key(key.public_key())
		.serial_number(serial or x509.random_serial_number())
		.not_valid_before(not_before)
		.not_valid_after(not_after)
		.add_extension(x509.SubjectAlternativeName([x509.DNSName(hostname)]), critical=False)
		.sign(key, hashes.SHA256())
	)
	key_pem = key.private_bytes(
		encoding=serialization.Encoding.PEM,
		format=serialization.PrivateFormat.PKCS8,
		encryption_algorithm=serialization.NoEncryption(),
	)
	return cert.public_bytes(serialization.Encoding.PEM), key_pem


@pytest.fixture
def store() -> MemoryObjectStore:
	return MemoryObjectStore()


@pytest.fixture
def cache_dir(tmp_path: Path) -> Path:
	return tmp_path / "certs"


@pytest.fixture
def engine(store: MemoryObjectStore, cache_dir: Path) -> CacheSyncEngine:
	return CacheSyncEngine(store, cache_dir, bucket=BUCKET, prefix=PREFIX)

#!/usr/bin/env python3
#
# moreip/certs/manager.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate manager: host policy, SNI lookup, issuance and renewal.

Cache layout (flat, shared verbatim with the object store):

	<hostname>          PEM private key followed by the PEM certificate chain
	acme_account+key    PEM ACME account key

Every write holds the same per-entry lock the sync engine uses and lands via
temp file + rename, so the TLS path only ever loads complete files.
"""

from __future__ import annotations

import asyncio
import logging
import ssl
import threading
from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Optional

from cryptography import x509
from cryptography.hazmat.primitives import serialization
from cryptography.hazmat.primitives.asymmetric import ec

from ..certcache.fileops import atomic_write_bytes, entry_lock
from ..utils.time import utcnow
from .acme import ACMEClient, generate_account_key

_log = logging.getLogger(__name__)

__all__ = ["CertManager", "CertInfo", "ACCOUNT_KEY_NAME", "RENEW_BEFORE"]

ACCOUNT_KEY_NAME = "acme_account+key"
RENEW_BEFORE = timedelta(days=30)

_PEM_CERT_BEGIN = b"-----BEGIN CERTIFICATE-----"
_PEM_CERT_END = b"-----END CERTIFICATE-----"


@dataclass(frozen=True)
class CertInfo:
	"""Parsed leaf certificate metadata."""
	hostname: str
	not_before: datetime
	not_after: datetime
	serial: str

	def days_until_expiry(self, now: Optional[datetime] = None) -> int:
		return (self.not_after - (now or utcnow())).days


@dataclass
class _Loaded:
	context: ssl.SSLContext
	info: CertInfo
	mtime_ns: int


def _first_certificate(pem_data: bytes) -> x509.Certificate:
	"""Parse the leaf (first) certificate out of a key+chain bundle."""
	start = pem_data.find(_PEM_CERT_BEGIN)
	end = pem_data.find(_PEM_CERT_END, start)
	if start == -1 or end == -1:
		raise ValueError("No certificate block found")
	return x509.load_pem_x509_certificate(pem_data[start:end + len(_PEM_CERT_END)])


class CertManager:
	"""Serves certificates from the cache directory and obtains missing ones."""

	def __init__(
		self,
		cache_dir: Path,
		hostnames: Iterable[str],
		acme_directory: str,
		email: str = "",
		*,
		renew_before: timedelta = RENEW_BEFORE,
	):
		self.cache_dir = Path(cache_dir)
		self.hostnames = tuple(h.lower().rstrip(".") for h in hostnames)
		if not self.hostnames:
			raise ValueError("CertManager needs at least one hostname")
		self.acme_directory = acme_directory
		self.email = email
		self.renew_before = renew_before
		self._loaded: dict[str, _Loaded] = {}
		self._loaded_lock = threading.Lock()
		self._challenges: dict[str, str] = {}
		self._issue_locks: dict[str, asyncio.Lock] = {}
		self._pending: dict[str, asyncio.Task] = {}
		self._loop: Optional[asyncio.AbstractEventLoop] = None

	# ------------------------------------------------------------------
	# Host policy and HTTP-01 tokens
	# ------------------------------------------------------------------

	def allowed(self, hostname: Optional[str]) -> bool:
		return bool(hostname) and hostname.lower().rstrip(".") in self.hostnames  # type: ignore[union-attr]

	def challenge_response(self, token: str) -> Optional[str]:
		"""Key authorization for a pending HTTP-01 token, if any."""
		return self._challenges.get(token)

	def _publish(self, token: str, key_auth: str) -> None:
		self._challenges[token] = key_auth
		_log.debug("ACME challenge published token=%s", token)

	def _withdraw(self, token: str) -> None:
		self._challenges.pop(token, None)

	# ------------------------------------------------------------------
	# Cache files
	# ------------------------------------------------------------------

	def cert_path(self, hostname: str) -> Path:
		return self.cache_dir / hostname

	def _load(self, hostname: str) -> Optional[_Loaded]:
		"""Return the loaded certificate for ``hostname``, re-reading the cache
		file when its mtime changed (e.g. after a pull from the store)."""
		path = self.cert_path(hostname)
		try:
			mtime_ns = path.stat().st_mtime_ns
		except FileNotFoundError:
			with self._loaded_lock:
				self._loaded.pop(hostname, None)
			return None

		with self._loaded_lock:
			cached = self._loaded.get(hostname)
		if cached is not None and cached.mtime_ns == mtime_ns:
			return cached

		try:
			data = path.read_bytes()
			cert = _first_certificate(data)
			context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
			context.load_cert_chain(str(path))
		except FileNotFoundError:
			return None
		except (OSError, ValueError, ssl.SSLError) as exc:
			_log.warning("CERT_CACHE unusable certificate file %s: %s", path, exc)
			return None

		loaded = _Loaded(
			context=context,
			info=CertInfo(
				hostname=hostname,
				not_before=cert.not_valid_before_utc,
				not_after=cert.not_valid_after_utc,
				serial=format(cert.serial_number, "x"),
			),
			mtime_ns=mtime_ns,
		)
		with self._loaded_lock:
			self._loaded[hostname] = loaded
		_log.info(
			"CERT_CACHE loaded host=%s serial=%s expires=%s",
			hostname, loaded.info.serial, loaded.info.not_after.isoformat(),
		)
		return loaded

	def certificate_info(self, hostname: str) -> Optional[CertInfo]:
		loaded = self._load(hostname.lower())
		return loaded.info if loaded else None

	def is_due(self, info: Optional[CertInfo], now: Optional[datetime] = None) -> bool:
		"""Missing certificates and ones expiring within ``renew_before`` are due."""
		if info is None:
			return True
		return info.not_after - (now or utcnow()) <= self.renew_before

	def store_certificate(self, hostname: str, chain_pem: bytes, key_pem: bytes) -> Path:
		"""Write ``<hostname>`` (key first, then chain) under the entry lock."""
		path = self.cert_path(hostname)
		with entry_lock(self.cache_dir, hostname):
			atomic_write_bytes(path, key_pem + chain_pem, mode=0o600)
		_log.info("CERT_CACHE stored certificate host=%s", hostname)
		return path

	def load_or_create_account_key(self) -> ec.EllipticCurvePrivateKey:
		"""Load the shared ACME account key, creating it on first use."""
		path = self.cache_dir / ACCOUNT_KEY_NAME
		with entry_lock(self.cache_dir, ACCOUNT_KEY_NAME):
			if path.exists():
				key = serialization.load_pem_private_key(path.read_bytes(), password=None)
				if isinstance(key, ec.EllipticCurvePrivateKey):
					return key
				raise ValueError("ACME account key is not an EC key")
			key = generate_account_key()
			atomic_write_bytes(
				path,
				key.private_bytes(
					encoding=serialization.Encoding.PEM,
					format=serialization.PrivateFormat.PKCS8,
					encryption_algorithm=serialization.NoEncryption(),
				),
				mode=0o600,
			)
			_log.info("Created new ACME account key")
			return key

	# ------------------------------------------------------------------
	# TLS handshake path
	# ------------------------------------------------------------------

	def get_context(self, server_name: Optional[str]) -> Optional[ssl.SSLContext]:
		"""SSL context for a handshake, or None when no usable certificate exists."""
		hostname = (server_name or self.hostnames[0]).lower().rstrip(".")
		if hostname not in self.hostnames:
			return None
		loaded = self._load(hostname)
		if loaded is None or loaded.info.not_after <= utcnow():
			return None
		return loaded.context

	def sni_callback(self, sslobj: ssl.SSLObject, server_name: Optional[str], _ctx: ssl.SSLContext) -> Optional[int]:
		"""ssl.SSLContext.sni_callback: swap in the per-host context.

		A permitted host without a certificate triggers background issuance
		and fails this handshake. Runs on the event loop that also answers
		HTTP-01, so it never waits for issuance.
		"""
		context = self.get_context(server_name)
		if context is None:
			hostname = (server_name or self.hostnames[0]).lower().rstrip(".")
			if hostname in self.hostnames:
				self.request_issue(hostname)
			else:
				_log.debug("TLS rejected handshake for host=%r (not in host policy)", server_name)
			return ssl.ALERT_DESCRIPTION_UNRECOGNIZED_NAME
		sslobj.context = context
		return None

	def create_server_context(self) -> ssl.SSLContext:
		"""Base server context for the TLS listener; certificates come from SNI."""
		context = ssl.create_default_context(ssl.Purpose.CLIENT_AUTH)
		context.minimum_version = ssl.TLSVersion.TLSv1_2
		context.sni_callback = self.sni_callback
		return context

	# ------------------------------------------------------------------
	# Issuance
	# ------------------------------------------------------------------

	def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
		"""Event loop used for issuance requested from the handshake path."""
		self._loop = loop

	def request_issue(self, hostname: str) -> None:
		"""Schedule ``ensure_certificate`` in the background (thread-safe)."""
		if self._loop is None:
			_log.warning("ACME issuance for %s requested before the loop was attached", hostname)
			return
		self._loop.call_soon_threadsafe(self._start_issue, hostname)

	def _start_issue(self, hostname: str) -> None:
		task = self._pending.get(hostname)
		if task is not None and not task.done():
			return
		task = asyncio.ensure_future(self.ensure_certificate(hostname))
		self._pending[hostname] = task
		task.add_done_callback(lambda t, h=hostname: self._issue_done(h, t))

	def _issue_done(self, hostname: str, task: asyncio.Task) -> None:
		if self._pending.get(hostname) is task:
			del self._pending[hostname]
		if task.cancelled():
			return
		exc = task.exception()
		if exc is not None:
			_log.error("ACME issuance for %s failed: %s", hostname, exc)

	async def ensure_certificate(self, hostname: str) -> bool:
		"""Issue a certificate if the cached one is missing or due.

		Single-flight per host. Returns True if a new certificate was stored.
		"""
		hostname = hostname.lower().rstrip(".")
		if hostname not in self.hostnames:
			raise ValueError(f"Host {hostname!r} is not in the host policy")
		lock = self._issue_locks.setdefault(hostname, asyncio.Lock())
		async with lock:
			loaded = await asyncio.to_thread(self._load, hostname)
			if not self.is_due(loaded.info if loaded else None):
				return False
			_log.info(
				"ACME requesting certificate host=%s (%s)",
				hostname, "renewal" if loaded else "missing",
			)
			account_key = await asyncio.to_thread(self.load_or_create_account_key)
			async with ACMEClient(self.acme_directory, account_key) as client:
				chain_pem, key_pem = await client.issue(
					hostname,
					email=self.email,
					publish=self._publish,
					withdraw=self._withdraw,
				)
			await asyncio.to_thread(self.store_certificate, hostname, chain_pem, key_pem)
			await asyncio.to_thread(self._load, hostname)
			return True

	async def renew_due(self) -> None:
		"""Issue or renew every host that needs it; one failure does not stop the rest."""
		failed = 0
		for hostname in self.hostnames:
			try:
				await self.ensure_certificate(hostname)
			except Exception as exc:
				failed += 1
				_log.error("ACME renewal for %s failed: %s", hostname, exc)
		if failed:
			raise RuntimeError(f"{failed} of {len(self.hostnames)} certificates could not be renewed")

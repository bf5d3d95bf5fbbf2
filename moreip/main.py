#!/usr/bin/env python3
#
# moreip/main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""FastAPI application factories and service lifecycle wiring."""

from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional, Sequence

from fastapi import FastAPI
from slowapi import Limiter, _rate_limit_exceeded_handler
from slowapi.errors import RateLimitExceeded
from slowapi.middleware import SlowAPIMiddleware

from . import __version__
from .api import challenge as challenge_api
from .api import ip as ip_api
from .certcache.credentials import ChainCredentialsProvider
from .certcache.engine import CacheSyncEngine
from .certcache.errors import CredentialError, FilesystemError
from .certcache.inspector import ensure_cache_dir
from .certcache.scheduler import SyncScheduler
from .certcache.store import S3ObjectStore
from .certs.manager import CertManager
from .utils.config import Config, ConfigError, load_config
from .utils.rate_limit import create_limiter
from .utils.scheduler import Scheduler
from .utils.servers import build_server

_log = logging.getLogger(__name__)

# ANSI color codes for log levels (if TTY)
_LOG_COLORS = {
	"DEBUG": "\033[36m",    # Cyan
	"INFO": "\033[32m",     # Green
	"WARNING": "\033[33m",  # Yellow
	"ERROR": "\033[31m",    # Red
	"CRITICAL": "\033[35m", # Magenta
}
_RESET = "\033[0m"
_LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

_RENEWAL_JOB = "cert-renewal"
_RENEWAL_INTERVAL_SECONDS = 12 * 3600.0
_RENEWAL_TIMEOUT_SECONDS = 600.0
# Listeners must be up before the first HTTP-01 validation
_RENEWAL_INITIAL_DELAY_SECONDS = 5.0
_STOP_TIMEOUT_SECONDS = 5.0


class _ColoredFormatter(logging.Formatter):
	"""Custom formatter that adds color to log levels in TTY."""

	def format(self, record):
		orig_levelname = record.levelname
		if orig_levelname in _LOG_COLORS:
			record.levelname = f"{_LOG_COLORS[orig_levelname]}{orig_levelname:<8}{_RESET}"
		else:
			record.levelname = f"{orig_levelname:<8}"
		try:
			return super().format(record)
		finally:
			record.levelname = orig_levelname


def _setup_logging(log_level: str) -> None:
	"""Configure unified logging for the entire application."""
	level = getattr(logging, log_level.upper(), logging.INFO)

	if sys.stdout.isatty():
		formatter: logging.Formatter = _ColoredFormatter(fmt=_LOG_FORMAT, datefmt=_DATE_FORMAT)
	else:
		formatter = logging.Formatter(
			fmt="%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
			datefmt=_DATE_FORMAT,
		)

	# force=True removes any pre-existing handlers so every logger
	# inherits the same format.
	logging.basicConfig(
		level=level,
		handlers=[logging.StreamHandler(sys.stdout)],
		force=True,
	)
	for handler in logging.root.handlers:
		handler.setFormatter(formatter)

	# Make sure uvicorn loggers use the root handler & level
	for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
		logger = logging.getLogger(name)
		logger.handlers.clear()
		logger.setLevel(level)
		logger.propagate = True

	# Quiet down noisy third-party libraries
	for name in ("botocore", "boto3", "s3transfer", "urllib3", "httpcore", "httpx"):
		logging.getLogger(name).setLevel(logging.WARNING)


def create_app(limiter: Optional[Limiter] = None) -> FastAPI:
	"""Create the TLS-facing app answering with the caller's address."""
	app = FastAPI(
		title="moreip",
		version=__version__,
		docs_url=None,
		redoc_url=None,
		openapi_url=None,
	)

	# Rate limiting (default limits cover every route)
	app.state.limiter = limiter or create_limiter()
	app.add_exception_handler(RateLimitExceeded, _rate_limit_exceeded_handler)
	app.add_middleware(SlowAPIMiddleware)

	app.include_router(ip_api.router)
	return app


def create_challenge_app(cert_manager: CertManager) -> FastAPI:
	"""Create the plain-HTTP app: HTTP-01 responder plus HTTPS redirect."""
	app = FastAPI(
		title="moreip-challenge",
		version=__version__,
		docs_url=None,
		redoc_url=None,
		openapi_url=None,
	)
	app.state.cert_manager = cert_manager
	app.include_router(challenge_api.router)
	return app


async def serve(cfg: Config) -> None:
	"""Run the service until SIGINT/SIGTERM.

	Order: cache directory, credentials, bootstrap pull, listeners, then
	the periodic sync and renewal jobs.

	Raises:
		FilesystemError: If the cache directory cannot be created.
		CredentialError: If no credentials can be resolved.
	"""
	loop = asyncio.get_running_loop()

	cache_dir = ensure_cache_dir(cfg.cache_dir)
	credentials = ChainCredentialsProvider(cfg.region, profile=cfg.profile)
	await asyncio.to_thread(credentials.resolve)
	_log.info(
		"Using bucket=%s prefix=%r region=%s cache=%s",
		cfg.bucket, cfg.prefix, cfg.region, cache_dir,
	)

	store = S3ObjectStore(credentials, region=cfg.region, timeout=cfg.store_timeout)
	engine = CacheSyncEngine(store, cache_dir, bucket=cfg.bucket, prefix=cfg.prefix)
	scheduler = Scheduler()
	sync = SyncScheduler(engine, interval=cfg.sync_interval, scheduler=scheduler)
	await sync.bootstrap()

	cert_manager = CertManager(cache_dir, cfg.hostnames, cfg.acme_directory, cfg.acme_email)
	cert_manager.attach_loop(loop)
	_log.info("Serving hostnames: %s", ", ".join(cfg.hostnames))

	scheduler.add(
		_RENEWAL_JOB,
		_RENEWAL_INTERVAL_SECONDS,
		cert_manager.renew_due,
		run_on_start=True,
		initial_delay=_RENEWAL_INITIAL_DELAY_SECONDS,
		timeout=_RENEWAL_TIMEOUT_SECONDS,
		backoff=True,
	)

	https_server = build_server(
		create_app(),
		host=cfg.host,
		port=cfg.https_port,
		log_level=cfg.log_level,
		ssl_context=cert_manager.create_server_context(),
	)
	http_server = build_server(
		create_challenge_app(cert_manager),
		host=cfg.host,
		port=cfg.http_port,
		log_level=cfg.log_level,
	)
	servers = (https_server, http_server)

	def _request_stop(signame: str) -> None:
		_log.info("Received %s, shutting down", signame)
		for server in servers:
			server.should_exit = True

	for sig in (signal.SIGINT, signal.SIGTERM):
		loop.add_signal_handler(sig, _request_stop, sig.name)

	await sync.start()
	try:
		await asyncio.gather(*(server.serve() for server in servers))
	finally:
		# One listener failing to bind stops the other as well
		for server in servers:
			server.should_exit = True
		await sync.stop(timeout=_STOP_TIMEOUT_SECONDS)
		for sig in (signal.SIGINT, signal.SIGTERM):
			loop.remove_signal_handler(sig)
		_log.info("Shutdown complete")


def main(argv: Sequence[str] | None = None) -> int:
	"""Console entry point. Returns the process exit status."""
	try:
		cfg = load_config(argv)
	except ConfigError as exc:
		_setup_logging("INFO")
		_log.critical("Configuration error: %s", exc)
		return 1

	_setup_logging(cfg.log_level)
	_log.info("moreip %s starting for %s", __version__, cfg.domain)

	try:
		asyncio.run(serve(cfg))
	except (CredentialError, FilesystemError) as exc:
		_log.critical("Startup failed: %s", exc)
		return 1
	return 0


if __name__ == "__main__":
	sys.exit(main())

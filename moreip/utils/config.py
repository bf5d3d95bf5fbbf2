#!/usr/bin/env python3
#
# moreip/utils/config.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Configuration loading: command-line flags, then environment, then settings.env."""

from __future__ import annotations

import argparse
import logging
import os
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional, TypeVar

_log = logging.getLogger(__name__)

T = TypeVar("T")


class ConfigError(Exception):
	"""Raised when critical configuration is missing or invalid."""


# ---------------------------------------------------------------------------
# Defaults
# ---------------------------------------------------------------------------
ACME_DIRECTORY_PROD = "https://acme-v02.api.letsencrypt.org/directory"
ACME_DIRECTORY_STAGING = "https://acme-staging-v02.api.letsencrypt.org/directory"

DEFAULT_PREFIX = "certs"
DEFAULT_CACHE_DIR = "certs"
DEFAULT_PROFILE = "default"
DEFAULT_SYNC_INTERVAL = 30.0
DEFAULT_STORE_TIMEOUT = 20.0
DEFAULT_HTTP_PORT = 80
DEFAULT_HTTPS_PORT = 443

# The original flag default; treated as "not configured"
_DOMAIN_PLACEHOLDER = "example.com"
_ALLOWED_LEVELS = {"CRITICAL", "ERROR", "WARNING", "INFO", "DEBUG"}


@dataclass(frozen=True)
class Config:
	"""Resolved runtime configuration derived from flags, env and defaults."""
	domain: str
	bucket: str
	region: str
	prefix: str = DEFAULT_PREFIX
	profile: str = DEFAULT_PROFILE
	cache_dir: Path = Path(DEFAULT_CACHE_DIR)
	sync_interval: float = DEFAULT_SYNC_INTERVAL
	store_timeout: float = DEFAULT_STORE_TIMEOUT
	host: str = "0.0.0.0"
	http_port: int = DEFAULT_HTTP_PORT
	https_port: int = DEFAULT_HTTPS_PORT
	acme_directory: str = ACME_DIRECTORY_PROD
	acme_email: str = ""
	log_level: str = "INFO"

	@property
	def hostnames(self) -> tuple[str, ...]:
		"""Names eligible for a certificate: the domain and its ipv4/ipv6 labels."""
		return (self.domain, f"ipv4.{self.domain}", f"ipv6.{self.domain}")


def _parse_value(raw: str) -> str:
	"""Extract value, respecting quotes and stripping inline comments.
	
	Handles quoted values correctly (e.g., MOREIP_PREFIX="certs#prod")
	and only strips comments from unquoted values.
	"""
	raw = raw.strip()
	if raw and raw[0] in ('"', "'"):
		quote = raw[0]
		end = raw.find(quote, 1)
		if end != -1:
			return raw[1:end]
	# Unquoted: strip inline comments
	if " #" in raw:
		raw = raw.split(" #", 1)[0]
	return raw.strip()


def load_dotenv(dotenv_path: Path | None = None) -> None:
	"""Load simple KEY=VALUE pairs from settings.env.

	Behavior:
	- Ignores blank lines and comments (# ...)
	- Handles `export KEY=VALUE` syntax (common in shell-sourced files)
	- Respects quoted values (doesn't strip # inside quotes)
	- Does not override already-set environment variables
	"""
	project_root = Path(__file__).resolve().parents[2]
	dotenv_path = dotenv_path or (project_root / "settings.env")
	if not dotenv_path.exists():
		return
	for raw_line in dotenv_path.read_text(encoding="utf-8").splitlines():
		line = raw_line.strip()
		if not line or line.startswith("#"):
			continue
		if "=" not in line:
			continue
		key, value = line.split("=", 1)
		key = key.strip()
		
		if key.startswith("export "):
			key = key[7:].strip()
		
		value = _parse_value(value)
		if not key:
			continue
		os.environ.setdefault(key, value)


def build_parser() -> argparse.ArgumentParser:
	"""Command-line flags. Every flag defaults to None so env can fill in."""
	parser = argparse.ArgumentParser(
		prog="moreip",
		description="Report the caller's IP address over HTTPS with certificates shared through S3.",
	)
	parser.add_argument("-d", "--domain", help="fully qualified domain name (required)")
	parser.add_argument("-b", "--bucket", help="S3 bucket holding the shared certificate cache (required)")
	parser.add_argument("-r", "--region", help="AWS region of the bucket (required)")
	parser.add_argument("--prefix", help=f"object key prefix inside the bucket (default: {DEFAULT_PREFIX})")
	parser.add_argument("-p", "--profile", help=f"AWS shared credentials profile (default: {DEFAULT_PROFILE})")
	parser.add_argument("--cache-dir", help=f"local certificate cache directory (default: {DEFAULT_CACHE_DIR})")
	parser.add_argument("--sync-interval", help=f"seconds between sync passes (default: {DEFAULT_SYNC_INTERVAL:g})")
	parser.add_argument("--store-timeout", help=f"timeout in seconds for each S3 call (default: {DEFAULT_STORE_TIMEOUT:g})")
	parser.add_argument("--host", help="listen address (default: 0.0.0.0)")
	parser.add_argument("--http-port", help=f"plaintext challenge/redirect port (default: {DEFAULT_HTTP_PORT})")
	parser.add_argument("--https-port", help=f"TLS port (default: {DEFAULT_HTTPS_PORT})")
	parser.add_argument("--acme-directory", help="ACME directory URL (default: Let's Encrypt production)")
	parser.add_argument("--staging", action="store_true", default=None, help="use the Let's Encrypt staging directory")
	parser.add_argument("--email", help="ACME account contact email")
	parser.add_argument("--log-level", help="CRITICAL, ERROR, WARNING, INFO or DEBUG (default: INFO)")
	return parser


def _pick(flag: Optional[str], env: Mapping[str, str], *names: str, default: str = "") -> str:
	"""First non-empty of: flag, env vars in order, default."""
	if flag is not None and flag != "":
		return flag
	for name in names:
		value = env.get(name, "")
		if value:
			return value
	return default


def _convert(name: str, raw: str, conv: Callable[[str], T], minimum: float) -> T:
	try:
		value = conv(raw)
	except (TypeError, ValueError) as exc:
		raise ConfigError(f"Invalid value for {name}: {raw!r}") from exc
	if value < minimum:  # type: ignore[operator]
		raise ConfigError(f"{name} must be ≥ {minimum:g}, got {raw}")
	return value


def load_config(argv: Sequence[str] | None = None, environ: Mapping[str, str] | None = None) -> Config:
	"""Resolve configuration. Flags take precedence over environment variables.

	Raises:
		ConfigError: If domain, bucket or region is unset, or a numeric value
			is malformed. Raised before any network activity.
	"""
	if environ is None:
		load_dotenv()
		environ = os.environ
	args = build_parser().parse_args(argv)

	domain = _pick(args.domain, environ, "MOREIP_DOMAIN").strip().lower().rstrip(".")
	bucket = _pick(args.bucket, environ, "MOREIP_BUCKET").strip()
	region = _pick(args.region, environ, "MOREIP_REGION", "AWS_REGION").strip()

	missing = []
	if not domain or domain == _DOMAIN_PLACEHOLDER:
		missing.append("domain (-d/--domain or MOREIP_DOMAIN)")
	if not bucket:
		missing.append("bucket (-b/--bucket or MOREIP_BUCKET)")
	if not region:
		missing.append("region (-r/--region or MOREIP_REGION)")
	if missing:
		raise ConfigError("Refusing to start, required settings are not set: " + ", ".join(missing))

	if args.staging:
		default_directory = ACME_DIRECTORY_STAGING
	else:
		default_directory = ACME_DIRECTORY_PROD

	log_level = _pick(args.log_level, environ, "LOG_LEVEL", default="INFO").upper()
	if log_level not in _ALLOWED_LEVELS:
		log_level = "INFO"

	return Config(
		domain=domain,
		bucket=bucket,
		region=region,
		prefix=_pick(args.prefix, environ, "MOREIP_PREFIX", default=DEFAULT_PREFIX).strip("/"),
		profile=_pick(args.profile, environ, "MOREIP_PROFILE", default=DEFAULT_PROFILE),
		cache_dir=Path(_pick(args.cache_dir, environ, "MOREIP_CACHE_DIR", default=DEFAULT_CACHE_DIR)),
		sync_interval=_convert(
			"sync interval",
			_pick(args.sync_interval, environ, "MOREIP_SYNC_INTERVAL", default=str(DEFAULT_SYNC_INTERVAL)),
			float,
			1.0,
		),
		store_timeout=_convert(
			"store timeout",
			_pick(args.store_timeout, environ, "MOREIP_STORE_TIMEOUT", default=str(DEFAULT_STORE_TIMEOUT)),
			float,
			0.1,
		),
		host=_pick(args.host, environ, "MOREIP_HOST", default="0.0.0.0"),
		http_port=_convert(
			"http port",
			_pick(args.http_port, environ, "MOREIP_HTTP_PORT", default=str(DEFAULT_HTTP_PORT)),
			int,
			0,
		),
		https_port=_convert(
			"https port",
			_pick(args.https_port, environ, "MOREIP_HTTPS_PORT", default=str(DEFAULT_HTTPS_PORT)),
			int,
			0,
		),
		acme_directory=_pick(args.acme_directory, environ, "MOREIP_ACME_DIRECTORY", default=default_directory),
		acme_email=_pick(args.email, environ, "MOREIP_ACME_EMAIL"),
		log_level=log_level,
	)

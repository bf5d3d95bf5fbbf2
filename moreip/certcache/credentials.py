#!/usr/bin/env python3
#
# moreip/certcache/credentials.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Credential resolution for the remote object store.

Constructed once at startup and handed to the store client, so tests can
swap in a static provider instead of touching the real AWS chain.
"""

from __future__ import annotations

import logging
import os
from abc import ABC, abstractmethod
from collections.abc import Mapping
from typing import Optional

import boto3
from botocore.credentials import ReadOnlyCredentials
from botocore.exceptions import BotoCoreError, ProfileNotFound

from .errors import CredentialError

_log = logging.getLogger(__name__)

__all__ = ["CredentialsProvider", "ChainCredentialsProvider", "StaticCredentialsProvider"]

# Any of these means the environment hands us role/session credentials directly
_ENV_CREDENTIAL_VARS = (
	"AWS_ACCESS_KEY_ID",
	"AWS_CONTAINER_CREDENTIALS_RELATIVE_URI",
	"AWS_CONTAINER_CREDENTIALS_FULL_URI",
	"AWS_WEB_IDENTITY_TOKEN_FILE",
)


class CredentialsProvider(ABC):
	"""Resolves credentials and builds sessions for the object store."""

	@abstractmethod
	def session(self) -> boto3.Session:
		"""Return a session bound to the resolved credentials and region."""

	def resolve(self) -> ReadOnlyCredentials:
		"""Resolve the current credentials.

		Raises:
			CredentialError: If no usable credentials are available.
		"""
		try:
			creds = self.session().get_credentials()
			if creds is None:
				raise CredentialError("No AWS credentials found")
			return creds.get_frozen_credentials()
		except BotoCoreError as exc:
			raise CredentialError(f"Cannot resolve AWS credentials: {exc}") from exc


class ChainCredentialsProvider(CredentialsProvider):
	"""Environment-provided credentials first, then a named shared profile.

	Falls back to the default botocore chain (instance/task role) when the
	profile does not exist.
	"""

	def __init__(self, region: str, profile: Optional[str] = None, environ: Mapping[str, str] | None = None):
		self._region = region
		self._profile = profile or None
		self._environ = os.environ if environ is None else environ
		self._session: boto3.Session | None = None

	def session(self) -> boto3.Session:
		if self._session is None:
			self._session = self._build()
		return self._session

	def _candidates(self) -> list[Optional[str]]:
		candidates: list[Optional[str]] = []
		if any(self._environ.get(var) for var in _ENV_CREDENTIAL_VARS):
			candidates.append(None)
		if self._profile:
			candidates.append(self._profile)
		if None not in candidates:
			candidates.append(None)
		return candidates

	def _build(self) -> boto3.Session:
		last_error: Exception | None = None
		for profile in self._candidates():
			try:
				session = boto3.Session(profile_name=profile, region_name=self._region)
				creds = session.get_credentials()
			except ProfileNotFound as exc:
				_log.debug("AWS profile %r not found, trying next source", profile)
				last_error = exc
				continue
			except BotoCoreError as exc:
				_log.warning("AWS credential source %r failed: %s", profile or "environment", exc)
				last_error = exc
				continue
			if creds is not None:
				_log.info(
					"AWS credentials resolved (source=%s, method=%s, region=%s)",
					profile or "environment",
					getattr(creds, "method", "unknown"),
					self._region,
				)
				return session
		detail = f": {last_error}" if last_error else ""
		raise CredentialError(f"No usable AWS credentials (profile={self._profile!r}){detail}")


class StaticCredentialsProvider(CredentialsProvider):
	"""Fixed access key credentials (explicit configuration and tests)."""

	def __init__(
		self,
		region: str,
		access_key_id: str,
		secret_access_key: str,
		session_token: Optional[str] = None,
	):
		if not access_key_id or not secret_access_key:
			raise CredentialError("Static credentials require an access key id and secret")
		self._session = boto3.Session(
			aws_access_key_id=access_key_id,
			aws_secret_access_key=secret_access_key,
			aws_session_token=session_token,
			region_name=region,
		)

	def session(self) -> boto3.Session:
		return self._session

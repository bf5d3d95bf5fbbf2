#!/usr/bin/env python3
#
# moreip/certcache/store.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Remote object store client (list/get/put under a bucket prefix)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from datetime import datetime
from typing import IO, Optional

from botocore.config import Config as BotoConfig
from botocore.exceptions import (
	BotoCoreError,
	ClientError,
	ConnectTimeoutError,
	EndpointConnectionError,
	NoCredentialsError,
	ReadTimeoutError,
)

from ..utils.time import to_store_precision
from .credentials import CredentialsProvider
from .errors import (
	AccessDenied,
	NotFound,
	ObjectNotFound,
	QuotaExceeded,
	StoreError,
	StoreUnavailable,
)
from .models import RemoteObject, normalize_prefix

_log = logging.getLogger(__name__)

__all__ = ["ObjectStore", "S3ObjectStore", "translate_error"]

DEFAULT_TIMEOUT_SECONDS = 20.0

_ERROR_CODE_MAP: dict[str, type[StoreError]] = {
	"NoSuchKey": ObjectNotFound,
	"404": ObjectNotFound,
	"NotFound": ObjectNotFound,
	"NoSuchBucket": NotFound,
	"AccessDenied": AccessDenied,
	"403": AccessDenied,
	"AllAccessDisabled": AccessDenied,
	"InvalidAccessKeyId": AccessDenied,
	"SignatureDoesNotMatch": AccessDenied,
	"ExpiredToken": AccessDenied,
	"InvalidToken": AccessDenied,
	"QuotaExceeded": QuotaExceeded,
	"ServiceQuotaExceededException": QuotaExceeded,
	"SlowDown": QuotaExceeded,
	"Throttling": QuotaExceeded,
	"TooManyRequests": QuotaExceeded,
	"429": QuotaExceeded,
	"ServiceUnavailable": StoreUnavailable,
	"InternalError": StoreUnavailable,
	"RequestTimeout": StoreUnavailable,
	"500": StoreUnavailable,
	"503": StoreUnavailable,
}


def translate_error(error: Exception, key: str | None = None) -> StoreError:
	"""Map a botocore exception onto the store error taxonomy."""
	if isinstance(error, StoreError):
		return error
	if isinstance(error, ClientError):
		code = str(error.response.get("Error", {}).get("Code", ""))
		exc_cls = _ERROR_CODE_MAP.get(code, StoreUnavailable)
		return exc_cls(str(error), key=key, cause=error)
	if isinstance(error, NoCredentialsError):
		return AccessDenied(str(error), key=key, cause=error)
	if isinstance(error, (EndpointConnectionError, ConnectTimeoutError, ReadTimeoutError, BotoCoreError)):
		return StoreUnavailable(str(error), key=key, cause=error)
	return StoreUnavailable(f"{type(error).__name__}: {error}", key=key, cause=error)


class ObjectStore(ABC):
	"""Minimal list/get/put capability over a bucket.

	Implementations hold connection configuration only, no cached state.
	"""

	@abstractmethod
	def list_objects(self, bucket: str, prefix: str) -> set[RemoteObject]:
		"""List objects under ``prefix``. An empty or absent prefix yields an
		empty set, not an error.

		Raises:
			StoreUnavailable, NotFound, AccessDenied
		"""

	@abstractmethod
	def get_object(self, bucket: str, key: str) -> IO[bytes]:
		"""Open a readable stream over the object's content. Caller closes it.

		Raises:
			StoreUnavailable, ObjectNotFound, AccessDenied
		"""

	@abstractmethod
	def put_object(self, bucket: str, key: str, body: IO[bytes]) -> None:
		"""Upload ``body`` as ``key`` (last writer wins).

		Raises:
			StoreUnavailable, AccessDenied, QuotaExceeded
		"""


class _StreamingBody:
	"""Wraps a botocore StreamingBody so read failures surface as StoreError."""

	def __init__(self, body, key: str):
		self._body = body
		self._key = key

	def read(self, amt: Optional[int] = None) -> bytes:
		try:
			return self._body.read(amt) if amt is not None else self._body.read()
		except Exception as exc:
			raise translate_error(exc, self._key) from exc

	def close(self) -> None:
		self._body.close()


class S3ObjectStore(ObjectStore):
	"""S3 implementation with bounded connect/read timeouts and retries."""

	def __init__(
		self,
		credentials: CredentialsProvider,
		*,
		region: str,
		timeout: float = DEFAULT_TIMEOUT_SECONDS,
		endpoint_url: str | None = None,
	):
		config = BotoConfig(
			region_name=region,
			signature_version="s3v4",
			connect_timeout=timeout,
			read_timeout=timeout,
			retries={"max_attempts": 3, "mode": "standard"},
		)
		kwargs: dict = {"config": config}
		if endpoint_url:
			kwargs["endpoint_url"] = endpoint_url
		self._client = credentials.session().client("s3", **kwargs)

	def list_objects(self, bucket: str, prefix: str) -> set[RemoteObject]:
		clean = normalize_prefix(prefix)
		list_prefix = f"{clean}/" if clean else ""
		result: set[RemoteObject] = set()
		try:
			paginator = self._client.get_paginator("list_objects_v2")
			for page in paginator.paginate(Bucket=bucket, Prefix=list_prefix):
				for obj in page.get("Contents", []):
					last_modified: datetime = obj["LastModified"]
					result.add(RemoteObject(
						key=obj["Key"],
						mod_time=to_store_precision(last_modified),
						size=int(obj.get("Size", 0)),
					))
		except Exception as exc:
			raise translate_error(exc) from exc
		_log.debug("S3 list bucket=%s prefix=%s objects=%d", bucket, list_prefix, len(result))
		return result

	def get_object(self, bucket: str, key: str) -> IO[bytes]:
		try:
			response = self._client.get_object(Bucket=bucket, Key=key)
		except Exception as exc:
			raise translate_error(exc, key) from exc
		return _StreamingBody(response["Body"], key)  # type: ignore[return-value]

	def put_object(self, bucket: str, key: str, body: IO[bytes]) -> None:
		try:
			self._client.put_object(Bucket=bucket, Key=key, Body=body)
		except Exception as exc:
			raise translate_error(exc, key) from exc
		_log.debug("S3 put bucket=%s key=%s", bucket, key)

#!/usr/bin/env python3
#
# moreip/utils/servers.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""uvicorn wrappers for running several servers inside one event loop."""

from __future__ import annotations

import contextlib
import ssl
from typing import Any, Iterator, Optional

import uvicorn

__all__ = ["EmbeddedServer", "TLSConfig", "build_server"]

_GRACEFUL_SHUTDOWN_SECONDS = 10


class TLSConfig(uvicorn.Config):
	"""uvicorn config that serves TLS from a prebuilt ``ssl.SSLContext``.

	uvicorn only builds contexts from key/cert file paths; certificates here
	are chosen per handshake by an SNI callback on ``ssl_context``.
	"""

	def __init__(self, app: Any, *, ssl_context: Optional[ssl.SSLContext] = None, **kwargs: Any):
		super().__init__(app, **kwargs)
		self.ssl_context = ssl_context

	def load(self) -> None:
		super().load()
		if self.ssl_context is not None:
			self.ssl = self.ssl_context


class EmbeddedServer(uvicorn.Server):
	"""uvicorn server that leaves signal handling to the caller.

	Shutdown is requested by setting ``should_exit``.
	"""

	@contextlib.contextmanager
	def capture_signals(self) -> Iterator[None]:
		yield

	def install_signal_handlers(self) -> None:
		return None


def build_server(
	app: Any,
	*,
	host: str,
	port: int,
	log_level: str = "info",
	ssl_context: Optional[ssl.SSLContext] = None,
) -> EmbeddedServer:
	"""Create an embedded server; logging goes through the root handler."""
	config = TLSConfig(
		app,
		host=host,
		port=port,
		ssl_context=ssl_context,
		log_config=None,
		log_level=log_level.lower(),
		proxy_headers=False,
		server_header=False,
		timeout_graceful_shutdown=_GRACEFUL_SHUTDOWN_SECONDS,
	)
	return EmbeddedServer(config)

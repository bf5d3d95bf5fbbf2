#!/usr/bin/env python3
#
# moreip/api/challenge.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Plain-HTTP listener: ACME HTTP-01 responder and HTTPS redirect."""

from __future__ import annotations

import logging
import re

from fastapi import APIRouter, HTTPException, Request
from fastapi.responses import PlainTextResponse, RedirectResponse

_log = logging.getLogger(__name__)

router = APIRouter(tags=["acme"])

_TOKEN_RE = re.compile(r"^[A-Za-z0-9_\-]+$")


@router.get("/.well-known/acme-challenge/{token}", response_class=PlainTextResponse)
async def serve_challenge(token: str, request: Request) -> str:
	"""Serve the key authorization for a pending HTTP-01 challenge."""
	# Validate token format to prevent log spam
	if not _TOKEN_RE.match(token):
		raise HTTPException(status_code=404, detail="Invalid token format")

	key_auth = request.app.state.cert_manager.challenge_response(token)
	if not key_auth:
		_log.debug("ACME unknown challenge token=%s", token)
		raise HTTPException(status_code=404, detail="Challenge not found")
	return key_auth


def _https_target(request: Request) -> str:
	host = request.headers.get("host", "") or request.url.hostname or ""
	# Drop the plain-HTTP port; an IPv6 literal keeps its brackets
	if host.startswith("["):
		host = host[: host.find("]") + 1]
	else:
		host = host.split(":", 1)[0]
	target = f"https://{host}{request.url.path}"
	if request.url.query:
		target += f"?{request.url.query}"
	return target


@router.api_route(
	"/{path:path}",
	methods=["GET", "HEAD", "POST", "PUT", "PATCH", "DELETE", "OPTIONS"],
	include_in_schema=False,
)
async def redirect_to_https(request: Request, path: str = ""):
	"""GET/HEAD go to the HTTPS origin; anything else is refused."""
	if request.method not in ("GET", "HEAD"):
		return PlainTextResponse("Use HTTPS\n", status_code=400)
	return RedirectResponse(_https_target(request), status_code=302)

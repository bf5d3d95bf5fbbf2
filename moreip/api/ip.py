#!/usr/bin/env python3
#
# moreip/api/ip.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Caller address echo."""

from __future__ import annotations

import ipaddress

from fastapi import APIRouter, Request
from fastapi.responses import PlainTextResponse

router = APIRouter(tags=["ip"])


def client_address(request: Request) -> str:
	"""Peer address of the connection: no port, IPv6 without brackets."""
	if request.client is None:
		return ""
	host = request.client.host.strip("[]")
	try:
		ip = ipaddress.ip_address(host)
	except ValueError:
		return host
	# Dual-stack sockets report IPv4 peers as ::ffff:a.b.c.d
	if isinstance(ip, ipaddress.IPv6Address) and ip.ipv4_mapped is not None:
		return str(ip.ipv4_mapped)
	return str(ip)


@router.get("/{path:path}", response_class=PlainTextResponse)
async def whats_my_ip(request: Request, path: str = "") -> str:
	"""Return the caller's address followed by a newline, for any path."""
	return client_address(request) + "\n"

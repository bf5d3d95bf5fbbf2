#!/usr/bin/env python3
#
# moreip/certcache/reconcile.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Pure reconciliation of a local cache snapshot against a remote snapshot."""

from __future__ import annotations

import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Optional

from .models import CachedFile, RemoteObject, SyncAction, SyncDecision, name_for_key, object_key

_log = logging.getLogger(__name__)

__all__ = ["decide", "reconcile", "pending"]


def decide(local_mtime: Optional[datetime], remote_mtime: Optional[datetime]) -> SyncAction:
	"""Apply the decision table to one name.

	Equal timestamps count as synchronized, otherwise every poll would
	push or pull the same entry again.
	"""
	if local_mtime is None and remote_mtime is None:
		return SyncAction.NONE
	if local_mtime is None:
		return SyncAction.PULL
	if remote_mtime is None:
		return SyncAction.PUSH
	if local_mtime > remote_mtime:
		return SyncAction.PUSH
	return SyncAction.NONE


def reconcile(
	local: Iterable[CachedFile],
	remote: Iterable[RemoteObject],
	*,
	prefix: str,
) -> list[SyncDecision]:
	"""Compute exactly one decision per name in local ∪ remote, ordered by name.

	Remote keys that do not map to a flat filename under ``prefix`` are
	ignored.
	"""
	local_by_name: dict[str, datetime] = {f.name: f.mod_time for f in local}
	remote_by_name: dict[str, datetime] = {}
	for obj in remote:
		name = name_for_key(prefix, obj.key)
		if name is None:
			_log.debug("CERT_SYNC ignoring foreign key=%s", obj.key)
			continue
		remote_by_name[name] = obj.mod_time

	decisions: list[SyncDecision] = []
	for name in sorted(local_by_name.keys() | remote_by_name.keys()):
		local_mtime = local_by_name.get(name)
		remote_mtime = remote_by_name.get(name)
		decisions.append(SyncDecision(
			name=name,
			action=decide(local_mtime, remote_mtime),
			key=object_key(prefix, name),
			local_mod_time=local_mtime,
			remote_mod_time=remote_mtime,
		))
	return decisions


def pending(decisions: Iterable[SyncDecision], *, pull_only: bool = False) -> list[SyncDecision]:
	"""Filter decisions down to the ones that need work."""
	allowed = {SyncAction.PULL} if pull_only else {SyncAction.PULL, SyncAction.PUSH}
	return [d for d in decisions if d.action in allowed]

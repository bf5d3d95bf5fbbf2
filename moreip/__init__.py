#!/usr/bin/env python3
#
# moreip/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""moreip: caller-address echo over HTTPS with a shared certificate cache."""

__version__ = "0.1.0"

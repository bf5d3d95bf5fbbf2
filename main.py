#!/usr/bin/env python3
#
# main.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

# moreip - what is my IP, over HTTPS, with a shared certificate cache
# Local development entry point
#

import sys

from moreip.main import main

if __name__ == "__main__":
	sys.exit(main(sys.argv[1:]))

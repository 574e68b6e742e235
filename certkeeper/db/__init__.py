#!/usr/bin/env python3
#
# certkeeper/db/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""SQLite persistence for challenge tokens and domain records."""

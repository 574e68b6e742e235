#!/usr/bin/env python3
#
# certkeeper/api/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""HTTP routes for the challenge solver and the admin API."""

#!/usr/bin/env python3
#
# certkeeper/acme/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""ACME protocol client, issuance flow and HTTP-01 solver."""

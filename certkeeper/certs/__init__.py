#!/usr/bin/env python3
#
# certkeeper/certs/__init__.py
# Copyright (C) 2025-2026 Gill-Bates http://github.com/Gill-Bates
#

"""Certificate manager, key material storage and domain locks."""

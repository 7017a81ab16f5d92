#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
tradesqueeze package

Internal modules for tradeSqueeze.py: Polygon trade retrieval, file storage
and pattern table files. The substitution codec itself lives in
trade_text_compression.py.
"""

from __future__ import annotations

__version__ = "1.0.0"

#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Pattern table files and candidate table suggestion.

A table file is JSON:

    {"id": 2, "name": "msft-nasdaq", "patterns": [[",\\"z\\":3}", 128], ...]}

Pattern order in the file is the order used when encoding.
"""

from __future__ import annotations

import json
import os
from collections import Counter
from typing import Dict, List, Optional, Tuple

from trade_text_compression import PatternTable, pattern_text
from tradesqueeze.storage import ConfigError, discard_tmp

DEFAULT_SAMPLE_BYTES = 1_000_000


def table_to_dict(table: PatternTable) -> Dict[str, object]:
    return {
        "id": table.table_id,
        "name": table.name,
        "patterns": [[pattern_text(p), s] for p, s in table.entries],
    }


def table_from_dict(data: object, source: str = "<table>") -> PatternTable:
    if not isinstance(data, dict):
        raise ConfigError(f"{source}: table must be a JSON object")
    table_id = data.get("id")
    if not isinstance(table_id, int) or isinstance(table_id, bool):
        raise ConfigError(f"{source}: 'id' must be an integer")
    patterns = data.get("patterns")
    if not isinstance(patterns, list):
        raise ConfigError(f"{source}: 'patterns' must be a list of [text, sentinel] pairs")
    pairs: List[Tuple[str, int]] = []
    for idx, item in enumerate(patterns, 1):
        if (
            not isinstance(item, (list, tuple))
            or len(item) != 2
            or not isinstance(item[0], str)
            or not isinstance(item[1], int)
        ):
            raise ConfigError(f"{source}: pattern #{idx} must be [text, sentinel]")
        pairs.append((item[0], item[1]))
    return PatternTable.from_pairs(table_id, str(data.get("name") or f"table-{table_id}"), pairs)


def load_pattern_table(path: str) -> PatternTable:
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"cannot read pattern table {path}: {exc}") from exc
    return table_from_dict(data, source=path)


def save_pattern_table(path: str, table: PatternTable) -> None:
    tmp = path + ".tmp"
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    try:
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(table_to_dict(table), f, indent=2)
            f.write("\n")
        os.replace(tmp, path)
    except BaseException:
        discard_tmp(tmp)
        raise


def suggest_patterns(
    sample: bytes,
    top: int = 14,
    min_len: int = 3,
    max_len: int = 8,
    first_sentinel: int = 0x80,
    table_id: int = 0xFF,
    name: str = "suggested",
    sample_bytes: Optional[int] = DEFAULT_SAMPLE_BYTES,
) -> PatternTable:
    """Build a candidate table from the most profitable substrings of `sample`.

    Candidates are scored by (length - 1) * occurrences. A candidate that
    contains or is contained in an already chosen pattern is skipped, and the
    result is ordered longest first. Sentinels are taken upward from
    `first_sentinel`, skipping byte values present in the sample.
    """
    data = bytes(sample)
    if sample_bytes is not None:
        data = data[: int(sample_bytes)]
    min_len = max(2, int(min_len))
    max_len = max(min_len, int(max_len))

    counts: Counter = Counter()
    for length in range(min_len, max_len + 1):
        for i in range(len(data) - length + 1):
            counts[data[i : i + length]] += 1

    scored = sorted(
        ((pat, (len(pat) - 1) * n) for pat, n in counts.items() if n > 1 and pat.isascii()),
        key=lambda item: (-item[1], -len(item[0]), item[0]),
    )

    chosen: List[bytes] = []
    for pat, _score in scored:
        if len(chosen) >= top:
            break
        if any(pat in c or c in pat for c in chosen):
            continue
        chosen.append(pat)
    chosen.sort(key=lambda p: (-len(p), p))

    present = set(data)
    free = [b for b in range(max(0, int(first_sentinel)), 0x100) if b not in present]
    pairs = list(zip(chosen, free))
    return PatternTable.from_pairs(table_id, name, pairs)

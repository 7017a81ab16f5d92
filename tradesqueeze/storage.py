#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import json
import os
import sys
import threading
import time
from typing import Dict, Optional


class ConfigError(ValueError):
    pass


def harden_dir(path: str) -> None:
    if not path:
        return
    os.makedirs(path, exist_ok=True)
    if sys.platform.startswith("win"):
        return
    try:
        os.chmod(path, 0o700)
    except OSError:
        # Best-effort: shared or foreign-owned directories keep their mode.
        pass


def harden_file(path: str) -> None:
    if not path:
        return
    if sys.platform.startswith("win"):
        return
    try:
        os.chmod(path, 0o600)
    except OSError:
        pass


def read_bytes(path: str) -> bytes:
    with open(path, "rb") as f:
        return f.read()


def discard_tmp(tmp: str) -> None:
    try:
        os.remove(tmp)
    except FileNotFoundError:
        pass


def atomic_write_bytes(path: str, data: bytes) -> None:
    """Write `data` via a temp file + rename so readers never see a partial file."""
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    tmp = path + ".tmp"
    try:
        with open(tmp, "wb") as f:
            f.write(data)
        os.replace(tmp, path)
    except BaseException:
        discard_tmp(tmp)
        raise


def load_config(path: str) -> Dict[str, object]:
    if not path or not os.path.isfile(path):
        return {}
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = json.load(f)
    except (OSError, ValueError) as exc:
        raise ConfigError(f"cannot read config {path}: {exc}") from exc
    if not isinstance(data, dict):
        raise ConfigError(f"config {path} must contain a JSON object")
    return data


class RuntimeLog:
    """Append-only timestamped log file shared by CLI runs."""

    def __init__(self, path: str) -> None:
        self.path = path
        self._lock = threading.Lock()

    def append(self, line: str, ts: Optional[str] = None) -> None:
        if not line or not self.path:
            return
        if ts is None:
            ts = time.strftime("%Y-%m-%d %H:%M:%S", time.localtime())
        harden_dir(os.path.dirname(self.path))
        with self._lock:
            with open(self.path, "a", encoding="utf-8") as f:
                f.write(f"{ts} {line}\n")
        harden_file(self.path)

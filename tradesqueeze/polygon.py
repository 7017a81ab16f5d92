#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

"""
Polygon.io historic trades client.

The trades endpoint returns at most `limit` records per call. A full page means
more data may follow; the next page starts one nanosecond after the last
record's SIP timestamp so the boundary record is not fetched twice.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

import requests

BASE_URL = "https://api.polygon.io/v2/ticks/stocks/trades"
PAGE_LIMIT = 50000
DEFAULT_TIMEOUT = 60

# Wire key order for one trade record; optional keys are dropped when absent.
TRADE_KEYS = ("I", "x", "p", "i", "e", "r", "t", "y", "f", "q", "c", "s", "z")

DAY_RE = re.compile(r"((19|20)\d\d)-(0?[1-9]|1[012])-(0?[1-9]|[12][0-9]|3[01])")


class FetchError(RuntimeError):
    pass


def is_valid_day(day: Optional[str]) -> bool:
    return bool(DAY_RE.fullmatch((day or "").strip()))


@dataclass
class Trade:
    exchange_id: int
    price: float
    trade_id: str
    timestamp: int
    exchange_time: int
    sequence: int
    size: int
    tape: int
    original_id: Optional[int] = None
    correction: Optional[int] = None
    reporting_id: Optional[int] = None
    reporting_time: Optional[int] = None
    conditions: Optional[List[int]] = None

    @classmethod
    def from_dict(cls, raw: Dict[str, object]) -> "Trade":
        conditions = raw.get("c")
        price = raw.get("p")
        return cls(
            exchange_id=int(raw.get("x") or 0),
            # Keep the number exactly as the API sent it (int or float).
            price=0 if price is None else price,
            trade_id=str(raw.get("i") or ""),
            timestamp=int(raw.get("t") or 0),
            exchange_time=int(raw.get("y") or 0),
            sequence=int(raw.get("q") or 0),
            size=int(raw.get("s") or 0),
            tape=int(raw.get("z") or 0),
            original_id=_opt_int(raw.get("I")),
            correction=_opt_int(raw.get("e")),
            reporting_id=_opt_int(raw.get("r")),
            reporting_time=_opt_int(raw.get("f")),
            conditions=[int(c) for c in conditions] if isinstance(conditions, list) else None,
        )

    def to_dict(self) -> Dict[str, object]:
        values = {
            "I": self.original_id,
            "x": self.exchange_id,
            "p": self.price,
            "i": self.trade_id,
            "e": self.correction,
            "r": self.reporting_id,
            "t": self.timestamp,
            "y": self.exchange_time,
            "f": self.reporting_time,
            "q": self.sequence,
            "c": self.conditions,
            "s": self.size,
            "z": self.tape,
        }
        return {k: values[k] for k in TRADE_KEYS if values[k] is not None}


def _opt_int(value: object) -> Optional[int]:
    if value is None:
        return None
    return int(value)


@dataclass
class DayTrades:
    ticker: str = ""
    results_count: int = 0
    results: List[Trade] = field(default_factory=list)
    key_map: object = None

    def to_dict(self) -> Dict[str, object]:
        return {
            "ticker": self.ticker,
            "results_count": self.results_count,
            "results": [t.to_dict() for t in self.results],
            "map": self.key_map,
        }

    def to_json_bytes(self) -> bytes:
        # ASCII-only output: non-ASCII text is \u-escaped so no byte >= 0x80
        # can collide with a substitution sentinel.
        return json.dumps(self.to_dict(), separators=(",", ":"), ensure_ascii=True).encode("ascii")


def fetch_page(
    session: requests.Session,
    ticker: str,
    day: str,
    api_key: str,
    timestamp: int = 0,
    limit: int = PAGE_LIMIT,
    timeout: float = DEFAULT_TIMEOUT,
) -> Dict[str, object]:
    url = f"{BASE_URL}/{ticker}/{day}"
    params: Dict[str, object] = {"limit": int(limit)}
    if timestamp:
        params["timestamp"] = int(timestamp)
    params["apiKey"] = api_key
    try:
        response = session.get(url, params=params, timeout=timeout)
    except requests.RequestException as exc:
        raise FetchError(f"request for {ticker} {day} failed: {exc}") from exc
    if response.status_code != 200:
        raise FetchError(f"HTTP {response.status_code} for {ticker} {day} (cursor {timestamp})")
    try:
        data = response.json()
    except ValueError as exc:
        raise FetchError(f"response for {ticker} {day} is not valid JSON") from exc
    if not isinstance(data, dict):
        raise FetchError(f"unexpected response payload for {ticker} {day}")
    return data


def _page_count(page: Dict[str, object], trades: List[Trade]) -> int:
    count = page.get("results_count")
    if isinstance(count, int) and not isinstance(count, bool):
        return count
    return len(trades)


def fetch_day_trades(
    ticker: str,
    day: str,
    api_key: str,
    session: Optional[requests.Session] = None,
    limit: int = PAGE_LIMIT,
    timeout: float = DEFAULT_TIMEOUT,
    max_pages: Optional[int] = None,
    on_page: Optional[Callable[[int, int, int], None]] = None,
) -> DayTrades:
    """Fetch every trade of `ticker` on `day`, following the timestamp cursor.

    `on_page(page_number, page_count, cursor)` is called after each page.
    Ticker and the key map are taken from the final page.
    """
    own_session = session is None
    if session is None:
        session = requests.Session()
    try:
        day_trades = DayTrades()
        cursor = 0
        pages = 0
        while True:
            page = fetch_page(session, ticker, day, api_key, timestamp=cursor, limit=limit, timeout=timeout)
            pages += 1
            results = page.get("results") or []
            if not isinstance(results, list):
                raise FetchError(f"page {pages} for {ticker} {day}: 'results' is not a list")
            trades = [Trade.from_dict(r) for r in results if isinstance(r, dict)]
            count = _page_count(page, trades)
            day_trades.results.extend(trades)
            day_trades.results_count += count
            if on_page is not None:
                on_page(pages, count, cursor)

            if count != limit:
                day_trades.ticker = str(page.get("ticker") or ticker)
                day_trades.key_map = page.get("map")
                return day_trades

            if not trades:
                raise FetchError(f"page {pages} for {ticker} {day} is full but carries no records")
            next_cursor = trades[-1].timestamp + 1
            if next_cursor <= cursor:
                raise FetchError(f"pagination cursor did not advance past {cursor}")
            if max_pages is not None and pages >= max_pages:
                raise FetchError(f"stopped after {pages} pages; more data is available")
            cursor = next_cursor
    finally:
        if own_session:
            session.close()

#!/usr/bin/env python3
# -*- coding: utf-8 -*-

import json
import unittest
from unittest import mock

import requests

from trade_text_compression import AAPL_NASDAQ_TABLE, decode, encode
from tradesqueeze.polygon import (
    BASE_URL,
    DayTrades,
    FetchError,
    Trade,
    fetch_day_trades,
    fetch_page,
    is_valid_day,
)


class _Response:
    def __init__(self, status_code: int = 200, payload: object = None, text: str = "") -> None:
        self.status_code = status_code
        self._payload = payload
        self._text = text

    def json(self) -> object:
        if self._payload is None:
            return json.loads(self._text)
        return self._payload


class _Session:
    def __init__(self, responses) -> None:
        self._responses = list(responses)
        self.calls = []
        self.closed = False

    def get(self, url, params=None, timeout=None):
        self.calls.append((url, dict(params or {}), timeout))
        item = self._responses.pop(0)
        if isinstance(item, Exception):
            raise item
        return item

    def close(self) -> None:
        self.closed = True


def _raw_trade(ts: int, seq: int, **extra) -> dict:
    raw = {"x": 12, "p": 119.26, "i": str(seq), "t": ts, "y": ts - 345, "q": seq, "s": 100, "z": 3}
    raw.update(extra)
    return raw


def _page(trades, ticker: str = "AAPL", count=None) -> dict:
    return {
        "ticker": ticker,
        "results_count": len(trades) if count is None else count,
        "results": trades,
        "map": {"t": {"name": "sip_timestamp", "type": "int64"}},
    }


class TradeTests(unittest.TestCase):
    def test_to_dict_key_order_and_optional_fields(self) -> None:
        trade = Trade.from_dict(
            {
                "z": 3,
                "s": 100,
                "c": [12, 37],
                "q": 9,
                "f": 1605261600012300000,
                "y": 1605261600012000000,
                "t": 1605261600012345678,
                "r": 12,
                "i": "52983525027888",
                "p": 119.26,
                "x": 4,
            }
        )
        self.assertEqual(list(trade.to_dict()), ["x", "p", "i", "r", "t", "y", "f", "q", "c", "s", "z"])
        self.assertIsNone(trade.original_id)
        self.assertIsNone(trade.correction)
        self.assertEqual(trade.conditions, [12, 37])

    def test_all_fields(self) -> None:
        raw = _raw_trade(1605261600012345678, 1, I=7, e=1, r=10, f=1605261600012300000, c=[14, 41])
        trade = Trade.from_dict(raw)
        self.assertEqual(list(trade.to_dict()), ["I", "x", "p", "i", "e", "r", "t", "y", "f", "q", "c", "s", "z"])
        self.assertEqual(trade.to_dict()["I"], 7)

    def test_zero_optional_is_kept(self) -> None:
        trade = Trade.from_dict(_raw_trade(1605261600012345678, 1, e=0))
        self.assertEqual(trade.to_dict()["e"], 0)

    def test_integer_price_is_not_turned_into_float(self) -> None:
        trade = Trade.from_dict(_raw_trade(1605261600012345678, 1, p=120))
        self.assertEqual(json.dumps(trade.to_dict()["p"]), "120")

    def test_zero_float_price_stays_float(self) -> None:
        trade = Trade.from_dict(_raw_trade(1605261600012345678, 1, p=0.0))
        self.assertEqual(json.dumps(trade.to_dict()["p"]), "0.0")
        raw = _raw_trade(1605261600012345678, 1)
        del raw["p"]
        self.assertEqual(json.dumps(Trade.from_dict(raw).to_dict()["p"]), "0")


class DayTradesTests(unittest.TestCase):
    def test_compact_json(self) -> None:
        day = DayTrades(
            ticker="AAPL",
            results_count=1,
            results=[Trade.from_dict(_raw_trade(1605261600012345678, 1, c=[12, 37]))],
            key_map=None,
        )
        self.assertEqual(
            day.to_json_bytes(),
            b'{"ticker":"AAPL","results_count":1,"results":[{"x":12,"p":119.26,"i":"1",'
            b'"t":1605261600012345678,"y":1605261600012345333,"q":1,"c":[12,37],"s":100,"z":3}],"map":null}',
        )

    def test_json_is_ascii_and_table_friendly(self) -> None:
        day = DayTrades(ticker="AAPL", results=[Trade.from_dict(_raw_trade(1605261600012345678, 1))], key_map={"n": "é"})
        raw = day.to_json_bytes()
        self.assertTrue(raw.isascii())
        self.assertEqual(AAPL_NASDAQ_TABLE.collisions(raw), [])
        self.assertEqual(decode(encode(raw, AAPL_NASDAQ_TABLE), AAPL_NASDAQ_TABLE), raw)


class FetchTests(unittest.TestCase):
    def test_fetch_page_builds_query(self) -> None:
        session = _Session([_Response(payload=_page([]))])
        fetch_page(session, "AAPL", "2020-11-13", "KEY", timestamp=0, limit=50000, timeout=5)
        url, params, timeout = session.calls[0]
        self.assertEqual(url, f"{BASE_URL}/AAPL/2020-11-13")
        self.assertEqual(params, {"limit": 50000, "apiKey": "KEY"})
        self.assertEqual(timeout, 5)

        session = _Session([_Response(payload=_page([]))])
        fetch_page(session, "AAPL", "2020-11-13", "KEY", timestamp=1605261600012345679)
        self.assertEqual(session.calls[0][1]["timestamp"], 1605261600012345679)

    def test_http_error(self) -> None:
        session = _Session([_Response(status_code=403, payload={"status": "NOT_AUTHORIZED"})])
        with self.assertRaises(FetchError) as ctx:
            fetch_page(session, "AAPL", "2020-11-13", "SECRET")
        self.assertIn("403", str(ctx.exception))
        self.assertNotIn("SECRET", str(ctx.exception))

    def test_transport_error(self) -> None:
        session = _Session([requests.ConnectionError("boom")])
        with self.assertRaises(FetchError):
            fetch_page(session, "AAPL", "2020-11-13", "KEY")

    def test_invalid_json(self) -> None:
        session = _Session([_Response(text="<html>")])
        with self.assertRaises(FetchError):
            fetch_page(session, "AAPL", "2020-11-13", "KEY")

    def test_non_object_payload(self) -> None:
        session = _Session([_Response(payload=[1, 2, 3])])
        with self.assertRaises(FetchError):
            fetch_page(session, "AAPL", "2020-11-13", "KEY")

    def test_single_short_page(self) -> None:
        session = _Session([_Response(payload=_page([_raw_trade(100, 1), _raw_trade(200, 2)]))])
        day = fetch_day_trades("AAPL", "2020-11-13", "KEY", session=session, limit=3)
        self.assertEqual(len(session.calls), 1)
        self.assertEqual(day.results_count, 2)
        self.assertEqual([t.sequence for t in day.results], [1, 2])
        self.assertEqual(day.ticker, "AAPL")
        self.assertEqual(day.key_map, {"t": {"name": "sip_timestamp", "type": "int64"}})
        self.assertFalse(session.closed)

    def test_pagination_follows_cursor(self) -> None:
        pages = [
            _page([_raw_trade(100, 1), _raw_trade(200, 2)]),
            _page([_raw_trade(300, 3), _raw_trade(400, 4)]),
            _page([_raw_trade(500, 5)]),
        ]
        session = _Session([_Response(payload=p) for p in pages])
        seen = []
        day = fetch_day_trades(
            "AAPL",
            "2020-11-13",
            "KEY",
            session=session,
            limit=2,
            on_page=lambda n, count, cursor: seen.append((n, count, cursor)),
        )
        cursors = [params.get("timestamp") for _url, params, _timeout in session.calls]
        self.assertEqual(cursors, [None, 201, 401])
        self.assertEqual(seen, [(1, 2, 0), (2, 2, 201), (3, 1, 401)])
        self.assertEqual(day.results_count, 5)
        self.assertEqual([t.sequence for t in day.results], [1, 2, 3, 4, 5])

    def test_exactly_full_last_page_asks_once_more(self) -> None:
        pages = [_page([_raw_trade(100, 1), _raw_trade(200, 2)]), _page([])]
        session = _Session([_Response(payload=p) for p in pages])
        day = fetch_day_trades("AAPL", "2020-11-13", "KEY", session=session, limit=2)
        self.assertEqual(len(session.calls), 2)
        self.assertEqual(day.results_count, 2)

    def test_cursor_must_advance(self) -> None:
        pages = [_page([_raw_trade(100, 1), _raw_trade(200, 2)]), _page([_raw_trade(150, 3), _raw_trade(150, 4)])]
        session = _Session([_Response(payload=p) for p in pages])
        with self.assertRaises(FetchError):
            fetch_day_trades("AAPL", "2020-11-13", "KEY", session=session, limit=2)

    def test_full_page_without_records(self) -> None:
        session = _Session([_Response(payload=_page([], count=2))])
        with self.assertRaises(FetchError):
            fetch_day_trades("AAPL", "2020-11-13", "KEY", session=session, limit=2)

    def test_max_pages(self) -> None:
        pages = [_page([_raw_trade(100, 1), _raw_trade(200, 2)]), _page([_raw_trade(300, 3), _raw_trade(400, 4)])]
        session = _Session([_Response(payload=p) for p in pages])
        with self.assertRaises(FetchError):
            fetch_day_trades("AAPL", "2020-11-13", "KEY", session=session, limit=2, max_pages=1)
        self.assertEqual(len(session.calls), 1)

    def test_own_session_is_closed(self) -> None:
        session = _Session([_Response(payload=_page([_raw_trade(100, 1)]))])
        with mock.patch("tradesqueeze.polygon.requests.Session", return_value=session):
            day = fetch_day_trades("AAPL", "2020-11-13", "KEY", limit=5)
        self.assertTrue(session.closed)
        self.assertEqual(day.results_count, 1)


class DayValidationTests(unittest.TestCase):
    def test_valid_days(self) -> None:
        for day in ("2020-11-13", "1999-01-31", "2021-1-5"):
            self.assertTrue(is_valid_day(day), day)

    def test_invalid_days(self) -> None:
        for day in ("", None, "2020-13-01", "2020-11-32", "1899-01-01", "20201113", "2020-11-13x"):
            self.assertFalse(is_valid_day(day), day)


if __name__ == "__main__":
    unittest.main()

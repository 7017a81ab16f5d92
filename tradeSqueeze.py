#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0
"""
tradeSqueeze.py: fetch a full day of trades from Polygon.io and store it with a
static pattern substitution tuned for the trades JSON schema.

Usage:
    python tradeSqueeze.py compress --day 2020-11-13 --apiKey KEY -o aapl_full_day.json.shahein
    python tradeSqueeze.py decompress -f aapl_full_day.json.shahein -o aapl_full_day.json
    python tradeSqueeze.py audit
    python tradeSqueeze.py suggest -i aapl_full_day.json --out msft.table.json
"""

from __future__ import annotations

import argparse
import json
import os
import sys
from typing import Dict, List, Optional

from trade_text_compression import (
    AAPL_NASDAQ_TABLE,
    BUILTIN_TABLES,
    CODEC_NONE,
    NAME_TO_CODEC,
    CompressionError,
    PatternTable,
    build_report,
    decode,
    encode_with_report,
    pack_framed,
    pattern_text,
    unpack_auto,
    unpack_framed,
)
from tradesqueeze import __version__
from tradesqueeze.polygon import DEFAULT_TIMEOUT, PAGE_LIMIT, FetchError, fetch_day_trades, is_valid_day
from tradesqueeze.storage import ConfigError, RuntimeLog, atomic_write_bytes, load_config, read_bytes
from tradesqueeze.tables import load_pattern_table, save_pattern_table, suggest_patterns, table_to_dict

DEFAULTS: Dict[str, object] = {
    "config": "tradeSqueeze.json",
    "ticker": "AAPL",
    "day": "2020-11-13",
    "output": "aapl_full_day.json.shahein",
    "compressed": "aapl_full_day.json.shahein",
    "decompressed": "aapl_full_day.json",
    "codec": "none",
    "limit": PAGE_LIMIT,
    "timeout": DEFAULT_TIMEOUT,
}

API_KEY_ENV = "POLYGON_API_KEY"


def out(msg: str) -> None:
    sys.stdout.write(msg + "\n")
    sys.stdout.flush()


def eprint(*args: object) -> None:
    print(*args, file=sys.stderr)


class Console:
    def __init__(self, quiet: bool = False, runtime_log: Optional[RuntimeLog] = None) -> None:
        self.quiet = bool(quiet)
        self.runtime_log = runtime_log

    def info(self, msg: str) -> None:
        if not self.quiet:
            out(msg)
        if self.runtime_log is not None:
            self.runtime_log.append(msg)

    def warn(self, msg: str) -> None:
        eprint(f"WARNING: {msg}")
        if self.runtime_log is not None:
            self.runtime_log.append(f"WARNING: {msg}")

    def error(self, msg: str) -> None:
        eprint(f"ERROR: {msg}")
        if self.runtime_log is not None:
            self.runtime_log.append(f"ERROR: {msg}")


def _pick(cli_value: object, cfg: Dict[str, object], key: str, default: object) -> object:
    if cli_value is not None:
        return cli_value
    value = cfg.get(key)
    if value is not None:
        return value
    return default


def _resolve_table(args: argparse.Namespace, cfg: Dict[str, object]) -> PatternTable:
    path = _pick(getattr(args, "table", None), cfg, "table", None)
    if path:
        return load_pattern_table(str(path))
    return AAPL_NASDAQ_TABLE


def _table_pool(table: PatternTable) -> List[PatternTable]:
    # Selected table goes last so it wins an id clash with a builtin one.
    return [*BUILTIN_TABLES, table]


def cmd_compress(args: argparse.Namespace, cfg: Dict[str, object], console: Console) -> int:
    table = _resolve_table(args, cfg)
    output = str(_pick(args.output, cfg, "output", DEFAULTS["output"]))
    framed = bool(_pick(args.framed, cfg, "framed", False))
    codec_label = str(_pick(args.codec, cfg, "codec", DEFAULTS["codec"])).strip().lower()
    codec = NAME_TO_CODEC.get(codec_label)
    if codec is None:
        console.error(f"unknown codec: {codec_label} (choose from {', '.join(sorted(NAME_TO_CODEC))})")
        return 1
    if codec != CODEC_NONE and not framed:
        console.error("--codec requires --framed (the legacy format has no header to record it)")
        return 1

    if args.input:
        raw = read_bytes(args.input)
        console.info(f"input: {args.input} ({len(raw)} bytes)")
    else:
        api_key = str(_pick(args.apiKey, cfg, "apiKey", "") or os.environ.get(API_KEY_ENV, ""))
        if not api_key:
            console.error(f"Polygon API key required (--apiKey, config 'apiKey' or {API_KEY_ENV})")
            return 1
        day = str(_pick(args.day, cfg, "day", DEFAULTS["day"]))
        if not is_valid_day(day):
            console.error("Date is required and must be in YYYY-MM-DD format.")
            return 1
        ticker = str(_pick(args.ticker, cfg, "ticker", DEFAULTS["ticker"])).upper()
        limit = int(_pick(args.limit, cfg, "limit", DEFAULTS["limit"]))
        timeout = float(_pick(args.timeout, cfg, "timeout", DEFAULTS["timeout"]))

        def on_page(number: int, count: int, cursor: int) -> None:
            console.info(f"page {number}: {count} trades (cursor {cursor})")

        day_trades = fetch_day_trades(ticker, day, api_key, limit=limit, timeout=timeout, on_page=on_page)
        raw = day_trades.to_json_bytes()
        console.info(f"fetched {len(day_trades.results)} trades for {day_trades.ticker} on {day}")

    collisions = table.collisions(raw)
    if collisions:
        codes = ", ".join(f"0x{c:02x}" for c in collisions)
        console.warn(f"input already contains sentinel byte(s) {codes}; decompressed output will differ")

    if framed:
        blob = pack_framed(raw, table, codec=codec)
        report = build_report(len(raw), len(blob))
    else:
        blob, report = encode_with_report(raw, table)
    console.info(report.format())

    if len(blob) > 0:
        atomic_write_bytes(output, blob)
        console.info(f"written: {output} (table {table.name}, {'framed' if framed else 'raw'})")
    return 0


def cmd_decompress(args: argparse.Namespace, cfg: Dict[str, object], console: Console) -> int:
    table = _resolve_table(args, cfg)
    src = str(args.file or DEFAULTS["compressed"])
    dst = str(args.output or DEFAULTS["decompressed"])
    blob = read_bytes(src)
    if args.format == "framed":
        data = unpack_framed(blob, _table_pool(table))
    elif args.format == "raw":
        data = decode(blob, table)
    else:
        data = unpack_auto(blob, table, _table_pool(table))
    atomic_write_bytes(dst, data)
    console.info(dst)
    return 0


def cmd_audit(args: argparse.Namespace, cfg: Dict[str, object], console: Console) -> int:
    table = _resolve_table(args, cfg)
    console.info(f"table {table.table_id} ({table.name}): {len(table)} pattern(s)")
    for idx, (pattern, sentinel) in enumerate(table.entries, 1):
        console.info(f"  #{idx:<3} 0x{sentinel & 0xFF:02x}  {pattern_text(pattern)}")
    findings = table.audit()
    if not findings:
        console.info("no findings")
        return 0
    errors = 0
    for finding in findings:
        if finding.is_error:
            errors += 1
            console.error(f"[{finding.kind}] {finding.message}")
        else:
            console.warn(f"[{finding.kind}] {finding.message}")
    return 1 if errors else 0


def cmd_suggest(args: argparse.Namespace, cfg: Dict[str, object], console: Console) -> int:
    sample = read_bytes(args.input)
    table = suggest_patterns(
        sample,
        top=args.top,
        min_len=args.min_len,
        max_len=args.max_len,
        first_sentinel=args.first_sentinel,
        table_id=args.table_id,
        name=args.name,
    )
    if args.out:
        save_pattern_table(args.out, table)
        console.info(f"written: {args.out}")
    else:
        out(json.dumps(table_to_dict(table), indent=2))
    return 0


def _int_auto(value: str) -> int:
    return int(value, 0)


def build_parser() -> argparse.ArgumentParser:
    common = argparse.ArgumentParser(add_help=False)
    common.add_argument(
        "--config",
        default=DEFAULTS["config"],
        help=f"JSON config file (default: {DEFAULTS['config']}, ignored when missing).",
    )
    common.add_argument("--quiet", action="store_true", help="less terminal output.")
    common.add_argument("--log-file", dest="log_file", default=None, help="append timestamped run log lines here.")

    ap = argparse.ArgumentParser(
        prog="tradeSqueeze.py",
        description="Fetch a day of Polygon.io trades and store them with static pattern substitution.",
    )
    ap.add_argument("--version", action="version", version=f"%(prog)s {__version__}")
    sub = ap.add_subparsers(dest="command", metavar="{compress,decompress,audit,suggest}")
    sub.required = True

    c = sub.add_parser("compress", parents=[common], help="fetch (or read) trades JSON and compress it.")
    c.add_argument("--day", default=None, help=f"YYYY-MM-DD to get trades for (default: {DEFAULTS['day']}).")
    c.add_argument("-o", dest="output", default=None, help=f"compressed output file (default: {DEFAULTS['output']}).")
    c.add_argument("--apiKey", default=None, help=f"Polygon.io API key (or config 'apiKey', or ${API_KEY_ENV}).")
    c.add_argument("--ticker", default=None, help=f"ticker symbol (default: {DEFAULTS['ticker']}).")
    c.add_argument("--input", "-i", default=None, help="compress this local JSON file instead of fetching.")
    c.add_argument("--framed", action="store_true", default=None, help="write a header with table id and CRC.")
    c.add_argument(
        "--codec",
        default=None,
        choices=sorted(NAME_TO_CODEC),
        help="second-stage codec for --framed output (default: none).",
    )
    c.add_argument("--table", default=None, help="pattern table JSON file (default: builtin aapl-nasdaq).")
    c.add_argument("--limit", type=int, default=None, help=f"page size (default: {DEFAULTS['limit']}).")
    c.add_argument("--timeout", type=float, default=None, help=f"HTTP timeout seconds (default: {DEFAULTS['timeout']}).")
    c.set_defaults(func=cmd_compress)

    d = sub.add_parser("decompress", parents=[common], help="restore the original JSON.")
    d.add_argument("-f", dest="file", default=None, help=f"file to decompress (default: {DEFAULTS['compressed']}).")
    d.add_argument("-o", dest="output", default=None, help=f"decompressed output file (default: {DEFAULTS['decompressed']}).")
    d.add_argument("--table", default=None, help="pattern table JSON file (default: builtin aapl-nasdaq).")
    d.add_argument(
        "--format",
        default="auto",
        choices=["auto", "raw", "framed"],
        help="input format (default: auto, framed when the header is present).",
    )
    d.set_defaults(func=cmd_decompress)

    a = sub.add_parser("audit", parents=[common], help="list a pattern table and check it for conflicts.")
    a.add_argument("--table", default=None, help="pattern table JSON file (default: builtin aapl-nasdaq).")
    a.set_defaults(func=cmd_audit)

    s = sub.add_parser("suggest", parents=[common], help="suggest a pattern table from a sample JSON file.")
    s.add_argument("--input", "-i", required=True, help="sample file (uncompressed JSON).")
    s.add_argument("--out", default=None, help="write the table here instead of printing it.")
    s.add_argument("--top", type=int, default=14, help="number of patterns (default: 14).")
    s.add_argument("--min-len", dest="min_len", type=int, default=3, help="shortest pattern (default: 3).")
    s.add_argument("--max-len", dest="max_len", type=int, default=8, help="longest pattern (default: 8).")
    s.add_argument(
        "--first-sentinel", dest="first_sentinel", type=_int_auto, default=0x80, help="first sentinel byte (default: 0x80)."
    )
    s.add_argument("--table-id", dest="table_id", type=_int_auto, default=0xFF, help="table id (default: 255).")
    s.add_argument("--name", default="suggested", help="table name (default: suggested).")
    s.set_defaults(func=cmd_suggest)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    ap = build_parser()
    args = ap.parse_args(argv)
    runtime_log = RuntimeLog(args.log_file) if args.log_file else None
    console = Console(quiet=args.quiet, runtime_log=runtime_log)
    try:
        cfg = load_config(args.config)
        return int(args.func(args, cfg, console))
    except (CompressionError, ConfigError, FetchError) as exc:
        console.error(str(exc))
        return 1
    except OSError as exc:
        console.error(f"{exc.filename or 'I/O'}: {exc.strerror or exc}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())

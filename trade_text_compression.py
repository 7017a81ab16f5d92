#!/usr/bin/env python3
# -*- coding: utf-8 -*-
# SPDX-License-Identifier: Apache-2.0

from __future__ import annotations

import bz2
import lzma
import zlib
from dataclasses import dataclass
from typing import Dict, Iterable, List, Sequence, Tuple, Union

import zstandard as _zstd

BytesLike = Union[bytes, bytearray, memoryview]

MAGIC = b"TQ"
VERSION = 1
HEADER_LEN = 6
CRC_LEN = 4

CODEC_NONE = 0
CODEC_ZLIB = 1
CODEC_BZ2 = 2
CODEC_LZMA = 3
CODEC_ZSTD = 4
SUPPORTED_CODECS = (
    CODEC_NONE,
    CODEC_ZLIB,
    CODEC_BZ2,
    CODEC_LZMA,
    CODEC_ZSTD,
)
CODEC_TO_NAME: Dict[int, str] = {
    CODEC_NONE: "none",
    CODEC_ZLIB: "zlib",
    CODEC_BZ2: "bz2",
    CODEC_LZMA: "lzma",
    CODEC_ZSTD: "zstd",
}
NAME_TO_CODEC: Dict[str, int] = {name: codec for codec, name in CODEC_TO_NAME.items()}

SEVERITY_ERROR = "error"
SEVERITY_WARNING = "warning"


class CompressionError(ValueError):
    pass


class CompressionFormatError(CompressionError):
    pass


class CompressionCRCError(CompressionError):
    pass


@dataclass(frozen=True)
class AuditFinding:
    severity: str
    kind: str
    message: str

    @property
    def is_error(self) -> bool:
        return self.severity == SEVERITY_ERROR


def pattern_text(pattern: bytes) -> str:
    return pattern.decode("utf-8", errors="backslashreplace")


def _overlap_len(left: bytes, right: bytes) -> int:
    # Longest proper suffix of `left` that is also a prefix of `right`.
    for k in range(min(len(left), len(right)) - 1, 0, -1):
        if left[-k:] == right[:k]:
            return k
    return 0


@dataclass(frozen=True)
class PatternTable:
    """Ordered substitution table: (pattern, sentinel byte) pairs.

    Entries are applied in listed order when encoding. A pattern that is a
    substring of another one must be listed after it. Construction does not
    validate anything; use audit() when curating a new table.
    """

    table_id: int
    name: str
    entries: Tuple[Tuple[bytes, int], ...]

    @classmethod
    def from_pairs(
        cls, table_id: int, name: str, pairs: Iterable[Tuple[Union[str, bytes], int]]
    ) -> "PatternTable":
        entries: List[Tuple[bytes, int]] = []
        for pattern, sentinel in pairs:
            raw = pattern.encode("utf-8") if isinstance(pattern, str) else bytes(pattern)
            entries.append((raw, int(sentinel)))
        return cls(table_id=int(table_id), name=str(name), entries=tuple(entries))

    def __len__(self) -> int:
        return len(self.entries)

    def __iter__(self):
        return iter(self.entries)

    @property
    def patterns(self) -> Tuple[bytes, ...]:
        return tuple(p for p, _s in self.entries)

    @property
    def sentinels(self) -> Tuple[int, ...]:
        return tuple(s for _p, s in self.entries)

    def collisions(self, data: BytesLike) -> List[int]:
        """Sentinel values already present in `data` (encoder precondition check)."""
        present = set(bytes(data))
        return sorted(s for s in set(self.sentinels) if s in present)

    def audit(self) -> List[AuditFinding]:
        findings: List[AuditFinding] = []
        sentinel_set = {s for s in self.sentinels if 0 <= s <= 0xFF}
        seen_sentinels: Dict[int, int] = {}
        seen_patterns: Dict[bytes, int] = {}

        for idx, (pattern, sentinel) in enumerate(self.entries, 1):
            label = f"#{idx} {pattern_text(pattern)!r}"
            if not pattern:
                findings.append(AuditFinding(SEVERITY_ERROR, "empty_pattern", f"{label}: pattern is empty"))
            if not 0 <= sentinel <= 0xFF:
                findings.append(
                    AuditFinding(SEVERITY_ERROR, "sentinel_range", f"{label}: sentinel {sentinel} is not a single byte")
                )
            elif sentinel < 0x80:
                findings.append(
                    AuditFinding(
                        SEVERITY_ERROR,
                        "ascii_sentinel",
                        f"{label}: sentinel 0x{sentinel:02x} lies in the ASCII range used by JSON text",
                    )
                )
            if sentinel in seen_sentinels:
                findings.append(
                    AuditFinding(
                        SEVERITY_ERROR,
                        "duplicate_sentinel",
                        f"{label}: sentinel 0x{sentinel & 0xFF:02x} already used by #{seen_sentinels[sentinel]}",
                    )
                )
            else:
                seen_sentinels[sentinel] = idx
            if pattern in seen_patterns:
                findings.append(
                    AuditFinding(
                        SEVERITY_ERROR,
                        "duplicate_pattern",
                        f"{label}: pattern already listed as #{seen_patterns[pattern]}",
                    )
                )
            else:
                seen_patterns[pattern] = idx
            hits = sorted(set(pattern) & sentinel_set)
            if hits:
                codes = ", ".join(f"0x{h:02x}" for h in hits)
                findings.append(
                    AuditFinding(SEVERITY_ERROR, "sentinel_in_pattern", f"{label}: pattern contains sentinel byte(s) {codes}")
                )

        for i, (first, _s1) in enumerate(self.entries):
            for j in range(i + 1, len(self.entries)):
                second = self.entries[j][0]
                if not first or not second or first == second:
                    continue
                if first in second:
                    findings.append(
                        AuditFinding(
                            SEVERITY_ERROR,
                            "shadowed_pattern",
                            f"#{j + 1} {pattern_text(second)!r} contains earlier #{i + 1} "
                            f"{pattern_text(first)!r} and will never match",
                        )
                    )
                    continue
                if second in first:
                    continue
                for left_idx, left, right_idx, right in ((i, first, j, second), (j, second, i, first)):
                    k = _overlap_len(left, right)
                    if k:
                        findings.append(
                            AuditFinding(
                                SEVERITY_WARNING,
                                "overlap",
                                f"#{left_idx + 1} {pattern_text(left)!r} ends with the first {k} byte(s) of "
                                f"#{right_idx + 1} {pattern_text(right)!r}",
                            )
                        )
        return findings


# AAPL is NASDAQ listed (tape 3); all epochs since 2001 begin with 1.
AAPL_NASDAQ_TABLE = PatternTable.from_pairs(
    1,
    "aapl-nasdaq",
    [
        (',"z":3}', 0x80),
        ('{"x":', 0x81),
        (',"c":[', 0x82),
        (',"t":1', 0x83),
        (',"y":1', 0x84),
        (',"f":1', 0x85),
        (',"p":', 0x90),
        (',"i":', 0x91),
        (',"r":12', 0x92),
        (',"r":10', 0x93),
        ('],"s":', 0x94),
        (',"s":', 0x95),
        (',"q":', 0x96),
        ("12,37", 0x97),
    ],
)

BUILTIN_TABLES: Tuple[PatternTable, ...] = (AAPL_NASDAQ_TABLE,)


def table_registry(tables: Iterable[PatternTable]) -> Dict[int, PatternTable]:
    # Later tables win on id clashes.
    registry: Dict[int, PatternTable] = {}
    for table in tables:
        registry[table.table_id] = table
    return registry


def encode(data: BytesLike, table: PatternTable) -> bytes:
    out = bytes(data)
    for pattern, sentinel in table.entries:
        if not pattern:
            continue
        out = out.replace(pattern, bytes((sentinel,)))
    return out


def decode(data: BytesLike, table: PatternTable) -> bytes:
    # Patterns never contain sentinel bytes, so the order of passes does not matter.
    out = bytes(data)
    for pattern, sentinel in reversed(table.entries):
        if not pattern:
            continue
        out = out.replace(bytes((sentinel,)), pattern)
    return out


@dataclass(frozen=True)
class TransformReport:
    original_size: int
    transformed_size: int

    @property
    def ratio_pct(self) -> int:
        # Empty input reports 0% instead of dividing by zero.
        if self.original_size <= 0:
            return 0
        return (self.transformed_size * 100) // self.original_size

    @property
    def saved_bytes(self) -> int:
        return self.original_size - self.transformed_size

    def as_dict(self) -> Dict[str, int]:
        return {
            "original_size": self.original_size,
            "transformed_size": self.transformed_size,
            "ratio_pct": self.ratio_pct,
            "saved_bytes": self.saved_bytes,
        }

    def format(self) -> str:
        return (
            f"Original file size: {self.original_size}  ;;  "
            f"Compressed file size: {self.transformed_size}  ;;  "
            f"Compression ratio: {self.ratio_pct}%"
        )


def build_report(original_size: int, transformed_size: int) -> TransformReport:
    return TransformReport(original_size=int(original_size), transformed_size=int(transformed_size))


def encode_with_report(data: BytesLike, table: PatternTable) -> Tuple[bytes, TransformReport]:
    raw = bytes(data)
    out = encode(raw, table)
    return out, build_report(len(raw), len(out))


def codec_name(codec: int) -> str:
    return CODEC_TO_NAME.get(int(codec), "unknown")


def _varint_encode(value: int) -> bytes:
    if value < 0:
        raise CompressionError("negative varint is not supported")
    out = bytearray()
    v = int(value)
    while True:
        b = v & 0x7F
        v >>= 7
        if v:
            out.append(b | 0x80)
        else:
            out.append(b)
            break
    return bytes(out)


def _varint_decode(data: bytes, offset: int) -> Tuple[int, int]:
    result = 0
    shift = 0
    pos = offset
    while pos < len(data):
        b = data[pos]
        pos += 1
        result |= (b & 0x7F) << shift
        if (b & 0x80) == 0:
            return result, pos
        shift += 7
        if shift > 63:
            break
    raise CompressionFormatError("invalid varint")


def _crc32(data: bytes) -> bytes:
    return (zlib.crc32(data) & 0xFFFFFFFF).to_bytes(CRC_LEN, "big")


def _stage_encode(raw: bytes, codec: int) -> bytes:
    if codec == CODEC_NONE:
        return raw
    if codec == CODEC_ZLIB:
        return zlib.compress(raw, level=9)
    if codec == CODEC_BZ2:
        return bz2.compress(raw, compresslevel=9)
    if codec == CODEC_LZMA:
        return lzma.compress(raw, preset=9)
    if codec == CODEC_ZSTD:
        return _zstd.ZstdCompressor(level=10).compress(raw)
    raise CompressionError(f"unsupported codec: {codec}")


def _stage_decode(data: bytes, codec: int) -> bytes:
    try:
        if codec == CODEC_NONE:
            return data
        elif codec == CODEC_ZLIB:
            return zlib.decompress(data)
        elif codec == CODEC_BZ2:
            return bz2.decompress(data)
        elif codec == CODEC_LZMA:
            return lzma.decompress(data)
        elif codec == CODEC_ZSTD:
            return _zstd.ZstdDecompressor().decompress(data)
    except (zlib.error, lzma.LZMAError, _zstd.ZstdError, OSError, EOFError, ValueError) as exc:
        raise CompressionFormatError(f"{codec_name(codec)} payload is corrupt: {exc}") from exc
    raise CompressionFormatError(f"unsupported codec: {codec}")


def pack_framed(data: BytesLike, table: PatternTable, codec: int = CODEC_NONE) -> bytes:
    """Encode `data` and wrap it in a self-describing block.

    Layout: MAGIC | VERSION | table id | codec | flags | varint(original length)
    | payload | CRC32 of everything before it (big endian).
    """
    if codec not in SUPPORTED_CODECS:
        raise CompressionError(f"unsupported codec: {codec}")
    if not 0 <= table.table_id <= 0xFF:
        raise CompressionError(f"table id must fit in one byte: {table.table_id}")
    raw = bytes(data)
    payload = _stage_encode(encode(raw, table), codec)
    flags = 0
    header = bytes([MAGIC[0], MAGIC[1], VERSION, table.table_id & 0xFF, codec & 0xFF, flags])
    body = header + _varint_encode(len(raw)) + payload
    return body + _crc32(body)


def looks_like_framed(blob: BytesLike) -> bool:
    # Legacy raw output may itself start with MAGIC; only a header whose CRC
    # checks out counts as framed.
    raw = bytes(blob)
    if len(raw) < HEADER_LEN + 1 + CRC_LEN:
        return False
    if raw[:2] != MAGIC or raw[2] != VERSION:
        return False
    return _crc32(raw[:-CRC_LEN]) == raw[-CRC_LEN:]


def unpack_framed(blob: BytesLike, tables: Iterable[PatternTable]) -> bytes:
    raw = bytes(blob)
    if len(raw) < HEADER_LEN + 1 + CRC_LEN:
        raise CompressionFormatError("framed block too short")
    if raw[:2] != MAGIC:
        raise CompressionFormatError("invalid MAGIC")
    ver = raw[2]
    if ver != VERSION:
        raise CompressionFormatError(f"unsupported version: {ver}")
    if _crc32(raw[:-CRC_LEN]) != raw[-CRC_LEN:]:
        raise CompressionCRCError("CRC32 mismatch")
    table_id = raw[3]
    codec = raw[4]
    # flags (raw[5]) are not required for decode yet.
    registry = table_registry(tables)
    table = registry.get(table_id)
    if table is None:
        raise CompressionFormatError(f"unknown pattern table id: {table_id}")
    if codec not in SUPPORTED_CODECS:
        raise CompressionFormatError(f"unsupported codec: {codec}")
    original_len, pos = _varint_decode(raw, HEADER_LEN)
    if pos > len(raw) - CRC_LEN:
        raise CompressionFormatError("truncated framed block")
    payload = raw[pos:-CRC_LEN]
    out = decode(_stage_decode(payload, codec), table)
    if len(out) != original_len:
        raise CompressionFormatError(f"restored length {len(out)} != recorded length {original_len}")
    return out


def unpack_auto(blob: BytesLike, table: PatternTable, tables: Sequence[PatternTable]) -> bytes:
    """Decode a framed block when a valid header is present, else treat `blob` as legacy raw output."""
    if looks_like_framed(blob):
        return unpack_framed(blob, tables)
    return decode(blob, table)

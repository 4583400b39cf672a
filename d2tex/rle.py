"""
d2tex.rle — byte-run compression for D2 payloads.

Two framings are supported.

compact (``compress`` / ``decompress``)
    A maximal run of identical bytes (at most 255) longer than one is
    written as ``count, value``; a single byte is written raw.  The decoder
    treats a byte > 1 that has a successor as a ``count, value`` pair and
    anything else as a raw byte.

    This framing is ambiguous: a raw byte > 1 followed by any other byte
    reads back as a run.  ``b"\\x05\\x07"`` compresses to itself and
    decompresses to five copies of 0x07.  Data survives a round trip only
    when every unrepeated byte except the last one is 0 or 1.  Kept as-is
    for compatibility with existing compact-framed files.

paired (``compress_paired`` / ``decompress_paired``)
    Every run, including a run of one, is written as ``count, value``.
    Unambiguous; this is what the D2 writer uses (flag bit 4).
"""
from __future__ import annotations

import logging

from .errors import D2FormatError

logger = logging.getLogger(__name__)

MAX_RUN = 255


def _runs(data: bytes):
    i = 0
    n = len(data)
    while i < n:
        value = data[i]
        run = 1
        while i + run < n and run < MAX_RUN and data[i + run] == value:
            run += 1
        yield run, value
        i += run


def compress(data: bytes) -> bytes:
    out = bytearray()
    for run, value in _runs(data):
        if run > 1:
            out.append(run)
            out.append(value)
        else:
            out.append(value)
    return bytes(out)


def decompress(data: bytes) -> bytes:
    out = bytearray()
    i = 0
    n = len(data)
    while i < n:
        b = data[i]
        if b > 1 and i + 1 < n:
            out.extend(bytes((data[i + 1],)) * b)
            i += 2
        else:
            out.append(b)
            i += 1
    return bytes(out)


def compress_paired(data: bytes) -> bytes:
    out = bytearray()
    for run, value in _runs(data):
        out.append(run)
        out.append(value)
    logger.debug("rle: %d -> %d bytes", len(data), len(out))
    return bytes(out)


def decompress_paired(data: bytes) -> bytes:
    if len(data) % 2:
        raise D2FormatError("paired RLE stream has an odd number of bytes")
    out = bytearray()
    for i in range(0, len(data), 2):
        out.extend(bytes((data[i + 1],)) * data[i])
    return bytes(out)

"""
d2tex.palette — palette files ↔ list[Color].

Supported files
---------------
  JASC-PAL (.pal)   text: "JASC-PAL", "0100", count, then "r g b" per line
  GIMP     (.gpl)   text: "GIMP Palette", optional "Name:"/"Columns:" lines,
                    '#' comments, then "r g b [name]" per line
  Adobe ACT (.act)  binary: 256 RGB triples (768 bytes), optionally followed
                    by u16 BE colour count and u16 BE transparent index
                    (0xFFFF = none)

ACT has no alpha channel.  On read, the transparent index (if any) comes
back with alpha 0; every other entry is opaque.
"""
from __future__ import annotations

import logging
import struct
from pathlib import Path
from typing import Optional, Sequence

from .color import Color, as_palette

logger = logging.getLogger(__name__)

ACT_ENTRIES = 256
ACT_SIZE = ACT_ENTRIES * 3
ACT_TRAILER_SIZE = 4
ACT_NO_TRANSPARENT = 0xFFFF

JASC_MAGIC = "JASC-PAL"
GIMP_MAGIC = "GIMP Palette"

SYSTEM_COLOURS = 16


# ---------------------------------------------------------------------------
# Default palettes
# ---------------------------------------------------------------------------

def grayscale_palette(size: int = 256) -> list[Color]:
    """Evenly spaced grey ramp from black to white."""
    if size < 2:
        raise ValueError(f"a ramp needs at least 2 entries, got {size}")
    return [Color(v, v, v) for v in (i * 255 // (size - 1) for i in range(size))]


def default_palette(size: int = 256) -> list[Color]:
    """16 system colours followed by a grey ramp.

    System colour i lights red/green/blue for bits 0/1/2 of i, at intensity
    (i // 2) * 85 capped at 255.  Palettes of 16 entries or fewer are only
    the system colours.
    """
    out: list[Color] = []
    for i in range(min(size, SYSTEM_COLOURS)):
        level = min(255, (i // 2) * 85)
        out.append(Color(level if i & 1 else 0, level if i & 2 else 0, level if i & 4 else 0))
    ramp = size - SYSTEM_COLOURS
    for i in range(ramp):
        v = i * 255 // (ramp - 1) if ramp > 1 else 255
        out.append(Color(v, v, v))
    return out


# ---------------------------------------------------------------------------
# Text formats
# ---------------------------------------------------------------------------

def _rgb_fields(line: str, lineno: int) -> Optional[Color]:
    parts = line.split()
    if len(parts) < 3:
        return None
    try:
        r, g, b = (int(p) for p in parts[:3])
    except ValueError:
        return None
    if not all(0 <= v <= 255 for v in (r, g, b)):
        raise ValueError(f"line {lineno}: colour component out of range: {line!r}")
    return Color(r, g, b)


def parse_jasc(text: str) -> list[Color]:
    lines = text.splitlines()
    if not lines or lines[0].strip() != JASC_MAGIC:
        raise ValueError("not a JASC-PAL palette")
    if len(lines) < 3:
        raise ValueError("JASC-PAL palette is missing its version or count line")
    try:
        count = int(lines[2].strip())
    except ValueError:
        raise ValueError(f"bad JASC-PAL colour count {lines[2]!r}") from None
    colours = []
    for lineno, line in enumerate(lines[3:], start=4):
        c = _rgb_fields(line, lineno)
        if c is not None:
            colours.append(c)
    if len(colours) != count:
        logger.warning("JASC-PAL header says %d colours, found %d", count, len(colours))
    return colours


def parse_gimp(text: str) -> list[Color]:
    lines = text.splitlines()
    if not lines or not lines[0].strip().startswith(GIMP_MAGIC):
        raise ValueError("not a GIMP palette")
    colours = []
    for lineno, line in enumerate(lines[1:], start=2):
        s = line.strip()
        if not s or s.startswith("#") or ":" in s.split()[0]:
            continue
        c = _rgb_fields(s, lineno)
        if c is not None:
            colours.append(c)
    return colours


def format_jasc(palette: Sequence) -> str:
    colours = as_palette(palette)
    lines = [JASC_MAGIC, "0100", str(len(colours))]
    lines += [f"{c.r} {c.g} {c.b}" for c in colours]
    return "\r\n".join(lines) + "\r\n"


def format_gimp(palette: Sequence, name: str = "d2tex") -> str:
    colours = as_palette(palette)
    lines = [GIMP_MAGIC, f"Name: {name}", "Columns: 16", "#"]
    lines += [f"{c.r:3d} {c.g:3d} {c.b:3d}\t{c.to_hex()}" for c in colours]
    return "\n".join(lines) + "\n"


# ---------------------------------------------------------------------------
# ACT
# ---------------------------------------------------------------------------

def parse_act(data: bytes) -> list[Color]:
    if len(data) < ACT_SIZE:
        raise ValueError(f"ACT palette is {len(data)} bytes, expected at least {ACT_SIZE}")
    count = ACT_ENTRIES
    transparent = ACT_NO_TRANSPARENT
    if len(data) >= ACT_SIZE + ACT_TRAILER_SIZE:
        count, transparent = struct.unpack_from(">HH", data, ACT_SIZE)
        if not 0 < count <= ACT_ENTRIES:
            # Some writers store 0 for "all 256".
            count = ACT_ENTRIES
    colours = []
    for i in range(count):
        o = i * 3
        a = 0 if i == transparent else 255
        colours.append(Color(data[o], data[o + 1], data[o + 2], a))
    return colours


def format_act(palette: Sequence, transparent: Optional[int] = None) -> bytes:
    colours = as_palette(palette)
    if len(colours) > ACT_ENTRIES:
        raise ValueError(f"ACT holds {ACT_ENTRIES} colours, got {len(colours)}")
    out = bytearray(ACT_SIZE)
    for i, c in enumerate(colours):
        out[i * 3:i * 3 + 3] = bytes((c.r, c.g, c.b))
    if transparent is None:
        transparent = ACT_NO_TRANSPARENT
    out += struct.pack(">HH", len(colours), transparent)
    return bytes(out)


# ---------------------------------------------------------------------------
# Files
# ---------------------------------------------------------------------------

def parse_palette(data: bytes) -> list[Color]:
    """Detect JASC / GIMP text by header, otherwise treat *data* as ACT."""
    head = data[:16].lstrip()
    if head.startswith(JASC_MAGIC.encode()):
        return parse_jasc(data.decode("ascii"))
    if head.startswith(GIMP_MAGIC.encode()):
        return parse_gimp(data.decode("utf-8"))
    return parse_act(data)


def read_palette(path: str | Path) -> list[Color]:
    colours = parse_palette(Path(path).read_bytes())
    if not colours:
        raise ValueError(f"no colours in palette file {path}")
    logger.debug("read %d colours from %s", len(colours), path)
    return colours


def write_palette(palette: Sequence, path: str | Path) -> None:
    """Write by extension: .act binary, .gpl GIMP, anything else JASC-PAL."""
    path = Path(path)
    ext = path.suffix.lower()
    if ext == ".act":
        path.write_bytes(format_act(palette))
    elif ext == ".gpl":
        path.write_text(format_gimp(palette, path.stem), encoding="utf-8")
    else:
        path.write_bytes(format_jasc(palette).encode("ascii"))

"""
d2tex.formats — D2 pixel format tags and container flag bits.

Format tags keep the 4-bit hardware mode codes.  Alpha-less variants that
share a hardware code with an alpha variant (RGB888/ARGB8888,
RGB444/ARGB4444, RGB555/ARGB1555) carry bit 0x10 so that every tag decodes
to exactly one format.

  tag   format     bpp  palette   layout
  0x00  ALPHA8       8     -      a
  0x01  RGB565      16     -      rrrrrggg gggbbbbb            (u16 LE)
  0x02  ARGB8888    32     -      a<<24 | r<<16 | g<<8 | b     (u32 LE)
  0x12  RGB888      24     -      r, g, b
  0x03  ARGB4444    16     -      a<<12 | r<<8 | g<<4 | b      (u16 LE)
  0x13  RGB444      16     -      r<<8 | g<<4 | b              (u16 LE)
  0x04  ARGB1555    16     -      a<<15 | r<<10 | g<<5 | b     (u16 LE)
  0x14  RGB555      16     -      r<<10 | g<<5 | b             (u16 LE)
  0x05  AI44         8    16      (a>>4)<<4 | index
  0x06  RGBA8888    32     -      r, g, b, a
  0x07  RGBA4444    16     -      r<<12 | g<<8 | b<<4 | a      (u16 LE)
  0x08  RGBA5551    16     -      r<<11 | g<<6 | b<<1 | a      (u16 LE)
  0x09  I8           8   256      index
  0x0a  I4           4    16      even pixel low nibble, odd pixel high nibble
  0x0b  I2           2     4      pixel i at bit (i mod 4) * 2
  0x0c  I1           1     2      pixel i at bit (i mod 8)
  0x0d  ALPHA4       4     -      as I4, value a>>4
  0x0e  ALPHA2       2     -      as I2, value a>>6
  0x0f  ALPHA1       1     -      as I1, value a>>7

Container flags byte:
  bit 0     RLE-compressed payload
  bit 1     embedded palette follows the name
  bits 2-3  prerotation, quarter turns (0-3)
  bit 4     paired RLE framing (every run stored as count, value)
  bits 5-7  reserved, preserved as read
"""
from __future__ import annotations

import enum
from dataclasses import dataclass

from .errors import UnsupportedFormatError


class D2Format(enum.IntEnum):
    ALPHA8 = 0x00
    RGB565 = 0x01
    ARGB8888 = 0x02
    ARGB4444 = 0x03
    ARGB1555 = 0x04
    AI44 = 0x05
    RGBA8888 = 0x06
    RGBA4444 = 0x07
    RGBA5551 = 0x08
    I8 = 0x09
    I4 = 0x0A
    I2 = 0x0B
    I1 = 0x0C
    ALPHA4 = 0x0D
    ALPHA2 = 0x0E
    ALPHA1 = 0x0F
    RGB888 = 0x12
    RGB444 = 0x13
    RGB555 = 0x14


class D2Flag(enum.IntFlag):
    RLE = 0x01
    PALETTE = 0x02
    ROTATION = 0x0C
    RLE_PAIRED = 0x10


ROTATION_SHIFT = 2


@dataclass(frozen=True)
class FormatInfo:
    bits_per_pixel: int
    palette_size: int = 0
    alpha_only: bool = False

    @property
    def indexed(self) -> bool:
        return self.palette_size > 0


_INFO: dict[D2Format, FormatInfo] = {
    D2Format.ALPHA8: FormatInfo(8, alpha_only=True),
    D2Format.RGB565: FormatInfo(16),
    D2Format.ARGB8888: FormatInfo(32),
    D2Format.RGB888: FormatInfo(24),
    D2Format.ARGB4444: FormatInfo(16),
    D2Format.RGB444: FormatInfo(16),
    D2Format.ARGB1555: FormatInfo(16),
    D2Format.RGB555: FormatInfo(16),
    D2Format.AI44: FormatInfo(8, 16),
    D2Format.RGBA8888: FormatInfo(32),
    D2Format.RGBA4444: FormatInfo(16),
    D2Format.RGBA5551: FormatInfo(16),
    D2Format.I8: FormatInfo(8, 256),
    D2Format.I4: FormatInfo(4, 16),
    D2Format.I2: FormatInfo(2, 4),
    D2Format.I1: FormatInfo(1, 2),
    D2Format.ALPHA4: FormatInfo(4, alpha_only=True),
    D2Format.ALPHA2: FormatInfo(2, alpha_only=True),
    D2Format.ALPHA1: FormatInfo(1, alpha_only=True),
}

INDEXED_BY_BITS = {1: D2Format.I1, 2: D2Format.I2, 4: D2Format.I4, 8: D2Format.I8}


def to_format(value: "int | str | D2Format") -> D2Format:
    """Accept a D2Format, a tag byte, an enum name ('I4') or an editor name ('d2_mode_i4')."""
    if isinstance(value, D2Format):
        return value
    if isinstance(value, str):
        return format_from_name(value)
    try:
        return D2Format(value)
    except ValueError:
        raise UnsupportedFormatError(f"unsupported format tag {value:#04x}") from None


def format_info(fmt: "int | str | D2Format") -> FormatInfo:
    return _INFO[to_format(fmt)]


def palette_size(fmt: "int | str | D2Format") -> int:
    return format_info(fmt).palette_size


def is_indexed(fmt: "int | str | D2Format") -> bool:
    return format_info(fmt).indexed


def payload_size(fmt: "int | str | D2Format", pixel_count: int) -> int:
    """Bytes of unpacked pixel data: ceil(pixels * bpp / 8)."""
    return (pixel_count * format_info(fmt).bits_per_pixel + 7) // 8


def format_name(fmt: "int | str | D2Format") -> str:
    return "d2_mode_" + to_format(fmt).name.lower()


def format_from_name(name: str) -> D2Format:
    key = name.strip().lower()
    if key.startswith("d2_mode_"):
        key = key[len("d2_mode_"):]
    try:
        return D2Format[key.upper()]
    except KeyError:
        raise UnsupportedFormatError(f"unsupported format name {name!r}") from None

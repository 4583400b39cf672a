"""
d2tex.bitpack — pack/unpack palette indices and direct-colour pixels.

Indexed layouts (one routine, parameterised by bits per pixel):
  8 bpp  one byte per pixel
  4 bpp  pixel i -> byte i//2, even pixels in the low nibble, odd in the high
  2 bpp  pixel i -> byte i//4, shift (i mod 4) * 2
  1 bpp  pixel i -> byte i//8, shift (i mod 8)
Buffers are ceil(count * bpp / 8) bytes; unused high bits of a trailing
partial byte stay zero.

Direct-colour formats are described in d2tex.formats.  Unpacking shifts
each field back into the top of its byte, so it truncates precision; that
loss is expected and ``pack(unpack(x)) == x`` still holds for packed data.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Callable, Sequence

from .formats import D2Format, format_info, to_format
from .errors import UnsupportedFormatError

PACKABLE_BITS = (1, 2, 4, 8)


def _check_bits(bits: int) -> None:
    if bits not in PACKABLE_BITS:
        raise ValueError(f"cannot pack {bits} bits per pixel; expected 1, 2, 4 or 8")


def packed_size(count: int, bits: int) -> int:
    return (count * bits + 7) // 8


# ---------------------------------------------------------------------------
# Indexed
# ---------------------------------------------------------------------------

def pack_indices(indices: Sequence[int], bits: int) -> bytes:
    """Pack palette indices (each < 2**bits) into bytes."""
    _check_bits(bits)
    limit = 1 << bits
    for i, v in enumerate(indices):
        if not 0 <= v < limit:
            raise ValueError(f"index {v} at pixel {i} does not fit in {bits} bits")
    if bits == 8:
        return bytes(indices)
    out = bytearray(packed_size(len(indices), bits))
    per_byte = 8 // bits
    for i, v in enumerate(indices):
        out[i // per_byte] |= v << ((i % per_byte) * bits)
    return bytes(out)


def unpack_indices(data: bytes, bits: int, count: int) -> list[int]:
    """Inverse of pack_indices for the first *count* pixels."""
    _check_bits(bits)
    need = packed_size(count, bits)
    if len(data) < need:
        raise ValueError(f"need {need} bytes for {count} pixels at {bits} bpp, got {len(data)}")
    if bits == 8:
        return list(data[:count])
    per_byte = 8 // bits
    mask = (1 << bits) - 1
    return [(data[i // per_byte] >> ((i % per_byte) * bits)) & mask for i in range(count)]


@dataclass(frozen=True)
class IndexedBuffer:
    width: int
    height: int
    bits_per_pixel: int
    data: bytes

    @classmethod
    def from_indices(cls, width: int, height: int, bits_per_pixel: int,
                     indices: Sequence[int]) -> "IndexedBuffer":
        if len(indices) != width * height:
            raise ValueError(f"{len(indices)} indices for a {width}x{height} image")
        return cls(width, height, bits_per_pixel, pack_indices(indices, bits_per_pixel))

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    def indices(self) -> list[int]:
        return unpack_indices(self.data, self.bits_per_pixel, self.pixel_count)


# ---------------------------------------------------------------------------
# AI44: alpha in the high nibble, 16-colour index in the low nibble
# ---------------------------------------------------------------------------

def pack_ai44(indices: Sequence[int], alphas: Sequence[int]) -> bytes:
    if len(indices) != len(alphas):
        raise ValueError("AI44 needs one alpha per index")
    out = bytearray(len(indices))
    for i, (idx, a) in enumerate(zip(indices, alphas)):
        if not 0 <= idx < 16:
            raise ValueError(f"index {idx} at pixel {i} does not fit in 4 bits")
        out[i] = ((a >> 4) << 4) | idx
    return bytes(out)


def unpack_ai44(data: bytes, count: int) -> tuple[list[int], list[int]]:
    """Return (indices, alphas); alpha nibbles are shifted back to 0..240."""
    if len(data) < count:
        raise ValueError(f"need {count} bytes for AI44, got {len(data)}")
    return ([b & 0x0F for b in data[:count]], [b & 0xF0 for b in data[:count]])


# ---------------------------------------------------------------------------
# Direct colour
# ---------------------------------------------------------------------------

Encoder = Callable[[int, int, int, int], int]
Decoder = Callable[[int], tuple[int, int, int, int]]

_WORD16: dict[D2Format, tuple[Encoder, Decoder]] = {
    D2Format.RGB565: (
        lambda r, g, b, a: ((r >> 3) << 11) | ((g >> 2) << 5) | (b >> 3),
        lambda w: (((w >> 11) & 0x1F) << 3, ((w >> 5) & 0x3F) << 2, (w & 0x1F) << 3, 255),
    ),
    D2Format.ARGB1555: (
        lambda r, g, b, a: ((1 if a >= 128 else 0) << 15) | ((r >> 3) << 10)
                           | ((g >> 3) << 5) | (b >> 3),
        lambda w: (((w >> 10) & 0x1F) << 3, ((w >> 5) & 0x1F) << 3, (w & 0x1F) << 3,
                   255 if w & 0x8000 else 0),
    ),
    D2Format.RGB555: (
        lambda r, g, b, a: ((r >> 3) << 10) | ((g >> 3) << 5) | (b >> 3),
        lambda w: (((w >> 10) & 0x1F) << 3, ((w >> 5) & 0x1F) << 3, (w & 0x1F) << 3, 255),
    ),
    D2Format.ARGB4444: (
        lambda r, g, b, a: ((a >> 4) << 12) | ((r >> 4) << 8) | ((g >> 4) << 4) | (b >> 4),
        lambda w: (((w >> 8) & 0xF) << 4, ((w >> 4) & 0xF) << 4, (w & 0xF) << 4,
                   ((w >> 12) & 0xF) << 4),
    ),
    D2Format.RGB444: (
        lambda r, g, b, a: ((r >> 4) << 8) | ((g >> 4) << 4) | (b >> 4),
        lambda w: (((w >> 8) & 0xF) << 4, ((w >> 4) & 0xF) << 4, (w & 0xF) << 4, 255),
    ),
    D2Format.RGBA4444: (
        lambda r, g, b, a: ((r >> 4) << 12) | ((g >> 4) << 8) | ((b >> 4) << 4) | (a >> 4),
        lambda w: (((w >> 12) & 0xF) << 4, ((w >> 8) & 0xF) << 4, ((w >> 4) & 0xF) << 4,
                   (w & 0xF) << 4),
    ),
    D2Format.RGBA5551: (
        lambda r, g, b, a: ((r >> 3) << 11) | ((g >> 3) << 6) | ((b >> 3) << 1)
                           | (1 if a >= 128 else 0),
        lambda w: (((w >> 11) & 0x1F) << 3, ((w >> 6) & 0x1F) << 3, ((w >> 1) & 0x1F) << 3,
                   255 if w & 1 else 0),
    ),
}

_ALPHA_BITS = {D2Format.ALPHA8: 8, D2Format.ALPHA4: 4, D2Format.ALPHA2: 2, D2Format.ALPHA1: 1}


def pack_direct(rgba: bytes, fmt: "int | str | D2Format") -> bytes:
    """Convert a flat RGBA buffer to the packed bytes of a direct format."""
    fmt = to_format(fmt)
    if len(rgba) % 4:
        raise ValueError("RGBA buffer length must be a multiple of 4")
    n = len(rgba) // 4

    if fmt in _WORD16:
        enc = _WORD16[fmt][0]
        words = [enc(rgba[i], rgba[i + 1], rgba[i + 2], rgba[i + 3])
                 for i in range(0, len(rgba), 4)]
        return struct.pack(f"<{n}H", *words)
    if fmt == D2Format.RGBA8888:
        return bytes(rgba)
    if fmt == D2Format.ARGB8888:
        words = [(rgba[i + 3] << 24) | (rgba[i] << 16) | (rgba[i + 1] << 8) | rgba[i + 2]
                 for i in range(0, len(rgba), 4)]
        return struct.pack(f"<{n}I", *words)
    if fmt == D2Format.RGB888:
        out = bytearray(n * 3)
        out[0::3] = rgba[0::4]
        out[1::3] = rgba[1::4]
        out[2::3] = rgba[2::4]
        return bytes(out)
    if fmt in _ALPHA_BITS:
        bits = _ALPHA_BITS[fmt]
        return pack_indices([a >> (8 - bits) for a in rgba[3::4]], bits)
    raise UnsupportedFormatError(f"{fmt.name} is not a direct-colour format")


def unpack_direct(data: bytes, fmt: "int | str | D2Format", pixel_count: int) -> bytes:
    """Expand packed direct-format bytes back to a flat RGBA buffer."""
    fmt = to_format(fmt)
    need = (pixel_count * format_info(fmt).bits_per_pixel + 7) // 8
    if len(data) < need:
        raise ValueError(f"need {need} bytes for {pixel_count} {fmt.name} pixels, got {len(data)}")
    n = pixel_count

    if fmt in _WORD16:
        dec = _WORD16[fmt][1]
        out = bytearray()
        for w in struct.unpack_from(f"<{n}H", data):
            out.extend(dec(w))
        return bytes(out)
    if fmt == D2Format.RGBA8888:
        return bytes(data[:n * 4])
    if fmt == D2Format.ARGB8888:
        out = bytearray()
        for w in struct.unpack_from(f"<{n}I", data):
            out.extend(((w >> 16) & 0xFF, (w >> 8) & 0xFF, w & 0xFF, (w >> 24) & 0xFF))
        return bytes(out)
    if fmt == D2Format.RGB888:
        out = bytearray(b"\xff" * (n * 4))
        out[0::4] = data[0:n * 3:3]
        out[1::4] = data[1:n * 3:3]
        out[2::4] = data[2:n * 3:3]
        return bytes(out)
    if fmt in _ALPHA_BITS:
        bits = _ALPHA_BITS[fmt]
        top = (1 << bits) - 1
        out = bytearray(b"\xff" * (n * 4))
        out[3::4] = bytes(v * 255 // top for v in unpack_indices(data, bits, n))
        return bytes(out)
    raise UnsupportedFormatError(f"{fmt.name} is not a direct-colour format")

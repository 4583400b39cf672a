"""
d2tex.d2 — D2 texture container ↔ RGBA / PNG.

D2 file layout (multi-byte integers little-endian)
--------------------------------------------------
  [0..1]   b'D2'  magic
  [2]      uint8  format tag       (see d2tex.formats)
  [3..4]   uint16 width
  [5..6]   uint16 height
  [7]      uint8  flags            bit0 RLE, bit1 palette, bits2-3 rotation,
                                   bit4 paired RLE, bits5-7 reserved
  [8]      uint8  palette name length N (0 = unnamed)
  [9..]    N bytes UTF-8 palette name
  [..]     palette_size(format) * 4 bytes RGBA   (only if flag bit1)
  [..]     pixel payload, RLE-compressed if flag bit0

The uncompressed payload is exactly ceil(width * height * bpp / 8) bytes,
laid out by d2tex.bitpack.
"""
from __future__ import annotations

import logging
import struct
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from PIL import Image as PILImage

from .bitpack import pack_indices, unpack_ai44, unpack_direct, unpack_indices
from .color import BLACK, Color, as_palette, palette_bytes, rgba_to_image
from .errors import D2FormatError, UnsupportedFormatError
from .formats import (
    D2Flag, D2Format, ROTATION_SHIFT, format_info, payload_size, to_format,
)
from .rle import compress, compress_paired, decompress, decompress_paired

logger = logging.getLogger(__name__)

D2_MAGIC = b"D2"
HEADER_SIZE = 8
MAX_PALETTE_NAME = 255
MAX_DIMENSION = 0xFFFF

_RESERVED_MASK = 0xE0


# ---------------------------------------------------------------------------
# Texture
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class D2Texture:
    """One decoded (or to-be-encoded) D2 texture.

    ``payload`` always holds the uncompressed packed pixels; ``rle`` and
    ``rle_paired`` only say how the payload is stored in the file, and
    ``rle_paired`` reads True whenever ``rle`` is off.  An
    embedded palette shorter than the format's palette size is padded with
    opaque black.
    """
    format: D2Format
    width: int
    height: int
    payload: bytes
    palette: Optional[tuple[Color, ...]] = None
    palette_name: str = ""
    rotation: int = 0
    rle: bool = False
    rle_paired: bool = True
    reserved: int = 0

    def __post_init__(self) -> None:
        fmt = to_format(self.format)
        object.__setattr__(self, "format", fmt)
        if not 0 <= self.width <= MAX_DIMENSION or not 0 <= self.height <= MAX_DIMENSION:
            raise ValueError(f"texture size {self.width}x{self.height} does not fit in 16 bits")
        if not 0 <= self.rotation <= 3:
            raise ValueError(f"rotation must be 0-3 quarter turns, got {self.rotation}")
        if self.reserved & ~_RESERVED_MASK:
            raise ValueError(f"reserved flag bits {self.reserved:#04x} overlap defined flags")
        need = payload_size(fmt, self.width * self.height)
        if len(self.payload) != need:
            raise ValueError(f"{fmt.name} {self.width}x{self.height} payload must be "
                             f"{need} bytes, got {len(self.payload)}")
        if not self.rle:
            object.__setattr__(self, "rle_paired", True)
        if not isinstance(self.payload, bytes):
            object.__setattr__(self, "payload", bytes(self.payload))
        if self.palette is not None:
            size = format_info(fmt).palette_size
            if not size:
                raise UnsupportedFormatError(f"{fmt.name} cannot carry a palette")
            entries = as_palette(self.palette)
            if len(entries) > size:
                raise ValueError(f"{fmt.name} palette holds {size} colours, got {len(entries)}")
            if len(entries) < size:
                logger.warning("padding %d-colour palette to %d entries with black",
                               len(entries), size)
                entries += [BLACK] * (size - len(entries))
            object.__setattr__(self, "palette", tuple(entries))

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    @property
    def flags(self) -> int:
        value = self.reserved | (self.rotation << ROTATION_SHIFT)
        if self.rle:
            value |= D2Flag.RLE
            if self.rle_paired:
                value |= D2Flag.RLE_PAIRED
        if self.palette is not None:
            value |= D2Flag.PALETTE
        return int(value)

    def indices(self) -> list[int]:
        """Palette indices of an indexed texture (AI44: the low nibbles)."""
        fmt = self.format
        if fmt == D2Format.AI44:
            return unpack_ai44(self.payload, self.pixel_count)[0]
        info = format_info(fmt)
        if not info.indexed:
            raise UnsupportedFormatError(f"{fmt.name} is not an indexed format")
        return unpack_indices(self.payload, info.bits_per_pixel, self.pixel_count)

    @classmethod
    def from_indices(cls, fmt: "int | str | D2Format", width: int, height: int,
                     indices: Sequence[int], **kwargs) -> "D2Texture":
        fmt = to_format(fmt)
        info = format_info(fmt)
        if not info.indexed or fmt == D2Format.AI44:
            raise UnsupportedFormatError(f"{fmt.name} is not an I1/I2/I4/I8 format")
        return cls(fmt, width, height, pack_indices(indices, info.bits_per_pixel), **kwargs)


# ---------------------------------------------------------------------------
# Encode / decode
# ---------------------------------------------------------------------------

def encode_d2(tex: D2Texture) -> bytes:
    """Serialise *tex*; the payload is compressed when ``tex.rle`` is set."""
    name = tex.palette_name.encode("utf-8")
    if len(name) > MAX_PALETTE_NAME:
        raise ValueError(f"palette name is {len(name)} bytes; the limit is {MAX_PALETTE_NAME}")

    out = bytearray(D2_MAGIC)
    out += struct.pack("<BHHB", int(tex.format), tex.width, tex.height, tex.flags)
    out.append(len(name))
    out += name
    if tex.palette is not None:
        out += palette_bytes(tex.palette)

    payload = tex.payload
    if tex.rle:
        payload = compress_paired(payload) if tex.rle_paired else compress(payload)
    out += payload
    logger.debug("encoded %s %dx%d: %d payload bytes, %d total",
                 tex.format.name, tex.width, tex.height, len(tex.payload), len(out))
    return bytes(out)


def decode_d2(data: bytes) -> D2Texture:
    """Parse a D2 container.

    Raises D2FormatError for a short buffer, a bad magic or a truncated
    section, and UnsupportedFormatError for an unknown format tag.
    """
    if len(data) < HEADER_SIZE:
        raise D2FormatError(f"D2 data is {len(data)} bytes, shorter than the "
                            f"{HEADER_SIZE}-byte header")
    if data[:2] != D2_MAGIC:
        raise D2FormatError(f"bad D2 magic {bytes(data[:2])!r}")
    fmt = to_format(data[2])
    width, height, flags = struct.unpack_from("<HHB", data, 3)
    info = format_info(fmt)

    pos = HEADER_SIZE
    if len(data) < pos + 1:
        raise D2FormatError("D2 data ends before the palette name length")
    name_len = data[pos]
    pos += 1
    if len(data) < pos + name_len:
        raise D2FormatError("D2 data ends inside the palette name")
    try:
        name = bytes(data[pos:pos + name_len]).decode("utf-8")
    except UnicodeDecodeError as exc:
        raise D2FormatError(f"palette name is not valid UTF-8: {exc}") from None
    pos += name_len

    palette = None
    if flags & D2Flag.PALETTE:
        if not info.indexed:
            raise D2FormatError(f"palette flag set on direct-colour format {fmt.name}")
        size = info.palette_size * 4
        if len(data) < pos + size:
            raise D2FormatError(f"D2 data ends inside the {info.palette_size}-colour palette")
        raw = data[pos:pos + size]
        palette = tuple(Color(raw[i], raw[i + 1], raw[i + 2], raw[i + 3])
                        for i in range(0, size, 4))
        pos += size

    rle_on = bool(flags & D2Flag.RLE)
    paired = bool(flags & D2Flag.RLE_PAIRED)
    payload = bytes(data[pos:])
    if rle_on:
        payload = decompress_paired(payload) if paired else decompress(payload)

    need = payload_size(fmt, width * height)
    if len(payload) < need:
        raise D2FormatError(f"payload is {len(payload)} bytes, expected {need} "
                            f"for {fmt.name} {width}x{height}")
    if len(payload) > need:
        logger.warning("ignoring %d trailing payload bytes", len(payload) - need)
        payload = payload[:need]

    return D2Texture(
        format=fmt, width=width, height=height, payload=payload,
        palette=palette, palette_name=name,
        rotation=(flags & D2Flag.ROTATION) >> ROTATION_SHIFT,
        rle=rle_on, rle_paired=paired if rle_on else True,
        reserved=flags & _RESERVED_MASK,
    )


# ---------------------------------------------------------------------------
# RGBA expansion
# ---------------------------------------------------------------------------

def _lookup(palette: Sequence[Color], offset: int):
    n = len(palette)

    def colour(i: int) -> Color:
        if not n:
            return BLACK
        return palette[(i + offset) % n]
    return colour


def texture_to_rgba(tex: D2Texture, palette: Optional[Sequence] = None,
                    offset: int = 0) -> bytes:
    """Expand *tex* to a flat RGBA buffer for previews.

    Indexed textures use their embedded palette when they have one;
    otherwise the caller's *palette* is read at ``(index + offset) mod len``.
    With no palette at all every pixel renders opaque black.
    """
    fmt = tex.format
    info = format_info(fmt)
    if not info.indexed:
        return unpack_direct(tex.payload, fmt, tex.pixel_count)

    if tex.palette is not None:
        colour = _lookup(tex.palette, 0)
    else:
        colour = _lookup(as_palette(palette) if palette else [], offset)

    out = bytearray(tex.pixel_count * 4)
    if fmt == D2Format.AI44:
        indices, alphas = unpack_ai44(tex.payload, tex.pixel_count)
        for i, (idx, a) in enumerate(zip(indices, alphas)):
            c = colour(idx)
            out[i * 4:i * 4 + 4] = bytes((c.r, c.g, c.b, a))
        return bytes(out)

    for i, idx in enumerate(unpack_indices(tex.payload, info.bits_per_pixel, tex.pixel_count)):
        c = colour(idx)
        out[i * 4:i * 4 + 4] = bytes((c.r, c.g, c.b, c.a))
    return bytes(out)


def d2_to_image(tex: D2Texture, palette: Optional[Sequence] = None,
                offset: int = 0) -> PILImage.Image:
    return rgba_to_image(tex.width, tex.height, texture_to_rgba(tex, palette, offset))


# ---------------------------------------------------------------------------
# Codec object and file helpers
# ---------------------------------------------------------------------------

@dataclass
class D2Codec:
    """Container codec handed to TextureConverter.

    ``paired`` selects the RLE framing used for textures written with
    ``rle=True`` through :meth:`build`.
    """
    paired: bool = True

    def build(self, fmt: "int | str | D2Format", width: int, height: int, payload: bytes,
              palette: Optional[Sequence] = None, palette_name: str = "",
              rotation: int = 0, rle: bool = False) -> D2Texture:
        return D2Texture(to_format(fmt), width, height, payload,
                         palette=tuple(as_palette(palette)) if palette is not None else None,
                         palette_name=palette_name, rotation=rotation,
                         rle=rle, rle_paired=self.paired)

    def encode(self, tex: D2Texture) -> bytes:
        return encode_d2(tex)

    def decode(self, data: bytes) -> D2Texture:
        return decode_d2(data)

    def to_rgba(self, tex: D2Texture, palette: Optional[Sequence] = None,
                offset: int = 0) -> bytes:
        return texture_to_rgba(tex, palette, offset)


def read_d2(path: str | Path) -> D2Texture:
    """Decode a .d2 file."""
    return decode_d2(Path(path).read_bytes())


def write_d2(tex: D2Texture, path: str | Path) -> None:
    """Encode *tex* to a .d2 file."""
    Path(path).write_bytes(encode_d2(tex))


def is_d2(path: str | Path) -> bool:
    """Return True if the file starts with the D2 magic."""
    try:
        with open(path, "rb") as f:
            return f.read(2) == D2_MAGIC
    except OSError:
        return False

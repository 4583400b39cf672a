"""
d2tex.color — value types for colours and source bitmaps.

Colour model
------------
  Color          (r, g, b, a), each 0..255.  Equal iff all four channels match.
  WeightedColor  RGB triple plus a pixel count, used only while quantising.
  Palette        plain list of Color; index 0 is the transparency sentinel.
  SourceBitmap   width, height and a flat RGBA buffer (width*height*4 bytes).

A pixel is *transparent* when its alpha byte is below OPAQUE_THRESHOLD (128).
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Iterator, NamedTuple, Sequence

from PIL import Image as PILImage

from .errors import NoDataError

OPAQUE_THRESHOLD = 128


class Color(NamedTuple):
    r: int
    g: int
    b: int
    a: int = 255

    @property
    def is_transparent(self) -> bool:
        return self.a < OPAQUE_THRESHOLD

    @property
    def rgb(self) -> tuple[int, int, int]:
        return (self.r, self.g, self.b)

    def to_hex(self) -> str:
        """'#rrggbb' (alpha is dropped)."""
        return f"#{self.r:02x}{self.g:02x}{self.b:02x}"

    @classmethod
    def from_hex(cls, hex_str: str, alpha: int = 255) -> "Color":
        """Parse '#rgb', '#rrggbb' or '#rrggbbaa' (leading '#' optional)."""
        s = hex_str.strip().lower().lstrip("#")
        if len(s) == 3:
            s = "".join(ch * 2 for ch in s)
        if len(s) not in (6, 8):
            raise ValueError(f"bad hex colour: {hex_str!r}")
        try:
            r, g, b = int(s[0:2], 16), int(s[2:4], 16), int(s[4:6], 16)
            a = int(s[6:8], 16) if len(s) == 8 else alpha
        except ValueError:
            raise ValueError(f"bad hex colour: {hex_str!r}") from None
        return cls(r, g, b, a)


BLACK = Color(0, 0, 0, 255)

Palette = list  # list[Color]


@dataclass
class WeightedColor:
    r: int
    g: int
    b: int
    count: int = 1

    @property
    def color(self) -> Color:
        return Color(self.r, self.g, self.b, 255)


def clamp_byte(value: float) -> int:
    """Round half up and clamp to 0..255."""
    v = int(value + 0.5)
    return 0 if v < 0 else 255 if v > 255 else v


def as_palette(colors: Sequence) -> list[Color]:
    """Coerce hex strings, 3/4-tuples or Color objects into a Color list."""
    out: list[Color] = []
    for c in colors:
        if isinstance(c, Color):
            out.append(c)
        elif isinstance(c, str):
            out.append(Color.from_hex(c))
        elif len(c) == 3:
            out.append(Color(int(c[0]), int(c[1]), int(c[2]), 255))
        elif len(c) == 4:
            out.append(Color(int(c[0]), int(c[1]), int(c[2]), int(c[3])))
        else:
            raise ValueError(f"cannot interpret {c!r} as a colour")
    return out


def palette_bytes(palette: Sequence[Color]) -> bytes:
    """Serialise a palette as consecutive RGBA quads."""
    out = bytearray()
    for c in palette:
        out.extend((c.r, c.g, c.b, c.a))
    return bytes(out)


# ---------------------------------------------------------------------------
# Source bitmap
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class SourceBitmap:
    width: int
    height: int
    rgba: bytes

    def __post_init__(self) -> None:
        if self.rgba is None:
            raise NoDataError("source bitmap has no pixel buffer")
        if self.width < 0 or self.height < 0:
            raise ValueError(f"negative bitmap size {self.width}x{self.height}")
        expected = self.width * self.height * 4
        if len(self.rgba) != expected:
            raise ValueError(
                f"RGBA buffer is {len(self.rgba)} bytes, expected {expected} "
                f"for {self.width}x{self.height}")
        if not isinstance(self.rgba, bytes):
            object.__setattr__(self, "rgba", bytes(self.rgba))

    @property
    def pixel_count(self) -> int:
        return self.width * self.height

    def pixels(self) -> Iterator[Color]:
        data = self.rgba
        for i in range(0, len(data), 4):
            yield Color(data[i], data[i + 1], data[i + 2], data[i + 3])

    def pixel(self, x: int, y: int) -> Color:
        o = (y * self.width + x) * 4
        d = self.rgba
        return Color(d[o], d[o + 1], d[o + 2], d[o + 3])

    @classmethod
    def from_pixels(cls, width: int, height: int,
                    pixels: Sequence[Sequence[int]]) -> "SourceBitmap":
        """Build from a sequence of (r, g, b[, a]) tuples in row-major order."""
        buf = bytearray()
        for c in as_palette(pixels):
            buf.extend((c.r, c.g, c.b, c.a))
        return cls(width, height, bytes(buf))

    @classmethod
    def from_image(cls, img: PILImage.Image) -> "SourceBitmap":
        rgba = img.convert("RGBA")
        w, h = rgba.size
        return cls(w, h, rgba.tobytes())

    def to_image(self) -> PILImage.Image:
        return rgba_to_image(self.width, self.height, self.rgba)


def require_bitmap(bitmap: SourceBitmap | None) -> SourceBitmap:
    """Return *bitmap* or raise NoDataError if there is nothing to work on."""
    if bitmap is None:
        raise NoDataError("no source bitmap")
    if bitmap.pixel_count == 0:
        raise NoDataError("source bitmap is empty")
    return bitmap


def rgba_to_image(width: int, height: int, rgba: bytes) -> PILImage.Image:
    """Wrap a flat RGBA buffer in a PIL image (for previews and PNG export)."""
    return PILImage.frombytes("RGBA", (width, height), bytes(rgba))

"""
d2tex.texture — source bitmap → palette → packed pixels → D2 container.

TextureConverter wires the stages together.  Every collaborator is passed
in (histogram function, Quantizer, PaletteMatcher, D2Codec) so a caller can
swap the metric, the reduction algorithm or the RLE framing without touching
the pipeline.

Texture holds one source bitmap plus its derived data.  Derivatives are
cached in a TextureCache under a digest of everything they depend on
(source pixels, format, palette, offset, strategy); a read whose digest no
longer matches regenerates the entry.
"""
from __future__ import annotations

import hashlib
import logging
import struct
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Optional, Sequence

from .bitpack import pack_ai44, pack_direct, pack_indices
from .color import Color, SourceBitmap, WeightedColor, as_palette, palette_bytes, require_bitmap
from .d2 import D2Codec, D2Texture
from .errors import NoDataError, NoOpaquePixelsError
from .formats import D2Format, format_info, to_format
from .histogram import build_histogram
from .match import MatchResult, PaletteMatcher, Strategy
from .quantize import Quantizer
from .tasks import CancelToken, ProgressCallback, Steps, run_task, run_task_async

logger = logging.getLogger(__name__)

HistogramFn = Callable[[Iterable[SourceBitmap]], list[WeightedColor]]


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def source_hash(bitmap: SourceBitmap) -> str:
    h = hashlib.blake2b(digest_size=16)
    h.update(struct.pack("<II", bitmap.width, bitmap.height))
    h.update(bitmap.rgba)
    return h.hexdigest()


def palette_hash(palette: Optional[Sequence]) -> str:
    if palette is None:
        return "-"
    return hashlib.blake2b(palette_bytes(as_palette(palette)), digest_size=16).hexdigest()


def cache_key(*parts: Any) -> str:
    return "|".join(str(p) for p in parts)


# ---------------------------------------------------------------------------
# Cache
# ---------------------------------------------------------------------------

class TextureCache:
    """Named slots, each holding one value stamped with the key it was built for."""

    def __init__(self) -> None:
        self._slots: dict[str, tuple[str, Any]] = {}
        self.hits = 0
        self.misses = 0

    def get(self, slot: str, key: str) -> Any:
        entry = self._slots.get(slot)
        if entry is not None and entry[0] == key:
            self.hits += 1
            return entry[1]
        self.misses += 1
        if entry is not None:
            logger.debug("cache slot %r is stale", slot)
        return None

    def put(self, slot: str, key: str, value: Any) -> None:
        self._slots[slot] = (key, value)

    def invalidate(self, slot: Optional[str] = None) -> None:
        if slot is None:
            self._slots.clear()
        else:
            self._slots.pop(slot, None)

    def __contains__(self, slot: str) -> bool:
        return slot in self._slots


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

@dataclass
class ReductionResult:
    palette: list[Color]
    indexed_frames: list[list[int]]
    original_colors: int


@dataclass
class PixelData:
    """Packed payload for one format plus the palette window it indexes."""
    format: D2Format
    payload: bytes
    palette: Optional[list[Color]] = None
    offset: int = 0
    match: Optional[MatchResult] = None


@dataclass
class ExportResult:
    data: bytes
    texture: D2Texture
    offset: int = 0
    match: Optional[MatchResult] = field(default=None, repr=False)


# ---------------------------------------------------------------------------
# Converter
# ---------------------------------------------------------------------------

class TextureConverter:

    def __init__(self, histogram: HistogramFn = build_histogram,
                 quantizer: Optional[Quantizer] = None,
                 matcher: Optional[PaletteMatcher] = None,
                 codec: Optional[D2Codec] = None) -> None:
        self.histogram = histogram
        self.quantizer = quantizer if quantizer is not None else Quantizer()
        self.matcher = matcher if matcher is not None else PaletteMatcher()
        self.codec = codec if codec is not None else D2Codec()

    # -- colour reduction --------------------------------------------------

    def reduce_colors_steps(self, frames: SourceBitmap | Sequence[SourceBitmap],
                            color_count: int) -> Steps[ReductionResult]:
        """One shared palette for all *frames*, plus per-frame absolute indices."""
        if isinstance(frames, SourceBitmap) or frames is None:
            frames = [frames]
        frames = [require_bitmap(f) for f in frames]
        if not frames:
            raise NoDataError("no frames to reduce")

        colors = self.histogram(frames)
        if not colors:
            raise NoOpaquePixelsError("source has no opaque pixels")
        logger.info("reducing %d colours to %d over %d frame(s)",
                    len(colors), color_count, len(frames))
        palette = yield from self.quantizer.steps(colors, color_count)

        indexed = []
        for frame in frames:
            result = yield from self.matcher.steps(frame, palette, Strategy.GLOBAL)
            indexed.append(result.indices)
        return ReductionResult(palette, indexed, len(colors))

    def reduce_colors(self, frames: SourceBitmap | Sequence[SourceBitmap], color_count: int,
                      on_progress: Optional[ProgressCallback] = None,
                      token: Optional[CancelToken] = None) -> ReductionResult:
        return run_task(self.reduce_colors_steps(frames, color_count), on_progress, token)

    async def reduce_colors_async(self, frames: SourceBitmap | Sequence[SourceBitmap],
                                  color_count: int,
                                  on_progress: Optional[ProgressCallback] = None,
                                  token: Optional[CancelToken] = None) -> ReductionResult:
        return await run_task_async(self.reduce_colors_steps(frames, color_count),
                                    on_progress, token)

    # -- pixel packing -----------------------------------------------------

    def pixel_steps(self, bitmap: SourceBitmap, fmt: "int | str | D2Format",
                    palette: Optional[Sequence] = None, offset: int = 0,
                    strategy: Optional[Strategy] = None) -> Steps[PixelData]:
        """Pack *bitmap* for *fmt*.

        Direct formats ignore the palette.  Indexed formats match against
        *palette* (I8 globally, smaller windows by *strategy*, default Fit);
        without a palette the source is first quantised to the window size.
        """
        bitmap = require_bitmap(bitmap)
        fmt = to_format(fmt)
        info = format_info(fmt)
        if not info.indexed:
            return PixelData(fmt, pack_direct(bitmap.rgba, fmt))

        window = info.palette_size
        if palette is None:
            weighted = self.histogram([bitmap])
            if not weighted:
                raise NoOpaquePixelsError("source has no opaque pixels")
            colours = yield from self.quantizer.steps(weighted, window)
            offset = 0
        else:
            colours = as_palette(palette)
        if strategy is None:
            strategy = Strategy.GLOBAL if window == 256 else Strategy.FIT
        strategy = Strategy(strategy)
        truncated = strategy is Strategy.GLOBAL and len(colours) > window
        if truncated:
            logger.warning("%s holds %d colours; using the first %d of %d",
                           fmt.name, window, window, len(colours))
            colours = colours[:window]

        result = yield from self.matcher.steps(bitmap, colours, strategy, window, offset)
        if truncated:
            result.clamped = True
        window_colours = result.window(colours)
        if fmt == D2Format.AI44:
            payload = pack_ai44(result.indices, bitmap.rgba[3::4])
        else:
            payload = pack_indices(result.indices, info.bits_per_pixel)
        logger.debug("%s: %s match at offset %d", fmt.name, strategy.value, result.offset)
        return PixelData(fmt, payload, window_colours, result.offset, result)

    def export_steps(self, bitmap: SourceBitmap, fmt: "int | str | D2Format",
                     palette: Optional[Sequence] = None, offset: int = 0,
                     strategy: Optional[Strategy] = None, rle: bool = False,
                     palette_name: str = "", rotation: int = 0,
                     embed_palette: bool = True) -> Steps[ExportResult]:
        pixels = yield from self.pixel_steps(bitmap, fmt, palette, offset, strategy)
        embedded = pixels.palette if embed_palette else None
        tex = self.codec.build(pixels.format, bitmap.width, bitmap.height, pixels.payload,
                               palette=embedded, palette_name=palette_name,
                               rotation=rotation, rle=rle)
        data = self.codec.encode(tex)
        logger.info("exported %dx%d %s texture (%d bytes)",
                    bitmap.width, bitmap.height, tex.format.name, len(data))
        return ExportResult(data, tex, pixels.offset, pixels.match)

    def export(self, bitmap: SourceBitmap, fmt: "int | str | D2Format",
               palette: Optional[Sequence] = None, offset: int = 0,
               strategy: Optional[Strategy] = None, rle: bool = False,
               palette_name: str = "", rotation: int = 0, embed_palette: bool = True,
               on_progress: Optional[ProgressCallback] = None,
               token: Optional[CancelToken] = None) -> ExportResult:
        return run_task(self.export_steps(bitmap, fmt, palette, offset, strategy, rle,
                                          palette_name, rotation, embed_palette),
                        on_progress, token)

    async def export_async(self, bitmap: SourceBitmap, fmt: "int | str | D2Format",
                           palette: Optional[Sequence] = None, offset: int = 0,
                           strategy: Optional[Strategy] = None, rle: bool = False,
                           palette_name: str = "", rotation: int = 0,
                           embed_palette: bool = True,
                           on_progress: Optional[ProgressCallback] = None,
                           token: Optional[CancelToken] = None) -> ExportResult:
        return await run_task_async(
            self.export_steps(bitmap, fmt, palette, offset, strategy, rle,
                              palette_name, rotation, embed_palette),
            on_progress, token)


# ---------------------------------------------------------------------------
# Texture
# ---------------------------------------------------------------------------

class Texture:
    """A source bitmap with cached binary and rendered derivatives.

    Assigning a new ``source`` drops every cached entry.  Reads check the
    stored key anyway, so changing format, palette, offset or strategy
    between calls regenerates the derivative rather than returning a stale
    one.
    """

    BINARY = "binary"
    RENDERED = "rendered"

    def __init__(self, source: Optional[SourceBitmap] = None,
                 converter: Optional[TextureConverter] = None) -> None:
        self.converter = converter if converter is not None else TextureConverter()
        self.cache = TextureCache()
        self._source: Optional[SourceBitmap] = None
        self._source_hash = "-"
        self.source = source

    @property
    def source(self) -> Optional[SourceBitmap]:
        return self._source

    @source.setter
    def source(self, bitmap: Optional[SourceBitmap]) -> None:
        self._source = bitmap
        self._source_hash = source_hash(bitmap) if bitmap is not None else "-"
        self.clear()

    def clear(self) -> None:
        self.cache.invalidate()

    def _key(self, fmt: D2Format, palette: Optional[Sequence], offset: int,
             strategy: Optional[Strategy]) -> str:
        return cache_key(self._source_hash, int(fmt), palette_hash(palette), offset,
                         Strategy(strategy).value if strategy is not None else "-")

    def pixel_data(self, fmt: "int | str | D2Format", palette: Optional[Sequence] = None,
                   offset: int = 0, strategy: Optional[Strategy] = None) -> PixelData:
        if self._source is None:
            raise NoDataError("texture has no source bitmap")
        fmt = to_format(fmt)
        key = self._key(fmt, palette, offset, strategy)
        pixels = self.cache.get(self.BINARY, key)
        if pixels is None:
            pixels = run_task(self.converter.pixel_steps(self._source, fmt, palette,
                                                         offset, strategy))
            self.cache.put(self.BINARY, key, pixels)
        return pixels

    def binary_data(self, fmt: "int | str | D2Format", palette: Optional[Sequence] = None,
                    offset: int = 0, strategy: Optional[Strategy] = None) -> bytes:
        """Packed, uncompressed pixel payload for *fmt*."""
        return self.pixel_data(fmt, palette, offset, strategy).payload

    def rendered_data(self, fmt: "int | str | D2Format", palette: Optional[Sequence] = None,
                      offset: int = 0, strategy: Optional[Strategy] = None) -> bytes:
        """RGBA preview of what *fmt* will look like on the hardware."""
        fmt = to_format(fmt)
        pixels = self.pixel_data(fmt, palette, offset, strategy)
        key = self._key(fmt, palette, offset, strategy)
        rgba = self.cache.get(self.RENDERED, key)
        if rgba is None:
            src = self._source
            tex = D2Texture(fmt, src.width, src.height, pixels.payload,
                            palette=tuple(pixels.palette) if pixels.palette is not None else None)
            rgba = self.converter.codec.to_rgba(tex)
            self.cache.put(self.RENDERED, key, rgba)
        return rgba

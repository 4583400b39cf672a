"""
d2tex.match — nearest-colour palette matching.

Low-bit-depth hardware formats read their colours from a *window* of a
larger shared palette: 2, 4 or 16 consecutive entries starting at an offset
aligned to the window size.  Four strategies map pixels to indices:

  global     search the whole palette; indices are absolute (I8).
  force-map  search the whole palette, then fold the hit into the window:
             ``(index mod window) + aligned_offset``, clamped to the last
             palette entry.  Fast, approximate.
  fit        search only the window at the given offset (a window that
             runs past the palette end is cut short, not moved).
  best-fit   try every aligned window, keep the one with the smallest total
             error (sum over opaque pixels of the distance to the closest
             window colour; ties go to the lowest offset), then fit.

Every strategy sends transparent pixels (alpha < 128) to the sentinel:
local index 0, i.e. absolute index ``offset``.  Results carry indices local
to the window (0..window-1) plus the offset, so they can be bit-packed
directly.
"""
from __future__ import annotations

import enum
import logging
import math
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence

from .color import Color, OPAQUE_THRESHOLD, SourceBitmap
from .metrics import Metric, euclidean
from .tasks import CancelToken, Progress, ProgressCallback, Steps, run_task, run_task_async

logger = logging.getLogger(__name__)

BEST_FIT_YIELD_EVERY = 4096

WINDOW_SIZES = {1: 2, 2: 4, 4: 16, 8: 256}


class Strategy(str, enum.Enum):
    GLOBAL = "global"
    FORCE_MAP = "force-map"
    FIT = "fit"
    BEST_FIT = "best-fit"


def window_size_for(bits_per_pixel: int) -> int:
    try:
        return WINDOW_SIZES[bits_per_pixel]
    except KeyError:
        raise ValueError(f"no palette window for {bits_per_pixel} bits per pixel") from None


@dataclass
class MatchResult:
    indices: list[int]
    offset: int
    window_size: int
    strategy: Strategy
    clamped: bool = False
    window_errors: dict[int, float] = field(default_factory=dict)

    @property
    def absolute_indices(self) -> list[int]:
        off = self.offset
        return [i + off for i in self.indices]

    def window(self, palette: Sequence[Color]) -> list[Color]:
        """The palette entries the local indices refer to."""
        return list(palette[self.offset: self.offset + self.window_size])


def _as_pixels(source: SourceBitmap | Iterable[Color]) -> list[Color]:
    if isinstance(source, SourceBitmap):
        return list(source.pixels())
    return [p if isinstance(p, Color) else Color(*p) for p in source]


def _check_palette(palette: Sequence[Color]) -> None:
    if not palette:
        raise ValueError("cannot match against an empty palette")


# ---------------------------------------------------------------------------
# Primitives
# ---------------------------------------------------------------------------

def nearest_index(pixel: Color, palette: Sequence[Color],
                  metric: Metric = euclidean) -> int:
    """Index of the closest palette entry; the lowest index wins ties."""
    _check_palette(palette)
    best = 0
    best_distance = math.inf
    for i, candidate in enumerate(palette):
        d = metric(pixel, candidate)
        if d < best_distance:
            best_distance = d
            best = i
    return best


def _min_distance(pixel: Color, window: Sequence[Color], metric: Metric) -> float:
    best = math.inf
    for candidate in window:
        d = metric(pixel, candidate)
        if d < best:
            best = d
    return best


def align_window(palette_len: int, window_size: int,
                 offset: int) -> tuple[int, int, bool]:
    """Align *offset* down to *window_size* and keep the window in bounds.

    A window that starts inside the palette but runs past its end stays
    where it is and is cut short; only an offset at or past the end moves,
    to the start of the last (possibly partial) window.

    Returns ``(offset, effective_size, clamped)``; ``clamped`` is True when
    the request had to be changed beyond plain alignment.
    """
    if window_size <= 0:
        raise ValueError(f"window size must be positive, got {window_size}")
    if palette_len <= 0:
        raise ValueError("cannot place a window in an empty palette")
    clamped = False
    if offset < 0:
        logger.warning("negative palette offset %d clamped to 0", offset)
        offset = 0
        clamped = True
    aligned = (offset // window_size) * window_size
    if aligned >= palette_len:
        last = ((palette_len - 1) // window_size) * window_size
        logger.warning("palette offset %d out of range for %d entries; using %d",
                       offset, palette_len, last)
        aligned = last
        clamped = True
    effective = min(window_size, palette_len - aligned)
    if effective < window_size:
        logger.warning("palette window at %d has %d of %d entries",
                       aligned, effective, window_size)
        clamped = True
    return aligned, effective, clamped


def window_offsets(palette_len: int, window_size: int) -> list[int]:
    """Every aligned window that fits entirely inside the palette."""
    if palette_len < window_size:
        return [0]
    return list(range(0, palette_len - window_size + 1, window_size))


def window_error(source: SourceBitmap | Iterable[Color], palette: Sequence[Color],
                 offset: int, window_size: int, metric: Metric = euclidean) -> float:
    """Total distance from each opaque pixel to its closest window colour."""
    window = palette[offset: offset + window_size]
    return sum(_min_distance(p, window, metric)
               for p in _as_pixels(source) if p.a >= OPAQUE_THRESHOLD)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------

def match_global(source: SourceBitmap | Iterable[Color], palette: Sequence[Color],
                 metric: Metric = euclidean) -> MatchResult:
    _check_palette(palette)
    cache: dict[tuple[int, int, int], int] = {}
    out: list[int] = []
    for p in _as_pixels(source):
        if p.a < OPAQUE_THRESHOLD:
            out.append(0)
            continue
        key = (p.r, p.g, p.b)
        idx = cache.get(key)
        if idx is None:
            idx = cache[key] = nearest_index(p, palette, metric)
        out.append(idx)
    return MatchResult(out, 0, len(palette), Strategy.GLOBAL)


def force_map(source: SourceBitmap | Iterable[Color], palette: Sequence[Color],
              window_size: int, offset: int = 0,
              metric: Metric = euclidean) -> MatchResult:
    _check_palette(palette)
    base, _, clamped = align_window(len(palette), window_size, offset)
    top = len(palette) - 1 - base
    cache: dict[tuple[int, int, int], int] = {}
    out: list[int] = []
    for p in _as_pixels(source):
        if p.a < OPAQUE_THRESHOLD:
            out.append(0)
            continue
        key = (p.r, p.g, p.b)
        local = cache.get(key)
        if local is None:
            local = nearest_index(p, palette, metric) % window_size
            if local > top:
                local = top
            cache[key] = local
        out.append(local)
    return MatchResult(out, base, window_size, Strategy.FORCE_MAP, clamped)


def fit(source: SourceBitmap | Iterable[Color], palette: Sequence[Color],
        window_size: int, offset: int = 0,
        metric: Metric = euclidean) -> MatchResult:
    _check_palette(palette)
    base, effective, clamped = align_window(len(palette), window_size, offset)
    window = palette[base: base + effective]
    cache: dict[tuple[int, int, int], int] = {}
    out: list[int] = []
    for p in _as_pixels(source):
        if p.a < OPAQUE_THRESHOLD:
            out.append(0)
            continue
        key = (p.r, p.g, p.b)
        local = cache.get(key)
        if local is None:
            local = cache[key] = nearest_index(p, window, metric)
        out.append(local)
    return MatchResult(out, base, window_size, Strategy.FIT, clamped)


def best_fit_steps(source: SourceBitmap | Iterable[Color], palette: Sequence[Color],
                   window_size: int, metric: Metric = euclidean,
                   yield_every: int = BEST_FIT_YIELD_EVERY) -> Steps[MatchResult]:
    """BestFit as a cooperative task; yields every *yield_every* pixel evaluations."""
    _check_palette(palette)
    pixels = _as_pixels(source)
    opaque = [p for p in pixels if p.a >= OPAQUE_THRESHOLD]
    offsets = window_offsets(len(palette), window_size)
    total = max(1, len(offsets) * len(opaque))

    errors: dict[int, float] = {}
    best_offset = offsets[0]
    best_error = math.inf
    done = 0
    pending = 0
    for off in offsets:
        window = palette[off: off + window_size]
        cache: dict[tuple[int, int, int], float] = {}
        err = 0.0
        for p in opaque:
            key = (p.r, p.g, p.b)
            d = cache.get(key)
            if d is None:
                d = cache[key] = _min_distance(p, window, metric)
            err += d
            pending += 1
            if pending >= yield_every:
                done += pending
                pending = 0
                yield Progress(100.0 * done / total,
                               f"Best fit: window {off // window_size + 1}/{len(offsets)}")
        errors[off] = err
        if err < best_error:
            best_error = err
            best_offset = off

    logger.debug("best fit: offset %d (error %.2f) out of %d windows",
                 best_offset, best_error, len(offsets))
    result = fit(pixels, palette, window_size, best_offset, metric)
    result.strategy = Strategy.BEST_FIT
    result.window_errors = errors
    return result


def best_fit(source: SourceBitmap | Iterable[Color], palette: Sequence[Color],
             window_size: int, metric: Metric = euclidean) -> MatchResult:
    return run_task(best_fit_steps(source, palette, window_size, metric))


# ---------------------------------------------------------------------------
# Matcher
# ---------------------------------------------------------------------------

class PaletteMatcher:
    """Strategy dispatcher with a pluggable metric.

    ``last_best_fit_offset`` keeps the offset chosen by the most recent
    best-fit run so exporters can reuse it.
    """

    def __init__(self, metric: Metric = euclidean,
                 yield_every: int = BEST_FIT_YIELD_EVERY) -> None:
        self.metric = metric
        self.yield_every = yield_every
        self.last_best_fit_offset: Optional[int] = None

    def nearest_index(self, pixel: Color, palette: Sequence[Color]) -> int:
        return nearest_index(pixel, palette, self.metric)

    def steps(self, source: SourceBitmap | Iterable[Color], palette: Sequence[Color],
              strategy: Strategy = Strategy.GLOBAL,
              window_size: Optional[int] = None,
              offset: int = 0) -> Steps[MatchResult]:
        strategy = Strategy(strategy)
        if strategy is Strategy.GLOBAL:
            return match_global(source, palette, self.metric)
        if window_size is None:
            raise ValueError(f"{strategy.value} needs a window size")
        if strategy is Strategy.FORCE_MAP:
            return force_map(source, palette, window_size, offset, self.metric)
        if strategy is Strategy.FIT:
            return fit(source, palette, window_size, offset, self.metric)
        result = yield from best_fit_steps(source, palette, window_size,
                                           self.metric, self.yield_every)
        self.last_best_fit_offset = result.offset
        return result

    def match(self, source: SourceBitmap | Iterable[Color], palette: Sequence[Color],
              strategy: Strategy = Strategy.GLOBAL,
              window_size: Optional[int] = None, offset: int = 0,
              on_progress: Optional[ProgressCallback] = None,
              token: Optional[CancelToken] = None) -> MatchResult:
        return run_task(self.steps(source, palette, strategy, window_size, offset),
                        on_progress, token)

    async def match_async(self, source: SourceBitmap | Iterable[Color],
                          palette: Sequence[Color],
                          strategy: Strategy = Strategy.GLOBAL,
                          window_size: Optional[int] = None, offset: int = 0,
                          on_progress: Optional[ProgressCallback] = None,
                          token: Optional[CancelToken] = None) -> MatchResult:
        return await run_task_async(
            self.steps(source, palette, strategy, window_size, offset),
            on_progress, token)

"""
d2tex.quantize — reduce a weighted colour list to N palette entries.

Algorithms
----------
  median-cut     Repeatedly split the bucket with the highest
                 ``max_channel_range * ln(size + 1)`` score along that
                 channel, at the median index, until there are N buckets
                 (or the iteration / score limits stop it).  Each bucket
                 becomes its count-weighted average colour.
  simple-sample  Take colours at ``len/N`` index intervals, ignoring counts.
  auto           simple-sample above SIMPLE_SAMPLE_THRESHOLD unique colours,
                 median-cut otherwise.

The returned palette always has exactly N entries: short results are
padded (black for direct returns and sampling, repeated entries for median
cut), long ones are truncated.
"""
from __future__ import annotations

import logging
import math
from operator import attrgetter
from typing import Optional, Sequence

from .color import BLACK, Color, WeightedColor, clamp_byte
from .errors import InvalidColorCountError, NoOpaquePixelsError
from .tasks import CancelToken, Progress, ProgressCallback, Steps, run_task, run_task_async

logger = logging.getLogger(__name__)

MIN_COLORS = 2
MAX_COLORS = 256
SIMPLE_SAMPLE_THRESHOLD = 10000
MAX_MEDIAN_CUT_ITERATIONS = 1000
MIN_SPLIT_SCORE = 0.1
MEDIAN_CUT_YIELD_EVERY = 10

MEDIAN_CUT = "median-cut"
SIMPLE_SAMPLE = "simple-sample"
AUTO = "auto"
ALGORITHMS = (AUTO, MEDIAN_CUT, SIMPLE_SAMPLE)

_CHANNEL_KEYS = (attrgetter("r"), attrgetter("g"), attrgetter("b"))


def validate_color_count(target_count: int) -> None:
    if not MIN_COLORS <= target_count <= MAX_COLORS:
        raise InvalidColorCountError(
            f"colour count must be between {MIN_COLORS} and {MAX_COLORS}, "
            f"got {target_count}")


def pad_palette(palette: Sequence[Color], target_count: int,
                filler: Color = BLACK) -> list[Color]:
    out = list(palette[:target_count])
    while len(out) < target_count:
        out.append(filler)
    return out


# ---------------------------------------------------------------------------
# Bucket helpers
# ---------------------------------------------------------------------------

def _channel_ranges(bucket: Sequence[WeightedColor]) -> tuple[int, int, int]:
    rs = [c.r for c in bucket]
    gs = [c.g for c in bucket]
    bs = [c.b for c in bucket]
    return max(rs) - min(rs), max(gs) - min(gs), max(bs) - min(bs)


def _weighted_average(bucket: Sequence[WeightedColor]) -> Color:
    total_r = total_g = total_b = total_w = 0
    for c in bucket:
        w = c.count or 1
        total_r += c.r * w
        total_g += c.g * w
        total_b += c.b * w
        total_w += w
    if total_w == 0:
        return BLACK
    return Color(clamp_byte(total_r / total_w),
                 clamp_byte(total_g / total_w),
                 clamp_byte(total_b / total_w), 255)


# ---------------------------------------------------------------------------
# Algorithms
# ---------------------------------------------------------------------------

def median_cut_steps(colors: Sequence[WeightedColor], target_count: int,
                     yield_every: int = MEDIAN_CUT_YIELD_EVERY) -> Steps[list[Color]]:
    """Median cut as a cooperative task (see d2tex.tasks)."""
    if len(colors) <= target_count:
        return [c.color for c in colors]

    max_iterations = min(target_count * 3, MAX_MEDIAN_CUT_ITERATIONS)
    buckets: list[list[WeightedColor]] = [list(colors)]
    iterations = 0

    while len(buckets) < target_count and iterations < max_iterations:
        iterations += 1

        best_index: Optional[int] = None
        best_score = -1.0
        best_channel = 0
        for i, bucket in enumerate(buckets):
            if len(bucket) <= 1:
                continue
            rr, rg, rb = _channel_ranges(bucket)
            score = max(rr, rg, rb) * math.log(len(bucket) + 1)
            if score > best_score:
                best_score = score
                best_index = i
                best_channel = 0 if rr >= rg and rr >= rb else 1 if rg >= rb else 2

        if best_index is None or best_score < MIN_SPLIT_SCORE:
            logger.debug("median cut: no splittable bucket left (score %.3f)", best_score)
            break

        bucket = sorted(buckets[best_index], key=_CHANNEL_KEYS[best_channel])
        mid = len(bucket) // 2
        buckets[best_index] = bucket[:mid]
        buckets.append(bucket[mid:])

        if iterations % yield_every == 0:
            yield Progress(100.0 * iterations / max_iterations,
                           f"Median cut iteration {iterations} "
                           f"({len(buckets)}/{target_count} colors)")

    logger.debug("median cut: %d iterations, %d buckets (target %d)",
                 iterations, len(buckets), target_count)

    result = [_weighted_average(b) for b in buckets]
    # Short results repeat the first colour.
    result.extend([result[0]] * (target_count - len(result)))
    return result[:target_count]


def median_cut(colors: Sequence[WeightedColor], target_count: int) -> list[Color]:
    return run_task(median_cut_steps(colors, target_count))


def simple_sample(colors: Sequence[WeightedColor], target_count: int) -> list[Color]:
    """Uniform index sampling; frequencies are ignored."""
    if len(colors) <= target_count:
        return pad_palette([c.color for c in colors], target_count)
    step = len(colors) / target_count
    return [colors[int(i * step)].color for i in range(target_count)]


# ---------------------------------------------------------------------------
# Quantizer
# ---------------------------------------------------------------------------

class Quantizer:
    """Pluggable colour reducer; ``algorithm`` is one of ALGORITHMS."""

    def __init__(self, algorithm: str = AUTO,
                 yield_every: int = MEDIAN_CUT_YIELD_EVERY) -> None:
        if algorithm not in ALGORITHMS:
            raise ValueError(f"unknown quantisation algorithm {algorithm!r}")
        self.algorithm = algorithm
        self.yield_every = yield_every

    def select_algorithm(self, unique_colors: int) -> str:
        if self.algorithm != AUTO:
            return self.algorithm
        return SIMPLE_SAMPLE if unique_colors > SIMPLE_SAMPLE_THRESHOLD else MEDIAN_CUT

    def steps(self, colors: Sequence[WeightedColor],
              target_count: int) -> Steps[list[Color]]:
        validate_color_count(target_count)
        if not colors:
            raise NoOpaquePixelsError("no opaque pixels to quantise")

        if len(colors) <= target_count:
            logger.debug("%d unique colours <= %d, padding with black",
                         len(colors), target_count)
            return pad_palette([c.color for c in colors], target_count)

        algorithm = self.select_algorithm(len(colors))
        yield Progress(0.0, f"Using {algorithm} on {len(colors)} colors")
        if algorithm == MEDIAN_CUT:
            try:
                palette = yield from median_cut_steps(colors, target_count, self.yield_every)
            except Exception as exc:
                logger.warning("median cut failed (%s); falling back to simple sampling", exc)
                palette = simple_sample(colors, target_count)
        else:
            palette = simple_sample(colors, target_count)
        yield Progress(100.0, "Palette complete")
        return pad_palette(palette, target_count)

    def reduce(self, colors: Sequence[WeightedColor], target_count: int,
               on_progress: Optional[ProgressCallback] = None,
               token: Optional[CancelToken] = None) -> list[Color]:
        return run_task(self.steps(colors, target_count), on_progress, token)

    async def reduce_async(self, colors: Sequence[WeightedColor], target_count: int,
                           on_progress: Optional[ProgressCallback] = None,
                           token: Optional[CancelToken] = None) -> list[Color]:
        return await run_task_async(self.steps(colors, target_count), on_progress, token)


def reduce_palette(colors: Sequence[WeightedColor], target_count: int,
                   algorithm: str = AUTO) -> list[Color]:
    """Shortcut for ``Quantizer(algorithm).reduce(colors, target_count)``."""
    return Quantizer(algorithm).reduce(colors, target_count)

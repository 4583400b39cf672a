"""
d2tex.metrics — colour distance functions for palette matching.

A metric is any ``(pixel, candidate) -> float`` callable; smaller is closer.
Alpha never takes part: transparency is decided by the sentinel rule in
d2tex.match before any distance is computed.

  euclidean      sqrt(dr² + dg² + db²)            (default)
  weighted       "redmean" weighted RGB distance
  manhattan      |dr| + |dg| + |db|
  delta-e        CIE76 ΔE in L*a*b* (D65)
"""
from __future__ import annotations

import math
from functools import lru_cache
from typing import Callable

from .color import Color

Metric = Callable[[Color, Color], float]


def euclidean(a: Color, b: Color) -> float:
    dr = a[0] - b[0]
    dg = a[1] - b[1]
    db = a[2] - b[2]
    return math.sqrt(dr * dr + dg * dg + db * db)


def weighted_rgb(a: Color, b: Color) -> float:
    rmean = (a[0] + b[0]) / 2.0
    dr = a[0] - b[0]
    dg = a[1] - b[1]
    db = a[2] - b[2]
    return math.sqrt((2 + rmean / 256) * dr * dr
                     + 4 * dg * dg
                     + (2 + (255 - rmean) / 256) * db * db)


def manhattan(a: Color, b: Color) -> float:
    return float(abs(a[0] - b[0]) + abs(a[1] - b[1]) + abs(a[2] - b[2]))


def _srgb_to_linear(c: int) -> float:
    v = c / 255.0
    return v / 12.92 if v <= 0.04045 else ((v + 0.055) / 1.055) ** 2.4


def _lab_f(t: float) -> float:
    return t ** (1.0 / 3.0) if t > 216.0 / 24389.0 else (24389.0 / 27.0 * t + 16.0) / 116.0


@lru_cache(maxsize=65536)
def rgb_to_lab(r: int, g: int, b: int) -> tuple[float, float, float]:
    """sRGB (0..255) to CIE L*a*b* with a D65 white point."""
    rl, gl, bl = _srgb_to_linear(r), _srgb_to_linear(g), _srgb_to_linear(b)
    x = (0.4124564 * rl + 0.3575761 * gl + 0.1804375 * bl) / 0.95047
    y = (0.2126729 * rl + 0.7151522 * gl + 0.0721750 * bl)
    z = (0.0193339 * rl + 0.1191920 * gl + 0.9503041 * bl) / 1.08883
    fx, fy, fz = _lab_f(x), _lab_f(y), _lab_f(z)
    return 116.0 * fy - 16.0, 500.0 * (fx - fy), 200.0 * (fy - fz)


def delta_e76(a: Color, b: Color) -> float:
    l1, a1, b1 = rgb_to_lab(a[0], a[1], a[2])
    l2, a2, b2 = rgb_to_lab(b[0], b[1], b[2])
    return math.sqrt((l1 - l2) ** 2 + (a1 - a2) ** 2 + (b1 - b2) ** 2)


METRICS: dict[str, Metric] = {
    "euclidean": euclidean,
    "weighted": weighted_rgb,
    "manhattan": manhattan,
    "delta-e": delta_e76,
}


def get_metric(name: str) -> Metric:
    try:
        return METRICS[name]
    except KeyError:
        raise ValueError(
            f"unknown distance metric {name!r}; choices: {', '.join(METRICS)}") from None

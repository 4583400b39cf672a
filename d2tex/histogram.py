"""
d2tex.histogram — weighted list of unique opaque colours.

Pixels with alpha >= 128 are counted by their exact (r, g, b) triple; alpha
is only used for the opacity test and is not part of the key.  Output order
is first-seen order, which the quantiser relies on when the source already
has few enough colours.
"""
from __future__ import annotations

import logging
from typing import Iterable

from .color import OPAQUE_THRESHOLD, SourceBitmap, WeightedColor

logger = logging.getLogger(__name__)


def build_histogram(frames: SourceBitmap | Iterable[SourceBitmap]) -> list[WeightedColor]:
    """Count opaque colours over one bitmap or several frames combined.

    An empty result means "no opaque pixels"; the quantiser treats that as
    fatal.
    """
    if isinstance(frames, SourceBitmap):
        frames = (frames,)
    counts: dict[tuple[int, int, int], WeightedColor] = {}
    total = 0
    for bitmap in frames:
        data = bitmap.rgba
        for i in range(0, len(data), 4):
            if data[i + 3] < OPAQUE_THRESHOLD:
                continue
            key = (data[i], data[i + 1], data[i + 2])
            entry = counts.get(key)
            if entry is None:
                counts[key] = WeightedColor(key[0], key[1], key[2], 1)
            else:
                entry.count += 1
            total += 1
    logger.debug("histogram: %d unique colours over %d opaque pixels",
                 len(counts), total)
    return list(counts.values())

"""
tests/test_d2tex.py – Unit and integration tests for the d2tex package.

Run with:  python -m pytest tests/
       or: python -m unittest discover -s tests
"""

from __future__ import annotations

import asyncio
import contextlib
import io
import random
import struct
import sys
import tempfile
import unittest
from pathlib import Path
from unittest import mock

# Make the package importable when running from the repo root.
sys.path.insert(0, str(Path(__file__).parent.parent))

from d2tex.bitpack import (
    IndexedBuffer,
    pack_ai44,
    pack_direct,
    pack_indices,
    packed_size,
    unpack_ai44,
    unpack_direct,
    unpack_indices,
)
from d2tex.color import BLACK, Color, SourceBitmap, WeightedColor
from d2tex.d2 import (
    D2Texture,
    d2_to_image,
    decode_d2,
    encode_d2,
    is_d2,
    read_d2,
    texture_to_rgba,
    write_d2,
)
from d2tex.errors import (
    D2FormatError,
    InvalidColorCountError,
    NoDataError,
    NoOpaquePixelsError,
    OperationCancelled,
    UnsupportedFormatError,
)
from d2tex.formats import (
    D2Format,
    format_from_name,
    format_info,
    format_name,
    palette_size,
    payload_size,
    to_format,
)
from d2tex.histogram import build_histogram
from d2tex.match import (
    PaletteMatcher,
    Strategy,
    align_window,
    best_fit,
    fit,
    force_map,
    match_global,
    nearest_index,
    window_error,
    window_offsets,
)
from d2tex.metrics import delta_e76, euclidean, get_metric, manhattan, weighted_rgb
from d2tex.palette import (
    default_palette,
    format_act,
    grayscale_palette,
    parse_act,
    parse_gimp,
    read_palette,
    write_palette,
)
from d2tex.quantize import (
    MEDIAN_CUT,
    SIMPLE_SAMPLE,
    Quantizer,
    median_cut,
    simple_sample,
)
from d2tex.rle import compress, compress_paired, decompress, decompress_paired
from d2tex.tasks import CancelToken, Progress, run_task, run_task_async
from d2tex.texture import Texture, TextureCache, TextureConverter


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

RED = Color(255, 0, 0)
GREEN = Color(0, 255, 0)
WHITE = Color(255, 255, 255)
BLUE_ISH = Color(0, 0, 240)


def _make_bitmap(pixels, width: int | None = None, height: int = 1) -> SourceBitmap:
    """Row-major (r, g, b[, a]) tuples → SourceBitmap (one row by default)."""
    if width is None:
        width = len(pixels) // height
    return SourceBitmap.from_pixels(width, height, pixels)


def _make_solid(width: int, height: int, rgba=(0, 0, 0, 255)) -> SourceBitmap:
    return SourceBitmap(width, height, bytes(rgba) * (width * height))


def _make_weighted(count: int, seed: int = 1) -> list[WeightedColor]:
    """*count* distinct random colours with random weights."""
    rng = random.Random(seed)
    seen: dict[tuple[int, int, int], WeightedColor] = {}
    while len(seen) < count:
        key = (rng.randrange(256), rng.randrange(256), rng.randrange(256))
        seen.setdefault(key, WeightedColor(*key, rng.randint(1, 50)))
    return list(seen.values())


def _make_random_pixels(count: int, seed: int, alpha: bool = False) -> list[Color]:
    rng = random.Random(seed)
    return [Color(rng.randrange(256), rng.randrange(256), rng.randrange(256),
                  rng.choice((0, 255)) if alpha else 255)
            for _ in range(count)]


def _make_png(path: Path, pixels, size) -> None:
    from PIL import Image
    img = Image.new("RGBA", size)
    img.putdata([tuple(p) for p in pixels])
    img.save(str(path))


# ---------------------------------------------------------------------------
# Colours and histogram
# ---------------------------------------------------------------------------

class TestColor(unittest.TestCase):

    def test_hex_roundtrip(self):
        c = Color.from_hex("#ff8000")
        self.assertEqual(c, Color(255, 128, 0, 255))
        self.assertEqual(c.to_hex(), "#ff8000")

    def test_short_and_alpha_hex(self):
        self.assertEqual(Color.from_hex("f80"), Color(255, 136, 0, 255))
        self.assertEqual(Color.from_hex("#01020380"), Color(1, 2, 3, 0x80))

    def test_bad_hex(self):
        with self.assertRaises(ValueError):
            Color.from_hex("#12345")
        with self.assertRaises(ValueError):
            Color.from_hex("#zzzzzz")

    def test_transparency_threshold(self):
        self.assertTrue(Color(1, 2, 3, 127).is_transparent)
        self.assertFalse(Color(1, 2, 3, 128).is_transparent)

    def test_bitmap_checks_buffer(self):
        with self.assertRaises(ValueError):
            SourceBitmap(2, 2, bytes(15))
        with self.assertRaises(NoDataError):
            SourceBitmap(1, 1, None)

    def test_bitmap_pixel_access(self):
        bmp = _make_bitmap([RED, GREEN, WHITE, BLACK], width=2, height=2)
        self.assertEqual(bmp.pixel(1, 0), GREEN)
        self.assertEqual(bmp.pixel(0, 1), WHITE)
        self.assertEqual(list(bmp.pixels()), [RED, GREEN, WHITE, BLACK])

    def test_image_bridge(self):
        from PIL import Image
        img = Image.new("RGB", (3, 2), (10, 20, 30))
        bmp = SourceBitmap.from_image(img)
        self.assertEqual((bmp.width, bmp.height), (3, 2))
        self.assertEqual(bmp.pixel(2, 1), Color(10, 20, 30, 255))
        self.assertEqual(bmp.to_image().size, (3, 2))


class TestHistogram(unittest.TestCase):

    def test_counts_opaque_by_rgb(self):
        bmp = _make_bitmap([(1, 2, 3, 255), (1, 2, 3, 200), (4, 5, 6, 127), (7, 8, 9, 128)])
        hist = build_histogram(bmp)
        self.assertEqual([(c.r, c.g, c.b, c.count) for c in hist],
                         [(1, 2, 3, 2), (7, 8, 9, 1)])

    def test_first_seen_order(self):
        bmp = _make_bitmap([GREEN, RED, GREEN, WHITE])
        self.assertEqual([c.color for c in build_histogram(bmp)], [GREEN, RED, WHITE])

    def test_frames_are_combined(self):
        hist = build_histogram([_make_bitmap([RED, RED]), _make_bitmap([RED, GREEN])])
        self.assertEqual([(c.color, c.count) for c in hist], [(RED, 3), (GREEN, 1)])

    def test_all_transparent_is_empty(self):
        self.assertEqual(build_histogram(_make_solid(3, 3, (9, 9, 9, 0))), [])


# ---------------------------------------------------------------------------
# Quantizer
# ---------------------------------------------------------------------------

class TestQuantizer(unittest.TestCase):

    def test_rejects_bad_color_count(self):
        colors = _make_weighted(10)
        for n in (0, 1, 257):
            with self.assertRaises(InvalidColorCountError):
                Quantizer().reduce(colors, n)

    def test_no_opaque_pixels(self):
        with self.assertRaises(NoOpaquePixelsError):
            Quantizer().reduce([], 4)

    def test_output_size_invariant(self):
        for algorithm in (MEDIAN_CUT, SIMPLE_SAMPLE, "auto"):
            q = Quantizer(algorithm)
            for unique in (1, 5, 300):
                colors = _make_weighted(unique, seed=unique)
                for n in (2, 3, 7, 16, 100, 256):
                    with self.subTest(algorithm=algorithm, unique=unique, n=n):
                        self.assertEqual(len(q.reduce(colors, n)), n)

    def test_few_colors_returned_in_order_and_padded(self):
        colors = build_histogram(_make_bitmap([GREEN, RED]))
        self.assertEqual(Quantizer().reduce(colors, 4), [GREEN, RED, BLACK, BLACK])

    def test_median_cut_separates_clusters(self):
        dark = [WeightedColor(i, 0, 0) for i in range(10)]
        bright = [WeightedColor(245 + i, 255, 255) for i in range(10)]
        self.assertEqual(median_cut(dark + bright, 2),
                         [Color(5, 0, 0), Color(250, 255, 255)])

    def test_median_cut_weights_average(self):
        colors = [WeightedColor(0, 0, 0, 3), WeightedColor(10, 0, 0, 1),
                  WeightedColor(200, 0, 0, 1), WeightedColor(210, 0, 0, 1)]
        self.assertEqual(median_cut(colors, 2), [Color(3, 0, 0), Color(205, 0, 0)])

    def test_median_cut_duplicates_when_short(self):
        # Identical RGB in every bucket: no split scores above the minimum.
        colors = [WeightedColor(7, 7, 7, 1), WeightedColor(7, 7, 7, 2), WeightedColor(7, 7, 7, 3)]
        self.assertEqual(median_cut(colors, 2), [Color(7, 7, 7), Color(7, 7, 7)])

    def test_median_cut_fills_with_first_colour(self):
        a, b = WeightedColor(0, 0, 0), WeightedColor(200, 0, 0)
        self.assertEqual(median_cut([a, a, b, b, b], 4),
                         [Color(0, 0, 0), Color(200, 0, 0), Color(0, 0, 0), Color(0, 0, 0)])

    def test_simple_sample_steps_through_list(self):
        colors = [WeightedColor(i, i, i) for i in range(8)]
        self.assertEqual(simple_sample(colors, 4),
                         [Color(0, 0, 0), Color(2, 2, 2), Color(4, 4, 4), Color(6, 6, 6)])

    def test_auto_selection(self):
        q = Quantizer()
        self.assertEqual(q.select_algorithm(10000), MEDIAN_CUT)
        self.assertEqual(q.select_algorithm(10001), SIMPLE_SAMPLE)

    def test_median_cut_failure_falls_back(self):
        colors = _make_weighted(40)
        with mock.patch("d2tex.quantize.median_cut_steps", side_effect=RuntimeError("boom")):
            with self.assertLogs("d2tex.quantize", level="WARNING"):
                palette = Quantizer(MEDIAN_CUT).reduce(colors, 8)
        self.assertEqual(palette, simple_sample(colors, 8))

    def test_progress_events(self):
        events: list[Progress] = []
        Quantizer(MEDIAN_CUT, yield_every=1).reduce(_make_weighted(200), 16, events.append)
        self.assertGreater(len(events), 2)
        percents = [e.percent for e in events]
        self.assertEqual(percents, sorted(percents))
        self.assertEqual(percents[-1], 100.0)


# ---------------------------------------------------------------------------
# Metrics and palette matching
# ---------------------------------------------------------------------------

class TestMetrics(unittest.TestCase):

    def test_euclidean_ignores_alpha(self):
        self.assertEqual(euclidean(Color(0, 0, 0, 0), Color(3, 4, 0, 255)), 5.0)

    def test_identity_is_zero(self):
        c = Color(12, 200, 99)
        for metric in (euclidean, weighted_rgb, manhattan, delta_e76):
            self.assertAlmostEqual(metric(c, c), 0.0)

    def test_manhattan(self):
        self.assertEqual(manhattan(Color(1, 2, 3), Color(4, 0, 3)), 5.0)

    def test_get_metric(self):
        self.assertIs(get_metric("delta-e"), delta_e76)
        with self.assertRaises(ValueError):
            get_metric("cosine")


class TestMatcher(unittest.TestCase):

    def test_nearest_ties_go_to_lowest_index(self):
        palette = [Color(10, 0, 0), Color(0, 10, 0)]
        self.assertEqual(nearest_index(Color(0, 0, 0), palette), 0)
        self.assertEqual(nearest_index(Color(5, 5, 5), [WHITE, WHITE, WHITE]), 0)

    def test_empty_palette(self):
        with self.assertRaises(ValueError):
            nearest_index(RED, [])

    def test_concrete_red_green(self):
        bmp = _make_bitmap([(255, 0, 0, 255), (0, 255, 0, 255)], width=1, height=2)
        palette = Quantizer().reduce(build_histogram(bmp), 2)
        self.assertEqual(palette, [RED, GREEN])
        self.assertEqual(match_global(bmp, palette).indices, [0, 1])

    def test_transparency_sentinel(self):
        palette = _make_random_pixels(32, seed=5)
        ghost = Color(*palette[20][:3], 0)
        pixels = [ghost, Color(255, 255, 255, 127), palette[20]]
        for result in (match_global(pixels, palette),
                       force_map(pixels, palette, 16, 16),
                       fit(pixels, palette, 16, 16),
                       best_fit(pixels, palette, 16)):
            with self.subTest(strategy=result.strategy):
                self.assertEqual(result.indices[:2], [0, 0])
                self.assertEqual(result.absolute_indices[:2], [result.offset] * 2)

    def test_fit_restricts_to_window(self):
        palette = [RED, GREEN, WHITE, BLACK, Color(200, 0, 0), Color(0, 0, 200),
                   Color(0, 200, 0), Color(90, 90, 90)]
        result = fit([GREEN], palette, 4, 4)
        self.assertEqual(result.offset, 4)
        self.assertEqual(result.indices, [2])
        self.assertEqual(result.absolute_indices, [6])

    def test_force_map_folds_global_index(self):
        palette = [Color(i * 30, 0, 0) for i in range(8)]
        result = force_map([palette[2], palette[7]], palette, 4, 4)
        self.assertEqual(result.offset, 4)
        self.assertEqual(result.indices, [2, 3])

    def test_align_window(self):
        self.assertEqual(align_window(16, 4, 5), (4, 4, False))
        with self.assertLogs("d2tex.match", level="WARNING"):
            self.assertEqual(align_window(8, 4, 100), (4, 4, True))
        with self.assertLogs("d2tex.match", level="WARNING"):
            self.assertEqual(align_window(8, 4, -3), (0, 4, True))
        with self.assertLogs("d2tex.match", level="WARNING"):
            self.assertEqual(align_window(3, 16, 0), (0, 3, True))
        with self.assertLogs("d2tex.match", level="WARNING"):
            self.assertEqual(align_window(20, 16, 16), (16, 4, True))
        with self.assertLogs("d2tex.match", level="WARNING"):
            self.assertEqual(align_window(20, 16, 40), (16, 4, True))

    def test_partial_last_window_keeps_offset(self):
        blue = Color(0, 0, 255)
        palette = [RED] * 16 + [Color(9, 9, 9), Color(10, 10, 10), blue, Color(11, 11, 11)]
        for strategy in (fit, force_map):
            with self.subTest(strategy=strategy.__name__):
                with self.assertLogs("d2tex.match", level="WARNING"):
                    result = strategy([blue], palette, 16, 16)
                self.assertEqual(result.offset, 16)
                self.assertEqual(result.absolute_indices, [18])
                self.assertTrue(result.clamped)

    def test_force_map_clamps_to_palette_end(self):
        palette = [Color(i * 10, 0, 0) for i in range(18)]
        with self.assertLogs("d2tex.match", level="WARNING"):
            result = force_map([palette[15]], palette, 16, 16)
        self.assertEqual(result.absolute_indices, [17])

    def test_window_offsets(self):
        self.assertEqual(window_offsets(64, 16), [0, 16, 32, 48])
        self.assertEqual(window_offsets(10, 4), [0, 4])
        self.assertEqual(window_offsets(3, 4), [0])

    def test_best_fit_is_optimal(self):
        for seed in range(6):
            pixels = _make_random_pixels(16, seed=seed, alpha=True)
            palette = _make_random_pixels(64, seed=100 + seed)
            for ws in (2, 4, 16):
                with self.subTest(seed=seed, window=ws):
                    result = best_fit(pixels, palette, ws)
                    errors = {off: window_error(pixels, palette, off, ws)
                              for off in window_offsets(len(palette), ws)}
                    chosen = errors[result.offset]
                    for off, err in errors.items():
                        self.assertLessEqual(chosen, err + 1e-9)
                        if off < result.offset:
                            self.assertGreater(err, chosen)

    def test_best_fit_tie_picks_lowest_offset(self):
        window = [RED, GREEN, WHITE, BLACK]
        result = best_fit([Color(9, 9, 9)], window + window + window, 4)
        self.assertEqual(result.offset, 0)

    def test_best_fit_ignores_transparent_pixels(self):
        palette = [WHITE] * 4 + [BLACK] * 4
        result = best_fit([Color(255, 255, 255, 0), BLACK], palette, 4)
        self.assertEqual(result.offset, 4)
        self.assertEqual(result.window_errors[4], 0.0)

    def test_matcher_records_best_fit_offset(self):
        palette = [WHITE] * 16 + [RED] * 16
        matcher = PaletteMatcher()
        result = matcher.match([RED, RED], palette, Strategy.BEST_FIT, 16)
        self.assertEqual(result.offset, 16)
        self.assertEqual(matcher.last_best_fit_offset, 16)
        self.assertEqual(result.window(palette), [RED] * 16)

    def test_windowed_strategy_needs_window(self):
        with self.assertRaises(ValueError):
            PaletteMatcher().match([RED], [RED, GREEN], Strategy.FIT)

    def test_best_fit_cancellation(self):
        token = CancelToken()
        matcher = PaletteMatcher(yield_every=1)

        def on_progress(_progress):
            token.cancel()

        with self.assertRaises(OperationCancelled):
            matcher.match([RED, GREEN, WHITE, BLACK], _make_random_pixels(16, seed=2),
                          Strategy.BEST_FIT, 4, on_progress=on_progress, token=token)


# ---------------------------------------------------------------------------
# Bit packing
# ---------------------------------------------------------------------------

class TestIndexedPacking(unittest.TestCase):

    def test_4bit_layout(self):
        self.assertEqual(pack_indices([1, 2, 3], 4), bytes([0x21, 0x03]))

    def test_2bit_layout(self):
        self.assertEqual(pack_indices([1, 2, 3, 0, 3], 2), bytes([0x39, 0x03]))

    def test_1bit_layout(self):
        self.assertEqual(pack_indices([1, 0, 1, 1, 0, 0, 0, 0, 1], 1), bytes([0x0D, 0x01]))

    def test_8bit_is_raw(self):
        self.assertEqual(pack_indices([0, 7, 255], 8), bytes([0, 7, 255]))

    def test_roundtrip_every_depth(self):
        rng = random.Random(7)
        for bits in (1, 2, 4, 8):
            for count in (1, 3, 8, 17, 33):
                indices = [rng.randrange(1 << bits) for _ in range(count)]
                with self.subTest(bits=bits, count=count):
                    data = pack_indices(indices, bits)
                    self.assertEqual(len(data), packed_size(count, bits))
                    self.assertEqual(unpack_indices(data, bits, count), indices)

    def test_index_out_of_range(self):
        with self.assertRaises(ValueError):
            pack_indices([0, 16], 4)
        with self.assertRaises(ValueError):
            pack_indices([1], 3)

    def test_short_buffer(self):
        with self.assertRaises(ValueError):
            unpack_indices(b"\x00", 4, 3)

    def test_indexed_buffer(self):
        buf = IndexedBuffer.from_indices(3, 1, 2, [3, 1, 2])
        self.assertEqual(buf.data, bytes([0x27]))
        self.assertEqual(buf.indices(), [3, 1, 2])
        with self.assertRaises(ValueError):
            IndexedBuffer.from_indices(2, 2, 2, [0, 1])

    def test_ai44(self):
        data = pack_ai44([3, 15], [255, 0x10])
        self.assertEqual(data, bytes([0xF3, 0x1F]))
        self.assertEqual(unpack_ai44(data, 2), ([3, 15], [0xF0, 0x10]))


class TestDirectPacking(unittest.TestCase):

    def test_rgb565_fields(self):
        self.assertEqual(pack_direct(bytes((255, 0, 0, 255)), D2Format.RGB565), b"\x00\xf8")
        self.assertEqual(pack_direct(bytes((0, 255, 0, 255)), D2Format.RGB565), b"\xe0\x07")
        self.assertEqual(pack_direct(bytes((0, 0, 255, 255)), D2Format.RGB565), b"\x1f\x00")

    def test_rgb565_unpack_truncates(self):
        rgba = unpack_direct(pack_direct(bytes((0x87, 0x43, 0x21, 255)), "rgb565"), "rgb565", 1)
        self.assertEqual(rgba, bytes((0x80, 0x40, 0x20, 255)))

    def test_argb1555_alpha_bit(self):
        opaque = pack_direct(bytes((255, 255, 255, 128)), D2Format.ARGB1555)
        clear = pack_direct(bytes((255, 255, 255, 127)), D2Format.ARGB1555)
        self.assertEqual(opaque, b"\xff\xff")
        self.assertEqual(clear, b"\xff\x7f")

    def test_argb8888_word_order(self):
        self.assertEqual(pack_direct(bytes((1, 2, 3, 4)), D2Format.ARGB8888), b"\x03\x02\x01\x04")
        self.assertEqual(unpack_direct(b"\x03\x02\x01\x04", D2Format.ARGB8888, 1),
                         bytes((1, 2, 3, 4)))

    def test_rgb888_drops_alpha(self):
        self.assertEqual(pack_direct(bytes((1, 2, 3, 4, 5, 6, 7, 8)), D2Format.RGB888),
                         bytes((1, 2, 3, 5, 6, 7)))

    def test_alpha_formats(self):
        rgba = bytes((9, 9, 9, 0, 9, 9, 9, 0x55, 9, 9, 9, 0xAA, 9, 9, 9, 0xFF))
        self.assertEqual(pack_direct(rgba, D2Format.ALPHA2), bytes([0b11100100]))
        self.assertEqual(unpack_direct(bytes([0b11100100]), D2Format.ALPHA2, 4),
                         bytes((255, 255, 255, 0, 255, 255, 255, 85,
                                255, 255, 255, 170, 255, 255, 255, 255)))

    def test_pack_unpack_is_identity_on_packed_data(self):
        rng = random.Random(11)
        rgba = bytes(rng.randrange(256) for _ in range(7 * 4))
        for fmt in D2Format:
            if format_info(fmt).indexed:
                continue
            with self.subTest(fmt=fmt.name):
                packed = pack_direct(rgba, fmt)
                self.assertEqual(len(packed), payload_size(fmt, 7))
                self.assertEqual(pack_direct(unpack_direct(packed, fmt, 7), fmt), packed)

    def test_indexed_format_is_not_direct(self):
        with self.assertRaises(UnsupportedFormatError):
            pack_direct(bytes(4), D2Format.I4)


# ---------------------------------------------------------------------------
# RLE
# ---------------------------------------------------------------------------

class TestRLE(unittest.TestCase):

    def test_compact_roundtrip(self):
        data = b"\x01" + b"\x09" * 300 + b"\x00" + b"\x05\x05" + b"\x01"
        packed = compress(data)
        self.assertEqual(packed, b"\x01\xff\x09\x2d\x09\x00\x02\x05\x01")
        self.assertEqual(decompress(packed), data)

    def test_compact_trailing_literal(self):
        self.assertEqual(decompress(compress(b"\x00\x09")), b"\x00\x09")

    def test_empty(self):
        self.assertEqual(compress(b""), b"")
        self.assertEqual(decompress(b""), b"")
        self.assertEqual(compress_paired(b""), b"")

    def test_ambiguous_literal_reads_as_run(self):
        data = b"\x05\x07"
        self.assertEqual(compress(data), data)
        self.assertEqual(decompress(compress(data)), b"\x07" * 5)
        self.assertNotEqual(decompress(compress(data)), data)

    def test_paired_roundtrip(self):
        rng = random.Random(3)
        data = bytearray()
        for _ in range(200):
            data += bytes([rng.randrange(256)]) * rng.choice((1, 1, 2, 5, 255, 300))
        data = bytes(data)
        self.assertEqual(decompress_paired(compress_paired(data)), data)

    def test_paired_single_byte(self):
        self.assertEqual(compress_paired(b"\x07"), b"\x01\x07")

    def test_paired_odd_length(self):
        with self.assertRaises(D2FormatError):
            decompress_paired(b"\x02\x07\x01")


# ---------------------------------------------------------------------------
# Formats
# ---------------------------------------------------------------------------

class TestFormats(unittest.TestCase):

    def test_names(self):
        self.assertIs(to_format("d2_mode_i4"), D2Format.I4)
        self.assertIs(to_format("RGB565"), D2Format.RGB565)
        self.assertIs(format_from_name("d2_mode_rgb888"), D2Format.RGB888)
        self.assertEqual(format_name(D2Format.ARGB1555), "d2_mode_argb1555")

    def test_tags(self):
        self.assertIs(to_format(0x12), D2Format.RGB888)
        self.assertIs(to_format(0x0A), D2Format.I4)
        with self.assertRaises(UnsupportedFormatError):
            to_format(0x1F)
        with self.assertRaises(UnsupportedFormatError):
            to_format("i3")

    def test_sizes(self):
        self.assertEqual(payload_size(D2Format.I4, 16), 8)
        self.assertEqual(payload_size(D2Format.I1, 9), 2)
        self.assertEqual(payload_size(D2Format.RGB888, 2), 6)
        self.assertEqual(palette_size(D2Format.I2), 4)
        self.assertEqual(palette_size(D2Format.AI44), 16)
        self.assertEqual(palette_size(D2Format.RGB565), 0)


# ---------------------------------------------------------------------------
# D2 container
# ---------------------------------------------------------------------------

class TestD2Container(unittest.TestCase):

    def _make_texture(self, fmt, width=5, height=3, seed=0, **kwargs) -> D2Texture:
        rng = random.Random(seed)
        payload = bytes(rng.randrange(256) for _ in range(payload_size(fmt, width * height)))
        size = palette_size(fmt)
        if size and "palette" not in kwargs:
            kwargs["palette"] = [Color(i, 255 - i, i // 2, 255) for i in range(size)]
        return D2Texture(fmt, width, height, payload, **kwargs)

    def test_header_layout(self):
        palette = [Color(i, i, i) for i in range(16)]
        tex = D2Texture.from_indices("i4", 2, 2, [0, 1, 2, 3], palette=palette,
                                     palette_name="pal", rotation=1)
        data = encode_d2(tex)
        self.assertEqual(data[:2], b"D2")
        self.assertEqual(data[2], 0x0A)
        self.assertEqual(struct.unpack_from("<HHB", data, 3), (2, 2, 0x06))
        self.assertEqual(data[8], 3)
        self.assertEqual(data[9:12], b"pal")
        self.assertEqual(data[12:16], bytes((0, 0, 0, 255)))
        self.assertEqual(data[-2:], bytes([0x10, 0x32]))
        self.assertEqual(len(data), 8 + 1 + 3 + 16 * 4 + 2)

    def test_unnamed_has_zero_length_byte(self):
        data = encode_d2(D2Texture(D2Format.RGB565, 1, 1, b"\x00\xf8"))
        self.assertEqual(data, b"D2\x01\x01\x00\x01\x00\x00\x00\x00\xf8")

    def test_roundtrip_every_format(self):
        for i, fmt in enumerate(D2Format):
            with self.subTest(fmt=fmt.name):
                tex = self._make_texture(fmt, seed=i, palette_name="name", rotation=i % 4)
                self.assertEqual(decode_d2(encode_d2(tex)), tex)

    def test_roundtrip_with_rle(self):
        tex = self._make_texture(D2Format.I8, 16, 16, rle=True)
        data = encode_d2(tex)
        self.assertEqual(data[7] & 0x11, 0x11)
        self.assertEqual(decode_d2(data), tex)

    def test_compact_rle_flag(self):
        tex = D2Texture(D2Format.I8, 8, 8, bytes(64), rle=True, rle_paired=False)
        data = encode_d2(tex)
        self.assertEqual(data[7], 0x01)
        self.assertEqual(decode_d2(data), tex)

    def test_framing_ignored_without_rle(self):
        tex = D2Texture(D2Format.I8, 2, 2, bytes(4), rle=False, rle_paired=False)
        self.assertTrue(tex.rle_paired)
        self.assertEqual(tex, D2Texture(D2Format.I8, 2, 2, bytes(4)))
        self.assertEqual(decode_d2(encode_d2(tex)), tex)

    def test_reserved_bits_preserved(self):
        data = b"D2\x01\x01\x00\x01\x00\xa0\x00\x00\xf8"
        tex = decode_d2(data)
        self.assertEqual(tex.reserved, 0xA0)
        self.assertEqual(encode_d2(tex), data)

    def test_short_palette_is_padded(self):
        with self.assertLogs("d2tex.d2", level="WARNING"):
            tex = D2Texture.from_indices("i2", 2, 1, [0, 1], palette=[RED, GREEN])
        self.assertEqual(tex.palette, (RED, GREEN, BLACK, BLACK))

    def test_invalid_textures(self):
        with self.assertRaises(ValueError):
            D2Texture(D2Format.I4, 4, 4, bytes(7))
        with self.assertRaises(ValueError):
            D2Texture.from_indices("i1", 2, 1, [0, 1], palette=[RED, GREEN, WHITE])
        with self.assertRaises(UnsupportedFormatError):
            D2Texture(D2Format.RGB565, 1, 1, bytes(2), palette=[RED])
        with self.assertRaises(ValueError):
            D2Texture(D2Format.RGB565, 1, 1, bytes(2), rotation=4)
        with self.assertRaises(ValueError):
            encode_d2(D2Texture(D2Format.RGB565, 1, 1, bytes(2), palette_name="x" * 256))

    def test_malformed_buffers(self):
        good = encode_d2(self._make_texture(D2Format.I4, 4, 4, palette_name="abc"))
        cases = {
            "short": b"D2\x0a",
            "magic": b"XX" + good[2:],
            "name": good[:10],
            "palette": good[:20],
            "payload": good[:-1],
            "direct palette": b"D2\x01\x01\x00\x01\x00\x02\x00\x00\xf8",
        }
        for label, data in cases.items():
            with self.subTest(case=label):
                with self.assertRaises(D2FormatError):
                    decode_d2(data)
        with self.assertRaises(UnsupportedFormatError):
            decode_d2(b"D2\x1f" + good[3:])

    def test_render_with_embedded_palette(self):
        tex = D2Texture.from_indices("i1", 3, 1, [1, 0, 1], palette=[RED, GREEN])
        self.assertEqual(texture_to_rgba(tex, [WHITE, WHITE], 1),
                         bytes(GREEN) + bytes(RED) + bytes(GREEN))

    def test_render_with_external_palette_and_offset(self):
        tex = D2Texture.from_indices("i2", 4, 1, [0, 1, 2, 3])
        palette = [Color(i * 10, 0, 0) for i in range(8)]
        self.assertEqual(list(texture_to_rgba(tex, palette, 4)[0::4]), [40, 50, 60, 70])
        self.assertEqual(list(texture_to_rgba(tex, palette, 6)[0::4]), [60, 70, 0, 10])
        self.assertEqual(texture_to_rgba(tex), bytes(BLACK) * 4)

    def test_render_ai44(self):
        tex = D2Texture(D2Format.AI44, 2, 1, bytes([0xF1, 0x30]), palette=[RED, GREEN])
        self.assertEqual(texture_to_rgba(tex), bytes((0, 255, 0, 0xF0, 255, 0, 0, 0x30)))

    def test_file_helpers(self):
        tex = self._make_texture(D2Format.RGBA4444, 3, 3)
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "tex.d2"
            write_d2(tex, p)
            self.assertTrue(is_d2(p))
            self.assertEqual(read_d2(p), tex)
            other = Path(td) / "other.bin"
            other.write_bytes(b"PNG")
            self.assertFalse(is_d2(other))
            self.assertFalse(is_d2(Path(td) / "missing.d2"))
        img = d2_to_image(tex)
        self.assertEqual((img.mode, img.size), ("RGBA", (3, 3)))


# ---------------------------------------------------------------------------
# Cooperative tasks
# ---------------------------------------------------------------------------

def _counting_steps(n: int, log: list | None = None, tag: str = ""):
    try:
        for i in range(n):
            if log is not None:
                log.append(tag or i)
            yield Progress(100.0 * (i + 1) / n, f"step {i}")
        return n
    finally:
        if log is not None:
            log.append("closed")


class TestTasks(unittest.TestCase):

    def test_run_to_completion(self):
        events = []
        self.assertEqual(run_task(_counting_steps(3), events.append), 3)
        self.assertEqual([e.percent for e in events], [100 / 3, 200 / 3, 100.0])

    def test_cancelled_before_start(self):
        token = CancelToken()
        token.cancel()
        events = []
        with self.assertRaises(OperationCancelled):
            run_task(_counting_steps(3), events.append, token)
        self.assertEqual(events, [])

    def test_cancel_mid_run_closes_generator(self):
        token = CancelToken()
        log: list = []

        def on_progress(_progress):
            token.cancel()

        with self.assertRaises(OperationCancelled):
            run_task(_counting_steps(5, log), on_progress, token)
        self.assertEqual(log, [0, 1, "closed"])


class TestAsyncDrivers(unittest.IsolatedAsyncioTestCase):

    async def test_async_matches_sync(self):
        colors = _make_weighted(500, seed=3)
        q = Quantizer(MEDIAN_CUT, yield_every=1)
        self.assertEqual(await q.reduce_async(colors, 16), q.reduce(colors, 16))

    async def test_tasks_interleave(self):
        order: list = []
        a, b = await asyncio.gather(run_task_async(_counting_steps(3, order, "a")),
                                    run_task_async(_counting_steps(3, order, "b")))
        self.assertEqual((a, b), (3, 3))
        self.assertEqual(order[:2], ["a", "b"])

    async def test_async_cancellation(self):
        token = CancelToken()
        events = []

        def on_progress(progress):
            events.append(progress)
            token.cancel()

        with self.assertRaises(OperationCancelled):
            await run_task_async(_counting_steps(10), on_progress, token)
        self.assertEqual(len(events), 1)

    async def test_async_best_fit(self):
        pixels = _make_random_pixels(16, seed=9)
        palette = _make_random_pixels(64, seed=10)
        matcher = PaletteMatcher(yield_every=3)
        result = await matcher.match_async(pixels, palette, Strategy.BEST_FIT, 4)
        self.assertEqual(result.offset, best_fit(pixels, palette, 4).offset)

    async def test_async_export(self):
        bmp = _make_bitmap(_make_random_pixels(12, seed=4), width=4, height=3)
        conv = TextureConverter()
        a = await conv.export_async(bmp, "i4", rle=True)
        self.assertEqual(a.data, conv.export(bmp, "i4", rle=True).data)


# ---------------------------------------------------------------------------
# Texture cache and converter
# ---------------------------------------------------------------------------

class TestTextureCache(unittest.TestCase):

    def test_get_put(self):
        cache = TextureCache()
        self.assertIsNone(cache.get("binary", "k1"))
        cache.put("binary", "k1", b"data")
        self.assertEqual(cache.get("binary", "k1"), b"data")
        self.assertIsNone(cache.get("binary", "k2"))
        self.assertEqual((cache.hits, cache.misses), (1, 2))
        cache.invalidate("binary")
        self.assertNotIn("binary", cache)


class TestTexture(unittest.TestCase):

    PALETTE = [BLACK, Color(10, 20, 30)] + [WHITE] * 14

    def test_binary_data_is_cached(self):
        tex = Texture(_make_solid(4, 4, (10, 20, 30, 255)))
        a = tex.binary_data("i4", self.PALETTE)
        b = tex.binary_data("d2_mode_i4", self.PALETTE)
        self.assertIs(a, b)
        self.assertEqual(a, b"\x11" * 8)
        self.assertEqual((tex.cache.hits, tex.cache.misses), (1, 1))

    def test_inputs_invalidate(self):
        tex = Texture(_make_solid(4, 4, (10, 20, 30, 255)))
        tex.binary_data("i4", self.PALETTE)
        moved = [BLACK, WHITE, WHITE, Color(10, 20, 30)] + [WHITE] * 12
        self.assertEqual(tex.binary_data("i4", moved), b"\x33" * 8)
        self.assertEqual(len(tex.binary_data("i8", self.PALETTE)), 16)
        tex.binary_data("i8", self.PALETTE, offset=4)
        self.assertEqual(tex.cache.misses, 4)
        self.assertEqual(tex.cache.hits, 0)

    def test_new_source_clears_cache(self):
        tex = Texture(_make_solid(2, 2, (10, 20, 30, 255)))
        tex.binary_data("rgb565")
        tex.source = _make_solid(2, 2, (0, 0, 0, 255))
        self.assertNotIn(Texture.BINARY, tex.cache)
        self.assertEqual(tex.binary_data("rgb565"), bytes(8))

    def test_rendered_data(self):
        tex = Texture(_make_solid(4, 4, (10, 20, 30, 255)))
        self.assertEqual(tex.rendered_data("i4", self.PALETTE), bytes((10, 20, 30, 255)) * 16)
        self.assertIs(tex.rendered_data("i4", self.PALETTE),
                      tex.rendered_data("i4", self.PALETTE))
        rgba = tex.source.rgba
        self.assertEqual(tex.rendered_data("rgba8888"), rgba)

    def test_no_source(self):
        with self.assertRaises(NoDataError):
            Texture().binary_data("i4")


class TestConverter(unittest.TestCase):

    def test_black_i4_scenario(self):
        result = TextureConverter().export(_make_solid(4, 4), "i4")
        self.assertEqual(list(result.texture.palette), [BLACK] * 16)
        self.assertEqual(result.texture.payload, bytes(8))
        self.assertEqual(decode_d2(result.data), result.texture)

    def test_reduce_colors_frames(self):
        frames = [_make_bitmap([RED, GREEN, RED]), _make_bitmap([WHITE, RED, (0, 0, 0, 0)])]
        result = TextureConverter().reduce_colors(frames, 4)
        self.assertEqual(result.palette, [RED, GREEN, WHITE, BLACK])
        self.assertEqual(result.indexed_frames, [[0, 1, 0], [2, 0, 0]])
        self.assertEqual(result.original_colors, 3)

    def test_reduce_colors_errors(self):
        conv = TextureConverter()
        with self.assertRaises(NoDataError):
            conv.reduce_colors(None, 4)
        with self.assertRaises(NoDataError):
            conv.reduce_colors([], 4)
        with self.assertRaises(NoOpaquePixelsError):
            conv.reduce_colors(_make_solid(2, 2, (1, 2, 3, 0)), 4)

    def test_export_best_fit_window(self):
        palette = [WHITE] * 16 + [RED, GREEN] + [BLACK] * 14
        conv = TextureConverter()
        result = conv.export(_make_bitmap([RED, GREEN, GREEN, RED], width=2, height=2),
                             "i4", palette=palette, strategy=Strategy.BEST_FIT)
        self.assertEqual(result.offset, 16)
        self.assertEqual(conv.matcher.last_best_fit_offset, 16)
        self.assertEqual(list(result.texture.palette), palette[16:32])
        self.assertEqual(result.texture.indices(), [0, 1, 1, 0])

    def test_export_i8_truncates_long_palette(self):
        palette = [WHITE] * 280 + [RED] + [GREEN] * 19
        bmp = _make_bitmap([RED, WHITE])
        with self.assertLogs("d2tex.texture", level="WARNING"):
            result = TextureConverter().export(bmp, "i8", palette=palette)
        self.assertTrue(result.match.clamped)
        self.assertEqual(len(result.texture.palette), 256)
        self.assertEqual(result.texture.indices(), [0, 0])

    def test_export_without_embedded_palette(self):
        palette = [RED, GREEN]
        result = TextureConverter().export(_make_bitmap([GREEN, RED]), "i1",
                                           palette=palette, embed_palette=False,
                                           palette_name="two")
        tex = decode_d2(result.data)
        self.assertIsNone(tex.palette)
        self.assertEqual(tex.palette_name, "two")
        self.assertEqual(texture_to_rgba(tex, palette), bytes(GREEN) + bytes(RED))

    def test_export_ai44_keeps_alpha(self):
        bmp = _make_bitmap([(255, 0, 0, 255), (0, 255, 0, 0x80), (0, 255, 0, 0x20)])
        with self.assertLogs("d2tex", level="WARNING"):
            result = TextureConverter().export(bmp, "ai44", palette=[RED, GREEN])
        self.assertEqual(result.texture.payload, bytes([0xF0, 0x81, 0x20]))

    def test_export_direct(self):
        bmp = _make_bitmap([RED, GREEN])
        result = TextureConverter().export(bmp, "rgb565", rotation=2)
        self.assertEqual(result.texture.payload, b"\x00\xf8\xe0\x07")
        self.assertIsNone(result.texture.palette)
        self.assertEqual(decode_d2(result.data).rotation, 2)


# ---------------------------------------------------------------------------
# Palette files
# ---------------------------------------------------------------------------

class TestPaletteFiles(unittest.TestCase):

    COLOURS = [RED, GREEN, Color(1, 2, 3)]

    def test_text_roundtrips(self):
        with tempfile.TemporaryDirectory() as td:
            for name in ("p.pal", "p.gpl", "p.act"):
                with self.subTest(file=name):
                    p = Path(td) / name
                    write_palette(self.COLOURS, p)
                    self.assertEqual(read_palette(p), self.COLOURS)

    def test_jasc_layout(self):
        with tempfile.TemporaryDirectory() as td:
            p = Path(td) / "p.pal"
            write_palette(self.COLOURS, p)
            lines = p.read_text().splitlines()
        self.assertEqual(lines[:4], ["JASC-PAL", "0100", "3", "255 0 0"])

    def test_gimp_skips_headers_and_comments(self):
        text = "GIMP Palette\nName: test\nColumns: 4\n# comment\n 10  20  30\tfoo\n\n1 2 3\n"
        self.assertEqual(parse_gimp(text), [Color(10, 20, 30), Color(1, 2, 3)])

    def test_act_without_trailer(self):
        data = bytes(range(256)) * 3
        colours = parse_act(data)
        self.assertEqual(len(colours), 256)
        self.assertEqual(colours[1], Color(3, 4, 5))

    def test_act_transparent_index(self):
        colours = parse_act(format_act(self.COLOURS, transparent=1))
        self.assertEqual([c.a for c in colours], [255, 0, 255])
        with self.assertRaises(ValueError):
            parse_act(bytes(100))

    def test_default_palettes(self):
        self.assertEqual(grayscale_palette(4),
                         [Color(0, 0, 0), Color(85, 85, 85), Color(170, 170, 170), WHITE])
        pal = default_palette()
        self.assertEqual(len(pal), 256)
        self.assertEqual(pal[0], BLACK)
        self.assertEqual(pal[3], Color(85, 85, 0))
        self.assertEqual(pal[15], WHITE)
        self.assertEqual(pal[16], BLACK)
        self.assertEqual(pal[255], WHITE)
        self.assertEqual(len(default_palette(16)), 16)


# ---------------------------------------------------------------------------
# CLI smoke tests
# ---------------------------------------------------------------------------

class TestCLI(unittest.TestCase):

    def _run(self, *args: str) -> int:
        from d2tex.__main__ import main
        return main(list(args))

    def _run_captured(self, *args: str) -> tuple[int, str]:
        out = io.StringIO()
        with contextlib.redirect_stdout(out):
            rc = self._run(*args)
        return rc, out.getvalue()

    def test_encode_info_decode(self):
        pixels = [RED, GREEN, WHITE, BLACK] * 4
        with tempfile.TemporaryDirectory() as td:
            png = Path(td) / "sprite.png"
            _make_png(png, pixels, (4, 4))
            rc = self._run("encode", str(png), "-f", "i4", "--rle")
            self.assertEqual(rc, 0)
            d2 = Path(td) / "sprite.d2"
            self.assertTrue(is_d2(d2))

            rc, out = self._run_captured("info", str(d2))
            self.assertEqual(rc, 0)
            self.assertIn("d2_mode_i4", out)
            self.assertIn("rle=paired", out)

            out_dir = Path(td) / "out"
            rc = self._run("decode", str(d2), "-o", str(out_dir))
            self.assertEqual(rc, 0)
            from PIL import Image
            with Image.open(str(out_dir / "sprite.png")) as img:
                self.assertEqual(list(img.convert("RGBA").getdata()), [tuple(p) for p in pixels])

    def test_quantize_and_bestfit(self):
        pixels = [Color(250, 0, 0)] * 3 + [Color(0, 0, 250)]
        with tempfile.TemporaryDirectory() as td:
            png = Path(td) / "img.png"
            _make_png(png, pixels, (2, 2))
            pal = Path(td) / "img.act"
            rc = self._run("quantize", str(png), "-n", "2", "--output", str(pal))
            self.assertEqual(rc, 0)
            self.assertEqual(read_palette(pal), [Color(250, 0, 0), Color(0, 0, 250)])

            big = Path(td) / "big.gpl"
            write_palette([WHITE] * 4 + [RED, BLUE_ISH] + [BLACK] * 2, big)
            rc, out = self._run_captured("bestfit", str(png), "-p", str(big), "--bits", "2")
            self.assertEqual(rc, 0)
            self.assertIn("img.png: offset 4", out)

    def test_global_outdir(self):
        with tempfile.TemporaryDirectory() as td:
            png = Path(td) / "tile.png"
            _make_png(png, [RED, GREEN], (2, 1))
            out_dir = Path(td) / "built"
            rc = self._run("-o", str(out_dir), "encode", str(png), "-f", "rgb565")
            self.assertEqual(rc, 0)
            tex = read_d2(out_dir / "tile.d2")
            self.assertEqual((tex.width, tex.height), (2, 1))

    def test_bad_inputs(self):
        with tempfile.TemporaryDirectory() as td:
            bad = Path(td) / "bad.d2"
            bad.write_bytes(b"nope")
            with contextlib.redirect_stderr(io.StringIO()):
                self.assertEqual(self._run("info", str(bad)), 1)
                png = Path(td) / "x.png"
                _make_png(png, [RED], (1, 1))
                self.assertEqual(self._run("encode", str(png), "-f", "i3"), 1)


if __name__ == "__main__":
    unittest.main()

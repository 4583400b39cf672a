"""
__main__.py – CLI entry-point for the d2tex package.

Usage:  python -m d2tex <command> [options] <files…>

Commands
--------
encode    IMAGE…     Convert images (PNG, GIF, …) to .d2 textures.
decode    FILE.d2…   Render .d2 textures to PNG.
info      FILE.d2…   Print container headers.
quantize  IMAGE…     Reduce images to a palette file (.pal / .gpl / .act).
bestfit   IMAGE…     Report the palette window that fits an image best.

Formats are given by name: i1, i2, i4, i8, ai44, rgb565, argb1555, rgb555,
argb4444, rgb444, argb8888, rgb888, rgba8888, rgba4444, rgba5551, alpha8,
alpha4, alpha2, alpha1 (the editor spelling d2_mode_i4 is accepted too).
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _outdir(args: argparse.Namespace) -> Path | None:
    outdir = Path(args.outdir) if args.outdir else None
    if outdir:
        outdir.mkdir(parents=True, exist_ok=True)
    return outdir


def _load_bitmap(path: Path):
    from PIL import Image as PILImage
    from d2tex.color import SourceBitmap

    with PILImage.open(str(path)) as img:
        return SourceBitmap.from_image(img)


def _load_palette(args: argparse.Namespace):
    if not args.palette:
        return None
    from d2tex.palette import read_palette
    return read_palette(args.palette)


def _progress_printer(args: argparse.Namespace):
    if not args.verbose:
        return None

    def show(progress) -> None:
        print(f"  {progress.percent:5.1f}%  {progress.status}")
    return show


# ---------------------------------------------------------------------------
# Sub-commands
# ---------------------------------------------------------------------------

def cmd_encode(args: argparse.Namespace) -> int:
    """Convert images to .d2 textures."""
    from d2tex.match import PaletteMatcher
    from d2tex.metrics import get_metric
    from d2tex.texture import TextureConverter

    try:
        palette = _load_palette(args)
        matcher = PaletteMatcher(get_metric(args.metric))
    except (ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    converter = TextureConverter(matcher=matcher)
    name = args.name if args.name is not None else (Path(args.palette).stem if args.palette else "")
    outdir = _outdir(args)
    errors = 0
    for fp in (Path(f) for f in args.files):
        dest = (outdir or fp.parent) / (fp.stem + ".d2")
        if args.verbose:
            print(f"Encoding {fp.name} → {dest.name} ({args.format})")
        try:
            result = converter.export(
                _load_bitmap(fp), args.format, palette=palette, offset=args.offset,
                strategy=args.strategy, rle=args.rle, palette_name=name,
                rotation=args.rotation, embed_palette=not args.no_embed,
                on_progress=_progress_printer(args))
            dest.write_bytes(result.data)
        except (ValueError, OSError) as exc:
            print(f"Error converting {fp.name}: {exc}", file=sys.stderr)
            errors += 1
            continue
        if args.verbose:
            print(f"  {len(result.data)} bytes, palette offset {result.offset}")
    return 1 if errors else 0


def cmd_decode(args: argparse.Namespace) -> int:
    """Render .d2 textures to PNG."""
    from d2tex.d2 import d2_to_image, read_d2

    try:
        palette = _load_palette(args)
    except (ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    outdir = _outdir(args)
    errors = 0
    for fp in (Path(f) for f in args.files):
        dest = (outdir or fp.parent) / (fp.stem + ".png")
        if args.verbose:
            print(f"Decoding {fp.name} → {dest.name}")
        try:
            img = d2_to_image(read_d2(fp), palette, args.offset)
            img.save(str(dest))
        except (ValueError, OSError) as exc:
            print(f"Error converting {fp.name}: {exc}", file=sys.stderr)
            errors += 1
    return 1 if errors else 0


def cmd_info(args: argparse.Namespace) -> int:
    """Print the header of each .d2 file."""
    from d2tex.d2 import read_d2
    from d2tex.formats import format_info, format_name

    errors = 0
    for fp in (Path(f) for f in args.files):
        try:
            tex = read_d2(fp)
        except (ValueError, OSError) as exc:
            print(f"Error: {fp.name}: {exc}", file=sys.stderr)
            errors += 1
            continue
        info = format_info(tex.format)
        print(f"{fp.name}:")
        print(f"  format    {format_name(tex.format)} ({info.bits_per_pixel} bpp)")
        print(f"  size      {tex.width}x{tex.height}")
        rle = ("paired" if tex.rle_paired else "compact") if tex.rle else "off"
        print(f"  flags     0x{tex.flags:02x}  rle={rle}  rotation={tex.rotation * 90}")
        if tex.palette_name:
            print(f"  palette   {tex.palette_name}")
        if tex.palette is not None:
            print(f"  embedded  {len(tex.palette)} colours")
            if args.verbose:
                for i, c in enumerate(tex.palette):
                    print(f"    {i:3d}  {c.to_hex()}  a={c.a}")
        print(f"  payload   {len(tex.payload)} bytes")
    return 1 if errors else 0


def cmd_quantize(args: argparse.Namespace) -> int:
    """Reduce one or more images (as frames of one sprite) to a palette file."""
    from d2tex.palette import write_palette
    from d2tex.quantize import Quantizer
    from d2tex.texture import TextureConverter

    converter = TextureConverter(quantizer=Quantizer(args.algorithm))
    files = [Path(f) for f in args.files]
    outdir = _outdir(args)
    dest = Path(args.output) if args.output else (outdir or files[0].parent) / (files[0].stem + ".pal")
    try:
        frames = [_load_bitmap(fp) for fp in files]
        result = converter.reduce_colors(frames, args.colors,
                                         on_progress=_progress_printer(args))
        write_palette(result.palette, dest)
    except (ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    if args.verbose:
        print(f"{result.original_colors} colours → {len(result.palette)} in {dest}")
    return 0


def cmd_bestfit(args: argparse.Namespace) -> int:
    """Report the best palette window for each image."""
    from d2tex.match import PaletteMatcher, Strategy, window_size_for
    from d2tex.metrics import get_metric
    from d2tex.palette import read_palette

    try:
        palette = read_palette(args.palette)
        matcher = PaletteMatcher(get_metric(args.metric))
        window = window_size_for(args.bits)
    except (ValueError, OSError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        return 1
    errors = 0
    for fp in (Path(f) for f in args.files):
        try:
            result = matcher.match(_load_bitmap(fp), palette, Strategy.BEST_FIT, window,
                                   on_progress=_progress_printer(args))
        except (ValueError, OSError) as exc:
            print(f"Error: {fp.name}: {exc}", file=sys.stderr)
            errors += 1
            continue
        err = result.window_errors.get(result.offset, 0.0)
        print(f"{fp.name}: offset {result.offset} (window {result.offset // window}), "
              f"error {err:.1f}")
        if args.verbose:
            for off, e in sorted(result.window_errors.items()):
                print(f"  {off:3d}  {e:12.1f}")
    return 1 if errors else 0


# ---------------------------------------------------------------------------
# Argument parser
# ---------------------------------------------------------------------------

def _build_parser() -> argparse.ArgumentParser:
    from d2tex.match import Strategy
    from d2tex.metrics import METRICS
    from d2tex.quantize import ALGORITHMS

    parser = argparse.ArgumentParser(
        prog="python -m d2tex",
        description="D2 texture converter: colour reduction, indexed packing, .d2 files.",
    )
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Print progress messages.")
    parser.add_argument("-o", "--outdir", metavar="DIR",
                        help="Output directory (default: same as input).")

    sub = parser.add_subparsers(dest="command", metavar="<command>")
    sub.required = True

    # encode
    p_enc = sub.add_parser("encode", help="Convert images to .d2 textures.")
    p_enc.add_argument("files", nargs="+", metavar="IMAGE")
    p_enc.add_argument("-f", "--format", required=True, metavar="FMT",
                       help="Target format, e.g. i4, rgb565, argb1555.")
    p_enc.add_argument("-p", "--palette", metavar="FILE",
                       help="Palette file (.pal/.gpl/.act); default: quantise the image.")
    p_enc.add_argument("--offset", type=int, default=0,
                       help="Palette window offset for 1/2/4-bit formats (default: 0).")
    p_enc.add_argument("--strategy", choices=[s.value for s in Strategy],
                       help="Palette matching strategy (default: global for i8, fit otherwise).")
    p_enc.add_argument("--metric", choices=list(METRICS), default="euclidean",
                       help="Colour distance (default: euclidean).")
    p_enc.add_argument("--rle", action="store_true",
                       help="RLE-compress the payload.")
    p_enc.add_argument("--rotation", type=int, choices=range(4), default=0,
                       help="Prerotation in quarter turns.")
    p_enc.add_argument("--name", metavar="NAME",
                       help="Palette name stored in the file (default: palette file stem).")
    p_enc.add_argument("--no-embed", action="store_true", dest="no_embed",
                       help="Do not embed the palette window in the file.")
    p_enc.add_argument("-o", "--outdir", metavar="DIR", default=argparse.SUPPRESS,
                       help="Output directory (default: same as input).")

    # decode
    p_dec = sub.add_parser("decode", help="Render .d2 textures to PNG.")
    p_dec.add_argument("files", nargs="+", metavar="FILE.d2")
    p_dec.add_argument("-p", "--palette", metavar="FILE",
                       help="Palette for textures without an embedded one.")
    p_dec.add_argument("--offset", type=int, default=0,
                       help="Added to every index before the palette lookup.")
    p_dec.add_argument("-o", "--outdir", metavar="DIR", default=argparse.SUPPRESS,
                       help="Output directory (default: same as input).")

    # info
    p_info = sub.add_parser("info", help="Print .d2 container headers.")
    p_info.add_argument("files", nargs="+", metavar="FILE.d2")

    # quantize
    p_q = sub.add_parser("quantize", help="Reduce images to a palette file.")
    p_q.add_argument("files", nargs="+", metavar="IMAGE",
                     help="One image, or several frames sharing one palette.")
    p_q.add_argument("-n", "--colors", type=int, default=16,
                     help="Palette size, 2-256 (default: 16).")
    p_q.add_argument("--algorithm", choices=ALGORITHMS, default="auto")
    p_q.add_argument("--output", metavar="FILE",
                     help="Palette file to write; extension picks .pal/.gpl/.act.")
    p_q.add_argument("-o", "--outdir", metavar="DIR", default=argparse.SUPPRESS,
                     help="Output directory (default: same as input).")

    # bestfit
    p_bf = sub.add_parser("bestfit", help="Find the best palette window for images.")
    p_bf.add_argument("files", nargs="+", metavar="IMAGE")
    p_bf.add_argument("-p", "--palette", required=True, metavar="FILE")
    p_bf.add_argument("--bits", type=int, choices=(1, 2, 4), default=4,
                      help="Bits per pixel of the target format (default: 4).")
    p_bf.add_argument("--metric", choices=list(METRICS), default="euclidean")

    return parser


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------

_COMMANDS = {
    "encode":   cmd_encode,
    "decode":   cmd_decode,
    "info":     cmd_info,
    "quantize": cmd_quantize,
    "bestfit":  cmd_bestfit,
}


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args   = parser.parse_args(argv)

    if not hasattr(args, "verbose"):
        args.verbose = False
    if not hasattr(args, "outdir"):
        args.outdir = None
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING,
                        format="%(levelname)s %(name)s: %(message)s")

    return _COMMANDS[args.command](args)


if __name__ == "__main__":
    sys.exit(main())

"""
d2tex – colour reduction and indexed-pixel codec for D2 hardware textures.

Public API re-exports:

  from d2tex.color     import Color, SourceBitmap, WeightedColor
  from d2tex.histogram import build_histogram
  from d2tex.quantize  import Quantizer, reduce_palette
  from d2tex.match     import PaletteMatcher, Strategy, MatchResult
  from d2tex.bitpack   import IndexedBuffer, pack_indices, unpack_indices,
                              pack_direct, unpack_direct
  from d2tex.d2        import D2Texture, D2Codec, encode_d2, decode_d2,
                              read_d2, write_d2, is_d2
  from d2tex.texture   import Texture, TextureCache, TextureConverter
"""

from .errors    import (
    D2TexError,
    InvalidColorCountError,
    NoOpaquePixelsError,
    UnsupportedFormatError,
    D2FormatError,
    NoDataError,
    OperationCancelled,
)
from .color     import Color, WeightedColor, SourceBitmap, rgba_to_image
from .formats   import D2Format, D2Flag, format_from_name, format_name
from .histogram import build_histogram
from .quantize  import Quantizer, reduce_palette
from .metrics   import METRICS, get_metric
from .match     import MatchResult, PaletteMatcher, Strategy
from .bitpack   import IndexedBuffer, pack_indices, unpack_indices, pack_direct, unpack_direct
from .rle       import compress, decompress, compress_paired, decompress_paired
from .d2        import (
    D2Codec,
    D2Texture,
    decode_d2,
    encode_d2,
    d2_to_image,
    texture_to_rgba,
    read_d2,
    write_d2,
    is_d2,
)
from .tasks     import CancelToken, Progress, run_task, run_task_async
from .texture   import ReductionResult, Texture, TextureCache, TextureConverter
from .palette   import read_palette, write_palette, default_palette, grayscale_palette

__all__ = [
    "D2TexError", "InvalidColorCountError", "NoOpaquePixelsError",
    "UnsupportedFormatError", "D2FormatError", "NoDataError", "OperationCancelled",
    "Color", "WeightedColor", "SourceBitmap", "rgba_to_image",
    "D2Format", "D2Flag", "format_from_name", "format_name",
    "build_histogram",
    "Quantizer", "reduce_palette",
    "METRICS", "get_metric",
    "MatchResult", "PaletteMatcher", "Strategy",
    "IndexedBuffer", "pack_indices", "unpack_indices", "pack_direct", "unpack_direct",
    "compress", "decompress", "compress_paired", "decompress_paired",
    "D2Codec", "D2Texture", "decode_d2", "encode_d2", "d2_to_image", "texture_to_rgba",
    "read_d2", "write_d2", "is_d2",
    "CancelToken", "Progress", "run_task", "run_task_async",
    "ReductionResult", "Texture", "TextureCache", "TextureConverter",
    "read_palette", "write_palette", "default_palette", "grayscale_palette",
]

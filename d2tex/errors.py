"""
d2tex.errors — exception hierarchy shared by the codec modules.

Every error is a ValueError so callers that only care about "bad input"
can keep catching that.
"""
from __future__ import annotations


class D2TexError(ValueError):
    """Base class for all d2tex errors."""


class InvalidColorCountError(D2TexError):
    """Requested palette size is outside 2..256."""


class NoOpaquePixelsError(D2TexError):
    """Source bitmap has no pixel with alpha >= 128."""


class UnsupportedFormatError(D2TexError):
    """Unknown format tag/name, or an operation the format cannot do."""


class D2FormatError(D2TexError):
    """Malformed D2 container (too short, bad magic, truncated section)."""


class NoDataError(D2TexError):
    """Missing source bitmap or empty pixel buffer."""


class OperationCancelled(D2TexError):
    """A cooperative task observed its cancellation token."""

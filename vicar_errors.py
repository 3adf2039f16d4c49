"""
Error kinds raised while reading or writing VICAR files.

All of them derive from ValueError so callers that already guard label
parsing with ``except ValueError`` keep working.
"""

from __future__ import annotations

from typing import Optional


class VicarError(ValueError):
    """Base class for every VICAR format error."""


class MalformedLabel(VicarError):
    """Tokenizer-level syntax fault in a label area."""

    def __init__(self, message: str, offset: Optional[int] = None) -> None:
        self.offset = offset
        if offset is not None:
            message = f"{message} (at byte {offset})"
        super().__init__(message)


class InvalidSystemLabel(VicarError):
    """A required system keyword is missing or violates a format invariant."""

    def __init__(self, field: str, reason: str) -> None:
        self.field = field
        self.reason = reason
        super().__init__(f"{field}: {reason}")


class OutOfRange(VicarError, IndexError):
    """Pixel index outside the declared image dimensions."""


class UnsupportedEncoding(VicarError):
    """Unrecognized data type, byte order or compression."""


class TruncatedData(VicarError):
    """Fewer bytes are available than the format declares."""

    def __init__(self, message: str, needed: Optional[int] = None, available: Optional[int] = None) -> None:
        self.needed = needed
        self.available = available
        super().__init__(message)

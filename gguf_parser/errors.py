# gguf_parser/errors.py
"""
Exception taxonomy shared by the byte sources, the decoder and the views.

Structural decode failures derive from :class:`GGUFParseError`; network and
cancellation failures are siblings so callers can tell a broken file from a
broken connection or an aborted read.
"""
from __future__ import annotations

from typing import Optional


class GGUFError(Exception):
    """Base class of every error raised by gguf_parser."""


class GGUFParseError(GGUFError):
    """Raised when a GGUF file is malformed."""


class MalformedHeaderError(GGUFParseError):
    """Bad magic, unsupported version or impossible header counts."""


class TruncatedReadError(GGUFParseError):
    """The source ended in the middle of a record."""

    def __init__(self, message: str, *, offset: int = -1, wanted: int = 0, size: int = 0):
        super().__init__(message)
        self.offset = offset
        self.wanted = wanted
        self.size = size


class UnsupportedValueTypeError(GGUFParseError):
    """Unknown metadata value-type tag or GGML tensor type."""

    def __init__(self, message: str, *, tag: Optional[int] = None):
        super().__init__(message)
        self.tag = tag


class NetworkError(GGUFError):
    """Remote read failure.

    Attributes:
        retryable: True when the failure was transient (connection reset,
            408/429/5xx) and retries were exhausted, False for terminal
            failures such as 404 or a server without range support.
        status: HTTP status code if a response was received.
    """

    def __init__(self, message: str, *, retryable: bool = False, status: Optional[int] = None):
        super().__init__(message)
        self.retryable = retryable
        self.status = status


class ReadCancelledError(GGUFError):
    """The caller cancelled the read or its deadline passed."""


class GGUFValueError(GGUFError, TypeError):
    """A metadata value was requested in an incompatible representation."""

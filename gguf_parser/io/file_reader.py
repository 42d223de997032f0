# gguf_parser/io/file_reader.py
"""
Random-access byte sources.

Every source answers ``read_at(offset, length)`` and ``size``; reads that
cannot be satisfied completely raise :class:`TruncatedReadError` instead of
returning short data. Local files are memory-mapped (zero-copy memoryview,
pages faulted in lazily) or read through a buffered handle.
"""

from __future__ import annotations

import mmap
import os
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import BinaryIO, Optional

from gguf_parser.errors import TruncatedReadError


class ByteSource(ABC):
    """Uniform random-access read interface used by the decoder."""

    size: int = 0

    def __enter__(self) -> "ByteSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    @abstractmethod
    def read_at(self, offset: int, length: int) -> bytes:
        """Read exactly ``length`` bytes starting at ``offset``."""
        raise NotImplementedError

    def close(self) -> None:
        """Release the underlying resource."""

    def _check_bounds(self, offset: int, length: int) -> None:
        if offset < 0 or length < 0:
            raise ValueError(f"invalid read: offset={offset} length={length}")
        if offset + length > self.size:
            raise TruncatedReadError(
                f"read of {length} bytes at offset {offset} exceeds source size {self.size}",
                offset=offset,
                wanted=length,
                size=self.size,
            )


@dataclass
class LocalFileSource:
    """Local file source.

    Attributes:
        path: Path to the local file.
        use_mmap: Memory-map the file (default); otherwise use a buffered handle.
    """

    path: str
    use_mmap: bool = True

    def open(self) -> ByteSource:
        """Return an (unentered) reader for the file."""
        if self.use_mmap and os.path.getsize(self.path) > 0:
            return MappedFile(self.path)
        # mmap refuses empty files; they still need to fail as truncated, not as OSError.
        return BufferedFile(self.path)


class MappedFile(ByteSource):
    """Context manager that wraps an mmapped file and exposes a memoryview."""

    __slots__ = ("_fd", "_m", "_mv", "size", "path")

    def __init__(self, path: str):
        self.path = path
        self._fd: Optional[int] = None
        self._m: Optional[mmap.mmap] = None
        self._mv: Optional[memoryview] = None
        self.size: int = 0

    def __enter__(self) -> "MappedFile":
        self._fd = os.open(self.path, os.O_RDONLY)
        self.size = os.fstat(self._fd).st_size
        self._m = mmap.mmap(self._fd, self.size, access=mmap.ACCESS_READ)
        self._mv = memoryview(self._m)
        return self

    def close(self) -> None:
        if self._mv is not None:
            self._mv.release()
            self._mv = None
        if self._m is not None:
            self._m.close()
            self._m = None
        if self._fd is not None:
            os.close(self._fd)
            self._fd = None

    @property
    def view(self) -> memoryview:
        """Zero-copy memoryview over the file bytes."""
        if self._mv is None:
            raise RuntimeError("MappedFile is not entered")
        return self._mv

    def read_at(self, offset: int, length: int) -> bytes:
        self._check_bounds(offset, length)
        return bytes(self.view[offset : offset + length])


class BufferedFile(ByteSource):
    """Regular buffered file handle with seek + read."""

    __slots__ = ("_fh", "size", "path")

    def __init__(self, path: str):
        self.path = path
        self._fh: Optional[BinaryIO] = None
        self.size: int = 0

    def __enter__(self) -> "BufferedFile":
        self._fh = open(self.path, "rb")
        self.size = os.fstat(self._fh.fileno()).st_size
        return self

    def close(self) -> None:
        if self._fh is not None:
            self._fh.close()
            self._fh = None

    def read_at(self, offset: int, length: int) -> bytes:
        if self._fh is None:
            raise RuntimeError("BufferedFile is not entered")
        self._check_bounds(offset, length)
        if self._fh.tell() != offset:
            self._fh.seek(offset)
        data = self._fh.read(length)
        if len(data) != length:
            raise TruncatedReadError(
                f"short read at offset {offset}: wanted {length}, got {len(data)}",
                offset=offset,
                wanted=length,
                size=self.size,
            )
        return data


class BytesSource(ByteSource):
    """In-memory source over an already fetched buffer."""

    def __init__(self, data: bytes):
        self._data = memoryview(bytes(data))
        self.size = len(self._data)

    def read_at(self, offset: int, length: int) -> bytes:
        self._check_bounds(offset, length)
        return bytes(self._data[offset : offset + length])

"""
Byte sources — random-access reads over a disk image
=====================================================
Everything that decodes an image goes through one of these.

Source hierarchy:
  ByteSource      — abstract base
  ├─ MemorySource — an owned, immutable in-memory copy of the image
  └─ FileSource   — a host file, opened afresh for every read

A FileSource never holds the image in memory and never keeps a handle
open between calls, so one instance may be shared by several threads.

Usage:
  from byte_sources import FileSource
  src = FileSource("games.adl")
  header = src.read_range(0x200, 0x500)
"""

from __future__ import annotations

import abc
import logging
import os
from pathlib import Path

logger = logging.getLogger(__name__)


class ReadError(OSError):
    """A byte range could not be read from the image."""


# ══════════════════════════════════════════════════════════════════════
#  Abstract base
# ══════════════════════════════════════════════════════════════════════

class ByteSource(abc.ABC):
    """Abstract image backing store."""

    @abc.abstractmethod
    def read_range(self, offset: int, length: int) -> bytes:
        """Return exactly *length* bytes starting at *offset*.

        Raises ReadError if the range cannot be read in full.
        """
        ...

    @property
    @abc.abstractmethod
    def size(self) -> int:
        """Total image length in bytes."""
        ...

    @property
    def name(self) -> str:
        """Human-readable source name for status display."""
        return type(self).__name__

    @staticmethod
    def _check_range(offset: int, length: int):
        if offset < 0:
            raise ReadError(f"Negative image offset {offset}")
        if length < 0:
            raise ReadError(f"Negative read length {length}")


# ══════════════════════════════════════════════════════════════════════
#  In-memory image
# ══════════════════════════════════════════════════════════════════════

class MemorySource(ByteSource):
    """Image held as a private, immutable ``bytes`` copy."""

    def __init__(self, data: bytes | bytearray | memoryview):
        self._data = bytes(data)

    def read_range(self, offset: int, length: int) -> bytes:
        self._check_range(offset, length)
        end = offset + length
        if end > len(self._data):
            raise ReadError(
                f"Read of {length} bytes at {offset:#x} runs past end of "
                f"image ({len(self._data)} bytes)")
        return self._data[offset:end]

    @property
    def size(self) -> int:
        return len(self._data)

    @property
    def name(self) -> str:
        return f"memory[{len(self._data)}]"


# ══════════════════════════════════════════════════════════════════════
#  Host file
# ══════════════════════════════════════════════════════════════════════

class FileSource(ByteSource):
    """Image stored in a seekable host file.

    Each call opens the file, seeks, reads and closes it again.  Nothing
    is cached.
    """

    def __init__(self, path: str | os.PathLike):
        self.path = Path(path)

    def read_range(self, offset: int, length: int) -> bytes:
        self._check_range(offset, length)
        try:
            with open(self.path, "rb") as f:
                f.seek(offset)
                data = f.read(length)
        except OSError as e:
            logger.debug("Read of %d bytes at %#x from %s failed: %s",
                         length, offset, self.path, e)
            raise ReadError(f"Cannot read {self.path}: {e}") from e
        if len(data) != length:
            logger.debug("Short read from %s: %d of %d bytes at %#x",
                         self.path, len(data), length, offset)
            raise ReadError(
                f"Short read from {self.path}: wanted {length} bytes at "
                f"{offset:#x}, got {len(data)}")
        return data

    @property
    def size(self) -> int:
        try:
            return self.path.stat().st_size
        except OSError as e:
            raise ReadError(f"Cannot stat {self.path}: {e}") from e

    @property
    def name(self) -> str:
        return str(self.path)

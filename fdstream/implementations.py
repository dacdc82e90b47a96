"""
Real implementations of interfaces for production use.

RealDescriptor wraps an OS file descriptor and talks to it with plain
os.read / os.lseek so the descriptor's own read offset is the only cursor.
"""

from __future__ import annotations

import fcntl
import io
import logging
import os
import stat
import struct
import termios
from typing import Any, Union

from .errors import DescriptorAcquisitionError
from .interfaces import DescriptorInterface

logger = logging.getLogger(__name__)

# Hint used when the OS cannot say how much is buffered (FIONREAD unsupported).
FALLBACK_AVAILABLE = io.DEFAULT_BUFFER_SIZE


def _fd_of(source: Union[int, Any]) -> int:
    if isinstance(source, int):
        return source
    if hasattr(source, "fileno"):
        return source.fileno()
    raise TypeError(f"Expected a file descriptor or an object with fileno(), got {type(source).__name__}")


class RealDescriptor(DescriptorInterface):
    """
    OS file descriptor.

    Objects with ``fileno()`` are accepted, but only their descriptor is
    used: any user-space buffer they keep (e.g. ``open(path, "rb")``) is
    bypassed.
    """

    def __init__(self, source: Union[int, Any]):
        self._fd = _fd_of(source)
        self._closed = False
        self._regular = stat.S_ISREG(os.fstat(self._fd).st_mode)

    @classmethod
    def open(cls, path: Union[str, os.PathLike]) -> "RealDescriptor":
        """Open ``path`` read-only. Raises DescriptorAcquisitionError on failure."""
        try:
            fd = os.open(path, os.O_RDONLY | os.O_NONBLOCK)
        except OSError as e:
            raise DescriptorAcquisitionError(os.fspath(path), e.strerror or str(e)) from e
        logger.debug("Opened %s as fd %d", path, fd)
        return cls(fd)

    def fileno(self) -> int:
        return self._fd

    def read(self, size: int) -> bytes:
        try:
            return os.read(self._fd, size)
        except BlockingIOError:
            # Spurious wake-up on a non-blocking descriptor.
            return b""

    def seek_relative(self, offset: int) -> None:
        os.lseek(self._fd, offset, os.SEEK_CUR)

    def bytes_available(self) -> int:
        if self._regular:
            size = os.fstat(self._fd).st_size
            position = os.lseek(self._fd, 0, os.SEEK_CUR)
            return max(size - position, 0)
        try:
            raw = fcntl.ioctl(self._fd, termios.FIONREAD, b"\x00\x00\x00\x00")
        except OSError:
            return FALLBACK_AVAILABLE
        return struct.unpack("i", raw)[0]

    def is_regular_file(self) -> bool:
        return self._regular

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        os.close(self._fd)
        logger.debug("Closed fd %d", self._fd)

    @property
    def closed(self) -> bool:
        return self._closed

    def __repr__(self) -> str:
        kind = "file" if self._regular else "stream"
        return f"RealDescriptor(fd={self._fd}, {kind}{', closed' if self._closed else ''})"

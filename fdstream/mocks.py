"""
Mock implementations for testing.

These classes implement the abstract interfaces with in-memory behavior
suitable for unit testing without pipes or files.
"""

import threading
from typing import List, Optional

from .interfaces import DescriptorInterface


class MockDescriptor(DescriptorInterface):
    """
    Mock descriptor for testing.

    Holds an append-only byte buffer and a read offset, like a regular
    file that is being written to. Test code injects bytes with feed() and
    can cap read sizes or make reads and seeks fail.

    It has no OS handle: fileno() raises OSError, so watchers fall back to
    timed readiness checks for it.
    """

    def __init__(self, data: bytes = b"", *, seekable: bool = True):
        self._lock = threading.Lock()
        self._data = bytearray(data)
        self._offset = 0
        self._seekable = seekable
        self._closed = False
        self._max_read: Optional[int] = None
        self._fail_next_read: Optional[OSError] = None
        self._fail_seek: Optional[OSError] = None
        self.read_sizes: List[int] = []
        self.seeks: List[int] = []

    # -- test helpers -----------------------------------------------------

    def feed(self, data: bytes) -> None:
        """Append bytes as if a writer had written them."""
        with self._lock:
            self._data.extend(data)

    def set_max_read(self, max_read: Optional[int]) -> None:
        """Make every read return at most ``max_read`` bytes (short reads)."""
        self._max_read = max_read

    def fail_next_read(self, error: Optional[OSError] = None) -> None:
        self._fail_next_read = error or OSError(5, "Input/output error")

    def fail_seeks(self, error: Optional[OSError] = None) -> None:
        self._fail_seek = error or OSError(29, "Illegal seek")

    @property
    def offset(self) -> int:
        return self._offset

    # -- DescriptorInterface ----------------------------------------------

    def fileno(self) -> int:
        raise OSError("MockDescriptor has no OS file descriptor")

    def read(self, size: int) -> bytes:
        with self._lock:
            self.read_sizes.append(size)
            if self._fail_next_read is not None:
                error, self._fail_next_read = self._fail_next_read, None
                raise error
            if self._max_read is not None:
                size = min(size, self._max_read)
            chunk = bytes(self._data[self._offset:self._offset + size])
            self._offset += len(chunk)
            return chunk

    def seek_relative(self, offset: int) -> None:
        with self._lock:
            self.seeks.append(offset)
            if self._fail_seek is not None:
                raise self._fail_seek
            if not self._seekable:
                raise OSError(29, "Illegal seek")
            self._offset = max(self._offset + offset, 0)

    def bytes_available(self) -> int:
        with self._lock:
            return len(self._data) - self._offset

    def is_regular_file(self) -> bool:
        return self._seekable

    def close(self) -> None:
        self._closed = True

    @property
    def closed(self) -> bool:
        return self._closed

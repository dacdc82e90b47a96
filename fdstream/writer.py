"""
Append-only record writer.

Produces files in the layout FileStream reads: encoded records back to
back, no header. Writes to a path take an exclusive portalocker lock so
cooperating writers never interleave partial records.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any, BinaryIO, Union

import portalocker

from .codec import RecordCodec

logger = logging.getLogger(__name__)


class RecordWriter:
    """Appends encoded records to a file.

    Args:
        target: Path (opened in append mode, created if missing) or a
                caller-owned binary file object.
        codec: Codec used to encode values.
        lock: Lock the file for each write. Only applies to path targets.
    """

    def __init__(self, target: Union[str, Path, BinaryIO], codec: RecordCodec, *, lock: bool = True):
        self._codec = codec
        self._owns_file = False
        if isinstance(target, (str, Path)):
            self._f = open(target, "ab")
            self._owns_file = True
        else:
            self._f = target
        self._lock = lock and self._owns_file
        self._records_written = 0
        self._bytes_written = 0

    @property
    def records_written(self) -> int:
        return self._records_written

    @property
    def bytes_written(self) -> int:
        return self._bytes_written

    def append(self, *values: Any) -> int:
        """Encode and write ``values`` in one write. Returns bytes written."""
        payload = b"".join(self._codec.encode(v) for v in values)
        written = self._write(payload)
        self._records_written += len(values)
        return written

    def write_raw(self, data: bytes) -> int:
        """Write arbitrary bytes, e.g. part of a record."""
        return self._write(data)

    def _write(self, data: bytes) -> int:
        if not data:
            return 0
        if self._lock:
            portalocker.lock(self._f, portalocker.LOCK_EX)
        try:
            self._f.write(data)
            self._f.flush()
        finally:
            if self._lock:
                portalocker.unlock(self._f)
        self._bytes_written += len(data)
        return len(data)

    def flush(self) -> None:
        self._f.flush()
        if self._owns_file:
            os.fsync(self._f.fileno())

    def close(self) -> None:
        if self._owns_file and not self._f.closed:
            self._f.close()
            logger.debug("Closed record writer after %d records", self._records_written)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

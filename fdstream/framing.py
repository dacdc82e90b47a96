"""
Record framing on top of a readable descriptor.

The assembler keeps no byte buffer of its own. It counts how many bytes
the OS reported as available, reads only whole records' worth, and when a
read ends in the middle of a record it seeks the descriptor back over the
partial bytes so they are read again as the prefix of the next record.
If that seek fails the partial bytes are gone: they are dropped from the
count and the failure is reported.
"""

from __future__ import annotations

import logging
from typing import Any, List, NamedTuple, Optional, Tuple

from .codec import RecordCodec
from .errors import DecodeError, ReadFailure, RewindFailure, StreamError
from .interfaces import DescriptorInterface

logger = logging.getLogger(__name__)


class TickResult(NamedTuple):
    """Outcome of one readiness tick: decoded values, then an optional error."""
    values: List[Any]
    error: Optional[StreamError] = None


class FrameAssembler:
    """Reassembles fixed-size records from arbitrarily chunked reads."""

    def __init__(self, descriptor: DescriptorInterface, codec: RecordCodec):
        self._descriptor = descriptor
        self._codec = codec
        self._record_size = codec.record_size
        self._pending = 0

    @property
    def pending_byte_count(self) -> int:
        """Bytes reported available but not yet consumed into a record."""
        return self._pending

    @property
    def record_size(self) -> int:
        return self._record_size

    def on_readiness_tick(self, available_hint: int) -> TickResult:
        """Account for ``available_hint`` new bytes and decode whole records."""
        if available_hint > 0:
            self._pending += available_hint
        capacity = self._pending // self._record_size
        if capacity == 0:
            return TickResult([])

        try:
            data = self._descriptor.read(capacity * self._record_size)
        except OSError as e:
            return TickResult([], self._read_failure(e))
        bytes_read = len(data)
        if bytes_read == 0:
            return TickResult([])

        leftover = bytes_read % self._record_size
        self._pending -= bytes_read - leftover
        values, error = self._decode(data, bytes_read - leftover)

        if leftover:
            try:
                self._descriptor.seek_relative(-leftover)
            except OSError as e:
                self._pending = max(self._pending - leftover, 0)
                rewind = RewindFailure(
                    f"Read {leftover} bytes past the last whole record and could not seek back: {e}",
                    dropped=leftover,
                )
                rewind.__cause__ = e
                # A decode error in the same tick wins; the rewind loss is still logged.
                if error is None:
                    error = rewind
                else:
                    logger.warning("%s", rewind)
        return TickResult(values, error)

    def _decode(self, data: bytes, length: int) -> Tuple[List[Any], Optional[StreamError]]:
        size = self._record_size
        values: List[Any] = []
        error: Optional[StreamError] = None
        for start in range(0, length, size):
            try:
                values.append(self._codec.decode(data[start:start + size]))
            except StreamError as e:
                # The bytes are consumed either way; skip the record, keep the rest.
                if error is None:
                    error = DecodeError(f"Record at batch offset {start}: {e}")
                    error.__cause__ = e
                else:
                    logger.warning("Skipping undecodable record at batch offset %d: %s", start, e)
        return values, error

    def _read_failure(self, error: OSError) -> ReadFailure:
        failure = ReadFailure(f"Reading from descriptor failed: {error}")
        failure.__cause__ = error
        return failure

"""
Fixed-size record codecs.

A codec defines how many bytes make up one record and how such a window
maps to a value. The byte layout is a contract between the writer and the
reader: there is no header and no framing beyond the record size.

StructCodec layouts are plain ``struct`` format strings. Use an explicit
byte-order prefix (``<`` or ``>``) for a packed, platform-independent
layout. ``@`` (native) reproduces the C compiler's in-memory layout,
including alignment padding, and is only portable between identical
platforms. Example: ``"<?id"`` is bool, int32, double, packed little
endian, 13 bytes per record; ``"@?id"`` is the same struct with C padding,
16 bytes on x86-64.
"""

from __future__ import annotations

import dataclasses
import struct
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

from .errors import CodecError, DecodeError


class RecordCodec(ABC):
    """Maps a fixed-size byte window to a value and back."""

    @property
    @abstractmethod
    def record_size(self) -> int:
        """Bytes per record. Always > 0."""
        pass

    @abstractmethod
    def decode(self, raw: bytes) -> Any:
        """Decode exactly ``record_size`` bytes into a value."""
        pass

    @abstractmethod
    def encode(self, value: Any) -> bytes:
        """Encode a value into exactly ``record_size`` bytes."""
        pass


class StructCodec(RecordCodec):
    """RecordCodec backed by a ``struct`` format string.

    Args:
        fmt: struct format describing one record.
        factory: Called with the unpacked fields to build the value.
                 Defaults to returning the field tuple.
    """

    def __init__(self, fmt: str, factory: Optional[Callable[..., Any]] = None):
        try:
            self._struct = struct.Struct(fmt)
        except struct.error as e:
            raise CodecError(f"Invalid record format {fmt!r}: {e}") from e
        if self._struct.size <= 0:
            raise CodecError(f"Record format {fmt!r} has size 0; records must be at least one byte")
        self._factory = factory

    @property
    def format(self) -> str:
        return self._struct.format

    @property
    def record_size(self) -> int:
        return self._struct.size

    def decode(self, raw: bytes) -> Any:
        if len(raw) != self._struct.size:
            raise CodecError(f"Expected {self._struct.size} bytes per record, got {len(raw)}")
        fields = self._struct.unpack(raw)
        if self._factory is None:
            return fields
        try:
            return self._factory(*fields)
        except Exception as e:
            raise DecodeError(f"Record factory rejected {fields!r}: {e}") from e

    def encode(self, value: Any) -> bytes:
        if dataclasses.is_dataclass(value) and not isinstance(value, type):
            fields = dataclasses.astuple(value)
        elif isinstance(value, tuple):
            fields = value
        else:
            fields = (value,)
        try:
            return self._struct.pack(*fields)
        except struct.error as e:
            raise CodecError(f"Cannot encode {value!r} as {self._struct.format!r}: {e}") from e

    def __repr__(self) -> str:
        return f"StructCodec({self._struct.format!r}, record_size={self._struct.size})"

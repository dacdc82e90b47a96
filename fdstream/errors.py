"""
Exception hierarchy for fdstream.

Everything raised or reported by the package derives from StreamError so
callers can catch the whole family in one place. OS-level causes are kept
as ``__cause__``.
"""

from __future__ import annotations


class StreamError(Exception):
    """Base class for all fdstream errors."""


class CodecError(StreamError, ValueError):
    """Raised when a record codec is misconfigured or fed a bad window."""


class DecodeError(StreamError):
    """A record window could not be turned into a value."""


class DescriptorAcquisitionError(StreamError, OSError):
    """Opening the descriptor for a path failed."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"Cannot open {path} for reading: {reason}")
        self.path = path


class ReadFailure(StreamError):
    """read(2) on the descriptor failed during a readiness tick."""


class RewindFailure(StreamError):
    """Seeking back over a partial record failed; ``dropped`` bytes are lost."""

    def __init__(self, message: str, dropped: int):
        super().__init__(message)
        self.dropped = dropped


class StreamStateError(StreamError, RuntimeError):
    """An operation is not valid in the stream's current state."""


class ReentrantTransitionError(StreamStateError):
    """A lifecycle transition was requested from inside another transition."""


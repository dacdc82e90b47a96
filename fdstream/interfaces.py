"""
Interfaces for fdstream.

Abstract base classes for the pluggable pieces of a stream. The framing
and lifecycle code only talk to a DescriptorInterface, so unit tests can
swap in an in-memory descriptor without touching the OS.
"""

from abc import ABC, abstractmethod
from enum import Enum


class StreamState(Enum):
    """Lifecycle states of a FileStream."""
    CLOSED = "closed"
    OPEN = "open"
    STREAMING = "streaming"


class DescriptorInterface(ABC):
    """
    Abstract interface for a readable descriptor.

    Implementations:
    - RealDescriptor: Wraps an OS file descriptor
    - MockDescriptor: In-memory byte source for testing
    """

    @abstractmethod
    def fileno(self) -> int:
        """Return the OS-level descriptor number used for readiness registration."""
        pass

    @abstractmethod
    def read(self, size: int) -> bytes:
        """Issue one read of up to ``size`` bytes. Returns b'' at EOF."""
        pass

    @abstractmethod
    def seek_relative(self, offset: int) -> None:
        """Move the read offset by ``offset`` bytes. Raises OSError if not seekable."""
        pass

    @abstractmethod
    def bytes_available(self) -> int:
        """Return how many bytes can currently be read without blocking."""
        pass

    @abstractmethod
    def is_regular_file(self) -> bool:
        """True if the descriptor refers to a regular file."""
        pass

    @abstractmethod
    def close(self) -> None:
        """Close the descriptor."""
        pass

    @property
    @abstractmethod
    def closed(self) -> bool:
        """True once close() has been called."""
        pass

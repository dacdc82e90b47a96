"""
fdstream - fixed-size record streaming from readable file descriptors

Turns the bytes arriving on a pipe, device or growing file into decoded
records, delivered to callbacks (FileStream) or through ``async for``
(AsyncFileStream).
"""

from .interfaces import DescriptorInterface, StreamState
from .errors import (
    StreamError,
    CodecError,
    DecodeError,
    DescriptorAcquisitionError,
    ReadFailure,
    RewindFailure,
    StreamStateError,
    ReentrantTransitionError,
)
from .codec import RecordCodec, StructCodec
from .config import WatcherConfig
from .failure import FailureBehavior, FailureKind
from .framing import FrameAssembler, TickResult
from .implementations import RealDescriptor
from .watcher import ReadinessWatcher
from .stream import FileStream
from .async_stream import AsyncFileStream
from .writer import RecordWriter

__version__ = "0.1.0"

__all__ = [
    "DescriptorInterface",
    "StreamState",
    "StreamError",
    "CodecError",
    "DecodeError",
    "DescriptorAcquisitionError",
    "ReadFailure",
    "RewindFailure",
    "StreamStateError",
    "ReentrantTransitionError",
    "RecordCodec",
    "StructCodec",
    "WatcherConfig",
    "FailureBehavior",
    "FailureKind",
    "FrameAssembler",
    "TickResult",
    "RealDescriptor",
    "ReadinessWatcher",
    "FileStream",
    "AsyncFileStream",
    "RecordWriter",
]

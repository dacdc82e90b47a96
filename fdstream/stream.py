"""
FileStream: lifecycle state machine and callback delivery.

A FileStream moves between three states::

    CLOSED --open()--> OPEN --begin_streaming()--> STREAMING
       ^                 ^ <----end_streaming()------ |
       +----close()------+----------close()-----------+

Every transition is a no-op when the stream is already in (or cannot
reach) the requested state. Transitions are serialized by one lock. State
callbacks run while the lock is held; calling back into the stream from
one of them raises ReentrantTransitionError instead of deadlocking.

Records are delivered on the watcher's worker thread to every callback
registered with add_callback(), in registration order, as an immutable
tuple. Registries are copy-on-write tuples, so delivery never waits for a
transition in progress.

Path mode (``FileStream(codec, path)``) opens the file read-only on
open()/begin_streaming() and closes it on close(). Raw mode
(``FileStream(codec, descriptor=fd)``) reads a caller-owned descriptor and
never closes it.
"""

from __future__ import annotations

import logging
import os
import threading
import weakref
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Optional, Tuple, Union

from .codec import RecordCodec
from .config import DEFAULT_CONFIG, WatcherConfig
from .errors import DescriptorAcquisitionError, ReentrantTransitionError, StreamError, StreamStateError
from .failure import FailureBehavior
from .framing import FrameAssembler
from .implementations import RealDescriptor
from .interfaces import DescriptorInterface, StreamState
from .watcher import ReadinessWatcher

logger = logging.getLogger(__name__)

StateCallback = Callable[["FileStream", DescriptorInterface], None]
RecordCallback = Callable[["FileStream", Tuple[Any, ...]], None]
TerminationCallback = Callable[["FileStream", Optional[BaseException]], None]


class FileStream:
    """Streams fixed-size records from a descriptor to registered callbacks.

    Args:
        codec: Record layout and decoder.
        path: File to open read-only (path mode).
        descriptor: Caller-owned descriptor (raw mode): an int, an object
                    with fileno(), or a DescriptorInterface.
        failure_behavior: Policy for read/rewind/decode errors. Defaults to
                          logging them and continuing.
        config: Watcher tuning.
    """

    def __init__(
        self,
        codec: RecordCodec,
        path: Union[str, os.PathLike, None] = None,
        *,
        descriptor: Any = None,
        failure_behavior: Optional[FailureBehavior] = None,
        config: Optional[WatcherConfig] = None,
    ):
        if (path is None) == (descriptor is None):
            raise ValueError("FileStream needs exactly one of path or descriptor")
        self._codec = codec
        self._path = os.fspath(path) if path is not None else None
        self._raw_source = descriptor
        self._failure_behavior = failure_behavior or FailureBehavior.suppress()
        self._config = config or DEFAULT_CONFIG

        self._lock = threading.Lock()
        self._lock_owner: Optional[int] = None
        self._state = StreamState.CLOSED
        self._descriptor: Optional[DescriptorInterface] = None
        self._watcher: Optional[ReadinessWatcher] = None
        self._last_watcher: Optional[ReadinessWatcher] = None
        self._generation = 0
        self._failure: Optional[BaseException] = None

        self._registry_lock = threading.Lock()
        self._open_callbacks: Tuple[StateCallback, ...] = ()
        self._close_callbacks: Tuple[StateCallback, ...] = ()
        self._callbacks: Tuple[RecordCallback, ...] = ()
        self._termination_callbacks: Tuple[TerminationCallback, ...] = ()

    @classmethod
    def from_path(cls, codec: RecordCodec, path: Union[str, os.PathLike], **kwargs) -> "FileStream":
        return cls(codec, path, **kwargs)

    @classmethod
    def from_descriptor(cls, codec: RecordCodec, descriptor: Any, **kwargs) -> "FileStream":
        return cls(codec, descriptor=descriptor, **kwargs)

    # -- accessors ----------------------------------------------------------

    @property
    def state(self) -> StreamState:
        if self._lock_owner == threading.get_ident():
            return self._state
        with self._lock:
            return self._state

    @property
    def path(self) -> Optional[str]:
        return self._path

    @property
    def owns_descriptor(self) -> bool:
        """True in path mode, where the stream opens and closes the descriptor."""
        return self._path is not None

    @property
    def descriptor(self) -> Optional[DescriptorInterface]:
        """The open descriptor, or None while CLOSED."""
        return self._descriptor

    @property
    def codec(self) -> RecordCodec:
        return self._codec

    @property
    def watcher(self) -> Optional[ReadinessWatcher]:
        """The active watcher while STREAMING."""
        return self._watcher

    @property
    def failure(self) -> Optional[BaseException]:
        """The error that ended the most recent streaming run, if any."""
        return self._failure

    # -- registries ---------------------------------------------------------

    def add_open_callback(self, callback: StateCallback) -> None:
        """Call ``callback(stream, descriptor)`` after the file is opened (path mode)."""
        self._require_path_mode("open callbacks")
        with self._registry_lock:
            self._open_callbacks += (callback,)

    def add_close_callback(self, callback: StateCallback) -> None:
        """Call ``callback(stream, descriptor)`` just before the file is closed (path mode)."""
        self._require_path_mode("close callbacks")
        with self._registry_lock:
            self._close_callbacks += (callback,)

    def add_callback(self, callback: RecordCallback) -> None:
        """Call ``callback(stream, records)`` for every decoded batch."""
        with self._registry_lock:
            self._callbacks += (callback,)

    def add_termination_callback(self, callback: TerminationCallback) -> None:
        """Call ``callback(stream, error)`` whenever streaming stops.

        ``error`` is None when streaming was ended by end_streaming() or
        close(), and the terminating exception when the failure policy
        stopped it.
        """
        with self._registry_lock:
            self._termination_callbacks += (callback,)

    def _require_path_mode(self, what: str) -> None:
        if not self.owns_descriptor:
            raise StreamStateError(f"{what} are only available for streams opened from a path")

    # -- transitions --------------------------------------------------------

    @contextmanager
    def _guard(self) -> Iterator[None]:
        me = threading.get_ident()
        if self._lock_owner == me:
            raise ReentrantTransitionError(f"{self!r}: lifecycle transition requested from inside a state callback")
        with self._lock:
            self._lock_owner = me
            try:
                yield
            finally:
                self._lock_owner = None

    def open(self) -> None:
        """CLOSED -> OPEN. No-op when already open or streaming."""
        with self._guard():
            if self._state is not StreamState.CLOSED:
                return
            self._descriptor = self._open_locked()
            self._state = StreamState.OPEN
            logger.debug("%r opened", self)

    def begin_streaming(self) -> None:
        """Start delivering records, opening first if needed. No-op while streaming."""
        with self._guard():
            if self._state is StreamState.STREAMING:
                return
            opened_here = self._state is StreamState.CLOSED
            if opened_here:
                self._descriptor = self._open_locked()
                self._state = StreamState.OPEN
            try:
                self._start_watcher_locked()
            except OSError:
                if opened_here:
                    self._discard_descriptor_locked()
                raise
            logger.debug("%r streaming", self)

    def end_streaming(self) -> None:
        """STREAMING -> OPEN. Pending partial-record bytes are forgotten."""
        with self._guard():
            if self._state is not StreamState.STREAMING:
                return
            retired = self._stop_watcher_locked()
        self._finish_streaming(retired, None)

    def close(self) -> None:
        """Stop streaming if needed, then close. No-op when already closed.

        Close callbacks see the live descriptor. In path mode the
        descriptor is closed even if a callback raises; the callback's
        error is raised afterwards.
        """
        while True:
            with self._guard():
                if self._state is StreamState.CLOSED:
                    return
                if self._state is StreamState.OPEN:
                    self._close_locked()
                    return
                retired = self._stop_watcher_locked()
            self._finish_streaming(retired, None)

    # -- transition helpers (lock held) ---------------------------------------

    def _acquire_descriptor(self) -> DescriptorInterface:
        if self._path is not None:
            return RealDescriptor.open(self._path)
        source = self._raw_source
        if isinstance(source, DescriptorInterface):
            return source
        try:
            return RealDescriptor(source)
        except OSError as e:
            raise DescriptorAcquisitionError(repr(source), e.strerror or str(e)) from e

    def _open_locked(self) -> DescriptorInterface:
        descriptor = self._acquire_descriptor()
        try:
            for callback in self._open_callbacks:
                callback(self, descriptor)
        except BaseException:
            if self.owns_descriptor:
                try:
                    descriptor.close()
                except OSError as close_error:
                    logger.warning("Open callback for %s failed and closing the descriptor failed too: %s",
                                   self._path, close_error)
            raise
        return descriptor

    def _discard_descriptor_locked(self) -> None:
        descriptor, self._descriptor = self._descriptor, None
        self._state = StreamState.CLOSED
        if descriptor is not None and self.owns_descriptor:
            try:
                descriptor.close()
            except OSError as e:
                logger.warning("Closing %r failed: %s", descriptor, e)

    def _start_watcher_locked(self) -> None:
        self._generation += 1
        ref = weakref.ref(self)
        generation = self._generation

        def on_records(values):
            stream = ref()
            if stream is not None:
                stream._deliver(values)

        def on_failure(error):
            stream = ref()
            if stream is not None:
                stream._handle_failure(generation, error)

        watcher = ReadinessWatcher.start(
            self._descriptor,
            FrameAssembler(self._descriptor, self._codec),
            on_records,
            on_failure,
            config=self._config,
            after=self._last_watcher,
        )
        self._watcher = self._last_watcher = watcher
        self._failure = None
        self._state = StreamState.STREAMING

    def _stop_watcher_locked(self) -> ReadinessWatcher:
        watcher, self._watcher = self._watcher, None
        watcher.cancel()
        self._state = StreamState.OPEN
        logger.debug("%r stopped streaming", self)
        return watcher

    def _close_locked(self) -> None:
        descriptor, self._descriptor = self._descriptor, None
        self._state = StreamState.CLOSED
        try:
            for callback in self._close_callbacks:
                callback(self, descriptor)
        finally:
            if self.owns_descriptor:
                try:
                    descriptor.close()
                except OSError as e:
                    logger.warning("Closing %r failed: %s", descriptor, e)
            logger.debug("%r closed", self)

    def _finish_streaming(self, retired: ReadinessWatcher, error: Optional[BaseException]) -> None:
        if not retired.is_worker_thread() and not retired.join(self._config.join_timeout):
            logger.warning("Worker for %r still running %.1fs after cancel", self, self._config.join_timeout)
        for callback in self._termination_callbacks:
            try:
                callback(self, error)
            except Exception:
                logger.exception("Termination callback of %r raised", self)

    # -- worker thread ------------------------------------------------------

    def _deliver(self, values) -> None:
        batch = tuple(values)
        for callback in self._callbacks:
            try:
                callback(self, batch)
            except Exception:
                logger.exception("Record callback of %r raised", self)

    def _handle_failure(self, generation: int, error: StreamError) -> None:
        terminal = self._failure_behavior.resolve(self, error)
        if terminal is None:
            return
        with self._guard():
            if self._state is not StreamState.STREAMING or self._generation != generation:
                return
            self._failure = terminal
            retired = self._stop_watcher_locked()
        logger.error("%r stopped streaming after failure: %s", self, terminal)
        self._finish_streaming(retired, terminal)

    # -- housekeeping -------------------------------------------------------

    def __enter__(self) -> "FileStream":
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

    def __del__(self):
        state = getattr(self, "_state", StreamState.CLOSED)
        if state is StreamState.CLOSED:
            return
        logger.warning("%r was discarded while %s without close(); releasing it", self, state.value)
        watcher = self._watcher
        if watcher is not None:
            watcher.cancel()
            if not watcher.is_worker_thread():
                watcher.join(self._config.join_timeout)
        if self.owns_descriptor and self._descriptor is not None:
            try:
                self._descriptor.close()
            except OSError as e:
                logger.warning("Closing descriptor of discarded stream failed: %s", e)

    def __repr__(self) -> str:
        target = self._path if self._path is not None else f"descriptor={self._raw_source!r}"
        return f"FileStream({target}, {self._state.value})"

"""
Pull-based delivery: ``async for record in AsyncFileStream(...)``.

The watcher's worker thread pushes decoded records onto an asyncio.Queue
owned by the consumer's event loop (``loop.call_soon_threadsafe``). With
``maxsize > 0`` the worker must take a slot before each record and blocks
while the consumer is ``maxsize`` records behind; the consumer frees a slot
with every record it takes.

The sequence ends when:
- the failure policy gives up: queued records are delivered first, then
  the error is raised from ``__anext__``
- the consumer stops: cancellation of a pending ``__anext__``, aclose(),
  leaving ``async with``, or leaving an ``async for`` loop early; the
  watcher is cancelled and the stream closed
- the underlying FileStream is stopped or closed by someone else

One consumer per instance; a finished sequence cannot be restarted.
"""

from __future__ import annotations

import asyncio
import logging
import os
import threading
from typing import Any, AsyncIterator, List, Optional, Union

from .codec import RecordCodec
from .config import DEFAULT_CONFIG, WatcherConfig
from .failure import FailureBehavior
from .stream import FileStream
from .watcher import ReadinessWatcher

logger = logging.getLogger(__name__)


class _End:
    __slots__ = ("error",)

    def __init__(self, error: Optional[BaseException]):
        self.error = error


class AsyncFileStream:
    """Async iterator over the records of a descriptor or path.

    Args:
        codec: Record layout and decoder.
        path: File to open read-only (path mode).
        descriptor: Caller-owned descriptor (raw mode).
        failure_behavior: Defaults to propagate: the first error ends the
                          sequence.
        maxsize: Records buffered ahead of the consumer; 0 means unbounded.
        config: Watcher tuning.
    """

    def __init__(
        self,
        codec: RecordCodec,
        path: Union[str, os.PathLike, None] = None,
        *,
        descriptor: Any = None,
        failure_behavior: Optional[FailureBehavior] = None,
        maxsize: int = 0,
        config: Optional[WatcherConfig] = None,
    ):
        if maxsize < 0:
            raise ValueError(f"maxsize must be >= 0, got {maxsize}")
        self._config = config or DEFAULT_CONFIG
        self._stream = FileStream(
            codec,
            path,
            descriptor=descriptor,
            failure_behavior=failure_behavior or FailureBehavior.propagate(),
            config=self._config,
        )
        self._stream.add_callback(self._on_records)
        self._stream.add_termination_callback(self._on_termination)

        self._slots = threading.Semaphore(maxsize) if maxsize > 0 else None
        self._closing = threading.Event()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._queue: Optional[asyncio.Queue] = None
        self._started = False
        self._finished = False
        self._waiting = False

    @property
    def stream(self) -> FileStream:
        """The FileStream producing the records."""
        return self._stream

    @property
    def finished(self) -> bool:
        return self._finished

    # -- consumer side ------------------------------------------------------

    def __aiter__(self) -> AsyncIterator[Any]:
        return self._iterate()

    async def _iterate(self) -> AsyncIterator[Any]:
        # The event loop finalizes an abandoned async generator, so breaking
        # out of ``async for`` still reaches the finally block.
        try:
            while True:
                try:
                    value = await self.__anext__()
                except StopAsyncIteration:
                    return
                yield value
        finally:
            self._shutdown()

    async def __anext__(self) -> Any:
        if self._finished:
            raise StopAsyncIteration
        if self._waiting:
            raise RuntimeError("AsyncFileStream supports a single consumer; another __anext__ is pending")
        self._waiting = True
        try:
            if not self._started:
                self._start()
            try:
                item = await self._queue.get()
            except asyncio.CancelledError:
                logger.debug("Consumer of %r cancelled", self._stream)
                self._shutdown()
                raise
        finally:
            self._waiting = False

        if isinstance(item, _End):
            self._shutdown()
            if item.error is not None:
                raise item.error
            raise StopAsyncIteration
        if self._slots is not None:
            self._slots.release()
        return item

    def _start(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._queue = asyncio.Queue()
        self._started = True
        try:
            self._stream.begin_streaming()
        except BaseException:
            self._finished = True
            self._closing.set()
            raise

    async def aclose(self) -> None:
        """Stop the watcher and close the stream."""
        self._shutdown()

    async def __aenter__(self) -> "AsyncFileStream":
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.aclose()
        return False

    def _shutdown(self) -> None:
        self._finished = True
        if self._closing.is_set():
            return
        self._closing.set()
        self._stream.close()

    # -- producer side (worker thread) --------------------------------------

    def _on_records(self, stream: FileStream, batch) -> None:
        if self._slots is None:
            self._post(list(batch))
            return
        watcher = ReadinessWatcher.current()
        for value in batch:
            if not self._acquire_slot(watcher):
                return
            if not self._post([value]):
                return

    def _on_termination(self, stream: FileStream, error: Optional[BaseException]) -> None:
        if self._closing.is_set():
            return
        self._post([_End(error)])

    def _acquire_slot(self, watcher: Optional[ReadinessWatcher]) -> bool:
        # Also give up once an outside end_streaming() or close() cancels the
        # worker; the stream is joining it.
        while not self._closing.is_set() and not (watcher is not None and watcher.cancelled):
            if self._slots.acquire(timeout=self._config.backpressure_poll):
                return True
        return False

    def _post(self, items: List[Any]) -> bool:
        if self._closing.is_set():
            return False
        try:
            self._loop.call_soon_threadsafe(self._enqueue, items)
        except RuntimeError:
            # Event loop closed under us; nobody is left to consume.
            logger.warning("Event loop of %r is closed; stopping the watcher", self._stream)
            self._closing.set()
            self._finished = True
            self._stream.end_streaming()
            return False
        return True

    def _enqueue(self, items: List[Any]) -> None:
        for item in items:
            self._queue.put_nowait(item)

    def __repr__(self) -> str:
        return f"AsyncFileStream({self._stream!r})"

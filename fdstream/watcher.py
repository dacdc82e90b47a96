"""
Readiness watcher for fdstream.

Each watcher owns one daemon worker thread. The thread sleeps in the OS
readiness mechanism (epoll, kqueue, or a selector) until the descriptor
has data, then runs one FrameAssembler tick and hands the decoded records
to ``on_records`` and any error to ``on_failure``. Ticks of one watcher
never overlap, so the assembler needs no locking.

Readiness mechanisms, in order of preference:
- epoll, edge-triggered (Linux)
- kqueue with EV_CLEAR (BSD, macOS)
- selectors.DefaultSelector, level-triggered; a tick that decodes nothing
  backs off for ``idle_interval`` so a partial record left in a pipe does
  not spin the worker
- timed checks every ``idle_interval`` for descriptors the OS will not
  watch usefully (regular files, descriptors without an OS handle)

cancel() wakes the worker through a self-pipe. A tick already running
finishes; no new tick starts afterwards.
"""

from __future__ import annotations

import logging
import os
import select
import selectors
import threading
from typing import Any, Callable, List, Optional

from .config import DEFAULT_CONFIG, WatcherConfig
from .errors import ReadFailure, StreamError
from .framing import FrameAssembler
from .interfaces import DescriptorInterface

logger = logging.getLogger(__name__)

_worker = threading.local()

RecordsCallback = Callable[[List[Any]], None]
FailureCallback = Callable[[StreamError], None]


# ---------------------------------------------------------------------------
# Pollers
# ---------------------------------------------------------------------------

class _Poller:
    """Waits until the watched descriptor or the wake pipe becomes readable."""

    edge_triggered = False
    timed = False

    def wait(self, timeout: Optional[float]) -> bool:
        """Block until readiness. Returns True if the descriptor was reported."""
        raise NotImplementedError

    def close(self) -> None:
        raise NotImplementedError


class _EpollPoller(_Poller):
    edge_triggered = True

    def __init__(self, fd: int, wake_fd: int):
        self._fd = fd
        self._epoll = select.epoll()
        try:
            self._epoll.register(wake_fd, select.EPOLLIN)
            self._epoll.register(fd, select.EPOLLIN | select.EPOLLET)
        except OSError:
            self._epoll.close()
            raise

    def wait(self, timeout: Optional[float]) -> bool:
        events = self._epoll.poll(-1 if timeout is None else timeout)
        return any(fd == self._fd for fd, _ in events)

    def close(self) -> None:
        self._epoll.close()


class _KqueuePoller(_Poller):
    edge_triggered = True

    def __init__(self, fd: int, wake_fd: int):
        self._fd = fd
        self._kq = select.kqueue()
        changes = [
            select.kevent(wake_fd, filter=select.KQ_FILTER_READ, flags=select.KQ_EV_ADD),
            select.kevent(fd, filter=select.KQ_FILTER_READ, flags=select.KQ_EV_ADD | select.KQ_EV_CLEAR),
        ]
        try:
            self._kq.control(changes, 0, 0)
        except OSError:
            self._kq.close()
            raise

    def wait(self, timeout: Optional[float]) -> bool:
        events = self._kq.control(None, 2, timeout)
        return any(ev.ident == self._fd for ev in events)

    def close(self) -> None:
        self._kq.close()


class _SelectorPoller(_Poller):
    def __init__(self, fd: int, wake_fd: int):
        self._fd = fd
        self._selector = selectors.DefaultSelector()
        try:
            self._selector.register(wake_fd, selectors.EVENT_READ)
            self._selector.register(fd, selectors.EVENT_READ)
        except (OSError, ValueError):
            self._selector.close()
            raise

    def wait(self, timeout: Optional[float]) -> bool:
        events = self._selector.select(timeout)
        return any(key.fd == self._fd for key, _ in events)

    def close(self) -> None:
        self._selector.close()


class _TimedPoller(_Poller):
    timed = True

    def __init__(self, wake_fd: int):
        self._selector = selectors.DefaultSelector()
        self._selector.register(wake_fd, selectors.EVENT_READ)

    def wait(self, timeout: Optional[float]) -> bool:
        self._selector.select(timeout)
        return True

    def close(self) -> None:
        self._selector.close()


def _make_poller(descriptor: DescriptorInterface, wake_fd: int) -> _Poller:
    try:
        fd = descriptor.fileno()
    except (OSError, ValueError):
        return _TimedPoller(wake_fd)
    if descriptor.is_regular_file():
        # Regular files always poll readable; watch them by time instead.
        return _TimedPoller(wake_fd)

    candidates = []
    if hasattr(select, "epoll"):
        candidates.append(_EpollPoller)
    if hasattr(select, "kqueue"):
        candidates.append(_KqueuePoller)
    candidates.append(_SelectorPoller)

    for poller_cls in candidates:
        try:
            return poller_cls(fd, wake_fd)
        except (OSError, ValueError) as e:
            logger.debug("%s refused fd %d: %s", poller_cls.__name__, fd, e)
    return _TimedPoller(wake_fd)


# ---------------------------------------------------------------------------
# Watcher
# ---------------------------------------------------------------------------

class ReadinessWatcher:
    """Runs FrameAssembler ticks on a dedicated worker thread.

    Use ReadinessWatcher.start(); the returned instance is the handle used
    to cancel and join it.
    """

    def __init__(
        self,
        descriptor: DescriptorInterface,
        assembler: FrameAssembler,
        on_records: RecordsCallback,
        on_failure: FailureCallback,
        *,
        config: Optional[WatcherConfig] = None,
        after: Optional["ReadinessWatcher"] = None,
    ):
        self._descriptor = descriptor
        self._assembler = assembler
        self._on_records = on_records
        self._on_failure = on_failure
        self._config = config or DEFAULT_CONFIG
        self._after = after

        self._cancelled = threading.Event()
        self._wake_lock = threading.Lock()
        self._wake_r: Optional[int] = None
        self._wake_w: Optional[int] = None
        self._thread: Optional[threading.Thread] = None
        self._mechanism = "pending"

    @classmethod
    def start(
        cls,
        descriptor: DescriptorInterface,
        assembler: FrameAssembler,
        on_records: RecordsCallback,
        on_failure: FailureCallback,
        *,
        config: Optional[WatcherConfig] = None,
        after: Optional["ReadinessWatcher"] = None,
    ) -> "ReadinessWatcher":
        """Create a watcher and start its worker thread.

        Args:
            after: A previous (cancelled) watcher on the same descriptor.
                   The new worker waits for it to finish before reading.
        """
        watcher = cls(descriptor, assembler, on_records, on_failure, config=config, after=after)
        watcher._start()
        return watcher

    def _start(self) -> None:
        if self._thread is not None:
            raise RuntimeError("Watcher already started")
        self._wake_r, self._wake_w = os.pipe()
        os.set_blocking(self._wake_r, False)
        os.set_blocking(self._wake_w, False)
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name=f"{self._config.thread_name}-{id(self):x}",
        )
        self._thread.start()

    @property
    def assembler(self) -> FrameAssembler:
        return self._assembler

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def mechanism(self) -> str:
        """Name of the readiness mechanism in use ("epoll", "kqueue", "selector", "timed")."""
        return self._mechanism

    def is_worker_thread(self) -> bool:
        return self._thread is not None and threading.current_thread() is self._thread

    @staticmethod
    def current() -> Optional["ReadinessWatcher"]:
        """The watcher whose worker thread is calling, or None elsewhere."""
        return getattr(_worker, "watcher", None)

    def cancel(self) -> None:
        """Stop scheduling ticks. Does not wait for a running tick."""
        if self._cancelled.is_set():
            return
        self._cancelled.set()
        with self._wake_lock:
            if self._wake_w is not None:
                try:
                    os.write(self._wake_w, b"\x00")
                except BlockingIOError:
                    pass  # Pipe already full of wake-ups.

    def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the worker to exit. Returns False if it is still running.

        Joining from the worker thread itself returns False immediately.
        """
        if self._thread is None:
            return True
        if self.is_worker_thread():
            return False
        self._thread.join(timeout)
        return not self._thread.is_alive()

    # -- worker thread ----------------------------------------------------

    def _run(self) -> None:
        _worker.watcher = self
        try:
            if self._after is not None:
                self._after.join()
                self._after = None
            if self._cancelled.is_set():
                return
            poller = _make_poller(self._descriptor, self._wake_r)
            self._mechanism = _mechanism_name(poller)
            logger.info("Watching %r via %s", self._descriptor, self._mechanism)
            try:
                self._loop(poller)
            finally:
                poller.close()
        except Exception:
            logger.exception("Readiness watcher for %r stopped unexpectedly", self._descriptor)
        finally:
            with self._wake_lock:
                for fd in (self._wake_r, self._wake_w):
                    if fd is not None:
                        os.close(fd)
                self._wake_r = self._wake_w = None
            logger.info("Stopped watching %r", self._descriptor)

    def _loop(self, poller: _Poller) -> None:
        # Bytes written before registration produce no edge; look once up front.
        self._tick()
        idle = self._config.idle_interval
        while not self._cancelled.is_set():
            ready = poller.wait(idle if poller.timed else None)
            if self._cancelled.is_set():
                break
            if not ready:
                continue
            progressed = self._tick()
            if not progressed and not poller.edge_triggered and not poller.timed:
                self._cancelled.wait(idle)

    def _tick(self) -> bool:
        """Run one assembler tick. Returns True if any record was delivered."""
        try:
            available = self._descriptor.bytes_available()
        except OSError as e:
            failure = ReadFailure(f"Querying available bytes failed: {e}")
            failure.__cause__ = e
            self._report(failure)
            return False

        hint = max(available - self._assembler.pending_byte_count, 0)
        result = self._assembler.on_readiness_tick(hint)
        if result.values:
            logger.debug("Decoded %d records (%d bytes pending)", len(result.values), self._assembler.pending_byte_count)
            try:
                self._on_records(result.values)
            except Exception:
                logger.exception("Record handler raised; continuing")
        if result.error is not None:
            self._report(result.error)
        return bool(result.values)

    def _report(self, error: StreamError) -> None:
        try:
            self._on_failure(error)
        except Exception:
            logger.exception("Failure handler raised while handling %r", error)


def _mechanism_name(poller: _Poller) -> str:
    return {
        _EpollPoller: "epoll",
        _KqueuePoller: "kqueue",
        _SelectorPoller: "selector",
        _TimedPoller: "timed",
    }[type(poller)]

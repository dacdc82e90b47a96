"""Shared test values and helpers for fdstream tests."""

from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Any, Callable, List

from fdstream import StructCodec

# bool + int32 + double, packed little endian: 13 bytes per record.
SAMPLE_FORMAT = "<?id"
SAMPLE_SIZE = 13


@dataclass(frozen=True)
class Sample:
    flag: bool
    count: int
    value: float


SAMPLES = [
    Sample(False, 1, 4.3),
    Sample(True, 2, 3.2),
    Sample(False, 42, 10.25),
]


def make_codec() -> StructCodec:
    return StructCodec(SAMPLE_FORMAT, Sample)


def encode_all(samples) -> bytes:
    codec = make_codec()
    return b"".join(codec.encode(s) for s in samples)


class Collector:
    """Thread-safe sink for records delivered on a worker thread."""

    def __init__(self):
        self._cond = threading.Condition()
        self.values: List[Any] = []
        self.batches: List[tuple] = []
        self.errors: List[BaseException] = []

    def on_records(self, values) -> None:
        with self._cond:
            self.values.extend(values)
            self.batches.append(tuple(values))
            self._cond.notify_all()

    def on_batch(self, stream, batch) -> None:
        self.on_records(batch)

    def on_failure(self, error) -> None:
        with self._cond:
            self.errors.append(error)
            self._cond.notify_all()

    def wait_for(self, count: int, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.values) >= count, timeout)

    def wait_for_errors(self, count: int, timeout: float = 5.0) -> bool:
        with self._cond:
            return self._cond.wait_for(lambda: len(self.errors) >= count, timeout)


def wait_until(predicate: Callable[[], bool], timeout: float = 5.0, interval: float = 0.01) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(interval)
    return predicate()

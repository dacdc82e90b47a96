"""
Failure policies for read, rewind and decode errors raised while streaming.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Optional

from .errors import StreamError

logger = logging.getLogger(__name__)

FailureHandler = Callable[[Any, StreamError], None]


class FailureKind(Enum):
    PROPAGATE = "propagate"
    SUPPRESS = "suppress"
    CUSTOM = "custom"


@dataclass(frozen=True)
class FailureBehavior:
    """What to do with an error reported by the watcher.

    - propagate: stop delivery and surface the error to the consumer
    - suppress: log the error and keep streaming
    - custom: call ``handler(stream, error)``; returning keeps streaming,
      raising stops delivery with the raised exception
    """
    kind: FailureKind
    handler: Optional[FailureHandler] = None

    def __post_init__(self) -> None:
        if self.kind is FailureKind.CUSTOM and self.handler is None:
            raise ValueError("A custom failure behavior needs a handler")

    @classmethod
    def propagate(cls) -> "FailureBehavior":
        return cls(FailureKind.PROPAGATE)

    @classmethod
    def suppress(cls) -> "FailureBehavior":
        return cls(FailureKind.SUPPRESS)

    @classmethod
    def custom(cls, handler: FailureHandler) -> "FailureBehavior":
        return cls(FailureKind.CUSTOM, handler)

    def resolve(self, stream: Any, error: StreamError) -> Optional[BaseException]:
        """Apply the policy. Returns the exception that ends delivery, or None to continue."""
        if self.kind is FailureKind.PROPAGATE:
            return error
        if self.kind is FailureKind.SUPPRESS:
            logger.warning("Ignoring stream failure on %r: %s", stream, error)
            return None
        try:
            self.handler(stream, error)
        except Exception as e:
            return e
        return None

"""
Runtime configuration for readiness watchers.

Values come from keyword arguments or, via ``WatcherConfig.from_env()``,
from ``FDSTREAM_*`` environment variables.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Mapping, Optional

ENV_PREFIX = "FDSTREAM_"


@dataclass(frozen=True)
class WatcherConfig:
    """Tuning knobs for a ReadinessWatcher.

    Attributes:
        idle_interval: Seconds between readiness checks for descriptors the
                       OS cannot watch (regular files under epoll), and the
                       back-off after a tick that made no progress on a
                       level-triggered selector (default: 0.05)
        join_timeout: Seconds to wait for an in-flight tick when streaming
                      ends (default: 5.0)
        backpressure_poll: Seconds between cancellation checks while a
                           bounded consumer queue is full (default: 0.1)
        thread_name: Prefix for worker thread names
    """
    idle_interval: float = 0.05
    join_timeout: float = 5.0
    backpressure_poll: float = 0.1
    thread_name: str = "fdstream-worker"

    def __post_init__(self) -> None:
        for name in ("idle_interval", "join_timeout", "backpressure_poll"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive, got {getattr(self, name)!r}")

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "WatcherConfig":
        """Build a config, overriding defaults with FDSTREAM_* variables."""
        env = os.environ if environ is None else environ
        overrides = {}
        for name in ("idle_interval", "join_timeout", "backpressure_poll"):
            raw = env.get(ENV_PREFIX + name.upper())
            if raw is None or raw == "":
                continue
            try:
                overrides[name] = float(raw)
            except ValueError:
                raise ValueError(f"{ENV_PREFIX}{name.upper()} must be a number, got {raw!r}") from None
        thread_name = env.get(ENV_PREFIX + "THREAD_NAME")
        if thread_name:
            overrides["thread_name"] = thread_name
        return cls(**overrides)


DEFAULT_CONFIG = WatcherConfig()

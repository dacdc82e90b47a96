"""Tests for watcher configuration."""

import pytest

from fdstream import WatcherConfig
from fdstream.config import DEFAULT_CONFIG


def test_defaults():
    assert DEFAULT_CONFIG.idle_interval == 0.05
    assert DEFAULT_CONFIG.join_timeout == 5.0
    assert DEFAULT_CONFIG.thread_name == "fdstream-worker"


def test_from_env_overrides():
    config = WatcherConfig.from_env({
        "FDSTREAM_IDLE_INTERVAL": "0.2",
        "FDSTREAM_JOIN_TIMEOUT": "1",
        "FDSTREAM_THREAD_NAME": "reader",
    })
    assert config.idle_interval == 0.2
    assert config.join_timeout == 1.0
    assert config.backpressure_poll == DEFAULT_CONFIG.backpressure_poll
    assert config.thread_name == "reader"


def test_from_env_reads_process_environment(monkeypatch):
    monkeypatch.setenv("FDSTREAM_BACKPRESSURE_POLL", "0.5")
    assert WatcherConfig.from_env().backpressure_poll == 0.5


def test_from_env_ignores_empty_values():
    assert WatcherConfig.from_env({"FDSTREAM_IDLE_INTERVAL": ""}) == DEFAULT_CONFIG


def test_from_env_rejects_garbage():
    with pytest.raises(ValueError, match="FDSTREAM_JOIN_TIMEOUT"):
        WatcherConfig.from_env({"FDSTREAM_JOIN_TIMEOUT": "soon"})


def test_non_positive_values_rejected():
    with pytest.raises(ValueError):
        WatcherConfig(idle_interval=0)
    with pytest.raises(ValueError):
        WatcherConfig.from_env({"FDSTREAM_JOIN_TIMEOUT": "-1"})

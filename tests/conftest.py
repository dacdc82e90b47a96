"""Shared pytest configuration for fdstream tests."""

import os

import pytest

from fdstream import WatcherConfig

from helpers import make_codec


@pytest.fixture
def codec():
    return make_codec()


@pytest.fixture
def fast_config():
    """Short idle interval so timed readiness checks keep tests quick."""
    return WatcherConfig(idle_interval=0.01, join_timeout=2.0, backpressure_poll=0.02)


@pytest.fixture
def pipe():
    """(read_fd, write_fd) pair, closed after the test if still open."""
    read_fd, write_fd = os.pipe()
    yield read_fd, write_fd
    for fd in (read_fd, write_fd):
        try:
            os.close(fd)
        except OSError:
            pass

"""Tests for FileStream lifecycle and callback delivery."""

import gc
import logging
import os
import random
import threading

import pytest

from fdstream import (
    DescriptorAcquisitionError,
    FailureBehavior,
    FileStream,
    ReadFailure,
    RecordWriter,
    ReentrantTransitionError,
    StreamState,
    StreamStateError,
)
from fdstream.mocks import MockDescriptor

from helpers import SAMPLES, Collector, encode_all, make_codec, wait_until


@pytest.fixture
def record_file(tmp_path):
    path = tmp_path / "records.bin"
    path.write_bytes(b"")
    return path


class TestLifecycle:
    def test_starts_closed(self, record_file, codec):
        stream = FileStream(codec, record_file)
        assert stream.state is StreamState.CLOSED
        assert stream.descriptor is None
        assert stream.owns_descriptor

    def test_needs_exactly_one_source(self, codec):
        with pytest.raises(ValueError):
            FileStream(codec)
        with pytest.raises(ValueError):
            FileStream(codec, "/tmp/x", descriptor=3)

    def test_open_missing_path_then_retry(self, tmp_path, codec):
        path = tmp_path / "later.bin"
        stream = FileStream(codec, path)

        with pytest.raises(DescriptorAcquisitionError) as excinfo:
            stream.open()
        assert isinstance(excinfo.value, OSError)
        assert excinfo.value.path == str(path)
        assert stream.state is StreamState.CLOSED

        path.write_bytes(b"")
        stream.open()
        assert stream.state is StreamState.OPEN
        stream.close()

    def test_open_is_idempotent(self, record_file, codec):
        opened = []
        stream = FileStream(codec, record_file)
        stream.add_open_callback(lambda s, d: opened.append(d))

        stream.open()
        stream.open()

        assert len(opened) == 1
        assert opened[0] is stream.descriptor
        stream.close()

    def test_begin_streaming_opens_implicitly(self, record_file, codec, fast_config):
        stream = FileStream(codec, record_file, config=fast_config)
        stream.begin_streaming()
        try:
            assert stream.state is StreamState.STREAMING
            assert stream.descriptor is not None
            assert stream.watcher is not None
        finally:
            stream.close()
        assert stream.state is StreamState.CLOSED

    def test_begin_streaming_twice_is_noop(self, record_file, codec, fast_config):
        stream = FileStream(codec, record_file, config=fast_config)
        stream.begin_streaming()
        watcher = stream.watcher
        stream.begin_streaming()
        assert stream.watcher is watcher
        stream.close()

    def test_end_streaming_returns_to_open(self, record_file, codec, fast_config):
        stream = FileStream(codec, record_file, config=fast_config)
        stream.begin_streaming()
        watcher = stream.watcher

        stream.end_streaming()

        assert stream.state is StreamState.OPEN
        assert stream.watcher is None
        assert watcher.cancelled
        assert not watcher.is_running
        stream.end_streaming()
        assert stream.state is StreamState.OPEN
        stream.close()

    def test_end_streaming_when_closed_is_noop(self, record_file, codec):
        stream = FileStream(codec, record_file)
        stream.end_streaming()
        stream.close()
        assert stream.state is StreamState.CLOSED

    def test_close_from_streaming_closes_descriptor(self, record_file, codec, fast_config):
        closed = []
        stream = FileStream(codec, record_file, config=fast_config)
        stream.add_close_callback(lambda s, d: closed.append(d.closed))
        stream.begin_streaming()
        descriptor = stream.descriptor

        stream.close()

        assert closed == [False]
        assert descriptor.closed
        assert stream.state is StreamState.CLOSED

    def test_context_manager_closes(self, record_file, codec, fast_config):
        with FileStream(codec, record_file, config=fast_config) as stream:
            stream.begin_streaming()
            descriptor = stream.descriptor
        assert stream.state is StreamState.CLOSED
        assert descriptor.closed


class TestStateCallbacks:
    def test_failing_open_callback_closes_descriptor(self, record_file, codec):
        seen = []

        def reject(stream, descriptor):
            seen.append(descriptor)
            raise RuntimeError("not today")

        stream = FileStream(codec, record_file)
        stream.add_open_callback(reject)

        with pytest.raises(RuntimeError, match="not today"):
            stream.open()

        assert stream.state is StreamState.CLOSED
        assert seen[0].closed

    def test_failing_open_callback_on_begin_streaming(self, record_file, codec):
        stream = FileStream(codec, record_file)
        stream.add_open_callback(lambda s, d: 1 / 0)
        with pytest.raises(ZeroDivisionError):
            stream.begin_streaming()
        assert stream.state is StreamState.CLOSED
        assert stream.watcher is None

    def test_failing_close_callback_still_closes(self, record_file, codec):
        stream = FileStream(codec, record_file)

        def boom(s, d):
            raise RuntimeError("close hook failed")

        stream.add_close_callback(boom)
        stream.open()
        descriptor = stream.descriptor

        with pytest.raises(RuntimeError, match="close hook failed"):
            stream.close()

        assert descriptor.closed
        assert stream.state is StreamState.CLOSED

    def test_close_callback_error_survives_failed_descriptor_close(self, record_file, codec, caplog):
        stream = FileStream(codec, record_file)

        def boom(s, d):
            os.close(d.fileno())
            raise RuntimeError("close hook failed")

        stream.add_close_callback(boom)
        stream.open()
        descriptor = stream.descriptor

        with caplog.at_level(logging.WARNING, logger="fdstream.stream"):
            with pytest.raises(RuntimeError, match="close hook failed"):
                stream.close()

        assert descriptor.closed
        assert stream.state is StreamState.CLOSED
        assert "Closing" in caplog.text

    def test_reentrant_transition_is_rejected(self, record_file, codec):
        stream = FileStream(codec, record_file)
        stream.add_open_callback(lambda s, d: s.close())

        with pytest.raises(ReentrantTransitionError):
            stream.open()
        assert stream.state is StreamState.CLOSED

    def test_state_readable_from_callback(self, record_file, codec):
        states = []
        stream = FileStream(codec, record_file)
        stream.add_close_callback(lambda s, d: states.append(s.state))
        stream.open()
        stream.close()
        assert states == [StreamState.CLOSED]

    def test_state_callbacks_need_path_mode(self, pipe, codec):
        read_fd, _ = pipe
        stream = FileStream(codec, descriptor=read_fd)
        with pytest.raises(StreamStateError):
            stream.add_open_callback(lambda s, d: None)
        with pytest.raises(StreamStateError):
            stream.add_close_callback(lambda s, d: None)


class TestDelivery:
    def test_scenario_split_writes_from_file(self, record_file, codec, fast_config):
        payload = encode_all(SAMPLES)
        collector = Collector()
        stream = FileStream(codec, record_file, config=fast_config)
        stream.add_callback(collector.on_batch)
        stream.begin_streaming()
        try:
            with RecordWriter(record_file, codec) as writer:
                writer.write_raw(payload[:13])
                assert collector.wait_for(1)
                writer.write_raw(payload[13:18])
                writer.write_raw(payload[18:])
                assert collector.wait_for(3)
        finally:
            stream.close()
        assert collector.values == SAMPLES

    def test_callbacks_in_registration_order(self, pipe, codec, fast_config):
        read_fd, write_fd = pipe
        calls = []
        done = threading.Event()

        def first(stream, batch):
            calls.append(("first", batch))

        def second(stream, batch):
            calls.append(("second", batch))
            done.set()

        stream = FileStream(codec, descriptor=read_fd, config=fast_config)
        stream.add_callback(first)
        stream.add_callback(second)
        stream.begin_streaming()
        try:
            os.write(write_fd, encode_all(SAMPLES))
            assert done.wait(5.0)
        finally:
            stream.close()

        assert [name for name, _ in calls[:2]] == ["first", "second"]
        assert calls[0][1] is calls[1][1]
        assert isinstance(calls[0][1], tuple)

    def test_raw_mode_leaves_descriptor_open(self, pipe, codec, fast_config):
        read_fd, write_fd = pipe
        collector = Collector()
        stream = FileStream.from_descriptor(codec, read_fd, config=fast_config)
        stream.add_callback(collector.on_batch)
        stream.begin_streaming()
        os.write(write_fd, encode_all(SAMPLES))
        assert collector.wait_for(3)
        stream.close()

        os.fstat(read_fd)  # still open
        assert not stream.owns_descriptor

    def test_restart_starts_with_empty_assembler(self, codec, fast_config):
        payload = encode_all(SAMPLES[:1])
        descriptor = MockDescriptor(payload[:5])
        collector = Collector()
        stream = FileStream(codec, descriptor=descriptor, config=fast_config)
        stream.add_callback(collector.on_batch)

        stream.begin_streaming()
        first_assembler = stream.watcher.assembler
        assert wait_until(lambda: first_assembler.pending_byte_count == 5)
        stream.end_streaming()

        stream.begin_streaming()
        second_assembler = stream.watcher.assembler
        assert second_assembler is not first_assembler
        descriptor.feed(payload[5:])
        assert collector.wait_for(1)
        stream.close()

        assert collector.values == SAMPLES[:1]
        assert first_assembler.pending_byte_count == 5

    def test_raising_callback_does_not_block_others(self, pipe, codec, fast_config, caplog):
        read_fd, write_fd = pipe
        collector = Collector()
        stream = FileStream(codec, descriptor=read_fd, config=fast_config)
        stream.add_callback(lambda s, b: 1 / 0)
        stream.add_callback(collector.on_batch)
        stream.begin_streaming()
        try:
            os.write(write_fd, encode_all(SAMPLES))
            assert collector.wait_for(3)
        finally:
            stream.close()
        assert "Record callback" in caplog.text


class TestFailureBehavior:
    def _failing_stream(self, codec, config, behavior):
        descriptor = MockDescriptor()
        descriptor.fail_next_read()
        descriptor.feed(encode_all(SAMPLES[:1]))
        stream = FileStream(codec, descriptor=descriptor, failure_behavior=behavior, config=config)
        return stream, descriptor

    def test_suppress_logs_and_continues(self, codec, fast_config, caplog):
        stream, _ = self._failing_stream(codec, fast_config, FailureBehavior.suppress())
        collector = Collector()
        stream.add_callback(collector.on_batch)
        stream.begin_streaming()
        try:
            assert collector.wait_for(1)
            assert stream.state is StreamState.STREAMING
        finally:
            stream.close()
        assert "Ignoring stream failure" in caplog.text
        assert stream.failure is None

    def test_propagate_ends_streaming(self, codec, fast_config):
        stream, _ = self._failing_stream(codec, fast_config, FailureBehavior.propagate())
        ended = []
        done = threading.Event()

        def on_end(s, error):
            ended.append(error)
            done.set()

        stream.add_termination_callback(on_end)
        stream.begin_streaming()

        assert done.wait(5.0)
        assert wait_until(lambda: stream.state is StreamState.OPEN)
        assert isinstance(ended[0], ReadFailure)
        assert stream.failure is ended[0]
        stream.close()
        assert ended[1:] == []

    def test_custom_handler_decides(self, codec, fast_config):
        seen = []

        def handler(stream, error):
            seen.append(error)
            raise RuntimeError("give up")

        stream, _ = self._failing_stream(codec, fast_config, FailureBehavior.custom(handler))
        stream.begin_streaming()

        assert wait_until(lambda: stream.state is StreamState.OPEN)
        assert isinstance(seen[0], ReadFailure)
        assert isinstance(stream.failure, RuntimeError)
        stream.close()

    def test_custom_handler_can_continue(self, codec, fast_config):
        seen = []
        stream, _ = self._failing_stream(codec, fast_config, FailureBehavior.custom(lambda s, e: seen.append(e)))
        collector = Collector()
        stream.add_callback(collector.on_batch)
        stream.begin_streaming()
        try:
            assert collector.wait_for(1)
            assert len(seen) == 1
            assert stream.state is StreamState.STREAMING
        finally:
            stream.close()


class TestConcurrencyAndCleanup:
    def test_concurrent_transitions_stay_consistent(self, record_file, codec, fast_config):
        stream = FileStream(codec, record_file, config=fast_config)
        errors = []

        def worker(seed):
            rng = random.Random(seed)
            ops = [stream.open, stream.begin_streaming, stream.end_streaming, stream.close]
            try:
                for _ in range(40):
                    rng.choice(ops)()
                    assert stream.state in set(StreamState)
            except Exception as e:  # collected for the assertion below
                errors.append(e)

        threads = [threading.Thread(target=worker, args=(i,)) for i in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join(30)

        stream.close()
        assert errors == []
        assert stream.state is StreamState.CLOSED
        assert stream.descriptor is None

    def test_discarded_stream_warns_and_cancels(self, record_file, codec, fast_config, caplog):
        stream = FileStream(codec, record_file, config=fast_config)
        stream.begin_streaming()
        watcher = stream.watcher
        descriptor = stream.descriptor

        del stream
        gc.collect()

        assert "discarded while streaming" in caplog.text
        assert watcher.cancelled
        assert wait_until(lambda: not watcher.is_running)
        assert descriptor.closed

    def test_callback_can_close_stream_from_worker(self, pipe, codec, fast_config):
        read_fd, write_fd = pipe
        stream = FileStream(codec, descriptor=read_fd, config=fast_config)
        stream.add_callback(lambda s, batch: s.close())
        stream.begin_streaming()
        os.write(write_fd, encode_all(SAMPLES))
        assert wait_until(lambda: stream.state is StreamState.CLOSED)

"""
Tests for the tool log monitor and progress parsing.

Tests cellpose_timelapse/processing/progress.py and the progress sinks.
"""

import time
from unittest.mock import patch

import pytest

from cellpose_timelapse.processing.progress import LogMonitor, parse_progress
from cellpose_timelapse.utils.progress import NullProgressSink, ProgressSink


class RecordingSink(ProgressSink):
    """Progress sink that keeps everything it receives."""

    def __init__(self):
        super().__init__()
        self.lines = []
        self.statuses = []
        self.fractions = []

    def log(self, message):
        self.lines.append(message)

    def set_status(self, status):
        super().set_status(status)
        self.statuses.append(status)

    def set_progress(self, fraction):
        super().set_progress(fraction)
        self.fractions.append(self.progress)


@pytest.fixture
def log_file(temp_output_dir):
    return temp_output_dir / ".cellpose" / "run.log"


def _append(path, text):
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "a") as f:
        f.write(text)


class TestParseProgress:

    def test_percentage_line(self):
        assert parse_progress("Processing 1/5 frames: 42.0% done") == pytest.approx(0.42)

    def test_integer_percentage(self):
        assert parse_progress("tile 3 of 4 75% complete") == pytest.approx(0.75)

    def test_no_percentage(self):
        assert parse_progress("Running Cellpose with args:") is None

    def test_bare_percent_sign(self):
        # Matches the pattern but has no number
        assert parse_progress("progress at % now") is None


class TestLogMonitorPoll:
    """poll() is exercised directly, without the background thread."""

    def test_skips_existing_content(self, log_file):
        _append(log_file, "old run 99.0% done\n")
        sink = RecordingSink()
        monitor = LogMonitor(log_file, sink, poll_interval=10)
        monitor.start()
        try:
            _append(log_file, "Processing 1/2 frames: 50.0% done\n")
            monitor.poll()
        finally:
            monitor.stop()
        assert sink.lines == ["Processing 1/2 frames: 50.0% done\n"]
        assert sink.fractions[0] == pytest.approx(0.5)

    def test_missing_file_then_created(self, log_file):
        sink = RecordingSink()
        monitor = LogMonitor(log_file, sink, poll_interval=10)
        monitor.poll()
        assert sink.lines == []
        _append(log_file, "hello\n")
        monitor.poll()
        assert sink.lines == ["hello\n"]
        assert sink.fractions == []

    def test_partial_line_is_buffered(self, log_file):
        _append(log_file, "")
        sink = RecordingSink()
        monitor = LogMonitor(log_file, sink, poll_interval=10)
        _append(log_file, "Processing 2/4 fra")
        monitor.poll()
        assert sink.lines == []
        _append(log_file, "mes: 50.0% done\n")
        monitor.poll()
        assert sink.lines == ["Processing 2/4 frames: 50.0% done\n"]

    def test_truncated_file_restarts(self, log_file):
        _append(log_file, "a long first line\n")
        sink = RecordingSink()
        monitor = LogMonitor(log_file, sink, poll_interval=10)
        monitor.poll()
        log_file.write_text("new\n")
        monitor.poll()
        assert sink.lines == ["a long first line\n", "new\n"]

    def test_crlf_stripped(self, log_file):
        sink = RecordingSink()
        monitor = LogMonitor(log_file, sink, poll_interval=10)
        log_file.parent.mkdir(parents=True)
        with open(log_file, "wb") as f:
            f.write(b"windows line\r\n")
        monitor.poll()
        assert sink.lines == ["windows line\n"]

    def test_unreadable_log_is_skipped(self, log_file):
        log_file.mkdir(parents=True)
        sink = RecordingSink()
        monitor = LogMonitor(log_file, sink, poll_interval=10)
        monitor.poll()
        assert sink.lines == []

    def test_open_error_is_skipped(self, log_file):
        _append(log_file, "")
        sink = RecordingSink()
        monitor = LogMonitor(log_file, sink, poll_interval=10)
        _append(log_file, "held back\n")
        with patch("cellpose_timelapse.processing.progress.open", create=True,
                   side_effect=PermissionError("denied")):
            monitor.poll()
        assert sink.lines == []
        monitor.poll()
        assert sink.lines == ["held back\n"]


class TestLogMonitorThread:

    def test_background_thread_forwards_lines(self, log_file):
        sink = RecordingSink()
        with LogMonitor(log_file, sink, poll_interval=0.01) as monitor:
            assert monitor.is_running
            _append(log_file, "Processing 1/4 frames: 25.0% done\n")
            deadline = time.time() + 5
            while not sink.lines and time.time() < deadline:
                time.sleep(0.01)
        assert sink.lines == ["Processing 1/4 frames: 25.0% done\n"]
        assert not monitor.is_running

    def test_stop_clears_status_and_completes(self, log_file):
        sink = RecordingSink()
        sink.set_status("Running Cellpose")
        monitor = LogMonitor(log_file, sink, poll_interval=0.01).start()
        monitor.stop()
        assert sink.status == ""
        assert sink.progress == 1.0

    def test_lines_written_before_stop_are_delivered(self, log_file):
        sink = RecordingSink()
        monitor = LogMonitor(log_file, sink, poll_interval=60).start()
        _append(log_file, "last words\n")
        monitor.stop()
        assert sink.lines == ["last words\n"]

    def test_failing_sink_does_not_stop_the_thread(self, log_file):
        class FlakySink(RecordingSink):
            def log(self, message):
                if not self.lines:
                    self.lines.append(None)
                    raise RuntimeError("sink closed")
                super().log(message)

        sink = FlakySink()
        with LogMonitor(log_file, sink, poll_interval=0.01) as monitor:
            _append(log_file, "first\n")
            deadline = time.time() + 5
            while not sink.lines and time.time() < deadline:
                time.sleep(0.01)
            _append(log_file, "second\n")
            while len(sink.lines) < 2 and time.time() < deadline:
                time.sleep(0.01)
            assert monitor.is_running
        assert sink.lines == [None, "second\n"]

    def test_start_twice(self, log_file):
        monitor = LogMonitor(log_file, NullProgressSink(), poll_interval=0.01).start()
        try:
            with pytest.raises(RuntimeError):
                monitor.start()
        finally:
            monitor.stop()

    def test_poll_interval_from_config(self, log_file):
        config = {"processing": {"log_poll_interval_s": 0.5}}
        assert LogMonitor(log_file, NullProgressSink(), config=config).poll_interval == 0.5


class TestProgressSink:

    def test_progress_is_clamped(self):
        sink = NullProgressSink()
        sink.set_progress(1.7)
        assert sink.progress == 1.0
        sink.set_progress(-0.2)
        assert sink.progress == 0.0

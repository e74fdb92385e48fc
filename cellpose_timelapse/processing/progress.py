"""
Tail the tool's log file and report its progress.

Cellpose and Omnipose append to ``~/.{tool}/run.log``. A LogMonitor polls that
file on a background thread, forwards every new line to a progress sink and
turns lines such as ``"Processing 1/5 frames: 42.0% done"`` into a
completion fraction. Lines already in the file when monitoring starts are
never replayed.
"""

import re
import threading
from pathlib import Path
from typing import Optional, Union

from cellpose_timelapse.utils.config import get_processing_option
from cellpose_timelapse.utils.logging import get_logger
from cellpose_timelapse.utils.progress import ProgressSink

logger = get_logger(__name__)

PERCENTAGE_PATTERN = re.compile(r".+\s(\d*\.?\d*)%.+")


def parse_progress(line: str) -> Optional[float]:
    """
    Extract a completion fraction from a tool log line.

    Returns:
        Fraction (42.0% -> 0.42), or None if the line carries no percentage
    """
    match = PERCENTAGE_PATTERN.fullmatch(line)
    if match is None:
        return None
    try:
        return float(match.group(1)) / 100.0
    except ValueError:
        return None


class LogMonitor:
    """
    Background poller of an append-only log file.

    Args:
        log_file: File to follow; it may not exist yet
        sink: Receives every new line and progress updates
        poll_interval: Seconds between polls (defaults to
            ``processing.log_poll_interval_s``)
        config: Config dict (defaults to DEFAULT_CONFIG)
    """

    def __init__(
        self,
        log_file: Union[str, Path],
        sink: ProgressSink,
        poll_interval: Optional[float] = None,
        config: Optional[dict] = None,
    ):
        self.log_file = Path(log_file)
        self.sink = sink
        if poll_interval is None:
            poll_interval = get_processing_option("log_poll_interval_s", config)
        self.poll_interval = float(poll_interval)

        self._offset = 0
        self._pending = b""
        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> "LogMonitor":
        """Start following from the current end of the file."""
        if self._thread is not None:
            raise RuntimeError("LogMonitor already started")
        self._offset = self.log_file.stat().st_size if self.log_file.exists() else 0
        self._thread = threading.Thread(
            target=self._run, name=f"log-monitor-{self.log_file.name}", daemon=True
        )
        self._thread.start()
        logger.debug("Following %s from offset %d", self.log_file, self._offset)
        return self

    def stop(self) -> None:
        """Stop polling, then clear the status and report completion."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join()
        self.sink.set_status("")
        self.sink.set_progress(1.0)

    def __enter__(self):
        return self.start()

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.stop()
        return False

    def _run(self) -> None:
        while not self._stop_event.wait(self.poll_interval):
            self._safe_poll()
        # Pick up what was written between the last poll and stop()
        self._safe_poll()

    def _safe_poll(self) -> None:
        # Progress reporting never stops a run
        try:
            self.poll()
        except Exception as e:
            logger.debug("Progress update from %s failed: %s", self.log_file, e, exc_info=True)

    def poll(self) -> None:
        """Read and dispatch whatever complete lines were appended since the last poll."""
        try:
            size = self.log_file.stat().st_size
        except FileNotFoundError:
            return
        except OSError as e:
            logger.debug("Cannot stat %s: %s", self.log_file, e)
            return
        if size < self._offset:
            # Truncated or replaced: start over
            self._offset = 0
            self._pending = b""
        if size == self._offset:
            return

        try:
            with open(self.log_file, "rb") as f:
                f.seek(self._offset)
                data = f.read(size - self._offset)
        except OSError as e:
            logger.debug("Cannot read %s: %s", self.log_file, e)
            return
        self._offset += len(data)

        chunks = (self._pending + data).split(b"\n")
        self._pending = chunks.pop()
        for chunk in chunks:
            self.handle_line(chunk.decode("utf-8", errors="replace").rstrip("\r"))

    def handle_line(self, line: str) -> None:
        self.sink.log(line + "\n")
        fraction = parse_progress(line)
        if fraction is not None:
            self.sink.set_progress(fraction)

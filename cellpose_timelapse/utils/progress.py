"""
Progress sinks: where a run reports tool output, status and completion.

The orchestrator and the log monitor only talk to the three methods of
:class:`ProgressSink`. The default implementation forwards to ``logging``;
the CLI uses :class:`TqdmProgressSink` to draw a progress bar.

Usage:
    from cellpose_timelapse.utils.progress import TqdmProgressSink

    with TqdmProgressSink(desc="Cellpose") as sink:
        segmenter = TimelapseSegmenter(volume, interval, settings, sink=sink)
        segmenter.process()
"""

import threading
from typing import Optional

from tqdm import tqdm

from cellpose_timelapse.utils.logging import get_logger

logger = get_logger(__name__)


class ProgressSink:
    """Receives tool log lines, a status text and a completion fraction.

    Methods may be called from the log monitor thread as well as from the
    orchestrating thread.
    """

    def __init__(self, name: str = "cellpose_timelapse.tool"):
        self._tool_logger = get_logger(name)
        self.status = ""
        self.progress = 0.0

    def log(self, message: str) -> None:
        """Forward one line of tool output."""
        self._tool_logger.info(message.rstrip("\n"))

    def set_status(self, status: str) -> None:
        self.status = status
        if status:
            logger.debug("Status: %s", status)

    def set_progress(self, fraction: float) -> None:
        """Record completion as a fraction in [0, 1]."""
        self.progress = min(1.0, max(0.0, float(fraction)))


class NullProgressSink(ProgressSink):
    """Discards everything."""

    def __init__(self):
        self.status = ""
        self.progress = 0.0

    def log(self, message: str) -> None:
        pass

    def set_status(self, status: str) -> None:
        self.status = status

    def set_progress(self, fraction: float) -> None:
        self.progress = min(1.0, max(0.0, float(fraction)))


class TqdmProgressSink(ProgressSink):
    """Progress bar on stderr; tool lines are written above the bar."""

    def __init__(self, desc: str = "Segmenting", echo_tool_output: bool = True):
        super().__init__()
        self.echo_tool_output = echo_tool_output
        self._lock = threading.Lock()
        self._bar: Optional[tqdm] = tqdm(
            total=100,
            desc=desc,
            unit="%",
            bar_format="{desc}: {percentage:3.0f}%|{bar}| {postfix}",
        )

    def log(self, message: str) -> None:
        if self.echo_tool_output and self._bar is not None:
            with self._lock:
                self._bar.write(message.rstrip("\n"))

    def set_status(self, status: str) -> None:
        super().set_status(status)
        if self._bar is not None:
            with self._lock:
                self._bar.set_postfix_str(status)

    def set_progress(self, fraction: float) -> None:
        super().set_progress(fraction)
        if self._bar is not None:
            with self._lock:
                self._bar.n = round(self.progress * 100)
                self._bar.refresh()

    def close(self) -> None:
        if self._bar is not None:
            self._bar.close()
            self._bar = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

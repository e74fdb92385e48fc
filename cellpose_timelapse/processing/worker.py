"""
One bucket of frames run through one external tool process.

A WorkerTask owns an exclusive temp directory, writes its frames there,
launches the tool on that directory and waits for it. Bucket-local problems
(launch failure, cancellation) end up in ``task.result``; only a failure to
create the temp directory is raised, as ResourceError, because the run cannot
continue without a workspace.

The temp directory outlives ``run()`` so the masks can be collected: it is
removed when the task's context exits.

Usage:
    token = CancellationToken()
    with WorkerTask(0, frames, settings, token) as task:
        result = task.run()
        if result.ok:
            masks_dir = result.output_dir
"""

import shutil
import subprocess
import tempfile
import threading
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence

from cellpose_timelapse.detection.settings import CellposeSettings
from cellpose_timelapse.io.images import write_frame
from cellpose_timelapse.processing.errors import ResourceError, classify_launch_error
from cellpose_timelapse.processing.frames import Frame
from cellpose_timelapse.utils.config import get_processing_option
from cellpose_timelapse.utils.logging import get_logger
from cellpose_timelapse.utils.progress import NullProgressSink, ProgressSink

logger = get_logger(__name__)


class WorkerState(Enum):
    CREATED = "created"
    TEMP_DIR_READY = "temp_dir_ready"
    FRAMES_WRITTEN = "frames_written"
    PROCESS_RUNNING = "process_running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class WorkerResult:
    """
    Outcome of one bucket.

    Attributes:
        ok: True if the tool ran to completion
        output_dir: Directory holding the tool's masks (None for an empty bucket)
        error: Human-readable reason when not ok
        exit_code: Tool exit code, None if it never ran
    """
    ok: bool
    output_dir: Optional[Path] = None
    error: Optional[str] = None
    exit_code: Optional[int] = None


class CancellationToken:
    """Run-wide cancellation flag with a reason, safe to share across threads."""

    def __init__(self):
        self._event = threading.Event()
        self.reason: Optional[str] = None

    def cancel(self, reason: Optional[str] = None) -> None:
        self.reason = reason
        self._event.set()

    @property
    def is_cancelled(self) -> bool:
        return self._event.is_set()

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)


class WorkerTask:
    """
    Runs the tool over one bucket of frames.

    Args:
        bucket_id: Index of the bucket, for logging
        frames: Frames of this bucket, in order
        settings: Tool settings building the command line
        token: Run-wide cancellation token
        is_3d: Segment Z stacks as volumes
        anisotropy: Z to XY pixel size ratio
        sink: Progress sink receiving status and command lines
        config: Config dict (defaults to DEFAULT_CONFIG)
    """

    def __init__(
        self,
        bucket_id: int,
        frames: Sequence[Frame],
        settings: CellposeSettings,
        token: CancellationToken,
        is_3d: bool = False,
        anisotropy: float = 1.0,
        sink: Optional[ProgressSink] = None,
        config: Optional[dict] = None,
    ):
        self.bucket_id = bucket_id
        self.frames: List[Frame] = list(frames)
        self.settings = settings
        self.token = token
        self.is_3d = is_3d
        self.anisotropy = anisotropy
        self.sink = sink or NullProgressSink()
        self.config = config

        self.state = WorkerState.CREATED
        self.result: Optional[WorkerResult] = None
        self.temp_dir: Optional[Path] = None
        self.process: Optional[subprocess.Popen] = None
        self._lock = threading.Lock()
        self._cancelled = False

    def __repr__(self):
        return (
            f"WorkerTask(bucket={self.bucket_id}, frames={[f.global_index for f in self.frames]}, "
            f"state={self.state.value})"
        )

    # --- context management ---

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.cleanup()
        return False

    def cleanup(self) -> None:
        """Remove the temp directory and everything in it."""
        if self.temp_dir is None:
            return
        try:
            shutil.rmtree(self.temp_dir)
            logger.debug("Bucket %d: removed %s", self.bucket_id, self.temp_dir)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Bucket {self.bucket_id}: could not remove {self.temp_dir}: {e}")
        self.temp_dir = None

    # --- cancellation ---

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled or self.token.is_cancelled

    def cancel(self) -> None:
        """Stop this bucket: terminate its live process, or prevent its launch."""
        with self._lock:
            self._cancelled = True
            if self.process is not None and self.process.poll() is None:
                logger.info("Bucket %d: terminating %s process %d",
                            self.bucket_id, self.settings.display_name, self.process.pid)
                self.process.terminate()

    # --- execution ---

    def _finish(self, state: WorkerState, result: WorkerResult) -> WorkerResult:
        self.state = state
        self.result = result
        return result

    def _cancelled_result(self, exit_code: Optional[int] = None) -> WorkerResult:
        reason = self.token.reason or "Cancelled"
        return self._finish(
            WorkerState.CANCELLED,
            WorkerResult(ok=False, output_dir=self.temp_dir, error=reason, exit_code=exit_code),
        )

    def _make_temp_dir(self) -> None:
        prefix = get_processing_option("temp_prefix", self.config)
        root = get_processing_option("temp_dir", self.config)
        try:
            self.temp_dir = Path(tempfile.mkdtemp(prefix=prefix, dir=root))
        except OSError as e:
            self._finish(WorkerState.FAILED, WorkerResult(ok=False, error=str(e)))
            raise ResourceError(
                f"Could not create tmp dir to save and load images:\n{e}"
            ) from e
        self.state = WorkerState.TEMP_DIR_READY
        logger.debug("Bucket %d: temp dir %s", self.bucket_id, self.temp_dir)

    def _write_frames(self) -> Optional[WorkerResult]:
        self.sink.log("Saving single time-points.\n")
        try:
            for frame in self.frames:
                write_frame(frame, self.temp_dir)
        except OSError as e:
            logger.error(f"Bucket {self.bucket_id}: could not save frames: {e}")
            return self._finish(
                WorkerState.FAILED,
                WorkerResult(ok=False, output_dir=self.temp_dir,
                             error=f"Could not save frames to {self.temp_dir}:\n{e}"),
            )
        self.state = WorkerState.FRAMES_WRITTEN
        return None

    def run(self) -> WorkerResult:
        """
        Execute the bucket: temp dir, frames, tool process.

        Returns:
            WorkerResult, also stored on ``self.result``

        Raises:
            ResourceError: If the temp directory cannot be created
        """
        if self.is_cancelled:
            return self._cancelled_result()

        if not self.frames:
            logger.debug("Bucket %d is empty, nothing to run", self.bucket_id)
            return self._finish(WorkerState.COMPLETED, WorkerResult(ok=True))

        self._make_temp_dir()
        failed = self._write_frames()
        if failed is not None:
            return failed

        name = self.settings.display_name
        cmd = self.settings.to_cmd_line(self.temp_dir, self.is_3d, self.anisotropy)

        with self._lock:
            if self.is_cancelled:
                return self._cancelled_result()
            self.sink.set_status(f"Running {name}")
            self.sink.log(f"Running {name} with args:\n{' '.join(cmd)}\n")
            logger.info(f"Bucket {self.bucket_id}: {' '.join(cmd)}")
            try:
                # stdout/stderr inherited from this process
                self.process = subprocess.Popen(cmd)
            except (OSError, ValueError, subprocess.SubprocessError) as e:
                error = classify_launch_error(e, name)
                logger.error(f"Bucket {self.bucket_id}: {error}")
                return self._finish(
                    WorkerState.FAILED,
                    WorkerResult(ok=False, output_dir=self.temp_dir, error=str(error)),
                )
            self.state = WorkerState.PROCESS_RUNNING

        exit_code = self.process.wait()
        with self._lock:
            self.process = None
            cancelled = self._cancelled

        logger.info(f"Bucket {self.bucket_id}: {name} exited with code {exit_code}")
        if cancelled:
            return self._cancelled_result(exit_code)

        if exit_code != 0 and get_processing_option("fail_on_nonzero_exit", self.config):
            return self._finish(
                WorkerState.FAILED,
                WorkerResult(ok=False, output_dir=self.temp_dir,
                             error=f"{name} exited with code {exit_code}",
                             exit_code=exit_code),
            )

        return self._finish(
            WorkerState.COMPLETED,
            WorkerResult(ok=True, output_dir=self.temp_dir, exit_code=exit_code),
        )

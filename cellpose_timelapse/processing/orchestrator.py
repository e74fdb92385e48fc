"""
Run an external segmentation tool over a time-lapse and return its objects.

TimelapseSegmenter sequences a run:

    split -> partition -> buckets in parallel -> join -> stop log monitor
          -> check buckets -> collect masks -> label-to-objects -> reposition

Every bucket runs to completion before success is decided, and a single
failed bucket fails the whole run with no partial objects. A missing mask
for one frame is not a failure: that frame is blank.

Usage:
    from cellpose_timelapse.processing.orchestrator import TimelapseSegmenter

    segmenter = TimelapseSegmenter(volume, Interval.full(volume), settings)
    if segmenter.check_input() and segmenter.process():
        objects = segmenter.outcome.objects
    else:
        print(segmenter.error_message)
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from contextlib import ExitStack
from dataclasses import dataclass
from typing import Callable, List, Optional, Tuple

from cellpose_timelapse.detection.labels import (
    DetectedObject,
    LabelImageDetector,
    LabelVolume,
    RegionPropsLabelDetector,
)
from cellpose_timelapse.detection.settings import CellposeSettings
from cellpose_timelapse.processing.collector import collect_masks
from cellpose_timelapse.processing.coordinates import reposition_objects
from cellpose_timelapse.processing.errors import (
    CancellationError,
    DownstreamDetectionError,
    OrchestrationError,
    ResourceError,
)
from cellpose_timelapse.processing.frames import (
    Frame,
    ImageVolume,
    Interval,
    check_interval,
    default_frame_name,
    split_frames,
)
from cellpose_timelapse.processing.memory import get_default_num_threads, get_safe_process_count
from cellpose_timelapse.processing.partition import compute_concurrency, partition_round_robin
from cellpose_timelapse.processing.progress import LogMonitor
from cellpose_timelapse.processing.worker import CancellationToken, WorkerTask
from cellpose_timelapse.utils.logging import format_duration, get_logger, log_parameters
from cellpose_timelapse.utils.progress import ProgressSink

logger = get_logger(__name__)

BASE_ERROR_MESSAGE = "TimelapseSegmenter: "


@dataclass
class DetectionOutcome:
    """
    Result of a successful run.

    Attributes:
        objects: Objects in source-image coordinates and frames
        elapsed_seconds: Wall-clock duration of the run
        label_volume: The reassembled masks, in run-local frames
    """
    objects: List[DetectedObject]
    elapsed_seconds: float
    label_volume: Optional[LabelVolume] = None


class TimelapseSegmenter:
    """
    Segments every timepoint of an interval with an external tool.

    Args:
        volume: Source image
        interval: Region and time range to process
        settings: Tool settings
        sink: Receives tool output, status and progress
        num_threads: Concurrent tool processes when multiprocessing applies
            (defaults to half the logical CPUs)
        label_detector: Label-to-objects conversion (defaults to
            RegionPropsLabelDetector)
        platform: ``sys.platform``-style name deciding multiprocessing
        config: Config dict (defaults to DEFAULT_CONFIG)
        name_fn: Maps a local frame index to a file stem
    """

    def __init__(
        self,
        volume: ImageVolume,
        interval: Interval,
        settings: CellposeSettings,
        sink: Optional[ProgressSink] = None,
        num_threads: Optional[int] = None,
        label_detector: Optional[LabelImageDetector] = None,
        platform: Optional[str] = None,
        config: Optional[dict] = None,
        name_fn: Callable[[int], str] = default_frame_name,
    ):
        self.volume = volume
        self.interval = interval
        self.settings = settings
        self.sink = sink or ProgressSink()
        self.num_threads = num_threads or get_default_num_threads(config)
        self.label_detector = label_detector or RegionPropsLabelDetector(
            simplify_contours=settings.simplify_contours
        )
        self.platform = platform
        self.config = config
        self.name_fn = name_fn

        self.outcome: Optional[DetectionOutcome] = None
        self.error_message: Optional[str] = None
        self.processing_time = 0.0

        self._token = CancellationToken()
        self._tasks: List[WorkerTask] = []
        self._tasks_lock = threading.Lock()

    # --- cancellation ---

    @property
    def is_canceled(self) -> bool:
        return self._token.is_cancelled

    @property
    def cancel_reason(self) -> Optional[str]:
        return self._token.reason

    def _raise_if_cancelled(self) -> None:
        if self.is_canceled:
            raise CancellationError(self.cancel_reason)

    def cancel(self, reason: Optional[str] = None) -> None:
        """Cancel the run: running tool processes are terminated, pending buckets never start."""
        logger.info(f"Cancelling run: {reason or 'no reason given'}")
        self._token.cancel(reason)
        with self._tasks_lock:
            tasks = list(self._tasks)
        for task in tasks:
            task.cancel()

    # --- input checks ---

    def _fail(self, message: str) -> bool:
        self.error_message = BASE_ERROR_MESSAGE + message
        logger.error(self.error_message)
        return False

    def check_input(self) -> bool:
        """Validate the image and interval; sets ``error_message`` on failure."""
        if self.volume is None:
            return self._fail("Image is null.")
        if self.volume.size("Z") > 1 and not self.settings.do_3d:
            return self._fail(
                "Image must be 2D over time, got an image with multiple Z."
            )
        try:
            check_interval(self.volume, self.interval)
        except ValueError as e:
            return self._fail(str(e))
        return True

    # --- run ---

    def _anisotropy(self) -> float:
        cx, _, cz = self.volume.calibration
        return cz / cx

    def _make_tasks(self, frames: List[Frame]) -> List[WorkerTask]:
        n_tasks = compute_concurrency(
            self.settings.use_gpu, self.num_threads, len(frames), self.platform, self.config
        )
        if n_tasks > 1:
            n_tasks = get_safe_process_count(n_tasks, self.config)
        buckets = partition_round_robin(frames, n_tasks)
        is_3d = self.settings.do_3d and frames[0].n_slices > 1
        for i, bucket in enumerate(buckets):
            logger.debug("Bucket %d: frames %s", i, [f.global_index for f in bucket])
        return [
            WorkerTask(
                i, bucket, self.settings, self._token,
                is_3d=is_3d,
                anisotropy=self._anisotropy(),
                sink=self.sink,
                config=self.config,
            )
            for i, bucket in enumerate(buckets)
        ]

    def _stop_tasks(self, tasks: List[WorkerTask]) -> None:
        for task in tasks:
            task.cancel()

    def _run_tasks(self, tasks: List[WorkerTask]) -> None:
        """
        Run all buckets and wait for every one of them.

        Raises:
            ResourceError: If a bucket could not create its temp directory;
                the other buckets are stopped
            OrchestrationError: If a bucket crashed unexpectedly
        """
        first_error: Optional[BaseException] = None
        with ThreadPoolExecutor(max_workers=len(tasks), thread_name_prefix="bucket") as pool:
            futures = {pool.submit(task.run): task for task in tasks}
            try:
                for future in as_completed(futures):
                    exc = future.exception()
                    if exc is None:
                        continue
                    task = futures[future]
                    logger.error(f"Bucket {task.bucket_id} raised: {exc}", exc_info=exc)
                    if first_error is None:
                        first_error = exc
                        self._stop_tasks(tasks)
            except KeyboardInterrupt:
                self.cancel("Interrupted")
                raise

        if isinstance(first_error, OrchestrationError):
            raise first_error
        if first_error is not None:
            raise OrchestrationError(
                f"Problem running {self.settings.display_name}:\n{first_error}"
            ) from first_error

    def process(self) -> bool:
        """
        Run the tool over every frame and convert the masks to objects.

        Returns:
            True on success, with ``outcome`` set. False on failure (with
            ``error_message``) or cancellation (with ``is_canceled``).
        """
        start = time.monotonic()
        self.outcome = None
        self.error_message = None

        if self.is_canceled:
            logger.info("Run was cancelled before it started")
            return False

        log_parameters(logger, {
            "image": self.volume.name,
            "interval": self.interval,
            "tool": self.settings.display_name,
            "use_gpu": self.settings.use_gpu,
            "num_threads": self.num_threads,
        }, title=f"{self.settings.display_name} segmentation")

        try:
            frames = split_frames(self.volume, self.interval, self.name_fn)
        except ValueError as e:
            return self._fail(str(e))

        tasks = self._make_tasks(frames)
        with self._tasks_lock:
            self._tasks = tasks

        try:
            # A cancel() racing with task creation still reached the shared token
            self._raise_if_cancelled()
            with ExitStack() as workspace:
                for task in tasks:
                    workspace.enter_context(task)

                monitor = LogMonitor(self.settings.log_file, self.sink, config=self.config)
                monitor.start()
                try:
                    self._run_tasks(tasks)
                finally:
                    monitor.stop()

                self._raise_if_cancelled()
                failed = [t for t in tasks if t.result is None or not t.result.ok]
                if failed:
                    errors = []
                    for task in failed:
                        error = task.result.error if task.result else "no result"
                        if error not in errors:
                            errors.append(error)
                    logger.error(
                        "%d of %d bucket(s) failed: %s",
                        len(failed), len(tasks), [t.bucket_id for t in failed],
                    )
                    return self._fail("\n".join(errors))

                self.sink.log(f"Reading {self.settings.display_name} masks.\n")
                label_volume = collect_masks(
                    frames,
                    [t.result.output_dir for t in tasks],
                    self.settings,
                    calibration=self.volume.calibration,
                    frame_interval=self.volume.frame_interval,
                    name=self.volume.name,
                    sink=self.sink,
                )
        except CancellationError as e:
            logger.info(f"Run cancelled: {e.reason or 'no reason given'}")
            return False
        except ResourceError as e:
            return self._fail(str(e))
        except OrchestrationError as e:
            logger.exception("Run failed")
            return self._fail(str(e))
        finally:
            with self._tasks_lock:
                self._tasks = []

        self.sink.log("Converting masks to objects.\n")
        try:
            local_objects = self.label_detector.detect(label_volume)
        except DownstreamDetectionError as e:
            return self._fail(str(e))

        objects = reposition_objects(
            local_objects,
            self.interval,
            self.volume.calibration,
            self.volume.frame_interval,
        )

        self.processing_time = time.monotonic() - start
        self.outcome = DetectionOutcome(objects, self.processing_time, label_volume)
        logger.info(
            f"Detected {len(objects)} object(s) in {len(frames)} frame(s) "
            f"in {format_duration(self.processing_time)}"
        )
        return True


def segment_timelapse(
    volume: ImageVolume,
    interval: Optional[Interval],
    settings: CellposeSettings,
    **kwargs,
) -> Tuple[Optional[DetectionOutcome], Optional[str]]:
    """
    One-call wrapper around TimelapseSegmenter.

    Args:
        volume: Source image
        interval: Region and time range (None for the whole image)
        settings: Tool settings
        **kwargs: Passed to TimelapseSegmenter

    Returns:
        (outcome, None) on success, (None, error_message) otherwise. A
        cancelled run gives (None, None).
    """
    if interval is None:
        interval = Interval.full(volume)
    segmenter = TimelapseSegmenter(volume, interval, settings, **kwargs)
    if not segmenter.check_input():
        return None, segmenter.error_message
    if not segmenter.process():
        return None, segmenter.error_message
    return segmenter.outcome, None

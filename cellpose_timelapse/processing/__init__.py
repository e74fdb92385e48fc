"""
Processing components of a segmentation run.

Provides:
- Image volumes, intervals and the frame splitter
- Concurrency decision and round-robin partitioning
- Host resource checks
- The error taxonomy

Modules that depend on the I/O or detection layers (worker, progress,
collector, coordinates, orchestrator) are imported explicitly:
    from cellpose_timelapse.processing.orchestrator import TimelapseSegmenter
"""

from .errors import (
    OrchestrationError,
    ResourceError,
    LaunchError,
    DownstreamDetectionError,
    CancellationError,
    PartialOutputMiss,
    classify_launch_error,
)

from .frames import (
    ImageVolume,
    Interval,
    Frame,
    split_frames,
    check_interval,
    default_frame_name,
)

from .partition import (
    platform_supports_multiprocessing,
    compute_concurrency,
    partition_round_robin,
)

from .memory import (
    get_default_num_threads,
    get_safe_process_count,
    get_memory_usage,
    log_memory_status,
)

__all__ = [
    # Errors
    'OrchestrationError',
    'ResourceError',
    'LaunchError',
    'DownstreamDetectionError',
    'CancellationError',
    'PartialOutputMiss',
    'classify_launch_error',
    # Frames
    'ImageVolume',
    'Interval',
    'Frame',
    'split_frames',
    'check_interval',
    'default_frame_name',
    # Partitioning
    'platform_supports_multiprocessing',
    'compute_concurrency',
    'partition_round_robin',
    # Memory
    'get_default_num_threads',
    'get_safe_process_count',
    'get_memory_usage',
    'log_memory_status',
]

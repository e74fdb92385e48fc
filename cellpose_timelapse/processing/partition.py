"""
Concurrency decision and round-robin frame partitioning.

Several concurrent tool processes only pay off when the tool runs on CPU and
the platform is listed in ``processing.multiprocess_platforms``. Everything
else runs as a single process over all frames.
"""

import sys
from typing import List, Optional, Sequence, TypeVar

from cellpose_timelapse.utils.config import get_processing_option
from cellpose_timelapse.utils.logging import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


def platform_supports_multiprocessing(
    platform: Optional[str] = None,
    config: Optional[dict] = None,
) -> bool:
    """True if several CPU-only tool processes are worth running here.

    Args:
        platform: ``sys.platform``-style name (defaults to the running one)
        config: Config dict (defaults to DEFAULT_CONFIG)
    """
    platform = sys.platform if platform is None else platform
    platforms = get_processing_option("multiprocess_platforms", config)
    return any(platform.startswith(p) for p in platforms)


def compute_concurrency(
    use_gpu: bool,
    num_threads: int,
    n_frames: int,
    platform: Optional[str] = None,
    config: Optional[dict] = None,
) -> int:
    """
    Number of tool processes to run.

    Args:
        use_gpu: Whether the tool runs on GPU
        num_threads: Requested concurrency when multiprocessing applies
        n_frames: Number of frames to process
        platform: ``sys.platform``-style name (defaults to the running one)
        config: Config dict (defaults to DEFAULT_CONFIG)

    Returns:
        ``num_threads`` for CPU-only runs on a multiprocessing platform,
        1 otherwise, never more than ``n_frames`` and never less than 1
    """
    if not use_gpu and platform_supports_multiprocessing(platform, config):
        k = num_threads
    else:
        k = 1
    k = max(1, min(int(k), max(1, n_frames)))
    logger.debug(
        "Concurrency %d (gpu=%s, requested=%d, frames=%d, platform=%s)",
        k, use_gpu, num_threads, n_frames, platform or sys.platform,
    )
    return k


def partition_round_robin(items: Sequence[T], k: int) -> List[List[T]]:
    """
    Deal items into ``k`` buckets: bucket ``i`` gets items ``i, i+k, i+2k, ...``.

    Every item lands in exactly one bucket and each bucket keeps the input
    order. Buckets may be empty when ``k`` exceeds ``len(items)``.

    Raises:
        ValueError: If k < 1
    """
    if k < 1:
        raise ValueError(f"Number of buckets must be >= 1, got {k}")
    buckets: List[List[T]] = [[] for _ in range(k)]
    for i, item in enumerate(items):
        buckets[i % k].append(item)
    return buckets

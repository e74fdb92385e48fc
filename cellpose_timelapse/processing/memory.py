"""
System resource checks for sizing the tool process pool.

Usage:
    from cellpose_timelapse.processing.memory import get_default_num_threads, get_safe_process_count

    k = get_safe_process_count(requested=get_default_num_threads())
"""

from typing import Any, Dict, Optional

import psutil

from cellpose_timelapse.utils.config import get_processing_option
from cellpose_timelapse.utils.logging import get_logger

logger = get_logger(__name__)


def get_default_num_threads(config: Optional[dict] = None) -> int:
    """
    Default number of concurrent CPU tool processes.

    Uses ``processing.num_threads`` when configured, otherwise half the
    logical CPU count (at least 1).
    """
    configured = get_processing_option("num_threads", config)
    if configured:
        return int(configured)
    cpus = psutil.cpu_count(logical=True) or 1
    return max(1, cpus // 2)


def get_safe_process_count(
    requested: int,
    config: Optional[dict] = None,
    auto_adjust: bool = True,
) -> int:
    """
    Return a process count that fits in the available RAM.

    Args:
        requested: Number of processes requested
        config: Config dict (defaults to DEFAULT_CONFIG)
        auto_adjust: If True, reduce the count when RAM is short

    Returns:
        Safe number of processes (at least 1)
    """
    mem = psutil.virtual_memory()
    available_gb = mem.available / (1024**3)
    per_process_gb = get_processing_option("min_ram_gb_per_process", config)
    max_safe = max(1, int(available_gb / per_process_gb))

    if auto_adjust and requested > max_safe:
        logger.warning(
            f"Reducing tool processes from {requested} to {max_safe} "
            f"based on available RAM ({available_gb:.1f} GB)"
        )
        return max_safe

    return requested


def get_memory_usage() -> Dict[str, Any]:
    """
    Get current memory usage statistics.

    Returns:
        Dict with RAM info and the logical CPU count
    """
    mem = psutil.virtual_memory()
    return {
        'ram_available_gb': mem.available / (1024**3),
        'ram_total_gb': mem.total / (1024**3),
        'ram_used_percent': mem.percent,
        'cpu_count': psutil.cpu_count(logical=True) or 1,
    }


def log_memory_status(prefix: str = "") -> None:
    """
    Log current memory usage.

    Args:
        prefix: Optional prefix for log message
    """
    usage = get_memory_usage()
    msg = (
        f"RAM: {usage['ram_available_gb']:.1f}/{usage['ram_total_gb']:.1f} GB available"
        f" | CPUs: {usage['cpu_count']}"
    )
    if prefix:
        msg = f"{prefix}: {msg}"

    logger.info(msg)


__all__ = [
    'get_default_num_threads',
    'get_safe_process_count',
    'get_memory_usage',
    'log_memory_status',
]

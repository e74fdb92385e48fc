"""
cellpose-timelapse: run Cellpose or Omnipose over every timepoint of a time-lapse.

Provides frame splitting, multi-process dispatch of the external tool, mask
collection and repositioning of the detected objects for:
- Cellpose (pretrained or custom models, optional thresholds)
- Omnipose (pretrained or custom models, optional thresholds)

Usage:
    from cellpose_timelapse.io import read_volume
    from cellpose_timelapse.detection import ToolRegistry
    from cellpose_timelapse.processing import Interval
    from cellpose_timelapse.processing.orchestrator import TimelapseSegmenter
    from cellpose_timelapse.utils import get_logger, setup_logging, load_config
"""

# Version
__version__ = "0.1.0"

# Submodules are imported explicitly to avoid circular imports:
#   from cellpose_timelapse.processing.orchestrator import TimelapseSegmenter
#   from cellpose_timelapse.utils.logging import get_logger

__all__ = [
    "io",
    "detection",
    "processing",
    "utils",
    "cli",
]

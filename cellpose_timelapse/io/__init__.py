"""
I/O operations for cellpose-timelapse.

Provides:
- TIFF time-lapse loading and per-frame TIFF writing
- Mask read-back (PNG or TIFF) and label volume saving
- Detection export to JSON and CSV
"""

from .images import (
    read_volume,
    write_frame,
    read_mask,
    write_label_volume,
)

from .export import (
    detections_to_dataframe,
    write_detections_csv,
    write_detections_json,
)

__all__ = [
    'read_volume',
    'write_frame',
    'read_mask',
    'write_label_volume',
    'detections_to_dataframe',
    'write_detections_csv',
    'write_detections_json',
]

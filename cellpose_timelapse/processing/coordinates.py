"""
Coordinate handling for moving detections back into the source image.

Convention: positions are stored as [x, y, z] in physical units.

Coordinate System:
    - Origin: Top-left corner of the processed interval (0, 0)
    - X-axis: Horizontal, increases to the right (columns)
    - Y-axis: Vertical, increases downward (rows)
    - Frames: 0 at the first processed timepoint

Key Conversions:
    - NumPy arrays are indexed as [z, row, col] = [z, y, x]
    - An interval min is in pixels; multiply by calibration for physical units
    - global_frame = local_frame + interval.min_time
    - t = global_frame * frame_interval

Contours are stored relative to their object's centre and are not shifted.
"""

from dataclasses import replace
from typing import Iterable, List, Sequence

from cellpose_timelapse.detection.labels import DetectedObject
from cellpose_timelapse.processing.frames import Interval

_AXIS_INDEX = {"X": 0, "Y": 1, "Z": 2}


def local_to_global_position(
    local: float,
    axis: str,
    interval: Interval,
    calibration: Sequence[float],
) -> float:
    """
    Shift a physical coordinate from interval-relative to image-relative.

    Args:
        local: Coordinate along ``axis`` relative to the interval origin
        axis: 'X', 'Y' or 'Z'
        interval: Processed interval
        calibration: Pixel size along (x, y, z)

    Returns:
        local + interval.min(axis) * calibration[axis]
    """
    return local + interval.min(axis) * calibration[_AXIS_INDEX[axis.upper()]]


def local_to_global_frame(local_frame: int, interval: Interval) -> int:
    """Absolute frame index of a run-local frame index."""
    return local_frame + interval.min_time


def reposition_object(
    obj: DetectedObject,
    interval: Interval,
    calibration: Sequence[float],
    frame_interval: float = 1.0,
) -> DetectedObject:
    """
    Return a copy of ``obj`` moved from run-local to source-image coordinates.

    Spatial axes absent from the interval are left untouched.
    """
    position = {"x": obj.x, "y": obj.y, "z": obj.z}
    for axis in interval.spatial_axes:
        key = axis.lower()
        position[key] = local_to_global_position(position[key], axis, interval, calibration)
    frame = local_to_global_frame(obj.frame, interval)
    return replace(obj, frame=frame, t=frame * frame_interval, **position)


def reposition_objects(
    objects: Iterable[DetectedObject],
    interval: Interval,
    calibration: Sequence[float],
    frame_interval: float = 1.0,
) -> List[DetectedObject]:
    """
    Move every object from run-local to source-image coordinates.

    Inputs are not modified. Applying this twice shifts twice.

    Args:
        objects: Objects in interval-relative physical coordinates and
            run-local frames
        interval: Processed interval
        calibration: Pixel size along (x, y, z)
        frame_interval: Physical time between frames

    Returns:
        New list of repositioned objects
    """
    return [reposition_object(o, interval, calibration, frame_interval) for o in objects]

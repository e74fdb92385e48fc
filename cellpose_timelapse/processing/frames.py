"""
Image volumes, intervals and the per-timepoint frame splitter.

Axis convention: every volume is stored with its axes in ``T Z C Y X`` order
(a subset of it). X and Y are mandatory; Z, C and T are optional. Calibration
is given per spatial axis as ``(x, y, z)`` in physical units per pixel.

An :class:`Interval` selects what to process. It has no channel axis: the
channel the tool segments on is chosen on the tool's command line, so frames
always carry every channel.

Usage:
    from cellpose_timelapse.processing.frames import ImageVolume, Interval, split_frames

    volume = ImageVolume(stack, axes="TCYX", calibration=(0.2, 0.2, 1.0))
    interval = Interval(x=(10, 265), y=(0, 127), t=(3, 9))
    frames = split_frames(volume, interval)
    frames[0].global_index, frames[0].local_index  # 3, 0
"""

from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np

from cellpose_timelapse.utils.logging import get_logger

logger = get_logger(__name__)

CANONICAL_AXES = "TZCYX"
SPATIAL_AXES = ("X", "Y", "Z")


def default_frame_name(index: int) -> str:
    """Frame file stem for a local frame index: the index itself."""
    return f"{index:d}"


@dataclass
class ImageVolume:
    """
    An N-dimensional image with named axes and physical calibration.

    Attributes:
        data: Pixel array, one dimension per character of ``axes``
        axes: Axis labels drawn from ``TZCYX``; reordered to that order
        calibration: Physical size of one pixel along (x, y, z)
        frame_interval: Physical time between frames (1.0 without time axis)
        name: Display name, used to name the output volume
    """
    data: np.ndarray
    axes: str
    calibration: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    frame_interval: float = 1.0
    name: str = "image"

    def __post_init__(self):
        axes = self.axes.upper()
        if len(axes) != self.data.ndim:
            raise ValueError(
                f"Axes '{axes}' do not match array with {self.data.ndim} dimensions"
            )
        if len(set(axes)) != len(axes):
            raise ValueError(f"Duplicate axis in '{axes}'")
        unknown = set(axes) - set(CANONICAL_AXES)
        if unknown:
            raise ValueError(f"Unknown axes {sorted(unknown)} in '{axes}'")
        if "X" not in axes or "Y" not in axes:
            raise ValueError(f"Image must have X and Y axes, got '{axes}'")

        canonical = "".join(a for a in CANONICAL_AXES if a in axes)
        if canonical != axes:
            self.data = np.transpose(self.data, [axes.index(a) for a in canonical])
        self.axes = canonical

        calibration = tuple(float(c) for c in self.calibration)
        if len(calibration) == 2:
            calibration = calibration + (1.0,)
        if len(calibration) != 3 or any(c <= 0 for c in calibration):
            raise ValueError(f"Calibration must be 3 positive values, got {self.calibration}")
        self.calibration = calibration
        if self.frame_interval <= 0:
            raise ValueError(f"frame_interval must be positive, got {self.frame_interval}")

    def has_axis(self, axis: str) -> bool:
        return axis in self.axes

    def axis_index(self, axis: str) -> int:
        """Dimension index of an axis, -1 if absent."""
        return self.axes.find(axis)

    def size(self, axis: str) -> int:
        """Number of pixels along an axis, 1 if absent."""
        idx = self.axis_index(axis)
        return 1 if idx < 0 else int(self.data.shape[idx])


@dataclass(frozen=True)
class Interval:
    """
    Axis-aligned region to process, bounds inclusive.

    Time, when present, is always the last dimension.
    """
    x: Tuple[int, int]
    y: Tuple[int, int]
    z: Optional[Tuple[int, int]] = None
    t: Optional[Tuple[int, int]] = None

    def __post_init__(self):
        for axis, bounds in self._bounds():
            lo, hi = bounds
            if lo > hi:
                raise ValueError(f"Interval {axis} min {lo} is greater than max {hi}")
            if lo < 0:
                raise ValueError(f"Interval {axis} min {lo} is negative")

    def _bounds(self) -> List[Tuple[str, Tuple[int, int]]]:
        pairs = [("X", self.x), ("Y", self.y)]
        if self.z is not None:
            pairs.append(("Z", self.z))
        if self.t is not None:
            pairs.append(("T", self.t))
        return pairs

    @classmethod
    def full(cls, volume: ImageVolume) -> "Interval":
        """Interval covering the whole volume."""
        return cls(
            x=(0, volume.size("X") - 1),
            y=(0, volume.size("Y") - 1),
            z=(0, volume.size("Z") - 1) if volume.has_axis("Z") else None,
            t=(0, volume.size("T") - 1) if volume.has_axis("T") else None,
        )

    @property
    def num_dimensions(self) -> int:
        return len(self._bounds())

    @property
    def spatial_axes(self) -> Tuple[str, ...]:
        return ("X", "Y", "Z") if self.z is not None else ("X", "Y")

    def min(self, axis: str) -> int:
        return self._get(axis)[0]

    def max(self, axis: str) -> int:
        return self._get(axis)[1]

    @property
    def min_time(self) -> int:
        """First absolute time index, 0 without a time axis."""
        return self.t[0] if self.t is not None else 0

    def _get(self, axis: str) -> Tuple[int, int]:
        bounds = dict(self._bounds())
        if axis.upper() not in bounds:
            raise KeyError(f"Interval has no {axis} axis")
        return bounds[axis.upper()]


@dataclass
class Frame:
    """
    One timepoint of the cropped volume.

    Attributes:
        data: Cropped pixels, axes ``[Z][C]YX`` with every channel kept
        axes: Axis labels of ``data``
        global_index: Absolute time index in the source volume
        local_index: 0-based position in this run
        name: File stem used for the tool input and the expected mask
    """
    data: np.ndarray
    axes: str
    global_index: int
    local_index: int
    name: str = field(default="")

    @property
    def spatial_shape(self) -> Tuple[int, ...]:
        """Shape without the channel axis: ``([Z,] Y, X)``."""
        return tuple(
            n for a, n in zip(self.axes, self.data.shape) if a != "C"
        )

    @property
    def n_slices(self) -> int:
        idx = self.axes.find("Z")
        return 1 if idx < 0 else int(self.data.shape[idx])


def check_interval(volume: ImageVolume, interval: Interval) -> None:
    """
    Check that an interval fits inside a volume.

    Raises:
        ValueError: On a bound outside the image, a Z or T bound on a volume
            without that axis
    """
    for axis in ("X", "Y", "Z", "T"):
        bounds = getattr(interval, axis.lower())
        if bounds is None:
            continue
        if not volume.has_axis(axis):
            if axis == "T" and bounds == (0, 0):
                continue
            raise ValueError(f"Interval has a {axis} range but the image has no {axis} axis")
        if bounds[1] >= volume.size(axis):
            raise ValueError(
                f"Interval {axis} max {bounds[1]} is outside the image "
                f"(size {volume.size(axis)})"
            )


def _crop_slices(volume: ImageVolume, interval: Interval) -> Tuple[slice, ...]:
    """Slices for every non-time axis of the volume, in volume order."""
    slices = []
    for axis in volume.axes:
        if axis == "T":
            continue
        if axis == "C":
            # Channel selection is left to the tool
            slices.append(slice(None))
        elif axis == "Z" and interval.z is None:
            slices.append(slice(None))
        else:
            lo, hi = getattr(interval, axis.lower())
            slices.append(slice(lo, hi + 1))
    return tuple(slices)


def split_frames(
    volume: ImageVolume,
    interval: Interval,
    name_fn: Callable[[int], str] = default_frame_name,
) -> List[Frame]:
    """
    Crop a volume to an interval and split it into per-timepoint frames.

    Frames are renumbered from local index 0 even when the interval starts
    at a later time, so the tool never sees the original time offset. A Z
    range of one slice is dropped from the frames, which are then 2D.

    Args:
        volume: Source image
        interval: Region and time range to process
        name_fn: Maps a local frame index to a file stem

    Returns:
        Frames in time order

    Raises:
        ValueError: If the interval does not fit the volume
    """
    check_interval(volume, interval)
    crop = _crop_slices(volume, interval)
    frame_axes = volume.axes.replace("T", "")

    # A single Z slice is a 2D frame
    if "Z" in frame_axes:
        z_lo, z_hi = interval.z if interval.z is not None else (0, volume.size("Z") - 1)
        if z_hi == z_lo:
            z_pos = frame_axes.index("Z")
            crop = crop[:z_pos] + (z_lo,) + crop[z_pos + 1:]
            frame_axes = frame_axes.replace("Z", "")

    frames: List[Frame] = []
    t_index = volume.axis_index("T")
    if t_index < 0:
        data = np.array(volume.data[crop])
        frames.append(Frame(data, frame_axes, global_index=0, local_index=0, name=name_fn(0)))
    else:
        if interval.t is not None:
            t_min, t_max = interval.t
        else:
            t_min, t_max = 0, volume.size("T") - 1
        for local, t in enumerate(range(t_min, t_max + 1)):
            # Time is the first canonical axis
            data = np.array(volume.data[t][crop])
            frames.append(Frame(data, frame_axes, global_index=t, local_index=local, name=name_fn(local)))

    logger.debug(
        "Split %s into %d frame(s) of shape %s (axes %s)",
        volume.name, len(frames), frames[0].data.shape, frame_axes,
    )
    return frames

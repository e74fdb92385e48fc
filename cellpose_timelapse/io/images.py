"""
Image file I/O: time-lapse input, per-frame TIFFs for the tool, mask read-back.

Frames are written as ImageJ hyperstacks when the pixel type allows it so
that the tool sees the channel and Z axes. Masks come back as PNG (2D only)
or TIFF, depending on the output format requested from the tool.
"""

from pathlib import Path
from typing import TYPE_CHECKING, Optional, Tuple, Union

import numpy as np
import tifffile
from PIL import Image

from cellpose_timelapse.processing.frames import CANONICAL_AXES, Frame, ImageVolume
from cellpose_timelapse.utils.logging import get_logger

if TYPE_CHECKING:
    from cellpose_timelapse.detection.labels import LabelVolume

logger = get_logger(__name__)

# Pixel types an ImageJ hyperstack can hold
_IMAGEJ_DTYPES = (np.uint8, np.uint16, np.float32)


def write_frame(frame: Frame, directory: Union[str, Path]) -> Path:
    """
    Write a frame as ``{frame.name}.tif`` into a directory.

    Args:
        frame: Frame to write
        directory: Existing target directory

    Returns:
        Path of the written file
    """
    path = Path(directory) / f"{frame.name}.tif"
    if frame.data.dtype.type in _IMAGEJ_DTYPES:
        tifffile.imwrite(path, frame.data, imagej=True, metadata={"axes": frame.axes})
    else:
        tifffile.imwrite(path, frame.data, metadata={"axes": frame.axes})
    return path


def read_mask(path: Union[str, Path]) -> np.ndarray:
    """
    Read a label mask written by the tool.

    Args:
        path: PNG or TIFF file

    Returns:
        Label array, shape (Y, X) or (Z, Y, X)

    Raises:
        OSError: If the file cannot be read
    """
    path = Path(path)
    if path.suffix.lower() == ".png":
        with Image.open(path) as img:
            return np.asarray(img)
    return tifffile.imread(path)


def _pixel_size(page: "tifffile.TiffPage", tag: str) -> Optional[float]:
    res = page.tags.get(tag)
    if res is None:
        return None
    num, den = res.value
    if num == 0:
        return None
    return den / num


def _normalise_axes(axes: str) -> str:
    """Map tifffile series axes onto ``TZCYX``."""
    mapping = {"S": "C", "I": "T", "Q": "T"}
    axes = axes.upper()
    out = []
    for axis in axes:
        mapped = mapping.get(axis, axis)
        # A generic axis keeps its own label when its mapped name is already
        # taken, so read_volume rejects it instead of merging two axes
        if mapped != axis and (mapped in axes or mapped in out):
            mapped = axis
        out.append(mapped)
    return "".join(out)


def read_volume(
    path: Union[str, Path],
    axes: Optional[str] = None,
    calibration: Optional[Tuple[float, float, float]] = None,
    frame_interval: Optional[float] = None,
) -> ImageVolume:
    """
    Load a TIFF (or ImageJ hyperstack) as an ImageVolume.

    Axes, pixel size, Z spacing and frame interval are taken from the file
    metadata unless given explicitly.

    Args:
        path: TIFF file
        axes: Axis labels overriding the file's own (e.g. 'TCYX')
        calibration: (x, y, z) pixel size overriding the file's
        frame_interval: Time between frames overriding the file's

    Returns:
        ImageVolume named after the file stem

    Raises:
        ValueError: If the axes cannot be mapped onto TZCYX
    """
    path = Path(path)
    with tifffile.TiffFile(path) as tif:
        series = tif.series[0]
        data = series.asarray()
        file_axes = series.axes
        ij = tif.imagej_metadata or {}
        page = tif.pages[0]
        px = _pixel_size(page, "XResolution")
        py = _pixel_size(page, "YResolution")

    if axes is None:
        axes = _normalise_axes(file_axes)
    if any(a not in CANONICAL_AXES for a in axes.upper()):
        raise ValueError(
            f"Cannot interpret axes '{file_axes}' of {path.name}; pass the axes explicitly"
        )

    if calibration is None:
        px = px or 1.0
        calibration = (px, py or px, float(ij.get("spacing", 1.0)))
    if frame_interval is None:
        frame_interval = float(ij.get("finterval", 1.0)) or 1.0

    logger.info(
        "Loaded %s: shape %s, axes %s, calibration %s",
        path.name, data.shape, axes, calibration,
    )
    return ImageVolume(
        data=data,
        axes=axes,
        calibration=calibration,
        frame_interval=frame_interval,
        name=path.stem,
    )


def write_label_volume(label_volume: "LabelVolume", path: Union[str, Path]) -> Path:
    """
    Save reassembled masks as an ImageJ hyperstack with their calibration.

    Args:
        label_volume: Masks shaped (T, [Z,] Y, X)
        path: Target TIFF file

    Returns:
        Path of the written file
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    cx, cy, cz = label_volume.calibration
    axes = "TZYX" if label_volume.is_3d else "TYX"
    metadata = {"axes": axes, "finterval": label_volume.frame_interval}
    if label_volume.is_3d:
        metadata["spacing"] = cz
    tifffile.imwrite(
        path,
        label_volume.data.astype(np.uint16, copy=False),
        imagej=True,
        resolution=(1.0 / cx, 1.0 / cy),
        metadata=metadata,
    )
    return path

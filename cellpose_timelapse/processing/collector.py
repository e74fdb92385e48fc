"""
Gather per-frame masks from bucket output directories into one label volume.

A frame whose mask cannot be found in any bucket directory is replaced by a
blank mask, so a tool that skips a frame never fails the run.
"""

from pathlib import Path
from typing import Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from cellpose_timelapse.detection.labels import LabelVolume
from cellpose_timelapse.detection.settings import CellposeSettings
from cellpose_timelapse.io.images import read_mask
from cellpose_timelapse.processing.errors import PartialOutputMiss
from cellpose_timelapse.processing.frames import Frame
from cellpose_timelapse.utils.logging import get_logger
from cellpose_timelapse.utils.progress import NullProgressSink, ProgressSink

logger = get_logger(__name__)

MAX_LABEL = np.iinfo(np.uint16).max


def find_mask(file_name: str, output_dirs: Iterable[Optional[Union[str, Path]]]) -> Optional[Path]:
    """First ``output_dir / file_name`` that exists, in directory order."""
    for directory in output_dirs:
        if directory is None:
            continue
        path = Path(directory) / file_name
        if path.is_file():
            return path
    return None


def to_uint16(mask: np.ndarray, file_name: str = "") -> np.ndarray:
    """Convert a label mask to uint16, logging labels that do not fit."""
    if mask.dtype == np.uint16:
        return mask
    if mask.size and mask.max() > MAX_LABEL:
        logger.warning(
            f"{file_name}: labels up to {int(mask.max())} do not fit in 16 bits "
            f"and will wrap around"
        )
    return mask.astype(np.uint16)


def _load(path: Path, shape: Tuple[int, ...]) -> Optional[np.ndarray]:
    try:
        mask = read_mask(path)
    except (OSError, ValueError) as e:
        logger.warning(f"Could not read results file {path}: {e}")
        return None
    if mask.shape != shape:
        if mask.size == int(np.prod(shape)):
            mask = mask.reshape(shape)
        else:
            logger.warning(
                f"Results file {path.name} has shape {mask.shape}, expected {shape}"
            )
            return None
    return to_uint16(mask, path.name)


def collect_masks(
    frames: Sequence[Frame],
    output_dirs: Sequence[Optional[Union[str, Path]]],
    settings: CellposeSettings,
    calibration: Tuple[float, float, float] = (1.0, 1.0, 1.0),
    frame_interval: float = 1.0,
    name: str = "",
    sink: Optional[ProgressSink] = None,
) -> LabelVolume:
    """
    Reassemble the masks of all frames, in frame order.

    Args:
        frames: Every frame of the run, in local index order
        output_dirs: Bucket output directories, in bucket order
        settings: Tool settings, giving the mask file naming
        calibration: Pixel size along (x, y, z), copied onto the result
        frame_interval: Physical time between frames, copied onto the result
        name: Name of the source image
        sink: Receives a line per missing mask

    Returns:
        LabelVolume shaped (T, [Z,] Y, X)
    """
    if not frames:
        raise ValueError("No frames to collect")
    sink = sink or NullProgressSink()
    shape = frames[0].spatial_shape

    masks: List[np.ndarray] = []
    blank_frames: List[int] = []
    for frame in frames:
        file_name = settings.mask_file_name(frame.name)
        path = find_mask(file_name, output_dirs)
        mask = _load(path, shape) if path is not None else None
        if mask is None:
            message = f"Could not find results file for timepoint: {file_name}"
            logger.warning("%s: %s", PartialOutputMiss.__name__, message)
            sink.log(message + "\n")
            mask = np.zeros(shape, dtype=np.uint16)
            blank_frames.append(frame.local_index)
        masks.append(mask)

    data = np.stack(masks, axis=0)
    logger.debug(
        "Collected %d mask(s), %d blank, volume shape %s",
        len(masks), len(blank_frames), data.shape,
    )
    return LabelVolume(
        data=data,
        calibration=tuple(calibration),
        frame_interval=frame_interval,
        name=f"{name}_{settings.display_name}Output" if name else f"{settings.display_name}Output",
        blank_frames=blank_frames,
    )

"""
Label volumes and their conversion to detected objects.

A LabelVolume is the reassembled output of a run: one uint16 label image per
frame, 0 for background. A LabelImageDetector turns it into DetectedObjects
whose positions are in physical units and whose frames are local to the run;
moving them back into the source image's frame of reference is done
afterwards by the coordinate repositioner.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

import numpy as np
from skimage.measure import approximate_polygon, find_contours, regionprops

from cellpose_timelapse.processing.errors import DownstreamDetectionError
from cellpose_timelapse.utils.logging import get_logger

logger = get_logger(__name__)


@dataclass
class LabelVolume:
    """
    Stacked label masks of a run.

    Attributes:
        data: uint16 labels shaped (T, Y, X) or (T, Z, Y, X)
        calibration: Pixel size along (x, y, z)
        frame_interval: Physical time between frames
        name: Display name
        blank_frames: Local frame indices filled with a blank mask
    """
    data: np.ndarray
    calibration: Tuple[float, float, float] = (1.0, 1.0, 1.0)
    frame_interval: float = 1.0
    name: str = ""
    blank_frames: List[int] = field(default_factory=list)

    @property
    def n_frames(self) -> int:
        return int(self.data.shape[0])

    @property
    def is_3d(self) -> bool:
        return self.data.ndim == 4

    @property
    def spacing(self) -> Tuple[float, ...]:
        """Pixel size in array order: ([z,] y, x)."""
        cx, cy, cz = self.calibration
        return (cz, cy, cx) if self.is_3d else (cy, cx)


@dataclass
class DetectedObject:
    """
    One segmented object.

    Attributes:
        x, y, z: Centre in physical units (z is 0 in 2D)
        frame: Frame index
        t: Physical time of the frame
        radius: Radius of the disc (2D) or sphere (3D) of equal size
        area: Physical area (2D) or volume (3D)
        quality: Detection quality, the object size
        label: Label value in its mask
        contour: Polygon as [x, y] pairs relative to the centre, 2D only
    """
    x: float
    y: float
    z: float = 0.0
    frame: int = 0
    t: float = 0.0
    radius: float = 0.0
    area: float = 0.0
    quality: float = 0.0
    label: int = 0
    contour: Optional[List[List[float]]] = None

    @property
    def position(self) -> Tuple[float, float, float]:
        return (self.x, self.y, self.z)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            'x': self.x,
            'y': self.y,
            'z': self.z,
            'frame': self.frame,
            't': self.t,
            'radius': self.radius,
            'area': self.area,
            'quality': self.quality,
            'label': self.label,
            'contour': self.contour,
        }


class LabelImageDetector(ABC):
    """
    Converts a label volume into detected objects.

    Implementations report positions in physical units relative to the
    label volume's origin and frames relative to its first frame.
    """

    @abstractmethod
    def detect(self, label_volume: LabelVolume) -> List[DetectedObject]:
        """
        Detect one object per label per frame.

        Raises:
            DownstreamDetectionError: If the conversion fails
        """
        pass


def equivalent_radius(size: float, ndim: int) -> float:
    """Radius of the disc (2D) or sphere (3D) with the given area or volume."""
    if ndim == 3:
        return float((3.0 * size / (4.0 * np.pi)) ** (1.0 / 3.0))
    return float(np.sqrt(size / np.pi))


class RegionPropsLabelDetector(LabelImageDetector):
    """
    Label-to-objects conversion with scikit-image region properties.

    Args:
        simplify_contours: Simplify 2D contours with a 0.5 pixel tolerance
        compute_contours: Attach contours to 2D objects
    """

    CONTOUR_TOLERANCE_PX = 0.5

    def __init__(self, simplify_contours: bool = True, compute_contours: bool = True):
        self.simplify_contours = simplify_contours
        self.compute_contours = compute_contours

    def detect(self, label_volume: LabelVolume) -> List[DetectedObject]:
        objects: List[DetectedObject] = []
        try:
            for frame in range(label_volume.n_frames):
                objects.extend(self._detect_frame(label_volume, frame))
        except Exception as e:
            logger.exception("Label-to-objects conversion failed")
            raise DownstreamDetectionError(
                f"Could not convert label image to objects: {e}"
            ) from e
        logger.info(
            "Found %d object(s) in %d frame(s)", len(objects), label_volume.n_frames
        )
        return objects

    def _detect_frame(self, volume: LabelVolume, frame: int) -> List[DetectedObject]:
        labels = np.asarray(volume.data[frame])
        if not labels.any():
            return []
        spacing = np.asarray(volume.spacing, dtype=float)
        voxel_size = float(np.prod(spacing))
        t = frame * volume.frame_interval

        objects = []
        for prop in regionprops(labels.astype(np.int64, copy=False)):
            # coords are in array order ([z,] y, x)
            centre = prop.coords.mean(axis=0) * spacing
            size = len(prop.coords) * voxel_size
            if volume.is_3d:
                z, y, x = (float(c) for c in centre)
            else:
                y, x = (float(c) for c in centre)
                z = 0.0

            contour = None
            if not volume.is_3d and self.compute_contours:
                contour = self._contour(prop, spacing, x, y)

            objects.append(DetectedObject(
                x=x,
                y=y,
                z=z,
                frame=frame,
                t=t,
                radius=equivalent_radius(size, labels.ndim),
                area=size,
                quality=size,
                label=int(prop.label),
                contour=contour,
            ))
        return objects

    def _contour(self, prop, spacing: np.ndarray, cx: float, cy: float) -> Optional[List[List[float]]]:
        """Outer boundary of a 2D region as [x, y] pairs relative to (cx, cy)."""
        # Pad so regions touching the bbox edge still give closed contours
        padded = np.pad(prop.image, 1).astype(float)
        contours = find_contours(padded, 0.5)
        if not contours:
            return None
        contour = max(contours, key=len)
        if self.simplify_contours:
            contour = approximate_polygon(contour, tolerance=self.CONTOUR_TOLERANCE_PX)

        min_row, min_col = prop.bbox[0], prop.bbox[1]
        rows = (contour[:, 0] - 1 + min_row) * spacing[0]
        cols = (contour[:, 1] - 1 + min_col) * spacing[1]
        return [[float(c - cx), float(r - cy)] for r, c in zip(rows, cols)]

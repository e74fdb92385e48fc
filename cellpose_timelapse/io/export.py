"""Write detections to JSON (validated against the export schema) and CSV."""

from pathlib import Path
from typing import Any, Dict, Iterable, Optional, Union

import pandas as pd

from cellpose_timelapse.detection.labels import DetectedObject
from cellpose_timelapse.utils.json_utils import atomic_json_dump
from cellpose_timelapse.utils.logging import get_logger
from cellpose_timelapse.utils.schemas import DetectionFile

logger = get_logger(__name__)

CSV_COLUMNS = ["label", "frame", "t", "x", "y", "z", "radius", "area", "quality"]


def detections_to_dataframe(objects: Iterable[DetectedObject]) -> pd.DataFrame:
    """One row per object, contours dropped, sorted by frame then label."""
    rows = [{k: v for k, v in o.to_dict().items() if k != "contour"} for o in objects]
    df = pd.DataFrame(rows, columns=CSV_COLUMNS)
    if not df.empty:
        df = df.sort_values(["frame", "label"], kind="stable").reset_index(drop=True)
    return df


def write_detections_csv(objects: Iterable[DetectedObject], path: Union[str, Path]) -> Path:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    df = detections_to_dataframe(objects)
    df.to_csv(path, index=False)
    logger.info(f"Wrote {len(df)} detection(s) to {path}")
    return path


def write_detections_json(
    outcome: Any,
    path: Union[str, Path],
    image: str,
    tool: str,
    calibration,
    frame_interval: float,
    parameters: Optional[Dict[str, Any]] = None,
) -> Path:
    """
    Validate and atomically write a detections.json export.

    Args:
        outcome: DetectionOutcome of a successful run
        path: Target file
        image: Source image name
        tool: Tool key
        calibration: Pixel size along (x, y, z)
        frame_interval: Physical time between frames
        parameters: Run parameters recorded alongside the detections

    Returns:
        Path of the written file
    """
    export = DetectionFile.from_outcome(
        outcome,
        image=image,
        tool=tool,
        calibration=list(calibration),
        frame_interval=frame_interval,
        parameters=parameters,
    )
    path = Path(path)
    atomic_json_dump(export.model_dump(mode="json"), path, indent=2)
    logger.info(f"Wrote {export.n_detections} detection(s) to {path}")
    return path

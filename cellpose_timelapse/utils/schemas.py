"""
JSON schemas for exported detections.

Uses Pydantic for validation with clear error messages.

Usage:
    from cellpose_timelapse.utils.schemas import DetectionFile, validate_detection_file

    # Build and validate an export
    export = DetectionFile.from_outcome(outcome, image="movie", tool="cellpose")

    # Validate a file
    detections = validate_detection_file("/path/to/detections.json")
"""

from __future__ import annotations

import json
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Detection Schemas
# =============================================================================

class DetectedObjectRecord(BaseModel):
    """A single detected object, in source-image coordinates."""
    x: float
    y: float
    z: float = 0.0
    frame: int = Field(..., ge=0)
    t: float
    radius: float = Field(..., ge=0)
    area: float = Field(..., ge=0)
    quality: float
    label: int = Field(..., ge=1)
    contour: Optional[List[List[float]]] = None

    @field_validator('contour')
    @classmethod
    def validate_contour(cls, v: Optional[List[List[float]]]) -> Optional[List[List[float]]]:
        """Every contour vertex is an [x, y] pair."""
        if v is None:
            return v
        for point in v:
            if len(point) != 2:
                raise ValueError(f"Contour points must be [x, y], got {point}")
        return v


class DetectionFile(BaseModel):
    """A detections.json export."""
    image: str
    tool: str
    created: datetime = Field(default_factory=datetime.now)
    calibration: List[float] = Field(..., min_length=3, max_length=3)
    frame_interval: float = Field(..., gt=0)
    elapsed_seconds: float = Field(..., ge=0)
    blank_frames: List[int] = Field(default_factory=list)
    parameters: Dict[str, Any] = Field(default_factory=dict)
    detections: List[DetectedObjectRecord]

    model_config = ConfigDict(extra="allow")

    @property
    def n_detections(self) -> int:
        return len(self.detections)

    @classmethod
    def from_outcome(
        cls,
        outcome: Any,
        image: str,
        tool: str,
        calibration: List[float],
        frame_interval: float,
        parameters: Optional[Dict[str, Any]] = None,
    ) -> "DetectionFile":
        """Build an export from a DetectionOutcome."""
        blank = outcome.label_volume.blank_frames if outcome.label_volume is not None else []
        return cls(
            image=image,
            tool=tool,
            calibration=list(calibration),
            frame_interval=frame_interval,
            elapsed_seconds=outcome.elapsed_seconds,
            blank_frames=list(blank),
            parameters=parameters or {},
            detections=[DetectedObjectRecord(**o.to_dict()) for o in outcome.objects],
        )


# =============================================================================
# Validation Functions
# =============================================================================

def validate_json_file(
    file_path: Union[str, Path],
    schema: type[BaseModel],
    raise_on_error: bool = True
) -> Optional[BaseModel]:
    """
    Validate a JSON file against a schema.

    Args:
        file_path: Path to JSON file
        schema: Pydantic model class to validate against
        raise_on_error: If True, raise exception on validation error

    Returns:
        Validated model instance, or None if validation fails and raise_on_error=False
    """
    file_path = Path(file_path)

    if not file_path.exists():
        if raise_on_error:
            raise FileNotFoundError(f"File not found: {file_path}")
        return None

    try:
        with open(file_path, 'r') as f:
            data = json.load(f)

        return schema.model_validate(data)

    except json.JSONDecodeError as e:
        if raise_on_error:
            raise ValueError(f"Invalid JSON in {file_path}: {e}")
        return None

    except Exception as e:
        if raise_on_error:
            raise ValueError(f"Validation failed for {file_path}: {e}")
        return None


def validate_detection_file(
    file_path: Union[str, Path],
    raise_on_error: bool = True
) -> Optional[DetectionFile]:
    """Validate a detections.json file."""
    return validate_json_file(file_path, DetectionFile, raise_on_error)

"""
Wrapped tool settings and label-to-objects conversion.

Provides:
- Cellpose / Omnipose settings and their command lines
- The tool registry
- Label volumes, detected objects and the regionprops-based detector
"""

from .settings import (
    PretrainedModel,
    CustomModel,
    CellposeSettings,
    AdvancedCellposeSettings,
    OmniposeSettings,
    AdvancedOmniposeSettings,
)

from .registry import ToolRegistry

from .labels import (
    LabelVolume,
    DetectedObject,
    LabelImageDetector,
    RegionPropsLabelDetector,
)

__all__ = [
    'PretrainedModel',
    'CustomModel',
    'CellposeSettings',
    'AdvancedCellposeSettings',
    'OmniposeSettings',
    'AdvancedOmniposeSettings',
    'ToolRegistry',
    'LabelVolume',
    'DetectedObject',
    'LabelImageDetector',
    'RegionPropsLabelDetector',
]

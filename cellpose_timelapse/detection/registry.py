"""
Tool registry for the wrapped segmentation tools.

Maps tool keys to their settings classes and builds settings from plain
parameter dicts (CLI arguments, config files).

Usage:
    from cellpose_timelapse.detection.registry import ToolRegistry

    # Create settings from physical parameters
    settings = ToolRegistry.settings_from_dict(
        'cellpose',
        {'executable': '/opt/envs/cellpose/bin/python', 'diameter_um': 8.0},
        calibration=(0.2, 0.2, 1.0),
    )

    # List available tools
    available = ToolRegistry.list_tools()
"""

from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Type

from cellpose_timelapse.detection.settings import (
    AdvancedCellposeSettings,
    AdvancedOmniposeSettings,
    CellposeSettings,
    CustomModel,
    OmniposeSettings,
    PretrainedModel,
)
from cellpose_timelapse.utils.config import get_tool_defaults
from cellpose_timelapse.utils.logging import get_logger

logger = get_logger(__name__)

_ADVANCED_FLOAT_KEYS = ("flow_threshold", "cellprob_threshold", "stitch_threshold")


class ToolRegistry:
    """
    Registry for tool settings classes.

    A class-based registry (not instantiated).

    Attributes:
        _registry: Dict mapping tool keys to settings classes
    """

    _registry: Dict[str, Type[CellposeSettings]] = {}

    @classmethod
    def register(cls, tool: str, settings_class: Type[CellposeSettings]) -> None:
        """
        Register a settings class for a tool key.

        Raises:
            TypeError: If settings_class is not a subclass of CellposeSettings
        """
        if not isinstance(settings_class, type) or not issubclass(settings_class, CellposeSettings):
            raise TypeError(
                f"settings_class must be a subclass of CellposeSettings, "
                f"got {type(settings_class)}"
            )
        cls._registry[tool] = settings_class

    @classmethod
    def get_settings_class(cls, tool: str) -> Type[CellposeSettings]:
        """
        Get the settings class for a tool key.

        Raises:
            KeyError: If tool is not registered
        """
        if tool not in cls._registry:
            available = ', '.join(cls._registry.keys())
            raise KeyError(f"Unknown tool '{tool}'. Available tools: {available}")
        return cls._registry[tool]

    @classmethod
    def create(cls, tool: str, **kwargs: Any) -> CellposeSettings:
        """Instantiate the settings class of a tool with keyword arguments."""
        return cls.get_settings_class(tool)(**kwargs)

    @classmethod
    def list_tools(cls) -> List[str]:
        return list(cls._registry.keys())

    @classmethod
    def settings_from_dict(
        cls,
        tool: str,
        params: Dict[str, Any],
        calibration: Sequence[float] = (1.0, 1.0, 1.0),
        config: Optional[dict] = None,
        check_executable: bool = True,
    ) -> CellposeSettings:
        """
        Build tool settings from a parameter dict in physical units.

        Missing keys fall back to the tool's configured defaults. The
        object diameter is given in physical units (``diameter_um``) and
        converted to pixels with the X calibration.

        Args:
            tool: Tool key (e.g., 'cellpose', 'omnipose_advanced')
            params: Parameters; keys ``executable``, ``model``,
                ``custom_model``, ``chan``, ``chan2``, ``diameter_um``,
                ``use_gpu``, ``simplify_contours``, ``do_3d``,
                ``output_format``, and for advanced tools
                ``flow_threshold``, ``cellprob_threshold``, ``stitch_threshold``
                and ``resample``
            calibration: Pixel size along (x, y, z)
            config: Config dict (defaults to DEFAULT_CONFIG)
            check_executable: Require the executable to exist

        Returns:
            Settings instance

        Raises:
            KeyError: If tool is not registered
            ValueError: If the executable does not exist or a value is invalid
        """
        settings_class = cls.get_settings_class(tool)
        merged = get_tool_defaults(tool, config)
        merged.update({k: v for k, v in params.items() if v is not None})

        executable = str(merged.get("executable") or "")
        if check_executable:
            if not executable:
                raise ValueError(f"No executable configured for {settings_class.display_name}")
            if not Path(executable).exists():
                raise ValueError(
                    f"{settings_class.display_name} executable does not exist: {executable}"
                )

        if merged.get("custom_model"):
            model = CustomModel(str(merged["custom_model"]))
        else:
            model = PretrainedModel(str(merged.get("model", "cyto")))

        pixel_size = float(calibration[0])
        diameter = float(merged.get("diameter_um", 0.0)) / pixel_size

        kwargs: Dict[str, Any] = {
            "executable_path": executable,
            "model": model,
            "chan": int(merged.get("chan", 0)),
            "chan2": int(merged.get("chan2", -1)),
            "diameter": diameter,
            "use_gpu": bool(merged.get("use_gpu", True)),
            "simplify_contours": bool(merged.get("simplify_contours", True)),
            "do_3d": bool(merged.get("do_3d", False)),
            "output_format": str(merged.get("output_format", "png")),
        }
        if tool.endswith("_advanced"):
            for key in _ADVANCED_FLOAT_KEYS:
                if key in merged:
                    kwargs[key] = float(merged[key])
            if "resample" in merged:
                kwargs["resample"] = bool(merged["resample"])

        settings = settings_class(**kwargs)
        logger.debug("Built %s settings: %s", tool, settings)
        return settings


# Auto-register the supported tools
ToolRegistry.register('cellpose', CellposeSettings)
ToolRegistry.register('cellpose_advanced', AdvancedCellposeSettings)
ToolRegistry.register('omnipose', OmniposeSettings)
ToolRegistry.register('omnipose_advanced', AdvancedOmniposeSettings)

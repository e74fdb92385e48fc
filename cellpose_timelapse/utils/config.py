"""
Unified configuration module for cellpose-timelapse.

Provides centralized defaults and config file loading/saving for:
- Orchestration (thread count, log polling, temp directories)
- Wrapped tools (Cellpose, Omnipose executables)

Usage:
    from cellpose_timelapse.utils.config import load_config, DEFAULT_CONFIG

    # Load config with defaults
    config = load_config('/path/to/config.json')

    # Read one option
    poll = get_processing_option('log_poll_interval_s', config)

Environment Variables:
    CELLPOSE_PYTHON: Default Cellpose python interpreter or executable
    OMNIPOSE_PYTHON: Default Omnipose python interpreter or executable
    CELLPOSE_TIMELAPSE_TMPDIR: Root directory for per-bucket temp directories
"""

import copy
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, TypedDict, Union

from cellpose_timelapse.utils.json_utils import NumpyEncoder as _NumpyEncoder
from cellpose_timelapse.utils.logging import get_logger

logger = get_logger(__name__)


# =============================================================================
# CONFIGURATION TYPE DEFINITIONS
# =============================================================================

class ProcessingConfig(TypedDict, total=False):
    """
    Orchestration configuration.

    Attributes:
        num_threads: Concurrent tool processes when multiprocessing applies.
            None means half the logical CPU count. Valid range: 1-64.
        multiprocess_platforms: ``sys.platform`` values on which several
            CPU-only tool processes run faster than one.
        log_poll_interval_s: Seconds between polls of the tool log file.
            Valid range: 0.01-10.0.
        fail_on_nonzero_exit: Treat a non-zero tool exit code as a bucket
            failure. Off by default: success is judged by the mask files.
        temp_dir: Root for per-bucket temp directories (None = system tmp).
        temp_prefix: Prefix of per-bucket temp directory names.
        min_ram_gb_per_process: RAM budget per concurrent tool process.
            Valid range: 0.5-64.0.
    """
    num_threads: Optional[int]
    multiprocess_platforms: List[str]
    log_poll_interval_s: float
    fail_on_nonzero_exit: bool
    temp_dir: Optional[str]
    temp_prefix: str
    min_ram_gb_per_process: float


class ToolConfig(TypedDict, total=False):
    """
    Per-tool defaults.

    Attributes:
        executable: Python interpreter or tool executable.
        model: Pretrained model name.
        diameter_um: Object diameter in physical units (0 = auto).
        use_gpu: Run the tool on GPU.
    """
    executable: str
    model: str
    diameter_um: float
    use_gpu: bool


# Validation constraints for each config section
_VALIDATION_RULES: Dict[str, Dict[str, Any]] = {
    "processing": {
        "num_threads": {"min": 1, "max": 64, "type": int},
        "log_poll_interval_s": {"min": 0.01, "max": 10.0, "type": float},
        "min_ram_gb_per_process": {"min": 0.5, "max": 64.0, "type": float},
    },
    "tools": {
        "diameter_um": {"min": 0.0, "max": 10000.0, "type": float},
        "stitch_threshold": {"min": 0.0, "max": 1.0, "type": float},
    },
}


# Environment-based paths (with sensible defaults)
DEFAULT_PATHS = {
    "cellpose_executable": os.getenv(
        "CELLPOSE_PYTHON", "/opt/anaconda3/envs/cellpose/bin/python"
    ),
    "omnipose_executable": os.getenv(
        "OMNIPOSE_PYTHON", "/opt/anaconda3/envs/omnipose/bin/python"
    ),
    "temp_dir": os.getenv("CELLPOSE_TIMELAPSE_TMPDIR"),
}


# Default configuration values
DEFAULT_CONFIG: Dict[str, Any] = {
    "processing": {
        "num_threads": None,
        # Several CPU-only processes only pay off on macOS. On Windows and
        # Linux one process already uses every core.
        "multiprocess_platforms": ["darwin"],
        "log_poll_interval_s": 0.2,
        "fail_on_nonzero_exit": False,
        "temp_dir": DEFAULT_PATHS["temp_dir"],
        "temp_prefix": "cellpose_timelapse_",
        "min_ram_gb_per_process": 2.0,
    },
    "tools": {
        "cellpose": {
            "executable": DEFAULT_PATHS["cellpose_executable"],
            "model": "cyto",
            "diameter_um": 30.0,
            "use_gpu": True,
        },
        "omnipose": {
            "executable": DEFAULT_PATHS["omnipose_executable"],
            "model": "bact_phase_omni",
            "diameter_um": 30.0,
            "use_gpu": True,
        },
    },
}


def _deep_merge(base: Dict[str, Any], override: Dict[str, Any]) -> None:
    """
    Recursively merge override dict into base dict (in-place).

    For nested dicts, merges keys rather than replacing the entire dict.
    For all other types (including lists), override values are deep-copied
    to prevent shared mutable references between base and override.

    Args:
        base: Base dictionary to merge into (modified in-place)
        override: Dictionary with values to overlay on base
    """
    for key, value in override.items():
        if (
            key in base
            and isinstance(base[key], dict)
            and isinstance(value, dict)
        ):
            _deep_merge(base[key], value)
        else:
            base[key] = copy.deepcopy(value)


def load_config(
    config_path: Optional[Union[str, Path]] = None,
    validate: bool = True,
) -> Dict[str, Any]:
    """
    Load configuration from a JSON file.

    Merges with DEFAULT_CONFIG, so missing values use defaults.

    Args:
        config_path: Path to a JSON config file (None = defaults only)
        validate: Raise ConfigValidationError on invalid values

    Returns:
        Dict with merged configuration

    Raises:
        ConfigValidationError: If the file cannot be parsed or, with
            ``validate``, a value is out of range
    """
    config = copy.deepcopy(DEFAULT_CONFIG)

    if config_path is not None:
        config_path = Path(config_path)
        try:
            with open(config_path, 'r') as f:
                file_config = json.load(f)
        except (json.JSONDecodeError, OSError) as e:
            raise ConfigValidationError(
                f"Could not load config from {config_path}: {e}"
            ) from e
        if not isinstance(file_config, dict):
            raise ConfigValidationError(
                f"Config file {config_path} must contain a JSON object"
            )
        _deep_merge(config, file_config)
        logger.debug("Loaded config overrides from %s", config_path)

    if validate:
        validate_config(config, raise_on_error=True)

    return config


def save_config(
    config: Dict[str, Any],
    config_path: Union[str, Path],
) -> Path:
    """
    Save configuration to a JSON file.

    Args:
        config: Configuration dict to save
        config_path: Target file

    Returns:
        Path to saved config file
    """
    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, 'w') as f:
        json.dump(config, f, cls=_NumpyEncoder, indent=2)

    return config_path


def get_processing_option(key: str, config: Optional[Dict[str, Any]] = None) -> Any:
    """
    Get one option from the ``processing`` section.

    Args:
        key: Option name (e.g., 'log_poll_interval_s')
        config: Config dict (defaults to DEFAULT_CONFIG)

    Returns:
        The configured value, falling back to the default

    Raises:
        KeyError: If key is not a known processing option
    """
    if key not in DEFAULT_CONFIG["processing"]:
        valid_keys = ', '.join(DEFAULT_CONFIG["processing"].keys())
        raise KeyError(f"Unknown processing option: {key}. Valid keys: {valid_keys}")
    section = (config or DEFAULT_CONFIG).get("processing", {})
    return section.get(key, DEFAULT_CONFIG["processing"][key])


def get_tool_defaults(tool: str, config: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """
    Get default parameters for a wrapped tool.

    ``cellpose_advanced`` and ``omnipose_advanced`` share the defaults of
    their base tool.

    Args:
        tool: Tool key (e.g., 'cellpose', 'omnipose_advanced')
        config: Config dict (defaults to DEFAULT_CONFIG)

    Returns:
        Copy of the tool's defaults (empty dict if unknown)
    """
    base = tool.split("_", 1)[0]
    tools = (config or DEFAULT_CONFIG).get("tools", {})
    return copy.deepcopy(tools.get(base, {}))


# =============================================================================
# CONFIGURATION VALIDATION
# =============================================================================

class ConfigValidationError(Exception):
    """Raised when configuration validation fails."""
    pass


def _validate_range(
    value: Union[int, float],
    key: str,
    min_val: Union[int, float],
    max_val: Union[int, float],
    expected_type: Union[type, Tuple[type, ...]]
) -> List[str]:
    """
    Validate a single value is within expected range and type.

    Args:
        value: The value to validate
        key: Name of the config key (for error messages)
        min_val: Minimum allowed value
        max_val: Maximum allowed value
        expected_type: Expected type (int, float, or tuple of types)

    Returns:
        List of error messages (empty if valid)
    """
    errors = []

    # bool is an int subclass, never a valid number here
    if isinstance(value, bool):
        errors.append(f"{key}: expected numeric type, got bool")
        return errors

    # Type check (allow int for float fields)
    if expected_type == float:
        if not isinstance(value, (int, float)):
            errors.append(f"{key}: expected numeric type, got {type(value).__name__}")
            return errors
    elif not isinstance(value, expected_type):
        errors.append(f"{key}: expected {expected_type.__name__}, got {type(value).__name__}")
        return errors

    if value < min_val or value > max_val:
        errors.append(f"{key}: value {value} out of range [{min_val}, {max_val}]")

    return errors


def validate_config(
    config: Optional[Dict[str, Any]] = None,
    raise_on_error: bool = False
) -> Dict[str, Union[bool, List[str]]]:
    """
    Validate a configuration dict against expected types and ranges.

    Args:
        config: Config dict (like DEFAULT_CONFIG). If None, validates the
            global DEFAULT_CONFIG.
        raise_on_error: If True, raises ConfigValidationError listing all
            errors. If False (default), returns them.

    Returns:
        Dict with validation results:
            - 'valid': bool, True if all validations passed
            - 'errors': List of error message strings
            - 'warnings': List of warning message strings

    Raises:
        ConfigValidationError: If raise_on_error=True and validation fails

    Example:
        >>> result = validate_config({"processing": {"num_threads": 0}})
        >>> result['errors']
        ['processing.num_threads: value 0 out of range [1, 64]']
    """
    errors: List[str] = []
    warnings: List[str] = []

    if config is None:
        config = DEFAULT_CONFIG

    processing = config.get("processing", {})
    for key, rule in _VALIDATION_RULES["processing"].items():
        value = processing.get(key)
        if value is None:
            continue
        errors.extend(_validate_range(
            value, f"processing.{key}", rule["min"], rule["max"], rule["type"]
        ))

    platforms = processing.get("multiprocess_platforms", [])
    if not isinstance(platforms, list) or not all(isinstance(p, str) for p in platforms):
        errors.append("processing.multiprocess_platforms: expected a list of strings")

    for flag in ("fail_on_nonzero_exit",):
        if flag in processing and not isinstance(processing[flag], bool):
            errors.append(f"processing.{flag}: expected bool, got {type(processing[flag]).__name__}")

    for tool, params in config.get("tools", {}).items():
        if not isinstance(params, dict):
            errors.append(f"tools.{tool}: expected a mapping")
            continue
        for key, rule in _VALIDATION_RULES["tools"].items():
            if key in params:
                errors.extend(_validate_range(
                    params[key], f"tools.{tool}.{key}", rule["min"], rule["max"], rule["type"]
                ))
        if not params.get("executable"):
            warnings.append(f"tools.{tool}.executable is not set")

    result = {
        "valid": len(errors) == 0,
        "errors": errors,
        "warnings": warnings,
    }

    if raise_on_error and errors:
        raise ConfigValidationError("Invalid configuration:\n  " + "\n  ".join(errors))

    return result

"""
Utility modules for cellpose-timelapse.

Provides:
- Configuration management
- Logging utilities
- Progress sinks
- JSON helpers and export schema validation (requires pydantic)
"""

from .config import (
    DEFAULT_CONFIG,
    DEFAULT_PATHS,
    ConfigValidationError,
    load_config,
    save_config,
    validate_config,
    get_processing_option,
    get_tool_defaults,
)

from .logging import (
    get_logger,
    setup_logging,
    log_parameters,
    log_processing_end,
    ProcessingTimer,
)

from .progress import (
    ProgressSink,
    NullProgressSink,
    TqdmProgressSink,
)

from .json_utils import (
    NumpyEncoder,
    sanitize_for_json,
    atomic_json_dump,
)

__all__ = [
    # Config
    'DEFAULT_CONFIG',
    'DEFAULT_PATHS',
    'ConfigValidationError',
    'load_config',
    'save_config',
    'validate_config',
    'get_processing_option',
    'get_tool_defaults',
    # Logging
    'get_logger',
    'setup_logging',
    'log_parameters',
    'log_processing_end',
    'ProcessingTimer',
    # Progress
    'ProgressSink',
    'NullProgressSink',
    'TqdmProgressSink',
    # JSON
    'NumpyEncoder',
    'sanitize_for_json',
    'atomic_json_dump',
]

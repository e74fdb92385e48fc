"""
Unit tests for the utility modules.

Tests the following modules:
- cellpose_timelapse/utils/config.py - Configuration loading and validation
- cellpose_timelapse/utils/json_utils.py - numpy-safe JSON writing
- cellpose_timelapse/utils/logging.py - Logging helpers
- cellpose_timelapse/processing/memory.py - Process count and resource checks

Run with: pytest tests/test_utils.py -v
"""

import json
import logging
import tempfile
from pathlib import Path
from unittest import TestCase
from unittest.mock import MagicMock, patch

import numpy as np


# =============================================================================
# CONFIG MODULE TESTS
# =============================================================================

class TestLoadConfig(TestCase):
    """Tests for load_config() and save_config()."""

    def setUp(self):
        self.temp_dir = Path(tempfile.mkdtemp())

    def tearDown(self):
        import shutil
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def test_defaults_without_file(self):
        from cellpose_timelapse.utils.config import DEFAULT_CONFIG, load_config

        config = load_config()

        self.assertEqual(config, DEFAULT_CONFIG)
        self.assertIsNot(config, DEFAULT_CONFIG)

    def test_file_overrides_are_merged(self):
        from cellpose_timelapse.utils.config import load_config

        path = self.temp_dir / "config.json"
        path.write_text(json.dumps({
            "processing": {"num_threads": 3},
            "tools": {"cellpose": {"model": "nuclei"}},
        }))

        config = load_config(path)

        self.assertEqual(config["processing"]["num_threads"], 3)
        self.assertEqual(config["processing"]["log_poll_interval_s"], 0.2)
        self.assertEqual(config["tools"]["cellpose"]["model"], "nuclei")
        self.assertEqual(config["tools"]["cellpose"]["diameter_um"], 30.0)

    def test_invalid_json_raises(self):
        from cellpose_timelapse.utils.config import ConfigValidationError, load_config

        path = self.temp_dir / "broken.json"
        path.write_text("{not json")

        with self.assertRaises(ConfigValidationError):
            load_config(path)

    def test_invalid_value_raises(self):
        from cellpose_timelapse.utils.config import ConfigValidationError, load_config

        path = self.temp_dir / "bad.json"
        path.write_text(json.dumps({"processing": {"num_threads": 0}}))

        with self.assertRaises(ConfigValidationError):
            load_config(path)

    def test_save_and_reload(self):
        from cellpose_timelapse.utils.config import load_config, save_config

        config = load_config()
        config["processing"]["num_threads"] = 4
        path = save_config(config, self.temp_dir / "nested" / "config.json")

        self.assertEqual(load_config(path)["processing"]["num_threads"], 4)


class TestConfigOptions(TestCase):
    """Tests for get_processing_option() and get_tool_defaults()."""

    def test_processing_option_default(self):
        from cellpose_timelapse.utils.config import get_processing_option

        self.assertEqual(get_processing_option("multiprocess_platforms"), ["darwin"])
        self.assertFalse(get_processing_option("fail_on_nonzero_exit"))

    def test_processing_option_from_partial_config(self):
        from cellpose_timelapse.utils.config import get_processing_option

        config = {"processing": {"temp_prefix": "x_"}}

        self.assertEqual(get_processing_option("temp_prefix", config), "x_")
        self.assertEqual(get_processing_option("log_poll_interval_s", config), 0.2)

    def test_processing_option_unknown_key(self):
        from cellpose_timelapse.utils.config import get_processing_option

        with self.assertRaises(KeyError):
            get_processing_option("tile_size")

    def test_tool_defaults_advanced_share_base(self):
        from cellpose_timelapse.utils.config import get_tool_defaults

        self.assertEqual(get_tool_defaults("omnipose_advanced")["model"], "bact_phase_omni")

    def test_tool_defaults_unknown_returns_empty(self):
        from cellpose_timelapse.utils.config import get_tool_defaults

        self.assertEqual(get_tool_defaults("stardist"), {})

    def test_tool_defaults_returns_copy(self):
        from cellpose_timelapse.utils.config import DEFAULT_CONFIG, get_tool_defaults

        defaults = get_tool_defaults("cellpose")
        defaults["model"] = "changed"

        self.assertEqual(DEFAULT_CONFIG["tools"]["cellpose"]["model"], "cyto")


class TestConfigValidation(TestCase):
    """Tests for validate_config()."""

    def test_default_config_passes(self):
        from cellpose_timelapse.utils.config import validate_config

        result = validate_config()

        self.assertTrue(result["valid"])
        self.assertEqual(result["errors"], [])

    def test_num_threads_out_of_range(self):
        from cellpose_timelapse.utils.config import validate_config

        result = validate_config({"processing": {"num_threads": 0}})

        self.assertFalse(result["valid"])
        self.assertEqual(result["errors"], ["processing.num_threads: value 0 out of range [1, 64]"])

    def test_bool_is_not_a_number(self):
        from cellpose_timelapse.utils.config import validate_config

        result = validate_config({"processing": {"log_poll_interval_s": True}})

        self.assertFalse(result["valid"])

    def test_platforms_must_be_strings(self):
        from cellpose_timelapse.utils.config import validate_config

        result = validate_config({"processing": {"multiprocess_platforms": "darwin"}})

        self.assertFalse(result["valid"])

    def test_fail_on_nonzero_exit_must_be_bool(self):
        from cellpose_timelapse.utils.config import validate_config

        result = validate_config({"processing": {"fail_on_nonzero_exit": "yes"}})

        self.assertFalse(result["valid"])

    def test_negative_diameter(self):
        from cellpose_timelapse.utils.config import validate_config

        result = validate_config({"tools": {"cellpose": {"executable": "x", "diameter_um": -1}}})

        self.assertFalse(result["valid"])

    def test_stitch_threshold_range(self):
        from cellpose_timelapse.utils.config import validate_config

        result = validate_config({"tools": {"cellpose": {"executable": "x", "stitch_threshold": 2.0}}})

        self.assertFalse(result["valid"])
        self.assertIn("tools.cellpose.stitch_threshold", result["errors"][0])

    def test_missing_executable_warns(self):
        from cellpose_timelapse.utils.config import validate_config

        result = validate_config({"tools": {"omnipose": {"model": "bact_phase_omni"}}})

        self.assertTrue(result["valid"])
        self.assertEqual(result["warnings"], ["tools.omnipose.executable is not set"])

    def test_raise_on_error(self):
        from cellpose_timelapse.utils.config import ConfigValidationError, validate_config

        with self.assertRaises(ConfigValidationError):
            validate_config({"processing": {"min_ram_gb_per_process": 0.1}}, raise_on_error=True)


# =============================================================================
# JSON UTILS TESTS
# =============================================================================

class TestJsonUtils(TestCase):
    """Tests for NumpyEncoder, sanitize_for_json() and atomic_json_dump()."""

    def test_numpy_encoder(self):
        from cellpose_timelapse.utils.json_utils import NumpyEncoder

        data = {"a": np.int64(3), "b": np.float32(0.5), "c": np.arange(3), "d": np.bool_(True)}

        self.assertEqual(
            json.loads(json.dumps(data, cls=NumpyEncoder)),
            {"a": 3, "b": 0.5, "c": [0, 1, 2], "d": True},
        )

    def test_sanitize_replaces_nan(self):
        from cellpose_timelapse.utils.json_utils import sanitize_for_json

        result = sanitize_for_json({"x": [1.0, float("nan"), np.float64("inf")], "t": (1, 2)})

        self.assertEqual(result, {"x": [1.0, None, None], "t": [1, 2]})

    def test_atomic_dump_writes_file(self):
        from cellpose_timelapse.utils.json_utils import atomic_json_dump

        with tempfile.TemporaryDirectory() as tmp:
            path = Path(tmp) / "sub" / "out.json"
            atomic_json_dump({"n": np.int32(5)}, path)

            self.assertEqual(json.loads(path.read_text()), {"n": 5})
            self.assertEqual([p.name for p in path.parent.iterdir()], ["out.json"])


# =============================================================================
# LOGGING TESTS
# =============================================================================

class TestLoggingHelpers(TestCase):
    """Tests for format_duration() and ProcessingTimer."""

    def test_format_duration(self):
        from cellpose_timelapse.utils.logging import format_duration

        self.assertEqual(format_duration(12.34), "12.3 seconds")
        self.assertEqual(format_duration(90), "1.5 minutes")
        self.assertEqual(format_duration(5400), "1.5 hours")

    def test_processing_timer_records_elapsed(self):
        from cellpose_timelapse.utils.logging import ProcessingTimer

        logger = MagicMock(spec=logging.Logger)
        with ProcessingTimer(logger, "segmentation") as timer:
            pass

        self.assertIsNotNone(timer.elapsed)
        self.assertGreaterEqual(timer.elapsed, 0)
        logger.info.assert_any_call("Starting: segmentation")

    def test_processing_timer_logs_failure(self):
        from cellpose_timelapse.utils.logging import ProcessingTimer

        logger = MagicMock(spec=logging.Logger)
        with self.assertRaises(RuntimeError):
            with ProcessingTimer(logger, "segmentation"):
                raise RuntimeError("boom")

        logger.error.assert_called_once()


# =============================================================================
# MEMORY MODULE TESTS
# =============================================================================

class TestMemoryUsage(TestCase):
    """Tests for get_memory_usage() function in memory module."""

    def test_get_memory_usage_has_ram_keys(self):
        from cellpose_timelapse.processing.memory import get_memory_usage

        result = get_memory_usage()

        for key in ('ram_available_gb', 'ram_total_gb', 'ram_used_percent', 'cpu_count'):
            self.assertIn(key, result)
        self.assertGreaterEqual(result['ram_total_gb'], result['ram_available_gb'])


class TestSafeProcessCount(TestCase):
    """Tests for get_safe_process_count() and get_default_num_threads()."""

    @patch('cellpose_timelapse.processing.memory.psutil.virtual_memory')
    def test_low_memory_reduces_count(self, mock_vm):
        from cellpose_timelapse.processing.memory import get_safe_process_count

        mock_vm.return_value = MagicMock(available=5 * (1024**3))

        self.assertEqual(get_safe_process_count(8), 2)

    @patch('cellpose_timelapse.processing.memory.psutil.virtual_memory')
    def test_no_auto_adjust(self, mock_vm):
        from cellpose_timelapse.processing.memory import get_safe_process_count

        mock_vm.return_value = MagicMock(available=1 * (1024**3))

        self.assertEqual(get_safe_process_count(8, auto_adjust=False), 8)

    @patch('cellpose_timelapse.processing.memory.psutil.virtual_memory')
    def test_minimum_one(self, mock_vm):
        from cellpose_timelapse.processing.memory import get_safe_process_count

        mock_vm.return_value = MagicMock(available=100 * (1024**2))

        self.assertEqual(get_safe_process_count(4), 1)

    @patch('cellpose_timelapse.processing.memory.psutil.virtual_memory')
    def test_per_process_budget_from_config(self, mock_vm):
        from cellpose_timelapse.processing.memory import get_safe_process_count

        mock_vm.return_value = MagicMock(available=8 * (1024**3))
        config = {"processing": {"min_ram_gb_per_process": 4.0}}

        self.assertEqual(get_safe_process_count(6, config), 2)

    @patch('cellpose_timelapse.processing.memory.psutil.cpu_count', return_value=12)
    def test_default_num_threads_half_cpus(self, _):
        from cellpose_timelapse.processing.memory import get_default_num_threads

        self.assertEqual(get_default_num_threads(), 6)

    @patch('cellpose_timelapse.processing.memory.psutil.cpu_count', return_value=1)
    def test_default_num_threads_single_cpu(self, _):
        from cellpose_timelapse.processing.memory import get_default_num_threads

        self.assertEqual(get_default_num_threads(), 1)

    def test_default_num_threads_configured(self):
        from cellpose_timelapse.processing.memory import get_default_num_threads

        self.assertEqual(get_default_num_threads({"processing": {"num_threads": 5}}), 5)

"""
Pytest fixtures for cellpose-timelapse tests.

Provides synthetic time-lapses, temporary directories and a fake segmentation
tool that behaves like the Cellpose command line.
"""

import shutil
import stat
import sys
import tempfile
from pathlib import Path
from unittest.mock import MagicMock

import numpy as np
import pytest

from cellpose_timelapse.detection.settings import CellposeSettings
from cellpose_timelapse.processing.frames import ImageVolume


FAKE_TOOL_SOURCE = '''\
#!{python}
"""Stand-in for the cellpose CLI: labels every non-zero pixel as object 1."""
import argparse
import os
import sys
from pathlib import Path

import numpy as np
import tifffile
from PIL import Image

parser = argparse.ArgumentParser()
parser.add_argument("--dir", required=True)
parser.add_argument("--save_png", action="store_true")
parser.add_argument("--save_tif", action="store_true")
args, _ = parser.parse_known_args()

skip = set(filter(None, os.environ.get("FAKE_TOOL_SKIP", "").split(",")))
log_file = Path(os.path.expanduser("~/.cellpose/run.log"))
log_file.parent.mkdir(parents=True, exist_ok=True)

inputs = sorted(Path(args.dir).glob("*.tif"))
with open(log_file, "a") as log:
    for i, path in enumerate(inputs):
        if path.stem in skip:
            continue
        mask = (tifffile.imread(path) > 0).astype(np.uint16)
        if args.save_tif:
            tifffile.imwrite(path.with_name(path.stem + "_cp_masks.tif"), mask)
        else:
            Image.fromarray(mask).save(path.with_name(path.stem + "_cp_masks.png"))
        log.write("Processing %d/%d frames: %.1f%% done\\n" % (i + 1, len(inputs), 100.0 * (i + 1) / len(inputs)))

sys.exit(int(os.environ.get("FAKE_TOOL_EXIT", "0")))
'''


def make_timelapse(n_frames=5, size=32, square=6, dtype=np.uint16):
    """
    (T, Y, X) stack with one bright square per frame, moving right by 1 px per frame.

    Square top-left corner in frame t: (row=4, col=4 + t).
    """
    data = np.zeros((n_frames, size, size), dtype=dtype)
    for t in range(n_frames):
        data[t, 4:4 + square, 4 + t:4 + t + square] = 1000
    return data


@pytest.fixture
def timelapse_2d():
    """
    5-frame 2D single-channel time-lapse, 32x32 pixels, 0.5 units per pixel.

    Returns:
        ImageVolume with axes TYX
    """
    return ImageVolume(
        make_timelapse(),
        axes="TYX",
        calibration=(0.5, 0.5, 1.0),
        frame_interval=2.0,
        name="movie",
    )


@pytest.fixture
def timelapse_multichannel():
    """
    4-frame, 2-channel, 3-slice volume with axes given out of canonical order (CTZYX).

    Returns:
        ImageVolume, canonicalised to TZCYX
    """
    data = np.arange(2 * 4 * 3 * 16 * 20, dtype=np.uint16).reshape(2, 4, 3, 16, 20)
    return ImageVolume(data, axes="CTZYX", calibration=(0.2, 0.2, 1.0), name="multi")


@pytest.fixture
def temp_output_dir():
    """
    Temporary directory for test outputs.

    Yields:
        Path: Path to temporary directory
    """
    temp_dir = tempfile.mkdtemp(prefix="cellpose_timelapse_test_")
    yield Path(temp_dir)
    # Cleanup after test
    shutil.rmtree(temp_dir, ignore_errors=True)


@pytest.fixture
def fake_home(temp_output_dir, monkeypatch):
    """Point HOME (and so the tool log file) at a temporary directory."""
    home = temp_output_dir / "home"
    home.mkdir()
    monkeypatch.setenv("HOME", str(home))
    monkeypatch.setenv("USERPROFILE", str(home))
    return home


@pytest.fixture
def fake_tool(temp_output_dir):
    """
    Executable script mimicking the cellpose CLI.

    Writes ``{stem}_cp_masks.png`` (or .tif with --save_tif) for every input
    TIFF and appends progress lines to ``~/.cellpose/run.log``. Environment:
    FAKE_TOOL_SKIP (comma-separated stems to skip), FAKE_TOOL_EXIT (exit code).

    Returns:
        Path: Path to the executable
    """
    if sys.platform == "win32":
        pytest.skip("fake tool relies on a shebang line")
    path = temp_output_dir / "fake_cellpose"
    path.write_text(FAKE_TOOL_SOURCE.format(python=sys.executable))
    path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
    return path


@pytest.fixture
def cpu_settings(fake_tool):
    """CPU-only Cellpose settings running the fake tool."""
    return CellposeSettings(executable_path=str(fake_tool), use_gpu=False, diameter=0)


@pytest.fixture
def bucket_config(temp_output_dir):
    """
    Config whose bucket temp directories live under a test directory.

    Returns:
        (config dict, bucket root Path)
    """
    root = temp_output_dir / "buckets"
    root.mkdir()
    return {"processing": {"temp_dir": str(root), "log_poll_interval_s": 0.01}}, root


@pytest.fixture
def mock_process():
    """
    Mock subprocess.Popen handle that exits with code 0.

    Returns:
        MagicMock: Popen-like object
    """
    proc = MagicMock()
    proc.pid = 4242
    proc.wait.return_value = 0
    proc.poll.return_value = None
    return proc


@pytest.fixture(autouse=True)
def _clear_fake_tool_env(monkeypatch):
    for key in ("FAKE_TOOL_SKIP", "FAKE_TOOL_EXIT"):
        monkeypatch.delenv(key, raising=False)

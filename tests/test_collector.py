"""
Tests for mask collection and reassembly.

Tests the functions in cellpose_timelapse/processing/collector.py.
"""

import logging

import numpy as np
import pytest
import tifffile
from PIL import Image

from cellpose_timelapse.detection.settings import CellposeSettings
from cellpose_timelapse.processing.collector import collect_masks, find_mask, to_uint16
from cellpose_timelapse.processing.frames import Interval, split_frames
from cellpose_timelapse.utils.progress import ProgressSink


@pytest.fixture
def settings():
    return CellposeSettings(executable_path="/usr/bin/cellpose", use_gpu=False)


@pytest.fixture
def frames(timelapse_2d):
    return split_frames(timelapse_2d, Interval.full(timelapse_2d))


def _write_png_mask(directory, name, value, shape=(32, 32)):
    mask = np.full(shape, value, dtype=np.uint16)
    Image.fromarray(mask).save(directory / f"{name}_cp_masks.png")


@pytest.fixture
def bucket_dirs(temp_output_dir):
    """Two bucket directories, round-robin over 5 frames, frame i labelled i + 1."""
    dirs = [temp_output_dir / "bucket0", temp_output_dir / "bucket1"]
    for d in dirs:
        d.mkdir()
    for i in range(5):
        _write_png_mask(dirs[i % 2], str(i), i + 1)
    return dirs


class TestFindMask:
    """Tests for find_mask()."""

    def test_first_match_wins(self, temp_output_dir):
        a, b = temp_output_dir / "a", temp_output_dir / "b"
        a.mkdir()
        b.mkdir()
        (a / "0_cp_masks.png").write_bytes(b"")
        (b / "0_cp_masks.png").write_bytes(b"")
        assert find_mask("0_cp_masks.png", [a, b]) == a / "0_cp_masks.png"

    def test_none_directories_skipped(self, temp_output_dir):
        (temp_output_dir / "x.png").write_bytes(b"")
        assert find_mask("x.png", [None, temp_output_dir]) == temp_output_dir / "x.png"

    def test_missing(self, temp_output_dir):
        assert find_mask("nope.png", [temp_output_dir]) is None


class TestCollectMasks:
    """Tests for collect_masks()."""

    def test_restores_original_order(self, frames, bucket_dirs, settings):
        volume = collect_masks(frames, bucket_dirs, settings, calibration=(0.5, 0.5, 1.0),
                               frame_interval=2.0, name="movie")
        assert volume.data.shape == (5, 32, 32)
        assert volume.data.dtype == np.uint16
        assert [int(volume.data[t].max()) for t in range(5)] == [1, 2, 3, 4, 5]
        assert volume.calibration == (0.5, 0.5, 1.0)
        assert volume.frame_interval == 2.0
        assert volume.blank_frames == []
        assert volume.name == "movie_CellposeOutput"

    def test_missing_frame_becomes_blank(self, frames, bucket_dirs, settings, caplog):
        (bucket_dirs[1] / "3_cp_masks.png").unlink()
        sink = ProgressSink()
        with caplog.at_level(logging.WARNING):
            volume = collect_masks(frames, bucket_dirs, settings, sink=sink)

        assert volume.data.shape == (5, 32, 32)
        assert not volume.data[3].any()
        assert int(volume.data[4].max()) == 5
        assert volume.blank_frames == [3]
        assert "3_cp_masks.png" in caplog.text

    def test_all_missing_is_not_an_error(self, frames, temp_output_dir, settings):
        volume = collect_masks(frames, [temp_output_dir], settings)
        assert volume.data.shape == (5, 32, 32)
        assert volume.blank_frames == [0, 1, 2, 3, 4]

    def test_tif_output_format(self, frames, temp_output_dir):
        settings = CellposeSettings(executable_path="cellpose", output_format="tif")
        for i in range(5):
            tifffile.imwrite(temp_output_dir / f"{i}_cp_masks.tif", np.full((32, 32), 9, dtype=np.int32))
        volume = collect_masks(frames, [temp_output_dir], settings)
        assert volume.data.dtype == np.uint16
        assert int(volume.data.max()) == 9

    def test_wrong_shape_treated_as_missing(self, frames, bucket_dirs, settings):
        _write_png_mask(bucket_dirs[0], "0", 7, shape=(10, 10))
        volume = collect_masks(frames, bucket_dirs, settings)
        assert volume.blank_frames == [0]

    def test_no_frames(self, settings):
        with pytest.raises(ValueError):
            collect_masks([], [], settings)


class TestToUint16:
    """Tests for to_uint16()."""

    def test_uint16_passthrough(self):
        mask = np.ones((3, 3), dtype=np.uint16)
        assert to_uint16(mask) is mask

    def test_large_labels_logged(self, caplog):
        mask = np.array([[70000]], dtype=np.int64)
        with caplog.at_level(logging.WARNING):
            out = to_uint16(mask, "big.tif")
        assert out.dtype == np.uint16
        assert "big.tif" in caplog.text

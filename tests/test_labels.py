"""
Tests for label volumes and the label-to-objects conversion.
"""

from unittest.mock import patch

import numpy as np
import pytest

from cellpose_timelapse.detection.labels import (
    DetectedObject,
    LabelVolume,
    RegionPropsLabelDetector,
    equivalent_radius,
)
from cellpose_timelapse.processing.errors import DownstreamDetectionError


@pytest.fixture
def label_volume_2d():
    """Three 32x32 frames: frame 0 one square, frame 1 blank, frame 2 two squares."""
    data = np.zeros((3, 32, 32), dtype=np.uint16)
    data[0, 4:10, 4:10] = 1
    data[2, 4:10, 4:10] = 1
    data[2, 20:24, 20:30] = 2
    return LabelVolume(data, calibration=(0.5, 0.5, 1.0), frame_interval=2.0, name="m")


class TestLabelVolume:

    def test_2d_spacing(self, label_volume_2d):
        assert not label_volume_2d.is_3d
        assert label_volume_2d.n_frames == 3
        assert label_volume_2d.spacing == (0.5, 0.5)

    def test_3d_spacing(self):
        volume = LabelVolume(np.zeros((2, 3, 8, 8), dtype=np.uint16), calibration=(0.2, 0.3, 1.5))
        assert volume.is_3d
        assert volume.spacing == (1.5, 0.3, 0.2)


class TestRegionPropsLabelDetector:

    def test_one_object_per_label_per_frame(self, label_volume_2d):
        objects = RegionPropsLabelDetector().detect(label_volume_2d)
        assert [(o.frame, o.label) for o in objects] == [(0, 1), (2, 1), (2, 2)]

    def test_centre_and_size_in_physical_units(self, label_volume_2d):
        obj = RegionPropsLabelDetector().detect(label_volume_2d)[0]
        # Pixels 4..9 in both directions, centre 6.5 px
        assert obj.x == pytest.approx(3.25)
        assert obj.y == pytest.approx(3.25)
        assert obj.z == 0.0
        assert obj.area == pytest.approx(36 * 0.25)
        assert obj.quality == obj.area
        assert obj.radius == pytest.approx(np.sqrt(9.0 / np.pi))

    def test_time_from_frame_interval(self, label_volume_2d):
        objects = RegionPropsLabelDetector().detect(label_volume_2d)
        assert objects[1].t == pytest.approx(4.0)

    def test_rectangle_centre(self, label_volume_2d):
        obj = RegionPropsLabelDetector().detect(label_volume_2d)[2]
        assert obj.x == pytest.approx(24.5 * 0.5)
        assert obj.y == pytest.approx(21.5 * 0.5)

    def test_contour_surrounds_centre(self, label_volume_2d):
        obj = RegionPropsLabelDetector().detect(label_volume_2d)[0]
        contour = np.asarray(obj.contour)
        assert contour.shape[1] == 2
        assert len(contour) >= 4
        # Square half-width is 3 px = 1.5 units
        assert np.abs(contour).max() <= 1.5 + 1e-9
        assert contour[:, 0].min() < 0 < contour[:, 0].max()

    def test_simplified_contour_is_shorter(self, label_volume_2d):
        simple = RegionPropsLabelDetector(simplify_contours=True).detect(label_volume_2d)[0]
        full = RegionPropsLabelDetector(simplify_contours=False).detect(label_volume_2d)[0]
        assert len(simple.contour) < len(full.contour)

    def test_contours_can_be_skipped(self, label_volume_2d):
        objects = RegionPropsLabelDetector(compute_contours=False).detect(label_volume_2d)
        assert all(o.contour is None for o in objects)

    def test_3d_objects(self):
        data = np.zeros((1, 4, 16, 16), dtype=np.uint16)
        data[0, 1:3, 2:6, 2:6] = 5
        volume = LabelVolume(data, calibration=(0.5, 0.5, 2.0))
        (obj,) = RegionPropsLabelDetector().detect(volume)
        assert obj.label == 5
        assert obj.z == pytest.approx(1.5 * 2.0)
        assert obj.x == pytest.approx(3.5 * 0.5)
        assert obj.area == pytest.approx(32 * 0.5 * 0.5 * 2.0)
        assert obj.contour is None

    def test_blank_volume(self):
        volume = LabelVolume(np.zeros((4, 8, 8), dtype=np.uint16))
        assert RegionPropsLabelDetector().detect(volume) == []

    def test_failure_is_wrapped(self, label_volume_2d):
        with patch("cellpose_timelapse.detection.labels.regionprops", side_effect=RuntimeError("boom")):
            with pytest.raises(DownstreamDetectionError) as exc_info:
                RegionPropsLabelDetector().detect(label_volume_2d)
        assert str(exc_info.value) == "Could not convert label image to objects: boom"


class TestHelpers:

    def test_equivalent_radius_2d(self):
        assert equivalent_radius(np.pi * 4.0, 2) == pytest.approx(2.0)

    def test_equivalent_radius_3d(self):
        assert equivalent_radius(4.0 / 3.0 * np.pi * 27.0, 3) == pytest.approx(3.0)

    def test_to_dict(self):
        obj = DetectedObject(x=1.0, y=2.0, frame=3, label=4)
        d = obj.to_dict()
        assert d["x"] == 1.0 and d["frame"] == 3 and d["label"] == 4
        assert obj.position == (1.0, 2.0, 0.0)

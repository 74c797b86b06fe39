"""
Tests for the Image Quality Control module.

Run with: pytest tests/test_quality.py -v
"""

import numpy as np
import pytest

from earcore.exceptions import InputShapeError
from earcore.quality import (
    REASON_BRIGHT,
    REASON_DARK,
    REASON_MAX,
    REASON_MEAN,
    REASON_MIN,
    REASON_STD,
    QcThresholds,
    check_quality,
    compute_region_stats,
)


@pytest.fixture
def full_mask():
    return np.full((20, 20), 255, dtype=np.uint8)


@pytest.fixture
def good_image():
    """Half 40, half 100: mean 70, std 30, nothing dark or bright."""
    img = np.full((20, 20), 40, dtype=np.uint8)
    img[:, 10:] = 100
    return img


class TestRegionStats:

    def test_stats(self, good_image, full_mask):
        stats = compute_region_stats(good_image, full_mask)
        assert stats.mean == pytest.approx(70.0)
        assert stats.std == pytest.approx(30.0)
        assert (stats.min, stats.max) == (40, 100)
        assert stats.pct_dark == 0.0
        assert stats.n_pixels == 400

    def test_only_masked_pixels_count(self, good_image):
        mask = np.zeros((20, 20), dtype=np.uint8)
        mask[:, 10:] = 1  # any non-zero value marks the ROI
        stats = compute_region_stats(good_image, mask)
        assert stats.mean == pytest.approx(100.0)
        assert stats.std == pytest.approx(0.0)

    def test_dark_threshold_inclusive(self, full_mask):
        img = np.full((20, 20), 10, dtype=np.uint8)
        assert compute_region_stats(img, full_mask).pct_dark == 100.0

    def test_empty_roi(self, good_image):
        stats = compute_region_stats(good_image, np.zeros((20, 20), dtype=np.uint8))
        assert stats.n_pixels == 0
        assert stats.pct_dark == 100.0

    def test_shape_mismatch(self, good_image):
        with pytest.raises(InputShapeError):
            compute_region_stats(good_image, np.zeros((10, 10), dtype=np.uint8))


class TestCheckQuality:

    def test_good_image_passes(self, good_image, full_mask):
        result = check_quality(good_image, full_mask)
        assert result.passed
        assert result.reasons == []

    def test_dark_image_lists_every_failure_in_order(self, full_mask):
        result = check_quality(np.full((20, 20), 5, dtype=np.uint8), full_mask)
        assert not result.passed
        assert result.reasons == [REASON_MEAN, REASON_STD, REASON_MIN, REASON_DARK]

    def test_single_bright_pixel(self, good_image, full_mask):
        img = good_image.copy()
        img[0, 0] = 250
        result = check_quality(img, full_mask)
        assert REASON_MAX in result.reasons
        assert REASON_BRIGHT in result.reasons

    def test_empty_roi_fails(self, good_image):
        assert not check_quality(good_image, np.zeros((20, 20), dtype=np.uint8)).passed

    def test_custom_thresholds(self, good_image, full_mask):
        strict = QcThresholds(std_min=40.0)
        assert check_quality(good_image, full_mask, strict).reasons == [REASON_STD]


class TestThresholds:

    def test_defaults(self):
        t = QcThresholds()
        assert t.mean_min == 49.314
        assert t.pct_bright_max == 0.001

    def test_from_config_casts_types(self):
        t = QcThresholds.from_config({"min_min": "12", "mean_max": 100, "unknown": 1})
        assert t.min_min == 12
        assert isinstance(t.mean_max, float)
        assert t.std_min == 23.294

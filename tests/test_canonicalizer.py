"""
Tests for the Canonicalizer module.

These tests verify that:
1. Any input size becomes a 128x128 canonical image
2. Near-square inputs are resized directly, others letterboxed
3. The region mask is fixed and independent of image content
4. The whole chain is deterministic, threaded or not

Run with: pytest tests/test_canonicalizer.py -v
"""

import numpy as np
import pytest

from earcore.canonicalizer import (
    Canonicalizer,
    apply_bilateral,
    apply_clahe,
    get_canonicalizer,
    make_region_mask,
    resize_for_biometrics,
)
from earcore.exceptions import InputShapeError
from earcore.image_view import GrayImage


@pytest.fixture
def random_image():
    np.random.seed(42)
    return np.random.randint(0, 256, size=(150, 140)).astype(np.uint8)


class TestResize:

    def test_constant_square_is_exact(self):
        out = resize_for_biometrics(np.full((128, 130), 77, dtype=np.uint8))
        assert out.shape == (128, 128)
        assert np.all(out.pixels == 77)

    def test_wide_input_is_letterboxed(self):
        out = resize_for_biometrics(np.full((100, 200), 200, dtype=np.uint8)).pixels
        # 200x100 -> 128x64, centred vertically
        assert np.all(out[:30] == 0)
        assert np.all(out[98:] == 0)
        assert out[40:90].min() >= 199

    def test_zero_size_rejected(self):
        with pytest.raises(InputShapeError):
            resize_for_biometrics(np.zeros((0, 10), dtype=np.uint8))


class TestFilters:

    def test_clahe_keeps_shape(self, random_image):
        out = apply_clahe(random_image)
        assert out.shape == random_image.shape

    def test_clahe_flat_stays_flat(self):
        out = apply_clahe(np.full((128, 128), 90, dtype=np.uint8)).pixels
        assert out.min() == out.max()

    def test_bilateral_flat_unchanged(self):
        out = apply_bilateral(np.full((40, 40), 123, dtype=np.uint8)).pixels
        assert np.all(out == 123)

    def test_bilateral_smooths_noise(self, random_image):
        out = apply_bilateral(random_image).pixels
        assert out.astype(float).std() < random_image.astype(float).std()

    def test_bilateral_rejects_bad_sigma(self, random_image):
        with pytest.raises(ValueError):
            apply_bilateral(random_image, sigma_space=0.0)


class TestRegionMask:

    def test_mask_values(self):
        mask = make_region_mask(128, 128).pixels
        assert set(np.unique(mask).tolist()) == {0, 255}
        assert mask[64, 64] == 255
        assert mask[0, 0] == 0

    def test_mask_coverage_in_expected_range(self):
        mask = make_region_mask(128, 128).pixels
        coverage = 100.0 * np.count_nonzero(mask == 255) / mask.size
        # ellipse area pi * 0.375 * 0.4375 ~= 51.5 %
        assert 50.0 <= coverage <= 53.0


class TestCanonicalizer:

    def test_output_size(self, random_image):
        result = Canonicalizer().canonicalize(random_image)
        assert result.image.shape == (128, 128)
        assert result.mask.shape == (128, 128)

    def test_mask_independent_of_content(self, random_image):
        canon = Canonicalizer()
        a = canon.canonicalize(random_image)
        b = canon.canonicalize(np.full((300, 200), 10, dtype=np.uint8))
        assert a.mask == b.mask

    def test_flat_image_deterministic(self):
        flat = np.full((128, 128), 128, dtype=np.uint8)
        canon = Canonicalizer()
        first = canon.canonicalize(flat)
        second = canon.canonicalize(GrayImage(flat))
        assert first.image == second.image
        assert first.image.pixels.min() == first.image.pixels.max()

    def test_threaded_matches_inline(self, random_image):
        inline = Canonicalizer().canonicalize(random_image)
        with Canonicalizer({"max_workers": 3}) as threaded:
            pooled = threaded.canonicalize(random_image)
        assert inline.image == pooled.image

    def test_zero_size_rejected(self):
        with pytest.raises(InputShapeError):
            Canonicalizer().canonicalize(np.zeros((10, 0), dtype=np.uint8))


class TestFactory:

    def test_explicit_config(self):
        canon = get_canonicalizer({"target_size": 64, "clahe_clip_limit": 3.0})
        assert canon.target_size == 64
        assert canon.clahe_clip_limit == 3.0

    def test_project_config_uses_runtime_pool(self):
        with get_canonicalizer() as canon:
            assert canon.target_size == 128
            assert canon._executor is not None

"""
Tests for the Data Augmentation module.

Run with: pytest tests/test_augmentation.py -v
"""

import numpy as np
import pytest

from earcore.augmentation import (
    adjust_brightness,
    adjust_contrast,
    adjust_gamma,
    gamma_lut,
    geometric_matrix,
    geometric_variants,
    photometric_variants,
    warp_image,
)
from earcore.image_view import GrayImage


@pytest.fixture
def image():
    np.random.seed(42)
    return np.random.randint(0, 256, size=(128, 128)).astype(np.uint8)


class TestPhotometric:

    def test_variant_order(self, image):
        names = [name for name, _ in photometric_variants(image, seed=0)]
        assert names == ["b+20", "b-15", "c110", "g090", "g110", "n10"]

    def test_brightness_saturates(self):
        px = np.array([[0, 250]], dtype=np.uint8)
        assert adjust_brightness(px, 20).tolist() == [[20, 255]]
        assert adjust_brightness(px, -15).tolist() == [[0, 235]]

    def test_contrast_around_128(self):
        px = np.array([[128, 148, 250]], dtype=np.uint8)
        # (148 - 128) * 1.1 + 128 = 150 ; (250 - 128) * 1.1 + 128 = 262.2 -> 255
        assert adjust_contrast(px, 1.10).tolist() == [[128, 150, 255]]

    def test_gamma_endpoints_and_monotonic(self):
        lut = gamma_lut(0.9)
        assert lut[0] == 0 and lut[255] == 255
        assert np.all(np.diff(lut.astype(int)) >= 0)
        # gamma < 1 darkens mid-tones
        assert adjust_gamma(np.array([[128]], dtype=np.uint8), 0.9)[0, 0] < 128

    def test_noise_seeded(self, image):
        a = dict(photometric_variants(image, seed=3))["n10"]
        b = dict(photometric_variants(image, seed=3))["n10"]
        c = dict(photometric_variants(image, seed=4))["n10"]
        assert a == b
        assert a != c
        diff = a.pixels.astype(int) - image.astype(int)
        assert np.abs(diff).max() <= 10

    def test_returns_gray_images(self, image):
        assert all(isinstance(v, GrayImage) for _, v in photometric_variants(image))


class TestGeometric:

    def test_identity_matrix(self):
        m = geometric_matrix(128, 128, 0.0, 0, 0, 1.0)
        assert np.allclose(m, [[1, 0, 0], [0, 1, 0]])

    def test_identity_warp_is_exact(self, image):
        assert np.array_equal(warp_image(image.copy(), geometric_matrix(128, 128, 0.0, 0, 0, 1.0)), image)

    def test_pure_shift(self, image):
        out = warp_image(image.copy(), geometric_matrix(128, 128, 0.0, 1, 0, 1.0))
        assert np.array_equal(out[:, 1:], image[:, :-1])
        assert np.all(out[:, 0] == 0)

    def test_seeded_variants_repeat(self, image):
        a = geometric_variants(image, seed=12345)
        b = geometric_variants(image, seed=12345)
        assert [n for n, _ in a] == ["aug1", "aug2", "aug3", "aug4"]
        assert all(x == y for (_, x), (_, y) in zip(a, b))

    def test_shared_generator_advances(self, image):
        rng = np.random.default_rng(1)
        first = geometric_variants(image, seed=rng, count=1)[0][1]
        second = geometric_variants(image, seed=rng, count=1)[0][1]
        assert first != second

    def test_size_preserved(self, image):
        for _, variant in geometric_variants(image, count=2):
            assert variant.shape == (128, 128)

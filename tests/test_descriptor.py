"""
Tests for the LBP Descriptor module.

Run with: pytest tests/test_descriptor.py -v
"""

import numpy as np
import pytest

from earcore.canonicalizer import make_region_mask
from earcore import descriptor
from earcore.descriptor import (
    BLOCK_LEN,
    UNIFORM_BINS,
    UNIFORM_LBP_TABLE,
    DescriptorExtractor,
    build_uniform_table,
    count_transitions,
    lbp_codes,
)
from earcore.exceptions import DimensionMismatchError, InputShapeError


@pytest.fixture
def textured_image():
    np.random.seed(42)
    return np.random.randint(0, 256, size=(128, 128)).astype(np.uint8)


@pytest.fixture
def full_mask():
    return np.full((128, 128), 255, dtype=np.uint8)


class TestUniformTable:

    def test_58_uniform_patterns(self):
        uniform = [c for c in range(256) if count_transitions(c) <= 2]
        assert len(uniform) == 58
        assert UNIFORM_LBP_TABLE[uniform].tolist() == list(range(58))

    def test_non_uniform_share_last_bin(self):
        # 0b01010101 has 8 transitions
        assert UNIFORM_LBP_TABLE[0b01010101] == UNIFORM_BINS - 1

    def test_table_is_read_only(self):
        with pytest.raises(ValueError):
            UNIFORM_LBP_TABLE[0] = 3

    def test_wrong_uniform_count_raises(self, monkeypatch):
        monkeypatch.setattr(descriptor, "count_transitions", lambda code: 0)
        with pytest.raises(DimensionMismatchError) as exc_info:
            build_uniform_table()
        assert exc_info.value.actual == 256


class TestLbpCodes:

    def test_flat_image_all_ones(self):
        codes = lbp_codes(np.full((10, 10), 50, dtype=np.uint8), radius=1)
        assert np.all(codes[1:-1, 1:-1] == 255)
        assert np.all(codes[0] == 0)

    def test_bright_centre_all_zeros(self):
        img = np.zeros((3, 3), dtype=np.uint8)
        img[1, 1] = 200
        assert lbp_codes(img, radius=1)[1, 1] == 0

    def test_single_bright_neighbour_bit(self):
        img = np.full((3, 3), 10, dtype=np.uint8)
        img[1, 1] = 100
        img[0, 0] = 200
        # top-left neighbour is the most significant bit
        assert lbp_codes(img, radius=1)[1, 1] == 0b10000000


class TestExtractor:

    def test_length(self, textured_image, full_mask):
        extractor = DescriptorExtractor()
        features = extractor.extract(textured_image, full_mask)
        assert features.shape == (6 * 6 * 118,)
        assert extractor.length == features.size

    def test_block_norms_are_one_or_zero(self, textured_image):
        features = DescriptorExtractor().extract(textured_image, make_region_mask(128, 128))
        norms = np.linalg.norm(features.reshape(-1, BLOCK_LEN), axis=1)
        populated = norms > 0
        assert populated.any()
        assert (~populated).any()  # corner blocks fall outside the ellipse
        assert np.allclose(norms[populated], 1.0)
        assert np.all(features.reshape(-1, BLOCK_LEN)[~populated] == 0.0)

    def test_empty_mask_gives_zero_vector(self, textured_image):
        features = DescriptorExtractor().extract(textured_image, np.zeros((128, 128), dtype=np.uint8))
        assert np.all(features == 0.0)

    def test_deterministic(self, textured_image, full_mask):
        extractor = DescriptorExtractor()
        assert np.array_equal(extractor.extract(textured_image, full_mask),
                              extractor.extract(textured_image, full_mask))

    def test_non_negative(self, textured_image, full_mask):
        assert DescriptorExtractor().extract(textured_image, full_mask).min() >= 0.0

    def test_wrong_size_rejected(self):
        with pytest.raises(InputShapeError):
            DescriptorExtractor().extract(np.zeros((64, 64), dtype=np.uint8),
                                          np.zeros((64, 64), dtype=np.uint8))

    def test_mask_shape_mismatch_rejected(self, textured_image):
        with pytest.raises(InputShapeError):
            DescriptorExtractor().extract(textured_image, np.zeros((128, 64), dtype=np.uint8))

    def test_custom_grid(self, textured_image, full_mask):
        extractor = DescriptorExtractor({"blocks_x": 4, "blocks_y": 4})
        assert extractor.extract(textured_image, full_mask).size == 4 * 4 * 118

"""
Tests for the GrayImage view.

Run with: pytest tests/test_image_view.py -v
"""

import numpy as np
import pytest

from earcore.exceptions import InputShapeError
from earcore.image_view import GrayImage


class TestConstruction:

    def test_from_buffer(self):
        img = GrayImage.from_buffer(bytes(range(6)), width=3, height=2)
        assert img.width == 3
        assert img.height == 2
        assert img.at(2, 1) == 5

    def test_buffer_size_mismatch(self):
        with pytest.raises(InputShapeError):
            GrayImage.from_buffer(b"\x00" * 5, width=3, height=2)

    def test_rejects_3d(self):
        with pytest.raises(InputShapeError):
            GrayImage(np.zeros((4, 4, 3), dtype=np.uint8))

    def test_rejects_out_of_range(self):
        with pytest.raises(ValueError):
            GrayImage(np.array([[0, 300]]))

    def test_copies_input(self):
        arr = np.zeros((2, 2), dtype=np.uint8)
        img = GrayImage(arr)
        arr[0, 0] = 9
        assert img.at(0, 0) == 0

    def test_pixels_read_only(self):
        img = GrayImage.filled(4, 4, 7)
        with pytest.raises(ValueError):
            img.pixels[0, 0] = 1


class TestAccess:

    def test_at_out_of_bounds(self):
        img = GrayImage.filled(4, 3)
        with pytest.raises(IndexError):
            img.at(4, 0)
        with pytest.raises(IndexError):
            img.at(0, 3)

    def test_negative_coordinates_do_not_wrap(self):
        img = GrayImage(np.arange(9, dtype=np.uint8).reshape(3, 3))
        with pytest.raises(IndexError):
            img.at(-1, 0)
        assert img.get(-1, 0, default=-5) == -5

    def test_empty(self):
        assert GrayImage(np.zeros((0, 5), dtype=np.uint8)).is_empty

    def test_equality(self):
        a = GrayImage.filled(3, 3, 10)
        b = GrayImage(np.full((3, 3), 10, dtype=np.uint8))
        assert a == b
        assert a != GrayImage.filled(3, 3, 11)

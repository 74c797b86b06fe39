"""
Gray Image View

A small owned 2D view over an 8-bit grayscale buffer. Every stage of the
pipeline passes GrayImage values instead of bare (buffer, width, height)
triples, so neighbour access goes through bounds-checked indexing.

The underlying ndarray is marked read-only; stages produce new images
rather than editing their input. Vectorised numpy code reads
`image.pixels` directly once the indices it uses are proven in range.

Usage:
    from earcore.image_view import GrayImage

    img = GrayImage.from_buffer(raw_bytes, width=640, height=480)
    value = img.at(10, 20)        # x=10, y=20, raises IndexError if outside
    arr = img.pixels              # (H, W) uint8, read-only
"""

from typing import Optional, Tuple

import numpy as np

from earcore.exceptions import InputShapeError


class GrayImage:
    """
    Immutable width x height grayscale image.

    Attributes:
        pixels: Read-only (height, width) uint8 array.
    """

    __slots__ = ("_pixels",)

    def __init__(self, pixels, copy: bool = True):
        """
        Args:
            pixels: 2D array-like of intensities in [0, 255].
            copy: Copy the data so the caller's array can't alias this image.

        Raises:
            InputShapeError: If the data is not two-dimensional.
            ValueError: If values fall outside the 8-bit range.
        """
        arr = np.asarray(pixels)
        if arr.ndim != 2:
            raise InputShapeError(
                f"GrayImage needs a 2D buffer, got {arr.ndim}D", shape=arr.shape
            )
        if arr.dtype != np.uint8:
            if arr.size and (arr.min() < 0 or arr.max() > 255):
                raise ValueError("Gray intensities must lie in [0, 255]")
            arr = arr.astype(np.uint8)
        elif copy:
            arr = arr.copy()
        arr.setflags(write=False)
        self._pixels = arr

    @classmethod
    def from_buffer(cls, buffer: bytes, width: int, height: int) -> "GrayImage":
        """
        Build an image from a flat row-major byte buffer.

        Raises:
            InputShapeError: If the buffer size doesn't match width * height.
        """
        if width < 0 or height < 0:
            raise InputShapeError("Negative image dimensions", width=width, height=height)
        flat = np.frombuffer(bytes(buffer), dtype=np.uint8)
        if flat.size != width * height:
            raise InputShapeError(
                f"Buffer holds {flat.size} bytes, expected {width * height}",
                width=width,
                height=height,
            )
        return cls(flat.reshape(height, width))

    @classmethod
    def filled(cls, width: int, height: int, value: int = 0) -> "GrayImage":
        """Create a constant image."""
        return cls(np.full((height, width), value, dtype=np.uint8), copy=False)

    @property
    def pixels(self) -> np.ndarray:
        return self._pixels

    @property
    def width(self) -> int:
        return int(self._pixels.shape[1])

    @property
    def height(self) -> int:
        return int(self._pixels.shape[0])

    @property
    def shape(self) -> Tuple[int, int]:
        """(height, width), numpy order."""
        return self._pixels.shape

    @property
    def is_empty(self) -> bool:
        return self.width == 0 or self.height == 0

    def contains(self, x: int, y: int) -> bool:
        return 0 <= x < self.width and 0 <= y < self.height

    def at(self, x: int, y: int) -> int:
        """
        Bounds-checked pixel access.

        Raises:
            IndexError: If (x, y) lies outside the image. Negative
                coordinates never wrap around.
        """
        if not self.contains(x, y):
            raise IndexError(f"Pixel ({x}, {y}) outside {self.width}x{self.height} image")
        return int(self._pixels[y, x])

    def get(self, x: int, y: int, default: Optional[int] = None) -> Optional[int]:
        """Pixel value, or `default` when (x, y) is outside the image."""
        if not self.contains(x, y):
            return default
        return int(self._pixels[y, x])

    def to_bytes(self) -> bytes:
        return self._pixels.tobytes()

    def __eq__(self, other) -> bool:
        if not isinstance(other, GrayImage):
            return NotImplemented
        return self.shape == other.shape and bool(np.array_equal(self._pixels, other._pixels))

    __hash__ = None

    def __repr__(self) -> str:
        return f"GrayImage({self.width}x{self.height})"

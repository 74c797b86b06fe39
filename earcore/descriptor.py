"""
Descriptor Extractor Module

Multi-scale uniform Local Binary Pattern descriptor for canonical ear
images. The 128x128 image is split into a grid of blocks (6x6 by
default); each block contributes a 59-bin histogram at radius 1 and
another at radius 2, giving 118 values per block.

Only pixels inside the region mask are counted. Blocks with too few
valid pixels are left at zero. Every populated block is root-normalized
(element-wise sqrt) and then scaled to unit L2 norm.

The uniform-pattern lookup table is built once at import time
(UNIFORM_LBP_TABLE) and passed explicitly to the extractor.

Usage:
    from earcore.descriptor import DescriptorExtractor

    extractor = DescriptorExtractor({"blocks_x": 6, "blocks_y": 6})
    features = extractor.extract(canonical.image, canonical.mask)
    assert features.shape == (6 * 6 * 118,)
"""

import logging
from typing import Any, Dict, Optional

import numpy as np

from earcore.canonicalizer import CANONICAL_SIZE, as_gray_image
from earcore.exceptions import DimensionMismatchError, InputShapeError

logger = logging.getLogger(__name__)

UNIFORM_BINS = 59
NUM_SCALES = 2
BLOCK_LEN = UNIFORM_BINS * NUM_SCALES
BORDER = 2

# Neighbour offsets (dy, dx) from the most significant bit down.
_NEIGHBOUR_ORDER = (
    (-1, -1), (-1, 0), (-1, 1), (0, 1),
    (1, 1), (1, 0), (1, -1), (0, -1),
)


def count_transitions(code: int) -> int:
    """Number of 0/1 changes around the circular 8-bit pattern."""
    transitions = 0
    for i in range(8):
        if ((code >> i) & 1) != ((code >> ((i + 1) % 8)) & 1):
            transitions += 1
    return transitions


def build_uniform_table() -> np.ndarray:
    """
    Map each 8-bit LBP code to its uniform-pattern bin.

    Codes with at most two transitions get consecutive bins 0..57 in
    ascending code order; every other code falls into bin 58.
    """
    table = np.full(256, UNIFORM_BINS - 1, dtype=np.int64)
    next_bin = 0
    for code in range(256):
        if count_transitions(code) <= 2:
            table[code] = next_bin
            next_bin += 1
    if next_bin != UNIFORM_BINS - 1:
        raise DimensionMismatchError(UNIFORM_BINS - 1, next_bin, stage="lbp_uniform_table")
    table.setflags(write=False)
    return table


UNIFORM_LBP_TABLE = build_uniform_table()


def descriptor_length(blocks_x: int = 6, blocks_y: int = 6) -> int:
    return blocks_x * blocks_y * BLOCK_LEN


def lbp_codes(pixels: np.ndarray, radius: int) -> np.ndarray:
    """
    8-neighbour LBP codes at an integer radius.

    A bit is set when the neighbour is >= the centre. Codes are only
    computed where all neighbours exist; the outer `radius` pixels of the
    returned map are zero.

    Args:
        pixels: (H, W) uint8 array.
        radius: Neighbour distance in pixels.

    Returns:
        (H, W) uint8 array of codes.
    """
    h, w = pixels.shape
    codes = np.zeros((h, w), dtype=np.uint8)
    if h <= 2 * radius or w <= 2 * radius:
        return codes

    src = pixels.astype(np.int16)
    centre = src[radius:h - radius, radius:w - radius]
    inner = np.zeros_like(centre, dtype=np.uint8)
    for bit, (dy, dx) in zip(range(7, -1, -1), _NEIGHBOUR_ORDER):
        ys = radius + dy * radius
        xs = radius + dx * radius
        neighbour = src[ys:ys + centre.shape[0], xs:xs + centre.shape[1]]
        inner |= ((neighbour >= centre).astype(np.uint8) << bit)
    codes[radius:h - radius, radius:w - radius] = inner
    return codes


def _root_l2(block: np.ndarray, eps: float = 1e-8) -> np.ndarray:
    rooted = np.sqrt(block + eps)
    norm = np.sqrt(np.sum(rooted * rooted))
    if norm <= 0.0:
        return np.zeros_like(block)
    return rooted / norm


def extract_descriptor(
    image,
    mask,
    table: np.ndarray = UNIFORM_LBP_TABLE,
    blocks_x: int = 6,
    blocks_y: int = 6,
    min_valid_pixels: int = 200,
    expected_size: int = CANONICAL_SIZE,
) -> np.ndarray:
    """
    Compute the multi-scale block LBP descriptor.

    Args:
        image: Canonical GrayImage (expected_size x expected_size).
        mask: Region mask of the same shape; 255 marks valid pixels.
        table: 256-entry uniform-pattern lookup table.
        blocks_x: Blocks across.
        blocks_y: Blocks down.
        min_valid_pixels: Blocks with fewer valid pixels stay all-zero.
        expected_size: Required side length of the input.

    Returns:
        float64 vector of length blocks_x * blocks_y * 118.

    Raises:
        InputShapeError: If the image isn't the canonical size or the mask
            shape differs from the image shape.
    """
    img = as_gray_image(image)
    msk = as_gray_image(mask)
    if img.shape != (expected_size, expected_size):
        raise InputShapeError(
            f"Descriptor needs a {expected_size}x{expected_size} image",
            width=img.width,
            height=img.height,
        )
    if msk.shape != img.shape:
        raise InputShapeError("Mask shape differs from image shape",
                              image_shape=img.shape, mask_shape=msk.shape)
    if blocks_x <= 0 or blocks_y <= 0:
        raise ValueError(f"Block grid must be positive, got {blocks_x}x{blocks_y}")

    pixels = img.pixels
    h, w = pixels.shape
    bins_r1 = table[lbp_codes(pixels, 1)]
    bins_r2 = table[lbp_codes(pixels, 2)]
    valid = msk.pixels == 255

    block_w = w // blocks_x
    block_h = h // blocks_y
    features = np.zeros(descriptor_length(blocks_x, blocks_y), dtype=np.float64)
    empty_blocks = 0

    for by in range(blocks_y):
        y0 = by * block_h + BORDER
        y1 = (by + 1) * block_h - BORDER
        for bx in range(blocks_x):
            x0 = bx * block_w + BORDER
            x1 = (bx + 1) * block_w - BORDER
            offset = (by * blocks_x + bx) * BLOCK_LEN
            if y0 >= y1 or x0 >= x1:
                empty_blocks += 1
                continue

            sel = valid[y0:y1, x0:x1]
            n_valid = int(np.count_nonzero(sel))
            if n_valid < min_valid_pixels or n_valid == 0:
                empty_blocks += 1
                continue

            h1 = np.bincount(bins_r1[y0:y1, x0:x1][sel], minlength=UNIFORM_BINS)
            h2 = np.bincount(bins_r2[y0:y1, x0:x1][sel], minlength=UNIFORM_BINS)
            block = np.concatenate([h1, h2]).astype(np.float64)
            features[offset:offset + BLOCK_LEN] = _root_l2(block)

    logger.debug(f"LBP descriptor: {features.size} dims, {empty_blocks} empty blocks")
    return features


class DescriptorExtractor:
    """
    Configured LBP extractor.

    Args:
        config: Dictionary with optional keys:
            - blocks_x / blocks_y: Block grid (default 6 x 6)
            - min_valid_pixels: Per-block valid pixel floor (default 200)
            - image_size: Expected canonical size (default 128)
        table: Uniform-pattern table (default UNIFORM_LBP_TABLE).
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, table: np.ndarray = UNIFORM_LBP_TABLE):
        if config is None:
            config = {}
        self.blocks_x = int(config.get("blocks_x", 6))
        self.blocks_y = int(config.get("blocks_y", 6))
        self.min_valid_pixels = int(config.get("min_valid_pixels", 200))
        self.image_size = int(config.get("image_size", CANONICAL_SIZE))
        self.table = table

    @property
    def length(self) -> int:
        """Output length: blocks_x * blocks_y * 118."""
        return descriptor_length(self.blocks_x, self.blocks_y)

    def extract(self, image, mask) -> np.ndarray:
        return extract_descriptor(
            image,
            mask,
            table=self.table,
            blocks_x=self.blocks_x,
            blocks_y=self.blocks_y,
            min_valid_pixels=self.min_valid_pixels,
            expected_size=self.image_size,
        )

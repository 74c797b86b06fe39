"""
Data Augmentation Module

Two families of variants for canonical (128x128) ear images:

- Photometric (enrollment): brightness +20 / -15, contrast x1.10 around
  128, gamma 0.90 / 1.10, uniform integer noise +-10. Geometry is
  unchanged, so the base region mask still applies.
- Geometric (offline training): 4 variants of rotation U(-4, 4) degrees,
  then shift U{-1, 0, 1} px per axis, then zoom U(0.99, 1.01) about the
  image centre. Bilinear sampling, zero fill outside the source.

Both are deterministic for a given seed.

Usage:
    from earcore.augmentation import photometric_variants, geometric_variants

    for name, variant in photometric_variants(canonical.image, seed=7):
        features.append(extractor.extract(variant, canonical.mask))
"""

import logging
import math
from typing import List, Optional, Tuple, Union

import cv2
import numpy as np

from earcore.canonicalizer import as_gray_image
from earcore.image_view import GrayImage

logger = logging.getLogger(__name__)

GEOMETRIC_SEED = 12345
NUM_GEOMETRIC_VARIANTS = 4


# ============================================================
# Photometric
# ============================================================

def adjust_brightness(pixels: np.ndarray, delta: int) -> np.ndarray:
    return np.clip(pixels.astype(np.int32) + delta, 0, 255).astype(np.uint8)


def adjust_contrast(pixels: np.ndarray, factor: float) -> np.ndarray:
    scaled = (pixels.astype(np.float64) - 128.0) * factor + 128.0
    # truncation toward zero, then clamp
    return np.clip(np.trunc(scaled), 0, 255).astype(np.uint8)


def gamma_lut(gamma: float) -> np.ndarray:
    inv = 1.0 / max(1e-6, gamma)
    levels = np.arange(256, dtype=np.float64) / 255.0
    # round half away from zero on non-negative values
    return np.clip(np.floor(np.power(levels, inv) * 255.0 + 0.5), 0, 255).astype(np.uint8)


def adjust_gamma(pixels: np.ndarray, gamma: float) -> np.ndarray:
    return gamma_lut(gamma)[pixels]


def add_noise(pixels: np.ndarray, intensity: int, rng: np.random.Generator) -> np.ndarray:
    noise = rng.integers(-intensity, intensity + 1, size=pixels.shape)
    return np.clip(pixels.astype(np.int32) + noise, 0, 255).astype(np.uint8)


def photometric_variants(image, seed: Optional[int] = None) -> List[Tuple[str, GrayImage]]:
    """
    Six photometric variants of an image.

    Args:
        image: GrayImage or 2D uint8 array.
        seed: Seed for the noise variant.

    Returns:
        List of (suffix, GrayImage) in a fixed order:
        b+20, b-15, c110, g090, g110, n10.
    """
    px = as_gray_image(image).pixels
    rng = np.random.default_rng(seed)
    return [
        ("b+20", GrayImage(adjust_brightness(px, 20), copy=False)),
        ("b-15", GrayImage(adjust_brightness(px, -15), copy=False)),
        ("c110", GrayImage(adjust_contrast(px, 1.10), copy=False)),
        ("g090", GrayImage(adjust_gamma(px, 0.90), copy=False)),
        ("g110", GrayImage(adjust_gamma(px, 1.10), copy=False)),
        ("n10", GrayImage(add_noise(px, 10, rng), copy=False)),
    ]


# ============================================================
# Geometric
# ============================================================

def geometric_matrix(width: int, height: int, angle_deg: float, dx: int, dy: int, zoom: float) -> np.ndarray:
    """
    Inverse (destination -> source) affine map for rotate, shift, zoom.

    All three transforms pivot on the integer centre (w//2, h//2).
    """
    cx, cy = width // 2, height // 2
    a = math.radians(angle_deg)
    cos_a, sin_a = math.cos(a), math.sin(a)
    inv_zoom = 1.0 / zoom

    # dst -> after-shift point: q = (p - c) / zoom + c
    zoom_m = np.array([[inv_zoom, 0.0, cx - cx * inv_zoom],
                       [0.0, inv_zoom, cy - cy * inv_zoom],
                       [0.0, 0.0, 1.0]])
    # after-shift -> rotated point: r = q - d
    shift_m = np.array([[1.0, 0.0, -dx],
                        [0.0, 1.0, -dy],
                        [0.0, 0.0, 1.0]])
    # rotated -> source: s = R (r - c) + c
    rot_m = np.array([[cos_a, sin_a, cx - cx * cos_a - cy * sin_a],
                      [-sin_a, cos_a, cy + cx * sin_a - cy * cos_a],
                      [0.0, 0.0, 1.0]])
    return (rot_m @ shift_m @ zoom_m)[:2]


def warp_image(pixels: np.ndarray, matrix: np.ndarray) -> np.ndarray:
    h, w = pixels.shape
    return cv2.warpAffine(
        pixels,
        matrix,
        (w, h),
        flags=cv2.INTER_LINEAR | cv2.WARP_INVERSE_MAP,
        borderMode=cv2.BORDER_CONSTANT,
        borderValue=0,
    )


def geometric_variants(
    image,
    seed: Union[int, np.random.Generator] = GEOMETRIC_SEED,
    count: int = NUM_GEOMETRIC_VARIANTS,
    max_angle: float = 4.0,
    max_shift: int = 1,
    zoom_range: Tuple[float, float] = (0.99, 1.01),
) -> List[Tuple[str, GrayImage]]:
    """
    Random small rotations, shifts and zooms.

    Args:
        image: GrayImage or 2D uint8 array.
        seed: Generator seed (the same seed gives the same variants) or a
            Generator to continue drawing from.
        count: Number of variants.
        max_angle: Rotation drawn from U(-max_angle, max_angle) degrees.
        max_shift: Shift drawn from the integers in [-max_shift, max_shift].
        zoom_range: Zoom factor drawn uniformly from this range.

    Returns:
        List of (suffix, GrayImage): aug1 .. aug{count}.
    """
    px = as_gray_image(image).pixels
    h, w = px.shape
    rng = np.random.default_rng(seed)
    out = []
    for i in range(count):
        angle = rng.uniform(-max_angle, max_angle)
        dx = int(rng.integers(-max_shift, max_shift + 1))
        dy = int(rng.integers(-max_shift, max_shift + 1))
        zoom = rng.uniform(*zoom_range)
        warped = warp_image(px.copy(), geometric_matrix(w, h, angle, dx, dy, zoom))
        logger.debug(f"aug{i + 1}: angle={angle:.2f} shift=({dx},{dy}) zoom={zoom:.4f}")
        out.append((f"aug{i + 1}", GrayImage(warped, copy=False)))
    return out

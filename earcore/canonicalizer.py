"""
Canonicalizer Module

Turns a decoded grayscale photograph of an ear into the fixed 128x128
canonical image and its elliptical region mask. The same steps run at
training, enrollment and verification time, so every filter here is
written to be deterministic to the last bit:

1. Resize: direct bicubic when the input is close to square, otherwise
   letterbox (bilinear, zero padding) so the ear is never stretched.
2. CLAHE: tiled histogram equalization with a clipped histogram
   (8x8 tiles, clip limit 2.0) and blending across tile borders.
3. Bilateral filter: joint spatial/intensity Gaussian smoothing
   (sigma_space=3, sigma_color=50) to calm the noise CLAHE amplifies.
4. Region mask: a constant ellipse for the target size. It never
   depends on image content.

Tile LUTs (CLAHE) and row bands (bilateral) are independent and can be
computed on a thread pool.

Usage:
    from earcore.canonicalizer import Canonicalizer

    canon = Canonicalizer({"target_size": 128})
    result = canon.canonicalize(gray)     # gray: GrayImage or 2D uint8 array
    result.image, result.mask             # both 128x128 GrayImage
"""

import logging
import math
from concurrent.futures import Executor, ThreadPoolExecutor
from dataclasses import dataclass
from functools import lru_cache
from typing import Any, Dict, Optional

import numpy as np

from earcore.exceptions import InputShapeError
from earcore.image_view import GrayImage

logger = logging.getLogger(__name__)

CANONICAL_SIZE = 128


@dataclass(frozen=True)
class CanonicalImage:
    """
    Output of the canonicalizer.

    Attributes:
        image: Filtered target_size x target_size gray image.
        mask: Region mask of the same size (255 inside, 0 outside).
    """

    image: GrayImage
    mask: GrayImage


def as_gray_image(image) -> GrayImage:
    """Accept a GrayImage or a 2D array-like and return a GrayImage."""
    if isinstance(image, GrayImage):
        return image
    return GrayImage(image)


# ============================================================
# Resize
# ============================================================

def _cubic(p0, p1, p2, p3, t):
    """Catmull-Rom cubic (a = -0.5) through p1..p2 at offset t."""
    a = -0.5 * p0 + 1.5 * p1 - 1.5 * p2 + 0.5 * p3
    b = p0 - 2.5 * p1 + 2.0 * p2 - 0.5 * p3
    c = -0.5 * p0 + 0.5 * p2
    d = p1
    return a * t * t * t + b * t * t + c * t + d


def _resize_bicubic(src: np.ndarray, target: int) -> np.ndarray:
    h, w = src.shape
    # One scale for both axes, taken from the width
    scale = np.float32(w) / np.float32(target)

    coords = (np.arange(target, dtype=np.float32) + np.float32(0.5)) * scale - np.float32(0.5)
    base = np.trunc(coords).astype(np.int64)
    frac = coords - base.astype(np.float32)

    taps = np.arange(-1, 3)
    cols = np.clip(base[:, None] + taps[None, :], 0, w - 1)
    rows = np.clip(base[:, None] + taps[None, :], 0, h - 1)

    srcf = src.astype(np.float32)
    lines = []
    for j in range(4):
        row_vals = srcf[rows[:, j]]          # (target, w)
        p = row_vals[:, cols]                # (target, target, 4)
        lines.append(_cubic(p[..., 0], p[..., 1], p[..., 2], p[..., 3], frac[None, :]))

    value = _cubic(lines[0], lines[1], lines[2], lines[3], frac[:, None])
    return np.clip(value, 0.0, 255.0).astype(np.uint8)


def _resize_letterbox(src: np.ndarray, target: int) -> np.ndarray:
    h, w = src.shape
    scale = min(np.float32(target) / np.float32(w), np.float32(target) / np.float32(h))
    new_w = int(np.float32(w) * scale)
    new_h = int(np.float32(h) * scale)
    off_x = (target - new_w) // 2
    off_y = (target - new_h) // 2

    out = np.zeros((target, target), dtype=np.uint8)
    if new_w <= 0 or new_h <= 0:
        return out

    def _axis(n_out, n_src):
        g = (np.arange(n_out, dtype=np.float32) + np.float32(0.5)) / scale - np.float32(0.5)
        gi = np.clip(np.trunc(g).astype(np.int64), 0, max(n_src - 2, 0))
        d = g - gi.astype(np.float32)
        gi1 = np.minimum(gi + 1, n_src - 1)
        return gi, gi1, d

    gxi, gxi1, dx = _axis(new_w, w)
    gyi, gyi1, dy = _axis(new_h, h)

    srcf = src.astype(np.float32)
    p00 = srcf[gyi[:, None], gxi[None, :]]
    p01 = srcf[gyi[:, None], gxi1[None, :]]
    p10 = srcf[gyi1[:, None], gxi[None, :]]
    p11 = srcf[gyi1[:, None], gxi1[None, :]]
    dx = dx[None, :]
    dy = dy[:, None]

    value = (
        (1 - dx) * (1 - dy) * p00
        + dx * (1 - dy) * p01
        + (1 - dx) * dy * p10
        + dx * dy * p11
    )
    out[off_y:off_y + new_h, off_x:off_x + new_w] = np.clip(value, 0.0, 255.0).astype(np.uint8)
    return out


def resize_for_biometrics(
    image,
    target: int = CANONICAL_SIZE,
    aspect_tolerance: float = 0.1,
) -> GrayImage:
    """
    Resize an image to target x target without distorting its geometry.

    Args:
        image: GrayImage or 2D uint8 array of any size.
        target: Output side length.
        aspect_tolerance: Maximum |w/h - 1| for the direct bicubic path.
            Anything wider or taller is letterboxed instead.

    Returns:
        target x target GrayImage.

    Raises:
        InputShapeError: If the source has zero width or height.
    """
    img = as_gray_image(image)
    if img.is_empty:
        raise InputShapeError(
            "Cannot resize an image with zero width or height",
            width=img.width,
            height=img.height,
        )
    if target <= 0:
        raise InputShapeError("Target size must be positive", target=target)

    ratio = np.float32(img.width) / np.float32(img.height)
    if abs(ratio - np.float32(1.0)) < aspect_tolerance:
        out = _resize_bicubic(img.pixels, target)
        mode = "bicubic"
    else:
        out = _resize_letterbox(img.pixels, target)
        mode = "letterbox"

    logger.debug(f"Resized {img.width}x{img.height} -> {target}x{target} ({mode})")
    return GrayImage(out, copy=False)


# ============================================================
# CLAHE
# ============================================================

def _tile_lut(tile: np.ndarray, clip_limit: float) -> np.ndarray:
    """Equalization LUT for one tile with a clipped, redistributed histogram."""
    total = int(tile.size)
    hist = np.bincount(tile.ravel(), minlength=256).astype(np.int64)

    clip = int(clip_limit * total / 256.0)
    if clip < 1:
        clip = 1

    excess = int(np.sum(np.maximum(hist - clip, 0)))
    hist = np.minimum(hist, clip)
    hist += excess // 256
    hist[: excess % 256] += 1

    cdf = np.cumsum(hist)
    cdf_min = int(cdf[0])
    above = np.nonzero(cdf > cdf_min)[0]
    if above.size:
        cdf_min = int(cdf[above[0]])

    if total <= cdf_min:
        return np.arange(256, dtype=np.uint8)

    lut = ((cdf - cdf_min) * 255) // (total - cdf_min)
    return np.clip(lut, 0, 255).astype(np.uint8)


def apply_clahe(
    image,
    tiles_x: int = 8,
    tiles_y: int = 8,
    clip_limit: float = 2.0,
    executor: Optional[Executor] = None,
) -> GrayImage:
    """
    Contrast Limited Adaptive Histogram Equalization.

    Corner tiles use their own LUT, edge strips interpolate linearly
    between two neighbouring LUTs (truncating) and interior pixels blend
    four LUTs bilinearly (rounding).

    Args:
        image: GrayImage or 2D uint8 array.
        tiles_x: Number of tiles across.
        tiles_y: Number of tiles down.
        clip_limit: Histogram clip limit relative to a flat histogram.
        executor: Optional pool used to build the tile LUTs concurrently.

    Returns:
        Equalized GrayImage of the same size.
    """
    img = as_gray_image(image)
    if img.is_empty:
        raise InputShapeError("CLAHE needs a non-empty image", width=img.width, height=img.height)
    if tiles_x <= 0 or tiles_y <= 0:
        raise ValueError(f"Tile counts must be positive, got {tiles_x}x{tiles_y}")

    src = img.pixels
    h, w = src.shape
    tile_w = (w + tiles_x - 1) // tiles_x
    tile_h = (h + tiles_y - 1) // tiles_y

    tiles = [
        src[ty * tile_h:min((ty + 1) * tile_h, h), tx * tile_w:min((tx + 1) * tile_w, w)]
        for ty in range(tiles_y)
        for tx in range(tiles_x)
    ]
    if executor is not None:
        lut_list = list(executor.map(lambda t: _tile_lut(t, clip_limit), tiles))
    else:
        lut_list = [_tile_lut(t, clip_limit) for t in tiles]
    luts = np.stack(lut_list).reshape(tiles_y, tiles_x, 256)

    fx = np.arange(w, dtype=np.float64) / tile_w
    fy = np.arange(h, dtype=np.float64) / tile_h
    ix = np.minimum(fx.astype(np.int64), tiles_x - 1)
    iy = np.minimum(fy.astype(np.int64), tiles_y - 1)
    tx = (fx - ix)[None, :]
    ty = (fy - iy)[:, None]
    ix1 = np.minimum(ix + 1, tiles_x - 1)
    iy1 = np.minimum(iy + 1, tiles_y - 1)

    iy_, ix_ = iy[:, None], ix[None, :]
    iy1_, ix1_ = iy1[:, None], ix1[None, :]
    v_tl = luts[iy_, ix_, src].astype(np.float64)
    v_tr = luts[iy_, ix1_, src].astype(np.float64)
    v_bl = luts[iy1_, ix_, src].astype(np.float64)
    v_br = luts[iy1_, ix1_, src].astype(np.float64)

    vertical = np.floor(v_tl * (1.0 - ty) + v_bl * ty)
    horizontal = np.floor(v_tl * (1.0 - tx) + v_tr * tx)
    top = v_tl * (1.0 - tx) + v_tr * tx
    bottom = v_bl * (1.0 - tx) + v_br * tx
    interior = np.floor(top * (1.0 - ty) + bottom * ty + 0.5)

    side = (ix_ == 0) | (ix_ == tiles_x - 1)
    cap = (iy_ == 0) | (iy_ == tiles_y - 1)
    side, cap = np.broadcast_arrays(side, cap)

    out = np.select(
        [side & cap, side, cap],
        [v_tl, vertical, horizontal],
        default=interior,
    )
    return GrayImage(np.clip(out, 0, 255).astype(np.uint8), copy=False)


# ============================================================
# Bilateral filter
# ============================================================

def _bilateral_band(
    src: np.ndarray,
    y0: int,
    y1: int,
    radius: int,
    spatial: np.ndarray,
    color_table: np.ndarray,
) -> np.ndarray:
    """Filter rows [y0, y1). Neighbours outside the image are skipped."""
    h, w = src.shape
    acc = np.zeros((y1 - y0, w), dtype=np.float64)
    wsum = np.zeros((y1 - y0, w), dtype=np.float64)

    for dy in range(-radius, radius + 1):
        r_lo = max(y0, -dy)
        r_hi = min(y1, h - dy)
        if r_lo >= r_hi:
            continue
        for dx in range(-radius, radius + 1):
            c_lo = max(0, -dx)
            c_hi = min(w, w - dx)
            if c_lo >= c_hi:
                continue
            centre = src[r_lo:r_hi, c_lo:c_hi]
            neigh = src[r_lo + dy:r_hi + dy, c_lo + dx:c_hi + dx]
            weight = spatial[dy + radius, dx + radius] * color_table[np.abs(centre - neigh)]
            acc[r_lo - y0:r_hi - y0, c_lo:c_hi] += neigh * weight
            wsum[r_lo - y0:r_hi - y0, c_lo:c_hi] += weight

    centre_vals = src[y0:y1].astype(np.float64)
    with np.errstate(invalid="ignore", divide="ignore"):
        filtered = np.floor(acc / wsum + 0.5)
    out = np.where(wsum > 0, filtered, centre_vals)
    return np.clip(out, 0, 255).astype(np.uint8)


def apply_bilateral(
    image,
    sigma_space: float = 3.0,
    sigma_color: float = 50.0,
    executor: Optional[Executor] = None,
    band_rows: int = 16,
) -> GrayImage:
    """
    Edge-preserving bilateral filter.

    Args:
        image: GrayImage or 2D uint8 array.
        sigma_space: Spatial Gaussian sigma; the window radius is ceil(3 * sigma).
        sigma_color: Intensity Gaussian sigma.
        executor: Optional pool; row bands are filtered concurrently.
        band_rows: Rows per band when an executor is given.

    Returns:
        Filtered GrayImage of the same size.
    """
    img = as_gray_image(image)
    if img.is_empty:
        raise InputShapeError("Bilateral filter needs a non-empty image",
                              width=img.width, height=img.height)
    if sigma_space <= 0 or sigma_color <= 0:
        raise ValueError("Bilateral sigmas must be positive")

    radius = max(1, int(math.ceil(3.0 * sigma_space)))
    offsets = np.arange(-radius, radius + 1, dtype=np.float64)
    dist2 = offsets[:, None] ** 2 + offsets[None, :] ** 2
    spatial = np.exp((-0.5 / (sigma_space * sigma_space)) * dist2)
    diffs = np.arange(256, dtype=np.float64)
    color_table = np.exp((-0.5 / (sigma_color * sigma_color)) * diffs * diffs)

    src = img.pixels.astype(np.int32)
    h = src.shape[0]

    if executor is None:
        out = _bilateral_band(src, 0, h, radius, spatial, color_table)
    else:
        bounds = [(y, min(y + band_rows, h)) for y in range(0, h, band_rows)]
        bands = executor.map(
            lambda b: _bilateral_band(src, b[0], b[1], radius, spatial, color_table),
            bounds,
        )
        out = np.vstack(list(bands))

    return GrayImage(out, copy=False)


# ============================================================
# Region mask
# ============================================================

@lru_cache(maxsize=8)
def make_region_mask(width: int, height: int) -> GrayImage:
    """
    Fixed elliptical region-of-interest mask.

    The ellipse is centred on the image with radii 0.375*width and
    0.4375*height. Pixels with normalized distance <= 1 are 255.
    The result depends only on the size, so it is cached.
    """
    if width <= 0 or height <= 0:
        raise InputShapeError("Mask size must be positive", width=width, height=height)

    cx = np.float32(width) * np.float32(0.5)
    cy = np.float32(height) * np.float32(0.5)
    rx = np.float32(width) * np.float32(0.375)
    ry = np.float32(height) * np.float32(0.4375)

    dx = (np.arange(width, dtype=np.float32) - cx) / rx
    dy = (np.arange(height, dtype=np.float32) - cy) / ry
    dist = dy[:, None] * dy[:, None] + dx[None, :] * dx[None, :]

    mask = np.where(dist <= np.float32(1.0), 255, 0).astype(np.uint8)
    return GrayImage(mask, copy=False)


# ============================================================
# Canonicalizer
# ============================================================

class Canonicalizer:
    """
    Fixed-order preprocessing: resize -> CLAHE -> bilateral -> mask.

    Args:
        config: Dictionary with optional keys:
            - target_size: Output side length (default 128)
            - aspect_tolerance: Bicubic vs letterbox switch (default 0.1)
            - clahe_tiles_x / clahe_tiles_y: Tile grid (default 8 x 8)
            - clahe_clip_limit: Clip limit (default 2.0)
            - bilateral_sigma_space: Spatial sigma (default 3.0)
            - bilateral_sigma_color: Intensity sigma (default 50.0)
            - max_workers: Thread pool size; 1 runs everything inline
        executor: Shared pool to use instead of creating one.
    """

    def __init__(self, config: Optional[Dict[str, Any]] = None, executor: Optional[Executor] = None):
        if config is None:
            config = {}
        self.target_size = int(config.get("target_size", CANONICAL_SIZE))
        self.aspect_tolerance = float(config.get("aspect_tolerance", 0.1))
        self.clahe_tiles_x = int(config.get("clahe_tiles_x", 8))
        self.clahe_tiles_y = int(config.get("clahe_tiles_y", 8))
        self.clahe_clip_limit = float(config.get("clahe_clip_limit", 2.0))
        self.sigma_space = float(config.get("bilateral_sigma_space", 3.0))
        self.sigma_color = float(config.get("bilateral_sigma_color", 50.0))

        self._owns_executor = False
        self._executor = executor
        max_workers = int(config.get("max_workers", 1))
        if self._executor is None and max_workers > 1:
            self._executor = ThreadPoolExecutor(max_workers=max_workers)
            self._owns_executor = True

    def canonicalize(self, image) -> CanonicalImage:
        """
        Run the full preprocessing chain on one image.

        Raises:
            InputShapeError: If the input has zero width or height.
        """
        resized = resize_for_biometrics(image, self.target_size, self.aspect_tolerance)
        equalized = apply_clahe(
            resized, self.clahe_tiles_x, self.clahe_tiles_y, self.clahe_clip_limit,
            executor=self._executor,
        )
        smoothed = apply_bilateral(
            equalized, self.sigma_space, self.sigma_color, executor=self._executor,
        )
        mask = make_region_mask(self.target_size, self.target_size)
        return CanonicalImage(image=smoothed, mask=mask)

    def close(self) -> None:
        """Shut down the thread pool if this instance created it."""
        if self._owns_executor and self._executor is not None:
            self._executor.shutdown(wait=True)
            self._executor = None
            self._owns_executor = False

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()


def get_canonicalizer(config: Dict[str, Any] = None) -> Canonicalizer:
    """
    Factory function for a Canonicalizer.

    Args:
        config: Optional config dict. If None, the "canonicalizer" section
                of config.yaml is used.
    """
    if config is None:
        from earcore.config import get_canonicalizer_config
        config = get_canonicalizer_config()
    return Canonicalizer(config)


if __name__ == "__main__":
    logging.basicConfig(level=logging.DEBUG)
    rng = np.random.default_rng(0)
    demo = rng.integers(0, 256, size=(180, 140), dtype=np.uint8)
    with Canonicalizer({"max_workers": 4}) as canon:
        result = canon.canonicalize(demo)
    print(f"Canonical image: {result.image}, mask pixels: {int((result.mask.pixels == 255).sum())}")

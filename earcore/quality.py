"""
Image Quality Control Module

Gray-level checks on the region of interest of a canonical ear image,
run before any enrollment image is accepted. Images that are too dark,
too bright or too flat produce unreliable LBP descriptors.

Checks (in order):
1. Mean intensity inside [mean_min, mean_max]
2. Standard deviation >= std_min (contrast)
3. Minimum value >= min_min
4. Maximum value <= max_max
5. Percentage of dark pixels (<= dark_threshold) <= pct_dark_max
6. Percentage of bright pixels (>= bright_threshold) <= pct_bright_max

Default thresholds are the P5/P95 percentiles measured on the enrollment
corpus.

Usage:
    from earcore.quality import QcThresholds, check_quality

    result = check_quality(canonical.image, canonical.mask, QcThresholds())
    if not result.passed:
        print(result.reasons)
"""

import logging
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

import numpy as np

from earcore.canonicalizer import as_gray_image
from earcore.exceptions import InputShapeError

logger = logging.getLogger(__name__)

REASON_MEAN = "mean_out_of_range"
REASON_STD = "low_contrast_std"
REASON_MIN = "too_dark_min"
REASON_MAX = "too_bright_max"
REASON_DARK = "too_many_dark_pixels"
REASON_BRIGHT = "too_many_bright_pixels"


@dataclass(frozen=True)
class QcThresholds:
    mean_min: float = 49.314
    mean_max: float = 90.156
    std_min: float = 23.294
    min_min: int = 10
    max_max: int = 245
    pct_dark_max: float = 28.481
    pct_bright_max: float = 0.001
    dark_threshold: int = 10
    bright_threshold: int = 245

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "QcThresholds":
        """Build from the "quality" config section; unknown keys are ignored."""
        if not config:
            return cls()
        kwargs = {}
        for f in fields(cls):
            if f.name in config:
                kwargs[f.name] = type(f.default)(config[f.name])
        return cls(**kwargs)


@dataclass
class RegionStats:
    """
    Gray-level statistics over the ROI.

    Attributes:
        mean: Mean intensity.
        std: Population standard deviation.
        min: Minimum value.
        max: Maximum value.
        pct_dark: Percentage of pixels <= dark threshold.
        pct_bright: Percentage of pixels >= bright threshold.
        n_pixels: ROI size.
    """

    mean: float
    std: float
    min: int
    max: int
    pct_dark: float
    pct_bright: float
    n_pixels: int


@dataclass
class QcResult:
    passed: bool
    stats: RegionStats
    reasons: List[str] = field(default_factory=list)


def compute_region_stats(image, mask, dark_threshold: int = 10, bright_threshold: int = 245) -> RegionStats:
    """
    Statistics over pixels where mask != 0.

    An empty ROI yields mean 0, std 0 and 100% dark pixels so that it
    always fails QC.

    Raises:
        InputShapeError: If image and mask shapes differ.
    """
    img = as_gray_image(image)
    msk = as_gray_image(mask)
    if img.shape != msk.shape:
        raise InputShapeError("Mask shape differs from image shape",
                              image_shape=img.shape, mask_shape=msk.shape)

    roi = img.pixels[msk.pixels != 0].astype(np.float64)
    if roi.size == 0:
        return RegionStats(mean=0.0, std=0.0, min=0, max=0, pct_dark=100.0, pct_bright=0.0, n_pixels=0)

    mean = float(roi.mean())
    var = max(float((roi * roi).mean()) - mean * mean, 0.0)
    return RegionStats(
        mean=mean,
        std=float(np.sqrt(var)),
        min=int(roi.min()),
        max=int(roi.max()),
        pct_dark=100.0 * float(np.count_nonzero(roi <= dark_threshold)) / roi.size,
        pct_bright=100.0 * float(np.count_nonzero(roi >= bright_threshold)) / roi.size,
        n_pixels=int(roi.size),
    )


def check_quality(image, mask, thresholds: Optional[QcThresholds] = None) -> QcResult:
    """
    Run every QC check and collect the failing ones.

    Returns:
        QcResult; `reasons` lists failed checks in evaluation order.
    """
    t = thresholds or QcThresholds()
    stats = compute_region_stats(image, mask, t.dark_threshold, t.bright_threshold)

    reasons = []
    if stats.mean < t.mean_min or stats.mean > t.mean_max:
        reasons.append(REASON_MEAN)
    if stats.std < t.std_min:
        reasons.append(REASON_STD)
    if stats.min < t.min_min:
        reasons.append(REASON_MIN)
    if stats.max > t.max_max:
        reasons.append(REASON_MAX)
    if stats.pct_dark > t.pct_dark_max:
        reasons.append(REASON_DARK)
    if stats.pct_bright > t.pct_bright_max:
        reasons.append(REASON_BRIGHT)

    logger.debug(
        f"QC mean={stats.mean:.2f} std={stats.std:.2f} min={stats.min} max={stats.max} "
        f"dark={stats.pct_dark:.3f}% bright={stats.pct_bright:.3f}% -> {reasons or 'PASS'}"
    )
    return QcResult(passed=not reasons, stats=stats, reasons=reasons)

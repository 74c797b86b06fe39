"""
Threshold Calibration Module

Sweeps decision thresholds over genuine and impostor score sets to pick
verification operating points: the Equal Error Rate point and fixed-FAR
points (1%, 5%, 10% by default).

    FAR(t) = fraction of impostor scores >= t
    FRR(t) = fraction of genuine scores  <  t

Scores come from any EmbeddingScorer (template cosine or OVA SVM) via
collect_scores().

Usage:
    from earcore.calibration import ThresholdCalibrator, collect_scores

    genuine, impostor = collect_scores(embeddings, labels, templates)
    result = ThresholdCalibrator().calibrate(genuine, impostor)
    print(f"EER: {result.eer:.3f} at {result.eer_point.threshold:.4f}")
    result.write_csv("reports/thresholds.csv")
"""

import csv
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Sequence, Tuple, Union

import matplotlib.pyplot as plt
import numpy as np
from sklearn.metrics import auc, roc_curve

from earcore.matching.interfaces import EmbeddingScorer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OperatingPoint:
    threshold: float
    far: float
    frr: float

    @property
    def err(self) -> float:
        return abs(self.far - self.frr)


@dataclass
class ScoreStats:
    """Summary of the two score populations (population stdevs)."""

    genuine_mean: float
    genuine_std: float
    impostor_mean: float
    impostor_std: float
    n_genuine: int
    n_impostor: int

    @property
    def separation(self) -> float:
        return self.genuine_mean - self.impostor_mean


@dataclass
class CalibrationResult:
    """
    Container for calibration output.

    Attributes:
        points: Full sweep, thresholds ascending.
        eer_point: Point minimizing |FAR - FRR|.
        far_points: Target FAR -> chosen point (targets with no qualifying
                    point are absent).
        stats: Score population summary.
        auc_score: ROC AUC (genuine = positive class).
    """

    points: List[OperatingPoint]
    eer_point: OperatingPoint
    far_points: Dict[float, OperatingPoint]
    stats: ScoreStats
    auc_score: float
    genuine: np.ndarray = field(repr=False, default=None)
    impostor: np.ndarray = field(repr=False, default=None)

    @property
    def eer(self) -> float:
        return (self.eer_point.far + self.eer_point.frr) / 2.0

    def write_csv(self, path: Union[str, Path]) -> None:
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "w", newline="", encoding="utf-8") as f:
            writer = csv.writer(f)
            writer.writerow(["threshold", "far", "frr", "err"])
            for p in self.points:
                writer.writerow([f"{p.threshold:.6f}", f"{p.far:.6f}", f"{p.frr:.6f}", f"{p.err:.6f}"])
        logger.info(f"Wrote {len(self.points)} operating points to {path}")


def collect_scores(
    embeddings: np.ndarray,
    labels: Sequence[int],
    scorer: EmbeddingScorer,
) -> Tuple[np.ndarray, np.ndarray]:
    """
    Split a scorer's outputs into genuine and impostor scores.

    For each embedding, the score under its true class is genuine and the
    scores under every other enrolled class are impostor. Embeddings whose
    label isn't enrolled in the scorer are skipped.

    Returns:
        (genuine, impostor) float64 arrays.
    """
    embeddings = np.asarray(embeddings, dtype=np.float64)
    labels = np.asarray(labels).ravel()
    genuine, impostor = [], []
    skipped = 0

    for x, label in zip(embeddings, labels):
        classes, scores = scorer.score_all(x)
        own = classes == label
        if not np.any(own):
            skipped += 1
            continue
        genuine.append(float(scores[own][0]))
        impostor.extend(float(s) for s in scores[~own])

    if skipped:
        logger.warning(f"Skipped {skipped} samples whose label is not enrolled")
    logger.debug(f"Collected {len(genuine)} genuine and {len(impostor)} impostor scores")
    return np.array(genuine, dtype=np.float64), np.array(impostor, dtype=np.float64)


def sweep_thresholds(
    genuine: Sequence[float],
    impostor: Sequence[float],
    n_thresholds: int = 1000,
) -> List[OperatingPoint]:
    """
    Evaluate FAR/FRR at n_thresholds + 1 evenly spaced thresholds between
    the lowest and highest score seen.

    Raises:
        ValueError: If either score set is empty or n_thresholds < 1.
    """
    genuine = np.asarray(genuine, dtype=np.float64).ravel()
    impostor = np.asarray(impostor, dtype=np.float64).ravel()
    if genuine.size == 0 or impostor.size == 0:
        raise ValueError("Calibration needs both genuine and impostor scores")
    if n_thresholds < 1:
        raise ValueError(f"n_thresholds must be >= 1, got {n_thresholds}")

    lo = min(genuine.min(), impostor.min())
    hi = max(genuine.max(), impostor.max())
    step = (hi - lo) / n_thresholds
    thresholds = lo + step * np.arange(n_thresholds + 1)

    imp_sorted = np.sort(impostor)
    gen_sorted = np.sort(genuine)
    # impostor >= t  /  genuine < t
    far = 1.0 - np.searchsorted(imp_sorted, thresholds, side="left") / impostor.size
    frr = np.searchsorted(gen_sorted, thresholds, side="left") / genuine.size

    return [OperatingPoint(float(t), float(a), float(r)) for t, a, r in zip(thresholds, far, frr)]


class ThresholdCalibrator:
    """
    Operating point selection for 1:1 verification.

    Args:
        config: Dictionary with optional keys:
            - n_thresholds: Sweep resolution (default 1000)
            - far_targets: FAR targets for fixed-FAR points (default [0.01, 0.05, 0.10])
    """

    def __init__(self, config: dict = None):
        if config is None:
            config = {}
        self.n_thresholds = int(config.get("n_thresholds", 1000))
        self.far_targets = [float(t) for t in config.get("far_targets", [0.01, 0.05, 0.10])]

    def calibrate(self, genuine: Sequence[float], impostor: Sequence[float]) -> CalibrationResult:
        genuine = np.asarray(genuine, dtype=np.float64).ravel()
        impostor = np.asarray(impostor, dtype=np.float64).ravel()
        points = sweep_thresholds(genuine, impostor, self.n_thresholds)

        eer_point = min(points, key=lambda p: p.err)

        far_points = {}
        for target in self.far_targets:
            # Highest threshold first
            chosen = next((p for p in reversed(points) if p.far <= target), None)
            if chosen is not None:
                far_points[target] = chosen
            else:
                logger.warning(f"No threshold reaches FAR <= {target:.2%}")

        stats = ScoreStats(
            genuine_mean=float(genuine.mean()),
            genuine_std=float(genuine.std()),
            impostor_mean=float(impostor.mean()),
            impostor_std=float(impostor.std()),
            n_genuine=int(genuine.size),
            n_impostor=int(impostor.size),
        )

        labels = np.concatenate([np.ones(genuine.size, dtype=int), np.zeros(impostor.size, dtype=int)])
        fpr, tpr, _ = roc_curve(labels, np.concatenate([genuine, impostor]))
        auc_score = float(auc(fpr, tpr))

        result = CalibrationResult(
            points=points,
            eer_point=eer_point,
            far_points=far_points,
            stats=stats,
            auc_score=auc_score,
            genuine=genuine,
            impostor=impostor,
        )
        logger.info(
            f"Calibration: EER={result.eer:.4f} at t={eer_point.threshold:.4f}, "
            f"AUC={auc_score:.4f}, separation={stats.separation:.4f}"
        )
        return result


# ============================================================
# Visualization
# ============================================================

def plot_calibration(
    result: CalibrationResult,
    save_dir: Optional[str] = None,
    show: bool = False,
) -> None:
    """
    FAR/FRR curves against threshold and the two score histograms.

    Args:
        result: Output of ThresholdCalibrator.calibrate().
        save_dir: If provided, PNGs are written here.
        show: Display the figures interactively.
    """
    if save_dir:
        os.makedirs(save_dir, exist_ok=True)

    thresholds = [p.threshold for p in result.points]
    plt.figure(figsize=(8, 5))
    plt.plot(thresholds, [p.far for p in result.points], label="FAR", color="red")
    plt.plot(thresholds, [p.frr for p in result.points], label="FRR", color="green")
    plt.axvline(result.eer_point.threshold, color="black", linestyle="--",
                label=f"EER ({result.eer:.3f})")
    plt.xlabel("Threshold")
    plt.ylabel("Error rate")
    plt.title("FAR / FRR vs Threshold")
    plt.legend()
    plt.tight_layout()
    if save_dir:
        plt.savefig(os.path.join(save_dir, "far_frr.png"), dpi=150)
    if show:
        plt.show()
    else:
        plt.close()

    if result.genuine is None or result.impostor is None:
        return

    plt.figure(figsize=(8, 5))
    plt.hist(result.genuine, bins=25, alpha=0.7, label="Genuine", color="green")
    plt.hist(result.impostor, bins=25, alpha=0.7, label="Impostor", color="red")
    plt.axvline(result.eer_point.threshold, color="black", linestyle="--", label="EER threshold")
    plt.xlabel("Score")
    plt.ylabel("Count")
    plt.title("Score Distribution")
    plt.legend()
    plt.tight_layout()
    if save_dir:
        plt.savefig(os.path.join(save_dir, "score_distributions.png"), dpi=150)
    if show:
        plt.show()
    else:
        plt.close()

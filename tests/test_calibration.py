"""
Tests for the Threshold Calibration module.

Run with: pytest tests/test_calibration.py -v
"""

import csv

import numpy as np
import pytest

from earcore.calibration import (
    OperatingPoint,
    ThresholdCalibrator,
    collect_scores,
    plot_calibration,
    sweep_thresholds,
)
from earcore.matching.template_matcher import build_templates


@pytest.fixture
def separated_scores():
    np.random.seed(42)
    genuine = np.random.uniform(0.8, 0.95, size=200)
    impostor = np.random.uniform(0.0, 0.3, size=1000)
    return genuine, impostor


@pytest.fixture
def overlapping_scores():
    np.random.seed(42)
    return np.random.normal(0.5, 0.1, size=2000), np.random.normal(0.5, 0.1, size=2000)


class TestSweep:

    def test_point_count_and_range(self, separated_scores):
        genuine, impostor = separated_scores
        points = sweep_thresholds(genuine, impostor, n_thresholds=100)
        assert len(points) == 101
        assert points[0].threshold == pytest.approx(min(genuine.min(), impostor.min()))
        assert points[-1].threshold == pytest.approx(max(genuine.max(), impostor.max()))

    def test_rates_monotonic(self, overlapping_scores):
        points = sweep_thresholds(*overlapping_scores, n_thresholds=50)
        fars = [p.far for p in points]
        frrs = [p.frr for p in points]
        assert all(a >= b for a, b in zip(fars, fars[1:]))
        assert all(a <= b for a, b in zip(frrs, frrs[1:]))

    def test_far_and_frr_definitions(self):
        # step 0.25: thresholds 0, 0.25, 0.5, 0.75, 1.0
        points = sweep_thresholds([0.5, 1.0], [0.0, 0.5], n_thresholds=4)
        at_half = next(p for p in points if p.threshold == pytest.approx(0.5))
        # impostor >= t counts as accepted, genuine < t as rejected
        assert at_half.far == pytest.approx(0.5)
        assert at_half.frr == pytest.approx(0.0)

    def test_empty_rejected(self):
        with pytest.raises(ValueError):
            sweep_thresholds([], [0.1])
        with pytest.raises(ValueError):
            sweep_thresholds([0.5], [0.1], n_thresholds=0)


class TestCalibrator:

    def test_separated_eer_is_zero(self, separated_scores):
        genuine, impostor = separated_scores
        result = ThresholdCalibrator().calibrate(genuine, impostor)
        assert result.eer == pytest.approx(0.0)
        assert impostor.max() < result.eer_point.threshold <= genuine.min()
        assert result.auc_score == pytest.approx(1.0)
        assert result.stats.separation > 0.5

    def test_gaussian_eer_threshold_midway(self):
        np.random.seed(42)
        genuine = np.random.normal(1.0, 0.1, size=1000)
        impostor = np.random.normal(0.0, 0.1, size=1000)
        result = ThresholdCalibrator().calibrate(genuine, impostor)
        # first zero-error threshold: just above the highest impostor score
        assert impostor.max() < result.eer_point.threshold <= genuine.min()
        assert 0.2 < result.eer_point.threshold < 0.8
        assert result.eer_point.far == pytest.approx(result.eer_point.frr, abs=0.01)

    def test_overlapping_eer_near_half(self, overlapping_scores):
        result = ThresholdCalibrator().calibrate(*overlapping_scores)
        assert abs(result.eer - 0.5) < 0.1
        assert abs(result.auc_score - 0.5) < 0.1

    def test_fixed_far_points(self, overlapping_scores):
        result = ThresholdCalibrator({"far_targets": [0.01, 0.05, 0.10]}).calibrate(*overlapping_scores)
        assert set(result.far_points) == {0.01, 0.05, 0.10}
        for target, point in result.far_points.items():
            assert point.far <= target
        assert result.far_points[0.01].threshold >= result.far_points[0.10].threshold

    def test_write_csv(self, tmp_path, separated_scores):
        result = ThresholdCalibrator({"n_thresholds": 10}).calibrate(*separated_scores)
        path = tmp_path / "reports" / "thresholds.csv"
        result.write_csv(path)
        with open(path, newline="") as f:
            rows = list(csv.reader(f))
        assert rows[0] == ["threshold", "far", "frr", "err"]
        assert len(rows) == 12

    def test_plot(self, tmp_path, separated_scores):
        result = ThresholdCalibrator({"n_thresholds": 20}).calibrate(*separated_scores)
        plot_calibration(result, save_dir=str(tmp_path), show=False)
        assert (tmp_path / "far_frr.png").exists()
        assert (tmp_path / "score_distributions.png").exists()

    def test_operating_point_err(self):
        assert OperatingPoint(0.4, 0.1, 0.3).err == pytest.approx(0.2)


class TestCollectScores:

    def test_genuine_and_impostor_split(self):
        X = np.array([[1.0, 0.0], [0.0, 1.0]])
        templates = build_templates(X, np.array([1, 2]))
        genuine, impostor = collect_scores(X, [1, 2], templates)
        assert np.allclose(genuine, [1.0, 1.0])
        assert np.allclose(impostor, [0.0, 0.0])

    def test_unenrolled_labels_skipped(self):
        X = np.array([[1.0, 0.0], [0.0, 1.0]])
        templates = build_templates(X[:1], np.array([1]))
        genuine, impostor = collect_scores(X, [1, 5], templates)
        assert genuine.size == 1
        assert impostor.size == 0

"""
Statistical Normalizer Module

Per-dimension z-score standardization of LBP descriptors using
population statistics fitted once on the training corpus.

File format (delimiter ';' by default):
    line 1: dimension count
    line 2: means
    line 3: standard deviations

Usage:
    from earcore.normalizer import fit_zscore, apply_zscore, save_zscore, load_zscore

    params = fit_zscore(X_train)
    Z = apply_zscore(X_train, params)
    save_zscore("models/zscore_params.dat", params)
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Union

import numpy as np

from earcore.exceptions import DimensionMismatchError, InputShapeError, ModelLoadError

logger = logging.getLogger(__name__)

# stdev floors: fitting clamps below FIT_FLOOR, loading below LOAD_FLOOR
FIT_FLOOR = 1e-10
LOAD_FLOOR = 1e-12


@dataclass(frozen=True, eq=False)
class ZScoreParams:
    """
    Per-dimension mean and standard deviation.

    Attributes:
        mean: (D,) float64.
        stdev: (D,) float64, never below the numerical floor.
    """

    mean: np.ndarray
    stdev: np.ndarray

    def __post_init__(self):
        mean = np.asarray(self.mean, dtype=np.float64).ravel()
        stdev = np.asarray(self.stdev, dtype=np.float64).ravel()
        if mean.shape != stdev.shape:
            raise DimensionMismatchError(mean.size, stdev.size, stage="zscore_params")
        stdev = np.where(np.abs(stdev) < LOAD_FLOOR, 1.0, stdev)
        mean.setflags(write=False)
        stdev.setflags(write=False)
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "stdev", stdev)

    @property
    def dim(self) -> int:
        return int(self.mean.size)


def fit_zscore(X: np.ndarray) -> ZScoreParams:
    """
    Fit population mean/stdev per dimension.

    Args:
        X: (N, D) training matrix, N >= 1.

    Returns:
        ZScoreParams with stdev < 1e-10 replaced by 1.0.
    """
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2 or X.shape[0] == 0 or X.shape[1] == 0:
        raise InputShapeError("fit_zscore needs a non-empty (N, D) matrix", shape=X.shape)
    mean = X.mean(axis=0)
    stdev = np.sqrt(((X - mean) ** 2).mean(axis=0))
    stdev = np.where(stdev < FIT_FLOOR, 1.0, stdev)
    logger.info(f"Fitted z-score params: {X.shape[0]} samples x {X.shape[1]} dims")
    return ZScoreParams(mean=mean, stdev=stdev)


def _check_dims(x: np.ndarray, params: ZScoreParams) -> None:
    if x.size == 0:
        raise InputShapeError("Empty feature vector")
    if x.shape[-1] != params.dim:
        raise DimensionMismatchError(params.dim, x.shape[-1], stage="zscore")


def apply_zscore(x: np.ndarray, params: ZScoreParams) -> np.ndarray:
    """
    Standardize `(x - mean) / stdev`.

    Args:
        x: (D,) vector or (N, D) matrix.
        params: Fitted parameters.

    Raises:
        DimensionMismatchError: If the last axis differs from params.dim.
    """
    x = np.asarray(x, dtype=np.float64)
    _check_dims(x, params)
    return (x - params.mean) / params.stdev


def invert_zscore(z: np.ndarray, params: ZScoreParams) -> np.ndarray:
    """Undo apply_zscore: `z * stdev + mean`."""
    z = np.asarray(z, dtype=np.float64)
    _check_dims(z, params)
    return z * params.stdev + params.mean


def _format_row(values: np.ndarray, delimiter: str) -> str:
    return delimiter.join(repr(float(v)) for v in values)


def save_zscore(path: Union[str, Path], params: ZScoreParams, delimiter: str = ";") -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"{params.dim}\n")
        f.write(_format_row(params.mean, delimiter) + "\n")
        f.write(_format_row(params.stdev, delimiter) + "\n")
    logger.info(f"Saved z-score params ({params.dim} dims) to {path}")


def load_zscore(path: Union[str, Path], delimiter: str = ";") -> ZScoreParams:
    """
    Load z-score parameters.

    Raises:
        ModelLoadError: Missing file, malformed numbers, or a declared
            dimension that doesn't match the mean/stdev rows.
    """
    path = Path(path)
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = [line.strip() for line in f if line.strip()]
    except OSError as e:
        raise ModelLoadError(f"Cannot read z-score params: {e}", path=path) from e

    if len(lines) < 3:
        raise ModelLoadError("Z-score file needs 3 lines", path=path, lines=len(lines))

    try:
        dims = int(lines[0])
        mean = np.array([float(v) for v in lines[1].split(delimiter)], dtype=np.float64)
        stdev = np.array([float(v) for v in lines[2].split(delimiter)], dtype=np.float64)
    except ValueError as e:
        raise ModelLoadError(f"Malformed z-score params: {e}", path=path) from e

    if dims <= 0 or mean.size != dims or stdev.size != dims:
        raise ModelLoadError(
            "Z-score lengths don't match the declared dimension",
            path=path, declared=dims, means=int(mean.size), stdevs=int(stdev.size),
        )

    logger.info(f"Loaded z-score params ({dims} dims) from {path}")
    return ZScoreParams(mean=mean, stdev=stdev)

"""
Projection Models: PCA and LDA

Learned linear projections that compress standardized LBP descriptors
into a short discriminative embedding:

    z-scored descriptor -> PCA -> L2 -> LDA -> L2 -> embedding

PCA extracts its leading directions by power iteration with
Gram-Schmidt deflation, since only a small number of components is ever
needed from a large covariance matrix. LDA solves the Fisher criterion
on the PCA output (regularized within-class scatter, scipy solve) and
extracts at most C-1 discriminant directions by power iteration with
deflation.

Both models are frozen dataclasses. Retraining builds a new value.

Usage:
    from earcore.projection import train_pca, apply_pca, train_lda, apply_lda, l2_normalize

    pca = train_pca(Z_train, n_components=120)
    P = l2_normalize(apply_pca(Z_train, pca))
    lda = train_lda(P, y_train, n_components=40)
    E = l2_normalize(apply_lda(P, lda))
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import numpy as np
import scipy.linalg

from earcore.exceptions import DimensionMismatchError, InputShapeError, ModelLoadError

logger = logging.getLogger(__name__)


def l2_normalize(x: np.ndarray, eps: float = 1e-8) -> np.ndarray:
    """
    Scale a vector (or each row of a matrix) to unit L2 norm.

    Vectors with norm <= eps are returned unchanged.
    """
    x = np.asarray(x, dtype=np.float64)
    if x.ndim == 1:
        norm = np.linalg.norm(x)
        return x / norm if norm > eps else x.copy()
    norms = np.linalg.norm(x, axis=1, keepdims=True)
    safe = np.where(norms > eps, norms, 1.0)
    return x / safe


def _as_matrix(X: np.ndarray, name: str) -> np.ndarray:
    X = np.asarray(X, dtype=np.float64)
    if X.ndim != 2 or X.shape[0] == 0 or X.shape[1] == 0:
        raise InputShapeError(f"{name} needs a non-empty (N, D) matrix", shape=X.shape)
    return X


def _project(X: np.ndarray, mean: np.ndarray, components: np.ndarray, stage: str) -> np.ndarray:
    X = np.asarray(X, dtype=np.float64)
    if X.size == 0:
        raise InputShapeError(f"Empty input to {stage}")
    if X.shape[-1] != mean.size:
        raise DimensionMismatchError(mean.size, X.shape[-1], stage=stage)
    return (X - mean) @ components.T


def _freeze(arr: np.ndarray) -> np.ndarray:
    arr = np.array(arr, dtype=np.float64)
    arr.setflags(write=False)
    return arr


# ============================================================
# PCA
# ============================================================

@dataclass(frozen=True, eq=False)
class PCAModel:
    """
    Attributes:
        mean: (D,) training mean.
        components: (k, D) orthonormal directions, leading first.
    """

    mean: np.ndarray
    components: np.ndarray

    def __post_init__(self):
        mean = _freeze(np.ravel(self.mean))
        components = _freeze(np.atleast_2d(self.components))
        if components.size and components.shape[1] != mean.size:
            raise DimensionMismatchError(mean.size, components.shape[1], stage="pca_model")
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "components", components)

    @property
    def input_dim(self) -> int:
        return int(self.mean.size)

    @property
    def n_components(self) -> int:
        return int(self.components.shape[0])


def _orthogonalize(v: np.ndarray, basis: List[np.ndarray]) -> np.ndarray:
    for prev in basis:
        v = v - np.dot(v, prev) * prev
    return v


def _fill_direction(dim: int, basis: List[np.ndarray]) -> np.ndarray:
    """Unit vector orthogonal to `basis`, for when the covariance has no rank left."""
    for i in range(dim):
        e = np.zeros(dim)
        e[i] = 1.0
        v = _orthogonalize(e, basis)
        norm = np.linalg.norm(v)
        if norm > 1e-6:
            return v / norm
    raise ValueError("No orthogonal direction left")


def train_pca(
    X: np.ndarray,
    n_components: int,
    max_iter: int = 1000,
    tol: float = 1e-6,
) -> PCAModel:
    """
    Fit PCA by power iteration with sequential Gram-Schmidt deflation.

    Each component starts from the normalized all-ones vector and is
    repeatedly multiplied by the sample covariance, orthogonalized
    against every earlier component and renormalized until the L1
    change drops below `tol` or `max_iter` is reached.

    Args:
        X: (N, D) training matrix.
        n_components: Requested k; clipped to D.
        max_iter: Iteration cap per component.
        tol: L1 convergence tolerance.

    Returns:
        PCAModel with k orthonormal components.
    """
    X = _as_matrix(X, "train_pca")
    m, dim = X.shape
    k = min(int(n_components), dim)
    if k <= 0:
        raise ValueError(f"n_components must be positive, got {n_components}")

    mean = X.mean(axis=0)
    Xc = X - mean
    divisor = float(m - 1) if m > 1 else 1.0

    # Explicit covariance when it is the cheaper operator
    if dim <= m:
        cov = (Xc.T @ Xc) / divisor

        def cov_times(v):
            return cov @ v
    else:
        def cov_times(v):
            return Xc.T @ (Xc @ v) / divisor

    components: List[np.ndarray] = []
    for comp in range(k):
        b = np.ones(dim) / np.sqrt(dim)
        converged = False
        for _ in range(max_iter):
            b1 = _orthogonalize(cov_times(b), components)
            norm = np.linalg.norm(b1)
            if norm <= 1e-12:
                break
            b1 = b1 / norm
            diff = float(np.sum(np.abs(b1 - b)))
            b = b1
            if diff < tol:
                converged = True
                break

        b = _orthogonalize(b, components)
        norm = np.linalg.norm(b)
        if norm <= 1e-6:
            logger.warning(f"PCA component {comp}: covariance rank exhausted, filling basis")
            b = _fill_direction(dim, components)
        else:
            b = b / norm
        components.append(b)
        if not converged:
            logger.debug(f"PCA component {comp} stopped without converging")

    logger.info(f"Trained PCA: {m} samples, {dim} -> {k} dims")
    return PCAModel(mean=mean, components=np.vstack(components))


def apply_pca(X: np.ndarray, model: PCAModel) -> np.ndarray:
    """Project (x - mean) onto each component. Accepts (D,) or (N, D)."""
    return _project(X, model.mean, model.components, stage="pca")


def reconstruct_pca(Y: np.ndarray, model: PCAModel) -> np.ndarray:
    """Re-expand PCA coordinates back to the input space."""
    Y = np.asarray(Y, dtype=np.float64)
    if Y.shape[-1] != model.n_components:
        raise DimensionMismatchError(model.n_components, Y.shape[-1], stage="pca_reconstruct")
    return Y @ model.components + model.mean


def save_pca(path: Union[str, Path], model: PCAModel, delimiter: str = ",") -> None:
    """Mean row followed by one row per component."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(delimiter.join(repr(float(v)) for v in model.mean) + "\n")
        for comp in model.components:
            f.write(delimiter.join(repr(float(v)) for v in comp) + "\n")
    logger.info(f"Saved PCA ({model.n_components} comps) to {path}")


def _read_rows(path: Path, delimiter: str, what: str) -> List[List[float]]:
    try:
        with open(path, "r", encoding="utf-8") as f:
            lines = [line.strip() for line in f if line.strip()]
    except OSError as e:
        raise ModelLoadError(f"Cannot read {what} model: {e}", path=path) from e
    try:
        return [[float(v) for v in line.split(delimiter)] for line in lines]
    except ValueError as e:
        raise ModelLoadError(f"Malformed {what} model: {e}", path=path) from e


def load_pca(path: Union[str, Path], delimiter: str = ",") -> PCAModel:
    """
    Raises:
        ModelLoadError: Missing file, no components, or a component row
            whose length differs from the mean row.
    """
    path = Path(path)
    rows = _read_rows(path, delimiter, "PCA")
    if len(rows) < 2:
        raise ModelLoadError("PCA file needs a mean row and at least one component", path=path)
    mean = rows[0]
    for i, row in enumerate(rows[1:]):
        if len(row) != len(mean):
            raise ModelLoadError(
                "PCA component length differs from mean length",
                path=path, component=i, expected=len(mean), actual=len(row),
            )
    model = PCAModel(mean=np.array(mean), components=np.array(rows[1:]))
    logger.info(f"Loaded PCA ({model.n_components} comps, {model.input_dim} dims) from {path}")
    return model


# ============================================================
# LDA
# ============================================================

@dataclass(frozen=True, eq=False)
class LDAModel:
    """
    Attributes:
        mean: (D,) global mean of the training data.
        components: (c, D) discriminant directions, c <= num_classes - 1.
        num_classes: Number of classes seen during training.
    """

    mean: np.ndarray
    components: np.ndarray
    num_classes: int

    def __post_init__(self):
        mean = _freeze(np.ravel(self.mean))
        components = _freeze(np.atleast_2d(self.components))
        if components.size and components.shape[1] != mean.size:
            raise DimensionMismatchError(mean.size, components.shape[1], stage="lda_model")
        object.__setattr__(self, "mean", mean)
        object.__setattr__(self, "components", components)
        object.__setattr__(self, "num_classes", int(self.num_classes))

    @property
    def input_dim(self) -> int:
        return int(self.mean.size)

    @property
    def n_components(self) -> int:
        return int(self.components.shape[0])


def _power_iteration(M: np.ndarray, max_iter: int, tol: float) -> np.ndarray:
    n = M.shape[0]
    v = np.full(n, 1.0 / np.sqrt(n))
    for _ in range(max_iter):
        v1 = M @ v
        norm = np.linalg.norm(v1)
        if norm < 1e-10:
            break
        v1 = v1 / norm
        diff = np.linalg.norm(v1 - v)
        v = v1
        if diff < tol:
            break
    return v


def train_lda(
    X: np.ndarray,
    y: np.ndarray,
    n_components: int = -1,
    reg: float = 1e-3,
    max_iter: int = 200,
    tol: float = 1e-8,
) -> LDAModel:
    """
    Fisher LDA on (already PCA-reduced) data.

    Args:
        X: (N, D) samples.
        y: (N,) integer labels.
        n_components: Requested directions; <= 0 or > C-1 means C-1.
        reg: Within-class scatter ridge, scaled by trace(Sw)/D.
        max_iter: Power-iteration cap per component.
        tol: L2 convergence tolerance.

    Raises:
        ValueError: Fewer than two classes.
    """
    X = _as_matrix(X, "train_lda")
    y = np.asarray(y).ravel()
    if y.size != X.shape[0]:
        raise DimensionMismatchError(X.shape[0], y.size, stage="lda_labels")

    n, d = X.shape
    classes = np.unique(y)
    num_classes = int(classes.size)
    if num_classes < 2:
        raise ValueError("LDA needs at least two classes")

    max_comp = num_classes - 1
    if n_components <= 0 or n_components > max_comp:
        n_components = max_comp

    mean = X.mean(axis=0)
    Sb = np.zeros((d, d))
    Sw = np.zeros((d, d))
    for c in classes:
        Xc = X[y == c]
        mu_c = Xc.mean(axis=0)
        diff = mu_c - mean
        Sb += Xc.shape[0] * np.outer(diff, diff)
        centered = Xc - mu_c
        Sw += centered.T @ centered

    alpha = reg * np.trace(Sw) / d
    Sw[np.diag_indices(d)] += alpha

    try:
        M = scipy.linalg.solve(Sw, Sb, assume_a="sym")
    except (scipy.linalg.LinAlgError, ValueError):
        logger.warning("Within-class scatter is singular; using least squares")
        M = scipy.linalg.lstsq(Sw, Sb)[0]

    components = []
    for _ in range(n_components):
        v = _power_iteration(M, max_iter, tol)
        eigval = float(v @ (M @ v))
        components.append(v)
        M = M - eigval * np.outer(v, v)

    logger.info(f"Trained LDA: {n} samples, {d} dims, {num_classes} classes -> {n_components} comps")
    return LDAModel(mean=mean, components=np.vstack(components), num_classes=num_classes)


def apply_lda(X: np.ndarray, model: LDAModel) -> np.ndarray:
    """Project (x - global_mean) onto the discriminant directions."""
    return _project(X, model.mean, model.components, stage="lda")


def save_lda(path: Union[str, Path], model: LDAModel, delimiter: str = ";") -> None:
    """Header `num_classes;n_components;dims`, then the mean row and component rows."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        f.write(f"{model.num_classes}{delimiter}{model.n_components}{delimiter}{model.input_dim}\n")
        f.write(delimiter.join(repr(float(v)) for v in model.mean) + "\n")
        for comp in model.components:
            f.write(delimiter.join(repr(float(v)) for v in comp) + "\n")
    logger.info(f"Saved LDA ({model.n_components} comps) to {path}")


def load_lda(path: Union[str, Path], delimiter: str = ";") -> LDAModel:
    """
    Raises:
        ModelLoadError: Bad header, or mean/component rows that don't match
            the declared dimension and component count.
    """
    path = Path(path)
    rows = _read_rows(path, delimiter, "LDA")
    if len(rows) < 2 or len(rows[0]) != 3:
        raise ModelLoadError("LDA file needs a 3-field header and a mean row", path=path)

    num_classes, n_comp, dims = (int(v) for v in rows[0])
    mean = rows[1]
    comps = rows[2:]
    if dims <= 0 or len(mean) != dims:
        raise ModelLoadError("LDA mean length differs from header", path=path,
                             declared=dims, actual=len(mean))
    if n_comp <= 0 or len(comps) != n_comp:
        raise ModelLoadError("LDA component count differs from header", path=path,
                             declared=n_comp, actual=len(comps))
    for i, row in enumerate(comps):
        if len(row) != dims:
            raise ModelLoadError("LDA component length differs from header", path=path,
                                 component=i, expected=dims, actual=len(row))

    model = LDAModel(mean=np.array(mean), components=np.array(comps), num_classes=num_classes)
    logger.info(f"Loaded LDA ({n_comp} comps, {dims} dims) from {path}")
    return model


def embed(z: np.ndarray, pca: PCAModel, lda: Optional[LDAModel]) -> np.ndarray:
    """z-scored descriptor(s) -> PCA -> L2 -> LDA -> L2."""
    p = l2_normalize(apply_pca(z, pca))
    if lda is None:
        return p
    return l2_normalize(apply_lda(p, lda))

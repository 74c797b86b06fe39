"""
One-vs-All Linear SVM

One independent binary hyperplane per enrolled class, trained by
stochastic sub-gradient descent on the L2-regularized hinge loss:

    margin = y * (w.x + b)
    margin < 1 :  w -= lr * (-y * x / m + C * w),  b -= lr * (-y / m)
    otherwise  :  w -= lr * C * w

The learning rate decays by 0.9 every `decay_every` epochs. Training
keeps the lowest-loss weights seen and stops early once the loss has
not improved for `patience` epochs past `min_epochs`. `epochs` is a
hard cap.

Warm-start retraining is a pure function from (old model, data) to a
new model; the old model is never modified, so readers holding it are
unaffected until the caller swaps the new value in.

Binary model format (little-endian):
    uint64 class count
    per class: int32 id, uint64 length, float64[length] weights, float64 bias

Usage:
    from earcore.matching.svm_ova import SvmHyperParams, train_svm_ova

    model = train_svm_ova(X, y, SvmHyperParams())
    pred = model.predict(x)
    print(pred.top1, pred.score1)
"""

import logging
import struct
from concurrent.futures import Executor
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional, Tuple, Union

import numpy as np

from earcore.exceptions import DimensionMismatchError, InputShapeError, ModelLoadError
from earcore.matching.interfaces import EmbeddingScorer, Ranking

logger = logging.getLogger(__name__)

MAX_WEIGHT_LEN = 10000


@dataclass(frozen=True)
class SvmHyperParams:
    """
    Training hyperparameters.

    Defaults are the full-training schedule; see `warm_start()` for the
    incremental schedule.
    """

    learning_rate: float = 0.01
    epochs: int = 5000
    C: float = 1e-3
    tol: float = 1e-5
    decay_every: int = 500
    decay_factor: float = 0.9
    patience: int = 300
    min_epochs: int = 600
    seed: int = 42

    @classmethod
    def warm_start(cls, **overrides) -> "SvmHyperParams":
        """Schedule for incremental retraining (400 epochs, faster decay, short patience)."""
        params = cls(learning_rate=0.01, epochs=400, C=1e-4, tol=1e-4,
                     decay_every=200, patience=50, min_epochs=100)
        return replace(params, **overrides)

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]], warm: bool = False) -> "SvmHyperParams":
        """Build from a config section; missing keys keep their defaults."""
        base = cls.warm_start() if warm else cls()
        if not config:
            return base
        known = {k: config[k] for k in base.__dataclass_fields__ if k in config}
        return replace(base, **known)


@dataclass(frozen=True)
class IncrementalLimits:
    """Sampling caps used when adding one class to an existing model."""

    pos_max: int = 250
    neg_max: int = 800
    new_neg_max: int = 120

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "IncrementalLimits":
        if not config:
            return cls()
        return cls(
            pos_max=int(config.get("pos_max", 250)),
            neg_max=int(config.get("neg_max", 800)),
            new_neg_max=int(config.get("new_neg_max", 120)),
        )


@dataclass
class SvmPrediction:
    """Top-2 OVA prediction."""

    top1: int
    score1: float
    top2: int
    score2: float

    @property
    def margin(self) -> float:
        return self.score1 - self.score2 if self.top2 >= 0 else float("inf")


@dataclass(frozen=True, eq=False)
class SVMModel(EmbeddingScorer):
    """
    One-vs-All linear model.

    Attributes:
        classes: (C,) int64 class ids, ascending.
        weights: (C, D) float64, one hyperplane per class.
        biases: (C,) float64.
    """

    classes: np.ndarray
    weights: np.ndarray
    biases: np.ndarray

    def __post_init__(self):
        classes = np.array(self.classes, dtype=np.int64).ravel()
        weights = np.array(self.weights, dtype=np.float64)
        biases = np.array(self.biases, dtype=np.float64).ravel()
        if weights.ndim != 2:
            weights = weights.reshape(len(classes), -1) if len(classes) else weights.reshape(0, 0)
        if len(weights) != len(classes):
            raise DimensionMismatchError(len(classes), len(weights), stage="svm_weights")
        if len(biases) != len(classes):
            raise DimensionMismatchError(len(classes), len(biases), stage="svm_biases")
        for arr in (classes, weights, biases):
            arr.setflags(write=False)
        object.__setattr__(self, "classes", classes)
        object.__setattr__(self, "weights", weights)
        object.__setattr__(self, "biases", biases)

    @property
    def dim(self) -> int:
        return int(self.weights.shape[1]) if len(self.classes) else 0

    @property
    def n_classes(self) -> int:
        return int(len(self.classes))

    def __contains__(self, class_id: int) -> bool:
        return bool(np.any(self.classes == class_id))

    def scores(self, x: np.ndarray) -> np.ndarray:
        """w_c . x + b_c for every class."""
        x = np.asarray(x, dtype=np.float64).ravel()
        if x.size == 0:
            raise InputShapeError("Empty embedding")
        if x.size != self.dim:
            raise DimensionMismatchError(self.dim, x.size, stage="svm")
        return self.weights @ x + self.biases

    def score_all(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        return self.classes, self.scores(x)

    def predict(self, x: np.ndarray) -> SvmPrediction:
        """Argmax class plus runner-up."""
        ranking: Ranking = self.rank(x)
        return SvmPrediction(ranking.top1, ranking.score1, ranking.top2, ranking.score2)


# ============================================================
# Training
# ============================================================

def train_binary(
    X: np.ndarray,
    y_pm: np.ndarray,
    w0: np.ndarray,
    b0: float,
    params: SvmHyperParams,
    rng: np.random.Generator,
) -> Tuple[np.ndarray, float, float, int]:
    """
    Sub-gradient descent for one binary hinge-loss problem.

    Args:
        X: (m, D) samples.
        y_pm: (m,) labels in {+1, -1}.
        w0: Initial weights (copied, never modified).
        b0: Initial bias.
        params: Schedule and regularization.
        rng: Generator used to shuffle sample order each epoch.

    Returns:
        (best_w, best_b, best_loss, epochs_run)
    """
    m = X.shape[0]
    rows = [X[i] for i in range(m)]
    labels = [float(v) for v in y_pm]
    inv_m = 1.0 / m
    C = params.C

    w = np.array(w0, dtype=np.float64, copy=True)
    b = float(b0)
    best_w, best_b = w.copy(), b
    best_loss = 1e9
    no_improve = 0
    lr = params.learning_rate
    epochs_run = 0

    for epoch in range(params.epochs):
        epochs_run = epoch + 1
        loss_total = 0.0
        for i in rng.permutation(m):
            yi = labels[i]
            xi = rows[i]
            margin = yi * (float(xi @ w) + b)
            if margin < 1.0:
                w = w - lr * ((-yi * inv_m) * xi + C * w)
                b -= lr * (-yi * inv_m)
                loss_total += 1.0 - margin
            else:
                w = w - lr * (C * w)

        loss = loss_total / m
        if loss < best_loss - params.tol:
            best_loss = loss
            no_improve = 0
            best_w, best_b = w.copy(), b
        else:
            no_improve += 1

        if epoch > 0 and epoch % params.decay_every == 0:
            lr *= params.decay_factor
        if no_improve > params.patience and epoch > params.min_epochs:
            break

    return best_w, best_b, best_loss, epochs_run


def _class_rng(seed: int, class_index: int) -> np.random.Generator:
    return np.random.default_rng(np.random.SeedSequence(seed, spawn_key=(class_index,)))


def _fit_classes(
    X: np.ndarray,
    y: np.ndarray,
    classes: np.ndarray,
    init_w: np.ndarray,
    init_b: np.ndarray,
    params: SvmHyperParams,
    executor: Optional[Executor],
) -> SVMModel:
    def fit_one(idx: int):
        c = classes[idx]
        y_pm = np.where(y == c, 1.0, -1.0)
        w, b, loss, epochs = train_binary(X, y_pm, init_w[idx], init_b[idx], params,
                                          _class_rng(params.seed, idx))
        logger.debug(f"SVM class {int(c)}: loss={loss:.4f} after {epochs} epochs")
        return w, b

    indices = range(len(classes))
    if executor is not None:
        results = list(executor.map(fit_one, indices))
    else:
        results = [fit_one(i) for i in indices]

    return SVMModel(
        classes=classes,
        weights=np.vstack([w for w, _ in results]) if results else np.zeros((0, X.shape[1])),
        biases=np.array([b for _, b in results]),
    )


def _check_training_data(X: np.ndarray, y: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y).ravel().astype(np.int64)
    if X.ndim != 2 or X.shape[0] == 0 or X.shape[1] == 0:
        raise InputShapeError("SVM training needs a non-empty (N, D) matrix", shape=X.shape)
    if y.size != X.shape[0]:
        raise DimensionMismatchError(X.shape[0], y.size, stage="svm_labels")
    return X, y


def train_svm_ova(
    X: np.ndarray,
    y: np.ndarray,
    params: Optional[SvmHyperParams] = None,
    executor: Optional[Executor] = None,
) -> SVMModel:
    """
    Train one binary classifier per class from zero weights.

    Args:
        X: (N, D) embeddings.
        y: (N,) integer labels.
        params: Hyperparameters (default full-training schedule).
        executor: Optional pool; classes are independent and train concurrently.
            Each class has its own seeded generator, so results don't depend
            on scheduling.
    """
    params = params or SvmHyperParams()
    X, y = _check_training_data(X, y)
    classes = np.unique(y)
    dim = X.shape[1]
    model = _fit_classes(
        X, y, classes,
        np.zeros((len(classes), dim)), np.zeros(len(classes)),
        params, executor,
    )
    logger.info(f"Trained OVA SVM: {X.shape[0]} samples, {dim} dims, {len(classes)} classes")
    return model


def warm_start_svm(
    model: SVMModel,
    X: np.ndarray,
    y: np.ndarray,
    params: Optional[SvmHyperParams] = None,
    executor: Optional[Executor] = None,
) -> SVMModel:
    """
    Retrain starting from an existing model's weights.

    Classes already in `model` start from their old hyperplane; new
    classes start from zero. Returns a new model; `model` is untouched.

    Raises:
        DimensionMismatchError: If X doesn't match the model dimension.
    """
    params = params or SvmHyperParams.warm_start()
    X, y = _check_training_data(X, y)
    if model.n_classes and X.shape[1] != model.dim:
        raise DimensionMismatchError(model.dim, X.shape[1], stage="svm_warm_start")

    classes = np.unique(np.concatenate([model.classes, y]))
    dim = X.shape[1]
    init_w = np.zeros((len(classes), dim))
    init_b = np.zeros(len(classes))
    for i, c in enumerate(classes):
        hits = np.nonzero(model.classes == c)[0]
        if hits.size:
            init_w[i] = model.weights[hits[0]]
            init_b[i] = model.biases[hits[0]]

    new_model = _fit_classes(X, y, classes, init_w, init_b, params, executor)
    logger.info(f"Warm-started OVA SVM: {len(classes)} classes ({X.shape[0]} samples)")
    return new_model


def add_class_incremental(
    model: Optional[SVMModel],
    X_old: np.ndarray,
    y_old: np.ndarray,
    X_new: np.ndarray,
    new_class: int,
    params: Optional[SvmHyperParams] = None,
    limits: Optional[IncrementalLimits] = None,
    executor: Optional[Executor] = None,
) -> SVMModel:
    """
    Add one identity to an OVA model without refitting from scratch.

    Every binary problem sees at most `pos_max` positives. The new class
    is trained from zero against up to `neg_max` existing samples; each
    existing class is warm-started against its old negatives plus up to
    `new_neg_max` samples of the new class.

    Args:
        model: Current model, or None when nothing is enrolled yet.
        X_old: (N, D) embeddings already in the store.
        y_old: (N,) their labels.
        X_new: (M, D) embeddings of the new identity.
        new_class: Id of the new identity.
        params: Warm-start schedule by default.
        limits: Sampling caps.
        executor: Optional pool for per-class training.

    Returns:
        New SVMModel containing every old class plus `new_class`.
    """
    params = params or SvmHyperParams.warm_start()
    limits = limits or IncrementalLimits()
    X_new = np.asarray(X_new, dtype=np.float64)
    if X_new.ndim != 2 or X_new.shape[0] == 0:
        raise InputShapeError("No embeddings for the new class", shape=X_new.shape)
    dim = X_new.shape[1]
    if model is not None and model.n_classes and model.dim != dim:
        raise DimensionMismatchError(model.dim, dim, stage="svm_incremental")

    X_old = np.asarray(X_old, dtype=np.float64).reshape(-1, dim) if np.size(X_old) else np.zeros((0, dim))
    y_old = np.asarray(y_old, dtype=np.int64).ravel()
    if X_old.shape[0] != y_old.size:
        raise DimensionMismatchError(X_old.shape[0], y_old.size, stage="svm_incremental_labels")

    rng = np.random.default_rng(params.seed)

    def sample(rows: np.ndarray, cap: int) -> np.ndarray:
        if rows.shape[0] <= cap:
            return rows
        return rows[np.sort(rng.choice(rows.shape[0], size=cap, replace=False))]

    old_classes = model.classes if model is not None else np.zeros(0, dtype=np.int64)
    classes = np.unique(np.concatenate([old_classes, [new_class]])).astype(np.int64)

    tasks = []
    for idx, c in enumerate(classes):
        if c == new_class:
            pos = sample(X_new, limits.pos_max)
            neg = sample(X_old, limits.neg_max)
            w0, b0 = np.zeros(dim), 0.0
        else:
            own = X_old[y_old == c]
            others = X_old[y_old != c]
            pos = sample(own, limits.pos_max)
            neg_new = sample(X_new, limits.new_neg_max)
            neg_old = sample(others, max(limits.neg_max - neg_new.shape[0], 0))
            neg = np.vstack([neg_old, neg_new])
            hit = np.nonzero(old_classes == c)[0][0]
            w0, b0 = model.weights[hit], float(model.biases[hit])
        Xc = np.vstack([pos, neg])
        yc = np.concatenate([np.ones(pos.shape[0]), -np.ones(neg.shape[0])])
        tasks.append((idx, Xc, yc, w0, b0))

    def fit_one(task):
        idx, Xc, yc, w0, b0 = task
        if Xc.shape[0] == 0:
            return np.array(w0, dtype=np.float64), b0
        w, b, loss, epochs = train_binary(Xc, yc, w0, b0, params, _class_rng(params.seed, idx))
        logger.debug(f"Incremental SVM class {int(classes[idx])}: loss={loss:.4f}, {epochs} epochs")
        return w, b

    if executor is not None:
        results = list(executor.map(fit_one, tasks))
    else:
        results = [fit_one(t) for t in tasks]

    logger.info(f"Added class {new_class} to OVA SVM ({len(classes)} classes)")
    return SVMModel(
        classes=classes,
        weights=np.vstack([w for w, _ in results]),
        biases=np.array([b for _, b in results]),
    )


# ============================================================
# Persistence
# ============================================================

def save_svm(path: Union[str, Path], model: SVMModel) -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "wb") as f:
        f.write(struct.pack("<Q", model.n_classes))
        for c, w, b in zip(model.classes, model.weights, model.biases):
            f.write(struct.pack("<iQ", int(c), w.size))
            f.write(np.asarray(w, dtype="<f8").tobytes())
            f.write(struct.pack("<d", float(b)))
    logger.info(f"Saved OVA SVM ({model.n_classes} classes) to {path}")


def load_svm(path: Union[str, Path]) -> SVMModel:
    """
    Raises:
        ModelLoadError: Missing or truncated file, weight length of 0 or
            above 10000, or classes with different weight lengths.
    """
    path = Path(path)
    try:
        data = path.read_bytes()
    except OSError as e:
        raise ModelLoadError(f"Cannot read SVM model: {e}", path=path) from e

    try:
        (count,) = struct.unpack_from("<Q", data, 0)
        offset = 8
        classes, weights, biases = [], [], []
        for i in range(count):
            cid, length = struct.unpack_from("<iQ", data, offset)
            offset += 12
            if length == 0 or length > MAX_WEIGHT_LEN:
                raise ModelLoadError("Invalid SVM weight length", path=path,
                                     class_index=i, length=length)
            end = offset + 8 * length
            if end + 8 > len(data):
                raise ModelLoadError("Truncated SVM model", path=path, class_index=i)
            weights.append(np.frombuffer(data[offset:end], dtype="<f8").astype(np.float64))
            (bias,) = struct.unpack_from("<d", data, end)
            offset = end + 8
            classes.append(cid)
            biases.append(bias)
    except struct.error as e:
        raise ModelLoadError(f"Truncated SVM model: {e}", path=path) from e

    if offset != len(data):
        logger.warning(f"{len(data) - offset} trailing bytes in {path}")
    if len({w.size for w in weights}) > 1:
        raise ModelLoadError("SVM classes have different weight lengths", path=path)

    order = np.argsort(classes, kind="stable")
    dim = weights[0].size if weights else 0
    model = SVMModel(
        classes=np.array(classes, dtype=np.int64)[order],
        weights=np.vstack(weights)[order] if weights else np.zeros((0, dim)),
        biases=np.array(biases, dtype=np.float64)[order],
    )
    logger.info(f"Loaded OVA SVM ({model.n_classes} classes, {dim} dims) from {path}")
    return model

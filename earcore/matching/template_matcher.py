"""
Template Matcher: per-identity centroids compared by cosine similarity.

Each enrolled class is represented by one template (K=1), the mean of its
training embeddings. A probe is ranked against every template; verification
accepts a claim when the claimed class is the top-1 match and its cosine
score reaches the operating threshold.

Templates file (one line per class, ';' separated):
    class;v1;v2;...;vn

Usage:
    from earcore.matching.template_matcher import build_templates, TemplateMatcher

    templates = build_templates(embeddings, labels)
    ranking = templates.rank(probe, claimed=12)
    result = TemplateMatcher({"threshold": 0.25}).verify(ranking, claimed=12)
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Tuple, Union

import numpy as np

from earcore.exceptions import DimensionMismatchError, InputShapeError, ModelLoadError
from earcore.matching.interfaces import EmbeddingMatcher, EmbeddingScorer, MatchResult, Ranking

logger = logging.getLogger(__name__)

COSINE_FLOOR = 1e-12


def _norm(x: np.ndarray) -> float:
    return float(np.sqrt(max(float(np.dot(x, x)), COSINE_FLOOR)))


def cosine_similarity(
    a: np.ndarray,
    b: np.ndarray,
    norm_a: Optional[float] = None,
    norm_b: Optional[float] = None,
) -> float:
    """
    Cosine of the angle between two vectors.

    Precomputed norms can be passed to skip recomputation. Returns -1.0 when
    the product of norms is <= 1e-12.
    """
    a = np.asarray(a, dtype=np.float64).ravel()
    b = np.asarray(b, dtype=np.float64).ravel()
    if a.size != b.size:
        raise DimensionMismatchError(b.size, a.size, stage="cosine")
    na = float(np.linalg.norm(a)) if norm_a is None else norm_a
    nb = float(np.linalg.norm(b)) if norm_b is None else norm_b
    denom = na * nb
    if denom <= COSINE_FLOOR:
        return -1.0
    return float(np.dot(a, b) / denom)


@dataclass(frozen=True, eq=False)
class TemplateModel(EmbeddingScorer):
    """
    One centroid per class.

    Attributes:
        classes: (C,) int64 ids, ascending.
        centroids: (C, D) float64.
        norms: (C,) sqrt(max(sum(c^2), 1e-12)) per centroid.
    """

    classes: np.ndarray
    centroids: np.ndarray
    norms: Optional[np.ndarray] = None

    def __post_init__(self):
        classes = np.array(self.classes, dtype=np.int64).ravel()
        centroids = np.array(self.centroids, dtype=np.float64)
        if centroids.ndim != 2:
            centroids = centroids.reshape(len(classes), -1) if len(classes) else centroids.reshape(0, 0)
        if len(classes) != len(centroids):
            raise DimensionMismatchError(len(classes), len(centroids), stage="templates")
        order = np.argsort(classes, kind="stable")
        classes, centroids = classes[order], centroids[order]
        norms = np.array([_norm(c) for c in centroids], dtype=np.float64)
        for arr in (classes, centroids, norms):
            arr.setflags(write=False)
        object.__setattr__(self, "classes", classes)
        object.__setattr__(self, "centroids", centroids)
        object.__setattr__(self, "norms", norms)

    @classmethod
    def empty(cls, dim: int = 0) -> "TemplateModel":
        return cls(classes=np.zeros(0, dtype=np.int64), centroids=np.zeros((0, dim)))

    @property
    def dim(self) -> int:
        return int(self.centroids.shape[1]) if len(self.classes) else 0

    @property
    def n_classes(self) -> int:
        return int(len(self.classes))

    def __contains__(self, class_id: int) -> bool:
        return bool(np.any(self.classes == class_id))

    def template_for(self, class_id: int) -> np.ndarray:
        hits = np.nonzero(self.classes == class_id)[0]
        if hits.size == 0:
            raise KeyError(f"Class {class_id} has no template")
        return self.centroids[hits[0]]

    def score_all(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        x = np.asarray(x, dtype=np.float64).ravel()
        if x.size == 0:
            raise InputShapeError("Empty embedding")
        if self.n_classes and x.size != self.dim:
            raise DimensionMismatchError(self.dim, x.size, stage="templates")
        denom = self.norms * _norm(x)
        scores = np.where(denom > COSINE_FLOOR, (self.centroids @ x) / denom, -1.0)
        return self.classes, scores

    def with_class(self, class_id: int, embeddings: np.ndarray) -> "TemplateModel":
        """
        New model with `class_id` set to the centroid of `embeddings`.

        An existing template for the class is replaced.
        """
        embeddings = np.asarray(embeddings, dtype=np.float64)
        if embeddings.ndim == 1:
            embeddings = embeddings[None, :]
        if embeddings.shape[0] == 0:
            raise InputShapeError("No embeddings for template", class_id=class_id)
        if self.n_classes and embeddings.shape[1] != self.dim:
            raise DimensionMismatchError(self.dim, embeddings.shape[1], stage="templates")

        keep = self.classes != class_id
        classes = np.append(self.classes[keep], class_id)
        centroids = np.vstack([self.centroids[keep].reshape(-1, embeddings.shape[1]),
                               embeddings.mean(axis=0)])
        return TemplateModel(classes=classes, centroids=centroids)


def build_templates(X: np.ndarray, y: np.ndarray) -> TemplateModel:
    """
    Build one mean template per class.

    Args:
        X: (N, D) embeddings.
        y: (N,) integer labels.
    """
    X = np.asarray(X, dtype=np.float64)
    y = np.asarray(y).ravel().astype(np.int64)
    if X.ndim != 2 or X.shape[0] == 0:
        raise InputShapeError("build_templates needs a non-empty (N, D) matrix", shape=X.shape)
    if y.size != X.shape[0]:
        raise DimensionMismatchError(X.shape[0], y.size, stage="template_labels")

    classes = np.unique(y)
    centroids = np.vstack([X[y == c].mean(axis=0) for c in classes])
    logger.info(f"Built {len(classes)} templates ({X.shape[1]} dims)")
    return TemplateModel(classes=classes, centroids=centroids)


# ============================================================
# Persistence
# ============================================================

def save_templates(path: Union[str, Path], model: TemplateModel, delimiter: str = ";") -> None:
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    with open(path, "w", encoding="utf-8") as f:
        for c, centroid in zip(model.classes, model.centroids):
            values = delimiter.join(repr(float(v)) for v in centroid)
            f.write(f"{int(c)}{delimiter}{values}\n")
    logger.info(f"Saved {model.n_classes} templates to {path}")


def load_templates(path: Union[str, Path], delimiter: str = ";") -> TemplateModel:
    """
    Raises:
        ModelLoadError: Missing file, non-numeric values, rows of
            different lengths.
    """
    path = Path(path)
    classes, rows = [], []
    try:
        with open(path, "r", encoding="utf-8") as f:
            for lineno, line in enumerate(f, start=1):
                line = line.strip()
                if not line:
                    continue
                parts = line.split(delimiter)
                if len(parts) < 2:
                    raise ModelLoadError("Template row has no values", path=path, line=lineno)
                try:
                    classes.append(int(parts[0]))
                    rows.append([float(v) for v in parts[1:]])
                except ValueError as e:
                    raise ModelLoadError(f"Non-numeric template value: {e}", path=path, line=lineno) from e
    except OSError as e:
        raise ModelLoadError(f"Cannot read templates: {e}", path=path) from e

    if not rows:
        logger.warning(f"Templates file {path} is empty")
        return TemplateModel.empty()
    if len({len(r) for r in rows}) > 1:
        raise ModelLoadError("Templates have different lengths", path=path)

    model = TemplateModel(classes=np.array(classes), centroids=np.array(rows))
    logger.info(f"Loaded {model.n_classes} templates ({model.dim} dims) from {path}")
    return model


# ============================================================
# One-to-one matcher
# ============================================================

class TemplateMatcher(EmbeddingMatcher):
    """
    Cosine verification against a claimed identity's template.

    Args:
        config: Dictionary with optional keys:
            - threshold: Cosine acceptance threshold (default 0.25)
    """

    def __init__(self, config: dict = None):
        if config is None:
            config = {}
        self.threshold = float(config.get("threshold", 0.25))

    def verify(self, ranking: Ranking, claimed: int, threshold: Optional[float] = None) -> MatchResult:
        """
        Accept iff the claimed class is top-1 and its score reaches the threshold.

        Args:
            ranking: Output of TemplateModel.rank(x, claimed=claimed).
            claimed: Claimed class id.
            threshold: Overrides the configured threshold.
        """
        threshold = self.threshold if threshold is None else threshold
        claimed_score = ranking.claimed_score
        score = claimed_score if claimed_score is not None else -1.0
        accepted = ranking.top1 == claimed and claimed_score is not None and claimed_score >= threshold
        return MatchResult(
            score=score,
            details={
                "method": "template_cosine",
                "predicted_class": ranking.top1,
                "top1_score": ranking.score1,
                "margin": ranking.margin,
                "threshold": threshold,
                "claimed_enrolled": claimed_score is not None,
            },
            is_match=bool(accepted),
        )

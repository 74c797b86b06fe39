"""
Matching Interfaces Module

Common result types and abstract interfaces for the two scoring
mechanisms that share the ear embedding:

1. EmbeddingScorer - scores one embedding against every enrolled class
   (implemented by the One-vs-All SVM and by the template model)
2. EmbeddingMatcher - turns a ranking and a claimed identity into a decision

Ranking results carry top-1/top-2 classes and scores plus the margin
between them, which the anti-duplicate vote and the verification
diagnostics both use.

Usage:
    from earcore.matching.interfaces import EmbeddingScorer, Ranking

    ranking = scorer.rank(embedding, claimed=7)
    print(ranking.top1, ranking.score1, ranking.margin)
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import numpy as np


@dataclass
class MatchResult:
    """
    Result of a one-to-one comparison.

    Attributes:
        score: Raw similarity (cosine in [-1, 1] for templates).
        details: Method-specific diagnostics.
        is_match: Decision against the configured threshold.
    """

    score: float
    details: Dict[str, Any]
    is_match: bool


@dataclass
class Ranking:
    """
    Top-2 ranking of one embedding over all enrolled classes.

    Attributes:
        top1: Best class id (-1 when nothing is enrolled).
        score1: Score of the best class.
        top2: Runner-up class id (-1 with fewer than two classes).
        score2: Score of the runner-up (-inf when absent).
        claimed_score: Score under the claimed class, when one was given
                       and it is enrolled.
    """

    top1: int
    score1: float
    top2: int = -1
    score2: float = float("-inf")
    claimed_score: Optional[float] = None

    @property
    def margin(self) -> float:
        """score1 - score2; infinite when there is no runner-up."""
        if self.top2 < 0:
            return float("inf")
        return self.score1 - self.score2


def rank_scores(
    classes: np.ndarray,
    scores: np.ndarray,
    claimed: Optional[int] = None,
) -> Ranking:
    """
    Build a Ranking from parallel class/score arrays.

    Ties keep the class that appears first.
    """
    if len(classes) == 0:
        return Ranking(top1=-1, score1=float("-inf"))

    order = np.argsort(-scores, kind="stable")
    top1 = int(classes[order[0]])
    score1 = float(scores[order[0]])
    top2, score2 = -1, float("-inf")
    if len(order) > 1:
        top2 = int(classes[order[1]])
        score2 = float(scores[order[1]])

    claimed_score = None
    if claimed is not None:
        hits = np.nonzero(classes == claimed)[0]
        if hits.size:
            claimed_score = float(scores[hits[0]])

    return Ranking(top1=top1, score1=score1, top2=top2, score2=score2,
                   claimed_score=claimed_score)


class EmbeddingScorer(ABC):
    """
    Abstract base class for anything that scores an embedding against
    every enrolled class.

    Implemented in:
        - earcore/matching/svm_ova.py (SVMModel, linear scores)
        - earcore/matching/template_matcher.py (TemplateModel, cosine)
    """

    @abstractmethod
    def score_all(self, x: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
        """
        Score one embedding.

        Args:
            x: (D,) embedding.

        Returns:
            (classes, scores), both (C,), classes in ascending order.

        Raises:
            DimensionMismatchError: If len(x) differs from the model dimension.
        """
        pass

    def rank(self, x: np.ndarray, claimed: Optional[int] = None) -> Ranking:
        """Top-1/top-2 ranking of `x`, with the claimed class score if given."""
        classes, scores = self.score_all(x)
        return rank_scores(classes, scores, claimed)


class EmbeddingMatcher(ABC):
    """
    Abstract base class for one-to-one verification decisions.

    Implemented in: earcore/matching/template_matcher.py
    """

    @abstractmethod
    def verify(self, ranking: Ranking, claimed: int, threshold: Optional[float] = None) -> MatchResult:
        """
        Decide a claim from a ranking that carries the claimed-class score.

        Args:
            ranking: Output of EmbeddingScorer.rank(x, claimed=claimed).
            claimed: Claimed class id.
            threshold: Overrides the configured threshold.

        Returns:
            MatchResult with the claimed score and the accept decision.
        """
        pass

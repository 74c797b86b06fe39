r"""
Enrollment Guard Module

Gatekeeper for adding a new identity. A request moves through:

    IMAGE_QC -> ANTI_DUPLICATE -> COMMIT
         \             \
          +-------------+--> REJECTED

1. IMAGE_QC: every image is canonicalized and gray-level checked; too
   few passing images rejects the request (QualityGateFailure).
2. ANTI_DUPLICATE: embeddings of the passing images (plus photometric
   variants) are ranked against the enrolled templates. When most of
   them confidently vote for the same existing identity the request is
   rejected (DuplicateDetected).
3. COMMIT: the SVM is warm-started with the new class, a template is
   added, the embeddings are appended, artefacts are backed up and
   written, and the new bundle is swapped into the ModelStore. A failed
   write restores the backup and leaves the published bundle unchanged.

Rejections are returned as EnrollmentDecision values, never raised.

Usage:
    from earcore.enrollment_guard import get_enrollment_guard

    guard = get_enrollment_guard()
    decision = guard.enroll(images, class_id=42, store=store)
    if decision.state is EnrollmentState.COMMIT:
        print("enrolled")
"""

import logging
import math
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Union

import numpy as np

from earcore.augmentation import photometric_variants
from earcore.canonicalizer import Canonicalizer, CanonicalImage
from earcore.descriptor import DescriptorExtractor
from earcore.exceptions import EarBiometricsError, InputShapeError, ModelLoadError
from earcore.matching.svm_ova import IncrementalLimits, SvmHyperParams, add_class_incremental
from earcore.matching.template_matcher import TemplateModel
from earcore.model_store import ModelStore
from earcore.normalizer import apply_zscore
from earcore.projection import embed
from earcore.quality import QcResult, QcThresholds, RegionStats, check_quality

logger = logging.getLogger(__name__)

REASON_CLASS_EXISTS = "class_exists"
REASON_QUALITY = "quality_gate"
REASON_NO_IMAGES = "no_usable_images"
REASON_DUPLICATE = "duplicate_biometric"
REASON_PERSIST = "persist_failed"
REASON_INVALID_IMAGE = "invalid_image"


class EnrollmentState(str, Enum):
    IMAGE_QC = "IMAGE_QC"
    ANTI_DUPLICATE = "ANTI_DUPLICATE"
    COMMIT = "COMMIT"
    REJECTED = "REJECTED"


@dataclass(frozen=True)
class DuplicateGuardConfig:
    """
    Anti-duplicate vote parameters.

    Attributes:
        margin_threshold: A sample votes only when top1 - top2 >= this.
        consistency: Fraction of M the dominant class must reach.
        confident_ratio: Fraction of M that must be confident votes.
        max_votes: M = min(number of embeddings, max_votes).
    """

    margin_threshold: float = 0.489
    consistency: float = 0.70
    confident_ratio: float = 0.50
    max_votes: int = 25

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]]) -> "DuplicateGuardConfig":
        if not config:
            return cls()
        return cls(
            margin_threshold=float(config.get("margin_threshold", 0.489)),
            consistency=float(config.get("consistency", 0.70)),
            confident_ratio=float(config.get("confident_ratio", 0.50)),
            max_votes=int(config.get("max_votes", 25)),
        )


@dataclass
class DuplicateVote:
    """
    Outcome of the anti-duplicate vote.

    Attributes:
        n_samples: M, the number of embeddings considered.
        votes: Confident votes per existing class.
        confident: Total confident votes.
        dominant_class: Class with most votes (-1 when none).
        dominant_votes: Its vote count.
        votes_needed: ceil(consistency * M).
        confident_needed: ceil(confident_ratio * M).
        is_duplicate: Both thresholds met.
    """

    n_samples: int
    votes: Dict[int, int]
    confident: int
    dominant_class: int
    dominant_votes: int
    votes_needed: int
    confident_needed: int
    is_duplicate: bool

    @property
    def consistency(self) -> float:
        return self.dominant_votes / self.n_samples if self.n_samples else 0.0

    @property
    def confident_fraction(self) -> float:
        return self.confident / self.n_samples if self.n_samples else 0.0


@dataclass
class QualityGateFailure:
    passed: int
    required: int
    failures: Dict[int, List[str]] = field(default_factory=dict)


@dataclass
class DuplicateDetected:
    matched_class: int
    vote: DuplicateVote


@dataclass
class EnrollmentDecision:
    """
    Final state of an enrollment request.

    Attributes:
        state: COMMIT or REJECTED.
        class_id: Requested identity.
        reason: Short rejection code ("" on commit).
        qc_results: One QcResult per input image, in input order.
        vote: Anti-duplicate vote, when that stage ran.
        outcome: QualityGateFailure or DuplicateDetected for business rejections.
        details: Counts and paths for logging.
    """

    state: EnrollmentState
    class_id: int
    reason: str = ""
    qc_results: List[QcResult] = field(default_factory=list)
    vote: Optional[DuplicateVote] = None
    outcome: Optional[Union[QualityGateFailure, DuplicateDetected]] = None
    details: Dict[str, Any] = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.state is EnrollmentState.COMMIT


def vote_duplicates(
    embeddings: np.ndarray,
    templates: TemplateModel,
    config: Optional[DuplicateGuardConfig] = None,
) -> DuplicateVote:
    """
    Confidence-weighted vote of new embeddings against enrolled templates.

    Each of the first M embeddings is ranked against every template. It
    casts a vote for its top-1 class only when the top1 - top2 margin
    reaches the threshold; samples without a runner-up (fewer than two
    enrolled classes) cast no vote.
    """
    config = config or DuplicateGuardConfig()
    embeddings = np.atleast_2d(np.asarray(embeddings, dtype=np.float64))
    n = embeddings.shape[0] if embeddings.size else 0
    m = min(n, config.max_votes) if templates.n_classes else 0

    votes: Counter = Counter()
    confident = 0
    for i in range(m):
        ranking = templates.rank(embeddings[i])
        if ranking.top1 < 0 or ranking.top2 < 0:
            continue
        margin = ranking.margin
        if margin >= config.margin_threshold:
            votes[ranking.top1] += 1
            confident += 1
        logger.debug(f"[dup] i={i} pred={ranking.top1} best={ranking.score1:.4f} "
                     f"second={ranking.score2:.4f} margin={margin:.4f}")

    dominant_class, dominant_votes = -1, 0
    for cls, count in votes.items():
        if count > dominant_votes:
            dominant_class, dominant_votes = cls, count

    votes_needed = int(math.ceil(config.consistency * m))
    confident_needed = int(math.ceil(config.confident_ratio * m))
    is_duplicate = (
        dominant_class != -1
        and dominant_votes >= votes_needed
        and confident >= confident_needed
    )
    return DuplicateVote(
        n_samples=m,
        votes=dict(votes),
        confident=confident,
        dominant_class=dominant_class,
        dominant_votes=dominant_votes,
        votes_needed=votes_needed,
        confident_needed=confident_needed,
        is_duplicate=is_duplicate,
    )


def _invalid_image_result() -> QcResult:
    stats = RegionStats(mean=0.0, std=0.0, min=0, max=0, pct_dark=100.0, pct_bright=0.0, n_pixels=0)
    return QcResult(passed=False, stats=stats, reasons=[REASON_INVALID_IMAGE])


class EnrollmentGuard:
    """
    Quality gate, duplicate check and atomic commit for new identities.

    Args:
        config: Dictionary ("enrollment" section) with optional keys:
            - min_pass: Minimum QC-passing images (default 5)
            - qc_enforce: Reject on QC failures (default True)
            - augment: Add photometric variants (default True)
            - noise_seed: Base seed for the noise variant (default 0)
            - margin_threshold / consistency / confident_ratio / max_votes
            - pos_max / neg_max / new_neg_max: SVM sampling caps
            - persist: Write artefacts on commit (default True)
        qc_thresholds: Gray-level QC limits.
        svm_params: Warm-start schedule for the SVM update.
        canonicalizer: Preprocessing chain (default: Canonicalizer()).
        extractor: LBP extractor (default: DescriptorExtractor()).
    """

    def __init__(
        self,
        config: Optional[Dict[str, Any]] = None,
        qc_thresholds: Optional[QcThresholds] = None,
        svm_params: Optional[SvmHyperParams] = None,
        canonicalizer: Optional[Canonicalizer] = None,
        extractor: Optional[DescriptorExtractor] = None,
    ):
        if config is None:
            config = {}
        self.min_pass = int(config.get("min_pass", 5))
        self.qc_enforce = bool(config.get("qc_enforce", True))
        self.augment = bool(config.get("augment", True))
        self.noise_seed = int(config.get("noise_seed", 0))
        self.persist = bool(config.get("persist", True))
        self.duplicate_config = DuplicateGuardConfig.from_config(config)
        self.limits = IncrementalLimits.from_config(config)
        self.qc_thresholds = qc_thresholds or QcThresholds()
        self.svm_params = svm_params or SvmHyperParams.warm_start()
        self.canonicalizer = canonicalizer or Canonicalizer()
        self.extractor = extractor or DescriptorExtractor()

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _run_qc(self, images: Sequence) -> tuple:
        canonicals: List[Optional[CanonicalImage]] = []
        qc_results: List[QcResult] = []
        for i, image in enumerate(images):
            try:
                canon = self.canonicalizer.canonicalize(image)
            except (InputShapeError, ValueError) as e:
                logger.warning(f"[QC] image {i}: cannot canonicalize ({e})")
                canonicals.append(None)
                qc_results.append(_invalid_image_result())
                continue
            result = check_quality(canon.image, canon.mask, self.qc_thresholds)
            if not result.passed:
                logger.warning(f"[QC] image {i}: FAIL {result.reasons}")
            canonicals.append(canon)
            qc_results.append(result)
        return canonicals, qc_results

    def _features(self, canonicals: List[CanonicalImage]) -> np.ndarray:
        rows = []
        for i, canon in enumerate(canonicals):
            rows.append(self.extractor.extract(canon.image, canon.mask))
            if self.augment:
                for _, variant in photometric_variants(canon.image, seed=self.noise_seed + i):
                    rows.append(self.extractor.extract(variant, canon.mask))
        return np.vstack(rows)

    def enroll(self, images: Sequence, class_id: int, store: ModelStore) -> EnrollmentDecision:
        """
        Run the full enrollment state machine.

        Args:
            images: Raw grayscale captures (GrayImage or 2D uint8 arrays).
            class_id: Identity to enroll.
            store: Model store to read from and commit into.

        Returns:
            EnrollmentDecision in state COMMIT or REJECTED.

        Raises:
            ModelLoadError: If the store holds no trained models.
        """
        class_id = int(class_id)
        with store.update_mutex:
            bundle = store.snapshot()
            if bundle is None:
                raise ModelLoadError("No model bundle loaded; train or load models before enrolling")

            if bundle.has_class(class_id):
                logger.warning(f"Enrollment of {class_id} rejected: class already enrolled")
                return EnrollmentDecision(EnrollmentState.REJECTED, class_id, reason=REASON_CLASS_EXISTS)

            # IMAGE_QC
            canonicals, qc_results = self._run_qc(images)
            passing = [c for c, r in zip(canonicals, qc_results) if c is not None and r.passed]
            n_passed = len(passing)
            if not self.qc_enforce:
                passing = [c for c in canonicals if c is not None]

            if self.qc_enforce and n_passed < self.min_pass:
                failures = {i: r.reasons for i, r in enumerate(qc_results) if not r.passed}
                logger.warning(f"Enrollment of {class_id} rejected: {n_passed}/{len(qc_results)} "
                               f"images passed QC, {self.min_pass} required")
                return EnrollmentDecision(
                    EnrollmentState.REJECTED, class_id, reason=REASON_QUALITY, qc_results=qc_results,
                    outcome=QualityGateFailure(passed=n_passed, required=self.min_pass, failures=failures),
                )
            if not passing:
                return EnrollmentDecision(EnrollmentState.REJECTED, class_id, reason=REASON_NO_IMAGES,
                                          qc_results=qc_results)

            # ANTI_DUPLICATE
            features = self._features(passing)
            embeddings = embed(apply_zscore(features, bundle.zscore), bundle.pca, bundle.lda)
            vote = vote_duplicates(embeddings, bundle.templates, self.duplicate_config)
            logger.info(
                f"[dup] M={vote.n_samples} confident={vote.confident} dominant={vote.dominant_class} "
                f"votes={vote.dominant_votes}/{vote.votes_needed} needed"
            )
            if vote.is_duplicate:
                logger.warning(f"Enrollment of {class_id} rejected: matches existing class {vote.dominant_class}")
                return EnrollmentDecision(
                    EnrollmentState.REJECTED, class_id, reason=REASON_DUPLICATE, qc_results=qc_results,
                    vote=vote, outcome=DuplicateDetected(matched_class=vote.dominant_class, vote=vote),
                )

            # COMMIT
            svm = add_class_incremental(
                bundle.svm, bundle.embeddings, bundle.labels, embeddings, class_id,
                params=self.svm_params, limits=self.limits, executor=store.executor,
            )
            templates = bundle.templates.with_class(class_id, embeddings)
            new_bundle = bundle.updated(
                svm=svm,
                templates=templates,
                embeddings=np.vstack([bundle.embeddings.reshape(-1, embeddings.shape[1]), embeddings]),
                labels=np.concatenate([bundle.labels, np.full(embeddings.shape[0], class_id)]),
            )

            details = {"images": len(qc_results), "qc_passed": n_passed, "embeddings": embeddings.shape[0]}
            if self.persist and store.directory is not None:
                version_dir = store.backup()
                details["backup"] = str(version_dir)
                try:
                    store.save(bundle=new_bundle)
                except (OSError, EarBiometricsError) as e:
                    logger.error(f"Persisting enrollment of {class_id} failed: {e}; rolling back")
                    store.restore(version_dir)
                    return EnrollmentDecision(
                        EnrollmentState.REJECTED, class_id, reason=REASON_PERSIST, qc_results=qc_results,
                        vote=vote, details={**details, "error": str(e)},
                    )

            store.swap(new_bundle)
            logger.info(f"Enrolled class {class_id}: {embeddings.shape[0]} embeddings, "
                        f"bundle v{new_bundle.version}")
            return EnrollmentDecision(EnrollmentState.COMMIT, class_id, qc_results=qc_results,
                                      vote=vote, details=details)


def get_enrollment_guard(config: Dict[str, Any] = None) -> EnrollmentGuard:
    """
    Factory function for an EnrollmentGuard.

    Args:
        config: Full config dict (all sections). If None, config.yaml is loaded.
    """
    if config is None:
        from earcore.config import get_config
        config = get_config()
    return EnrollmentGuard(
        config.get("enrollment", {}),
        qc_thresholds=QcThresholds.from_config(config.get("quality")),
        svm_params=SvmHyperParams.from_config(config.get("svm_warm_start"), warm=True),
        canonicalizer=Canonicalizer(config.get("canonicalizer", {})),
        extractor=DescriptorExtractor(config.get("descriptor", {})),
    )

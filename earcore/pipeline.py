"""
Biometric Pipeline Module

Wires the core stages together for serving and for offline training:

    image -> canonicalize -> LBP descriptor -> z-score -> PCA -> L2 -> LDA -> L2

- identify(): 1:N, One-vs-All SVM top-1/top-2.
- verify(): 1:1, cosine against the per-class templates. The claim is
  accepted when the claimed class is top-1 and its score reaches the
  calibrated threshold.
- train_models(): batch training from labelled images (geometric
  augmentation, z-score fit, PCA, LDA, templates, OVA SVM).

verify() is the only place where model and shape errors are converted
into a rejected result; every other entry point raises.

Usage:
    from earcore.model_store import ModelStore
    from earcore.pipeline import BiometricPipeline

    store = ModelStore("models")
    store.load()
    pipeline = BiometricPipeline(store, config)
    result = pipeline.verify(image, claimed_id=12)
    print(result.accepted, result.claimed_score, result.margin)
"""

import logging
from concurrent.futures import Executor
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence

import numpy as np

from earcore.augmentation import GEOMETRIC_SEED, geometric_variants
from earcore.canonicalizer import CanonicalImage, Canonicalizer, as_gray_image
from earcore.descriptor import DescriptorExtractor
from earcore.exceptions import EarBiometricsError, InputShapeError, ModelLoadError
from earcore.matching.svm_ova import SvmHyperParams, train_svm_ova
from earcore.matching.template_matcher import TemplateMatcher, build_templates
from earcore.model_store import ModelBundle, ModelStore
from earcore.normalizer import apply_zscore, fit_zscore
from earcore.projection import apply_lda, apply_pca, embed, l2_normalize, train_lda, train_pca

logger = logging.getLogger(__name__)


@dataclass
class InputDiagnostics:
    """
    Advisory checks on a verification capture. They never change the decision.

    Attributes:
        aspect_ratio: width / height of the raw input.
        aspect_ok: Ratio inside the configured range (default [0.85, 1.15]).
        roi_coverage: Percentage of the canonical image inside the region mask.
        roi_ok: Coverage inside the configured range (default [50, 80] %).
    """

    aspect_ratio: float
    aspect_ok: bool
    roi_coverage: float
    roi_ok: bool


@dataclass
class IdentificationResult:
    predicted_class: int
    score1: float
    runner_up: int
    score2: float
    margin: float


@dataclass
class VerificationResult:
    """
    Outcome of a 1:1 claim.

    Attributes:
        claimed_class: Identity the caller claimed.
        predicted_class: Top-1 template class (-1 on error).
        top1_score: Cosine score of the top-1 class.
        claimed_score: Cosine score of the claimed class (-1 when not enrolled).
        margin: top1 - top2 score.
        accepted: Final decision.
        threshold: Threshold used.
        error: EarBiometricsError.to_dict() when the request failed.
        diagnostics: Input checks (None on error).
    """

    claimed_class: int
    predicted_class: int
    top1_score: float
    claimed_score: float
    margin: float
    accepted: bool
    threshold: float
    error: Optional[Dict[str, Any]] = None
    diagnostics: Optional[InputDiagnostics] = None


class BiometricPipeline:
    """
    Serving pipeline over a ModelStore.

    Args:
        store: Source of the current model bundle.
        config: Full config dict; reads the "canonicalizer", "descriptor"
                and "verification" sections. Verification keys:
            - threshold: Cosine acceptance threshold (default 0.25)
            - aspect_min / aspect_max: Advisory aspect range (0.85 / 1.15)
            - coverage_min / coverage_max: Advisory ROI range in % (50 / 80)
        canonicalizer: Overrides the configured preprocessing chain.
        extractor: Overrides the configured descriptor extractor.
    """

    def __init__(
        self,
        store: ModelStore,
        config: Optional[Dict[str, Any]] = None,
        canonicalizer: Optional[Canonicalizer] = None,
        extractor: Optional[DescriptorExtractor] = None,
    ):
        if config is None:
            config = {}
        self.store = store
        verification = config.get("verification", {}) or {}
        self.threshold = float(verification.get("threshold", 0.25))
        self.aspect_range = (float(verification.get("aspect_min", 0.85)),
                             float(verification.get("aspect_max", 1.15)))
        self.coverage_range = (float(verification.get("coverage_min", 50.0)),
                               float(verification.get("coverage_max", 80.0)))
        self.canonicalizer = canonicalizer or Canonicalizer(config.get("canonicalizer", {}),
                                                            executor=store.executor)
        self.extractor = extractor or DescriptorExtractor(config.get("descriptor", {}))
        self.matcher = TemplateMatcher({"threshold": self.threshold})

    def extract_features(self, image) -> np.ndarray:
        """Canonicalize one image and compute its LBP descriptor."""
        canonical = self.canonicalizer.canonicalize(image)
        return self.extractor.extract(canonical.image, canonical.mask)

    def embed(self, features: np.ndarray, bundle: Optional[ModelBundle] = None) -> np.ndarray:
        """z-score -> PCA -> L2 -> LDA -> L2 with the given (or current) bundle."""
        bundle = bundle if bundle is not None else self._require_bundle(self.store.snapshot())
        return embed(apply_zscore(features, bundle.zscore), bundle.pca, bundle.lda)

    @staticmethod
    def _require_bundle(bundle: Optional[ModelBundle]) -> ModelBundle:
        if bundle is None:
            raise ModelLoadError("No model bundle loaded")
        return bundle

    def diagnose(self, image, canonical: CanonicalImage) -> InputDiagnostics:
        raw = as_gray_image(image)
        aspect = raw.width / raw.height if raw.height else 0.0
        mask = canonical.mask.pixels
        coverage = 100.0 * float(np.count_nonzero(mask == 255)) / mask.size
        return InputDiagnostics(
            aspect_ratio=aspect,
            aspect_ok=self.aspect_range[0] <= aspect <= self.aspect_range[1],
            roi_coverage=coverage,
            roi_ok=self.coverage_range[0] <= coverage <= self.coverage_range[1],
        )

    def identify(self, image) -> IdentificationResult:
        """
        1:N identification with the OVA SVM.

        Raises:
            ModelLoadError: No bundle or no SVM loaded.
            InputShapeError / DimensionMismatchError: Bad input or model skew.
        """
        features = self.extract_features(image)
        with self.store.reading() as bundle:
            bundle = self._require_bundle(bundle)
            if bundle.svm is None:
                raise ModelLoadError("No SVM model loaded")
            x = self.embed(features, bundle)
            pred = bundle.svm.predict(x)
        logger.debug(f"identify: top1={pred.top1} ({pred.score1:.4f}) top2={pred.top2} ({pred.score2:.4f})")
        return IdentificationResult(pred.top1, pred.score1, pred.top2, pred.score2, pred.margin)

    def verify(self, image, claimed_id: int, threshold: Optional[float] = None) -> VerificationResult:
        """
        1:1 verification of a claimed identity.

        Errors from the core (bad image, missing or inconsistent models)
        are returned as a rejected result with `error` set.
        """
        threshold = self.threshold if threshold is None else float(threshold)
        claimed_id = int(claimed_id)
        try:
            canonical = self.canonicalizer.canonicalize(image)
            diagnostics = self.diagnose(image, canonical)
            features = self.extractor.extract(canonical.image, canonical.mask)
            with self.store.reading() as bundle:
                bundle = self._require_bundle(bundle)
                x = self.embed(features, bundle)
                ranking = bundle.templates.rank(x, claimed=claimed_id)
        except EarBiometricsError as e:
            logger.warning(f"Verification of claim {claimed_id} failed: {e}")
            return VerificationResult(
                claimed_class=claimed_id, predicted_class=-1, top1_score=-1.0, claimed_score=-1.0,
                margin=0.0, accepted=False, threshold=threshold, error=e.to_dict(),
            )

        decision = self.matcher.verify(ranking, claimed_id, threshold)
        if not diagnostics.aspect_ok:
            logger.warning(f"Input aspect ratio {diagnostics.aspect_ratio:.2f} outside {self.aspect_range}")
        if not diagnostics.roi_ok:
            logger.warning(f"ROI coverage {diagnostics.roi_coverage:.1f}% outside {self.coverage_range}")

        result = VerificationResult(
            claimed_class=claimed_id,
            predicted_class=ranking.top1,
            top1_score=ranking.score1,
            claimed_score=decision.score,
            margin=ranking.margin,
            accepted=decision.is_match,
            threshold=threshold,
            diagnostics=diagnostics,
        )
        logger.info(
            f"verify claim={claimed_id} pred={result.predicted_class} top1={result.top1_score:.4f} "
            f"claimed={result.claimed_score:.4f} margin={result.margin:.4f} -> "
            f"{'ACCEPT' if result.accepted else 'REJECT'}"
        )
        return result


# ============================================================
# Offline training
# ============================================================

def lda_target_components(requested: int, num_classes: int, cap: int = 40) -> int:
    """
    Number of LDA components to keep.

    requested <= 0 picks max(1, min(C - 1, cap)); otherwise the request
    is clamped to [1, C - 1].
    """
    upper = max(1, num_classes - 1)
    if requested <= 0:
        return max(1, min(num_classes - 1, cap))
    return min(max(1, requested), upper)


def train_models(
    images: Sequence,
    labels: Sequence[int],
    config: Optional[Dict[str, Any]] = None,
    executor: Optional[Executor] = None,
) -> ModelBundle:
    """
    Train every model from labelled training images.

    Args:
        images: Raw grayscale images (GrayImage or 2D uint8 arrays).
        labels: Class id per image.
        config: Full config dict; reads "canonicalizer", "descriptor",
                "projection" and "svm". Projection keys:
            - pca_components: default 120 (clipped to the descriptor length)
            - lda_components: default -1 (automatic, capped at lda_max_auto)
            - lda_max_auto: default 40
            - lda_reg: default 1e-3
            - augment: geometric augmentation of training images (default True)
            - augment_seed: default 12345
        executor: Optional pool for filtering and per-class SVM training.

    Returns:
        ModelBundle (version 0) whose embedding store holds the training
        embeddings, augmented variants included.
    """
    if config is None:
        config = {}
    labels = np.asarray(labels, dtype=np.int64).ravel()
    if len(images) == 0 or len(images) != labels.size:
        raise InputShapeError("train_models needs one label per image",
                              images=len(images), labels=int(labels.size))

    projection = config.get("projection", {}) or {}
    augment = bool(projection.get("augment", True))
    rng = np.random.default_rng(int(projection.get("augment_seed", GEOMETRIC_SEED)))
    canonicalizer = Canonicalizer(config.get("canonicalizer", {}), executor=executor)
    extractor = DescriptorExtractor(config.get("descriptor", {}))

    rows: List[np.ndarray] = []
    row_labels: List[int] = []
    for image, label in zip(images, labels):
        canonical = canonicalizer.canonicalize(image)
        rows.append(extractor.extract(canonical.image, canonical.mask))
        row_labels.append(int(label))
        if augment:
            for _, variant in geometric_variants(canonical.image, seed=rng):
                rows.append(extractor.extract(variant, canonical.mask))
                row_labels.append(int(label))

    X = np.vstack(rows)
    y = np.array(row_labels, dtype=np.int64)
    num_classes = len(np.unique(y))
    logger.info(f"Training features: {X.shape[0]} samples x {X.shape[1]} dims, {num_classes} classes")

    zscore = fit_zscore(X)
    Z = apply_zscore(X, zscore)

    n_pca = min(int(projection.get("pca_components", 120)), Z.shape[1])
    pca = train_pca(Z, n_pca)
    P = l2_normalize(apply_pca(Z, pca))

    lda = None
    E = P
    if num_classes >= 2:
        n_lda = lda_target_components(
            int(projection.get("lda_components", -1)), num_classes,
            cap=int(projection.get("lda_max_auto", 40)),
        )
        lda = train_lda(P, y, n_components=n_lda, reg=float(projection.get("lda_reg", 1e-3)))
        E = l2_normalize(apply_lda(P, lda))
    else:
        logger.warning("Only one class in the training set; skipping LDA")

    templates = build_templates(E, y)
    svm = train_svm_ova(E, y, SvmHyperParams.from_config(config.get("svm")), executor=executor)

    bundle = ModelBundle(zscore=zscore, pca=pca, lda=lda, svm=svm, templates=templates,
                         embeddings=E, labels=y, version=0)
    logger.info(f"Trained model bundle: embedding dim {bundle.embedding_dim}, {num_classes} classes")
    return bundle

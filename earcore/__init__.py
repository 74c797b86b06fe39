"""
Core Module for the Ear Biometrics System

Preprocessing, description, projection, matching, calibration and
enrollment control for 2D ear recognition.

Main components:
    - config: Configuration loading and management
    - canonicalizer: Resize, CLAHE, bilateral filter and region mask
    - descriptor: Multi-scale uniform LBP descriptor
    - normalizer / projection: z-score, PCA and LDA
    - matching: One-vs-All SVM and cosine templates
    - calibration: FAR/FRR sweep and operating points
    - quality / enrollment_guard: Enrollment QC and anti-duplicate check
    - model_store / pipeline: Shared models, verification and training

Usage:
    from earcore.model_store import ModelStore
    from earcore.pipeline import BiometricPipeline
    from earcore.enrollment_guard import get_enrollment_guard
"""

from earcore.config import (
    get_config,
    get_section,
    get_project_root,
)

from earcore.exceptions import (
    EarBiometricsError,
    InputShapeError,
    DimensionMismatchError,
    ModelLoadError,
    ImageLoadError,
)

from earcore.image_view import GrayImage

from earcore.canonicalizer import (
    Canonicalizer,
    CanonicalImage,
    get_canonicalizer,
)

from earcore.descriptor import DescriptorExtractor, UNIFORM_LBP_TABLE

from earcore.calibration import (
    ThresholdCalibrator,
    CalibrationResult,
    OperatingPoint,
    collect_scores,
)

from earcore.quality import QcThresholds, QcResult, check_quality

from earcore.enrollment_guard import (
    EnrollmentGuard,
    EnrollmentDecision,
    EnrollmentState,
    get_enrollment_guard,
)

from earcore.model_store import ModelStore, ModelBundle, ReadWriteLock

from earcore.pipeline import (
    BiometricPipeline,
    VerificationResult,
    IdentificationResult,
    train_models,
)

__version__ = "0.1.0"

__all__ = [
    # Configuration
    "get_config",
    "get_section",
    "get_project_root",
    # Errors
    "EarBiometricsError",
    "InputShapeError",
    "DimensionMismatchError",
    "ModelLoadError",
    "ImageLoadError",
    # Preprocessing and features
    "GrayImage",
    "Canonicalizer",
    "CanonicalImage",
    "get_canonicalizer",
    "DescriptorExtractor",
    "UNIFORM_LBP_TABLE",
    # Calibration
    "ThresholdCalibrator",
    "CalibrationResult",
    "OperatingPoint",
    "collect_scores",
    # Enrollment
    "QcThresholds",
    "QcResult",
    "check_quality",
    "EnrollmentGuard",
    "EnrollmentDecision",
    "EnrollmentState",
    "get_enrollment_guard",
    # Serving
    "ModelStore",
    "ModelBundle",
    "ReadWriteLock",
    "BiometricPipeline",
    "VerificationResult",
    "IdentificationResult",
    "train_models",
]

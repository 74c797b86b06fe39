"""
Exception Hierarchy for the Ear Biometrics Core

All system errors raised by the core derive from EarBiometricsError.
They carry an error code and a context dict so the orchestration layer
can log them or turn them into responses without parsing messages.

Enrollment outcomes such as a failed quality gate or a detected duplicate
are NOT exceptions. They are decision objects returned by the
EnrollmentGuard (see earcore.enrollment_guard).

Usage:
    from earcore.exceptions import DimensionMismatchError

    if len(x) != len(params.mean):
        raise DimensionMismatchError(expected=len(params.mean), actual=len(x),
                                     stage="zscore")
"""

from typing import Any, Dict, Optional


class EarBiometricsError(Exception):
    """
    Base exception for the ear biometrics core.

    Args:
        message: Human-readable error message.
        context: Extra diagnostic values (paths, lengths, stage names).
        error_code: Stable code for programmatic handling.
    """

    def __init__(
        self,
        message: str,
        context: Optional[Dict[str, Any]] = None,
        error_code: Optional[str] = None,
    ):
        self.message = message
        self.context = context or {}
        self.error_code = error_code
        super().__init__(self.message)

    def __str__(self) -> str:
        parts = [self.message]
        if self.error_code:
            parts.append(f"[{self.error_code}]")
        if self.context:
            parts.append(", ".join(f"{k}={v}" for k, v in self.context.items()))
        return " ".join(parts)

    def to_dict(self) -> Dict[str, Any]:
        """Convert the exception to a dict for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": self.context,
        }


class InputShapeError(EarBiometricsError):
    """Raised for zero or invalid image dimensions and empty feature vectors."""

    def __init__(self, message: str, **context):
        super().__init__(message, context=context, error_code="INPUT_SHAPE")


class DimensionMismatchError(EarBiometricsError):
    """
    Raised when a vector length differs from what a model expects.

    This signals version skew between the pipeline and its models and
    is never coerced by truncation or padding.
    """

    def __init__(self, expected: int, actual: int, stage: str = "unknown"):
        message = f"Dimension mismatch in {stage}: expected {expected}, got {actual}"
        super().__init__(
            message,
            context={"expected": expected, "actual": actual, "stage": stage},
            error_code="DIM_MISMATCH",
        )
        self.expected = expected
        self.actual = actual
        self.stage = stage


class ModelLoadError(EarBiometricsError):
    """Raised for missing, truncated or inconsistent model artefacts."""

    def __init__(self, message: str, path: Optional[str] = None, **context):
        if path is not None:
            context["path"] = str(path)
        super().__init__(message, context=context, error_code="MODEL_LOAD")


class ImageLoadError(EarBiometricsError):
    """Raised when an image file is missing or cannot be decoded."""

    def __init__(self, message: str, path: Optional[str] = None):
        context = {"path": str(path)} if path is not None else {}
        super().__init__(message, context=context, error_code="IMAGE_LOAD")

"""
Error taxonomy for the segmentation pipeline.

Every stage raises one of these; the pipeline controller contains them per
frame and maps ``kind`` onto a ``FrameStatus``. Only ``ModelLoadError`` is
meant to reach callers as a hard failure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Optional

if TYPE_CHECKING:  # pragma: no cover
    from .shapes import ShapeDiagnosis

__all__ = [
    "EncodingError",
    "EngineBusy",
    "FormatMismatch",
    "FrescoError",
    "InferenceFailure",
    "InvalidShape",
    "ModelLoadError",
    "NotInitialized",
    "OutputNotFound",
    "PipelineBusy",
    "ShapeMismatch",
]


class FrescoError(Exception):
    """Base class for all pipeline errors."""

    kind = "error"


class NotInitialized(FrescoError):
    """No model is loaded (or the engine was already closed)."""

    kind = "not_initialized"


class ModelLoadError(FrescoError):
    """Model load or runtime session creation failed; reinitialise to recover."""

    kind = "model_load"


class EncodingError(FrescoError):
    """The input frame is malformed and cannot be turned into a tensor."""

    kind = "encoding"


class InferenceFailure(FrescoError):
    """The runtime raised while executing the model."""

    kind = "inference"

    def __init__(self, message: str, *, cause: Optional[BaseException] = None) -> None:
        super().__init__(message)
        self.cause = cause


class OutputNotFound(FrescoError, KeyError):
    """Requested output name is not registered in the loaded model."""

    kind = "output_not_found"

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else "output not found"


class EngineBusy(FrescoError):
    """An execute call is already in flight; the request was dropped."""

    kind = "skipped"


class PipelineBusy(FrescoError):
    """A frame is already in flight in the pipeline."""

    kind = "skipped"


class InvalidShape(FrescoError):
    """A tensor's shape cannot be made to describe its buffer."""

    kind = "invalid_shape"


class ShapeMismatch(FrescoError):
    """Decoded shape disagrees with the configured model contract."""

    kind = "shape_mismatch"

    def __init__(self, message: str, *, diagnosis: "Optional[ShapeDiagnosis]" = None) -> None:
        super().__init__(message)
        self.diagnosis = diagnosis


class FormatMismatch(ShapeMismatch):
    """Element count is not divisible by the class count."""

    kind = "format_mismatch"

# sam-onnx/src/sam_onnx/errors.py
"""
Exception types raised by sam_onnx.

Errors raised by ``InferenceSession.run`` are deliberately not listed here:
they reach the caller unchanged.
"""


class SegmentationError(Exception):
    """Base class for every error raised by this package."""


class InvalidArgumentError(SegmentationError, ValueError):
    """Caller input rejected before any inference or pixel work."""


class ModelLoadError(SegmentationError):
    """Model file missing, unreadable, or not matching its tensor contract."""


class BackendUnavailableError(SegmentationError):
    """No execution provider in the preference chain could be enabled."""


class ModelClosedError(SegmentationError, RuntimeError):
    """The model adapter was used after close()."""

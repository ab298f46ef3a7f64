"""Promptable image segmentation (SAM2 / MobileSAM) on ONNX Runtime."""

from sam_onnx.config import SessionConfig, find_model_pair, get_model_dir
from sam_onnx.errors import (
    BackendUnavailableError,
    InvalidArgumentError,
    ModelClosedError,
    ModelLoadError,
    SegmentationError,
)
from sam_onnx.models import (
    SAM2,
    MobileSAM,
    SegmentationModel,
    TemporalSegmentationModel,
    load_model,
)
from sam_onnx.postprocess import (
    ColorPalette,
    MaskCompositor,
    apply_mask_overlay,
    binarize_logits,
    sigmoid,
)
from sam_onnx.preprocess import preprocess_image
from sam_onnx.prompts import BoundingBox, PointLabel, Prompt
from sam_onnx.result import SAMResult

__version__ = "0.1.0"

__all__ = [
    "SAM2",
    "MobileSAM",
    "SegmentationModel",
    "TemporalSegmentationModel",
    "load_model",
    "SessionConfig",
    "find_model_pair",
    "get_model_dir",
    "SAMResult",
    "Prompt",
    "PointLabel",
    "BoundingBox",
    "preprocess_image",
    "sigmoid",
    "binarize_logits",
    "apply_mask_overlay",
    "MaskCompositor",
    "ColorPalette",
    "SegmentationError",
    "InvalidArgumentError",
    "ModelLoadError",
    "BackendUnavailableError",
    "ModelClosedError",
]

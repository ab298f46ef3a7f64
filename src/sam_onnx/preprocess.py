# sam-onnx/src/sam_onnx/preprocess.py
"""
Image preprocessing: RGB(A) uint8 image -> normalized NCHW float32 tensor.

The encoder is fed a direct (non letterboxed) resize to its square input,
normalized with the ImageNet statistics in their [0, 1] float form.
"""

from __future__ import annotations

from typing import Tuple

import cv2
import numpy as np

from sam_onnx.config import DEFAULT_IMAGE_SIZE
from sam_onnx.errors import InvalidArgumentError

IMAGENET_MEAN = np.array([0.485, 0.456, 0.406], np.float32)
IMAGENET_STD = np.array([0.229, 0.224, 0.225], np.float32)


def validate_image(image, name: str = "image") -> np.ndarray:
    """Check ``image`` is an (H, W, 3|4) uint8 array and return it."""
    if image is None:
        raise InvalidArgumentError(f"{name} must not be None")
    if not isinstance(image, np.ndarray):
        raise InvalidArgumentError(f"{name} must be a numpy array, got {type(image).__name__}")
    if image.ndim != 3 or image.shape[2] not in (3, 4):
        raise InvalidArgumentError(
            f"{name} must have shape (H, W, 3) or (H, W, 4), got {image.shape}")
    if image.shape[0] == 0 or image.shape[1] == 0:
        raise InvalidArgumentError(f"{name} is empty")
    if image.dtype != np.uint8:
        raise InvalidArgumentError(f"{name} must be uint8, got {image.dtype}")
    return image


def image_size(image: np.ndarray) -> Tuple[int, int]:
    """(H, W) of a validated image."""
    return image.shape[0], image.shape[1]


def resize_to_square(rgb: np.ndarray, size: int) -> np.ndarray:
    """Squash-resize to size x size; cubic when enlarging, area when shrinking."""
    h, w = rgb.shape[:2]
    if h == size and w == size:
        return rgb
    interpolation = cv2.INTER_AREA if (h > size and w > size) else cv2.INTER_CUBIC
    return cv2.resize(rgb, (size, size), interpolation=interpolation)


def preprocess_image(image: np.ndarray,
                     size: int = DEFAULT_IMAGE_SIZE) -> np.ndarray:
    """
    Convert an RGB/RGBA image to the encoder input tensor.

    Returns:
      [1, 3, size, size] float32, C-contiguous, channel planes R, G, B.
    """
    image = validate_image(image)
    rgb = np.ascontiguousarray(image[:, :, :3])
    resized = resize_to_square(rgb, size)
    normalized = (resized.astype(np.float32) / 255.0 - IMAGENET_MEAN) / IMAGENET_STD
    tensor = np.transpose(normalized, (2, 0, 1))[np.newaxis, :]
    return np.ascontiguousarray(tensor, dtype=np.float32)


def bgr_to_rgba(img_bgr: np.ndarray) -> np.ndarray:
    """Convert an OpenCV BGR/BGRA frame into the RGBA layout used here."""
    if img_bgr is None:
        raise InvalidArgumentError("image must not be None")
    if img_bgr.ndim == 2:
        return cv2.cvtColor(img_bgr, cv2.COLOR_GRAY2RGBA)
    if img_bgr.shape[2] == 4:
        return cv2.cvtColor(img_bgr, cv2.COLOR_BGRA2RGBA)
    return cv2.cvtColor(img_bgr, cv2.COLOR_BGR2RGBA)

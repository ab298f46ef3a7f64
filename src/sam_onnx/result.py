# sam-onnx/src/sam_onnx/result.py
"""Container for one segmentation call: candidate masks and their scores."""

from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional

import numpy as np

from sam_onnx.errors import InvalidArgumentError
from sam_onnx.postprocess import binarize_logits, mask_to_image, resize_mask_nearest


@dataclass
class SAMResult:
    """
    masks:       raw logit grids in mask space (typically 256x256), one per candidate
    scores:      predicted IoU per mask, same order, not sorted
    width/height: original image size the prompts referred to
    frame_index: video frame the result belongs to (0 for still images)
    """

    masks: List[np.ndarray]
    scores: np.ndarray
    width: int
    height: int
    frame_index: int = 0
    obj_id: int = 0

    def __post_init__(self) -> None:
        self.scores = np.asarray(self.scores, dtype=np.float32).reshape(-1)
        if len(self.masks) != self.scores.shape[0]:
            raise InvalidArgumentError(
                f"{len(self.masks)} masks but {self.scores.shape[0]} scores")

    def __len__(self) -> int:
        return len(self.masks)

    @property
    def best_index(self) -> Optional[int]:
        """Index of the highest score; the earliest one wins a tie."""
        if not self.masks:
            return None
        return int(np.argmax(self.scores))

    @property
    def best_mask(self) -> Optional[np.ndarray]:
        idx = self.best_index
        return None if idx is None else self.masks[idx]

    @property
    def best_score(self) -> Optional[float]:
        idx = self.best_index
        return None if idx is None else float(self.scores[idx])

    def binary_mask(self, index: Optional[int] = None,
                    width: Optional[int] = None,
                    height: Optional[int] = None) -> Optional[np.ndarray]:
        """Boolean mask in image space (best mask unless ``index`` given)."""
        if index is None:
            index = self.best_index
            if index is None:
                return None
        mask = self.masks[index]
        resized = resize_mask_nearest(mask, width or self.width, height or self.height)
        return binarize_logits(resized)

    def best_mask_as_image(self, width: Optional[int] = None,
                           height: Optional[int] = None) -> Optional[np.ndarray]:
        """White-on-black RGBA image of the best mask, or None if there is none."""
        mask = self.best_mask
        if mask is None:
            return None
        return mask_to_image(mask, width or self.width, height or self.height)

    def all_masks_as_images(self, width: Optional[int] = None,
                            height: Optional[int] = None) -> List[np.ndarray]:
        return [mask_to_image(m, width or self.width, height or self.height)
                for m in self.masks]

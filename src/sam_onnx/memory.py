# sam-onnx/src/sam_onnx/memory.py
"""
Per-object temporal memory for video segmentation with SAM2.

For every object id the memory keeps the frames seen so far (best mask
logits, and the memory-encoder features when a memory encoder graph is
configured). Frame N is then decoded with:

- its image embedding fused with earlier frames' memories by the memory
  attention graph (when configured), and
- the most recent earlier mask as mask prompt (when the decoder accepts one).

State lives until clear() is called. Not thread-safe: a single logical
stream is assumed, the owning model serialises access.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import cv2
import numpy as np

from sam_onnx.codec import EncoderOutputs, as_f32c, owned_f32, resolve_io_names
from sam_onnx.errors import InvalidArgumentError, SegmentationError
from sam_onnx.postprocess import sigmoid
from sam_onnx.result import SAMResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_FRAMES = 7
OBJ_PTR_DIM = 256

_MEM_ENCODER_INPUTS = {
    "mask_for_mem": ("mask_for_mem",),
    "pix_feat":     ("pix_feat",),
}
_MEM_ENCODER_OUTPUTS = {
    "maskmem_features": ("maskmem_features",),
    "maskmem_pos_enc":  ("maskmem_pos_enc",),
}
_MEM_ATTENTION_INPUTS = {
    "current_vision_feat":      ("current_vision_feat",),
    "current_vision_pos_embed": ("current_vision_pos_embed",),
    "memory_1":                 ("memory_1",),
    "memory_pos_embed":         ("memory_pos_embed",),
}
_MEM_ATTENTION_OPTIONAL = {
    "memory_0": ("memory_0",),
}


@dataclass
class FrameMemory:
    mask_logits: np.ndarray
    score: float
    maskmem_features: Optional[np.ndarray] = None   # [1,64,64,64]
    maskmem_pos_enc: Optional[np.ndarray] = None    # [4096,1,64]


@dataclass
class MemoryState:
    frames: Dict[int, FrameMemory] = field(default_factory=dict)
    last_frame_index: int = -1


class TemporalMemory:
    def __init__(self, memory_encoder=None, memory_attention=None,
                 max_frames: int = DEFAULT_MAX_FRAMES) -> None:
        if max_frames < 1:
            raise InvalidArgumentError("max_frames must be >= 1")
        self.memory_encoder = memory_encoder
        self.memory_attention = memory_attention
        self.max_frames = max_frames
        self._states: Dict[int, MemoryState] = {}

        self._men_in = self._men_out = self._mat_in = None
        if memory_encoder is not None:
            self._men_in = resolve_io_names([i.name for i in memory_encoder.get_inputs()],
                                            _MEM_ENCODER_INPUTS, what="memory encoder input")
            out_names = [o.name for o in memory_encoder.get_outputs()]
            self._men_out = resolve_io_names(out_names, _MEM_ENCODER_OUTPUTS,
                                             what="memory encoder output")
        if memory_attention is not None:
            in_names = [i.name for i in memory_attention.get_inputs()]
            self._mat_in = resolve_io_names(in_names, _MEM_ATTENTION_INPUTS,
                                            what="memory attention input")
            self._mat_in.update(resolve_io_names(in_names, _MEM_ATTENTION_OPTIONAL,
                                                 required=False))

    @property
    def object_ids(self) -> List[int]:
        return sorted(self._states)

    def state(self, obj_id: int) -> Optional[MemoryState]:
        return self._states.get(obj_id)

    def _frames(self, obj_id: int, up_to: int, inclusive: bool) -> List[FrameMemory]:
        state = self._states.get(obj_id)
        if state is None:
            return []
        keep = [i for i in sorted(state.frames) if (i <= up_to if inclusive else i < up_to)]
        return [state.frames[i] for i in keep]

    def mask_hint(self, obj_id: int, frame_index: int) -> Optional[np.ndarray]:
        """Best-mask logits of the latest frame at or before ``frame_index``."""
        frames = self._frames(obj_id, frame_index, inclusive=True)
        return frames[-1].mask_logits if frames else None

    def condition(self, obj_id: int, frame_index: int,
                  outputs: EncoderOutputs) -> EncoderOutputs:
        """Fuse the frame embedding with earlier memories (memory attention)."""
        if self.memory_attention is None:
            return outputs
        encoded = [fm for fm in self._frames(obj_id, frame_index, inclusive=False)
                   if fm.maskmem_features is not None][-self.max_frames:]
        if not encoded:
            return outputs
        if outputs.vision_pos_embed is None:
            raise SegmentationError(
                "memory attention needs 'vision_pos_embed' from the image encoder")

        feed = {
            self._mat_in["current_vision_feat"]:      as_f32c(outputs.image_embed),
            self._mat_in["current_vision_pos_embed"]: as_f32c(outputs.vision_pos_embed),
            self._mat_in["memory_1"]:
                np.ascontiguousarray(np.concatenate([fm.maskmem_features for fm in encoded], axis=0)),
            self._mat_in["memory_pos_embed"]:
                np.ascontiguousarray(np.concatenate([fm.maskmem_pos_enc for fm in encoded], axis=0)),
        }
        if "memory_0" in self._mat_in:
            feed[self._mat_in["memory_0"]] = np.zeros((0, OBJ_PTR_DIM), np.float32)
        fused = self.memory_attention.run(None, feed)[0]
        logger.debug("Fused frame %d of object %d with %d memories",
                     frame_index, obj_id, len(encoded))
        return outputs.with_embed(owned_f32(fused))

    def _memory_mask(self, logits: np.ndarray, model_hw) -> np.ndarray:
        h, w = model_hw
        high_res = cv2.resize(as_f32c(logits), (w, h), interpolation=cv2.INTER_LINEAR)
        return as_f32c(sigmoid(high_res))[np.newaxis, np.newaxis, ...]

    def update(self, obj_id: int, frame_index: int, outputs: EncoderOutputs,
               result: SAMResult, mask_for_mem: Optional[np.ndarray] = None) -> None:
        """Record the best mask of ``result`` (and its encoded memory) for a frame."""
        best = result.best_index
        if best is None:
            return
        fm = FrameMemory(mask_logits=owned_f32(result.masks[best]), score=result.best_score)

        if self.memory_encoder is not None:
            if mask_for_mem is not None:
                ch = best if mask_for_mem.shape[1] > best else 0
                mem_mask = as_f32c(mask_for_mem[:, ch:ch + 1])
            else:
                mem_mask = self._memory_mask(result.masks[best], outputs.model_hw)
            values = self.memory_encoder.run(None, {
                self._men_in["mask_for_mem"]: mem_mask,
                self._men_in["pix_feat"]:     as_f32c(outputs.image_embed),
            })
            out = dict(zip([o.name for o in self.memory_encoder.get_outputs()], values))
            fm.maskmem_features = owned_f32(out[self._men_out["maskmem_features"]])
            fm.maskmem_pos_enc = owned_f32(out[self._men_out["maskmem_pos_enc"]])

        state = self._states.setdefault(obj_id, MemoryState())
        state.frames[frame_index] = fm
        state.last_frame_index = frame_index
        while len(state.frames) > self.max_frames:
            del state.frames[min(state.frames)]

    def clear(self) -> None:
        self._states.clear()

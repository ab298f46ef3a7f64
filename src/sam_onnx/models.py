# sam-onnx/src/sam_onnx/models.py
"""
Model adapters: own the encoder/decoder sessions of one model family and run
encode -> prompt encode -> decode -> parse for a caller.

- MobileSAM: single pass encoder/decoder.
- SAM2:      encoder/decoder plus temporal memory for video frames.

Sessions are not reentrant. Each adapter serialises its calls with a lock,
so at most one encode/decode pair is in flight per instance. Nothing is
retried: whatever the engine raises during run() reaches the caller as is.
"""

from __future__ import annotations

import logging
import os
import threading
import time
from contextlib import contextmanager
from typing import Callable, Iterator, List, Optional, Protocol, Tuple

import numpy as np

from sam_onnx.codec import (
    MOBILE_SAM_CONTRACT,
    SAM2_CONTRACT,
    ContractBinding,
    DecodedMasks,
    EncoderOutputs,
    TensorContract,
    build_decoder_feed,
    empty_mask_input,
    encode_prompt,
    has_mask_input,
    mask_input_from_logits,
    parse_decoder_outputs,
    read_encoder_outputs,
    run_decoder,
    run_encoder,
)
from sam_onnx.config import SessionConfig, find_model_pair, get_model_dir
from sam_onnx.errors import (
    InvalidArgumentError,
    ModelClosedError,
    ModelLoadError,
    SegmentationError,
)
from sam_onnx.memory import DEFAULT_MAX_FRAMES, TemporalMemory
from sam_onnx.preprocess import image_size, preprocess_image, validate_image
from sam_onnx.prompts import Prompt, make_prompt
from sam_onnx.providers import SessionFactory
from sam_onnx.result import SAMResult

logger = logging.getLogger(__name__)

SessionFactoryFn = Callable[[str, str], object]


class SegmentationModel(Protocol):
    def segment(self, image: np.ndarray, points, labels, box=None) -> SAMResult: ...

    def close(self) -> None: ...


class TemporalSegmentationModel(SegmentationModel, Protocol):
    def segment_frame(self, image: np.ndarray, points, labels, frame_index: int,
                      box=None, obj_id: int = 0) -> SAMResult: ...

    def clear_memory_cache(self) -> None: ...


def _check_model_file(path: Optional[str], role: str) -> None:
    if not path:
        raise ModelLoadError(f"No path given for the {role} model")
    if not os.path.isfile(path):
        raise ModelLoadError(f"ONNX {role} not found: {path}")


def _check_frame_index(frame_index: int) -> None:
    if frame_index < 0:
        raise InvalidArgumentError(f"frame_index must be >= 0, got {frame_index}")


class _OnnxModel:
    """Session ownership and the encode/decode pipeline shared by both families."""

    contract: TensorContract

    def __init__(self, encoder_path: str, decoder_path: str,
                 config: Optional[SessionConfig] = None,
                 session_factory: Optional[SessionFactoryFn] = None) -> None:
        self.config = config or SessionConfig()
        self._factory = session_factory or SessionFactory(self.config)
        self._lock = threading.Lock()
        self._closed = False
        self._sessions: List[object] = []
        self._encoder = self._decoder = None

        _check_model_file(encoder_path, "encoder")
        _check_model_file(decoder_path, "decoder")
        self.encoder_path = encoder_path
        self.decoder_path = decoder_path
        try:
            self._encoder = self._open(encoder_path, "encoder")
            self._decoder = self._open(decoder_path, "decoder")
            self.binding = ContractBinding.bind(self.contract, self._encoder, self._decoder)
        except BaseException:
            self._release()
            raise
        self.model_hw: Tuple[int, int] = self.binding.model_hw(self.config.image_size)
        logger.info("%s ready, encoder input size : %s", type(self).__name__, self.model_hw)

    # ── lifecycle ────────────────────────────────────────────────────────────

    def _open(self, path: str, kind: str):
        try:
            sess = self._factory(path, kind)
        except SegmentationError:
            raise
        except Exception as exc:
            raise ModelLoadError(f"Could not load {kind} model {path}: {exc}") from exc
        self._sessions.append(sess)
        return sess

    def _release(self) -> None:
        # ORT frees a session's (GPU) memory when its last reference goes away
        self._sessions.clear()
        self._encoder = self._decoder = None

    @property
    def state(self) -> str:
        return "closed" if self._closed else "ready"

    @property
    def closed(self) -> bool:
        return self._closed

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._release()
            self._closed = True
            logger.debug("%s closed", type(self).__name__)

    def __enter__(self):
        return self

    def __exit__(self, *exc) -> None:
        self.close()

    @contextmanager
    def _guard(self) -> Iterator[None]:
        with self._lock:
            if self._closed:
                raise ModelClosedError(f"{type(self).__name__} has been closed")
            yield

    # ── pipeline ─────────────────────────────────────────────────────────────

    def _encode(self, image: np.ndarray) -> EncoderOutputs:
        image = validate_image(image)
        tensor = preprocess_image(image, self.model_hw[0])
        t0 = time.time()
        raw = run_encoder(self._encoder, self.binding, tensor)
        logger.debug("Encoder time : %.1f ms", (time.time() - t0) * 1000)
        return read_encoder_outputs(self.binding, raw, image_size(image), self.model_hw)

    def _decode(self, outputs: EncoderOutputs, prompt: Prompt,
                frame_index: int = 0, obj_id: int = 0,
                mask_hint: Optional[np.ndarray] = None) -> Tuple[SAMResult, DecodedMasks]:
        coords, labels = encode_prompt(prompt, outputs.image_hw, outputs.model_hw)
        tensors = {
            "image_embed":      outputs.image_embed,
            "high_res_feats_0": outputs.high_res_feats_0,
            "high_res_feats_1": outputs.high_res_feats_1,
            "point_coords":     coords,
            "point_labels":     labels,
            "mask_input":       (empty_mask_input() if mask_hint is None
                                 else mask_input_from_logits(mask_hint)),
            "has_mask_input":   has_mask_input(mask_hint is not None),
        }
        feed = build_decoder_feed(self.binding, tensors)
        t0 = time.time()
        raw = run_decoder(self._decoder, self.binding, feed)
        logger.debug("Decoder time : %.1f ms", (time.time() - t0) * 1000)

        decoded = parse_decoder_outputs(self.binding, raw)
        h_org, w_org = outputs.image_hw
        result = SAMResult(masks=decoded.masks, scores=decoded.scores,
                           width=w_org, height=h_org,
                           frame_index=frame_index, obj_id=obj_id)
        return result, decoded

    # ── public API ───────────────────────────────────────────────────────────

    def encode_image(self, image: np.ndarray) -> EncoderOutputs:
        """Run only the encoder; reuse the outputs for several decode() calls."""
        validate_image(image)
        with self._guard():
            return self._encode(image)

    def decode(self, outputs: EncoderOutputs, points, labels, box=None,
               frame_index: int = 0) -> SAMResult:
        """Decode a prompt against embeddings from encode_image()."""
        prompt = make_prompt(points, labels, box)
        _check_frame_index(frame_index)
        if outputs is None:
            raise InvalidArgumentError("encoder outputs must not be None")
        with self._guard():
            result, _ = self._decode(outputs, prompt, frame_index)
            return result

    def segment(self, image: np.ndarray, points, labels, box=None) -> SAMResult:
        """
        Segment a still image from point (and optional box) prompts.

        points: [(x, y), ...] in image pixels; labels: 1 include / 0 exclude.
        box:    optional (x1, y1, x2, y2) or BoundingBox.
        """
        prompt = make_prompt(points, labels, box)
        validate_image(image)
        with self._guard():
            outputs = self._encode(image)
            result, _ = self._decode(outputs, prompt)
            return result


class MobileSAM(_OnnxModel):
    """MobileSAM: one image embedding, mask prompt always fed as 'no mask'."""

    contract = MOBILE_SAM_CONTRACT

    @classmethod
    def from_directory(cls, model_dir: Optional[str] = None,
                       config: Optional[SessionConfig] = None, **kwargs) -> "MobileSAM":
        files = find_model_pair(model_dir or get_model_dir(), "mobile_sam")
        return cls(files.encoder, files.decoder, config=config, **kwargs)


class SAM2(_OnnxModel):
    """
    SAM2 with temporal memory.

    segment() treats every call as an independent still image.
    segment_frame() consults and updates the per-object memory; call
    clear_memory_cache() before starting an unrelated sequence.
    """

    contract = SAM2_CONTRACT

    def __init__(self, encoder_path: str, decoder_path: str,
                 config: Optional[SessionConfig] = None,
                 session_factory: Optional[SessionFactoryFn] = None,
                 memory_encoder_path: Optional[str] = None,
                 memory_attention_path: Optional[str] = None,
                 max_memory_frames: int = DEFAULT_MAX_FRAMES) -> None:
        self.memory: Optional[TemporalMemory] = None
        if memory_encoder_path:
            _check_model_file(memory_encoder_path, "memory encoder")
        if memory_attention_path:
            _check_model_file(memory_attention_path, "memory attention")
        super().__init__(encoder_path, decoder_path, config, session_factory)
        try:
            mem_enc = (self._open(memory_encoder_path, "memory_encoder")
                       if memory_encoder_path else None)
            mem_attn = (self._open(memory_attention_path, "memory_attention")
                        if memory_attention_path else None)
            if mem_attn is not None and not self.binding.has_encoder_output("vision_pos_embed"):
                raise ModelLoadError(
                    "memory attention requires an encoder exporting 'vision_pos_embed'")
            self.memory = TemporalMemory(mem_enc, mem_attn, max_memory_frames)
        except BaseException:
            self._release()
            raise

    @classmethod
    def from_directory(cls, model_dir: Optional[str] = None,
                       config: Optional[SessionConfig] = None, **kwargs) -> "SAM2":
        files = find_model_pair(model_dir or get_model_dir(), "sam2")
        kwargs.setdefault("memory_encoder_path", files.memory_encoder)
        kwargs.setdefault("memory_attention_path", files.memory_attention)
        return cls(files.encoder, files.decoder, config=config, **kwargs)

    def _release(self) -> None:
        super()._release()
        if self.memory is not None:
            self.memory.clear()
            self.memory.memory_encoder = self.memory.memory_attention = None

    def segment_frame(self, image: np.ndarray, points, labels, frame_index: int,
                      box=None, obj_id: int = 0) -> SAMResult:
        """Segment one video frame of object ``obj_id`` using its memory."""
        prompt = make_prompt(points, labels, box)
        _check_frame_index(frame_index)
        validate_image(image)
        with self._guard():
            outputs = self._encode(image)
            conditioned = self.memory.condition(obj_id, frame_index, outputs)
            hint = (self.memory.mask_hint(obj_id, frame_index)
                    if self.binding.has_decoder_input("mask_input") else None)
            result, decoded = self._decode(conditioned, prompt, frame_index, obj_id, hint)
            self.memory.update(obj_id, frame_index, outputs, result, decoded.mask_for_mem)
            return result

    def clear_memory_cache(self) -> None:
        with self._lock:
            if self.memory is not None:
                self.memory.clear()


MODEL_CLASSES = {
    "sam2": SAM2,
    "mobile_sam": MobileSAM,
}


def load_model(family: str, encoder_path: str, decoder_path: str, **kwargs) -> _OnnxModel:
    """Construct the adapter for ``family`` ("sam2" or "mobile_sam")."""
    try:
        cls = MODEL_CLASSES[family]
    except KeyError:
        raise InvalidArgumentError(
            f"Unknown model family '{family}'. Choose from: {list(MODEL_CLASSES)}") from None
    return cls(encoder_path, decoder_path, **kwargs)

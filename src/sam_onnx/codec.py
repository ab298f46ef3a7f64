# sam-onnx/src/sam_onnx/codec.py
"""
Tensor codec between the caller's world (pixels, prompts) and the named
tensors of the encoder/decoder graphs.

- Prompt encoding (image space -> encoder space, box as 2 labelled points)
- Per-family tensor contracts and name resolution against a live session
- Owned copies of engine outputs
- Encoder / decoder runners

Every array handed to ONNX Runtime is contiguous and typed as the graph
declares it (float32 unless stated otherwise).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

import cv2
import numpy as np

from sam_onnx.errors import InvalidArgumentError, ModelLoadError, SegmentationError
from sam_onnx.prompts import PointLabel, Prompt

logger = logging.getLogger(__name__)

MASK_INPUT_SIZE = 256

_ORT_DTYPES = {
    "tensor(float)": np.float32,
    "tensor(float16)": np.float16,
    "tensor(double)": np.float64,
    "tensor(int64)": np.int64,
    "tensor(int32)": np.int32,
    "tensor(bool)": np.bool_,
}


def as_f32c(a: np.ndarray) -> np.ndarray:
    """C-ordered float32 array, copying only when dtype or layout differ."""
    a = np.asarray(a).astype(np.float32, copy=False)
    return np.ascontiguousarray(a)


def owned_f32(a: np.ndarray) -> np.ndarray:
    """Contiguous float32 copy that shares no memory with ``a``."""
    return np.array(a, dtype=np.float32, order="C", copy=True)


# ──────────────────────────────────────────────────────────────────────────────
# Prompt encoding (image space -> encoder space)
# ──────────────────────────────────────────────────────────────────────────────

def scale_points(points,
                 image_hw: Tuple[int, int],
                 model_hw: Tuple[int, int]) -> np.ndarray:
    """
    Map (x, y) pixels of the original image onto the encoder grid.
    X and Y use their own factor since the original need not be square.
    """
    pts = np.asarray(points, dtype=np.float32).reshape(-1, 2).copy()
    h_org, w_org = image_hw
    h_enc, w_enc = model_hw
    if h_org <= 0 or w_org <= 0:
        raise InvalidArgumentError(f"invalid image size {image_hw}")
    pts[:, 0] = pts[:, 0] * np.float32(w_enc / w_org)
    pts[:, 1] = pts[:, 1] * np.float32(h_enc / h_org)
    return pts


def encode_prompt(prompt: Prompt,
                  image_hw: Tuple[int, int],
                  model_hw: Tuple[int, int]
                  ) -> Tuple[np.ndarray, np.ndarray]:
    """
    Build the decoder prompt tensors.

    Returns:
      coords: [1, P, 2] float32
      labels: [1, P]   float32
    where P = len(points) (+ 2 when a box is given; corners are ordered
    top-left then bottom-right, labelled 2 and 3, and appended after the
    explicit points).
    """
    if len(prompt.points) != len(prompt.labels):
        raise InvalidArgumentError("Points and labels must have the same length")

    points = list(prompt.points)
    labels = [float(lbl) for lbl in prompt.labels]
    if prompt.box is not None:
        top_left, bottom_right = prompt.box.normalized().corners()
        points += [top_left, bottom_right]
        labels += [float(PointLabel.BOX_TOP_LEFT), float(PointLabel.BOX_BOTTOM_RIGHT)]

    if not points:
        return np.zeros((1, 0, 2), np.float32), np.zeros((1, 0), np.float32)

    coords = scale_points(points, image_hw, model_hw)
    lbl = np.asarray(labels, dtype=np.float32)
    return as_f32c(coords[np.newaxis, ...]), as_f32c(lbl[np.newaxis, ...])


def empty_mask_input() -> np.ndarray:
    """Zero mask prompt [1,1,256,256]: no prior mask hint."""
    return np.zeros((1, 1, MASK_INPUT_SIZE, MASK_INPUT_SIZE), np.float32)


def has_mask_input(flag: bool = False) -> np.ndarray:
    return np.array([1.0 if flag else 0.0], np.float32)


def mask_input_from_logits(logits: np.ndarray) -> np.ndarray:
    """Previous low-res logits as a [1,1,256,256] mask prompt."""
    logits = as_f32c(logits)
    if logits.shape != (MASK_INPUT_SIZE, MASK_INPUT_SIZE):
        logits = cv2.resize(logits, (MASK_INPUT_SIZE, MASK_INPUT_SIZE),
                            interpolation=cv2.INTER_LINEAR)
    return np.ascontiguousarray(logits[np.newaxis, np.newaxis, ...])


# ──────────────────────────────────────────────────────────────────────────────
# Tensor contracts
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TensorContract:
    """
    Named-tensor schema of one model family.

    Each logical slot lists the graph names it may carry, preferred first.
    Optional slots are used only when the loaded graph declares them.
    """

    family: str
    encoder_input: Tuple[str, ...]
    encoder_outputs: Mapping[str, Tuple[str, ...]]
    decoder_inputs: Mapping[str, Tuple[str, ...]]
    decoder_outputs: Mapping[str, Tuple[str, ...]]
    optional_encoder_outputs: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    optional_decoder_inputs: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)
    optional_decoder_outputs: Mapping[str, Tuple[str, ...]] = field(default_factory=dict)


MOBILE_SAM_CONTRACT = TensorContract(
    family="mobile_sam",
    encoder_input=("image", "images", "input"),
    encoder_outputs={
        "image_embed": ("image_embeddings", "image_embed"),
    },
    decoder_inputs={
        "image_embed":    ("image_embeddings",),
        "point_coords":   ("point_coords",),
        "point_labels":   ("point_labels",),
        "mask_input":     ("mask_input",),
        "has_mask_input": ("has_mask_input",),
    },
    decoder_outputs={
        "masks":  ("masks",),
        "scores": ("iou_predictions",),
    },
)

SAM2_CONTRACT = TensorContract(
    family="sam2",
    encoder_input=("image", "input"),
    encoder_outputs={
        "image_embed":      ("image_embed", "image_embeddings"),
        "high_res_feats_0": ("high_res_feats_0", "high_res_features1"),
        "high_res_feats_1": ("high_res_feats_1", "high_res_features2"),
    },
    optional_encoder_outputs={
        "vision_pos_embed": ("vision_pos_embed",),
    },
    decoder_inputs={
        "image_embed":      ("image_embed",),
        "high_res_feats_0": ("high_res_feats_0",),
        "high_res_feats_1": ("high_res_feats_1",),
        "point_coords":     ("point_coords",),
        "point_labels":     ("point_labels",),
    },
    optional_decoder_inputs={
        "mask_input":     ("mask_input",),
        "has_mask_input": ("has_mask_input",),
    },
    decoder_outputs={
        "masks": ("masks", "pred_mask"),
    },
    # exports that only emit obj_ptr, mask_for_mem and pred_mask carry no scores
    optional_decoder_outputs={
        "scores":       ("iou_predictions",),
        "mask_for_mem": ("mask_for_mem",),
    },
)

CONTRACTS = {c.family: c for c in (MOBILE_SAM_CONTRACT, SAM2_CONTRACT)}


def _match_name(available: Sequence[str], candidates: Sequence[str]) -> Optional[str]:
    for cand in candidates:
        if cand in available:
            return cand
    # some exporters add suffixes/prefixes to the canonical names
    for cand in candidates:
        for nm in available:
            if cand in nm:
                return nm
    return None


def resolve_io_names(available: Sequence[str],
                     aliases: Mapping[str, Sequence[str]],
                     required: bool = True,
                     what: str = "tensor") -> Dict[str, str]:
    """
    Resolve logical slots to the graph's actual names.
    Unresolved optional slots are left out of the result.
    """
    resolved: Dict[str, str] = {}
    for slot, candidates in aliases.items():
        name = _match_name(available, candidates)
        if name is None:
            if required:
                raise ModelLoadError(
                    f"{what} '{slot}' not found (expected one of {list(candidates)}, "
                    f"model has {list(available)})")
            continue
        resolved[slot] = name
    return resolved


@dataclass
class ContractBinding:
    """A TensorContract resolved against a concrete encoder/decoder pair."""

    contract: TensorContract
    encoder_input: str
    encoder_input_shape: Tuple
    encoder_output_names: List[str]
    encoder_outputs: Dict[str, str]
    decoder_input_types: Dict[str, str]
    decoder_output_names: List[str]
    decoder_inputs: Dict[str, str]
    decoder_outputs: Dict[str, str]

    @classmethod
    def bind(cls, contract: TensorContract, encoder_session, decoder_session) -> "ContractBinding":
        enc_inputs = list(encoder_session.get_inputs())
        if not enc_inputs:
            raise ModelLoadError("encoder declares no inputs")
        enc_in_names = [i.name for i in enc_inputs]
        enc_input = _match_name(enc_in_names, contract.encoder_input) or enc_in_names[0]
        enc_input_shape = tuple(enc_inputs[enc_in_names.index(enc_input)].shape)

        enc_out_names = [o.name for o in encoder_session.get_outputs()]
        enc_outputs = resolve_io_names(enc_out_names, contract.optional_encoder_outputs,
                                       required=False, what="encoder output")
        if "image_embed" in contract.encoder_outputs and enc_out_names \
                and _match_name(enc_out_names, contract.encoder_outputs["image_embed"]) is None:
            # single-output encoders: the embedding is whatever comes first
            logger.debug("Using encoder output '%s' as image_embed", enc_out_names[0])
            required = {k: v for k, v in contract.encoder_outputs.items() if k != "image_embed"}
            enc_outputs["image_embed"] = enc_out_names[0]
        else:
            required = contract.encoder_outputs
        enc_outputs.update(resolve_io_names(enc_out_names, required, what="encoder output"))

        dec_inputs_meta = list(decoder_session.get_inputs())
        dec_in_names = [i.name for i in dec_inputs_meta]
        dec_inputs = resolve_io_names(dec_in_names, contract.decoder_inputs,
                                      what="decoder input")
        dec_inputs.update(resolve_io_names(dec_in_names, contract.optional_decoder_inputs,
                                           required=False, what="decoder input"))

        dec_out_names = [o.name for o in decoder_session.get_outputs()]
        dec_outputs = resolve_io_names(dec_out_names, contract.decoder_outputs,
                                       what="decoder output")
        dec_outputs.update(resolve_io_names(dec_out_names, contract.optional_decoder_outputs,
                                            required=False, what="decoder output"))

        return cls(
            contract=contract,
            encoder_input=enc_input,
            encoder_input_shape=enc_input_shape,
            encoder_output_names=enc_out_names,
            encoder_outputs=enc_outputs,
            decoder_input_types={i.name: getattr(i, "type", "tensor(float)")
                                 for i in dec_inputs_meta},
            decoder_output_names=dec_out_names,
            decoder_inputs=dec_inputs,
            decoder_outputs=dec_outputs,
        )

    def model_hw(self, default: int) -> Tuple[int, int]:
        """Encoder input (H, W) from the graph when static, else default."""
        shape = self.encoder_input_shape
        if len(shape) == 4 and all(isinstance(d, int) and d > 0 for d in shape[2:]):
            return int(shape[2]), int(shape[3])
        return default, default

    def has_decoder_input(self, slot: str) -> bool:
        return slot in self.decoder_inputs

    def has_decoder_output(self, slot: str) -> bool:
        return slot in self.decoder_outputs

    def has_encoder_output(self, slot: str) -> bool:
        return slot in self.encoder_outputs


# ──────────────────────────────────────────────────────────────────────────────
# Encoder outputs
# ──────────────────────────────────────────────────────────────────────────────

@dataclass
class EncoderOutputs:
    """
    Owned copies of the encoder results for one image.

    image_embed      [1,256,64,64]
    high_res_feats_0 [1,32,256,256]   (SAM2 only)
    high_res_feats_1 [1,64,128,128]   (SAM2 only)
    vision_pos_embed [4096,1,256]     (SAM2 exports with memory support)
    """

    image_embed: np.ndarray
    image_hw: Tuple[int, int]
    model_hw: Tuple[int, int]
    high_res_feats_0: Optional[np.ndarray] = None
    high_res_feats_1: Optional[np.ndarray] = None
    vision_pos_embed: Optional[np.ndarray] = None

    def with_embed(self, image_embed: np.ndarray) -> "EncoderOutputs":
        return EncoderOutputs(
            image_embed=image_embed,
            image_hw=self.image_hw,
            model_hw=self.model_hw,
            high_res_feats_0=self.high_res_feats_0,
            high_res_feats_1=self.high_res_feats_1,
            vision_pos_embed=self.vision_pos_embed,
        )


def read_encoder_outputs(binding: ContractBinding,
                         outputs: Mapping[str, np.ndarray],
                         image_hw: Tuple[int, int],
                         model_hw: Tuple[int, int]) -> EncoderOutputs:
    """Copy the bound encoder outputs out of the engine's result list."""
    copied = {slot: owned_f32(outputs[name])
              for slot, name in binding.encoder_outputs.items()}
    return EncoderOutputs(image_hw=image_hw, model_hw=model_hw, **copied)


# ──────────────────────────────────────────────────────────────────────────────
# Decoder feed / outputs
# ──────────────────────────────────────────────────────────────────────────────

def build_decoder_feed(binding: ContractBinding,
                       tensors: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
    """
    Map logical tensors onto the decoder's input names. Only slots the graph
    declares are fed; every declared slot must be provided.
    """
    feed = {}
    for slot, name in binding.decoder_inputs.items():
        if slot not in tensors or tensors[slot] is None:
            raise SegmentationError(f"no tensor supplied for decoder input '{slot}'")
        dtype = _ORT_DTYPES.get(binding.decoder_input_types.get(name), np.float32)
        feed[name] = np.ascontiguousarray(np.asarray(tensors[slot]).astype(dtype, copy=False))
    return feed


@dataclass
class DecodedMasks:
    masks: List[np.ndarray]
    scores: np.ndarray
    mask_for_mem: Optional[np.ndarray] = None


def parse_decoder_outputs(binding: ContractBinding,
                          outputs: Mapping[str, np.ndarray]) -> DecodedMasks:
    """
    Split ``masks`` [1,M,H,W] into M owned H x W logit grids and read the
    confidences from the iou_predictions slot [1,M]. Decoders without that
    output get a score of 1.0 for every mask.
    """
    raw_masks = np.asarray(outputs[binding.decoder_outputs["masks"]])
    if raw_masks.ndim == 4:
        raw_masks = raw_masks[0]
    if raw_masks.ndim != 3:
        raise SegmentationError(f"unexpected masks shape {raw_masks.shape}")
    masks = [owned_f32(raw_masks[m]) for m in range(raw_masks.shape[0])]

    if binding.has_decoder_output("scores"):
        scores = owned_f32(outputs[binding.decoder_outputs["scores"]]).reshape(-1)
    else:
        # equal confidences: the stable argmax keeps the first mask
        scores = np.ones(len(masks), np.float32)
    if scores.shape[0] != len(masks):
        raise SegmentationError(
            f"decoder returned {len(masks)} masks but {scores.shape[0]} scores")

    mask_for_mem = None
    if binding.has_decoder_output("mask_for_mem"):
        mask_for_mem = owned_f32(outputs[binding.decoder_outputs["mask_for_mem"]])
    return DecodedMasks(masks=masks, scores=scores, mask_for_mem=mask_for_mem)


# ──────────────────────────────────────────────────────────────────────────────
# Encoder / Decoder runners
# ──────────────────────────────────────────────────────────────────────────────

def run_encoder(sess_enc, binding: ContractBinding,
                input_tensor: np.ndarray) -> Dict[str, np.ndarray]:
    """Execute the encoder and return a name->array dict."""
    values = sess_enc.run(None, {binding.encoder_input: as_f32c(input_tensor)})
    return dict(zip(binding.encoder_output_names, values))


def run_decoder(sess_dec, binding: ContractBinding,
                feed: Mapping[str, np.ndarray]) -> Dict[str, np.ndarray]:
    """Execute the decoder with an already-bound feed; name->array dict."""
    values = sess_dec.run(None, dict(feed))
    return dict(zip(binding.decoder_output_names, values))

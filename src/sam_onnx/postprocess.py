# sam-onnx/src/sam_onnx/postprocess.py
"""
Mask post-processing: logits -> binary masks -> coloured overlays.

A pixel is "covered" when sigmoid(logit) > 0.5, evaluated as logit > 0.
Mask-space to image-space mapping is nearest neighbour, without
interpolation:

    mask_x = min(floor(x / width * mask_width), mask_width - 1)

Blending on covered pixels, rounded half up; an alpha channel is left as is:

    out = (1 - alpha) * original + alpha * color
"""

from __future__ import annotations

import logging
import math
import os
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import List, Optional, Sequence, Tuple

import numpy as np

from sam_onnx.config import SessionConfig, is_constrained_platform
from sam_onnx.errors import InvalidArgumentError
from sam_onnx.preprocess import validate_image

logger = logging.getLogger(__name__)

CONSTRAINED_MAX_WORKERS = 4

Color = Tuple[int, int, int]


# ──────────────────────────────────────────────────────────────────────────────
# Logits
# ──────────────────────────────────────────────────────────────────────────────

def sigmoid(x) -> np.ndarray:
    """Overflow-free logistic function."""
    x = np.asarray(x)
    if not np.issubdtype(x.dtype, np.floating):
        x = x.astype(np.float32)
    e = np.exp(-np.abs(x))
    return np.where(x >= 0, 1.0 / (1.0 + e), e / (1.0 + e))


def binarize_logits(logits, threshold: float = 0.5) -> np.ndarray:
    """
    sigmoid(logits) > threshold, compared in logit space so that the decision
    stays exact where sigmoid() itself rounds to 0.5 (|logit| below ~1e-8).
    """
    if not 0.0 < threshold < 1.0:
        raise InvalidArgumentError(f"threshold must be in (0, 1), got {threshold}")
    cutoff = math.log(threshold / (1.0 - threshold))
    return np.asarray(logits) > cutoff


# ──────────────────────────────────────────────────────────────────────────────
# Mask space -> image space
# ──────────────────────────────────────────────────────────────────────────────

def mask_index_map(target: int, mask_dim: int) -> np.ndarray:
    """Source index in mask space for each of ``target`` output positions."""
    idx = np.floor(np.arange(target, dtype=np.float64) / target * mask_dim).astype(np.intp)
    return np.minimum(idx, mask_dim - 1)


def validate_mask(mask, name: str = "mask") -> np.ndarray:
    if mask is None:
        raise InvalidArgumentError(f"{name} must not be None")
    mask = np.asarray(mask)
    if mask.ndim != 2 or mask.size == 0:
        raise InvalidArgumentError(f"{name} must be a non-empty 2D array, got shape {mask.shape}")
    return mask


def resize_mask_nearest(mask: np.ndarray, width: int, height: int) -> np.ndarray:
    mask = validate_mask(mask)
    if width <= 0 or height <= 0:
        raise InvalidArgumentError(f"invalid target size {width}x{height}")
    rows = mask_index_map(height, mask.shape[0])
    cols = mask_index_map(width, mask.shape[1])
    return mask[rows[:, np.newaxis], cols[np.newaxis, :]]


def mask_to_image(mask: np.ndarray, width: int, height: int,
                  foreground: Color = (255, 255, 255),
                  background: Color = (0, 0, 0)) -> np.ndarray:
    """Opaque RGBA rendering of a logit mask at width x height."""
    covered = binarize_logits(resize_mask_nearest(mask, width, height))
    out = np.empty((height, width, 4), np.uint8)
    out[..., :3] = np.asarray(_validate_color(background), np.uint8)
    out[covered, :3] = np.asarray(_validate_color(foreground), np.uint8)
    out[..., 3] = 255
    return out


# ──────────────────────────────────────────────────────────────────────────────
# Compositing
# ──────────────────────────────────────────────────────────────────────────────

def _validate_alpha(alpha: float) -> np.float32:
    if alpha is None or not (0.0 <= float(alpha) <= 1.0):
        raise InvalidArgumentError(f"Alpha must be between 0.0 and 1.0, got {alpha}")
    return np.float32(alpha)


def _validate_color(color) -> Color:
    try:
        rgb = tuple(int(c) for c in color)
    except (TypeError, ValueError):
        raise InvalidArgumentError(f"color must be an (r, g, b) triple, got {color!r}") from None
    if len(rgb) not in (3, 4) or not all(0 <= c <= 255 for c in rgb):
        raise InvalidArgumentError(f"color must be (r, g, b) in 0..255, got {color!r}")
    return rgb[:3]


def _to_u8(values: np.ndarray) -> np.ndarray:
    return np.clip(np.floor(values + np.float32(0.5)), 0, 255).astype(np.uint8)


def apply_mask_overlay(image: np.ndarray, mask: np.ndarray,
                       color: Color, alpha: float = 0.5) -> np.ndarray:
    """
    Reference (single threaded) overlay. Returns a new image; the input is
    not modified.
    """
    image = validate_image(image)
    mask = validate_mask(mask)
    a = _validate_alpha(alpha)
    rgb = np.asarray(_validate_color(color), np.float32)

    h, w = image.shape[:2]
    covered = binarize_logits(resize_mask_nearest(mask, w, h))
    out = image.copy()
    src = out[..., :3][covered].astype(np.float32)
    out[..., :3][covered] = _to_u8((np.float32(1.0) - a) * src + a * rgb)
    return out


def resolve_worker_count(requested: Optional[int] = None,
                         constrained: Optional[bool] = None,
                         cores: Optional[int] = None) -> int:
    if requested:
        return max(1, int(requested))
    cores = cores or os.cpu_count() or 1
    if constrained is None:
        constrained = is_constrained_platform()
    if constrained:
        return max(1, min(cores, CONSTRAINED_MAX_WORKERS))
    return max(1, cores)


class ColorPalette:
    """
    Deterministic overlay colours, generated on demand and cached for the
    palette's lifetime. Channels stay in [100, 255] so overlays remain visible.
    """

    def __init__(self, seed: int = 42, low: int = 100, high: int = 256) -> None:
        self._rng = np.random.default_rng(seed)
        self._low = low
        self._high = high
        self._colors: List[Color] = []

    def __len__(self) -> int:
        return len(self._colors)

    def color(self, index: int) -> Color:
        while len(self._colors) <= index:
            r, g, b = self._rng.integers(self._low, self._high, size=3)
            self._colors.append((int(r), int(g), int(b)))
        return self._colors[index]

    def colors(self, count: int) -> List[Color]:
        return [self.color(i) for i in range(count)]


class MaskCompositor:
    """
    Parallel overlay path.

    The mask is thresholded once at mask resolution, ``alpha * color`` is
    precomputed, and the image rows are cut into disjoint bands blended by a
    bounded thread pool. Workers only share read-only inputs; each writes its
    own rows of the output. Results match apply_mask_overlay() pixel for pixel.
    """

    # below this many rows the pool costs more than it saves
    MIN_ROWS_PER_BAND = 16

    def __init__(self, workers: Optional[int] = None,
                 palette: Optional[ColorPalette] = None,
                 constrained: Optional[bool] = None) -> None:
        self.workers = resolve_worker_count(workers, constrained)
        self.palette = palette if palette is not None else ColorPalette()
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = threading.Lock()

    @classmethod
    def from_config(cls, config: SessionConfig,
                    palette: Optional[ColorPalette] = None) -> "MaskCompositor":
        return cls(config.composite_workers, palette, config.is_constrained)

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self.workers,
                                                thread_name_prefix="sam-composite")
            return self._pool

    def _bands(self, height: int) -> List[Tuple[int, int]]:
        n = max(1, min(self.workers, height // self.MIN_ROWS_PER_BAND))
        bounds = np.linspace(0, height, n + 1).astype(int)
        return [(int(s), int(e)) for s, e in zip(bounds[:-1], bounds[1:]) if e > s]

    def apply(self, image: np.ndarray, mask: np.ndarray,
              color: Color, alpha: float = 0.5) -> np.ndarray:
        image = validate_image(image)
        mask = validate_mask(mask)
        a = _validate_alpha(alpha)
        rgb = np.asarray(_validate_color(color), np.float32)

        h, w = image.shape[:2]
        binary = binarize_logits(mask)
        rows = mask_index_map(h, mask.shape[0])
        cols = mask_index_map(w, mask.shape[1])
        inv_alpha = np.float32(1.0) - a
        alpha_color = a * rgb

        out = image.copy()

        def blend(start: int, stop: int) -> None:
            covered = binary[rows[start:stop, np.newaxis], cols[np.newaxis, :]]
            band = out[start:stop, :, :3]
            src = band[covered].astype(np.float32)
            band[covered] = _to_u8(src * inv_alpha + alpha_color)

        bands = self._bands(h)
        if len(bands) == 1:
            blend(*bands[0])
        else:
            futures = [self._executor().submit(blend, s, e) for s, e in bands]
            for f in futures:
                f.result()
        return out

    def overlay_all(self, image: np.ndarray, masks: Sequence[np.ndarray],
                    alpha: float = 0.5,
                    colors: Optional[Sequence[Color]] = None) -> np.ndarray:
        """Composite several masks in order, one palette colour each."""
        image = validate_image(image)
        _validate_alpha(alpha)
        if masks is None:
            raise InvalidArgumentError("masks must not be None")
        if colors is None:
            colors = self.palette.colors(len(masks))
        elif len(colors) < len(masks):
            raise InvalidArgumentError(f"{len(masks)} masks but only {len(colors)} colors")
        out = image
        for mask, color in zip(masks, colors):
            out = self.apply(out, mask, color, alpha)
        return out if out is not image else image.copy()

    def close(self) -> None:
        with self._pool_lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=True)

    def __enter__(self) -> "MaskCompositor":
        return self

    def __exit__(self, *exc) -> None:
        self.close()

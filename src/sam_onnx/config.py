# sam-onnx/src/sam_onnx/config.py
"""
Runtime configuration: session knobs, environment overrides and model lookup.

Environment variables (all optional):
- SAM_ONNX_THREADS      intra-op thread count (0 or unset = auto)
- SAM_ONNX_PROVIDERS    comma separated provider preference, e.g. "CUDAExecutionProvider,CPUExecutionProvider"
- SAM_ONNX_GRAPH_OPT    graph optimisation level for the encoder (disable|basic|extended|all)
- SAM_ONNX_CONSTRAINED  1/0, force the mobile profile on or off
- SAM_ONNX_DEVICE_ID    GPU ordinal handed to device-bound providers
- SAM_ONNX_MODEL_DIR    directory searched by find_model_pair()
"""

from __future__ import annotations

import glob
import os
import sys
from dataclasses import dataclass, field, replace
from typing import Dict, Optional, Tuple

from sam_onnx.errors import InvalidArgumentError, ModelLoadError

ENV_PREFIX = "SAM_ONNX_"
DEFAULT_IMAGE_SIZE = 1024
GRAPH_OPT_LEVELS = ("disable", "basic", "extended", "all")

MODEL_FAMILIES = ("sam2", "mobile_sam")

_CONSTRAINED_PLATFORMS = ("android", "ios")

# Base names tried per role, most specific first.
_MODEL_FILES: Dict[str, Dict[str, Tuple[str, ...]]] = {
    "sam2": {
        "encoder": ("image_encoder", "sam2_encoder"),
        "decoder": ("image_decoder", "sam2_decoder"),
        "memory_encoder": ("memory_encoder",),
        "memory_attention": ("memory_attention",),
    },
    "mobile_sam": {
        "encoder": ("mobile_sam_encoder", "mobile_sam.encoder"),
        "decoder": ("mobile_sam_decoder", "mobile_sam.decoder"),
    },
}


def is_constrained_platform(platform: Optional[str] = None) -> bool:
    """True on mobile targets where threads and memory must be kept small."""
    platform = (platform or sys.platform).lower()
    return platform.startswith(_CONSTRAINED_PLATFORMS)


@dataclass
class SessionConfig:
    """
    Knobs shared by every ONNX Runtime session a model adapter opens.

    ``None`` means "pick a value for this platform" (see providers.py).
    """

    intra_op_num_threads: Optional[int] = None
    inter_op_num_threads: int = 1
    encoder_graph_optimization: str = "extended"
    decoder_graph_optimization: str = "disable"
    providers: Optional[Tuple[str, ...]] = None
    constrained: Optional[bool] = None
    device_id: int = 0
    image_size: int = DEFAULT_IMAGE_SIZE
    composite_workers: Optional[int] = None
    session_config_entries: Dict[str, str] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in ("encoder_graph_optimization", "decoder_graph_optimization"):
            level = getattr(self, name)
            if level not in GRAPH_OPT_LEVELS:
                raise InvalidArgumentError(
                    f"{name}={level!r}; expected one of {GRAPH_OPT_LEVELS}")
        if self.intra_op_num_threads is not None and self.intra_op_num_threads < 0:
            raise InvalidArgumentError("intra_op_num_threads must be >= 0")
        if self.inter_op_num_threads < 1:
            raise InvalidArgumentError("inter_op_num_threads must be >= 1")
        if self.image_size <= 0:
            raise InvalidArgumentError("image_size must be positive")
        if self.providers is not None:
            self.providers = tuple(self.providers)

    @property
    def is_constrained(self) -> bool:
        if self.constrained is None:
            return is_constrained_platform()
        return self.constrained

    @classmethod
    def from_env(cls, environ: Optional[Dict[str, str]] = None, **overrides) -> "SessionConfig":
        """Build a config from SAM_ONNX_* variables; keyword overrides win."""
        env = os.environ if environ is None else environ
        values = {}

        threads = env.get(ENV_PREFIX + "THREADS")
        if threads:
            values["intra_op_num_threads"] = _parse_int("THREADS", threads) or None

        providers = env.get(ENV_PREFIX + "PROVIDERS")
        if providers:
            values["providers"] = tuple(p.strip() for p in providers.split(",") if p.strip())

        graph_opt = env.get(ENV_PREFIX + "GRAPH_OPT")
        if graph_opt:
            values["encoder_graph_optimization"] = graph_opt.strip().lower()

        constrained = env.get(ENV_PREFIX + "CONSTRAINED")
        if constrained:
            values["constrained"] = _parse_bool("CONSTRAINED", constrained)

        device_id = env.get(ENV_PREFIX + "DEVICE_ID")
        if device_id:
            values["device_id"] = _parse_int("DEVICE_ID", device_id)

        workers = env.get(ENV_PREFIX + "COMPOSITE_WORKERS")
        if workers:
            values["composite_workers"] = _parse_int("COMPOSITE_WORKERS", workers) or None

        values.update(overrides)
        return cls(**values)

    def with_overrides(self, **changes) -> "SessionConfig":
        return replace(self, **changes)


def _parse_int(name: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise InvalidArgumentError(f"{ENV_PREFIX}{name}={raw!r} is not an integer") from None


def _parse_bool(name: str, raw: str) -> bool:
    value = raw.strip().lower()
    if value in ("1", "true", "yes", "on"):
        return True
    if value in ("0", "false", "no", "off"):
        return False
    raise InvalidArgumentError(f"{ENV_PREFIX}{name}={raw!r} is not a boolean")


# ──────────────────────────────────────────────────────────────────────────────
# Model files
# ──────────────────────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class ModelFiles:
    encoder: str
    decoder: str
    memory_encoder: Optional[str] = None
    memory_attention: Optional[str] = None


def get_model_dir() -> str:
    """Return the model directory, respecting SAM_ONNX_MODEL_DIR."""
    env = os.environ.get(ENV_PREFIX + "MODEL_DIR")
    if env:
        return env
    return os.path.join(os.getcwd(), "checkpoints")


def _find_role(model_dir: str, bases: Tuple[str, ...], role: str,
               prefer_quantized: bool) -> Optional[str]:
    for base in bases:
        candidates = []
        if prefer_quantized:
            candidates.append(os.path.join(model_dir, f"{base}.int8.onnx"))
        candidates.append(os.path.join(model_dir, f"{base}.onnx"))
        for path in candidates:
            if os.path.exists(path):
                return path
    # e.g. sam2_hiera_tiny.encoder.onnx
    matches = sorted(p for p in glob.glob(os.path.join(model_dir, f"*.{role}.onnx")))
    return matches[0] if matches else None


def find_model_pair(model_dir: str, family: str) -> ModelFiles:
    """
    Locate the encoder/decoder pair of a model family inside ``model_dir``.

    An int8 encoder is preferred over the float one when both exist. For SAM2
    the memory encoder/attention graphs are returned when present.
    """
    if family not in _MODEL_FILES:
        raise InvalidArgumentError(
            f"Unknown model family '{family}'. Choose from: {list(MODEL_FAMILIES)}")
    if not os.path.isdir(model_dir):
        raise ModelLoadError(f"Model directory not found: {model_dir}")

    names = _MODEL_FILES[family]
    encoder = _find_role(model_dir, names["encoder"], "encoder", prefer_quantized=True)
    decoder = _find_role(model_dir, names["decoder"], "decoder", prefer_quantized=False)
    if encoder is None or decoder is None:
        raise ModelLoadError(
            f"ONNX encoder/decoder for '{family}' not found in {model_dir}")

    extra = {}
    for role in ("memory_encoder", "memory_attention"):
        if role in names:
            extra[role] = _find_role(model_dir, names[role], role, prefer_quantized=False)
    return ModelFiles(encoder=encoder, decoder=decoder, **extra)

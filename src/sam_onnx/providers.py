# sam-onnx/src/sam_onnx/providers.py
"""
Execution provider selection and ONNX Runtime session construction.

Provider choice is a runtime walk over an ordered list of probes, each a
(provider name, enable function) pair. A probe is only tried when ONNX Runtime
reports the provider as available; if its enable function raises, or the
session cannot be created on it, the failure is logged and the next probe is
tried. The first probe that yields a working session wins.
"""

from __future__ import annotations

import logging
import os
import sys
from dataclasses import dataclass, field
from typing import Callable, Dict, Iterable, Iterator, List, Optional, Sequence

import onnxruntime as ort
from onnxruntime import InferenceSession

from sam_onnx.config import SessionConfig
from sam_onnx.errors import BackendUnavailableError, ModelLoadError

logger = logging.getLogger(__name__)

CPU = "CPUExecutionProvider"

# GPU compute > neural accelerator > vendor inference runtime > portable CPU kernels
DESKTOP_ORDER = (
    "CUDAExecutionProvider",
    "DmlExecutionProvider",
    "CoreMLExecutionProvider",
    "OpenVINOExecutionProvider",
    "CANNExecutionProvider",
    "QNNExecutionProvider",
    CPU,
)

CONSTRAINED_ORDER = (
    "CoreMLExecutionProvider",
    "NnapiExecutionProvider",
    "QNNExecutionProvider",
    "XnnpackExecutionProvider",
    CPU,
)

_GRAPH_OPT = {
    "disable":  ort.GraphOptimizationLevel.ORT_DISABLE_ALL,
    "basic":    ort.GraphOptimizationLevel.ORT_ENABLE_BASIC,
    "extended": ort.GraphOptimizationLevel.ORT_ENABLE_EXTENDED,
    "all":      ort.GraphOptimizationLevel.ORT_ENABLE_ALL,
}

CONSTRAINED_MAX_THREADS = 2


def resolve_intra_op_threads(config: SessionConfig, cores: Optional[int] = None) -> int:
    """
    Explicit setting wins; otherwise leave one core free on desktops and stay
    at two threads on mobile to avoid thermal throttling.
    """
    if config.intra_op_num_threads:
        return config.intra_op_num_threads
    cores = cores or os.cpu_count() or 1
    if config.is_constrained:
        return max(1, min(cores, CONSTRAINED_MAX_THREADS))
    return max(1, cores - 1)


# ──────────────────────────────────────────────────────────────────────────────
# Probes
# ──────────────────────────────────────────────────────────────────────────────

def _no_options(config: SessionConfig) -> Dict[str, str]:
    return {}


def _device_options(config: SessionConfig) -> Dict[str, str]:
    if config.device_id < 0:
        raise ValueError(f"invalid device_id {config.device_id}")
    return {"device_id": str(config.device_id)}


def _qnn_options(config: SessionConfig) -> Dict[str, str]:
    backend = "QnnHtp.dll" if sys.platform.startswith("win") else "libQnnHtp.so"
    return {"backend_path": backend}


def _xnnpack_options(config: SessionConfig) -> Dict[str, str]:
    return {"intra_op_num_threads": str(resolve_intra_op_threads(config))}


_ENABLERS: Dict[str, Callable[[SessionConfig], Dict[str, str]]] = {
    "CUDAExecutionProvider": _device_options,
    "DmlExecutionProvider": _device_options,
    "QNNExecutionProvider": _qnn_options,
    "XnnpackExecutionProvider": _xnnpack_options,
}


@dataclass(frozen=True)
class ProviderProbe:
    name: str
    enable: Callable[[SessionConfig], Dict[str, str]] = _no_options


@dataclass(frozen=True)
class ProviderSelection:
    name: str
    options: Dict[str, str] = field(default_factory=dict)


def default_order(constrained: bool) -> Sequence[str]:
    return CONSTRAINED_ORDER if constrained else DESKTOP_ORDER


def probes_for(names: Iterable[str]) -> List[ProviderProbe]:
    return [ProviderProbe(n, _ENABLERS.get(n, _no_options)) for n in names]


def default_probes(config: SessionConfig) -> List[ProviderProbe]:
    """Preference chain: explicit config.providers, else the platform default."""
    return probes_for(config.providers or default_order(config.is_constrained))


def iter_candidates(available: Sequence[str],
                    probes: Sequence[ProviderProbe],
                    config: SessionConfig) -> Iterator[ProviderSelection]:
    """
    Yield, in chain order, every probe that is available and whose enable
    function succeeds. Enable failures are logged and skipped.
    """
    available = set(available)
    for probe in probes:
        if probe.name not in available:
            continue
        try:
            options = probe.enable(config)
        except Exception as exc:
            logger.warning("Could not enable %s (%s); trying next provider", probe.name, exc)
            continue
        yield ProviderSelection(probe.name, dict(options or {}))


def select_provider(available: Sequence[str],
                    probes: Sequence[ProviderProbe],
                    config: SessionConfig) -> ProviderSelection:
    """
    Return the first probe that is available and enables cleanly.
    Raises BackendUnavailableError when the chain is exhausted.
    """
    for sel in iter_candidates(available, probes, config):
        logger.info("Using %s execution provider", sel.name)
        return sel
    raise BackendUnavailableError(
        f"No usable execution provider (chain={[p.name for p in probes]}, "
        f"available={sorted(set(available))})")


# ──────────────────────────────────────────────────────────────────────────────
# ORT sessions
# ──────────────────────────────────────────────────────────────────────────────

def configure_session_options(config: SessionConfig, kind: str) -> ort.SessionOptions:
    """
    kind:
      - "encoder": configured graph opts (fast, tends to be safe)
      - anything else (decoder, memory_*): conservative, no risky fusions
    """
    so = ort.SessionOptions()
    level = (config.encoder_graph_optimization if kind == "encoder"
             else config.decoder_graph_optimization)
    so.graph_optimization_level = _GRAPH_OPT[level]
    so.intra_op_num_threads = resolve_intra_op_threads(config)
    so.inter_op_num_threads = config.inter_op_num_threads
    so.execution_mode = ort.ExecutionMode.ORT_SEQUENTIAL
    if kind != "encoder":
        # gemm+fast-gelu fusion mis-shapes the prompt MLPs; off outside the encoder
        so.add_session_config_entry("session.disable_gemm_fast_gelu_fusion", "1")
    if config.is_constrained:
        so.enable_cpu_mem_arena = False
    for key, value in config.session_config_entries.items():
        so.add_session_config_entry(key, value)
    return so


class SessionFactory:
    """
    Callable ``factory(path, kind) -> InferenceSession``.

    The first session walks the provider chain: each candidate is tried in
    turn and a failed ``InferenceSession`` construction moves on to the next.
    The provider that worked is remembered and reused for every later session,
    so encoder and decoder always share a backend.
    """

    def __init__(self, config: Optional[SessionConfig] = None,
                 probes: Optional[Sequence[ProviderProbe]] = None,
                 available: Optional[Sequence[str]] = None) -> None:
        self.config = config or SessionConfig()
        self._probes = probes
        self._available = available
        self._selection: Optional[ProviderSelection] = None

    @property
    def selection(self) -> Optional[ProviderSelection]:
        """Provider in use, or None before the first session is opened."""
        return self._selection

    def candidates(self) -> List[ProviderSelection]:
        available = (list(self._available) if self._available is not None
                     else ort.get_available_providers())
        logger.info("OS : %s", sys.platform)
        logger.info("ONNX Runtime providers (available) : %s", available)
        probes = self._probes if self._probes is not None else default_probes(self.config)
        found = list(iter_candidates(available, probes, self.config))
        if not found:
            raise BackendUnavailableError(
                f"No usable execution provider (chain={[p.name for p in probes]}, "
                f"available={sorted(available)})")
        return found

    def _open(self, path: str, kind: str, sel: ProviderSelection) -> InferenceSession:
        so = configure_session_options(self.config, kind)
        logger.info("Loading %s [%s] with providers=%s", os.path.basename(path), kind, [sel.name])
        return InferenceSession(path, sess_options=so,
                                providers=[sel.name], provider_options=[sel.options])

    def __call__(self, path: str, kind: str = "decoder") -> InferenceSession:
        if self._selection is not None:
            try:
                sess = self._open(path, kind, self._selection)
            except Exception as exc:
                raise ModelLoadError(f"Could not load {path}: {exc}") from exc
        else:
            sess = self._walk_chain(path, kind)
        logger.info("Inputs: %s", [(i.name, i.shape, i.type) for i in sess.get_inputs()])
        logger.info("Outputs: %s", [o.name for o in sess.get_outputs()])
        return sess

    def _walk_chain(self, path: str, kind: str) -> InferenceSession:
        failures = []
        last_exc: Optional[Exception] = None
        for sel in self.candidates():
            try:
                sess = self._open(path, kind, sel)
            except Exception as exc:
                logger.warning("Could not create session on %s (%s); trying next provider",
                               sel.name, exc)
                failures.append(sel.name)
                last_exc = exc
                continue
            logger.info("Using %s execution provider", sel.name)
            self._selection = sel
            return sess
        # the CPU provider ships with every build; failing there means the file is at fault
        if CPU in failures:
            raise ModelLoadError(f"Could not load {path}: {last_exc}") from last_exc
        raise BackendUnavailableError(
            f"No execution provider could open {path} (failed={failures})") from last_exc

import threading
import time
from collections import namedtuple

import numpy as np
import pytest

NodeArg = namedtuple("NodeArg", "name shape type")

MODEL_SIZE = 64
MASK_SIZE = 16
SCORES = np.array([[0.2, 0.9, 0.9]], np.float32)


class FakeSession:
    """Stands in for onnxruntime.InferenceSession; records every run() feed."""

    def __init__(self, inputs, outputs, compute):
        self._inputs = [NodeArg(n, list(s), t) for n, s, t in inputs]
        self._outputs = [NodeArg(n, None, "tensor(float)") for n in outputs]
        self._compute = compute
        self.calls = []

    def get_inputs(self):
        return list(self._inputs)

    def get_outputs(self):
        return list(self._outputs)

    def run(self, output_names, feed):
        self.calls.append(dict(feed))
        return self._compute(feed)


def _f(name, shape):
    return name, shape, "tensor(float)"


def _decoder_masks():
    masks = np.full((1, 3, MASK_SIZE, MASK_SIZE), -1.0, np.float32)
    masks[0, 1] = 2.0
    masks[0, 2, :, : MASK_SIZE // 2] = 1.0
    return masks


def mobile_sam_sessions():
    encoder = FakeSession(
        [_f("image", [1, 3, MODEL_SIZE, MODEL_SIZE])],
        ["image_embeddings"],
        lambda feed: [np.full((1, 256, 4, 4), 0.5, np.float32)],
    )
    decoder = FakeSession(
        [_f("image_embeddings", [1, 256, 4, 4]),
         _f("point_coords", [1, "P", 2]),
         _f("point_labels", [1, "P"]),
         _f("mask_input", [1, 1, 256, 256]),
         _f("has_mask_input", [1])],
        ["masks", "iou_predictions", "low_res_masks"],
        lambda feed: [_decoder_masks(), SCORES.copy(),
                      np.zeros((1, 3, MASK_SIZE, MASK_SIZE), np.float32)],
    )
    return {"encoder": encoder, "decoder": decoder}


def sam2_sessions():
    encoder = FakeSession(
        [_f("image", [1, 3, MODEL_SIZE, MODEL_SIZE])],
        ["high_res_feats_0", "high_res_feats_1", "image_embed", "vision_pos_embed"],
        lambda feed: [np.zeros((1, 32, 16, 16), np.float32),
                      np.zeros((1, 64, 8, 8), np.float32),
                      np.full((1, 256, 4, 4), 0.5, np.float32),
                      np.zeros((16, 1, 256), np.float32)],
    )
    decoder = FakeSession(
        [_f("image_embed", [1, 256, 4, 4]),
         _f("high_res_feats_0", [1, 32, 16, 16]),
         _f("high_res_feats_1", [1, 64, 8, 8]),
         _f("point_coords", [1, "P", 2]),
         _f("point_labels", [1, "P"]),
         _f("mask_input", [1, 1, 256, 256]),
         _f("has_mask_input", [1])],
        ["obj_ptr", "mask_for_mem", "pred_mask", "iou_predictions"],
        lambda feed: [np.zeros((1, 256), np.float32),
                      np.zeros((1, 1, MODEL_SIZE, MODEL_SIZE), np.float32),
                      _decoder_masks(), SCORES.copy()],
    )
    memory_encoder = FakeSession(
        [_f("mask_for_mem", [1, 1, MODEL_SIZE, MODEL_SIZE]),
         _f("pix_feat", [1, 256, 4, 4])],
        ["maskmem_features", "maskmem_pos_enc", "temporal_code"],
        lambda feed: [np.ones((1, 4, 2, 2), np.float32),
                      np.ones((4, 1, 4), np.float32),
                      np.zeros((7, 1, 1, 64), np.float32)],
    )
    memory_attention = FakeSession(
        [_f("current_vision_feat", [1, 256, 4, 4]),
         _f("current_vision_pos_embed", [16, 1, 256]),
         _f("memory_0", ["N", 256]),
         _f("memory_1", ["M", 4, 2, 2]),
         _f("memory_pos_embed", ["K", 1, 4])],
        ["image_embed"],
        lambda feed: [np.full_like(feed["current_vision_feat"], 7.0)],
    )
    return {"encoder": encoder, "decoder": decoder,
            "memory_encoder": memory_encoder, "memory_attention": memory_attention}


def sam2_exported_sessions():
    """SAM2 pair named the way the torch export writes it: no scores, one mask."""
    sessions = sam2_sessions()
    sessions["encoder"] = FakeSession(
        [_f("input", [1, 3, MODEL_SIZE, MODEL_SIZE])],
        ["image_embeddings", "high_res_features1", "high_res_features2",
         "current_vision_feat", "vision_pos_embed"],
        lambda feed: [np.full((1, 256, 4, 4), 0.5, np.float32),
                      np.zeros((1, 32, 16, 16), np.float32),
                      np.zeros((1, 64, 8, 8), np.float32),
                      np.full((1, 256, 4, 4), 0.5, np.float32),
                      np.zeros((16, 1, 256), np.float32)],
    )
    sessions["decoder"] = FakeSession(
        [_f("point_coords", [1, "P", 2]),
         _f("point_labels", [1, "P"]),
         _f("image_embed", [1, 256, 4, 4]),
         _f("high_res_feats_0", [1, 32, 16, 16]),
         _f("high_res_feats_1", [1, 64, 8, 8])],
        ["obj_ptr", "mask_for_mem", "pred_mask"],
        lambda feed: [np.zeros((1, 256), np.float32),
                      np.full((1, 1, MODEL_SIZE, MODEL_SIZE), 0.25, np.float32),
                      np.full((1, 1, MASK_SIZE, MASK_SIZE), 2.0, np.float32)],
    )
    return sessions


def factory_for(sessions):
    opened = []

    def factory(path, kind):
        opened.append((path, kind))
        return sessions[kind]

    factory.opened = opened
    return factory


class ConcurrencyProbe:
    """Wraps run() of several sessions and records the peak overlap."""

    def __init__(self, delay=0.01):
        self.delay = delay
        self.active = 0
        self.peak = 0
        self._lock = threading.Lock()

    def wrap(self, session):
        run = session.run

        def guarded(output_names, feed):
            with self._lock:
                self.active += 1
                self.peak = max(self.peak, self.active)
            try:
                time.sleep(self.delay)
                return run(output_names, feed)
            finally:
                with self._lock:
                    self.active -= 1

        session.run = guarded
        return session


@pytest.fixture
def model_paths(tmp_path):
    paths = {}
    for role in ("encoder", "decoder", "memory_encoder", "memory_attention"):
        path = tmp_path / f"{role}.onnx"
        path.write_bytes(b"stub")
        paths[role] = str(path)
    return paths


@pytest.fixture
def mobile_sessions():
    return mobile_sam_sessions()


@pytest.fixture
def sam2_sess():
    return sam2_sessions()


@pytest.fixture
def sam2_exported():
    return sam2_exported_sessions()


@pytest.fixture
def fake_session():
    return FakeSession


@pytest.fixture
def make_factory():
    return factory_for


@pytest.fixture
def concurrency_probe():
    return ConcurrencyProbe()


@pytest.fixture
def rgb_image():
    rng = np.random.default_rng(0)
    return rng.integers(0, 256, size=(80, 100, 3), dtype=np.uint8)

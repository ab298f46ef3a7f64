import threading

import numpy as np
import pytest

from sam_onnx import SAM2, MobileSAM, SessionConfig, load_model
from sam_onnx.errors import (
    InvalidArgumentError,
    ModelClosedError,
    ModelLoadError,
    SegmentationError,
)


def _mobile(model_paths, sessions, make_factory):
    return MobileSAM(model_paths["encoder"], model_paths["decoder"],
                     session_factory=make_factory(sessions))


def _sam2(model_paths, sessions, make_factory, memory=True):
    kwargs = {}
    if memory:
        kwargs = dict(memory_encoder_path=model_paths["memory_encoder"],
                      memory_attention_path=model_paths["memory_attention"])
    return SAM2(model_paths["encoder"], model_paths["decoder"],
                session_factory=make_factory(sessions), **kwargs)


def test_segment_returns_scaled_result(model_paths, mobile_sessions, make_factory, rgb_image):
    model = _mobile(model_paths, mobile_sessions, make_factory)
    assert model.model_hw == (64, 64)

    result = model.segment(rgb_image, [(50, 40)], [1])

    assert len(result) == 3
    assert result.width == 100 and result.height == 80
    assert result.frame_index == 0
    assert result.best_index == 1
    assert result.best_score == pytest.approx(0.9)

    enc_feed = mobile_sessions["encoder"].calls[0]
    assert enc_feed["image"].shape == (1, 3, 64, 64)
    assert enc_feed["image"].dtype == np.float32

    feed = mobile_sessions["decoder"].calls[0]
    np.testing.assert_allclose(feed["point_coords"], [[[32.0, 32.0]]])
    np.testing.assert_array_equal(feed["point_labels"], [[1.0]])
    assert feed["mask_input"].shape == (1, 1, 256, 256)
    assert not feed["mask_input"].any()
    np.testing.assert_array_equal(feed["has_mask_input"], [0.0])


def test_box_corners_follow_points(model_paths, mobile_sessions, make_factory, rgb_image):
    model = _mobile(model_paths, mobile_sessions, make_factory)
    model.segment(rgb_image, [(10, 10)], [0], box=(0, 0, 100, 80))

    feed = mobile_sessions["decoder"].calls[0]
    np.testing.assert_array_equal(feed["point_labels"], [[0.0, 2.0, 3.0]])
    np.testing.assert_allclose(feed["point_coords"][0, 1:], [[0.0, 0.0], [64.0, 64.0]])


def test_length_mismatch_makes_no_engine_call(model_paths, mobile_sessions, make_factory,
                                              rgb_image):
    model = _mobile(model_paths, mobile_sessions, make_factory)
    with pytest.raises(InvalidArgumentError):
        model.segment(rgb_image, [(1, 2), (3, 4)], [1])
    assert mobile_sessions["encoder"].calls == []
    assert mobile_sessions["decoder"].calls == []


@pytest.mark.parametrize("image", [None, np.zeros((10, 10), np.uint8),
                                   np.zeros((10, 10, 3), np.float32),
                                   np.zeros((0, 10, 3), np.uint8)])
def test_invalid_image_makes_no_engine_call(model_paths, mobile_sessions, make_factory, image):
    model = _mobile(model_paths, mobile_sessions, make_factory)
    with pytest.raises(InvalidArgumentError):
        model.segment(image, [(1, 2)], [1])
    assert mobile_sessions["encoder"].calls == []


def test_missing_model_file(tmp_path, mobile_sessions, make_factory):
    factory = make_factory(mobile_sessions)
    with pytest.raises(ModelLoadError):
        MobileSAM(str(tmp_path / "nope.onnx"), str(tmp_path / "nope2.onnx"),
                  session_factory=factory)
    assert factory.opened == []


def test_contract_mismatch_is_load_error(model_paths, mobile_sessions, make_factory,
                                         fake_session):
    mobile_sessions["decoder"] = fake_session(
        [("image_embeddings", [1, 256, 4, 4], "tensor(float)"),
         ("point_coords", [1, "P", 2], "tensor(float)")],
        ["masks", "iou_predictions"],
        lambda feed: [],
    )
    with pytest.raises(ModelLoadError, match="point_labels"):
        _mobile(model_paths, mobile_sessions, make_factory)


def test_factory_failure_is_wrapped(model_paths):
    def factory(path, kind):
        raise RuntimeError("protobuf parsing failed")

    with pytest.raises(ModelLoadError) as info:
        MobileSAM(model_paths["encoder"], model_paths["decoder"], session_factory=factory)
    assert isinstance(info.value.__cause__, RuntimeError)


def test_run_failure_propagates_unchanged(model_paths, mobile_sessions, make_factory, rgb_image):
    def boom(feed):
        raise RuntimeError("engine failure")

    mobile_sessions["decoder"]._compute = boom
    model = _mobile(model_paths, mobile_sessions, make_factory)
    with pytest.raises(RuntimeError, match="engine failure") as info:
        model.segment(rgb_image, [(1, 2)], [1])
    assert not isinstance(info.value, SegmentationError)
    assert len(mobile_sessions["decoder"].calls) == 1


def test_close_is_idempotent(model_paths, mobile_sessions, make_factory, rgb_image):
    model = _mobile(model_paths, mobile_sessions, make_factory)
    assert model.state == "ready"
    model.close()
    model.close()
    assert model.state == "closed"
    assert model.closed
    with pytest.raises(ModelClosedError):
        model.segment(rgb_image, [(1, 2)], [1])


def test_context_manager_closes(model_paths, mobile_sessions, make_factory, rgb_image):
    with _mobile(model_paths, mobile_sessions, make_factory) as model:
        model.segment(rgb_image, [(1, 2)], [1])
    assert model.closed


def test_encode_once_decode_twice(model_paths, mobile_sessions, make_factory, rgb_image):
    model = _mobile(model_paths, mobile_sessions, make_factory)
    outputs = model.encode_image(rgb_image)
    assert outputs.image_hw == (80, 100)

    first = model.decode(outputs, [(10, 10)], [1])
    second = model.decode(outputs, [(20, 20)], [1], frame_index=3)

    assert len(mobile_sessions["encoder"].calls) == 1
    assert len(mobile_sessions["decoder"].calls) == 2
    assert first.frame_index == 0
    assert second.frame_index == 3


def test_overlapping_calls_are_serialised(model_paths, mobile_sessions, make_factory,
                                          concurrency_probe, rgb_image):
    for sess in mobile_sessions.values():
        concurrency_probe.wrap(sess)
    model = _mobile(model_paths, mobile_sessions, make_factory)

    errors = []

    def worker():
        try:
            model.segment(rgb_image, [(5, 5)], [1])
        except Exception as exc:
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert concurrency_probe.peak == 1
    assert len(mobile_sessions["decoder"].calls) == 4


def test_sam2_segment_is_stateless(model_paths, sam2_sess, make_factory, rgb_image):
    model = _sam2(model_paths, sam2_sess, make_factory)
    result = model.segment(rgb_image, [(50, 40)], [1])
    model.segment(rgb_image, [(50, 40)], [1])

    assert result.best_index == 1
    assert sam2_sess["memory_encoder"].calls == []
    assert sam2_sess["memory_attention"].calls == []
    assert model.memory.object_ids == []

    feed = sam2_sess["decoder"].calls[1]
    assert set(feed) == {"image_embed", "high_res_feats_0", "high_res_feats_1",
                         "point_coords", "point_labels", "mask_input", "has_mask_input"}
    np.testing.assert_array_equal(feed["has_mask_input"], [0.0])


def test_sam2_frames_use_memory(model_paths, sam2_sess, make_factory, rgb_image):
    model = _sam2(model_paths, sam2_sess, make_factory)

    r0 = model.segment_frame(rgb_image, [(50, 40)], [1], frame_index=0)
    assert r0.frame_index == 0
    assert sam2_sess["memory_attention"].calls == []
    assert len(sam2_sess["memory_encoder"].calls) == 1
    mem_feed = sam2_sess["memory_encoder"].calls[0]
    assert mem_feed["mask_for_mem"].shape == (1, 1, 64, 64)
    assert mem_feed["pix_feat"].shape == (1, 256, 4, 4)

    r1 = model.segment_frame(rgb_image, [], [], frame_index=1)
    assert r1.frame_index == 1
    attn_feed = sam2_sess["memory_attention"].calls[0]
    assert attn_feed["memory_1"].shape == (1, 4, 2, 2)
    assert attn_feed["memory_pos_embed"].shape == (4, 1, 4)
    assert attn_feed["memory_0"].shape == (0, 256)

    dec_feed = sam2_sess["decoder"].calls[1]
    assert np.all(dec_feed["image_embed"] == 7.0)
    np.testing.assert_array_equal(dec_feed["has_mask_input"], [1.0])
    assert dec_feed["point_coords"].shape == (1, 0, 2)

    model.segment_frame(rgb_image, [], [], frame_index=2)
    attn_feed = sam2_sess["memory_attention"].calls[1]
    assert attn_feed["memory_1"].shape == (2, 4, 2, 2)
    assert attn_feed["memory_pos_embed"].shape == (8, 1, 4)


def test_sam2_objects_have_separate_memory(model_paths, sam2_sess, make_factory, rgb_image):
    model = _sam2(model_paths, sam2_sess, make_factory)
    model.segment_frame(rgb_image, [(5, 5)], [1], frame_index=0, obj_id=1)
    model.segment_frame(rgb_image, [(5, 5)], [1], frame_index=0, obj_id=2)

    assert model.memory.object_ids == [1, 2]
    assert sam2_sess["memory_attention"].calls == []


def test_clear_memory_cache(model_paths, sam2_sess, make_factory, rgb_image):
    model = _sam2(model_paths, sam2_sess, make_factory)
    model.segment_frame(rgb_image, [(5, 5)], [1], frame_index=0)
    model.clear_memory_cache()
    assert model.memory.object_ids == []

    model.segment_frame(rgb_image, [], [], frame_index=1)
    assert sam2_sess["memory_attention"].calls == []
    np.testing.assert_array_equal(sam2_sess["decoder"].calls[-1]["has_mask_input"], [0.0])


def test_sam2_without_memory_graphs(model_paths, sam2_sess, make_factory, rgb_image):
    model = _sam2(model_paths, sam2_sess, make_factory, memory=False)
    model.segment_frame(rgb_image, [(5, 5)], [1], frame_index=0)
    result = model.segment_frame(rgb_image, [], [], frame_index=1)

    assert result.frame_index == 1
    np.testing.assert_array_equal(sam2_sess["decoder"].calls[-1]["has_mask_input"], [1.0])


def test_sam2_negative_frame_index(model_paths, sam2_sess, make_factory, rgb_image):
    model = _sam2(model_paths, sam2_sess, make_factory)
    with pytest.raises(InvalidArgumentError):
        model.segment_frame(rgb_image, [(5, 5)], [1], frame_index=-1)
    assert sam2_sess["encoder"].calls == []


def test_decode_negative_frame_index(model_paths, sam2_sess, make_factory, rgb_image):
    model = _sam2(model_paths, sam2_sess, make_factory)
    outputs = model.encode_image(rgb_image)
    with pytest.raises(InvalidArgumentError):
        model.decode(outputs, [(5, 5)], [1], frame_index=-2)
    assert sam2_sess["decoder"].calls == []


def test_sam2_exported_graph_names(model_paths, sam2_exported, make_factory, rgb_image):
    model = _sam2(model_paths, sam2_exported, make_factory)
    assert model.binding.encoder_input == "input"
    assert model.binding.encoder_outputs["image_embed"] == "image_embeddings"
    assert model.binding.encoder_outputs["high_res_feats_0"] == "high_res_features1"
    assert not model.binding.has_decoder_output("scores")
    assert model.binding.decoder_outputs["masks"] == "pred_mask"

    result = model.segment_frame(rgb_image, [(50, 40)], [1], frame_index=0)
    assert len(result) == 1
    assert result.best_index == 0
    np.testing.assert_array_equal(result.scores, [1.0])
    assert result.binary_mask().all()

    # the decoder's own mask_for_mem goes to the memory encoder as is
    mem_feed = sam2_exported["memory_encoder"].calls[0]
    np.testing.assert_array_equal(mem_feed["mask_for_mem"],
                                  np.full((1, 1, 64, 64), 0.25, np.float32))

    model.segment_frame(rgb_image, [], [], frame_index=1)
    assert len(sam2_exported["memory_attention"].calls) == 1
    assert "mask_input" not in sam2_exported["decoder"].calls[1]


def test_sam2_attention_needs_pos_embed(model_paths, sam2_sess, make_factory, fake_session):
    sam2_sess["encoder"] = fake_session(
        [("image", [1, 3, 64, 64], "tensor(float)")],
        ["image_embed", "high_res_feats_0", "high_res_feats_1"],
        lambda feed: [],
    )
    with pytest.raises(ModelLoadError, match="vision_pos_embed"):
        _sam2(model_paths, sam2_sess, make_factory)


def test_sam2_close_drops_memory(model_paths, sam2_sess, make_factory, rgb_image):
    model = _sam2(model_paths, sam2_sess, make_factory)
    model.segment_frame(rgb_image, [(5, 5)], [1], frame_index=0)
    model.close()
    assert model.memory.object_ids == []
    with pytest.raises(ModelClosedError):
        model.segment_frame(rgb_image, [(5, 5)], [1], frame_index=1)


def test_from_directory(tmp_path, sam2_sess, make_factory):
    for name in ("image_encoder", "image_decoder", "memory_encoder", "memory_attention"):
        (tmp_path / f"{name}.onnx").write_bytes(b"stub")
    factory = make_factory(sam2_sess)

    model = SAM2.from_directory(str(tmp_path), session_factory=factory)

    kinds = [kind for _, kind in factory.opened]
    assert kinds == ["encoder", "decoder", "memory_encoder", "memory_attention"]
    assert model.encoder_path.endswith("image_encoder.onnx")


def test_load_model(model_paths, mobile_sessions, make_factory):
    model = load_model("mobile_sam", model_paths["encoder"], model_paths["decoder"],
                       session_factory=make_factory(mobile_sessions),
                       config=SessionConfig(image_size=512))
    assert isinstance(model, MobileSAM)
    assert model.model_hw == (64, 64)

    with pytest.raises(InvalidArgumentError):
        load_model("sam3", model_paths["encoder"], model_paths["decoder"])

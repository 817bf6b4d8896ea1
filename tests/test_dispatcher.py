"""Tests for buffer validation, tensor layout, YOLO decoding and the dispatcher."""

from __future__ import annotations

import cv2
import numpy as np
import pytest

from cropwatch.config import InferenceConfig
from cropwatch.errors import FrameDecodeError, InferenceError, ModelLoadError
from cropwatch.processing.detector import OnnxDetector, decode_output
from cropwatch.processing import dispatcher as dispatcher_module
from cropwatch.processing.dispatcher import DetectionDispatcher
from cropwatch.processing.preprocessor import frame_to_bgr, to_input_tensor
from cropwatch.recording.models import BoundingBox, Frame
from tests.conftest import FakeEngine, make_detection, make_frame


class TestFrameToBgr:
    def test_rgb_is_converted_to_bgr(self):
        image = frame_to_bgr(make_frame(width=8, height=4, color=(255, 0, 0)))
        assert image.shape == (4, 8, 3)
        assert tuple(image[0, 0]) == (0, 0, 255)

    def test_padded_rows_are_stripped(self):
        """5 px RGB rows are 15 bytes, padded to a 16-byte stride."""
        width, height, stride = 5, 3, 16
        rows = np.zeros((height, stride), dtype=np.uint8)
        rows[:, :15] = 10
        rows[:, 15] = 99  # padding byte
        frame = Frame(0, width, height, "RGB", rows.tobytes(), stride=stride)

        image = frame_to_bgr(frame)
        assert image.shape == (3, 5, 3)
        assert np.all(image == 10)

    def test_gray_frame(self):
        frame = Frame(0, 4, 2, "GRAY8", bytes([7] * 8))
        image = frame_to_bgr(frame)
        assert image.shape == (2, 4, 3)
        assert np.all(image == 7)

    def test_short_buffer_rejected(self):
        frame = Frame(3, 10, 10, "RGB", b"\x00" * 299)
        with pytest.raises(FrameDecodeError, match="frame 3"):
            frame_to_bgr(frame)

    def test_unknown_format_rejected(self):
        frame = Frame(0, 2, 2, "NV12", b"\x00" * 6)
        with pytest.raises(FrameDecodeError, match="unsupported pixel format"):
            frame_to_bgr(frame)

    def test_zero_size_rejected(self):
        with pytest.raises(FrameDecodeError):
            frame_to_bgr(Frame(0, 0, 10, "RGB", b""))


class TestInputTensor:
    def test_shape_and_channel_order(self):
        """A pure red BGR image lands in channel 0 (R) of the RGB tensor."""
        image = np.zeros((100, 50, 3), dtype=np.uint8)
        image[:, :, 2] = 255  # red in BGR
        tensor = to_input_tensor(image, 64)

        assert tensor.shape == (1, 3, 64, 64)
        assert tensor.dtype == np.float32
        assert tensor[0, 0].mean() == pytest.approx(1.0)
        assert tensor[0, 1].max() == pytest.approx(0.0)
        assert tensor[0, 2].max() == pytest.approx(0.0)


def make_head(candidates: list[tuple[float, float, float, float, int, float]],
              num_classes: int = 3, width: int = 8) -> np.ndarray:
    """Build a (1, 4 + C, N) head; unused columns stay at zero score."""
    head = np.zeros((1, 4 + num_classes, width), dtype=np.float32)
    for i, (cx, cy, w, h, cls, score) in enumerate(candidates):
        head[0, :4, i] = (cx, cy, w, h)
        head[0, 4 + cls, i] = score
    return head


class TestDecodeOutput:
    def test_scales_boxes_and_maps_labels(self):
        head = make_head([(32, 32, 16, 16, 1, 0.9)])
        dets = decode_output(head, ["person", "cat", "dog"], frame_size=(128, 64),
                             input_size=64, conf_threshold=0.25, nms_threshold=0.45)
        assert len(dets) == 1
        det = dets[0]
        assert det.label == "cat"
        assert det.confidence == pytest.approx(0.9)
        # x scaled by 2, y by 1
        assert det.bounding_box == BoundingBox(48, 24, 80, 40)

    def test_low_confidence_dropped(self):
        head = make_head([(32, 32, 16, 16, 0, 0.1)])
        assert decode_output(head, ["a", "b", "c"], (64, 64), 64, 0.25, 0.45) == []

    def test_overlapping_same_class_suppressed(self):
        head = make_head([
            (32, 32, 20, 20, 2, 0.8),
            (33, 33, 20, 20, 2, 0.7),
            (10, 10, 6, 6, 0, 0.6),
        ])
        dets = decode_output(head, ["a", "b", "c"], (64, 64), 64, 0.25, 0.45)
        assert [d.label for d in dets] == ["c", "a"]

    def test_bad_shape_is_inference_error(self):
        with pytest.raises(InferenceError):
            decode_output(np.zeros((1, 3, 5), dtype=np.float32), ["a"],
                          (64, 64), 64, 0.25, 0.45)


class TestModelLoad:
    def test_missing_model_file(self, tmp_path):
        config = InferenceConfig(model_path=str(tmp_path / "missing.onnx"))
        with pytest.raises(ModelLoadError, match="not found"):
            OnnxDetector.load(config)

    def test_corrupt_model_file(self, tmp_path):
        bad = tmp_path / "bad.onnx"
        bad.write_bytes(b"not a model")
        with pytest.raises(ModelLoadError):
            OnnxDetector.load(InferenceConfig(model_path=str(bad)))


class TestDetectionDispatcher:
    def test_returns_detections_and_timing(self):
        engine = FakeEngine([[make_detection()]], input_size=32)
        dispatcher = DetectionDispatcher(engine)
        image = np.zeros((100, 100, 3), dtype=np.uint8)

        result = dispatcher.dispatch(0, image)

        assert [d.label for d in result.detections] == ["cat"]
        assert result.elapsed >= 0.0
        assert engine.calls == [((1, 3, 32, 32), (100, 100))]

    def test_boxes_clamped_to_frame(self):
        engine = FakeEngine([[make_detection(box=(5, 5, 120, 50))]])
        result = DetectionDispatcher(engine).dispatch(
            0, np.zeros((100, 100, 3), dtype=np.uint8))

        box = result.detections[0].bounding_box
        assert box == BoundingBox(5, 5, 100, 50)

    def test_boxes_outside_frame_dropped(self):
        engine = FakeEngine([[make_detection(box=(150, 150, 200, 200)),
                              make_detection(label="dog")]])
        result = DetectionDispatcher(engine).dispatch(
            0, np.zeros((100, 100, 3), dtype=np.uint8))
        assert [d.label for d in result.detections] == ["dog"]

    def test_engine_failure_is_inference_error(self):
        engine = FakeEngine([RuntimeError("cuda went away")])
        with pytest.raises(InferenceError, match="cuda went away"):
            DetectionDispatcher(engine).dispatch(
                7, np.zeros((10, 10, 3), dtype=np.uint8))

    def test_tensor_failure_is_inference_error(self, monkeypatch):
        def broken_blob(image, input_size):
            raise cv2.error("blobFromImage: unsupported depth")

        monkeypatch.setattr(dispatcher_module, "to_input_tensor", broken_blob)
        engine = FakeEngine()

        with pytest.raises(InferenceError, match="frame 4: .*unsupported depth"):
            DetectionDispatcher(engine).dispatch(
                4, np.zeros((10, 10, 3), dtype=np.uint8))
        assert engine.calls == []

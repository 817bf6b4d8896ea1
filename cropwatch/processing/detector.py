"""ONNX YOLO detector run through OpenCV's DNN module."""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Sequence

import cv2
import numpy as np

from cropwatch.config import InferenceConfig
from cropwatch.errors import InferenceError, ModelLoadError
from cropwatch.recording.models import BoundingBox, Detection

logger = logging.getLogger(__name__)


def decode_output(output: np.ndarray, labels: Sequence[str],
                  frame_size: tuple[int, int], input_size: int,
                  conf_threshold: float, nms_threshold: float) -> list[Detection]:
    """Decode a YOLOv8/v11 head of shape (1, 4 + C, N) into frame-space detections.

    Each of the N columns is (cx, cy, w, h, score_0 .. score_{C-1}) in
    input-tensor pixels. Boxes are scaled back to frame_size = (width, height).
    """
    preds = np.squeeze(output, axis=0).T           # (N, 4 + C)
    if preds.ndim != 2 or preds.shape[1] < 5:
        raise InferenceError(f"unexpected model output shape {output.shape}")

    scores = preds[:, 4:]
    class_ids = np.argmax(scores, axis=1)
    confidences = scores[np.arange(len(scores)), class_ids]

    keep = confidences >= conf_threshold
    if not np.any(keep):
        return []
    preds, class_ids, confidences = preds[keep], class_ids[keep], confidences[keep]

    width, height = frame_size
    sx = width / float(input_size)
    sy = height / float(input_size)

    cx, cy, w, h = preds[:, 0], preds[:, 1], preds[:, 2], preds[:, 3]
    boxes = np.stack([(cx - w / 2) * sx, (cy - h / 2) * sy, w * sx, h * sy], axis=1)

    indices = cv2.dnn.NMSBoxesBatched(
        boxes.tolist(), confidences.tolist(), class_ids.tolist(),
        conf_threshold, nms_threshold,
    )

    detections = []
    for i in np.array(indices).flatten():
        x, y, bw, bh = boxes[i]
        class_id = int(class_ids[i])
        label = labels[class_id] if class_id < len(labels) else str(class_id)
        detections.append(Detection(
            label=label,
            confidence=float(confidences[i]),
            bounding_box=BoundingBox(
                int(round(x)), int(round(y)),
                int(round(x + bw)), int(round(y + bh)),
            ),
        ))

    detections.sort(key=lambda d: d.confidence, reverse=True)
    return detections


class OnnxDetector:
    """Loads a YOLO ONNX model once and runs it on prepared input tensors.

    The network is created before streaming starts and only read afterwards.
    """

    def __init__(self, net: cv2.dnn.Net, config: InferenceConfig):
        self._net = net
        self._cfg = config

    @classmethod
    def load(cls, config: InferenceConfig) -> OnnxDetector:
        """Read the weights from config.model_path.

        Raises ModelLoadError if the file is missing or OpenCV rejects it.
        """
        path = Path(config.model_path)
        if not path.is_file():
            raise ModelLoadError(f"model file not found: {path}")
        try:
            net = cv2.dnn.readNetFromONNX(str(path))
        except cv2.error as exc:
            raise ModelLoadError(f"failed to load model {path}: {exc}") from exc
        if net.empty():
            raise ModelLoadError(f"model {path} loaded empty")
        logger.info("Loaded detection model: %s", path)
        return cls(net, config)

    @property
    def input_size(self) -> int:
        return self._cfg.input_size

    def detect(self, tensor: np.ndarray,
               frame_size: tuple[int, int]) -> list[Detection]:
        """Run one forward pass. Raises InferenceError on any engine failure."""
        try:
            self._net.setInput(tensor)
            output = self._net.forward()
        except cv2.error as exc:
            raise InferenceError(f"forward pass failed: {exc}") from exc

        return decode_output(
            output,
            labels=self._cfg.labels,
            frame_size=frame_size,
            input_size=self._cfg.input_size,
            conf_threshold=self._cfg.confidence_threshold,
            nms_threshold=self._cfg.nms_threshold,
        )

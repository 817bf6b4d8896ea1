"""Hands admitted frames to the detection engine and sanitizes the result."""

from __future__ import annotations

import logging
import time
from typing import Protocol

import numpy as np

from cropwatch.errors import InferenceError
from cropwatch.processing.preprocessor import to_input_tensor
from cropwatch.recording.models import Detection, DispatchResult

logger = logging.getLogger(__name__)


class DetectionEngine(Protocol):
    """Anything that turns an input tensor into frame-space detections."""

    @property
    def input_size(self) -> int: ...

    def detect(self, tensor: np.ndarray,
               frame_size: tuple[int, int]) -> list[Detection]: ...


class DetectionDispatcher:
    """Builds the input tensor, runs inference synchronously, clamps the boxes."""

    def __init__(self, engine: DetectionEngine):
        self._engine = engine

    def dispatch(self, sequence: int, image: np.ndarray) -> DispatchResult:
        """Detect objects in a BGR image taken from frame `sequence`.

        Blocks for the full inference call. Raises InferenceError if the
        tensor cannot be built or the engine fails.
        """
        height, width = image.shape[:2]
        logger.info("Inferring frame %d", sequence)
        start = time.perf_counter()

        try:
            tensor = to_input_tensor(image, self._engine.input_size)
            raw = self._engine.detect(tensor, (width, height))
        except InferenceError:
            raise
        except Exception as exc:
            raise InferenceError(f"frame {sequence}: {exc}") from exc

        detections = []
        for det in raw:
            box = det.bounding_box.clamped(width, height)
            if box is None:
                logger.debug("Dropping %s box outside frame %d: %s",
                             det.label, sequence, det.bounding_box)
                continue
            if box != det.bounding_box:
                det = Detection(det.label, det.confidence, box)
            detections.append(det)

        elapsed = time.perf_counter() - start
        logger.info("Found %d entities, elapsed: %.1f ms",
                    len(detections), elapsed * 1000.0)
        return DispatchResult(detections=detections, elapsed=elapsed)

"""Per-detection crop export: one encoded image file per detected object."""

from __future__ import annotations

import logging
import os
from pathlib import Path

import cv2
import numpy as np

from cropwatch.config import ExportConfig
from cropwatch.errors import ExportIOError
from cropwatch.recording.models import Detection, ExportReport

logger = logging.getLogger(__name__)


def crop_filename(sequence: int, label: str, confidence: float, ext: str) -> str:
    """frame-{sequence}-{label}-{confidence:.2f}.{ext}, with a filesystem-safe label."""
    safe_label = label.replace(os.sep, "_").replace("/", "_")
    return f"frame-{sequence}-{safe_label}-{confidence:.2f}.{ext}"


class CropWriter:
    """Writes the clamped crop of every detection in a frame to the output directory."""

    def __init__(self, config: ExportConfig):
        self._output_dir = Path(config.output_dir)
        self._output_dir.mkdir(parents=True, exist_ok=True)
        self._ext = config.image_format.lstrip(".").lower()
        self._suffix_collisions = config.on_collision == "suffix"

    @property
    def output_dir(self) -> Path:
        return self._output_dir

    def export(self, sequence: int, image: np.ndarray,
               detections: list[Detection]) -> ExportReport:
        """Persist one crop per detection.

        A failure on one detection is recorded in the report and does not
        stop the remaining ones.
        """
        report = ExportReport()
        height, width = image.shape[:2]
        used: set[str] = set()

        for det in detections:
            name = crop_filename(sequence, det.label, det.confidence, self._ext)
            if self._suffix_collisions:
                name = self._disambiguate(name, used)
            used.add(name)
            path = self._output_dir / name

            try:
                box = det.bounding_box.clamped(width, height)
                if box is None:
                    raise ExportIOError(str(path), f"box {det.bounding_box} outside frame")
                crop = image[box.y1:box.y2, box.x1:box.x2]
                self._write(path, crop)
            except ExportIOError as exc:
                logger.warning("Skipping crop: %s", exc)
                report.failed.append((det, exc))
                continue

            logger.debug("Saved crop: %s (%dx%d)", path, box.width, box.height)
            report.written.append(path)

        return report

    def _write(self, path: Path, crop: np.ndarray) -> None:
        try:
            ok, encoded = cv2.imencode(f".{self._ext}", crop)
        except cv2.error as exc:
            raise ExportIOError(str(path), str(exc)) from exc
        if not ok:
            raise ExportIOError(str(path), f"encoder rejected .{self._ext}")
        try:
            path.write_bytes(encoded.tobytes())
        except OSError as exc:
            raise ExportIOError(str(path), str(exc)) from exc

    @staticmethod
    def _disambiguate(name: str, used: set[str]) -> str:
        if name not in used:
            return name
        stem, dot, ext = name.rpartition(".")
        n = 1
        while f"{stem}-{n}{dot}{ext}" in used:
            n += 1
        return f"{stem}-{n}{dot}{ext}"

"""Shared data models for the detection pipeline."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Optional


class PipelineState(str, Enum):
    IDLE = "idle"
    READY = "ready"
    PLAYING = "playing"
    STOPPED = "stopped"
    FAILED = "failed"


# Bytes per pixel for the raw formats the appsink may negotiate
PIXEL_CHANNELS = {
    "RGB": 3,
    "BGR": 3,
    "RGBA": 4,
    "BGRA": 4,
    "RGBx": 4,
    "BGRx": 4,
    "GRAY8": 1,
}


@dataclass(frozen=True)
class Frame:
    """One decoded video frame as delivered by the media framework."""
    sequence: int
    width: int
    height: int
    pixel_format: str
    pixel_data: bytes
    stride: int = 0           # bytes per row; 0 means tightly packed

    @property
    def row_stride(self) -> int:
        if self.stride:
            return self.stride
        return self.width * PIXEL_CHANNELS.get(self.pixel_format, 0)


@dataclass(frozen=True)
class BoundingBox:
    """Axis-aligned box in source-frame pixel coordinates."""
    x1: int
    y1: int
    x2: int
    y2: int

    @property
    def width(self) -> int:
        return self.x2 - self.x1

    @property
    def height(self) -> int:
        return self.y2 - self.y1

    def clamped(self, width: int, height: int) -> Optional[BoundingBox]:
        """Clip the box to a width x height frame.

        Returns None when no part of the box lies inside the frame.
        """
        x1 = min(max(int(self.x1), 0), width)
        y1 = min(max(int(self.y1), 0), height)
        x2 = min(max(int(self.x2), 0), width)
        y2 = min(max(int(self.y2), 0), height)
        if x1 >= x2 or y1 >= y2:
            return None
        return BoundingBox(x1, y1, x2, y2)


@dataclass(frozen=True)
class Detection:
    """A single labeled object found in one frame."""
    label: str
    confidence: float
    bounding_box: BoundingBox


@dataclass(frozen=True)
class GateDecision:
    sequence: int
    admitted: bool


@dataclass
class DispatchResult:
    detections: list[Detection]
    elapsed: float            # seconds spent in tensor build + inference


@dataclass
class ExportReport:
    written: list[Path] = field(default_factory=list)
    failed: list[tuple[Detection, Exception]] = field(default_factory=list)


class MessageKind(str, Enum):
    EOS = "eos"
    ERROR = "error"
    WARNING = "warning"


@dataclass(frozen=True)
class BusMessage:
    """A framework status message translated off the bus."""
    kind: MessageKind
    source: str = "<?>"
    text: str = ""
    debug: Optional[str] = None


@dataclass(frozen=True)
class RunOutcome:
    state: PipelineState
    source: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.state == PipelineState.STOPPED

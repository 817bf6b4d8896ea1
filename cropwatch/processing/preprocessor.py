"""Frame preprocessing: raw buffer validation → BGR image → NCHW input tensor."""

from __future__ import annotations

import cv2
import numpy as np

from cropwatch.errors import FrameDecodeError
from cropwatch.recording.models import PIXEL_CHANNELS, Frame

_TO_BGR = {
    "RGB": cv2.COLOR_RGB2BGR,
    "RGBA": cv2.COLOR_RGBA2BGR,
    "RGBx": cv2.COLOR_RGBA2BGR,
    "BGRA": cv2.COLOR_BGRA2BGR,
    "BGRx": cv2.COLOR_BGRA2BGR,
    "GRAY8": cv2.COLOR_GRAY2BGR,
}


def frame_to_bgr(frame: Frame) -> np.ndarray:
    """Validate a frame's buffer against its declared layout and return a BGR image.

    Raises FrameDecodeError when the format is unknown or the buffer size
    does not match width/height/stride.
    """
    channels = PIXEL_CHANNELS.get(frame.pixel_format)
    if channels is None:
        raise FrameDecodeError(
            f"frame {frame.sequence}: unsupported pixel format {frame.pixel_format!r}")
    if frame.width <= 0 or frame.height <= 0:
        raise FrameDecodeError(
            f"frame {frame.sequence}: invalid size {frame.width}x{frame.height}")

    row_bytes = frame.width * channels
    stride = frame.row_stride
    if stride < row_bytes:
        raise FrameDecodeError(
            f"frame {frame.sequence}: stride {stride} shorter than row ({row_bytes} bytes)")

    expected = stride * frame.height
    if len(frame.pixel_data) != expected:
        raise FrameDecodeError(
            f"frame {frame.sequence}: buffer holds {len(frame.pixel_data)} bytes, "
            f"expected {expected} for {frame.width}x{frame.height} {frame.pixel_format}")

    # Drop any per-row padding, then view as H x W x C
    rows = np.frombuffer(frame.pixel_data, dtype=np.uint8).reshape(frame.height, stride)
    pixels = rows[:, :row_bytes].reshape(frame.height, frame.width, channels)

    if frame.pixel_format == "BGR":
        return pixels.copy()
    if channels == 1:
        pixels = pixels[:, :, 0]
    return cv2.cvtColor(pixels, _TO_BGR[frame.pixel_format])


def to_input_tensor(image: np.ndarray, input_size: int) -> np.ndarray:
    """Stretch-resize a BGR image to input_size², RGB order, NCHW float32 in [0, 1]."""
    return cv2.dnn.blobFromImage(
        image,
        scalefactor=1.0 / 255.0,
        size=(input_size, input_size),
        swapRB=True,
        crop=False,
    )

"""YAML configuration loader with dataclass mapping."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

import yaml

from cropwatch.errors import ConfigValidationError
from cropwatch.recording.models import PIXEL_CHANNELS

COCO_LABELS = [
    "person", "bicycle", "car", "motorcycle", "airplane", "bus", "train",
    "truck", "boat", "traffic light", "fire hydrant", "stop sign",
    "parking meter", "bench", "bird", "cat", "dog", "horse", "sheep", "cow",
    "elephant", "bear", "zebra", "giraffe", "backpack", "umbrella", "handbag",
    "tie", "suitcase", "frisbee", "skis", "snowboard", "sports ball", "kite",
    "baseball bat", "baseball glove", "skateboard", "surfboard",
    "tennis racket", "bottle", "wine glass", "cup", "fork", "knife", "spoon",
    "bowl", "banana", "apple", "sandwich", "orange", "broccoli", "carrot",
    "hot dog", "pizza", "donut", "cake", "chair", "couch", "potted plant",
    "bed", "dining table", "toilet", "tv", "laptop", "mouse", "remote",
    "keyboard", "cell phone", "microwave", "oven", "toaster", "sink",
    "refrigerator", "book", "clock", "vase", "scissors", "teddy bear",
    "hair drier", "toothbrush",
]


@dataclass
class CaptureConfig:
    pixel_format: str = "RGB"
    latency_ms: Optional[int] = None   # rtspsrc jitter latency; None keeps the element default
    media: str = "video"               # only source pads of this media type get linked


@dataclass
class SamplingConfig:
    interval: int = 30                 # run detection on every Nth frame (~1/s at 30 FPS)


@dataclass
class InferenceConfig:
    model_path: str = "models/yolo11x.onnx"
    input_size: int = 640
    confidence_threshold: float = 0.25
    nms_threshold: float = 0.45
    labels: list[str] = field(default_factory=lambda: list(COCO_LABELS))


@dataclass
class ExportConfig:
    output_dir: str = "."
    image_format: str = "png"
    on_collision: str = "suffix"       # "suffix" or "overwrite"


@dataclass
class LoggingConfig:
    log_dir: str = "data/logs"


@dataclass
class AppConfig:
    capture: CaptureConfig = field(default_factory=CaptureConfig)
    sampling: SamplingConfig = field(default_factory=SamplingConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    export: ExportConfig = field(default_factory=ExportConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)


def _apply_dict(dc: object, data: dict) -> None:
    """Apply dictionary values onto a dataclass instance, ignoring unknown keys."""
    for key, value in data.items():
        if hasattr(dc, key):
            setattr(dc, key, value)


def validate_config(config: AppConfig) -> None:
    """Reject values the pipeline cannot run with."""
    if config.capture.pixel_format not in PIXEL_CHANNELS:
        raise ConfigValidationError(
            f"Unsupported pixel_format: {config.capture.pixel_format}")
    latency = config.capture.latency_ms
    if latency is not None and (not isinstance(latency, int) or isinstance(latency, bool)
                                or latency < 0):
        raise ConfigValidationError(
            f"capture.latency_ms must be a non-negative integer, got {latency!r}")
    for name, value in (("sampling.interval", config.sampling.interval),
                        ("inference.input_size", config.inference.input_size)):
        if not isinstance(value, int) or isinstance(value, bool):
            raise ConfigValidationError(f"{name} must be an integer, got {value!r}")
    if config.sampling.interval < 1:
        raise ConfigValidationError(
            f"sampling.interval must be >= 1, got {config.sampling.interval}")
    if config.inference.input_size <= 0:
        raise ConfigValidationError(
            f"inference.input_size must be > 0, got {config.inference.input_size}")
    for name in ("confidence_threshold", "nms_threshold"):
        value = getattr(config.inference, name)
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            raise ConfigValidationError(f"inference.{name} must be a number, got {value!r}")
        if not 0.0 <= value <= 1.0:
            raise ConfigValidationError(f"inference.{name} must be in [0, 1], got {value}")
    if not config.inference.model_path:
        raise ConfigValidationError("inference.model_path is required")
    if not config.inference.labels:
        raise ConfigValidationError("inference.labels cannot be empty")
    if config.export.on_collision not in ("suffix", "overwrite"):
        raise ConfigValidationError(
            f"export.on_collision must be 'suffix' or 'overwrite', "
            f"got {config.export.on_collision!r}")


def load_config(path: str | Path | None = None) -> AppConfig:
    """Load configuration from a YAML file, falling back to defaults."""
    config = AppConfig()

    if path is None:
        path = os.environ.get("CONFIG_PATH", "config/default.yaml")

    path = Path(path)
    if path.exists():
        with open(path, "r") as f:
            raw = yaml.safe_load(f) or {}

        section_map = {
            "capture": config.capture,
            "sampling": config.sampling,
            "inference": config.inference,
            "export": config.export,
            "logging": config.logging,
        }

        for section_name, dc_instance in section_map.items():
            if section_name in raw and isinstance(raw[section_name], dict):
                _apply_dict(dc_instance, raw[section_name])

    # Environment variable overrides
    env_model = os.environ.get("MODEL_PATH")
    if env_model:
        config.inference.model_path = env_model

    env_output = os.environ.get("OUTPUT_DIR")
    if env_output:
        config.export.output_dir = env_output

    env_interval = os.environ.get("SAMPLE_INTERVAL")
    if env_interval:
        try:
            config.sampling.interval = int(env_interval)
        except ValueError:
            raise ConfigValidationError(
                f"SAMPLE_INTERVAL must be an integer, got {env_interval!r}") from None

    validate_config(config)
    return config

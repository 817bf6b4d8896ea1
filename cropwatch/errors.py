"""Error hierarchy for the capture → detect → export pipeline."""

from __future__ import annotations


class CropwatchError(Exception):
    """Base class for all pipeline errors."""


class ElementCreationError(CropwatchError):
    """A required graph stage could not be constructed."""

    def __init__(self, factory: str, name: str, reason: str = ""):
        self.factory = factory
        self.name = name
        detail = f": {reason}" if reason else ""
        super().__init__(f"failed to create {factory} element '{name}'{detail}")


class LinkError(CropwatchError):
    """A mandatory static connection between two stages failed."""

    def __init__(self, upstream: str, downstream: str):
        self.upstream = upstream
        self.downstream = downstream
        super().__init__(f"failed to link {upstream} -> {downstream}")


class StreamError(CropwatchError):
    """The media framework reported a transport/decode error or refused a state change."""

    def __init__(self, source: str, message: str, debug: str | None = None):
        self.source = source
        self.message = message
        self.debug = debug
        super().__init__(f"Error from {source}: {message}")


class FrameDecodeError(CropwatchError):
    """An admitted frame's pixel buffer does not match its declared layout."""


class InferenceError(CropwatchError):
    """The detection engine failed on a single frame."""


class ExportIOError(CropwatchError):
    """A single crop could not be encoded or persisted."""

    def __init__(self, path: str, reason: str):
        self.path = path
        super().__init__(f"failed to write {path}: {reason}")


class ModelLoadError(CropwatchError):
    """The model weights could not be loaded at startup."""


class InvalidTransitionError(CropwatchError):
    """A lifecycle transition not allowed by the controller's state machine."""


class ConfigValidationError(CropwatchError, ValueError):
    """Error in configuration validation."""

"""Shared test fixtures: synthetic RGB frames, a scripted engine, and an in-memory graph."""

from __future__ import annotations

from typing import Any, Callable, Iterator

import numpy as np
import pytest

from cropwatch.config import AppConfig, ExportConfig, SamplingConfig
from cropwatch.errors import ElementCreationError, LinkError
from cropwatch.recording.models import (
    BoundingBox,
    BusMessage,
    Detection,
    Frame,
)


@pytest.fixture
def sampling_config() -> SamplingConfig:
    return SamplingConfig(interval=30)


@pytest.fixture
def export_config(tmp_path) -> ExportConfig:
    return ExportConfig(output_dir=str(tmp_path), image_format="png")


@pytest.fixture
def app_config(tmp_path) -> AppConfig:
    config = AppConfig()
    config.export.output_dir = str(tmp_path)
    return config


def make_frame(sequence: int = 0, width: int = 100, height: int = 100,
               color: tuple[int, int, int] = (0, 0, 0)) -> Frame:
    """Create a solid-color, tightly packed RGB frame."""
    pixels = np.zeros((height, width, 3), dtype=np.uint8)
    pixels[:, :] = color
    return Frame(sequence=sequence, width=width, height=height,
                 pixel_format="RGB", pixel_data=pixels.tobytes())


def make_detection(label: str = "cat", confidence: float = 0.913,
                   box: tuple[int, int, int, int] = (0, 0, 10, 10)) -> Detection:
    return Detection(label=label, confidence=confidence, bounding_box=BoundingBox(*box))


class FakeEngine:
    """Scripted detection engine: returns queued results, records every call."""

    def __init__(self, results: list[Any] | None = None, input_size: int = 64):
        self._results = list(results or [])
        self._input_size = input_size
        self.calls: list[tuple[tuple[int, ...], tuple[int, int]]] = []

    @property
    def input_size(self) -> int:
        return self._input_size

    def detect(self, tensor: np.ndarray, frame_size: tuple[int, int]) -> list[Detection]:
        self.calls.append((tensor.shape, frame_size))
        result = self._results.pop(0) if self._results else []
        if isinstance(result, Exception):
            raise result
        return list(result)


class FakePad:
    def __init__(self, name: str, media: str | None = "video"):
        self.name = name
        self.media = media
        self.peer: FakePad | None = None


class FakeGraph:
    """In-memory stand-in for the GStreamer graph."""

    def __init__(self, messages: list[BusMessage] | None = None,
                 fail_factory: str | None = None,
                 fail_link: tuple[str, str] | None = None,
                 refuse_state: str | None = None,
                 refuse_pad_link: bool = False,
                 frames_on_play: list[Frame] | None = None):
        self.elements: dict[str, tuple[str, dict[str, Any]]] = {}
        self.links: list[tuple[str, str]] = []
        self.pad_links: list[tuple[FakePad, FakePad]] = []
        self.states: list[str] = []
        self.released = 0
        self.pad_added: dict[str, Callable[[str, Any], Any]] = {}
        self.frame_callback: Callable[[Frame], Any] | None = None
        self._pads: dict[tuple[str, str], FakePad] = {}
        self._messages = list(messages or [])
        self._fail_factory = fail_factory
        self._fail_link = fail_link
        self._refuse_state = refuse_state
        self._refuse_pad_link = refuse_pad_link
        # Delivered from inside set_state("playing"), before it returns
        self._frames_on_play = list(frames_on_play or [])
        self.early_decisions: list[Any] = []

    def make(self, factory: str, name: str, properties: dict[str, Any]) -> None:
        if factory == self._fail_factory:
            raise ElementCreationError(factory, name, "factory not available")
        self.elements[name] = (factory, dict(properties))

    def link_many(self, names: list[str]) -> None:
        for upstream, downstream in zip(names, names[1:]):
            if (upstream, downstream) == self._fail_link:
                raise LinkError(upstream, downstream)
            self.links.append((upstream, downstream))

    def connect_pad_added(self, name: str, callback: Callable[[str, Any], Any]) -> None:
        self.pad_added[name] = callback

    def static_pad(self, element: str, pad: str) -> FakePad:
        return self._pads.setdefault((element, pad), FakePad(f"{element}.{pad}"))

    def is_linked(self, pad: FakePad) -> bool:
        return pad.peer is not None

    def link_pads(self, src_pad: FakePad, sink_pad: FakePad) -> bool:
        if self._refuse_pad_link or sink_pad.peer is not None:
            return False
        src_pad.peer, sink_pad.peer = sink_pad, src_pad
        self.pad_links.append((src_pad, sink_pad))
        return True

    def pad_media(self, pad: FakePad) -> str | None:
        return pad.media

    def on_frame(self, appsink: str, callback: Callable[[Frame], Any]) -> None:
        self.frame_callback = callback

    def set_state(self, state: str) -> bool:
        self.states.append(state)
        if state == "playing" and self.frame_callback is not None:
            for frame in self._frames_on_play:
                self.early_decisions.append(self.frame_callback(frame))
        return state != self._refuse_state

    def messages(self) -> Iterator[BusMessage]:
        while self._messages:
            yield self._messages.pop(0)

    def release(self) -> None:
        self.released += 1


@pytest.fixture
def fake_graph() -> FakeGraph:
    return FakeGraph()

"""Pipeline controller: graph assembly, lifecycle state machine, frame handling."""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Iterator, Optional, Protocol

from cropwatch.capture.link_resolver import DynamicLinkResolver
from cropwatch.config import AppConfig
from cropwatch.errors import (
    CropwatchError,
    ElementCreationError,
    FrameDecodeError,
    InferenceError,
    InvalidTransitionError,
    LinkError,
    StreamError,
)
from cropwatch.processing.dispatcher import DetectionDispatcher
from cropwatch.processing.preprocessor import frame_to_bgr
from cropwatch.processing.sampler import FrameSampleGate
from cropwatch.recording.crop_writer import CropWriter
from cropwatch.recording.models import (
    BusMessage,
    Frame,
    GateDecision,
    MessageKind,
    PipelineState,
    RunOutcome,
)

logger = logging.getLogger(__name__)

# Stage names, in downstream order. The source is linked to the jitter
# buffer at runtime; everything after it is linked statically.
SOURCE = "source"
STATIC_CHAIN = ["jitterbuffer", "depay", "decoder", "convert", "identity", "appsink"]

_TRANSITIONS = {
    PipelineState.IDLE: {PipelineState.READY},
    PipelineState.READY: {PipelineState.PLAYING},
    PipelineState.PLAYING: {PipelineState.STOPPED, PipelineState.FAILED},
    PipelineState.STOPPED: set(),
    PipelineState.FAILED: set(),
}

# States in which the graph can deliver frames. Samples may arrive between
# set_state("playing") and the PLAYING transition.
_ACCEPTING = {PipelineState.READY, PipelineState.PLAYING}


class Graph(Protocol):
    def make(self, factory: str, name: str, properties: dict[str, Any]) -> None: ...
    def link_many(self, names: list[str]) -> None: ...
    def connect_pad_added(self, name: str, callback: Callable[[str, Any], Any]) -> None: ...
    def static_pad(self, element: str, pad: str) -> Any: ...
    def is_linked(self, pad: Any) -> bool: ...
    def link_pads(self, src_pad: Any, sink_pad: Any) -> bool: ...
    def pad_media(self, pad: Any) -> str | None: ...
    def on_frame(self, appsink: str, callback: Callable[[Frame], Any]) -> None: ...
    def set_state(self, state: str) -> bool: ...
    def messages(self) -> Iterator[BusMessage]: ...
    def release(self) -> None: ...


def _default_graph() -> Graph:
    from cropwatch.capture.gst_graph import GstGraph
    return GstGraph()


class PipelineController:
    """Owns the stream graph and drives IDLE → READY → PLAYING → STOPPED/FAILED.

    Frames arrive through handle_frame() on the framework's streaming
    thread; the thread that called start() blocks in run_until_terminal().
    """

    def __init__(self, config: AppConfig, gate: FrameSampleGate,
                 dispatcher: DetectionDispatcher, writer: CropWriter,
                 graph_factory: Optional[Callable[[], Graph]] = None):
        self._config = config
        self._gate = gate
        self._dispatcher = dispatcher
        self._writer = writer
        self._graph_factory = graph_factory or _default_graph

        self._graph: Optional[Graph] = None
        self._resolver: Optional[DynamicLinkResolver] = None
        self._state = PipelineState.IDLE
        self._state_lock = threading.Lock()
        self._failure: Optional[CropwatchError] = None

        # Stats
        self._frames_sampled = 0
        self._detections = 0
        self._crops_written = 0
        self._decode_failures = 0
        self._inference_failures = 0
        self._export_failures = 0

    @property
    def state(self) -> PipelineState:
        return self._state

    @property
    def failure(self) -> Optional[CropwatchError]:
        """The error that moved the controller to FAILED, if any."""
        return self._failure

    @property
    def resolver(self) -> Optional[DynamicLinkResolver]:
        return self._resolver

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self._state.value,
            "frames_seen": self._gate.frames_seen,
            "frames_sampled": self._frames_sampled,
            "detections": self._detections,
            "crops_written": self._crops_written,
            "decode_failures": self._decode_failures,
            "inference_failures": self._inference_failures,
            "export_failures": self._export_failures,
        }

    def start(self, source_uri: str) -> None:
        """Build the graph and bring it to PLAYING, passing through READY.

        Raises ElementCreationError, LinkError or StreamError; in each case
        the controller is left FAILED with its graph released.
        """
        if self._failure is not None:
            raise InvalidTransitionError(
                f"controller failed earlier ({self._failure}); create a new one")
        if self._state != PipelineState.IDLE:
            raise InvalidTransitionError(
                f"start() requires state idle, controller is {self._state.value}")

        try:
            self._graph = self._create_graph()
            self._build(self._graph, source_uri)

            if not self._graph.set_state("ready"):
                raise StreamError("pipeline", "failed to reach READY")
            self._transition(PipelineState.READY)

            if not self._graph.set_state("playing"):
                raise StreamError("pipeline", "failed to start pipeline")
            self._transition(PipelineState.PLAYING)
        except (ElementCreationError, LinkError, StreamError) as exc:
            self._fail(exc)
            self._release_graph()
            raise

        logger.info("Pipeline playing: %s", source_uri)

    def run_until_terminal(self) -> RunOutcome:
        """Block on the bus until EOS or an error, then report how it ended."""
        if self._state != PipelineState.PLAYING:
            raise InvalidTransitionError(
                f"run_until_terminal() requires state playing, controller is {self._state.value}")

        for msg in self._graph.messages():
            if msg.kind == MessageKind.EOS:
                logger.info("End of stream")
                self._transition(PipelineState.STOPPED)
                return RunOutcome(PipelineState.STOPPED)
            if msg.kind == MessageKind.ERROR:
                error = StreamError(msg.source, msg.text, msg.debug)
                logger.error("%s", error)
                if msg.debug:
                    logger.debug("Debug info: %s", msg.debug)
                self._fail(error)
                return RunOutcome(PipelineState.FAILED, msg.source, msg.text)
            logger.warning("Warning from %s: %s", msg.source, msg.text)

        # Bus closed without a terminal message
        self._transition(PipelineState.STOPPED)
        return RunOutcome(PipelineState.STOPPED)

    def shutdown(self) -> None:
        """Drive the graph to NULL and release it. Safe to call in any state, any number of times."""
        self._release_graph()
        with self._state_lock:
            if self._state != PipelineState.IDLE:
                logger.info("Pipeline stopped (%s): %s", self._state.value, self.stats)
            self._state = PipelineState.IDLE

    def handle_frame(self, frame: Frame) -> Optional[GateDecision]:
        """Streaming callback: gate, then detect and export admitted frames.

        Per-frame failures are contained here; returns None for frames that
        arrive while no graph is running.
        """
        if self._state not in _ACCEPTING:
            return None

        decision = self._gate.admit(frame)
        if not decision.admitted:
            return decision
        self._frames_sampled += 1

        try:
            image = frame_to_bgr(frame)
        except FrameDecodeError as exc:
            self._decode_failures += 1
            logger.warning("Skipping frame %d: %s", decision.sequence, exc)
            return decision

        try:
            result = self._dispatcher.dispatch(decision.sequence, image)
        except InferenceError as exc:
            self._inference_failures += 1
            logger.warning("Inference failed on frame %d: %s", decision.sequence, exc)
            return decision

        self._detections += len(result.detections)
        if result.detections:
            report = self._writer.export(decision.sequence, image, result.detections)
            self._crops_written += len(report.written)
            self._export_failures += len(report.failed)
        return decision

    def _create_graph(self) -> Graph:
        try:
            return self._graph_factory()
        except (ImportError, ValueError) as exc:
            # gi missing, or the Gst typelibs not installed
            raise ElementCreationError("pipeline", "graph", str(exc)) from exc

    def _build(self, graph: Graph, source_uri: str) -> None:
        capture = self._config.capture

        source_props: dict[str, Any] = {"location": source_uri}
        if capture.latency_ms is not None:
            source_props["latency"] = capture.latency_ms

        stages = [
            ("rtspsrc", SOURCE, source_props),
            ("rtpjitterbuffer", "jitterbuffer", {}),
            ("rtph264depay", "depay", {
                "wait-for-keyframe": True,
                "request-keyframe": True,
            }),
            ("avdec_h264", "decoder", {}),
            ("videoconvert", "convert", {}),
            ("identity", "identity", {
                "check-imperfect-offset": True,
                "check-imperfect-timestamp": True,
            }),
            ("appsink", "appsink", {
                "sync": True,
                "caps": f"video/x-raw,format={capture.pixel_format}",
            }),
        ]
        for factory, name, props in stages:
            graph.make(factory, name, props)

        graph.link_many(STATIC_CHAIN)

        self._resolver = DynamicLinkResolver(graph, "jitterbuffer", media=capture.media)
        graph.connect_pad_added(SOURCE, self._resolver.on_pad_added)
        graph.on_frame("appsink", self.handle_frame)

    def _transition(self, target: PipelineState) -> None:
        with self._state_lock:
            if target not in _TRANSITIONS[self._state]:
                raise InvalidTransitionError(
                    f"illegal transition {self._state.value} -> {target.value}")
            logger.debug("State %s -> %s", self._state.value, target.value)
            self._state = target

    def _fail(self, error: CropwatchError) -> None:
        with self._state_lock:
            self._failure = error
            self._state = PipelineState.FAILED

    def _release_graph(self) -> None:
        if self._graph is None:
            return
        graph, self._graph = self._graph, None
        try:
            graph.set_state("null")
        finally:
            graph.release()

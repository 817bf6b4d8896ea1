"""GStreamer adapter: builds the element graph and translates its callbacks.

This is the only module that talks to GStreamer. Everything it hands back
(frames, bus messages) uses the plain models in cropwatch.recording.models.
"""

from __future__ import annotations

import itertools
import logging
from typing import Any, Callable, Iterator

import gi

gi.require_version("Gst", "1.0")
gi.require_version("GstVideo", "1.0")
from gi.repository import Gst, GstVideo  # noqa: E402

from cropwatch.errors import ElementCreationError, LinkError  # noqa: E402
from cropwatch.recording.models import BusMessage, Frame, MessageKind  # noqa: E402

logger = logging.getLogger(__name__)

_STATES = {
    "null": Gst.State.NULL,
    "ready": Gst.State.READY,
    "playing": Gst.State.PLAYING,
}


class GstGraph:
    """A named-element pipeline with the few operations the controller needs."""

    def __init__(self, name: str = "cropwatch"):
        if not Gst.is_initialized():
            Gst.init(None)
        self._pipeline = Gst.Pipeline.new(name)
        self._elements: dict[str, Gst.Element] = {}

    def make(self, factory: str, name: str, properties: dict[str, Any]) -> None:
        """Create an element, set its properties, and add it to the pipeline."""
        element = Gst.ElementFactory.make(factory, name)
        if element is None:
            raise ElementCreationError(factory, name, "factory not available")
        for key, value in properties.items():
            if key == "caps" and isinstance(value, str):
                value = Gst.Caps.from_string(value)
            try:
                element.set_property(key, value)
            except TypeError as exc:
                raise ElementCreationError(factory, name, str(exc)) from exc
        self._pipeline.add(element)
        self._elements[name] = element

    def link_many(self, names: list[str]) -> None:
        for upstream, downstream in zip(names, names[1:]):
            if not self._elements[upstream].link(self._elements[downstream]):
                raise LinkError(upstream, downstream)

    def connect_pad_added(self, name: str,
                          callback: Callable[[str, Any], Any]) -> None:
        self._elements[name].connect(
            "pad-added", lambda element, pad: callback(element.get_name(), pad))

    def static_pad(self, element: str, pad: str) -> Gst.Pad:
        return self._elements[element].get_static_pad(pad)

    def is_linked(self, pad: Gst.Pad) -> bool:
        return pad.is_linked()

    def link_pads(self, src_pad: Gst.Pad, sink_pad: Gst.Pad) -> bool:
        return src_pad.link(sink_pad) == Gst.PadLinkReturn.OK

    def pad_media(self, pad: Gst.Pad) -> str | None:
        caps = pad.get_current_caps() or pad.query_caps(None)
        if caps is None or caps.get_size() == 0:
            return None
        return caps.get_structure(0).get_string("media")

    def on_frame(self, appsink: str, callback: Callable[[Frame], Any]) -> None:
        """Deliver every decoded sample from `appsink` to callback as a Frame.

        The callback runs on the GStreamer streaming thread. An exception
        escaping it turns into a flow error, which the pipeline reports on
        its bus.
        """
        sink = self._elements[appsink]
        sequence = itertools.count()

        def _on_new_sample(element: Gst.Element) -> Gst.FlowReturn:
            sample = element.emit("pull-sample")
            if sample is None:
                return Gst.FlowReturn.EOS
            try:
                callback(_sample_to_frame(sample, next(sequence)))
            except Exception:
                logger.exception("Unhandled error in frame callback")
                return Gst.FlowReturn.ERROR
            return Gst.FlowReturn.OK

        sink.set_property("emit-signals", True)
        sink.connect("new-sample", _on_new_sample)

    def set_state(self, state: str) -> bool:
        """Request a state change. False only when GStreamer reports FAILURE."""
        result = self._pipeline.set_state(_STATES[state])
        return result != Gst.StateChangeReturn.FAILURE

    def messages(self, poll_interval: float = 0.1) -> Iterator[BusMessage]:
        """Yield EOS/ERROR/WARNING messages from the bus, forever.

        Polls with a timeout so the caller's thread stays interruptible.
        """
        bus = self._pipeline.get_bus()
        mask = Gst.MessageType.EOS | Gst.MessageType.ERROR | Gst.MessageType.WARNING
        timeout = int(poll_interval * Gst.SECOND)
        while True:
            msg = bus.timed_pop_filtered(timeout, mask)
            if msg is not None:
                yield _translate(msg)

    def release(self) -> None:
        self._pipeline.set_state(Gst.State.NULL)
        self._elements.clear()


def _sample_to_frame(sample: Gst.Sample, sequence: int) -> Frame:
    caps = sample.get_caps()
    info = GstVideo.VideoInfo.new_from_caps(caps)
    pixel_format = caps.get_structure(0).get_string("format")

    buffer = sample.get_buffer()
    ok, mapinfo = buffer.map(Gst.MapFlags.READ)
    if not ok:
        raise RuntimeError("failed to map buffer for reading")
    try:
        data = bytes(mapinfo.data)
    finally:
        buffer.unmap(mapinfo)

    return Frame(
        sequence=sequence,
        width=info.width,
        height=info.height,
        pixel_format=pixel_format,
        pixel_data=data,
        stride=info.stride[0],
    )


def _translate(msg: Gst.Message) -> BusMessage:
    source = msg.src.get_path_string() if msg.src is not None else "<?>"
    if msg.type == Gst.MessageType.EOS:
        return BusMessage(MessageKind.EOS, source)
    if msg.type == Gst.MessageType.ERROR:
        err, debug = msg.parse_error()
        return BusMessage(MessageKind.ERROR, source, err.message, debug)
    err, debug = msg.parse_warning()
    return BusMessage(MessageKind.WARNING, source, err.message, debug)

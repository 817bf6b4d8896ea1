"""Late-bound pad linking for sources whose output pads appear at negotiation time."""

from __future__ import annotations

import logging
from enum import Enum
from typing import Any, Protocol

logger = logging.getLogger(__name__)


class LinkState(str, Enum):
    PENDING = "pending"
    LINKED = "linked"


class PadGraph(Protocol):
    def static_pad(self, element: str, pad: str) -> Any: ...
    def is_linked(self, pad: Any) -> bool: ...
    def link_pads(self, src_pad: Any, sink_pad: Any) -> bool: ...
    def pad_media(self, pad: Any) -> str | None: ...


class DynamicLinkResolver:
    """Links a source's dynamic pad to a fixed downstream sink pad, exactly once.

    Duplicate pad-added notifications for an already-linked sink are no-ops.
    A failed link is logged and leaves the connection pending; it never raises.
    """

    def __init__(self, graph: PadGraph, sink_element: str,
                 sink_pad: str = "sink", media: str | None = "video"):
        self._graph = graph
        self._sink_element = sink_element
        self._sink_pad = sink_pad
        self._media = media
        self._state = LinkState.PENDING

    @property
    def state(self) -> LinkState:
        return self._state

    def on_pad_added(self, element_name: str, src_pad: Any) -> bool:
        """pad-added handler. Returns True only when this call made the link."""
        if self._media is not None:
            media = self._graph.pad_media(src_pad)
            if media is not None and media != self._media:
                logger.debug("Ignoring %s pad from %s", media, element_name)
                return False

        sink = self._graph.static_pad(self._sink_element, self._sink_pad)
        if self._state == LinkState.LINKED or self._graph.is_linked(sink):
            self._state = LinkState.LINKED
            logger.debug("%s.%s already linked; ignoring pad from %s",
                         self._sink_element, self._sink_pad, element_name)
            return False

        if not self._graph.link_pads(src_pad, sink):
            logger.warning("Failed to link pads: %s -> %s.%s",
                           element_name, self._sink_element, self._sink_pad)
            return False

        self._state = LinkState.LINKED
        logger.info("Successfully linked pads: %s -> %s.%s",
                    element_name, self._sink_element, self._sink_pad)
        return True

"""Frame counter and fixed-interval sample gate."""

from __future__ import annotations

import threading

from cropwatch.config import SamplingConfig
from cropwatch.recording.models import Frame, GateDecision


class FrameCounter:
    """Counts frames received; safe to read from threads other than the streaming one."""

    def __init__(self) -> None:
        self._value = 0
        self._lock = threading.Lock()

    @property
    def value(self) -> int:
        with self._lock:
            return self._value

    def increment(self) -> int:
        """Advance by one and return the value before the increment."""
        with self._lock:
            current = self._value
            self._value += 1
            return current


class FrameSampleGate:
    """Admits every Kth frame to detection.

    admit(n) = (n mod K == 0), where n is the number of frames seen before
    this one. The counter advances on every frame, admitted or not.
    """

    def __init__(self, config: SamplingConfig):
        self._interval = int(config.interval)
        self._counter = FrameCounter()

    @property
    def interval(self) -> int:
        return self._interval

    @property
    def frames_seen(self) -> int:
        return self._counter.value

    def admit(self, frame: Frame) -> GateDecision:
        n = self._counter.increment()
        return GateDecision(sequence=n, admitted=n % self._interval == 0)

"""Explicit progress-event channel.

Parsers and the streaming processor publish ``ProgressEvent`` records to
a ``ProgressChannel``; any number of listeners subscribe and receive
them.  Reported fractions are clamped to ``[0, 1]`` and never decrease.
``ProgressChannel.track()`` guarantees a closing event on every exit
path, including early returns and exceptions.
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass

logger = logging.getLogger("geo_import.streaming.progress")

PHASE_ANALYZING = "analyzing"
PHASE_PARSING = "parsing"
PHASE_COMPLETE = "complete"
PHASE_FAILED = "failed"
PHASE_CANCELLED = "cancelled"


@dataclass(frozen=True, slots=True)
class ProgressEvent:
    """One progress notification.

    Attributes:
        fraction: Completion in ``[0, 1]``, monotonically non-decreasing.
        phase: ``"parsing"``, ``"complete"``, ``"failed"``...
        processed: Units processed so far (bytes, records or features).
        total: Total units, ``0`` when unknown.
        message: Optional free text.
    """

    fraction: float
    phase: str = PHASE_PARSING
    processed: int = 0
    total: int = 0
    message: str = ""


ProgressListener = Callable[[ProgressEvent], None]


class ProgressChannel:
    """Observer list with monotonic, clamped progress."""

    def __init__(self) -> None:
        self._listeners: list[ProgressListener] = []
        self._lock = threading.Lock()
        self._last = 0.0
        self._closed = False

    @property
    def fraction(self) -> float:
        return self._last

    @property
    def closed(self) -> bool:
        return self._closed

    def subscribe(self, listener: ProgressListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    def emit(
        self,
        fraction: float,
        *,
        phase: str = PHASE_PARSING,
        processed: int = 0,
        total: int = 0,
        message: str = "",
    ) -> ProgressEvent:
        """Publish progress; the fraction is clamped and never regresses."""
        with self._lock:
            clamped = min(1.0, max(0.0, fraction))
            self._last = max(self._last, clamped)
            event = ProgressEvent(self._last, phase, processed, total, message)
            listeners = list(self._listeners)
            if phase in (PHASE_COMPLETE, PHASE_FAILED, PHASE_CANCELLED):
                self._closed = True

        for listener in listeners:
            try:
                listener(event)
            except Exception:
                logger.exception("progress listener failed | phase=%s", phase)
        return event

    def complete(self, *, processed: int = 0, total: int = 0) -> ProgressEvent:
        return self.emit(1.0, phase=PHASE_COMPLETE, processed=processed, total=total)

    @contextmanager
    def track(self) -> Iterator[ProgressChannel]:
        """Close the channel on every exit path.

        Normal exit emits ``complete`` (fraction 1.0) unless a terminal
        event was already published; an abandoned generator emits
        ``cancelled``; any other exception emits ``failed`` at the current
        fraction and re-raises.
        """
        try:
            yield self
        except GeneratorExit:
            # Consumer stopped iterating a streaming parse.
            if not self._closed:
                self.emit(self._last, phase=PHASE_CANCELLED)
            raise
        except BaseException as exc:
            if not self._closed:
                self.emit(self._last, phase=PHASE_FAILED, message=str(exc))
            raise
        else:
            if not self._closed:
                self.complete()

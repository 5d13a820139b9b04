"""Streaming processor: the composed helper every parser runs through.

A parser supplies a *producer*, an iterator of ``ProducedChunk`` records
holding already-normalised canonical features.  ``StreamingProcessor.run``
drives it one chunk at a time:

1. reserve ``chunk_reservation`` bytes in the shared ``MemoryBudget``
   before pulling the next chunk (backpressure);
2. fold the chunk's features into the running bounds;
3. publish progress on the ``ProgressChannel``;
4. yield a ``ChunkEvent`` to the consumer;
5. once the consumer resumes, unpin the chunk buffer so it becomes
   evictable, and release every buffer of the stream on exit.

The processor also subscribes to an injected ``MemoryMonitor`` for the
duration of the run; a warning flips ``degraded`` so parsers can skip
non-essential work (validity flagging) until pressure subsides.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from geo_import.core.exceptions import MemoryBudgetExceededError
from geo_import.models.stats import MEMORY_PRESSURE
from geo_import.streaming.bounds import BoundsAccumulator
from geo_import.streaming.chunker import DEFAULT_TEXT_CHUNK_SIZE
from geo_import.streaming.monitor import LEVEL_CRITICAL
from geo_import.streaming.progress import ProgressChannel

if TYPE_CHECKING:
    import threading

    from geo_import.core.constants import Rectangle
    from geo_import.models.feature import CanonicalFeature
    from geo_import.models.stats import ProcessorStats
    from geo_import.streaming.memory import MemoryBudget
    from geo_import.streaming.monitor import MemoryMonitor, MemoryWarning

logger = logging.getLogger("geo_import.streaming.processor")


@dataclass(frozen=True, slots=True)
class ProducedChunk:
    """What a format producer hands the processor.

    Attributes:
        features: Canonical features converted from this chunk.
        processed: Source units consumed so far (bytes or records).
        total: Total source units (``0`` when unknown).
    """

    features: list[CanonicalFeature]
    processed: int
    total: int


@dataclass(frozen=True, slots=True)
class ChunkEvent:
    """Per-chunk emission.

    Attributes:
        index: Zero-based chunk index.
        features: Features converted from this chunk.
        bounds: Running bounds over every feature emitted so far.
        fraction: Progress in ``[0, 1]``.
        processed: Source units consumed so far.
        total: Total source units.
    """

    index: int
    features: tuple[CanonicalFeature, ...]
    bounds: Rectangle
    fraction: float
    processed: int
    total: int


@dataclass(slots=True)
class StreamSummary:
    """Outcome of one ``run`` (populated as the stream advances)."""

    chunk_count: int = 0
    feature_count: int = 0
    bounds: BoundsAccumulator = field(default_factory=BoundsAccumulator)
    truncated: bool = False
    cancelled: bool = False
    budget_overruns: int = 0


class StreamingProcessor:
    """Drive one producer under a memory budget with progress and bounds.

    One instance serves one run; parsers create a fresh processor per
    ``parse`` call.

    Args:
        budget: Shared memory budget (optional).
        monitor: Shared memory monitor (optional).
        progress: Channel to publish on; a private one is created if omitted.
        stats: Statistics receiving memory-pressure warnings.
        chunk_reservation: Bytes reserved per chunk before it is produced.
        name: Stream name used in buffer keys and logs.
    """

    def __init__(
        self,
        *,
        budget: MemoryBudget | None = None,
        monitor: MemoryMonitor | None = None,
        progress: ProgressChannel | None = None,
        stats: ProcessorStats | None = None,
        chunk_reservation: int = DEFAULT_TEXT_CHUNK_SIZE,
        name: str = "stream",
    ) -> None:
        self._budget = budget
        self._monitor = monitor
        self.progress = progress if progress is not None else ProgressChannel()
        self._stats = stats
        self._reservation = chunk_reservation
        self._stream_id = f"{name}:{uuid.uuid4().hex[:8]}"
        self.summary = StreamSummary()
        self.degraded = False

    @property
    def stream_id(self) -> str:
        return self._stream_id

    def _on_memory_warning(self, warning: MemoryWarning) -> None:
        self.degraded = True
        if warning.level == LEVEL_CRITICAL and self._stats is not None:
            self._stats.record_warning(
                f"memory limit reached during {self._stream_id} "
                f"({warning.used_bytes} of {warning.limit_bytes} bytes)"
            )

    def _reserve(self, key: str) -> None:
        if self._budget is None:
            return
        try:
            self._budget.admit(key, self._reservation)
        except MemoryBudgetExceededError as exc:
            if self._reservation > self._budget.limit:
                raise
            self.summary.budget_overruns += 1
            if self._stats is not None:
                self._stats.record_error(MEMORY_PRESSURE, exc.message, buffer=key)
                self._stats.record_warning(f"memory budget exhausted; continuing over budget: {exc.message}")
            self._budget.force_admit(key, self._reservation)

    def run(
        self,
        producer: Iterator[ProducedChunk],
        *,
        srid: int | None = None,
        max_features: int | None = None,
        cancel: threading.Event | None = None,
    ) -> Iterator[ChunkEvent]:
        """Yield one ``ChunkEvent`` per produced chunk.

        Args:
            producer: Iterator of produced chunks.
            srid: SRID used to pick the default bounds rectangle.
            max_features: Stop after this many features (recorded as truncation).
            cancel: Event checked between chunks; when set the stream stops.
        """
        unsubscribe = self._monitor.subscribe(self._on_memory_warning) if self._monitor else None
        summary = self.summary
        index = 0
        logger.debug("stream started | stream=%s", self._stream_id)
        try:
            with self.progress.track():
                while True:
                    if cancel is not None and cancel.is_set():
                        summary.cancelled = True
                        logger.info(
                            "stream cancelled | stream=%s | chunks=%d", self._stream_id, index
                        )
                        self.progress.emit(self.progress.fraction, phase="cancelled")
                        break

                    key = f"{self._stream_id}:{index}"
                    self._reserve(key)
                    try:
                        chunk = next(producer)
                    except StopIteration:
                        if self._budget is not None:
                            self._budget.release(key)
                        break

                    if max_features is not None and summary.feature_count >= max_features:
                        if self._budget is not None:
                            self._budget.release(key)
                        if chunk.features:
                            summary.truncated = True
                            break
                        continue

                    features = chunk.features
                    if max_features is not None and summary.feature_count + len(features) >= max_features:
                        remaining = max_features - summary.feature_count
                        summary.truncated = summary.truncated or len(features) > remaining
                        features = features[:remaining]

                    summary.bounds.add_features(features)
                    summary.feature_count += len(features)
                    summary.chunk_count += 1
                    fraction = chunk.processed / chunk.total if chunk.total else 1.0
                    emitted = self.progress.emit(
                        fraction, processed=chunk.processed, total=chunk.total
                    )
                    logger.debug(
                        "chunk emitted | stream=%s | index=%d | features=%d | fraction=%.3f",
                        self._stream_id,
                        index,
                        len(features),
                        emitted.fraction,
                    )
                    yield ChunkEvent(
                        index=index,
                        features=tuple(features),
                        bounds=summary.bounds.result(srid),
                        fraction=emitted.fraction,
                        processed=chunk.processed,
                        total=chunk.total,
                    )

                    if self._budget is not None:
                        self._budget.unpin(key)
                    if self.degraded and self._monitor is not None:
                        self.degraded = self._monitor.last_sample >= self._monitor.warning_threshold
                    index += 1
                    if summary.truncated:
                        break
        finally:
            close = getattr(producer, "close", None)
            if close is not None:
                close()
            if self._budget is not None:
                self._budget.release_prefix(self._stream_id)
            if unsubscribe is not None:
                unsubscribe()
            logger.debug(
                "stream finished | stream=%s | chunks=%d | features=%d | truncated=%s",
                self._stream_id,
                summary.chunk_count,
                summary.feature_count,
                summary.truncated,
            )

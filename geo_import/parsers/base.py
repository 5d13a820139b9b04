"""FormatParser capability interface.

Every format implements the same three capabilities and is selected by
a registry lookup on the file extension (see ``parsers.factory``):

    1. ``can_process(file_name, sample)``: cheap extension + content sniff.
    2. ``analyze(data, companions)``: bounded structural preview.
    3. ``parse(data, companions, options, on_progress)``: full conversion.

``stream()`` exposes the same conversion chunk by chunk.  Chunking,
memory budgeting, progress and bounds are delegated to a composed
``StreamingProcessor``; a concrete parser only supplies ``_produce``,
a generator of ``ProducedChunk`` records, and ``_analyze``.

Per-call state lives in the ``ParseRun`` handed to ``_produce``, never on
the parser instance, so two independent ``parse`` calls on different
inputs cannot interfere.  The only instance state is the in-flight flag
that rejects a second concurrent ``parse`` on the same parser.
"""

from __future__ import annotations

import abc
import logging
import threading
from collections.abc import Callable, Iterator, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from geo_import.core.config import ImportConfig
from geo_import.core.exceptions import ParseInProgressError
from geo_import.crs.detection import resolve_source_srid
from geo_import.crs.reproject import Reprojector
from geo_import.models.dataset import Dataset
from geo_import.models.stats import ProcessorStats
from geo_import.parsers._normalization import FeatureNormalizer
from geo_import.resolver import split_name
from geo_import.streaming.bounds import BoundsAccumulator
from geo_import.streaming.processor import ChunkEvent, ProducedChunk, StreamingProcessor
from geo_import.streaming.progress import ProgressChannel, ProgressEvent

if TYPE_CHECKING:
    from geo_import.core.constants import FormatSpec, Rectangle
    from geo_import.models.feature import CanonicalFeature
    from geo_import.models.stats import StatsSnapshot
    from geo_import.streaming.memory import MemoryBudget
    from geo_import.streaming.monitor import MemoryMonitor

logger = logging.getLogger("geo_import.parsers")

ANALYZE_SAMPLE_SIZE = 10


# ---------------------------------------------------------------------------
# Options and results
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class ParseOptions:
    """Per-call parse options.

    Attributes:
        source_srid: Explicit source SRID (overrides side-files and detection).
        reproject: Reproject features to ``target_srid`` during parse.
        target_srid: Target SRID when ``reproject`` is set.
        max_features: Stop after this many features (recorded as a warning).
        cancel: Set to abandon the parse between chunks.
        settings: Format-specific settings (e.g. CSV ``delimiter``).
    """

    source_srid: int | None = None
    reproject: bool = False
    target_srid: int = 4326
    max_features: int | None = None
    cancel: threading.Event | None = None
    settings: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class StructuralSummary:
    """Cheap, bounded-size description of a file.

    Attributes:
        format_key: Registry key of the format.
        layers: Detected layer names.
        entity_types: Entity/record type counts.
        blocks: Block names (DXF).
        sample: A few canonical features.
        bounds: Initial bounds (declared header bounds or sample bounds).
        source_srid: SRID declared by side-files or metadata, if any.
        feature_count: Declared or counted feature total, if known.
        property_names: Attribute names.
        details: Format-specific extras (header fields, column mapping...).
    """

    format_key: str
    layers: tuple[str, ...] = ()
    entity_types: Mapping[str, int] = field(default_factory=dict)
    blocks: tuple[str, ...] = ()
    sample: tuple[CanonicalFeature, ...] = ()
    bounds: Rectangle | None = None
    source_srid: int | None = None
    feature_count: int | None = None
    property_names: tuple[str, ...] = ()
    details: Mapping[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class ParseResult:
    """A usable (possibly partial) dataset plus its statistics.

    Attributes:
        dataset: Canonical features and metadata.
        stats: Snapshot of counters, per-feature errors and warnings.
        truncated: ``max_features`` cut the dataset short.
        cancelled: The parse was abandoned via ``options.cancel``.
        srid_source: How the source SRID was chosen.
    """

    dataset: Dataset
    stats: StatsSnapshot
    truncated: bool = False
    cancelled: bool = False
    srid_source: str = "unresolved"

    @property
    def warnings(self) -> tuple[str, ...]:
        return self.stats.warnings


@dataclass(slots=True)
class ParseRun:
    """Mutable state of a single parse call."""

    data: bytes
    companions: Mapping[str, bytes]
    options: ParseOptions
    stats: ProcessorStats
    normalizer: FeatureNormalizer
    config: ImportConfig
    declared_srid: int | None = None
    details: dict[str, Any] = field(default_factory=dict)


ProgressCallback = Callable[[ProgressEvent], None]


class ChunkStream(Iterator[ChunkEvent]):
    """Chunk events of one parse; closing it releases the parser."""

    def __init__(self, events: Iterator[ChunkEvent], release: Callable[[], None]) -> None:
        self._events = events
        self._release = release

    def __next__(self) -> ChunkEvent:
        return next(self._events)

    def close(self) -> None:
        close = getattr(self._events, "close", None)
        if close is not None:
            close()
        self._release()


# ---------------------------------------------------------------------------
# Interface
# ---------------------------------------------------------------------------


class FormatParser(abc.ABC):
    """Abstract capability interface implemented once per format.

    Args:
        config: Import configuration (chunk sizes, features per chunk).
        budget: Shared memory budget.
        monitor: Shared memory monitor.
    """

    #: Registry key, set by each concrete parser.
    format_key: str = ""

    def __init__(
        self,
        *,
        config: ImportConfig | None = None,
        budget: MemoryBudget | None = None,
        monitor: MemoryMonitor | None = None,
    ) -> None:
        self._config = config or ImportConfig()
        self._budget = budget
        self._monitor = monitor
        self._in_flight = threading.Lock()

    @property
    def spec(self) -> FormatSpec:
        from geo_import.core.constants import FORMAT_REGISTRY

        return FORMAT_REGISTRY[self.format_key]

    @property
    def is_busy(self) -> bool:
        return self._in_flight.locked()

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def can_process(self, file_name: str, sample: bytes = b"") -> bool:
        """Extension match, plus a content sniff when *sample* is given."""
        _stem, ext = split_name(file_name)
        if ext not in self.spec.extensions:
            return False
        return self.spec.content_check(sample) if sample else True

    def analyze(self, data: bytes, companions: Mapping[str, bytes] | None = None) -> StructuralSummary:
        """Return a cheap structural summary of *data*.

        Raises:
            StructuralParseError: If headers or sections are malformed.
        """
        run = self._new_run(data, companions, ParseOptions())
        summary = self._analyze(run)
        logger.info(
            "analyze completed | format=%s | layers=%d | sample=%d",
            self.format_key,
            len(summary.layers),
            len(summary.sample),
        )
        return summary

    def parse(
        self,
        data: bytes,
        companions: Mapping[str, bytes] | None = None,
        options: ParseOptions | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ParseResult:
        """Fully convert *data* into a dataset.

        Raises:
            ParseInProgressError: If this parser already has a parse in flight.
            StructuralParseError: If headers or sections are malformed.
        """
        features: list[CanonicalFeature] = []
        bounds = BoundsAccumulator()
        options = options or ParseOptions()
        processor, run, events = self._start(data, companions, options, on_progress)
        for event in events:
            features.extend(event.features)
        bounds.merge(processor.summary.bounds)

        srid = resolve_source_srid(
            explicit=options.source_srid,
            declared=run.declared_srid,
            bounds=None if bounds.is_empty else bounds.result(),
        )
        source_srid = srid.srid
        if options.reproject and source_srid is not None:
            reprojector = Reprojector(source_srid, options.target_srid, stats=run.stats)
            dataset = reprojector.transform_dataset(Dataset.from_features(features, source_srid))
        else:
            dataset = Dataset.from_features(features, source_srid, bounds=bounds.result(source_srid))

        summary = processor.summary
        if summary.truncated:
            run.stats.record_warning(
                f"dataset truncated at max_features={options.max_features}"
            )
        snapshot = run.stats.snapshot()
        logger.info(
            "parse completed | format=%s | features=%d | errors=%d | srid=%s | srid_source=%s",
            self.format_key,
            len(dataset),
            len(snapshot.errors),
            source_srid,
            srid.source,
        )
        return ParseResult(
            dataset=dataset,
            stats=snapshot,
            truncated=summary.truncated,
            cancelled=summary.cancelled,
            srid_source=srid.source,
        )

    def stream(
        self,
        data: bytes,
        companions: Mapping[str, bytes] | None = None,
        options: ParseOptions | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> Iterator[ChunkEvent]:
        """Yield chunk events as the file converts.

        The parser stays busy until the returned stream is exhausted or
        closed; ``close()`` also frees the stream's buffers, even when no
        event was consumed yet.
        """
        _processor, _run, events = self._start(data, companions, options or ParseOptions(), on_progress)
        return events

    # ------------------------------------------------------------------
    # Plumbing
    # ------------------------------------------------------------------

    def _new_run(
        self,
        data: bytes,
        companions: Mapping[str, bytes] | None,
        options: ParseOptions,
        *,
        stats: ProcessorStats | None = None,
        flag_validity: Callable[[], bool] | None = None,
    ) -> ParseRun:
        stats = stats if stats is not None else ProcessorStats()
        return ParseRun(
            data=data,
            companions={k.lower(): v for k, v in (companions or {}).items()},
            options=options,
            stats=stats,
            normalizer=FeatureNormalizer(stats, flag_validity=flag_validity),
            config=self._config,
        )

    def _start(
        self,
        data: bytes,
        companions: Mapping[str, bytes] | None,
        options: ParseOptions,
        on_progress: ProgressCallback | None,
    ) -> tuple[StreamingProcessor, ParseRun, Iterator[ChunkEvent]]:
        if not self._in_flight.acquire(blocking=False):
            raise ParseInProgressError(f"a {self.format_key} parse is already in flight on this parser")

        try:
            channel = ProgressChannel()
            if on_progress is not None:
                channel.subscribe(on_progress)
            stats = ProcessorStats()
            processor = StreamingProcessor(
                budget=self._budget,
                monitor=self._monitor,
                progress=channel,
                stats=stats,
                chunk_reservation=self._reservation_size(),
                name=self.format_key,
            )
            run = self._new_run(
                data, companions, options, stats=stats, flag_validity=lambda: not processor.degraded
            )
            logger.info(
                "parse started | format=%s | bytes=%d | companions=%s",
                self.format_key,
                len(data),
                ",".join(sorted(run.companions)) or "-",
            )
            producer = self._produce(run)
        except BaseException:
            self._in_flight.release()
            raise

        released = False

        def _release() -> None:
            nonlocal released
            if not released:
                released = True
                self._in_flight.release()

        def _events() -> Iterator[ChunkEvent]:
            try:
                yield from processor.run(
                    producer,
                    srid=options.source_srid or run.declared_srid,
                    max_features=options.max_features,
                    cancel=options.cancel,
                )
            finally:
                _release()

        return processor, run, ChunkStream(_events(), _release)

    def _reservation_size(self) -> int:
        if self.spec.binary:
            return self._config.binary_read_cap_bytes
        return self._config.chunk_size_bytes

    def _chunk(self, run: ParseRun, raws: list, processed: int, total: int) -> ProducedChunk:
        """Normalise a batch of raw features into a produced chunk."""
        return ProducedChunk(run.normalizer.normalize_all(raws), processed, total)

    # ------------------------------------------------------------------
    # Format hooks
    # ------------------------------------------------------------------

    @abc.abstractmethod
    def _produce(self, run: ParseRun) -> Iterator[ProducedChunk]:
        """Yield produced chunks for *run*.

        Structural validation must happen before the first ``yield`` is
        reached *or* eagerly in a non-generator prologue so malformed
        files fail before any feature conversion.
        """

    @abc.abstractmethod
    def _analyze(self, run: ParseRun) -> StructuralSummary:
        """Return the structural summary for *run*."""

"""Import session: one user file selection from upload to import.

Ties the stages together in order:

1. ``resolve()``   group uploaded files into companion sets;
2. ``analyze()``   cheap structural summary of a main file
                   (``analyze_all()`` runs them on a bounded task pool);
3. ``parse()``     convert a main file into the *full* dataset
                   (never reprojected, never modified afterwards);
4. ``set_source_srid()`` explicit override when detection failed or was wrong;
5. ``preview()``   bounded, reprojected, simplified display copy;
6. ``selection``   which full-dataset ids to import;
7. ``import_selected()`` orchestrated import of the selected full features.

The session owns nothing process-wide: the memory budget, the memory
monitor and the import orchestrator are injected (or built from
``ImportConfig``).
"""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterable
from dataclasses import replace
from typing import TYPE_CHECKING

from geo_import.core.config import ImportConfig
from geo_import.core.exceptions import (
    ContractError,
    CoordinateSystemUnresolvedError,
    ParseInProgressError,
    UnsupportedFormatError,
)
from geo_import.parsers.base import ParseOptions, ParseResult, StructuralSummary
from geo_import.parsers.factory import parser_for_file
from geo_import.preview import PreviewDataset, PreviewManager, SamplingStrategy, SelectionState
from geo_import.resolver import CompanionFileSet, FileRef, ResolutionResult, resolve_companions
from geo_import.streaming.memory import MemoryBudget
from geo_import.streaming.task_pool import TaskPool

if TYPE_CHECKING:
    from geo_import.importer.orchestrator import BatchImportOrchestrator
    from geo_import.models.dataset import Dataset
    from geo_import.models.import_state import ImportOutcome
    from geo_import.parsers.base import ProgressCallback
    from geo_import.streaming.monitor import MemoryMonitor

logger = logging.getLogger("geo_import.session")


class ImportSession:
    """State of one file selection.

    Args:
        files: Uploaded files (with content loaded).
        config: Shared configuration.
        budget: Memory budget shared by parsers; built from *config* when omitted.
        monitor: Optional memory monitor; the caller owns its lifecycle.
        orchestrator: Import orchestrator; required only for ``import_selected``.
        preview_manager: Preview builder; built from *config* when omitted.
    """

    def __init__(
        self,
        files: Iterable[FileRef],
        *,
        config: ImportConfig | None = None,
        budget: MemoryBudget | None = None,
        monitor: MemoryMonitor | None = None,
        orchestrator: BatchImportOrchestrator | None = None,
        preview_manager: PreviewManager | None = None,
    ) -> None:
        self.config = config or ImportConfig()
        self.files = tuple(files)
        self.budget = budget or MemoryBudget(
            self.config.memory_budget_bytes,
            retry_attempts=self.config.memory_retry_attempts,
            retry_delay=self.config.memory_retry_delay_seconds,
            warning_ratio=self.config.monitor_warning_ratio,
        )
        self.monitor = monitor
        self.orchestrator = orchestrator
        self.preview_manager = preview_manager or PreviewManager(config=self.config)
        self._parse_lock = threading.Lock()
        self._resolution: ResolutionResult | None = None
        self._file_set: CompanionFileSet | None = None
        self._result: ParseResult | None = None
        self._full: Dataset | None = None
        self._srid_source = "unresolved"
        self._selection: SelectionState | None = None

    # ------------------------------------------------------------------
    # Resolution
    # ------------------------------------------------------------------

    def resolve(self) -> ResolutionResult:
        """Group the files into companion sets (cached).

        Raises:
            MissingRequiredCompanionError: If a main file lacks a required companion.
            FileTooLargeError: If a file exceeds its format's size limit.
        """
        if self._resolution is None:
            self._resolution = resolve_companions(self.files)
        return self._resolution

    def file_set(self, main_name: str | None = None) -> CompanionFileSet:
        """Return the companion set for *main_name* (or the only one).

        Raises:
            UnsupportedFormatError: If no supported main file was uploaded.
            ValueError: If *main_name* is ambiguous or unknown.
        """
        sets = self.resolve().sets
        if not sets:
            names = ", ".join(f.name for f in self.files) or "-"
            msg = f"No supported main file among: {names}"
            raise UnsupportedFormatError(msg)
        if main_name is None:
            if len(sets) > 1:
                msg = f"Several main files uploaded; choose one of: {', '.join(s.main.name for s in sets)}"
                raise ValueError(msg)
            return sets[0]
        for candidate in sets:
            if candidate.main.name == main_name:
                return candidate
        msg = f"Unknown main file: {main_name}"
        raise ValueError(msg)

    @staticmethod
    def _content(file_set: CompanionFileSet) -> bytes:
        if file_set.main.data is None:
            msg = f"File content not loaded: {file_set.main.name}"
            raise ValueError(msg)
        return file_set.main.data

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def analyze(self, main_name: str | None = None) -> StructuralSummary:
        file_set = self.file_set(main_name)
        parser = parser_for_file(file_set.main.name, config=self.config, budget=self.budget, monitor=self.monitor)
        return parser.analyze(self._content(file_set), file_set.companion_bytes())

    def analyze_all(self, *, max_workers: int = 2) -> dict[str, StructuralSummary]:
        """Analyze every main file concurrently, keyed by main file name.

        Each file gets its own parser instance, so the in-flight guards do
        not collide.  The first failure propagates once all tasks settle.
        """
        sets = self.resolve().sets
        with TaskPool(max_workers, max_pending=max(1, len(sets)), name="geo-import-analyze") as pool:
            handles = {s.main.name: pool.submit(s.main.name, self.analyze, s.main.name) for s in sets}
            return {name: handle.result() for name, handle in handles.items()}

    def parse(
        self,
        main_name: str | None = None,
        options: ParseOptions | None = None,
        on_progress: ProgressCallback | None = None,
    ) -> ParseResult:
        """Parse one main file into the session's full dataset.

        The full dataset is kept in source coordinates; ``options.reproject``
        is ignored here (reprojection belongs to the preview).  A new parse
        replaces the previous dataset and resets the selection to all
        features.

        Raises:
            ParseInProgressError: If a parse is already running in this session.
        """
        if not self._parse_lock.acquire(blocking=False):
            msg = "a parse is already in flight in this session"
            raise ParseInProgressError(msg)
        try:
            file_set = self.file_set(main_name)
            options = options or ParseOptions()
            if options.reproject:
                logger.info("session parse keeps source coordinates | file=%s", file_set.main.name)
                options = replace(options, reproject=False)
            parser = parser_for_file(
                file_set.main.name, config=self.config, budget=self.budget, monitor=self.monitor
            )
            result = parser.parse(self._content(file_set), file_set.companion_bytes(), options, on_progress)
        finally:
            self._parse_lock.release()

        self._file_set = file_set
        self._result = result
        self._full = result.dataset
        self._srid_source = result.srid_source
        self._selection = SelectionState(result.dataset, select_all=True)
        logger.info(
            "session parsed | file=%s | features=%d | srid=%s | srid_source=%s",
            file_set.main.name,
            len(result.dataset),
            result.dataset.metadata.source_srid,
            result.srid_source,
        )
        return result

    @property
    def is_parsing(self) -> bool:
        return self._parse_lock.locked()

    @property
    def result(self) -> ParseResult | None:
        return self._result

    @property
    def full_dataset(self) -> Dataset:
        if self._full is None:
            msg = "no dataset parsed yet"
            raise ContractError(msg, stage="session", code="NO_DATASET")
        return self._full

    # ------------------------------------------------------------------
    # Coordinate system
    # ------------------------------------------------------------------

    @property
    def source_srid(self) -> int | None:
        return self._full.metadata.source_srid if self._full is not None else None

    @property
    def srid_source(self) -> str:
        return self._srid_source

    def set_source_srid(self, srid: int) -> None:
        """Declare the source SRID explicitly (coordinates are untouched)."""
        if srid <= 0:
            msg = f"srid must be > 0, got {srid}"
            raise ValueError(msg)
        self._full = self.full_dataset.with_source_srid(srid)
        self._srid_source = "explicit"
        if self._selection is not None:
            keep = self._selection.selected_ids
            self._selection = SelectionState(self._full)
            self._selection.select(keep)
        logger.info("session srid set | srid=%d", srid)

    # ------------------------------------------------------------------
    # Preview and selection
    # ------------------------------------------------------------------

    def preview(
        self,
        *,
        target_srid: int | None = None,
        strategy: SamplingStrategy | None = None,
        simplify: bool = True,
    ) -> PreviewDataset:
        """Regenerate the display copy from the full dataset."""
        target = target_srid if target_srid is not None else self.config.default_target_srid
        return self.preview_manager.generate(
            self.full_dataset, target_srid=target, strategy=strategy, simplify=simplify
        )

    @property
    def selection(self) -> SelectionState:
        if self._selection is None:
            self._selection = SelectionState(self.full_dataset, select_all=True)
        return self._selection

    # ------------------------------------------------------------------
    # Import
    # ------------------------------------------------------------------

    def import_selected(
        self,
        *,
        project_file_id: str,
        collection_name: str,
        target_srid: int | None = None,
        batch_size: int | None = None,
    ) -> ImportOutcome:
        """Import the selected features of the full dataset.

        Raises:
            CoordinateSystemUnresolvedError: If the source SRID is unknown.
            ContractError: If nothing was parsed or no orchestrator is configured.
        """
        if self.orchestrator is None:
            msg = "no import orchestrator configured for this session"
            raise ContractError(msg, stage="session", code="NO_ORCHESTRATOR")
        full = self.full_dataset
        if full.metadata.source_srid is None:
            msg = "source coordinate system is unresolved; call set_source_srid() first"
            raise CoordinateSystemUnresolvedError(msg)
        return self.orchestrator.import_selection(
            full,
            self.selection.selected_ids,
            project_file_id=project_file_id,
            collection_name=collection_name,
            source_srid=full.metadata.source_srid,
            target_srid=target_srid if target_srid is not None else self.config.default_target_srid,
            batch_size=batch_size,
        )

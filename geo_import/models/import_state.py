"""Import run state models.

- ``ImportStatus``: status of the run as reported by the endpoint.
- ``OrchestratorState``: client-side orchestrator state machine.
- ``ImportBatchState``: counts and identifiers folded from progress rows.
- ``ImportOutcome``: what the orchestrator hands back to the caller.

``ImportBatchState`` is frozen; each progress row produces a new state
via ``apply``.  Counts never move backwards, so a stale poll result
arriving after a newer push event cannot regress progress.
"""

from __future__ import annotations

import enum
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING, Any

from geo_import.models.feature import ModelValidationError, _check_min

if TYPE_CHECKING:
    from geo_import.models.payloads import PerFeatureError, ProgressRecord


class ImportStatus(enum.Enum):
    """Endpoint-side status of an import run."""

    STARTED = "started"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @classmethod
    def parse(cls, raw: str | None) -> ImportStatus:
        """Map a raw status string, treating unknown values as processing."""
        try:
            return cls((raw or "").lower())
        except ValueError:
            return cls.PROCESSING


class OrchestratorState(enum.Enum):
    """Client-side orchestrator lifecycle.

    Values:
        IDLE:       Nothing submitted.
        SUBMITTING: Request in flight to the endpoint.
        STREAMING:  Following the push feed.
        POLLING:    Feed unavailable; reading the status row on an interval.
        COMPLETED:  Terminal success (``imported + failed == total``).
        FAILED:     Terminal failure or timeout.
    """

    IDLE = "idle"
    SUBMITTING = "submitting"
    STREAMING = "streaming"
    POLLING = "polling"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (OrchestratorState.COMPLETED, OrchestratorState.FAILED)


_TERMINAL = (ImportStatus.COMPLETED, ImportStatus.FAILED)


@dataclass(frozen=True, slots=True)
class ImportBatchState:
    """Progress of one import run.

    Attributes:
        total_features: Features submitted.
        imported_count: Features committed.
        failed_count: Features rejected.
        status: Endpoint-side status.
        collection_id: Created collection, once known.
        layer_id: Created layer, once known.
        per_feature_errors: Accumulated per-feature failures.
        error: Run-level error message (``metadata.error``).
    """

    total_features: int
    imported_count: int = 0
    failed_count: int = 0
    status: ImportStatus = ImportStatus.STARTED
    collection_id: str | None = None
    layer_id: str | None = None
    per_feature_errors: tuple[PerFeatureError, ...] = field(default_factory=tuple)
    error: str = ""

    def __post_init__(self) -> None:
        _check_min("ImportBatchState", "total_features", self.total_features, 0)
        _check_min("ImportBatchState", "imported_count", self.imported_count, 0)
        _check_min("ImportBatchState", "failed_count", self.failed_count, 0)

    @property
    def processed_count(self) -> int:
        return self.imported_count + self.failed_count

    @property
    def is_terminal(self) -> bool:
        return self.status in _TERMINAL

    @property
    def succeeded(self) -> bool:
        """Terminal success: completed with every feature accounted for."""
        return self.status is ImportStatus.COMPLETED and self.processed_count >= self.total_features

    @property
    def progress(self) -> float:
        if self.total_features == 0:
            return 1.0 if self.is_terminal else 0.0
        return min(1.0, self.processed_count / self.total_features)

    def apply(self, record: ProgressRecord) -> ImportBatchState:
        """Fold a progress row into a new state.

        Terminal states are sticky.  A non-terminal row whose counts cover
        the total is promoted to ``COMPLETED``.
        """
        if self.is_terminal:
            return self

        total = record.total_features or self.total_features
        imported = max(self.imported_count, record.imported_count)
        failed = max(self.failed_count, record.failed_count)
        status = ImportStatus.parse(record.status)
        if status not in _TERMINAL and total > 0 and imported + failed >= total:
            status = ImportStatus.COMPLETED

        # progress rows carry the cumulative error list
        errors = self.per_feature_errors
        new_errors = record.per_feature_errors
        if len(new_errors) > len(errors):
            errors = tuple(new_errors)

        return replace(
            self,
            total_features=total,
            imported_count=imported,
            failed_count=failed,
            status=status,
            collection_id=record.collection_id or self.collection_id,
            layer_id=record.layer_id or self.layer_id,
            per_feature_errors=errors,
            error=record.error or self.error,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_features": self.total_features,
            "imported_count": self.imported_count,
            "failed_count": self.failed_count,
            "status": self.status.value,
            "collection_id": self.collection_id,
            "layer_id": self.layer_id,
            "per_feature_errors": [e.model_dump() for e in self.per_feature_errors],
            "error": self.error,
        }


@dataclass(frozen=True, slots=True)
class ImportOutcome:
    """Result of one orchestrated import run.

    Attributes:
        state: Terminal orchestrator state.
        run_id: Endpoint run identifier (empty if submission failed).
        batch: Final (or partial) batch state.
        error: Structured error payload on failure or timeout.
        timed_out: Whether the hard ceiling ended tracking.
        poll_count: Status polls issued.
        event_count: Push events consumed.
        elapsed_seconds: Wall time from submit to terminal state.
        transitions: Every orchestrator state visited, in order.
    """

    state: OrchestratorState
    run_id: str
    batch: ImportBatchState
    error: dict[str, object] | None = None
    timed_out: bool = False
    poll_count: int = 0
    event_count: int = 0
    elapsed_seconds: float = 0.0
    transitions: tuple[OrchestratorState, ...] = ()

    def __post_init__(self) -> None:
        if not self.state.is_terminal:
            raise ModelValidationError(
                "ImportOutcome", "state", self.state, "must be a terminal state"
            )

    @property
    def succeeded(self) -> bool:
        return self.state is OrchestratorState.COMPLETED

    @property
    def imported_count(self) -> int:
        return self.batch.imported_count

    @property
    def failed_count(self) -> int:
        return self.batch.failed_count

    @property
    def collection_id(self) -> str | None:
        return self.batch.collection_id

    @property
    def layer_id(self) -> str | None:
        return self.batch.layer_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "state": self.state.value,
            "run_id": self.run_id,
            "batch": self.batch.to_dict(),
            "error": self.error,
            "timed_out": self.timed_out,
            "poll_count": self.poll_count,
            "event_count": self.event_count,
            "elapsed_seconds": self.elapsed_seconds,
        }

"""Running processor statistics.

``ProcessorStats`` is mutated incrementally while a file streams through
a parser and exposes a read-only ``StatsSnapshot`` to callers.  Per-feature
problems are recorded here as ``StatsError`` entries instead of being
raised, so one bad record never aborts a parse.
"""

from __future__ import annotations

import threading
from collections import Counter
from dataclasses import dataclass, field
from typing import Any

# ---------------------------------------------------------------------------
# Error type tags
# ---------------------------------------------------------------------------

UNSUPPORTED_ENTITY = "unsupported_entity"
INVALID_COORDINATES = "invalid_coordinates"
MISSING_BLOCK = "missing_block"
CIRCULAR_BLOCK = "circular_block"
INVALID_GEOMETRY = "invalid_geometry"
TRANSFORM_FAILED = "transform_failed"
INVALID_ROW = "invalid_row"
MEMORY_PRESSURE = "memory_pressure"


@dataclass(frozen=True, slots=True)
class StatsError:
    """One per-feature problem.

    Attributes:
        type: Error type tag (e.g. ``"missing_block"``).
        message: Human-readable description.
        details: Context such as record index, entity handle or block name.
    """

    type: str
    message: str
    details: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {"type": self.type, "message": self.message, "details": dict(self.details)}


@dataclass(frozen=True, slots=True)
class StatsSnapshot:
    """Immutable view of ``ProcessorStats`` at one point in time."""

    feature_count: int
    per_type_counts: dict[str, int]
    failed_transformations: int
    errors: tuple[StatsError, ...]
    warnings: tuple[str, ...]

    def errors_of(self, error_type: str) -> list[StatsError]:
        """Return the recorded errors carrying *error_type*."""
        return [e for e in self.errors if e.type == error_type]

    def to_dict(self) -> dict[str, Any]:
        return {
            "feature_count": self.feature_count,
            "per_type_counts": dict(self.per_type_counts),
            "failed_transformations": self.failed_transformations,
            "errors": [e.to_dict() for e in self.errors],
            "warnings": list(self.warnings),
        }


class ProcessorStats:
    """Thread-safe running counters for one parse run."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._feature_count = 0
        self._per_type: Counter[str] = Counter()
        self._failed_transformations = 0
        self._errors: list[StatsError] = []
        self._warnings: list[str] = []

    def record_feature(self, geometry_type: str) -> None:
        with self._lock:
            self._feature_count += 1
            self._per_type[geometry_type] += 1

    def record_error(self, error_type: str, message: str, **details: Any) -> StatsError:
        """Append a per-feature error and return it."""
        error = StatsError(error_type, message, details)
        with self._lock:
            self._errors.append(error)
            if error_type == TRANSFORM_FAILED:
                self._failed_transformations += 1
        return error

    def record_warning(self, message: str) -> None:
        with self._lock:
            self._warnings.append(message)

    @property
    def feature_count(self) -> int:
        return self._feature_count

    @property
    def error_count(self) -> int:
        return len(self._errors)

    def snapshot(self) -> StatsSnapshot:
        with self._lock:
            return StatsSnapshot(
                feature_count=self._feature_count,
                per_type_counts=dict(self._per_type),
                failed_transformations=self._failed_transformations,
                errors=tuple(self._errors),
                warnings=tuple(self._warnings),
            )

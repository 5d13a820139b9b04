"""Data models and schemas.

Defines the data structures used throughout the pipeline:
- CanonicalFeature / Geometry: format-independent feature records
- Dataset / DatasetMetadata: full and preview feature sets
- ProcessorStats: running per-parse counters and per-feature errors
- ImportBatchState / ImportOutcome: import run progress and results
- payloads: pydantic contracts for the import endpoint
"""

from geo_import.models.dataset import Dataset, DatasetMetadata, describe_features
from geo_import.models.feature import (
    CanonicalFeature,
    Geometry,
    GeometryType,
    ModelValidationError,
    iter_positions,
    point,
)
from geo_import.models.import_state import (
    ImportBatchState,
    ImportOutcome,
    ImportStatus,
    OrchestratorState,
)
from geo_import.models.stats import ProcessorStats, StatsError, StatsSnapshot

__all__ = [
    "CanonicalFeature",
    "Dataset",
    "DatasetMetadata",
    "Geometry",
    "GeometryType",
    "ImportBatchState",
    "ImportOutcome",
    "ImportStatus",
    "ModelValidationError",
    "OrchestratorState",
    "ProcessorStats",
    "StatsError",
    "StatsSnapshot",
    "describe_features",
    "iter_positions",
    "point",
]

"""Preview/full dataset duality.

The full dataset produced by a parser is authoritative and never
modified.  ``PreviewManager`` derives a disposable preview from it:

1. pick at most ``max_features`` features (truncate, or sample evenly,
   randomly or one per grid cell so the spatial distribution survives);
2. optionally reproject the picked copies for display;
3. optionally simplify line and polygon geometries at a small tolerance;
4. compute metadata from the picked subset only.

Feature ids are carried through unchanged, so ``SelectionState`` (which
tracks ids of the full dataset) stays valid however often the preview is
regenerated.
"""

from __future__ import annotations

import enum
import logging
import math
from collections import Counter
from collections.abc import Iterable
from dataclasses import dataclass, field, replace
from typing import TYPE_CHECKING

import numpy as np

from geo_import.core.config import ImportConfig
from geo_import.crs.reproject import Reprojector
from geo_import.models.dataset import Dataset
from geo_import.models.feature import CanonicalFeature, Geometry, GeometryType, ModelValidationError
from geo_import.streaming.bounds import compute_bounds

if TYPE_CHECKING:
    from geo_import.models.stats import ProcessorStats

logger = logging.getLogger("geo_import.preview")

_SIMPLIFIABLE = frozenset(
    {
        GeometryType.LINE_STRING,
        GeometryType.POLYGON,
        GeometryType.MULTI_LINE_STRING,
        GeometryType.MULTI_POLYGON,
    }
)


class SamplingStrategy(enum.Enum):
    """How a preview picks features when the full set exceeds the cap."""

    FIRST = "first"
    EVENLY = "evenly"
    RANDOM = "random"
    GRID = "grid"


# ---------------------------------------------------------------------------
# Sampling
# ---------------------------------------------------------------------------


def _anchor(feature: CanonicalFeature) -> tuple[float, float]:
    first = next(feature.geometry.positions())
    return float(first[0]), float(first[1])


def sample_indices(
    features: tuple[CanonicalFeature, ...],
    limit: int,
    strategy: SamplingStrategy,
    *,
    seed: int = 0,
) -> list[int]:
    """Return sorted indices of at most *limit* features."""
    count = len(features)
    if count <= limit:
        return list(range(count))
    if strategy is SamplingStrategy.FIRST:
        return list(range(limit))
    if strategy is SamplingStrategy.EVENLY:
        picked = np.unique(np.linspace(0, count - 1, num=limit).round().astype(int))
        return picked.tolist()
    if strategy is SamplingStrategy.RANDOM:
        rng = np.random.default_rng(seed)
        return sorted(rng.choice(count, size=limit, replace=False).tolist())

    # GRID: first feature per occupied cell of a square grid over the bounds
    anchors = np.array([_anchor(f) for f in features], dtype=float)
    min_x, min_y = anchors.min(axis=0)
    max_x, max_y = anchors.max(axis=0)
    cells_per_side = max(1, math.isqrt(limit))
    span_x = (max_x - min_x) or 1.0
    span_y = (max_y - min_y) or 1.0
    cx = np.minimum(((anchors[:, 0] - min_x) / span_x * cells_per_side).astype(int), cells_per_side - 1)
    cy = np.minimum(((anchors[:, 1] - min_y) / span_y * cells_per_side).astype(int), cells_per_side - 1)
    _cells, first_index = np.unique(cy * cells_per_side + cx, return_index=True)
    return sorted(first_index.tolist())[:limit]


def simplify_geometry(geometry: Geometry, tolerance: float) -> Geometry:
    """Topology-preserving simplification of line/polygon geometries."""
    if tolerance <= 0 or geometry.type not in _SIMPLIFIABLE:
        return geometry

    from shapely.errors import GEOSException
    from shapely.geometry import mapping, shape

    try:
        geom = shape(geometry.to_dict())
    except (ValueError, TypeError, GEOSException) as exc:
        # Short paths and open rings stay as they are.
        logger.debug("simplify skipped | type=%s | error=%s", geometry.type_name, exc)
        return geometry
    simplified = geom.simplify(tolerance, preserve_topology=True)
    if simplified.is_empty:
        return geometry
    try:
        return Geometry.from_dict(dict(mapping(simplified)))
    except ModelValidationError:
        return geometry


# ---------------------------------------------------------------------------
# Preview
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class PreviewDataset:
    """A bounded display copy of a full dataset.

    Attributes:
        dataset: Picked (and possibly reprojected/simplified) features with
            metadata computed from them.
        source_count: Feature count of the full dataset.
        strategy: Strategy used when sampling was needed.
        sampled: Whether the full set exceeded the cap.
        simplified: Whether simplification was applied.
        type_distribution: Geometry type counts of the preview.
    """

    dataset: Dataset
    source_count: int
    strategy: SamplingStrategy
    sampled: bool
    simplified: bool
    type_distribution: dict[str, int] = field(default_factory=dict)

    @property
    def feature_count(self) -> int:
        return len(self.dataset)

    @property
    def ids(self) -> frozenset[int]:
        return self.dataset.ids

    def to_dict(self) -> dict[str, object]:
        return {
            "source_count": self.source_count,
            "feature_count": self.feature_count,
            "strategy": self.strategy.value,
            "sampled": self.sampled,
            "simplified": self.simplified,
            "type_distribution": dict(self.type_distribution),
            "metadata": self.dataset.metadata.to_dict(),
        }


class PreviewManager:
    """Derive preview datasets from a full dataset.

    Args:
        max_features: Preview cap.
        simplify_tolerance: Simplification tolerance in target units (0 disables).
        strategy: Default sampling strategy.
        seed: Seed for the random strategy.
        config: Source of defaults for the cap and tolerance.
    """

    def __init__(
        self,
        *,
        max_features: int | None = None,
        simplify_tolerance: float | None = None,
        strategy: SamplingStrategy = SamplingStrategy.EVENLY,
        seed: int = 0,
        config: ImportConfig | None = None,
    ) -> None:
        config = config or ImportConfig()
        self.max_features = max_features if max_features is not None else config.preview_max_features
        self.simplify_tolerance = (
            simplify_tolerance if simplify_tolerance is not None else config.preview_simplify_tolerance
        )
        if self.max_features <= 0:
            msg = f"max_features must be > 0, got {self.max_features}"
            raise ValueError(msg)
        self.strategy = strategy
        self.seed = seed

    def generate(
        self,
        full: Dataset,
        *,
        target_srid: int | None = None,
        strategy: SamplingStrategy | None = None,
        simplify: bool = True,
        stats: ProcessorStats | None = None,
    ) -> PreviewDataset:
        """Build a preview of *full*.

        Args:
            full: The authoritative dataset (left untouched).
            target_srid: Reproject the preview copy into this SRID.  Ignored
                when the full dataset's SRID is unknown.
            strategy: Override the default sampling strategy.
            simplify: Apply simplification when a tolerance is configured.
            stats: Receives ``transform_failed`` records from reprojection.
        """
        strategy = strategy or self.strategy
        indices = sample_indices(full.features, self.max_features, strategy, seed=self.seed)
        picked = [full.features[i] for i in indices]

        source_srid = full.metadata.source_srid
        srid = source_srid
        if target_srid is not None and source_srid is not None and target_srid != source_srid:
            reprojector = Reprojector(source_srid, target_srid, stats=stats)
            picked = reprojector.transform_features(picked)
            srid = target_srid

        do_simplify = simplify and self.simplify_tolerance > 0
        if do_simplify:
            picked = [
                replace(f, geometry=simplify_geometry(f.geometry, self.simplify_tolerance)) for f in picked
            ]

        dataset = Dataset.from_features(picked, srid, bounds=compute_bounds(picked, srid))
        distribution = dict(Counter(f.geometry_type for f in picked))
        sampled = len(full) > self.max_features
        logger.info(
            "preview generated | source=%d | preview=%d | strategy=%s | srid=%s | simplified=%s",
            len(full),
            len(picked),
            strategy.value,
            srid,
            do_simplify,
        )
        return PreviewDataset(
            dataset=dataset,
            source_count=len(full),
            strategy=strategy,
            sampled=sampled,
            simplified=do_simplify,
            type_distribution=distribution,
        )


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


class SelectionState:
    """Which full-dataset feature ids are chosen for import.

    Unknown ids are ignored, so ids taken from any preview generation are
    always safe to pass in.
    """

    def __init__(self, full: Dataset, *, select_all: bool = False) -> None:
        self._full = full
        self._selected: set[int] = set(full.ids) if select_all else set()

    @property
    def dataset(self) -> Dataset:
        return self._full

    @property
    def selected_ids(self) -> frozenset[int]:
        return frozenset(self._selected)

    def __len__(self) -> int:
        return len(self._selected)

    def __contains__(self, feature_id: object) -> bool:
        return feature_id in self._selected

    def select(self, ids: Iterable[int]) -> int:
        """Add *ids*; return how many were newly selected."""
        known = self._full.ids
        added = {i for i in ids if i in known} - self._selected
        self._selected |= added
        return len(added)

    def deselect(self, ids: Iterable[int]) -> int:
        """Remove *ids*; return how many were deselected."""
        removed = self._selected & set(ids)
        self._selected -= removed
        return len(removed)

    def toggle(self, feature_id: int) -> bool:
        """Flip one id; return whether it is now selected."""
        if feature_id in self._selected:
            self._selected.discard(feature_id)
            return False
        return self.select([feature_id]) == 1

    def select_all(self) -> None:
        self._selected = set(self._full.ids)

    def clear(self) -> None:
        self._selected.clear()

    def selected_features(self) -> list[CanonicalFeature]:
        """Selected features from the full dataset, in id order."""
        return [self._full.get(i) for i in sorted(self._selected)]  # type: ignore[misc]

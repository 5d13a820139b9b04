"""Dataset and dataset metadata models.

Two ``Dataset`` instances coexist per import session: the full dataset
(source-SRID coordinates, never mutated after parse) and a disposable
preview dataset derived from it.  Features are held in a tuple so the
full dataset cannot be edited in place.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from geo_import.streaming.bounds import compute_bounds

if TYPE_CHECKING:
    from collections.abc import Iterable

    from geo_import.core.constants import Rectangle
    from geo_import.models.feature import CanonicalFeature


@dataclass(frozen=True, slots=True)
class DatasetMetadata:
    """Summary of a dataset.

    Attributes:
        source_srid: SRID of the coordinates (``None`` while unresolved).
        geometry_types: Geometry type names present.
        bounds: ``(minX, minY, maxX, maxY)`` in ``source_srid`` units.
        property_names: Property keys in first-seen order.
        feature_count: Number of features.
    """

    source_srid: int | None
    geometry_types: frozenset[str]
    bounds: Rectangle
    property_names: tuple[str, ...]
    feature_count: int

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_srid": self.source_srid,
            "geometry_types": sorted(self.geometry_types),
            "bounds": list(self.bounds),
            "property_names": list(self.property_names),
            "feature_count": self.feature_count,
        }


def describe_features(
    features: Iterable[CanonicalFeature],
    source_srid: int | None,
    *,
    bounds: Rectangle | None = None,
) -> DatasetMetadata:
    """Compute metadata for *features*.

    Args:
        features: Features to describe.
        source_srid: SRID recorded on the metadata.
        bounds: Precomputed bounds (e.g. from a streaming accumulator).
    """
    items = list(features)
    types: set[str] = set()
    names: dict[str, None] = {}
    for feature in items:
        types.add(feature.geometry_type)
        for key in feature.properties:
            names.setdefault(key, None)
    return DatasetMetadata(
        source_srid=source_srid,
        geometry_types=frozenset(types),
        bounds=bounds if bounds is not None else compute_bounds(items, source_srid),
        property_names=tuple(names),
        feature_count=len(items),
    )


@dataclass(frozen=True, slots=True)
class Dataset:
    """Features plus metadata."""

    features: tuple[CanonicalFeature, ...]
    metadata: DatasetMetadata
    _index: dict[int, CanonicalFeature] = field(init=False, repr=False, compare=False)

    def __post_init__(self) -> None:
        object.__setattr__(self, "_index", {f.id: f for f in self.features})

    @classmethod
    def from_features(
        cls,
        features: Iterable[CanonicalFeature],
        source_srid: int | None,
        *,
        bounds: Rectangle | None = None,
    ) -> Dataset:
        items = tuple(features)
        return cls(items, describe_features(items, source_srid, bounds=bounds))

    def __len__(self) -> int:
        return len(self.features)

    @property
    def ids(self) -> frozenset[int]:
        return frozenset(self._index)

    def get(self, feature_id: int) -> CanonicalFeature | None:
        return self._index.get(feature_id)

    def with_source_srid(self, srid: int) -> Dataset:
        """Return a copy whose metadata declares *srid* (coordinates untouched)."""
        metadata = DatasetMetadata(
            source_srid=srid,
            geometry_types=self.metadata.geometry_types,
            bounds=self.metadata.bounds,
            property_names=self.metadata.property_names,
            feature_count=self.metadata.feature_count,
        )
        return Dataset(self.features, metadata)

    def to_feature_collection(self) -> dict[str, Any]:
        """Serialise to a GeoJSON FeatureCollection."""
        return {
            "type": "FeatureCollection",
            "features": [f.to_dict() for f in self.features],
            "metadata": self.metadata.to_dict(),
        }

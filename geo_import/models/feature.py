"""Canonical geometry and feature models.

A ``CanonicalFeature`` is the format-independent output of every parser:
a stable integer id, a ``Geometry`` with numeric coordinate arrays, an
insertion-ordered property map and optional validation flags.  It is the
unit that flows through bounds accumulation, preview derivation,
reprojection and the import request.

Design notes:
- All models are frozen dataclasses; derived copies are produced with
  ``dataclasses.replace`` rather than mutation.
- Coordinates are nested lists of position tuples, matching the GeoJSON
  nesting depth of each geometry type.
- A geometry with empty coordinates cannot be constructed.
"""

from __future__ import annotations

import enum
import math
from collections.abc import Iterator
from dataclasses import dataclass, field
from typing import Any

from geo_import.core.exceptions import GeoImportError

Position = tuple[float, ...]

# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------


class ModelValidationError(ValueError, GeoImportError):
    """Raised when a domain model is constructed with invalid field values.

    Attributes:
        model: Name of the model class that failed validation.
        field_name: The field that violated the invariant.
        value: The invalid value.
    """

    default_stage = "model_validation"
    default_code = "MODEL_VALIDATION_FAILED"

    def __init__(self, model: str, field_name: str, value: object, message: str) -> None:
        self.model = model
        self.field_name = field_name
        self.value = value
        formatted = f"{model}.{field_name}={value!r}: {message}"
        GeoImportError.__init__(self, formatted)


def _check_min(model: str, field_name: str, value: float | int, lo: float | int) -> None:
    """Raise `ModelValidationError` if *value* is below *lo*."""
    if value < lo:
        raise ModelValidationError(model, field_name, value, f"must be >= {lo}")


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------


class GeometryType(enum.Enum):
    """Canonical geometry variants (GeoJSON names)."""

    POINT = "Point"
    LINE_STRING = "LineString"
    POLYGON = "Polygon"
    MULTI_POINT = "MultiPoint"
    MULTI_LINE_STRING = "MultiLineString"
    MULTI_POLYGON = "MultiPolygon"
    GEOMETRY_COLLECTION = "GeometryCollection"


# Nesting depth of the coordinate array for each type: a Point is a
# position (0), a LineString a list of positions (1), and so on.
COORDINATE_DEPTH: dict[GeometryType, int] = {
    GeometryType.POINT: 0,
    GeometryType.LINE_STRING: 1,
    GeometryType.MULTI_POINT: 1,
    GeometryType.POLYGON: 2,
    GeometryType.MULTI_LINE_STRING: 2,
    GeometryType.MULTI_POLYGON: 3,
}


# ---------------------------------------------------------------------------
# Geometry
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class Geometry:
    """A canonical geometry.

    Attributes:
        type: Geometry variant.
        coordinates: Nested coordinate arrays; a bare position for points.
            Unused (``None``) for geometry collections.
        geometries: Member geometries of a ``GeometryCollection``.
    """

    type: GeometryType
    coordinates: Any = None
    geometries: tuple[Geometry, ...] = ()

    def __post_init__(self) -> None:
        if self.type is GeometryType.GEOMETRY_COLLECTION:
            if not self.geometries:
                raise ModelValidationError(
                    "Geometry", "geometries", self.geometries, "collection must not be empty"
                )
            return
        if not _has_positions(self.coordinates, COORDINATE_DEPTH[self.type]):
            raise ModelValidationError(
                "Geometry", "coordinates", self.coordinates, f"{self.type.value} must not be empty"
            )

    @property
    def type_name(self) -> str:
        return self.type.value

    def positions(self) -> Iterator[Position]:
        """Yield every position in the geometry, recursing into collections."""
        yield from iter_positions(self)

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a GeoJSON geometry object."""
        if self.type is GeometryType.GEOMETRY_COLLECTION:
            return {
                "type": self.type.value,
                "geometries": [g.to_dict() for g in self.geometries],
            }
        return {"type": self.type.value, "coordinates": _to_lists(self.coordinates)}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Geometry:
        """Deserialise a GeoJSON geometry object.

        Raises:
            ModelValidationError: If the type is unknown or coordinates are empty.
            TypeError: If the payload is not a mapping.
        """
        if not isinstance(data, dict):
            msg = f"geometry must be a dict, got {type(data).__name__}"
            raise TypeError(msg)
        raw_type = data.get("type")
        try:
            geom_type = GeometryType(raw_type)
        except ValueError:
            raise ModelValidationError("Geometry", "type", raw_type, "unknown geometry type") from None

        if geom_type is GeometryType.GEOMETRY_COLLECTION:
            members = data.get("geometries") or []
            return cls(geom_type, geometries=tuple(cls.from_dict(m) for m in members))

        coords = _to_tuples(data.get("coordinates"), COORDINATE_DEPTH[geom_type])
        return cls(geom_type, coords)


def point(x: float, y: float, z: float | None = None) -> Geometry:
    """Build a Point geometry."""
    position = (float(x), float(y)) if z is None else (float(x), float(y), float(z))
    return Geometry(GeometryType.POINT, position)


def iter_positions(geometry: Geometry) -> Iterator[Position]:
    """Yield every position of *geometry*, recursing into collections."""
    if geometry.type is GeometryType.GEOMETRY_COLLECTION:
        for member in geometry.geometries:
            yield from iter_positions(member)
        return
    yield from _walk(geometry.coordinates, COORDINATE_DEPTH[geometry.type])


def is_finite_position(position: Position) -> bool:
    """Whether every ordinate of *position* is a finite number."""
    return len(position) >= 2 and all(math.isfinite(v) for v in position)


def _walk(coords: Any, depth: int) -> Iterator[Position]:
    if depth == 0:
        yield coords
        return
    for item in coords:
        yield from _walk(item, depth - 1)


def _has_positions(coords: Any, depth: int) -> bool:
    if coords is None:
        return False
    if depth == 0:
        return len(coords) >= 2
    if not coords:
        return False
    return all(_has_positions(item, depth - 1) for item in coords)


def _to_tuples(coords: Any, depth: int) -> Any:
    if coords is None:
        return None
    if depth == 0:
        return tuple(float(v) for v in coords)
    return [_to_tuples(item, depth - 1) for item in coords]


def _to_lists(coords: Any) -> Any:
    if isinstance(coords, tuple):
        return list(coords)
    return [_to_lists(item) for item in coords]


# ---------------------------------------------------------------------------
# Feature
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CanonicalFeature:
    """A normalised geometry + properties record.

    Attributes:
        id: Identifier, stable within one parse run.
        geometry: Canonical geometry (never empty).
        properties: Insertion-ordered attribute map.
        validation_flags: Geometry issues flagged (not repaired) at parse time.
    """

    id: int
    geometry: Geometry
    properties: dict[str, Any] = field(default_factory=dict)
    validation_flags: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _check_min("CanonicalFeature", "id", self.id, 0)

    @property
    def geometry_type(self) -> str:
        return self.geometry.type.value

    def to_dict(self) -> dict[str, Any]:
        """Serialise to a GeoJSON Feature with a numeric ``id``."""
        data: dict[str, Any] = {
            "type": "Feature",
            "id": self.id,
            "geometry": self.geometry.to_dict(),
            "properties": dict(self.properties),
        }
        if self.validation_flags:
            data["validation_flags"] = list(self.validation_flags)
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any], *, default_id: int = 0) -> CanonicalFeature:
        """Deserialise a GeoJSON Feature.

        Raises:
            TypeError: If properties are not a mapping.
            ModelValidationError: If the geometry is missing or empty.
        """
        props = data.get("properties") or {}
        if not isinstance(props, dict):
            msg = f"properties must be a dict, got {type(props).__name__}"
            raise TypeError(msg)
        raw_geometry = data.get("geometry")
        if raw_geometry is None:
            raise ModelValidationError("CanonicalFeature", "geometry", None, "must not be null")
        try:
            feature_id = int(data.get("id", default_id))
        except (TypeError, ValueError):
            feature_id = default_id
        return cls(
            id=feature_id,
            geometry=Geometry.from_dict(raw_geometry),
            properties=dict(props),
            validation_flags=tuple(data.get("validation_flags") or ()),
        )

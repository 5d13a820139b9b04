"""Geometry validity flagging shared by all parsers.

Responsibilities:
- Coordinate finiteness checks
- Shapely ``is_valid`` / ``explain_validity`` flagging

Flagging only: invalid geometries are kept and marked, never repaired.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from geo_import.models.feature import GeometryType, is_finite_position, iter_positions

if TYPE_CHECKING:
    from geo_import.models.feature import Geometry

logger = logging.getLogger("geo_import.parsers.validation")

FLAG_INVALID_GEOMETRY = "invalid_geometry"
FLAG_SELF_INTERSECTION = "self_intersection"
FLAG_RING_NOT_CLOSED = "ring_not_closed"
FLAG_TOO_FEW_POINTS = "too_few_points"

# Shapely validity only matters for areal and linear types.
_CHECKED_TYPES = frozenset(
    {
        GeometryType.POLYGON,
        GeometryType.MULTI_POLYGON,
        GeometryType.LINE_STRING,
        GeometryType.MULTI_LINE_STRING,
    }
)


def all_finite(geometry: Geometry) -> bool:
    """Whether every position of *geometry* is finite."""
    return all(is_finite_position(p) for p in iter_positions(geometry))


def _ring_flags(geometry: Geometry) -> list[str]:
    rings: list = []
    paths: list = []
    if geometry.type is GeometryType.POLYGON:
        rings = list(geometry.coordinates)
    elif geometry.type is GeometryType.MULTI_POLYGON:
        rings = [ring for poly in geometry.coordinates for ring in poly]
    elif geometry.type is GeometryType.LINE_STRING:
        paths = [geometry.coordinates]
    elif geometry.type is GeometryType.MULTI_LINE_STRING:
        paths = list(geometry.coordinates)
    flags: list[str] = []
    if any(len(path) < 2 for path in paths):
        flags.append(FLAG_TOO_FEW_POINTS)
    for ring in rings:
        if len(ring) < 4:
            flags.append(FLAG_TOO_FEW_POINTS)
        elif tuple(ring[0][:2]) != tuple(ring[-1][:2]):
            flags.append(FLAG_RING_NOT_CLOSED)
    return flags


def validity_flags(geometry: Geometry) -> tuple[str, ...]:
    """Return validation flags for *geometry* (empty when valid)."""
    if geometry.type not in _CHECKED_TYPES:
        return ()

    ring_flags = _ring_flags(geometry)
    if ring_flags:
        # shapely refuses to build rings or paths that are open or too short.
        return tuple(dict.fromkeys([FLAG_INVALID_GEOMETRY, *ring_flags]))

    from shapely.errors import GEOSException
    from shapely.geometry import shape
    from shapely.validation import explain_validity

    try:
        geom = shape(geometry.to_dict())
    except (ValueError, TypeError, GEOSException) as exc:
        logger.debug("shapely could not build geometry | error=%s", exc)
        return (FLAG_INVALID_GEOMETRY,)

    if geom.is_valid:
        return ()

    reason = explain_validity(geom)
    flags = [FLAG_INVALID_GEOMETRY]
    if "Self-intersection" in reason or "Ring Self-intersection" in reason:
        flags.append(FLAG_SELF_INTERSECTION)
    logger.debug("invalid geometry flagged | type=%s | reason=%s", geometry.type_name, reason)
    return tuple(flags)

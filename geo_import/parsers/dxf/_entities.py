"""DXF entity → canonical geometry conversion.

Curves are tessellated at a fixed angular resolution: circles and full
ellipses into closed 64-segment rings, arcs into 32-segment chains.
Splines are approximated by their control polygon.
"""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from typing import Any

from geo_import.models.feature import GeometryType
from geo_import.parsers.dxf._structure import DxfEntity

CIRCLE_SEGMENTS = 64
ARC_SEGMENTS = 32
ELLIPSE_SEGMENTS = 64

POLYLINE_CLOSED = 1
# 3D mesh / polyface polylines carry faces, not a path
_POLYLINE_MESH = 16 | 64

_TWO_PI = 2.0 * math.pi


class UnsupportedEntityError(ValueError):
    def __init__(self, entity_type: str) -> None:
        self.entity_type = entity_type
        super().__init__(f"unsupported entity type {entity_type}")


@dataclass(slots=True)
class Shape:
    """Geometry converted from one entity, in drawing coordinates."""

    geometry_type: GeometryType
    coordinates: Any
    properties: dict[str, Any] = field(default_factory=dict)


# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------


def path_shape(vertices: list[list[float]], closed: bool) -> Shape | None:
    """Closed paths with three or more distinct vertices become polygons."""
    if len(vertices) < 2:
        return None
    first, last = vertices[0], vertices[-1]
    explicitly_closed = len(vertices) > 3 and first[:2] == last[:2]
    distinct = len(vertices) - 1 if explicitly_closed else len(vertices)
    if (closed or explicitly_closed) and distinct >= 3:
        ring = list(vertices) if explicitly_closed else [*vertices, list(first)]
        return Shape(GeometryType.POLYGON, [ring])
    return Shape(GeometryType.LINE_STRING, list(vertices))


def _arc_points(cx: float, cy: float, radius: float, start: float, end: float, segments: int) -> list[list[float]]:
    step = (end - start) / segments
    return [
        [cx + radius * math.cos(start + i * step), cy + radius * math.sin(start + i * step)]
        for i in range(segments + 1)
    ]


# ---------------------------------------------------------------------------
# Per-type converters
# ---------------------------------------------------------------------------


def _point(entity: DxfEntity) -> list[Shape]:
    return [Shape(GeometryType.POINT, entity.point(10))]


def _line(entity: DxfEntity) -> list[Shape]:
    return [Shape(GeometryType.LINE_STRING, [entity.point(10), entity.point(11)])]


def _lwpolyline(entity: DxfEntity) -> list[Shape]:
    closed = bool(entity.integer(70) & POLYLINE_CLOSED)
    shape = path_shape(entity.points(10), closed)
    return [shape] if shape else []


def _polyline(entity: DxfEntity) -> list[Shape]:
    flags = entity.integer(70)
    if flags & _POLYLINE_MESH:
        raise UnsupportedEntityError("POLYLINE(mesh)")
    vertices = [v.point(10)[:2] for v in entity.children if v.type == "VERTEX"]
    shape = path_shape(vertices, bool(flags & POLYLINE_CLOSED))
    return [shape] if shape else []


def _circle(entity: DxfEntity) -> list[Shape]:
    cx, cy = entity.point(10)[:2]
    radius = entity.number(40)
    if radius <= 0:
        return []
    ring = _arc_points(cx, cy, radius, 0.0, _TWO_PI, CIRCLE_SEGMENTS)
    ring[-1] = list(ring[0])
    return [Shape(GeometryType.POLYGON, [ring], {"radius": radius})]


def _arc(entity: DxfEntity) -> list[Shape]:
    cx, cy = entity.point(10)[:2]
    radius = entity.number(40)
    if radius <= 0:
        return []
    start = entity.number(50)
    end = entity.number(51, 360.0)
    if end <= start:
        end += 360.0
    points = _arc_points(cx, cy, radius, math.radians(start), math.radians(end), ARC_SEGMENTS)
    return [Shape(GeometryType.LINE_STRING, points, {"radius": radius})]


def _ellipse(entity: DxfEntity) -> list[Shape]:
    cx, cy = entity.point(10)[:2]
    mx, my = entity.point(11)[:2]
    ratio = entity.number(40, 1.0)
    start = entity.number(41, 0.0)
    end = entity.number(42, _TWO_PI)
    if end <= start:
        end += _TWO_PI
    full = math.isclose(end - start, _TWO_PI, abs_tol=1e-9)
    # minor axis: major rotated 90 degrees, scaled by ratio
    nx, ny = -my * ratio, mx * ratio
    step = (end - start) / ELLIPSE_SEGMENTS
    points = []
    for i in range(ELLIPSE_SEGMENTS + 1):
        t = start + i * step
        c, s = math.cos(t), math.sin(t)
        points.append([cx + c * mx + s * nx, cy + c * my + s * ny])
    if full:
        points[-1] = list(points[0])
        return [Shape(GeometryType.POLYGON, [points])]
    return [Shape(GeometryType.LINE_STRING, points)]


def _spline(entity: DxfEntity) -> list[Shape]:
    points = entity.points(10)
    if len(points) < 2:
        points = entity.points(11)
    if len(points) < 2:
        return []
    closed = bool(entity.integer(70) & POLYLINE_CLOSED)
    shape = path_shape(points, closed)
    return [shape] if shape else []


def _text(entity: DxfEntity) -> list[Shape]:
    parts = entity.all(3) if entity.type == "MTEXT" else []
    text = "".join([*parts, entity.first(1) or ""]).strip()
    if not text:
        return []
    props: dict[str, Any] = {"text": text}
    height = entity.first(40)
    if height:
        props["height"] = float(height)
    return [Shape(GeometryType.POINT, entity.point(10)[:2], props)]


_CONVERTERS = {
    "POINT": _point,
    "LINE": _line,
    "LWPOLYLINE": _lwpolyline,
    "POLYLINE": _polyline,
    "CIRCLE": _circle,
    "ARC": _arc,
    "ELLIPSE": _ellipse,
    "SPLINE": _spline,
    "TEXT": _text,
    "MTEXT": _text,
}

SUPPORTED_ENTITIES = frozenset({*_CONVERTERS, "INSERT"})


def convert_entity(entity: DxfEntity) -> list[Shape]:
    """Convert a non-INSERT entity.

    Raises:
        UnsupportedEntityError: For entity types without a converter.
        ValueError: If a coordinate or parameter is not numeric.
    """
    converter = _CONVERTERS.get(entity.type)
    if converter is None:
        raise UnsupportedEntityError(entity.type)
    return converter(entity)

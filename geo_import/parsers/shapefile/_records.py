"""Shape record decoding.

Each record is an 8-byte big-endian header (record number, content length
in words) followed by little-endian content beginning with the shape
type.  Z ordinates are kept as a third ordinate; M values are ignored.
"""

from __future__ import annotations

import struct
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from geo_import.core.constants import FORMAT_SHAPEFILE
from geo_import.core.exceptions import StructuralParseError
from geo_import.models.feature import GeometryType
from geo_import.parsers.shapefile._header import (
    HEADER_SIZE,
    MULTIPOINT,
    MULTIPOINT_M,
    MULTIPOINT_Z,
    NULL_SHAPE,
    POINT,
    POINT_M,
    POINT_Z,
    POLYGON,
    POLYGON_M,
    POLYGON_Z,
    POLYLINE,
    POLYLINE_M,
    POLYLINE_Z,
    RECORD_HEADER_SIZE,
    SHAPE_TYPE_NAMES,
    Z_TYPES,
)

MAX_MULTIPOINT_POINTS = 1_000_000

_POINT_TYPES = frozenset({POINT, POINT_Z, POINT_M})
_MULTIPOINT_TYPES = frozenset({MULTIPOINT, MULTIPOINT_Z, MULTIPOINT_M})
_POLYLINE_TYPES = frozenset({POLYLINE, POLYLINE_Z, POLYLINE_M})
_POLYGON_TYPES = frozenset({POLYGON, POLYGON_Z, POLYGON_M})


class UnsupportedShapeError(ValueError):
    """Record shape type this reader does not convert."""

    def __init__(self, shape_type: int) -> None:
        self.shape_type = shape_type
        super().__init__(f"unsupported shape type {SHAPE_TYPE_NAMES.get(shape_type, shape_type)}")


@dataclass(frozen=True, slots=True)
class ShapeRecord:
    """One record's location in the ``.shp`` buffer.

    Attributes:
        index: Zero-based record position (pairs with the DBF row).
        number: Record number stored in the file (1-based).
        offset: Byte offset of the record content.
        length: Content length in bytes.
    """

    index: int
    number: int
    offset: int
    length: int

    @property
    def end(self) -> int:
        return self.offset + self.length


# ---------------------------------------------------------------------------
# Record iteration
# ---------------------------------------------------------------------------


def iter_records(
    shp: bytes,
    index: list[tuple[int, int]] | None = None,
    *,
    start: int = 0,
) -> Iterator[ShapeRecord]:
    """Yield record locations, from the ``.shx`` index when given.

    Raises:
        StructuralParseError: If a record header points past the end of the file.
    """
    size = len(shp)
    if index is not None:
        for i in range(start, len(index)):
            offset, length = index[i]
            if offset + RECORD_HEADER_SIZE + length > size:
                msg = f"record {i + 1} at offset {offset} extends past end of file"
                raise StructuralParseError(msg, format_name=FORMAT_SHAPEFILE)
            number = struct.unpack_from(">i", shp, offset)[0]
            yield ShapeRecord(i, number, offset + RECORD_HEADER_SIZE, length)
        return

    pos = HEADER_SIZE
    i = 0
    while pos + RECORD_HEADER_SIZE <= size:
        number, length_words = struct.unpack_from(">2i", shp, pos)
        length = length_words * 2
        content = pos + RECORD_HEADER_SIZE
        if content + length > size:
            msg = f"record {number} at offset {pos} extends past end of file"
            raise StructuralParseError(msg, format_name=FORMAT_SHAPEFILE)
        if i >= start:
            yield ShapeRecord(i, number, content, length)
        pos = content + length
        i += 1


# ---------------------------------------------------------------------------
# Geometry decoding
# ---------------------------------------------------------------------------


def _points(buf: bytes, offset: int, count: int) -> list[list[float]]:
    flat = struct.unpack_from(f"<{2 * count}d", buf, offset)
    return [[flat[i], flat[i + 1]] for i in range(0, 2 * count, 2)]


def _apply_z(points: list[list[float]], buf: bytes, offset: int) -> None:
    # skip zmin/zmax
    zs = struct.unpack_from(f"<{len(points)}d", buf, offset + 16)
    for point, z in zip(points, zs, strict=True):
        point.append(z)


def _signed_area(ring: list[list[float]]) -> float:
    area = 0.0
    for (x1, y1, *_), (x2, y2, *_) in zip(ring, ring[1:], strict=False):
        area += x1 * y2 - x2 * y1
    return area / 2.0


def is_clockwise(ring: list[list[float]]) -> bool:
    return _signed_area(ring) < 0


def _point_in_ring(x: float, y: float, ring: list[list[float]]) -> bool:
    inside = False
    j = len(ring) - 1
    for i in range(len(ring)):
        xi, yi = ring[i][0], ring[i][1]
        xj, yj = ring[j][0], ring[j][1]
        if (yi > y) != (yj > y) and x < (xj - xi) * (y - yi) / (yj - yi) + xi:
            inside = not inside
        j = i
    return inside


def group_rings(rings: list[list[list[float]]]) -> list[list[list[list[float]]]]:
    """Group rings into polygons: clockwise rings are shells, the rest holes.

    A hole joins the first shell that contains its first vertex, else the
    most recent shell.  Files with no clockwise ring are treated as all shells.
    """
    shells: list[list[list[list[float]]]] = []
    holes: list[list[list[float]]] = []
    for ring in rings:
        if is_clockwise(ring):
            shells.append([ring])
        else:
            holes.append(ring)

    if not shells:
        return [[ring] for ring in holes]

    for hole in holes:
        x, y = hole[0][0], hole[0][1]
        for polygon in shells:
            if _point_in_ring(x, y, polygon[0]):
                polygon.append(hole)
                break
        else:
            shells[-1].append(hole)
    return shells


def decode_shape(buf: bytes, offset: int, length: int) -> tuple[GeometryType, Any] | None:
    """Decode one record's content into ``(geometry type, coordinates)``.

    Returns ``None`` for null shapes.

    Raises:
        UnsupportedShapeError: For shape types outside point/line/polygon/multipoint.
        struct.error: If the content is shorter than its declared layout.
    """
    if length < 4:
        return None
    shape_type = struct.unpack_from("<i", buf, offset)[0]
    body = offset + 4
    has_z = shape_type in Z_TYPES

    if shape_type == NULL_SHAPE:
        return None

    if shape_type in _POINT_TYPES:
        if has_z:
            x, y, z = struct.unpack_from("<3d", buf, body)
            return GeometryType.POINT, [x, y, z]
        x, y = struct.unpack_from("<2d", buf, body)
        return GeometryType.POINT, [x, y]

    if shape_type in _MULTIPOINT_TYPES:
        count = struct.unpack_from("<i", buf, body + 32)[0]
        if count <= 0:
            return None
        if count > MAX_MULTIPOINT_POINTS:
            msg = f"multipoint with {count} points exceeds {MAX_MULTIPOINT_POINTS}"
            raise ValueError(msg)
        points_at = body + 36
        points = _points(buf, points_at, count)
        if has_z:
            _apply_z(points, buf, points_at + 16 * count)
        return GeometryType.MULTI_POINT, points

    if shape_type in _POLYLINE_TYPES or shape_type in _POLYGON_TYPES:
        num_parts, num_points = struct.unpack_from("<2i", buf, body + 32)
        if num_parts <= 0 or num_points <= 0:
            return None
        parts = list(struct.unpack_from(f"<{num_parts}i", buf, body + 40))
        points_at = body + 40 + 4 * num_parts
        points = _points(buf, points_at, num_points)
        if has_z:
            _apply_z(points, buf, points_at + 16 * num_points)
        bounds = [*parts, num_points]
        paths = [points[bounds[i] : bounds[i + 1]] for i in range(num_parts)]
        paths = [p for p in paths if p]

        if shape_type in _POLYLINE_TYPES:
            if len(paths) == 1:
                return GeometryType.LINE_STRING, paths[0]
            return GeometryType.MULTI_LINE_STRING, paths

        polygons = group_rings(paths)
        if len(polygons) == 1:
            return GeometryType.POLYGON, polygons[0]
        return GeometryType.MULTI_POLYGON, polygons

    raise UnsupportedShapeError(shape_type)

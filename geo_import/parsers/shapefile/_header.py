"""Shapefile main/index header decoding.

Both ``.shp`` and ``.shx`` start with the same 100-byte header: file code
and length big-endian, version, shape type and bounding box
little-endian.
"""

from __future__ import annotations

import struct
from dataclasses import dataclass

from geo_import.core.constants import FORMAT_SHAPEFILE, SHAPEFILE_FILE_CODE, SHAPEFILE_VERSION
from geo_import.core.exceptions import StructuralParseError

HEADER_SIZE = 100
RECORD_HEADER_SIZE = 8

_HEADER_BE = struct.Struct(">7i")
_HEADER_LE = struct.Struct("<2i8d")

# Shape type codes
NULL_SHAPE = 0
POINT = 1
POLYLINE = 3
POLYGON = 5
MULTIPOINT = 8
POINT_Z = 11
POLYLINE_Z = 13
POLYGON_Z = 15
MULTIPOINT_Z = 18
POINT_M = 21
POLYLINE_M = 23
POLYGON_M = 25
MULTIPOINT_M = 28
MULTIPATCH = 31

SHAPE_TYPE_NAMES: dict[int, str] = {
    NULL_SHAPE: "Null",
    POINT: "Point",
    POLYLINE: "PolyLine",
    POLYGON: "Polygon",
    MULTIPOINT: "MultiPoint",
    POINT_Z: "PointZ",
    POLYLINE_Z: "PolyLineZ",
    POLYGON_Z: "PolygonZ",
    MULTIPOINT_Z: "MultiPointZ",
    POINT_M: "PointM",
    POLYLINE_M: "PolyLineM",
    POLYGON_M: "PolygonM",
    MULTIPOINT_M: "MultiPointM",
    MULTIPATCH: "MultiPatch",
}

Z_TYPES = frozenset({POINT_Z, POLYLINE_Z, POLYGON_Z, MULTIPOINT_Z})


@dataclass(frozen=True, slots=True)
class ShapeHeader:
    """Decoded 100-byte header.

    Attributes:
        file_length: File length in bytes (stored as 16-bit words).
        shape_type: Shape type code shared by all records.
        bbox: ``(xmin, ymin, xmax, ymax)``.
        z_range: ``(zmin, zmax)``.
    """

    file_length: int
    shape_type: int
    bbox: tuple[float, float, float, float]
    z_range: tuple[float, float]

    @property
    def shape_type_name(self) -> str:
        return SHAPE_TYPE_NAMES.get(self.shape_type, f"Unknown({self.shape_type})")

    @property
    def has_z(self) -> bool:
        return self.shape_type in Z_TYPES


def read_header(data: bytes, *, label: str = ".shp") -> ShapeHeader:
    """Decode the header of a ``.shp`` or ``.shx`` file.

    Raises:
        StructuralParseError: If the file is short or the magic/version is wrong.
    """
    if len(data) < HEADER_SIZE:
        msg = f"{label} header truncated: {len(data)} bytes, expected {HEADER_SIZE}"
        raise StructuralParseError(msg, format_name=FORMAT_SHAPEFILE)

    be = _HEADER_BE.unpack_from(data, 0)
    file_code, file_words = be[0], be[6]
    if file_code != SHAPEFILE_FILE_CODE:
        msg = f"{label} file code {file_code} != {SHAPEFILE_FILE_CODE}"
        raise StructuralParseError(msg, format_name=FORMAT_SHAPEFILE)

    version, shape_type, xmin, ymin, xmax, ymax, zmin, zmax, _mmin, _mmax = _HEADER_LE.unpack_from(data, 28)
    if version != SHAPEFILE_VERSION:
        msg = f"{label} version {version} != {SHAPEFILE_VERSION}"
        raise StructuralParseError(msg, format_name=FORMAT_SHAPEFILE)

    return ShapeHeader(
        file_length=file_words * 2,
        shape_type=shape_type,
        bbox=(xmin, ymin, xmax, ymax),
        z_range=(zmin, zmax),
    )


def read_index_offsets(shx: bytes) -> list[tuple[int, int]]:
    """Return ``(byte offset, content length in bytes)`` per record from a ``.shx``.

    Raises:
        StructuralParseError: If the index header is malformed.
    """
    read_header(shx, label=".shx")
    count = (len(shx) - HEADER_SIZE) // 8
    offsets: list[tuple[int, int]] = []
    for i in range(count):
        offset_words, length_words = struct.unpack_from(">2i", shx, HEADER_SIZE + i * 8)
        offsets.append((offset_words * 2, length_words * 2))
    return offsets

"""Shared pytest fixtures for the geo import test suite.

Sample files are built in memory so every format test runs without
fixture files on disk.
"""

from __future__ import annotations

import json
import struct
from collections.abc import Callable, Sequence

import pytest

# ---------------------------------------------------------------------------
# Shapefile builders
# ---------------------------------------------------------------------------

SHP_POINT = 1
SHP_POLYLINE = 3
SHP_POLYGON = 5

LV95_POINTS = [
    (2600000.0, 1200000.0),
    (2600100.0, 1200050.0),
    (2600200.0, 1200100.0),
]

LV95_PRJ = (
    b'PROJCS["CH1903+_LV95",GEOGCS["GCS_CH1903+",DATUM["D_CH1903+",'
    b'SPHEROID["Bessel_1841",6377397.155,299.1528128]],PRIMEM["Greenwich",0.0],'
    b'UNIT["Degree",0.0174532925199433]],PROJECTION["Hotine_Oblique_Mercator_Azimuth_Center"],'
    b'UNIT["Meter",1.0]]'
)


def _shp_header(shape_type: int, file_bytes: int, bbox: Sequence[float]) -> bytes:
    head = struct.pack(">7i", 9994, 0, 0, 0, 0, 0, file_bytes // 2)
    head += struct.pack("<2i8d", 1000, shape_type, *bbox, 0.0, 0.0, 0.0, 0.0)
    return head


def point_content(x: float, y: float) -> bytes:
    return struct.pack("<i2d", SHP_POINT, x, y)


def parts_content(shape_type: int, parts: Sequence[Sequence[tuple[float, float]]]) -> bytes:
    """Polyline/polygon record content for *parts*."""
    points = [p for part in parts for p in part]
    xs = [p[0] for p in points]
    ys = [p[1] for p in points]
    out = struct.pack("<i4d2i", shape_type, min(xs), min(ys), max(xs), max(ys), len(parts), len(points))
    starts: list[int] = []
    offset = 0
    for part in parts:
        starts.append(offset)
        offset += len(part)
    out += struct.pack(f"<{len(parts)}i", *starts)
    for x, y in points:
        out += struct.pack("<2d", x, y)
    return out


def build_shapefile(
    shape_type: int,
    contents: Sequence[bytes],
    bbox: Sequence[float] = (0.0, 0.0, 0.0, 0.0),
) -> tuple[bytes, bytes]:
    """Return ``(shp, shx)`` bytes for the given record contents."""
    records = b""
    index = b""
    offset = 100
    for number, content in enumerate(contents, start=1):
        words = len(content) // 2
        index += struct.pack(">2i", offset // 2, words)
        records += struct.pack(">2i", number, words) + content
        offset += 8 + len(content)
    shp = _shp_header(shape_type, 100 + len(records), bbox) + records
    shx = _shp_header(shape_type, 100 + len(index), bbox) + index
    return shp, shx


def build_dbf(
    fields: Sequence[tuple[str, str, int, int]],
    rows: Sequence[Sequence[str]],
    deleted: Sequence[int] = (),
) -> bytes:
    """dBase III table; *fields* are ``(name, type, length, decimals)``."""
    header_length = 32 + 32 * len(fields) + 1
    record_length = 1 + sum(f[2] for f in fields)
    out = struct.pack("<4BIHH20x", 3, 124, 1, 1, len(rows), header_length, record_length)
    for name, kind, length, decimals in fields:
        out += name.encode("ascii").ljust(11, b"\x00") + kind.encode("ascii") + b"\x00" * 4
        out += bytes([length, decimals]) + b"\x00" * 14
    out += b"\x0d"
    for i, row in enumerate(rows):
        out += b"*" if i in deleted else b" "
        for (_name, kind, length, _dec), value in zip(fields, row, strict=True):
            raw = value.encode("utf-8")
            out += (raw.rjust(length) if kind == "N" else raw.ljust(length))[:length]
    return out + b"\x1a"


DBF_FIELDS = [("name", "C", 10, 0), ("value", "N", 8, 0)]
DBF_ROWS = [["alpha", "1"], ["beta", "2"], ["gamma", "3"]]


@pytest.fixture()
def point_shapefile() -> dict[str, bytes]:
    """Three LV95 points with a two-column attribute table (no .prj)."""
    xs = [p[0] for p in LV95_POINTS]
    ys = [p[1] for p in LV95_POINTS]
    shp, shx = build_shapefile(
        SHP_POINT,
        [point_content(x, y) for x, y in LV95_POINTS],
        (min(xs), min(ys), max(xs), max(ys)),
    )
    return {".shp": shp, ".shx": shx, ".dbf": build_dbf(DBF_FIELDS, DBF_ROWS)}


@pytest.fixture()
def shapefile_builder() -> Callable[..., tuple[bytes, bytes]]:
    return build_shapefile


@pytest.fixture()
def dbf_builder() -> Callable[..., bytes]:
    return build_dbf


@pytest.fixture()
def point_record() -> Callable[[float, float], bytes]:
    return point_content


@pytest.fixture()
def parts_record() -> Callable[..., bytes]:
    return parts_content


# ---------------------------------------------------------------------------
# DXF
# ---------------------------------------------------------------------------


def dxf_text(*pairs: tuple[int, object]) -> bytes:
    """Serialise ``(group code, value)`` pairs as ASCII DXF."""
    lines: list[str] = []
    for code, value in pairs:
        lines.append(f"{code:>3}")
        lines.append(str(value))
    return ("\r\n".join(lines) + "\r\n").encode("ascii")


def dxf_drawing(entities: Sequence[tuple[int, object]], blocks: Sequence[tuple[int, object]] = ()) -> bytes:
    """A drawing with a header, a two-layer table, *blocks* and *entities*."""
    return dxf_text(
        (0, "SECTION"), (2, "HEADER"),
        (9, "$INSUNITS"), (70, 6),
        (9, "$EXTMIN"), (10, 0.0), (20, 0.0),
        (9, "$EXTMAX"), (10, 100.0), (20, 100.0),
        (0, "ENDSEC"),
        (0, "SECTION"), (2, "TABLES"),
        (0, "TABLE"), (2, "LAYER"),
        (0, "LAYER"), (2, "0"), (62, 7), (70, 0),
        (0, "LAYER"), (2, "Walls"), (62, 1), (70, 0),
        (0, "ENDTAB"),
        (0, "ENDSEC"),
        (0, "SECTION"), (2, "BLOCKS"),
        *blocks,
        (0, "ENDSEC"),
        (0, "SECTION"), (2, "ENTITIES"),
        *entities,
        (0, "ENDSEC"),
        (0, "EOF"),
    )


TREE_BLOCK = (
    (0, "BLOCK"), (2, "TREE"), (10, 0.0), (20, 0.0),
    (0, "CIRCLE"), (8, "0"), (10, 0.0), (20, 0.0), (40, 1.0),
    (0, "ENDBLK"),
)

SAMPLE_ENTITIES = (
    (0, "LWPOLYLINE"), (5, "A1"), (8, "Walls"), (90, 4), (70, 1),
    (10, 0.0), (20, 0.0), (10, 10.0), (20, 0.0), (10, 10.0), (20, 10.0), (10, 0.0), (20, 10.0),
    (0, "LINE"), (5, "A2"), (8, "Walls"), (10, 0.0), (20, 0.0), (11, 5.0), (21, 5.0),
    (0, "CIRCLE"), (5, "A3"), (8, "Walls"), (10, 50.0), (20, 50.0), (40, 2.0),
    (0, "INSERT"), (5, "A4"), (8, "Trees"), (2, "TREE"), (10, 20.0), (20, 20.0),
)


@pytest.fixture()
def dxf_sample() -> bytes:
    """Closed LWPOLYLINE, LINE, CIRCLE and one INSERT of block TREE."""
    return dxf_drawing(SAMPLE_ENTITIES, TREE_BLOCK)


@pytest.fixture()
def dxf_builder() -> Callable[..., bytes]:
    return dxf_drawing


# ---------------------------------------------------------------------------
# Text formats
# ---------------------------------------------------------------------------


@pytest.fixture()
def csv_sample() -> bytes:
    """Semicolon-delimited LV95 points with a name and an elevation."""
    return (
        "name;east;north;height\n"
        "alpha;2600000;1200000;500\n"
        "beta;2600100;1200050;510.5\n"
        "gamma;2600200;1200100;520\n"
    ).encode("utf-8")


@pytest.fixture()
def xyz_sample() -> bytes:
    """Header row, a comment and three points with one extra column."""
    return (
        "x y z intensity\n"
        "# survey 2024\n"
        "2600000 1200000 500 0.5\n"
        "2600100 1200050 510 0.7\n"
        "2600200 1200100 520 0.9\n"
    ).encode("utf-8")


GEOJSON_DOC = {
    "type": "FeatureCollection",
    "crs": {"type": "name", "properties": {"name": "urn:ogc:def:crs:EPSG::2056"}},
    "features": [
        {
            "type": "Feature",
            "id": "parcel-1",
            "geometry": {"type": "Point", "coordinates": [2600000.0, 1200000.0]},
            "properties": {"owner": "Muster"},
        },
        {
            "type": "Feature",
            "geometry": {
                "type": "Polygon",
                "coordinates": [
                    [
                        [2600000.0, 1200000.0],
                        [2600100.0, 1200000.0],
                        [2600100.0, 1200100.0],
                        [2600000.0, 1200100.0],
                        [2600000.0, 1200000.0],
                    ]
                ],
            },
            "properties": {"owner": "Beispiel", "area": 10000},
        },
    ],
}


@pytest.fixture()
def geojson_doc() -> dict:
    return json.loads(json.dumps(GEOJSON_DOC))


@pytest.fixture()
def geojson_sample(geojson_doc: dict) -> bytes:
    """Two LV95 features declared through a legacy ``crs`` member."""
    return json.dumps(geojson_doc).encode("utf-8")


@pytest.fixture()
def lv95_prj() -> bytes:
    return LV95_PRJ

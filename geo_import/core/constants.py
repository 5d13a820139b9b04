"""Shared import constants, single source of truth.

Centralises spatial reference identifiers, default rectangles and the
static format registry consumed by the companion resolver and the
parser factory.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field

# ---------------------------------------------------------------------------
# Spatial reference identifiers
# ---------------------------------------------------------------------------

SRID_WGS84: int = 4326
"""Geographic WGS 84 (longitude/latitude degrees)."""

SRID_LV95: int = 2056
"""Swiss CH1903+ / LV95 planar metres."""

SRID_LV03: int = 21781
"""Legacy Swiss CH1903 / LV03 planar metres."""

SRID_WEB_MERCATOR: int = 3857
"""Spherical Web Mercator."""

SRID_NAMES: dict[int, str] = {
    SRID_WGS84: "WGS 84",
    SRID_LV95: "CH1903+ / LV95",
    SRID_LV03: "CH1903 / LV03",
    SRID_WEB_MERCATOR: "WGS 84 / Pseudo-Mercator",
}

# ---------------------------------------------------------------------------
# Default rectangles (minX, minY, maxX, maxY)
# ---------------------------------------------------------------------------

Rectangle = tuple[float, float, float, float]

DEFAULT_BOUNDS_LV95: Rectangle = (2485000.0, 1075000.0, 2835000.0, 1295000.0)
DEFAULT_BOUNDS_LV03: Rectangle = (485000.0, 75000.0, 835000.0, 295000.0)
DEFAULT_BOUNDS_WGS84: Rectangle = (5.9, 45.8, 10.5, 47.8)
DEFAULT_BOUNDS_GENERIC: Rectangle = (-1.0, -1.0, 1.0, 1.0)

DEFAULT_BOUNDS_BY_SRID: dict[int, Rectangle] = {
    SRID_LV95: DEFAULT_BOUNDS_LV95,
    SRID_LV03: DEFAULT_BOUNDS_LV03,
    SRID_WGS84: DEFAULT_BOUNDS_WGS84,
}

SWISS_WGS84_BOUNDS: Rectangle = (5.9559, 45.8179, 10.4922, 47.8084)
"""Switzerland's envelope in WGS 84."""

SWISS_SANITY_LON: tuple[float, float] = (5.0, 11.0)
SWISS_SANITY_LAT: tuple[float, float] = (45.0, 48.0)

SAFE_DEFAULT_LOCATION: tuple[float, float] = (8.0472, 47.3925)
"""Fallback ``(lon, lat)`` used when a tuple cannot be reprojected (Aarau)."""

# ---------------------------------------------------------------------------
# Size units
# ---------------------------------------------------------------------------

KIB: int = 1024
MIB: int = 1024 * KIB
GIB: int = 1024 * MIB

# ---------------------------------------------------------------------------
# Format keys
# ---------------------------------------------------------------------------

FORMAT_SHAPEFILE = "shp"
FORMAT_GEOJSON = "geojson"
FORMAT_DXF = "dxf"
FORMAT_CSV = "csv"
FORMAT_XYZ = "xyz"

# ---------------------------------------------------------------------------
# Content sniffing
# ---------------------------------------------------------------------------

COORDINATE_HEADER_PATTERN = re.compile(r"lat|lon|lng|x|y|z|east|north|elevation|height", re.IGNORECASE)
"""Header vocabulary that marks a delimited file as plausibly geospatial.

Matched as a plain substring anywhere in the header row, so ``POINT_X`` and
``x_coord`` qualify.
"""

XYZ_LINE_PATTERN = re.compile(
    r"^\s*-?\d+(\.\d+)?([eE][-+]?\d+)?[\s,;]+-?\d+(\.\d+)?([eE][-+]?\d+)?"
    r"[\s,;]+-?\d+(\.\d+)?([eE][-+]?\d+)?([\s,;]+.*)?$"
)
"""A numeric x/y/z triple, optionally followed by extra columns."""

SHAPEFILE_FILE_CODE: int = 9994
SHAPEFILE_VERSION: int = 1000


def _first_text_line(sample: bytes) -> str:
    text = sample.decode("utf-8", errors="replace")
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            return stripped
    return ""


def _check_shapefile(sample: bytes) -> bool:
    return len(sample) >= 4 and int.from_bytes(sample[:4], "big") == SHAPEFILE_FILE_CODE


def _check_geojson(sample: bytes) -> bool:
    return sample.lstrip(b"\xef\xbb\xbf \t\r\n")[:1] == b"{"


def _check_dxf(sample: bytes) -> bool:
    lines = [ln.strip() for ln in sample.decode("latin-1").splitlines() if ln.strip()]
    return len(lines) >= 2 and lines[0] == "0" and lines[1].upper() == "SECTION"


def _check_csv(sample: bytes) -> bool:
    return bool(COORDINATE_HEADER_PATTERN.search(_first_text_line(sample)))


def _check_xyz(sample: bytes) -> bool:
    return bool(XYZ_LINE_PATTERN.match(_first_text_line(sample)))


# ---------------------------------------------------------------------------
# Format registry
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class CompanionSpec:
    """A side-file a main format may be accompanied by.

    Attributes:
        extension: Lower-case extension with leading dot (e.g. ``".dbf"``).
        required: Whether the main file is rejected without it.
        max_size: Maximum accepted size in bytes.
    """

    extension: str
    required: bool
    max_size: int


@dataclass(frozen=True, slots=True)
class FormatSpec:
    """Static description of one importable format.

    Attributes:
        key: Registry key (e.g. ``"shp"``).
        extensions: Recognised main-file extensions, primary first.
        description: Human description.
        mime_type: Canonical MIME type.
        max_size: Maximum accepted main-file size in bytes.
        companions: Declared companion side-files.
        binary: Whether the main file is binary.
    """

    key: str
    extensions: tuple[str, ...]
    description: str
    mime_type: str
    max_size: int
    companions: tuple[CompanionSpec, ...] = field(default_factory=tuple)
    binary: bool = False

    @property
    def main_extension(self) -> str:
        """Primary main-file extension."""
        return self.extensions[0]

    @property
    def required_companions(self) -> tuple[str, ...]:
        return tuple(c.extension for c in self.companions if c.required)

    def companion(self, extension: str) -> CompanionSpec | None:
        """Return the companion declared for *extension*, if any."""
        ext = extension.lower()
        for spec in self.companions:
            if spec.extension == ext:
                return spec
        return None

    def content_check(self, sample: bytes) -> bool:
        """Cheap sniff of the leading bytes of a main file."""
        return _CONTENT_CHECKS[self.key](sample)


_CONTENT_CHECKS = {
    FORMAT_SHAPEFILE: _check_shapefile,
    FORMAT_GEOJSON: _check_geojson,
    FORMAT_DXF: _check_dxf,
    FORMAT_CSV: _check_csv,
    FORMAT_XYZ: _check_xyz,
}

FORMAT_REGISTRY: dict[str, FormatSpec] = {
    FORMAT_SHAPEFILE: FormatSpec(
        key=FORMAT_SHAPEFILE,
        extensions=(".shp",),
        description="ESRI Shapefile",
        mime_type="application/x-esri-shape",
        max_size=2 * GIB,
        companions=(
            CompanionSpec(".shx", required=True, max_size=256 * MIB),
            CompanionSpec(".dbf", required=True, max_size=2 * GIB),
            CompanionSpec(".prj", required=False, max_size=1 * MIB),
        ),
        binary=True,
    ),
    FORMAT_GEOJSON: FormatSpec(
        key=FORMAT_GEOJSON,
        extensions=(".geojson", ".json"),
        description="GeoJSON",
        mime_type="application/geo+json",
        max_size=512 * MIB,
        companions=(CompanionSpec(".qmd", required=False, max_size=1 * MIB),),
    ),
    FORMAT_DXF: FormatSpec(
        key=FORMAT_DXF,
        extensions=(".dxf",),
        description="AutoCAD DXF",
        mime_type="application/dxf",
        max_size=1 * GIB,
    ),
    FORMAT_CSV: FormatSpec(
        key=FORMAT_CSV,
        extensions=(".csv",),
        description="Comma Separated Values",
        mime_type="text/csv",
        max_size=512 * MIB,
        companions=(CompanionSpec(".prj", required=False, max_size=1 * MIB),),
    ),
    FORMAT_XYZ: FormatSpec(
        key=FORMAT_XYZ,
        extensions=(".xyz",),
        description="XYZ Point Cloud",
        mime_type="text/plain",
        max_size=2 * GIB,
        companions=(CompanionSpec(".prj", required=False, max_size=1 * MIB),),
    ),
}


def format_for_extension(extension: str) -> FormatSpec | None:
    """Look up the registry entry whose main extensions include *extension*."""
    ext = extension.lower()
    if not ext.startswith("."):
        ext = f".{ext}"
    for spec in FORMAT_REGISTRY.values():
        if ext in spec.extensions:
            return spec
    return None

"""Coordinate reference system detection.

Infers the source SRID when no explicit SRID, projection side-file or
format metadata supplies one.  Detection is table-driven: an ordered
tuple of ``DetectionRule`` windows is matched against the coordinate
envelope and the first rule containing it wins.  The built-in table
covers Swiss LV95, legacy Swiss LV03 and geographic WGS 84, in that
order; anything else stays unresolved and the caller must choose.

Also parses SRIDs out of ``.prj`` WKT text and GeoJSON ``crs`` names.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass

from geo_import.core.constants import SRID_LV03, SRID_LV95, SRID_NAMES, SRID_WGS84, Rectangle
from geo_import.core.exceptions import CoordinateSystemUnresolvedError

logger = logging.getLogger("geo_import.crs.detection")

# ---------------------------------------------------------------------------
# Detection table
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class DetectionRule:
    """A planar window that identifies one SRID.

    Attributes:
        srid: SRID selected when the envelope lies inside the window.
        name: Human-readable system name.
        x_range: Inclusive ``(min, max)`` for X / easting / longitude.
        y_range: Inclusive ``(min, max)`` for Y / northing / latitude.
    """

    srid: int
    name: str
    x_range: tuple[float, float]
    y_range: tuple[float, float]

    def contains(self, x: float, y: float) -> bool:
        return self.x_range[0] <= x <= self.x_range[1] and self.y_range[0] <= y <= self.y_range[1]

    def matches(self, bounds: Rectangle) -> bool:
        """Whether the whole envelope lies inside the window."""
        min_x, min_y, max_x, max_y = bounds
        return self.contains(min_x, min_y) and self.contains(max_x, max_y)


LV95_RULE = DetectionRule(SRID_LV95, "CH1903+ / LV95", (2_480_000.0, 2_840_000.0), (1_070_000.0, 1_300_000.0))
LV03_RULE = DetectionRule(SRID_LV03, "CH1903 / LV03", (480_000.0, 900_000.0), (0.0, 400_000.0))
WGS84_RULE = DetectionRule(SRID_WGS84, "WGS 84", (-180.0, 180.0), (-90.0, 90.0))

DEFAULT_DETECTION_RULES: tuple[DetectionRule, ...] = (LV95_RULE, LV03_RULE, WGS84_RULE)


def rule_for(srid: int, rules: Iterable[DetectionRule] = DEFAULT_DETECTION_RULES) -> DetectionRule | None:
    """Return the detection window registered for *srid*, if any."""
    for rule in rules:
        if rule.srid == srid:
            return rule
    return None


@dataclass(frozen=True, slots=True)
class DetectionResult:
    """Outcome of ``detect_srid``.

    Attributes:
        srid: Detected SRID, or ``None`` when unresolved.
        name: System name (empty when unresolved).
        source: ``"explicit"``, ``"declared"``, ``"detected"`` or ``"unresolved"``.
    """

    srid: int | None
    name: str = ""
    source: str = "detected"

    @property
    def resolved(self) -> bool:
        return self.srid is not None


def detect_srid(
    bounds: Rectangle | None,
    rules: Iterable[DetectionRule] = DEFAULT_DETECTION_RULES,
) -> DetectionResult:
    """Infer an SRID from a coordinate envelope using ordered range checks."""
    if bounds is None:
        return DetectionResult(None, source="unresolved")
    for rule in rules:
        if rule.matches(bounds):
            logger.debug("srid detected | srid=%d | bounds=%s", rule.srid, bounds)
            return DetectionResult(rule.srid, rule.name)
    logger.info("srid unresolved | bounds=%s", bounds)
    return DetectionResult(None, source="unresolved")


def resolve_source_srid(
    *,
    explicit: int | None = None,
    declared: int | None = None,
    bounds: Rectangle | None = None,
    rules: Iterable[DetectionRule] = DEFAULT_DETECTION_RULES,
    required: bool = False,
) -> DetectionResult:
    """Pick the source SRID: explicit, then declared, then detected.

    Raises:
        CoordinateSystemUnresolvedError: If *required* and nothing resolves.
    """
    if explicit is not None:
        return DetectionResult(explicit, SRID_NAMES.get(explicit, f"EPSG:{explicit}"), "explicit")
    if declared is not None:
        return DetectionResult(declared, SRID_NAMES.get(declared, f"EPSG:{declared}"), "declared")
    result = detect_srid(bounds, rules)
    if required and not result.resolved:
        raise CoordinateSystemUnresolvedError(
            f"coordinate system could not be detected from bounds {bounds}; supply a source SRID"
        )
    return result


# ---------------------------------------------------------------------------
# Projection text
# ---------------------------------------------------------------------------

# Checked in order; the first substring found wins.
_PRJ_NAME_HINTS: tuple[tuple[str, int], ...] = (
    ("CH1903+_LV95", SRID_LV95),
    ("CH1903+", SRID_LV95),
    ("LV95", SRID_LV95),
    ("EPSG:2056", SRID_LV95),
    ("CH1903_LV03", SRID_LV03),
    ("CH1903", SRID_LV03),
    ("EPSG:21781", SRID_LV03),
    ('GEOGCS["GCS_WGS_1984"', SRID_WGS84),
    ('GEOGCS["WGS 84"', SRID_WGS84),
    ("EPSG:4326", SRID_WGS84),
)

_EPSG_PATTERN = re.compile(r"EPSG[:\[]\s*(\d+)", re.IGNORECASE)
_AUTHORITY_PATTERN = re.compile(r'AUTHORITY\["EPSG",\s*"(\d+)"\]\s*\]\s*$', re.IGNORECASE)
_URN_PATTERN = re.compile(r"EPSG:{1,2}(?:[\d.]*:)?(\d+)$", re.IGNORECASE)


def srid_from_wkt(text: str) -> int | None:
    """Extract an SRID from ``.prj`` WKT text.

    Tries, in order: the outermost ``AUTHORITY["EPSG", n]``, well-known
    Swiss/WGS names, an ``EPSG:n`` pattern, and finally pyproj's own
    WKT interpretation.  Returns ``None`` when nothing matches.
    """
    wkt = text.strip()
    if not wkt:
        return None

    match = _AUTHORITY_PATTERN.search(wkt)
    if match:
        return int(match.group(1))

    compact = wkt.replace(" ", "")
    for hint, srid in _PRJ_NAME_HINTS:
        if hint.replace(" ", "") in compact:
            return srid

    match = _EPSG_PATTERN.search(wkt)
    if match:
        return int(match.group(1))

    from pyproj import CRS
    from pyproj.exceptions import CRSError

    try:
        crs = CRS.from_wkt(wkt)
    except CRSError:
        logger.warning("projection text not understood | length=%d", len(wkt))
        return None
    return crs.to_epsg(min_confidence=70)


def srid_from_crs_name(name: str) -> int | None:
    """Parse ``EPSG:2056`` or ``urn:ogc:def:crs:EPSG::2056`` style names."""
    value = name.strip()
    if value.upper() in ("CRS84", "URN:OGC:DEF:CRS:OGC:1.3:CRS84", "URN:OGC:DEF:CRS:OGC::CRS84"):
        return SRID_WGS84
    match = _URN_PATTERN.search(value)
    return int(match.group(1)) if match else None

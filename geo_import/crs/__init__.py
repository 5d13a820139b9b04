"""Coordinate system detection and reprojection."""

from geo_import.crs.detection import (
    DEFAULT_DETECTION_RULES,
    DetectionResult,
    DetectionRule,
    detect_srid,
    resolve_source_srid,
    srid_from_crs_name,
    srid_from_wkt,
)
from geo_import.crs.reproject import Reprojector, get_transformer

__all__ = [
    "DEFAULT_DETECTION_RULES",
    "DetectionResult",
    "DetectionRule",
    "Reprojector",
    "detect_srid",
    "get_transformer",
    "resolve_source_srid",
    "srid_from_crs_name",
    "srid_from_wkt",
]

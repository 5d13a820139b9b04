"""Coordinate reprojection with validity checks and fallback.

``Reprojector`` walks every position of a canonical geometry (points,
lines, polygons, multi-geometries and nested collections alike) and
returns *new* geometries; inputs are never modified, so the full dataset
keeps its source-SRID coordinates for the authoritative import.

Per position:

1. the input is checked against the plausible source window;
2. it is transformed with a cached ``pyproj.Transformer`` (``always_xy``);
3. the output is checked against the target's valid range;
4. on failure the ordinates are swapped and steps 2-3 retried, which
   catches axis-order mistakes in the source;
5. if that also fails, a fixed safe location is substituted, the anomaly
   logged and recorded as ``transform_failed``.  One bad pair never
   aborts the import.
"""

from __future__ import annotations

import functools
import logging
import math
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from geo_import.core.constants import (
    SAFE_DEFAULT_LOCATION,
    SRID_LV03,
    SRID_LV95,
    SRID_WGS84,
    SWISS_SANITY_LAT,
    SWISS_SANITY_LON,
)
from geo_import.core.exceptions import ReprojectionError
from geo_import.crs.detection import DEFAULT_DETECTION_RULES, DetectionRule, rule_for
from geo_import.models.dataset import Dataset
from geo_import.models.feature import COORDINATE_DEPTH, Geometry, GeometryType
from geo_import.models.stats import TRANSFORM_FAILED

if TYPE_CHECKING:
    from collections.abc import Iterable

    from pyproj import Transformer

    from geo_import.models.feature import CanonicalFeature, Position
    from geo_import.models.stats import ProcessorStats

logger = logging.getLogger("geo_import.crs.reproject")

_SWISS_SRIDS = frozenset({SRID_LV95, SRID_LV03})


@functools.lru_cache(maxsize=32)
def get_transformer(source_srid: int, target_srid: int) -> Transformer:
    """Return a cached ``always_xy`` transformer for the SRID pair.

    Raises:
        ReprojectionError: If pyproj does not know either SRID.
    """
    from pyproj import Transformer
    from pyproj.exceptions import CRSError

    try:
        return Transformer.from_crs(
            f"EPSG:{source_srid}", f"EPSG:{target_srid}", always_xy=True
        )
    except CRSError as exc:
        msg = f"cannot build transformer EPSG:{source_srid} -> EPSG:{target_srid}: {exc}"
        raise ReprojectionError(msg) from exc


@functools.lru_cache(maxsize=32)
def _is_geographic(srid: int) -> bool:
    from pyproj import CRS

    return bool(CRS.from_epsg(srid).is_geographic)


class Reprojector:
    """Reproject canonical geometries from one SRID to another.

    Args:
        source_srid: SRID of the input coordinates.
        target_srid: SRID of the output coordinates.
        stats: Receives ``transform_failed`` records for fallbacks.
        fallback: ``(lon, lat)`` in WGS 84 substituted for failed tuples.
        rules: Windows used for source/target plausibility checks.
    """

    def __init__(
        self,
        source_srid: int,
        target_srid: int = SRID_WGS84,
        *,
        stats: ProcessorStats | None = None,
        fallback: tuple[float, float] = SAFE_DEFAULT_LOCATION,
        rules: Iterable[DetectionRule] = DEFAULT_DETECTION_RULES,
    ) -> None:
        self.source_srid = source_srid
        self.target_srid = target_srid
        self._stats = stats
        self._identity = source_srid == target_srid
        self._source_rule = rule_for(source_srid, rules)
        self._target_geographic = self._identity or _is_geographic(target_srid)
        self._transformer = None if self._identity else get_transformer(source_srid, target_srid)
        self._fallback = self._fallback_in_target(fallback)
        self.fallback_count = 0
        self.swap_count = 0

    def _fallback_in_target(self, fallback: tuple[float, float]) -> tuple[float, float]:
        if self.target_srid == SRID_WGS84:
            return fallback
        x, y = get_transformer(SRID_WGS84, self.target_srid).transform(*fallback)
        return (float(x), float(y))

    # ------------------------------------------------------------------
    # Position level
    # ------------------------------------------------------------------

    def _source_plausible(self, x: float, y: float) -> bool:
        if not (math.isfinite(x) and math.isfinite(y)):
            return False
        if self._source_rule is not None:
            return self._source_rule.contains(x, y)
        return True

    def _target_valid(self, x: float, y: float) -> bool:
        if not (math.isfinite(x) and math.isfinite(y)):
            return False
        if self._target_geographic:
            return -180.0 <= x <= 180.0 and -90.0 <= y <= 90.0
        return True

    def _attempt(self, x: float, y: float) -> tuple[float, float] | None:
        if not self._source_plausible(x, y):
            return None
        tx, ty = self._transformer.transform(x, y)  # type: ignore[union-attr]
        if not self._target_valid(tx, ty):
            return None
        return (float(tx), float(ty))

    def transform_position(self, position: Position) -> Position:
        """Transform one position, preserving any third ordinate."""
        if self._identity:
            return tuple(position)
        x, y = float(position[0]), float(position[1])
        extra = tuple(position[2:])

        result = self._attempt(x, y)
        if result is None:
            result = self._attempt(y, x)
            if result is not None:
                self.swap_count += 1
                logger.warning(
                    "axis order swapped | source=%d | target=%d | input=(%s, %s)",
                    self.source_srid,
                    self.target_srid,
                    x,
                    y,
                )
        if result is None:
            self.fallback_count += 1
            logger.warning(
                "reprojection fallback | source=%d | target=%d | input=(%s, %s) | fallback=%s",
                self.source_srid,
                self.target_srid,
                x,
                y,
                self._fallback,
            )
            if self._stats is not None:
                self._stats.record_error(
                    TRANSFORM_FAILED,
                    f"could not reproject ({x}, {y}) from EPSG:{self.source_srid} "
                    f"to EPSG:{self.target_srid}",
                    input=[x, y],
                    fallback=list(self._fallback),
                )
            result = self._fallback
        elif self.source_srid in _SWISS_SRIDS and self.target_srid == SRID_WGS84:
            lon, lat = result
            if not (
                SWISS_SANITY_LON[0] <= lon <= SWISS_SANITY_LON[1]
                and SWISS_SANITY_LAT[0] <= lat <= SWISS_SANITY_LAT[1]
            ):
                logger.warning("transformed point outside Switzerland | lon=%s | lat=%s", lon, lat)
        return result + extra

    # ------------------------------------------------------------------
    # Geometry / feature / dataset level
    # ------------------------------------------------------------------

    def _walk(self, coords: Any, depth: int) -> Any:
        if depth == 0:
            return self.transform_position(coords)
        return [self._walk(item, depth - 1) for item in coords]

    def transform_geometry(self, geometry: Geometry) -> Geometry:
        """Return a reprojected copy of *geometry*."""
        if geometry.type is GeometryType.GEOMETRY_COLLECTION:
            return Geometry(
                geometry.type,
                geometries=tuple(self.transform_geometry(g) for g in geometry.geometries),
            )
        return Geometry(geometry.type, self._walk(geometry.coordinates, COORDINATE_DEPTH[geometry.type]))

    def transform_feature(self, feature: CanonicalFeature) -> CanonicalFeature:
        return replace(
            feature,
            geometry=self.transform_geometry(feature.geometry),
            properties=dict(feature.properties),
        )

    def transform_features(self, features: Iterable[CanonicalFeature]) -> list[CanonicalFeature]:
        return [self.transform_feature(f) for f in features]

    def transform_dataset(self, dataset: Dataset) -> Dataset:
        """Return a reprojected copy of *dataset* with recomputed metadata."""
        features = self.transform_features(dataset.features)
        logger.info(
            "dataset reprojected | source=%d | target=%d | features=%d | swaps=%d | fallbacks=%d",
            self.source_srid,
            self.target_srid,
            len(features),
            self.swap_count,
            self.fallback_count,
        )
        return Dataset.from_features(features, self.target_srid)

"""Running bounds accumulation.

``BoundsAccumulator`` folds every finite position of every canonical
geometry (recursing into nested ``GeometryCollection`` members) into one
min/max rectangle.  When nothing finite has been seen it yields a
system-appropriate default rectangle instead of NaN or infinities, so a
map-fitting consumer never receives degenerate bounds.
"""

from __future__ import annotations

import math
from typing import TYPE_CHECKING

from geo_import.core.constants import DEFAULT_BOUNDS_BY_SRID, DEFAULT_BOUNDS_GENERIC, Rectangle
from geo_import.models.feature import is_finite_position, iter_positions

if TYPE_CHECKING:
    from collections.abc import Iterable

    from geo_import.models.feature import CanonicalFeature, Geometry, Position


def default_bounds(srid: int | None) -> Rectangle:
    """Return the default rectangle for *srid* (generic when unknown)."""
    if srid is None:
        return DEFAULT_BOUNDS_GENERIC
    return DEFAULT_BOUNDS_BY_SRID.get(srid, DEFAULT_BOUNDS_GENERIC)


class BoundsAccumulator:
    """Fold positions into a single running ``(minX, minY, maxX, maxY)``."""

    __slots__ = ("_min_x", "_min_y", "_max_x", "_max_y", "_count")

    def __init__(self) -> None:
        self._min_x = math.inf
        self._min_y = math.inf
        self._max_x = -math.inf
        self._max_y = -math.inf
        self._count = 0

    @property
    def is_empty(self) -> bool:
        return self._count == 0

    @property
    def position_count(self) -> int:
        """Number of finite positions folded so far."""
        return self._count

    def add_position(self, position: Position) -> bool:
        """Fold one position; non-finite positions are ignored.

        Returns:
            ``True`` if the position was finite and folded.
        """
        if not is_finite_position(position):
            return False
        x, y = position[0], position[1]
        self._min_x = min(self._min_x, x)
        self._min_y = min(self._min_y, y)
        self._max_x = max(self._max_x, x)
        self._max_y = max(self._max_y, y)
        self._count += 1
        return True

    def add_geometry(self, geometry: Geometry) -> None:
        for position in iter_positions(geometry):
            self.add_position(position)

    def add_features(self, features: Iterable[CanonicalFeature]) -> None:
        for feature in features:
            self.add_geometry(feature.geometry)

    def merge(self, other: BoundsAccumulator) -> None:
        """Fold another accumulator's rectangle into this one."""
        if other.is_empty:
            return
        self._min_x = min(self._min_x, other._min_x)
        self._min_y = min(self._min_y, other._min_y)
        self._max_x = max(self._max_x, other._max_x)
        self._max_y = max(self._max_y, other._max_y)
        self._count += other._count

    def result(self, srid: int | None = None) -> Rectangle:
        """Return the accumulated rectangle, or the default for *srid*."""
        if self.is_empty:
            return default_bounds(srid)
        return (self._min_x, self._min_y, self._max_x, self._max_y)


def compute_bounds(features: Iterable[CanonicalFeature], srid: int | None = None) -> Rectangle:
    """One-shot bounds of *features*."""
    acc = BoundsAccumulator()
    acc.add_features(features)
    return acc.result(srid)

"""Raw record → canonical feature normalisation.

Responsibilities:
- Build canonical geometry from a parser's ``RawFeature``
- Drop (and record) features with empty or non-finite geometry
- Assign ids, sequential within one parse run
- Attach validity flags unless the stream is degraded
- Coerce attribute values into JSON-friendly scalars
"""

from __future__ import annotations

import datetime
import logging
import math
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from geo_import.models.feature import (
    CanonicalFeature,
    Geometry,
    GeometryType,
    ModelValidationError,
)
from geo_import.models.stats import INVALID_COORDINATES, INVALID_GEOMETRY, ProcessorStats
from geo_import.parsers._validation import all_finite, validity_flags

logger = logging.getLogger("geo_import.parsers.normalization")


@dataclass(slots=True)
class RawFeature:
    """A format-specific record before normalisation.

    Owned by the parser that produced it and discarded once normalised.

    Attributes:
        geometry_type: Target geometry variant.
        coordinates: Raw nested coordinates for ``geometry_type``.
        properties: Free-form attribute bag.
        source_tag: Layer, entity or record type it came from.
        source_index: Record/entity/row index in the source.
        geometry: Prebuilt geometry (takes precedence over coordinates).
    """

    geometry_type: GeometryType | None = None
    coordinates: Any = None
    properties: dict[str, Any] = field(default_factory=dict)
    source_tag: str = ""
    source_index: int = 0
    geometry: Geometry | None = None


def clean_value(value: Any) -> Any:
    """Coerce an attribute value into a JSON-friendly scalar."""
    if isinstance(value, float) and not math.isfinite(value):
        return None
    if isinstance(value, datetime.date | datetime.datetime):
        return value.isoformat()
    if isinstance(value, bytes):
        return value.decode("utf-8", errors="replace")
    return value


class FeatureNormalizer:
    """Turn ``RawFeature`` records into canonical features for one run.

    Args:
        stats: Run statistics receiving counts and per-feature errors.
        flag_validity: Called per feature; when it returns ``False``
            (stream degraded) validity flagging is skipped.
    """

    def __init__(
        self,
        stats: ProcessorStats,
        *,
        flag_validity: Callable[[], bool] | None = None,
    ) -> None:
        self._stats = stats
        self._flag_validity = flag_validity or (lambda: True)
        self._next_id = 0

    @property
    def emitted(self) -> int:
        return self._next_id

    def _build(self, raw: RawFeature) -> Geometry | None:
        if raw.geometry is not None:
            return raw.geometry
        if raw.geometry_type is None:
            return None
        try:
            return Geometry.from_dict({"type": raw.geometry_type.value, "coordinates": raw.coordinates})
        except (ModelValidationError, TypeError, ValueError) as exc:
            logger.debug("geometry rejected | index=%d | error=%s", raw.source_index, exc)
            return None

    def normalize(self, raw: RawFeature) -> CanonicalFeature | None:
        """Return a canonical feature, or ``None`` after recording why not."""
        geometry = self._build(raw)
        if geometry is None:
            self._stats.record_error(
                INVALID_GEOMETRY,
                f"{raw.source_tag or 'record'} {raw.source_index} has no usable geometry",
                index=raw.source_index,
                source=raw.source_tag,
            )
            return None

        if not all_finite(geometry):
            self._stats.record_error(
                INVALID_COORDINATES,
                f"{raw.source_tag or 'record'} {raw.source_index} has non-finite coordinates",
                index=raw.source_index,
                source=raw.source_tag,
            )
            logger.warning(
                "feature skipped | reason=invalid_coordinates | source=%s | index=%d",
                raw.source_tag,
                raw.source_index,
            )
            return None

        flags = validity_flags(geometry) if self._flag_validity() else ()
        feature = CanonicalFeature(
            id=self._next_id,
            geometry=geometry,
            properties={str(k): clean_value(v) for k, v in raw.properties.items()},
            validation_flags=flags,
        )
        self._next_id += 1
        self._stats.record_feature(geometry.type_name)
        return feature

    def normalize_all(self, raws: list[RawFeature]) -> list[CanonicalFeature]:
        out: list[CanonicalFeature] = []
        for raw in raws:
            feature = self.normalize(raw)
            if feature is not None:
                out.append(feature)
        return out

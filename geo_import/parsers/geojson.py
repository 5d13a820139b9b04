"""GeoJSON parser.

Accepts a FeatureCollection, a single Feature or a bare geometry.  The
legacy ``crs`` member (``EPSG:2056``, ``urn:ogc:def:crs:EPSG::2056``,
``CRS84``) seeds the source SRID.  Features with a null or malformed
geometry are recorded as ``invalid_geometry`` and skipped.
"""

from __future__ import annotations

import json
import logging
from collections import Counter
from collections.abc import Iterator
from typing import Any

from geo_import.core.constants import FORMAT_GEOJSON
from geo_import.core.exceptions import StructuralParseError
from geo_import.crs.detection import srid_from_crs_name
from geo_import.models.feature import Geometry, GeometryType, ModelValidationError
from geo_import.models.stats import INVALID_GEOMETRY
from geo_import.parsers._normalization import RawFeature
from geo_import.parsers.base import ANALYZE_SAMPLE_SIZE, FormatParser, ParseRun, StructuralSummary
from geo_import.streaming.bounds import compute_bounds
from geo_import.streaming.chunker import decode_text
from geo_import.streaming.processor import ProducedChunk

logger = logging.getLogger("geo_import.parsers.geojson")

_GEOMETRY_TYPES = frozenset(t.value for t in GeometryType)


def _load(run: ParseRun) -> tuple[list[dict[str, Any]], dict[str, Any]]:
    """Return ``(feature objects, top-level document)``.

    Raises:
        StructuralParseError: If the text is not JSON or not a GeoJSON object.
    """
    try:
        doc = json.loads(decode_text(run.data))
    except json.JSONDecodeError as exc:
        msg = f"invalid JSON at line {exc.lineno} column {exc.colno}: {exc.msg}"
        raise StructuralParseError(msg, format_name=FORMAT_GEOJSON) from exc
    if not isinstance(doc, dict):
        msg = f"top-level JSON value is a {type(doc).__name__}, expected an object"
        raise StructuralParseError(msg, format_name=FORMAT_GEOJSON)

    kind = doc.get("type")
    if kind == "FeatureCollection":
        features = doc.get("features")
        if not isinstance(features, list):
            msg = "FeatureCollection has no 'features' array"
            raise StructuralParseError(msg, format_name=FORMAT_GEOJSON)
        return features, doc
    if kind == "Feature":
        return [doc], doc
    if kind in _GEOMETRY_TYPES:
        return [{"type": "Feature", "geometry": doc, "properties": {}}], doc
    msg = f"unsupported GeoJSON type {kind!r}"
    raise StructuralParseError(msg, format_name=FORMAT_GEOJSON)


def declared_srid(doc: dict[str, Any]) -> int | None:
    """SRID named by a legacy ``crs`` member, if any."""
    crs = doc.get("crs")
    if not isinstance(crs, dict):
        return None
    props = crs.get("properties")
    name = props.get("name") if isinstance(props, dict) else None
    return srid_from_crs_name(name) if isinstance(name, str) else None


class GeoJsonParser(FormatParser):
    """GeoJSON documents."""

    format_key = FORMAT_GEOJSON

    def _raw(self, run: ParseRun, obj: Any, index: int) -> RawFeature | None:
        if not isinstance(obj, dict):
            run.stats.record_error(INVALID_GEOMETRY, f"feature {index} is not an object", index=index)
            return None
        props = obj.get("properties")
        properties = dict(props) if isinstance(props, dict) else {}
        if "id" in obj and "id" not in properties:
            properties["id"] = obj["id"]

        raw_geometry = obj.get("geometry")
        if raw_geometry is None:
            return RawFeature(properties=properties, source_tag="feature", source_index=index)
        try:
            geometry = Geometry.from_dict(raw_geometry)
        except (ModelValidationError, TypeError, ValueError) as exc:
            run.stats.record_error(
                INVALID_GEOMETRY, f"feature {index} geometry rejected: {exc}", index=index
            )
            return None
        return RawFeature(
            geometry_type=geometry.type,
            properties=properties,
            source_tag="feature",
            source_index=index,
            geometry=geometry,
        )

    def _prologue(self, run: ParseRun) -> list[dict[str, Any]]:
        features, doc = _load(run)
        run.declared_srid = declared_srid(doc)
        run.details["bbox"] = doc.get("bbox")
        return features

    def _produce(self, run: ParseRun) -> Iterator[ProducedChunk]:
        features = self._prologue(run)
        logger.info("geojson opened | features=%d | srid=%s", len(features), run.declared_srid)
        return self._chunks(run, features)

    def _chunks(self, run: ParseRun, features: list[dict[str, Any]]) -> Iterator[ProducedChunk]:
        per_chunk = run.config.features_per_chunk
        total = len(features)
        batch: list[RawFeature] = []
        for index, obj in enumerate(features):
            raw = self._raw(run, obj, index)
            if raw is not None:
                batch.append(raw)
            if len(batch) >= per_chunk:
                yield self._chunk(run, batch, index + 1, total)
                batch = []
        yield self._chunk(run, batch, total, total)

    def _analyze(self, run: ParseRun) -> StructuralSummary:
        features = self._prologue(run)
        types: Counter[str] = Counter()
        names: dict[str, None] = {}
        for obj in features:
            geometry = obj.get("geometry") if isinstance(obj, dict) else None
            types[geometry.get("type", "Unknown") if isinstance(geometry, dict) else "null"] += 1
            props = obj.get("properties") if isinstance(obj, dict) else None
            if isinstance(props, dict):
                names.update(dict.fromkeys(props))

        raws = [self._raw(run, obj, i) for i, obj in enumerate(features[:ANALYZE_SAMPLE_SIZE])]
        sample = tuple(run.normalizer.normalize_all([r for r in raws if r is not None]))
        bbox = run.details.get("bbox")
        bounds = None
        if isinstance(bbox, list) and len(bbox) == 4:
            bounds = tuple(bbox)
        elif isinstance(bbox, list) and len(bbox) == 6:
            bounds = (bbox[0], bbox[1], bbox[3], bbox[4])
        if bounds is None and sample:
            bounds = compute_bounds(sample)
        return StructuralSummary(
            format_key=self.format_key,
            entity_types=dict(types),
            sample=sample,
            bounds=bounds,
            source_srid=run.declared_srid,
            feature_count=len(features),
            property_names=tuple(names),
        )

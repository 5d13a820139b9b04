"""AutoCAD DXF (ASCII) parser.

The parsing pipeline is split into focused stages:
- **_tokenizer**: group-code/value pairs from line-aligned text chunks
- **_structure**: HEADER variables, LAYER table, BLOCKS and ENTITIES
- **_entities**: per-entity geometry conversion and curve tessellation
- **_blocks**: INSERT expansion with nested placements and cycle checks

Per-entity problems (unsupported types, non-numeric values, undefined or
circular blocks) are recorded on the run statistics and the entity is
skipped; only a malformed tag stream or section layout fails the file.
"""

from __future__ import annotations

import logging
from collections import Counter
from collections.abc import Iterator
from typing import Any

from geo_import.core.constants import FORMAT_DXF
from geo_import.models.stats import (
    CIRCULAR_BLOCK,
    INVALID_COORDINATES,
    MISSING_BLOCK,
    UNSUPPORTED_ENTITY,
)
from geo_import.parsers._normalization import RawFeature
from geo_import.parsers.base import ANALYZE_SAMPLE_SIZE, FormatParser, ParseRun, StructuralSummary
from geo_import.parsers.dxf._blocks import BlockResolver, CircularBlockError, MissingBlockError
from geo_import.parsers.dxf._entities import Shape, UnsupportedEntityError, convert_entity
from geo_import.parsers.dxf._structure import DxfDocument, DxfEntity, read_document
from geo_import.parsers.dxf._tokenizer import iter_tags
from geo_import.streaming.bounds import BoundsAccumulator
from geo_import.streaming.processor import ProducedChunk

logger = logging.getLogger("geo_import.parsers.dxf")

__all__ = ["DxfParser"]

_BYLAYER = 256


class _Converter:
    """Entity → raw feature conversion for one run."""

    def __init__(self, run: ParseRun, doc: DxfDocument) -> None:
        self._run = run
        self._doc = doc
        self._blocks = BlockResolver(doc.blocks, on_entity_error=self._record)

    def _record(self, entity: DxfEntity, exc: Exception, *, block: str | None = None) -> None:
        details: dict[str, Any] = {"entity_type": entity.type, "handle": entity.handle, "layer": entity.layer}
        if block:
            details["block"] = block
        if isinstance(exc, UnsupportedEntityError):
            error_type = UNSUPPORTED_ENTITY
        elif isinstance(exc, MissingBlockError):
            error_type = MISSING_BLOCK
            details["block"] = exc.name
        elif isinstance(exc, CircularBlockError):
            error_type = CIRCULAR_BLOCK
            details["chain"] = exc.chain
        else:
            error_type = INVALID_COORDINATES
        self._run.stats.record_error(error_type, str(exc), **details)
        if error_type != UNSUPPORTED_ENTITY:
            logger.warning(
                "entity skipped | reason=%s | type=%s | handle=%s", error_type, entity.type, entity.handle
            )

    def _properties(self, entity: DxfEntity, shape: Shape, *, layer: str, block: str | None) -> dict[str, Any]:
        props: dict[str, Any] = {"layer": layer, "entity_type": entity.type}
        if entity.handle:
            props["handle"] = entity.handle
        try:
            color = entity.integer(62, _BYLAYER)
        except ValueError:
            color = _BYLAYER
        if color == _BYLAYER and layer in self._doc.layers:
            color = abs(self._doc.layers[layer].color)
        if color != _BYLAYER:
            props["color"] = color
        if block:
            props["block"] = block
        props.update(shape.properties)
        return props

    def convert(self, entity: DxfEntity, index: int) -> list[RawFeature]:
        raws: list[RawFeature] = []
        try:
            if entity.type == "INSERT":
                for member, shape, block in self._blocks.expand(entity):
                    # members on layer 0 take the insert's layer
                    layer = entity.layer if member.layer == "0" else member.layer
                    raws.append(self._raw(member, shape, index, layer=layer, block=block))
            else:
                for shape in convert_entity(entity):
                    raws.append(self._raw(entity, shape, index, layer=entity.layer, block=None))
        except (ValueError, LookupError, RecursionError) as exc:
            self._record(entity, exc)
            return []
        return raws

    def _raw(self, entity: DxfEntity, shape: Shape, index: int, *, layer: str, block: str | None) -> RawFeature:
        return RawFeature(
            geometry_type=shape.geometry_type,
            coordinates=shape.coordinates,
            properties=self._properties(entity, shape, layer=layer, block=block),
            source_tag=entity.type,
            source_index=index,
        )


class DxfParser(FormatParser):
    """ASCII DXF drawings."""

    format_key = FORMAT_DXF

    def _document(self, run: ParseRun) -> DxfDocument:
        return read_document(iter_tags(run.data, run.config.chunk_size_bytes))

    def _produce(self, run: ParseRun) -> Iterator[ProducedChunk]:
        doc = self._document(run)
        logger.info(
            "dxf opened | layers=%d | blocks=%d | entities=%d | units=%s",
            len(doc.layers),
            len(doc.blocks),
            len(doc.entities),
            doc.units,
        )
        return self._chunks(run, doc)

    def _chunks(self, run: ParseRun, doc: DxfDocument) -> Iterator[ProducedChunk]:
        converter = _Converter(run, doc)
        total = len(doc.entities)
        per_chunk = run.config.features_per_chunk
        batch: list[RawFeature] = []
        for index, entity in enumerate(doc.entities):
            batch.extend(converter.convert(entity, index))
            if len(batch) >= per_chunk:
                yield self._chunk(run, batch, index + 1, total)
                batch = []
        yield self._chunk(run, batch, total, total)

    def _analyze(self, run: ParseRun) -> StructuralSummary:
        doc = self._document(run)
        converter = _Converter(run, doc)
        types = Counter(entity.type for entity in doc.entities)
        used_layers = {entity.layer for entity in doc.entities}

        raws: list[RawFeature] = []
        for index, entity in enumerate(doc.entities):
            if len(raws) >= ANALYZE_SAMPLE_SIZE:
                break
            raws.extend(converter.convert(entity, index))
        sample = tuple(run.normalizer.normalize_all(raws[:ANALYZE_SAMPLE_SIZE]))

        bounds = doc.extents
        if bounds is None and sample:
            acc = BoundsAccumulator()
            acc.add_features(sample)
            bounds = acc.result()

        property_names: dict[str, None] = {}
        for feature in sample:
            property_names.update(dict.fromkeys(feature.properties))

        return StructuralSummary(
            format_key=self.format_key,
            layers=tuple(sorted(set(doc.layers) | used_layers)),
            entity_types=dict(types),
            blocks=tuple(sorted(doc.blocks)),
            sample=sample,
            bounds=bounds,
            feature_count=len(doc.entities),
            property_names=tuple(property_names),
            details={
                "units": doc.units,
                "layer_table": [layer.to_dict() for layer in doc.layers.values()],
            },
        )

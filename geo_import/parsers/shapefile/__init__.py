"""ESRI Shapefile parser.

Reads the ``.shp`` geometry stream, seeks records through the ``.shx``
index when present, pairs each geometry with the ``.dbf`` row at the same
position and seeds the source SRID from the optional ``.prj``.

- **_header**: 100-byte main/index header
- **_records**: record iteration and geometry decoding
- **_dbf**: dBase III attribute table
- **_prj**: projection side-file
"""

from __future__ import annotations

import itertools
import logging
import struct
from collections import Counter
from collections.abc import Iterator
from typing import Any

from geo_import.core.constants import FORMAT_SHAPEFILE
from geo_import.models.stats import INVALID_GEOMETRY, UNSUPPORTED_ENTITY
from geo_import.parsers._normalization import RawFeature
from geo_import.parsers.base import ANALYZE_SAMPLE_SIZE, FormatParser, ParseRun, StructuralSummary
from geo_import.parsers.shapefile._dbf import DbfTable, iter_rows, read_table
from geo_import.parsers.shapefile._header import HEADER_SIZE, ShapeHeader, read_header, read_index_offsets
from geo_import.parsers.shapefile._prj import read_prj
from geo_import.parsers.shapefile._records import (
    ShapeRecord,
    UnsupportedShapeError,
    decode_shape,
    iter_records,
)
from geo_import.streaming.chunker import iter_binary_windows
from geo_import.streaming.processor import ProducedChunk

logger = logging.getLogger("geo_import.parsers.shapefile")

__all__ = ["ShapefileParser"]


class _Layout:
    """Eagerly validated structure of one shapefile triad."""

    def __init__(self, run: ParseRun) -> None:
        self.header: ShapeHeader = read_header(run.data)
        shx = run.companions.get(".shx")
        self.index = read_index_offsets(shx) if shx else None
        dbf = run.companions.get(".dbf")
        self.dbf = dbf
        self.table: DbfTable | None = read_table(dbf) if dbf else None
        self.srid = read_prj(run.companions.get(".prj"))

    def rows(self) -> Iterator[dict[str, Any] | None]:
        if self.dbf is None or self.table is None:
            return itertools.repeat({})
        return itertools.chain(iter_rows(self.dbf, self.table), itertools.repeat({}))


class ShapefileParser(FormatParser):
    """Shapefile triad (``.shp`` + ``.shx`` + ``.dbf``, optional ``.prj``)."""

    format_key = FORMAT_SHAPEFILE

    def _raw(self, run: ParseRun, record: ShapeRecord, row: dict[str, Any]) -> RawFeature | None:
        try:
            decoded = decode_shape(run.data, record.offset, record.length)
        except UnsupportedShapeError as exc:
            run.stats.record_error(
                UNSUPPORTED_ENTITY,
                f"record {record.number}: {exc}",
                record=record.number,
                shape_type=exc.shape_type,
            )
            return None
        except (struct.error, ValueError) as exc:
            run.stats.record_error(
                INVALID_GEOMETRY,
                f"record {record.number} could not be decoded: {exc}",
                record=record.number,
            )
            return None
        if decoded is None:
            return None
        geometry_type, coordinates = decoded
        return RawFeature(
            geometry_type=geometry_type,
            coordinates=coordinates,
            properties=dict(row),
            source_tag="record",
            source_index=record.index,
        )

    def _produce(self, run: ParseRun) -> Iterator[ProducedChunk]:
        layout = _Layout(run)
        run.declared_srid = layout.srid
        logger.info(
            "shapefile opened | shape_type=%s | indexed=%s | fields=%d | srid=%s",
            layout.header.shape_type_name,
            layout.index is not None,
            len(layout.table.fields) if layout.table else 0,
            layout.srid,
        )
        return self._chunks(run, layout)

    def _chunks(self, run: ParseRun, layout: _Layout) -> Iterator[ProducedChunk]:
        total = len(run.data)
        per_chunk = run.config.features_per_chunk
        windows = iter_binary_windows(run.data, run.config.binary_read_cap_bytes, start=HEADER_SIZE)
        window = next(windows, None)
        rows = layout.rows()
        batch: list[RawFeature] = []
        processed = HEADER_SIZE

        for record, row in zip(iter_records(run.data, layout.index), rows, strict=False):
            while window is not None and record.offset >= window.end:
                if batch:
                    yield self._chunk(run, batch, processed, total)
                    batch = []
                window = next(windows, None)
            processed = max(processed, record.end)
            if row is None:
                # deleted in the attribute table
                continue
            raw = self._raw(run, record, row)
            if raw is not None:
                batch.append(raw)
            if len(batch) >= per_chunk:
                yield self._chunk(run, batch, processed, total)
                batch = []

        yield self._chunk(run, batch, total, total)

    def _analyze(self, run: ParseRun) -> StructuralSummary:
        layout = _Layout(run)
        run.declared_srid = layout.srid
        rows = layout.rows()
        types: Counter[str] = Counter()
        raws: list[RawFeature] = []
        count = 0
        for record, row in zip(iter_records(run.data, layout.index), rows, strict=False):
            count += 1
            if len(raws) >= ANALYZE_SAMPLE_SIZE or row is None:
                continue
            raw = self._raw(run, record, row)
            if raw is not None:
                raws.append(raw)
                types[raw.geometry_type.value] += 1

        sample = tuple(run.normalizer.normalize_all(raws))
        header = layout.header
        return StructuralSummary(
            format_key=self.format_key,
            layers=(),
            entity_types=dict(types) or {header.shape_type_name: 0},
            sample=sample,
            bounds=header.bbox,
            source_srid=layout.srid,
            feature_count=layout.table.record_count if layout.table else count,
            property_names=layout.table.field_names if layout.table else (),
            details={
                "shape_type": header.shape_type_name,
                "has_z": header.has_z,
                "indexed": layout.index is not None,
                "record_count": count,
            },
        )

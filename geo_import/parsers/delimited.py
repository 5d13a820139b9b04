"""Delimited text (CSV) parser.

The header row is sniffed for coordinate-like column names before any
row is converted; a file without an x/y pair is rejected as not
geospatial.  Each data row becomes a Point (with a third ordinate when an
elevation column is present) and the remaining columns become properties.

Format settings (``ParseOptions.settings``):
    delimiter: Force the delimiter instead of sniffing.
    x_column / y_column / z_column: Force the coordinate columns.
"""

from __future__ import annotations

import csv
import logging
import math
import re
from collections.abc import Iterator, Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from geo_import.core.constants import FORMAT_CSV
from geo_import.core.exceptions import StructuralParseError
from geo_import.models.feature import GeometryType
from geo_import.models.stats import INVALID_ROW
from geo_import.parsers._normalization import RawFeature
from geo_import.parsers.base import ANALYZE_SAMPLE_SIZE, FormatParser, ParseRun, StructuralSummary
from geo_import.parsers.shapefile._prj import read_prj
from geo_import.streaming.bounds import compute_bounds
from geo_import.streaming.chunker import head_text, iter_text_chunks
from geo_import.streaming.processor import ProducedChunk

logger = logging.getLogger("geo_import.parsers.delimited")

DELIMITER_CANDIDATES = (",", ";", "\t", "|")
SNIFF_LINES = 5

# Ordered by preference; exact names win over name parts, name parts over substrings.
X_NAMES = ("x", "lon", "lng", "long", "longitude", "easting", "east", "e")
Y_NAMES = ("y", "lat", "latitude", "northing", "north", "n")
Z_NAMES = ("z", "elevation", "elev", "height", "alt", "altitude", "h")
# A bare "z" substring would claim columns like "size"; z needs a name part.
X_SUBSTRINGS = ("longitude", "easting", "lon", "lng", "x")
Y_SUBSTRINGS = ("latitude", "northing", "lat", "y")
Z_SUBSTRINGS = ("elevation", "height", "altitude")

_NAME_PARTS = re.compile(r"[\W_]+")


def coerce_number(value: str) -> int | float | str | None:
    """Best-effort numeric coercion for attribute cells."""
    text = value.strip()
    if not text:
        return None
    try:
        return int(text)
    except ValueError:
        pass
    try:
        number = float(text)
    except ValueError:
        return text
    return number if math.isfinite(number) else text


def sniff_delimiter(lines: Sequence[str]) -> str:
    """Pick the candidate that splits the first lines most consistently."""
    sample = [ln for ln in lines if ln.strip()][:SNIFF_LINES]
    if not sample:
        return ","
    best, best_score = ",", 0
    for candidate in DELIMITER_CANDIDATES:
        counts = [len(next(csv.reader([ln], delimiter=candidate))) - 1 for ln in sample]
        if min(counts) == 0:
            continue
        # consistent column counts across lines beat raw frequency
        score = min(counts) * (2 if len(set(counts)) == 1 else 1)
        if score > best_score:
            best, best_score = candidate, score
    return best


def _find_column(
    lowered: Sequence[str],
    names: Sequence[str],
    substrings: Sequence[str],
    taken: frozenset[int] = frozenset(),
) -> int | None:
    free = [i for i in range(len(lowered)) if i not in taken]
    for name in names:
        for i in free:
            if lowered[i] == name:
                return i
    for name in names:
        for i in free:
            if name in _NAME_PARTS.split(lowered[i]):
                return i
    for sub in substrings:
        for i in free:
            if sub in lowered[i]:
                return i
    return None


@dataclass(frozen=True, slots=True)
class ColumnMapping:
    """Header columns and which of them carry coordinates."""

    header: tuple[str, ...]
    x: int
    y: int
    z: int | None = None

    @property
    def property_columns(self) -> tuple[int, ...]:
        used = {self.x, self.y, self.z}
        return tuple(i for i in range(len(self.header)) if i not in used)

    def to_dict(self) -> dict[str, Any]:
        return {
            "x": self.header[self.x],
            "y": self.header[self.y],
            "z": self.header[self.z] if self.z is not None else None,
        }


def map_columns(header: Sequence[str], settings: Mapping[str, Any]) -> ColumnMapping | None:
    """Assign x/y/z columns from settings or the header vocabulary.

    Each axis tries exact names, then name parts (``point_x``), then
    substrings, skipping columns already assigned to an earlier axis.
    """
    lowered = [h.strip().lower() for h in header]

    def forced(key: str) -> int | None:
        name = settings.get(key)
        if name is None:
            return None
        return lowered.index(str(name).lower()) if str(name).lower() in lowered else None

    x = forced("x_column")
    if x is None:
        x = _find_column(lowered, X_NAMES, X_SUBSTRINGS)
    y = forced("y_column")
    if y is None:
        y = _find_column(lowered, Y_NAMES, Y_SUBSTRINGS, frozenset({x} - {None}))
    z = forced("z_column")
    if z is None:
        z = _find_column(lowered, Z_NAMES, Z_SUBSTRINGS, frozenset({x, y} - {None}))
    if x is None or y is None or x == y:
        return None
    if z in (x, y):
        z = None
    return ColumnMapping(tuple(h.strip() for h in header), x, y, z)


class CsvParser(FormatParser):
    """Delimited text with coordinate columns."""

    format_key = FORMAT_CSV

    def _prologue(self, run: ParseRun) -> tuple[str, ColumnMapping, int]:
        """Return ``(delimiter, mapping, header line index)``.

        Raises:
            StructuralParseError: If the file is empty or has no coordinate columns.
        """
        head = head_text(run.data, run.config.chunk_size_bytes)
        lines = head.splitlines()
        first = next((i for i, ln in enumerate(lines) if ln.strip()), None)
        if first is None:
            msg = "file has no header row"
            raise StructuralParseError(msg, format_name=FORMAT_CSV)

        delimiter = run.options.settings.get("delimiter") or sniff_delimiter(lines[first:])
        header = next(csv.reader([lines[first]], delimiter=delimiter))
        mapping = map_columns(header, run.options.settings)
        if mapping is None:
            msg = f"no coordinate columns in header {lines[first][:120]!r}"
            raise StructuralParseError(msg, format_name=FORMAT_CSV)

        run.declared_srid = read_prj(run.companions.get(".prj"))
        run.details["columns"] = mapping.to_dict()
        run.details["delimiter"] = delimiter
        return delimiter, mapping, first

    def _row(self, run: ParseRun, mapping: ColumnMapping, row: list[str], line_no: int) -> RawFeature | None:
        try:
            coords = [float(row[mapping.x]), float(row[mapping.y])]
            if mapping.z is not None and row[mapping.z].strip():
                coords.append(float(row[mapping.z]))
        except (IndexError, ValueError) as exc:
            run.stats.record_error(INVALID_ROW, f"line {line_no}: {exc}", line=line_no)
            return None
        properties = {
            mapping.header[i]: coerce_number(row[i]) if i < len(row) else None for i in mapping.property_columns
        }
        return RawFeature(
            geometry_type=GeometryType.POINT,
            coordinates=coords,
            properties=properties,
            source_tag="row",
            source_index=line_no,
        )

    def _rows(self, run: ParseRun, delimiter: str, header_index: int) -> Iterator[tuple[int, int, int, list[str]]]:
        """Yield ``(line number, processed bytes, total bytes, cells)`` per data row."""
        line_no = 0
        for chunk in iter_text_chunks(run.data, run.config.chunk_size_bytes):
            reader = csv.reader(chunk.lines, delimiter=delimiter)
            for row in reader:
                line_no += 1
                if line_no <= header_index + 1:
                    continue
                if not row or not any(cell.strip() for cell in row):
                    continue
                yield line_no, chunk.end, chunk.total, row

    def _produce(self, run: ParseRun) -> Iterator[ProducedChunk]:
        delimiter, mapping, header_index = self._prologue(run)
        logger.info(
            "csv opened | delimiter=%r | columns=%s | srid=%s",
            delimiter,
            mapping.to_dict(),
            run.declared_srid,
        )
        return self._chunks(run, mapping, delimiter, header_index)

    def _chunks(self, run: ParseRun, mapping: ColumnMapping, delimiter: str, header_index: int) -> Iterator[ProducedChunk]:
        per_chunk = run.config.features_per_chunk
        batch: list[RawFeature] = []
        total = len(run.data)
        for line_no, processed, _total, row in self._rows(run, delimiter, header_index):
            raw = self._row(run, mapping, row, line_no)
            if raw is not None:
                batch.append(raw)
            if len(batch) >= per_chunk:
                yield self._chunk(run, batch, processed, total)
                batch = []
        yield self._chunk(run, batch, total, total)

    def _analyze(self, run: ParseRun) -> StructuralSummary:
        delimiter, mapping, header_index = self._prologue(run)
        raws: list[RawFeature] = []
        rows = 0
        complete = True
        for line_no, processed, total, row in self._rows(run, delimiter, header_index):
            if processed > run.config.chunk_size_bytes and processed < total:
                # only the first chunk is inspected
                complete = False
                break
            rows += 1
            if len(raws) < ANALYZE_SAMPLE_SIZE:
                raw = self._row(run, mapping, row, line_no)
                if raw is not None:
                    raws.append(raw)
        sample = tuple(run.normalizer.normalize_all(raws))
        return StructuralSummary(
            format_key=self.format_key,
            entity_types={"Point": rows},
            sample=sample,
            bounds=compute_bounds(sample) if sample else None,
            source_srid=run.declared_srid,
            feature_count=rows if complete else None,
            property_names=tuple(mapping.header[i] for i in mapping.property_columns),
            details=dict(run.details),
        )

"""XYZ point cloud parser.

One point per line: whitespace-, comma- or semicolon-separated x, y and
z, optionally followed by further numeric columns kept as ``value_<n>``
properties (``n`` is the 1-based column).  ``#`` comments, blank lines and
a leading header row naming the coordinate columns are skipped.
"""

from __future__ import annotations

import logging
import re
from collections.abc import Iterator

from geo_import.core.constants import COORDINATE_HEADER_PATTERN, FORMAT_XYZ, XYZ_LINE_PATTERN
from geo_import.core.exceptions import StructuralParseError
from geo_import.models.feature import GeometryType
from geo_import.models.stats import INVALID_ROW
from geo_import.parsers._normalization import RawFeature
from geo_import.parsers.base import ANALYZE_SAMPLE_SIZE, FormatParser, ParseRun, StructuralSummary
from geo_import.parsers.delimited import coerce_number
from geo_import.parsers.shapefile._prj import read_prj
from geo_import.streaming.bounds import compute_bounds
from geo_import.streaming.chunker import head_text, iter_text_chunks
from geo_import.streaming.processor import ProducedChunk

logger = logging.getLogger("geo_import.parsers.point_cloud")

_SPLIT = re.compile(r"[\s,;]+")


def _data_lines(text: str) -> Iterator[str]:
    for line in text.splitlines():
        stripped = line.strip()
        if stripped and not stripped.startswith("#"):
            yield stripped


class XyzParser(FormatParser):
    """Plain-text XYZ point clouds."""

    format_key = FORMAT_XYZ

    def _prologue(self, run: ParseRun) -> bool:
        """Check the first data line; return whether it is a header row.

        Raises:
            StructuralParseError: If no numeric x/y/z triple starts the data.
        """
        lines = _data_lines(head_text(run.data, run.config.chunk_size_bytes))
        first = next(lines, None)
        if first is None:
            msg = "file contains no points"
            raise StructuralParseError(msg, format_name=FORMAT_XYZ)

        has_header = not XYZ_LINE_PATTERN.match(first) and bool(COORDINATE_HEADER_PATTERN.search(first))
        candidate = next(lines, None) if has_header else first
        if candidate is None or not XYZ_LINE_PATTERN.match(candidate):
            msg = f"first data line is not an x/y/z triple: {(candidate or first)[:80]!r}"
            raise StructuralParseError(msg, format_name=FORMAT_XYZ)

        run.declared_srid = read_prj(run.companions.get(".prj"))
        return has_header

    def _line(self, run: ParseRun, line: str, line_no: int) -> RawFeature | None:
        cells = [c for c in _SPLIT.split(line) if c]
        try:
            if len(cells) < 3:
                raise ValueError(f"expected at least 3 columns, found {len(cells)}")
            coords = [float(cells[0]), float(cells[1]), float(cells[2])]
        except ValueError as exc:
            run.stats.record_error(INVALID_ROW, f"line {line_no}: {exc}", line=line_no)
            return None
        properties = {f"value_{i + 1}": coerce_number(cell) for i, cell in enumerate(cells[3:], start=3)}
        return RawFeature(
            geometry_type=GeometryType.POINT,
            coordinates=coords,
            properties=properties,
            source_tag="line",
            source_index=line_no,
        )

    def _lines(self, run: ParseRun, skip_header: bool) -> Iterator[tuple[int, int, int, str]]:
        """Yield ``(line number, processed bytes, total bytes, text)`` per data line."""
        line_no = 0
        header_pending = skip_header
        for chunk in iter_text_chunks(run.data, run.config.chunk_size_bytes):
            for raw in chunk.lines:
                line_no += 1
                line = raw.strip()
                if not line or line.startswith("#"):
                    continue
                if header_pending:
                    header_pending = False
                    continue
                yield line_no, chunk.end, chunk.total, line

    def _produce(self, run: ParseRun) -> Iterator[ProducedChunk]:
        has_header = self._prologue(run)
        logger.info("xyz opened | header=%s | srid=%s", has_header, run.declared_srid)
        return self._chunks(run, has_header)

    def _chunks(self, run: ParseRun, has_header: bool) -> Iterator[ProducedChunk]:
        per_chunk = run.config.features_per_chunk
        total = len(run.data)
        batch: list[RawFeature] = []
        for line_no, processed, _total, line in self._lines(run, has_header):
            raw = self._line(run, line, line_no)
            if raw is not None:
                batch.append(raw)
            if len(batch) >= per_chunk:
                yield self._chunk(run, batch, processed, total)
                batch = []
        yield self._chunk(run, batch, total, total)

    def _analyze(self, run: ParseRun) -> StructuralSummary:
        has_header = self._prologue(run)
        raws: list[RawFeature] = []
        for line_no, _processed, _total, line in self._lines(run, has_header):
            raw = self._line(run, line, line_no)
            if raw is not None:
                raws.append(raw)
            if len(raws) >= ANALYZE_SAMPLE_SIZE:
                break
        sample = tuple(run.normalizer.normalize_all(raws))
        extra = max((len(f.properties) for f in sample), default=0)
        return StructuralSummary(
            format_key=self.format_key,
            entity_types={"Point": len(sample)},
            sample=sample,
            bounds=compute_bounds(sample) if sample else None,
            source_srid=run.declared_srid,
            property_names=tuple(f"value_{i}" for i in range(4, 4 + extra)),
            details={"header": has_header},
        )

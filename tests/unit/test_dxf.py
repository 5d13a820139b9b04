"""Tests for the DXF parser.

Covers:
- Tag tokenizing and section structure (header, layer table, blocks)
- Entity conversion: closed polylines, lines, tessellated circles, text
- Layer colour inheritance and explicit colours
- INSERT expansion with nested placements and arrays
- Per-entity errors: unsupported types, undefined and circular blocks,
  non-numeric coordinates
- Structural rejection and analyze summary
"""

from __future__ import annotations

from collections.abc import Callable

import pytest

from geo_import.core.config import ImportConfig
from geo_import.core.exceptions import StructuralParseError
from geo_import.models.feature import GeometryType
from geo_import.models.stats import (
    CIRCULAR_BLOCK,
    INVALID_COORDINATES,
    MISSING_BLOCK,
    UNSUPPORTED_ENTITY,
)
from geo_import.parsers.dxf import DxfParser
from geo_import.parsers.dxf._structure import read_document
from geo_import.parsers.dxf._tokenizer import Tag, tokenize

TREE_BLOCK = (
    (0, "BLOCK"), (2, "TREE"), (10, 0.0), (20, 0.0),
    (0, "CIRCLE"), (8, "0"), (10, 0.0), (20, 0.0), (40, 1.0),
    (0, "ENDBLK"),
)


def _center(ring: tuple) -> tuple[float, float]:
    points = ring[:-1]
    return (
        sum(p[0] for p in points) / len(points),
        sum(p[1] for p in points) / len(points),
    )


class TestTokenizer:
    """Group-code/value pairs."""

    def test_mixed_line_endings_and_padding(self) -> None:
        tags = tokenize(b"  0\r\nSECTION\n  2\rENTITIES  \n\n  0\nEOF\n")
        assert tags == [Tag(0, "SECTION"), Tag(2, "ENTITIES"), Tag(0, "EOF")]

    def test_non_integer_code_rejected(self) -> None:
        with pytest.raises(StructuralParseError, match="expected a group code"):
            tokenize(b"garbage\nvalue\n")

    def test_dangling_code_rejected(self) -> None:
        with pytest.raises(StructuralParseError, match="has no value"):
            tokenize(b"  0\nSECTION\n  2\n")


class TestStructure:
    """Document layout."""

    def test_header_layers_and_blocks(self, dxf_sample: bytes) -> None:
        doc = read_document(tokenize(dxf_sample))
        assert doc.units == 6
        assert doc.extents == (0.0, 0.0, 100.0, 100.0)
        assert set(doc.layers) == {"0", "Walls"}
        assert doc.layers["Walls"].color == 1
        assert set(doc.blocks) == {"TREE"}
        assert [e.type for e in doc.entities] == ["LWPOLYLINE", "LINE", "CIRCLE", "INSERT"]

    def test_polyline_vertices_folded(self, dxf_builder: Callable[..., bytes]) -> None:
        data = dxf_builder(
            (
                (0, "POLYLINE"), (8, "Walls"), (70, 0),
                (0, "VERTEX"), (10, 0.0), (20, 0.0),
                (0, "VERTEX"), (10, 1.0), (20, 1.0),
                (0, "SEQEND"),
                (0, "POINT"), (10, 3.0), (20, 3.0),
            )
        )
        doc = read_document(tokenize(data))
        assert [e.type for e in doc.entities] == ["POLYLINE", "POINT"]
        assert len(doc.entities[0].children) == 2

    def test_unterminated_section_rejected(self) -> None:
        with pytest.raises(StructuralParseError, match="ENDSEC"):
            DxfParser().parse(b"  0\nSECTION\n  2\nENTITIES\n  0\nLINE\n")

    def test_stray_record_rejected(self) -> None:
        with pytest.raises(StructuralParseError, match="outside a section"):
            DxfParser().parse(b"  0\nLINE\n  0\nEOF\n")

    def test_no_section_rejected(self) -> None:
        with pytest.raises(StructuralParseError, match="no SECTION"):
            DxfParser().parse(b"  0\nEOF\n")


class TestDxfParse:
    """Entity conversion."""

    def test_sample_features(self, dxf_sample: bytes) -> None:
        result = DxfParser().parse(dxf_sample)
        features = result.dataset.features
        assert len(features) == 4
        assert [f.geometry.type for f in features] == [
            GeometryType.POLYGON,
            GeometryType.LINE_STRING,
            GeometryType.POLYGON,
            GeometryType.POLYGON,
        ]
        assert result.stats.errors == ()

    def test_closed_lwpolyline_is_closed_ring(self, dxf_sample: bytes) -> None:
        polygon = DxfParser().parse(dxf_sample).dataset.features[0]
        ring = polygon.geometry.coordinates[0]
        assert len(ring) == 5
        assert ring[0] == ring[-1]
        assert polygon.properties["layer"] == "Walls"
        assert polygon.properties["handle"] == "A1"
        assert polygon.properties["entity_type"] == "LWPOLYLINE"

    def test_repeated_first_vertex_closes_ring(self, dxf_builder: Callable[..., bytes]) -> None:
        data = dxf_builder(
            (
                (0, "LWPOLYLINE"), (8, "Walls"), (90, 4), (70, 0),
                (10, 0.0), (20, 0.0), (10, 4.0), (20, 0.0), (10, 4.0), (20, 3.0), (10, 0.0), (20, 0.0),
                (0, "LWPOLYLINE"), (8, "Walls"), (90, 3), (70, 0),
                (10, 0.0), (20, 0.0), (10, 4.0), (20, 0.0), (10, 4.0), (20, 3.0),
            )
        )
        closed, open_line = DxfParser().parse(data).dataset.features
        assert closed.geometry.type is GeometryType.POLYGON
        assert len(closed.geometry.coordinates[0]) == 4
        assert open_line.geometry.type is GeometryType.LINE_STRING

    def test_colour_inherited_from_layer(self, dxf_sample: bytes) -> None:
        line = DxfParser().parse(dxf_sample).dataset.features[1]
        assert line.properties["color"] == 1

    def test_explicit_colour_wins(self, dxf_builder: Callable[..., bytes]) -> None:
        data = dxf_builder(((0, "LINE"), (8, "Walls"), (62, 3), (10, 0.0), (20, 0.0), (11, 1.0), (21, 1.0)))
        assert DxfParser().parse(data).dataset.features[0].properties["color"] == 3

    def test_circle_tessellated(self, dxf_sample: bytes) -> None:
        circle = DxfParser().parse(dxf_sample).dataset.features[2]
        ring = circle.geometry.coordinates[0]
        assert len(ring) == 65
        assert ring[0] == ring[-1]
        assert circle.properties["radius"] == 2.0
        assert _center(ring) == pytest.approx((50.0, 50.0), abs=1e-6)

    def test_insert_places_block_on_insert_layer(self, dxf_sample: bytes) -> None:
        tree = DxfParser().parse(dxf_sample).dataset.features[3]
        assert tree.properties["layer"] == "Trees"
        assert tree.properties["block"] == "TREE"
        assert tree.properties["entity_type"] == "CIRCLE"
        assert "color" not in tree.properties
        assert _center(tree.geometry.coordinates[0]) == pytest.approx((20.0, 20.0), abs=1e-6)

    def test_nested_insert_composes_placements(self, dxf_builder: Callable[..., bytes]) -> None:
        row_block = (
            (0, "BLOCK"), (2, "ROW"), (10, 0.0), (20, 0.0),
            (0, "INSERT"), (8, "0"), (2, "TREE"), (10, 10.0), (20, 0.0),
            (0, "ENDBLK"),
        )
        data = dxf_builder(
            ((0, "INSERT"), (8, "Trees"), (2, "ROW"), (10, 100.0), (20, 100.0), (41, 2.0), (42, 2.0), (50, 90.0)),
            (*TREE_BLOCK, *row_block),
        )
        feature = DxfParser().parse(data).dataset.features[0]
        ring = feature.geometry.coordinates[0]
        assert _center(ring) == pytest.approx((100.0, 120.0), abs=1e-6)
        assert ring[0][0] == pytest.approx(100.0, abs=1e-6)
        assert ring[0][1] == pytest.approx(122.0, abs=1e-6)
        assert feature.properties["block"] == "TREE"

    def test_insert_array(self, dxf_builder: Callable[..., bytes]) -> None:
        data = dxf_builder(
            ((0, "INSERT"), (8, "Trees"), (2, "TREE"), (10, 0.0), (20, 0.0), (70, 3), (44, 5.0)),
            TREE_BLOCK,
        )
        features = DxfParser().parse(data).dataset.features
        centers = [_center(f.geometry.coordinates[0])[0] for f in features]
        assert centers == pytest.approx([0.0, 5.0, 10.0], abs=1e-6)

    def test_polyline_and_text(self, dxf_builder: Callable[..., bytes]) -> None:
        data = dxf_builder(
            (
                (0, "POLYLINE"), (8, "Walls"), (70, 0),
                (0, "VERTEX"), (10, 0.0), (20, 0.0),
                (0, "VERTEX"), (10, 1.0), (20, 1.0),
                (0, "SEQEND"),
                (0, "TEXT"), (8, "Labels"), (10, 1.0), (20, 2.0), (40, 2.5), (1, "Hello"),
            )
        )
        line, label = DxfParser().parse(data).dataset.features
        assert line.geometry.type is GeometryType.LINE_STRING
        assert label.geometry.type is GeometryType.POINT
        assert label.properties["text"] == "Hello"
        assert label.properties["height"] == 2.5

    def test_chunked_stream_keeps_all_features(self, dxf_sample: bytes) -> None:
        parser = DxfParser(config=ImportConfig(features_per_chunk=2))
        events = list(parser.stream(dxf_sample))
        assert sum(len(e.features) for e in events) == 4
        assert events[-1].fraction == 1.0


class TestEntityErrors:
    """Per-entity problems are recorded and skipped."""

    def test_unsupported_entity(self, dxf_builder: Callable[..., bytes]) -> None:
        data = dxf_builder(
            (
                (0, "HATCH"), (5, "H1"), (8, "Walls"),
                (0, "POINT"), (8, "Walls"), (10, 1.0), (20, 1.0),
            )
        )
        result = DxfParser().parse(data)
        assert len(result.dataset) == 1
        errors = result.stats.errors_of(UNSUPPORTED_ENTITY)
        assert len(errors) == 1
        assert errors[0].details["entity_type"] == "HATCH"
        assert errors[0].details["handle"] == "H1"

    def test_missing_block(self, dxf_builder: Callable[..., bytes]) -> None:
        data = dxf_builder(((0, "INSERT"), (8, "Trees"), (2, "NOPE"), (10, 0.0), (20, 0.0)))
        result = DxfParser().parse(data)
        assert len(result.dataset) == 0
        errors = result.stats.errors_of(MISSING_BLOCK)
        assert [e.details["block"] for e in errors] == ["NOPE"]

    def test_circular_block(self, dxf_builder: Callable[..., bytes]) -> None:
        loop = (
            (0, "BLOCK"), (2, "LOOP"), (10, 0.0), (20, 0.0),
            (0, "INSERT"), (8, "0"), (2, "LOOP"), (10, 1.0), (20, 1.0),
            (0, "ENDBLK"),
        )
        data = dxf_builder(((0, "INSERT"), (8, "0"), (2, "LOOP"), (10, 0.0), (20, 0.0)), loop)
        result = DxfParser().parse(data)
        errors = result.stats.errors_of(CIRCULAR_BLOCK)
        assert len(errors) == 1
        assert errors[0].details["chain"] == ["LOOP", "LOOP"]

    def test_nested_circular_block_keeps_placed_members(self, dxf_builder: Callable[..., bytes]) -> None:
        blocks = (
            (0, "BLOCK"), (2, "ROW"), (10, 0.0), (20, 0.0),
            (0, "LINE"), (8, "Walls"), (10, 0.0), (20, 0.0), (11, 1.0), (21, 0.0),
            (0, "INSERT"), (8, "0"), (2, "LOOP"), (10, 5.0), (20, 0.0),
            (0, "ENDBLK"),
            (0, "BLOCK"), (2, "LOOP"), (10, 0.0), (20, 0.0),
            (0, "INSERT"), (8, "0"), (2, "LOOP"), (10, 1.0), (20, 1.0),
            (0, "ENDBLK"),
        )
        data = dxf_builder(((0, "INSERT"), (8, "0"), (2, "ROW"), (10, 0.0), (20, 0.0)), blocks)
        result = DxfParser().parse(data)
        assert [f.properties["entity_type"] for f in result.dataset.features] == ["LINE"]
        errors = result.stats.errors_of(CIRCULAR_BLOCK)
        assert [e.details["chain"] for e in errors] == [["ROW", "LOOP", "LOOP"]]

    def test_non_numeric_coordinate(self, dxf_builder: Callable[..., bytes]) -> None:
        data = dxf_builder(
            (
                (0, "LINE"), (8, "Walls"), (10, "abc"), (20, 0.0), (11, 1.0), (21, 1.0),
                (0, "POINT"), (8, "Walls"), (10, 1.0), (20, 1.0),
            )
        )
        result = DxfParser().parse(data)
        assert len(result.dataset) == 1
        assert len(result.stats.errors_of(INVALID_COORDINATES)) == 1


class TestAnalyze:
    """Structural summary."""

    def test_summary(self, dxf_sample: bytes) -> None:
        summary = DxfParser().analyze(dxf_sample)
        assert summary.layers == ("0", "Trees", "Walls")
        assert summary.entity_types == {"LWPOLYLINE": 1, "LINE": 1, "CIRCLE": 1, "INSERT": 1}
        assert summary.blocks == ("TREE",)
        assert summary.bounds == (0.0, 0.0, 100.0, 100.0)
        assert summary.feature_count == 4
        assert summary.details["units"] == 6
        assert [layer["name"] for layer in summary.details["layer_table"]] == ["0", "Walls"]
        assert len(summary.sample) == 4

"""Tests for the import session.

Covers:
- Companion resolution and main file choice
- Parse into an authoritative full dataset kept in source coordinates
- Explicit SRID override keeping the selection
- Preview regeneration against the unchanged full dataset
- Import hand-off of the selected full features
- Concurrent analyze and the in-flight parse guard
"""

from __future__ import annotations

from unittest.mock import MagicMock

import pytest

from geo_import.core.exceptions import (
    ContractError,
    CoordinateSystemUnresolvedError,
    ParseInProgressError,
    UnsupportedFormatError,
)
from geo_import.parsers.base import ParseOptions
from geo_import.resolver import FileRef
from geo_import.session import ImportSession

UNPLACEABLE_CSV = b"x,y\n5000000,9000000\n5000010,9000010\n"


def _shapefile_refs(files: dict[str, bytes]) -> list[FileRef]:
    return [FileRef(f"parcels{ext}", data=data) for ext, data in files.items()]


class TestResolution:
    """Main file choice."""

    def test_single_set_chosen(self, point_shapefile: dict[str, bytes]) -> None:
        session = ImportSession(_shapefile_refs(point_shapefile))
        file_set = session.file_set()
        assert file_set.main.name == "parcels.shp"
        assert set(file_set.companions) == {".shx", ".dbf"}

    def test_several_sets_need_a_name(self, point_shapefile: dict[str, bytes], csv_sample: bytes) -> None:
        session = ImportSession([*_shapefile_refs(point_shapefile), FileRef("points.csv", data=csv_sample)])
        with pytest.raises(ValueError, match="Several main files"):
            session.file_set()
        assert session.file_set("points.csv").main.name == "points.csv"
        with pytest.raises(ValueError, match="Unknown main file"):
            session.file_set("other.csv")

    def test_no_supported_file(self) -> None:
        session = ImportSession([FileRef("notes.txt", data=b"hello")])
        with pytest.raises(UnsupportedFormatError):
            session.file_set()


class TestParse:
    """Full dataset lifecycle."""

    def test_parse_selects_everything(self, point_shapefile: dict[str, bytes]) -> None:
        session = ImportSession(_shapefile_refs(point_shapefile))
        result = session.parse()
        assert len(session.full_dataset) == 3
        assert session.source_srid == 2056
        assert session.srid_source == "detected"
        assert session.selection.selected_ids == frozenset({0, 1, 2})
        assert session.result is result

    def test_full_dataset_never_reprojected(self, csv_sample: bytes) -> None:
        session = ImportSession([FileRef("points.csv", data=csv_sample)])
        session.parse(options=ParseOptions(reproject=True, target_srid=4326))
        assert session.source_srid == 2056
        assert session.full_dataset.features[0].geometry.coordinates[:2] == (2600000.0, 1200000.0)

    def test_full_dataset_required(self) -> None:
        session = ImportSession([FileRef("points.csv", data=b"x,y\n1,2\n")])
        with pytest.raises(ContractError):
            _ = session.full_dataset

    def test_parse_in_flight_rejected(self, csv_sample: bytes) -> None:
        session = ImportSession([FileRef("points.csv", data=csv_sample)])
        seen: list[type[Exception]] = []

        def on_progress(_event: object) -> None:
            if seen:
                return
            assert session.is_parsing
            try:
                session.parse()
            except ParseInProgressError as exc:
                seen.append(type(exc))

        session.parse(on_progress=on_progress)
        assert seen == [ParseInProgressError]
        assert not session.is_parsing

    def test_analyze_all(self, csv_sample: bytes, geojson_sample: bytes) -> None:
        session = ImportSession(
            [FileRef("points.csv", data=csv_sample), FileRef("parcels.geojson", data=geojson_sample)]
        )
        summaries = session.analyze_all()
        assert set(summaries) == {"points.csv", "parcels.geojson"}
        assert summaries["points.csv"].format_key == "csv"
        assert summaries["parcels.geojson"].feature_count == 2


class TestSridAndPreview:
    """Explicit SRID and preview regeneration."""

    def test_set_source_srid_keeps_selection(self) -> None:
        session = ImportSession([FileRef("points.csv", data=UNPLACEABLE_CSV)])
        session.parse()
        assert session.source_srid is None
        session.selection.deselect([0])

        session.set_source_srid(2056)
        assert session.source_srid == 2056
        assert session.srid_source == "explicit"
        assert session.selection.selected_ids == frozenset({1})
        assert session.full_dataset.features[0].geometry.coordinates == (5000000.0, 9000000.0)

    def test_invalid_srid_rejected(self, csv_sample: bytes) -> None:
        session = ImportSession([FileRef("points.csv", data=csv_sample)])
        session.parse()
        with pytest.raises(ValueError):
            session.set_source_srid(0)

    def test_preview_reprojects_copy_only(self, csv_sample: bytes) -> None:
        session = ImportSession([FileRef("points.csv", data=csv_sample)])
        session.parse()
        preview = session.preview()
        assert preview.dataset.metadata.source_srid == 4326
        lon, lat = preview.dataset.features[0].geometry.coordinates[:2]
        assert lon == pytest.approx(7.4386, abs=0.01)
        assert lat == pytest.approx(46.9511, abs=0.01)
        assert session.full_dataset.features[0].geometry.coordinates[:2] == (2600000.0, 1200000.0)
        assert preview.ids == session.full_dataset.ids


class TestImportSelected:
    """Hand-off to the orchestrator."""

    def test_selected_full_features_submitted(self, csv_sample: bytes) -> None:
        orchestrator = MagicMock()
        session = ImportSession([FileRef("points.csv", data=csv_sample)], orchestrator=orchestrator)
        session.parse()
        session.selection.deselect([1])

        session.import_selected(project_file_id="file-1", collection_name="points")

        orchestrator.import_selection.assert_called_once()
        args, kwargs = orchestrator.import_selection.call_args
        assert args[0] is session.full_dataset
        assert args[1] == frozenset({0, 2})
        assert kwargs["source_srid"] == 2056
        assert kwargs["target_srid"] == 4326
        assert kwargs["collection_name"] == "points"

    def test_unresolved_srid_blocks_import(self) -> None:
        orchestrator = MagicMock()
        session = ImportSession([FileRef("points.csv", data=UNPLACEABLE_CSV)], orchestrator=orchestrator)
        session.parse()
        with pytest.raises(CoordinateSystemUnresolvedError):
            session.import_selected(project_file_id="f", collection_name="c")
        orchestrator.import_selection.assert_not_called()

    def test_orchestrator_required(self, csv_sample: bytes) -> None:
        session = ImportSession([FileRef("points.csv", data=csv_sample)])
        session.parse()
        with pytest.raises(ContractError):
            session.import_selected(project_file_id="f", collection_name="c")

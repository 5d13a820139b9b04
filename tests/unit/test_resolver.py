"""Tests for companion file resolution and the format registry.

Covers:
- Shapefile grouping with required and optional companions
- Case-insensitive base-name matching and directory-prefixed names
- Missing required companions reported by extension
- Unmatched files, multiple main files and size limits
- Format lookup and content sniffing
"""

from __future__ import annotations

from dataclasses import replace

import pytest

from geo_import.core.constants import FORMAT_REGISTRY, format_for_extension
from geo_import.core.exceptions import FileTooLargeError, MissingRequiredCompanionError
from geo_import.resolver import FileRef, resolve_companions, split_name


def _refs(*names: str) -> list[FileRef]:
    return [FileRef(name, data=b"x") for name in names]


class TestSplitName:
    """Base name / extension split."""

    @pytest.mark.parametrize(
        ("name", "expected"),
        [
            ("Parcels.SHP", ("parcels", ".shp")),
            ("upload/dir/roads.dbf", ("roads", ".dbf")),
            ("C:\\data\\roads.shx", ("roads", ".shx")),
            ("survey.points.xyz", ("survey.points", ".xyz")),
            ("README", ("readme", "")),
        ],
    )
    def test_split(self, name: str, expected: tuple[str, str]) -> None:
        assert split_name(name) == expected


class TestResolveCompanions:
    """Grouping behaviour."""

    def test_shapefile_with_all_companions(self) -> None:
        result = resolve_companions(_refs("parcels.shp", "parcels.shx", "parcels.dbf", "parcels.prj"))
        assert len(result.sets) == 1
        file_set = result.sets[0]
        assert file_set.main.name == "parcels.shp"
        assert file_set.format.key == "shp"
        assert sorted(file_set.companions) == [".dbf", ".prj", ".shx"]
        assert file_set.missing_optional == []
        assert result.unmatched == ()

    def test_case_insensitive_names(self) -> None:
        result = resolve_companions(_refs("Parcels.SHP", "PARCELS.shx", "parcels.DBF"))
        assert result.sets[0].has(".SHX")
        assert result.sets[0].missing_optional == [".prj"]

    def test_missing_required_companions_named(self) -> None:
        with pytest.raises(MissingRequiredCompanionError) as exc_info:
            resolve_companions(_refs("parcels.shp", "parcels.prj"))
        assert exc_info.value.missing_extensions == [".dbf", ".shx"]
        assert exc_info.value.main_file == "parcels.shp"

    def test_companion_with_other_base_name_not_attached(self) -> None:
        with pytest.raises(MissingRequiredCompanionError) as exc_info:
            resolve_companions(_refs("parcels.shp", "parcels.shx", "roads.dbf"))
        assert exc_info.value.missing_extensions == [".dbf"]

    def test_unmatched_files_reported(self) -> None:
        result = resolve_companions(_refs("points.csv", "notes.txt", "other.prj"))
        assert [s.main.name for s in result.sets] == ["points.csv"]
        assert [f.name for f in result.unmatched] == ["notes.txt", "other.prj"]

    def test_optional_companion_for_text_format(self) -> None:
        result = resolve_companions(_refs("survey.xyz", "survey.prj"))
        assert result.sets[0].has(".prj")
        assert result.sets[0].companion_bytes() == {".prj": b"x"}

    def test_several_main_files(self) -> None:
        result = resolve_companions(_refs("a.dxf", "b.geojson", "c.json", "c.qmd"))
        assert [s.format.key for s in result.sets] == ["dxf", "geojson", "geojson"]
        assert result.sets[2].has(".qmd")

    def test_unloaded_companion_omitted_from_bytes(self) -> None:
        result = resolve_companions([FileRef("a.csv", data=b"x,y"), FileRef("a.prj", size=10)])
        assert result.sets[0].has(".prj")
        assert result.sets[0].companion_bytes() == {}


class TestSizeLimits:
    """Per-format and per-companion size limits."""

    def _registry(self) -> dict:
        registry = dict(FORMAT_REGISTRY)
        registry["csv"] = replace(registry["csv"], max_size=10)
        return registry

    def test_main_file_too_large(self) -> None:
        with pytest.raises(FileTooLargeError) as exc_info:
            resolve_companions([FileRef("big.csv", size=11)], registry=self._registry())
        assert exc_info.value.size == 11
        assert exc_info.value.max_size == 10

    def test_size_enforcement_can_be_disabled(self) -> None:
        result = resolve_companions(
            [FileRef("big.csv", size=11)], registry=self._registry(), enforce_sizes=False
        )
        assert len(result.sets) == 1

    def test_companion_too_large(self) -> None:
        files = [FileRef("a.xyz", size=1), FileRef("a.prj", size=2 * 1024 * 1024)]
        with pytest.raises(FileTooLargeError):
            resolve_companions(files)


class TestFormatRegistry:
    """Lookup and sniffing."""

    def test_lookup_by_extension(self) -> None:
        assert format_for_extension(".JSON").key == "geojson"  # type: ignore[union-attr]
        assert format_for_extension("dxf").key == "dxf"  # type: ignore[union-attr]
        assert format_for_extension(".kml") is None

    def test_shapefile_requirements(self) -> None:
        spec = FORMAT_REGISTRY["shp"]
        assert spec.required_companions == (".shx", ".dbf")
        assert spec.main_extension == ".shp"
        assert spec.binary

    @pytest.mark.parametrize(
        ("key", "sample", "expected"),
        [
            ("shp", (9994).to_bytes(4, "big") + b"\x00" * 20, True),
            ("shp", b"PK\x03\x04", False),
            ("geojson", b'\xef\xbb\xbf  {"type": "FeatureCollection"}', True),
            ("geojson", b"[1, 2]", False),
            ("dxf", b"  0\r\nSECTION\r\n  2\r\nHEADER\r\n", True),
            ("dxf", b"999\r\ncomment\r\n", False),
            ("csv", b"name;Easting;Northing\n", True),
            ("csv", b"POINT_X,POINT_Y,name\n", True),
            ("csv", b"x_coord;y_coord\n", True),
            ("csv", b"a,b,c\n1,2,3\n", False),
            ("xyz", b"# comment\n2600000 1200000 500\n", True),
            ("xyz", b"x y z\n", False),
        ],
    )
    def test_content_check(self, key: str, sample: bytes, expected: bool) -> None:
        assert FORMAT_REGISTRY[key].content_check(sample) is expected

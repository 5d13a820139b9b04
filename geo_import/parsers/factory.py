"""Parser factory: selects the format parser for a file.

The factory maintains a registry of known parsers keyed by format key.
New formats are registered with ``register_parser``; the built-in ones
are loaded lazily so a deployment that only imports GeoJSON never
touches the shapefile or DXF code.

Usage::

    from geo_import.parsers.factory import parser_for_file

    parser = parser_for_file("parcels.shp")
    result = parser.parse(data, companions)
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from geo_import.core.constants import (
    FORMAT_CSV,
    FORMAT_DXF,
    FORMAT_GEOJSON,
    FORMAT_SHAPEFILE,
    FORMAT_XYZ,
    format_for_extension,
)
from geo_import.core.exceptions import UnsupportedFormatError
from geo_import.resolver import split_name

if TYPE_CHECKING:
    from collections.abc import Callable

    from geo_import.core.config import ImportConfig
    from geo_import.parsers.base import FormatParser
    from geo_import.streaming.memory import MemoryBudget
    from geo_import.streaming.monitor import MemoryMonitor

logger = logging.getLogger("geo_import.parsers.factory")

# ---------------------------------------------------------------------------
# Lazy-import parser registry
# ---------------------------------------------------------------------------

# Maps a format key to a callable returning the parser *class*.
_PARSER_REGISTRY: dict[str, Callable[[], type[FormatParser]]] = {}


def _register_builtin_parsers() -> None:
    """Register the built-in format parsers (called once)."""

    def _shapefile() -> type[FormatParser]:
        from geo_import.parsers.shapefile import ShapefileParser

        return ShapefileParser

    def _dxf() -> type[FormatParser]:
        from geo_import.parsers.dxf import DxfParser

        return DxfParser

    def _csv() -> type[FormatParser]:
        from geo_import.parsers.delimited import CsvParser

        return CsvParser

    def _xyz() -> type[FormatParser]:
        from geo_import.parsers.point_cloud import XyzParser

        return XyzParser

    def _geojson() -> type[FormatParser]:
        from geo_import.parsers.geojson import GeoJsonParser

        return GeoJsonParser

    _PARSER_REGISTRY[FORMAT_SHAPEFILE] = _shapefile
    _PARSER_REGISTRY[FORMAT_DXF] = _dxf
    _PARSER_REGISTRY[FORMAT_CSV] = _csv
    _PARSER_REGISTRY[FORMAT_XYZ] = _xyz
    _PARSER_REGISTRY[FORMAT_GEOJSON] = _geojson


def _ensure_registry() -> None:
    """Initialise the parser registry once (idempotent)."""
    if not _PARSER_REGISTRY:
        _register_builtin_parsers()


# ---------------------------------------------------------------------------
# Public API
# ---------------------------------------------------------------------------


def register_parser(key: str, loader: Callable[[], type[FormatParser]]) -> None:
    """Register a custom parser.

    Args:
        key: Format key (e.g. ``"gpx"``).
        loader: Zero-argument callable returning the parser class.

    Raises:
        ValueError: If the key is empty.
    """
    if not key:
        msg = "Parser key must be non-empty"
        raise ValueError(msg)
    _ensure_registry()
    _PARSER_REGISTRY[key] = loader
    logger.debug("parser registered | key=%s", key)


def get_parser(
    key: str,
    *,
    config: ImportConfig | None = None,
    budget: MemoryBudget | None = None,
    monitor: MemoryMonitor | None = None,
) -> FormatParser:
    """Create the parser registered under *key*.

    Raises:
        UnsupportedFormatError: If no parser is registered for *key*.
    """
    _ensure_registry()
    loader = _PARSER_REGISTRY.get(key)
    if loader is None:
        available = ", ".join(sorted(_PARSER_REGISTRY))
        msg = f"Unsupported format: {key!r}. Available: {available}"
        raise UnsupportedFormatError(msg)
    parser_cls = loader()
    logger.debug("parser created | key=%s | class=%s", key, parser_cls.__name__)
    return parser_cls(config=config, budget=budget, monitor=monitor)


def parser_for_file(
    file_name: str,
    *,
    config: ImportConfig | None = None,
    budget: MemoryBudget | None = None,
    monitor: MemoryMonitor | None = None,
) -> FormatParser:
    """Create the parser whose main extensions include *file_name*'s.

    Raises:
        UnsupportedFormatError: If the extension is not a registered main file.
    """
    _stem, ext = split_name(file_name)
    spec = format_for_extension(ext) if ext else None
    if spec is None:
        msg = f"Unsupported file type: {file_name!r}"
        raise UnsupportedFormatError(msg)
    return get_parser(spec.key, config=config, budget=budget, monitor=monitor)


def list_parsers() -> list[str]:
    """Return the keys of all registered parsers."""
    _ensure_registry()
    return sorted(_PARSER_REGISTRY)

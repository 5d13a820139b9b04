"""Format parsers.

One ``FormatParser`` per format, selected by extension through the
registry in ``factory``.  Concrete parsers are imported lazily by the
factory; import them directly only when you need the class itself.
"""

from geo_import.parsers.base import (
    FormatParser,
    ParseOptions,
    ParseResult,
    StructuralSummary,
)
from geo_import.parsers.factory import get_parser, list_parsers, parser_for_file, register_parser

__all__ = [
    "FormatParser",
    "ParseOptions",
    "ParseResult",
    "StructuralSummary",
    "get_parser",
    "list_parsers",
    "parser_for_file",
    "register_parser",
]

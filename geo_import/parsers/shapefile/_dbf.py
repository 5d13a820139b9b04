"""dBase III attribute table reader."""

from __future__ import annotations

import datetime
import logging
import struct
from collections.abc import Iterator
from dataclasses import dataclass
from typing import Any

from geo_import.core.constants import FORMAT_SHAPEFILE
from geo_import.core.exceptions import StructuralParseError

logger = logging.getLogger("geo_import.parsers.shapefile.dbf")

_TERMINATOR = 0x0D
_DELETED = 0x2A  # '*'
_DESCRIPTOR_SIZE = 32


@dataclass(frozen=True, slots=True)
class DbfField:
    name: str
    type: str
    length: int
    decimals: int


@dataclass(frozen=True, slots=True)
class DbfTable:
    """Parsed DBF header and record layout.

    Attributes:
        record_count: Declared number of records (deleted ones included).
        header_length: Byte offset of the first record.
        record_length: Bytes per record, deletion flag included.
        fields: Field descriptors in column order.
    """

    record_count: int
    header_length: int
    record_length: int
    fields: tuple[DbfField, ...]

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(f.name for f in self.fields)


def _text(raw: bytes) -> str:
    try:
        return raw.decode("utf-8")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def read_table(dbf: bytes) -> DbfTable:
    """Decode the DBF header and field descriptors.

    Raises:
        StructuralParseError: If the header is truncated or unterminated.
    """
    if len(dbf) < 32:
        msg = f".dbf header truncated: {len(dbf)} bytes"
        raise StructuralParseError(msg, format_name=FORMAT_SHAPEFILE)

    record_count, header_length, record_length = struct.unpack_from("<IHH", dbf, 4)
    fields: list[DbfField] = []
    pos = 32
    while True:
        if pos >= len(dbf):
            msg = ".dbf field descriptors are not terminated"
            raise StructuralParseError(msg, format_name=FORMAT_SHAPEFILE)
        if dbf[pos] == _TERMINATOR:
            break
        if pos + _DESCRIPTOR_SIZE > len(dbf):
            msg = f".dbf field descriptor at {pos} truncated"
            raise StructuralParseError(msg, format_name=FORMAT_SHAPEFILE)
        raw_name = dbf[pos : pos + 11].split(b"\x00", 1)[0]
        field_type = chr(dbf[pos + 11])
        length, decimals = dbf[pos + 16], dbf[pos + 17]
        fields.append(DbfField(_text(raw_name).strip(), field_type, length, decimals))
        pos += _DESCRIPTOR_SIZE

    return DbfTable(record_count, header_length, record_length, tuple(fields))


def convert_value(field: DbfField, raw: bytes) -> Any:
    """Convert a raw DBF cell into a Python value."""
    text = _text(raw).strip().strip("\x00")
    kind = field.type.upper()
    if kind in ("N", "F"):
        if not text or set(text) <= {"*", "?"}:
            return None
        try:
            if field.decimals == 0 and "." not in text:
                return int(text)
            return float(text)
        except ValueError:
            return None
    if kind == "L":
        if text in ("", "?"):
            return None
        return text.upper() in ("T", "Y")
    if kind == "D":
        if len(text) != 8 or not text.isdigit():
            return None
        try:
            return datetime.date(int(text[:4]), int(text[4:6]), int(text[6:8])).isoformat()
        except ValueError:
            return None
    return text


def iter_rows(dbf: bytes, table: DbfTable) -> Iterator[dict[str, Any] | None]:
    """Yield one attribute dict per record position.

    Deleted records yield ``None`` so positions stay aligned with the
    shape records.
    """
    for i in range(table.record_count):
        start = table.header_length + i * table.record_length
        end = start + table.record_length
        if end > len(dbf):
            logger.warning("dbf truncated | expected=%d | available=%d", table.record_count, i)
            return
        if dbf[start] == _DELETED:
            yield None
            continue
        pos = start + 1
        row: dict[str, Any] = {}
        for field in table.fields:
            row[field.name] = convert_value(field, dbf[pos : pos + field.length])
            pos += field.length
        yield row

"""DXF document structure: sections, layer table, blocks and entity stream."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field

from geo_import.core.constants import FORMAT_DXF
from geo_import.core.exceptions import StructuralParseError
from geo_import.parsers.dxf._tokenizer import Tag

logger = logging.getLogger("geo_import.parsers.dxf.structure")

# Entities whose children follow as separate records until SEQEND.
_COMPOUND = frozenset({"POLYLINE", "INSERT"})
_CHILDREN = frozenset({"VERTEX", "ATTRIB"})

LAYER_FROZEN = 1
LAYER_LOCKED = 4


# ---------------------------------------------------------------------------
# Records
# ---------------------------------------------------------------------------


@dataclass(slots=True)
class DxfEntity:
    """One ``0``-delimited record with its tags and attached children."""

    type: str
    tags: list[Tag] = field(default_factory=list)
    children: list[DxfEntity] = field(default_factory=list)

    def first(self, code: int, default: str | None = None) -> str | None:
        for tag in self.tags:
            if tag.code == code:
                return tag.value
        return default

    def all(self, code: int) -> list[str]:
        return [tag.value for tag in self.tags if tag.code == code]

    def number(self, code: int, default: float = 0.0) -> float:
        """Float value of *code*; ``ValueError`` if present but not numeric."""
        value = self.first(code)
        return default if value is None or value == "" else float(value)

    def integer(self, code: int, default: int = 0) -> int:
        value = self.first(code)
        if value is None or value == "":
            return default
        return int(float(value))

    def point(self, code: int = 10) -> list[float]:
        """``[x, y]`` or ``[x, y, z]`` from codes *code*, *code*+10, *code*+20."""
        x = self.number(code)
        y = self.number(code + 10)
        if self.first(code + 20) is not None:
            return [x, y, self.number(code + 20)]
        return [x, y]

    def points(self, x_code: int = 10) -> list[list[float]]:
        """Repeated ``x_code``/``x_code+10`` pairs in order (vertex lists)."""
        out: list[list[float]] = []
        for tag in self.tags:
            if tag.code == x_code:
                out.append([float(tag.value)])
            elif tag.code == x_code + 10 and out and len(out[-1]) == 1:
                out[-1].append(float(tag.value))
        return [p for p in out if len(p) == 2]

    @property
    def handle(self) -> str | None:
        return self.first(5)

    @property
    def layer(self) -> str:
        return self.first(8) or "0"


@dataclass(frozen=True, slots=True)
class Layer:
    name: str
    color: int = 7
    line_type: str = "CONTINUOUS"
    flags: int = 0

    @property
    def is_off(self) -> bool:
        return self.color < 0

    @property
    def is_frozen(self) -> bool:
        return bool(self.flags & LAYER_FROZEN)

    @property
    def is_locked(self) -> bool:
        return bool(self.flags & LAYER_LOCKED)

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "color": abs(self.color),
            "line_type": self.line_type,
            "off": self.is_off,
            "frozen": self.is_frozen,
            "locked": self.is_locked,
        }


@dataclass(slots=True)
class Block:
    name: str
    base: list[float]
    entities: list[DxfEntity] = field(default_factory=list)


@dataclass(slots=True)
class DxfDocument:
    """Structure of one drawing.

    Attributes:
        header: ``$VARIABLE`` → value (string, int or point list).
        layers: Layer table by name.
        blocks: Block definitions by name.
        entities: Model-space entity stream.
    """

    header: dict[str, object] = field(default_factory=dict)
    layers: dict[str, Layer] = field(default_factory=dict)
    blocks: dict[str, Block] = field(default_factory=dict)
    entities: list[DxfEntity] = field(default_factory=list)

    @property
    def units(self) -> int | None:
        value = self.header.get("$INSUNITS")
        return value if isinstance(value, int) else None

    @property
    def extents(self) -> tuple[float, float, float, float] | None:
        lo, hi = self.header.get("$EXTMIN"), self.header.get("$EXTMAX")
        if not isinstance(lo, list) or not isinstance(hi, list):
            return None
        if lo[0] > hi[0] or lo[1] > hi[1]:
            # AutoCAD writes inverted extents for empty drawings
            return None
        return (lo[0], lo[1], hi[0], hi[1])


# ---------------------------------------------------------------------------
# Reading
# ---------------------------------------------------------------------------


def split_records(tags: Iterable[Tag]) -> list[DxfEntity]:
    """Split the tag stream at each group code ``0``."""
    records: list[DxfEntity] = []
    current: DxfEntity | None = None
    for tag in tags:
        if tag.code == 0:
            current = DxfEntity(tag.value.upper())
            records.append(current)
        elif current is not None:
            current.tags.append(tag)
        else:
            msg = f"group code {tag.code} before the first record"
            raise StructuralParseError(msg, format_name=FORMAT_DXF)
    return records


def fold_children(records: Sequence[DxfEntity]) -> list[DxfEntity]:
    """Attach VERTEX/ATTRIB records to their POLYLINE/INSERT, dropping SEQEND."""
    out: list[DxfEntity] = []
    owner: DxfEntity | None = None
    for rec in records:
        if rec.type in _CHILDREN and owner is not None:
            owner.children.append(rec)
            continue
        if rec.type == "SEQEND":
            owner = None
            continue
        owner = rec if rec.type in _COMPOUND else None
        out.append(rec)
    return out


def _read_header(section: DxfEntity) -> dict[str, object]:
    header: dict[str, object] = {}
    name: str | None = None
    for tag in section.tags:
        if tag.code == 9:
            name = tag.value
            continue
        if name is None:
            continue
        if tag.code in (10, 20, 30):
            point = header.setdefault(name, [])
            if isinstance(point, list):
                try:
                    point.append(float(tag.value))
                except ValueError:
                    logger.debug("header value ignored | var=%s | value=%s", name, tag.value)
        elif 60 <= tag.code <= 79:
            try:
                header[name] = int(tag.value)
            except ValueError:
                logger.debug("header value ignored | var=%s | value=%s", name, tag.value)
        else:
            header.setdefault(name, tag.value)
    return header


def _read_layer(rec: DxfEntity) -> Layer:
    try:
        color = rec.integer(62, 7)
        flags = rec.integer(70, 0)
    except ValueError:
        color, flags = 7, 0
    return Layer(rec.first(2) or "0", color, rec.first(6) or "CONTINUOUS", flags)


def _read_blocks(records: Sequence[DxfEntity]) -> dict[str, Block]:
    blocks: dict[str, Block] = {}
    current: Block | None = None
    for rec in fold_children(records):
        if rec.type == "BLOCK":
            try:
                base = rec.point(10)
            except ValueError:
                base = [0.0, 0.0]
            current = Block(rec.first(2) or "", base[:2])
        elif rec.type == "ENDBLK":
            if current is not None and current.name:
                blocks[current.name] = current
            current = None
        elif current is not None:
            current.entities.append(rec)
    return blocks


def read_document(tags: Iterable[Tag]) -> DxfDocument:
    """Build a ``DxfDocument`` from a tag stream.

    Raises:
        StructuralParseError: If sections are missing, unterminated or
            interleaved with stray records.
    """
    records = split_records(tags)
    doc = DxfDocument()
    seen_section = False
    i = 0
    while i < len(records):
        rec = records[i]
        if rec.type == "EOF":
            break
        if rec.type != "SECTION":
            msg = f"unexpected record {rec.type!r} outside a section"
            raise StructuralParseError(msg, format_name=FORMAT_DXF)

        seen_section = True
        name = (rec.first(2) or "").upper()
        end = i + 1
        while end < len(records) and records[end].type != "ENDSEC":
            end += 1
        if end >= len(records):
            msg = f"section {name or '?'} is not terminated by ENDSEC"
            raise StructuralParseError(msg, format_name=FORMAT_DXF)
        body = records[i + 1 : end]

        if name == "HEADER":
            doc.header = _read_header(rec)
        elif name == "TABLES":
            for entry in body:
                if entry.type == "LAYER":
                    layer = _read_layer(entry)
                    doc.layers[layer.name] = layer
        elif name == "BLOCKS":
            doc.blocks = _read_blocks(body)
        elif name == "ENTITIES":
            doc.entities = fold_children(body)
        i = end + 1

    if not seen_section:
        msg = "no SECTION found"
        raise StructuralParseError(msg, format_name=FORMAT_DXF)

    logger.debug(
        "dxf structure read | layers=%d | blocks=%d | entities=%d",
        len(doc.layers),
        len(doc.blocks),
        len(doc.entities),
    )
    return doc

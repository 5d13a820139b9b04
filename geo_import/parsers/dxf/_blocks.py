"""Block insertion (INSERT) resolution.

An INSERT places a block's entities at an insertion point, scaled,
rotated and optionally repeated as a column/row array.  Nested INSERTs
inside a block compose their placements; a block that (directly or
indirectly) inserts itself is reported instead of recursing.
"""

from __future__ import annotations

import logging
import math
from collections.abc import Callable, Iterator
from dataclasses import dataclass
from typing import Any

from geo_import.models.feature import COORDINATE_DEPTH
from geo_import.parsers.dxf._entities import Shape, convert_entity
from geo_import.parsers.dxf._structure import Block, DxfEntity

logger = logging.getLogger("geo_import.parsers.dxf.blocks")

# Guard against pathological arrays
MAX_ARRAY_COPIES = 10_000


class MissingBlockError(LookupError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"INSERT references undefined block {name!r}")


class CircularBlockError(RecursionError):
    def __init__(self, chain: list[str]) -> None:
        self.chain = chain
        super().__init__(f"circular block reference {' -> '.join(chain)}")


@dataclass(frozen=True, slots=True)
class Affine:
    """2D affine map ``(x, y) -> (a*x + b*y + c, d*x + e*y + f)``."""

    a: float = 1.0
    b: float = 0.0
    c: float = 0.0
    d: float = 0.0
    e: float = 1.0
    f: float = 0.0

    def apply(self, x: float, y: float) -> tuple[float, float]:
        return (self.a * x + self.b * y + self.c, self.d * x + self.e * y + self.f)

    def then(self, outer: Affine) -> Affine:
        """Return the map applying ``self`` first, then *outer*."""
        return Affine(
            outer.a * self.a + outer.b * self.d,
            outer.a * self.b + outer.b * self.e,
            outer.a * self.c + outer.b * self.f + outer.c,
            outer.d * self.a + outer.e * self.d,
            outer.d * self.b + outer.e * self.e,
            outer.d * self.c + outer.e * self.f + outer.f,
        )

    @classmethod
    def placement(
        cls,
        base: list[float],
        insert: tuple[float, float],
        scale: tuple[float, float],
        rotation_deg: float,
    ) -> Affine:
        """Block-space → parent-space map of one INSERT copy."""
        cos, sin = math.cos(math.radians(rotation_deg)), math.sin(math.radians(rotation_deg))
        sx, sy = scale
        bx, by = base[0], base[1]
        a, b = cos * sx, -sin * sy
        d, e = sin * sx, cos * sy
        return cls(a, b, insert[0] - a * bx - b * by, d, e, insert[1] - d * bx - e * by)


IDENTITY = Affine()


def transform_coordinates(coords: Any, depth: int, affine: Affine) -> Any:
    if depth == 0:
        x, y = affine.apply(coords[0], coords[1])
        return [x, y, *coords[2:]]
    return [transform_coordinates(c, depth - 1, affine) for c in coords]


def insert_placements(insert: DxfEntity, base: list[float]) -> list[Affine]:
    """One placement per array copy of *insert* (``ValueError`` on bad numbers)."""
    ix, iy = insert.point(10)[:2]
    sx = insert.number(41, 1.0) or 1.0
    sy = insert.number(42, 1.0) or 1.0
    rotation = insert.number(50, 0.0)
    columns = max(1, insert.integer(70, 1))
    rows = max(1, insert.integer(71, 1))
    col_spacing = insert.number(44, 0.0)
    row_spacing = insert.number(45, 0.0)
    if columns * rows > MAX_ARRAY_COPIES:
        msg = f"INSERT array {columns}x{rows} exceeds {MAX_ARRAY_COPIES} copies"
        raise ValueError(msg)

    cos, sin = math.cos(math.radians(rotation)), math.sin(math.radians(rotation))
    placements: list[Affine] = []
    for row in range(rows):
        for col in range(columns):
            # array offsets run along the rotated insert axes
            ox, oy = col * col_spacing, row * row_spacing
            point = (ix + ox * cos - oy * sin, iy + ox * sin + oy * cos)
            placements.append(Affine.placement(base, point, (sx, sy), rotation))
    return placements


class BlockResolver:
    """Expand INSERT entities into placed shapes.

    Args:
        blocks: Block definitions by name.
        on_entity_error: Called with ``(entity, exc)`` for block members
            that fail to convert; resolution continues with the rest.
    """

    def __init__(
        self,
        blocks: dict[str, Block],
        on_entity_error: Callable[[DxfEntity, Exception], None] | None = None,
    ) -> None:
        self._blocks = blocks
        self._on_error = on_entity_error

    def expand(self, insert: DxfEntity) -> Iterator[tuple[DxfEntity, Shape, str]]:
        """Yield ``(source entity, placed shape, block name)`` for *insert*.

        Raises:
            MissingBlockError: If the top-level block is undefined.
            CircularBlockError: If the block references itself.
        """
        yield from self._expand(insert, IDENTITY, [])

    def _expand(
        self,
        insert: DxfEntity,
        outer: Affine,
        chain: list[str],
    ) -> Iterator[tuple[DxfEntity, Shape, str]]:
        name = insert.first(2) or ""
        if name in chain:
            raise CircularBlockError([*chain, name])
        block = self._blocks.get(name)
        if block is None:
            raise MissingBlockError(name)

        path = [*chain, name]
        for placement in insert_placements(insert, block.base):
            affine = placement.then(outer)
            for member in block.entities:
                if member.type == "INSERT":
                    try:
                        yield from self._expand(member, affine, path)
                    except (MissingBlockError, CircularBlockError, ValueError) as exc:
                        if self._on_error is None:
                            raise
                        self._on_error(member, exc)
                    continue
                try:
                    shapes = convert_entity(member)
                except ValueError as exc:
                    if self._on_error is None:
                        raise
                    self._on_error(member, exc)
                    continue
                for shape in shapes:
                    depth = COORDINATE_DEPTH[shape.geometry_type]
                    placed = Shape(
                        shape.geometry_type,
                        transform_coordinates(shape.coordinates, depth, affine),
                        dict(shape.properties),
                    )
                    yield member, placed, name

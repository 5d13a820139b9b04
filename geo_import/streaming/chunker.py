"""Source chunking.

Text formats are split into fixed-size byte chunks that are cut back to
the last line break, so a line never straddles two chunks and a ``\\r\\n``
pair is never split.  Binary formats are read as contiguous windows up to
a size cap, sliced from a ``memoryview`` without copying.
"""

from __future__ import annotations

from collections.abc import Iterator
from dataclasses import dataclass

DEFAULT_TEXT_CHUNK_SIZE = 64 * 1024
DEFAULT_BINARY_READ_CAP = 4 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class TextChunk:
    """A run of complete lines.

    Attributes:
        index: Zero-based chunk index.
        lines: Decoded lines without terminators.
        start: Byte offset of the first line.
        end: Byte offset just past the last line.
        total: Size of the whole source in bytes.
    """

    index: int
    lines: tuple[str, ...]
    start: int
    end: int
    total: int

    @property
    def size(self) -> int:
        return self.end - self.start

    @property
    def fraction(self) -> float:
        return self.end / self.total if self.total else 1.0


@dataclass(frozen=True, slots=True)
class BinaryWindow:
    """A contiguous slice of a binary source."""

    index: int
    offset: int
    view: memoryview
    total: int

    @property
    def end(self) -> int:
        return self.offset + len(self.view)


def decode_text(raw: bytes) -> str:
    """Decode UTF-8 (BOM tolerated), falling back to latin-1."""
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        return raw.decode("latin-1")


def _cut_point(data: bytes, start: int, end: int, total: int) -> int:
    """Return the offset just past the last line break in ``data[start:end]``."""
    if end >= total:
        return total
    newline = data.rfind(b"\n", start, end)
    if newline >= 0:
        return newline + 1
    carriage = data.rfind(b"\r", start, end)
    if carriage >= 0:
        cut = carriage + 1
        if cut < total and data[cut : cut + 1] == b"\n":
            cut += 1
        return cut
    # No break at all: extend to the next one rather than splitting a line.
    nxt = data.find(b"\n", end)
    return total if nxt < 0 else nxt + 1


def head_text(data: bytes, size: int) -> str:
    """Decode the leading lines of *data*, about *size* bytes, cut at a line break."""
    if size <= 0:
        msg = "size must be > 0"
        raise ValueError(msg)
    cut = _cut_point(data, 0, size, len(data))
    return decode_text(data[:cut]).lstrip("\ufeff")


def iter_text_chunks(data: bytes, chunk_size: int = DEFAULT_TEXT_CHUNK_SIZE) -> Iterator[TextChunk]:
    """Yield line-aligned chunks of roughly *chunk_size* bytes."""
    if chunk_size <= 0:
        msg = "chunk_size must be > 0"
        raise ValueError(msg)
    total = len(data)
    offset = 0
    index = 0
    while offset < total:
        cut = _cut_point(data, offset, offset + chunk_size, total)
        text = decode_text(data[offset:cut])
        if index == 0:
            text = text.lstrip("\ufeff")
        yield TextChunk(index, tuple(text.splitlines()), offset, cut, total)
        offset = cut
        index += 1


def iter_binary_windows(
    data: bytes | memoryview,
    read_cap: int = DEFAULT_BINARY_READ_CAP,
    *,
    start: int = 0,
) -> Iterator[BinaryWindow]:
    """Yield contiguous windows of at most *read_cap* bytes from *start*."""
    if read_cap <= 0:
        msg = "read_cap must be > 0"
        raise ValueError(msg)
    view = memoryview(data)
    total = len(view)
    offset = start
    index = 0
    while offset < total:
        end = min(total, offset + read_cap)
        yield BinaryWindow(index, offset, view[offset:end], total)
        offset = end
        index += 1

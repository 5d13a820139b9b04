"""DXF group-code/value tokenizer.

ASCII DXF is a flat sequence of line pairs: an integer group code
followed by its value.  The tokenizer reads line-aligned text chunks,
accepts ``\\r\\n``, ``\\r`` and ``\\n`` line endings and trailing
whitespace, and skips stray blank lines where a group code is expected.
"""

from __future__ import annotations

from collections.abc import Iterator
from typing import NamedTuple

from geo_import.core.constants import FORMAT_DXF
from geo_import.core.exceptions import StructuralParseError
from geo_import.streaming.chunker import DEFAULT_TEXT_CHUNK_SIZE, iter_text_chunks


class Tag(NamedTuple):
    code: int
    value: str


def iter_tags(data: bytes, chunk_size: int = DEFAULT_TEXT_CHUNK_SIZE) -> Iterator[Tag]:
    """Yield tags from DXF bytes.

    Raises:
        StructuralParseError: On a non-integer group code or a code with no value.
    """
    code: int | None = None
    line_no = 0
    for chunk in iter_text_chunks(data, chunk_size):
        for raw in chunk.lines:
            line_no += 1
            if code is None:
                text = raw.strip()
                if not text:
                    continue
                try:
                    code = int(text)
                except ValueError:
                    msg = f"line {line_no}: expected a group code, found {text[:40]!r}"
                    raise StructuralParseError(msg, format_name=FORMAT_DXF) from None
                continue
            yield Tag(code, raw.strip())
            code = None

    if code is not None:
        msg = f"group code {code} at end of file has no value"
        raise StructuralParseError(msg, format_name=FORMAT_DXF)


def tokenize(data: bytes, chunk_size: int = DEFAULT_TEXT_CHUNK_SIZE) -> list[Tag]:
    return list(iter_tags(data, chunk_size))

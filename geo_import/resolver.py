"""Companion file resolution.

Groups an uploaded file list into main files plus typed companions:

1. every file whose extension is a registered main extension becomes a
   main file;
2. for each main file, the remaining files with the same base name
   (case-insensitive) and a companion extension declared by the format
   are attached;
3. a main file missing any ``required`` companion is rejected with
   ``MissingRequiredCompanionError`` naming exactly the missing
   extensions, before any parsing happens.

Files that match nothing are reported, not treated as errors.
"""

from __future__ import annotations

import logging
import posixpath
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from geo_import.core.constants import FORMAT_REGISTRY, FormatSpec
from geo_import.core.exceptions import FileTooLargeError, MissingRequiredCompanionError

logger = logging.getLogger("geo_import.resolver")


def split_name(name: str) -> tuple[str, str]:
    """Return ``(lower-case base name, lower-case extension)``."""
    base = posixpath.basename(name.replace("\\", "/"))
    stem, ext = posixpath.splitext(base)
    return stem.lower(), ext.lower()


@dataclass(frozen=True, slots=True)
class FileRef:
    """A candidate file.

    Attributes:
        name: File name as uploaded (may include a directory).
        data: File content, when already loaded.
        size: Size in bytes (taken from ``data`` when omitted).
    """

    name: str
    data: bytes | None = None
    size: int | None = None

    @property
    def stem(self) -> str:
        return split_name(self.name)[0]

    @property
    def extension(self) -> str:
        return split_name(self.name)[1]

    @property
    def byte_size(self) -> int | None:
        if self.size is not None:
            return self.size
        return len(self.data) if self.data is not None else None


@dataclass(frozen=True, slots=True)
class CompanionFileSet:
    """A main file and its matched companions (immutable once validated)."""

    main: FileRef
    format: FormatSpec
    companions: Mapping[str, FileRef] = field(default_factory=dict)

    def has(self, extension: str) -> bool:
        return extension.lower() in self.companions

    def companion_bytes(self) -> dict[str, bytes]:
        """Companion contents keyed by extension (unloaded files omitted)."""
        return {ext: ref.data for ext, ref in self.companions.items() if ref.data is not None}

    @property
    def missing_optional(self) -> list[str]:
        return sorted(c.extension for c in self.format.companions if not c.required and c.extension not in self.companions)


@dataclass(frozen=True, slots=True)
class ResolutionResult:
    """All companion sets found, plus files nothing claimed."""

    sets: tuple[CompanionFileSet, ...]
    unmatched: tuple[FileRef, ...] = ()


def _main_format(ref: FileRef, registry: Mapping[str, FormatSpec]) -> FormatSpec | None:
    ext = ref.extension
    for spec in registry.values():
        if ext in spec.extensions:
            return spec
    return None


def _check_size(ref: FileRef, max_size: int) -> None:
    size = ref.byte_size
    if size is not None and size > max_size:
        raise FileTooLargeError(ref.name, size, max_size)


def resolve_companions(
    files: Iterable[FileRef],
    *,
    registry: Mapping[str, FormatSpec] = FORMAT_REGISTRY,
    enforce_sizes: bool = True,
) -> ResolutionResult:
    """Group *files* into companion sets.

    Raises:
        MissingRequiredCompanionError: If a main file lacks a required companion.
        FileTooLargeError: If *enforce_sizes* and a known size exceeds its limit.
    """
    candidates = list(files)
    mains: list[tuple[FileRef, FormatSpec]] = []
    others: list[FileRef] = []
    for ref in candidates:
        spec = _main_format(ref, registry)
        if spec is None:
            others.append(ref)
        else:
            mains.append((ref, spec))

    claimed: set[int] = set()
    sets: list[CompanionFileSet] = []
    for main, spec in mains:
        if enforce_sizes:
            _check_size(main, spec.max_size)

        companions: dict[str, FileRef] = {}
        for idx, other in enumerate(others):
            companion = spec.companion(other.extension)
            if companion is None or other.stem != main.stem:
                continue
            if enforce_sizes:
                _check_size(other, companion.max_size)
            companions[companion.extension] = other
            claimed.add(idx)
            logger.debug("companion matched | main=%s | companion=%s", main.name, other.name)

        missing = [ext for ext in spec.required_companions if ext not in companions]
        if missing:
            logger.warning(
                "companion resolution failed | main=%s | missing=%s", main.name, ",".join(missing)
            )
            raise MissingRequiredCompanionError(main.name, missing)

        sets.append(CompanionFileSet(main, spec, companions))
        logger.info(
            "companion set resolved | main=%s | format=%s | companions=%s",
            main.name,
            spec.key,
            ",".join(sorted(companions)) or "-",
        )

    unmatched = tuple(ref for idx, ref in enumerate(others) if idx not in claimed)
    return ResolutionResult(tuple(sets), unmatched)

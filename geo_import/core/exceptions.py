"""Unified import exception taxonomy.

Provides a shared base exception hierarchy for the resolver, the format
parsers, the streaming framework, the coordinate layer and the import
orchestrator. Every domain exception inherits from ``GeoImportError``
and carries structured context fields that enable consistent retry
decisions and caller diagnostics.

Taxonomy categories
-------------------
- ``ValidationError``: input/contract violations, never retryable.
- ``TransientError``: temporary failures (network, memory pressure), retryable.
- ``PermanentError``: unrecoverable domain failures, not retryable.
- ``ContractError``: misuse of an API between stages, never retryable.

Per-feature problems (a bad coordinate, an unresolved block) are *not*
exceptions: they are accumulated as ``StatsError`` records on the
processor statistics.  Only structural and stage-level failures raise.

Every exception exposes ``to_error_dict()`` for a stable structured
error payload suitable for callers and logging.
"""

from __future__ import annotations


class GeoImportError(Exception):
    """Base exception for all import-domain errors.

    Attributes:
        message: Human-readable error description.
        stage: Pipeline stage where the error occurred
            (e.g. ``"resolve"``, ``"parse"``, ``"import"``).
        code: Machine-readable error code (e.g. ``"STRUCTURAL_PARSE_FAILED"``).
        retryable: Whether the caller may retry the operation.
        correlation_id: Import-run or session correlation identifier.
    """

    #: Default stage for subclasses (override via class attribute or kwarg).
    default_stage: str = ""
    #: Default code for subclasses (override via class attribute or kwarg).
    default_code: str = ""

    def __init__(
        self,
        message: str = "",
        *,
        stage: str = "",
        code: str = "",
        retryable: bool = False,
        correlation_id: str = "",
    ) -> None:
        self.message = message
        self.stage = stage or self.default_stage
        self.code = code or self.default_code
        self.retryable = retryable
        self.correlation_id = correlation_id
        super().__init__(message)

    @property
    def category(self) -> str:
        """Return the error category based on concrete class."""
        if isinstance(self, ContractError):
            return "contract"
        if isinstance(self, ValidationError):
            return "validation"
        if isinstance(self, TransientError):
            return "transient"
        if isinstance(self, PermanentError):
            return "permanent"
        return "transient" if self.retryable else "permanent"

    def to_error_dict(self) -> dict[str, object]:
        """Return a structured error payload with stable keys."""
        return {
            "category": self.category,
            "code": self.code,
            "stage": self.stage,
            "message": self.message,
            "retryable": self.retryable,
            "correlation_id": self.correlation_id,
        }


# ---------------------------------------------------------------------------
# Category base classes
# ---------------------------------------------------------------------------


class ValidationError(GeoImportError):
    """Input or domain-model validation failure. Never retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class TransientError(GeoImportError):
    """Temporary failure that may succeed on retry."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", True)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class PermanentError(GeoImportError):
    """Unrecoverable domain failure. Not retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class ContractError(GeoImportError):
    """API misuse between pipeline stages. Never retryable."""

    def __init__(self, message: str = "", **kwargs: object) -> None:
        kwargs.setdefault("retryable", False)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


# ---------------------------------------------------------------------------
# Resolver errors
# ---------------------------------------------------------------------------


class MissingRequiredCompanionError(ValidationError):
    """A main file is missing one or more required companion files.

    Attributes:
        main_file: Name of the main file whose companions are incomplete.
        missing_extensions: Sorted, lower-case extensions (with leading dot).
    """

    default_stage = "resolve"
    default_code = "MISSING_REQUIRED_COMPANION"

    def __init__(self, main_file: str, missing_extensions: list[str]) -> None:
        self.main_file = main_file
        self.missing_extensions = sorted(missing_extensions)
        super().__init__(
            f"{main_file}: missing required companion file(s) {', '.join(self.missing_extensions)}"
        )


class UnsupportedFormatError(ValidationError):
    """No registry entry or parser exists for a file."""

    default_stage = "resolve"
    default_code = "UNSUPPORTED_FORMAT"


class FileTooLargeError(ValidationError):
    """A main or companion file exceeds its registry size limit."""

    default_stage = "resolve"
    default_code = "FILE_TOO_LARGE"

    def __init__(self, file_name: str, size: int, max_size: int) -> None:
        self.file_name = file_name
        self.size = size
        self.max_size = max_size
        super().__init__(f"{file_name}: {size} bytes exceeds limit of {max_size} bytes")


# ---------------------------------------------------------------------------
# Parser errors
# ---------------------------------------------------------------------------


class StructuralParseError(PermanentError):
    """Malformed file header or section. Fails before feature conversion."""

    default_stage = "parse"
    default_code = "STRUCTURAL_PARSE_FAILED"

    def __init__(self, message: str = "", *, format_name: str = "", **kwargs: object) -> None:
        self.format_name = format_name
        super().__init__(message, **kwargs)


class ParseInProgressError(ContractError):
    """A parse was started on a parser that already has one in flight."""

    default_stage = "parse"
    default_code = "PARSE_IN_PROGRESS"


# ---------------------------------------------------------------------------
# Streaming / resource errors
# ---------------------------------------------------------------------------


class MemoryBudgetExceededError(TransientError):
    """A chunk could not be admitted after the bounded retry sequence."""

    default_stage = "stream"
    default_code = "MEMORY_BUDGET_EXCEEDED"


class BackpressureViolationError(ContractError):
    """A producer released more than it admitted or bypassed admission."""

    default_stage = "stream"
    default_code = "BACKPRESSURE_VIOLATION"


# ---------------------------------------------------------------------------
# Coordinate errors
# ---------------------------------------------------------------------------


class CoordinateSystemUnresolvedError(ValidationError):
    """The source SRID could not be inferred and none was supplied."""

    default_stage = "crs"
    default_code = "CRS_UNRESOLVED"


class ReprojectionError(PermanentError):
    """A transformer could not be built for the requested SRID pair."""

    default_stage = "crs"
    default_code = "REPROJECTION_FAILED"


# ---------------------------------------------------------------------------
# Import errors
# ---------------------------------------------------------------------------


class ImportEndpointError(GeoImportError):
    """The import endpoint rejected a request or was unreachable.

    Transport failures, HTTP 5xx and 429 are retryable; other 4xx are not.

    Attributes:
        status_code: HTTP status, or ``0`` for transport failures.
    """

    default_stage = "import"
    default_code = "IMPORT_ENDPOINT_FAILED"

    def __init__(self, message: str = "", *, status_code: int = 0, **kwargs: object) -> None:
        self.status_code = status_code
        kwargs.setdefault("retryable", status_code == 0 or status_code == 429 or status_code >= 500)
        super().__init__(message, **kwargs)  # type: ignore[arg-type]


class ImportTimeoutError(TransientError):
    """An import run exceeded the hard progress-tracking ceiling."""

    default_stage = "import"
    default_code = "IMPORT_TIMEOUT"


class ImportRunFailedError(PermanentError):
    """The endpoint reported the import run as failed."""

    default_stage = "import"
    default_code = "IMPORT_RUN_FAILED"

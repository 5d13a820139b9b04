"""Import configuration loaded from environment variables.

All configuration values have defaults suitable for interactive use.
``from_env()`` raises ``ConfigValidationError`` if any numeric value is
out of its valid range, so bad configuration is caught at startup
rather than mid-import.
"""

from __future__ import annotations

import os
from dataclasses import dataclass

from geo_import.core.constants import MIB, SRID_WGS84
from geo_import.core.exceptions import GeoImportError


class ConfigValidationError(GeoImportError):
    """Raised when configuration values are out of valid range.

    Attributes:
        key: The configuration key that failed validation.
        value: The invalid value.
        message: Human-readable description of the valid range.
    """

    default_stage = "config"
    default_code = "CONFIG_VALIDATION_FAILED"

    def __init__(self, key: str, value: object, message: str) -> None:
        self.key = key
        self.value = value
        super().__init__(f"Invalid configuration {key}={value!r}: {message}")


@dataclass(frozen=True, slots=True)
class ImportConfig:
    """Immutable import configuration.

    Loaded once per process (or built directly in tests) and passed to
    the components that need it.

    Attributes:
        chunk_size_bytes: Chunk size for text formats.
        binary_read_cap_bytes: Largest single contiguous read for binary formats.
        features_per_chunk: Canonical features emitted per chunk event.
        memory_budget_bytes: Budget shared by all chunk producers.
        memory_retry_attempts: Admission retries before escalating.
        memory_retry_delay_seconds: Base wait between admission retries.
        monitor_interval_seconds: Memory monitor sampling interval.
        monitor_warning_ratio: Fraction of the limit that triggers a warning.
        preview_max_features: Preview feature ceiling.
        preview_simplify_tolerance: Simplification tolerance (target units).
        default_target_srid: SRID the preview is reprojected to.
        import_endpoint_url: Base URL of the batch import endpoint.
        import_batch_size: Features per endpoint batch.
        import_timeout_seconds: Hard progress-tracking ceiling.
        poll_interval_connected_seconds: Safety poll interval while the feed is up.
        poll_interval_disconnected_seconds: Poll interval while the feed is down.
        max_retries: Transport retries before a run is failed.
        retry_base_seconds: Exponential backoff base.
        retry_max_seconds: Exponential backoff cap.
    """

    chunk_size_bytes: int = 64 * 1024
    binary_read_cap_bytes: int = 4 * MIB
    features_per_chunk: int = 1000
    memory_budget_bytes: int = 256 * MIB
    memory_retry_attempts: int = 3
    memory_retry_delay_seconds: float = 0.1
    monitor_interval_seconds: float = 5.0
    monitor_warning_ratio: float = 0.7
    preview_max_features: int = 500
    preview_simplify_tolerance: float = 0.0001
    default_target_srid: int = SRID_WGS84
    import_endpoint_url: str = ""
    import_batch_size: int = 100
    import_timeout_seconds: float = 300.0
    poll_interval_connected_seconds: float = 10.0
    poll_interval_disconnected_seconds: float = 2.0
    max_retries: int = 3
    retry_base_seconds: float = 1.0
    retry_max_seconds: float = 10.0

    @classmethod
    def from_env(cls) -> ImportConfig:
        """Load and validate configuration from ``GEO_IMPORT_*`` variables.

        Raises:
            ConfigValidationError: If a numeric value is out of range.
            ValueError: If a numeric environment variable cannot be
                parsed (e.g. ``GEO_IMPORT_BATCH_SIZE=abc``).
        """
        config = cls(
            chunk_size_bytes=int(os.getenv("GEO_IMPORT_CHUNK_SIZE_BYTES", "65536")),
            binary_read_cap_bytes=int(os.getenv("GEO_IMPORT_BINARY_READ_CAP_BYTES", str(4 * MIB))),
            features_per_chunk=int(os.getenv("GEO_IMPORT_FEATURES_PER_CHUNK", "1000")),
            memory_budget_bytes=int(os.getenv("GEO_IMPORT_MEMORY_BUDGET_BYTES", str(256 * MIB))),
            memory_retry_attempts=int(os.getenv("GEO_IMPORT_MEMORY_RETRY_ATTEMPTS", "3")),
            memory_retry_delay_seconds=float(
                os.getenv("GEO_IMPORT_MEMORY_RETRY_DELAY_SECONDS", "0.1")
            ),
            monitor_interval_seconds=float(os.getenv("GEO_IMPORT_MONITOR_INTERVAL_SECONDS", "5")),
            monitor_warning_ratio=float(os.getenv("GEO_IMPORT_MONITOR_WARNING_RATIO", "0.7")),
            preview_max_features=int(os.getenv("GEO_IMPORT_PREVIEW_MAX_FEATURES", "500")),
            preview_simplify_tolerance=float(
                os.getenv("GEO_IMPORT_PREVIEW_SIMPLIFY_TOLERANCE", "0.0001")
            ),
            default_target_srid=int(os.getenv("GEO_IMPORT_TARGET_SRID", str(SRID_WGS84))),
            import_endpoint_url=os.getenv("GEO_IMPORT_ENDPOINT_URL", ""),
            import_batch_size=int(os.getenv("GEO_IMPORT_BATCH_SIZE", "100")),
            import_timeout_seconds=float(os.getenv("GEO_IMPORT_TIMEOUT_SECONDS", "300")),
            poll_interval_connected_seconds=float(
                os.getenv("GEO_IMPORT_POLL_INTERVAL_CONNECTED_SECONDS", "10")
            ),
            poll_interval_disconnected_seconds=float(
                os.getenv("GEO_IMPORT_POLL_INTERVAL_DISCONNECTED_SECONDS", "2")
            ),
            max_retries=int(os.getenv("GEO_IMPORT_MAX_RETRIES", "3")),
            retry_base_seconds=float(os.getenv("GEO_IMPORT_RETRY_BASE_SECONDS", "1")),
            retry_max_seconds=float(os.getenv("GEO_IMPORT_RETRY_MAX_SECONDS", "10")),
        )
        _validate(config)
        return config


def _validate(config: ImportConfig) -> None:
    """Validate configuration ranges.  Raises ``ConfigValidationError``."""
    positive = {
        "GEO_IMPORT_CHUNK_SIZE_BYTES": config.chunk_size_bytes,
        "GEO_IMPORT_FEATURES_PER_CHUNK": config.features_per_chunk,
        "GEO_IMPORT_MEMORY_BUDGET_BYTES": config.memory_budget_bytes,
        "GEO_IMPORT_MONITOR_INTERVAL_SECONDS": config.monitor_interval_seconds,
        "GEO_IMPORT_PREVIEW_MAX_FEATURES": config.preview_max_features,
        "GEO_IMPORT_TARGET_SRID": config.default_target_srid,
        "GEO_IMPORT_BATCH_SIZE": config.import_batch_size,
        "GEO_IMPORT_TIMEOUT_SECONDS": config.import_timeout_seconds,
        "GEO_IMPORT_POLL_INTERVAL_CONNECTED_SECONDS": config.poll_interval_connected_seconds,
        "GEO_IMPORT_POLL_INTERVAL_DISCONNECTED_SECONDS": config.poll_interval_disconnected_seconds,
        "GEO_IMPORT_RETRY_BASE_SECONDS": config.retry_base_seconds,
    }
    for key, value in positive.items():
        if value <= 0:
            raise ConfigValidationError(key, value, "must be > 0")

    non_negative = {
        "GEO_IMPORT_MEMORY_RETRY_ATTEMPTS": config.memory_retry_attempts,
        "GEO_IMPORT_MEMORY_RETRY_DELAY_SECONDS": config.memory_retry_delay_seconds,
        "GEO_IMPORT_PREVIEW_SIMPLIFY_TOLERANCE": config.preview_simplify_tolerance,
        "GEO_IMPORT_MAX_RETRIES": config.max_retries,
    }
    for key, value in non_negative.items():
        if value < 0:
            raise ConfigValidationError(key, value, "must be >= 0")

    if config.binary_read_cap_bytes < config.chunk_size_bytes:
        raise ConfigValidationError(
            "GEO_IMPORT_BINARY_READ_CAP_BYTES",
            config.binary_read_cap_bytes,
            "must be >= GEO_IMPORT_CHUNK_SIZE_BYTES",
        )

    if not 0.0 < config.monitor_warning_ratio <= 1.0:
        raise ConfigValidationError(
            "GEO_IMPORT_MONITOR_WARNING_RATIO",
            config.monitor_warning_ratio,
            "must be in (0, 1]",
        )

    if config.poll_interval_disconnected_seconds > config.poll_interval_connected_seconds:
        raise ConfigValidationError(
            "GEO_IMPORT_POLL_INTERVAL_DISCONNECTED_SECONDS",
            config.poll_interval_disconnected_seconds,
            "must be <= GEO_IMPORT_POLL_INTERVAL_CONNECTED_SECONDS",
        )

    if config.retry_max_seconds < config.retry_base_seconds:
        raise ConfigValidationError(
            "GEO_IMPORT_RETRY_MAX_SECONDS",
            config.retry_max_seconds,
            "must be >= GEO_IMPORT_RETRY_BASE_SECONDS",
        )

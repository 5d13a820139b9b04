"""Tests for import configuration.

Covers:
- Default values for chunking, memory, preview and import tracking
- Loading from ``GEO_IMPORT_*`` environment variables
- Type coercion (string env vars → numeric fields)
- Fail-fast range validation
"""

from __future__ import annotations

import os
from unittest.mock import patch

import pytest

from geo_import.core.config import ConfigValidationError, ImportConfig
from geo_import.core.constants import MIB


class TestImportConfigDefaults:
    """Verify default configuration values."""

    def test_default_chunking(self) -> None:
        cfg = ImportConfig()
        assert cfg.chunk_size_bytes == 64 * 1024
        assert cfg.binary_read_cap_bytes == 4 * MIB
        assert cfg.features_per_chunk == 1000

    def test_default_memory(self) -> None:
        cfg = ImportConfig()
        assert cfg.memory_budget_bytes == 256 * MIB
        assert cfg.memory_retry_attempts == 3
        assert cfg.monitor_warning_ratio == 0.7

    def test_default_preview(self) -> None:
        cfg = ImportConfig()
        assert cfg.preview_max_features == 500
        assert cfg.default_target_srid == 4326

    def test_default_import_tracking(self) -> None:
        cfg = ImportConfig()
        assert cfg.import_timeout_seconds == 300.0
        assert cfg.poll_interval_connected_seconds == 10.0
        assert cfg.poll_interval_disconnected_seconds == 2.0
        assert cfg.max_retries == 3
        assert cfg.retry_base_seconds == 1.0
        assert cfg.retry_max_seconds == 10.0


class TestImportConfigFromEnv:
    """Verify loading from environment variables."""

    def test_loads_from_environment(self) -> None:
        """Env vars are read and coerced to the right types."""
        env = {
            "GEO_IMPORT_CHUNK_SIZE_BYTES": "1024",
            "GEO_IMPORT_FEATURES_PER_CHUNK": "50",
            "GEO_IMPORT_PREVIEW_MAX_FEATURES": "200",
            "GEO_IMPORT_TARGET_SRID": "2056",
            "GEO_IMPORT_ENDPOINT_URL": "https://import.example.test/api",
            "GEO_IMPORT_TIMEOUT_SECONDS": "120",
            "GEO_IMPORT_MAX_RETRIES": "5",
        }
        with patch.dict(os.environ, env, clear=True):
            cfg = ImportConfig.from_env()

        assert cfg.chunk_size_bytes == 1024
        assert cfg.features_per_chunk == 50
        assert cfg.preview_max_features == 200
        assert cfg.default_target_srid == 2056
        assert cfg.import_endpoint_url == "https://import.example.test/api"
        assert cfg.import_timeout_seconds == 120.0
        assert cfg.max_retries == 5

    def test_defaults_when_env_missing(self) -> None:
        with patch.dict(os.environ, {}, clear=True):
            cfg = ImportConfig.from_env()
        assert cfg == ImportConfig()

    def test_non_numeric_value_raises(self) -> None:
        with (
            patch.dict(os.environ, {"GEO_IMPORT_BATCH_SIZE": "abc"}, clear=True),
            pytest.raises(ValueError),
        ):
            ImportConfig.from_env()

    def test_frozen_immutability(self) -> None:
        cfg = ImportConfig()
        with pytest.raises(AttributeError):
            cfg.max_retries = 9  # type: ignore[misc]


class TestImportConfigValidation:
    """Fail-fast range validation in from_env."""

    @pytest.mark.parametrize(
        "key",
        [
            "GEO_IMPORT_CHUNK_SIZE_BYTES",
            "GEO_IMPORT_FEATURES_PER_CHUNK",
            "GEO_IMPORT_BATCH_SIZE",
            "GEO_IMPORT_TIMEOUT_SECONDS",
            "GEO_IMPORT_PREVIEW_MAX_FEATURES",
        ],
    )
    def test_zero_rejected(self, key: str) -> None:
        with (
            patch.dict(os.environ, {key: "0"}, clear=True),
            pytest.raises(ConfigValidationError, match=key),
        ):
            ImportConfig.from_env()

    def test_negative_retries_rejected(self) -> None:
        with (
            patch.dict(os.environ, {"GEO_IMPORT_MAX_RETRIES": "-1"}, clear=True),
            pytest.raises(ConfigValidationError, match="must be >= 0"),
        ):
            ImportConfig.from_env()

    def test_zero_retries_accepted(self) -> None:
        with patch.dict(os.environ, {"GEO_IMPORT_MAX_RETRIES": "0"}, clear=True):
            cfg = ImportConfig.from_env()
        assert cfg.max_retries == 0

    def test_warning_ratio_out_of_range(self) -> None:
        with (
            patch.dict(os.environ, {"GEO_IMPORT_MONITOR_WARNING_RATIO": "1.5"}, clear=True),
            pytest.raises(ConfigValidationError, match="WARNING_RATIO"),
        ):
            ImportConfig.from_env()

    def test_binary_cap_below_chunk_size_rejected(self) -> None:
        env = {"GEO_IMPORT_CHUNK_SIZE_BYTES": "4096", "GEO_IMPORT_BINARY_READ_CAP_BYTES": "1024"}
        with patch.dict(os.environ, env, clear=True), pytest.raises(ConfigValidationError):
            ImportConfig.from_env()

    def test_disconnected_interval_longer_than_connected_rejected(self) -> None:
        env = {
            "GEO_IMPORT_POLL_INTERVAL_CONNECTED_SECONDS": "5",
            "GEO_IMPORT_POLL_INTERVAL_DISCONNECTED_SECONDS": "8",
        }
        with patch.dict(os.environ, env, clear=True), pytest.raises(ConfigValidationError):
            ImportConfig.from_env()

    def test_retry_cap_below_base_rejected(self) -> None:
        env = {"GEO_IMPORT_RETRY_BASE_SECONDS": "4", "GEO_IMPORT_RETRY_MAX_SECONDS": "2"}
        with patch.dict(os.environ, env, clear=True), pytest.raises(ConfigValidationError) as exc_info:
            ImportConfig.from_env()
        assert exc_info.value.key == "GEO_IMPORT_RETRY_MAX_SECONDS"
        assert exc_info.value.stage == "config"

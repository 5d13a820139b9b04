"""Tests for the periodic memory monitor.

Covers:
- Threshold classification with an injected sampler
- Garbage collection requested at the limit
- Listener subscription and failure isolation
- start / stop lifecycle
"""

from __future__ import annotations

import threading
from unittest.mock import MagicMock

from geo_import.streaming.monitor import (
    LEVEL_CRITICAL,
    LEVEL_WARNING,
    MemoryMonitor,
    MemoryWarning,
)


def _monitor(values: list[int], collect: MagicMock | None = None, **kwargs: object) -> MemoryMonitor:
    samples = iter(values)
    return MemoryMonitor(
        limit_bytes=1000,
        sampler=lambda: next(samples),
        collect=collect or MagicMock(),
        **kwargs,  # type: ignore[arg-type]
    )


class TestCheck:
    """Single-sample classification."""

    def test_below_threshold(self) -> None:
        monitor = _monitor([500])
        assert monitor.check() is None
        assert monitor.last_sample == 500

    def test_warning_at_ratio(self) -> None:
        monitor = _monitor([700])
        warning = monitor.check()
        assert warning is not None
        assert warning.level == LEVEL_WARNING
        assert warning.urgent is False
        assert warning.ratio == 0.7

    def test_critical_at_limit_requests_collection(self) -> None:
        collect = MagicMock()
        monitor = _monitor([1000], collect)
        warning = monitor.check()
        assert warning is not None
        assert warning.level == LEVEL_CRITICAL
        assert warning.urgent is True
        collect.assert_called_once_with()

    def test_custom_ratio(self) -> None:
        monitor = _monitor([550], warning_ratio=0.5)
        assert monitor.warning_threshold == 500
        assert monitor.check() is not None


class TestListeners:
    """Publish / subscribe."""

    def test_listeners_notified_until_unsubscribed(self) -> None:
        monitor = _monitor([800, 900])
        seen: list[MemoryWarning] = []
        unsubscribe = monitor.subscribe(seen.append)
        monitor.check()
        unsubscribe()
        monitor.check()
        assert [w.used_bytes for w in seen] == [800]
        assert monitor.listener_count == 0

    def test_failing_listener_isolated(self) -> None:
        monitor = _monitor([900])
        seen: list[MemoryWarning] = []
        monitor.subscribe(MagicMock(side_effect=RuntimeError("listener bug")))
        monitor.subscribe(seen.append)
        monitor.check()
        assert len(seen) == 1


class TestLifecycle:
    """Background sampling thread."""

    def test_start_samples_until_stopped(self) -> None:
        sampled = threading.Event()

        def sampler() -> int:
            sampled.set()
            return 10

        monitor = MemoryMonitor(limit_bytes=1000, interval=0.01, sampler=sampler)
        with monitor:
            assert monitor.is_running
            assert sampled.wait(timeout=2.0)
        assert not monitor.is_running

    def test_default_limit_is_positive(self) -> None:
        assert MemoryMonitor().limit_bytes > 0

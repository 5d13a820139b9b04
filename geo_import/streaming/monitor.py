"""Periodic heap-usage monitor.

``MemoryMonitor`` is an explicitly constructed service with a
``start``/``stop`` lifecycle.  While running, a background thread samples
heap usage every ``interval`` seconds and publishes ``MemoryWarning``
records to every subscribed listener:

- at ``warning_ratio`` of the limit (default 70%) a ``warning``;
- at the limit itself ``gc.collect()`` is requested and an urgent
  ``critical`` notification follows.

The default sampler reads ``tracemalloc``; the monitor starts tracing
when it is not already on and stops it again on ``stop()``.  Tests and
embedders inject their own ``sampler``.
"""

from __future__ import annotations

import gc
import logging
import os
import threading
import tracemalloc
from collections.abc import Callable
from dataclasses import dataclass

logger = logging.getLogger("geo_import.streaming.monitor")

DEFAULT_INTERVAL_SECONDS = 5.0
DEFAULT_WARNING_RATIO = 0.7
LIMIT_FRACTION_OF_AVAILABLE = 0.8
FALLBACK_LIMIT_BYTES = 512 * 1024 * 1024

LEVEL_WARNING = "warning"
LEVEL_CRITICAL = "critical"


@dataclass(frozen=True, slots=True)
class MemoryWarning:
    """A threshold crossing.

    Attributes:
        level: ``"warning"`` or ``"critical"``.
        used_bytes: Sampled usage.
        limit_bytes: Computed limit.
        urgent: ``True`` at the limit (after a collection was requested).
    """

    level: str
    used_bytes: int
    limit_bytes: int
    urgent: bool = False

    @property
    def ratio(self) -> float:
        return self.used_bytes / self.limit_bytes if self.limit_bytes else 0.0


MemoryListener = Callable[[MemoryWarning], None]


def compute_default_limit() -> int:
    """80% of available physical memory, or 512 MiB when unknown."""
    try:
        available = os.sysconf("SC_AVPHYS_PAGES") * os.sysconf("SC_PAGE_SIZE")
    except (ValueError, OSError, AttributeError):
        return FALLBACK_LIMIT_BYTES
    if available <= 0:
        return FALLBACK_LIMIT_BYTES
    return int(available * LIMIT_FRACTION_OF_AVAILABLE)


def _traced_current() -> int:
    current, _peak = tracemalloc.get_traced_memory()
    return current


class MemoryMonitor:
    """Independent periodic sampler with a publish/subscribe listener set.

    Args:
        limit_bytes: Hard limit; computed from available memory when ``None``.
        interval: Sampling interval in seconds.
        warning_ratio: Fraction of the limit that triggers a warning.
        sampler: Zero-argument callable returning current usage in bytes.
        collect: Garbage-collection hook invoked at the limit.
    """

    def __init__(
        self,
        *,
        limit_bytes: int | None = None,
        interval: float = DEFAULT_INTERVAL_SECONDS,
        warning_ratio: float = DEFAULT_WARNING_RATIO,
        sampler: Callable[[], int] | None = None,
        collect: Callable[[], object] = gc.collect,
    ) -> None:
        self._limit = limit_bytes if limit_bytes is not None else compute_default_limit()
        self._interval = interval
        self._warning_ratio = warning_ratio
        self._sampler = sampler
        self._collect = collect
        self._listeners: list[MemoryListener] = []
        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None
        self._started_tracing = False
        self._last_sample = 0

    @property
    def limit_bytes(self) -> int:
        return self._limit

    @property
    def warning_threshold(self) -> int:
        return int(self._limit * self._warning_ratio)

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def last_sample(self) -> int:
        return self._last_sample

    # -- Subscription --------------------------------------------------------

    def subscribe(self, listener: MemoryListener) -> Callable[[], None]:
        """Register *listener*; returns a callable that unregisters it."""
        with self._lock:
            self._listeners.append(listener)

        def _unsubscribe() -> None:
            with self._lock:
                if listener in self._listeners:
                    self._listeners.remove(listener)

        return _unsubscribe

    @property
    def listener_count(self) -> int:
        return len(self._listeners)

    # -- Lifecycle -----------------------------------------------------------

    def start(self) -> None:
        if self.is_running:
            return
        if self._sampler is None and not tracemalloc.is_tracing():
            tracemalloc.start()
            self._started_tracing = True
        self._stop.clear()
        self._thread = threading.Thread(
            target=self._run,
            daemon=True,
            name="geo-import-memory-monitor",
        )
        self._thread.start()
        logger.info(
            "memory monitor started | limit=%d | warning_at=%d | interval=%.1fs",
            self._limit,
            self.warning_threshold,
            self._interval,
        )

    def stop(self) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout=self._interval + 1.0)
            self._thread = None
        if self._started_tracing:
            tracemalloc.stop()
            self._started_tracing = False
        logger.info("memory monitor stopped")

    def __enter__(self) -> MemoryMonitor:
        self.start()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.stop()

    # -- Sampling ------------------------------------------------------------

    def check(self) -> MemoryWarning | None:
        """Take one sample and notify listeners if a threshold is crossed."""
        used = self._sample()
        self._last_sample = used

        if used >= self._limit:
            logger.warning(
                "memory limit reached | used=%d | limit=%d | requesting collection",
                used,
                self._limit,
            )
            self._collect()
            warning = MemoryWarning(LEVEL_CRITICAL, used, self._limit, urgent=True)
        elif used >= self.warning_threshold:
            logger.warning("memory warning | used=%d | limit=%d", used, self._limit)
            warning = MemoryWarning(LEVEL_WARNING, used, self._limit)
        else:
            return None

        self._notify(warning)
        return warning

    def _sample(self) -> int:
        if self._sampler is not None:
            return int(self._sampler())
        if not tracemalloc.is_tracing():
            return 0
        return _traced_current()

    def _notify(self, warning: MemoryWarning) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(warning)
            except Exception:
                logger.exception("memory listener failed | level=%s", warning.level)

    def _run(self) -> None:
        while not self._stop.wait(self._interval):
            self.check()

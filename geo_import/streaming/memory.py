"""Memory budget shared by chunk producers.

``MemoryBudget`` keeps one counter of admitted bytes against a fixed
limit.  Every buffer is registered under a key in an LRU-ordered map:

- ``admit(key, size)`` reserves bytes for a chunk that is about to be
  produced.  The buffer is *pinned* (in use).
- ``unpin(key)`` marks a consumed buffer as cached; cached buffers are
  evicted least-recently-used first when a new admission needs room.
- ``release(key)`` frees a buffer explicitly.

When an admission does not fit, cached buffers are evicted; if that is
still not enough the caller waits (bounded, growing delay) for other
producers to release, and only after the retries are exhausted is
``MemoryBudgetExceededError`` raised.  The counter is guarded by one
lock, so concurrent producers cannot make it drift.
"""

from __future__ import annotations

import logging
import threading
from collections import OrderedDict
from collections.abc import Callable
from dataclasses import dataclass

from geo_import.core.exceptions import BackpressureViolationError, MemoryBudgetExceededError

logger = logging.getLogger("geo_import.streaming.memory")

DEFAULT_WARNING_RATIO = 0.8


@dataclass(slots=True)
class _Buffer:
    size: int
    pinned: bool = True


@dataclass(frozen=True, slots=True)
class BudgetPressure:
    """Published when usage crosses the warning ratio."""

    usage: int
    limit: int

    @property
    def ratio(self) -> float:
        return self.usage / self.limit if self.limit else 0.0


class MemoryBudget:
    """Atomic admit/release accounting with LRU eviction of cached buffers.

    Args:
        limit_bytes: Budget in bytes.
        retry_attempts: Waits before an admission is declared failed.
        retry_delay: Base wait in seconds; attempt *n* waits ``delay * n``.
        warning_ratio: Usage ratio above which pressure listeners fire.
    """

    def __init__(
        self,
        limit_bytes: int,
        *,
        retry_attempts: int = 3,
        retry_delay: float = 0.1,
        warning_ratio: float = DEFAULT_WARNING_RATIO,
    ) -> None:
        if limit_bytes <= 0:
            msg = "limit_bytes must be > 0"
            raise ValueError(msg)
        self._limit = limit_bytes
        self._retry_attempts = retry_attempts
        self._retry_delay = retry_delay
        self._warning_ratio = warning_ratio
        self._usage = 0
        self._peak = 0
        self._eviction_count = 0
        self._buffers: OrderedDict[str, _Buffer] = OrderedDict()
        self._cond = threading.Condition(threading.Lock())
        self._pressure_listeners: list[Callable[[BudgetPressure], None]] = []

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def limit(self) -> int:
        return self._limit

    @property
    def usage(self) -> int:
        return self._usage

    @property
    def peak_usage(self) -> int:
        return self._peak

    @property
    def headroom(self) -> int:
        return self._limit - self._usage

    @property
    def eviction_count(self) -> int:
        return self._eviction_count

    def __contains__(self, key: object) -> bool:
        with self._cond:
            return key in self._buffers

    def __len__(self) -> int:
        return len(self._buffers)

    def on_pressure(self, listener: Callable[[BudgetPressure], None]) -> Callable[[], None]:
        """Register a pressure listener; returns its unsubscribe callable."""
        self._pressure_listeners.append(listener)

        def _unsubscribe() -> None:
            if listener in self._pressure_listeners:
                self._pressure_listeners.remove(listener)

        return _unsubscribe

    # ------------------------------------------------------------------
    # Admission
    # ------------------------------------------------------------------

    def admit(self, key: str, size: int) -> None:
        """Reserve *size* bytes under *key*, waiting for headroom if needed.

        Raises:
            MemoryBudgetExceededError: If *size* can never fit, or headroom
                did not appear within the retry sequence.
            BackpressureViolationError: If *key* is already admitted.
        """
        if size < 0:
            msg = f"buffer size must be >= 0, got {size}"
            raise ValueError(msg)
        if size > self._limit:
            raise MemoryBudgetExceededError(
                f"buffer {key} of {size} bytes exceeds the whole budget of {self._limit} bytes"
            )

        pressure: BudgetPressure | None = None
        with self._cond:
            if key in self._buffers:
                raise BackpressureViolationError(f"buffer {key} is already admitted")

            attempt = 0
            while not self._fits(size):
                self._evict_cached(size)
                if self._fits(size):
                    break
                attempt += 1
                if attempt > self._retry_attempts:
                    logger.warning(
                        "memory admission failed | key=%s | size=%d | usage=%d | limit=%d",
                        key,
                        size,
                        self._usage,
                        self._limit,
                    )
                    raise MemoryBudgetExceededError(
                        f"buffer {key} of {size} bytes did not fit after "
                        f"{self._retry_attempts} retries (usage={self._usage}, limit={self._limit})"
                    )
                delay = self._retry_delay * attempt
                logger.debug(
                    "memory admission waiting | key=%s | attempt=%d | delay=%.3fs",
                    key,
                    attempt,
                    delay,
                )
                self._cond.wait(timeout=delay)

            self._buffers[key] = _Buffer(size)
            self._usage += size
            self._peak = max(self._peak, self._usage)
            if self._usage > self._limit * self._warning_ratio:
                pressure = BudgetPressure(self._usage, self._limit)

        if pressure is not None:
            for listener in list(self._pressure_listeners):
                listener(pressure)

    def try_admit(self, key: str, size: int) -> bool:
        """Admit without waiting; cached buffers may still be evicted."""
        with self._cond:
            if key in self._buffers:
                raise BackpressureViolationError(f"buffer {key} is already admitted")
            if not self._fits(size):
                self._evict_cached(size)
            if not self._fits(size):
                return False
            self._buffers[key] = _Buffer(size)
            self._usage += size
            self._peak = max(self._peak, self._usage)
            return True

    def force_admit(self, key: str, size: int) -> None:
        """Admit past the limit after a failed ``admit``.

        Used once retries are exhausted so the dataset is never truncated;
        the counter stays accurate and the overrun is visible in ``usage``.
        """
        with self._cond:
            if key in self._buffers:
                raise BackpressureViolationError(f"buffer {key} is already admitted")
            self._buffers[key] = _Buffer(size)
            self._usage += size
            self._peak = max(self._peak, self._usage)
        logger.warning(
            "memory budget overrun | key=%s | size=%d | usage=%d | limit=%d",
            key,
            size,
            self._usage,
            self._limit,
        )

    def touch(self, key: str) -> None:
        """Mark *key* as most recently needed."""
        with self._cond:
            if key in self._buffers:
                self._buffers.move_to_end(key)

    def unpin(self, key: str) -> None:
        """Mark a consumed buffer as cached (evictable)."""
        with self._cond:
            buffer = self._buffers.get(key)
            if buffer is None:
                raise BackpressureViolationError(f"buffer {key} was never admitted")
            buffer.pinned = False
            self._cond.notify_all()

    def release(self, key: str) -> int:
        """Free *key*; returns the bytes released.

        Raises:
            BackpressureViolationError: If *key* was never admitted.
        """
        with self._cond:
            buffer = self._buffers.pop(key, None)
            if buffer is None:
                raise BackpressureViolationError(f"buffer {key} was never admitted")
            self._usage -= buffer.size
            self._cond.notify_all()
            return buffer.size

    def release_prefix(self, prefix: str) -> int:
        """Free every buffer whose key starts with *prefix*."""
        with self._cond:
            keys = [k for k in self._buffers if k.startswith(prefix)]
            freed = 0
            for key in keys:
                freed += self._buffers.pop(key).size
            self._usage -= freed
            if freed:
                self._cond.notify_all()
            return freed

    # ------------------------------------------------------------------
    # Internals (caller holds the lock)
    # ------------------------------------------------------------------

    def _fits(self, size: int) -> bool:
        return self._usage + size <= self._limit

    def _evict_cached(self, size: int) -> None:
        for key in list(self._buffers):
            if self._fits(size):
                return
            buffer = self._buffers[key]
            if buffer.pinned:
                continue
            del self._buffers[key]
            self._usage -= buffer.size
            self._eviction_count += 1
            logger.debug(
                "memory eviction | key=%s | size=%d | usage=%d | total_evictions=%d",
                key,
                buffer.size,
                self._usage,
                self._eviction_count,
            )

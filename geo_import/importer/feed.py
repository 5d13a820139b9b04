"""Push-based progress feeds.

A ``ProgressFeed`` delivers ``ProgressRecord`` updates for one import run
to a callback and reports connection changes through ``on_disconnect`` /
``on_reconnect``.  The orchestrator falls back to polling whenever the
feed reports a disconnect.

Implementations:

- ``LocalProgressFeed``: in-process feed driven by ``publish``; can
  simulate disconnects.  Used by tests and by embedders that already
  receive row-update events some other way.
- ``EventStreamFeed``: reads server-sent events from
  ``{base}/imports/{run_id}/events`` with ``httpx`` on a daemon thread,
  reconnecting with capped exponential backoff.
"""

from __future__ import annotations

import abc
import json
import logging
import threading
from collections.abc import Callable, Iterator
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from geo_import.models.import_state import ImportStatus
from geo_import.models.payloads import ProgressRecord

logger = logging.getLogger("geo_import.importer.feed")

RecordCallback = Callable[[ProgressRecord], None]
SignalCallback = Callable[[], None]


def _noop() -> None:
    return None


class FeedSubscription:
    """Handle returned by ``ProgressFeed.subscribe``; ``close()`` is idempotent."""

    def __init__(self, run_id: str, on_close: Callable[[FeedSubscription], None] | None = None) -> None:
        self.run_id = run_id
        self._on_close = on_close
        self._closed = threading.Event()

    @property
    def active(self) -> bool:
        return not self._closed.is_set()

    def close(self) -> None:
        if self._closed.is_set():
            return
        self._closed.set()
        if self._on_close is not None:
            self._on_close(self)

    def wait_closed(self, timeout: float) -> bool:
        return self._closed.wait(timeout)


class ProgressFeed(abc.ABC):
    """Interface of a push-based progress source."""

    @abc.abstractmethod
    def subscribe(
        self,
        run_id: str,
        on_record: RecordCallback,
        *,
        on_disconnect: SignalCallback | None = None,
        on_reconnect: SignalCallback | None = None,
    ) -> FeedSubscription:
        """Start delivering updates for *run_id*.

        A feed that cannot connect must report it via ``on_disconnect``
        rather than raising.
        """


# ---------------------------------------------------------------------------
# In-process feed
# ---------------------------------------------------------------------------


class _Listener:
    __slots__ = ("on_disconnect", "on_reconnect", "on_record", "subscription")

    def __init__(
        self,
        subscription: FeedSubscription,
        on_record: RecordCallback,
        on_disconnect: SignalCallback,
        on_reconnect: SignalCallback,
    ) -> None:
        self.subscription = subscription
        self.on_record = on_record
        self.on_disconnect = on_disconnect
        self.on_reconnect = on_reconnect


class LocalProgressFeed(ProgressFeed):
    """Feed driven by explicit ``publish`` calls.

    The last record of each run is retained and replayed to new
    subscribers, like the initial row state of a change feed.  While
    disconnected, published records update the retained row but are not
    delivered.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._listeners: list[_Listener] = []
        self._latest: dict[str, ProgressRecord] = {}
        self._connected = True

    @property
    def connected(self) -> bool:
        return self._connected

    def subscribe(
        self,
        run_id: str,
        on_record: RecordCallback,
        *,
        on_disconnect: SignalCallback | None = None,
        on_reconnect: SignalCallback | None = None,
    ) -> FeedSubscription:
        subscription = FeedSubscription(run_id, self._remove)
        listener = _Listener(subscription, on_record, on_disconnect or _noop, on_reconnect or _noop)
        with self._lock:
            self._listeners.append(listener)
            connected = self._connected
            latest = self._latest.get(run_id)
        logger.debug("feed subscribed | run_id=%s | connected=%s", run_id, connected)
        if not connected:
            listener.on_disconnect()
        elif latest is not None:
            listener.on_record(latest)
        return subscription

    def _remove(self, subscription: FeedSubscription) -> None:
        with self._lock:
            self._listeners = [l for l in self._listeners if l.subscription is not subscription]

    def _targets(self, run_id: str | None = None) -> list[_Listener]:
        with self._lock:
            return [l for l in self._listeners if run_id is None or l.subscription.run_id == run_id]

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._listeners)

    def publish(self, record: ProgressRecord | dict[str, Any]) -> int:
        """Publish a row update; return how many listeners received it."""
        if not isinstance(record, ProgressRecord):
            record = ProgressRecord.model_validate(record)
        with self._lock:
            self._latest[record.id] = record
            connected = self._connected
        if not connected:
            return 0
        targets = self._targets(record.id)
        for listener in targets:
            listener.on_record(record)
        return len(targets)

    def latest(self, run_id: str) -> ProgressRecord | None:
        with self._lock:
            return self._latest.get(run_id)

    def disconnect(self) -> None:
        with self._lock:
            if not self._connected:
                return
            self._connected = False
        logger.warning("feed disconnected | listeners=%d", self.subscriber_count)
        for listener in self._targets():
            listener.on_disconnect()

    def reconnect(self) -> None:
        with self._lock:
            if self._connected:
                return
            self._connected = True
        logger.info("feed reconnected | listeners=%d", self.subscriber_count)
        for listener in self._targets():
            listener.on_reconnect()
            latest = self.latest(listener.subscription.run_id)
            if latest is not None:
                listener.on_record(latest)


# ---------------------------------------------------------------------------
# Server-sent events
# ---------------------------------------------------------------------------


def iter_sse_data(lines: Iterator[str]) -> Iterator[str]:
    """Yield the joined ``data:`` payload of each server-sent event."""
    data: list[str] = []
    for line in lines:
        if not line:
            if data:
                yield "\n".join(data)
                data = []
            continue
        if line.startswith(":"):
            continue
        name, _, value = line.partition(":")
        if name == "data":
            data.append(value[1:] if value.startswith(" ") else value)
    if data:
        yield "\n".join(data)


class _StreamSubscription(FeedSubscription):
    """Subscription that owns its reader thread and the open response.

    Closing it closes the response, which ends a read blocked on a silent
    stream, and then joins the reader thread.
    """

    def __init__(self, run_id: str, join_timeout: float) -> None:
        super().__init__(run_id, on_close=self._release)
        self.thread: threading.Thread | None = None
        self._join_timeout = join_timeout
        self._lock = threading.Lock()
        self._response: httpx.Response | None = None

    def attach(self, response: httpx.Response) -> bool:
        """Record the open response; ``False`` if already closed."""
        with self._lock:
            if not self.active:
                return False
            self._response = response
            return True

    def detach(self) -> None:
        with self._lock:
            self._response = None

    def _release(self, _subscription: FeedSubscription) -> None:
        with self._lock:
            response, self._response = self._response, None
        if response is not None:
            response.close()
        thread = self.thread
        if thread is None or thread is threading.current_thread():
            return
        thread.join(self._join_timeout)
        if thread.is_alive():
            logger.warning("feed reader still running after close | run_id=%s", self.run_id)


class EventStreamFeed(ProgressFeed):
    """Server-sent-events feed over ``httpx`` streaming.

    Args:
        base_url: Endpoint base URL.
        timeout: Connect timeout; reads block until the server sends or the
            subscription is closed.
        retry_base_seconds: First reconnect delay.
        retry_max_seconds: Reconnect delay cap.
        max_reconnects: Consecutive failed connects before giving up
            (the orchestrator keeps polling).
        join_timeout: How long ``close()`` waits for the reader thread.
        transport: Custom transport (tests).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 10.0,
        retry_base_seconds: float = 1.0,
        retry_max_seconds: float = 10.0,
        max_reconnects: int = 5,
        join_timeout: float = 5.0,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._timeout = httpx.Timeout(timeout, read=None)
        self._retry_base = retry_base_seconds
        self._retry_max = retry_max_seconds
        self._max_reconnects = max_reconnects
        self._join_timeout = join_timeout
        self._headers = {"Accept": "text/event-stream", **(headers or {})}
        self._transport = transport

    def subscribe(
        self,
        run_id: str,
        on_record: RecordCallback,
        *,
        on_disconnect: SignalCallback | None = None,
        on_reconnect: SignalCallback | None = None,
    ) -> FeedSubscription:
        subscription = _StreamSubscription(run_id, self._join_timeout)
        subscription.thread = threading.Thread(
            target=self._run,
            args=(subscription, on_record, on_disconnect or _noop, on_reconnect or _noop),
            name=f"geo-import-feed-{run_id}",
            daemon=True,
        )
        subscription.thread.start()
        return subscription

    def _backoff(self, failures: int) -> float:
        return min(self._retry_max, self._retry_base * 2 ** (failures - 1))

    def _run(
        self,
        subscription: _StreamSubscription,
        on_record: RecordCallback,
        on_disconnect: SignalCallback,
        on_reconnect: SignalCallback,
    ) -> None:
        url = f"{self.base_url}/imports/{subscription.run_id}/events"
        failures = 0
        was_connected = False
        with httpx.Client(timeout=self._timeout, headers=self._headers, transport=self._transport) as client:
            while subscription.active:
                try:
                    with client.stream("GET", url) as response:
                        if not subscription.attach(response):
                            return
                        response.raise_for_status()
                        if failures or was_connected:
                            on_reconnect()
                        failures = 0
                        was_connected = True
                        logger.debug("feed connected | run_id=%s", subscription.run_id)
                        if self._consume(subscription, response.iter_lines(), on_record):
                            subscription.close()
                            return
                except (httpx.HTTPError, httpx.StreamError) as exc:
                    if not subscription.active:
                        return
                    logger.warning("feed stream failed | run_id=%s | error=%s", subscription.run_id, exc)
                finally:
                    subscription.detach()

                if not subscription.active:
                    return
                failures += 1
                on_disconnect()
                if failures > self._max_reconnects:
                    logger.error(
                        "feed gave up | run_id=%s | attempts=%d", subscription.run_id, failures
                    )
                    return
                if subscription.wait_closed(self._backoff(failures)):
                    return

    def _consume(self, subscription: FeedSubscription, lines: Iterator[str], on_record: RecordCallback) -> bool:
        """Deliver events; return ``True`` once a terminal row was seen."""
        for payload in iter_sse_data(lines):
            if not subscription.active:
                return False
            try:
                record = ProgressRecord.model_validate(json.loads(payload))
            except (json.JSONDecodeError, PydanticValidationError) as exc:
                logger.warning("feed event ignored | run_id=%s | error=%s", subscription.run_id, exc)
                continue
            if not record.id:
                record = record.model_copy(update={"id": subscription.run_id})
            on_record(record)
            if ImportStatus.parse(record.status) in (ImportStatus.COMPLETED, ImportStatus.FAILED):
                return True
        return False

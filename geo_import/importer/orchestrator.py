"""Batch import orchestration.

Submits the selected features of the *full* dataset to the import
endpoint and tracks the run to a terminal state:

    IDLE -> SUBMITTING -> STREAMING <-> POLLING -> COMPLETED | FAILED

Progress arrives from two sources that are folded into one
``ImportBatchState``:

- push events from a ``ProgressFeed`` (optional);
- polls of the run's status row, every
  ``poll_interval_connected_seconds`` while the feed is up and every
  ``poll_interval_disconnected_seconds`` while it is down.

Transport failures are retried with capped exponential backoff.  A hard
ceiling (``import_timeout_seconds``) ends tracking with a structured
timeout error.  The clock and sleep are injectable so the state machine
can be driven deterministically.
"""

from __future__ import annotations

import logging
import queue
import threading
import time
from collections.abc import Callable, Iterable, Sequence

from geo_import.core.config import ImportConfig
from geo_import.core.constants import SRID_WGS84
from geo_import.core.exceptions import (
    CoordinateSystemUnresolvedError,
    ImportEndpointError,
    ImportRunFailedError,
    ImportTimeoutError,
)
from geo_import.importer.client import ImportEndpointClient
from geo_import.importer.feed import FeedSubscription, ProgressFeed
from geo_import.models.dataset import Dataset
from geo_import.models.feature import CanonicalFeature
from geo_import.models.import_state import (
    ImportBatchState,
    ImportOutcome,
    ImportStatus,
    OrchestratorState,
)
from geo_import.models.payloads import ImportRequest, ImportResponse, ProgressRecord

logger = logging.getLogger("geo_import.importer.orchestrator")

_DISCONNECTED = "disconnected"
_RECONNECTED = "reconnected"


def backoff_delay(attempt: int, base: float, cap: float) -> float:
    """Exponential backoff for the *attempt*-th retry (1-based), capped."""
    return min(cap, base * 2 ** (attempt - 1))


def _record_from_response(run_id: str, response: ImportResponse, total: int) -> ProgressRecord:
    return ProgressRecord(
        id=run_id,
        status=response.status or ImportStatus.STARTED.value,
        total_features=response.total_features or total,
        imported_count=response.imported_count,
        failed_count=response.failed_count,
        collection_id=response.collection_id,
        layer_id=response.layer_id,
        metadata={"errors": [e.model_dump() for e in response.per_feature_errors]},
    )


class BatchImportOrchestrator:
    """Drive one import run at a time.

    Args:
        client: Endpoint client used for submission and status polls.
        feed: Optional push feed; without one the run is polled only.
        config: Intervals, retry policy and the timeout ceiling.
        clock: Monotonic clock in seconds.
        sleep: Wait function.  Defaults to a wait that wakes early when a
            push event arrives.
    """

    def __init__(
        self,
        client: ImportEndpointClient,
        feed: ProgressFeed | None = None,
        *,
        config: ImportConfig | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], None] | None = None,
    ) -> None:
        self.client = client
        self.feed = feed
        self.config = config or ImportConfig()
        self._clock = clock
        self._sleep = sleep
        self._wakeup = threading.Event()
        self._events: queue.Queue[ProgressRecord | str] = queue.Queue()
        self._state = OrchestratorState.IDLE
        self._transitions: list[OrchestratorState] = [OrchestratorState.IDLE]

    @property
    def state(self) -> OrchestratorState:
        return self._state

    @property
    def transitions(self) -> tuple[OrchestratorState, ...]:
        return tuple(self._transitions)

    # ------------------------------------------------------------------
    # Entry points
    # ------------------------------------------------------------------

    def import_selection(
        self,
        full: Dataset,
        selected_ids: Iterable[int],
        *,
        project_file_id: str,
        collection_name: str,
        source_srid: int | None = None,
        target_srid: int = SRID_WGS84,
        batch_size: int | None = None,
    ) -> ImportOutcome:
        """Import the features of *full* whose ids are in *selected_ids*.

        Unknown ids are ignored.  Features always come from the full
        dataset, never from a preview.
        """
        features = [f for f in (full.get(i) for i in sorted(set(selected_ids))) if f is not None]
        return self.run(
            features,
            project_file_id=project_file_id,
            collection_name=collection_name,
            source_srid=source_srid if source_srid is not None else full.metadata.source_srid,
            target_srid=target_srid,
            batch_size=batch_size,
        )

    def run(
        self,
        features: Sequence[CanonicalFeature],
        *,
        project_file_id: str,
        collection_name: str,
        source_srid: int | None,
        target_srid: int = SRID_WGS84,
        batch_size: int | None = None,
    ) -> ImportOutcome:
        """Submit *features* and track the run to a terminal state.

        Endpoint and timeout failures are returned as a ``FAILED`` outcome
        carrying a structured error, not raised.

        Raises:
            CoordinateSystemUnresolvedError: If *source_srid* is unknown.
            ValueError: If *features* is empty.
        """
        if source_srid is None:
            msg = "Source coordinate system is unresolved; set it before importing"
            raise CoordinateSystemUnresolvedError(msg)
        if not features:
            msg = "No features selected for import"
            raise ValueError(msg)

        self._reset()
        request = ImportRequest(
            project_file_id=project_file_id,
            collection_name=collection_name,
            features=[f.to_dict() for f in features],
            source_srid=source_srid,
            target_srid=target_srid,
            batch_size=batch_size or self.config.import_batch_size,
        )
        tracker = _RunTracker(self, total=len(features))
        return tracker.execute(request)

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _reset(self) -> None:
        self._events = queue.Queue()
        self._wakeup.clear()
        self._state = OrchestratorState.IDLE
        self._transitions = [OrchestratorState.IDLE]

    def _transition(self, state: OrchestratorState, run_id: str = "") -> None:
        if state is self._state:
            return
        logger.info(
            "import state | run_id=%s | from=%s | to=%s", run_id or "-", self._state.value, state.value
        )
        self._state = state
        self._transitions.append(state)

    def _pause(self, seconds: float) -> None:
        if seconds <= 0:
            return
        if self._sleep is not None:
            self._sleep(seconds)
            return
        self._wakeup.wait(seconds)
        self._wakeup.clear()

    def _push(self, item: ProgressRecord | str) -> None:
        self._events.put(item)
        self._wakeup.set()


class _RunTracker:
    """Mutable bookkeeping for one run; lives for a single ``run`` call."""

    def __init__(self, owner: BatchImportOrchestrator, *, total: int) -> None:
        self.owner = owner
        self.config = owner.config
        self.batch = ImportBatchState(total_features=total)
        self.run_id = ""
        self.poll_count = 0
        self.event_count = 0
        self.connected = False
        self.started = owner._clock()
        self.deadline = self.started + self.config.import_timeout_seconds

    # -- submission ---------------------------------------------------------

    def execute(self, request: ImportRequest) -> ImportOutcome:
        owner = self.owner
        owner._transition(OrchestratorState.SUBMITTING)
        try:
            response = self._submit(request)
        except ImportEndpointError as exc:
            logger.error("import submit failed | error=%s | retryable=%s", exc.message, exc.retryable)
            return self._finish(OrchestratorState.FAILED, error=exc.to_error_dict())

        self.run_id = response.run_id
        self.batch = self.batch.apply(_record_from_response(self.run_id, response, self.batch.total_features))
        if self.batch.is_terminal:
            return self._settle()
        if not self.run_id:
            error = ImportEndpointError(
                "submit response carried no run id", status_code=200, retryable=False
            ).to_error_dict()
            return self._finish(OrchestratorState.FAILED, error=error)

        subscription = self._subscribe()
        try:
            return self._track()
        finally:
            if subscription is not None:
                subscription.close()

    def _submit(self, request: ImportRequest) -> ImportResponse:
        attempt = 0
        while True:
            try:
                return self.owner.client.submit(request)
            except ImportEndpointError as exc:
                attempt += 1
                if not exc.retryable or attempt > self.config.max_retries:
                    raise
                delay = backoff_delay(attempt, self.config.retry_base_seconds, self.config.retry_max_seconds)
                if self.owner._clock() + delay >= self.deadline:
                    raise
                logger.warning(
                    "import submit retry | attempt=%d | delay=%.1fs | error=%s", attempt, delay, exc.message
                )
                self.owner._pause(delay)

    # -- tracking -------------------------------------------------------------

    def _subscribe(self) -> FeedSubscription | None:
        owner = self.owner
        if owner.feed is None:
            owner._transition(OrchestratorState.POLLING, self.run_id)
            return None
        self.connected = True
        owner._transition(OrchestratorState.STREAMING, self.run_id)
        return owner.feed.subscribe(
            self.run_id,
            owner._push,
            on_disconnect=lambda: owner._push(_DISCONNECTED),
            on_reconnect=lambda: owner._push(_RECONNECTED),
        )

    def _interval(self) -> float:
        if self.connected:
            return self.config.poll_interval_connected_seconds
        return self.config.poll_interval_disconnected_seconds

    def _drain(self) -> bool:
        """Apply queued events; return ``True`` if the next poll is due now."""
        owner = self.owner
        poll_now = False
        while True:
            try:
                item = owner._events.get_nowait()
            except queue.Empty:
                return poll_now
            if item == _DISCONNECTED:
                if self.connected:
                    logger.warning("import feed lost | run_id=%s | falling back to polling", self.run_id)
                self.connected = False
                owner._transition(OrchestratorState.POLLING, self.run_id)
                poll_now = True
            elif item == _RECONNECTED:
                self.connected = True
                owner._transition(OrchestratorState.STREAMING, self.run_id)
            elif isinstance(item, ProgressRecord) and item.id in ("", self.run_id):
                self.event_count += 1
                self.batch = self.batch.apply(item)

    def _track(self) -> ImportOutcome:
        owner = self.owner
        failures = 0
        next_poll = owner._clock() + self._interval()
        while True:
            if self._drain():
                next_poll = owner._clock()
            if self.batch.is_terminal:
                return self._settle()

            now = owner._clock()
            if now >= self.deadline:
                return self._timeout()

            if now >= next_poll:
                try:
                    self.poll_count += 1
                    self.batch = self.batch.apply(owner.client.fetch_status(self.run_id))
                    failures = 0
                    next_poll = now + self._interval()
                except ImportEndpointError as exc:
                    failures += 1
                    if not exc.retryable or (not self.connected and failures > self.config.max_retries):
                        logger.error(
                            "import poll failed | run_id=%s | attempts=%d | error=%s",
                            self.run_id,
                            failures,
                            exc.message,
                        )
                        return self._finish(OrchestratorState.FAILED, error=exc.to_error_dict())
                    delay = backoff_delay(failures, self.config.retry_base_seconds, self.config.retry_max_seconds)
                    logger.warning(
                        "import poll retry | run_id=%s | attempt=%d | delay=%.1fs", self.run_id, failures, delay
                    )
                    next_poll = now + delay
                continue

            owner._pause(min(next_poll, self.deadline) - now)

    # -- terminal -------------------------------------------------------------

    def _settle(self) -> ImportOutcome:
        if self.batch.status is ImportStatus.FAILED:
            error = ImportRunFailedError(
                self.batch.error or "import run failed", correlation_id=self.run_id
            ).to_error_dict()
            return self._finish(OrchestratorState.FAILED, error=error)
        return self._finish(OrchestratorState.COMPLETED)

    def _timeout(self) -> ImportOutcome:
        seconds = self.config.import_timeout_seconds
        logger.error(
            "import timed out | run_id=%s | after=%.0fs | processed=%d/%d",
            self.run_id,
            seconds,
            self.batch.processed_count,
            self.batch.total_features,
        )
        error = ImportTimeoutError(
            f"import run did not finish within {seconds:.0f}s", correlation_id=self.run_id
        ).to_error_dict()
        return self._finish(OrchestratorState.FAILED, error=error, timed_out=True)

    def _finish(
        self,
        state: OrchestratorState,
        *,
        error: dict[str, object] | None = None,
        timed_out: bool = False,
    ) -> ImportOutcome:
        owner = self.owner
        owner._transition(state, self.run_id)
        elapsed = owner._clock() - self.started
        logger.info(
            "import finished | run_id=%s | state=%s | imported=%d | failed=%d | polls=%d | events=%d",
            self.run_id or "-",
            state.value,
            self.batch.imported_count,
            self.batch.failed_count,
            self.poll_count,
            self.event_count,
        )
        return ImportOutcome(
            state=state,
            run_id=self.run_id,
            batch=self.batch,
            error=error,
            timed_out=timed_out,
            poll_count=self.poll_count,
            event_count=self.event_count,
            elapsed_seconds=elapsed,
            transitions=owner.transitions,
        )

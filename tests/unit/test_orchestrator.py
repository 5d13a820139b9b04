"""Tests for the batch import orchestrator.

The orchestrator is driven with a fake endpoint client and a fake clock
whose ``sleep`` advances time and fires scheduled feed actions, so every
state transition is deterministic.

Covers:
- Poll-only runs (no feed) and synchronous completion on submit
- Submit retries with backoff, non-retryable and exhausted failures
- Push feed delivery, disconnect fallback to polling and reconnect
- Poll failures tolerated while streaming, fatal while disconnected
- Run failure and hard timeout produce structured errors
- Selection of full-dataset features by id
"""

from __future__ import annotations

from collections.abc import Callable

import pytest

from geo_import.core.config import ImportConfig
from geo_import.core.exceptions import CoordinateSystemUnresolvedError, ImportEndpointError
from geo_import.importer.feed import LocalProgressFeed
from geo_import.importer.orchestrator import BatchImportOrchestrator, backoff_delay
from geo_import.models.dataset import Dataset
from geo_import.models.feature import CanonicalFeature, point
from geo_import.models.import_state import OrchestratorState
from geo_import.models.payloads import ImportRequest, ImportResponse, ProgressRecord

RUN_ID = "run-1"

S = OrchestratorState


class FakeClock:
    """Monotonic time that only moves when ``sleep`` is called."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []
        self._scheduled: list[tuple[float, Callable[[], object]]] = []

    def __call__(self) -> float:
        return self.now

    def at(self, when: float, action: Callable[[], object]) -> None:
        self._scheduled.append((when, action))
        self._scheduled.sort(key=lambda item: item[0])

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        target = self.now + seconds
        while self._scheduled and self._scheduled[0][0] <= target:
            when, action = self._scheduled.pop(0)
            self.now = max(self.now, when)
            action()
        self.now = target


class FakeClient:
    """Scripted stand-in for ``ImportEndpointClient``.

    Each script entry is returned or, when it is an exception, raised.
    The last entry repeats once the script runs out.
    """

    def __init__(
        self,
        submits: list[ImportResponse | Exception],
        statuses: list[ProgressRecord | Exception] | None = None,
    ) -> None:
        self._submits = list(submits)
        self._statuses = list(statuses or [])
        self.requests: list[ImportRequest] = []
        self.status_calls = 0

    @staticmethod
    def _next(script: list):
        item = script.pop(0) if len(script) > 1 else script[0]
        if isinstance(item, Exception):
            raise item
        return item

    def submit(self, request: ImportRequest) -> ImportResponse:
        self.requests.append(request)
        return self._next(self._submits)

    def fetch_status(self, run_id: str) -> ProgressRecord:
        self.status_calls += 1
        return self._next(self._statuses)


def _accepted(**kwargs: object) -> ImportResponse:
    return ImportResponse(run_id=RUN_ID, status="processing", **kwargs)


def _row(status: str, imported: int = 0, failed: int = 0, **kwargs: object) -> ProgressRecord:
    return ProgressRecord(id=RUN_ID, status=status, imported_count=imported, failed_count=failed, **kwargs)


def _features(count: int = 4) -> list[CanonicalFeature]:
    return [CanonicalFeature(id=i, geometry=point(2600000.0 + i, 1200000.0)) for i in range(count)]


def _orchestrator(
    client: FakeClient,
    clock: FakeClock,
    feed: LocalProgressFeed | None = None,
    **config: object,
) -> BatchImportOrchestrator:
    return BatchImportOrchestrator(
        client,  # type: ignore[arg-type]
        feed,
        config=ImportConfig(**config),  # type: ignore[arg-type]
        clock=clock,
        sleep=clock.sleep,
    )


def _run(orchestrator: BatchImportOrchestrator, count: int = 4):
    return orchestrator.run(
        _features(count),
        project_file_id="file-1",
        collection_name="parcels",
        source_srid=2056,
    )


class TestBackoff:
    """Capped exponential backoff."""

    @pytest.mark.parametrize(
        ("attempt", "expected"),
        [(1, 1.0), (2, 2.0), (3, 4.0), (4, 8.0), (5, 10.0), (9, 10.0)],
    )
    def test_delay(self, attempt: int, expected: float) -> None:
        assert backoff_delay(attempt, 1.0, 10.0) == expected


class TestPollingOnly:
    """Runs without a push feed."""

    def test_polls_until_completed(self) -> None:
        clock = FakeClock()
        client = FakeClient([_accepted()], [_row("processing", 2), _row("completed", 4)])
        outcome = _run(_orchestrator(client, clock))

        assert outcome.state is S.COMPLETED
        assert outcome.succeeded
        assert outcome.imported_count == 4
        assert outcome.poll_count == 2
        assert outcome.transitions == (S.IDLE, S.SUBMITTING, S.POLLING, S.COMPLETED)
        # disconnected interval applies without a feed
        assert clock.sleeps == [2.0, 2.0]
        assert outcome.elapsed_seconds == 4.0

    def test_counts_covering_total_complete_the_run(self) -> None:
        clock = FakeClock()
        client = FakeClient([_accepted()], [_row("processing", 3, 1)])
        outcome = _run(_orchestrator(client, clock))
        assert outcome.state is S.COMPLETED
        assert outcome.batch.failed_count == 1

    def test_synchronous_completion_skips_tracking(self) -> None:
        clock = FakeClock()
        client = FakeClient([ImportResponse(run_id=RUN_ID, status="completed", imported_count=4)])
        outcome = _run(_orchestrator(client, clock))
        assert outcome.state is S.COMPLETED
        assert outcome.poll_count == 0
        assert client.status_calls == 0
        assert outcome.transitions == (S.IDLE, S.SUBMITTING, S.COMPLETED)

    def test_missing_run_id_fails(self) -> None:
        clock = FakeClock()
        client = FakeClient([ImportResponse(run_id="", status="processing")])
        outcome = _run(_orchestrator(client, clock))
        assert outcome.state is S.FAILED
        assert outcome.error is not None
        assert outcome.error["code"] == "IMPORT_ENDPOINT_FAILED"
        assert client.status_calls == 0

    def test_run_failure_reported(self) -> None:
        clock = FakeClock()
        client = FakeClient([_accepted()], [_row("failed", metadata={"error": "collection quota exceeded"})])
        outcome = _run(_orchestrator(client, clock))
        assert outcome.state is S.FAILED
        assert outcome.error is not None
        assert outcome.error["code"] == "IMPORT_RUN_FAILED"
        assert outcome.error["message"] == "collection quota exceeded"
        assert outcome.error["correlation_id"] == RUN_ID

    def test_timeout(self) -> None:
        clock = FakeClock()
        client = FakeClient([_accepted()], [_row("processing", 1)])
        outcome = _run(_orchestrator(client, clock, import_timeout_seconds=10.0))
        assert outcome.state is S.FAILED
        assert outcome.timed_out
        assert outcome.error is not None
        assert outcome.error["code"] == "IMPORT_TIMEOUT"
        assert outcome.batch.imported_count == 1
        assert clock.now == 10.0


class TestSubmitFailures:
    """Submission retry policy."""

    def test_retryable_submit_retried(self) -> None:
        clock = FakeClock()
        client = FakeClient(
            [ImportEndpointError("busy", status_code=503), _accepted()],
            [_row("completed", 4)],
        )
        outcome = _run(_orchestrator(client, clock))
        assert outcome.state is S.COMPLETED
        assert len(client.requests) == 2
        assert clock.sleeps[0] == 1.0

    def test_non_retryable_submit_fails_immediately(self) -> None:
        clock = FakeClock()
        client = FakeClient([ImportEndpointError("bad request", status_code=400)])
        outcome = _run(_orchestrator(client, clock))
        assert outcome.state is S.FAILED
        assert outcome.run_id == ""
        assert len(client.requests) == 1
        assert outcome.error is not None
        assert outcome.error["retryable"] is False

    def test_retries_exhausted(self) -> None:
        clock = FakeClock()
        client = FakeClient([ImportEndpointError("down", status_code=503)])
        outcome = _run(_orchestrator(client, clock, max_retries=3))
        assert outcome.state is S.FAILED
        assert len(client.requests) == 4
        assert clock.sleeps == [1.0, 2.0, 4.0]


class TestPushFeed:
    """Streaming with fallback to polling."""

    def test_events_complete_the_run(self) -> None:
        clock = FakeClock()
        feed = LocalProgressFeed()
        clock.at(1.0, lambda: feed.publish(_row("processing", 2)))
        clock.at(3.0, lambda: feed.publish(_row("completed", 4)))
        client = FakeClient([_accepted()], [_row("processing", 0)])

        outcome = _run(_orchestrator(client, clock, feed))
        assert outcome.state is S.COMPLETED
        assert outcome.event_count == 2
        assert outcome.poll_count == 0
        assert outcome.transitions == (S.IDLE, S.SUBMITTING, S.STREAMING, S.COMPLETED)
        assert feed.subscriber_count == 0

    def test_disconnect_triggers_immediate_poll(self) -> None:
        clock = FakeClock()
        feed = LocalProgressFeed()
        clock.at(1.0, feed.disconnect)
        client = FakeClient([_accepted()], [_row("completed", 4)])

        outcome = _run(_orchestrator(client, clock, feed))
        assert outcome.state is S.COMPLETED
        assert outcome.poll_count == 1
        assert outcome.transitions == (S.IDLE, S.SUBMITTING, S.STREAMING, S.POLLING, S.COMPLETED)

    def test_reconnect_returns_to_streaming(self) -> None:
        clock = FakeClock()
        feed = LocalProgressFeed()
        clock.at(1.0, feed.disconnect)
        clock.at(5.0, lambda: feed.publish(_row("completed", 4)))
        clock.at(6.0, feed.reconnect)
        client = FakeClient([_accepted()], [_row("processing", 0)])

        outcome = _run(_orchestrator(client, clock, feed))
        assert outcome.state is S.COMPLETED
        assert outcome.transitions == (
            S.IDLE,
            S.SUBMITTING,
            S.STREAMING,
            S.POLLING,
            S.STREAMING,
            S.COMPLETED,
        )

    def test_poll_failures_tolerated_while_streaming(self) -> None:
        clock = FakeClock()
        feed = LocalProgressFeed()
        clock.at(100.0, lambda: feed.publish(_row("completed", 4)))
        client = FakeClient([_accepted()], [ImportEndpointError("busy", status_code=503)])

        outcome = _run(_orchestrator(client, clock, feed, max_retries=1))
        assert outcome.state is S.COMPLETED
        assert client.status_calls > 2

    def test_poll_failures_fatal_while_polling(self) -> None:
        clock = FakeClock()
        client = FakeClient([_accepted()], [ImportEndpointError("busy", status_code=503)])
        outcome = _run(_orchestrator(client, clock, max_retries=3))
        assert outcome.state is S.FAILED
        assert outcome.poll_count == 4
        assert outcome.error is not None
        assert outcome.error["code"] == "IMPORT_ENDPOINT_FAILED"

    def test_non_retryable_poll_failure(self) -> None:
        clock = FakeClock()
        feed = LocalProgressFeed()
        client = FakeClient([_accepted()], [ImportEndpointError("gone", status_code=404)])
        outcome = _run(_orchestrator(client, clock, feed))
        assert outcome.state is S.FAILED
        assert outcome.poll_count == 1


class TestImportSelection:
    """Selecting features from the full dataset."""

    def test_selected_ids_taken_from_full_dataset(self) -> None:
        clock = FakeClock()
        client = FakeClient([ImportResponse(run_id=RUN_ID, status="completed", imported_count=2)])
        full = Dataset.from_features(_features(4), 2056)

        outcome = _orchestrator(client, clock).import_selection(
            full, [2, 0, 99, 2], project_file_id="file-1", collection_name="parcels"
        )
        assert outcome.state is S.COMPLETED
        request = client.requests[0]
        assert [f["id"] for f in request.features] == [0, 2]
        assert request.source_srid == 2056
        assert request.target_srid == 4326
        assert request.batch_size == 100

    def test_unresolved_srid_rejected(self) -> None:
        full = Dataset.from_features(_features(2), None)
        orchestrator = _orchestrator(FakeClient([_accepted()]), FakeClock())
        with pytest.raises(CoordinateSystemUnresolvedError):
            orchestrator.import_selection(full, [0], project_file_id="f", collection_name="c")
        assert orchestrator.state is S.IDLE

    def test_empty_selection_rejected(self) -> None:
        full = Dataset.from_features(_features(2), 2056)
        orchestrator = _orchestrator(FakeClient([_accepted()]), FakeClock())
        with pytest.raises(ValueError, match="No features"):
            orchestrator.import_selection(full, [42], project_file_id="f", collection_name="c")

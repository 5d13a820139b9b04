"""Tests for the import endpoint HTTP client.

Covers:
- Submit body serialisation (camelCase) and response parsing
- Status reads, including rows that omit their id
- Retryable vs permanent failures (transport, 429/5xx, 4xx, bad bodies)
"""

from __future__ import annotations

import json

import httpx
import pytest

from geo_import.core.exceptions import ImportEndpointError
from geo_import.importer.client import ImportEndpointClient
from geo_import.models.payloads import ImportRequest

BASE_URL = "https://import.example.test/api"


def _client(handler) -> ImportEndpointClient:
    return ImportEndpointClient(BASE_URL, transport=httpx.MockTransport(handler))


def _request() -> ImportRequest:
    return ImportRequest(
        project_file_id="file-1",
        collection_name="parcels",
        features=[{"type": "Feature", "id": 0, "geometry": None, "properties": {}}],
        source_srid=2056,
    )


class TestSubmit:
    """POST /imports."""

    def test_submit_sends_camel_case_body(self) -> None:
        seen: dict[str, object] = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["body"] = json.loads(request.content)
            return httpx.Response(202, json={"runId": "run-1", "status": "processing"})

        with _client(handler) as client:
            response = client.submit(_request())

        assert response.run_id == "run-1"
        assert response.status == "processing"
        assert seen["method"] == "POST"
        assert seen["path"] == "/api/imports"
        body = seen["body"]
        assert isinstance(body, dict)
        assert body["projectFileId"] == "file-1"
        assert body["collectionName"] == "parcels"
        assert body["sourceSrid"] == 2056
        assert body["targetSrid"] == 4326

    def test_headers_forwarded(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.headers["Authorization"] == "Bearer t"
            return httpx.Response(200, json={"runId": "r"})

        client = ImportEndpointClient(
            BASE_URL, headers={"Authorization": "Bearer t"}, transport=httpx.MockTransport(handler)
        )
        assert client.submit(_request()).run_id == "r"
        client.close()

    def test_empty_base_url_rejected(self) -> None:
        with pytest.raises(ValueError):
            ImportEndpointClient("")


class TestFetchStatus:
    """GET /imports/{run_id}."""

    def test_status_row_parsed(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/imports/run-1"
            return httpx.Response(
                200,
                json={"id": "run-1", "status": "processing", "importedCount": 4, "failedCount": 1},
            )

        record = _client(handler).fetch_status("run-1")
        assert record.status == "processing"
        assert record.imported_count == 4
        assert record.failed_count == 1

    def test_missing_id_filled_from_run_id(self) -> None:
        record = _client(lambda _r: httpx.Response(200, json={"status": "completed"})).fetch_status("run-9")
        assert record.id == "run-9"

    def test_events_url(self) -> None:
        client = ImportEndpointClient(BASE_URL + "/")
        assert client.events_url("r") == f"{BASE_URL}/imports/r/events"
        client.close()


class TestFailures:
    """Error classification."""

    @pytest.mark.parametrize("status", [429, 500, 503])
    def test_retryable_status(self, status: int) -> None:
        client = _client(lambda _r: httpx.Response(status, text="busy"))
        with pytest.raises(ImportEndpointError) as exc_info:
            client.submit(_request())
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == status

    def test_client_error_not_retryable(self) -> None:
        client = _client(lambda _r: httpx.Response(400, text="collection name taken"))
        with pytest.raises(ImportEndpointError, match="collection name taken") as exc_info:
            client.submit(_request())
        assert exc_info.value.retryable is False

    def test_transport_error_retryable(self) -> None:
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("refused", request=request)

        with pytest.raises(ImportEndpointError) as exc_info:
            _client(handler).fetch_status("r")
        assert exc_info.value.retryable is True
        assert exc_info.value.status_code == 0

    def test_non_json_body_not_retryable(self) -> None:
        client = _client(lambda _r: httpx.Response(200, text="<html>"))
        with pytest.raises(ImportEndpointError, match="non-JSON") as exc_info:
            client.submit(_request())
        assert exc_info.value.retryable is False

    def test_contract_mismatch_not_retryable(self) -> None:
        client = _client(lambda _r: httpx.Response(200, json=["not", "an", "object"]))
        with pytest.raises(ImportEndpointError, match="contract") as exc_info:
            client.submit(_request())
        assert exc_info.value.retryable is False

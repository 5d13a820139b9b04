"""HTTP client for the external batch import endpoint.

Endpoints (relative to the configured base URL):

- ``POST /imports``: submit an ``ImportRequest``, returns an ``ImportResponse``
- ``GET  /imports/{run_id}``: read the run's progress row (``ProgressRecord``)
- ``GET  /imports/{run_id}/events``: server-sent progress events (see ``feed``)

Transport failures, ``429`` and ``5xx`` responses raise a retryable
``ImportEndpointError``; other ``4xx`` responses and malformed bodies
raise a non-retryable one.  Retrying is the orchestrator's job.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from pydantic import ValidationError as PydanticValidationError

from geo_import.core.exceptions import ImportEndpointError
from geo_import.models.payloads import ImportRequest, ImportResponse, ProgressRecord

logger = logging.getLogger("geo_import.importer.client")

DEFAULT_TIMEOUT_SECONDS = 30.0


class ImportEndpointClient:
    """Thin typed wrapper over ``httpx.Client``.

    Args:
        base_url: Endpoint base URL.
        timeout: Per-request timeout in seconds.
        headers: Extra headers (e.g. an authorisation token).
        transport: Custom transport (``httpx.MockTransport`` in tests).
    """

    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        headers: dict[str, str] | None = None,
        transport: httpx.BaseTransport | None = None,
    ) -> None:
        if not base_url:
            msg = "Import endpoint base URL must be non-empty"
            raise ValueError(msg)
        self.base_url = base_url.rstrip("/")
        self._client = httpx.Client(
            base_url=self.base_url,
            timeout=timeout,
            headers=headers,
            transport=transport,
        )

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def close(self) -> None:
        self._client.close()

    def __enter__(self) -> ImportEndpointClient:
        return self

    def __exit__(self, *exc: object) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    def submit(self, request: ImportRequest) -> ImportResponse:
        """Submit one import run.

        Raises:
            ImportEndpointError: On transport failure, error status or a malformed body.
        """
        body = request.model_dump(by_alias=True)
        logger.info(
            "import submit | collection=%s | features=%d | source_srid=%d | target_srid=%d",
            request.collection_name,
            len(request.features),
            request.source_srid,
            request.target_srid,
        )
        data = self._send("POST", "/imports", json=body)
        return self._validate(ImportResponse, data, "submit")

    def fetch_status(self, run_id: str) -> ProgressRecord:
        """Read the progress row of *run_id*.

        Raises:
            ImportEndpointError: On transport failure, error status or a malformed body.
        """
        data = self._send("GET", f"/imports/{run_id}")
        record = self._validate(ProgressRecord, data, "status")
        if not record.id:
            record = record.model_copy(update={"id": run_id})
        return record

    def events_url(self, run_id: str) -> str:
        return f"{self.base_url}/imports/{run_id}/events"

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _send(self, method: str, path: str, **kwargs: Any) -> Any:
        try:
            response = self._client.request(method, path, **kwargs)
        except httpx.TransportError as exc:
            msg = f"{method} {path} failed: {exc}"
            raise ImportEndpointError(msg) from exc

        if response.status_code >= 400:
            detail = response.text[:200]
            msg = f"{method} {path} returned {response.status_code}: {detail}"
            raise ImportEndpointError(msg, status_code=response.status_code)

        try:
            return response.json()
        except ValueError as exc:
            msg = f"{method} {path} returned a non-JSON body"
            raise ImportEndpointError(msg, status_code=response.status_code, retryable=False) from exc

    @staticmethod
    def _validate(model: type[Any], data: Any, operation: str) -> Any:
        try:
            return model.model_validate(data)
        except PydanticValidationError as exc:
            msg = f"{operation} response did not match the contract: {exc.error_count()} error(s)"
            raise ImportEndpointError(msg, retryable=False) from exc

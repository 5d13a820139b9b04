"""Pydantic contracts for the batch import endpoint and progress feed.

The endpoint and its progress rows speak camelCase JSON; the models
accept either camelCase or snake_case on input and serialise with
camelCase aliases (``model_dump(by_alias=True)``).

Usage::

    request = ImportRequest(
        project_file_id="f-1",
        collection_name="parcels",
        features=[f.to_dict() for f in selected],
        source_srid=2056,
    )
    body = request.model_dump(by_alias=True)
"""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from geo_import.core.constants import SRID_LV95, SRID_WGS84

_CAMEL = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def _stringify(value: object) -> object:
    if value is None or isinstance(value, str):
        return value
    return str(value)


class PerFeatureError(BaseModel):
    """One feature the endpoint rejected or repaired-and-failed."""

    model_config = _CAMEL

    feature_id: int | None = None
    message: str = ""
    code: str = ""


class ImportRequest(BaseModel):
    """Client → endpoint: one import run."""

    model_config = _CAMEL

    project_file_id: str = Field(min_length=1)
    collection_name: str = Field(min_length=1)
    features: list[dict[str, Any]] = Field(default_factory=list)
    source_srid: int = Field(default=SRID_LV95, gt=0)
    target_srid: int = Field(default=SRID_WGS84, gt=0)
    batch_size: int = Field(default=100, gt=0)


class ImportResponse(BaseModel):
    """Endpoint → client: acknowledgement and (possibly final) counts.

    ``run_id`` keys the progress feed.  When the endpoint finishes
    synchronously the counts are already final.
    """

    model_config = _CAMEL

    run_id: str = ""
    status: str | None = None
    total_features: int | None = None
    imported_count: int = 0
    failed_count: int = 0
    collection_id: str | None = None
    layer_id: str | None = None
    per_feature_errors: list[PerFeatureError] = Field(default_factory=list)

    @field_validator("run_id", mode="before")
    @classmethod
    def _coerce_run_id(cls, value: object) -> object:
        return "" if value is None else _stringify(value)

    @field_validator("collection_id", "layer_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: object) -> object:
        return _stringify(value)


class ProgressRecord(BaseModel):
    """A progress row keyed by run id (push event payload or poll result)."""

    model_config = _CAMEL

    id: str = ""
    status: str = "started"
    total_features: int = 0
    imported_count: int = 0
    failed_count: int = 0
    collection_id: str | None = None
    layer_id: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)

    @field_validator("id", mode="before")
    @classmethod
    def _coerce_id(cls, value: object) -> object:
        return "" if value is None else _stringify(value)

    @field_validator("collection_id", "layer_id", mode="before")
    @classmethod
    def _coerce_ids(cls, value: object) -> object:
        return _stringify(value)

    @property
    def error(self) -> str:
        """``metadata.error`` as a string (empty when absent)."""
        raw = self.metadata.get("error")
        return "" if raw is None else str(raw)

    @property
    def per_feature_errors(self) -> list[PerFeatureError]:
        raw = self.metadata.get("errors") or []
        return [PerFeatureError.model_validate(e) for e in raw if isinstance(e, dict)]

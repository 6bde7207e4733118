from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    """Snake-case fields in Python, camelCase on the wire."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class ExtractedMetric(CamelModel):
    name: str
    value: float | None = None
    unit: str = ""
    reference_min: float | None = None
    reference_max: float | None = None


class ExtractionResult(CamelModel):
    clinic_name: str | None = None
    test_type: str | None = None
    test_date: str | None = None
    metrics: list[ExtractedMetric] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)


class OwnerModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    first_name: str
    last_name: str
    email: str
    preferred_language: str = "uk"
    created_at: str | None = None


class AnimalModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    owner_id: str
    name: str
    species: str
    breed: str
    sex: str
    date_of_birth: str | None = None
    knowledge_base_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class HealthMetricModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    animal_id: str
    lab_test_id: str | None = None
    metric_name: str
    value: float
    unit: str
    reference_min: float | None = None
    reference_max: float | None = None
    record_date: str
    notes: str | None = None
    knowledge_base_document_id: str | None = None
    created_at: str | None = None
    updated_at: str | None = None


class LabTestModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    animal_id: str
    test_date: str
    clinic_name: str | None = None
    test_type: str | None = None
    notes: str | None = None
    knowledge_base_document_id: str | None = None
    sync_version: int = 0
    synced_at: str | None = None
    content_updated_at: str | None = None
    created_at: str | None = None
    updated_at: str | None = None
    metrics: list[HealthMetricModel] | None = None


class ChatMessageModel(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    id: str
    animal_id: str
    role: str
    content: str
    created_at: str | None = None


def dump_record(model: type[CamelModel], record: dict[str, Any], **extra: Any) -> dict[str, Any]:
    """Render a stored record in its wire shape."""
    payload = model.model_validate({**record, **extra}).model_dump(by_alias=True)
    if "metrics" in payload and payload["metrics"] is None:
        payload.pop("metrics")
    return payload

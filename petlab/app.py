from __future__ import annotations

import logging
import os
from datetime import date

from fastapi import FastAPI, File, Form, Header, Request, UploadFile
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import ConfigDict, Field
from pydantic.alias_generators import to_camel

from petlab import chat, knowledge_base, lab_tests, record_store
from petlab.documents import decode_document_base64, normalize_document
from petlab.errors import (
    Conflict,
    EmptyDocument,
    InvalidMetricValue,
    KnowledgeBaseError,
    MalformedExtraction,
    NotFound,
    PetLabError,
    RunFailed,
    ServiceUnavailable,
    UnsupportedMediaType,
)
from petlab.extraction import extract_document_text
from petlab.extraction_parser import parse_extraction
from petlab.localization import message
from petlab.schema_models import (
    AnimalModel,
    CamelModel,
    ChatMessageModel,
    HealthMetricModel,
    LabTestModel,
    OwnerModel,
    dump_record,
)

logger = logging.getLogger(__name__)

app = FastAPI(title="PetLab API")


@app.middleware("http")
async def api_prefix_alias(request, call_next):
    """Accept both `/path` and `/api/path` for frontend compatibility."""
    if request.scope.get("path", "").startswith("/api/"):
        request.scope["path"] = request.scope["path"][4:]
    return await call_next(request)


DEFAULT_CORS_ORIGINS = "http://localhost:3000,http://127.0.0.1:3000"
CORS_ALLOWED_ORIGINS = [
    origin.strip()
    for origin in os.getenv("PETLAB_CORS_ALLOWED_ORIGINS", DEFAULT_CORS_ORIGINS).split(",")
    if origin.strip()
]

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ALLOWED_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

ERROR_STATUS_CODES: list[tuple[type[PetLabError], int]] = [
    (UnsupportedMediaType, 400),
    (InvalidMetricValue, 400),
    (NotFound, 404),
    (Conflict, 409),
    (EmptyDocument, 422),
    (MalformedExtraction, 500),
    (RunFailed, 500),
    (KnowledgeBaseError, 502),
    (ServiceUnavailable, 503),
]


def _status_code_for(exc: PetLabError) -> int:
    for error_type, status_code in ERROR_STATUS_CODES:
        if isinstance(exc, error_type):
            return status_code
    return 500


def _request_language(request: Request) -> str | None:
    language = getattr(request.state, "language", None)
    if language:
        return language
    header_language = request.headers.get("x-language") or request.headers.get("accept-language") or ""
    return header_language.split(",")[0].split("-")[0].strip() or None


def _error_json(
    status_code: int,
    message_key: str,
    code: str,
    language: str | None,
    warnings: list[str] | None = None,
) -> JSONResponse:
    content = {
        "status": "error",
        "message": message(message_key, language),
        "code": code,
        "warnings": warnings or [],
    }
    return JSONResponse(status_code=status_code, content=content)


def _petlab_error_response(exc: PetLabError, language: str | None, status_code: int | None = None) -> JSONResponse:
    params = {"metric_name": exc.metric_name} if isinstance(exc, InvalidMetricValue) else {}
    content = {
        "status": "error",
        "message": message(exc.message_key, language, **params),
        "code": exc.code,
        "warnings": [],
    }
    if isinstance(exc, MalformedExtraction):
        content["rawResponse"] = exc.raw_text
    return JSONResponse(status_code=status_code or _status_code_for(exc), content=content)


@app.exception_handler(PetLabError)
async def handle_petlab_error(request: Request, exc: PetLabError):
    status_code = _status_code_for(exc)
    if status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.detail)
    return _petlab_error_response(exc, _request_language(request), status_code)


@app.exception_handler(RequestValidationError)
async def handle_validation_error(request: Request, exc: RequestValidationError):
    warnings = [
        f"{'.'.join(str(part) for part in error.get('loc', ()))}: {error.get('msg')}"
        for error in exc.errors()
    ]
    return _error_json(400, "invalid_request", "invalid_request", _request_language(request), warnings)


@app.exception_handler(ValueError)
async def handle_value_error(request: Request, exc: ValueError):
    return _error_json(400, "invalid_request", "invalid_request", _request_language(request), warnings=[str(exc)])


class OwnerCreateRequest(CamelModel):
    first_name: str
    last_name: str
    email: str
    preferred_language: str = "uk"


class AnimalCreateRequest(CamelModel):
    owner_id: str
    name: str
    species: str
    breed: str
    sex: str
    date_of_birth: date | None = None


class AnalyzeRequest(CamelModel):
    document_base64: str
    media_type: str
    animal_id: str | None = None
    language: str | None = None


class LabTestMetricInput(CamelModel):
    name: str
    value: float | str | None = None
    unit: str | None = ""
    reference_min: float | str | None = None
    reference_max: float | str | None = None
    notes: str | None = None


class LabTestCreateRequest(CamelModel):
    animal_id: str
    test_date: date
    clinic_name: str | None = None
    test_type: str | None = None
    notes: str | None = None
    metrics: list[LabTestMetricInput] = Field(default_factory=list)


class LabTestUpdateRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    test_date: date | None = None
    clinic_name: str | None = None
    test_type: str | None = None
    notes: str | None = None


class HealthMetricCreateRequest(CamelModel):
    animal_id: str
    metric_name: str
    value: float | str
    unit: str = ""
    reference_min: float | str | None = None
    reference_max: float | str | None = None
    record_date: date
    notes: str | None = None


class HealthMetricUpdateRequest(CamelModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="forbid")

    value: float | str | None = None
    notes: str | None = None
    reference_min: float | str | None = None
    reference_max: float | str | None = None


class ChatRequest(CamelModel):
    message: str = Field(min_length=1)


class ReconcileRequest(CamelModel):
    animal_id: str | None = None


def _require_animal(animal_id: str) -> dict:
    animal = record_store.get_animal(animal_id)
    if animal is None:
        raise NotFound("animal", animal_id)
    return animal


def _owner_language(owner_id: str | None) -> str | None:
    owner = record_store.get_owner(owner_id) if owner_id else None
    return owner.get("preferred_language") if owner else None


def _save_result_payload(model, result: lab_tests.SaveResult, language: str | None) -> dict:
    payload = dump_record(model, result.record)
    if result.sync_error:
        payload["syncError"] = message(result.sync_error, language)
        payload["warnings"] = result.warnings
    return payload


@app.get("/health")
def health_check():
    return {"status": "ok"}


# Owners and animals


@app.post("/owners", status_code=201)
def create_owner(request: OwnerCreateRequest):
    owner = record_store.create_owner(request.model_dump())
    return dump_record(OwnerModel, owner)


@app.post("/animals", status_code=201)
def create_animal(request: AnimalCreateRequest):
    if record_store.get_owner(request.owner_id) is None:
        raise NotFound("owner", request.owner_id)
    payload = request.model_dump()
    if payload["date_of_birth"] is not None:
        payload["date_of_birth"] = payload["date_of_birth"].isoformat()
    return dump_record(AnimalModel, record_store.create_animal(payload))


@app.get("/animals")
def list_animals(http_request: Request, x_owner_id: str | None = Header(None)):
    if not x_owner_id:
        return _error_json(400, "owner_required", "owner_required", _request_language(http_request))
    return [dump_record(AnimalModel, animal) for animal in record_store.list_animals_by_owner(x_owner_id)]


@app.get("/animals/{animal_id}")
def get_animal(animal_id: str):
    return dump_record(AnimalModel, _require_animal(animal_id))


@app.delete("/animals/{animal_id}")
def delete_animal(animal_id: str, http_request: Request):
    http_request.state.language = _owner_language(_require_animal(animal_id).get("owner_id"))
    lab_tests.delete_animal(animal_id)
    return {"success": True, "message": "Animal deleted successfully"}


@app.delete("/animals/{animal_id}/data")
def clear_animal_data(animal_id: str, http_request: Request):
    http_request.state.language = _owner_language(_require_animal(animal_id).get("owner_id"))
    removed = lab_tests.wipe_animal_data(animal_id)
    return {"success": True, "message": "Animal data cleared successfully", **removed}


@app.delete("/data/clear-all")
def clear_all_data(http_request: Request, x_owner_id: str | None = Header(None)):
    if not x_owner_id:
        return _error_json(400, "owner_required", "owner_required", _request_language(http_request))
    deleted_animals = lab_tests.clear_owner_data(x_owner_id)
    return {"success": True, "message": "All data cleared successfully", "deletedAnimals": deleted_animals}


# Document analysis


def _analyze_document(raw_bytes: bytes, media_type: str | None, language: str | None) -> dict:
    document = normalize_document(raw_bytes, media_type)
    raw_text = extract_document_text(document, language=language)
    try:
        result = parse_extraction(raw_text)
    except MalformedExtraction:
        logger.error("Could not parse extraction response: %s", raw_text)
        raise

    payload = {"success": True, **result.model_dump(by_alias=True)}
    payload["warnings"] = document.warnings + result.warnings
    return payload


def _analysis_language(http_request: Request, language: str | None, animal_id: str | None) -> str | None:
    if not language and animal_id:
        animal = record_store.get_animal(animal_id)
        language = _owner_language(animal.get("owner_id")) if animal else None
    http_request.state.language = language
    return language


@app.post("/ocr/analyze")
def analyze_document(request: AnalyzeRequest, http_request: Request):
    language = _analysis_language(http_request, request.language, request.animal_id)
    try:
        raw_bytes = decode_document_base64(request.document_base64)
    except ValueError:
        return _error_json(400, "invalid_document_payload", "invalid_document_payload", language)
    return _analyze_document(raw_bytes, request.media_type, language)


@app.post("/ocr/analyze-upload")
def analyze_uploaded_document(
    http_request: Request,
    file: UploadFile = File(...),
    animal_id: str | None = Form(None, alias="animalId"),
    language: str | None = Form(None),
):
    resolved_language = _analysis_language(http_request, language, animal_id)
    content = file.file.read()
    return _analyze_document(content, file.content_type, resolved_language)


# Lab tests


@app.post("/lab-tests")
def create_lab_test(request: LabTestCreateRequest, http_request: Request):
    animal = _require_animal(request.animal_id)
    language = _owner_language(animal.get("owner_id"))
    http_request.state.language = language
    result = lab_tests.create_lab_test(
        request.animal_id,
        request.test_date.isoformat(),
        [metric.model_dump() for metric in request.metrics],
        clinic_name=request.clinic_name,
        test_type=request.test_type,
        notes=request.notes,
    )
    return JSONResponse(status_code=201, content=_save_result_payload(LabTestModel, result, language))


@app.get("/lab-tests/animal/{animal_id}")
def list_lab_tests(animal_id: str):
    return [dump_record(LabTestModel, lab_test) for lab_test in record_store.list_lab_tests_by_animal(animal_id)]


@app.get("/lab-tests/{lab_test_id}")
def get_lab_test(lab_test_id: str):
    return dump_record(LabTestModel, lab_tests.get_lab_test_with_metrics(lab_test_id))


@app.patch("/lab-tests/{lab_test_id}")
def update_lab_test(lab_test_id: str, request: LabTestUpdateRequest, http_request: Request):
    updates = request.model_dump(exclude_unset=True)
    if updates.get("test_date") is not None:
        updates["test_date"] = updates["test_date"].isoformat()
    elif "test_date" in updates:
        updates.pop("test_date")
    result = lab_tests.update_lab_test(lab_test_id, updates)
    language = _owner_language((record_store.get_animal(result.record["animal_id"]) or {}).get("owner_id"))
    return _save_result_payload(LabTestModel, result, language)


@app.delete("/lab-tests/{lab_test_id}")
def delete_lab_test(lab_test_id: str):
    lab_tests.delete_lab_test(lab_test_id)
    return {"success": True}


# Health metrics


@app.post("/health-metrics")
def create_health_metric(request: HealthMetricCreateRequest, http_request: Request):
    animal = _require_animal(request.animal_id)
    language = _owner_language(animal.get("owner_id"))
    http_request.state.language = language
    result = lab_tests.create_standalone_metric(
        request.animal_id,
        {
            "metric_name": request.metric_name,
            "value": request.value,
            "unit": request.unit,
            "reference_min": request.reference_min,
            "reference_max": request.reference_max,
            "notes": request.notes,
        },
        request.record_date.isoformat(),
    )
    return JSONResponse(status_code=201, content=_save_result_payload(HealthMetricModel, result, language))


@app.get("/health-metrics/animal/{animal_id}")
def list_health_metrics(animal_id: str):
    return [dump_record(HealthMetricModel, metric) for metric in record_store.list_health_metrics_by_animal(animal_id)]


@app.get("/health-metrics/lab-test/{lab_test_id}")
def list_lab_test_metrics(lab_test_id: str):
    return [
        dump_record(HealthMetricModel, metric) for metric in record_store.list_health_metrics_by_lab_test(lab_test_id)
    ]


@app.patch("/health-metrics/{metric_id}")
def update_health_metric(metric_id: str, request: HealthMetricUpdateRequest):
    result = lab_tests.update_health_metric(metric_id, request.model_dump(exclude_unset=True))
    language = _owner_language((record_store.get_animal(result.record["animal_id"]) or {}).get("owner_id"))
    return _save_result_payload(HealthMetricModel, result, language)


@app.delete("/health-metrics/{metric_id}")
def delete_health_metric(metric_id: str):
    result = lab_tests.delete_health_metric(metric_id)
    payload = {"success": True}
    if result.sync_error:
        animal = record_store.get_animal(result.record["animal_id"]) or {}
        payload["syncError"] = message(result.sync_error, _owner_language(animal.get("owner_id")))
        payload["warnings"] = result.warnings
    return payload


# Chat


@app.get("/chat/{animal_id}")
def list_chat_messages(animal_id: str):
    return [dump_record(ChatMessageModel, item) for item in record_store.list_chat_messages_by_animal(animal_id)]


@app.post("/chat/{animal_id}")
def send_chat_message(animal_id: str, request: ChatRequest, http_request: Request):
    animal = _require_animal(animal_id)
    language = _owner_language(animal.get("owner_id"))
    http_request.state.language = language
    if not chat.chat_enabled():
        return _error_json(503, "chat_unavailable", ServiceUnavailable.code, language)

    user_message = record_store.create_chat_message({"animal_id": animal_id, "role": "user", "content": request.message})
    try:
        answer = chat.ask(animal, request.message, language)
        record_store.create_chat_message({"animal_id": animal_id, "role": "assistant", "content": answer})
    except Exception as exc:
        record_store.delete_chat_message(user_message["id"])
        logger.exception("Chat failed for animal %s; removed the unanswered question", animal_id)
        if isinstance(exc, PetLabError):
            return _error_json(500, "chat_failed", exc.code, language)
        raise

    return {"userMessage": request.message, "assistantMessage": answer}


@app.delete("/chat/{animal_id}")
def clear_chat(animal_id: str):
    deleted = record_store.delete_chat_messages_by_animal(animal_id)
    chat.cleanup(animal_id)
    return {"success": True, "deletedMessages": deleted}


# Knowledge base


@app.post("/knowledge-base/reconcile")
def reconcile_knowledge_base(request: ReconcileRequest | None = None):
    animal_id = request.animal_id if request else None
    return knowledge_base.reconcile(animal_id)

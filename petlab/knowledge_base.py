from __future__ import annotations

import logging
from typing import Any

from petlab import openai_resources, record_store
from petlab.errors import Conflict, KnowledgeBaseError, NotFound, PetLabError, ServiceUnavailable

logger = logging.getLogger(__name__)

STATUS_BELOW = "below"
STATUS_ABOVE = "above"
STATUS_NORMAL = "normal"


def knowledge_base_enabled() -> bool:
    return openai_resources.resources_enabled()


def _format_number(value: Any) -> str:
    if value is None:
        return ""
    number = float(value)
    if number.is_integer():
        return str(int(number))
    return str(number)


def metric_status(metric: dict) -> str | None:
    """Classify a value against its reference range; None unless both bounds are known."""
    reference_min = metric.get("reference_min")
    reference_max = metric.get("reference_max")
    if reference_min is None or reference_max is None:
        return None
    value = float(metric["value"])
    if value < float(reference_min):
        return STATUS_BELOW
    if value > float(reference_max):
        return STATUS_ABOVE
    return STATUS_NORMAL


def _reference_range_text(metric: dict) -> str | None:
    reference_min = metric.get("reference_min")
    reference_max = metric.get("reference_max")
    unit = metric.get("unit") or ""
    if reference_min is not None and reference_max is not None:
        text = f"{_format_number(reference_min)}-{_format_number(reference_max)}"
    elif reference_max is not None:
        text = f"< {_format_number(reference_max)}"
    elif reference_min is not None:
        text = f"> {_format_number(reference_min)}"
    else:
        return None
    return f"{text} {unit}".rstrip()


_LAB_TEST_STATUS_LINES = {
    STATUS_BELOW: "⚠️ Status: BELOW NORMAL (Low)",
    STATUS_ABOVE: "⚠️ Status: ABOVE NORMAL (High)",
    STATUS_NORMAL: "✓ Status: Within Normal Range",
}

_METRIC_STATUS_LINES = {
    STATUS_BELOW: "Status: Below normal range (low)",
    STATUS_ABOVE: "Status: Above normal range (high)",
    STATUS_NORMAL: "Status: Within normal range",
}


def render_lab_test_document(lab_test: dict, metrics: list[dict]) -> str:
    lines = ["=== LAB TEST ANALYSIS ===", "", f"Test Date: {lab_test['test_date']}"]
    if lab_test.get("test_type"):
        lines.append(f"Test Type: {lab_test['test_type']}")
    if lab_test.get("clinic_name"):
        lines.append(f"Clinic: {lab_test['clinic_name']}")
    if lab_test.get("notes"):
        lines.append(f"General Notes: {lab_test['notes']}")

    lines.extend(["", f"=== METRICS ({len(metrics)} total) ===", ""])

    abnormal: list[tuple[str, str]] = []
    for index, metric in enumerate(metrics, start=1):
        unit = metric.get("unit") or ""
        lines.append(f"{index}. {metric['metric_name']}:")
        lines.append(f"   Value: {_format_number(metric['value'])} {unit}".rstrip())
        reference_text = _reference_range_text(metric)
        if reference_text:
            lines.append(f"   Reference Range: {reference_text}")
        status = metric_status(metric)
        if status:
            lines.append(f"   {_LAB_TEST_STATUS_LINES[status]}")
            if status != STATUS_NORMAL:
                abnormal.append((metric["metric_name"], "LOW" if status == STATUS_BELOW else "HIGH"))
        if metric.get("notes"):
            lines.append(f"   Notes: {metric['notes']}")
        lines.append("")

    lines.append("=== SUMMARY ===")
    lines.append(f"Total abnormal values: {len(abnormal)} out of {len(metrics)}")
    if abnormal:
        lines.append("Abnormal metrics:")
        lines.extend(f"  - {name}: {label}" for name, label in abnormal)
    return "\n".join(lines) + "\n"


def render_metric_document(metric: dict) -> str:
    unit = metric.get("unit") or ""
    lines = [
        f"Medical metric: {metric['metric_name']}",
        f"Value: {_format_number(metric['value'])} {unit}".rstrip(),
        f"Date: {metric['record_date']}",
    ]
    reference_text = _reference_range_text(metric)
    if reference_text:
        lines.append(f"Reference range: {reference_text}")
    status = metric_status(metric)
    if status:
        lines.append(_METRIC_STATUS_LINES[status])
    if metric.get("notes"):
        lines.append(f"Notes: {metric['notes']}")
    return "\n".join(lines) + "\n"


def ensure_index(animal: dict) -> str:
    """Return the animal's index handle, creating the index on first use."""
    if animal.get("knowledge_base_id"):
        return animal["knowledge_base_id"]

    index_id = openai_resources.create_vector_store(
        name=f"{animal.get('name') or animal['id']} Health Data",
        metadata={"animal_id": animal["id"]},
    )
    persisted = record_store.set_animal_knowledge_base(animal["id"], index_id)
    if persisted["knowledge_base_id"] != index_id:
        logger.info("Index %s lost the race for animal %s; removing it", index_id, animal["id"])
        try:
            openai_resources.delete_vector_store(index_id)
        except KnowledgeBaseError as exc:
            logger.warning("Failed to delete surplus index %s: %s", index_id, exc.detail)
    else:
        logger.info("Created index %s for animal %s", index_id, animal["id"])

    animal["knowledge_base_id"] = persisted["knowledge_base_id"]
    return persisted["knowledge_base_id"]


def upload_document(index_id: str, filename: str, content: str, attributes: dict[str, str]) -> str:
    file_id = openai_resources.upload_file(filename, content.encode("utf-8"))
    try:
        openai_resources.attach_file(index_id, file_id, attributes)
    except KnowledgeBaseError:
        try:
            openai_resources.delete_file(file_id)
        except KnowledgeBaseError as cleanup_exc:
            logger.warning("Failed to delete unattached file %s: %s", file_id, cleanup_exc.detail)
        raise
    logger.info("Uploaded document %s into index %s", file_id, index_id)
    return file_id


def _remove_document(index_id: str, document_id: str) -> None:
    """Detach a document from the index; raises if it may still be live."""
    try:
        openai_resources.detach_file(index_id, document_id)
    except KnowledgeBaseError as exc:
        if not exc.is_missing:
            raise
    try:
        openai_resources.delete_file(document_id)
    except KnowledgeBaseError as exc:
        if not exc.is_missing:
            logger.warning("Detached document %s but failed to delete its file: %s", document_id, exc.detail)
    logger.info("Deleted document %s from index %s", document_id, index_id)


def delete_document(index_id: str | None, document_id: str | None) -> bool:
    """Best-effort removal; failures are logged, never raised."""
    if not index_id or not document_id:
        return False
    try:
        _remove_document(index_id, document_id)
    except PetLabError as exc:
        logger.warning("Failed to delete document %s from index %s: %s", document_id, index_id, exc.detail)
        return False
    return True


def delete_index(index_id: str) -> None:
    try:
        openai_resources.delete_vector_store(index_id)
    except KnowledgeBaseError as exc:
        if not exc.is_missing:
            raise
    logger.info("Deleted index %s", index_id)


def _lab_test_filename(lab_test: dict) -> str:
    return f"lab_test_{lab_test['test_date']}_{lab_test['id']}.txt"


def upsert_document(
    index_id: str,
    lab_test: dict,
    metrics: list[dict],
    old_document_id: str | None = None,
) -> str:
    """Replace the lab test's document with one rendered from ``metrics``.

    The old document is removed first. If that removal fails nothing is
    uploaded, so the old handle stays valid.
    """
    if old_document_id:
        _remove_document(index_id, old_document_id)
    return upload_document(
        index_id,
        _lab_test_filename(lab_test),
        render_lab_test_document(lab_test, metrics),
        {"animal_id": lab_test["animal_id"], "lab_test_id": lab_test["id"]},
    )


def list_documents_for_lab_test(index_id: str, lab_test_id: str) -> list[str]:
    return [
        str(item.get("id"))
        for item in openai_resources.list_vector_store_files(index_id)
        if (item.get("attributes") or {}).get("lab_test_id") == lab_test_id
    ]


def _compensate_lab_test(lab_test_id: str, expected_version: int) -> None:
    try:
        record_store.commit_lab_test_document(lab_test_id, None, expected_version=expected_version)
    except (Conflict, NotFound) as exc:
        logger.info("Skipped clearing document handle of lab test %s: %s", lab_test_id, exc.detail)


def sync_lab_test(lab_test_id: str) -> dict:
    """Regenerate the lab test's document from its current metadata and metrics."""
    lab_test = record_store.get_lab_test(lab_test_id)
    if lab_test is None:
        raise NotFound("lab_test", lab_test_id)
    animal = record_store.get_animal(lab_test["animal_id"])
    if animal is None:
        raise NotFound("animal", lab_test["animal_id"])
    if not knowledge_base_enabled():
        raise ServiceUnavailable("Knowledge base is not configured.")

    expected_version = int(lab_test.get("sync_version") or 0)
    old_document_id = lab_test.get("knowledge_base_document_id")
    metrics = record_store.list_health_metrics_by_lab_test(lab_test_id)

    if not metrics:
        if old_document_id and animal.get("knowledge_base_id"):
            _remove_document(animal["knowledge_base_id"], old_document_id)
        return record_store.commit_lab_test_document(lab_test_id, None, expected_version=expected_version)

    index_id = ensure_index(animal)
    if old_document_id:
        # Raises before anything is uploaded; the stored handle stays valid.
        _remove_document(index_id, old_document_id)
    try:
        document_id = upsert_document(index_id, lab_test, metrics)
    except KnowledgeBaseError:
        if old_document_id:
            # The old document is already gone; leave a null handle for reconcile().
            _compensate_lab_test(lab_test_id, expected_version)
        raise

    try:
        return record_store.commit_lab_test_document(lab_test_id, document_id, expected_version=expected_version)
    except (Conflict, NotFound):
        logger.warning("Discarding document %s of lab test %s after a concurrent change", document_id, lab_test_id)
        delete_document(index_id, document_id)
        raise


def sync_standalone_metric(metric_id: str) -> dict:
    metric = record_store.get_health_metric(metric_id)
    if metric is None:
        raise NotFound("health_metric", metric_id)
    if metric.get("lab_test_id"):
        raise ValueError(f"Metric '{metric_id}' belongs to lab test '{metric['lab_test_id']}'.")
    animal = record_store.get_animal(metric["animal_id"])
    if animal is None:
        raise NotFound("animal", metric["animal_id"])
    if not knowledge_base_enabled():
        raise ServiceUnavailable("Knowledge base is not configured.")

    index_id = ensure_index(animal)
    old_document_id = metric.get("knowledge_base_document_id")
    if old_document_id:
        _remove_document(index_id, old_document_id)

    try:
        document_id = upload_document(
            index_id,
            f"metric_{metric_id}.txt",
            render_metric_document(metric),
            {"animal_id": metric["animal_id"], "metric_id": metric_id},
        )
    except KnowledgeBaseError:
        if old_document_id:
            record_store.commit_health_metric_document(metric_id, None)
        raise

    updated = record_store.commit_health_metric_document(metric_id, document_id)
    if updated is None:
        delete_document(index_id, document_id)
        raise NotFound("health_metric", metric_id)
    return updated


def _document_is_stale(record: dict) -> bool:
    if not record.get("knowledge_base_document_id"):
        return True
    synced_at = record.get("synced_at")
    return not synced_at or (record.get("content_updated_at") or "") > synced_at


def lab_test_needs_sync(lab_test: dict, has_metrics: bool) -> bool:
    if not has_metrics:
        return bool(lab_test.get("knowledge_base_document_id"))
    return _document_is_stale(lab_test)


def metric_needs_sync(metric: dict) -> bool:
    return _document_is_stale(metric)


def reconcile(animal_id: str | None = None) -> dict:
    """Re-sync every lab test and standalone metric whose document is missing or stale."""
    if not knowledge_base_enabled():
        raise ServiceUnavailable("Knowledge base is not configured.")

    if animal_id is not None:
        if record_store.get_animal(animal_id) is None:
            raise NotFound("animal", animal_id)
        lab_tests = record_store.list_lab_tests_by_animal(animal_id)
    else:
        lab_tests = record_store.list_lab_tests()

    lab_tests_synced = 0
    metrics_synced = 0
    failures: list[dict[str, str]] = []

    for lab_test in lab_tests:
        has_metrics = bool(record_store.list_health_metrics_by_lab_test(lab_test["id"]))
        if not lab_test_needs_sync(lab_test, has_metrics):
            continue
        try:
            sync_lab_test(lab_test["id"])
        except PetLabError as exc:
            logger.warning("Reconcile failed for lab test %s: %s", lab_test["id"], exc.detail)
            failures.append({"labTestId": lab_test["id"], "code": exc.code, "error": exc.detail})
            continue
        lab_tests_synced += 1

    for metric in record_store.list_standalone_health_metrics():
        if animal_id is not None and metric.get("animal_id") != animal_id:
            continue
        if not metric_needs_sync(metric):
            continue
        try:
            sync_standalone_metric(metric["id"])
        except PetLabError as exc:
            logger.warning("Reconcile failed for metric %s: %s", metric["id"], exc.detail)
            failures.append({"healthMetricId": metric["id"], "code": exc.code, "error": exc.detail})
            continue
        metrics_synced += 1

    logger.info(
        "Reconcile finished: %d lab test(s), %d metric(s), %d failure(s)",
        lab_tests_synced,
        metrics_synced,
        len(failures),
    )
    return {
        "status": "success" if not failures else "partial",
        "labTestsSynced": lab_tests_synced,
        "metricsSynced": metrics_synced,
        "failures": failures,
    }

from __future__ import annotations

import copy
import json
import os
import tempfile
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable
from uuid import uuid4

from petlab.errors import Conflict, NotFound

DATA_DIR = Path(os.getenv("PETLAB_DATA_DIR", "data"))

TABLES = ("owners", "animals", "lab_tests", "health_metrics", "chat_messages")

_LOCK = threading.RLock()


def _utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _store_path() -> Path:
    return DATA_DIR / "records.json"


def _atomic_write_json(path: Path, payload: dict) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    with tempfile.NamedTemporaryFile(
        mode="w",
        encoding="utf-8",
        dir=path.parent,
        prefix=f".{path.name}.",
        suffix=".tmp",
        delete=False,
    ) as handle:
        json.dump(payload, handle, indent=2, ensure_ascii=False)
        handle.flush()
        temp_path = Path(handle.name)
    temp_path.replace(path)


def _default_store() -> dict:
    store: dict = {"updated_at": None}
    for table in TABLES:
        store[table] = {}
    return store


def load_store() -> dict:
    path = _store_path()
    if not path.exists():
        return _default_store()
    store = json.loads(path.read_text(encoding="utf-8"))
    for table in TABLES:
        store.setdefault(table, {})
    return store


def save_store(store: dict) -> dict:
    store["updated_at"] = _utc_now()
    _atomic_write_json(_store_path(), store)
    return store


def _insert(table: str, record: dict) -> dict:
    now = _utc_now()
    record = {"id": str(uuid4()), **record}
    record.setdefault("created_at", now)
    with _LOCK:
        store = load_store()
        store[table][record["id"]] = record
        save_store(store)
    return copy.deepcopy(record)


def _get(table: str, record_id: str) -> dict | None:
    with _LOCK:
        record = load_store()[table].get(record_id)
    return copy.deepcopy(record) if record is not None else None


def _select(table: str, predicate: Callable[[dict], bool]) -> list[dict]:
    with _LOCK:
        records = [record for record in load_store()[table].values() if predicate(record)]
    return copy.deepcopy(records)


def _update(table: str, record_id: str, updates: dict) -> dict | None:
    with _LOCK:
        store = load_store()
        record = store[table].get(record_id)
        if record is None:
            return None
        record.update(updates)
        record["updated_at"] = _utc_now()
        save_store(store)
    return copy.deepcopy(record)


def _delete(table: str, record_id: str) -> bool:
    with _LOCK:
        store = load_store()
        if store[table].pop(record_id, None) is None:
            return False
        save_store(store)
    return True


# Owners


def create_owner(owner: dict) -> dict:
    return _insert("owners", {"preferred_language": "uk", **owner})


def get_owner(owner_id: str) -> dict | None:
    return _get("owners", owner_id)


# Animals


def create_animal(animal: dict) -> dict:
    return _insert("animals", {"knowledge_base_id": None, **animal, "updated_at": _utc_now()})


def get_animal(animal_id: str) -> dict | None:
    return _get("animals", animal_id)


def list_animals_by_owner(owner_id: str) -> list[dict]:
    animals = _select("animals", lambda record: record.get("owner_id") == owner_id)
    return sorted(animals, key=lambda record: record.get("created_at") or "", reverse=True)


def set_animal_knowledge_base(animal_id: str, knowledge_base_id: str) -> dict:
    """Store the index handle unless another request already stored one.

    Returns the animal as persisted, so a caller that lost the race sees the
    winning handle.
    """
    with _LOCK:
        store = load_store()
        animal = store["animals"].get(animal_id)
        if animal is None:
            raise NotFound("animal", animal_id)
        if not animal.get("knowledge_base_id"):
            animal["knowledge_base_id"] = knowledge_base_id
            animal["updated_at"] = _utc_now()
            save_store(store)
    return copy.deepcopy(animal)


def _drop_animal_children(store: dict, animal_id: str) -> dict[str, int]:
    removed: dict[str, int] = {}
    for table in ("lab_tests", "health_metrics", "chat_messages"):
        remaining = {
            record_id: record
            for record_id, record in store[table].items()
            if record.get("animal_id") != animal_id
        }
        removed[table] = len(store[table]) - len(remaining)
        store[table] = remaining
    return removed


def clear_animal_data(animal_id: str) -> dict[str, int]:
    """Remove the animal's lab tests, metrics and chat, and forget its index handle."""
    with _LOCK:
        store = load_store()
        animal = store["animals"].get(animal_id)
        if animal is None:
            raise NotFound("animal", animal_id)
        removed = _drop_animal_children(store, animal_id)
        animal["knowledge_base_id"] = None
        animal["updated_at"] = _utc_now()
        save_store(store)
    return removed


def delete_animal(animal_id: str) -> bool:
    with _LOCK:
        store = load_store()
        if store["animals"].pop(animal_id, None) is None:
            return False
        _drop_animal_children(store, animal_id)
        save_store(store)
    return True


# Lab tests


def create_lab_test_with_metrics(lab_test: dict, metrics: list[dict]) -> tuple[dict, list[dict]]:
    """Insert a lab test and its metrics in one write."""
    now = _utc_now()
    lab_test_record = {
        "id": str(uuid4()),
        "clinic_name": None,
        "test_type": None,
        "notes": None,
        **lab_test,
        "knowledge_base_document_id": None,
        "sync_version": 0,
        "synced_at": None,
        "content_updated_at": now,
        "created_at": now,
        "updated_at": now,
    }
    metric_records = [
        {
            "id": str(uuid4()),
            "notes": None,
            **metric,
            "animal_id": lab_test_record["animal_id"],
            "lab_test_id": lab_test_record["id"],
            "record_date": lab_test_record["test_date"],
            "knowledge_base_document_id": None,
            "created_at": now,
            "updated_at": now,
        }
        for metric in metrics
    ]
    with _LOCK:
        store = load_store()
        store["lab_tests"][lab_test_record["id"]] = lab_test_record
        for record in metric_records:
            store["health_metrics"][record["id"]] = record
        save_store(store)
    return copy.deepcopy(lab_test_record), copy.deepcopy(metric_records)


def get_lab_test(lab_test_id: str) -> dict | None:
    return _get("lab_tests", lab_test_id)


def list_lab_tests_by_animal(animal_id: str) -> list[dict]:
    lab_tests = _select("lab_tests", lambda record: record.get("animal_id") == animal_id)
    return sorted(lab_tests, key=lambda record: record.get("test_date") or "", reverse=True)


def list_lab_tests() -> list[dict]:
    return _select("lab_tests", lambda _record: True)


def update_lab_test(lab_test_id: str, updates: dict) -> dict | None:
    return _update("lab_tests", lab_test_id, {**updates, "content_updated_at": _utc_now()})


def mark_lab_test_content_changed(lab_test_id: str) -> dict | None:
    return _update("lab_tests", lab_test_id, {"content_updated_at": _utc_now()})


def commit_lab_test_document(lab_test_id: str, document_id: str | None, *, expected_version: int | None) -> dict:
    """Compare-and-increment the sync version while storing the document handle."""
    with _LOCK:
        store = load_store()
        lab_test = store["lab_tests"].get(lab_test_id)
        if lab_test is None:
            raise NotFound("lab_test", lab_test_id)
        current_version = int(lab_test.get("sync_version") or 0)
        if expected_version is not None and current_version != expected_version:
            raise Conflict(
                f"Lab test '{lab_test_id}' is at sync version {current_version}, expected {expected_version}."
            )
        lab_test["knowledge_base_document_id"] = document_id
        lab_test["sync_version"] = current_version + 1
        lab_test["synced_at"] = _utc_now() if document_id else None
        save_store(store)
    return copy.deepcopy(lab_test)


def delete_lab_test(lab_test_id: str) -> bool:
    with _LOCK:
        store = load_store()
        if store["lab_tests"].pop(lab_test_id, None) is None:
            return False
        store["health_metrics"] = {
            record_id: record
            for record_id, record in store["health_metrics"].items()
            if record.get("lab_test_id") != lab_test_id
        }
        save_store(store)
    return True


# Health metrics


def create_health_metric(metric: dict) -> dict:
    now = _utc_now()
    return _insert(
        "health_metrics",
        {
            "lab_test_id": None,
            "reference_min": None,
            "reference_max": None,
            "notes": None,
            **metric,
            "knowledge_base_document_id": None,
            "synced_at": None,
            "content_updated_at": now,
            "updated_at": now,
        },
    )


def get_health_metric(metric_id: str) -> dict | None:
    return _get("health_metrics", metric_id)


def list_health_metrics_by_animal(animal_id: str) -> list[dict]:
    metrics = _select("health_metrics", lambda record: record.get("animal_id") == animal_id)
    return sorted(metrics, key=lambda record: record.get("record_date") or "", reverse=True)


def list_health_metrics_by_lab_test(lab_test_id: str) -> list[dict]:
    return _select("health_metrics", lambda record: record.get("lab_test_id") == lab_test_id)


def list_standalone_health_metrics() -> list[dict]:
    return _select("health_metrics", lambda record: not record.get("lab_test_id"))


def update_health_metric(metric_id: str, updates: dict, *, content_changed: bool = False) -> dict | None:
    if content_changed:
        updates = {**updates, "content_updated_at": _utc_now()}
    return _update("health_metrics", metric_id, updates)


def commit_health_metric_document(metric_id: str, document_id: str | None) -> dict | None:
    return _update(
        "health_metrics",
        metric_id,
        {"knowledge_base_document_id": document_id, "synced_at": _utc_now() if document_id else None},
    )


def delete_health_metric(metric_id: str) -> bool:
    return _delete("health_metrics", metric_id)


# Chat messages


def create_chat_message(message: dict) -> dict:
    return _insert("chat_messages", message)


def list_chat_messages_by_animal(animal_id: str) -> list[dict]:
    messages = _select("chat_messages", lambda record: record.get("animal_id") == animal_id)
    return sorted(messages, key=lambda record: record.get("created_at") or "")


def delete_chat_message(message_id: str) -> bool:
    return _delete("chat_messages", message_id)


def delete_chat_messages_by_animal(animal_id: str) -> int:
    with _LOCK:
        store = load_store()
        remaining = {
            record_id: record
            for record_id, record in store["chat_messages"].items()
            if record.get("animal_id") != animal_id
        }
        removed = len(store["chat_messages"]) - len(remaining)
        if removed:
            store["chat_messages"] = remaining
            save_store(store)
    return removed

from __future__ import annotations

import itertools

import pytest

from petlab import chat, openai_resources, record_store
from petlab.errors import KnowledgeBaseError


class FakeOpenAI:
    """In-memory stand-in for the files / vector store / assistants API."""

    RESOURCE_FUNCTIONS = (
        "upload_file",
        "delete_file",
        "create_vector_store",
        "delete_vector_store",
        "attach_file",
        "detach_file",
        "list_vector_store_files",
        "create_assistant",
        "delete_assistant",
        "create_thread",
        "delete_thread",
        "add_message",
        "create_run",
        "get_run",
        "list_messages",
    )

    def __init__(self):
        self._ids = itertools.count(1)
        self.files: dict[str, dict] = {}
        self.vector_stores: dict[str, dict] = {}
        self.assistants: dict[str, dict] = {}
        self.threads: dict[str, list[dict]] = {}
        self.runs: dict[str, dict] = {}
        self.failures: dict[str, list[KnowledgeBaseError]] = {}
        self.calls: list[str] = []
        self.run_status = "completed"
        self.answer = "Hemoglobin was below the reference range on 2025-10-08."
        self.on_upload = None

    def install(self, monkeypatch):
        monkeypatch.setenv("OPENAI_API_KEY", "test-key")
        for name in self.RESOURCE_FUNCTIONS:
            monkeypatch.setattr(openai_resources, name, getattr(self, name))
        return self

    def fail(self, name: str, times: int = 1, status_code: int = 500):
        self.failures.setdefault(name, []).extend(
            KnowledgeBaseError(f"{name} failed with HTTP {status_code}.", status_code=status_code)
            for _ in range(times)
        )

    def _record(self, name: str):
        self.calls.append(name)
        pending = self.failures.get(name)
        if pending:
            raise pending.pop(0)

    def _next_id(self, prefix: str) -> str:
        return f"{prefix}-{next(self._ids)}"

    def document_text(self, file_id: str) -> str:
        return self.files[file_id]["content"].decode("utf-8")

    def documents_in(self, vector_store_id: str) -> dict[str, dict]:
        return self.vector_stores[vector_store_id]["files"]

    # Files

    def upload_file(self, filename, content, content_type="text/plain"):
        self._record("upload_file")
        file_id = self._next_id("file")
        self.files[file_id] = {"filename": filename, "content": content, "content_type": content_type}
        if self.on_upload is not None:
            self.on_upload(file_id)
        return file_id

    def delete_file(self, file_id):
        self._record("delete_file")
        if self.files.pop(file_id, None) is None:
            raise KnowledgeBaseError(f"file {file_id} not found", status_code=404)

    # Vector stores

    def create_vector_store(self, name, metadata=None):
        self._record("create_vector_store")
        vector_store_id = self._next_id("vs")
        self.vector_stores[vector_store_id] = {"name": name, "metadata": metadata or {}, "files": {}}
        return vector_store_id

    def delete_vector_store(self, vector_store_id):
        self._record("delete_vector_store")
        if self.vector_stores.pop(vector_store_id, None) is None:
            raise KnowledgeBaseError(f"vector store {vector_store_id} not found", status_code=404)

    def attach_file(self, vector_store_id, file_id, attributes=None):
        self._record("attach_file")
        self.vector_stores[vector_store_id]["files"][file_id] = dict(attributes or {})
        return file_id

    def detach_file(self, vector_store_id, file_id):
        self._record("detach_file")
        store = self.vector_stores.get(vector_store_id)
        if store is None or store["files"].pop(file_id, None) is None:
            raise KnowledgeBaseError(f"file {file_id} not in {vector_store_id}", status_code=404)

    def list_vector_store_files(self, vector_store_id):
        self._record("list_vector_store_files")
        return [
            {"id": file_id, "attributes": attributes}
            for file_id, attributes in self.vector_stores[vector_store_id]["files"].items()
        ]

    # Assistants

    def create_assistant(self, name, instructions, model, vector_store_id):
        self._record("create_assistant")
        assistant_id = self._next_id("asst")
        self.assistants[assistant_id] = {
            "name": name,
            "instructions": instructions,
            "model": model,
            "vector_store_id": vector_store_id,
        }
        return assistant_id

    def delete_assistant(self, assistant_id):
        self._record("delete_assistant")
        self.assistants.pop(assistant_id, None)

    def create_thread(self):
        self._record("create_thread")
        thread_id = self._next_id("thread")
        self.threads[thread_id] = []
        return thread_id

    def delete_thread(self, thread_id):
        self._record("delete_thread")
        self.threads.pop(thread_id, None)

    def add_message(self, thread_id, content):
        self._record("add_message")
        self.threads[thread_id].append({"role": "user", "content": [{"type": "text", "text": {"value": content}}]})

    def create_run(self, thread_id, assistant_id):
        self._record("create_run")
        run_id = self._next_id("run")
        self.runs[run_id] = {"id": run_id, "thread_id": thread_id, "assistant_id": assistant_id, "status": "queued"}
        return dict(self.runs[run_id])

    def get_run(self, thread_id, run_id):
        self._record("get_run")
        run = self.runs[run_id]
        if run["status"] == "queued":
            run["status"] = self.run_status
            if self.run_status == "completed":
                self.threads[thread_id].append(
                    {
                        "role": "assistant",
                        "run_id": run_id,
                        "content": [{"type": "text", "text": {"value": self.answer}}],
                    }
                )
        return dict(run)

    def list_messages(self, thread_id, limit=20):
        self._record("list_messages")
        return list(reversed(self.threads[thread_id]))[:limit]


@pytest.fixture(autouse=True)
def data_dir(tmp_path, monkeypatch):
    monkeypatch.setattr(record_store, "DATA_DIR", tmp_path / "data")
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("PETLAB_EXTRACTION_PROVIDER", raising=False)
    monkeypatch.setenv("PETLAB_CHAT_POLL_INTERVAL_SECONDS", "0")
    monkeypatch.setattr(chat, "_SESSIONS", chat.ChatSessionCache(8))
    return tmp_path / "data"


@pytest.fixture
def fake_openai(monkeypatch):
    return FakeOpenAI().install(monkeypatch)


@pytest.fixture
def owner():
    return record_store.create_owner(
        {"first_name": "Olena", "last_name": "Koval", "email": "olena@example.com", "preferred_language": "uk"}
    )


@pytest.fixture
def animal(owner):
    return record_store.create_animal(
        {"owner_id": owner["id"], "name": "Barsik", "species": "cat", "breed": "British Shorthair", "sex": "male"}
    )

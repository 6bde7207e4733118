import threading
import time

import pytest

from petlab import chat, record_store
from petlab.errors import KnowledgeBaseError, RunFailed, ServiceUnavailable


@pytest.fixture
def indexed_animal(fake_openai, animal):
    index_id = fake_openai.create_vector_store("Barsik Health Data", {"animal_id": animal["id"]})
    return record_store.set_animal_knowledge_base(animal["id"], index_id)


def test_ask_requires_configuration(animal):
    with pytest.raises(ServiceUnavailable):
        chat.ask(animal, "How is Barsik?")


def test_ask_without_index_returns_localized_notice(fake_openai, animal):
    answer = chat.ask(animal, "How is Barsik?", "en")

    assert answer.startswith("No knowledge base exists for this animal yet")
    assert "create_assistant" not in fake_openai.calls


def test_ask_returns_answer_and_reuses_session(fake_openai, indexed_animal):
    first = chat.ask(indexed_animal, "What was the hemoglobin?", "en")
    second = chat.ask(indexed_animal, "And now?", "en")

    assert first == second == fake_openai.answer
    assert fake_openai.calls.count("create_assistant") == 1
    assert fake_openai.calls.count("create_thread") == 1
    assistant = next(iter(fake_openai.assistants.values()))
    assert assistant["vector_store_id"] == indexed_animal["knowledge_base_id"]
    assert "Answer in English" in assistant["instructions"]
    assert "Barsik, a cat (British Shorthair)" in assistant["instructions"]


def test_session_is_recreated_when_index_changes(fake_openai, indexed_animal):
    chat.ask(indexed_animal, "First?")
    old_assistant = next(iter(fake_openai.assistants))

    moved = {**indexed_animal, "knowledge_base_id": fake_openai.create_vector_store("again", {})}
    chat.ask(moved, "Second?")

    assert old_assistant not in fake_openai.assistants
    assert fake_openai.calls.count("create_assistant") == 2
    assert chat._SESSIONS.get(indexed_animal["id"]).knowledge_base_id == moved["knowledge_base_id"]


def test_failed_run_raises_run_failed(fake_openai, indexed_animal):
    fake_openai.run_status = "failed"

    with pytest.raises(RunFailed) as exc_info:
        chat.ask(indexed_animal, "What was the hemoglobin?")

    assert exc_info.value.status == "failed"


def test_run_that_never_finishes_times_out(fake_openai, indexed_animal, monkeypatch):
    fake_openai.run_status = "in_progress"
    monkeypatch.setenv("PETLAB_CHAT_RUN_TIMEOUT_SECONDS", "0")

    with pytest.raises(RunFailed) as exc_info:
        chat.ask(indexed_animal, "Still there?")

    assert exc_info.value.status == "timeout"


def test_completed_run_without_text_is_empty_response(fake_openai, indexed_animal):
    fake_openai.answer = "   "

    with pytest.raises(RunFailed) as exc_info:
        chat.ask(indexed_animal, "Anything?")

    assert exc_info.value.status == "empty_response"


def test_extract_answer_strips_citations_and_skips_other_runs():
    messages = [
        {"role": "assistant", "run_id": "run-2", "content": [{"type": "text", "text": {"value": "Newer"}}]},
        {
            "role": "assistant",
            "run_id": "run-1",
            "content": [{"type": "text", "text": {"value": "Hemoglobin was 95 g/L【4:0†lab_test.txt】."}}],
        },
        {"role": "user", "content": [{"type": "text", "text": {"value": "question"}}]},
    ]

    assert chat.extract_answer(messages, "run-1") == "Hemoglobin was 95 g/L."
    assert chat.extract_answer(messages) == "Newer"
    assert chat.extract_answer([]) is None


def test_cache_evicts_least_recently_used_and_cleans_up(fake_openai, monkeypatch):
    monkeypatch.setattr(chat, "_SESSIONS", chat.ChatSessionCache(1))
    first = {"id": "a1", "name": "Barsik", "knowledge_base_id": "vs-a"}
    second = {"id": "a2", "name": "Rex", "knowledge_base_id": "vs-b"}

    first_session = chat.get_or_create_session(first)
    chat.get_or_create_session(second)

    assert len(chat._SESSIONS) == 1
    assert "a1" not in chat._SESSIONS
    assert first_session.assistant_id not in fake_openai.assistants
    assert first_session.thread_id not in fake_openai.threads


def test_cache_get_refreshes_recency():
    cache = chat.ChatSessionCache(2)
    cache.put("a1", chat.ChatSession("asst-1", "thread-1", "vs-1"))
    cache.put("a2", chat.ChatSession("asst-2", "thread-2", "vs-2"))
    cache.get("a1")

    evicted = cache.put("a3", chat.ChatSession("asst-3", "thread-3", "vs-3"))

    assert [animal_id for animal_id, _ in evicted] == ["a2"]
    assert "a1" in cache


def test_concurrent_first_questions_share_one_session(fake_openai, monkeypatch):
    animal = {"id": "a1", "name": "Barsik", "knowledge_base_id": "vs-a"}
    create_assistant = fake_openai.create_assistant

    def _slow_create_assistant(*args, **kwargs):
        time.sleep(0.05)
        return create_assistant(*args, **kwargs)

    monkeypatch.setattr(chat.openai_resources, "create_assistant", _slow_create_assistant)
    barrier = threading.Barrier(2)
    sessions = []

    def _first_question():
        barrier.wait()
        sessions.append(chat.get_or_create_session(animal))

    workers = [threading.Thread(target=_first_question) for _ in range(2)]
    for worker in workers:
        worker.start()
    for worker in workers:
        worker.join()

    assert len(sessions) == 2
    assert sessions[0] == sessions[1]
    assert fake_openai.calls.count("create_assistant") == 1
    assert "delete_assistant" not in fake_openai.calls
    assert sessions[0].assistant_id in fake_openai.assistants


def test_thread_failure_deletes_new_assistant(fake_openai, indexed_animal):
    fake_openai.fail("create_thread")

    with pytest.raises(KnowledgeBaseError):
        chat.get_or_create_session(indexed_animal)

    assert fake_openai.assistants == {}
    assert indexed_animal["id"] not in chat._SESSIONS


def test_cleanup_deletes_remote_session(fake_openai, indexed_animal):
    session = chat.get_or_create_session(indexed_animal)

    chat.cleanup(indexed_animal["id"])
    chat.cleanup(indexed_animal["id"])

    assert session.assistant_id not in fake_openai.assistants
    assert indexed_animal["id"] not in chat._SESSIONS


def test_cleanup_without_key_only_logs(indexed_animal, monkeypatch):
    chat._SESSIONS.put(indexed_animal["id"], chat.ChatSession("asst-x", "thread-x", "vs-x"))
    monkeypatch.setattr(chat.openai_resources, "delete_assistant", _raise_unavailable)
    monkeypatch.setattr(chat.openai_resources, "delete_thread", _raise_unavailable)

    chat.cleanup(indexed_animal["id"])

    assert indexed_animal["id"] not in chat._SESSIONS


def _raise_unavailable(_resource_id):
    raise ServiceUnavailable("OPENAI_API_KEY not configured.")

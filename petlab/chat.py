from __future__ import annotations

import logging
import os
import re
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any

from petlab import openai_resources
from petlab.errors import KnowledgeBaseError, PetLabError, RunFailed, ServiceUnavailable
from petlab.localization import language_name, message

logger = logging.getLogger(__name__)

DEFAULT_CHAT_MODEL = "gpt-4o-mini"
DEFAULT_CACHE_SIZE = 256
DEFAULT_POLL_INTERVAL_SECONDS = 1.0
DEFAULT_RUN_TIMEOUT_SECONDS = 120.0

TERMINAL_RUN_STATUSES = {"completed", "failed", "cancelled", "expired", "incomplete", "requires_action"}
_CITATION_PATTERN = re.compile(r"【[^】]*】")

ASSISTANT_INSTRUCTIONS_TEMPLATE = """You are a helpful veterinary health assistant for {name}, a {species} ({breed}).

Your role is to:
- Answer questions about {name}'s health metrics and medical history
- Provide insights based on the available medical data
- Identify trends or concerning patterns in health metrics
- Explain medical terms in simple language
- Compare current values with reference ranges

Always:
- Be accurate and base responses on the available data
- Clearly state when you don't have enough information
- Use metric values with proper units
- Mention the date when referencing specific measurements
- Answer in {language}

IMPORTANT: You are NOT a replacement for veterinary care. For serious health concerns, always recommend consulting with a veterinarian."""


@dataclass(frozen=True)
class ChatSession:
    assistant_id: str
    thread_id: str
    knowledge_base_id: str


class ChatSessionCache:
    """LRU map of animal id to its assistant/thread pair."""

    def __init__(self, capacity: int = DEFAULT_CACHE_SIZE):
        self.capacity = max(1, capacity)
        self._sessions: OrderedDict[str, ChatSession] = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._sessions)

    def __contains__(self, animal_id: object) -> bool:
        return animal_id in self._sessions

    def get(self, animal_id: str) -> ChatSession | None:
        with self._lock:
            session = self._sessions.get(animal_id)
            if session is not None:
                self._sessions.move_to_end(animal_id)
            return session

    def put(self, animal_id: str, session: ChatSession) -> list[tuple[str, ChatSession]]:
        """Store a session and return whatever was evicted to make room."""
        evicted: list[tuple[str, ChatSession]] = []
        with self._lock:
            previous = self._sessions.pop(animal_id, None)
            if previous is not None and previous != session:
                evicted.append((animal_id, previous))
            self._sessions[animal_id] = session
            while len(self._sessions) > self.capacity:
                evicted.append(self._sessions.popitem(last=False))
        return evicted

    def pop(self, animal_id: str) -> ChatSession | None:
        with self._lock:
            return self._sessions.pop(animal_id, None)

    def clear(self) -> list[tuple[str, ChatSession]]:
        with self._lock:
            sessions = list(self._sessions.items())
            self._sessions.clear()
        return sessions


def _env_number(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid %s=%r", name, raw)
        return default


_SESSIONS = ChatSessionCache(int(_env_number("PETLAB_CHAT_CACHE_SIZE", DEFAULT_CACHE_SIZE)))
_SESSION_LOCKS: dict[str, threading.Lock] = {}
_SESSION_LOCKS_GUARD = threading.Lock()


def chat_enabled() -> bool:
    return openai_resources.resources_enabled()


def _chat_model() -> str:
    return (os.getenv("PETLAB_CHAT_MODEL") or DEFAULT_CHAT_MODEL).strip()


def build_instructions(animal: dict, language: str | None = None) -> str:
    return ASSISTANT_INSTRUCTIONS_TEMPLATE.format(
        name=animal.get("name") or "the pet",
        species=animal.get("species") or "pet",
        breed=animal.get("breed") or "unknown breed",
        language=language_name(language),
    )


def _delete_session(animal_id: str, session: ChatSession) -> None:
    try:
        openai_resources.delete_assistant(session.assistant_id)
    except PetLabError as exc:
        logger.warning("Failed to delete assistant %s for animal %s: %s", session.assistant_id, animal_id, exc.detail)
    try:
        openai_resources.delete_thread(session.thread_id)
    except PetLabError as exc:
        logger.warning("Failed to delete thread %s for animal %s: %s", session.thread_id, animal_id, exc.detail)


def _create_session(animal: dict, language: str | None) -> ChatSession:
    knowledge_base_id = animal["knowledge_base_id"]
    assistant_id = openai_resources.create_assistant(
        name=f"{animal.get('name') or animal['id']} Health Assistant",
        instructions=build_instructions(animal, language),
        model=_chat_model(),
        vector_store_id=knowledge_base_id,
    )
    try:
        thread_id = openai_resources.create_thread()
    except KnowledgeBaseError:
        try:
            openai_resources.delete_assistant(assistant_id)
        except KnowledgeBaseError as exc:
            logger.warning("Failed to delete orphaned assistant %s: %s", assistant_id, exc.detail)
        raise
    logger.info("Created assistant %s and thread %s for animal %s", assistant_id, thread_id, animal["id"])
    return ChatSession(assistant_id=assistant_id, thread_id=thread_id, knowledge_base_id=knowledge_base_id)


def _session_lock(animal_id: str) -> threading.Lock:
    with _SESSION_LOCKS_GUARD:
        return _SESSION_LOCKS.setdefault(animal_id, threading.Lock())


def get_or_create_session(animal: dict, language: str | None = None) -> ChatSession:
    """Return the cached session of an animal; concurrent callers share one creation."""
    with _session_lock(animal["id"]):
        session = _SESSIONS.get(animal["id"])
        if session is not None and session.knowledge_base_id == animal["knowledge_base_id"]:
            return session
        if session is not None:
            _SESSIONS.pop(animal["id"])
            _delete_session(animal["id"], session)

        session = _create_session(animal, language)
        evicted = _SESSIONS.put(animal["id"], session)
    for evicted_animal_id, evicted_session in evicted:
        logger.info("Evicting chat session of animal %s", evicted_animal_id)
        _delete_session(evicted_animal_id, evicted_session)
    return session


def wait_for_run(thread_id: str, run: dict[str, Any]) -> dict[str, Any]:
    poll_interval = _env_number("PETLAB_CHAT_POLL_INTERVAL_SECONDS", DEFAULT_POLL_INTERVAL_SECONDS)
    timeout = _env_number("PETLAB_CHAT_RUN_TIMEOUT_SECONDS", DEFAULT_RUN_TIMEOUT_SECONDS)
    deadline = time.monotonic() + timeout

    while run.get("status") not in TERMINAL_RUN_STATUSES:
        if time.monotonic() >= deadline:
            raise RunFailed("timeout")
        time.sleep(poll_interval)
        run = openai_resources.get_run(thread_id, run["id"])
    return run


def extract_answer(messages: list[dict[str, Any]], run_id: str | None = None) -> str | None:
    for item in messages:
        if item.get("role") != "assistant":
            continue
        if run_id and item.get("run_id") and item["run_id"] != run_id:
            continue
        for part in item.get("content") or []:
            if isinstance(part, dict) and part.get("type") == "text":
                value = (part.get("text") or {}).get("value")
                if isinstance(value, str) and value.strip():
                    return _CITATION_PATTERN.sub("", value).strip()
    return None


def ask(animal: dict, question: str, language: str | None = None) -> str:
    """Answer ``question`` from the animal's knowledge base."""
    if not chat_enabled():
        raise ServiceUnavailable("OPENAI_API_KEY not configured.")
    if not animal.get("knowledge_base_id"):
        return message("no_data_yet", language)

    session = get_or_create_session(animal, language)
    openai_resources.add_message(session.thread_id, question)
    run = wait_for_run(session.thread_id, openai_resources.create_run(session.thread_id, session.assistant_id))

    if run.get("status") != "completed":
        raise RunFailed(str(run.get("status")))

    answer = extract_answer(openai_resources.list_messages(session.thread_id), run.get("id"))
    if answer is None:
        raise RunFailed("empty_response")
    return answer


def cleanup(animal_id: str) -> None:
    """Drop the cached session and delete its remote objects; never raises."""
    with _session_lock(animal_id):
        session = _SESSIONS.pop(animal_id)
    if session is not None:
        _delete_session(animal_id, session)

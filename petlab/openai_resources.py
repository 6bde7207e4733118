from __future__ import annotations

import json
import logging
import os
from typing import Any
from urllib import error, parse, request
from uuid import uuid4

from petlab.errors import KnowledgeBaseError, ServiceUnavailable
from petlab.llm_provider import _http_error_warning

logger = logging.getLogger(__name__)

OPENAI_API_BASE = "https://api.openai.com/v1"
ASSISTANTS_BETA_HEADER = "assistants=v2"
REQUEST_TIMEOUT_SECONDS = 60
LIST_PAGE_SIZE = 100


def openai_api_key() -> str:
    return (os.getenv("OPENAI_API_KEY") or "").strip()


def resources_enabled() -> bool:
    return bool(openai_api_key())


def _headers(content_type: str | None = "application/json") -> dict[str, str]:
    api_key = openai_api_key()
    if not api_key:
        raise ServiceUnavailable("OPENAI_API_KEY not configured.")
    headers = {
        "Authorization": f"Bearer {api_key}",
        "OpenAI-Beta": ASSISTANTS_BETA_HEADER,
    }
    if content_type:
        headers["Content-Type"] = content_type
    return headers


def _send(req: request.Request, label: str) -> dict[str, Any]:
    try:
        with request.urlopen(req, timeout=REQUEST_TIMEOUT_SECONDS) as response:
            response_body = response.read().decode("utf-8")
    except error.HTTPError as exc:
        raise KnowledgeBaseError(f"{label}: {_http_error_warning('OpenAI', exc)}", status_code=exc.code) from exc
    except (error.URLError, OSError) as exc:
        raise KnowledgeBaseError(f"{label}: OpenAI request failed before receiving a response ({exc}).") from exc

    if not response_body.strip():
        return {}
    try:
        return json.loads(response_body)
    except json.JSONDecodeError as exc:
        raise KnowledgeBaseError(f"{label}: OpenAI returned a non-JSON response.") from exc


def _request_json(method: str, path: str, payload: dict[str, Any] | None = None) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8") if payload is not None else None
    req = request.Request(f"{OPENAI_API_BASE}{path}", data=body, headers=_headers(), method=method)
    return _send(req, f"{method} {path}")


def _encode_multipart(fields: dict[str, str], filename: str, content: bytes, content_type: str) -> tuple[bytes, str]:
    boundary = f"petlab-{uuid4().hex}"
    lines: list[bytes] = []
    for name, value in fields.items():
        lines.append(f"--{boundary}\r\n".encode("utf-8"))
        lines.append(f'Content-Disposition: form-data; name="{name}"\r\n\r\n'.encode("utf-8"))
        lines.append(f"{value}\r\n".encode("utf-8"))
    lines.append(f"--{boundary}\r\n".encode("utf-8"))
    lines.append(f'Content-Disposition: form-data; name="file"; filename="{filename}"\r\n'.encode("utf-8"))
    lines.append(f"Content-Type: {content_type}\r\n\r\n".encode("utf-8"))
    lines.append(content)
    lines.append(f"\r\n--{boundary}--\r\n".encode("utf-8"))
    return b"".join(lines), f"multipart/form-data; boundary={boundary}"


# Files


def upload_file(filename: str, content: bytes, content_type: str = "text/plain") -> str:
    body, multipart_type = _encode_multipart({"purpose": "assistants"}, filename, content, content_type)
    req = request.Request(f"{OPENAI_API_BASE}/files", data=body, headers=_headers(multipart_type), method="POST")
    response = _send(req, "POST /files")
    file_id = response.get("id")
    if not isinstance(file_id, str) or not file_id:
        raise KnowledgeBaseError("POST /files: response did not contain a file id.")
    return file_id


def delete_file(file_id: str) -> None:
    _request_json("DELETE", f"/files/{file_id}")


# Vector stores


def create_vector_store(name: str, metadata: dict[str, str] | None = None) -> str:
    response = _request_json("POST", "/vector_stores", {"name": name, "metadata": metadata or {}})
    vector_store_id = response.get("id")
    if not isinstance(vector_store_id, str) or not vector_store_id:
        raise KnowledgeBaseError("POST /vector_stores: response did not contain an id.")
    return vector_store_id


def delete_vector_store(vector_store_id: str) -> None:
    _request_json("DELETE", f"/vector_stores/{vector_store_id}")


def attach_file(vector_store_id: str, file_id: str, attributes: dict[str, str] | None = None) -> str:
    payload: dict[str, Any] = {"file_id": file_id}
    if attributes:
        payload["attributes"] = attributes
    response = _request_json("POST", f"/vector_stores/{vector_store_id}/files", payload)
    return str(response.get("id") or file_id)


def detach_file(vector_store_id: str, file_id: str) -> None:
    _request_json("DELETE", f"/vector_stores/{vector_store_id}/files/{file_id}")


def list_vector_store_files(vector_store_id: str) -> list[dict[str, Any]]:
    files: list[dict[str, Any]] = []
    after: str | None = None
    while True:
        query = {"limit": str(LIST_PAGE_SIZE)}
        if after:
            query["after"] = after
        response = _request_json("GET", f"/vector_stores/{vector_store_id}/files?{parse.urlencode(query)}")
        page = [item for item in response.get("data") or [] if isinstance(item, dict)]
        files.extend(page)
        if not response.get("has_more") or not page:
            return files
        after = str(response.get("last_id") or page[-1].get("id"))


# Assistants, threads and runs


def create_assistant(name: str, instructions: str, model: str, vector_store_id: str) -> str:
    response = _request_json(
        "POST",
        "/assistants",
        {
            "name": name,
            "instructions": instructions,
            "model": model,
            "tools": [{"type": "file_search"}],
            "tool_resources": {"file_search": {"vector_store_ids": [vector_store_id]}},
        },
    )
    assistant_id = response.get("id")
    if not isinstance(assistant_id, str) or not assistant_id:
        raise KnowledgeBaseError("POST /assistants: response did not contain an id.")
    return assistant_id


def delete_assistant(assistant_id: str) -> None:
    _request_json("DELETE", f"/assistants/{assistant_id}")


def create_thread() -> str:
    response = _request_json("POST", "/threads", {})
    thread_id = response.get("id")
    if not isinstance(thread_id, str) or not thread_id:
        raise KnowledgeBaseError("POST /threads: response did not contain an id.")
    return thread_id


def delete_thread(thread_id: str) -> None:
    _request_json("DELETE", f"/threads/{thread_id}")


def add_message(thread_id: str, content: str) -> None:
    _request_json("POST", f"/threads/{thread_id}/messages", {"role": "user", "content": content})


def create_run(thread_id: str, assistant_id: str) -> dict[str, Any]:
    return _request_json("POST", f"/threads/{thread_id}/runs", {"assistant_id": assistant_id})


def get_run(thread_id: str, run_id: str) -> dict[str, Any]:
    return _request_json("GET", f"/threads/{thread_id}/runs/{run_id}")


def list_messages(thread_id: str, limit: int = 20) -> list[dict[str, Any]]:
    query = parse.urlencode({"order": "desc", "limit": str(limit)})
    response = _request_json("GET", f"/threads/{thread_id}/messages?{query}")
    return [item for item in response.get("data") or [] if isinstance(item, dict)]

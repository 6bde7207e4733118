from __future__ import annotations

import base64
import json
from dataclasses import dataclass
from typing import Any
from urllib import error, request

OPENAI_RESPONSES_URL = "https://api.openai.com/v1/responses"
GEMINI_ENDPOINT_TEMPLATE = "https://generativelanguage.googleapis.com/v1beta/models/{model}:generateContent?key={api_key}"
REQUEST_TIMEOUT_SECONDS = 90
DEFAULT_MAX_OUTPUT_TOKENS = 2048


@dataclass(frozen=True)
class LlmTextResult:
    status: str
    raw_response: str | None
    warnings: list[str]


def _collect_gemini_text(response_payload: dict[str, Any]) -> str | None:
    candidates = response_payload.get("candidates") or []
    if not candidates:
        return None

    parts = (candidates[0].get("content") or {}).get("parts") or []
    extracted: list[str] = []
    for part in parts:
        text = part.get("text") if isinstance(part, dict) else None
        if isinstance(text, str) and text.strip():
            extracted.append(text.strip())

    if extracted:
        return "\n".join(extracted)
    return None


def _post_json(url: str, payload: dict[str, Any], headers: dict[str, str]) -> dict[str, Any]:
    body = json.dumps(payload).encode("utf-8")
    req = request.Request(url, data=body, headers=headers, method="POST")
    with request.urlopen(req, timeout=REQUEST_TIMEOUT_SECONDS) as response:
        response_body = response.read().decode("utf-8")
    return json.loads(response_body)


def _http_error_warning(provider_name: str, exc: error.HTTPError) -> str:
    response_excerpt = ""
    try:
        response_body = exc.read().decode("utf-8", errors="replace").strip()
    except Exception:
        response_body = ""

    if response_body:
        try:
            parsed = json.loads(response_body)
            if isinstance(parsed, dict):
                error_payload = parsed.get("error")
                if isinstance(error_payload, dict):
                    message = error_payload.get("message")
                    if isinstance(message, str) and message.strip():
                        response_excerpt = message.strip()
        except json.JSONDecodeError:
            response_excerpt = response_body[:200]

    if response_excerpt:
        return f"{provider_name} request failed with HTTP {exc.code}: {response_excerpt}"

    return f"{provider_name} request failed with HTTP {exc.code}."


def _collect_openai_text(content: Any) -> list[str]:
    if not isinstance(content, list):
        return []

    collected: list[str] = []
    for part in content:
        if not isinstance(part, dict):
            continue

        direct_text = part.get("text")
        if isinstance(direct_text, str) and direct_text.strip():
            collected.append(direct_text.strip())
            continue

        value = part.get("value")
        if isinstance(value, str) and value.strip():
            collected.append(value.strip())

    return collected


def _extract_openai_text(response_payload: dict[str, Any]) -> str | None:
    output_text = response_payload.get("output_text")
    if isinstance(output_text, str) and output_text.strip():
        return output_text.strip()

    output = response_payload.get("output")
    if isinstance(output, list):
        extracted: list[str] = []
        for item in output:
            if not isinstance(item, dict):
                continue
            extracted.extend(_collect_openai_text(item.get("content")))

        if extracted:
            return "\n".join(extracted)

    return None


def _openai_headers(api_key: str) -> dict[str, str]:
    return {
        "Content-Type": "application/json",
        "Authorization": f"Bearer {api_key}",
    }


def _call_openai(api_key: str, payload: dict[str, Any], failure_label: str) -> LlmTextResult:
    try:
        response_payload = _post_json(OPENAI_RESPONSES_URL, payload, _openai_headers(api_key))
    except error.HTTPError as exc:
        return LlmTextResult(status="error", raw_response=None, warnings=[_http_error_warning("OpenAI", exc)])
    except Exception:
        return LlmTextResult(
            status="error",
            raw_response=None,
            warnings=[f"OpenAI {failure_label} request failed before receiving a response."],
        )

    extracted_text = _extract_openai_text(response_payload)
    if extracted_text:
        return LlmTextResult(status="success", raw_response=extracted_text, warnings=[])

    return LlmTextResult(
        status="empty",
        raw_response=json.dumps(response_payload),
        warnings=[f"OpenAI {failure_label} response did not contain extractable text content."],
    )


def _call_gemini(api_key: str, model: str, payload: dict[str, Any], failure_label: str) -> LlmTextResult:
    endpoint = GEMINI_ENDPOINT_TEMPLATE.format(model=model, api_key=api_key)
    try:
        response_payload = _post_json(endpoint, payload, {"Content-Type": "application/json"})
    except error.HTTPError as exc:
        return LlmTextResult(status="error", raw_response=None, warnings=[_http_error_warning("Gemini", exc)])
    except Exception:
        return LlmTextResult(
            status="error",
            raw_response=None,
            warnings=[f"Gemini {failure_label} request failed before receiving a response."],
        )

    extracted_text = _collect_gemini_text(response_payload)
    if extracted_text:
        return LlmTextResult(status="success", raw_response=extracted_text, warnings=[])

    return LlmTextResult(
        status="empty",
        raw_response=json.dumps(response_payload),
        warnings=[f"Gemini {failure_label} response did not contain text content."],
    )


def generate_text_with_openai(
    api_key: str,
    model: str,
    prompt: str,
    *,
    temperature: float,
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
) -> LlmTextResult:
    payload = {
        "model": model,
        "input": prompt,
        "temperature": temperature,
        "max_output_tokens": max_output_tokens,
    }
    return _call_openai(api_key, payload, "text")


def generate_text_with_gemini(
    api_key: str,
    model: str,
    prompt: str,
    *,
    temperature: float,
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
) -> LlmTextResult:
    payload = {
        "contents": [{"parts": [{"text": prompt}]}],
        "generationConfig": {
            "temperature": temperature,
            "maxOutputTokens": max_output_tokens,
        },
    }
    return _call_gemini(api_key, model, payload, "text")


def read_image_with_openai(
    api_key: str,
    model: str,
    image_bytes: bytes,
    media_type: str,
    prompt: str,
    *,
    temperature: float,
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
) -> LlmTextResult:
    image_b64 = base64.b64encode(image_bytes).decode("ascii")
    payload = {
        "model": model,
        "input": [
            {
                "role": "user",
                "content": [
                    {"type": "input_text", "text": prompt},
                    {"type": "input_image", "image_url": f"data:{media_type};base64,{image_b64}"},
                ],
            }
        ],
        "temperature": temperature,
        "max_output_tokens": max_output_tokens,
    }
    return _call_openai(api_key, payload, "image")


def read_image_with_gemini(
    api_key: str,
    model: str,
    image_bytes: bytes,
    media_type: str,
    prompt: str,
    *,
    temperature: float,
    max_output_tokens: int = DEFAULT_MAX_OUTPUT_TOKENS,
) -> LlmTextResult:
    image_b64 = base64.b64encode(image_bytes).decode("ascii")
    payload = {
        "contents": [
            {
                "parts": [
                    {"text": prompt},
                    {"inline_data": {"mime_type": media_type, "data": image_b64}},
                ]
            }
        ],
        "generationConfig": {
            "temperature": temperature,
            "maxOutputTokens": max_output_tokens,
        },
    }
    return _call_gemini(api_key, model, payload, "image")

from __future__ import annotations

import logging
import os

from petlab.documents import NormalizedDocument, extract_pdf_text
from petlab.errors import EmptyDocument, ServiceUnavailable
from petlab.llm_provider import (
    LlmTextResult,
    generate_text_with_gemini,
    generate_text_with_openai,
    read_image_with_gemini,
    read_image_with_openai,
)
from petlab.localization import language_name

logger = logging.getLogger(__name__)

EXTRACTION_PROMPT_TEMPLATE = (
    "Analyze this veterinary medical document (blood test, biochemistry, urinalysis, X-ray, ultrasound, etc.).\n"
    "Extract the test details and every medical metric as JSON with exactly this structure:\n"
    "{{\n"
    '  "clinicName": "clinic or laboratory name, or null",\n'
    '  "testType": "test type in {language} (e.g. blood test, urinalysis, biochemistry), or null",\n'
    '  "testDate": "date of the test as YYYY-MM-DD, or null",\n'
    '  "metrics": [\n'
    "    {{\n"
    '      "name": "metric name in {language}",\n'
    '      "value": numeric value or null,\n'
    '      "unit": "unit of measurement",\n'
    '      "referenceMin": lower reference bound as a number or null,\n'
    '      "referenceMax": upper reference bound as a number or null\n'
    "    }}\n"
    "  ]\n"
    "}}\n\n"
    "RULES:\n"
    "1. TRANSLATION: every metric name MUST be written in {language}, whatever language the document uses.\n"
    '2. A combined reference range such as "5-10" or "5.0-10.5" MUST be split into referenceMin and referenceMax.\n'
    '3. A one-sided bound "<10" sets only referenceMax; referenceMin stays null.\n'
    '4. A one-sided bound ">5" sets only referenceMin; referenceMax stays null.\n'
    "5. value, referenceMin and referenceMax MUST be numbers, never text.\n"
    "6. Anything unrecognized is null, never an empty string.\n\n"
    "Return ONLY the JSON object, without any other text."
)

PDF_TEXT_SUFFIX = "\n\nText extracted from the PDF document:\n\n{text}"

DEFAULT_TEMPERATURE = 0.7


def build_extraction_prompt(language: str | None) -> str:
    return EXTRACTION_PROMPT_TEMPLATE.format(language=language_name(language))


def _extraction_temperature() -> float:
    raw = (os.getenv("PETLAB_EXTRACTION_TEMPERATURE") or "").strip()
    if not raw:
        return DEFAULT_TEMPERATURE
    try:
        return float(raw)
    except ValueError:
        logger.warning("Ignoring invalid PETLAB_EXTRACTION_TEMPERATURE=%r", raw)
        return DEFAULT_TEMPERATURE


def resolve_provider(provider: str | None = None, api_key: str | None = None) -> tuple[str, str, str]:
    """Return (provider, api_key, model) or raise ServiceUnavailable."""
    configured_provider = (provider or os.getenv("PETLAB_EXTRACTION_PROVIDER") or "").strip().lower()

    if configured_provider in {"none", "disabled"}:
        raise ServiceUnavailable("Document extraction is disabled.")

    if configured_provider == "":
        if (api_key or os.getenv("OPENAI_API_KEY") or "").strip():
            configured_provider = "openai"
        else:
            raise ServiceUnavailable("No extraction provider or API key configured.")

    if configured_provider in {"openai", "chatgpt"}:
        resolved_api_key = (api_key or os.getenv("OPENAI_API_KEY") or "").strip()
        model = (os.getenv("PETLAB_EXTRACTION_OPENAI_MODEL") or "gpt-4o-mini").strip()
        if not resolved_api_key:
            raise ServiceUnavailable("OPENAI_API_KEY not configured.")
        return "openai", resolved_api_key, model

    if configured_provider == "gemini":
        resolved_api_key = (api_key or os.getenv("GEMINI_API_KEY") or "").strip()
        model = (os.getenv("PETLAB_EXTRACTION_GEMINI_MODEL") or "gemini-1.5-flash").strip()
        if not resolved_api_key:
            raise ServiceUnavailable("GEMINI_API_KEY not configured.")
        return "gemini", resolved_api_key, model

    raise ServiceUnavailable(f"Unsupported extraction provider '{configured_provider}'.")


def extract_document_text(
    document: NormalizedDocument,
    *,
    language: str | None = None,
    provider: str | None = None,
    api_key: str | None = None,
) -> str:
    """Send a normalized document to the completion engine and return its raw reply."""
    provider_name, resolved_api_key, model = resolve_provider(provider, api_key)
    prompt = build_extraction_prompt(language)
    temperature = _extraction_temperature()

    if document.is_pdf:
        pdf_text = extract_pdf_text(document.raw_bytes)
        text_prompt = prompt + PDF_TEXT_SUFFIX.format(text=pdf_text)
        if provider_name == "openai":
            result = generate_text_with_openai(resolved_api_key, model, text_prompt, temperature=temperature)
        else:
            result = generate_text_with_gemini(resolved_api_key, model, text_prompt, temperature=temperature)
    else:
        if provider_name == "openai":
            result = read_image_with_openai(
                resolved_api_key, model, document.raw_bytes, document.media_type, prompt, temperature=temperature
            )
        else:
            result = read_image_with_gemini(
                resolved_api_key, model, document.raw_bytes, document.media_type, prompt, temperature=temperature
            )

    return _require_text(result, provider_name)


def _require_text(result: LlmTextResult, provider_name: str) -> str:
    if result.status == "error":
        logger.error("Extraction request to %s failed: %s", provider_name, "; ".join(result.warnings))
        raise ServiceUnavailable("; ".join(result.warnings) or f"{provider_name} request failed.")

    text = (result.raw_response or "").strip() if result.status == "success" else ""
    if not text:
        logger.warning("Extraction engine %s returned no text: %s", provider_name, "; ".join(result.warnings))
        raise EmptyDocument("Extraction engine returned no text.")
    return text

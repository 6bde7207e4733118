from __future__ import annotations

import os

LANGUAGE_NAMES = {
    "uk": "Ukrainian",
    "en": "English",
    "de": "German",
    "pl": "Polish",
}

MESSAGES: dict[str, dict[str, str]] = {
    "uk": {
        "unsupported_media_type": "Непідтримуваний тип файлу. Підтримуються: JPEG, PNG, WebP, PDF.",
        "invalid_document_payload": "Не вдалося прочитати файл. Перевірте, що дані документа коректні.",
        "empty_document": "Документ не містить тексту, який можна розпізнати.",
        "service_unavailable": "Сервіс розпізнавання не налаштовано. Додайте OPENAI_API_KEY, щоб увімкнути сканування документів.",
        "chat_unavailable": "AI-асистента не налаштовано. Додайте OPENAI_API_KEY, щоб увімкнути чат.",
        "malformed_extraction": "Не вдалося обробити результати розпізнавання. Спробуйте ще раз або введіть дані вручну.",
        "invalid_metric_value": "Показник «{metric_name}» має нечислове значення.",
        "invalid_reference_range": "Показник «{metric_name}» має мінімальну норму більшу за максимальну.",
        "animal_not_found": "Тварину не знайдено.",
        "owner_not_found": "Власника не знайдено.",
        "lab_test_not_found": "Аналіз не знайдено.",
        "health_metric_not_found": "Показник здоров'я не знайдено.",
        "chat_failed": "Не вдалося отримати відповідь асистента. Спробуйте ще раз.",
        "no_data_yet": "Для цієї тварини ще не створено базу знань. Спочатку додайте показники здоров'я через OCR сканування або вручну.",
        "sync_failed": "Дані збережено, але AI-пошук може бути неактуальним: не вдалося оновити базу знань.",
        "sync_disabled": "Базу знань не налаштовано; аналіз збережено без індексації.",
        "conflict": "Аналіз було змінено паралельно. Повторіть спробу.",
        "internal_error": "Сталася внутрішня помилка.",
        "owner_required": "Не вказано власника (заголовок X-Owner-Id).",
        "invalid_request": "Некоректні дані запиту.",
    },
    "en": {
        "unsupported_media_type": "Unsupported file type. Supported: JPEG, PNG, WebP, PDF.",
        "invalid_document_payload": "The uploaded document could not be decoded.",
        "empty_document": "The document contains no recognizable text.",
        "service_unavailable": "Document scanning is not configured. Add OPENAI_API_KEY to enable it.",
        "chat_unavailable": "The AI assistant is not configured. Add OPENAI_API_KEY to enable chat.",
        "malformed_extraction": "Failed to parse the scan results. Try again or enter the values manually.",
        "invalid_metric_value": "Metric '{metric_name}' has a non-numeric value.",
        "invalid_reference_range": "Metric '{metric_name}' has a reference minimum above its maximum.",
        "animal_not_found": "Animal not found.",
        "owner_not_found": "Owner not found.",
        "lab_test_not_found": "Lab test not found.",
        "health_metric_not_found": "Health metric not found.",
        "chat_failed": "The assistant could not answer. Please try again.",
        "no_data_yet": "No knowledge base exists for this animal yet. Add health metrics via a document scan or manually first.",
        "sync_failed": "Saved, but AI search may be stale: the knowledge base could not be updated.",
        "sync_disabled": "The knowledge base is not configured; the lab test was saved without indexing.",
        "conflict": "The lab test was changed concurrently. Please retry.",
        "internal_error": "An internal error occurred.",
        "owner_required": "No owner given (X-Owner-Id header).",
        "invalid_request": "The request data is invalid.",
    },
}


def default_language() -> str:
    return (os.getenv("PETLAB_DEFAULT_LANGUAGE") or "uk").strip().lower() or "uk"


def resolve_language(language: str | None) -> str:
    candidate = (language or "").strip().lower()
    if candidate in MESSAGES:
        return candidate
    fallback = default_language()
    return fallback if fallback in MESSAGES else "en"


def language_name(language: str | None) -> str:
    code = (language or "").strip().lower() or default_language()
    return LANGUAGE_NAMES.get(code, code)


def message(key: str, language: str | None = None, **params: object) -> str:
    catalog = MESSAGES[resolve_language(language)]
    template = catalog.get(key) or MESSAGES["en"].get(key) or key
    return template.format(**params) if params else template

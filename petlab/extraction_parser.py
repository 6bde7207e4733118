from __future__ import annotations

import json
import logging
import math
import re
from datetime import date

from petlab.errors import MalformedExtraction
from petlab.schema_models import ExtractedMetric, ExtractionResult

logger = logging.getLogger(__name__)

_NUMBER = r"[-+]?\d+(?:\.\d+)?"
_FENCE_START = re.compile(r"^\s*```[a-zA-Z]*\s*")
_FENCE_END = re.compile(r"\s*```\s*$")
_RANGE_PATTERN = re.compile(rf"^\s*({_NUMBER})\s*(?:-|\.\.|to)\s*({_NUMBER})\s*$")
_UPPER_PATTERN = re.compile(rf"^\s*(?:<=|<|≤|до)\s*({_NUMBER})\s*$")
_LOWER_PATTERN = re.compile(rf"^\s*(?:>=|>|≥|від)\s*({_NUMBER})\s*$")
_RANGE_KEYS = ("referenceRange", "reference", "range", "norm")


def strip_code_fences(raw_text: str) -> str:
    cleaned = _FENCE_START.sub("", raw_text or "", count=1)
    return _FENCE_END.sub("", cleaned).strip()


def _normalize_numeric_text(text: str) -> str:
    normalized = text.strip().replace("–", "-").replace("—", "-").replace("−", "-")
    normalized = normalized.replace(" ", "").replace(" ", "")
    return normalized.replace(",", ".")


def parse_number(value: object) -> float | None:
    """Coerce a number or numeric string; anything else is None."""
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, (int, float)):
        number = float(value)
        return number if math.isfinite(number) else None
    if not isinstance(value, str):
        return None

    normalized = _normalize_numeric_text(value)
    if not re.fullmatch(_NUMBER, normalized):
        return None
    return float(normalized)


def parse_reference_range(text: object) -> tuple[float | None, float | None]:
    """Split "5-10", "<10" or ">5" into (min, max)."""
    if not isinstance(text, str) or not text.strip():
        return None, None

    normalized = text.strip().replace("–", "-").replace("—", "-").replace(",", ".")
    range_match = _RANGE_PATTERN.match(normalized)
    if range_match:
        return float(range_match.group(1)), float(range_match.group(2))

    upper_match = _UPPER_PATTERN.match(normalized)
    if upper_match:
        return None, float(upper_match.group(1))

    lower_match = _LOWER_PATTERN.match(normalized)
    if lower_match:
        return float(lower_match.group(1)), None

    return None, None


def _optional_text(value: object) -> str | None:
    if not isinstance(value, str):
        return None
    cleaned = value.strip()
    return cleaned or None


def _parse_test_date(value: object, warnings: list[str]) -> str | None:
    text = _optional_text(value)
    if text is None:
        return None
    try:
        return date.fromisoformat(text).isoformat()
    except ValueError:
        warnings.append(f"Ignored test date '{text}': expected YYYY-MM-DD.")
        return None


def _parse_bounds(entry: dict) -> tuple[float | None, float | None]:
    raw_min = entry.get("referenceMin")
    raw_max = entry.get("referenceMax")
    reference_min = parse_number(raw_min)
    reference_max = parse_number(raw_max)

    if reference_min is None and isinstance(raw_min, str):
        low, high = parse_reference_range(raw_min)
        reference_min = low
        if reference_max is None:
            reference_max = high

    if reference_max is None and isinstance(raw_max, str):
        low, high = parse_reference_range(raw_max)
        reference_max = high
        if reference_min is None:
            reference_min = low

    if reference_min is None and reference_max is None:
        for key in _RANGE_KEYS:
            if isinstance(entry.get(key), str):
                reference_min, reference_max = parse_reference_range(entry[key])
                break

    return reference_min, reference_max


def parse_metric_entry(entry: object, index: int, warnings: list[str]) -> ExtractedMetric | None:
    if not isinstance(entry, dict):
        warnings.append(f"Dropped metric #{index + 1}: not an object.")
        return None

    name = _optional_text(entry.get("name"))
    if name is None:
        warnings.append(f"Dropped metric #{index + 1}: missing name.")
        return None

    raw_value = entry.get("value")
    value = parse_number(raw_value)
    if value is None and raw_value not in (None, ""):
        warnings.append(f"Metric '{name}': value {raw_value!r} is not numeric and was cleared.")

    reference_min, reference_max = _parse_bounds(entry)
    unit = entry.get("unit")

    return ExtractedMetric(
        name=name,
        value=value,
        unit=unit.strip() if isinstance(unit, str) else "",
        reference_min=reference_min,
        reference_max=reference_max,
    )


def _load_object(cleaned: str, raw_text: str) -> dict:
    try:
        payload = json.loads(cleaned)
    except json.JSONDecodeError:
        start, end = cleaned.find("{"), cleaned.rfind("}")
        if start == -1 or end <= start:
            raise MalformedExtraction("Extraction response is not valid JSON.", raw_text) from None
        try:
            payload = json.loads(cleaned[start : end + 1])
        except json.JSONDecodeError as exc:
            raise MalformedExtraction(f"Extraction response is not valid JSON: {exc}", raw_text) from exc

    if not isinstance(payload, dict):
        raise MalformedExtraction("Extraction response must be a JSON object with a 'metrics' list.", raw_text)
    return payload


def parse_extraction(raw_text: str) -> ExtractionResult:
    """Parse the engine reply into clinic/type/date metadata and metrics."""
    cleaned = strip_code_fences(raw_text)
    if not cleaned:
        raise MalformedExtraction("Extraction response is empty.", raw_text)

    payload = _load_object(cleaned, raw_text)

    raw_metrics = payload.get("metrics")
    if raw_metrics is None:
        raw_metrics = []
    if not isinstance(raw_metrics, list):
        raise MalformedExtraction("Extraction field 'metrics' must be a list.", raw_text)

    warnings: list[str] = []
    metrics = [
        metric
        for metric in (parse_metric_entry(entry, index, warnings) for index, entry in enumerate(raw_metrics))
        if metric is not None
    ]

    if warnings:
        logger.info("Extraction parsed with %d warning(s): %s", len(warnings), "; ".join(warnings))

    return ExtractionResult(
        clinic_name=_optional_text(payload.get("clinicName")),
        test_type=_optional_text(payload.get("testType")),
        test_date=_parse_test_date(payload.get("testDate"), warnings),
        metrics=metrics,
        warnings=warnings,
    )

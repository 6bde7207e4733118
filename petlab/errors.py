from __future__ import annotations


class PetLabError(Exception):
    """Base class for failures that are reported to API callers."""

    code = "error"
    message_key = "internal_error"

    def __init__(self, detail: str | None = None):
        super().__init__(detail or self.code)
        self.detail = detail or self.code


class UnsupportedMediaType(PetLabError):
    code = "unsupported_media_type"
    message_key = "unsupported_media_type"

    def __init__(self, media_type: str | None):
        super().__init__(f"Unsupported media type '{media_type or 'unknown'}'.")
        self.media_type = media_type


class EmptyDocument(PetLabError):
    code = "empty_document"
    message_key = "empty_document"


class ServiceUnavailable(PetLabError):
    code = "service_unavailable"
    message_key = "service_unavailable"


class MalformedExtraction(PetLabError):
    code = "malformed_extraction"
    message_key = "malformed_extraction"

    def __init__(self, detail: str, raw_text: str | None):
        super().__init__(detail)
        self.raw_text = raw_text


class InvalidMetricValue(PetLabError):
    code = "invalid_metric_value"
    message_key = "invalid_metric_value"

    def __init__(self, metric_name: str, detail: str | None = None, message_key: str | None = None):
        super().__init__(detail or f"Metric '{metric_name}' has a non-numeric value.")
        self.metric_name = metric_name
        if message_key:
            self.message_key = message_key


class NotFound(PetLabError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: str):
        super().__init__(f"{entity} '{entity_id}' not found.")
        self.entity = entity
        self.entity_id = entity_id
        self.message_key = f"{entity}_not_found"


class RunFailed(PetLabError):
    code = "run_failed"
    message_key = "chat_failed"

    def __init__(self, status: str):
        super().__init__(f"Assistant run finished with status '{status}'.")
        self.status = status


class KnowledgeBaseError(PetLabError):
    code = "knowledge_base_error"
    message_key = "sync_failed"

    def __init__(self, detail: str | None = None, status_code: int | None = None):
        super().__init__(detail)
        self.status_code = status_code

    @property
    def is_missing(self) -> bool:
        return self.status_code == 404


class Conflict(PetLabError):
    code = "conflict"
    message_key = "conflict"

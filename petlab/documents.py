from __future__ import annotations

import base64
import binascii
import io
import logging
from dataclasses import dataclass, field

from pypdf import PdfReader

from petlab.errors import EmptyDocument, UnsupportedMediaType

logger = logging.getLogger(__name__)

IMAGE_MEDIA_TYPES = {"image/jpeg", "image/png", "image/webp"}
PDF_MEDIA_TYPE = "application/pdf"
ACCEPTED_MEDIA_TYPES = IMAGE_MEDIA_TYPES | {PDF_MEDIA_TYPE}
MEDIA_TYPE_ALIASES = {
    "image/jpg": "image/jpeg",
    "image/pjpeg": "image/jpeg",
    "application/x-pdf": "application/pdf",
}

MAGIC_SIGNATURES: list[tuple[bytes, str]] = [
    (b"%PDF", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
]


@dataclass(frozen=True)
class NormalizedDocument:
    raw_bytes: bytes
    media_type: str
    warnings: list[str] = field(default_factory=list)

    @property
    def is_pdf(self) -> bool:
        return self.media_type == PDF_MEDIA_TYPE


def normalize_media_type(media_type: str | None) -> str:
    normalized = (media_type or "").split(";", maxsplit=1)[0].strip().lower()
    return MEDIA_TYPE_ALIASES.get(normalized, normalized)


def detect_signature(raw_bytes: bytes) -> str | None:
    for signature, mime in MAGIC_SIGNATURES:
        if raw_bytes.startswith(signature):
            return mime
    if raw_bytes.startswith(b"RIFF") and raw_bytes[8:12] == b"WEBP":
        return "image/webp"
    return None


def normalize_document(raw_bytes: bytes, media_type: str | None) -> NormalizedDocument:
    """Accept an image or PDF payload under its declared media type.

    The declared type decides the extraction path. A signature that disagrees
    with it is reported as a warning only.
    """
    normalized_type = normalize_media_type(media_type)
    if normalized_type not in ACCEPTED_MEDIA_TYPES:
        raise UnsupportedMediaType(media_type)
    if not raw_bytes:
        raise EmptyDocument("Uploaded document is empty.")

    warnings: list[str] = []
    detected = detect_signature(raw_bytes)
    if detected and detected != normalized_type:
        warnings.append(f"Declared media type '{normalized_type}' does not match detected content '{detected}'.")
        logger.warning("Media type mismatch: declared=%s detected=%s", normalized_type, detected)

    return NormalizedDocument(raw_bytes=raw_bytes, media_type=normalized_type, warnings=warnings)


def decode_document_base64(document_base64: str) -> bytes:
    payload = (document_base64 or "").strip()
    if payload.startswith("data:") and "," in payload:
        payload = payload.split(",", maxsplit=1)[1]
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError) as exc:
        raise ValueError("Document payload is not valid base64.") from exc


def extract_pdf_text(raw_bytes: bytes) -> str:
    try:
        reader = PdfReader(io.BytesIO(raw_bytes))
        pages: list[str] = []
        for page in reader.pages:
            page_text = (page.extract_text() or "").strip()
            if page_text:
                pages.append(page_text)
    except Exception as exc:  # noqa: BLE001
        logger.warning("PDF text extraction failed: %s", exc)
        raise EmptyDocument(f"PDF text extraction failed: {exc}") from exc

    extracted = "\n\n".join(pages).strip()
    if not extracted:
        raise EmptyDocument("PDF contains no extractable text layer.")
    return extracted

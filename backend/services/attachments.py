"""
Attachment processing for chat turns.

Client attachments arrive as ``{type, name, mimeType, url}`` where ``url``
is a base64 data URL. Documents may also carry ``extractedText`` produced
by the upload pipeline.

- Images are size-checked and signature-checked, then passed to the model
  as image parts
- Plain text files are decoded and appended to the user's message
- PDF/DOCX use the pre-extracted text when present, otherwise a short
  placeholder line
"""

import base64
import binascii
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

logger = logging.getLogger(__name__)

# Leading bytes of each accepted image type
IMAGE_SIGNATURES = {
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/png": (b"\x89PNG",),
    "image/gif": (b"GIF8",),
    "image/webp": (b"RIFF",),
}

DOCUMENT_MIME_TYPES = {
    "application/pdf": "PDF",
    "application/vnd.openxmlformats-officedocument.wordprocessingml.document": "DOCX",
    "application/msword": "DOC",
}
DOCUMENT_EXTENSIONS = {".pdf": "PDF", ".docx": "DOCX", ".doc": "DOC"}

TEXT_MIME_PREFIXES = ("text/",)
TEXT_MIME_TYPES = {"application/json", "application/xml", "application/x-yaml"}
TEXT_TRUNCATION_MARKER = "\n\n[Text truncated due to length]"


@dataclass
class ProcessedAttachments:
    """Text to append to the user message, and validated images."""

    text: str = ""
    images: List[Dict[str, str]] = field(default_factory=list)
    rejected: List[str] = field(default_factory=list)


def _split_data_url(url: str) -> Tuple[Optional[str], Optional[str]]:
    """(mime, base64 payload) from a data URL."""
    if not isinstance(url, str) or not url.startswith("data:") or "," not in url:
        return None, None
    header, payload = url.split(",", 1)
    mime = header[5:].split(";", 1)[0] or None
    return mime, payload


def _decode(payload: str) -> Optional[bytes]:
    try:
        return base64.b64decode(payload, validate=True)
    except (binascii.Error, ValueError):
        return None


def decoded_size(payload: str) -> int:
    """Binary size of a base64 payload without decoding it."""
    padding = 2 if payload.endswith("==") else 1 if payload.endswith("=") else 0
    return (len(payload) * 3) // 4 - padding


def valid_signature(data: bytes, mime: str) -> bool:
    signatures = IMAGE_SIGNATURES.get(mime)
    if signatures is None:
        return False
    if mime == "image/webp":
        return data[:4] == b"RIFF" and data[8:12] == b"WEBP"
    return any(data.startswith(sig) for sig in signatures)


def _document_kind(attachment: Dict[str, Any]) -> Optional[str]:
    mime = attachment.get("mimeType") or ""
    if mime in DOCUMENT_MIME_TYPES:
        return DOCUMENT_MIME_TYPES[mime]
    name = (attachment.get("name") or "").lower()
    for ext, kind in DOCUMENT_EXTENSIONS.items():
        if name.endswith(ext):
            return kind
    return None


def _is_text(mime: str) -> bool:
    return mime.startswith(TEXT_MIME_PREFIXES) or mime in TEXT_MIME_TYPES


def _truncate(text: str, limit: int) -> str:
    if len(text) > limit:
        return text[:limit] + TEXT_TRUNCATION_MARKER
    return text


def process_attachments(
    attachments: Iterable[Dict[str, Any]],
    max_bytes: int = 10 * 1024 * 1024,
    max_text_chars: int = 8000,
) -> ProcessedAttachments:
    """Validate and convert attachments for one message.

    Invalid attachments are skipped and their names listed in ``rejected``;
    they never fail the turn.
    """
    result = ProcessedAttachments()
    text_parts: List[str] = []

    for attachment in attachments or ():
        if not isinstance(attachment, dict):
            continue
        name = attachment.get("name") or "attachment"
        url_mime, payload = _split_data_url(attachment.get("url", ""))
        mime = attachment.get("mimeType") or url_mime or ""

        if attachment.get("type") == "image" or mime.startswith("image/"):
            if not payload:
                result.rejected.append(name)
                continue
            if decoded_size(payload) > max_bytes:
                logger.warning(f"Attachment {name} exceeds {max_bytes} bytes, skipping")
                result.rejected.append(name)
                continue
            data = _decode(payload)
            if data is None or not valid_signature(data, mime):
                logger.warning(f"Attachment {name} is not a valid {mime or 'image'}, skipping")
                result.rejected.append(name)
                continue
            result.images.append({"mime": mime, "data": payload})
            continue

        kind = _document_kind(attachment)
        if kind is not None:
            extracted = attachment.get("extractedText")
            if isinstance(extracted, str) and extracted.strip():
                text_parts.append(f"**{kind} Document: {name}**\n{_truncate(extracted, max_text_chars)}")
            else:
                text_parts.append(f"**{kind} Document: {name}**\n[Document text is not available]")
            continue

        if _is_text(mime) and payload:
            if decoded_size(payload) > max_bytes:
                result.rejected.append(name)
                continue
            data = _decode(payload)
            if data is None:
                result.rejected.append(name)
                continue
            text = data.decode("utf-8", errors="replace")
            text_parts.append(f"**File: {name}**\n```\n{_truncate(text, max_text_chars)}\n```")
            continue

        logger.info(f"Unsupported attachment {name} ({mime or 'unknown type'}), skipping")
        result.rejected.append(name)

    result.text = "\n\n".join(text_parts)
    return result

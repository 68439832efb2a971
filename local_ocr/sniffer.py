"""
sniffer.py

Payload type detection for the unified OCR entry point.

A payload is a data URL (``data:<mime>;base64,<data>``) or bare base64
text with an optional MIME hint. Magic bytes in the decoded head of the
payload always win over the declared MIME type.
"""

import logging
from typing import Optional, Tuple

from local_ocr import config
from local_ocr.schemas import SniffResult
from local_ocr.utils import try_decode_base64

logger = logging.getLogger(__name__)

DATA_URL_MARKER = ";base64,"

# Fixed-prefix signatures, checked in order
MAGIC = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"BM", "image/bmp"),
    (b"II*\x00", "image/tiff"),
    (b"MM\x00*", "image/tiff"),
    (b"%PDF", "application/pdf"),
)


def split_data_url(payload: str, mime_hint: Optional[str] = None) -> Tuple[str, str]:
    """
    Strip an optional data URL header.

    Returns:
        (bare base64, declared MIME). The declared MIME comes from the
        header when there is one, otherwise from ``mime_hint``.
    """
    idx = payload.find(DATA_URL_MARKER)
    if idx >= 0:
        header = payload[:idx]
        declared = header[5:] if header.lower().startswith("data:") else header
        return payload[idx + len(DATA_URL_MARKER):], declared.strip().lower()
    return payload, (mime_hint or "").strip().lower()


def detect_mime_from_magic(data: bytes) -> Optional[str]:
    """Return the MIME type whose signature ``data`` starts with, if any."""
    if data.startswith(b"%PDF"):
        return "application/pdf"
    if len(data) < config.MAGIC_MIN_BYTES:
        return None
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    for signature, mime in MAGIC:
        if data.startswith(signature):
            return mime
    return None


def sniff_payload(payload: str, mime_hint: Optional[str] = None) -> SniffResult:
    """
    Classify a payload as pdf, image, unknown, or invalid.

    Only the first 256 KiB of base64 text is decoded. When decoding fails
    the result is ``invalid`` and the declared MIME is kept as the
    effective type; this function never raises.
    """
    bare, declared = split_data_url(payload or "", mime_hint)

    head = "".join(bare[: config.SNIFF_PROBE_BASE64_CHARS * 2].split())
    head = head[: config.SNIFF_PROBE_BASE64_CHARS]
    probe = try_decode_base64(head)

    if not probe:
        logger.debug("Payload head is not decodable base64 (declared=%r)", declared)
        return SniffResult(
            kind="invalid",
            payload=bare,
            declared_mime=declared,
            magic_mime=None,
            effective_mime=declared,
        )

    magic = detect_mime_from_magic(probe)
    if magic and declared and magic != declared:
        logger.info("Declared MIME %r overridden by magic bytes %r", declared, magic)
    effective = (magic or declared).lower()

    if "pdf" in effective:
        kind = "pdf"
    elif effective.startswith("image/"):
        kind = "image"
    else:
        kind = "unknown"

    return SniffResult(
        kind=kind,
        payload=bare,
        declared_mime=declared,
        magic_mime=magic,
        effective_mime=effective,
    )

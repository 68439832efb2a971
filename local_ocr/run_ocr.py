"""
Run OCR on a PDF or image file and print the extracted text.

Uses Tesseract by default (set LOCAL_OCR_BACKEND=surya for Surya).

Usage:
    local-ocr path/to/document.pdf
    local-ocr path/to/scan.png [mime-type]
"""

import base64
import logging
import mimetypes
import os
import sys

from local_ocr import config
from local_ocr.ocr_pipeline import ocr_from_data_url, terminate_engine
from local_ocr.schemas import ProgressEvent


def _print_progress(event: ProgressEvent) -> None:
    if event.stage == "done":
        print(
            f"  page {event.page_num}/{event.total_pages}: "
            f"confidence {event.page_confidence:.0f}"
        )


def main():
    if len(sys.argv) < 2:
        print("Usage: local-ocr <file_path> [mime-type]")
        print("Example: local-ocr document.pdf")
        print("Supported formats: PDF, PNG, JPEG, GIF, WEBP, BMP, TIFF")
        sys.exit(1)

    file_path = sys.argv[1]
    mime_hint = sys.argv[2] if len(sys.argv) > 2 else mimetypes.guess_type(file_path)[0]

    if not os.path.exists(file_path):
        print(f"Error: File not found: {file_path}")
        sys.exit(1)

    logging.basicConfig(
        level=getattr(logging, config.LOG_LEVEL.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    with open(file_path, "rb") as f:
        payload = base64.b64encode(f.read()).decode("ascii")

    print(f"Processing: {file_path}")
    try:
        result = ocr_from_data_url(payload, mime_hint, on_progress=_print_progress)
    finally:
        terminate_engine()

    print(f"\nPages: {result.pages_ocrd}/{result.page_count}")
    print(f"Confidence: {result.confidence}")
    print(f"Engine: {result.engine}")
    if result.metrics is not None:
        m = result.metrics
        print(
            f"Skipped: {m.skipped_pages}  Retried: {m.retried_pages}  "
            f"Failed: {m.failed_pages}  Time: {m.total_ms:.0f}ms"
        )

    print("=" * 50)
    print(result.text)
    print("=" * 50)


if __name__ == "__main__":
    main()

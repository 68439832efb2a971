"""
page_source.py

PDF page sources: page count plus per-page rendering to RawImage.

The orchestrator only talks to the PageSource interface
(``open(bytes) -> PdfMeta`` and ``render(page_num, width, height, scale)``).
Pdf2ImagePageSource implements it with pdf2image / poppler, rendering
one page at a time so only a single page bitmap is alive at once.
"""

import logging
import re
import shutil
from typing import Optional, Tuple

from local_ocr import config
from local_ocr.schemas import PdfMeta, RawImage
from local_ocr.utils import OCRDecodeError

logger = logging.getLogger(__name__)

_PAGE_SIZE_RE = re.compile(r"([\d.]+)\s*x\s*([\d.]+)")


class PageSource:
    """Interface for anything that can open a PDF and render its pages."""

    def open(self, data: bytes) -> PdfMeta:
        raise NotImplementedError

    def render(self, page_num: int, width: float, height: float, scale: float) -> RawImage:
        raise NotImplementedError

    def close(self) -> None:
        """Release the opened document. Default: nothing to release."""

    def __enter__(self) -> "PageSource":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()


def _parse_page_size(value: Optional[str]) -> Optional[Tuple[float, float]]:
    """Parse pdfinfo's 'Page size' field, e.g. '595.276 x 841.89 pts (A4)'."""
    if not value:
        return None
    match = _PAGE_SIZE_RE.search(value)
    if not match:
        return None
    return float(match.group(1)), float(match.group(2))


class Pdf2ImagePageSource(PageSource):
    """Poppler-backed page source via pdf2image."""

    def __init__(self):
        self._data: Optional[bytes] = None

    @staticmethod
    def is_available() -> bool:
        try:
            import pdf2image  # noqa: F401
        except ImportError:
            logger.warning("pdf2image is not installed; PDF OCR is disabled")
            return False
        if shutil.which("pdfinfo") is None or shutil.which("pdftoppm") is None:
            logger.warning("poppler-utils not found on PATH; PDF OCR is disabled")
            return False
        return True

    def open(self, data: bytes) -> PdfMeta:
        """
        Read page count and page size.

        pdfinfo reports one page size for the document; it is used for
        every page.

        Raises:
            OCRDecodeError: If the bytes are not a readable PDF.
        """
        from pdf2image import pdfinfo_from_bytes
        from pdf2image.exceptions import PDFPageCountError, PDFSyntaxError

        if not data:
            raise OCRDecodeError("PDF payload is empty")
        try:
            info = pdfinfo_from_bytes(data)
        except (PDFPageCountError, PDFSyntaxError, ValueError) as e:
            raise OCRDecodeError(f"Failed to read PDF: {e}") from e

        page_count = int(info.get("Pages", 0) or 0)
        if page_count <= 0:
            raise OCRDecodeError("PDF reports no pages")

        size = _parse_page_size(info.get("Page size"))
        self._data = data
        logger.info("Opened PDF: %d page(s), page size %s", page_count, size)
        return PdfMeta(page_count=page_count, page_sizes=[size] * page_count)

    def render(self, page_num: int, width: float, height: float, scale: float) -> RawImage:
        """
        Render one 0-based page at ``scale`` x 72 DPI.

        Raises:
            OCRDecodeError: If the document is not open or poppler returns nothing.
        """
        from pdf2image import convert_from_bytes

        if self._data is None:
            raise OCRDecodeError("PDF is not open")

        pages = convert_from_bytes(
            self._data,
            dpi=int(config.PDF_BASE_DPI * scale),
            first_page=page_num + 1,
            last_page=page_num + 1,
        )
        if not pages:
            raise OCRDecodeError(f"PDF page {page_num} produced no image")

        page = pages[0]
        try:
            raw = RawImage.from_pil(page)
        finally:
            page.close()
        logger.debug("Rendered page %d: %dx%d", page_num, raw.width, raw.height)
        return raw

    def close(self) -> None:
        self._data = None

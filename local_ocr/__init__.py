"""
Local OCR module

Extracts text from scanned legal documents (PDF or image, delivered as
base64 or data URLs) entirely on the local machine, using Tesseract
(German + English) by default or Surya as an alternative backend.

Includes byte sniffing, page classification, image preprocessing,
confidence-gated retry, and German-aware text post-processing.

Public API:
    ocr_from_data_url     - OCR any payload, routed by magic bytes
    ocr_pdf_from_base64   - OCR a base64 PDF
    ocr_image_from_base64 - OCR a base64 image
    terminate_engine      - Release the shared recognition engine
    OCRPipeline           - Orchestrator with injectable engine and page source
    LocalOCRResult        - Result model returned by every entry point
"""

from local_ocr.classifier import classify_page
from local_ocr.ocr_pipeline import (
    OCRPipeline,
    ocr_from_data_url,
    ocr_image_from_base64,
    ocr_pdf_from_base64,
    terminate_engine,
)
from local_ocr.postprocessor import postprocess
from local_ocr.preprocessor import preprocess_image
from local_ocr.schemas import (
    LocalOCRResult,
    OCRPipelineMetrics,
    PageClassification,
    PageType,
    ProgressEvent,
    RawImage,
)
from local_ocr.sniffer import sniff_payload

__all__ = [
    "ocr_from_data_url",
    "ocr_pdf_from_base64",
    "ocr_image_from_base64",
    "terminate_engine",
    "OCRPipeline",
    "LocalOCRResult",
    "OCRPipelineMetrics",
    "PageClassification",
    "PageType",
    "ProgressEvent",
    "RawImage",
    "classify_page",
    "postprocess",
    "preprocess_image",
    "sniff_payload",
]

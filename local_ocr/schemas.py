"""
schemas.py

Pydantic models for the local OCR pipeline.

Every entity here lives for a single document-OCR invocation.
LocalOCRResult is the only type handed back to callers and is
always populated; failures are zero-valued instances carrying a
diagnostic engine tag.
"""

from enum import Enum
from typing import List, Literal, Optional, Tuple

import numpy as np
from PIL import Image
from pydantic import BaseModel, ConfigDict, Field, model_validator


class RawImage(BaseModel):
    """RGBA8 pixel buffer of one page, shaped (height, width, 4)."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    width: int = Field(..., ge=1, description="Width in pixels")
    height: int = Field(..., ge=1, description="Height in pixels")
    pixels: Optional[np.ndarray] = Field(
        ..., description="uint8 RGBA buffer, None once released"
    )

    @model_validator(mode="after")
    def _check_buffer(self) -> "RawImage":
        if self.pixels is not None:
            expected = (self.height, self.width, 4)
            if self.pixels.shape != expected or self.pixels.dtype != np.uint8:
                raise ValueError(
                    f"pixels must be uint8 {expected}, got "
                    f"{self.pixels.dtype} {self.pixels.shape}"
                )
        return self

    @classmethod
    def from_array(cls, arr: np.ndarray) -> "RawImage":
        """Build from a gray (H, W), RGB (H, W, 3) or RGBA (H, W, 4) array."""
        arr = np.asarray(arr, dtype=np.uint8)
        if arr.ndim == 2:
            rgba = np.empty(arr.shape + (4,), dtype=np.uint8)
            rgba[..., :3] = arr[..., None]
            rgba[..., 3] = 255
        elif arr.ndim == 3 and arr.shape[2] == 3:
            rgba = np.empty(arr.shape[:2] + (4,), dtype=np.uint8)
            rgba[..., :3] = arr
            rgba[..., 3] = 255
        elif arr.ndim == 3 and arr.shape[2] == 4:
            rgba = np.ascontiguousarray(arr)
        else:
            raise ValueError(f"Unsupported pixel array shape {arr.shape}")
        return cls(width=rgba.shape[1], height=rgba.shape[0], pixels=rgba)

    @classmethod
    def from_pil(cls, image: Image.Image) -> "RawImage":
        return cls.from_array(np.array(image.convert("RGBA")))

    def to_pil(self) -> Image.Image:
        return Image.fromarray(self.require_pixels())

    def require_pixels(self) -> np.ndarray:
        if self.pixels is None:
            raise ValueError("RawImage buffer was already released")
        return self.pixels

    def close(self) -> None:
        """Drop the pixel buffer so large pages are not held longer than needed."""
        self.pixels = None


class PageType(str, Enum):
    BLANK = "blank"
    TEXT = "text"
    SCAN = "scan"
    HYBRID = "hybrid"


class PageClassification(BaseModel):
    """Heuristic label of a rendered page, computed once per page."""

    model_config = ConfigDict(frozen=True)

    page_type: PageType = Field(..., description="blank | text | scan | hybrid")
    text_density: float = Field(
        default=0.0, ge=0.0, description="Edge density used for the label"
    )


class RecognitionResult(BaseModel):
    """Text and confidence (0-100) from one recognition call."""

    text: str = Field(default="", description="Recognized text, trimmed")
    confidence: float = Field(
        default=0.0, ge=0.0, le=100.0, description="Engine confidence 0-100"
    )

    @classmethod
    def empty(cls) -> "RecognitionResult":
        return cls(text="", confidence=0.0)


class PageOutcome(BaseModel):
    """Result of driving one page through classify -> recognize -> postprocess."""

    page_num: int = Field(..., ge=0, description="0-based page index")
    classification: PageClassification
    recognition: Optional[RecognitionResult] = None
    retry_attempted: bool = False
    was_retried: bool = Field(
        default=False, description="True when the retry pass result was kept"
    )
    accepted: bool = False
    language: str = "unknown"
    error: Optional[str] = Field(
        default=None, description="Stage failure message, if any"
    )

    @property
    def skipped(self) -> bool:
        return self.classification.page_type == PageType.BLANK


class PageRecord(BaseModel):
    """Per-page entry of the pipeline metrics."""

    page_num: int = Field(..., ge=0)
    page_type: PageType
    text_density: float = 0.0
    ocr_confidence: float = 0.0
    was_retried: bool = False


class OCRPipelineMetrics(BaseModel):
    """Aggregated counters, confidence stats and stage timings of one run."""

    total_pages: int = Field(default=0, ge=0)
    ocr_pages: int = Field(default=0, ge=0)
    skipped_pages: int = Field(default=0, ge=0)
    retried_pages: int = Field(default=0, ge=0)
    failed_pages: int = Field(default=0, ge=0)
    avg_confidence: int = Field(default=0, ge=0, le=100)
    min_confidence: int = Field(default=0, ge=0, le=100)
    max_confidence: int = Field(default=0, ge=0, le=100)
    pre_processing_ms: float = Field(default=0.0, ge=0.0)
    ocr_ms: float = Field(default=0.0, ge=0.0)
    post_processing_ms: float = Field(default=0.0, ge=0.0)
    total_ms: float = Field(default=0.0, ge=0.0)
    engine_version: str = ""
    page_classification: List[PageRecord] = Field(default_factory=list)


class LocalOCRResult(BaseModel):
    """Top-level OCR result returned by every public entry point."""

    text: str = Field(default="", description="Accepted page texts joined by a blank line")
    page_count: int = Field(default=0, ge=0, description="Pages in the source document")
    pages_ocrd: int = Field(default=0, ge=0, description="Pages handled, blank ones included")
    confidence: int = Field(default=0, ge=0, le=100, description="Rounded average confidence")
    engine: str = Field(..., description="Engine tag, or a diagnostic failure tag")
    duration_ms: float = Field(default=0.0, ge=0.0)
    per_page_confidence: List[float] = Field(default_factory=list)
    metrics: Optional[OCRPipelineMetrics] = None

    @classmethod
    def failed(cls, engine: str, duration_ms: float, page_count: int = 0) -> "LocalOCRResult":
        """Zero-valued result tagged with the reason it is empty."""
        return cls(
            text="",
            page_count=page_count,
            pages_ocrd=0,
            confidence=0,
            engine=engine,
            duration_ms=duration_ms,
            per_page_confidence=[],
        )


ProgressStage = Literal["rendering", "preprocessing", "recognizing", "postprocessing", "done"]


class ProgressEvent(BaseModel):
    """Observational progress notification; ignoring it never changes results."""

    stage: ProgressStage
    page_num: int = Field(..., ge=1, description="1-based page number")
    total_pages: int = Field(..., ge=0)
    page_text: str = ""
    page_confidence: float = 0.0


SniffKind = Literal["pdf", "image", "unknown", "invalid"]


class SniffResult(BaseModel):
    """How a payload was classified before routing."""

    kind: SniffKind
    payload: str = Field(..., description="Bare base64 without any data URL header")
    declared_mime: str = ""
    magic_mime: Optional[str] = None
    effective_mime: str = ""

    @property
    def is_pdf(self) -> bool:
        return "pdf" in self.effective_mime

    @property
    def is_image(self) -> bool:
        return self.effective_mime.startswith("image/")


class Capabilities(BaseModel):
    """What the host can do, decided once when a pipeline is built."""

    recognition: bool = True
    pdf_rendering: bool = True


class PdfMeta(BaseModel):
    """Page count and per-page sizes (points) reported by a page source."""

    page_count: int = Field(..., ge=0)
    page_sizes: List[Optional[Tuple[float, float]]] = Field(default_factory=list)


class PostprocessResult(BaseModel):
    text: str = ""
    language: str = "unknown"

"""
ocr_pipeline.py

Main orchestrator for the OCR module.

Coordinates the per-page pipeline:
render -> classify -> preprocess -> recognize -> (retry) -> postprocess,
then aggregates page results into one LocalOCRResult with metrics.

Entry points (all of them return a LocalOCRResult and never raise):
    ocr_from_data_url     - sniff the payload and route it
    ocr_pdf_from_base64   - multi-page PDF
    ocr_image_from_base64 - single image
    terminate_engine      - release the shared recognition engine

Failures that prevent any OCR from happening are reported as zero-valued
results whose ``engine`` field names the reason (e.g. ``tesseract-pdf-open-failed``).
"""

import importlib.util
import logging
import math
import threading
from typing import Callable, List, Optional, Tuple

from local_ocr import config
from local_ocr.classifier import classify_page
from local_ocr.engine import (
    EngineHandle,
    RecognitionEngine,
    TesseractEngine,
    get_engine_handle,
    recognize_with_timeout,
)
from local_ocr.page_source import Pdf2ImagePageSource, PageSource
from local_ocr.postprocessor import postprocess
from local_ocr.preprocessor import preprocess_image
from local_ocr.schemas import (
    Capabilities,
    LocalOCRResult,
    OCRPipelineMetrics,
    PageClassification,
    PageOutcome,
    PageRecord,
    PageType,
    ProgressEvent,
    RawImage,
    RecognitionResult,
)
from local_ocr.sniffer import detect_mime_from_magic, sniff_payload
from local_ocr.utils import (
    OCRStageError,
    decode_base64,
    decode_image,
    now_ms,
    run_with_timeout,
    try_decode_base64,
)

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[ProgressEvent], None]


def should_retry(result: RecognitionResult) -> bool:
    """Retry only text that was read, but with middling confidence."""
    return (
        len(result.text) > 0
        and config.OCR_MIN_CONFIDENCE <= result.confidence < config.OCR_RETRY_CONFIDENCE_THRESHOLD
    )


def choose_result(
    first: RecognitionResult, retry: RecognitionResult
) -> Tuple[RecognitionResult, bool]:
    """
    Pick between the first pass and the enhanced retry.

    The retry wins only if it is more confident and did not lose much
    text (at least 80% of the first pass length).

    Returns:
        (chosen result, True if the retry was chosen)
    """
    if (
        retry.confidence > first.confidence
        and len(retry.text) >= config.RETRY_MIN_LENGTH_RATIO * len(first.text)
    ):
        return retry, True
    return first, False


def is_accepted(result: RecognitionResult) -> bool:
    return len(result.text) > 0 and result.confidence >= config.OCR_MIN_CONFIDENCE


def _round(value: float) -> int:
    return int(math.floor(value + 0.5))


class DocumentRun:
    """Accumulates page outcomes and stage timings for one document."""

    def __init__(self, page_count: int, started_ms: float):
        self.page_count = page_count
        self.started_ms = started_ms
        self.pages_ocrd = 0
        self.skipped = 0
        self.retried = 0
        self.failed = 0
        self.per_page_confidence: List[float] = []
        self.page_texts: List[str] = []
        self.records: List[PageRecord] = []
        self.pre_processing_ms = 0.0
        self.ocr_ms = 0.0
        self.post_processing_ms = 0.0

    def add(self, outcome: PageOutcome) -> None:
        self.pages_ocrd += 1
        classification = outcome.classification
        recognition = outcome.recognition or RecognitionResult.empty()

        if outcome.skipped:
            self.skipped += 1
            confidence = 0.0
        elif outcome.accepted:
            confidence = recognition.confidence
            self.page_texts.append(recognition.text)
        else:
            self.failed += 1
            confidence = 0.0

        if outcome.was_retried:
            self.retried += 1

        self.per_page_confidence.append(confidence)
        self.records.append(
            PageRecord(
                page_num=outcome.page_num,
                page_type=classification.page_type,
                text_density=classification.text_density,
                ocr_confidence=recognition.confidence,
                was_retried=outcome.was_retried,
            )
        )

    def to_result(self, engine_tag: str, engine_version: str, finished_ms: float) -> LocalOCRResult:
        valid = [c for c in self.per_page_confidence if c > 0]
        avg = sum(valid) / len(valid) if valid else 0.0
        total_ms = max(finished_ms - self.started_ms, 0.0)

        metrics = OCRPipelineMetrics(
            total_pages=self.page_count,
            ocr_pages=self.pages_ocrd - self.skipped,
            skipped_pages=self.skipped,
            retried_pages=self.retried,
            failed_pages=self.failed,
            avg_confidence=_round(avg),
            min_confidence=_round(min(valid)) if valid else 0,
            max_confidence=_round(max(valid)) if valid else 0,
            pre_processing_ms=self.pre_processing_ms,
            ocr_ms=self.ocr_ms,
            post_processing_ms=self.post_processing_ms,
            total_ms=total_ms,
            engine_version=engine_version,
            page_classification=self.records,
        )

        return LocalOCRResult(
            text="\n\n".join(t for t in self.page_texts if t).strip(),
            page_count=self.page_count,
            pages_ocrd=self.pages_ocrd,
            confidence=_round(avg),
            engine=engine_tag,
            duration_ms=total_ms,
            per_page_confidence=self.per_page_confidence,
            metrics=metrics,
        )


def _failed_page(page_num: int, error: Exception) -> PageOutcome:
    return PageOutcome(
        page_num=page_num,
        classification=PageClassification(page_type=PageType.SCAN, text_density=0.0),
        error=str(error),
    )


def detect_capabilities(backend: Optional[str] = None) -> Capabilities:
    """Check once what this host can do."""
    backend = (backend or config.OCR_BACKEND).lower()
    if backend == "surya":
        recognition = importlib.util.find_spec("surya") is not None
    else:
        recognition = TesseractEngine.is_available()
    return Capabilities(
        recognition=recognition,
        pdf_rendering=Pdf2ImagePageSource.is_available(),
    )


class OCRPipeline:
    """
    Document OCR orchestrator.

    Pages are processed one at a time, in order. Each blocking call
    (PDF open, page render, engine init, recognition) has its own
    deadline, and the whole document has a total deadline checked
    before every page.
    """

    def __init__(
        self,
        engine_handle: Optional[EngineHandle] = None,
        page_source_factory: Callable[[], PageSource] = Pdf2ImagePageSource,
        capabilities: Optional[Capabilities] = None,
        max_pages: int = config.OCR_MAX_PAGES,
        page_timeout_ms: float = config.OCR_PAGE_TIMEOUT_MS,
        total_timeout_ms: float = config.OCR_TOTAL_TIMEOUT_MS,
        engine_init_timeout_ms: float = config.OCR_ENGINE_INIT_TIMEOUT_MS,
        pdf_open_timeout_ms: float = config.OCR_PDF_OPEN_TIMEOUT_MS,
        render_timeout_ms: float = config.OCR_PAGE_RENDER_TIMEOUT_MS,
        clock: Callable[[], float] = now_ms,
    ):
        self.engine_handle = engine_handle or get_engine_handle()
        self.page_source_factory = page_source_factory
        self.capabilities = capabilities if capabilities is not None else detect_capabilities()
        self.max_pages = max_pages
        self.page_timeout_ms = page_timeout_ms
        self.total_timeout_ms = total_timeout_ms
        self.engine_init_timeout_ms = engine_init_timeout_ms
        self.pdf_open_timeout_ms = pdf_open_timeout_ms
        self.render_timeout_ms = render_timeout_ms
        self._clock = clock

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------

    def ocr_from_data_url(
        self,
        payload: str,
        mime_hint: Optional[str] = None,
        on_progress: Optional[ProgressCallback] = None,
    ) -> LocalOCRResult:
        """
        OCR a base64 payload (optionally a data URL) of unknown type.

        Magic bytes decide the route; the declared MIME is only a fallback.
        A payload that is neither recognisably PDF nor image is tried as
        PDF first and kept if it yields more than a few characters,
        otherwise as an image.
        """
        started = self._clock()
        try:
            sniff = sniff_payload(payload, mime_hint)
            if sniff.is_pdf:
                return self.ocr_pdf_from_base64(sniff.payload, on_progress)
            if sniff.is_image:
                return self.ocr_image_from_base64(sniff.payload, sniff.effective_mime)

            logger.info(
                "Payload type unknown (declared=%r), probing as PDF, then image",
                sniff.declared_mime,
            )
            try:
                pdf_result = self.ocr_pdf_from_base64(sniff.payload, on_progress)
            except Exception as e:
                logger.warning("PDF probe failed: %s", e)
                pdf_result = LocalOCRResult.failed(
                    "tesseract-unknown-pdf-probe-failed", self._elapsed(started)
                )
            if len(pdf_result.text) > config.UNKNOWN_PDF_MIN_TEXT:
                return pdf_result

            try:
                return self.ocr_image_from_base64(
                    sniff.payload, sniff.effective_mime or "application/octet-stream"
                )
            except Exception as e:
                logger.warning("Image probe failed: %s", e)
                return LocalOCRResult.failed(
                    "tesseract-unknown-image-probe-failed", self._elapsed(started)
                )
        except Exception as e:
            logger.warning("OCR routing failed: %s", e)
            return LocalOCRResult.failed("tesseract-ocr-router-failed", self._elapsed(started))

    def ocr_pdf_from_base64(
        self, b64: str, on_progress: Optional[ProgressCallback] = None
    ) -> LocalOCRResult:
        """OCR a base64-encoded PDF page by page."""
        started = self._clock()
        try:
            return self._ocr_pdf(b64, on_progress, started)
        except Exception as e:
            logger.warning("PDF OCR failed: %s", e)
            return LocalOCRResult.failed("tesseract-pdf-ocr-failed", self._elapsed(started))

    def ocr_image_from_base64(self, b64: str, mime_type: Optional[str] = None) -> LocalOCRResult:
        """
        OCR a single base64-encoded image (PNG, JPEG, GIF, WEBP, BMP, TIFF).

        A blank image is not recognized and is reported as the failure tag
        ``tesseract-image-blank`` with ``pages_ocrd=0``, unlike a blank PDF
        page, which counts as a skipped page of a successful result.
        """
        started = self._clock()
        try:
            return self._ocr_image(b64, mime_type, started)
        except Exception as e:
            logger.warning("Image OCR failed: %s", e)
            return LocalOCRResult.failed(
                "tesseract-image-ocr-failed", self._elapsed(started), page_count=1
            )

    def terminate_engine(self) -> None:
        self.engine_handle.terminate()

    # ------------------------------------------------------------------
    # Document paths
    # ------------------------------------------------------------------

    def _ocr_pdf(
        self, b64: str, on_progress: Optional[ProgressCallback], started: float
    ) -> LocalOCRResult:
        if not (self.capabilities.recognition and self.capabilities.pdf_rendering):
            return LocalOCRResult.failed("tesseract-no-worker-support", self._elapsed(started))
        if len(b64 or "") > config.OCR_MAX_BASE64_LENGTH:
            logger.warning("PDF payload too large: %d base64 chars", len(b64))
            return LocalOCRResult.failed("tesseract-file-too-large", self._elapsed(started))

        source = self.page_source_factory()
        try:
            try:
                data = decode_base64(b64 or "")
                meta = run_with_timeout(
                    source.open, self.pdf_open_timeout_ms, "PDF open timeout", data
                )
            except Exception as e:
                logger.warning("Failed to open PDF: %s", e)
                return LocalOCRResult.failed("tesseract-pdf-open-failed", self._elapsed(started))

            try:
                engine = self.engine_handle.acquire(self.engine_init_timeout_ms)
            except Exception as e:
                logger.warning("Recognition engine init failed: %s", e)
                return LocalOCRResult.failed(
                    "tesseract-engine-init-failed", self._elapsed(started)
                )

            run = DocumentRun(page_count=meta.page_count, started_ms=started)
            pages_to_ocr = min(meta.page_count, self.max_pages)
            if meta.page_count > pages_to_ocr:
                logger.info("Capping OCR at %d of %d pages", pages_to_ocr, meta.page_count)
            deadline = started + self.total_timeout_ms

            for page_num in range(pages_to_ocr):
                if self._clock() > deadline:
                    logger.warning(
                        "Total OCR timeout reached after %d/%d pages", page_num, pages_to_ocr
                    )
                    break

                size = meta.page_sizes[page_num] if page_num < len(meta.page_sizes) else None
                if size is None:
                    logger.debug("Page %d has no size, skipping", page_num)
                    continue

                outcome = self._ocr_pdf_page(
                    source, engine, page_num, size, pages_to_ocr, run, on_progress
                )
                run.add(outcome)

                recognition = outcome.recognition
                self._emit(
                    on_progress,
                    "done",
                    page_num,
                    pages_to_ocr,
                    page_text=recognition.text if recognition and outcome.accepted else "",
                    page_confidence=recognition.confidence if recognition else 0.0,
                )
        finally:
            source.close()

        result = run.to_result(config.ENGINE_TAG_PDF, engine.version, self._clock())
        self._log_summary(result)
        return result

    def _ocr_pdf_page(
        self,
        source: PageSource,
        engine: RecognitionEngine,
        page_num: int,
        size: Tuple[float, float],
        total_pages: int,
        run: DocumentRun,
        on_progress: Optional[ProgressCallback],
    ) -> PageOutcome:
        raw: Optional[RawImage] = None
        try:
            self._emit(on_progress, "rendering", page_num, total_pages)
            try:
                raw = run_with_timeout(
                    source.render,
                    self.render_timeout_ms,
                    f"Page {page_num} render timeout",
                    page_num,
                    size[0],
                    size[1],
                    config.OCR_RENDER_SCALE,
                )
            except Exception as e:
                raise OCRStageError("render", page_num, str(e)) from e
            return self.process_page(engine, raw, page_num, total_pages, run, on_progress)
        except Exception as e:
            logger.warning("Page %d failed: %s", page_num, e)
            return _failed_page(page_num, e)
        finally:
            if raw is not None:
                raw.close()

    def _ocr_image(
        self, b64: str, mime_type: Optional[str], started: float
    ) -> LocalOCRResult:
        if not self.capabilities.recognition:
            return LocalOCRResult.failed("tesseract-no-worker-support", self._elapsed(started))
        if len(b64 or "") > config.OCR_MAX_BASE64_LENGTH:
            logger.warning("Image payload too large: %d base64 chars", len(b64))
            return LocalOCRResult.failed("tesseract-file-too-large", self._elapsed(started))

        data = try_decode_base64(b64 or "")
        if not data:
            return LocalOCRResult.failed("tesseract-image-base64-invalid", self._elapsed(started))

        inferred = detect_mime_from_magic(data)
        if inferred and "pdf" in inferred:
            return LocalOCRResult.failed("tesseract-image-was-pdf", self._elapsed(started))
        resolved = inferred or (mime_type or "image/png").lower()
        if not resolved.startswith("image/"):
            logger.warning("Unsupported image MIME type: %s", resolved)
            return LocalOCRResult.failed(
                "tesseract-image-unsupported-mime", self._elapsed(started)
            )

        try:
            raw = decode_image(data)
        except Exception as e:
            logger.warning("Image decode failed: %s", e)
            return LocalOCRResult.failed("tesseract-image-decode-failed", self._elapsed(started))

        try:
            try:
                engine = self.engine_handle.acquire(self.engine_init_timeout_ms)
            except Exception as e:
                logger.warning("Recognition engine init failed: %s", e)
                return LocalOCRResult.failed(
                    "tesseract-engine-init-failed", self._elapsed(started)
                )

            run = DocumentRun(page_count=1, started_ms=started)
            try:
                outcome = self.process_page(engine, raw, 0, 1, run, None)
            except Exception as e:
                logger.warning("Image OCR failed: %s", e)
                return LocalOCRResult.failed(
                    "tesseract-image-ocr-failed", self._elapsed(started), page_count=1
                )
        finally:
            raw.close()

        if outcome.skipped:
            return LocalOCRResult.failed(
                "tesseract-image-blank", self._elapsed(started), page_count=1
            )

        run.add(outcome)
        result = run.to_result(config.ENGINE_TAG_IMAGE, engine.version, self._clock())
        self._log_summary(result)
        return result

    # ------------------------------------------------------------------
    # Per-page pipeline
    # ------------------------------------------------------------------

    def process_page(
        self,
        engine: RecognitionEngine,
        raw: RawImage,
        page_num: int,
        total_pages: int,
        run: DocumentRun,
        on_progress: Optional[ProgressCallback] = None,
    ) -> PageOutcome:
        """
        Drive one rendered page through classify -> preprocess ->
        recognize -> (retry) -> postprocess.

        Blank pages return immediately, before any preprocessing or
        recognition. Stage times are added to ``run``.

        Raises:
            OCRStageError: If classification, preprocessing, first-pass
                recognition or postprocessing fails. A failed retry is
                not an error; the first pass is kept.
        """
        classification = _stage("classify", page_num, classify_page, raw)
        if classification.page_type == PageType.BLANK:
            logger.debug("Page %d is blank, skipping OCR", page_num)
            return PageOutcome(page_num=page_num, classification=classification)

        self._emit(on_progress, "preprocessing", page_num, total_pages)
        t0 = self._clock()
        try:
            preprocessed = _stage("preprocess", page_num, preprocess_image, raw, False)
        finally:
            run.pre_processing_ms += self._clock() - t0

        self._emit(on_progress, "recognizing", page_num, total_pages)
        t0 = self._clock()
        try:
            first = recognize_with_timeout(
                engine, preprocessed, self.page_timeout_ms, f"Page {page_num} OCR"
            )
        except Exception as e:
            raise OCRStageError("recognize", page_num, str(e)) from e
        finally:
            run.ocr_ms += self._clock() - t0
            preprocessed.close()

        result, was_retried, retry_attempted = first, False, False
        if should_retry(first):
            retry_attempted = True
            result, was_retried = self._retry(engine, raw, page_num, first, run)

        self._emit(
            on_progress,
            "postprocessing",
            page_num,
            total_pages,
            page_confidence=result.confidence,
        )
        accepted = is_accepted(result)
        language = "unknown"
        t0 = self._clock()
        try:
            if accepted:
                cleaned = _stage("postprocess", page_num, postprocess, result.text)
                result = RecognitionResult(text=cleaned.text, confidence=result.confidence)
                language = cleaned.language
            else:
                logger.debug(
                    "Page %d rejected (confidence %.1f, %d chars)",
                    page_num,
                    result.confidence,
                    len(result.text),
                )
        finally:
            run.post_processing_ms += self._clock() - t0

        return PageOutcome(
            page_num=page_num,
            classification=classification,
            recognition=result,
            retry_attempted=retry_attempted,
            was_retried=was_retried,
            accepted=accepted,
            language=language,
        )

    def _retry(
        self,
        engine: RecognitionEngine,
        raw: RawImage,
        page_num: int,
        first: RecognitionResult,
        run: DocumentRun,
    ) -> Tuple[RecognitionResult, bool]:
        logger.debug("Page %d confidence %.1f, retrying with denoise", page_num, first.confidence)

        t0 = self._clock()
        try:
            enhanced = preprocess_image(raw, enhanced=True)
        except Exception as e:
            logger.warning("Page %d retry preprocessing failed: %s", page_num, e)
            return first, False
        finally:
            run.pre_processing_ms += self._clock() - t0

        t0 = self._clock()
        try:
            retry = recognize_with_timeout(
                engine, enhanced, self.page_timeout_ms, f"Page {page_num} retry OCR"
            )
        except Exception as e:
            logger.warning("Page %d retry failed, keeping first pass: %s", page_num, e)
            return first, False
        finally:
            run.ocr_ms += self._clock() - t0
            enhanced.close()

        chosen, used_retry = choose_result(first, retry)
        logger.debug(
            "Page %d retry confidence %.1f -> %s",
            page_num,
            retry.confidence,
            "kept" if used_retry else "discarded",
        )
        return chosen, used_retry

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _elapsed(self, started: float) -> float:
        return max(self._clock() - started, 0.0)

    @staticmethod
    def _emit(
        on_progress: Optional[ProgressCallback],
        stage: str,
        page_num: int,
        total_pages: int,
        page_text: str = "",
        page_confidence: float = 0.0,
    ) -> None:
        if on_progress is None:
            return
        try:
            on_progress(
                ProgressEvent(
                    stage=stage,
                    page_num=page_num + 1,
                    total_pages=total_pages,
                    page_text=page_text,
                    page_confidence=page_confidence,
                )
            )
        except Exception as e:
            logger.warning("Progress callback failed: %s", e)

    @staticmethod
    def _log_summary(result: LocalOCRResult) -> None:
        metrics = result.metrics
        if metrics is None:
            return
        logger.info(
            "OCR done (%s): %d/%d pages, skipped=%d, retried=%d, failed=%d, "
            "confidence avg=%d min=%d max=%d, %.0fms "
            "(pre=%.0fms ocr=%.0fms post=%.0fms)",
            result.engine,
            metrics.ocr_pages,
            metrics.total_pages,
            metrics.skipped_pages,
            metrics.retried_pages,
            metrics.failed_pages,
            metrics.avg_confidence,
            metrics.min_confidence,
            metrics.max_confidence,
            metrics.total_ms,
            metrics.pre_processing_ms,
            metrics.ocr_ms,
            metrics.post_processing_ms,
        )


def _stage(stage: str, page_num: int, fn, *args):
    """Call one stage function, wrapping any failure in OCRStageError."""
    try:
        return fn(*args)
    except OCRStageError:
        raise
    except Exception as e:
        raise OCRStageError(stage, page_num, str(e)) from e


# Module-level singleton pipeline
_pipeline: Optional[OCRPipeline] = None
_pipeline_lock = threading.Lock()


def get_pipeline() -> OCRPipeline:
    """Get or create the process-wide pipeline; capabilities are checked once here."""
    global _pipeline
    if _pipeline is None:
        with _pipeline_lock:
            if _pipeline is None:
                _pipeline = OCRPipeline()
    return _pipeline


def reset_pipeline() -> None:
    """Drop the cached pipeline (useful for testing)."""
    global _pipeline
    with _pipeline_lock:
        _pipeline = None


def ocr_from_data_url(
    payload: str,
    mime_hint: Optional[str] = None,
    on_progress: Optional[ProgressCallback] = None,
) -> LocalOCRResult:
    return get_pipeline().ocr_from_data_url(payload, mime_hint, on_progress)


def ocr_pdf_from_base64(
    b64: str, on_progress: Optional[ProgressCallback] = None
) -> LocalOCRResult:
    return get_pipeline().ocr_pdf_from_base64(b64, on_progress)


def ocr_image_from_base64(b64: str, mime_type: Optional[str] = None) -> LocalOCRResult:
    """Shared-pipeline image OCR; a blank image yields ``tesseract-image-blank``."""
    return get_pipeline().ocr_image_from_base64(b64, mime_type)


def terminate_engine() -> None:
    """Release the shared recognition engine; the next OCR call starts a new one."""
    if _pipeline is not None:
        _pipeline.terminate_engine()
    else:
        get_engine_handle().terminate()

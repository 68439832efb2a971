"""
engine.py

Text recognition engines and the shared engine handle.

Two backends implement the same small interface
(``recognize(RawImage) -> RecognitionResult`` plus ``terminate()``):

- TesseractEngine: pytesseract with the bundled German + English models
  (default). Confidence is the mean word confidence (0-100).
- SuryaEngine: Surya detection + recognition, models loaded lazily.
  Confidence is the character-weighted line confidence scaled to 0-100.

The engine is expensive to start, so one instance is shared per process
through EngineHandle: created lazily on first use, initialized at most
once even when callers race, and released only by terminate_engine().
A failed recognition never tears it down.
"""

import logging
import threading
from typing import Callable, List, Optional, Tuple

from local_ocr import config
from local_ocr.schemas import RawImage, RecognitionResult
from local_ocr.utils import OCRError, run_with_timeout

logger = logging.getLogger(__name__)


class RecognitionEngine:
    """Interface every recognition backend implements."""

    name = "unknown"
    version = config.ENGINE_VERSION

    def recognize(self, image: RawImage) -> RecognitionResult:
        raise NotImplementedError

    def terminate(self) -> None:
        """Release engine resources. Default: nothing to release."""


class TesseractEngine(RecognitionEngine):
    """
    Wrapper around the tesseract binary via pytesseract.

    Each call runs a tesseract subprocess, so concurrent calls are safe.
    """

    name = "tesseract"
    version = config.ENGINE_VERSION

    def __init__(
        self,
        languages: str = config.OCR_LANGUAGES,
        tesseract_config: str = config.TESSERACT_CONFIG,
        timeout_s: float = config.OCR_PAGE_TIMEOUT_MS / 1000.0,
    ):
        import pytesseract

        self._pytesseract = pytesseract
        self.languages = languages
        self.tesseract_config = tesseract_config
        self.timeout_s = timeout_s
        self.tesseract_version = str(pytesseract.get_tesseract_version())
        logger.info(
            "Tesseract %s ready (languages=%s)", self.tesseract_version, self.languages
        )

    @staticmethod
    def is_available() -> bool:
        try:
            import pytesseract

            pytesseract.get_tesseract_version()
        except Exception as e:
            logger.warning("Tesseract is not available: %s", e)
            return False
        return True

    def recognize(self, image: RawImage) -> RecognitionResult:
        data = self._pytesseract.image_to_data(
            image.to_pil().convert("L"),
            lang=self.languages,
            config=self.tesseract_config,
            output_type=self._pytesseract.Output.DICT,
            timeout=self.timeout_s,
        )
        return _result_from_tesseract_data(data)


def _result_from_tesseract_data(data: dict) -> RecognitionResult:
    """
    Rebuild page text from tesseract's word table.

    Words on one line are joined by spaces, lines by newlines and
    paragraphs/blocks by a blank line. Confidence is the mean of the
    confidences of recognized words (tesseract reports -1 for layout rows).
    """
    paragraphs: List[List[str]] = []
    current_lines: List[str] = []
    current_words: List[str] = []
    last_par: Optional[Tuple[int, int]] = None
    last_line: Optional[Tuple[int, int, int]] = None
    confidences: List[float] = []

    for i, word in enumerate(data.get("text", [])):
        word = (word or "").strip()
        if not word:
            continue

        par_key = (int(data["block_num"][i]), int(data["par_num"][i]))
        line_key = par_key + (int(data["line_num"][i]),)

        if line_key != last_line and current_words:
            current_lines.append(" ".join(current_words))
            current_words = []
        if par_key != last_par and current_lines:
            paragraphs.append(current_lines)
            current_lines = []

        current_words.append(word)
        last_par, last_line = par_key, line_key

        conf = float(data["conf"][i])
        if conf >= 0:
            confidences.append(conf)

    if current_words:
        current_lines.append(" ".join(current_words))
    if current_lines:
        paragraphs.append(current_lines)

    text = "\n\n".join("\n".join(lines) for lines in paragraphs).strip()
    if not text:
        return RecognitionResult.empty()

    confidence = sum(confidences) / len(confidences) if confidences else 0.0
    return RecognitionResult(text=text, confidence=min(max(confidence, 0.0), 100.0))


class SuryaEngine(RecognitionEngine):
    """
    Wrapper around Surya's detection and recognition models.

    Models are loaded lazily on first use and cached for reuse.
    Calls are serialized because the models are not safe to share
    between threads.
    """

    name = "surya"
    version = "surya-local-v2"

    def __init__(self):
        self._det_predictor = None
        self._rec_predictor = None
        self._models_loaded = False
        self._lock = threading.Lock()

    def _load_models(self) -> None:
        if self._models_loaded:
            return

        try:
            from surya.detection import DetectionPredictor
            from surya.foundation import FoundationPredictor
            from surya.recognition import RecognitionPredictor
        except ImportError:
            raise ImportError(
                "surya-ocr is required for the surya backend. "
                "Install it with: pip install 'local-ocr[surya]'"
            )

        logger.info("Loading Surya models...")
        self._det_predictor = DetectionPredictor()
        self._rec_predictor = RecognitionPredictor(FoundationPredictor())
        self._models_loaded = True
        logger.info("Surya models loaded successfully")

    def recognize(self, image: RawImage) -> RecognitionResult:
        with self._lock:
            self._load_models()
            predictions = self._rec_predictor(
                [image.to_pil().convert("RGB")], det_predictor=self._det_predictor
            )

        lines = []
        for text_line in predictions[0].text_lines if predictions else []:
            text = (text_line.text or "").strip()
            if text:
                lines.append((text, float(getattr(text_line, "confidence", 0.0) or 0.0)))

        text = "\n".join(t for t, _ in lines)
        if not text:
            return RecognitionResult.empty()
        return RecognitionResult(
            text=text, confidence=min(_compute_page_confidence(lines) * 100.0, 100.0)
        )

    def terminate(self) -> None:
        """Release models and free memory."""
        with self._lock:
            self._det_predictor = None
            self._rec_predictor = None
            self._models_loaded = False
        logger.info("Surya models released")


def _compute_page_confidence(lines: List[Tuple[str, float]]) -> float:
    """
    Compute page-level confidence as a weighted average of line confidences.
    Weight is proportional to the number of characters in each line.
    """
    if not lines:
        return 0.0

    total_chars = sum(len(text) for text, _ in lines)
    if total_chars == 0:
        return 0.0

    weighted_sum = sum(conf * len(text) for text, conf in lines)
    return weighted_sum / total_chars


def create_engine(backend: Optional[str] = None) -> RecognitionEngine:
    """Build the configured recognition backend."""
    backend = (backend or config.OCR_BACKEND).lower()
    if backend == "tesseract":
        return TesseractEngine()
    if backend == "surya":
        return SuryaEngine()
    raise OCRError(f"Unknown OCR backend '{backend}'. Expected 'tesseract' or 'surya'.")


class EngineHandle:
    """
    Lazily created, shared recognition engine.

    ``acquire`` returns the live engine or builds one; concurrent callers
    wait for the single in-flight initialization. A failed initialization
    leaves the handle empty so the next call tries again. Only
    ``terminate`` releases the engine.
    """

    def __init__(self, factory: Callable[[], RecognitionEngine] = create_engine):
        self._factory = factory
        self._engine: Optional[RecognitionEngine] = None
        self._lock = threading.Lock()

    @property
    def is_initialized(self) -> bool:
        return self._engine is not None

    def get_or_create(self) -> RecognitionEngine:
        engine = self._engine
        if engine is not None:
            return engine
        with self._lock:
            if self._engine is None:
                logger.info("Initializing recognition engine")
                self._engine = self._factory()
            return self._engine

    def acquire(self, timeout_ms: float = config.OCR_ENGINE_INIT_TIMEOUT_MS) -> RecognitionEngine:
        """
        Return the shared engine, initializing it within ``timeout_ms``.

        Raises:
            OCRTimeoutError: If initialization does not finish in time.
            Exception: Whatever the engine factory raised.
        """
        engine = self._engine
        if engine is not None:
            return engine
        return run_with_timeout(self.get_or_create, timeout_ms, "Recognition engine init timeout")

    def terminate(self) -> None:
        with self._lock:
            engine, self._engine = self._engine, None
        if engine is None:
            return
        try:
            engine.terminate()
        except Exception as e:
            logger.warning("Engine terminate failed: %s", e)
        logger.info("Recognition engine terminated")


def recognize_with_timeout(
    engine: RecognitionEngine,
    image: RawImage,
    timeout_ms: float = config.OCR_PAGE_TIMEOUT_MS,
    label: str = "OCR",
) -> RecognitionResult:
    """
    Run one recognition call under a deadline.

    The returned text is trimmed; a missing confidence counts as 0.

    Raises:
        OCRTimeoutError: If recognition exceeds ``timeout_ms``.
        Exception: Whatever the engine raised.
    """
    result = run_with_timeout(engine.recognize, timeout_ms, f"{label} timeout", image)
    return RecognitionResult(text=(result.text or "").strip(), confidence=result.confidence or 0.0)


# Module-level singleton handle
_handle: Optional[EngineHandle] = None
_handle_lock = threading.Lock()


def get_engine_handle() -> EngineHandle:
    """Get or create the process-wide engine handle."""
    global _handle
    if _handle is None:
        with _handle_lock:
            if _handle is None:
                _handle = EngineHandle()
    return _handle


def terminate_engine() -> None:
    """Explicitly release the shared recognition engine."""
    if _handle is not None:
        _handle.terminate()

"""
Tests for the recognition engines and the shared engine handle.

Tesseract and Surya are mocked; no OCR binary or model is needed.
"""

import threading
import time
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from local_ocr import engine as engine_module
from local_ocr.engine import (
    EngineHandle,
    RecognitionEngine,
    SuryaEngine,
    TesseractEngine,
    _compute_page_confidence,
    _result_from_tesseract_data,
    create_engine,
    recognize_with_timeout,
    terminate_engine,
)
from local_ocr.schemas import RawImage, RecognitionResult
from local_ocr.utils import OCRError, OCRTimeoutError


def _make_raw_image(w=200, h=100):
    """Create a synthetic page with one dark bar."""
    arr = np.ones((h, w, 3), dtype=np.uint8) * 255
    arr[40:60, 20:180] = 0
    return RawImage.from_array(arr)


def _tesseract_data(rows):
    """Build an image_to_data dict from (block, par, line, text, conf) rows."""
    return {
        "block_num": [r[0] for r in rows],
        "par_num": [r[1] for r in rows],
        "line_num": [r[2] for r in rows],
        "text": [r[3] for r in rows],
        "conf": [r[4] for r in rows],
    }


class FakeEngine(RecognitionEngine):
    name = "fake"

    def __init__(self, text="  Urteil  ", confidence=88.0, delay=0.0):
        self.text = text
        self.confidence = confidence
        self.delay = delay
        self.terminated = False

    def recognize(self, image):
        if self.delay:
            time.sleep(self.delay)
        return RecognitionResult(text=self.text, confidence=self.confidence)

    def terminate(self):
        self.terminated = True


class TestTesseractData:
    def test_words_lines_and_paragraphs(self):
        data = _tesseract_data(
            [
                (1, 1, 0, "", -1),
                (1, 1, 1, "Das", 90),
                (1, 1, 1, "Gericht", 80),
                (1, 1, 2, "entscheidet", 85),
                (2, 1, 1, "Urteil", 65),
            ]
        )
        result = _result_from_tesseract_data(data)
        assert result.text == "Das Gericht\nentscheidet\n\nUrteil"
        assert result.confidence == pytest.approx(80.0)

    def test_layout_rows_ignored_for_confidence(self):
        data = _tesseract_data([(1, 1, 0, " ", -1), (1, 1, 1, "Klage", "70.5")])
        result = _result_from_tesseract_data(data)
        assert result.text == "Klage"
        assert result.confidence == pytest.approx(70.5)

    def test_no_words(self):
        result = _result_from_tesseract_data(_tesseract_data([(1, 1, 0, "", -1)]))
        assert result.text == ""
        assert result.confidence == 0.0


class TestTesseractEngine:
    @patch("pytesseract.image_to_data")
    @patch("pytesseract.get_tesseract_version", return_value="5.3.0")
    def test_recognize_uses_word_table(self, mock_version, mock_data):
        mock_data.return_value = _tesseract_data([(1, 1, 1, "Beschluss", 91)])
        engine = TesseractEngine(languages="deu+eng")

        result = engine.recognize(_make_raw_image())

        assert result.text == "Beschluss"
        assert result.confidence == pytest.approx(91.0)
        args, kwargs = mock_data.call_args
        assert args[0].mode == "L"
        assert kwargs["lang"] == "deu+eng"
        assert engine.version == "tesseract-local-v2"

    @patch("pytesseract.get_tesseract_version", side_effect=OSError("not installed"))
    def test_is_available_false_without_binary(self, mock_version):
        assert TesseractEngine.is_available() is False

    @patch("pytesseract.get_tesseract_version", return_value="5.3.0")
    def test_is_available_true(self, mock_version):
        assert TesseractEngine.is_available() is True


class TestSuryaEngine:
    def test_engine_initializes_unloaded(self):
        engine = SuryaEngine()
        assert engine._models_loaded is False
        assert engine._det_predictor is None
        assert engine._rec_predictor is None

    def test_terminate_clears_models(self):
        engine = SuryaEngine()
        engine._models_loaded = True
        engine._det_predictor = "fake"
        engine._rec_predictor = "fake"
        engine.terminate()
        assert engine._models_loaded is False
        assert engine._det_predictor is None

    @patch("local_ocr.engine.SuryaEngine._load_models")
    def test_recognize_scales_confidence(self, mock_load):
        line_a = MagicMock(text="Amtsgericht", confidence=0.9)
        line_b = MagicMock(text="  ", confidence=0.1)
        prediction = MagicMock(text_lines=[line_a, line_b])
        engine = SuryaEngine()
        engine._rec_predictor = MagicMock(return_value=[prediction])

        result = engine.recognize(_make_raw_image())

        assert result.text == "Amtsgericht"
        assert result.confidence == pytest.approx(90.0)


class TestComputePageConfidence:
    def test_empty_lines(self):
        assert _compute_page_confidence([]) == 0.0

    def test_weighted_by_length(self):
        lines = [("ab", 1.0), ("abcdef", 0.5)]
        expected = (2 * 1.0 + 6 * 0.5) / 8
        assert _compute_page_confidence(lines) == pytest.approx(expected)


class TestCreateEngine:
    def test_unknown_backend(self):
        with pytest.raises(OCRError):
            create_engine("abbyy")

    def test_surya_backend_is_lazy(self):
        engine = create_engine("Surya")
        assert isinstance(engine, SuryaEngine)
        assert engine._models_loaded is False


class TestEngineHandle:
    def test_lazy_creation(self):
        factory = MagicMock(return_value=FakeEngine())
        handle = EngineHandle(factory)
        assert handle.is_initialized is False
        factory.assert_not_called()

        engine = handle.acquire()

        assert handle.is_initialized is True
        assert handle.acquire() is engine
        factory.assert_called_once()

    def test_single_flight_initialization(self):
        calls = []

        def slow_factory():
            calls.append(1)
            time.sleep(0.05)
            return FakeEngine()

        handle = EngineHandle(slow_factory)
        results = []
        threads = [
            threading.Thread(target=lambda: results.append(handle.get_or_create()))
            for _ in range(8)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert len(calls) == 1
        assert len(results) == 8
        assert all(r is results[0] for r in results)

    def test_failed_init_retried_on_next_call(self):
        good = FakeEngine()
        factory = MagicMock(side_effect=[RuntimeError("no models"), good])
        handle = EngineHandle(factory)

        with pytest.raises(RuntimeError):
            handle.acquire()
        assert handle.is_initialized is False

        assert handle.acquire() is good
        assert factory.call_count == 2

    def test_init_timeout(self):
        def slow_factory():
            time.sleep(0.5)
            return FakeEngine()

        handle = EngineHandle(slow_factory)
        with pytest.raises(OCRTimeoutError):
            handle.acquire(timeout_ms=20)

    def test_terminate_releases_engine(self):
        engine = FakeEngine()
        handle = EngineHandle(lambda: engine)
        handle.acquire()

        handle.terminate()

        assert engine.terminated is True
        assert handle.is_initialized is False

    def test_terminate_survives_engine_error(self):
        engine = FakeEngine()
        engine.terminate = MagicMock(side_effect=RuntimeError("boom"))
        handle = EngineHandle(lambda: engine)
        handle.acquire()

        handle.terminate()

        assert handle.is_initialized is False

    def test_terminate_without_engine_is_noop(self):
        EngineHandle(MagicMock()).terminate()

    def test_module_terminate_engine(self):
        engine = FakeEngine()
        handle = EngineHandle(lambda: engine)
        handle.acquire()
        with patch.object(engine_module, "_handle", handle):
            terminate_engine()
        assert engine.terminated is True


class TestRecognizeWithTimeout:
    def test_text_trimmed(self):
        result = recognize_with_timeout(FakeEngine(), _make_raw_image())
        assert result.text == "Urteil"
        assert result.confidence == 88.0

    def test_timeout(self):
        with pytest.raises(OCRTimeoutError):
            recognize_with_timeout(FakeEngine(delay=0.5), _make_raw_image(), timeout_ms=20)

    def test_engine_error_propagates(self):
        engine = FakeEngine()
        engine.recognize = MagicMock(side_effect=RuntimeError("tesseract crashed"))
        with pytest.raises(RuntimeError):
            recognize_with_timeout(engine, _make_raw_image())

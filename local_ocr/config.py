"""
config.py

Configuration module for the local OCR pipeline.

Purpose:
--------
Contains all OCR-specific constants and settings used across
the module, including engine parameters, page budgets, timeouts,
confidence thresholds, and security limits.

Design Principle:
-----------------
Configuration is isolated from business logic.
Changing thresholds or budgets should not require editing
core OCR code. Behavioural constants are literals; deployment
knobs (engine backend, languages, workers) can be overridden
from the environment or a .env file.
"""

import os

from dotenv import load_dotenv

load_dotenv()

# -----------------------------
# Engine
# -----------------------------
OCR_BACKEND: str = os.getenv("LOCAL_OCR_BACKEND", "tesseract")  # tesseract | surya
OCR_LANGUAGES: str = os.getenv("LOCAL_OCR_LANGUAGES", "deu+eng")
TESSERACT_CONFIG: str = os.getenv("LOCAL_OCR_TESSERACT_CONFIG", "--oem 3 --psm 3")

ENGINE_VERSION = "tesseract-local-v2"
ENGINE_TAG_PDF = "tesseract-local-ocr-v2"
ENGINE_TAG_IMAGE = "tesseract-local-ocr-image-v2"

# -----------------------------
# Rendering
# -----------------------------
OCR_RENDER_SCALE = 4  # 4x of 72 DPI, roughly 300 DPI
PDF_BASE_DPI = 72

# -----------------------------
# Budgets
# -----------------------------
OCR_MAX_PAGES = 80
OCR_PAGE_TIMEOUT_MS = 30_000
OCR_TOTAL_TIMEOUT_MS = 300_000
OCR_ENGINE_INIT_TIMEOUT_MS = 30_000
OCR_PDF_OPEN_TIMEOUT_MS = 15_000
OCR_PAGE_RENDER_TIMEOUT_MS = 10_000

# -----------------------------
# Confidence Thresholds (0-100)
# -----------------------------
OCR_MIN_CONFIDENCE = 40
OCR_RETRY_CONFIDENCE_THRESHOLD = 65
RETRY_MIN_LENGTH_RATIO = 0.8

# -----------------------------
# Page Classification
# -----------------------------
DARK_LUMINANCE = 128
BLANK_INK_COVERAGE = 0.005
EDGE_DELTA = 50
EDGE_ROW_STEP = 4
TEXT_EDGE_DENSITY = 0.15
TEXT_INK_MIN = 0.01
SCAN_INK_COVERAGE = 0.30
HYBRID_EDGE_DENSITY = 0.05

# -----------------------------
# Preprocessing
# -----------------------------
CONTRAST_CLIP_PERCENT = 0.01
OTSU_DEFAULT_THRESHOLD = 128
DESKEW_MAX_ANGLE = 5.0
DESKEW_ANGLE_STEP = 0.5
DESKEW_MIN_ANGLE = 0.3
DESKEW_COLUMN_STEP = 3

# -----------------------------
# Post-processing
# -----------------------------
POSTPROCESS_MAX_PASSES = 8

# -----------------------------
# Routing
# -----------------------------
SNIFF_PROBE_BASE64_CHARS = 256 * 1024
MAGIC_MIN_BYTES = 12
UNKNOWN_PDF_MIN_TEXT = 20

# -----------------------------
# Security
# -----------------------------
OCR_MAX_BASE64_LENGTH = 50_000_000

# -----------------------------
# Logging
# -----------------------------
LOG_LEVEL: str = os.getenv("LOCAL_OCR_LOG_LEVEL", "INFO")

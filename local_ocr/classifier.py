"""
classifier.py

Page classification from raw pixels.

Labels a rendered page as blank, text, scan or hybrid using two
cheap heuristics: ink coverage (share of dark pixels) and horizontal
edge density (text lines produce many vertical luminance jumps).
Blank pages are skipped by the orchestrator before any OCR work.
"""

import logging

import numpy as np

from local_ocr import config
from local_ocr.schemas import PageClassification, PageType, RawImage

logger = logging.getLogger(__name__)


def luminance(pixels: np.ndarray) -> np.ndarray:
    """ITU-R BT.601 luminance of an RGB(A) buffer as float64."""
    rgb = pixels[..., :3].astype(np.float64)
    return rgb[..., 0] * 0.299 + rgb[..., 1] * 0.587 + rgb[..., 2] * 0.114


def ink_coverage(pixels: np.ndarray) -> float:
    """Fraction of pixels darker than the ink threshold."""
    lum = luminance(pixels)
    return float(np.count_nonzero(lum < config.DARK_LUMINANCE)) / lum.size


def edge_density(pixels: np.ndarray) -> float:
    """
    Share of sampled pixels sitting on a horizontal edge.

    Every 4th row (from row 1, skipping the last row) is compared with
    the rows directly above and below; a pixel counts when either
    difference exceeds the edge delta. The count is normalised by a
    quarter of the total pixel count.
    """
    height, width = pixels.shape[:2]
    if height < 3:
        return 0.0

    channel = pixels[..., 0].astype(np.int16)
    rows = np.arange(1, height - 1, config.EDGE_ROW_STEP)
    current = channel[rows]
    above = channel[rows - 1]
    below = channel[rows + 1]

    edges = (np.abs(current - above) > config.EDGE_DELTA) | (
        np.abs(current - below) > config.EDGE_DELTA
    )
    sampled = (height * width) / config.EDGE_ROW_STEP
    return float(np.count_nonzero(edges)) / sampled


def classify_page(image: RawImage) -> PageClassification:
    """
    Classify one page image.

    Rules, first match wins:
        ink < 0.5%                               -> blank
        edges > 0.15 and 1% < ink < 30%          -> text
        ink > 30%                                -> scan
        edges > 0.05                             -> hybrid
        otherwise                                -> scan
    """
    pixels = image.require_pixels()
    ink = ink_coverage(pixels)

    if ink < config.BLANK_INK_COVERAGE:
        return PageClassification(page_type=PageType.BLANK, text_density=0.0)

    density = edge_density(pixels)

    if density > config.TEXT_EDGE_DENSITY and config.TEXT_INK_MIN < ink < config.SCAN_INK_COVERAGE:
        page_type = PageType.TEXT
    elif ink > config.SCAN_INK_COVERAGE:
        page_type = PageType.SCAN
    elif density > config.HYBRID_EDGE_DENSITY:
        page_type = PageType.HYBRID
    else:
        page_type = PageType.SCAN

    logger.debug("Page classified as %s (ink=%.4f, edges=%.4f)", page_type.value, ink, density)
    return PageClassification(page_type=page_type, text_density=density)

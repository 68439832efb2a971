"""
preprocessor.py

Image preprocessing pipeline to maximize OCR accuracy on scanned
legal documents.

Steps, always in this order:
1. Grayscale (ITU-R BT.601)
2. Contrast stretch between the 1st and 99th percentile
3. 3x3 median denoise (enhanced mode only, used by the retry pass)
4. Otsu binarization
5. Deskew (projection-profile estimate, -5 to +5 degrees)

Every step is a pure function RawImage -> RawImage that returns a new
buffer with the same dimensions. Arrays are handled with numpy,
converting to OpenCV or PIL only for the median filter and rotation.
"""

import logging
import math

import cv2
import numpy as np
from PIL import Image

from local_ocr import config
from local_ocr.classifier import luminance
from local_ocr.schemas import RawImage

logger = logging.getLogger(__name__)


def preprocess_image(image: RawImage, enhanced: bool = False) -> RawImage:
    """
    Run the preprocessing pipeline on a single page.

    Args:
        image: Raw RGBA page image.
        enhanced: Also apply median denoising. The first OCR pass runs
            without it; the confidence-gated retry pass runs with it.

    Returns:
        Binarized RGBA image (R=G=B, values 0 or 255), same size as input.
    """
    result = to_grayscale(image)
    result = stretch_contrast(result)
    logger.debug("Grayscale + contrast done")

    if enhanced:
        result = denoise_median(result)
        logger.debug("Median denoise done")

    result = binarize_otsu(result)
    logger.debug("Binarization done")

    return deskew(result)


def _from_gray(gray: np.ndarray, alpha: np.ndarray) -> RawImage:
    """Replicate a single channel into R, G and B and reattach alpha."""
    out = np.empty(gray.shape + (4,), dtype=np.uint8)
    out[..., 0] = gray
    out[..., 1] = gray
    out[..., 2] = gray
    out[..., 3] = alpha
    return RawImage(width=gray.shape[1], height=gray.shape[0], pixels=out)


def _copy(image: RawImage) -> RawImage:
    return RawImage(width=image.width, height=image.height, pixels=image.require_pixels().copy())


def to_grayscale(image: RawImage) -> RawImage:
    """Y = 0.299R + 0.587G + 0.114B, rounded half up, alpha preserved."""
    pixels = image.require_pixels()
    gray = np.clip(np.floor(luminance(pixels) + 0.5), 0, 255).astype(np.uint8)
    return _from_gray(gray, pixels[..., 3])


def stretch_contrast(image: RawImage) -> RawImage:
    """
    Stretch the gray histogram so the 1st percentile maps to 0 and the
    99th percentile to 255, clipping values outside that range.

    A flat histogram (high <= low) is returned unchanged.
    """
    pixels = image.require_pixels()
    gray = pixels[..., 0]
    total = gray.size

    cumulative = np.cumsum(np.bincount(gray.ravel(), minlength=256))
    low = int(np.searchsorted(cumulative, math.floor(total * config.CONTRAST_CLIP_PERCENT)))
    high = int(
        np.searchsorted(cumulative, math.floor(total * (1.0 - config.CONTRAST_CLIP_PERCENT)))
    )

    if high <= low:
        return _copy(image)

    levels = np.clip(np.arange(256, dtype=np.float64), low, high)
    lut = np.floor((levels - low) / (high - low) * 255.0 + 0.5).astype(np.uint8)
    return _from_gray(lut[gray], pixels[..., 3])


def denoise_median(image: RawImage) -> RawImage:
    """
    3x3 median filter on the gray channel.

    Removes salt-and-pepper noise while keeping stroke edges. The outer
    rows and columns are copied unchanged.
    """
    pixels = image.require_pixels()
    gray = np.ascontiguousarray(pixels[..., 0])
    if gray.shape[0] < 3 or gray.shape[1] < 3:
        return _copy(image)

    filtered = cv2.medianBlur(gray, 3)
    filtered[0, :] = gray[0, :]
    filtered[-1, :] = gray[-1, :]
    filtered[:, 0] = gray[:, 0]
    filtered[:, -1] = gray[:, -1]
    return _from_gray(filtered, pixels[..., 3])


def otsu_threshold(gray: np.ndarray) -> int:
    """
    Otsu's threshold: the t maximizing w_bg * w_fg * (mean_bg - mean_fg)^2,
    where the background class is every level <= t.

    Computed in one cumulative pass over the 256-bin histogram. When the
    maximum spans a run of empty bins the midpoint of that run is
    returned; every t in the run splits the pixels identically.
    Returns 128 when no split separates two non-empty classes.
    """
    hist = np.bincount(gray.ravel(), minlength=256).astype(np.float64)
    total = hist.sum()
    levels = np.arange(256, dtype=np.float64)

    weight_bg = np.cumsum(hist)
    sum_bg = np.cumsum(levels * hist)
    weight_fg = total - weight_bg
    valid = (weight_bg > 0) & (weight_fg > 0)

    variance = np.zeros(256, dtype=np.float64)
    if np.any(valid):
        mean_bg = sum_bg[valid] / weight_bg[valid]
        mean_fg = (sum_bg[-1] - sum_bg[valid]) / weight_fg[valid]
        variance[valid] = weight_bg[valid] * weight_fg[valid] * (mean_bg - mean_fg) ** 2

    best = variance.max()
    if best <= 0:
        return config.OTSU_DEFAULT_THRESHOLD

    first = int(np.argmax(variance))
    last = first
    while last + 1 < 256 and hist[last + 1] == 0 and variance[last + 1] == best:
        last += 1
    return (first + last) // 2


def binarize_otsu(image: RawImage) -> RawImage:
    """Map every pixel above the Otsu threshold to white, the rest to black."""
    pixels = image.require_pixels()
    gray = pixels[..., 0]
    threshold = otsu_threshold(gray)
    binary = np.where(gray > threshold, 255, 0).astype(np.uint8)
    logger.debug("Otsu threshold: %d", threshold)
    return _from_gray(binary, pixels[..., 3])


def _candidate_angles():
    steps = int(round(config.DESKEW_MAX_ANGLE / config.DESKEW_ANGLE_STEP))
    return [k * config.DESKEW_ANGLE_STEP for k in range(-steps, steps + 1)]


def estimate_skew_angle(image: RawImage) -> float:
    """
    Estimate page skew in degrees from a binarized image.

    For each candidate angle the central window (rows 20-80%, columns
    10-90%, every 3rd column) is sampled through a rotation about the
    image centre, and the variance of dark-pixel counts per row is
    measured. Aligned text lines give the highest variance. Positive
    angles mean the text runs downward to the right.
    """
    pixels = image.require_pixels()
    height, width = pixels.shape[:2]
    dark = pixels[..., 0] < config.DARK_LUMINANCE

    y_start, y_end = int(height * 0.2), int(height * 0.8)
    x_start, x_end = int(width * 0.1), int(width * 0.9)
    if y_end <= y_start or x_end <= x_start:
        return 0.0

    cx, cy = width / 2.0, height / 2.0
    dy = np.arange(y_start, y_end, dtype=np.float64)[:, None] - cy
    dx = np.arange(x_start, x_end, config.DESKEW_COLUMN_STEP, dtype=np.float64)[None, :] - cx

    best_angle = 0.0
    best_variance = 0.0

    for angle in _candidate_angles():
        rad = math.radians(angle)
        cos_a, sin_a = math.cos(rad), math.sin(rad)
        rx = np.floor(dx * cos_a - dy * sin_a + cx + 0.5).astype(np.int64)
        ry = np.floor(dx * sin_a + dy * cos_a + cy + 0.5).astype(np.int64)

        inside = (rx >= 0) & (rx < width) & (ry >= 0) & (ry < height)
        hits = np.zeros(rx.shape, dtype=bool)
        hits[inside] = dark[ry[inside], rx[inside]]

        row_variance = float(hits.sum(axis=1).var())
        if row_variance > best_variance:
            best_variance = row_variance
            best_angle = angle

    return best_angle


def deskew(image: RawImage) -> RawImage:
    """
    Detect and undo small rotations (up to 5 degrees).

    Angles under 0.3 degrees are treated as noise. The page is rotated
    about its centre with nearest-neighbour sampling so it stays
    binary; uncovered corners are filled white.
    """
    angle = estimate_skew_angle(image)
    if abs(angle) < config.DESKEW_MIN_ANGLE:
        return _copy(image)

    logger.info("Deskewing by %.1f degrees", angle)
    rotated = image.to_pil().rotate(
        angle,
        resample=Image.NEAREST,
        expand=False,
        fillcolor=(255, 255, 255, 255),
    )
    return RawImage.from_pil(rotated)

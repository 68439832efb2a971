"""
Tests for the OCR preprocessor module.

All steps operate on RawImage RGBA buffers; test pages are built
with numpy and rotated with PIL where a skew is needed.
"""

from unittest.mock import patch

import numpy as np
import pytest
from PIL import Image

from local_ocr import preprocessor
from local_ocr.preprocessor import (
    binarize_otsu,
    denoise_median,
    deskew,
    estimate_skew_angle,
    otsu_threshold,
    preprocess_image,
    stretch_contrast,
    to_grayscale,
)
from local_ocr.schemas import RawImage


def _make_test_image(w=400, h=500):
    """Create a synthetic page with some text-like dark bars."""
    arr = np.ones((h, w, 3), dtype=np.uint8) * 255
    arr[100:120, 50:350] = 0
    arr[140:160, 50:300] = 0
    arr[180:200, 100:350] = 0
    return RawImage.from_array(arr)


def _make_lined_page(w=600, h=600, angle=0.0):
    """White page with evenly spaced black lines, optionally rotated by PIL."""
    arr = np.full((h, w), 255, dtype=np.uint8)
    for y in range(60, h - 60, 20):
        arr[y:y + 3, 60:w - 60] = 0
    img = Image.fromarray(arr).convert("RGBA")
    if angle:
        img = img.rotate(angle, resample=Image.NEAREST, fillcolor=(255, 255, 255, 255))
    return RawImage.from_pil(img)


def _gray_image(values):
    return RawImage.from_array(np.asarray(values, dtype=np.uint8))


class TestToGrayscale:
    def test_bt601_weights_round_half_up(self):
        arr = np.zeros((2, 2, 3), dtype=np.uint8)
        arr[0, 0] = (255, 0, 0)
        arr[0, 1] = (0, 255, 0)
        arr[1, 0] = (0, 0, 255)
        arr[1, 1] = (100, 100, 100)
        result = to_grayscale(RawImage.from_array(arr)).pixels

        assert result[0, 0, 0] == 76
        assert result[0, 1, 0] == 150
        assert result[1, 0, 0] == 29
        assert result[1, 1, 0] == 100

    def test_channels_equal_and_alpha_kept(self):
        arr = np.zeros((3, 3, 4), dtype=np.uint8)
        arr[..., 0] = 200
        arr[..., 3] = 77
        result = to_grayscale(RawImage.from_array(arr)).pixels
        assert np.array_equal(result[..., 0], result[..., 1])
        assert np.array_equal(result[..., 1], result[..., 2])
        assert np.all(result[..., 3] == 77)

    def test_input_not_modified(self):
        img = _make_test_image()
        before = img.pixels.copy()
        to_grayscale(img)
        assert np.array_equal(img.pixels, before)


class TestStretchContrast:
    def test_low_contrast_stretched_to_full_range(self):
        values = np.tile(np.arange(100, 151, dtype=np.uint8), (20, 1))
        result = stretch_contrast(to_grayscale(_gray_image(values))).pixels[..., 0]
        assert result.min() == 0
        assert result.max() == 255

    def test_flat_image_unchanged(self):
        img = _gray_image(np.full((10, 10), 90))
        result = stretch_contrast(img)
        assert np.array_equal(result.pixels, img.pixels)
        assert result.pixels is not img.pixels


class TestDenoiseMedian:
    def test_removes_isolated_speck(self):
        arr = np.zeros((9, 9), dtype=np.uint8)
        arr[4, 4] = 255
        result = denoise_median(_gray_image(arr)).pixels[..., 0]
        assert result[4, 4] == 0

    def test_border_pixels_copied(self):
        arr = np.zeros((9, 9), dtype=np.uint8)
        arr[0, 4] = 255
        arr[4, 8] = 255
        result = denoise_median(_gray_image(arr)).pixels[..., 0]
        assert result[0, 4] == 255
        assert result[4, 8] == 255

    def test_tiny_image_returned_as_copy(self):
        img = _gray_image(np.full((2, 2), 40))
        result = denoise_median(img)
        assert np.array_equal(result.pixels, img.pixels)


class TestOtsu:
    def test_bimodal_threshold_between_clusters(self):
        arr = np.full((20, 20), 50, dtype=np.uint8)
        arr[:, 10:] = 200
        threshold = otsu_threshold(arr)
        assert 50 <= threshold < 200

    def test_bimodal_binarization(self):
        arr = np.full((20, 20), 50, dtype=np.uint8)
        arr[:, 10:] = 200
        result = binarize_otsu(_gray_image(arr)).pixels[..., 0]
        assert np.all(result[:, :10] == 0)
        assert np.all(result[:, 10:] == 255)

    def test_single_value_uses_default(self):
        assert otsu_threshold(np.full((5, 5), 77, dtype=np.uint8)) == 128

    def test_output_is_binary(self):
        img = to_grayscale(_make_test_image())
        values = np.unique(binarize_otsu(img).pixels[..., 0])
        assert set(values.tolist()) <= {0, 255}


class TestDeskew:
    def test_straight_page_angle_zero(self):
        assert estimate_skew_angle(_make_lined_page()) == 0.0

    def test_straight_page_not_rotated(self):
        img = _make_lined_page()
        result = deskew(img)
        assert np.array_equal(result.pixels, img.pixels)

    def test_detects_clockwise_skew(self):
        skewed = _make_lined_page(angle=-3.0)
        angle = estimate_skew_angle(skewed)
        assert angle > 0
        assert abs(angle - 3.0) <= 1.0

    def test_deskew_straightens_page(self):
        skewed = _make_lined_page(angle=-3.0)
        result = deskew(skewed)
        assert result.width == skewed.width
        assert result.height == skewed.height
        assert abs(estimate_skew_angle(result)) < abs(estimate_skew_angle(skewed))

    def test_blank_page_angle_zero(self):
        img = RawImage.from_array(np.full((50, 50), 255, dtype=np.uint8))
        assert estimate_skew_angle(img) == 0.0


class TestPreprocessImage:
    def test_keeps_dimensions(self):
        img = _make_test_image(w=321, h=457)
        result = preprocess_image(img)
        assert (result.width, result.height) == (321, 457)
        assert result.pixels.shape == (457, 321, 4)

    def test_output_binary_gray(self):
        result = preprocess_image(_make_test_image()).pixels
        assert set(np.unique(result[..., 0]).tolist()) <= {0, 255}
        assert np.array_equal(result[..., 0], result[..., 2])

    @pytest.mark.parametrize("enhanced", [False, True])
    def test_denoise_only_when_enhanced(self, enhanced):
        with patch(
            "local_ocr.preprocessor.denoise_median", wraps=preprocessor.denoise_median
        ) as mock_denoise:
            preprocess_image(_make_test_image(), enhanced=enhanced)
        assert mock_denoise.called is enhanced

    def test_released_image_rejected(self):
        img = _make_test_image()
        img.close()
        with pytest.raises(ValueError):
            preprocess_image(img)

"""Tests for image preprocessing service."""

import pytest
import numpy as np
from PIL import Image
import io

from kyc_service.services.preprocessing import ImagePreprocessor
from kyc_service.config import get_settings


@pytest.fixture
def preprocessor():
    """Create preprocessor instance."""
    return ImagePreprocessor()


@pytest.fixture
def sample_image_bytes():
    """Create a simple test image."""
    # Create a 200x100 white image with some text-like pattern
    img = Image.new("RGB", (200, 100), color="white")

    # Add some variation
    pixels = img.load()
    for i in range(50, 150):
        for j in range(30, 70):
            pixels[i, j] = (0, 0, 0)  # Black rectangle

    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def large_image_bytes():
    """Create a large test image (2000px wide)."""
    img = Image.new("RGB", (2000, 1000), color="white")
    buffer = io.BytesIO()
    img.save(buffer, format="PNG")
    return buffer.getvalue()


class TestImagePreprocessor:
    """Test ImagePreprocessor class."""

    def test_validate_valid_image(self, preprocessor, sample_image_bytes):
        """Test validation passes for valid image."""
        is_valid, error = preprocessor.validate_image(sample_image_bytes, "license.png")
        assert is_valid is True
        assert error == ""

    def test_validate_invalid_extension(self, preprocessor, sample_image_bytes):
        """Test validation fails for extensions outside the allowed set."""
        is_valid, error = preprocessor.validate_image(sample_image_bytes, "license.gif")
        assert is_valid is False
        assert "Allowed formats" in error

    def test_validate_missing_extension(self, preprocessor, sample_image_bytes):
        is_valid, error = preprocessor.validate_image(sample_image_bytes, "unknown")
        assert is_valid is False
        assert "Invalid file type" in error

    def test_validate_image_too_small(self, preprocessor):
        """Test validation fails for too small image."""
        # Create 50x50 image (below minimum)
        img = Image.new("RGB", (50, 50), color="white")
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")

        is_valid, error = preprocessor.validate_image(buffer.getvalue(), "small.png")
        assert is_valid is False
        assert "too small" in error.lower()

    def test_validate_oversized_upload(self, preprocessor, sample_image_bytes, monkeypatch):
        monkeypatch.setattr(preprocessor.settings, "max_upload_size_mb", 0)
        is_valid, error = preprocessor.validate_image(sample_image_bytes, "license.png")
        assert is_valid is False
        assert "upload limit" in error

    def test_get_image_info(self, preprocessor, sample_image_bytes):
        """Test image info extraction."""
        info = preprocessor.get_image_info(sample_image_bytes)

        assert info["format"] == "PNG"
        assert info["width"] == 200
        assert info["height"] == 100
        assert info["size_bytes"] > 0

    def test_load_image_converts_to_bgr(self, preprocessor):
        """RGBA and palette images come back as 3-channel BGR."""
        img = Image.new("RGBA", (120, 120), color=(255, 0, 0, 128))
        buffer = io.BytesIO()
        img.save(buffer, format="PNG")

        image = preprocessor.load_image(buffer.getvalue())

        assert image.shape == (120, 120, 3)
        assert tuple(image[0, 0]) == (0, 0, 255)

    def test_prepare_returns_bgr_array(self, preprocessor, sample_image_bytes):
        """Test preprocessing returns a 3-channel array."""
        result, metadata = preprocessor.prepare_for_ocr(sample_image_bytes)

        assert isinstance(result, np.ndarray)
        assert len(result.shape) == 3  # H, W, C
        assert result.shape[2] == 3  # BGR channels
        assert metadata["original_size"] == (100, 200)

    def test_prepare_downscales_large_image(self, preprocessor, large_image_bytes):
        """Test that large images are downscaled."""
        result, metadata = preprocessor.prepare_for_ocr(large_image_bytes)

        settings = get_settings()
        assert max(result.shape[:2]) <= settings.max_image_dimension
        assert "downscale" in metadata["preprocessing_steps"]
        assert metadata["resized_to"] == result.shape[:2]

    def test_prepare_does_not_downscale_small_image(self, preprocessor, sample_image_bytes):
        """Test that small images are not resized."""
        result, metadata = preprocessor.prepare_for_ocr(sample_image_bytes)

        # Original image is 200px wide, well under limit
        assert "downscale" not in metadata["preprocessing_steps"]
        assert result.shape[:2] == (100, 200)

    def test_prepare_applies_grayscale_and_clahe(self, preprocessor, sample_image_bytes):
        """Test preprocessing applies expected steps."""
        result, metadata = preprocessor.prepare_for_ocr(sample_image_bytes)

        assert "grayscale" in metadata["preprocessing_steps"]
        assert "clahe" in metadata["preprocessing_steps"]

    def test_denoise_only_for_poor_quality(self, preprocessor, sample_image_bytes):
        """A flat image is low contrast and gets denoised; a sharp one does not."""
        flat = Image.new("RGB", (200, 100), color=(128, 128, 128))
        buffer = io.BytesIO()
        flat.save(buffer, format="PNG")

        _, flat_metadata = preprocessor.prepare_for_ocr(buffer.getvalue())
        _, sharp_metadata = preprocessor.prepare_for_ocr(sample_image_bytes)

        assert flat_metadata["quality"]["is_low_contrast"] is True
        assert "denoise" in flat_metadata["preprocessing_steps"]
        assert sharp_metadata["quality"]["is_low_contrast"] is False
        assert "denoise" not in sharp_metadata["preprocessing_steps"]


class TestImageValidation:
    """Test image validation edge cases."""

    def test_invalid_image_data(self, preprocessor):
        """Test handling of invalid image data."""
        is_valid, error = preprocessor.validate_image(b"not an image", "test.png")
        assert is_valid is False
        assert "Unable to read" in error

    def test_empty_image_data(self, preprocessor):
        """Test handling of empty image data."""
        is_valid, error = preprocessor.validate_image(b"", "test.png")
        assert is_valid is False

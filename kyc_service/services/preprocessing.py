"""Image validation and OCR preprocessing for uploaded documents.

- Upload validation (extension, size, readable, minimum dimensions)
- Format normalization via PIL (RGBA/palette/grayscale -> BGR)
- Quality assessment (blur, contrast) to decide on denoising
- Grayscale + CLAHE enhancement before local OCR
"""

import cv2
import numpy as np
from PIL import Image
import io
from typing import Tuple
from dataclasses import dataclass
import logging

from ..config import get_settings

logger = logging.getLogger(__name__)

# Quality thresholds for deciding whether to denoise
BLUR_THRESHOLD = 50.0
CONTRAST_THRESHOLD = 20.0


@dataclass
class ImageQuality:
    """Image quality assessment results."""
    blur_score: float  # Laplacian variance - higher = sharper
    contrast_score: float  # Std deviation - higher = more contrast
    is_blurry: bool
    is_low_contrast: bool


class ImagePreprocessor:
    """Validates uploads and prepares document images for OCR."""

    def __init__(self):
        self.settings = get_settings()

    def validate_image(self, image_bytes: bytes, filename: str) -> Tuple[bool, str]:
        """
        Validate an uploaded image.

        Returns:
            Tuple of (is_valid, error_message)
        """
        ext = filename.rsplit(".", 1)[-1].lower() if "." in filename else ""
        if ext not in self.settings.allowed_extensions:
            allowed = ", ".join(sorted(self.settings.allowed_extensions)).upper()
            return False, f"Invalid file type. Allowed formats: {allowed}"

        size_mb = len(image_bytes) / (1024 * 1024)
        if size_mb > self.settings.max_upload_size_mb:
            return False, f"Image exceeds {self.settings.max_upload_size_mb}MB upload limit. Please resize or compress."

        try:
            info = self.get_image_info(image_bytes)
        except Exception as e:
            return False, f"Unable to read image: {str(e)}"

        min_dim = self.settings.min_image_dimension
        if info["width"] < min_dim or info["height"] < min_dim:
            return False, f"Image too small. Minimum dimensions: {min_dim}x{min_dim} pixels."

        return True, ""

    def get_image_info(self, image_bytes: bytes) -> dict:
        """Get basic image information without full preprocessing."""
        pil_image = Image.open(io.BytesIO(image_bytes))
        return {
            "format": pil_image.format,
            "mode": pil_image.mode,
            "width": pil_image.width,
            "height": pil_image.height,
            "size_bytes": len(image_bytes),
            "size_mb": len(image_bytes) / (1024 * 1024)
        }

    def load_image(self, image_bytes: bytes) -> np.ndarray:
        """Load image bytes of any PIL-supported format as a BGR array."""
        pil_image = Image.open(io.BytesIO(image_bytes))

        # Convert to RGB (handles RGBA PNGs, palette images, etc.)
        if pil_image.mode != "RGB":
            pil_image = pil_image.convert("RGB")

        image = np.array(pil_image)
        return cv2.cvtColor(image, cv2.COLOR_RGB2BGR)

    def prepare_for_ocr(self, image_bytes: bytes) -> Tuple[np.ndarray, dict]:
        """
        Preprocess a document image for OCR.

        Pipeline: load -> downscale -> grayscale -> denoise (if needed) -> CLAHE.

        Returns:
            Tuple of (BGR image, metadata dict)
        """
        image = self.load_image(image_bytes)
        metadata = {
            "original_size": image.shape[:2],
            "preprocessing_steps": [],
        }

        image, resized = self._downscale(image)
        if resized:
            metadata["preprocessing_steps"].append("downscale")
            metadata["resized_to"] = image.shape[:2]

        quality = self._assess_quality(image)
        metadata["quality"] = {
            "blur_score": quality.blur_score,
            "contrast_score": quality.contrast_score,
            "is_blurry": quality.is_blurry,
            "is_low_contrast": quality.is_low_contrast,
        }

        gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        metadata["preprocessing_steps"].append("grayscale")

        # Denoise only when needed (expensive)
        if quality.is_blurry or quality.is_low_contrast:
            gray = cv2.fastNlMeansDenoising(gray, None, h=10, templateWindowSize=7, searchWindowSize=21)
            metadata["preprocessing_steps"].append("denoise")

        clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
        enhanced = clahe.apply(gray)
        metadata["preprocessing_steps"].append("clahe")

        return cv2.cvtColor(enhanced, cv2.COLOR_GRAY2BGR), metadata

    def _assess_quality(self, image: np.ndarray) -> ImageQuality:
        """Assess image quality (blur, contrast) to guide preprocessing."""
        if len(image.shape) == 3:
            gray = cv2.cvtColor(image, cv2.COLOR_BGR2GRAY)
        else:
            gray = image

        blur_score = float(cv2.Laplacian(gray, cv2.CV_64F).var())
        contrast_score = float(gray.std())

        return ImageQuality(
            blur_score=blur_score,
            contrast_score=contrast_score,
            is_blurry=blur_score < BLUR_THRESHOLD,
            is_low_contrast=contrast_score < CONTRAST_THRESHOLD,
        )

    def _downscale(self, image: np.ndarray) -> Tuple[np.ndarray, bool]:
        """Clamp the max dimension to keep OCR fast."""
        height, width = image.shape[:2]
        max_dim = self.settings.max_image_dimension

        if max(width, height) <= max_dim:
            return image, False

        scale = max_dim / max(width, height)
        new_size = (int(width * scale), int(height * scale))
        return cv2.resize(image, new_size, interpolation=cv2.INTER_AREA), True

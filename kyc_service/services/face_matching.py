"""Face matching between a license photo and a live selfie.

Classical pipeline:
- Haar cascade face isolation, tried at 0/90/180/270 degrees
- Grayscale + CLAHE normalization to a fixed 128x128 canvas
- ORB keypoints, kNN Hamming matching with Lowe's ratio test
"""

import os
from dataclasses import dataclass
from typing import Optional, Tuple, List
import logging

import cv2
import numpy as np

from ..config import get_settings

logger = logging.getLogger(__name__)

CASCADE_FILENAME = "haarcascade_frontalface_default.xml"

# Clockwise rotations tried during face isolation
ROTATIONS = {
    0: None,
    90: cv2.ROTATE_90_CLOCKWISE,
    180: cv2.ROTATE_180,
    270: cv2.ROTATE_90_COUNTERCLOCKWISE,
}

LOWE_RATIO = 0.75


@dataclass
class FaceMatchOutcome:
    """Result of comparing two face images."""
    match: bool
    score: int
    message: str
    license_face: Optional[bytes] = None  # PNG-encoded processed crop
    selfie_face: Optional[bytes] = None

    @classmethod
    def failed(cls, message: str, license_face: Optional[bytes] = None) -> "FaceMatchOutcome":
        """Non-matching outcome with score 0."""
        return cls(match=False, score=0, message=message, license_face=license_face)


def encode_png(image: np.ndarray) -> Optional[bytes]:
    """Encode an image as PNG bytes."""
    if image is None or image.size == 0:
        return None
    ok, buffer = cv2.imencode(".png", image)
    if not ok:
        return None
    return buffer.tobytes()


def load_face_cascade(path: Optional[str] = None) -> Optional["cv2.CascadeClassifier"]:
    """
    Load the frontal face cascade.

    Returns None if the model file is missing or empty; callers fall back to
    a center crop in that case.
    """
    candidates = [path] if path else [
        os.path.join(cv2.data.haarcascades, CASCADE_FILENAME),
        os.path.join(os.getcwd(), CASCADE_FILENAME),
    ]

    for candidate in candidates:
        if not candidate or not os.path.exists(candidate):
            continue
        try:
            cascade = cv2.CascadeClassifier(candidate)
        except cv2.error as e:
            logger.error(f"Could not load face cascade from {candidate}: {e}")
            continue
        if cascade.empty():
            logger.warning(f"Face cascade file is empty or invalid: {candidate}")
            continue
        logger.info(f"Face cascade loaded from: {candidate}")
        return cascade

    logger.warning("Face cascade not found - face isolation will use center-crop fallback")
    return None


class FaceMatcher:
    """Owns the face detector and compares face images."""

    def __init__(self, cascade=None, load_default: bool = True):
        """
        Args:
            cascade: Pre-loaded detector (anything with detectMultiScale)
            load_default: Load the configured cascade when none is given
        """
        self.settings = get_settings()
        if cascade is None and load_default:
            cascade = load_face_cascade(self.settings.face_cascade_path)
        self._cascade = cascade

    @property
    def detector_ready(self) -> bool:
        """Whether a face detector is loaded."""
        return self._cascade is not None

    def compare(self, image_a: bytes, image_b: bytes) -> FaceMatchOutcome:
        """
        Compare a license photo (A) against a selfie (B).

        Never raises; errors become a non-matching outcome.
        """
        try:
            face_a = self.isolate_face(image_a)
            if face_a is None:
                return FaceMatchOutcome.failed(
                    "Photo verification failed. No face detected in license image."
                )

            face_b = self.isolate_face(image_b)
            if face_b is None:
                return FaceMatchOutcome.failed(
                    "Photo verification failed. No face detected in selfie image.",
                    license_face=encode_png(face_a),
                )

            processed_a = self.preprocess(face_a)
            processed_b = self.preprocess(face_b)

            score, detail = self.compare_features(processed_a, processed_b)
            threshold = self.settings.face_match_threshold
            total = self.settings.face_match_count
            match = score >= threshold

            if match:
                message = f"Photo verification passed. Match score: {score}/{total}"
            else:
                message = (
                    f"Photo verification failed. Insufficient matches: {score}/{total} "
                    f"(required: {threshold})"
                )
            logger.info(f"Face comparison: {detail} match={match}")

            return FaceMatchOutcome(
                match=match,
                score=score,
                message=message,
                license_face=encode_png(processed_a),
                selfie_face=encode_png(processed_b),
            )

        except Exception as e:
            logger.exception(f"Error in face matching: {e}")
            return FaceMatchOutcome.failed(f"Face matching error: {e}")

    def isolate_face(self, image_bytes: bytes) -> Optional[np.ndarray]:
        """
        Find the largest face across the four right-angle rotations and crop it.

        Returns:
            Cropped BGR face region, or None if no face was found
        """
        image = self._decode(image_bytes)
        if image is None:
            logger.warning("Failed to decode image")
            return None

        if self._cascade is None:
            return self._center_crop(image)

        best_crop = None
        max_area = 0

        try:
            for angle, flag in ROTATIONS.items():
                rotated = image if flag is None else cv2.rotate(image, flag)
                gray = cv2.cvtColor(rotated, cv2.COLOR_BGR2GRAY)

                faces = self._cascade.detectMultiScale(
                    gray,
                    scaleFactor=1.1,
                    minNeighbors=4,
                    minSize=(30, 30),
                )

                for (x, y, w, h) in faces:
                    area = int(w) * int(h)
                    if area > max_area:
                        max_area = area
                        best_crop = rotated[y:y + h, x:x + w].copy()
                        logger.debug(f"Face candidate at {angle} deg: {w}x{h}")
        except Exception as e:
            logger.error(f"Face detection failed: {e}")
            return None

        return best_crop

    def preprocess(self, face: np.ndarray) -> np.ndarray:
        """Grayscale + CLAHE, back to 3 channels, resized to the crop size."""
        size = (self.settings.face_crop_size, self.settings.face_crop_size)
        try:
            gray = cv2.cvtColor(face, cv2.COLOR_BGR2GRAY)
            clahe = cv2.createCLAHE(clipLimit=2.0, tileGridSize=(8, 8))
            equalized = clahe.apply(gray)
            bgr = cv2.cvtColor(equalized, cv2.COLOR_GRAY2BGR)
            return cv2.resize(bgr, size)
        except Exception as e:
            logger.error(f"Error preprocessing face: {e}")
            return cv2.resize(face, size)

    def compare_features(self, face_a: np.ndarray, face_b: np.ndarray) -> Tuple[int, str]:
        """
        Count good ORB matches between two normalized faces.

        Returns:
            Tuple of (score in 0..match_count, message)
        """
        match_count = self.settings.face_match_count

        orb = cv2.ORB_create()
        kp_a, des_a = orb.detectAndCompute(face_a, None)
        kp_b, des_b = orb.detectAndCompute(face_b, None)

        if des_a is None or des_b is None or len(kp_a) == 0 or len(kp_b) == 0:
            return 0, "Face features could not be extracted."

        matcher = cv2.BFMatcher(cv2.NORM_HAMMING, crossCheck=False)
        pairs = matcher.knnMatch(des_a, des_b, k=2)

        if not pairs:
            return 0, "No feature matches found."

        good = self._ratio_test(pairs)
        good = sorted(good, key=lambda m: m.distance)[:match_count]

        score = len(good)
        if score < match_count:
            return score, f"Insufficient matches: {score}/{match_count}."
        return score, f"Matches found: {score}/{match_count}."

    @staticmethod
    def _ratio_test(pairs) -> List:
        """Lowe's ratio test over kNN (k=2) match pairs."""
        good = []
        for pair in pairs:
            if len(pair) != 2:
                continue
            m, n = pair
            if m.distance < LOWE_RATIO * n.distance:
                good.append(m)
        return good

    @staticmethod
    def _decode(image_bytes: bytes) -> Optional[np.ndarray]:
        """Decode to a 3-channel BGR raster, dropping alpha."""
        if not image_bytes:
            return None
        buffer = np.frombuffer(image_bytes, dtype=np.uint8)
        image = cv2.imdecode(buffer, cv2.IMREAD_UNCHANGED)
        if image is None or image.size == 0:
            return None
        if image.dtype != np.uint8:
            image = cv2.convertScaleAbs(image, alpha=255.0 / max(float(image.max()), 1.0))
        if image.ndim == 2:
            return cv2.cvtColor(image, cv2.COLOR_GRAY2BGR)
        if image.shape[2] == 4:
            return cv2.cvtColor(image, cv2.COLOR_BGRA2BGR)
        return image

    @staticmethod
    def _center_crop(image: np.ndarray) -> Optional[np.ndarray]:
        """Center-weighted square crop used when no detector is loaded."""
        height, width = image.shape[:2]
        center_x = width // 2
        center_y = height // 3
        size = min(width, height) // 2

        x = max(0, center_x - size // 2)
        y = max(0, center_y - size // 2)
        w = min(size, width - x)
        h = min(size, height - y)

        if w <= 0 or h <= 0:
            return None
        return image[y:y + h, x:x + w].copy()

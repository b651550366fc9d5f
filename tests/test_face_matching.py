"""Tests for face isolation and ORB face matching."""

from types import SimpleNamespace

import cv2
import numpy as np
import pytest

from kyc_service.services.face_matching import (
    FaceMatcher,
    FaceMatchOutcome,
    encode_png,
    load_face_cascade,
)


def png_bytes(image: np.ndarray) -> bytes:
    """Encode an array as PNG bytes."""
    ok, buffer = cv2.imencode(".png", image)
    assert ok
    return buffer.tobytes()


@pytest.fixture
def noise_image():
    """Deterministic textured image, 200 wide x 300 high."""
    rng = np.random.default_rng(42)
    return rng.integers(0, 256, size=(300, 200, 3), dtype=np.uint8)


@pytest.fixture
def blank_image():
    """Uniform gray image with no features."""
    return np.full((240, 320, 3), 128, dtype=np.uint8)


class FakeCascade:
    """Detector stub returning preset rectangles per call (one call per rotation)."""

    def __init__(self, detections):
        self.detections = list(detections)
        self.calls = []

    def detectMultiScale(self, gray, scaleFactor, minNeighbors, minSize):
        self.calls.append({
            "shape": gray.shape,
            "scaleFactor": scaleFactor,
            "minNeighbors": minNeighbors,
            "minSize": minSize,
        })
        index = len(self.calls) - 1
        return self.detections[index % len(self.detections)]


class BrightnessCascade:
    """Finds a 'face' only in bright images."""

    def detectMultiScale(self, gray, **kwargs):
        if gray.mean() > 127:
            return [(0, 0, 50, 50)]
        return []


class BrokenCascade:
    """Detector that always fails."""

    def detectMultiScale(self, gray, **kwargs):
        raise RuntimeError("detector exploded")


class TestLoadCascade:
    """Test cascade loading."""

    def test_missing_file_returns_none(self, tmp_path):
        assert load_face_cascade(str(tmp_path / "missing.xml")) is None

    def test_bundled_cascade_loads(self):
        cascade = load_face_cascade()
        if cascade is None:
            pytest.skip("OpenCV build ships without Haar cascades")
        assert not cascade.empty()


class TestIsolateFace:
    """Test face isolation."""

    def test_center_crop_without_detector(self, noise_image):
        """Side = min(w, h) // 2, centered horizontally, upper third vertically."""
        matcher = FaceMatcher(cascade=None, load_default=False)
        assert matcher.detector_ready is False

        crop = matcher.isolate_face(png_bytes(noise_image))

        assert crop.shape == (100, 100, 3)
        np.testing.assert_array_equal(crop, noise_image[50:150, 50:150])

    def test_tries_all_rotations_with_detector_parameters(self, noise_image):
        cascade = FakeCascade([[]])
        matcher = FaceMatcher(cascade=cascade)

        assert matcher.isolate_face(png_bytes(noise_image)) is None
        assert [call["shape"] for call in cascade.calls] == [(300, 200), (200, 300), (300, 200), (200, 300)]
        assert all(call["scaleFactor"] == 1.1 for call in cascade.calls)
        assert all(call["minNeighbors"] == 4 for call in cascade.calls)
        assert all(call["minSize"] == (30, 30) for call in cascade.calls)

    def test_keeps_largest_face_across_rotations(self, noise_image):
        cascade = FakeCascade([
            [(0, 0, 40, 40)],
            [(10, 10, 30, 30)],
            [(5, 20, 60, 60), (0, 0, 35, 35)],
            [],
        ])
        matcher = FaceMatcher(cascade=cascade)

        crop = matcher.isolate_face(png_bytes(noise_image))

        rotated = cv2.rotate(noise_image, cv2.ROTATE_180)
        assert crop.shape == (60, 60, 3)
        np.testing.assert_array_equal(crop, rotated[20:80, 5:65])

    def test_alpha_channel_is_dropped(self):
        matcher = FaceMatcher(cascade=None, load_default=False)
        rgba = np.full((200, 200, 4), 200, dtype=np.uint8)

        crop = matcher.isolate_face(png_bytes(rgba))

        assert crop.shape[2] == 3

    def test_grayscale_input(self):
        matcher = FaceMatcher(cascade=None, load_default=False)
        gray = np.full((200, 200), 90, dtype=np.uint8)

        crop = matcher.isolate_face(png_bytes(gray))

        assert crop.shape == (100, 100, 3)

    def test_undecodable_bytes(self):
        matcher = FaceMatcher(cascade=None, load_default=False)
        assert matcher.isolate_face(b"not an image") is None
        assert matcher.isolate_face(b"") is None


class TestPreprocess:
    """Test face normalization."""

    def test_output_shape(self, noise_image):
        matcher = FaceMatcher(cascade=None, load_default=False)
        processed = matcher.preprocess(noise_image[:77, :91])
        assert processed.shape == (128, 128, 3)

    def test_channels_are_equal_after_clahe(self, noise_image):
        """Grayscale result is expanded back to three identical channels."""
        matcher = FaceMatcher(cascade=None, load_default=False)
        processed = matcher.preprocess(noise_image)
        np.testing.assert_array_equal(processed[:, :, 0], processed[:, :, 1])
        np.testing.assert_array_equal(processed[:, :, 1], processed[:, :, 2])

    def test_falls_back_to_plain_resize(self):
        """A 2-channel array cannot be converted to gray; it is still resized."""
        matcher = FaceMatcher(cascade=None, load_default=False)
        odd = np.zeros((50, 50, 2), dtype=np.uint8)
        processed = matcher.preprocess(odd)
        assert processed.shape[:2] == (128, 128)


class TestCompareFeatures:
    """Test ORB feature comparison."""

    def test_featureless_images(self, blank_image):
        matcher = FaceMatcher(cascade=None, load_default=False)
        face = matcher.preprocess(blank_image)

        score, message = matcher.compare_features(face, face)

        assert score == 0
        assert message == "Face features could not be extracted."

    def test_identical_faces_reach_full_score(self, noise_image):
        matcher = FaceMatcher(cascade=None, load_default=False)
        face = matcher.preprocess(noise_image)

        score, message = matcher.compare_features(face, face)

        assert score == 5
        assert message == "Matches found: 5/5."

    def test_ratio_test(self):
        pairs = [
            (SimpleNamespace(distance=10), SimpleNamespace(distance=100)),  # kept
            (SimpleNamespace(distance=80), SimpleNamespace(distance=100)),  # ambiguous
            (SimpleNamespace(distance=5),),  # no second neighbour
        ]
        good = FaceMatcher._ratio_test(pairs)
        assert [m.distance for m in good] == [10]


class TestCompare:
    """Test the full comparison."""

    def test_no_face_with_real_detector(self, blank_image, noise_image):
        """A blank image has no face, so the score is 0."""
        cascade = load_face_cascade()
        if cascade is None:
            pytest.skip("OpenCV build ships without Haar cascades")
        matcher = FaceMatcher(cascade=cascade)

        outcome = matcher.compare(png_bytes(blank_image), png_bytes(noise_image))

        assert outcome.match is False
        assert outcome.score == 0
        assert outcome.message == "Photo verification failed. No face detected in license image."

    def test_license_checked_first(self):
        matcher = FaceMatcher(cascade=BrightnessCascade())
        dark = np.zeros((200, 200, 3), dtype=np.uint8)

        outcome = matcher.compare(png_bytes(dark), png_bytes(dark))

        assert "license image" in outcome.message

    def test_no_face_in_selfie_returns_license_crop(self):
        matcher = FaceMatcher(cascade=BrightnessCascade())
        bright = np.full((200, 200, 3), 220, dtype=np.uint8)
        dark = np.zeros((200, 200, 3), dtype=np.uint8)

        outcome = matcher.compare(png_bytes(bright), png_bytes(dark))

        assert outcome.match is False
        assert outcome.score == 0
        assert outcome.message == "Photo verification failed. No face detected in selfie image."
        assert outcome.license_face is not None
        assert outcome.selfie_face is None

    def test_matching_faces(self, noise_image):
        matcher = FaceMatcher(cascade=None, load_default=False)
        image = png_bytes(noise_image)

        outcome = matcher.compare(image, image)

        assert outcome.match is True
        assert outcome.score == 5
        assert outcome.message == "Photo verification passed. Match score: 5/5"
        assert outcome.license_face.startswith(b"\x89PNG")
        assert outcome.selfie_face.startswith(b"\x89PNG")

    def test_failing_match_still_returns_crops(self, noise_image, blank_image):
        matcher = FaceMatcher(cascade=None, load_default=False)

        outcome = matcher.compare(png_bytes(noise_image), png_bytes(blank_image))

        assert outcome.match is False
        assert outcome.score == 0
        assert outcome.message == "Photo verification failed. Insufficient matches: 0/5 (required: 4)"
        assert outcome.license_face is not None
        assert outcome.selfie_face is not None

    def test_detector_error_reads_as_no_face(self, noise_image):
        """A detector failure on one image is reported as no face in that image."""
        matcher = FaceMatcher(cascade=BrokenCascade())

        assert matcher.isolate_face(png_bytes(noise_image)) is None

        outcome = matcher.compare(png_bytes(noise_image), png_bytes(noise_image))

        assert outcome.match is False
        assert outcome.score == 0
        assert outcome.message == "Photo verification failed. No face detected in license image."

    def test_errors_become_failed_outcome(self, noise_image, monkeypatch):
        matcher = FaceMatcher(cascade=None, load_default=False)

        def explode(face_a, face_b):
            raise RuntimeError("matcher exploded")

        monkeypatch.setattr(matcher, "compare_features", explode)

        outcome = matcher.compare(png_bytes(noise_image), png_bytes(noise_image))

        assert outcome.match is False
        assert outcome.score == 0
        assert outcome.message == "Face matching error: matcher exploded"


class TestHelpers:
    """Test small helpers."""

    def test_encode_png(self, blank_image):
        assert encode_png(blank_image).startswith(b"\x89PNG")

    def test_encode_png_empty(self):
        assert encode_png(np.zeros((0, 0, 3), dtype=np.uint8)) is None

    def test_failed_outcome(self):
        outcome = FaceMatchOutcome.failed("nope")
        assert (outcome.match, outcome.score, outcome.message) == (False, 0, "nope")
        assert outcome.license_face is None

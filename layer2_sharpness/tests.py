"""
Tests for Layer 2: Laplacian-variance sharpness gate.
"""
import cv2
import numpy as np
import pytest

from error_handlers import ImageDecodeError
from layer2_sharpness import BLUR_THRESHOLD, SharpnessAnalyzer, SharpnessScore


@pytest.fixture
def analyzer():
    return SharpnessAnalyzer()


class TestAnalyze:
    """Test sharpness scoring of decoded images."""

    def test_flat_image_has_zero_variance(self, analyzer, flat_image):
        score = analyzer.analyze(flat_image)
        assert score.variance == pytest.approx(0.0)
        assert analyzer.is_blurry(score)

    def test_checkerboard_is_sharp(self, analyzer, checkerboard_image):
        score = analyzer.analyze(checkerboard_image)
        assert score.variance > 1000.0
        assert not analyzer.is_blurry(score)

    def test_blurred_pattern_is_blurry(self, analyzer, blurred_image):
        score = analyzer.analyze(blurred_image)
        assert score.variance < BLUR_THRESHOLD
        assert analyzer.is_blurry(score)

    def test_blur_lowers_score(self, analyzer, checkerboard_image):
        pixels = cv2.imdecode(np.frombuffer(checkerboard_image, np.uint8), cv2.IMREAD_COLOR)
        softened = cv2.GaussianBlur(pixels, (0, 0), sigmaX=2)
        ok, buffer = cv2.imencode('.png', softened)
        assert ok

        sharp = analyzer.analyze(checkerboard_image)
        soft = analyzer.analyze(buffer.tobytes())
        assert soft.variance < sharp.variance

    def test_jpeg_input(self, analyzer):
        rows, cols = np.indices((64, 64))
        board = (((rows // 4) + (cols // 4)) % 2 * 255).astype(np.uint8)
        ok, buffer = cv2.imencode('.jpg', cv2.cvtColor(board, cv2.COLOR_GRAY2BGR))
        assert ok
        assert not analyzer.is_blurry(analyzer.analyze(buffer.tobytes()))

    def test_matches_population_variance_of_laplacian(self, analyzer):
        rng = np.random.default_rng(7)
        gray = rng.integers(0, 256, size=(32, 48), dtype=np.uint8)
        ok, buffer = cv2.imencode('.png', gray)
        assert ok

        laplacian = cv2.Laplacian(gray, cv2.CV_64F)
        expected = float(np.mean(laplacian ** 2) - np.mean(laplacian) ** 2)
        assert analyzer.analyze(buffer.tobytes()).variance == pytest.approx(expected)


class TestDecodeErrors:
    """Test rejection of undecodable payloads."""

    @pytest.mark.parametrize("payload", [b"", b"definitely not an image", b"\x89PNG\r\n\x1a\n"])
    def test_invalid_bytes_raise_decode_error(self, analyzer, payload):
        with pytest.raises(ImageDecodeError) as exc_info:
            analyzer.analyze(payload)
        assert exc_info.value.error_code == "IMAGE_DECODE_FAILED"

    def test_none_raises_decode_error(self, analyzer):
        with pytest.raises(ImageDecodeError):
            analyzer.analyze(None)


class TestClassification:
    """Test the fixed blur threshold."""

    def test_default_threshold(self, analyzer):
        assert analyzer.threshold == 100.0

    def test_threshold_boundary_is_not_blurry(self, analyzer):
        assert not analyzer.is_blurry(SharpnessScore(variance=100.0))

    def test_just_below_threshold_is_blurry(self, analyzer):
        assert analyzer.is_blurry(SharpnessScore(variance=99.999))

    def test_score_to_dict(self):
        assert SharpnessScore(variance=123.456).to_dict() == {'variance': 123.46}

"""
Layer 2 — Sharpness Analyzer
Decodes a compressed frame and scores it by Laplacian variance.
Sharp frames have strong edge response (high variance), blur suppresses it.
"""
import cv2
import numpy as np
import logging
from dataclasses import dataclass
from typing import Dict

from error_handlers import ImageDecodeError

logger = logging.getLogger(__name__)

# Minimum Laplacian variance for a frame to count as sharp.
# Tuned for 0-255 grayscale with the 4-neighbour kernel of cv2.Laplacian(ksize=1).
BLUR_THRESHOLD = 100.0


@dataclass(frozen=True)
class SharpnessScore:
    """Laplacian variance of a frame (higher = sharper)."""
    variance: float

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {'variance': round(self.variance, 2)}


class SharpnessAnalyzer:
    """
    Fixed single-threshold blur detector.
    """

    def __init__(self, threshold: float = BLUR_THRESHOLD):
        self.threshold = threshold
        logger.debug(f"SharpnessAnalyzer initialized (threshold {threshold})")

    def analyze(self, image_bytes: bytes) -> SharpnessScore:
        """
        Compute the sharpness score of a compressed image.

        Args:
            image_bytes: JPEG/PNG payload as produced by the image source

        Returns:
            SharpnessScore: Population variance of the Laplacian response

        Raises:
            ImageDecodeError: If the bytes are not a decodable, non-empty image
        """
        frame = self._decode(image_bytes)

        # Convert to grayscale for analysis
        if len(frame.shape) == 3:
            gray = cv2.cvtColor(frame, cv2.COLOR_BGR2GRAY)
        else:
            gray = frame

        return SharpnessScore(variance=self._laplacian_variance(gray))

    def is_blurry(self, score: SharpnessScore) -> bool:
        """Blurry iff the variance is strictly below the threshold."""
        return score.variance < self.threshold

    def _decode(self, image_bytes: bytes) -> np.ndarray:
        if not image_bytes:
            raise ImageDecodeError(reason="empty payload")

        buffer = np.frombuffer(image_bytes, dtype=np.uint8)
        try:
            frame = cv2.imdecode(buffer, cv2.IMREAD_COLOR)
        except cv2.error as e:
            raise ImageDecodeError(reason=str(e))

        if frame is None or frame.size == 0:
            raise ImageDecodeError(reason="not a valid image")

        return frame

    def _laplacian_variance(self, gray: np.ndarray) -> float:
        """
        Variance of the Laplacian edge response.
        CV_64F output keeps negative responses and avoids clipping.
        """
        laplacian = cv2.Laplacian(gray, cv2.CV_64F)
        return float(laplacian.var())

"""
Layer 1 — Orientation Feed
Publishes the latest orientation (latest-value-wins) and keeps the
alignment flags current as orientation and reference change.
"""
import logging
import threading
from typing import Callable, List, Optional

from .alignment import DEFAULT_TOLERANCE_DEG, NOT_ALIGNED, AlignmentResult, evaluate
from .estimator import AccelerationSample, Orientation, estimate

logger = logging.getLogger(__name__)

OrientationListener = Callable[[Orientation], None]


class OrientationFeed:
    """
    Holds only the most recent orientation.
    Producers call publish() from any thread; readers never block on capture work.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._latest = Orientation(pitch=0.0, roll=0.0)
        self._sample_count = 0
        self._listeners: List[OrientationListener] = []
        logger.debug("OrientationFeed initialized")

    def publish(self, sample: AccelerationSample) -> Orientation:
        """
        Estimate orientation from a sample and make it the latest value.

        Args:
            sample: Raw accelerometer sample

        Returns:
            Orientation: The newly published orientation
        """
        orientation = estimate(sample)

        with self._lock:
            self._latest = orientation
            self._sample_count += 1
            count = self._sample_count
            listeners = list(self._listeners)

        if count % 500 == 0:
            logger.debug(f"Orientation samples processed: {count}")

        for listener in listeners:
            try:
                listener(orientation)
            except Exception as e:
                logger.warning(f"Orientation listener failed: {e}")

        return orientation

    def latest(self) -> Orientation:
        """Get the most recent orientation."""
        with self._lock:
            return self._latest

    @property
    def sample_count(self) -> int:
        with self._lock:
            return self._sample_count

    def subscribe(self, listener: OrientationListener):
        """Register a callback invoked with every new orientation."""
        with self._lock:
            self._listeners.append(listener)


class AlignmentMonitor:
    """
    Recomputes alignment on every orientation update and every reference change.
    """

    def __init__(self, feed: OrientationFeed, tolerance_deg: float = DEFAULT_TOLERANCE_DEG):
        self.feed = feed
        self.tolerance_deg = tolerance_deg
        self._lock = threading.Lock()
        self._target: Optional[Orientation] = None
        self._current: AlignmentResult = NOT_ALIGNED
        feed.subscribe(self.on_orientation)
        logger.debug(f"AlignmentMonitor initialized (tolerance {tolerance_deg}°)")

    def on_orientation(self, orientation: Orientation):
        # Notifications can arrive out of order; always score the latest value
        with self._lock:
            self._current = evaluate(self.feed.latest(), self._target, self.tolerance_deg)

    def on_reference(self, state):
        """Reference store listener: `state` exposes the optional target."""
        with self._lock:
            self._target = state.target
            self._current = evaluate(self.feed.latest(), self._target, self.tolerance_deg)

    def current(self) -> AlignmentResult:
        with self._lock:
            return self._current

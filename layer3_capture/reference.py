"""
Layer 3 — Reference Store
Holds the golden image together with its target orientation.
Both are replaced or cleared as one value, never separately.
"""
import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, List, Optional

from layer1_orientation import Orientation

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GoldenReference:
    """Golden image bytes and the orientation in effect when it was triggered."""
    image: bytes
    target: Orientation
    captured_at: str = ""


@dataclass(frozen=True)
class ReferenceState:
    """Snapshot of the store: either a full reference or nothing."""
    reference: Optional[GoldenReference] = None

    @property
    def is_set(self) -> bool:
        return self.reference is not None

    @property
    def image(self) -> Optional[bytes]:
        return self.reference.image if self.reference else None

    @property
    def target(self) -> Optional[Orientation]:
        return self.reference.target if self.reference else None

    def to_dict(self) -> Dict:
        """Convert to dictionary (image bytes excluded)."""
        if self.reference is None:
            return {'is_set': False, 'target': None, 'captured_at': None, 'image_size': 0}
        return {
            'is_set': True,
            'target': self.reference.target.to_dict(),
            'captured_at': self.reference.captured_at,
            'image_size': len(self.reference.image)
        }


UNSET = ReferenceState()

ReferenceListener = Callable[[ReferenceState], None]


class ReferenceStore:
    """Single-slot store swapped atomically under a lock."""

    def __init__(self):
        self._lock = threading.Lock()
        self._state = UNSET
        self._listeners: List[ReferenceListener] = []

    def set(self, image: bytes, orientation: Orientation) -> ReferenceState:
        state = ReferenceState(GoldenReference(
            image=image,
            target=orientation,
            captured_at=datetime.now().strftime("%Y%m%d_%H%M%S")
        ))
        self._swap(state)
        logger.info(f"Reference set: pitch {orientation.pitch:.1f}°, roll {orientation.roll:.1f}°")
        return state

    def clear(self):
        self._swap(UNSET)
        logger.info("Reference cleared")

    def get(self) -> ReferenceState:
        with self._lock:
            return self._state

    def subscribe(self, listener: ReferenceListener):
        """Register a callback invoked after every set/clear."""
        with self._lock:
            self._listeners.append(listener)

    def _swap(self, state: ReferenceState):
        with self._lock:
            self._state = state
            listeners = list(self._listeners)

        for listener in listeners:
            try:
                listener(state)
            except Exception as e:
                logger.warning(f"Reference listener failed: {e}")

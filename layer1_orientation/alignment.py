"""
Layer 1 — Alignment Evaluator
Compares the live orientation against the reference target, per axis.
"""
from dataclasses import dataclass
from typing import Dict, Optional

from .estimator import Orientation

# Maximum angular difference (degrees) for an axis to count as matched
DEFAULT_TOLERANCE_DEG = 2.0


@dataclass(frozen=True)
class AlignmentResult:
    """Per-axis alignment flags."""
    pitch_aligned: bool
    roll_aligned: bool

    @property
    def aligned(self) -> bool:
        return self.pitch_aligned and self.roll_aligned

    def to_dict(self) -> Dict:
        """Convert to dictionary."""
        return {
            'pitch_aligned': self.pitch_aligned,
            'roll_aligned': self.roll_aligned,
            'aligned': self.aligned
        }


NOT_ALIGNED = AlignmentResult(pitch_aligned=False, roll_aligned=False)


def evaluate(
    current: Orientation,
    target: Optional[Orientation],
    tolerance_deg: float = DEFAULT_TOLERANCE_DEG
) -> AlignmentResult:
    """
    Evaluate alignment of the current orientation against a target.

    Without a target nothing is ever aligned. The comparison is strict, so a
    difference of exactly `tolerance_deg` is not aligned. No hysteresis.

    Args:
        current: Live orientation
        target: Reference orientation, or None when no reference is set
        tolerance_deg: Allowed absolute difference per axis

    Returns:
        AlignmentResult: Independent pitch and roll flags
    """
    if target is None:
        return NOT_ALIGNED

    return AlignmentResult(
        pitch_aligned=abs(current.pitch - target.pitch) < tolerance_deg,
        roll_aligned=abs(current.roll - target.roll) < tolerance_deg
    )

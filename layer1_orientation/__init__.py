"""
Layer 1 — Orientation
Accelerometer tilt estimation, alignment against the reference target,
and the latest-value orientation feed.
"""
from .estimator import AccelerationSample, Orientation, estimate
from .alignment import AlignmentResult, DEFAULT_TOLERANCE_DEG, evaluate
from .feed import AlignmentMonitor, OrientationFeed

__all__ = [
    'AccelerationSample',
    'Orientation',
    'estimate',
    'AlignmentResult',
    'DEFAULT_TOLERANCE_DEG',
    'evaluate',
    'AlignmentMonitor',
    'OrientationFeed'
]

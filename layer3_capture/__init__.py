"""
Layer 3 — Capture
Golden reference storage, camera image source, gallery image sink and the
capture state machine tying them to the sharpness gate.
"""
from .reference import GoldenReference, ReferenceState, ReferenceStore
from .camera import CameraHandler
from .saver import GallerySaver
from .orchestrator import (
    CaptureConfig,
    CaptureFlow,
    CaptureOrchestrator,
    CaptureOutcome,
    CaptureState,
    OutcomeKind
)

__all__ = [
    'GoldenReference',
    'ReferenceState',
    'ReferenceStore',
    'CameraHandler',
    'GallerySaver',
    'CaptureConfig',
    'CaptureFlow',
    'CaptureOrchestrator',
    'CaptureOutcome',
    'CaptureState',
    'OutcomeKind'
]

"""
Layer 3 — Capture Orchestrator
Runs one capture flow at a time: acquire a frame, gate it on sharpness,
then commit it as the golden reference or forward it to the gallery.

States:
    IDLE -> ACQUIRING_FRAME -> ANALYZING_SHARPNESS -> COMMITTING -> IDLE

Any failure returns to IDLE with an outcome. A trigger received while not
IDLE is rejected as busy without touching the camera, analyzer or sink.
Sharpness analysis failures are fail-open: the frame is treated as sharp.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Dict, Optional

from error_handlers import (
    AnalysisError,
    CameraError,
    CaptureBusyError,
    CaptureCancelledError,
    FrameCaptureError,
    FrameTimeoutError,
    GuidanceError,
    ImageSaveError,
    SaveError
)
from layer1_orientation import Orientation, OrientationFeed
from layer2_sharpness import SharpnessAnalyzer, SharpnessScore
from .reference import ReferenceStore

logger = logging.getLogger(__name__)


class CaptureState(Enum):
    IDLE = 'idle'
    ACQUIRING_FRAME = 'acquiring_frame'
    ANALYZING_SHARPNESS = 'analyzing_sharpness'
    COMMITTING = 'committing'


class CaptureFlow(Enum):
    REFERENCE = 'reference'
    SHOT = 'shot'


class OutcomeKind(Enum):
    ACCEPTED = 'accepted'
    REJECTED_BLURRY = 'rejected_blurry'
    SOURCE_ERROR = 'source_error'
    SINK_ERROR = 'sink_error'
    BUSY = 'busy'
    CANCELLED = 'cancelled'


@dataclass
class CaptureConfig:
    """Configuration for the capture orchestrator."""
    # None waits for the camera indefinitely
    acquire_timeout_seconds: Optional[float] = 10.0
    # How often a pending acquisition checks for timeout / session close
    poll_interval_seconds: float = 0.05


@dataclass
class CaptureOutcome:
    """Result of one capture trigger."""
    kind: OutcomeKind
    flow: CaptureFlow
    image: Optional[bytes] = None
    sharpness: Optional[SharpnessScore] = None
    orientation: Optional[Orientation] = None
    error: Optional[GuidanceError] = None
    timestamp: str = ""
    metadata: Dict = field(default_factory=dict)

    @property
    def accepted(self) -> bool:
        return self.kind is OutcomeKind.ACCEPTED

    def to_dict(self) -> Dict:
        """Convert to dictionary for API response."""
        result = {
            'success': self.accepted,
            'outcome': self.kind.value,
            'flow': self.flow.value,
            'timestamp': self.timestamp,
            'metadata': self.metadata
        }
        if self.sharpness is not None:
            result['sharpness'] = self.sharpness.to_dict()
        if self.orientation is not None:
            result['orientation'] = self.orientation.to_dict()
        if self.error is not None:
            result['error'] = self.error.message
            result['error_code'] = self.error.error_code
            result['details'] = self.error.details
        return result


class CaptureOrchestrator:
    """
    Capture state machine shared by the reference and shot flows.

    The image source must provide capture_frame() -> bytes and raise
    CameraError on failure. The image sink must provide
    store(image_bytes, metadata=None) and raise SaveError on failure.
    """

    def __init__(
        self,
        image_source,
        image_sink,
        reference_store: ReferenceStore,
        orientation_feed: OrientationFeed,
        analyzer: Optional[SharpnessAnalyzer] = None,
        config: Optional[CaptureConfig] = None
    ):
        self.image_source = image_source
        self.image_sink = image_sink
        self.reference_store = reference_store
        self.orientation_feed = orientation_feed
        self.analyzer = analyzer or SharpnessAnalyzer()
        self.config = config or CaptureConfig()

        self._lock = threading.Lock()
        self._state = CaptureState.IDLE
        self._closed = threading.Event()
        # Camera call still running after an earlier acquisition timed out
        self._pending_acquire: Optional[threading.Thread] = None
        self.last_outcome: Optional[CaptureOutcome] = None

        logger.info("CaptureOrchestrator initialized")
        logger.debug(f"Config: {self.config}")

    @property
    def state(self) -> CaptureState:
        with self._lock:
            return self._state

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def request_reference_capture(self) -> CaptureOutcome:
        """Capture a new golden image at the current orientation."""
        return self._run(CaptureFlow.REFERENCE)

    def request_shot_capture(self) -> CaptureOutcome:
        """Capture a regular shot and save it to the gallery."""
        return self._run(CaptureFlow.SHOT)

    def close(self):
        """
        End the capture session. An in-flight flow is abandoned before it
        commits; later triggers report CANCELLED.
        """
        self._closed.set()
        logger.info("Capture session closed")

    def _set_state(self, state: CaptureState):
        with self._lock:
            self._state = state
        logger.debug(f"Capture state -> {state.value}")

    def _outcome(self, kind: OutcomeKind, flow: CaptureFlow, **kwargs) -> CaptureOutcome:
        return CaptureOutcome(
            kind=kind,
            flow=flow,
            timestamp=datetime.now().strftime("%Y%m%d_%H%M%S"),
            **kwargs
        )

    def _run(self, flow: CaptureFlow) -> CaptureOutcome:
        with self._lock:
            if self._state is not CaptureState.IDLE:
                logger.warning(f"{flow.value} capture rejected, orchestrator is {self._state.value}")
                return self._outcome(
                    OutcomeKind.BUSY, flow,
                    error=CaptureBusyError(self._state.value)
                )
            if self._closed.is_set():
                return self._outcome(
                    OutcomeKind.CANCELLED, flow,
                    error=CaptureCancelledError()
                )
            self._state = CaptureState.ACQUIRING_FRAME
            # Orientation in effect at trigger time, not re-sampled later
            orientation = self.orientation_feed.latest()

        logger.info(f"[Capture] {flow.value} flow started")
        try:
            outcome = self._execute(flow, orientation)
        finally:
            self._set_state(CaptureState.IDLE)

        logger.info(f"[Capture] {flow.value} flow finished: {outcome.kind.value}")
        self.last_outcome = outcome
        return outcome

    def _execute(self, flow: CaptureFlow, orientation: Orientation) -> CaptureOutcome:
        # Stage 1: acquire frame
        try:
            frame = self._acquire_frame()
        except CaptureCancelledError as e:
            logger.info("[Capture] Session closed during acquisition")
            return self._outcome(OutcomeKind.CANCELLED, flow, orientation=orientation, error=e)
        except CameraError as e:
            logger.error(f"[Capture] {e.error_code}: {e.message}")
            return self._outcome(OutcomeKind.SOURCE_ERROR, flow, orientation=orientation, error=e)
        except Exception as e:
            logger.error(f"[Capture] Unexpected camera failure: {e}")
            return self._outcome(
                OutcomeKind.SOURCE_ERROR, flow,
                orientation=orientation,
                error=FrameCaptureError(reason=str(e))
            )

        logger.info(f"[Capture] Frame acquired ({len(frame)} bytes)")

        # Stage 2: sharpness gate
        self._set_state(CaptureState.ANALYZING_SHARPNESS)
        score = self._analyze(frame)

        if score is not None and self.analyzer.is_blurry(score):
            logger.info(f"[Capture] Rejected as blurry (variance {score.variance:.1f} < {self.analyzer.threshold})")
            return self._outcome(
                OutcomeKind.REJECTED_BLURRY, flow,
                sharpness=score,
                orientation=orientation
            )

        if self._closed.is_set():
            logger.info("[Capture] Session closed before commit, frame discarded")
            return self._outcome(
                OutcomeKind.CANCELLED, flow,
                sharpness=score,
                orientation=orientation,
                error=CaptureCancelledError()
            )

        # Stage 3: commit
        self._set_state(CaptureState.COMMITTING)
        if flow is CaptureFlow.REFERENCE:
            self.reference_store.set(frame, orientation)
            return self._outcome(
                OutcomeKind.ACCEPTED, flow,
                image=frame,
                sharpness=score,
                orientation=orientation
            )

        return self._commit_shot(frame, score, orientation)

    def _acquire_frame(self) -> bytes:
        """
        Run image_source.capture_frame() on a worker thread, bounded by the
        configured timeout and abandoned if the session closes.
        At most one camera call is outstanding at any time.
        """
        timeout = self.config.acquire_timeout_seconds

        pending = self._pending_acquire
        if pending is not None and pending.is_alive():
            logger.warning("[Capture] Camera still busy with a timed-out request, not starting another")
            raise FrameTimeoutError(timeout)

        done = threading.Event()
        result = {}

        def worker():
            try:
                result['frame'] = self.image_source.capture_frame()
            except Exception as e:
                result['error'] = e
            finally:
                done.set()

        thread = threading.Thread(target=worker, name='frame-acquire', daemon=True)
        self._pending_acquire = thread
        thread.start()

        deadline = None if timeout is None else time.monotonic() + timeout

        while not done.wait(self.config.poll_interval_seconds):
            if self._closed.is_set():
                raise CaptureCancelledError()
            if deadline is not None and time.monotonic() >= deadline:
                raise FrameTimeoutError(timeout)

        if self._closed.is_set():
            raise CaptureCancelledError()
        if 'error' in result:
            raise result['error']
        return result['frame']

    def _analyze(self, frame: bytes) -> Optional[SharpnessScore]:
        """Score the frame; None means the analysis failed (fail-open)."""
        try:
            score = self.analyzer.analyze(frame)
        except AnalysisError as e:
            logger.warning(f"[Capture] Sharpness analysis failed, accepting frame: {e.message}")
            return None
        except Exception as e:
            logger.warning(f"[Capture] Unexpected sharpness analysis error, accepting frame: {e}")
            return None

        logger.info(f"[Capture] Sharpness variance: {score.variance:.1f}")
        return score

    def _commit_shot(self, frame: bytes, score: Optional[SharpnessScore],
                     orientation: Orientation) -> CaptureOutcome:
        metadata = {
            'flow': CaptureFlow.SHOT.value,
            'orientation': orientation.to_dict(),
            'sharpness': score.to_dict() if score is not None else None
        }

        try:
            save_result = self.image_sink.store(frame, metadata=metadata)
        except SaveError as e:
            logger.error(f"[Capture] {e.error_code}: {e.message}")
            return self._outcome(
                OutcomeKind.SINK_ERROR, CaptureFlow.SHOT,
                sharpness=score, orientation=orientation, error=e
            )
        except Exception as e:
            logger.error(f"[Capture] Unexpected gallery failure: {e}")
            return self._outcome(
                OutcomeKind.SINK_ERROR, CaptureFlow.SHOT,
                sharpness=score, orientation=orientation,
                error=ImageSaveError("gallery", e)
            )

        return self._outcome(
            OutcomeKind.ACCEPTED, CaptureFlow.SHOT,
            image=frame,
            sharpness=score,
            orientation=orientation,
            metadata=save_result or {}
        )

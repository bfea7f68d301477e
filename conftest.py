"""
Pytest configuration and fixtures for the guidance service tests.
"""
import os
import sys
import tempfile
import threading

import cv2
import numpy as np
import pytest

# Add the project directory to the path
sys.path.insert(0, os.path.dirname(__file__))

# Keep the module-level service away from real hardware and brokers
os.environ.setdefault('GALLERY_DIR', tempfile.mkdtemp(prefix='guidance-gallery-'))
os.environ.setdefault('MQTT_ENABLED', 'false')
os.environ.setdefault('LOG_LEVEL', 'INFO')


def encode_png(pixels):
    """Encode a NumPy image as PNG bytes."""
    ok, buffer = cv2.imencode('.png', pixels)
    assert ok
    return buffer.tobytes()


class FakeCamera:
    """Image source returning queued frames or raising queued errors."""

    def __init__(self, *frames):
        self.frames = list(frames)
        self.calls = 0
        self.released = False

    def capture_frame(self):
        self.calls += 1
        item = self.frames.pop(0) if len(self.frames) > 1 else self.frames[0]
        if isinstance(item, Exception):
            raise item
        return item

    def release(self):
        self.released = True


class BlockingCamera:
    """Image source that holds the capture until released by the test."""

    def __init__(self, frame):
        self.frame = frame
        self.calls = 0
        self.started = threading.Event()
        self.release_frame = threading.Event()

    def capture_frame(self):
        self.calls += 1
        self.started.set()
        self.release_frame.wait(timeout=5)
        return self.frame


class FakeGallery:
    """Image sink recording stored payloads."""

    def __init__(self, error=None):
        self.stored = []
        self.error = error

    def store(self, image_bytes, metadata=None):
        if self.error is not None:
            raise self.error
        self.stored.append((image_bytes, metadata))
        return {"filename": f"shot_{len(self.stored):04d}.jpg"}


@pytest.fixture
def flat_image():
    """Uniform mid-grey PNG (no edges at all)."""
    return encode_png(np.full((120, 160, 3), 128, dtype=np.uint8))


@pytest.fixture
def checkerboard_image():
    """Black/white 8px checkerboard PNG (strong edges everywhere)."""
    rows, cols = np.indices((120, 160))
    board = (((rows // 8) + (cols // 8)) % 2 * 255).astype(np.uint8)
    return encode_png(cv2.cvtColor(board, cv2.COLOR_GRAY2BGR))


@pytest.fixture
def blurred_image():
    """Checkerboard smoothed with a wide Gaussian blur."""
    rows, cols = np.indices((120, 160))
    board = (((rows // 16) + (cols // 16)) % 2 * 255).astype(np.uint8)
    blurred = cv2.GaussianBlur(board, (0, 0), sigmaX=8)
    return encode_png(blurred)


@pytest.fixture
def feed():
    from layer1_orientation import OrientationFeed
    return OrientationFeed()


@pytest.fixture
def reference_store():
    from layer3_capture import ReferenceStore
    return ReferenceStore()


@pytest.fixture
def gallery():
    return FakeGallery()


@pytest.fixture
def capture_config():
    from layer3_capture import CaptureConfig
    return CaptureConfig(acquire_timeout_seconds=2.0, poll_interval_seconds=0.01)


@pytest.fixture
def make_orchestrator(feed, reference_store, gallery, capture_config):
    """Factory building an orchestrator around a given image source."""
    from layer3_capture import CaptureOrchestrator

    def factory(source, sink=None):
        return CaptureOrchestrator(
            image_source=source,
            image_sink=sink or gallery,
            reference_store=reference_store,
            orientation_feed=feed,
            config=capture_config
        )

    return factory


@pytest.fixture
def camera(checkerboard_image):
    return FakeCamera(checkerboard_image)


@pytest.fixture
def guidance(camera, gallery, capture_config, monkeypatch):
    """Fresh coordinator with fake camera and gallery swapped into the app."""
    import app as app_module

    coordinator = app_module.GuidanceCoordinator(
        image_source=camera,
        image_sink=gallery,
        capture_config=capture_config
    )
    monkeypatch.setattr(app_module, 'guidance', coordinator)
    return coordinator


@pytest.fixture
def client(guidance):
    """Create Flask test client."""
    from app import app as flask_app
    flask_app.config['TESTING'] = True
    return flask_app.test_client()

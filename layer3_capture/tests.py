"""
Tests for Layer 3: reference store, camera source, gallery sink and the
capture state machine.
"""
import json
import os
import threading

import numpy as np
import pytest

from conftest import BlockingCamera, FakeCamera, FakeGallery
from error_handlers import (
    CameraInitError,
    CameraNotFoundError,
    FrameCaptureError,
    ImageSaveError
)
from layer1_orientation import AccelerationSample, Orientation
from layer3_capture import (
    CameraHandler,
    CaptureFlow,
    CaptureState,
    GallerySaver,
    OutcomeKind,
    ReferenceState
)
from layer3_capture import camera as camera_module


def tilt(feed, pitch_sample):
    """Publish a sample and return the resulting orientation."""
    return feed.publish(AccelerationSample(*pitch_sample))


class TestReferenceStore:
    """Test paired golden image / target storage."""

    def test_starts_unset(self, reference_store):
        state = reference_store.get()
        assert state == ReferenceState()
        assert not state.is_set
        assert state.image is None
        assert state.target is None

    def test_set_then_get(self, reference_store):
        target = Orientation(5.0, -3.0)
        reference_store.set(b"golden", target)
        state = reference_store.get()
        assert state.image == b"golden"
        assert state.target == target
        assert state.is_set

    def test_clear_unsets_both(self, reference_store):
        reference_store.set(b"golden", Orientation(1.0, 2.0))
        reference_store.clear()
        state = reference_store.get()
        assert state.image is None
        assert state.target is None

    def test_set_replaces_pair(self, reference_store):
        reference_store.set(b"first", Orientation(1.0, 1.0))
        reference_store.set(b"second", Orientation(2.0, 2.0))
        state = reference_store.get()
        assert (state.image, state.target) == (b"second", Orientation(2.0, 2.0))

    def test_snapshot_is_not_affected_by_later_changes(self, reference_store):
        reference_store.set(b"golden", Orientation(1.0, 1.0))
        snapshot = reference_store.get()
        reference_store.clear()
        assert snapshot.image == b"golden"
        assert snapshot.target == Orientation(1.0, 1.0)

    def test_listeners_notified(self, reference_store):
        seen = []
        reference_store.subscribe(seen.append)
        reference_store.set(b"golden", Orientation(0.0, 0.0))
        reference_store.clear()
        assert [s.is_set for s in seen] == [True, False]

    def test_to_dict(self, reference_store):
        assert reference_store.get().to_dict()['is_set'] is False
        reference_store.set(b"12345", Orientation(5.0, -3.0))
        data = reference_store.get().to_dict()
        assert data['target'] == {'pitch': 5.0, 'roll': -3.0}
        assert data['image_size'] == 5

    def test_concurrent_readers_never_see_partial_state(self, reference_store):
        stop = threading.Event()
        violations = []

        def reader():
            while not stop.is_set():
                state = reference_store.get()
                if (state.image is None) != (state.target is None):
                    violations.append(state)

        thread = threading.Thread(target=reader)
        thread.start()
        for i in range(2000):
            reference_store.set(b"img", Orientation(float(i), 0.0))
            reference_store.clear()
        stop.set()
        thread.join()
        assert violations == []


class TestGallerySaver:
    """Test shot persistence."""

    def test_store_writes_image_and_metadata(self, tmp_path):
        saver = GallerySaver(base_dir=str(tmp_path / "gallery"))
        result = saver.store(b"jpeg-bytes", metadata={"sharpness": {"variance": 250.0}})

        with open(result["filepath"], "rb") as f:
            assert f.read() == b"jpeg-bytes"

        json_name = os.path.splitext(result["filename"])[0] + ".json"
        with open(os.path.join(saver.json_dir, json_name), encoding="utf-8") as f:
            data = json.load(f)
        assert data["sharpness"] == {"variance": 250.0}
        assert data["image_filename"] == result["filename"]

    def test_filenames_are_unique(self, tmp_path):
        saver = GallerySaver(base_dir=str(tmp_path))
        first = saver.store(b"a")
        second = saver.store(b"b")
        assert first["filename"] != second["filename"]

    def test_write_failure_raises_save_error(self, tmp_path):
        saver = GallerySaver(base_dir=str(tmp_path))
        os.rmdir(saver.images_dir)
        with pytest.raises(ImageSaveError) as exc_info:
            saver.store(b"a")
        assert exc_info.value.error_code == "IMAGE_SAVE_FAILED"


class FakeVideoCapture:
    """Stand-in for cv2.VideoCapture."""

    def __init__(self, frame=None, opened=True):
        self.frame = frame
        self.opened = opened
        self.released = False
        self.props = {}

    def isOpened(self):
        return self.opened

    def set(self, prop, value):
        self.props[prop] = value
        return True

    def get(self, prop):
        return self.props.get(prop, 0)

    def read(self):
        return (self.frame is not None), self.frame

    def release(self):
        self.opened = False
        self.released = True


class TestCameraHandler:
    """Test the camera image source with a fake capture device."""

    def test_missing_device(self, monkeypatch):
        monkeypatch.setattr(camera_module.os.path, "exists", lambda path: False)
        handler = CameraHandler(camera_index=42)
        with pytest.raises(CameraNotFoundError):
            handler.capture_frame()

    def test_capture_returns_jpeg(self, monkeypatch):
        frame = np.zeros((48, 64, 3), dtype=np.uint8)
        device = FakeVideoCapture(frame=frame)
        monkeypatch.setattr(camera_module.os.path, "exists", lambda path: True)
        monkeypatch.setattr(camera_module.cv2, "VideoCapture", lambda *args: device)

        handler = CameraHandler(camera_index=0)
        payload = handler.capture_frame()
        assert payload[:2] == b"\xff\xd8"
        assert handler.is_opened()

        handler.release()
        assert not handler.is_opened()

    def test_failed_open_releases_device(self, monkeypatch):
        devices = []

        def open_device(*args):
            devices.append(FakeVideoCapture(opened=False))
            return devices[-1]

        monkeypatch.setattr(camera_module.os.path, "exists", lambda path: True)
        monkeypatch.setattr(camera_module.cv2, "VideoCapture", open_device)

        handler = CameraHandler(camera_index=0)
        for _ in range(2):
            with pytest.raises(CameraInitError):
                handler.capture_frame()
            assert handler.camera is None

        assert len(devices) == 2
        assert all(device.released for device in devices)

    def test_read_failure(self, monkeypatch):
        device = FakeVideoCapture(frame=None)
        monkeypatch.setattr(camera_module.os.path, "exists", lambda path: True)
        monkeypatch.setattr(camera_module.cv2, "VideoCapture", lambda *args: device)

        with pytest.raises(FrameCaptureError):
            CameraHandler(camera_index=0).capture_frame()


class TestReferenceFlow:
    """Test the reference capture flow."""

    def test_sharp_frame_sets_reference_at_trigger_orientation(
            self, make_orchestrator, feed, reference_store, checkerboard_image):
        target = tilt(feed, (-0.5, 0.2, 9.7))
        orchestrator = make_orchestrator(FakeCamera(checkerboard_image))

        outcome = orchestrator.request_reference_capture()

        assert outcome.kind is OutcomeKind.ACCEPTED
        assert outcome.flow is CaptureFlow.REFERENCE
        assert reference_store.get().target == target
        assert reference_store.get().image == checkerboard_image
        assert orchestrator.state is CaptureState.IDLE

    def test_blurry_reference_keeps_previous_reference(
            self, make_orchestrator, feed, reference_store, checkerboard_image, flat_image):
        previous = Orientation(5.0, -3.0)
        reference_store.set(checkerboard_image, previous)
        tilt(feed, (3.0, 1.0, 9.0))
        orchestrator = make_orchestrator(FakeCamera(flat_image))

        outcome = orchestrator.request_reference_capture()

        assert outcome.kind is OutcomeKind.REJECTED_BLURRY
        assert outcome.sharpness.variance == pytest.approx(0.0)
        assert reference_store.get().target == previous
        assert reference_store.get().image == checkerboard_image

    def test_accept_then_reject_sequence(
            self, make_orchestrator, reference_store, checkerboard_image, flat_image, monkeypatch):
        camera = FakeCamera(checkerboard_image, flat_image)
        orchestrator = make_orchestrator(camera)
        monkeypatch.setattr(orchestrator.orientation_feed, "latest", lambda: Orientation(5.0, -3.0))

        first = orchestrator.request_reference_capture()
        assert first.kind is OutcomeKind.ACCEPTED
        assert reference_store.get().target == Orientation(5.0, -3.0)

        monkeypatch.setattr(orchestrator.orientation_feed, "latest", lambda: Orientation(20.0, 20.0))
        second = orchestrator.request_reference_capture()
        assert second.kind is OutcomeKind.REJECTED_BLURRY
        assert reference_store.get().target == Orientation(5.0, -3.0)
        assert reference_store.get().image == checkerboard_image

    def test_orientation_is_taken_at_trigger_time(
            self, make_orchestrator, feed, reference_store, checkerboard_image):
        at_trigger = tilt(feed, (0.0, 0.0, 1.0))
        camera = BlockingCamera(checkerboard_image)
        orchestrator = make_orchestrator(camera)
        outcomes = []

        worker = threading.Thread(target=lambda: outcomes.append(orchestrator.request_reference_capture()))
        worker.start()
        assert camera.started.wait(timeout=2)

        tilt(feed, (0.0, 1.0, 1.0))  # device moves while the camera works
        camera.release_frame.set()
        worker.join(timeout=5)

        assert outcomes[0].kind is OutcomeKind.ACCEPTED
        assert reference_store.get().target == at_trigger

    def test_camera_failure_reports_source_error(self, make_orchestrator, reference_store):
        orchestrator = make_orchestrator(FakeCamera(FrameCaptureError()))

        outcome = orchestrator.request_reference_capture()

        assert outcome.kind is OutcomeKind.SOURCE_ERROR
        assert outcome.error.error_code == "FRAME_CAPTURE_FAILED"
        assert not reference_store.get().is_set
        assert orchestrator.state is CaptureState.IDLE

    def test_unexpected_camera_exception_reports_source_error(self, make_orchestrator):
        orchestrator = make_orchestrator(FakeCamera(RuntimeError("driver crashed")))
        outcome = orchestrator.request_reference_capture()
        assert outcome.kind is OutcomeKind.SOURCE_ERROR
        assert outcome.error.details["reason"] == "driver crashed"

    def test_undecodable_frame_is_accepted_fail_open(self, make_orchestrator, reference_store):
        orchestrator = make_orchestrator(FakeCamera(b"not an image"))

        outcome = orchestrator.request_reference_capture()

        assert outcome.kind is OutcomeKind.ACCEPTED
        assert outcome.sharpness is None
        assert reference_store.get().image == b"not an image"

    def test_unexpected_analyzer_error_is_fail_open(self, make_orchestrator, reference_store, monkeypatch):
        orchestrator = make_orchestrator(FakeCamera(b"frame"))

        def explode(_):
            raise ValueError("bug")

        monkeypatch.setattr(orchestrator.analyzer, "analyze", explode)
        assert orchestrator.request_reference_capture().kind is OutcomeKind.ACCEPTED
        assert reference_store.get().is_set


class TestShotFlow:
    """Test the shot capture flow."""

    def test_sharp_shot_is_stored(self, make_orchestrator, gallery, reference_store, checkerboard_image):
        orchestrator = make_orchestrator(FakeCamera(checkerboard_image))

        outcome = orchestrator.request_shot_capture()

        assert outcome.kind is OutcomeKind.ACCEPTED
        assert outcome.flow is CaptureFlow.SHOT
        assert len(gallery.stored) == 1
        stored_bytes, metadata = gallery.stored[0]
        assert stored_bytes == checkerboard_image
        assert metadata["sharpness"]["variance"] > 100.0
        assert outcome.metadata["filename"] == "shot_0001.jpg"
        assert not reference_store.get().is_set

    def test_blurry_shot_is_not_stored(self, make_orchestrator, gallery, flat_image):
        orchestrator = make_orchestrator(FakeCamera(flat_image))
        outcome = orchestrator.request_shot_capture()
        assert outcome.kind is OutcomeKind.REJECTED_BLURRY
        assert gallery.stored == []

    def test_sink_failure_reports_sink_error(self, make_orchestrator, checkerboard_image):
        sink = FakeGallery(error=ImageSaveError("/full/disk.jpg", "No space left"))
        orchestrator = make_orchestrator(FakeCamera(checkerboard_image), sink=sink)

        outcome = orchestrator.request_shot_capture()

        assert outcome.kind is OutcomeKind.SINK_ERROR
        assert outcome.error.error_code == "IMAGE_SAVE_FAILED"
        assert orchestrator.state is CaptureState.IDLE

    def test_unexpected_sink_exception_reports_sink_error(self, make_orchestrator, checkerboard_image):
        sink = FakeGallery(error=OSError("disk gone"))
        orchestrator = make_orchestrator(FakeCamera(checkerboard_image), sink=sink)
        assert orchestrator.request_shot_capture().kind is OutcomeKind.SINK_ERROR

    def test_undecodable_shot_is_stored_fail_open(self, make_orchestrator, gallery):
        orchestrator = make_orchestrator(FakeCamera(b"garbage"))
        outcome = orchestrator.request_shot_capture()
        assert outcome.kind is OutcomeKind.ACCEPTED
        assert gallery.stored[0][1]["sharpness"] is None


class TestBusyAndCancellation:
    """Test single-flight rejection, timeout and session close."""

    def test_trigger_while_busy_is_rejected(
            self, make_orchestrator, gallery, reference_store, checkerboard_image):
        camera = BlockingCamera(checkerboard_image)
        orchestrator = make_orchestrator(camera)
        outcomes = []

        worker = threading.Thread(target=lambda: outcomes.append(orchestrator.request_reference_capture()))
        worker.start()
        assert camera.started.wait(timeout=2)
        assert orchestrator.state is CaptureState.ACQUIRING_FRAME

        busy = orchestrator.request_shot_capture()
        assert busy.kind is OutcomeKind.BUSY
        assert busy.error.error_code == "CAPTURE_BUSY"
        assert camera.calls == 1
        assert gallery.stored == []

        camera.release_frame.set()
        worker.join(timeout=5)
        assert outcomes[0].kind is OutcomeKind.ACCEPTED
        assert orchestrator.state is CaptureState.IDLE

    def test_hung_camera_times_out(self, make_orchestrator, capture_config, reference_store, checkerboard_image):
        capture_config.acquire_timeout_seconds = 0.1
        camera = BlockingCamera(checkerboard_image)
        orchestrator = make_orchestrator(camera)

        outcome = orchestrator.request_reference_capture()

        assert outcome.kind is OutcomeKind.SOURCE_ERROR
        assert outcome.error.error_code == "FRAME_TIMEOUT"
        assert orchestrator.state is CaptureState.IDLE
        assert not reference_store.get().is_set
        camera.release_frame.set()

    def test_hung_camera_is_not_called_again(
            self, make_orchestrator, capture_config, gallery, checkerboard_image):
        capture_config.acquire_timeout_seconds = 0.05
        camera = BlockingCamera(checkerboard_image)
        orchestrator = make_orchestrator(camera)

        def acquire_threads():
            return [t for t in threading.enumerate() if t.name == 'frame-acquire' and t.is_alive()]

        before = len(acquire_threads())
        outcomes = [orchestrator.request_shot_capture() for _ in range(10)]

        assert all(o.kind is OutcomeKind.SOURCE_ERROR for o in outcomes)
        assert all(o.error.error_code == "FRAME_TIMEOUT" for o in outcomes)
        assert camera.calls == 1
        assert len(acquire_threads()) - before <= 1
        assert gallery.stored == []

        # Once the camera recovers the next trigger captures normally
        camera.release_frame.set()
        for thread in acquire_threads():
            thread.join(timeout=2)
        capture_config.acquire_timeout_seconds = 2.0

        outcome = orchestrator.request_shot_capture()
        assert outcome.kind is OutcomeKind.ACCEPTED
        assert camera.calls == 2

    def test_close_during_acquisition_abandons_flow(
            self, make_orchestrator, gallery, checkerboard_image):
        camera = BlockingCamera(checkerboard_image)
        orchestrator = make_orchestrator(camera)
        outcomes = []

        worker = threading.Thread(target=lambda: outcomes.append(orchestrator.request_shot_capture()))
        worker.start()
        assert camera.started.wait(timeout=2)

        orchestrator.close()
        camera.release_frame.set()
        worker.join(timeout=5)

        assert outcomes[0].kind is OutcomeKind.CANCELLED
        assert gallery.stored == []

    def test_close_before_commit_discards_frame(
            self, make_orchestrator, reference_store, checkerboard_image, monkeypatch):
        orchestrator = make_orchestrator(FakeCamera(checkerboard_image))
        original_analyze = orchestrator.analyzer.analyze

        def analyze_then_close(frame):
            score = original_analyze(frame)
            orchestrator.close()
            return score

        monkeypatch.setattr(orchestrator.analyzer, "analyze", analyze_then_close)
        outcome = orchestrator.request_reference_capture()

        assert outcome.kind is OutcomeKind.CANCELLED
        assert not reference_store.get().is_set

    def test_trigger_after_close_is_cancelled(self, make_orchestrator, checkerboard_image):
        camera = FakeCamera(checkerboard_image)
        orchestrator = make_orchestrator(camera)
        orchestrator.close()

        outcome = orchestrator.request_reference_capture()

        assert outcome.kind is OutcomeKind.CANCELLED
        assert camera.calls == 0

    def test_outcome_to_dict(self, make_orchestrator, checkerboard_image):
        orchestrator = make_orchestrator(FakeCamera(checkerboard_image))
        data = orchestrator.request_shot_capture().to_dict()
        assert data["success"] is True
        assert data["outcome"] == "accepted"
        assert data["flow"] == "shot"
        assert "error" not in data
        assert orchestrator.last_outcome is not None

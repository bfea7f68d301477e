"""
Tests for the guidance service Flask application.
"""
import json

from conftest import FakeCamera, FakeGallery
from error_handlers import FrameCaptureError, ImageSaveError


class TestHealthEndpoint:
    """Test health check endpoint."""

    def test_health_returns_ok(self, client):
        """Test /health returns OK status."""
        response = client.get('/health')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['status'] == 'healthy'

    def test_status_reports_capture_state(self, client):
        """Test /api/status includes capture state."""
        data = json.loads(client.get('/api/status').data)
        assert data['capture_state'] == 'idle'
        assert data['reference_set'] is False
        assert data['mqtt_connected'] is False


class TestOrientationEndpoint:
    """Test accelerometer sample publication."""

    def test_publish_sample_returns_orientation(self, client):
        response = client.post('/api/orientation', json={'x': 0.0, 'y': 1.0, 'z': 1.0})
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['orientation'] == {'pitch': 0.0, 'roll': 45.0}
        assert data['alignment']['aligned'] is False

    def test_get_latest_orientation(self, client):
        client.post('/api/orientation', json={'x': 1.0, 'y': 0.0, 'z': 0.0})
        data = json.loads(client.get('/api/orientation').data)
        assert data['orientation']['pitch'] == -90.0
        assert data['samples_received'] == 1

    def test_invalid_sample_returns_400(self, client):
        response = client.post('/api/orientation', json={'x': 1.0})
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_SAMPLE'

    def test_non_finite_sample_returns_400(self, client):
        response = client.post('/api/orientation', json={'x': 'nan', 'y': 0.0, 'z': 1.0})
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_SAMPLE'
        data = json.loads(client.get('/api/orientation').data)
        assert data['samples_received'] == 0

    def test_non_json_body_returns_400(self, client):
        response = client.post('/api/orientation', data='x', content_type='text/plain')
        assert response.status_code == 400
        assert json.loads(response.data)['error_code'] == 'INVALID_JSON'


class TestReferenceEndpoints:
    """Test golden reference capture, read and reset."""

    def test_reference_capture_sets_target(self, client):
        client.post('/api/orientation', json={'x': 0.0, 'y': 0.0, 'z': 9.81})
        response = client.post('/api/capture/reference')
        assert response.status_code == 200
        data = json.loads(response.data)
        assert data['outcome'] == 'accepted'
        assert data['flow'] == 'reference'

        reference = json.loads(client.get('/api/reference').data)['reference']
        assert reference['is_set'] is True
        assert reference['target'] == {'pitch': 0.0, 'roll': 0.0}

    def test_alignment_after_reference(self, client):
        client.post('/api/orientation', json={'x': 0.0, 'y': 0.0, 'z': 9.81})
        client.post('/api/capture/reference')

        data = json.loads(client.get('/api/alignment').data)
        assert data['alignment'] == {'pitch_aligned': True, 'roll_aligned': True, 'aligned': True}

        data = json.loads(client.post('/api/orientation', json={'x': 0.0, 'y': 1.0, 'z': 1.0}).data)
        assert data['alignment']['pitch_aligned'] is True
        assert data['alignment']['roll_aligned'] is False

    def test_reference_image_served(self, client, checkerboard_image):
        assert client.get('/api/reference/image').status_code == 404
        client.post('/api/capture/reference')
        response = client.get('/api/reference/image')
        assert response.status_code == 200
        assert response.mimetype == 'image/jpeg'
        assert response.data == checkerboard_image

    def test_clear_reference(self, client):
        client.post('/api/capture/reference')
        response = client.delete('/api/reference')
        assert response.status_code == 200
        assert json.loads(response.data)['reference']['is_set'] is False
        data = json.loads(client.get('/api/alignment').data)
        assert data['alignment']['aligned'] is False

    def test_blurry_reference_rejected(self, client, guidance, flat_image):
        guidance.orchestrator.image_source = FakeCamera(flat_image)
        response = client.post('/api/capture/reference')
        assert response.status_code == 422
        assert json.loads(response.data)['outcome'] == 'rejected_blurry'
        assert json.loads(client.get('/api/reference').data)['reference']['is_set'] is False


class TestShotEndpoint:
    """Test gallery shot capture."""

    def test_shot_saved(self, client, gallery):
        response = client.post('/api/capture/shot')
        assert response.status_code == 200
        assert len(gallery.stored) == 1

    def test_camera_failure_returns_503(self, client, guidance):
        guidance.orchestrator.image_source = FakeCamera(FrameCaptureError())
        response = client.post('/api/capture/shot')
        assert response.status_code == 503
        data = json.loads(response.data)
        assert data['outcome'] == 'source_error'
        assert data['error_code'] == 'FRAME_CAPTURE_FAILED'

    def test_sink_failure_returns_500(self, client, guidance):
        guidance.orchestrator.image_sink = FakeGallery(error=ImageSaveError('/x.jpg', 'read-only'))
        response = client.post('/api/capture/shot')
        assert response.status_code == 500
        assert json.loads(response.data)['outcome'] == 'sink_error'

    def test_capture_state_reports_last_outcome(self, client):
        client.post('/api/capture/shot')
        data = json.loads(client.get('/api/capture/state').data)
        assert data['state'] == 'idle'
        assert data['last_outcome']['outcome'] == 'accepted'


class TestErrorHandling:
    """Test error handling."""

    def test_missing_endpoint_returns_404(self, client):
        response = client.get('/api/nonexistent')
        assert response.status_code == 404

    def test_method_not_allowed(self, client):
        response = client.get('/api/capture/shot')
        assert response.status_code == 405

    def test_capture_after_shutdown_is_cancelled(self, client, guidance, camera):
        guidance.shutdown()
        response = client.post('/api/capture/shot')
        assert response.status_code == 503
        assert json.loads(response.data)['outcome'] == 'cancelled'
        assert camera.released is True

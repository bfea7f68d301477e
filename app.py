"""
Orientation Guidance Service
Thin coordinator for the layered capture-guidance system.

Provides REST API for:
- Publishing accelerometer samples and reading the live orientation
- Alignment of the live orientation against the golden reference
- Reference (golden image) capture and reset
- Sharpness-gated shot capture to the gallery
"""
from flask import Flask, Response, jsonify, request
from flask_cors import CORS
import logging
import os

# Import layers
from layer1_orientation import AlignmentMonitor, OrientationFeed
from layer1_orientation.sensor_stream import AccelerometerSubscriber, DEFAULT_TOPIC, parse_sample
from layer2_sharpness import SharpnessAnalyzer
from layer3_capture import (
    CameraHandler,
    CaptureConfig,
    CaptureOrchestrator,
    GallerySaver,
    OutcomeKind,
    ReferenceStore
)

# Import error handling
from error_handlers import InvalidSampleError, handle_error

# Setup logging
logging.basicConfig(
    level=os.environ.get('LOG_LEVEL', 'DEBUG').upper(),
    format='%(asctime)s - %(levelname)s - %(message)s',
    datefmt='%Y-%m-%d %H:%M:%S'
)
logger = logging.getLogger(__name__)

app = Flask(__name__)

# Enable CORS for the guidance frontend
CORS(app, origins=["*"])

# Configuration
CAMERA_INDEX = int(os.environ.get('CAMERA_INDEX', 0))
GALLERY_DIR = os.environ.get('GALLERY_DIR', 'Logs/gallery')
ALIGNMENT_TOLERANCE_DEG = float(os.environ.get('ALIGNMENT_TOLERANCE_DEG', 2.0))
ACQUIRE_TIMEOUT_SECONDS = float(os.environ.get('ACQUIRE_TIMEOUT_SECONDS', 10.0))
MQTT_ENABLED = os.environ.get('MQTT_ENABLED', 'true').lower() in ('1', 'true', 'yes')
MQTT_HOST = os.environ.get('MQTT_HOST', 'localhost')
MQTT_PORT = int(os.environ.get('MQTT_PORT', 1883))
MQTT_TOPIC = os.environ.get('MQTT_TOPIC', DEFAULT_TOPIC)
MQTT_USER = os.environ.get('MQTT_USER', '')
MQTT_PASSWORD = os.environ.get('MQTT_PASSWORD', '')
PORT = int(os.environ.get('PORT', 5000))

# HTTP status per capture outcome
OUTCOME_STATUS = {
    OutcomeKind.ACCEPTED: 200,
    OutcomeKind.REJECTED_BLURRY: 422,
    OutcomeKind.BUSY: 409,
    OutcomeKind.SOURCE_ERROR: 503,
    OutcomeKind.SINK_ERROR: 500,
    OutcomeKind.CANCELLED: 503,
}


class GuidanceCoordinator:
    """
    Coordinates the guidance pipeline across layers
    Thin wrapper that wires layer-specific components together
    """

    def __init__(self, image_source, image_sink,
                 tolerance_deg=ALIGNMENT_TOLERANCE_DEG,
                 capture_config=None):
        logger.info("Initializing GuidanceCoordinator")

        # Layer 1: Orientation
        self.feed = OrientationFeed()
        self.alignment = AlignmentMonitor(self.feed, tolerance_deg=tolerance_deg)

        # Layer 3: Reference store, wired so alignment follows reference changes
        self.reference_store = ReferenceStore()
        self.reference_store.subscribe(self.alignment.on_reference)

        # Layer 1 -> 2 -> 3: Capture pipeline
        self.image_source = image_source
        self.orchestrator = CaptureOrchestrator(
            image_source=image_source,
            image_sink=image_sink,
            reference_store=self.reference_store,
            orientation_feed=self.feed,
            analyzer=SharpnessAnalyzer(),
            config=capture_config
        )

        self.sensor_stream = None

        logger.info("GuidanceCoordinator initialized successfully")

    def start_sensor_stream(self, host, port, topic, username='', password=''):
        """Subscribe to accelerometer samples over MQTT (Layer 1)"""
        self.sensor_stream = AccelerometerSubscriber(
            self.feed,
            host=host,
            port=port,
            topic=topic,
            username=username,
            password=password
        )
        self.sensor_stream.start()

    def snapshot(self):
        """Current orientation, alignment and reference as one dict"""
        return {
            "orientation": self.feed.latest().to_dict(),
            "alignment": self.alignment.current().to_dict(),
            "reference": self.reference_store.get().to_dict(),
            "tolerance_deg": self.alignment.tolerance_deg
        }

    def shutdown(self):
        """Abandon in-flight captures and release hardware"""
        self.orchestrator.close()
        if self.sensor_stream is not None:
            self.sensor_stream.stop()
        if hasattr(self.image_source, 'release'):
            self.image_source.release()


# Initialize guidance coordinator
logger.info("Starting application initialization")

guidance = GuidanceCoordinator(
    image_source=CameraHandler(camera_index=CAMERA_INDEX),
    image_sink=GallerySaver(base_dir=GALLERY_DIR),
    capture_config=CaptureConfig(acquire_timeout_seconds=ACQUIRE_TIMEOUT_SECONDS)
)


def _outcome_response(outcome):
    return jsonify(outcome.to_dict()), OUTCOME_STATUS[outcome.kind]


# ============================================================================
# API Endpoints
# ============================================================================

@app.route("/health", methods=["GET"])
def health_check():
    """Health check endpoint for service discovery and load balancers"""
    return jsonify({
        "status": "healthy",
        "service": "guidance-service",
        "version": "1.0.0"
    })


@app.route("/api/status", methods=["GET"])
def api_status():
    """Get service status and capabilities"""
    stream = guidance.sensor_stream
    return jsonify({
        "success": True,
        "capture_state": guidance.orchestrator.state.value,
        "samples_received": guidance.feed.sample_count,
        "mqtt_connected": bool(stream and stream.connected),
        "reference_set": guidance.reference_store.get().is_set,
        "endpoints": {
            "health": "/health",
            "orientation": "/api/orientation",
            "alignment": "/api/alignment",
            "reference": "/api/reference",
            "capture_reference": "/api/capture/reference",
            "capture_shot": "/api/capture/shot"
        }
    })


@app.route("/api/orientation", methods=["POST"])
def api_publish_sample():
    """
    Publish one accelerometer sample.

    Request:
        {"x": 0.1, "y": 0.2, "z": 9.8}

    Response:
        {"success": true, "orientation": {...}, "alignment": {...}, ...}
    """
    payload = request.get_json(silent=True)
    if payload is None:
        return jsonify({
            "success": False,
            "error": "Request body must be JSON",
            "error_code": "INVALID_JSON"
        }), 400

    try:
        sample = parse_sample(payload)
    except InvalidSampleError as e:
        return jsonify(handle_error(e)), 400

    guidance.feed.publish(sample)
    return jsonify({"success": True, **guidance.snapshot()})


@app.route("/api/orientation", methods=["GET"])
def api_orientation():
    """Get the latest orientation"""
    return jsonify({
        "success": True,
        "orientation": guidance.feed.latest().to_dict(),
        "samples_received": guidance.feed.sample_count
    })


@app.route("/api/alignment", methods=["GET"])
def api_alignment():
    """Get alignment of the live orientation against the reference"""
    return jsonify({"success": True, **guidance.snapshot()})


@app.route("/api/reference", methods=["GET"])
def api_reference():
    """Get reference state (target orientation, no image bytes)"""
    return jsonify({
        "success": True,
        "reference": guidance.reference_store.get().to_dict()
    })


@app.route("/api/reference/image", methods=["GET"])
def api_reference_image():
    """Serve the golden image for the ghost overlay"""
    state = guidance.reference_store.get()
    if not state.is_set:
        return jsonify({
            "success": False,
            "error": "No reference image set",
            "error_code": "REFERENCE_NOT_SET"
        }), 404
    return Response(state.image, mimetype='image/jpeg')


@app.route("/api/reference", methods=["DELETE"])
def api_clear_reference():
    """Clear golden image and target together"""
    logger.info("Reference clear requested")
    guidance.reference_store.clear()
    return jsonify({
        "success": True,
        "reference": guidance.reference_store.get().to_dict()
    })


@app.route("/api/capture/reference", methods=["POST"])
def api_capture_reference():
    """Capture a golden image at the current orientation"""
    logger.info("Reference capture request received")
    outcome = guidance.orchestrator.request_reference_capture()
    logger.info(f"Reference capture outcome: {outcome.kind.value}")
    return _outcome_response(outcome)


@app.route("/api/capture/shot", methods=["POST"])
def api_capture_shot():
    """Capture a shot and save it to the gallery"""
    logger.info("Shot capture request received")
    outcome = guidance.orchestrator.request_shot_capture()
    logger.info(f"Shot capture outcome: {outcome.kind.value}")
    return _outcome_response(outcome)


@app.route("/api/capture/state", methods=["GET"])
def api_capture_state():
    """Get capture state and the last outcome"""
    last = guidance.orchestrator.last_outcome
    return jsonify({
        "success": True,
        "state": guidance.orchestrator.state.value,
        "last_outcome": last.to_dict() if last else None
    })


# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == '__main__':
    print("\n" + "=" * 60)
    print("ORIENTATION GUIDANCE SERVICE")
    print("=" * 60)
    print("\n📁 Project Structure:")
    print("  layer1_orientation/ - Tilt estimation, alignment, MQTT sensor stream")
    print("  layer2_sharpness/   - Laplacian-variance blur gate")
    print("  layer3_capture/     - Camera, reference store, gallery, capture flow")
    print(f"  {GALLERY_DIR}/")
    print("    ├── captured_images/ - Accepted shots")
    print("    └── captured_json/   - Capture metadata")
    print("\n📡 API Endpoints:")
    print("  GET    /health                 - Health check")
    print("  GET    /api/status             - Service status")
    print("  POST   /api/orientation        - Publish accelerometer sample")
    print("  GET    /api/alignment          - Live alignment")
    print("  POST   /api/capture/reference  - Set golden image")
    print("  DELETE /api/reference          - Clear golden image")
    print("  POST   /api/capture/shot       - Capture shot to gallery")
    print("\n🎥 Camera:")
    print(f"  Device: /dev/video{CAMERA_INDEX}")
    print(f"  Alignment tolerance: {ALIGNMENT_TOLERANCE_DEG}°")
    print("\n" + "=" * 60)
    print("Server starting... Press Ctrl+C to stop")
    print("=" * 60 + "\n")

    if MQTT_ENABLED:
        guidance.start_sensor_stream(MQTT_HOST, MQTT_PORT, MQTT_TOPIC, MQTT_USER, MQTT_PASSWORD)

    logger.info("Flask server starting")
    try:
        app.run(host='0.0.0.0', port=PORT, debug=False, threaded=True)
    finally:
        guidance.shutdown()

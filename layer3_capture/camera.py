"""
Layer 3 — Camera Handler
Image source for the capture flow: operates the camera and returns
one JPEG-compressed frame per call.
"""
import cv2
import logging
import os
import threading
from typing import Optional

from error_handlers import (
    CameraError,
    CameraInitError,
    CameraNotFoundError,
    FrameCaptureError,
    FrameEncodeError
)

logger = logging.getLogger(__name__)


class CameraHandler:
    """
    USB camera handler with V4L2 backend.
    Opens the device lazily on the first capture.
    """

    # Default camera configuration
    DEFAULT_CONFIG = {
        'width': 1920,
        'height': 1080,
        'fps': 30,
        'codec': 'MJPG',
        'buffer_size': 1,  # Minimal buffer so a capture returns a fresh frame
        'jpeg_quality': 95,
    }

    def __init__(self, camera_index: int = 0, config: Optional[dict] = None):
        """
        Initialize camera handler.

        Args:
            camera_index: V4L2 device index (e.g., 0 for /dev/video0)
            config: Optional configuration override
        """
        self.camera_index = camera_index
        self.config = {**self.DEFAULT_CONFIG, **(config or {})}
        self.camera: Optional[cv2.VideoCapture] = None
        self._is_initialized = False
        self._lock = threading.Lock()

        # Actual resolution (may differ from requested)
        self.actual_width = 0
        self.actual_height = 0

        logger.info(f"CameraHandler created for /dev/video{camera_index}")

    def _check_device_exists(self) -> bool:
        """Check if camera device file exists."""
        device_path = f"/dev/video{self.camera_index}"
        exists = os.path.exists(device_path)
        if not exists:
            logger.error(f"Camera device not found: {device_path}")
        return exists

    def initialize(self) -> bool:
        """
        Initialize and configure the camera.

        Returns:
            bool: True if successful

        Raises:
            CameraNotFoundError: If camera device doesn't exist
            CameraInitError: If camera fails to initialize
        """
        if self._is_initialized and self.camera is not None:
            logger.debug("Camera already initialized")
            return True

        if not self._check_device_exists():
            raise CameraNotFoundError(self.camera_index)

        logger.info(f"Initializing camera at /dev/video{self.camera_index}")

        try:
            self.camera = cv2.VideoCapture(self.camera_index, cv2.CAP_V4L2)

            if not self.camera.isOpened():
                raise CameraInitError(
                    self.camera_index,
                    reason="Failed to open camera device"
                )

            self._configure_camera()

            self.actual_width = int(self.camera.get(cv2.CAP_PROP_FRAME_WIDTH))
            self.actual_height = int(self.camera.get(cv2.CAP_PROP_FRAME_HEIGHT))

            self._is_initialized = True
            logger.info(f"Camera initialized: {self.actual_width}x{self.actual_height}")
            return True

        except CameraError:
            self.release()
            raise
        except Exception as e:
            logger.error(f"Camera initialization failed: {e}")
            self.release()
            raise CameraInitError(self.camera_index, reason=str(e))

    def _configure_camera(self):
        """Apply camera configuration settings."""
        cfg = self.config

        fourcc = cv2.VideoWriter_fourcc(*cfg['codec'])
        self.camera.set(cv2.CAP_PROP_FOURCC, fourcc)
        self.camera.set(cv2.CAP_PROP_FRAME_WIDTH, cfg['width'])
        self.camera.set(cv2.CAP_PROP_FRAME_HEIGHT, cfg['height'])
        self.camera.set(cv2.CAP_PROP_FPS, cfg['fps'])
        self.camera.set(cv2.CAP_PROP_BUFFERSIZE, cfg['buffer_size'])

        logger.debug(f"Camera configured: {cfg['width']}x{cfg['height']} @ {cfg['fps']}fps")

    def capture_frame(self) -> bytes:
        """
        Capture one frame and return it JPEG-compressed.

        Returns:
            bytes: JPEG payload

        Raises:
            CameraError: If the camera is unavailable or the capture fails
        """
        with self._lock:
            self.initialize()

            ret, frame = self.camera.read()
            if not ret or frame is None:
                raise FrameCaptureError(reason="read() returned no frame")

            ok, buffer = cv2.imencode(
                '.jpg', frame,
                [int(cv2.IMWRITE_JPEG_QUALITY), self.config['jpeg_quality']]
            )
            if not ok:
                raise FrameEncodeError()

            return buffer.tobytes()

    def is_opened(self) -> bool:
        """Check if camera is currently open and initialized."""
        return self._is_initialized and self.camera is not None and self.camera.isOpened()

    def release(self):
        """Release camera resources."""
        if self.camera is not None:
            self.camera.release()
            self.camera = None
        self._is_initialized = False
        logger.info("Camera released")

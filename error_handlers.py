"""
Error Handling System
Provides consistent error responses across all layers
"""
import logging

logger = logging.getLogger(__name__)


class GuidanceError(Exception):
    """Base exception for guidance errors"""
    def __init__(self, message, error_code, details=None):
        self.message = message
        self.error_code = error_code
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self):
        """Convert error to JSON-serializable dict"""
        return {
            "success": False,
            "error": self.message,
            "error_code": self.error_code,
            "details": self.details
        }


# Layer 1 Errors - Orientation samples
class SampleError(GuidanceError):
    """Accelerometer sample errors"""
    pass


class InvalidSampleError(SampleError):
    """Accelerometer payload could not be parsed"""
    def __init__(self, payload, reason=None):
        super().__init__(
            message="Invalid accelerometer sample",
            error_code="INVALID_SAMPLE",
            details={
                "payload": str(payload)[:200],
                "reason": reason,
                "suggestion": "Send numeric x, y and z fields"
            }
        )


# Layer 2 Errors - Sharpness analysis
class AnalysisError(GuidanceError):
    """Sharpness analysis errors"""
    pass


class ImageDecodeError(AnalysisError):
    """Image bytes could not be decoded into pixels"""
    def __init__(self, reason=None):
        super().__init__(
            message="Failed to decode image for sharpness analysis",
            error_code="IMAGE_DECODE_FAILED",
            details={
                "reason": reason
            }
        )


# Layer 3 Errors - Camera (image source)
class CameraError(GuidanceError):
    """Camera-related errors"""
    pass


class CameraNotFoundError(CameraError):
    """Camera device not found"""
    def __init__(self, camera_index):
        super().__init__(
            message=f"Camera not found at /dev/video{camera_index}",
            error_code="CAMERA_NOT_FOUND",
            details={
                "camera_index": camera_index,
                "suggestion": "Check camera connection and device index"
            }
        )


class CameraInitError(CameraError):
    """Camera initialization failed"""
    def __init__(self, camera_index, reason=None):
        super().__init__(
            message=f"Failed to initialize camera at /dev/video{camera_index}",
            error_code="CAMERA_INIT_FAILED",
            details={
                "camera_index": camera_index,
                "reason": reason,
                "suggestion": "Check camera permissions and ensure no other app is using it"
            }
        )


class FrameCaptureError(CameraError):
    """Failed to capture frame"""
    def __init__(self, reason=None):
        super().__init__(
            message="Failed to capture frame from camera",
            error_code="FRAME_CAPTURE_FAILED",
            details={
                "reason": reason,
                "suggestion": "Check camera connection or restart the camera"
            }
        )


class FrameEncodeError(CameraError):
    """Captured frame could not be compressed"""
    def __init__(self):
        super().__init__(
            message="Failed to encode captured frame as JPEG",
            error_code="FRAME_ENCODE_FAILED"
        )


class FrameTimeoutError(CameraError):
    """Camera did not deliver a frame in time"""
    def __init__(self, timeout_seconds):
        super().__init__(
            message=f"Camera did not return a frame within {timeout_seconds}s",
            error_code="FRAME_TIMEOUT",
            details={
                "timeout_seconds": timeout_seconds,
                "suggestion": "Check that the camera driver is responsive"
            }
        )


# Layer 3 Errors - Gallery (image sink)
class SaveError(GuidanceError):
    """File saving errors"""
    pass


class ImageSaveError(SaveError):
    """Failed to save image"""
    def __init__(self, filepath, reason):
        super().__init__(
            message=f"Failed to save image to {filepath}",
            error_code="IMAGE_SAVE_FAILED",
            details={
                "filepath": filepath,
                "reason": str(reason),
                "suggestion": "Check disk space and write permissions"
            }
        )


# Layer 3 Errors - Capture flow
class CaptureError(GuidanceError):
    """Capture flow errors"""
    pass


class CaptureBusyError(CaptureError):
    """Trigger received while another capture is in flight"""
    def __init__(self, state):
        super().__init__(
            message="A capture is already in progress",
            error_code="CAPTURE_BUSY",
            details={
                "state": state,
                "suggestion": "Wait for the current capture to finish"
            }
        )


class CaptureCancelledError(CaptureError):
    """Capture session ended before the flow could commit"""
    def __init__(self):
        super().__init__(
            message="Capture session closed, nothing was saved",
            error_code="CAPTURE_CANCELLED"
        )


# Error response helpers
def handle_error(error, log_message=None):
    """
    Handle error consistently across the application

    Args:
        error: Exception that occurred
        log_message: Optional custom log message

    Returns:
        dict: Error response for JSON serialization
    """
    if log_message:
        logger.error(log_message)

    if isinstance(error, GuidanceError):
        # Known guidance error
        logger.error(f"{error.error_code}: {error.message}")
        if error.details:
            logger.debug(f"Error details: {error.details}")
        return error.to_dict()
    else:
        # Unexpected error
        logger.error(f"Unexpected error: {error}")
        logger.exception("Full traceback:")
        return {
            "success": False,
            "error": "An unexpected error occurred",
            "error_code": "UNEXPECTED_ERROR",
            "details": {
                "error_type": type(error).__name__,
                "error_message": str(error)
            }
        }

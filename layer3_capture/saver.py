"""
Layer 3 — Gallery Saver
Image sink for accepted shots: writes the JPEG payload and a JSON sidecar
describing the capture.
"""
import os
import json
import logging
import itertools
from datetime import datetime

from error_handlers import ImageSaveError

logger = logging.getLogger(__name__)


class GallerySaver:
    """Persists accepted shots to the gallery directory"""

    def __init__(self, base_dir="gallery"):
        """
        Initialize saver

        Args:
            base_dir: Base directory (default: "gallery")

        Directory structure:
            gallery/
            ├── captured_images/  # JPG files
            └── captured_json/    # JSON sidecars
        """
        self.base_dir = base_dir
        self.images_dir = os.path.join(base_dir, "captured_images")
        self.json_dir = os.path.join(base_dir, "captured_json")
        self._counter = itertools.count(1)

        self._ensure_directories()

        logger.info("GallerySaver initialized")
        logger.debug(f"  Images dir: {self.images_dir}")
        logger.debug(f"  JSON dir: {self.json_dir}")

    def _ensure_directories(self):
        """Create directory structure if it doesn't exist"""
        for directory in [self.base_dir, self.images_dir, self.json_dir]:
            if not os.path.exists(directory):
                os.makedirs(directory)
                logger.info(f"Created directory: {directory}")

    def store(self, image_bytes, metadata=None, prefix="shot"):
        """
        Save an accepted shot

        Args:
            image_bytes: JPEG payload from the image source
            metadata: Optional capture details for the JSON sidecar
            prefix: Filename prefix (default: "shot")

        Returns:
            dict: Contains timestamp, filepath, filename

        Raises:
            ImageSaveError: If the image cannot be written
        """
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        filename = f"{prefix}_{timestamp}_{next(self._counter):04d}.jpg"
        filepath = os.path.join(self.images_dir, filename)

        logger.info(f"Saving image to: {filepath}")
        try:
            with open(filepath, 'wb') as f:
                f.write(image_bytes)
        except OSError as e:
            raise ImageSaveError(filepath, e)

        if metadata is not None:
            self.save_metadata_json(metadata, filename)

        logger.info("Image saved successfully")
        return {
            "timestamp": timestamp,
            "filepath": filepath,
            "filename": filename
        }

    def save_metadata_json(self, metadata, image_filename):
        """
        Save capture details next to the image

        Args:
            metadata: Dictionary with capture details
            image_filename: Name of the saved image

        Returns:
            str: Path to saved JSON file, None if it could not be written
        """
        json_filename = os.path.splitext(image_filename)[0] + ".json"
        json_filepath = os.path.join(self.json_dir, json_filename)

        full_data = {
            **metadata,
            "image_filename": image_filename,
            "capture_time": datetime.now().isoformat()
        }

        try:
            with open(json_filepath, 'w', encoding='utf-8') as f:
                json.dump(full_data, f, indent=2, ensure_ascii=False)
        except OSError as e:
            # Image is already saved; the sidecar is informational only
            logger.warning(f"Could not save metadata JSON: {e}")
            return None

        return json_filepath

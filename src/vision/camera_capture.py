"""
CameraCapture - Vision Module
OpenCV-backed FrameSource. Frames come out as HxWx4 RGBA uint8, the layout
the quality analyzer expects from a browser canvas.
"""

import threading
from typing import Optional

import cv2
import numpy as np

from src.utils.logger import setup_logger

logger = setup_logger(__name__)


class CameraFrameSource:
    """
    USB camera (device index) or GStreamer pipeline, opened lazily on the
    first capture and shared by every engine in the process.
    """

    def __init__(self, config: dict):
        self.config = config
        self.cap = None
        self.width = config.get("width", 640)
        self.height = config.get("height", 480)
        self.fps = config.get("fps", 30)
        self.device_id = config.get("device_id", 0)
        self._lock = threading.Lock()

    def open(self):
        """Open camera with appropriate backend."""
        pipeline = self.config.get("pipeline")
        if pipeline:
            logger.info("Attempting camera via GStreamer pipeline...")
            self.cap = cv2.VideoCapture(pipeline, cv2.CAP_GSTREAMER)
            if self.cap.isOpened():
                logger.info("✅ Camera opened via GStreamer.")
                return

        logger.info(f"Opening USB camera (device {self.device_id})...")
        self.cap = cv2.VideoCapture(self.device_id)
        if not self.cap.isOpened():
            raise RuntimeError(f"Cannot open camera device {self.device_id}")

        self.cap.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        self.cap.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        self.cap.set(cv2.CAP_PROP_FPS, self.fps)
        # Keep only the newest frame so each capture reflects "now"
        self.cap.set(cv2.CAP_PROP_BUFFERSIZE, 1)

        actual_w = int(self.cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        actual_h = int(self.cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        logger.info(f"✅ Camera opened: {actual_w}x{actual_h}")

    def capture_frame(self) -> np.ndarray:
        """Read one RGBA frame. Raises RuntimeError when the camera yields nothing."""
        with self._lock:
            if self.cap is None or not self.cap.isOpened():
                self.open()
            ret, frame = self.cap.read()
        if not ret or frame is None:
            raise RuntimeError("Failed to read frame from camera")
        return cv2.cvtColor(frame, cv2.COLOR_BGR2RGBA)

    def release(self):
        with self._lock:
            if self.cap is not None:
                self.cap.release()
                self.cap = None
                logger.info("Camera released.")

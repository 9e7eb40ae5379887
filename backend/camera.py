"""
Camera feeds for AR sessions.

A session reads frames either from images streamed by the client over the
WebSocket, or from a camera attached to the server.
"""

import logging
import threading
import time
from typing import Optional

import cv2
import numpy as np

from face_detection import decode_image

logger = logging.getLogger(__name__)


class CameraError(Exception):
    """The camera could not be started."""


class CameraAccessError(CameraError):
    """The camera is missing or access was refused."""


class StreamedFrameSource:
    """
    Latest frame pushed by a remote client.
    Only the newest frame is kept; older ones are dropped unread. A frame
    older than ``max_age`` seconds is treated as no frame, so a stalled
    stream reads as an empty camera.
    """

    def __init__(self, max_age: float = 2.0):
        self.max_age = max_age
        self._frame: Optional[str] = None
        self._received_at = 0.0
        self._lock = threading.Lock()
        self._open = False

    def open(self):
        self._open = True

    @property
    def is_ready(self) -> bool:
        return self._open and self._frame is not None

    def push(self, image_base64: str):
        if not self._open:
            return
        with self._lock:
            self._frame = image_base64
            self._received_at = time.monotonic()

    def read_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            frame = self._frame
            received_at = self._received_at
        if frame is None:
            return None
        if time.monotonic() - received_at > self.max_age:
            logger.debug("Streamed frame is stale")
            return None
        return decode_image(frame)

    def stop(self):
        self._open = False
        with self._lock:
            self._frame = None


class WebcamSource:
    """OpenCV capture device on the server."""

    def __init__(self, device: int = 0, width: int = 1280, height: int = 720):
        self.device = device
        self.width = width
        self.height = height
        self._capture = None
        self._lock = threading.Lock()

    def open(self):
        capture = cv2.VideoCapture(self.device)
        if not capture.isOpened():
            capture.release()
            raise CameraAccessError(f"Cannot open camera device {self.device}")

        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self.height)
        with self._lock:
            self._capture = capture
        logger.info("Camera %s opened", self.device)

    @property
    def is_ready(self) -> bool:
        return self._capture is not None

    def read_frame(self) -> Optional[np.ndarray]:
        with self._lock:
            if self._capture is None:
                return None
            ok, frame = self._capture.read()
        return frame if ok else None

    def stop(self):
        """Release the device. Safe to call more than once."""
        with self._lock:
            capture, self._capture = self._capture, None
        if capture is None:
            return
        try:
            capture.release()
        except cv2.error as e:
            logger.warning("Camera release error: %s", e)
        logger.info("Camera %s released", self.device)

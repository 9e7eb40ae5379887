"""
Face detection module for RecallAR.
Wraps InsightFace to find the face in a frame and compute its embedding.
"""

import base64
import logging
import warnings
from io import BytesIO
from typing import Optional

import cv2
import numpy as np
from PIL import Image

from overlay import FaceBox
from recognition import DetectionResult

logger = logging.getLogger(__name__)

# Suppress the FutureWarning from insightface
warnings.filterwarnings("ignore", category=FutureWarning)


def decode_image(image_base64: str) -> Optional[np.ndarray]:
    """Decode a base64 image (data URL prefix allowed) to an OpenCV BGR image."""
    try:
        if "," in image_base64:
            image_base64 = image_base64.split(",", 1)[1]

        image_bytes = base64.b64decode(image_base64)
        pil_image = Image.open(BytesIO(image_bytes)).convert("RGB")
        return cv2.cvtColor(np.array(pil_image), cv2.COLOR_RGB2BGR)
    except Exception as e:
        logger.warning("Image decode error: %s", e)
        return None


def face_box_from_bbox(bbox, frame_shape) -> FaceBox:
    """
    Convert an (x1, y1, x2, y2) pixel box to percentages of the frame.
    The box is anchored at its top-right corner so the overlay can sit
    beside the face.
    """
    height, width = frame_shape[:2]
    x1, y1, x2, y2 = (float(v) for v in bbox[:4])
    box_width = x2 - x1
    box_height = y2 - y1
    return FaceBox(
        x=(x1 + box_width) / width * 100,
        y=y1 / height * 100,
        width=box_width / width * 100,
        height=box_height / height * 100,
    )


class FaceAnalyzer:
    """
    Single-face detector and embedding extractor.
    Stateless per call: each frame is analysed on its own.
    """

    def __init__(
        self,
        model_name: str = "buffalo_l",
        det_size: int = 320,
        det_threshold: float = 0.5,
    ):
        self.model_name = model_name
        self.det_size = det_size
        self.det_threshold = det_threshold
        self.model = None

    @property
    def is_ready(self) -> bool:
        return self.model is not None

    def load(self) -> bool:
        """Load the InsightFace models. Returns False if they cannot be loaded."""
        if self.model is not None:
            return True

        try:
            from insightface.app import FaceAnalysis

            model = FaceAnalysis(
                name=self.model_name,
                providers=["CPUExecutionProvider"]
            )
            model.prepare(
                ctx_id=0,
                det_thresh=self.det_threshold,
                det_size=(self.det_size, self.det_size),
            )
        except Exception as e:
            logger.warning("Face model init failed: %s", e)
            return False

        self.model = model
        logger.info("Face model %s initialized", self.model_name)
        return True

    def _largest_face(self, image: np.ndarray):
        faces = self.model.get(image)
        if len(faces) == 0:
            return None
        return max(faces, key=lambda f: (f.bbox[2] - f.bbox[0]) * (f.bbox[3] - f.bbox[1]))

    def detect_once(self, frame: np.ndarray) -> Optional[DetectionResult]:
        """
        Detect the most prominent face in a frame.
        Returns None when no face is found; the embedding is None when the
        face was found but could not be embedded.
        """
        if self.model is None or frame is None:
            return None

        face = self._largest_face(frame)
        if face is None:
            return None

        embedding = getattr(face, "normed_embedding", None)
        if embedding is not None:
            embedding = np.asarray(embedding, dtype=np.float64)

        return DetectionResult(
            face_box=face_box_from_bbox(face.bbox, frame.shape),
            embedding=embedding,
        )

    def extract_embedding(self, image: np.ndarray) -> Optional[np.ndarray]:
        """Embedding of the main face in a registration photo."""
        if self.model is None and not self.load():
            return None

        try:
            result = self.detect_once(image)
        except Exception as e:
            logger.warning("Embedding error: %s", e)
            return None

        if result is None:
            logger.warning("No face detected in image")
            return None
        return result.embedding

"""
Feature Extraction Service using DeepFace

This module turns image bytes into the per-modality descriptors the index
works with:
- face: L2-normalized Facenet embedding (128-d)
- iris: both eye centres, relative to the detected face box
- ear: the five detector landmarks, relative to the face box. DeepFace
  exposes no jaw or ear landmarks, so this slot carries the coarse
  side-of-face geometry those points give.
"""
import numpy as np
from PIL import Image, UnidentifiedImageError
from io import BytesIO
from typing import Optional, List
import logging
import threading

from deepface import DeepFace

from biomatch.config import (
    FACE_RECOGNITION_MODEL,
    FACE_DETECTOR_BACKEND,
    MAX_IMAGE_SIZE
)
from biomatch.exceptions import ImageDecodeError
from biomatch.features import FeatureBundle, Modality

logger = logging.getLogger(__name__)

EAR_LANDMARKS = ("left_eye", "right_eye", "nose", "mouth_left", "mouth_right")


def _relative_point(point, area: dict) -> Optional[List[float]]:
    """Express a landmark relative to the face box, or None if missing."""
    if point is None:
        return None
    width = float(area.get("w") or 0)
    height = float(area.get("h") or 0)
    if width <= 0 or height <= 0:
        return None
    return [
        (float(point[0]) - float(area.get("x", 0))) / width,
        (float(point[1]) - float(area.get("y", 0))) / height,
    ]


def landmark_features(area: dict) -> dict:
    """Iris and ear descriptors from a DeepFace ``facial_area`` dict."""
    features = {}

    eyes = [_relative_point(area.get(name), area) for name in ("left_eye", "right_eye")]
    if all(p is not None for p in eyes):
        features[Modality.IRIS] = eyes[0] + eyes[1]

    points = [_relative_point(area.get(name), area) for name in EAR_LANDMARKS]
    if all(p is not None for p in points):
        features[Modality.EAR] = [value for point in points for value in point]

    return features


class DeepFaceExtractor:
    """
    Feature extractor backed by DeepFace.

    The model is loaded lazily on first use. ``extract`` is blocking and is
    called from worker threads.
    """

    def __init__(self):
        """Initialize the feature extractor."""
        self.model_name = FACE_RECOGNITION_MODEL
        self.detector_backend = FACE_DETECTOR_BACKEND
        self._model_loaded = False
        self._model_lock = threading.Lock()

    @property
    def model_loaded(self) -> bool:
        return self._model_loaded

    def _ensure_model_loaded(self):
        """Lazy load the model on first use, once across worker threads."""
        if self._model_loaded:
            return
        with self._model_lock:
            if self._model_loaded:
                return
            logger.info(f"Loading {self.model_name} model...")
            try:
                dummy_img = np.zeros((160, 160, 3), dtype=np.uint8)
                DeepFace.represent(
                    img_path=dummy_img,
                    model_name=self.model_name,
                    detector_backend="skip",
                    enforce_detection=False
                )
                logger.info(f"{self.model_name} model loaded successfully")
            except Exception as e:
                logger.warning(f"Model warmup warning: {e}")
            self._model_loaded = True

    def preprocess_image(self, image_bytes: bytes) -> np.ndarray:
        """
        Decode image bytes and shrink them to fit MAX_IMAGE_SIZE.

        Returns:
            BGR numpy array, the channel order DeepFace expects

        Raises:
            ImageDecodeError: If the bytes are not a readable image
        """
        try:
            image = Image.open(BytesIO(image_bytes))
            image.load()
        except (UnidentifiedImageError, OSError, ValueError) as e:
            raise ImageDecodeError(f"Failed to decode image: {e}") from e

        if image.mode != "RGB":
            image = image.convert("RGB")

        # thumbnail keeps the aspect ratio and never enlarges
        if image.size[0] > MAX_IMAGE_SIZE[0] or image.size[1] > MAX_IMAGE_SIZE[1]:
            image.thumbnail(MAX_IMAGE_SIZE, Image.Resampling.LANCZOS)
            logger.debug(f"Image resized to {image.size}")

        return np.ascontiguousarray(np.array(image)[:, :, ::-1])

    def extract(self, image_bytes: bytes) -> Optional[FeatureBundle]:
        """
        Extract face, iris and ear descriptors from one image.

        Returns:
            FeatureBundle, or None if no face was detected

        Raises:
            ImageDecodeError: If the bytes are not a readable image
        """
        img_array = self.preprocess_image(image_bytes)
        self._ensure_model_loaded()

        try:
            representations = DeepFace.represent(
                img_path=img_array,
                model_name=self.model_name,
                detector_backend=self.detector_backend,
                enforce_detection=True,
                align=True
            )
        except ValueError as e:
            # DeepFace signals "no face" with a ValueError when enforcing detection
            logger.debug(f"No face detected: {e}")
            return None

        if not representations:
            return None

        best = representations[0]
        embedding = best.get("embedding")
        if embedding is None:
            return None

        face = np.array(embedding, dtype=np.float64)
        norm = np.linalg.norm(face)
        if norm > 0:
            face = face / norm

        arrays = {Modality.FACE: face}
        arrays.update(landmark_features(best.get("facial_area") or {}))
        return FeatureBundle.from_arrays(arrays)

"""Face landmark embeddings.

The embedding is a geometric signature, not a learned one: the first face's
mesh landmarks are centred on their centroid, scaled by the outer-eye-corner
distance, subsampled and L2-normalized. That makes it independent of where
the face sits in the frame and how far it is from the camera. It is *not*
independent of head pose; thresholds have to allow for that.
"""

import logging
import urllib.request
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Protocol

import numpy as np
from PIL import Image

from .config import DEFAULT_MODEL_PATH
from .errors import ModelUnavailable
from .hashing import load_image

logger = logging.getLogger(__name__)

FACE_LANDMARKER_MODEL_URL = (
    "https://storage.googleapis.com/mediapipe-models/face_landmarker/"
    "face_landmarker/float16/1/face_landmarker.task"
)

MESH_POINTS = 468           # canonical mesh; trailing iris points are ignored
LEFT_EYE_OUTER = 33
RIGHT_EYE_OUTER = 263
LANDMARK_STRIDE = 4         # 468 / 4 = 117 retained points


@dataclass
class FaceLandmarks:
    """Landmarks of one detected face.

    Attributes:
        points: (N, 2) landmark coordinates in pixels.
        blink_score: Eye-closure score in [0, 1] if the backend provides one.
    """

    points: np.ndarray
    blink_score: Optional[float] = None

    @property
    def centroid(self) -> tuple[float, float]:
        cx, cy = self.points[:, :2].mean(axis=0)
        return float(cx), float(cy)


class LandmarkDetector(Protocol):
    """Anything that turns an RGB frame into per-face landmark sets."""

    def detect(self, image: np.ndarray) -> List[FaceLandmarks]:
        ...


def _get_model_path(model_path: Path) -> Path:
    """Return the landmarker model path, downloading it if necessary."""
    if model_path.exists():
        return model_path
    model_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("[FACE] Downloading face landmarker model to %s...", model_path)
    try:
        urllib.request.urlretrieve(FACE_LANDMARKER_MODEL_URL, model_path)
    except OSError as e:
        raise ModelUnavailable(
            f"Failed to download face landmarker model: {e}. "
            f"Download {FACE_LANDMARKER_MODEL_URL} manually and save it to {model_path}"
        ) from e
    return model_path


class MediaPipeFaceLandmarker:
    """MediaPipe Tasks FaceLandmarker backend.

    Detects up to ``max_faces`` faces with 478 landmarks each and the
    ``eyeBlinkLeft`` / ``eyeBlinkRight`` blendshapes used for liveness.
    The model is loaded lazily on first use and kept for the process.
    """

    def __init__(self, model_path: Path = DEFAULT_MODEL_PATH, max_faces: int = 5, min_confidence: float = 0.5):
        self._model_path = Path(model_path)
        self._max_faces = max_faces
        self._min_confidence = min_confidence
        self._landmarker: Optional[object] = None

    def initialize(self) -> None:
        if self._landmarker is not None:
            return
        try:
            from mediapipe.tasks import python
            from mediapipe.tasks.python import vision
        except ImportError as e:
            raise ModelUnavailable("mediapipe is not installed") from e

        path = _get_model_path(self._model_path)
        options = vision.FaceLandmarkerOptions(
            base_options=python.BaseOptions(model_asset_path=str(path)),
            running_mode=vision.RunningMode.IMAGE,
            num_faces=self._max_faces,
            min_face_detection_confidence=self._min_confidence,
            output_face_blendshapes=True,
        )
        try:
            self._landmarker = vision.FaceLandmarker.create_from_options(options)
        except (RuntimeError, ValueError) as e:
            raise ModelUnavailable(f"Could not load face landmarker: {e}") from e
        logger.info("[FACE] MediaPipe face landmarker initialized")

    def detect(self, image: np.ndarray) -> List[FaceLandmarks]:
        self.initialize()
        import mediapipe as mp

        height, width = image.shape[:2]
        mp_image = mp.Image(image_format=mp.ImageFormat.SRGB, data=np.ascontiguousarray(image))
        result = self._landmarker.detect(mp_image)

        faces = []
        for idx, face_lms in enumerate(result.face_landmarks or []):
            points = np.array([[lm.x * width, lm.y * height] for lm in face_lms], dtype=np.float64)
            blink = None
            if result.face_blendshapes and idx < len(result.face_blendshapes):
                scores = {c.category_name: c.score for c in result.face_blendshapes[idx]}
                if "eyeBlinkLeft" in scores and "eyeBlinkRight" in scores:
                    blink = (scores["eyeBlinkLeft"] + scores["eyeBlinkRight"]) / 2.0
            faces.append(FaceLandmarks(points=points, blink_score=blink))
        return faces

    def cleanup(self) -> None:
        if self._landmarker is not None:
            self._landmarker.close()
            self._landmarker = None


def embedding_from_landmarks(
    points: np.ndarray,
    stride: int = LANDMARK_STRIDE,
    left_eye: int = LEFT_EYE_OUTER,
    right_eye: int = RIGHT_EYE_OUTER,
) -> Optional[np.ndarray]:
    """Build the normalized embedding for one face, or None if degenerate."""
    pts = np.asarray(points, dtype=np.float64)[:MESH_POINTS, :2]
    if len(pts) <= max(left_eye, right_eye):
        return None
    eye_dist = float(np.linalg.norm(pts[left_eye] - pts[right_eye]))
    if eye_dist < 1e-6:
        return None

    centred = (pts - pts.mean(axis=0)) / eye_dist
    vec = centred[::stride].reshape(-1)
    norm = float(np.linalg.norm(vec))
    if norm == 0.0:
        return None
    return vec / norm


def cosine_similarity(a: np.ndarray, b: np.ndarray) -> float:
    n = min(len(a), len(b))
    a, b = np.asarray(a[:n], dtype=np.float64), np.asarray(b[:n], dtype=np.float64)
    denom = float(np.linalg.norm(a) * np.linalg.norm(b)) or 1.0
    return float(np.dot(a, b) / denom)


class FaceEmbeddingExtractor:
    def __init__(self, detector: LandmarkDetector, stride: int = LANDMARK_STRIDE):
        self.detector = detector
        self.stride = stride

    @classmethod
    def from_settings(cls, settings) -> "FaceEmbeddingExtractor":
        return cls(MediaPipeFaceLandmarker(model_path=settings.face_model_path))

    def _faces(self, image: bytes | Image.Image | np.ndarray) -> List[FaceLandmarks]:
        if isinstance(image, np.ndarray):
            frame = image
        else:
            frame = np.asarray(load_image(image))
        return self.detector.detect(frame)

    def count_faces(self, image: bytes | Image.Image | np.ndarray) -> int:
        return len(self._faces(image))

    def extract_embedding(self, image: bytes | Image.Image | np.ndarray) -> Optional[np.ndarray]:
        faces = self._faces(image)
        if not faces:
            logger.info("[FACE] No face found")
            return None
        if len(faces) > 1:
            logger.debug("[FACE] %d faces found, using the first", len(faces))
        return embedding_from_landmarks(faces[0].points, stride=self.stride)

    def analyze(self, image: bytes | Image.Image | np.ndarray) -> tuple[int, Optional[np.ndarray]]:
        """Face count and first-face embedding from a single detector pass."""
        faces = self._faces(image)
        if not faces:
            return 0, None
        return len(faces), embedding_from_landmarks(faces[0].points, stride=self.stride)

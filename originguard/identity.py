"""Reference-vs-capture identity verification and the liveness check.

    AwaitingCapture -> MultiFaceCheck -> Rejected (multiple faces)
                                      -> EmbeddingCompare     -> Verified | Mismatch
                                      -> FallbackHashCompare  -> Verified | Mismatch

The fallback is taken only when an embedding could not be produced for one
of the two images (no face found, or the landmark model is unavailable).
"""

import logging
import math
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

import numpy as np
from PIL import Image

from .errors import AmbiguousIdentity, ModelUnavailable, VerificationError
from .face import FaceEmbeddingExtractor, LandmarkDetector, cosine_similarity
from .hashing import compute_hash_variants, load_image, min_variant_distance

logger = logging.getLogger(__name__)

EYES_OPEN_BELOW = 0.2
MIN_LIVENESS_SAMPLES = 3


class VerificationStatus(str, Enum):
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    REJECTED = "rejected"


class VerificationMethod(str, Enum):
    EMBEDDING = "embedding"
    DHASH = "dhash"
    MULTI_FACE = "multi_face"


@dataclass(frozen=True)
class VerificationResult:
    status: VerificationStatus
    method: VerificationMethod
    threshold: float
    similarity: float | None = None
    distance: int | None = None
    reason: str = ""

    @property
    def verified(self) -> bool:
        return self.status is VerificationStatus.VERIFIED


class IdentityVerifier:
    def __init__(
        self,
        extractor: Optional[FaceEmbeddingExtractor],
        similarity_threshold: float = 0.82,
        fallback_distance_threshold: int = 14,
        hash_size: int = 8,
        center_crop: float = 0.7,
    ):
        self.extractor = extractor
        self.similarity_threshold = similarity_threshold
        self.fallback_distance_threshold = fallback_distance_threshold
        self.hash_size = hash_size
        self.center_crop = center_crop

    @classmethod
    def from_settings(cls, settings, extractor: Optional[FaceEmbeddingExtractor]) -> "IdentityVerifier":
        return cls(
            extractor,
            similarity_threshold=settings.face_sim_threshold,
            fallback_distance_threshold=settings.identity_dhash_threshold,
            hash_size=settings.dhash_size,
            center_crop=settings.center_crop,
        )

    def _analyze(self, image: Image.Image) -> tuple[int | None, np.ndarray | None]:
        if self.extractor is None:
            return None, None
        try:
            return self.extractor.analyze(image)
        except ModelUnavailable as e:
            logger.warning("[IDENTITY] Landmarks unavailable, using dHash fallback: %s", e)
            return None, None

    @staticmethod
    def _ensure_single_face(faces: int | None) -> None:
        if faces is not None and faces > 1:
            raise AmbiguousIdentity(f"{faces} faces in capture")

    def _embedding(self, image: Image.Image) -> np.ndarray | None:
        if self.extractor is None:
            return None
        try:
            return self.extractor.extract_embedding(image)
        except ModelUnavailable as e:
            logger.warning("[IDENTITY] Embedding unavailable, using dHash fallback: %s", e)
            return None

    def verify(self, reference: bytes | Image.Image, capture: bytes | Image.Image) -> VerificationResult:
        ref_img = load_image(reference)
        cap_img = load_image(capture)

        # one detector pass over the capture gives both the count and the embedding
        cap_faces, cap_emb = self._analyze(cap_img)
        try:
            self._ensure_single_face(cap_faces)
        except AmbiguousIdentity as e:
            logger.info("[IDENTITY] Rejected: %s", e)
            return VerificationResult(
                status=VerificationStatus.REJECTED,
                method=VerificationMethod.MULTI_FACE,
                threshold=self.similarity_threshold,
                reason="multiple faces",
            )

        ref_emb = self._embedding(ref_img) if cap_emb is not None else None
        if ref_emb is not None and cap_emb is not None:
            return self.compare_embeddings(ref_emb, cap_emb)
        return self.compare_hashes(ref_img, cap_img)

    def compare_embeddings(self, reference: np.ndarray, capture: np.ndarray) -> VerificationResult:
        sim = cosine_similarity(reference, capture)
        th = self.similarity_threshold
        if sim >= th:
            status, reason = VerificationStatus.VERIFIED, f"similarity {sim:.3f} >= {th}"
        else:
            status, reason = VerificationStatus.MISMATCH, f"similarity {sim:.3f} < {th}"
        logger.info("[IDENTITY] Embedding %s: %s", status.value, reason)
        return VerificationResult(
            status=status,
            method=VerificationMethod.EMBEDDING,
            threshold=th,
            similarity=sim,
            reason=reason,
        )

    def compare_hashes(self, reference: Image.Image, capture: Image.Image) -> VerificationResult:
        try:
            refs = compute_hash_variants(reference, self.hash_size, self.center_crop)
            caps = compute_hash_variants(capture, self.hash_size, self.center_crop)
        except (OSError, ValueError) as e:
            raise VerificationError(f"Neither embedding nor dHash comparison possible: {e}") from e

        dist, _, _ = min_variant_distance(refs, caps)
        th = self.fallback_distance_threshold
        if dist <= th:
            status, reason = VerificationStatus.VERIFIED, f"distance {dist} <= {th}"
        else:
            status, reason = VerificationStatus.MISMATCH, f"distance {dist} > {th}"
        logger.info("[IDENTITY] dHash fallback %s: %s", status.value, reason)
        return VerificationResult(
            status=status,
            method=VerificationMethod.DHASH,
            threshold=th,
            distance=dist,
            reason=reason,
        )


# ── Liveness ─────────────────────────────────────────────────────────────────


@dataclass
class LivenessSession:
    """Per-capture state; owned by the loop that created it."""

    started_at: float
    duration_budget: float
    has_moved: bool = False
    has_blinked: bool = False
    last_center: tuple[float, float] | None = None
    last_blink_score: float = 0.0
    eyes_open_seen: bool = False
    samples: int = 0

    @property
    def passed(self) -> bool:
        return self.has_moved and self.has_blinked

    def expired(self, now: float) -> bool:
        return now - self.started_at >= self.duration_budget

    def update(self, center: tuple[float, float], blink_score: float | None, move_threshold: float, blink_threshold: float) -> None:
        self.samples += 1
        if self.last_center is not None:
            displacement = math.hypot(center[0] - self.last_center[0], center[1] - self.last_center[1])
            if displacement > move_threshold:
                self.has_moved = True
        self.last_center = center

        if blink_score is None:
            return
        # edge first: a threshold below EYES_OPEN_BELOW must still register
        if blink_score > blink_threshold and self.eyes_open_seen and self.last_blink_score <= blink_threshold:
            self.has_blinked = True
        if blink_score < EYES_OPEN_BELOW:
            self.eyes_open_seen = True
        self.last_blink_score = blink_score


@dataclass(frozen=True)
class LivenessResult:
    ok: bool
    reason: str = ""
    has_moved: bool = False
    has_blinked: bool = False
    samples: int = 0
    details: dict = field(default_factory=dict)


def check_liveness(
    frames: Iterable[np.ndarray],
    detector: LandmarkDetector,
    duration_budget: float = 6.0,
    move_threshold: float | None = None,
    blink_threshold: float = 0.5,
    clock: Callable[[], float] = time.monotonic,
) -> LivenessResult:
    """Sample frames until both a head movement and a blink are seen.

    ``frames`` are RGB arrays, typically pulled from a camera as they arrive.
    The budget is clamped to 2..15 seconds. Without an explicit
    ``move_threshold``, movement means a centroid jump of more than 1% of the
    shorter frame side (at least 4 pixels).
    """
    budget = max(2.0, min(15.0, duration_budget))
    session = LivenessSession(started_at=clock(), duration_budget=budget)
    threshold = move_threshold

    for frame in frames:
        if session.expired(clock()):
            break
        if threshold is None:
            h, w = frame.shape[:2]
            threshold = max(4.0, min(w, h) * 0.01)

        faces = detector.detect(frame)
        if not faces:
            continue
        face = faces[0]
        session.update(face.centroid, face.blink_score, threshold, blink_threshold)
        if session.passed:
            logger.info("[LIVENESS] Passed after %d sample(s)", session.samples)
            break

    if session.passed:
        reason = ""
    elif session.samples < MIN_LIVENESS_SAMPLES:
        reason = "not-enough-samples"
    elif not session.has_moved and not session.has_blinked:
        reason = "no-motion"
    elif not session.has_blinked:
        reason = "no-blink"
    else:
        reason = "no-motion"
    if reason:
        logger.info("[LIVENESS] Failed: %s (%d samples)", reason, session.samples)

    return LivenessResult(
        ok=session.passed,
        reason=reason,
        has_moved=session.has_moved,
        has_blinked=session.has_blinked,
        samples=session.samples,
        details={"move_threshold": threshold, "blink_threshold": blink_threshold, "duration_budget": budget},
    )

"""
Descriptor Face Matcher.

similarity = max(0, 1 - ||a - b||) over L2-normalized face descriptors;
is_match = similarity >= threshold. Confidence is the weaker of the two
detection scores and never changes the decision.
"""

import logging

import numpy as np

from ekyc.core.entities.document import CapturedImage
from ekyc.core.interfaces.face_engine import FaceModelUnavailableError, IFaceEngine
from ekyc.core.interfaces.face_matcher import FaceMatchResult, IFaceMatcher

logger = logging.getLogger(__name__)

REASON_NO_FACE = "no_face"
REASON_MODELS_UNAVAILABLE = "models_unavailable"


def descriptor_similarity(a: np.ndarray, b: np.ndarray) -> float:
    a = np.asarray(a, dtype=np.float64).flatten()
    b = np.asarray(b, dtype=np.float64).flatten()
    na, nb = np.linalg.norm(a), np.linalg.norm(b)
    if na == 0 or nb == 0:
        return 0.0
    distance = float(np.linalg.norm(a / na - b / nb))
    return max(0.0, 1.0 - distance)


class DescriptorFaceMatcher(IFaceMatcher):
    """Face matching on top of any IFaceEngine."""

    def __init__(
        self,
        face_engine: IFaceEngine | None,
        threshold: float = 0.6,
        fallback_similarity: float = 0.85,
    ):
        self._engine = face_engine
        self._threshold = threshold
        self._fallback = fallback_similarity

    def match(self, document_image: CapturedImage, face_image: CapturedImage) -> FaceMatchResult:
        if self._engine is None:
            return self._fallback_result("no face engine configured")
        try:
            doc_face = self._engine.detect(document_image)
            live_face = self._engine.detect(face_image)
            if doc_face is None or live_face is None:
                missing = "document" if doc_face is None else "live capture"
                logger.info(f"Face matching: no face found in the {missing}")
                return FaceMatchResult(
                    similarity=0.0, confidence=0.0, is_match=False, reason=REASON_NO_FACE
                )
            doc_descriptor = self._engine.embed(document_image, doc_face)
            live_descriptor = self._engine.embed(face_image, live_face)
        except FaceModelUnavailableError as e:
            return self._fallback_result(str(e))

        similarity = round(descriptor_similarity(doc_descriptor, live_descriptor), 4)
        return FaceMatchResult(
            similarity=similarity,
            confidence=round(min(doc_face.confidence, live_face.confidence), 4),
            is_match=similarity >= self._threshold,
        )

    def _fallback_result(self, why: str) -> FaceMatchResult:
        logger.warning(f"Face models unavailable ({why}); using fallback similarity {self._fallback}")
        return FaceMatchResult(
            similarity=self._fallback,
            confidence=self._fallback,
            is_match=self._fallback >= self._threshold,
            degraded=True,
            reason=REASON_MODELS_UNAVAILABLE,
        )

"""
Challenge/Response Liveness Evaluator.

Prompts look straight → smile → turn right → turn left, holds each
challenge for a fixed duration and samples one frame per challenge. A
check passes when a face is present, its size ratio is plausible and the
detector is confident. Basic checks only, not a full anti-spoofing model.
"""

import asyncio
import logging

import cv2
import numpy as np

from ekyc.core.entities.document import CapturedImage, ImageRole
from ekyc.core.interfaces.capture_source import ICaptureSource
from ekyc.core.interfaces.face_engine import FaceModelUnavailableError, IFaceEngine
from ekyc.core.interfaces.liveness import (
    CHALLENGE_SEQUENCE,
    Challenge,
    ChallengeListener,
    ILivenessEvaluator,
    LivenessOutcome,
    LivenessResult,
)

logger = logging.getLogger(__name__)


def evaluate_checks(checks: dict[Challenge, bool], pass_ratio: float = 0.6, degraded: bool = False) -> LivenessResult:
    """Live iff strictly more than pass_ratio of the checks passed."""
    total = len(checks)
    passed = sum(1 for ok in checks.values() if ok)
    confidence = passed / total if total else 0.0
    is_live = confidence > pass_ratio
    issues = [f"{c.value}: check failed" for c, ok in checks.items() if not ok]
    if not is_live and not issues:
        issues.append("No challenge was completed")
    return LivenessResult(
        is_live=is_live,
        confidence=confidence,
        checks=dict(checks),
        issues=issues,
        degraded=degraded,
    )


def skin_tone_presence(pixels: np.ndarray) -> tuple[bool, float]:
    """
    Rough face-presence heuristic on skin-coloured pixels (RGB rule).

    Returns (detected, confidence); detected when more than 2% of the
    pixels look like skin, confidence = min(ratio * 10, 1).
    """
    if pixels is None or pixels.size == 0 or pixels.ndim != 3:
        return False, 0.0
    bgr = pixels[:, :, :3].astype(np.int16)
    b, g, r = bgr[:, :, 0], bgr[:, :, 1], bgr[:, :, 2]
    spread = bgr.max(axis=2) - bgr.min(axis=2)
    skin = (
        (r > 95) & (g > 40) & (b > 20)
        & (spread > 15)
        & (np.abs(r - g) > 15) & (r > g) & (r > b)
    )
    ratio = float(np.count_nonzero(skin)) / float(skin.size)
    detected = ratio > 0.02
    return detected, (min(ratio * 10, 1.0) if detected else 0.0)


class ChallengeLivenessEvaluator(ILivenessEvaluator):
    """
    Liveness over a fixed challenge sequence.

    Falls back to the skin-tone heuristic (result flagged degraded) when
    the face engine is missing or its models cannot be loaded.
    """

    def __init__(
        self,
        face_engine: IFaceEngine | None = None,
        challenge_duration: float = 3.0,
        capture_timeout: float = 10.0,
        min_face_ratio: float = 0.15,
        max_face_ratio: float = 0.8,
        min_confidence: float = 0.7,
        pass_ratio: float = 0.6,
    ):
        self._engine = face_engine
        self._duration = challenge_duration
        self._timeout = capture_timeout
        self._min_ratio = min_face_ratio
        self._max_ratio = max_face_ratio
        self._min_confidence = min_confidence
        self._pass_ratio = pass_ratio

    async def evaluate(
        self,
        source: ICaptureSource,
        on_challenge: ChallengeListener | None = None,
    ) -> LivenessOutcome:
        checks: dict[Challenge, bool] = {}
        face_image: CapturedImage | None = None
        degraded = self._engine is None

        for index, challenge in enumerate(CHALLENGE_SEQUENCE):
            if on_challenge is not None:
                on_challenge(challenge, index)
            if source.realtime and self._duration > 0:
                await asyncio.sleep(self._duration)

            frame = await asyncio.wait_for(source.capture(ImageRole.FACE), timeout=self._timeout)
            if challenge is Challenge.LOOK_STRAIGHT:
                face_image = frame.with_role(ImageRole.FACE)

            passed, used_fallback = await asyncio.to_thread(self._check_frame, frame, degraded)
            degraded = degraded or used_fallback
            checks[challenge] = passed
            logger.debug(f"Liveness {challenge.value}: {'pass' if passed else 'fail'}")

        result = evaluate_checks(checks, self._pass_ratio, degraded=degraded)
        if degraded:
            logger.warning("Liveness evaluated with the skin-tone heuristic (face engine unavailable)")
        return LivenessOutcome(result=result, face_image=face_image)

    def _check_frame(self, frame: CapturedImage, degraded: bool) -> tuple[bool, bool]:
        """Returns (passed, used_fallback)."""
        if not degraded:
            try:
                detection = self._engine.detect(frame)
            except FaceModelUnavailableError as e:
                logger.warning(f"Face engine unavailable during liveness: {e}")
            else:
                if detection is None:
                    return False, False
                ratio_ok = self._min_ratio <= detection.area_ratio <= self._max_ratio
                return ratio_ok and detection.confidence > self._min_confidence, False

        pixels = frame.pixels
        if pixels.ndim == 3 and pixels.shape[2] == 4:
            pixels = cv2.cvtColor(pixels, cv2.COLOR_BGRA2BGR)
        detected, confidence = skin_tone_presence(pixels)
        return detected and confidence > self._min_confidence, True

"""
MotionDetector - Vision Module
Separates live faces from replays by measuring motion across a capture window.

    Δ_t = mean |L_t − L_{t-1}|      with L = (R+G+B)/3
    score = mean(Δ_t)

score <= motion_min → STATIC  (printed photo / still image on a screen)
score >= motion_max → ERRATIC (handheld phone, video playback)
otherwise           → NATURAL (micro-movements of a live subject)
"""

from dataclasses import dataclass
from enum import Enum
from typing import List, Sequence

import numpy as np

from src.vision.quality_analyzer import as_rgb, luma_mean
from src.utils.logger import setup_logger

logger = setup_logger(__name__)


class MotionClass(str, Enum):
    STATIC = "static"
    NATURAL = "natural"
    ERRATIC = "erratic"


@dataclass(frozen=True)
class MotionResult:
    classification: MotionClass
    score: float
    reason: str

    @property
    def is_natural(self) -> bool:
        return self.classification is MotionClass.NATURAL


def frame_difference(frame_a: np.ndarray, frame_b: np.ndarray) -> float:
    """Mean absolute luma delta between two frames of equal size."""
    la = luma_mean(as_rgb(frame_a))
    lb = luma_mean(as_rgb(frame_b))
    if la.shape != lb.shape:
        raise ValueError(f"Frame size changed mid-window: {la.shape} vs {lb.shape}")
    return float(np.mean(np.abs(la - lb)))


def detect_motion(frames: Sequence[np.ndarray], min_score: float, max_score: float) -> MotionResult:
    """
    Classify motion over an already captured window of frames.

    The caller is responsible for sampling the full window (see
    FrameCollector); this function never shortens it.
    """
    if len(frames) < 2:
        return MotionResult(MotionClass.STATIC, 0.0, "Failed to capture enough frames")

    deltas: List[float] = [
        frame_difference(frames[i - 1], frames[i]) for i in range(1, len(frames))
    ]
    score = float(np.mean(deltas))

    if score <= min_score:
        return MotionResult(
            MotionClass.STATIC, score,
            f"No natural motion detected (static image/photo on screen? "
            f"Motion: {score:.2f} <= {min_score})",
        )
    if score >= max_score:
        return MotionResult(
            MotionClass.ERRATIC, score,
            f"Too much motion detected (handheld phone/video playback? "
            f"Motion: {score:.2f} >= {max_score})",
        )
    return MotionResult(
        MotionClass.NATURAL, score,
        f"Natural motion detected ({score:.2f} within {min_score}-{max_score})",
    )


class MotionDetector:
    """
    Settings-bound wrapper around detect_motion.

    When disabled every window is reported as NATURAL so the liveness verdict
    falls back to the image-quality checks alone.
    """

    def __init__(self, config):
        self.enabled = config.enabled
        self.motion_min = config.motion_min
        self.motion_max = config.motion_max

    def detect(self, frames: Sequence[np.ndarray]) -> MotionResult:
        if not self.enabled:
            return MotionResult(MotionClass.NATURAL, 0.0, "Motion detection disabled")

        result = detect_motion(frames, self.motion_min, self.motion_max)
        logger.debug(f"[MOTION] {result.classification.value} score={result.score:.3f}")
        return result

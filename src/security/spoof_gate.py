"""
SpoofGate - Security Module
Weighted-points liveness gate over image-quality metrics.

Gates (points awarded per frame):
1. Sharpness     > sharpness_min        +0.30  (partial +0.10 above the 80 floor)
2. Contrast      > contrast_min         +0.30  (partial +0.10 above the 25 floor)
3. Brightness    in (60, 180)           +0.15
4. Colorfulness  > colorfulness_min     +0.20
5. Texture score < 0.05                 +0.15

A frame is real when its points reach confidence_threshold. Across several
frames the average must reach the threshold AND the per-frame confidences
must be consistent (variance below consistency_variance_max).
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from src.vision.quality_analyzer import QualityMetrics, analyze
from src.vision.motion_detector import MotionDetector, MotionResult
from src.utils.logger import setup_logger

logger = setup_logger(__name__)

SHARPNESS_FLOOR = 80.0
CONTRAST_FLOOR = 25.0
COLORFULNESS_FLOOR = 15.0
BRIGHTNESS_RANGE = (60.0, 180.0)
TEXTURE_CLEAN = 0.05


@dataclass(frozen=True)
class SpoofThresholds:
    sharpness_min: float = 150.0
    contrast_min: float = 40.0
    colorfulness_min: float = 30.0
    texture_score_max: float = 0.15
    confidence_threshold: float = 0.55
    consistency_variance_max: float = 0.05

    @classmethod
    def from_settings(cls, anti_spoofing) -> "SpoofThresholds":
        return cls(
            sharpness_min=anti_spoofing.sharpness_min,
            contrast_min=anti_spoofing.contrast_min,
            colorfulness_min=anti_spoofing.colorfulness_min,
            texture_score_max=anti_spoofing.texture_score_max,
            confidence_threshold=anti_spoofing.confidence_threshold,
            consistency_variance_max=anti_spoofing.consistency_variance_max,
        )


@dataclass
class SpoofResult:
    is_real: bool
    confidence: float
    reasons: List[str] = field(default_factory=list)
    metrics: Optional[QualityMetrics] = None

    @property
    def reason(self) -> str:
        if self.is_real:
            return "Image appears authentic"
        return ", ".join(self.reasons)

    def to_dict(self) -> dict:
        return {
            "is_real": self.is_real,
            "confidence": self.confidence,
            "reason": self.reason,
            "metrics": self.metrics.to_dict() if self.metrics else None,
        }


@dataclass
class LivenessVerdict:
    """Combined spoof + motion decision for one capture window."""
    is_live: bool
    spoof: SpoofResult
    motion: MotionResult

    @property
    def reasons(self) -> List[str]:
        out = []
        if not self.spoof.is_real:
            out.extend(self.spoof.reasons)
        if not self.motion.is_natural:
            out.append(self.motion.reason)
        return out

    def to_dict(self) -> dict:
        return {
            "is_live": self.is_live,
            "spoof": self.spoof.to_dict(),
            "motion": {
                "classification": self.motion.classification.value,
                "score": self.motion.score,
                "reason": self.motion.reason,
            },
            "reasons": self.reasons,
        }


def evaluate_frame(metrics: QualityMetrics, thresholds: SpoofThresholds) -> SpoofResult:
    """Score one frame's metrics. Every failed sub-check adds a reason."""
    score = 0.0
    reasons: List[str] = []

    # Gate 1: sharpness
    if metrics.sharpness > thresholds.sharpness_min:
        score += 0.3
    elif metrics.sharpness < SHARPNESS_FLOOR:
        reasons.append(f"Image too blurry (sharpness: {metrics.sharpness:.0f} < {SHARPNESS_FLOOR:.0f})")
    else:
        score += 0.1

    # Gate 2: contrast
    if metrics.contrast > thresholds.contrast_min:
        score += 0.3
    elif metrics.contrast < CONTRAST_FLOOR:
        reasons.append(f"Low contrast ({metrics.contrast:.0f} < {CONTRAST_FLOOR:.0f})")
    else:
        score += 0.1

    # Gate 3: brightness
    low, high = BRIGHTNESS_RANGE
    if low < metrics.brightness < high:
        score += 0.15
    else:
        reasons.append(f"Unusual brightness levels ({metrics.brightness:.0f})")

    # Gate 4: colorfulness
    if metrics.colorfulness > thresholds.colorfulness_min:
        score += 0.2
    elif metrics.colorfulness < COLORFULNESS_FLOOR:
        reasons.append(f"Low color range ({metrics.colorfulness:.0f} < {COLORFULNESS_FLOOR:.0f})")

    # Gate 5: screen texture
    if metrics.texture_score < TEXTURE_CLEAN:
        score += 0.15
    elif metrics.texture_score > thresholds.texture_score_max:
        reasons.append(
            f"Detected screen patterns ({metrics.texture_score:.2f} > {thresholds.texture_score_max})"
        )

    confidence = round(score, 4)
    is_real = confidence >= thresholds.confidence_threshold
    if not is_real and not reasons:
        reasons.append(f"Confidence {confidence:.2f} below {thresholds.confidence_threshold}")

    return SpoofResult(is_real=is_real, confidence=confidence, reasons=reasons, metrics=metrics)


def evaluate_multi_frame(frames: Sequence[np.ndarray], thresholds: SpoofThresholds) -> SpoofResult:
    """Average per-frame confidence and require it to be stable across frames."""
    if not frames:
        return SpoofResult(False, 0.0, ["Failed to analyze image"])

    results = [evaluate_frame(analyze(f), thresholds) for f in frames]
    confidences = np.array([r.confidence for r in results], dtype=np.float64)
    avg = float(confidences.mean())
    variance = float(confidences.var())

    is_consistent = variance < thresholds.consistency_variance_max
    passes_average = avg >= thresholds.confidence_threshold

    reasons: List[str] = []
    if not is_consistent:
        reasons.append(f"Inconsistent frames (variance {variance:.3f} >= {thresholds.consistency_variance_max})")
    if not passes_average:
        reasons.append(f"Average confidence {avg * 100:.0f}% below {thresholds.confidence_threshold * 100:.0f}%")
        for r in results:
            for reason in r.reasons:
                if reason not in reasons:
                    reasons.append(reason)

    return SpoofResult(
        is_real=is_consistent and passes_average,
        confidence=round(avg, 4),
        reasons=reasons,
        metrics=results[-1].metrics,
    )


class SpoofGate:
    """
    Settings-bound liveness gate.

    One capture window (sampled at motion_detection.sample_interval_ms) feeds
    both checks: motion uses every frame, the quality check uses
    anti_spoofing.frame_count frames spaced inter_frame_delay_ms apart.
    """

    def __init__(self, settings):
        self.anti_spoofing = settings.anti_spoofing
        self.motion_settings = settings.motion_detection
        self.thresholds = SpoofThresholds.from_settings(settings.anti_spoofing)
        self.motion_detector = MotionDetector(settings.motion_detection)

    def select_spoof_frames(self, frames: Sequence[np.ndarray]) -> List[np.ndarray]:
        interval = max(1, self.motion_settings.sample_interval_ms)
        step = max(1, int(round(self.anti_spoofing.inter_frame_delay_ms / interval)))
        return list(frames[::step][:self.anti_spoofing.frame_count])

    def evaluate(self, frames: Sequence[np.ndarray]) -> SpoofResult:
        if not self.anti_spoofing.enabled:
            return SpoofResult(True, 1.0)
        return evaluate_multi_frame(self.select_spoof_frames(frames), self.thresholds)

    def evaluate_liveness(self, frames: Sequence[np.ndarray]) -> LivenessVerdict:
        spoof = self.evaluate(frames)
        motion = self.motion_detector.detect(frames)
        verdict = LivenessVerdict(
            is_live=spoof.is_real and motion.is_natural,
            spoof=spoof,
            motion=motion,
        )
        if not verdict.is_live:
            logger.info(f"[SPOOF] Liveness rejected: {'; '.join(verdict.reasons)}")
        return verdict

"""
FaceMatcher - Security Module
Face-descriptor comparison and the combined identity check used at check-in
and during periodic re-verification.

    similarity = 1 − min(||d_a − d_b||₂, 1)

The descriptors come from an external embedding model; only their distance
is used here.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Sequence

import numpy as np

from src.security.spoof_gate import SpoofGate, LivenessVerdict
from src.utils.logger import setup_logger

logger = setup_logger(__name__)


class EuclideanFaceComparator:
    """Maps euclidean descriptor distance onto a [0, 1] similarity."""

    def compare(self, descriptor_a: Sequence[float], descriptor_b: Sequence[float]) -> float:
        a = np.asarray(descriptor_a, dtype=np.float64)
        b = np.asarray(descriptor_b, dtype=np.float64)
        if a.shape != b.shape:
            raise ValueError(f"Descriptor length mismatch: {a.shape} vs {b.shape}")
        distance = float(np.linalg.norm(a - b))
        return 1.0 - min(distance, 1.0)


@dataclass
class IdentityVerification:
    passed: bool
    similarity: float
    liveness: Optional[LivenessVerdict]
    reasons: List[str] = field(default_factory=list)

    @property
    def description(self) -> str:
        if self.passed:
            return f"Identity verified (similarity {self.similarity:.2f})"
        return "; ".join(self.reasons)

    def to_dict(self) -> dict:
        return {
            "passed": self.passed,
            "similarity": self.similarity,
            "liveness": self.liveness.to_dict() if self.liveness else None,
            "reasons": self.reasons,
        }


class IdentityVerifier:
    """
    Liveness gate + face match in one decision.

    Settings are fetched from the provider on every call.
    """

    def __init__(self, settings_provider, comparator=None):
        self.settings_provider = settings_provider
        self.comparator = comparator or EuclideanFaceComparator()

    def verify(self, frames: Sequence[np.ndarray], descriptor: Optional[Sequence[float]],
               reference: Optional[Sequence[float]], allow_enrolment: bool = True) -> IdentityVerification:
        settings = self.settings_provider.current()
        verdict = SpoofGate(settings).evaluate_liveness(frames)
        reasons = list(verdict.reasons)

        if descriptor is None:
            reasons.append("No face detected")
            similarity = 0.0
        elif reference is None:
            if allow_enrolment:
                # First enrolment: nothing to compare against yet
                similarity = 1.0
            else:
                reasons.append("No reference face on record")
                similarity = 0.0
        else:
            similarity = float(self.comparator.compare(descriptor, reference))
            threshold = settings.face_verification.similarity_threshold
            if similarity < threshold:
                reasons.append(f"Face mismatch (similarity {similarity:.2f} < {threshold})")

        passed = verdict.is_live and not reasons
        logger.info(
            f"[IDENTITY] {'PASS' if passed else 'FAIL'} similarity={similarity:.3f} "
            f"live={verdict.is_live}"
        )
        return IdentityVerification(passed=passed, similarity=similarity, liveness=verdict, reasons=reasons)

"""
ChallengeScheduler - Session Module
Periodic CAPTCHA and face re-verification for an Online session.

Cycle (all times from the moment the cycle is armed):
    interval − warning   → warning notification
    interval             → CAPTCHA presented, deadline = now + timeout

CAPTCHA answered correctly → after cool-down either the next regular cycle,
or (streak reached captcha_count_before_face) a face warning followed by the
face challenge.
Wrong answer → attempts + 1; escalate at max_attempts, otherwise a fresh code
under the same deadline.
Deadline reached → escalate immediately (captcha_timeout / face timeout).

Every task is guarded: it does nothing unless the session is Online with no
escalation in progress.
"""

import uuid
from dataclasses import dataclass, replace
from enum import Enum
from typing import Optional, Sequence

import numpy as np

from src.security.captcha import check_answer, generate_code
from src.session.errors import ChallengeError, InvalidTransitionError
from src.session.models import Challenge, ChallengeKind, IncidentType, SessionStatus
from src.session.task_scheduler import PRIORITY_DEADLINE
from src.utils.logger import setup_logger

logger = setup_logger(__name__)

CAPTCHA_WARNING_TASK = "captcha_warning"
CAPTCHA_TASK = "captcha"
FACE_WARNING_TASK = "face_warning"
FACE_TASK = "face_verification"
DEADLINE_TASK = "challenge_deadline"
COOLDOWN_TASK = "challenge_cooldown"


class OutcomeStatus(str, Enum):
    PASSED = "passed"
    RETRY = "retry"
    PENDING = "pending"
    ESCALATED = "escalated"


@dataclass
class ChallengeOutcome:
    status: OutcomeStatus
    attempts: int = 0
    attempts_left: Optional[int] = None
    incident_type: Optional[IncidentType] = None
    challenge: Optional[Challenge] = None
    detail: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "status": self.status.value,
            "attempts": self.attempts,
            "attempts_left": self.attempts_left,
            "incident_type": self.incident_type.value if self.incident_type else None,
            "challenge": self.challenge.to_dict() if self.challenge else None,
            "detail": self.detail,
        }


class ChallengeScheduler:

    def __init__(self, context, scheduler, state_machine, verifier, collector=None):
        self.ctx = context
        self.scheduler = scheduler
        self.sm = state_machine
        self.verifier = verifier
        self.collector = collector
        self.pending: Optional[Challenge] = None
        self.last_outcome: Optional[ChallengeOutcome] = None

    # ── Arming ──────────────────────────────────────────────────────────────

    def _online(self) -> bool:
        return self.sm.status is SessionStatus.ONLINE and not self.sm.escalation_pending

    def _guarded(self, fn):
        def run():
            if not self._online():
                logger.debug(f"Skipped stale challenge task ({self.sm.status.value})")
                return
            fn()
        return run

    def arm(self):
        """Start a regular CAPTCHA cycle with a fresh settings snapshot."""
        settings = self.ctx.settings
        now = self.ctx.now()
        interval_ms = int(settings.captcha.interval_minutes * 60 * 1000)
        warning_ms = int(settings.captcha.warning_seconds * 1000)

        self.scheduler.cancel_named(CAPTCHA_WARNING_TASK, CAPTCHA_TASK, COOLDOWN_TASK)
        if 0 < warning_ms < interval_ms:
            self.scheduler.schedule_at(
                now + interval_ms - warning_ms,
                self._guarded(lambda: self._warn(ChallengeKind.CAPTCHA, warning_ms)),
                CAPTCHA_WARNING_TASK,
            )
        self.scheduler.schedule_at(now + interval_ms, self._guarded(self._present_captcha), CAPTCHA_TASK)
        logger.debug(f"Armed CAPTCHA cycle for {self.ctx.worker_id}: due in {interval_ms / 1000:.0f}s")

    def disarm(self):
        """Drop every pending task and outstanding prompt for this session."""
        if self.collector is not None:
            self.collector.cancel()
        if self.pending is not None and self.sm.session is not None:
            self.ctx.notifier.dismiss(self.sm.session, self.pending.id)
        self.pending = None
        self.scheduler.invalidate()

    def _warn(self, kind: ChallengeKind, warning_ms: int):
        logger.info(f"🔔 {kind.value} for {self.ctx.worker_id} in {warning_ms / 1000:.0f}s")
        self.ctx.notifier.warn(self.sm.session, kind, warning_ms / 1000.0)
        self.sm.record_challenge_warning(kind, warning_ms / 1000.0)

    def _open(self, challenge: Challenge):
        self.pending = challenge
        challenge_id = challenge.id
        self.scheduler.schedule_at(
            challenge.deadline,
            self._guarded(lambda: self._on_deadline(challenge_id)),
            DEADLINE_TASK,
            priority=PRIORITY_DEADLINE,
        )
        self.ctx.notifier.present(self.sm.session, challenge)

    def _close(self):
        if self.pending is not None:
            self.ctx.notifier.dismiss(self.sm.session, self.pending.id)
        self.pending = None
        self.scheduler.cancel_named(DEADLINE_TASK)

    def _schedule_next_cycle(self, now: int, settings):
        cooldown_ms = int(settings.captcha.cooldown_seconds * 1000)
        streak = self.sm.session.captcha_success_streak
        cadence = settings.face_verification.captcha_count_before_face

        if cadence > 0 and streak >= cadence:
            warning_ms = int(settings.face_verification.warning_seconds * 1000)
            self.scheduler.schedule_at(
                now + cooldown_ms,
                self._guarded(lambda: self._warn(ChallengeKind.FACE, warning_ms)),
                FACE_WARNING_TASK,
            )
            self.scheduler.schedule_at(now + cooldown_ms + warning_ms,
                                       self._guarded(self._present_face), FACE_TASK)
        else:
            self.scheduler.schedule_at(now + cooldown_ms, self._guarded(self.arm), COOLDOWN_TASK)

    def _present_captcha(self):
        settings = self.ctx.settings
        now = self.ctx.now()
        challenge = Challenge(
            id=uuid.uuid4().hex,
            kind=ChallengeKind.CAPTCHA,
            issued_at=now,
            deadline=now + int(settings.captcha.timeout_seconds * 1000),
            code=generate_code(settings.captcha.code_length),
        )
        logger.info(f"CAPTCHA presented to {self.ctx.worker_id}")
        self._open(challenge)

    def _present_face(self):
        settings = self.ctx.settings
        now = self.ctx.now()
        challenge = Challenge(
            id=uuid.uuid4().hex,
            kind=ChallengeKind.FACE,
            issued_at=now,
            deadline=now + int(settings.face_verification.timeout_seconds * 1000),
        )
        logger.info(f"Face re-verification requested from {self.ctx.worker_id}")
        self._open(challenge)

    # ── Resolution ──────────────────────────────────────────────────────────

    def _take(self, challenge_id: str, kind: ChallengeKind) -> Challenge:
        if self.sm.status is SessionStatus.OFFLINE:
            raise InvalidTransitionError("answer a challenge", SessionStatus.OFFLINE)
        if self.pending is None or self.pending.id != challenge_id or self.pending.kind is not kind:
            raise ChallengeError(f"No outstanding {kind.value} challenge with id {challenge_id}")
        return self.pending

    def _on_deadline(self, challenge_id: str):
        challenge = self.pending
        if challenge is None or challenge.id != challenge_id:
            return
        waited = (challenge.deadline - challenge.issued_at) // 1000
        if challenge.kind is ChallengeKind.CAPTCHA:
            self._escalate(IncidentType.CAPTCHA_TIMEOUT, f"CAPTCHA not answered within {waited}s")
        else:
            self._fail_face(IncidentType.FACE_VERIFICATION_TIMEOUT,
                            f"Face verification not completed within {waited}s")

    def _escalate(self, incident_type: IncidentType, description: str,
                  frame_ref: Optional[str] = None) -> ChallengeOutcome:
        attempts = self.sm.session.captcha_attempts if self.sm.session else 0
        outcome = ChallengeOutcome(OutcomeStatus.ESCALATED, attempts=attempts,
                                   incident_type=incident_type, detail=description)
        self.last_outcome = outcome
        self.sm.force_checkout(incident_type, attempts=attempts, description=description,
                               captured_frame_ref=frame_ref)
        return outcome

    def _fail_face(self, incident_type: IncidentType, description: str,
                   frame_ref: Optional[str] = None) -> ChallengeOutcome:
        """Shared path for face failure, skip and timeout."""
        self.sm.record_face_failure(description)
        return self._escalate(incident_type, description, frame_ref)

    def submit_captcha(self, challenge_id: str, answer: str) -> ChallengeOutcome:
        challenge = self._take(challenge_id, ChallengeKind.CAPTCHA)
        now = self.ctx.now()
        if now >= challenge.deadline:
            # Answer and deadline both ready: the deadline wins
            self._on_deadline(challenge.id)
            return self.last_outcome

        settings = self.ctx.settings
        if check_answer(challenge.code, answer):
            self.sm.apply_captcha_success()
            self._close()
            self._schedule_next_cycle(now, settings)
            outcome = ChallengeOutcome(OutcomeStatus.PASSED, attempts=0)
            self.last_outcome = outcome
            return outcome

        session = self.sm.apply_captcha_failure()
        max_attempts = settings.captcha.max_attempts
        if session.captcha_attempts >= max_attempts:
            return self._escalate(
                IncidentType.CAPTCHA_EXHAUSTED,
                f"Failed CAPTCHA verification {session.captcha_attempts} times",
            )

        fresh = replace(challenge, code=generate_code(settings.captcha.code_length))
        self.pending = fresh
        self.ctx.notifier.present(session, fresh)
        outcome = ChallengeOutcome(
            OutcomeStatus.RETRY,
            attempts=session.captcha_attempts,
            attempts_left=max_attempts - session.captcha_attempts,
            challenge=fresh,
        )
        self.last_outcome = outcome
        return outcome

    def submit_face(self, challenge_id: str, descriptor: Optional[Sequence[float]],
                    frames: Optional[Sequence[np.ndarray]] = None,
                    frame_ref: Optional[str] = None) -> ChallengeOutcome:
        """
        Resolve a face challenge. Without `frames` the capture window is
        sampled from the context's FrameSource and the outcome arrives on a
        later tick (PENDING is returned meanwhile).
        """
        challenge = self._take(challenge_id, ChallengeKind.FACE)
        if self.ctx.now() >= challenge.deadline:
            self._on_deadline(challenge.id)
            return self.last_outcome

        if frames is not None:
            return self._resolve_face(challenge.id, descriptor, frames, frame_ref)

        if self.collector is None:
            raise ChallengeError("No frame source configured for face capture")
        if not self.collector.active:
            motion = self.ctx.settings.motion_detection
            self.collector.collect(
                motion.sample_count,
                motion.sample_interval_ms,
                on_complete=lambda captured: self._resolve_face(challenge.id, descriptor, captured, frame_ref),
                on_error=lambda e: logger.warning(f"Face capture for {self.ctx.worker_id} failed, awaiting retry: {e}"),
            )
        return ChallengeOutcome(OutcomeStatus.PENDING, challenge=challenge, detail="Capturing frames")

    def _resolve_face(self, challenge_id: str, descriptor, frames, frame_ref=None) -> Optional[ChallengeOutcome]:
        challenge = self.pending
        if not self._online() or challenge is None or challenge.id != challenge_id:
            logger.debug("Dropped face result for a challenge that is no longer outstanding")
            return None
        now = self.ctx.now()
        if now >= challenge.deadline:
            self._on_deadline(challenge_id)
            return self.last_outcome

        verification = self.verifier.verify(
            frames, descriptor, self.sm.session.reference_descriptor, allow_enrolment=False,
        )
        if not verification.passed:
            return self._fail_face(IncidentType.FACE_VERIFICATION_FAILED, verification.description, frame_ref)

        self.sm.apply_face_success(verification.similarity)
        self._close()
        self._schedule_next_cycle(now, self.ctx.settings)
        outcome = ChallengeOutcome(OutcomeStatus.PASSED, detail=verification.description)
        self.last_outcome = outcome
        return outcome

    def skip_face(self, challenge_id: str) -> ChallengeOutcome:
        self._take(challenge_id, ChallengeKind.FACE)
        return self._fail_face(IncidentType.FACE_VERIFICATION_SKIPPED, "Worker skipped face verification")

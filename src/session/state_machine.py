"""
SessionStateMachine - Session Module
Owns the Online / BackSoon / Offline lifecycle of one worker's session.

    offline ──check_in──▶ online ──go_back_soon──▶ back_soon
                           ▲   ◀──return_online───┘
                           │
             check_out / force_checkout (from online or back_soon)
                           ▼
                        offline  (terminal; a new check-in allocates a new id)

Every mutation is computed by a pure function in transitions.py, saved to
the store, and only then adopted in memory. A failed save raises
InfrastructureError and leaves the in-memory session untouched.
"""

from dataclasses import dataclass
from typing import Optional, Sequence, Tuple

from src.session import transitions
from src.session.errors import InfrastructureError, InvalidTransitionError, VerificationRequiredError
from src.session.models import ActivityType, AwayReason, IncidentType, Session, SessionStatus
from src.session.ports import SessionContext, SinkResult
from src.utils.logger import setup_logger

logger = setup_logger(__name__)


@dataclass
class PendingEscalation:
    incident_type: IncidentType
    attempts: int
    description: str
    decided_at: int
    session_id: str
    captured_frame_ref: Optional[str] = None
    incident_recorded: bool = False
    activity_recorded: bool = False


class SessionStateMachine:

    def __init__(self, context: SessionContext):
        self.ctx = context
        self.challenges = None
        self._pending_escalation: Optional[PendingEscalation] = None
        self._last_persisted_activity = 0

    def attach(self, challenges):
        """Wire the ChallengeScheduler that gets armed/disarmed on transitions."""
        self.challenges = challenges

    # ── State access ────────────────────────────────────────────────────────

    @property
    def session(self) -> Optional[Session]:
        return self.ctx.session

    @property
    def status(self) -> SessionStatus:
        if self.ctx.session is None:
            return SessionStatus.OFFLINE
        return self.ctx.session.status

    @property
    def escalation_pending(self) -> bool:
        return self._pending_escalation is not None

    def current_totals(self, now: Optional[int] = None) -> dict:
        """Live online/away totals without persisting anything."""
        if self.session is None:
            return {"total_online_seconds": 0, "total_away_seconds": 0}
        snap = transitions.refresh_totals(self.session, now if now is not None else self.ctx.now())
        return {
            "total_online_seconds": snap.total_online_seconds,
            "total_away_seconds": snap.total_away_seconds,
        }

    # ── Helpers ─────────────────────────────────────────────────────────────

    def _require(self, action: str, *allowed: SessionStatus):
        if self.status not in allowed:
            raise InvalidTransitionError(action, self.status)

    def _commit(self, updated: Session):
        try:
            self.ctx.store.save(updated)
        except Exception as e:
            logger.error(f"Session save failed for {updated.id}: {e}")
            raise InfrastructureError(f"Failed to save session {updated.id}: {e}") from e
        self.ctx.session = updated
        self._last_persisted_activity = updated.last_activity_time

    def _log_activity(self, event_type: ActivityType, description: str, metadata: dict = None):
        """Fire-and-forget: a failing activity sink never blocks a transition."""
        metadata = dict(metadata or {})
        if self.session is not None:
            metadata.setdefault("session_id", self.session.id)
        try:
            result = self.ctx.activity_log.record(self.ctx.worker_id, event_type.value, description, metadata)
        except Exception as e:
            result = SinkResult.failure(e)
        if result is not None and not result.ok:
            logger.warning(f"Activity log write failed ({event_type.value}): {result.error}")

    def enrolled_reference(self) -> Optional[Tuple[float, ...]]:
        """The face descriptor on record for this worker, or None before first enrolment."""
        if self.session is not None and self.session.reference_descriptor is not None:
            return self.session.reference_descriptor
        try:
            return self.ctx.store.enrolled_descriptor(self.ctx.worker_id)
        except Exception as e:
            raise InfrastructureError(f"Failed to load enrolled face for {self.ctx.worker_id}: {e}") from e

    def _arm(self):
        if self.challenges is not None:
            self.challenges.arm()

    def _disarm(self):
        if self.challenges is not None:
            self.challenges.disarm()

    # ── Transitions ─────────────────────────────────────────────────────────

    def check_in(self, worker_id: str, verification, descriptor: Optional[Sequence[float]] = None,
                 initial_frame_ref: Optional[str] = None) -> Session:
        """
        Open a new Online session. `verification` is the caller's prior
        liveness + face-match decision and must have passed.
        """
        if worker_id != self.ctx.worker_id:
            raise ValueError(f"Engine for {self.ctx.worker_id} cannot check in {worker_id}")
        if verification is None or not verification.passed:
            reason = verification.description if verification is not None else "no verification supplied"
            raise VerificationRequiredError(f"Check-in requires a passing identity verification: {reason}")
        self._require("check in", SessionStatus.OFFLINE)

        try:
            existing = self.ctx.store.load(worker_id)
        except Exception as e:
            raise InfrastructureError(f"Failed to load session for {worker_id}: {e}") from e
        if existing is not None and existing.is_active:
            raise InvalidTransitionError("check in", existing.status)

        # An enrolled face stays the reference; only a first check-in enrols the descriptor
        reference = self.enrolled_reference()
        if reference is None:
            reference = descriptor

        now = self.ctx.now()
        session = transitions.new_session(worker_id, now, reference, initial_frame_ref)
        self._commit(session)
        self._pending_escalation = None

        logger.info(f"✅ {worker_id} checked in (session {session.id})")
        self._log_activity(ActivityType.CHECK_IN, "User checked in successfully",
                           {"similarity": getattr(verification, "similarity", None)})
        self._arm()
        return session

    def go_back_soon(self, reason, custom_reason: Optional[str] = None) -> Session:
        self._require("go back soon", SessionStatus.ONLINE)
        reason = AwayReason(reason)
        if reason is AwayReason.OTHER and not custom_reason:
            raise ValueError("An 'other' away reason needs a description")

        now = self.ctx.now()
        abandoned = self.challenges.pending if self.challenges is not None else None
        self._commit(transitions.open_away(self.session, now, reason, custom_reason))
        self._disarm()

        label = custom_reason if reason is AwayReason.OTHER else reason.value
        metadata = {"reason": reason.value, "custom_reason": custom_reason}
        if abandoned is not None:
            logger.warning(
                f"⚠️ {self.ctx.worker_id} went back soon with {abandoned.kind.value} {abandoned.id} outstanding"
            )
            metadata["abandoned_challenge"] = {"id": abandoned.id, "kind": abandoned.kind.value}
        logger.info(f"{self.ctx.worker_id} is back soon ({label})")
        self._log_activity(ActivityType.BACK_SOON, f"User went back soon: {label}", metadata)
        return self.session

    def return_online(self) -> Session:
        self._require("return online", SessionStatus.BACK_SOON)

        now = self.ctx.now()
        self._commit(transitions.return_online(self.session, now))
        closed = self.session.away_events[-1]

        logger.info(f"{self.ctx.worker_id} returned after {closed.duration_seconds}s away")
        self._log_activity(ActivityType.BACK_ONLINE, "User returned from back soon",
                           {"duration_seconds": closed.duration_seconds})
        self._arm()
        return self.session

    def check_out(self, reason: str = "User checkout") -> Optional[Session]:
        """Finalize the session. A no-op when already offline."""
        if self.status is SessionStatus.OFFLINE:
            return self.session

        now = self.ctx.now()
        self._commit(transitions.finalize(self.session, now, reason))
        self._pending_escalation = None
        self._disarm()

        logger.info(
            f"{self.ctx.worker_id} checked out: {reason} "
            f"(online {self.session.total_online_seconds}s, away {self.session.total_away_seconds}s)"
        )
        self._log_activity(ActivityType.CHECK_OUT, f"User checked out: {reason}", {
            "total_online_seconds": self.session.total_online_seconds,
            "total_away_seconds": self.session.total_away_seconds,
        })
        return self.session

    def force_checkout(self, incident_type: IncidentType, attempts: Optional[int] = None,
                       description: Optional[str] = None,
                       captured_frame_ref: Optional[str] = None) -> Optional[Session]:
        """
        Escalation: incident report, activity entry, then checkout.

        The incident sink must succeed before the session goes offline. If it
        or the store fails, the escalation stays pending and retry_pending()
        resumes it without recording the incident twice.
        """
        if self.status is SessionStatus.OFFLINE:
            return self.session

        incident_type = IncidentType(incident_type)
        esc = self._pending_escalation
        if esc is None:
            esc = PendingEscalation(
                incident_type=incident_type,
                attempts=attempts if attempts is not None else self.session.captcha_attempts,
                description=description or incident_type.value.replace("_", " "),
                decided_at=self.ctx.now(),
                session_id=self.session.id,
                captured_frame_ref=captured_frame_ref,
            )
            self._pending_escalation = esc
            logger.warning(f"⛔ Escalating {self.ctx.worker_id}: {esc.incident_type.value} ({esc.description})")
            self._disarm()

        if not esc.incident_recorded:
            try:
                result = self.ctx.incident_report.record(
                    self.ctx.worker_id, esc.incident_type.value, esc.attempts,
                    esc.captured_frame_ref, esc.description, session_id=esc.session_id,
                )
            except Exception as e:
                result = SinkResult.failure(e)
            if not result.ok:
                logger.error(f"Incident report failed for {self.ctx.worker_id}: {result.error}")
                raise InfrastructureError(f"Incident report failed: {result.error}")
            esc.incident_recorded = True

        if not esc.activity_recorded:
            self._log_activity(ActivityType.INCIDENT, esc.description, {
                "incident_type": esc.incident_type.value,
                "attempts": esc.attempts,
            })
            esc.activity_recorded = True

        reason = f"auto:{esc.incident_type.value}"
        self._commit(transitions.finalize(self.session, esc.decided_at, reason))
        self._pending_escalation = None
        self._disarm()

        logger.warning(f"{self.ctx.worker_id} force-checked-out ({esc.incident_type.value})")
        self._log_activity(ActivityType.CHECK_OUT, f"User checked out: {reason}", {
            "incident_type": esc.incident_type.value,
            "total_online_seconds": self.session.total_online_seconds,
            "total_away_seconds": self.session.total_away_seconds,
        })
        return self.session

    def retry_pending(self) -> Optional[Session]:
        esc = self._pending_escalation
        if esc is None:
            return None
        logger.info(f"Retrying pending escalation {esc.incident_type.value} for {self.ctx.worker_id}")
        return self.force_checkout(esc.incident_type)

    # ── Counters & activity (called by ChallengeScheduler / UI pings) ──────

    def record_activity(self) -> Optional[Session]:
        """
        Refresh last_activity_time. Persisted at most once per
        activity_persist_throttle_seconds; in between only memory moves.
        """
        self._require("record activity", SessionStatus.ONLINE, SessionStatus.BACK_SOON)
        now = self.ctx.now()
        updated = transitions.touch(self.session, now)
        throttle_ms = int(self.ctx.settings.general.activity_persist_throttle_seconds * 1000)
        if now - self._last_persisted_activity >= throttle_ms:
            self._commit(updated)
        else:
            self.ctx.session = updated
        return self.session

    def apply_captcha_success(self) -> Session:
        self._require("pass a CAPTCHA", SessionStatus.ONLINE)
        self._commit(transitions.record_captcha_success(self.session, self.ctx.now()))
        streak = self.session.captcha_success_streak
        self._log_activity(ActivityType.CAPTCHA_VERIFY,
                           f"CAPTCHA verification successful ({streak} times)", {"streak": streak})
        return self.session

    def apply_captcha_failure(self) -> Session:
        self._require("fail a CAPTCHA", SessionStatus.ONLINE)
        self._commit(transitions.record_captcha_failure(self.session, self.ctx.now()))
        attempts = self.session.captcha_attempts
        self._log_activity(ActivityType.CAPTCHA_FAILED,
                           f"CAPTCHA verification failed (attempt {attempts})", {"attempts": attempts})
        return self.session

    def apply_face_success(self, similarity: float) -> Session:
        self._require("pass face verification", SessionStatus.ONLINE)
        self._commit(transitions.record_face_success(self.session, self.ctx.now()))
        self._log_activity(ActivityType.FACE_VERIFY,
                           f"Face verification successful (similarity {similarity:.2f})",
                           {"similarity": similarity, "count": self.session.face_verification_count})
        return self.session

    def record_face_failure(self, description: str):
        """Activity entry for a failed face check; escalation follows separately."""
        self._log_activity(ActivityType.FACE_VERIFICATION_FAILED, description)

    def record_challenge_warning(self, kind, seconds_until: float):
        self._log_activity(ActivityType.CHALLENGE_WARNING, f"{kind.value} challenge in {seconds_until:.0f}s",
                           {"kind": kind.value, "seconds_until": seconds_until})

    # ── Watchdogs ───────────────────────────────────────────────────────────

    def check_watchdogs(self, now: int) -> Optional[IncidentType]:
        """Inactivity and max-session-age checks, run on every heartbeat tick."""
        if self.status is SessionStatus.OFFLINE or self._pending_escalation is not None:
            return None
        general = self.ctx.settings.general
        session = self.session

        idle_ms = now - session.last_activity_time
        if idle_ms > general.inactivity_timeout_seconds * 1000:
            self.force_checkout(
                IncidentType.INACTIVITY, attempts=0,
                description=f"No activity for {idle_ms // 60000} minutes",
            )
            return IncidentType.INACTIVITY

        age_ms = now - session.check_in_time
        if general.auto_logout_enabled and age_ms > general.session_timeout_hours * 3600 * 1000:
            self.force_checkout(
                IncidentType.SESSION_TIMEOUT, attempts=0,
                description=f"Session exceeded {general.session_timeout_hours} hours",
            )
            return IncidentType.SESSION_TIMEOUT
        return None

    # ── Recovery ────────────────────────────────────────────────────────────

    def resume(self) -> Optional[Session]:
        """Adopt the worker's active session from the store (e.g. after a restart)."""
        try:
            existing = self.ctx.store.load(self.ctx.worker_id)
        except Exception as e:
            raise InfrastructureError(f"Failed to load session for {self.ctx.worker_id}: {e}") from e
        if existing is None or not existing.is_active:
            return None
        self.ctx.session = existing
        self._last_persisted_activity = existing.last_activity_time
        logger.info(f"Resumed session {existing.id} ({existing.status.value})")
        if existing.status is SessionStatus.ONLINE:
            self._arm()
        return existing

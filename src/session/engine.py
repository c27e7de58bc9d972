"""
SessionEngine - Session Module
One engine per worker: state machine + challenge scheduler + task list,
serialised behind a re-entrant lock.

    Heartbeat ──every heartbeat_ms──▶ EngineRegistry.tick_all()
                                          └─▶ SessionEngine.tick(now)
                                                ├─ due tasks (warnings, challenges, deadlines, captures)
                                                ├─ pending escalation retry
                                                └─ inactivity / session-age watchdogs
"""

import threading
from contextlib import contextmanager
from typing import Callable, Dict, List, Optional, Sequence

import numpy as np

from src.security.face_matcher import IdentityVerification, IdentityVerifier
from src.session.challenge_scheduler import ChallengeOutcome, ChallengeScheduler
from src.session.errors import InfrastructureError, VerificationRequiredError
from src.session.models import Session, SessionStatus
from src.session.ports import SessionContext
from src.session.state_machine import SessionStateMachine
from src.session.task_scheduler import TaskScheduler
from src.vision.frame_collector import FrameCollector, capture_window
from src.utils.logger import setup_logger

logger = setup_logger(__name__)


class SessionEngine:

    def __init__(self, context: SessionContext):
        self.ctx = context
        self._lock = threading.RLock()
        self.scheduler = TaskScheduler()
        self.collector = None
        if context.frame_source is not None:
            self.collector = FrameCollector(self.scheduler, context.frame_source, context.now)
        self.state_machine = SessionStateMachine(context)
        self.verifier = IdentityVerifier(context.settings_provider, context.comparator)
        self.challenges = ChallengeScheduler(
            context, self.scheduler, self.state_machine, self.verifier, self.collector,
        )
        self.state_machine.attach(self.challenges)

    @property
    def worker_id(self) -> str:
        return self.ctx.worker_id

    @property
    def session(self) -> Optional[Session]:
        return self.state_machine.session

    @property
    def status(self) -> SessionStatus:
        return self.state_machine.status

    @property
    def escalation_pending(self) -> bool:
        return self.state_machine.escalation_pending

    # ── Identity ────────────────────────────────────────────────────────────

    def capture_frames(self) -> List[np.ndarray]:
        """Blocking capture of one liveness window from the FrameSource."""
        if self.ctx.frame_source is None:
            raise VerificationRequiredError("No frame source configured for liveness capture")
        motion = self.ctx.settings.motion_detection
        return capture_window(self.ctx.frame_source, motion.sample_count, motion.sample_interval_ms)

    def verify_identity(self, frames: Sequence[np.ndarray],
                        descriptor: Optional[Sequence[float]]) -> IdentityVerification:
        """Liveness plus a match against the worker's enrolled face. Enrols only when none is on record."""
        with self._lock:
            reference = self.state_machine.enrolled_reference()
        return self.verifier.verify(frames, descriptor, reference, allow_enrolment=reference is None)

    # ── Lifecycle ───────────────────────────────────────────────────────────

    def check_in(self, verification: IdentityVerification, descriptor: Optional[Sequence[float]] = None,
                 initial_frame_ref: Optional[str] = None) -> Session:
        with self._lock:
            return self.state_machine.check_in(self.worker_id, verification, descriptor, initial_frame_ref)

    def go_back_soon(self, reason, custom_reason: Optional[str] = None) -> Session:
        with self._lock:
            return self.state_machine.go_back_soon(reason, custom_reason)

    def return_online(self) -> Session:
        with self._lock:
            return self.state_machine.return_online()

    def check_out(self, reason: str = "User checkout") -> Optional[Session]:
        with self._lock:
            return self.state_machine.check_out(reason)

    def record_activity(self) -> Optional[Session]:
        with self._lock:
            return self.state_machine.record_activity()

    def resume(self) -> Optional[Session]:
        with self._lock:
            return self.state_machine.resume()

    # ── Challenges ──────────────────────────────────────────────────────────

    def submit_captcha(self, challenge_id: str, answer: str) -> ChallengeOutcome:
        with self._lock:
            return self.challenges.submit_captcha(challenge_id, answer)

    def submit_face(self, challenge_id: str, descriptor: Optional[Sequence[float]],
                    frames: Optional[Sequence[np.ndarray]] = None,
                    frame_ref: Optional[str] = None) -> ChallengeOutcome:
        with self._lock:
            return self.challenges.submit_face(challenge_id, descriptor, frames, frame_ref)

    def skip_face(self, challenge_id: str) -> ChallengeOutcome:
        with self._lock:
            return self.challenges.skip_face(challenge_id)

    # ── Heartbeat ───────────────────────────────────────────────────────────

    def tick(self, now: Optional[int] = None) -> int:
        """Run due tasks, retry a pending escalation, then the watchdogs."""
        with self._lock:
            now = self.ctx.now() if now is None else now
            ran = 0
            try:
                ran = self.scheduler.tick(now)
                self.state_machine.retry_pending()
                self.state_machine.check_watchdogs(now)
            except InfrastructureError as e:
                logger.error(f"Tick for {self.worker_id} deferred: {e}")
            return ran

    def snapshot(self) -> dict:
        with self._lock:
            session = self.session
            pending = self.challenges.pending
            last = self.challenges.last_outcome
            return {
                "worker_id": self.worker_id,
                "status": self.status.value,
                "session": session.to_dict() if session else None,
                "totals": self.state_machine.current_totals(),
                "challenge": pending.to_dict() if pending else None,
                "last_outcome": last.to_dict() if last else None,
                "escalation_pending": self.escalation_pending,
                "next_task_at": self.scheduler.next_fire_time(),
            }


class EngineRegistry:
    """
    Live engines keyed by worker; looked up by session id on demand.

    tick_all() drops engines that are offline with nothing pending, except
    those leased by an in-flight request (a check-in capturing frames).
    """

    def __init__(self, context_factory: Callable[[str], SessionContext]):
        self._context_factory = context_factory
        self._engines: Dict[str, SessionEngine] = {}
        self._leases: Dict[str, int] = {}
        self._lock = threading.Lock()

    def _get_or_create(self, worker_id: str) -> SessionEngine:
        engine = self._engines.get(worker_id)
        if engine is None:
            engine = SessionEngine(self._context_factory(worker_id))
            engine.resume()
            self._engines[worker_id] = engine
        return engine

    def engine_for(self, worker_id: str) -> SessionEngine:
        """Return the worker's engine, creating it (and resuming any stored session) if needed."""
        with self._lock:
            return self._get_or_create(worker_id)

    @contextmanager
    def lease(self, worker_id: str):
        """Hold the worker's engine in the registry for the duration of the block."""
        with self._lock:
            engine = self._get_or_create(worker_id)
            self._leases[worker_id] = self._leases.get(worker_id, 0) + 1
        try:
            yield engine
        finally:
            with self._lock:
                remaining = self._leases.get(worker_id, 1) - 1
                if remaining > 0:
                    self._leases[worker_id] = remaining
                else:
                    self._leases.pop(worker_id, None)

    def get(self, worker_id: str) -> Optional[SessionEngine]:
        with self._lock:
            return self._engines.get(worker_id)

    def get_by_session(self, session_id: str) -> Optional[SessionEngine]:
        with self._lock:
            for engine in self._engines.values():
                if engine.session is not None and engine.session.id == session_id:
                    return engine
        return None

    def engines(self) -> List[SessionEngine]:
        with self._lock:
            return list(self._engines.values())

    def resume_all(self, worker_ids) -> int:
        resumed = 0
        for worker_id in worker_ids:
            if self.engine_for(worker_id).status is not SessionStatus.OFFLINE:
                resumed += 1
        logger.info(f"Resumed {resumed} active session(s)")
        return resumed

    def tick_all(self, now: Optional[int] = None) -> int:
        ran = 0
        for engine in self.engines():
            ran += engine.tick(now)
        with self._lock:
            finished = [w for w, e in self._engines.items()
                        if e.status is SessionStatus.OFFLINE and not e.escalation_pending
                        and w not in self._leases]
            for worker_id in finished:
                del self._engines[worker_id]
        return ran


class Heartbeat(threading.Thread):
    """Daemon thread that drives EngineRegistry.tick_all()."""

    def __init__(self, registry: EngineRegistry, settings_provider):
        super().__init__(name="attendance-heartbeat", daemon=True)
        self.registry = registry
        self.settings_provider = settings_provider
        self._stop_event = threading.Event()

    def run(self):
        logger.info("💓 Heartbeat started")
        while not self._stop_event.is_set():
            interval = self.settings_provider.current().general.heartbeat_ms / 1000.0
            if self._stop_event.wait(interval):
                break
            try:
                self.registry.tick_all()
            except Exception as e:
                logger.exception(f"Heartbeat tick failed: {e}")
        logger.info("Heartbeat stopped")

    def stop(self, timeout: Optional[float] = None):
        self._stop_event.set()
        if self.is_alive() and threading.current_thread() is not self:
            self.join(timeout)

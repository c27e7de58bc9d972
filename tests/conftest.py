"""
Shared test doubles: fake clock, in-memory ports and synthetic frames.
"""

import numpy as np
import pytest

from src.config.settings import StaticSettingsProvider, VerificationSettings, _deep_merge
from src.security.face_matcher import EuclideanFaceComparator, IdentityVerification
from src.session.engine import SessionEngine
from src.session.models import SessionStatus
from src.session.ports import NullNotifier, SessionContext, SinkResult

START = 1_700_000_000_000
SECOND = 1000
MINUTE = 60 * SECOND

DESCRIPTOR = (0.10, 0.20, 0.30, 0.40)


# ── Frames ───────────────────────────────────────────────────────────────────

def noise_frame(seed: int = 7, height: int = 120, width: int = 160) -> np.ndarray:
    """Colourful, sharp RGBA frame that the quality checks accept."""
    rng = np.random.default_rng(seed)
    frame = rng.integers(0, 250, (height, width, 4), dtype=np.uint8)
    frame[:, :, 3] = 255
    return frame


def live_frames(count: int = 10, seed: int = 7):
    """A window whose brightness shifts by 5 every frame: natural motion."""
    base = noise_frame(seed)
    shifted = base.copy()
    shifted[:, :, :3] += 5
    return [base if i % 2 == 0 else shifted for i in range(count)]


def flat_frame(value: int = 128, height: int = 120, width: int = 160) -> np.ndarray:
    frame = np.full((height, width, 4), value, dtype=np.uint8)
    frame[:, :, 3] = 255
    return frame


def static_frames(count: int = 10, value: int = 128):
    """A printed photo held still: flat, grey, no motion."""
    return [flat_frame(value) for _ in range(count)]


# ── Ports ────────────────────────────────────────────────────────────────────

class FakeClock:

    def __init__(self, start: int = START):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> int:
        self.now += ms
        return self.now


class MemoryStore:

    def __init__(self):
        self.sessions = {}
        self.saves = 0
        self.fail = False

    def load(self, worker_id):
        active = [s for s in self.sessions.values() if s.worker_id == worker_id and s.is_active]
        return max(active, key=lambda s: s.check_in_time) if active else None

    def save(self, session):
        if self.fail:
            raise IOError("store offline")
        self.sessions[session.id] = session
        self.saves += 1

    def enrolled_descriptor(self, worker_id):
        enrolled = [s for s in self.sessions.values()
                    if s.worker_id == worker_id and s.reference_descriptor is not None]
        return max(enrolled, key=lambda s: s.check_in_time).reference_descriptor if enrolled else None


class MemoryActivityLog:

    def __init__(self):
        self.entries = []
        self.fail = False

    def record(self, worker_id, event_type, description, metadata=None):
        if self.fail:
            return SinkResult.failure("activity sink offline")
        self.entries.append((worker_id, event_type, description, metadata or {}))
        return SinkResult.success()

    def types(self):
        return [e[1] for e in self.entries]


class MemoryIncidentReport:

    def __init__(self):
        self.incidents = []
        self.fail = False

    def record(self, worker_id, incident_type, attempts, captured_frame_ref, description, session_id=None):
        if self.fail:
            return SinkResult.failure("incident sink offline")
        self.incidents.append({
            "worker_id": worker_id,
            "session_id": session_id,
            "incident_type": incident_type,
            "attempts": attempts,
            "captured_frame_ref": captured_frame_ref,
            "description": description,
        })
        return SinkResult.success()

    def types(self):
        return [i["incident_type"] for i in self.incidents]


class ScriptedFrameSource:
    """Cycles through a fixed list of frames."""

    def __init__(self, frames):
        self.frames = list(frames)
        self.calls = 0
        self.error = None

    def capture_frame(self):
        if self.error is not None:
            raise self.error
        frame = self.frames[self.calls % len(self.frames)]
        self.calls += 1
        return frame


# ── Harness ──────────────────────────────────────────────────────────────────

# Activity pings are not simulated, so inactivity is off unless a test asks
BASE_OVERRIDES = {"general": {"inactivity_timeout_seconds": 24 * 3600}}


def make_settings(overrides: dict = None) -> VerificationSettings:
    return VerificationSettings.from_config(_deep_merge(BASE_OVERRIDES, overrides or {}))


class Harness:

    def __init__(self, overrides: dict = None, frame_source=None, worker_id: str = "w1",
                 store: MemoryStore = None, clock: FakeClock = None):
        self.clock = clock or FakeClock()
        self.store = store or MemoryStore()
        self.activity = MemoryActivityLog()
        self.incidents = MemoryIncidentReport()
        self.provider = StaticSettingsProvider(make_settings(overrides))
        self.notifier = NullNotifier()
        self.ctx = SessionContext(
            worker_id=worker_id,
            store=self.store,
            activity_log=self.activity,
            incident_report=self.incidents,
            settings_provider=self.provider,
            comparator=EuclideanFaceComparator(),
            frame_source=frame_source,
            notifier=self.notifier,
            clock=self.clock,
        )
        self.engine = SessionEngine(self.ctx)

    @property
    def status(self) -> SessionStatus:
        return self.engine.status

    @property
    def challenge(self):
        return self.engine.challenges.pending

    def check_in(self, descriptor=DESCRIPTOR):
        verification = IdentityVerification(passed=True, similarity=1.0, liveness=None)
        return self.engine.check_in(verification, descriptor)

    def advance(self, ms: int) -> int:
        """Move the clock and run one heartbeat tick."""
        self.clock.advance(ms)
        return self.engine.tick()

    def run_for(self, ms: int, step: int = SECOND):
        """Tick every `step` ms for `ms` ms, like the heartbeat thread."""
        elapsed = 0
        while elapsed < ms:
            delta = min(step, ms - elapsed)
            self.advance(delta)
            elapsed += delta

    def reach_captcha(self):
        """From a fresh arm: skip to the moment the CAPTCHA is presented."""
        interval = int(self.provider.current().captcha.interval_minutes * MINUTE)
        self.advance(interval)
        return self.challenge

    def pass_captcha(self):
        challenge = self.reach_captcha()
        outcome = self.engine.submit_captcha(challenge.id, challenge.code)
        return outcome

    def finish_cooldown(self):
        self.advance(int(self.provider.current().captcha.cooldown_seconds * SECOND))


@pytest.fixture
def harness():
    return Harness()


@pytest.fixture
def make_harness():
    return Harness

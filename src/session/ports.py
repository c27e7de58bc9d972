"""
Collaborator contracts consumed by the engine, plus the SessionContext that
threads them (and the current session) through every call.
"""

import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Protocol, Sequence

import numpy as np

from src.session.models import Challenge, ChallengeKind, Session


@dataclass(frozen=True)
class SinkResult:
    ok: bool
    error: Optional[str] = None

    @classmethod
    def success(cls) -> "SinkResult":
        return cls(True)

    @classmethod
    def failure(cls, error) -> "SinkResult":
        return cls(False, str(error))


class SessionStore(Protocol):
    def load(self, worker_id: str) -> Optional[Session]: ...

    def save(self, session: Session) -> None: ...

    def enrolled_descriptor(self, worker_id: str) -> Optional[Sequence[float]]: ...


class ActivityLog(Protocol):
    def record(self, worker_id: str, event_type: str, description: str,
               metadata: Optional[Dict[str, Any]] = None) -> SinkResult: ...


class IncidentReport(Protocol):
    def record(self, worker_id: str, incident_type: str, attempts: int,
               captured_frame_ref: Optional[str], description: str,
               session_id: Optional[str] = None) -> SinkResult: ...


class FaceComparator(Protocol):
    def compare(self, descriptor_a: Sequence[float], descriptor_b: Sequence[float]) -> float: ...


class SettingsProvider(Protocol):
    def current(self): ...

    def on_change(self, callback: Callable) -> Callable[[], None]: ...


class FrameSource(Protocol):
    def capture_frame(self) -> np.ndarray: ...


class ChallengeNotifier(Protocol):
    def warn(self, session: Session, kind: ChallengeKind, seconds_until: float) -> None: ...

    def present(self, session: Session, challenge: Challenge) -> None: ...

    def dismiss(self, session: Session, challenge_id: str) -> None: ...


class NullNotifier:
    """Notifier that only remembers the last prompt; used when no UI is attached."""

    def __init__(self):
        self.last_warning = None
        self.active: Optional[Challenge] = None

    def warn(self, session, kind, seconds_until):
        self.last_warning = (session.id, kind, seconds_until)

    def present(self, session, challenge):
        self.active = challenge

    def dismiss(self, session, challenge_id):
        if self.active is not None and self.active.id == challenge_id:
            self.active = None


def system_clock() -> int:
    return int(time.time() * 1000)


@dataclass
class SessionContext:
    """
    Everything one engine needs, passed explicitly instead of read from
    module-level state.
    """
    worker_id: str
    store: SessionStore
    activity_log: ActivityLog
    incident_report: IncidentReport
    settings_provider: SettingsProvider
    comparator: FaceComparator
    frame_source: Optional[FrameSource] = None
    notifier: Optional[ChallengeNotifier] = None
    clock: Callable[[], int] = system_clock
    session: Optional[Session] = None

    def __post_init__(self):
        if self.notifier is None:
            self.notifier = NullNotifier()

    @property
    def settings(self):
        return self.settings_provider.current()

    def now(self) -> int:
        return int(self.clock())

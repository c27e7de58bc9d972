"""
Session Models
Canonical typed records for attendance sessions. One field name per concept;
legacy document shapes are converted in src/storage/migration.py.

All times are epoch milliseconds. Records are immutable; see
src/session/transitions.py for the functions that derive new versions.
"""

from dataclasses import dataclass, asdict, replace
from enum import Enum
from typing import Optional, Tuple


class SessionStatus(str, Enum):
    ONLINE = "online"
    BACK_SOON = "back_soon"
    OFFLINE = "offline"


class AwayReason(str, Enum):
    MEETING = "meeting"
    RESTROOM = "restroom"
    OTHER = "other"


class IncidentType(str, Enum):
    CAPTCHA_EXHAUSTED = "captcha_exhausted"
    CAPTCHA_TIMEOUT = "captcha_timeout"
    FACE_VERIFICATION_FAILED = "face_verification_failed"
    FACE_VERIFICATION_SKIPPED = "face_verification_skipped"
    FACE_VERIFICATION_TIMEOUT = "face_verification_timeout"
    INACTIVITY = "inactivity"
    SESSION_TIMEOUT = "session_timeout"


class ActivityType(str, Enum):
    CHECK_IN = "check_in"
    CHECK_OUT = "check_out"
    BACK_SOON = "back_soon"
    BACK_ONLINE = "back_online"
    CAPTCHA_VERIFY = "captcha_verify"
    CAPTCHA_FAILED = "captcha_failed"
    FACE_VERIFY = "face_verify"
    FACE_VERIFICATION_FAILED = "face_verification_failed"
    CHALLENGE_WARNING = "challenge_warning"
    INCIDENT = "incident"


class ChallengeKind(str, Enum):
    CAPTCHA = "captcha"
    FACE = "face"


@dataclass(frozen=True)
class AwayEvent:
    start_time: int
    reason: AwayReason
    custom_reason: Optional[str] = None
    end_time: Optional[int] = None
    duration_seconds: Optional[int] = None

    @property
    def is_open(self) -> bool:
        return self.end_time is None

    def to_dict(self) -> dict:
        d = asdict(self)
        d["reason"] = self.reason.value
        return d

    @classmethod
    def from_dict(cls, d: dict) -> "AwayEvent":
        return cls(
            start_time=int(d["start_time"]),
            reason=AwayReason(d["reason"]),
            custom_reason=d.get("custom_reason"),
            end_time=d.get("end_time"),
            duration_seconds=d.get("duration_seconds"),
        )


@dataclass(frozen=True)
class Session:
    id: str
    worker_id: str
    status: SessionStatus
    check_in_time: int
    check_out_time: Optional[int] = None
    away_events: Tuple[AwayEvent, ...] = ()
    total_online_seconds: int = 0
    total_away_seconds: int = 0
    captcha_attempts: int = 0
    captcha_success_streak: int = 0
    face_verification_count: int = 0
    last_activity_time: int = 0
    last_challenge_time: int = 0
    check_out_reason: Optional[str] = None
    reference_descriptor: Optional[Tuple[float, ...]] = None
    check_in_frame_ref: Optional[str] = None

    @property
    def is_active(self) -> bool:
        return self.status is not SessionStatus.OFFLINE

    @property
    def open_away_event(self) -> Optional[AwayEvent]:
        if self.away_events and self.away_events[-1].is_open:
            return self.away_events[-1]
        return None

    def with_changes(self, **changes) -> "Session":
        return replace(self, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "worker_id": self.worker_id,
            "status": self.status.value,
            "check_in_time": self.check_in_time,
            "check_out_time": self.check_out_time,
            "away_events": [e.to_dict() for e in self.away_events],
            "total_online_seconds": self.total_online_seconds,
            "total_away_seconds": self.total_away_seconds,
            "captcha_attempts": self.captcha_attempts,
            "captcha_success_streak": self.captcha_success_streak,
            "face_verification_count": self.face_verification_count,
            "last_activity_time": self.last_activity_time,
            "last_challenge_time": self.last_challenge_time,
            "check_out_reason": self.check_out_reason,
            "reference_descriptor": list(self.reference_descriptor) if self.reference_descriptor else None,
            "check_in_frame_ref": self.check_in_frame_ref,
        }

    @classmethod
    def from_dict(cls, d: dict) -> "Session":
        descriptor = d.get("reference_descriptor")
        return cls(
            id=d["id"],
            worker_id=d["worker_id"],
            status=SessionStatus(d["status"]),
            check_in_time=int(d["check_in_time"]),
            check_out_time=d.get("check_out_time"),
            away_events=tuple(AwayEvent.from_dict(e) for e in d.get("away_events", [])),
            total_online_seconds=int(d.get("total_online_seconds", 0)),
            total_away_seconds=int(d.get("total_away_seconds", 0)),
            captcha_attempts=int(d.get("captcha_attempts", 0)),
            captcha_success_streak=int(d.get("captcha_success_streak", 0)),
            face_verification_count=int(d.get("face_verification_count", 0)),
            last_activity_time=int(d.get("last_activity_time", 0)),
            last_challenge_time=int(d.get("last_challenge_time", 0)),
            check_out_reason=d.get("check_out_reason"),
            reference_descriptor=tuple(descriptor) if descriptor else None,
            check_in_frame_ref=d.get("check_in_frame_ref"),
        )


@dataclass(frozen=True)
class Challenge:
    """One outstanding CAPTCHA or face prompt awaiting an answer."""
    id: str
    kind: ChallengeKind
    issued_at: int
    deadline: int
    code: Optional[str] = None

    def to_dict(self, include_code: bool = True) -> dict:
        d = {
            "id": self.id,
            "kind": self.kind.value,
            "issued_at": self.issued_at,
            "deadline": self.deadline,
        }
        if include_code and self.code is not None:
            d["code"] = self.code
        return d


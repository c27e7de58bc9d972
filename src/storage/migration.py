"""
Migration - Storage Module
Reads session documents written by the legacy web client and returns the
canonical Session record. Canonical documents pass straight through.

Legacy → canonical:
    userId               → worker_id
    backSoonEvents       → away_events   (reason 'wc' → restroom)
    totalOnlineTime      → total_online_seconds
    totalBackSoonTime    → total_away_seconds
    captchaSuccessCount  → captcha_success_streak
    lastCaptchaTime      → last_challenge_time
    {seconds, nanoseconds} timestamps → epoch millis
"""

from typing import Any, Optional

from src.session.models import AwayEvent, AwayReason, Session, SessionStatus

LEGACY_REASONS = {"wc": AwayReason.RESTROOM}


def to_millis(value: Any) -> Optional[int]:
    """Accept epoch millis, a {seconds, nanoseconds} object, or None."""
    if value is None:
        return None
    if isinstance(value, dict):
        seconds = value.get("seconds", value.get("_seconds"))
        if seconds is None:
            raise ValueError(f"Unrecognised timestamp object: {value}")
        nanos = value.get("nanoseconds", value.get("_nanoseconds", 0)) or 0
        return int(seconds) * 1000 + int(nanos) // 1_000_000
    return int(value)


def is_legacy(document: dict) -> bool:
    return "userId" in document or "checkInTime" in document


def _away_reason(value: str) -> AwayReason:
    return LEGACY_REASONS.get(value) or AwayReason(value)


def _away_event(record: dict) -> AwayEvent:
    end = to_millis(record.get("endTime"))
    duration = record.get("duration")
    return AwayEvent(
        start_time=to_millis(record["startTime"]),
        reason=_away_reason(record.get("reason", "other")),
        custom_reason=record.get("customReason"),
        end_time=end,
        duration_seconds=int(duration) if duration is not None and end is not None else None,
    )


def session_from_document(document: dict) -> Session:
    if not is_legacy(document):
        return Session.from_dict(document)

    check_in = to_millis(document["checkInTime"])
    events = tuple(_away_event(e) for e in document.get("backSoonEvents") or [])
    return Session(
        id=document["id"],
        worker_id=document["userId"],
        status=SessionStatus(document.get("status", "offline")),
        check_in_time=check_in,
        check_out_time=to_millis(document.get("checkOutTime")),
        away_events=events,
        total_online_seconds=int(document.get("totalOnlineTime", 0)),
        total_away_seconds=int(document.get("totalBackSoonTime", 0)),
        captcha_attempts=int(document.get("captchaAttempts", 0)),
        captcha_success_streak=int(document.get("captchaSuccessCount", 0)),
        face_verification_count=int(document.get("faceVerificationCount", 0)),
        last_activity_time=to_millis(document.get("lastActivityTime")) or check_in,
        last_challenge_time=to_millis(document.get("lastCaptchaTime")) or check_in,
        check_out_reason=document.get("checkOutReason"),
        check_in_frame_ref=document.get("face1Url"),
    )

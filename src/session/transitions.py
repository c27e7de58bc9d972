"""
Session Transitions
Pure functions deriving the next Session from the current one.

Given the same inputs they always return the same record, so a caller whose
store write failed can retry the save with the already computed value.

Time conservation at every step:
    total_online_seconds + total_away_seconds == floor((end − check_in) / 1000)
where each away event contributes floor(duration / 1000).
"""

import uuid
from typing import Optional, Sequence

from src.session.models import AwayEvent, AwayReason, Session, SessionStatus


def _elapsed_seconds(start: int, end: int) -> int:
    return max(0, (end - start) // 1000)


def new_session(worker_id: str, now: int, reference_descriptor: Optional[Sequence[float]] = None,
                frame_ref: Optional[str] = None) -> Session:
    return Session(
        id=f"{worker_id}_{now}_{uuid.uuid4().hex[:6]}",
        worker_id=worker_id,
        status=SessionStatus.ONLINE,
        check_in_time=now,
        last_activity_time=now,
        last_challenge_time=now,
        reference_descriptor=tuple(float(x) for x in reference_descriptor) if reference_descriptor is not None else None,
        check_in_frame_ref=frame_ref,
    )


def away_seconds(session: Session, now: int) -> int:
    """Closed away time plus the running time of an open event."""
    total = 0
    for event in session.away_events:
        if event.is_open:
            total += _elapsed_seconds(event.start_time, now)
        else:
            total += event.duration_seconds or 0
    return total


def refresh_totals(session: Session, now: int) -> Session:
    end = session.check_out_time if session.check_out_time is not None else now
    elapsed = _elapsed_seconds(session.check_in_time, end)
    away = min(away_seconds(session, end), elapsed)
    return session.with_changes(
        total_away_seconds=away,
        total_online_seconds=max(0, elapsed - away),
    )


def open_away(session: Session, now: int, reason: AwayReason, custom_reason: Optional[str] = None) -> Session:
    event = AwayEvent(start_time=now, reason=reason, custom_reason=custom_reason)
    updated = session.with_changes(
        status=SessionStatus.BACK_SOON,
        away_events=session.away_events + (event,),
        last_activity_time=now,
    )
    return refresh_totals(updated, now)


def close_away(session: Session, now: int) -> Session:
    event = session.open_away_event
    if event is None:
        return session
    end = max(now, event.start_time)
    closed = AwayEvent(
        start_time=event.start_time,
        reason=event.reason,
        custom_reason=event.custom_reason,
        end_time=end,
        duration_seconds=_elapsed_seconds(event.start_time, end),
    )
    return session.with_changes(away_events=session.away_events[:-1] + (closed,))


def return_online(session: Session, now: int) -> Session:
    updated = close_away(session, now).with_changes(
        status=SessionStatus.ONLINE,
        last_activity_time=now,
    )
    return refresh_totals(updated, now)


def finalize(session: Session, now: int, reason: str) -> Session:
    """Close any open away event and freeze the totals at check-out time."""
    end = max(now, session.check_in_time)
    closed = close_away(session, end).with_changes(
        status=SessionStatus.OFFLINE,
        check_out_time=end,
        check_out_reason=reason,
    )
    return refresh_totals(closed, end)


def touch(session: Session, now: int) -> Session:
    return session.with_changes(last_activity_time=max(session.last_activity_time, now))


def record_captcha_success(session: Session, now: int) -> Session:
    return session.with_changes(
        captcha_attempts=0,
        captcha_success_streak=session.captcha_success_streak + 1,
        last_challenge_time=now,
        last_activity_time=max(session.last_activity_time, now),
    )


def record_captcha_failure(session: Session, now: int) -> Session:
    return session.with_changes(
        captcha_attempts=session.captcha_attempts + 1,
        last_activity_time=max(session.last_activity_time, now),
    )


def record_face_success(session: Session, now: int) -> Session:
    return session.with_changes(
        captcha_success_streak=0,
        face_verification_count=session.face_verification_count + 1,
        last_challenge_time=now,
        last_activity_time=max(session.last_activity_time, now),
    )

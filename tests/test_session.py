"""
Tests - Session Module
Pure transitions, the task scheduler and the session state machine.
"""

import pytest

from conftest import DESCRIPTOR, MINUTE, SECOND, START, Harness


# ── Transitions ──────────────────────────────────────────────────────────────

class TestTransitions:

    def setup_method(self):
        from src.session.transitions import new_session
        self.session = new_session("w1", START, DESCRIPTOR, "frame-ref")

    def test_new_session(self):
        from src.session.models import SessionStatus
        assert self.session.status is SessionStatus.ONLINE
        assert self.session.id.startswith(f"w1_{START}_")
        assert self.session.reference_descriptor == DESCRIPTOR
        assert self.session.last_activity_time == START

    def test_time_conservation_with_partial_seconds(self):
        from src.session import transitions
        from src.session.models import AwayReason
        s = transitions.open_away(self.session, START + 10 * MINUTE + 700, AwayReason.MEETING)
        s = transitions.return_online(s, START + 13 * MINUTE + 1400)
        s = transitions.open_away(s, START + 20 * MINUTE + 300, AwayReason.RESTROOM)
        end = START + 25 * MINUTE + 999
        s = transitions.finalize(s, end, "User checkout")
        assert s.total_online_seconds + s.total_away_seconds == (end - START) // 1000
        assert s.total_away_seconds == sum(e.duration_seconds for e in s.away_events)

    def test_finalize_closes_open_away_event(self):
        from src.session import transitions
        from src.session.models import AwayReason, SessionStatus
        s = transitions.open_away(self.session, START + MINUTE, AwayReason.OTHER, "dentist")
        s = transitions.finalize(s, START + 3 * MINUTE, "User checkout")
        assert s.status is SessionStatus.OFFLINE
        assert s.open_away_event is None
        assert s.away_events[-1].duration_seconds == 120
        assert s.total_away_seconds == 120
        assert s.total_online_seconds == 60

    def test_pure(self):
        from src.session import transitions
        end = START + 5 * MINUTE
        assert transitions.finalize(self.session, end, "x") == transitions.finalize(self.session, end, "x")
        assert self.session.check_out_time is None

    def test_finalize_before_check_in_clamps(self):
        from src.session import transitions
        s = transitions.finalize(self.session, START - 5000, "clock skew")
        assert s.check_out_time == START
        assert s.total_online_seconds == 0

    def test_counters(self):
        from src.session import transitions
        s = transitions.record_captcha_failure(self.session, START + 1)
        s = transitions.record_captcha_failure(s, START + 2)
        assert s.captcha_attempts == 2
        s = transitions.record_captcha_success(s, START + 3)
        assert s.captcha_attempts == 0
        assert s.captcha_success_streak == 1
        s = transitions.record_face_success(s, START + 4)
        assert s.captcha_success_streak == 0
        assert s.face_verification_count == 1

    def test_session_dict_round_trip(self):
        from src.session import transitions
        from src.session.models import AwayReason, Session
        s = transitions.open_away(self.session, START + MINUTE, AwayReason.MEETING)
        assert Session.from_dict(s.to_dict()) == s


# ── Task Scheduler ───────────────────────────────────────────────────────────

class TestTaskScheduler:

    def setup_method(self):
        from src.session.task_scheduler import TaskScheduler
        self.scheduler = TaskScheduler()
        self.ran = []

    def _task(self, label):
        return lambda: self.ran.append(label)

    def test_runs_in_fire_time_order(self):
        self.scheduler.schedule_at(300, self._task("c"), "c")
        self.scheduler.schedule_at(100, self._task("a"), "a")
        self.scheduler.schedule_at(200, self._task("b"), "b")
        assert self.scheduler.tick(250) == 2
        assert self.ran == ["a", "b"]
        self.scheduler.tick(300)
        assert self.ran == ["a", "b", "c"]

    def test_ties_go_to_insertion_order(self):
        for label in "xyz":
            self.scheduler.schedule_at(100, self._task(label), label)
        self.scheduler.tick(100)
        assert self.ran == ["x", "y", "z"]

    def test_deadline_priority_wins_tie(self):
        from src.session.task_scheduler import PRIORITY_DEADLINE
        self.scheduler.schedule_at(100, self._task("result"), "result")
        self.scheduler.schedule_at(100, self._task("deadline"), "deadline", priority=PRIORITY_DEADLINE)
        self.scheduler.tick(100)
        assert self.ran == ["deadline", "result"]

    def test_cancel(self):
        task_id = self.scheduler.schedule_at(100, self._task("a"), "a")
        assert self.scheduler.cancel(task_id)
        assert not self.scheduler.cancel(task_id)
        self.scheduler.tick(1000)
        assert self.ran == []

    def test_cancel_named(self):
        self.scheduler.schedule_at(100, self._task("a"), "warning")
        self.scheduler.schedule_at(200, self._task("b"), "captcha")
        assert self.scheduler.cancel_named("warning") == 1
        assert not self.scheduler.has_pending("warning")
        self.scheduler.tick(1000)
        assert self.ran == ["b"]

    def test_invalidate_drops_everything(self):
        self.scheduler.schedule_at(100, self._task("a"), "a")
        self.scheduler.schedule_at(200, self._task("b"), "b")
        assert self.scheduler.invalidate() == 2
        assert self.scheduler.epoch == 1
        self.scheduler.tick(1000)
        assert self.ran == []
        assert self.scheduler.next_fire_time() is None

    def test_task_invalidating_stops_later_tasks(self):
        self.scheduler.schedule_at(100, self.scheduler.invalidate, "transition")
        self.scheduler.schedule_at(100, self._task("stale"), "stale")
        self.scheduler.tick(100)
        assert self.ran == []

    def test_task_scheduled_during_tick_runs_if_due(self):
        self.scheduler.schedule_at(100, lambda: self.scheduler.schedule_at(100, self._task("chained"), "c"), "a")
        self.scheduler.tick(100)
        assert self.ran == ["chained"]

    def test_next_fire_time_skips_cancelled(self):
        first = self.scheduler.schedule_at(100, self._task("a"), "a")
        self.scheduler.schedule_at(200, self._task("b"), "b")
        self.scheduler.cancel(first)
        assert self.scheduler.next_fire_time() == 200
        assert self.scheduler.pending() == [("b", 200)]


# ── State Machine ────────────────────────────────────────────────────────────

class TestStateMachine:

    def setup_method(self):
        self.h = Harness()

    def test_check_in(self):
        from src.session.models import SessionStatus
        session = self.h.check_in()
        assert session.status is SessionStatus.ONLINE
        assert self.h.store.sessions[session.id] == session
        assert self.h.activity.types() == ["check_in"]

    def test_check_in_requires_verification(self):
        from src.security.face_matcher import IdentityVerification
        from src.session.errors import VerificationRequiredError
        failed = IdentityVerification(passed=False, similarity=0.2, liveness=None, reasons=["Face mismatch"])
        with pytest.raises(VerificationRequiredError):
            self.h.engine.check_in(failed, DESCRIPTOR)
        with pytest.raises(VerificationRequiredError):
            self.h.engine.check_in(None, DESCRIPTOR)
        assert self.h.store.saves == 0

    def test_double_check_in_rejected(self):
        from src.session.errors import InvalidTransitionError
        self.h.check_in()
        with pytest.raises(InvalidTransitionError):
            self.h.check_in()

    def test_check_in_rejected_when_store_has_active_session(self):
        """Another process already holds an active session for this worker."""
        from src.session.errors import InvalidTransitionError
        other = Harness(store=self.h.store, clock=self.h.clock)
        other.check_in()
        with pytest.raises(InvalidTransitionError):
            self.h.check_in()

    def test_back_soon_and_return(self):
        from src.session.models import SessionStatus
        self.h.check_in()
        self.h.advance(5 * MINUTE)
        self.h.engine.go_back_soon("meeting")
        assert self.h.status is SessionStatus.BACK_SOON
        self.h.advance(2 * MINUTE)
        session = self.h.engine.return_online()
        assert session.status is SessionStatus.ONLINE
        assert session.away_events[-1].duration_seconds == 120
        assert self.h.activity.types() == ["check_in", "back_soon", "back_online"]

    def test_other_reason_needs_text(self):
        self.h.check_in()
        with pytest.raises(ValueError):
            self.h.engine.go_back_soon("other")
        self.h.engine.go_back_soon("other", "dentist")
        assert self.h.engine.session.away_events[-1].custom_reason == "dentist"

    def test_unknown_reason_rejected(self):
        self.h.check_in()
        with pytest.raises(ValueError):
            self.h.engine.go_back_soon("lunch")

    def test_illegal_transitions(self):
        from src.session.errors import InvalidTransitionError
        with pytest.raises(InvalidTransitionError):
            self.h.engine.go_back_soon("meeting")
        self.h.check_in()
        with pytest.raises(InvalidTransitionError):
            self.h.engine.return_online()
        self.h.engine.go_back_soon("meeting")
        with pytest.raises(InvalidTransitionError):
            self.h.engine.go_back_soon("meeting")

    def test_time_conservation(self):
        self.h.check_in()
        self.h.advance(10 * MINUTE)
        self.h.engine.go_back_soon("restroom")
        self.h.advance(3 * MINUTE + 500)
        self.h.engine.return_online()
        self.h.advance(7 * MINUTE)
        session = self.h.engine.check_out()
        assert session.total_away_seconds == 180
        assert session.total_online_seconds + session.total_away_seconds == (session.check_out_time - START) // 1000

    def test_checkout_idempotent(self):
        self.h.check_in()
        self.h.advance(MINUTE)
        first = self.h.engine.check_out()
        saves = self.h.store.saves
        self.h.advance(MINUTE)
        second = self.h.engine.check_out()
        assert first == second
        assert self.h.store.saves == saves
        assert self.h.activity.types().count("check_out") == 1

    def test_checkout_from_back_soon_closes_event(self):
        self.h.check_in()
        self.h.engine.go_back_soon("meeting")
        self.h.advance(90 * SECOND)
        session = self.h.engine.check_out()
        assert session.open_away_event is None
        assert session.total_away_seconds == 90

    def test_new_check_in_after_checkout(self):
        first = self.h.check_in()
        self.h.engine.check_out()
        self.h.advance(SECOND)
        second = self.h.check_in()
        assert second.id != first.id

    def test_live_totals(self):
        self.h.check_in()
        self.h.advance(2 * MINUTE)
        self.h.engine.go_back_soon("meeting")
        self.h.advance(MINUTE)
        totals = self.h.engine.state_machine.current_totals()
        assert totals == {"total_online_seconds": 120, "total_away_seconds": 60}

    def test_store_failure_leaves_state_untouched(self):
        from src.session.errors import InfrastructureError
        from src.session.models import SessionStatus
        self.h.check_in()
        self.h.store.fail = True
        with pytest.raises(InfrastructureError):
            self.h.engine.go_back_soon("meeting")
        assert self.h.status is SessionStatus.ONLINE
        self.h.store.fail = False
        self.h.engine.go_back_soon("meeting")
        assert self.h.status is SessionStatus.BACK_SOON

    def test_activity_failure_never_blocks(self):
        from src.session.models import SessionStatus
        self.h.activity.fail = True
        self.h.check_in()
        self.h.engine.go_back_soon("meeting")
        assert self.h.status is SessionStatus.BACK_SOON

    def test_activity_persistence_throttled(self):
        self.h.check_in()
        saves = self.h.store.saves
        self.h.clock.advance(10 * SECOND)
        self.h.engine.record_activity()
        assert self.h.store.saves == saves
        assert self.h.engine.session.last_activity_time == self.h.clock.now
        self.h.clock.advance(25 * SECOND)
        self.h.engine.record_activity()
        assert self.h.store.saves == saves + 1

    def test_check_in_keeps_enrolled_reference(self):
        """Only the first check-in enrols; later check-ins keep the face on record."""
        self.h.check_in()
        self.h.engine.check_out()
        session = self.h.check_in(descriptor=(9.0, -9.0, 9.0, -9.0))
        assert session.reference_descriptor == DESCRIPTOR

    def test_back_soon_logs_abandoned_challenge(self):
        self.h.check_in()
        challenge = self.h.reach_captcha()
        self.h.engine.go_back_soon("meeting")
        metadata = self.h.activity.entries[-1][3]
        assert metadata["abandoned_challenge"] == {"id": challenge.id, "kind": "captcha"}

    def test_back_soon_without_challenge_has_no_abandoned_entry(self):
        self.h.check_in()
        self.h.engine.go_back_soon("meeting")
        assert "abandoned_challenge" not in self.h.activity.entries[-1][3]

    def test_record_activity_offline_rejected(self):
        from src.session.errors import InvalidTransitionError
        with pytest.raises(InvalidTransitionError):
            self.h.engine.record_activity()


class TestWatchdogs:

    def test_inactivity_escalates(self):
        from src.session.models import SessionStatus
        h = Harness({"general": {"inactivity_timeout_seconds": 300}})
        h.check_in()
        h.run_for(301 * SECOND)
        assert h.status is SessionStatus.OFFLINE
        assert h.incidents.types() == ["inactivity"]
        assert h.engine.session.check_out_reason == "auto:inactivity"

    def test_activity_keeps_session_alive(self):
        from src.session.models import SessionStatus
        h = Harness({"general": {"inactivity_timeout_seconds": 300}})
        h.check_in()
        h.run_for(200 * SECOND)
        h.engine.record_activity()
        h.run_for(200 * SECOND)
        assert h.status is SessionStatus.ONLINE

    def test_inactivity_applies_while_back_soon(self):
        from src.session.models import SessionStatus
        h = Harness({"general": {"inactivity_timeout_seconds": 300}})
        h.check_in()
        h.engine.go_back_soon("meeting")
        h.run_for(301 * SECOND, step=10 * SECOND)
        assert h.status is SessionStatus.OFFLINE
        assert h.engine.session.open_away_event is None

    def test_session_timeout(self):
        from src.session.models import SessionStatus
        h = Harness({
            "captcha": {"interval_minutes": 600},
            "general": {"session_timeout_hours": 1},
        })
        h.check_in()
        h.run_for(60 * MINUTE, step=MINUTE)
        assert h.status is SessionStatus.ONLINE
        h.advance(SECOND)
        assert h.status is SessionStatus.OFFLINE
        assert h.incidents.types() == ["session_timeout"]

    def test_session_timeout_disabled(self):
        from src.session.models import SessionStatus
        h = Harness({
            "captcha": {"interval_minutes": 600},
            "general": {"session_timeout_hours": 1, "auto_logout_enabled": False},
        })
        h.check_in()
        h.advance(2 * 60 * MINUTE)
        assert h.status is SessionStatus.ONLINE

    def test_escalation_records_incident_then_activity_then_checkout(self):
        h = Harness({"general": {"inactivity_timeout_seconds": 60}})
        h.check_in()
        h.advance(61 * SECOND)
        assert h.activity.types()[-2:] == ["incident", "check_out"]
        assert h.incidents.incidents[0]["attempts"] == 0
        assert h.incidents.incidents[0]["session_id"] == h.engine.session.id

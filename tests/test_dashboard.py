"""
Tests - Dashboard API
"""

import pytest

from conftest import DESCRIPTOR, ScriptedFrameSource, flat_frame, make_settings


@pytest.fixture
def api(tmp_path):
    from src.config.settings import StaticSettingsProvider
    from src.dashboard.app import create_app
    from src.security.face_matcher import EuclideanFaceComparator
    from src.session.engine import EngineRegistry
    from src.session.ports import SessionContext
    from src.storage.sqlite_store import SQLiteActivityLog, SQLiteIncidentReport, SQLiteSessionStore

    db_path = str(tmp_path / "attendance.db")
    store = SQLiteSessionStore(db_path)
    activity = SQLiteActivityLog(db_path)
    incidents = SQLiteIncidentReport(db_path)
    # Liveness is covered elsewhere; here the camera only has to produce frames
    provider = StaticSettingsProvider(make_settings({
        "anti_spoofing": {"enabled": False},
        "motion_detection": {"enabled": False, "sample_window_ms": 2, "sample_interval_ms": 1},
    }))
    frames = ScriptedFrameSource([flat_frame()])

    def factory(worker_id):
        return SessionContext(
            worker_id=worker_id,
            store=store,
            activity_log=activity,
            incident_report=incidents,
            settings_provider=provider,
            comparator=EuclideanFaceComparator(),
            frame_source=frames,
        )

    registry = EngineRegistry(factory)
    config = {"system": {"version": "1.0.0"}}
    app = create_app(config, registry, activity, incidents, session_store=store, settings_provider=provider)
    app.config["TESTING"] = True
    client = app.test_client()
    client.registry = registry
    client.incidents = incidents
    return client


def _check_in(api, worker_id="w1"):
    return api.post("/api/sessions", json={"worker_id": worker_id, "descriptor": list(DESCRIPTOR)})


class TestAuditEndpoints:

    def test_health(self, api):
        data = api.get("/api/health").get_json()
        assert data["status"] == "running"
        assert data["version"] == "1.0.0"

    def test_activity_and_stats(self, api):
        _check_in(api)
        events = api.get("/api/activity?worker_id=w1").get_json()
        assert events["count"] == 1
        assert events["events"][0]["event_type"] == "check_in"
        stats = api.get("/api/stats").get_json()
        assert stats["activity"]["total"] == 1
        assert stats["active_sessions"] == 1

    def test_incidents_and_resolve(self, api):
        api.incidents.record("w1", "inactivity", 0, None, "idle")
        data = api.get("/api/incidents").get_json()
        assert data["count"] == 1
        incident_id = data["incidents"][0]["id"]
        assert api.post(f"/api/incidents/{incident_id}/resolve").status_code == 200
        assert api.post(f"/api/incidents/{incident_id}/resolve").status_code == 404

    def test_settings(self, api):
        data = api.get("/api/settings").get_json()
        assert data["captcha"]["max_attempts"] == 3
        # Static provider has no update()
        assert api.post("/api/settings", json={"captcha": {"max_attempts": 5}}).status_code == 404


class TestSessionEndpoints:

    def test_check_in(self, api):
        resp = _check_in(api)
        assert resp.status_code == 201
        data = resp.get_json()
        assert data["status"] == "online"
        assert data["session"]["reference_descriptor"] == list(DESCRIPTOR)

    def test_check_in_without_face(self, api):
        resp = api.post("/api/sessions", json={"worker_id": "w1"})
        assert resp.status_code == 403
        assert "No face detected" in resp.get_json()["message"]

    def test_check_in_matches_enrolled_face(self, api):
        _check_in(api)
        api.post("/api/sessions/w1/checkout")
        impostor = [9.0, -9.0, 9.0, -9.0]
        resp = api.post("/api/sessions", json={
            "worker_id": "w1", "descriptor": impostor, "reference_descriptor": impostor,
        })
        assert resp.status_code == 403
        assert "Face mismatch" in resp.get_json()["message"]

        again = _check_in(api)
        assert again.status_code == 201
        assert again.get_json()["session"]["reference_descriptor"] == list(DESCRIPTOR)

    def test_check_in_requires_worker(self, api):
        assert api.post("/api/sessions", json={}).status_code == 400

    def test_double_check_in_conflict(self, api):
        _check_in(api)
        resp = _check_in(api)
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "InvalidTransitionError"

    def test_back_soon_return_checkout(self, api):
        _check_in(api)
        assert api.post("/api/sessions/w1/back-soon", json={"reason": "meeting"}).get_json()["status"] == "back_soon"
        assert api.post("/api/sessions/w1/return").get_json()["status"] == "online"
        data = api.post("/api/sessions/w1/checkout", json={"reason": "End of shift"}).get_json()
        assert data["status"] == "offline"
        assert data["session"]["check_out_reason"] == "End of shift"

    def test_back_soon_validation(self, api):
        _check_in(api)
        assert api.post("/api/sessions/w1/back-soon", json={"reason": "other"}).status_code == 400

    def test_back_soon_while_offline(self, api):
        assert api.post("/api/sessions/w1/back-soon", json={"reason": "meeting"}).status_code == 409

    def test_activity_ping(self, api):
        _check_in(api)
        assert api.post("/api/sessions/w1/activity").get_json() == {"status": "online"}

    def test_captcha_flow(self, api):
        _check_in(api)
        engine = api.registry.get("w1")
        engine.challenges._present_captcha()
        challenge = api.get("/api/sessions/w1").get_json()["challenge"]
        wrong = api.post("/api/sessions/w1/captcha", json={"challenge_id": challenge["id"], "answer": "000000"})
        assert wrong.get_json()["status"] == "retry"
        code = engine.challenges.pending.code
        ok = api.post("/api/sessions/w1/captcha", json={"challenge_id": challenge["id"], "answer": code})
        assert ok.get_json()["status"] == "passed"

    def test_unknown_challenge_conflict(self, api):
        _check_in(api)
        resp = api.post("/api/sessions/w1/captcha", json={"challenge_id": "nope", "answer": "ABCDEF"})
        assert resp.status_code == 409
        assert resp.get_json()["error"] == "ChallengeError"

    def test_face_skip_escalates(self, api):
        _check_in(api)
        engine = api.registry.get("w1")
        engine.challenges._present_face()
        challenge_id = engine.challenges.pending.id
        data = api.post("/api/sessions/w1/face/skip", json={"challenge_id": challenge_id}).get_json()
        assert data["status"] == "escalated"
        assert data["incident_type"] == "face_verification_skipped"
        incidents = api.get("/api/incidents").get_json()
        assert incidents["count"] == 1
        assert incidents["incidents"][0]["session_id"] == engine.session.id

    def test_face_submission_pending(self, api):
        _check_in(api)
        engine = api.registry.get("w1")
        engine.challenges._present_face()
        challenge_id = engine.challenges.pending.id
        resp = api.post("/api/sessions/w1/face", json={"challenge_id": challenge_id, "descriptor": list(DESCRIPTOR)})
        assert resp.status_code == 202
        assert resp.get_json()["status"] == "pending"

    def test_store_outage_is_503(self, api):
        _check_in(api)
        engine = api.registry.get("w1")

        class BrokenStore:
            def load(self, worker_id):
                return None

            def save(self, session):
                raise IOError("disk full")

        engine.ctx.store = BrokenStore()
        assert api.post("/api/sessions/w1/checkout").status_code == 503

    def test_history(self, api):
        _check_in(api)
        api.post("/api/sessions/w1/checkout")
        data = api.get("/api/sessions/w1/history").get_json()
        assert data["count"] == 1

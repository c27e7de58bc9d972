"""
Attendance Dashboard - Flask API
Audit views (activity, incidents, stats) and the worker-facing session
controls: check-in, back-soon, return, checkout, challenge answers.
"""

from datetime import datetime, timezone

from flask import Flask, jsonify, request
from flask_cors import CORS

from src.session.errors import (
    AttendanceError,
    ChallengeError,
    InfrastructureError,
    InvalidTransitionError,
    VerificationRequiredError,
)
from src.session.challenge_scheduler import OutcomeStatus
from src.utils.logger import setup_logger

logger = setup_logger(__name__)

ERROR_STATUS = {
    InvalidTransitionError: 409,
    ChallengeError: 409,
    VerificationRequiredError: 403,
    InfrastructureError: 503,
}


def _status_for(error: AttendanceError) -> int:
    for cls, code in ERROR_STATUS.items():
        if isinstance(error, cls):
            return code
    return 400


def _body() -> dict:
    return request.get_json(silent=True) or {}


def _int_arg(name: str, default=None):
    value = request.args.get(name)
    return int(value) if value is not None else default


def create_app(config: dict, registry, activity_log, incident_report,
               session_store=None, settings_provider=None) -> Flask:
    app = Flask(__name__)
    CORS(app)

    @app.errorhandler(AttendanceError)
    def handle_attendance_error(e):
        code = _status_for(e)
        if code >= 500:
            logger.error(f"Request failed: {e}")
        return jsonify({"error": type(e).__name__, "message": str(e)}), code

    @app.errorhandler(ValueError)
    def handle_value_error(e):
        return jsonify({"error": "ValueError", "message": str(e)}), 400

    # ── Audit ────────────────────────────────────────────────────────────────

    @app.route("/api/health")
    def health():
        return jsonify({
            "status": "running",
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "version": config.get("system", {}).get("version"),
            "active_sessions": len(registry.engines()),
        })

    @app.route("/api/activity")
    def get_activity():
        events = activity_log.get_recent(
            limit=_int_arg("limit", 100),
            worker_id=request.args.get("worker_id"),
            start=_int_arg("start"),
            end=_int_arg("end"),
        )
        return jsonify({"events": events, "count": len(events)})

    @app.route("/api/incidents")
    def get_incidents():
        incidents = incident_report.get_recent(_int_arg("limit", 100), request.args.get("status"))
        return jsonify({"incidents": incidents, "count": len(incidents)})

    @app.route("/api/incidents/<int:incident_id>/resolve", methods=["POST"])
    def resolve_incident(incident_id):
        if not incident_report.resolve(incident_id):
            return jsonify({"error": "NotFound", "message": f"No pending incident {incident_id}"}), 404
        return jsonify({"status": "resolved", "id": incident_id})

    @app.route("/api/stats")
    def get_stats():
        return jsonify({
            "activity": activity_log.get_stats(),
            "incidents": incident_report.get_stats(),
            "active_sessions": len(registry.engines()),
        })

    # ── Settings ─────────────────────────────────────────────────────────────

    @app.route("/api/settings")
    def get_settings():
        if settings_provider is None:
            return jsonify({"error": "NotConfigured", "message": "No settings provider"}), 404
        return jsonify(settings_provider.current().to_dict())

    @app.route("/api/settings", methods=["POST"])
    def update_settings():
        if settings_provider is None or not hasattr(settings_provider, "update"):
            return jsonify({"error": "NotConfigured", "message": "Settings are read-only"}), 404
        updated = settings_provider.update(_body())
        logger.info("Verification settings updated via dashboard")
        return jsonify(updated.to_dict())

    # ── Sessions ─────────────────────────────────────────────────────────────

    @app.route("/api/sessions", methods=["POST"])
    def check_in():
        body = _body()
        worker_id = body.get("worker_id")
        if not worker_id:
            raise ValueError("worker_id is required")
        descriptor = body.get("descriptor")
        # The capture window outlasts a heartbeat; the lease keeps the engine registered
        with registry.lease(worker_id) as engine:
            frames = engine.capture_frames()
            verification = engine.verify_identity(frames, descriptor)
            if not verification.passed:
                return jsonify({
                    "error": "VerificationRequiredError",
                    "message": verification.description,
                    "verification": verification.to_dict(),
                }), 403
            engine.check_in(verification, descriptor, body.get("frame_ref"))
            return jsonify(engine.snapshot()), 201

    @app.route("/api/sessions/<worker_id>")
    def get_session(worker_id):
        return jsonify(registry.engine_for(worker_id).snapshot())

    @app.route("/api/sessions/<worker_id>/history")
    def get_history(worker_id):
        if session_store is None:
            return jsonify({"sessions": [], "count": 0})
        sessions = session_store.get_history(worker_id, _int_arg("limit", 30))
        return jsonify({"sessions": sessions, "count": len(sessions)})

    @app.route("/api/sessions/<worker_id>/back-soon", methods=["POST"])
    def back_soon(worker_id):
        body = _body()
        engine = registry.engine_for(worker_id)
        engine.go_back_soon(body.get("reason", ""), body.get("custom_reason"))
        return jsonify(engine.snapshot())

    @app.route("/api/sessions/<worker_id>/return", methods=["POST"])
    def return_online(worker_id):
        engine = registry.engine_for(worker_id)
        engine.return_online()
        return jsonify(engine.snapshot())

    @app.route("/api/sessions/<worker_id>/checkout", methods=["POST"])
    def check_out(worker_id):
        engine = registry.engine_for(worker_id)
        engine.check_out(_body().get("reason", "User checkout"))
        return jsonify(engine.snapshot())

    @app.route("/api/sessions/<worker_id>/activity", methods=["POST"])
    def activity(worker_id):
        engine = registry.engine_for(worker_id)
        engine.record_activity()
        return jsonify({"status": engine.status.value})

    @app.route("/api/sessions/<worker_id>/captcha", methods=["POST"])
    def captcha(worker_id):
        body = _body()
        outcome = registry.engine_for(worker_id).submit_captcha(body.get("challenge_id", ""), body.get("answer", ""))
        return jsonify(outcome.to_dict())

    @app.route("/api/sessions/<worker_id>/face", methods=["POST"])
    def face(worker_id):
        body = _body()
        outcome = registry.engine_for(worker_id).submit_face(
            body.get("challenge_id", ""), body.get("descriptor"), frame_ref=body.get("frame_ref"),
        )
        code = 202 if outcome.status is OutcomeStatus.PENDING else 200
        return jsonify(outcome.to_dict()), code

    @app.route("/api/sessions/<worker_id>/face/skip", methods=["POST"])
    def skip_face(worker_id):
        outcome = registry.engine_for(worker_id).skip_face(_body().get("challenge_id", ""))
        return jsonify(outcome.to_dict())

    return app

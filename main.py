#!/usr/bin/env python3
"""
Sentinel Attendance - Main Entry Point
Liveness-gated attendance sessions: periodic CAPTCHA and face
re-verification, spoof rejection, and auto-checkout with incident reports.
"""

import argparse
import logging
import signal
import sys
import threading

from src.config.settings import YamlSettingsProvider, load_config
from src.dashboard.app import create_app
from src.security.face_matcher import EuclideanFaceComparator
from src.session.engine import EngineRegistry, Heartbeat
from src.session.ports import SessionContext
from src.storage.sqlite_store import SQLiteActivityLog, SQLiteIncidentReport, SQLiteSessionStore
from src.vision.camera_capture import CameraFrameSource
from src.utils.logger import set_level, setup_logger

logger = setup_logger(__name__)


def parse_args():
    parser = argparse.ArgumentParser(
        description="Sentinel Attendance",
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )
    parser.add_argument("--config", default="config/system_config.yaml",
                        help="Path to system config YAML")
    parser.add_argument("--debug", action="store_true",
                        help="Enable debug logging")
    parser.add_argument("--no-dashboard", action="store_true",
                        help="Run the heartbeat only, without the HTTP API")
    return parser.parse_args()


class AttendanceSystem:
    """
    Wires storage, settings and the camera into an EngineRegistry and keeps
    it ticking.

    Pipeline:
    HTTP request → SessionEngine (lock) → state machine / challenges → SQLite
    Heartbeat    → tick_all → deadlines, captures, watchdogs
    """

    def __init__(self, config: dict, config_path: str):
        self.config = config
        self.running = False
        self._stopped = threading.Event()

        logger.info("=" * 60)
        logger.info("  Sentinel Attendance - Initialising")
        logger.info(f"  Version : {config['system']['version']}")
        logger.info("=" * 60)

        db_path = config["storage"]["db_path"]
        self.settings_provider = YamlSettingsProvider(config_path)
        self.session_store = SQLiteSessionStore(db_path)
        self.activity_log = SQLiteActivityLog(db_path)
        self.incident_report = SQLiteIncidentReport(db_path)
        self.frame_source = CameraFrameSource(config.get("camera", {}))
        self.comparator = EuclideanFaceComparator()

        self.registry = EngineRegistry(self._make_context)
        self.heartbeat = Heartbeat(self.registry, self.settings_provider)

        logger.info("✅ Attendance system initialised successfully.")

    def _make_context(self, worker_id: str) -> SessionContext:
        return SessionContext(
            worker_id=worker_id,
            store=self.session_store,
            activity_log=self.activity_log,
            incident_report=self.incident_report,
            settings_provider=self.settings_provider,
            comparator=self.comparator,
            frame_source=self.frame_source,
        )

    def start(self):
        self.running = True
        self.registry.resume_all(self.session_store.active_worker_ids())
        self.heartbeat.start()
        logger.info("🚀 Heartbeat running.")

    def wait(self):
        try:
            while self.running and not self._stopped.wait(1.0):
                pass
        except KeyboardInterrupt:
            logger.info("👋 Shutdown requested by user.")
        finally:
            self.shutdown()

    def shutdown(self):
        if not self.running:
            return
        logger.info("🔒 Shutting down attendance system...")
        self.running = False
        self._stopped.set()
        self.heartbeat.stop(timeout=5)
        self.frame_source.release()
        logger.info("✅ Shutdown complete.")


def start_dashboard(config: dict, system: AttendanceSystem):
    """Launch Flask API in background thread."""
    app = create_app(
        config,
        system.registry,
        system.activity_log,
        system.incident_report,
        session_store=system.session_store,
        settings_provider=system.settings_provider,
    )
    app.run(
        host=config["dashboard"]["host"],
        port=config["dashboard"]["port"],
        debug=False,
        use_reloader=False,
    )


def main():
    args = parse_args()
    config = load_config(args.config)

    if args.debug:
        config["system"]["debug"] = True
    if config["system"].get("debug"):
        set_level(logging.DEBUG)

    system = AttendanceSystem(config, args.config)
    system.start()

    if config["dashboard"]["enabled"] and not args.no_dashboard:
        dash_thread = threading.Thread(target=start_dashboard, args=(config, system), daemon=True)
        dash_thread.start()
        logger.info(f"📊 Dashboard: http://localhost:{config['dashboard']['port']}")

    # Graceful shutdown on SIGTERM
    def handle_signal(sig, frame):
        system.shutdown()
        sys.exit(0)

    signal.signal(signal.SIGTERM, handle_signal)
    signal.signal(signal.SIGINT, handle_signal)

    system.wait()


if __name__ == "__main__":
    main()

"""
SQLite Store - Storage Module
SQLite-backed session store, activity log and incident report.

The activity and incident sinks never raise from record(); failures come back
as SinkResult so the engine decides what blocks. The session store raises,
and the state machine turns that into InfrastructureError.
"""

import json
import os
import sqlite3
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Tuple

from src.session.models import Session, SessionStatus
from src.session.ports import SinkResult, system_clock
from src.storage.migration import session_from_document
from src.utils.logger import setup_logger

logger = setup_logger(__name__)


def _iso(millis: int) -> str:
    return datetime.fromtimestamp(millis / 1000.0, tz=timezone.utc).isoformat()


class _SQLiteTable:

    def __init__(self, db_path: str, clock: Callable[[], int] = system_clock):
        self.db_path = db_path
        self.clock = clock
        os.makedirs(os.path.dirname(db_path) if os.path.dirname(db_path) else ".", exist_ok=True)
        self._init_db()

    def _connect(self) -> sqlite3.Connection:
        return sqlite3.connect(self.db_path)

    def _init_db(self):
        raise NotImplementedError


class SQLiteSessionStore(_SQLiteTable):
    """Sessions stored as JSON documents, upserted by session id."""

    def _init_db(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    id            TEXT PRIMARY KEY,
                    worker_id     TEXT NOT NULL,
                    status        TEXT NOT NULL,
                    check_in_time INTEGER NOT NULL,
                    updated_at    TEXT NOT NULL,
                    document      TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_worker ON sessions(worker_id, check_in_time)")
            conn.commit()

    def save(self, session: Session):
        with self._connect() as conn:
            conn.execute(
                """
                INSERT INTO sessions (id, worker_id, status, check_in_time, updated_at, document)
                VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(id) DO UPDATE SET
                    status = excluded.status,
                    updated_at = excluded.updated_at,
                    document = excluded.document
                """,
                (session.id, session.worker_id, session.status.value, session.check_in_time,
                 _iso(self.clock()), json.dumps(session.to_dict())),
            )
            conn.commit()

    def load(self, worker_id: str) -> Optional[Session]:
        """Latest active session for the worker, or None."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT document FROM sessions WHERE worker_id = ? AND status != ? "
                "ORDER BY check_in_time DESC LIMIT 1",
                (worker_id, SessionStatus.OFFLINE.value),
            ).fetchone()
        return session_from_document(json.loads(row[0])) if row else None

    def get(self, session_id: str) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute("SELECT document FROM sessions WHERE id = ?", (session_id,)).fetchone()
        return session_from_document(json.loads(row[0])) if row else None

    def import_document(self, document: dict) -> Session:
        """Store a (possibly legacy) session document in canonical form."""
        session = session_from_document(document)
        self.save(session)
        return session

    def active_worker_ids(self) -> List[str]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT DISTINCT worker_id FROM sessions WHERE status != ?",
                (SessionStatus.OFFLINE.value,),
            ).fetchall()
        return [row[0] for row in rows]

    def enrolled_descriptor(self, worker_id: str) -> Optional[Tuple[float, ...]]:
        """Reference face from the worker's most recent session that carries one."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT document FROM sessions WHERE worker_id = ? ORDER BY check_in_time DESC",
                (worker_id,),
            ).fetchall()
        for row in rows:
            session = session_from_document(json.loads(row[0]))
            if session.reference_descriptor is not None:
                return session.reference_descriptor
        return None

    def get_history(self, worker_id: str, limit: int = 30) -> List[Dict]:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT document FROM sessions WHERE worker_id = ? ORDER BY check_in_time DESC LIMIT ?",
                (worker_id, limit),
            ).fetchall()
        return [session_from_document(json.loads(row[0])).to_dict() for row in rows]


class SQLiteActivityLog(_SQLiteTable):

    def _init_db(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS activity_log (
                    id          INTEGER PRIMARY KEY AUTOINCREMENT,
                    worker_id   TEXT NOT NULL,
                    event_type  TEXT NOT NULL,
                    description TEXT,
                    metadata    TEXT,
                    timestamp   INTEGER NOT NULL,
                    created_at  TEXT NOT NULL
                )
            """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_activity_ts ON activity_log(timestamp)")
            conn.commit()

    def record(self, worker_id: str, event_type: str, description: str,
               metadata: Optional[Dict[str, Any]] = None) -> SinkResult:
        now = self.clock()
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO activity_log (worker_id, event_type, description, metadata, timestamp, created_at) "
                    "VALUES (?, ?, ?, ?, ?, ?)",
                    (worker_id, event_type, description, json.dumps(metadata or {}, default=str), now, _iso(now)),
                )
                conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to record activity {event_type} for {worker_id}: {e}")
            return SinkResult.failure(e)
        return SinkResult.success()

    def get_recent(self, limit: int = 100, worker_id: Optional[str] = None,
                   start: Optional[int] = None, end: Optional[int] = None) -> List[Dict]:
        clauses, params = [], []
        if worker_id:
            clauses.append("worker_id = ?")
            params.append(worker_id)
        if start is not None:
            clauses.append("timestamp >= ?")
            params.append(start)
        if end is not None:
            clauses.append("timestamp <= ?")
            params.append(end)
        where = f"WHERE {' AND '.join(clauses)} " if clauses else ""
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            rows = conn.execute(
                f"SELECT * FROM activity_log {where}ORDER BY id DESC LIMIT ?",
                (*params, limit),
            ).fetchall()
        events = []
        for row in rows:
            event = dict(row)
            event["metadata"] = json.loads(event["metadata"]) if event["metadata"] else {}
            events.append(event)
        return events

    def get_stats(self) -> Dict:
        """Aggregate event counts by type."""
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT event_type, COUNT(*) as cnt FROM activity_log GROUP BY event_type"
            ).fetchall()
        stats = {row[0]: row[1] for row in rows}
        stats["total"] = sum(stats.values())
        return stats


class SQLiteIncidentReport(_SQLiteTable):
    """Incidents await admin review: status starts 'pending' until resolved."""

    def _init_db(self):
        with self._connect() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS incidents (
                    id                 INTEGER PRIMARY KEY AUTOINCREMENT,
                    worker_id          TEXT NOT NULL,
                    session_id         TEXT,
                    incident_type      TEXT NOT NULL,
                    attempts           INTEGER NOT NULL DEFAULT 0,
                    captured_frame_ref TEXT,
                    description        TEXT,
                    status             TEXT NOT NULL DEFAULT 'pending',
                    timestamp          INTEGER NOT NULL,
                    created_at         TEXT NOT NULL
                )
            """)
            columns = {row[1] for row in conn.execute("PRAGMA table_info(incidents)")}
            if "session_id" not in columns:
                # databases created before incidents carried their session
                conn.execute("ALTER TABLE incidents ADD COLUMN session_id TEXT")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_incidents_ts ON incidents(timestamp)")
            conn.commit()

    def record(self, worker_id: str, incident_type: str, attempts: int,
               captured_frame_ref: Optional[str], description: str,
               session_id: Optional[str] = None) -> SinkResult:
        now = self.clock()
        try:
            with self._connect() as conn:
                conn.execute(
                    "INSERT INTO incidents (worker_id, session_id, incident_type, attempts, captured_frame_ref, "
                    "description, timestamp, created_at) VALUES (?, ?, ?, ?, ?, ?, ?, ?)",
                    (worker_id, session_id, incident_type, attempts, captured_frame_ref, description, now, _iso(now)),
                )
                conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to record incident {incident_type} for {worker_id}: {e}")
            return SinkResult.failure(e)
        logger.warning(f"🚨 Incident recorded: {incident_type} for {worker_id}")
        return SinkResult.success()

    def get_recent(self, limit: int = 100, status: Optional[str] = None) -> List[Dict]:
        with self._connect() as conn:
            conn.row_factory = sqlite3.Row
            if status:
                rows = conn.execute(
                    "SELECT * FROM incidents WHERE status = ? ORDER BY id DESC LIMIT ?", (status, limit),
                ).fetchall()
            else:
                rows = conn.execute("SELECT * FROM incidents ORDER BY id DESC LIMIT ?", (limit,)).fetchall()
        return [dict(row) for row in rows]

    def resolve(self, incident_id: int) -> bool:
        with self._connect() as conn:
            cur = conn.execute(
                "UPDATE incidents SET status = 'resolved' WHERE id = ? AND status = 'pending'", (incident_id,),
            )
            conn.commit()
        return cur.rowcount > 0

    def get_stats(self) -> Dict:
        with self._connect() as conn:
            rows = conn.execute(
                "SELECT incident_type, COUNT(*) as cnt FROM incidents GROUP BY incident_type"
            ).fetchall()
            pending = conn.execute("SELECT COUNT(*) FROM incidents WHERE status = 'pending'").fetchone()[0]
        stats = {row[0]: row[1] for row in rows}
        stats["total"] = sum(stats.values())
        stats["pending"] = pending
        return stats

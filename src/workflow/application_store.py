"""SQLite persistence layer for award applications.

This module provides a minimal, deterministic persistence API for the
workflow engine. It stores applications and their audit trail using
Python's standard library `sqlite3`.

Design goals:
- Whole-record reads (`get`, `load_all`) for the engine and sweeper.
- `save` only inserts new records; an existing id is an error.
- Workflow fields written with a compare-and-swap on `version`, so a stale
  writer (another process, a lost race) is detected instead of overwriting.
- Audit entries inserted append-only; an entry once written is never updated.
- Fields owned by other collaborators (service hours) written separately and
  never clobbered by the engine's write-back.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, List, Optional, Union

from src.utils.date_utils import coerce_dt, to_iso
from src.workflow.state_machine import Application, ApplicationStatus, AuditEntry

logger = logging.getLogger(__name__)


class ApplicationStoreError(Exception):
    """Raised when persistence operations fail."""


class ConcurrentModificationError(ApplicationStoreError):
    """Raised when a write is based on a stale record version."""


def _to_epoch(dt: Optional[datetime]) -> Optional[int]:
    if dt is None:
        return None
    coerced = coerce_dt(dt)
    return int(coerced.timestamp()) if coerced else None


def _parse_status(value: Optional[str]) -> Optional[ApplicationStatus]:
    if value is None:
        return None
    try:
        return ApplicationStatus(value)
    except ValueError as e:
        raise ApplicationStoreError(f"Unknown application status: {value}") from e


class RecordLocks:
    """One lock per application id.

    Manual transitions and the SLA sweep take the same lock around their
    read-modify-write, so the two never interleave on one record.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[str, threading.Lock] = {}

    def for_id(self, application_id: str) -> threading.Lock:
        with self._guard:
            lock = self._locks.get(application_id)
            if lock is None:
                lock = threading.Lock()
                self._locks[application_id] = lock
            return lock


class ApplicationStore:
    """SQLite-backed store for applications.

    One connection is shared across threads (Flask request threads and the
    sweeper thread); every statement runs under an internal lock.
    """

    def __init__(self, db_path: Union[str, Path] = "applications.db") -> None:
        self.db_path = str(db_path)
        if self.db_path != ":memory:":
            Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self.conn = sqlite3.connect(self.db_path, check_same_thread=False)
        self.conn.row_factory = sqlite3.Row
        self.conn.execute("PRAGMA foreign_keys = ON")
        self._init_schema()

    def close(self) -> None:
        """Close the underlying SQLite connection."""

        try:
            with self._lock:
                self.conn.close()
        except sqlite3.Error as e:
            raise ApplicationStoreError(str(e)) from e

    def __enter__(self) -> "ApplicationStore":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.close()

    # ------------------------------------------------------------------
    # Schema
    # ------------------------------------------------------------------

    def _init_schema(self) -> None:
        """Create tables if they do not exist."""

        try:
            with self._lock:
                self.conn.executescript(
                    """
                    CREATE TABLE IF NOT EXISTS applications (
                        id TEXT PRIMARY KEY,
                        student_id TEXT NOT NULL,
                        semester TEXT NOT NULL,
                        name TEXT NOT NULL,
                        amount REAL NOT NULL DEFAULT 0,
                        config_id TEXT,
                        required_service_hours REAL NOT NULL DEFAULT 0,
                        completed_service_hours REAL NOT NULL DEFAULT 0,
                        status TEXT NOT NULL,
                        status_deadline TEXT,
                        status_deadline_ts INTEGER,
                        status_updated_at TEXT NOT NULL,
                        status_updated_by TEXT,
                        rejection_count INTEGER NOT NULL DEFAULT 0,
                        current_handler TEXT,
                        version INTEGER NOT NULL DEFAULT 0,
                        created_at TEXT NOT NULL
                    );

                    CREATE TABLE IF NOT EXISTS audit_entries (
                        entry_id INTEGER PRIMARY KEY AUTOINCREMENT,
                        application_id TEXT NOT NULL,
                        seq INTEGER NOT NULL,
                        timestamp TEXT NOT NULL,
                        from_status TEXT,
                        to_status TEXT NOT NULL,
                        actor TEXT NOT NULL,
                        comment TEXT,
                        UNIQUE (application_id, seq),
                        FOREIGN KEY (application_id) REFERENCES applications(id) ON DELETE CASCADE
                    );

                    CREATE INDEX IF NOT EXISTS idx_audit_application_id ON audit_entries(application_id);
                    CREATE INDEX IF NOT EXISTS idx_applications_deadline_ts ON applications(status_deadline_ts);
                    """
                )
                self.conn.commit()
        except sqlite3.Error as e:
            raise ApplicationStoreError(f"Failed to initialize schema: {e}") from e

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def save(self, application: Application) -> Application:
        """Insert a new application and its audit entries at version 0.

        Existing records change only through `save_workflow_state` and
        `update_service_hours`.

        Raises:
            ApplicationStoreError: The id already exists or SQLite failed.
        """

        params = self._row_params(application)
        params["version"] = 0

        try:
            with self._lock:
                cur = self.conn.cursor()
                cur.execute(
                    """
                    INSERT INTO applications (
                        id, student_id, semester, name, amount, config_id,
                        required_service_hours, completed_service_hours,
                        status, status_deadline, status_deadline_ts,
                        status_updated_at, status_updated_by, rejection_count,
                        current_handler, version, created_at
                    ) VALUES (
                        :id, :student_id, :semester, :name, :amount, :config_id,
                        :required_service_hours, :completed_service_hours,
                        :status, :status_deadline, :status_deadline_ts,
                        :status_updated_at, :status_updated_by, :rejection_count,
                        :current_handler, :version, :created_at
                    )
                    """,
                    params,
                )
                self._append_audit(cur, application)
                self.conn.commit()
        except sqlite3.IntegrityError as e:
            self.conn.rollback()
            raise ApplicationStoreError(f"Application already exists: {application.id}") from e
        except sqlite3.Error as e:
            self.conn.rollback()
            raise ApplicationStoreError(f"Failed to save application {application.id}: {e}") from e

        application.version = 0
        return application

    def save_workflow_state(self, application: Application, expected_version: int) -> Application:
        """Write the engine-governed fields if the stored version matches.

        Only status, deadline, status_updated_*, rejection_count,
        current_handler and new audit entries are written. Other columns
        are left as they are in the database.

        Raises:
            ConcurrentModificationError: The stored version differs.
            ApplicationStoreError: The application does not exist or SQLite failed.
        """

        params = self._row_params(application)
        params["expected_version"] = int(expected_version)

        try:
            with self._lock:
                cur = self.conn.cursor()
                cur.execute(
                    """
                    UPDATE applications SET
                        status=:status,
                        status_deadline=:status_deadline,
                        status_deadline_ts=:status_deadline_ts,
                        status_updated_at=:status_updated_at,
                        status_updated_by=:status_updated_by,
                        rejection_count=:rejection_count,
                        current_handler=:current_handler,
                        version=version + 1
                    WHERE id=:id AND version=:expected_version
                    """,
                    params,
                )
                if cur.rowcount == 0:
                    self.conn.rollback()
                    row = cur.execute(
                        "SELECT version FROM applications WHERE id=?", (application.id,)
                    ).fetchone()
                    if row is None:
                        raise ApplicationStoreError(f"Application not found: {application.id}")
                    logger.warning(
                        "Version conflict on %s: expected %s, stored %s",
                        application.id,
                        expected_version,
                        row["version"],
                    )
                    raise ConcurrentModificationError(
                        f"Application {application.id} changed concurrently "
                        f"(expected version {expected_version}, found {row['version']})"
                    )
                self._append_audit(cur, application)
                self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise ApplicationStoreError(
                f"Failed to save workflow state for {application.id}: {e}"
            ) from e

        application.version = int(expected_version) + 1
        return application

    def update_service_hours(
        self,
        application_id: str,
        completed: float,
        required: Optional[float] = None,
    ) -> None:
        """Record recomputed service hours without touching workflow fields."""

        try:
            with self._lock:
                cur = self.conn.cursor()
                if required is None:
                    cur.execute(
                        "UPDATE applications SET completed_service_hours=? WHERE id=?",
                        (float(completed), application_id),
                    )
                else:
                    cur.execute(
                        """
                        UPDATE applications
                        SET completed_service_hours=?, required_service_hours=?
                        WHERE id=?
                        """,
                        (float(completed), float(required), application_id),
                    )
                if cur.rowcount == 0:
                    raise ApplicationStoreError(f"Application not found: {application_id}")
                self.conn.commit()
        except sqlite3.Error as e:
            self.conn.rollback()
            raise ApplicationStoreError(
                f"Failed to update service hours for {application_id}: {e}"
            ) from e

    def get(self, application_id: str) -> Optional[Application]:
        """Retrieve one application with its audit trail."""

        with self._lock:
            row = self.conn.execute(
                "SELECT * FROM applications WHERE id=?", (application_id,)
            ).fetchone()
            if row is None:
                return None
            audit_rows = self.conn.execute(
                "SELECT * FROM audit_entries WHERE application_id=? ORDER BY seq ASC",
                (application_id,),
            ).fetchall()

        application = self._from_row(row)
        application.audit_history = [self._audit_from_row(r) for r in audit_rows]
        return application

    def load_all(self) -> List[Application]:
        """Retrieve every application, oldest first, with audit trails."""

        with self._lock:
            rows = self.conn.execute(
                "SELECT * FROM applications ORDER BY created_at ASC, id ASC"
            ).fetchall()
            audit_rows = self.conn.execute(
                "SELECT * FROM audit_entries ORDER BY application_id ASC, seq ASC"
            ).fetchall()

        trails: Dict[str, List[AuditEntry]] = {}
        for r in audit_rows:
            trails.setdefault(str(r["application_id"]), []).append(self._audit_from_row(r))

        applications = []
        for row in rows:
            application = self._from_row(row)
            application.audit_history = trails.get(application.id, [])
            applications.append(application)
        return applications

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _row_params(self, application: Application) -> Dict[str, object]:
        now_iso = datetime.now(timezone.utc).isoformat()
        return {
            "id": application.id,
            "student_id": application.student_id,
            "semester": application.semester,
            "name": application.name,
            "amount": float(application.amount),
            "config_id": application.config_id,
            "required_service_hours": float(application.required_service_hours),
            "completed_service_hours": float(application.completed_service_hours),
            "status": application.status.value,
            "status_deadline": to_iso(application.status_deadline),
            "status_deadline_ts": _to_epoch(application.status_deadline),
            "status_updated_at": to_iso(application.status_updated_at) or now_iso,
            "status_updated_by": application.status_updated_by,
            "rejection_count": int(application.rejection_count),
            "current_handler": application.current_handler,
            "created_at": to_iso(application.created_at) or now_iso,
        }

    def _append_audit(self, cur: sqlite3.Cursor, application: Application) -> None:
        for seq, entry in enumerate(application.audit_history):
            cur.execute(
                """
                INSERT OR IGNORE INTO audit_entries (
                    application_id, seq, timestamp, from_status, to_status, actor, comment
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    application.id,
                    seq,
                    to_iso(entry.timestamp),
                    entry.from_status.value if entry.from_status else None,
                    entry.to_status.value,
                    entry.actor,
                    entry.comment,
                ),
            )

    def _from_row(self, row: sqlite3.Row) -> Application:
        status = _parse_status(row["status"])
        return Application(
            id=str(row["id"]),
            student_id=str(row["student_id"]),
            semester=str(row["semester"] or ""),
            name=str(row["name"] or ""),
            amount=float(row["amount"] or 0),
            config_id=row["config_id"],
            required_service_hours=float(row["required_service_hours"] or 0),
            completed_service_hours=float(row["completed_service_hours"] or 0),
            status=status,
            status_deadline=coerce_dt(row["status_deadline"]),
            status_updated_at=coerce_dt(row["status_updated_at"]) or datetime.now(timezone.utc),
            status_updated_by=row["status_updated_by"],
            rejection_count=int(row["rejection_count"] or 0),
            current_handler=row["current_handler"],
            version=int(row["version"] or 0),
            created_at=coerce_dt(row["created_at"]) or datetime.now(timezone.utc),
        )

    def _audit_from_row(self, row: sqlite3.Row) -> AuditEntry:
        return AuditEntry(
            timestamp=coerce_dt(row["timestamp"]) or datetime.now(timezone.utc),
            from_status=_parse_status(row["from_status"]),
            to_status=_parse_status(row["to_status"]),
            actor=str(row["actor"]),
            comment=row["comment"],
        )

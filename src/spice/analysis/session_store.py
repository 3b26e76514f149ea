import sqlite3
import uuid
from datetime import date, datetime
from typing import List, Optional

from spice.analysis.models import AnalysisOptions, Focus, Report, Session, SessionStatus
from spice.database.connection import DatabaseManager
from spice.repositories.base import NotFoundError


class SessionNotFoundError(NotFoundError):
    """Raised when an analysis session id is unknown."""
    pass


class SQLiteSessionStore:
    """Analysis sessions and their reports, in the main database."""

    def __init__(self, db_manager: DatabaseManager):
        self.db = db_manager

    def create(self, options: AnalysisOptions) -> Session:
        now = datetime.now()
        session = Session(
            id=options.session_id or uuid.uuid4().hex[:12],
            status=SessionStatus.PENDING,
            focus=options.focus,
            start_date=options.start_date,
            end_date=options.end_date,
            created_at=now,
            updated_at=now,
        )

        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO analysis_sessions (
                    id, status, focus, start_date, end_date, attempts,
                    issue_count, error, created_at, updated_at, completed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                self._to_params(session),
            )

        return session

    def get(self, session_id: str) -> Optional[Session]:
        row = self.db.fetch_one("SELECT * FROM analysis_sessions WHERE id = ?", (session_id,))
        if row is None:
            return None
        return self._row_to_session(row)

    def list(self) -> List[Session]:
        rows = self.db.fetch_all("SELECT * FROM analysis_sessions ORDER BY created_at DESC")
        return [self._row_to_session(row) for row in rows]

    def update(self, session: Session) -> Session:
        session.updated_at = datetime.now()
        if session.status.is_terminal and session.completed_at is None:
            session.completed_at = session.updated_at

        with self.db.transaction() as conn:
            cursor = conn.execute(
                """
                UPDATE analysis_sessions
                SET status = ?, focus = ?, start_date = ?, end_date = ?, attempts = ?,
                    issue_count = ?, error = ?, created_at = ?, updated_at = ?,
                    completed_at = ?
                WHERE id = ?
                """,
                self._to_params(session)[1:] + (session.id,),
            )
            if cursor.rowcount == 0:
                raise SessionNotFoundError(f"analysis session '{session.id}' not found")

        return session

    def save_report(self, report: Report) -> None:
        with self.db.transaction() as conn:
            conn.execute(
                """
                INSERT INTO analysis_reports (session_id, report_json, created_at)
                VALUES (?, ?, ?)
                ON CONFLICT(session_id) DO UPDATE SET
                    report_json = excluded.report_json,
                    created_at = excluded.created_at
                """,
                (report.session_id, report.model_dump_json(), datetime.now().isoformat()),
            )

    def get_report(self, session_id: str) -> Optional[Report]:
        row = self.db.fetch_one(
            "SELECT report_json FROM analysis_reports WHERE session_id = ?",
            (session_id,),
        )
        if row is None:
            return None
        return Report.model_validate_json(row["report_json"])

    @staticmethod
    def _to_params(session: Session) -> tuple:
        return (
            session.id,
            session.status.value,
            session.focus.value,
            session.start_date.isoformat() if session.start_date else None,
            session.end_date.isoformat() if session.end_date else None,
            session.attempts,
            session.issue_count,
            session.error,
            session.created_at.isoformat(),
            session.updated_at.isoformat(),
            session.completed_at.isoformat() if session.completed_at else None,
        )

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> Session:
        return Session(
            id=row["id"],
            status=SessionStatus(row["status"]),
            focus=Focus(row["focus"]),
            start_date=date.fromisoformat(row["start_date"]) if row["start_date"] else None,
            end_date=date.fromisoformat(row["end_date"]) if row["end_date"] else None,
            attempts=row["attempts"],
            issue_count=row["issue_count"],
            error=row["error"],
            created_at=datetime.fromisoformat(row["created_at"]),
            updated_at=datetime.fromisoformat(row["updated_at"]),
            completed_at=(
                datetime.fromisoformat(row["completed_at"]) if row["completed_at"] else None
            ),
        )

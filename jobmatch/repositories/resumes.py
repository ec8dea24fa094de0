from __future__ import annotations

from typing import Any

from jobmatch.db.postgres import PostgresTxRunner
from jobmatch.models import ResumeRef
from jobmatch.repositories._sql import validate_identifier


class InMemoryResumesRepository:
    def __init__(self, resumes: list[ResumeRef]) -> None:
        self._resumes = resumes

    def create(self, *, resume: ResumeRef) -> ResumeRef:
        self._resumes.append(resume)
        return resume

    def list_by_session(self, *, session_id: str) -> list[ResumeRef]:
        return [r for r in self._resumes if r.session_id == session_id]


class PostgresResumesRepository:
    """Resume references in upload order; rows are written by the upload API."""

    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "resumes") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def list_by_session(self, *, session_id: str) -> list[ResumeRef]:
        sql = f"""
            SELECT id, session_id, object_key, mime, original_filename
            FROM {self._table_name}
            WHERE session_id = %s
            ORDER BY created_at ASC, id ASC
        """

        def _op(conn: Any) -> list[ResumeRef]:
            with conn.cursor() as cur:
                cur.execute(sql, (session_id,))
                rows = cur.fetchall()
            return [
                ResumeRef(
                    id=str(row[0]),
                    session_id=str(row[1]),
                    object_key=row[2],
                    mime=row[3],
                    original_filename=row[4] or "",
                )
                for row in rows
            ]

        return self._tx_runner.run_in_tx(fn=_op)

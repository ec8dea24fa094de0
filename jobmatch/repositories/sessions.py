from __future__ import annotations

from typing import Any

from jobmatch.db.postgres import PostgresTxRunner
from jobmatch.repositories._sql import validate_identifier


class InMemorySessionsRepository:
    def __init__(self, sessions: dict[str, dict[str, Any]]) -> None:
        self._sessions = sessions

    def create(self, *, session: dict[str, Any]) -> dict[str, Any]:
        self._sessions[str(session["id"])] = dict(session)
        return dict(session)

    def get(self, *, session_id: str) -> dict[str, Any] | None:
        row = self._sessions.get(session_id)
        return dict(row) if row is not None else None

    def update_status(self, *, session_id: str, status: str) -> bool:
        row = self._sessions.get(session_id)
        if row is None:
            return False
        row["status"] = status
        return True


class PostgresSessionsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "sessions") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def update_status(self, *, session_id: str, status: str) -> bool:
        sql = f"UPDATE {self._table_name} SET status = %s WHERE id = %s"

        def _op(conn: Any) -> bool:
            with conn.cursor() as cur:
                cur.execute(sql, (status, session_id))
                return cur.rowcount > 0

        return self._tx_runner.run_in_tx(fn=_op)

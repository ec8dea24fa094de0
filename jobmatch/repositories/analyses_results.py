from __future__ import annotations

import json
from typing import Any

from jobmatch.db.postgres import PostgresTxRunner
from jobmatch.repositories._sql import validate_identifier


class InMemoryAnalysesResultsRepository:
    def __init__(self, results: dict[str, str]) -> None:
        self._results = results

    def upsert(self, *, session_id: str, results_json: str) -> None:
        self._results[session_id] = results_json

    def get(self, *, session_id: str) -> list[dict[str, Any]] | None:
        raw = self._results.get(session_id)
        return json.loads(raw) if raw is not None else None


class PostgresAnalysesResultsRepository:
    def __init__(self, *, tx_runner: PostgresTxRunner, table_name: str = "analyses_results") -> None:
        self._tx_runner = tx_runner
        self._table_name = validate_identifier(table_name)

    def upsert(self, *, session_id: str, results_json: str) -> None:
        sql = f"""
            INSERT INTO {self._table_name} (results, session_id)
            VALUES (%s::jsonb, %s)
            ON CONFLICT (session_id)
            DO UPDATE SET
                results = EXCLUDED.results,
                updated_at = CURRENT_TIMESTAMP
        """

        def _op(conn: Any) -> None:
            with conn.cursor() as cur:
                cur.execute(sql, (results_json, session_id))

        self._tx_runner.run_in_tx(fn=_op)

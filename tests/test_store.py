from __future__ import annotations

import json
from unittest.mock import MagicMock

import pytest

from jobmatch.models import ResumeRef
from jobmatch.repositories import (
    PostgresAnalysesResultsRepository,
    PostgresResumesRepository,
    PostgresSessionsRepository,
)
from jobmatch.store import InMemorySessionStore, PostgresSessionStore, create_store_from_env


class _FakeTxRunner:
    """Hands a mocked connection to run_in_tx callbacks and records SQL."""

    def __init__(self, *, rows=None, rowcount: int = 1) -> None:
        self.cursor = MagicMock()
        self.cursor.fetchall.return_value = rows or []
        self.cursor.rowcount = rowcount
        self.conn = MagicMock()
        self.conn.cursor.return_value.__enter__.return_value = self.cursor

    def run_in_tx(self, *, fn):
        return fn(self.conn)

    @property
    def executed(self):
        return [(" ".join(c.args[0].split()), c.args[1]) for c in self.cursor.execute.call_args_list]


def test_inmemory_store_lists_resumes_in_upload_order():
    store = InMemorySessionStore()
    for idx in range(3):
        store.add_resume(ResumeRef(id=f"r{idx}", session_id="s1", object_key=f"k{idx}", mime="text/plain"))
    store.add_resume(ResumeRef(id="other", session_id="s2", object_key="x", mime="text/plain"))
    assert [r.id for r in store.list_resumes(session_id="s1")] == ["r0", "r1", "r2"]


def test_inmemory_store_upsert_replaces():
    store = InMemorySessionStore()
    store.save_results(session_id="s1", results_json="[]")
    store.save_results(session_id="s1", results_json=json.dumps([{"match_score": 5}]))
    assert store.get_results("s1") == [{"match_score": 5}]


def test_inmemory_store_status_update_of_unknown_session():
    store = InMemorySessionStore()
    assert store.update_session_status(session_id="missing", status="failed") is False
    store.add_session({"id": "s1", "status": "pending"})
    assert store.update_session_status(session_id="s1", status="processing") is True
    assert store.get_session("s1")["status"] == "processing"


def test_postgres_results_upsert_on_session_conflict():
    runner = _FakeTxRunner()
    PostgresAnalysesResultsRepository(tx_runner=runner).upsert(session_id="s1", results_json="[]")
    sql, params = runner.executed[0]
    assert "INSERT INTO analyses_results (results, session_id)" in sql
    assert "ON CONFLICT (session_id) DO UPDATE SET results = EXCLUDED.results" in sql
    assert params == ("[]", "s1")


def test_postgres_resumes_map_rows():
    runner = _FakeTxRunner(rows=[("r1", "s1", "uploads/a.pdf", "application/pdf", None)])
    resumes = PostgresResumesRepository(tx_runner=runner).list_by_session(session_id="s1")
    assert resumes == [
        ResumeRef(id="r1", session_id="s1", object_key="uploads/a.pdf", mime="application/pdf", original_filename="")
    ]
    sql, params = runner.executed[0]
    assert "ORDER BY created_at ASC, id ASC" in sql
    assert params == ("s1",)


def test_postgres_session_status_update():
    runner = _FakeTxRunner(rowcount=0)
    assert PostgresSessionsRepository(tx_runner=runner).update_status(session_id="s1", status="failed") is False
    assert runner.executed == [("UPDATE sessions SET status = %s WHERE id = %s", ("failed", "s1"))]


def test_repositories_reject_unsafe_table_names():
    with pytest.raises(ValueError, match="invalid SQL identifier"):
        PostgresSessionsRepository(tx_runner=_FakeTxRunner(), table_name="sessions; DROP TABLE x")


def test_create_store_from_env():
    assert isinstance(create_store_from_env({}), InMemorySessionStore)
    assert isinstance(create_store_from_env({"JOBMATCH_STORE_BACKEND": "postgres", "DB_URL": "postgresql://x"}), PostgresSessionStore)
    with pytest.raises(ValueError, match="DB_URL"):
        create_store_from_env({"JOBMATCH_STORE_BACKEND": "postgres"})
    with pytest.raises(RuntimeError, match="unsupported store backend"):
        create_store_from_env({"JOBMATCH_STORE_BACKEND": "mongo"})

from __future__ import annotations

import os
import threading
from collections.abc import Mapping
from typing import Any

from jobmatch.db.postgres import PostgresTxRunner
from jobmatch.models import ResumeRef
from jobmatch.repositories import (
    InMemoryAnalysesResultsRepository,
    InMemoryResumesRepository,
    InMemorySessionsRepository,
    PostgresAnalysesResultsRepository,
    PostgresResumesRepository,
    PostgresSessionsRepository,
)


class SessionStore:
    """Persistence operations the session pipeline depends on."""

    backend_name = "base"

    def __init__(self, *, sessions_repo: Any, resumes_repo: Any, results_repo: Any) -> None:
        self._sessions_repo = sessions_repo
        self._resumes_repo = resumes_repo
        self._results_repo = results_repo

    def list_resumes(self, *, session_id: str) -> list[ResumeRef]:
        return self._resumes_repo.list_by_session(session_id=session_id)

    def update_session_status(self, *, session_id: str, status: str) -> bool:
        return self._sessions_repo.update_status(session_id=session_id, status=status)

    def save_results(self, *, session_id: str, results_json: str) -> None:
        self._results_repo.upsert(session_id=session_id, results_json=results_json)


class InMemorySessionStore(SessionStore):
    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._sessions: dict[str, dict[str, Any]] = {}
        self._resumes: list[ResumeRef] = []
        self._results: dict[str, str] = {}
        super().__init__(
            sessions_repo=InMemorySessionsRepository(self._sessions),
            resumes_repo=InMemoryResumesRepository(self._resumes),
            results_repo=InMemoryAnalysesResultsRepository(self._results),
        )

    def add_session(self, session: dict[str, Any]) -> dict[str, Any]:
        with self._lock:
            return self._sessions_repo.create(session=session)

    def add_resume(self, resume: ResumeRef) -> ResumeRef:
        with self._lock:
            return self._resumes_repo.create(resume=resume)

    def get_session(self, session_id: str) -> dict[str, Any] | None:
        with self._lock:
            return self._sessions_repo.get(session_id=session_id)

    def get_results(self, session_id: str) -> list[dict[str, Any]] | None:
        with self._lock:
            return self._results_repo.get(session_id=session_id)

    def list_resumes(self, *, session_id: str) -> list[ResumeRef]:
        with self._lock:
            return super().list_resumes(session_id=session_id)

    def update_session_status(self, *, session_id: str, status: str) -> bool:
        with self._lock:
            return super().update_session_status(session_id=session_id, status=status)

    def save_results(self, *, session_id: str, results_json: str) -> None:
        with self._lock:
            super().save_results(session_id=session_id, results_json=results_json)

    def reset(self) -> None:
        with self._lock:
            self._sessions.clear()
            self._resumes.clear()
            self._results.clear()


class PostgresSessionStore(SessionStore):
    backend_name = "postgres"

    def __init__(self, *, dsn: str) -> None:
        tx_runner = PostgresTxRunner(dsn)
        super().__init__(
            sessions_repo=PostgresSessionsRepository(tx_runner=tx_runner),
            resumes_repo=PostgresResumesRepository(tx_runner=tx_runner),
            results_repo=PostgresAnalysesResultsRepository(tx_runner=tx_runner),
        )


def create_store_from_env(environ: Mapping[str, str] | None = None) -> SessionStore:
    env = os.environ if environ is None else environ
    backend = env.get("JOBMATCH_STORE_BACKEND", "memory").strip().lower() or "memory"
    if backend == "memory":
        return InMemorySessionStore()
    if backend == "postgres":
        dsn = env.get("DB_URL", "").strip()
        if not dsn:
            raise ValueError("DB_URL must be set when JOBMATCH_STORE_BACKEND=postgres")
        return PostgresSessionStore(dsn=dsn)
    raise RuntimeError(f"unsupported store backend: {backend}")

"""
Session pipeline: score every resume of one session against its job.

    processing -> (per resume: fetch -> decode -> oracle -> record) -> upsert

Resumes are handled one at a time in input order. A failure at any stage
of one resume becomes an error verdict for that resume and the loop moves
on, so the result set always holds one entry per resume. Only two failures
abort the run: the resume list cannot be loaded, or the final upsert
exhausts its retries. Both raise PipelineError to the caller, which owns
the terminal status.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from typing import Any

from jobmatch.aggregator import record_result
from jobmatch.config import WorkerSettings
from jobmatch.document_decoder import decode_document
from jobmatch.errors import PipelineError
from jobmatch.models import SESSION_PROCESSING, ResumeRef, Session, SessionResultSet
from jobmatch.object_storage import ObjectStorageBackend
from jobmatch.oracle import OracleConversation, ScoringOracle, final_text
from jobmatch.prompts import build_scoring_request
from jobmatch.retry import RetryPolicy, run_with_retry
from jobmatch.status_publisher import StatusReporter

logger = logging.getLogger(__name__)


class SessionPipeline:
    def __init__(
        self,
        *,
        store: Any,
        storage: ObjectStorageBackend,
        oracle: ScoringOracle,
        reporter: StatusReporter,
        fetch_policy: RetryPolicy | None = None,
        oracle_policy: RetryPolicy | None = None,
        persist_policy: RetryPolicy | None = None,
        decoder: Callable[[str, bytes], str] = decode_document,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        self.store = store
        self.storage = storage
        self.oracle = oracle
        self.reporter = reporter
        self.fetch_policy = fetch_policy or RetryPolicy(max_attempts=3)
        self.oracle_policy = oracle_policy or RetryPolicy(max_attempts=2)
        self.persist_policy = persist_policy or RetryPolicy(max_attempts=3)
        self._decoder = decoder
        self._sleep = sleep

    @classmethod
    def from_settings(
        cls,
        settings: WorkerSettings,
        *,
        store: Any,
        storage: ObjectStorageBackend,
        oracle: ScoringOracle,
        reporter: StatusReporter,
    ) -> SessionPipeline:
        return cls(
            store=store,
            storage=storage,
            oracle=oracle,
            reporter=reporter,
            fetch_policy=settings.fetch_policy,
            oracle_policy=settings.oracle_policy,
            persist_policy=settings.persist_policy,
        )

    def run(self, session: Session) -> SessionResultSet:
        session_id = str(session.id)
        self.reporter.report(session_id=session_id, status=SESSION_PROCESSING, message="analysis started")

        try:
            resumes = self.store.list_resumes(session_id=session_id)
        except Exception as exc:
            raise PipelineError(
                code="SESSION_DOCUMENTS_UNAVAILABLE",
                message=f"error getting resumes for session {session_id}: {exc}",
                error_class="permanent",
                retryable=False,
            ) from exc

        results = SessionResultSet(session_id=session_id)
        user_id = str(session.user_id) if session.user_id is not None else ""
        with self.oracle.conversation(user_id=user_id, session_id=session_id) as conversation:
            for resume in resumes:
                self._process_resume(session, resume, conversation, results)
        logger.info("session %s analyzed: %d resumes", session_id, len(results))

        self._persist(results)
        return results

    def _process_resume(
        self,
        session: Session,
        resume: ResumeRef,
        conversation: OracleConversation,
        results: SessionResultSet,
    ) -> None:
        try:
            data = run_with_retry(
                lambda: self.storage.get_object(object_key=resume.object_key),
                policy=self.fetch_policy,
                label=f"download {resume.object_key}",
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.warning("failed to download %s after retries: %s", resume.object_key, exc)
            record_result(results, "", is_error=True, error_message=f"file download error: {exc}")
            return

        try:
            resume_text = self._decoder(resume.mime, data)
        except Exception as exc:
            logger.warning("text extraction failed for %s: %s", resume.object_key, exc)
            record_result(results, "", is_error=True, error_message=f"text extraction error: {exc}")
            return

        prompt = build_scoring_request(
            job_title=session.job_title,
            job_description=session.job_description,
            resume_text=resume_text,
        )
        try:
            output = run_with_retry(
                lambda: final_text(conversation.stream(prompt)),
                policy=self.oracle_policy,
                label=f"oracle {resume.object_key}",
                sleep=self._sleep,
            )
        except Exception as exc:
            logger.warning("oracle failed for %s after retries: %s", resume.object_key, exc)
            record_result(results, "", is_error=True, error_message=f"oracle stream error: {exc}")
            return

        verdict = record_result(results, output)
        if verdict.is_error:
            logger.warning("unusable oracle output for %s: %s", resume.object_key, verdict.error_message)

    def _persist(self, results: SessionResultSet) -> None:
        try:
            payload = results.to_json()
        except (TypeError, ValueError) as exc:
            raise PipelineError(
                code="RESULTS_SERIALIZE_FAILED",
                message=f"failed to serialize analyses results: {exc}",
                error_class="permanent",
                retryable=False,
            ) from exc
        try:
            run_with_retry(
                lambda: self.store.save_results(session_id=results.session_id, results_json=payload),
                policy=self.persist_policy,
                label=f"save results {results.session_id}",
                sleep=self._sleep,
            )
        except PipelineError as exc:
            raise PipelineError(
                code="RESULTS_PERSIST_FAILED",
                message=f"failed to save analyses results: {exc}",
                error_class="transient",
                retryable=False,
            ) from exc

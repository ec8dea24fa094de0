from __future__ import annotations

import json
import logging
import os
import threading
import time
import uuid
from collections.abc import Callable, Mapping
from dataclasses import dataclass, fields
from typing import Any

from pydantic import ValidationError

from jobmatch.broadcast import SessionBroadcaster
from jobmatch.config import ACK_EARLY, ACK_LATE, WorkerSettings, create_worker_settings_from_env
from jobmatch.errors import PipelineError
from jobmatch.models import NIL_SESSION_ID, SESSION_COMPLETED, SESSION_FAILED, Session
from jobmatch.object_storage import ObjectStorageBackend
from jobmatch.oracle import ScoringOracle
from jobmatch.pipeline import SessionPipeline
from jobmatch.queue_backend import QueueMessage, create_queue_from_env
from jobmatch.status_publisher import StatusReporter, create_status_publisher_from_env

logger = logging.getLogger(__name__)


@dataclass
class WorkerRunStats:
    processed: int = 0
    completed: int = 0
    failed: int = 0
    invalid: int = 0
    acked: int = 0
    requeued: int = 0

    def merge(self, other: WorkerRunStats) -> None:
        for f in fields(self):
            setattr(self, f.name, getattr(self, f.name) + getattr(other, f.name))

    def as_dict(self) -> dict[str, int]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


def decode_session_message(body: bytes) -> Session:
    try:
        return Session.model_validate_json(body)
    except ValidationError as exc:
        raise PipelineError(
            code="SESSION_MESSAGE_INVALID",
            message=f"error unmarshalling session: {exc.error_count()} validation errors",
            error_class="permanent",
            retryable=False,
        ) from exc


def salvage_session_id(body: bytes) -> str:
    """Best-effort id from a message that failed validation."""
    try:
        data = json.loads(body)
    except (ValueError, UnicodeDecodeError):
        return str(NIL_SESSION_ID)
    if isinstance(data, dict):
        try:
            return str(uuid.UUID(str(data.get("id"))))
        except ValueError:
            pass
    return str(NIL_SESSION_ID)


class SessionWorker:
    """One receive -> process loop; owns its queue and publisher handles."""

    def __init__(
        self,
        *,
        worker_id: int,
        queue_backend: Any,
        pipeline: SessionPipeline,
        reporter: StatusReporter,
        queue_name: str = "sessions",
        ack_mode: str = ACK_LATE,
        poll_interval_ms: int = 200,
        sleep: Callable[[float], None] = time.sleep,
    ) -> None:
        if ack_mode not in {ACK_EARLY, ACK_LATE}:
            raise ValueError(f"unsupported ack mode: {ack_mode}")
        self.worker_id = worker_id
        self.queue_backend = queue_backend
        self.pipeline = pipeline
        self.reporter = reporter
        self.queue_name = queue_name
        self.ack_mode = ack_mode
        self.poll_interval_ms = max(1, int(poll_interval_ms))
        self._sleep = sleep

    def _ack(self, msg: QueueMessage, stats: WorkerRunStats) -> None:
        try:
            self.queue_backend.ack(message_id=msg.message_id)
            stats.acked += 1
        except Exception:
            logger.exception("worker %d failed to ack %s", self.worker_id, msg.message_id)

    def handle_message(self, msg: QueueMessage, stats: WorkerRunStats) -> str:
        """Process one delivery end to end and return the terminal status."""
        stats.processed += 1
        if self.ack_mode == ACK_EARLY:
            self._ack(msg, stats)
            return self._process_body(msg.body, stats)
        try:
            status = self._process_body(msg.body, stats)
        except Exception:
            # First delivery goes back to the queue once; a redelivery is dropped.
            if msg.attempt == 0:
                logger.exception("worker %d requeueing %s", self.worker_id, msg.message_id)
                self.queue_backend.nack(message_id=msg.message_id, requeue=True)
                stats.requeued += 1
            else:
                logger.exception("worker %d dropping redelivered %s", self.worker_id, msg.message_id)
                self._ack(msg, stats)
            stats.failed += 1
            return SESSION_FAILED
        self._ack(msg, stats)
        return status

    def _process_body(self, body: bytes, stats: WorkerRunStats) -> str:
        try:
            session = decode_session_message(body)
        except PipelineError as exc:
            session_id = salvage_session_id(body)
            logger.error("worker %d cannot decode session message (id %s): %s", self.worker_id, session_id, exc.__cause__)
            self.reporter.report(session_id=session_id, status=SESSION_FAILED, message="analysis failed")
            stats.invalid += 1
            stats.failed += 1
            return SESSION_FAILED

        session_id = str(session.id)
        logger.info("worker %d processing session %s", self.worker_id, session_id)
        try:
            self.pipeline.run(session)
        except PipelineError as exc:
            logger.error("analysis failed for session %s [%s]: %s", session_id, exc.code, exc.message)
            return self._finish(session_id, SESSION_FAILED, stats)
        except Exception:
            logger.exception("unexpected error analyzing session %s", session_id)
            return self._finish(session_id, SESSION_FAILED, stats)
        return self._finish(session_id, SESSION_COMPLETED, stats)

    def _finish(self, session_id: str, status: str, stats: WorkerRunStats) -> str:
        message = "analysis completed" if status == SESSION_COMPLETED else "analysis failed"
        self.reporter.report(session_id=session_id, status=status, message=message)
        if status == SESSION_COMPLETED:
            stats.completed += 1
        else:
            stats.failed += 1
        return status

    def run_once(self, stats: WorkerRunStats | None = None) -> bool:
        stats = stats if stats is not None else WorkerRunStats()
        msg = self.queue_backend.dequeue(queue_name=self.queue_name, timeout_ms=self.poll_interval_ms)
        if msg is None:
            if not getattr(self.queue_backend, "blocks_on_dequeue", False):
                self._sleep(self.poll_interval_ms / 1000.0)
            return False
        self.handle_message(msg, stats)
        return True

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        stats = WorkerRunStats()
        iterations = 0
        while True:
            try:
                self.run_once(stats)
            except Exception:
                # Transport hiccups must not kill the worker thread.
                logger.exception("worker %d receive loop error", self.worker_id)
                self._sleep(self.poll_interval_ms / 1000.0)
            iterations += 1
            if stop_after_iterations is not None and iterations >= max(1, stop_after_iterations):
                break
        return stats.as_dict()


class WorkerPool:
    """N long-lived workers, one thread each, for the life of the process."""

    def __init__(self, *, size: int, worker_factory: Callable[[int], SessionWorker]) -> None:
        self.size = max(1, int(size))
        self._worker_factory = worker_factory
        self.workers: list[SessionWorker] = []
        self._threads: list[threading.Thread] = []
        self._stats_lock = threading.Lock()
        self._stats = WorkerRunStats()

    def _run_worker(self, worker: SessionWorker, stop_after_iterations: int | None) -> None:
        result = worker.run_forever(stop_after_iterations=stop_after_iterations)
        with self._stats_lock:
            self._stats.merge(WorkerRunStats(**result))

    def start(self, *, stop_after_iterations: int | None = None) -> None:
        # Build every worker first so connection errors surface on the caller's thread.
        self.workers = [self._worker_factory(i + 1) for i in range(self.size)]
        for worker in self.workers:
            thread = threading.Thread(
                target=self._run_worker,
                args=(worker, stop_after_iterations),
                name=f"session-worker-{worker.worker_id}",
                daemon=True,
            )
            self._threads.append(thread)
            logger.info("worker %d started", worker.worker_id)
            thread.start()

    def join(self, timeout: float | None = None) -> None:
        for thread in self._threads:
            thread.join(timeout)

    def stats(self) -> dict[str, int]:
        """Totals of the workers that have returned so far."""
        with self._stats_lock:
            return self._stats.as_dict()

    def run_forever(self, *, stop_after_iterations: int | None = None) -> dict[str, int]:
        self.start(stop_after_iterations=stop_after_iterations)
        self.join()
        return self.stats()


def create_worker_pool_from_env(
    *,
    store: Any,
    storage: ObjectStorageBackend,
    oracle: ScoringOracle,
    settings: WorkerSettings | None = None,
    broadcaster: SessionBroadcaster | None = None,
    environ: Mapping[str, str] | None = None,
) -> WorkerPool:
    env = os.environ if environ is None else environ
    settings = settings or create_worker_settings_from_env(env)
    shared_queue = None
    if env.get("JOBMATCH_QUEUE_BACKEND", "memory").strip().lower() != "amqp":
        shared_queue = create_queue_from_env(env)

    def _factory(worker_id: int) -> SessionWorker:
        # Broker-backed workers each hold their own connection and channel.
        queue_backend = shared_queue if shared_queue is not None else create_queue_from_env(env)
        publisher = create_status_publisher_from_env(env, broadcaster=broadcaster)
        reporter = StatusReporter(publisher=publisher, store=store)
        pipeline = SessionPipeline.from_settings(
            settings,
            store=store,
            storage=storage,
            oracle=oracle,
            reporter=reporter,
        )
        return SessionWorker(
            worker_id=worker_id,
            queue_backend=queue_backend,
            pipeline=pipeline,
            reporter=reporter,
            queue_name=settings.queue_name,
            ack_mode=settings.ack_mode,
            poll_interval_ms=settings.poll_interval_ms,
        )

    return WorkerPool(size=settings.concurrency, worker_factory=_factory)

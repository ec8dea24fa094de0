from __future__ import annotations

import json
import os
import sqlite3
import threading
import time
import uuid
from collections import deque
from collections.abc import Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import Any


@dataclass
class QueueMessage:
    message_id: str
    queue_name: str
    body: bytes
    attempt: int = 0
    available_at: str | None = None


def _encode_body(body: bytes | str | Mapping[str, Any]) -> bytes:
    if isinstance(body, bytes):
        return body
    if isinstance(body, str):
        return body.encode("utf-8")
    return json.dumps(dict(body), ensure_ascii=True, default=str).encode("utf-8")


def _new_message_id() -> str:
    return f"msg_{uuid.uuid4().hex[:12]}"


class InMemoryQueueBackend:
    """Process-local queue shared by all workers of one pool."""

    blocks_on_dequeue = False

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._queues: dict[str, deque[QueueMessage]] = {}
        self._inflight: dict[str, QueueMessage] = {}

    @staticmethod
    def _is_available(msg: QueueMessage) -> bool:
        available_at = msg.available_at
        if not available_at:
            return True
        try:
            dt = datetime.fromisoformat(available_at)
        except ValueError:
            return True
        if dt.tzinfo is None:
            dt = dt.replace(tzinfo=UTC)
        return dt <= datetime.now(UTC)

    def enqueue(
        self,
        *,
        queue_name: str,
        body: bytes | str | Mapping[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        with self._lock:
            msg = QueueMessage(
                message_id=_new_message_id(),
                queue_name=queue_name,
                body=_encode_body(body),
                available_at=(
                    available_at.astimezone(UTC).isoformat()
                    if isinstance(available_at, datetime)
                    else datetime.now(UTC).isoformat()
                ),
            )
            self._queues.setdefault(queue_name, deque()).append(msg)
            return msg

    def dequeue(self, *, queue_name: str, timeout_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            queue = self._queues.setdefault(queue_name, deque())
            for _ in range(len(queue)):
                msg = queue.popleft()
                if self._is_available(msg):
                    self._inflight[msg.message_id] = msg
                    return msg
                queue.append(msg)
            return None

    def ack(self, *, message_id: str) -> None:
        with self._lock:
            self._inflight.pop(message_id, None)

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        with self._lock:
            msg = self._inflight.pop(message_id, None)
            if msg is None:
                return None
            msg.attempt += 1
            if requeue:
                due_at = datetime.now(UTC) + timedelta(milliseconds=max(0, int(delay_ms)))
                msg.available_at = due_at.isoformat()
                self._queues.setdefault(msg.queue_name, deque()).appendleft(msg)
            return msg

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            return len(self._queues.get(queue_name, deque()))

    def inflight_count(self) -> int:
        with self._lock:
            return len(self._inflight)

    def reset(self) -> None:
        with self._lock:
            self._queues.clear()
            self._inflight.clear()

    def close(self) -> None:
        return None


class SqliteQueueBackend:
    """Single-file queue for local runs; pending messages survive restarts."""

    blocks_on_dequeue = False

    _SCHEMA = """
        CREATE TABLE IF NOT EXISTS session_queue (
            seq INTEGER PRIMARY KEY AUTOINCREMENT,
            message_id TEXT NOT NULL UNIQUE,
            queue_name TEXT NOT NULL,
            body BLOB NOT NULL,
            attempt INTEGER NOT NULL DEFAULT 0,
            inflight INTEGER NOT NULL DEFAULT 0,
            due_ts REAL NOT NULL
        );
        CREATE INDEX IF NOT EXISTS idx_session_queue_ready
            ON session_queue(queue_name, inflight, due_ts, seq);
    """

    def __init__(self, db_path: str | Path) -> None:
        path = Path(db_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        self._lock = threading.RLock()
        self._conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
        self._conn.row_factory = sqlite3.Row
        self._conn.executescript(self._SCHEMA)
        # A crash leaves claimed rows behind; hand them out again.
        self._conn.execute("UPDATE session_queue SET inflight = 0 WHERE inflight = 1")

    @contextmanager
    def _tx(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            self._conn.execute("BEGIN IMMEDIATE")
            try:
                yield self._conn
            except BaseException:
                self._conn.execute("ROLLBACK")
                raise
            self._conn.execute("COMMIT")

    @staticmethod
    def _message(row: sqlite3.Row) -> QueueMessage:
        due = datetime.fromtimestamp(row["due_ts"], UTC)
        return QueueMessage(
            message_id=row["message_id"],
            queue_name=row["queue_name"],
            body=bytes(row["body"]),
            attempt=int(row["attempt"]),
            available_at=due.isoformat(),
        )

    def enqueue(
        self,
        *,
        queue_name: str,
        body: bytes | str | Mapping[str, Any],
        available_at: datetime | None = None,
    ) -> QueueMessage:
        due = available_at if isinstance(available_at, datetime) else datetime.now(UTC)
        msg = QueueMessage(
            message_id=_new_message_id(),
            queue_name=queue_name,
            body=_encode_body(body),
            available_at=due.astimezone(UTC).isoformat(),
        )
        with self._tx() as conn:
            conn.execute(
                "INSERT INTO session_queue (message_id, queue_name, body, due_ts) VALUES (?, ?, ?, ?)",
                (msg.message_id, queue_name, msg.body, due.timestamp()),
            )
        return msg

    def dequeue(self, *, queue_name: str, timeout_ms: int = 0) -> QueueMessage | None:
        with self._tx() as conn:
            row = conn.execute(
                """
                SELECT * FROM session_queue
                WHERE queue_name = ? AND inflight = 0 AND due_ts <= ?
                ORDER BY seq
                LIMIT 1
                """,
                (queue_name, time.time()),
            ).fetchone()
            if row is None:
                return None
            conn.execute("UPDATE session_queue SET inflight = 1 WHERE seq = ?", (row["seq"],))
        return self._message(row)

    def ack(self, *, message_id: str) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM session_queue WHERE message_id = ? AND inflight = 1", (message_id,))

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        with self._tx() as conn:
            row = conn.execute(
                "SELECT * FROM session_queue WHERE message_id = ? AND inflight = 1",
                (message_id,),
            ).fetchone()
            if row is None:
                return None
            if not requeue:
                conn.execute("DELETE FROM session_queue WHERE seq = ?", (row["seq"],))
                return None
            due_ts = time.time() + max(0, int(delay_ms)) / 1000.0
            conn.execute(
                "UPDATE session_queue SET inflight = 0, attempt = attempt + 1, due_ts = ? WHERE seq = ?",
                (due_ts, row["seq"]),
            )
        msg = self._message(row)
        msg.attempt += 1
        msg.available_at = datetime.fromtimestamp(due_ts, UTC).isoformat()
        return msg

    def pending_count(self, *, queue_name: str) -> int:
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM session_queue WHERE queue_name = ? AND inflight = 0",
                (queue_name,),
            ).fetchone()
        return int(row[0])

    def reset(self) -> None:
        with self._tx() as conn:
            conn.execute("DELETE FROM session_queue")

    def close(self) -> None:
        with self._lock:
            self._conn.close()


def _import_kombu() -> Any:
    try:
        import kombu  # type: ignore
    except ImportError as exc:
        raise RuntimeError("kombu is required for JOBMATCH_QUEUE_BACKEND=amqp; install kombu>=5") from exc
    return kombu


class AmqpQueueBackend:
    """RabbitMQ queue consumed with manual acknowledgment, one connection per worker."""

    blocks_on_dequeue = True

    def __init__(self, *, url: str, prefetch_count: int = 1) -> None:
        if not url.strip():
            raise ValueError("RABBITMQ_URL must be provided for amqp queue backend")
        kombu = _import_kombu()
        self._connection = kombu.Connection(url.strip())
        # Unreachable broker at startup is fatal; let it raise.
        self._connection.ensure_connection(max_retries=1)
        self._prefetch_count = max(1, int(prefetch_count))
        self._queues: dict[str, Any] = {}
        self._inflight: dict[str, Any] = {}

    def _queue(self, queue_name: str) -> Any:
        queue = self._queues.get(queue_name)
        if queue is None:
            queue = self._connection.SimpleQueue(queue_name)
            queue.consumer.qos(prefetch_count=self._prefetch_count)
            self._queues[queue_name] = queue
        return queue

    def enqueue(self, *, queue_name: str, body: bytes | str | Mapping[str, Any]) -> QueueMessage:
        payload = _encode_body(body)
        self._queue(queue_name).put(payload, content_type="application/json", content_encoding="utf-8")
        return QueueMessage(message_id=_new_message_id(), queue_name=queue_name, body=payload)

    def dequeue(self, *, queue_name: str, timeout_ms: int = 0) -> QueueMessage | None:
        queue = self._queue(queue_name)
        try:
            raw = queue.get(block=True, timeout=max(0, timeout_ms) / 1000.0)
        except queue.Empty:
            return None
        message_id = f"amqp_{raw.delivery_tag}"
        self._inflight[message_id] = raw
        body = raw.body if isinstance(raw.body, bytes) else str(raw.body).encode("utf-8")
        redelivered = bool((raw.delivery_info or {}).get("redelivered"))
        return QueueMessage(
            message_id=message_id,
            queue_name=queue_name,
            body=body,
            attempt=1 if redelivered else 0,
        )

    def ack(self, *, message_id: str) -> None:
        raw = self._inflight.pop(message_id, None)
        if raw is not None:
            raw.ack()

    def nack(self, *, message_id: str, requeue: bool = True, delay_ms: int = 0) -> QueueMessage | None:
        # Broker-side redelivery is immediate; delay_ms is not supported.
        raw = self._inflight.pop(message_id, None)
        if raw is None:
            return None
        raw.reject(requeue=requeue)
        return None

    def close(self) -> None:
        for queue in self._queues.values():
            queue.close()
        self._queues.clear()
        self._connection.release()


def create_queue_from_env(
    environ: Mapping[str, str] | None = None,
) -> InMemoryQueueBackend | SqliteQueueBackend | AmqpQueueBackend:
    env = os.environ if environ is None else environ
    backend = env.get("JOBMATCH_QUEUE_BACKEND", "memory").strip().lower()
    if backend == "memory":
        return InMemoryQueueBackend()
    if backend == "sqlite":
        db_path = env.get("JOBMATCH_QUEUE_SQLITE_PATH", ".runtime/jobmatch_queue.sqlite3")
        return SqliteQueueBackend(db_path)
    if backend == "amqp":
        url = env.get("RABBITMQ_URL", "").strip()
        if not url:
            raise ValueError("RABBITMQ_URL must be set when JOBMATCH_QUEUE_BACKEND=amqp")
        return AmqpQueueBackend(url=url)
    raise RuntimeError(f"unsupported queue backend: {backend}")

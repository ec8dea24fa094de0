from __future__ import annotations

import logging
import os
import threading
from collections.abc import Mapping, Sequence
from typing import Any

from jobmatch.broadcast import SessionBroadcaster
from jobmatch.models import StatusEvent

logger = logging.getLogger(__name__)


class StatusPublisher:
    backend_name = "base"

    def publish(self, event: StatusEvent) -> None:
        raise NotImplementedError

    def close(self) -> None:
        return None


class LoggingStatusPublisher(StatusPublisher):
    backend_name = "log"

    def publish(self, event: StatusEvent) -> None:
        logger.info("status %s -> %s (%s)", event.routing_key, event.status, event.message)


class InMemoryStatusPublisher(StatusPublisher):
    backend_name = "memory"

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._events: list[StatusEvent] = []

    def publish(self, event: StatusEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events(self, session_id: str | None = None) -> list[StatusEvent]:
        with self._lock:
            if session_id is None:
                return list(self._events)
            return [e for e in self._events if e.session_id == session_id]

    def statuses(self, session_id: str) -> list[str]:
        return [e.status for e in self.events(session_id)]

    def reset(self) -> None:
        with self._lock:
            self._events.clear()


class BroadcastStatusPublisher(StatusPublisher):
    backend_name = "broadcast"

    def __init__(self, broadcaster: SessionBroadcaster) -> None:
        self._broadcaster = broadcaster

    def publish(self, event: StatusEvent) -> None:
        self._broadcaster.broadcast(event)


class FanoutStatusPublisher(StatusPublisher):
    """Publish to every target; one failing target does not stop the others."""

    backend_name = "fanout"

    def __init__(self, publishers: Sequence[StatusPublisher]) -> None:
        self._publishers = list(publishers)

    def publish(self, event: StatusEvent) -> None:
        for publisher in self._publishers:
            try:
                publisher.publish(event)
            except Exception:
                logger.warning(
                    "status publish via %s failed for %s",
                    publisher.backend_name,
                    event.routing_key,
                    exc_info=True,
                )

    def close(self) -> None:
        for publisher in self._publishers:
            publisher.close()


def _import_kombu() -> Any:
    try:
        import kombu  # type: ignore
    except ImportError as exc:
        raise RuntimeError("kombu is required for amqp status publishing; install kombu>=5") from exc
    return kombu


class AmqpStatusPublisher(StatusPublisher):
    """JSON events on a topic exchange, routing key session.<id>."""

    backend_name = "amqp"

    def __init__(self, *, url: str, exchange_name: str = "session_updates") -> None:
        if not url.strip():
            raise ValueError("RABBITMQ_URL must be provided for amqp status publisher")
        kombu = _import_kombu()
        self._connection = kombu.Connection(url.strip())
        self._exchange = kombu.Exchange(exchange_name, type="topic", durable=True)
        self._producer = kombu.Producer(self._connection)

    def publish(self, event: StatusEvent) -> None:
        self._producer.publish(
            event.to_payload(),
            exchange=self._exchange,
            routing_key=event.routing_key,
            serializer="json",
            declare=[self._exchange],
            retry=True,
            retry_policy={"max_retries": 1},
        )

    def close(self) -> None:
        self._connection.release()


class StatusReporter:
    """Record a lifecycle transition in the store and publish it, best effort."""

    def __init__(self, *, publisher: StatusPublisher, store: Any = None) -> None:
        self._publisher = publisher
        self._store = store

    def report(self, *, session_id: str, status: str, message: str) -> StatusEvent:
        if self._store is not None:
            try:
                self._store.update_session_status(session_id=session_id, status=status)
            except Exception:
                logger.warning("failed to update session %s status to %s", session_id, status, exc_info=True)
        event = StatusEvent(session_id=session_id, status=status, message=message)
        try:
            self._publisher.publish(event)
        except Exception:
            logger.warning("failed to publish update for %s", event.routing_key, exc_info=True)
        return event


def create_status_publisher_from_env(
    environ: Mapping[str, str] | None = None,
    *,
    broadcaster: SessionBroadcaster | None = None,
) -> StatusPublisher:
    env = os.environ if environ is None else environ
    queue_backend = env.get("JOBMATCH_QUEUE_BACKEND", "memory").strip().lower()
    backend = env.get("JOBMATCH_STATUS_BACKEND", "").strip().lower() or (
        "amqp" if queue_backend == "amqp" else "log"
    )
    if backend == "amqp":
        url = env.get("RABBITMQ_URL", "").strip()
        if not url:
            raise ValueError("RABBITMQ_URL must be set when JOBMATCH_STATUS_BACKEND=amqp")
        exchange_name = env.get("STATUS_EXCHANGE", "session_updates").strip() or "session_updates"
        publisher: StatusPublisher = AmqpStatusPublisher(url=url, exchange_name=exchange_name)
    elif backend == "log":
        publisher = LoggingStatusPublisher()
    else:
        raise RuntimeError(f"unsupported status backend: {backend}")
    if broadcaster is None:
        return publisher
    return FanoutStatusPublisher([publisher, BroadcastStatusPublisher(broadcaster)])

from __future__ import annotations

import sys
from datetime import UTC, datetime
from unittest.mock import MagicMock, patch

import pytest

from jobmatch.broadcast import SessionBroadcaster
from jobmatch.models import StatusEvent
from jobmatch.status_publisher import (
    AmqpStatusPublisher,
    FanoutStatusPublisher,
    InMemoryStatusPublisher,
    LoggingStatusPublisher,
    StatusPublisher,
    StatusReporter,
    create_status_publisher_from_env,
)


class _BrokenPublisher(StatusPublisher):
    backend_name = "broken"

    def publish(self, event: StatusEvent) -> None:
        raise ConnectionError("channel closed")


def test_status_event_payload_and_routing_key():
    ts = datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)
    event = StatusEvent(session_id="abc", status="completed", message="analysis completed", timestamp=ts)
    assert event.routing_key == "session.abc"
    assert event.to_payload() == {
        "session_id": "abc",
        "status": "completed",
        "message": "analysis completed",
        "timestamp": "2025-01-02T03:04:05+00:00",
    }


def test_fanout_isolates_failing_target(caplog):
    memory = InMemoryStatusPublisher()
    fanout = FanoutStatusPublisher([_BrokenPublisher(), memory])
    fanout.publish(StatusEvent(session_id="s1", status="processing", message="analysis started"))
    assert memory.statuses("s1") == ["processing"]
    assert "status publish via broken failed" in caplog.text


def test_reporter_updates_store_and_publishes(store, make_session):
    session = make_session()
    sid = str(session.id)
    publisher = InMemoryStatusPublisher()
    reporter = StatusReporter(publisher=publisher, store=store)

    event = reporter.report(session_id=sid, status="processing", message="analysis started")

    assert event.status == "processing"
    assert store.get_session(sid)["status"] == "processing"
    assert publisher.events(sid) == [event]


def test_reporter_is_best_effort(caplog):
    store = MagicMock()
    store.update_session_status.side_effect = ConnectionError("db down")
    reporter = StatusReporter(publisher=_BrokenPublisher(), store=store)

    event = reporter.report(session_id="s1", status="failed", message="analysis failed")

    assert event.status == "failed"
    assert "failed to update session s1 status" in caplog.text
    assert "failed to publish update for session.s1" in caplog.text


def test_reporter_feeds_broadcast_hub():
    hub = SessionBroadcaster()
    sub = hub.subscribe("s1")
    publisher = create_status_publisher_from_env({"JOBMATCH_STATUS_BACKEND": "log"}, broadcaster=hub)
    StatusReporter(publisher=publisher).report(session_id="s1", status="completed", message="analysis completed")
    assert sub.get(timeout=0.1).status == "completed"


def test_create_status_publisher_from_env_defaults():
    assert isinstance(create_status_publisher_from_env({}), LoggingStatusPublisher)
    with pytest.raises(ValueError, match="RABBITMQ_URL"):
        create_status_publisher_from_env({"JOBMATCH_QUEUE_BACKEND": "amqp"})
    with pytest.raises(RuntimeError, match="unsupported status backend"):
        create_status_publisher_from_env({"JOBMATCH_STATUS_BACKEND": "smoke-signals"})


def test_amqp_status_publisher_uses_topic_exchange():
    kombu_module = MagicMock()
    with patch.dict(sys.modules, {"kombu": kombu_module}):
        publisher = create_status_publisher_from_env(
            {"JOBMATCH_QUEUE_BACKEND": "amqp", "RABBITMQ_URL": "amqp://localhost//"}
        )
        assert isinstance(publisher, AmqpStatusPublisher)
        event = StatusEvent(session_id="s1", status="processing", message="analysis started")
        publisher.publish(event)
        publisher.close()

    kombu_module.Exchange.assert_called_once_with("session_updates", type="topic", durable=True)
    producer = kombu_module.Producer.return_value
    producer.publish.assert_called_once()
    args, kwargs = producer.publish.call_args
    assert args[0] == event.to_payload()
    assert kwargs["routing_key"] == "session.s1"
    assert kwargs["serializer"] == "json"
    kombu_module.Connection.return_value.release.assert_called_once()

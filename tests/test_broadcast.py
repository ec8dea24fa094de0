from __future__ import annotations

import threading

from jobmatch.broadcast import ReadWriteLock, SessionBroadcaster
from jobmatch.models import StatusEvent


def _event(session_id: str, status: str = "processing") -> StatusEvent:
    return StatusEvent(session_id=session_id, status=status, message="analysis started")


def test_broadcast_reaches_only_matching_session():
    hub = SessionBroadcaster()
    sub_a = hub.subscribe("a")
    sub_b = hub.subscribe("b")

    assert hub.broadcast(_event("a")) == 1

    assert sub_a.get(timeout=0.1).session_id == "a"
    assert sub_b.get(timeout=0.01) is None


def test_broadcast_to_every_subscriber_of_a_session():
    hub = SessionBroadcaster()
    subs = [hub.subscribe("a") for _ in range(3)]
    assert hub.subscriber_count("a") == 3
    assert hub.broadcast(_event("a", "completed")) == 3
    assert [s.get(timeout=0.1).status for s in subs] == ["completed"] * 3


def test_full_subscriber_drops_without_blocking():
    hub = SessionBroadcaster()
    slow = hub.subscribe("a", maxsize=1)
    fast = hub.subscribe("a", maxsize=4)

    hub.broadcast(_event("a", "processing"))
    delivered = hub.broadcast(_event("a", "completed"))

    assert delivered == 1
    assert slow.dropped == 1
    assert slow.get(timeout=0.1).status == "processing"
    assert [fast.get(timeout=0.1).status, fast.get(timeout=0.1).status] == ["processing", "completed"]


def test_unsubscribe_stops_delivery():
    hub = SessionBroadcaster()
    sub = hub.subscribe("a")
    hub.unsubscribe(sub)
    assert hub.subscriber_count("a") == 0
    assert hub.broadcast(_event("a")) == 0
    hub.unsubscribe(sub)


def test_broadcast_without_subscribers_is_noop():
    assert SessionBroadcaster().broadcast(_event("nobody")) == 0


def test_concurrent_subscribe_and_broadcast():
    hub = SessionBroadcaster(default_buffer=1000)
    sub = hub.subscribe("a")
    errors: list[BaseException] = []

    def _churn():
        try:
            for _ in range(200):
                hub.unsubscribe(hub.subscribe("a"))
        except BaseException as exc:
            errors.append(exc)

    def _publish():
        try:
            for _ in range(200):
                hub.broadcast(_event("a"))
        except BaseException as exc:
            errors.append(exc)

    threads = [threading.Thread(target=_churn), threading.Thread(target=_publish)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=10)

    assert errors == []
    assert sub.events.qsize() == 200
    assert hub.subscriber_count("a") == 1


def test_read_write_lock_allows_parallel_readers():
    lock = ReadWriteLock()
    inside = threading.Barrier(2, timeout=2)

    def _reader():
        with lock.read():
            inside.wait()

    threads = [threading.Thread(target=_reader) for _ in range(2)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(timeout=5)
    assert not any(t.is_alive() for t in threads)
